"""Tests for the maintenance sweep."""

import pytest

from worldhub.errors import InvalidCode
from worldhub.hub.state import WorldStatus
from worldhub.sync.delta import OP_ACHIEVEMENT, SyncDelta
from worldhub.workers.maintenance import MaintenanceSweeper


@pytest.mark.asyncio
async def test_sweep_releases_idle_leases(services, clock, settings, new_session):
    _, state = await new_session(services)
    await services.controller.enter(state.session_id, 1, "device-a")
    clock.advance(seconds=settings.lease_idle_seconds + 5)

    summary = await MaintenanceSweeper(services).run_once()

    assert summary["leases_expired"] == 1
    assert summary["sessions_purged"] == 0
    assert (await services.hub.get(state.session_id)).world(1).status is WorldStatus.ABANDONED


@pytest.mark.asyncio
async def test_sweep_purges_sessions_past_retention(services, clock, settings, store, new_session):
    code, state = await new_session(services)
    clock.advance(days=settings.session_retention_days - 1)
    active_code, active = await new_session(services)
    clock.advance(days=2)

    summary = await MaintenanceSweeper(services).run_once()

    assert summary["sessions_purged"] == 1
    assert await store.load(state.session_id) is None
    with pytest.raises(InvalidCode):
        await services.auth.validate(code)
    assert (await services.auth.validate(active_code)).session_id == active.session_id


@pytest.mark.asyncio
async def test_recent_activity_postpones_purge(services, clock, settings, new_session):
    code, state = await new_session(services)
    clock.advance(days=settings.session_retention_days - 1)
    await services.hub.load_or_create(await services.auth.validate(code))
    clock.advance(days=2)

    summary = await MaintenanceSweeper(services).run_once()
    assert summary["sessions_purged"] == 0


@pytest.mark.asyncio
async def test_sweep_prunes_old_applied_deltas(services, clock, settings, store, new_session):
    code, state = await new_session(services)
    await services.synchronizer.push(state.session_id, "device-a", [SyncDelta(
        device_id="device-a", session_id=state.session_id, clock=1, ops=[{"op": OP_ACHIEVEMENT, "id": "collector"}],
    )])
    clock.advance(days=settings.session_retention_days - 1)
    await services.hub.load_or_create(await services.auth.validate(code))
    clock.advance(days=2)

    summary = await MaintenanceSweeper(services).run_once()

    assert summary["deltas_pruned"] == 1
    assert summary["sessions_purged"] == 0
    assert await store.list_deltas(state.session_id) == []
    # Merged state outlives the log
    assert "collector" in (await services.hub.get(state.session_id)).achievements
