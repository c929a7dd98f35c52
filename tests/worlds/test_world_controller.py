"""Tests for the world session controller."""

from __future__ import annotations

import asyncio

import pytest

from worldhub.errors import ContentLoadTimeout, HandleNotFound, WorldAlreadyActive, WorldLocked
from worldhub.hub.state import WorldStatus
from worldhub.persistence.codec import decompress_blob
from worldhub.worlds.content import Fidelity, NetworkProfile


async def _unlock_world_two(services, session_id, device="device-a"):
    handle = await services.controller.enter(session_id, 1, device)
    await services.controller.complete(handle.handle_id, 90)


@pytest.mark.asyncio
async def test_enter_checks_world_out(services, store, new_session):
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")

    assert handle.fidelity is Fidelity.FULL
    assert not handle.resumed
    state = await services.hub.get(state.session_id)
    assert state.world(1).status is WorldStatus.IN_PROGRESS
    assert state.current_world_index == 1
    lease = await store.get_lease(state.session_id, 1)
    assert lease.handle_id == handle.handle_id
    assert lease.device_id == "device-a"


@pytest.mark.asyncio
async def test_locked_world_cannot_be_entered(services, new_session):
    _, state = await new_session(services)
    with pytest.raises(WorldLocked):
        await services.controller.enter(state.session_id, 2, "device-a")


@pytest.mark.asyncio
async def test_happy_path_through_controller(services, new_session):
    _, state = await new_session(services)
    assert state.worlds_completed == 0
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    state = await services.controller.complete(handle.handle_id, 90)
    assert state.total_score == 90
    assert state.world(2).status is WorldStatus.UNLOCKED


@pytest.mark.asyncio
async def test_lease_conflict_until_idle_expiry(services, clock, settings, new_session):
    _, state = await new_session(services)
    await _unlock_world_two(services, state.session_id)
    await services.controller.enter(state.session_id, 2, "device-a")

    with pytest.raises(WorldAlreadyActive):
        await services.controller.enter(state.session_id, 2, "device-b")

    clock.advance(seconds=settings.lease_idle_seconds + 1)
    handle = await services.controller.enter(state.session_id, 2, "device-b")
    assert handle.device_id == "device-b"


@pytest.mark.asyncio
async def test_same_device_may_reenter(services, new_session):
    _, state = await new_session(services)
    first = await services.controller.enter(state.session_id, 1, "device-a")
    second = await services.controller.enter(state.session_id, 1, "device-a")
    assert second.handle_id != first.handle_id
    with pytest.raises(HandleNotFound):
        services.controller.handle(first.handle_id)


@pytest.mark.asyncio
async def test_checkpoint_refreshes_lease(services, store, clock, settings, new_session):
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    clock.advance(seconds=settings.lease_idle_seconds - 10)
    await services.controller.checkpoint(handle.handle_id, b"step-1")
    clock.advance(seconds=settings.lease_idle_seconds - 10)

    with pytest.raises(WorldAlreadyActive):
        await services.controller.enter(state.session_id, 1, "device-b")
    lease = await store.get_lease(state.session_id, 1)
    assert lease.is_active(clock.now)


@pytest.mark.asyncio
async def test_exit_abandons_and_resume_restores_blob(services, new_session):
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    await services.controller.checkpoint(handle.handle_id, b"halfway")
    state = await services.controller.exit(handle.handle_id)
    assert state.world(1).status is WorldStatus.ABANDONED
    assert decompress_blob(state.world(1).state_blob) == b"halfway"
    assert state.current_world_index is None

    resumed = await services.controller.enter(state.session_id, 1, "device-b")
    assert resumed.resumed
    assert resumed.state_blob == b"halfway"
    state = await services.hub.get(state.session_id)
    assert state.world(1).status is WorldStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_retried_complete_is_harmless(services, store, new_session):
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    first = await services.controller.complete(handle.handle_id, 90)
    again = await services.controller.complete(handle.handle_id, 90)
    assert again.total_score == first.total_score == 90
    assert await store.get_lease(state.session_id, 1) is None


@pytest.mark.asyncio
async def test_replay_of_completed_world(services, new_session):
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    await services.controller.complete(handle.handle_id, 82)
    replay = await services.controller.enter(state.session_id, 1, "device-a")
    assert replay.replay
    state = await services.controller.complete(replay.handle_id, 97)
    assert state.world(1).score == 97
    assert state.total_score == 97


@pytest.mark.asyncio
async def test_degraded_load_from_network_estimate(services, content, new_session):
    _, state = await new_session(services)
    handle = await services.controller.enter(
        state.session_id, 1, "device-a", NetworkProfile(bandwidth_kbps=10, latency_ms=400),
    )
    assert handle.fidelity is Fidelity.REDUCED
    assert content.fetches == [(1, Fidelity.REDUCED)]


@pytest.mark.asyncio
async def test_degraded_load_after_full_fetch_times_out(services, content, new_session):
    content.delays = {Fidelity.FULL: 5.0}
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    assert handle.fidelity is Fidelity.REDUCED
    assert handle.bundle.size_bytes == content.reduced_size


@pytest.mark.asyncio
async def test_content_load_timeout_releases_world(services, store, content, new_session):
    content.delays = {Fidelity.FULL: 5.0, Fidelity.REDUCED: 5.0}
    _, state = await new_session(services)
    with pytest.raises(ContentLoadTimeout):
        await services.controller.enter(state.session_id, 1, "device-a")
    assert await store.get_lease(state.session_id, 1) is None
    state = await services.hub.get(state.session_id)
    assert state.world(1).status is WorldStatus.ABANDONED


@pytest.mark.asyncio
async def test_bundle_threshold_overrides_configuration(services, content, new_session):
    content.min_scores = {1: 95}
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    state = await services.controller.complete(handle.handle_id, 90)
    assert state.thresholds[1] == 95
    assert state.world(2).status is WorldStatus.LOCKED


@pytest.mark.asyncio
async def test_threshold_frozen_after_completion(services, content, new_session):
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    await services.controller.complete(handle.handle_id, 90)

    content.min_scores = {1: 95}
    services.cache.discard((state.session_id, 1))
    replay = await services.controller.enter(state.session_id, 1, "device-a")
    assert replay.bundle.min_score_to_complete == 95
    state = await services.hub.get(state.session_id)
    assert state.thresholds[1] == 80
    assert state.world(2).status is WorldStatus.UNLOCKED


@pytest.mark.asyncio
async def test_late_checkpoint_loses_to_new_holder(services, clock, settings, new_session):
    _, state = await new_session(services)
    stale = await services.controller.enter(state.session_id, 1, "device-a")
    clock.advance(seconds=settings.lease_idle_seconds + 1)
    fresh = await services.controller.enter(state.session_id, 1, "device-b")
    await services.controller.checkpoint(fresh.handle_id, b"from-b")

    state = await services.controller.checkpoint(stale.handle_id, b"from-a")
    assert decompress_blob(state.world(1).state_blob) == b"from-b"


@pytest.mark.asyncio
async def test_late_completion_is_reconciled_by_higher_score(services, clock, settings, new_session):
    _, state = await new_session(services)
    stale = await services.controller.enter(state.session_id, 1, "device-a")
    clock.advance(seconds=settings.lease_idle_seconds + 1)
    fresh = await services.controller.enter(state.session_id, 1, "device-b")

    await services.controller.complete(stale.handle_id, 85)
    state = await services.controller.complete(fresh.handle_id, 70)
    assert state.world(1).score == 85
    assert state.total_score == 85


@pytest.mark.asyncio
async def test_expire_idle_leases_abandons_world(services, store, clock, settings, new_session):
    _, state = await new_session(services)
    await services.controller.enter(state.session_id, 1, "device-a")
    clock.advance(seconds=settings.lease_idle_seconds + 1)

    assert await services.controller.expire_idle_leases() == 1
    assert await store.get_lease(state.session_id, 1) is None
    state = await services.hub.get(state.session_id)
    assert state.world(1).status is WorldStatus.ABANDONED


@pytest.mark.asyncio
async def test_prefetch_warms_next_world(services, new_session):
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    task = services.controller.prefetch_adjacent(handle.handle_id)
    await task
    assert (state.session_id, 2) in services.cache


@pytest.mark.asyncio
async def test_exit_cancels_prefetch(services, content, new_session):
    _, state = await new_session(services)
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    content.delays = {Fidelity.FULL: 5.0}
    task = services.controller.prefetch_adjacent(handle.handle_id)
    await asyncio.sleep(0)
    await services.controller.exit(handle.handle_id)
    with pytest.raises(asyncio.CancelledError):
        await task
    assert (state.session_id, 2) not in services.cache
