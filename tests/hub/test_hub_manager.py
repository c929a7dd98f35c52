"""Tests for the hub state manager."""

from __future__ import annotations

import pytest

from worldhub.errors import InvalidTransition, SessionNotFound, WorldLocked
from worldhub.hub.service import HubStateManager
from worldhub.hub.state import WorldStatus
from worldhub.persistence.commits import COMMITTED, CommitQueue


async def _start_world(services, session_id, world_index, device="device-a"):
    async def start(state):
        state.world(world_index).status = WorldStatus.IN_PROGRESS
        return True

    return await services.hub.mutate(session_id, start, device_id=device)


@pytest.mark.asyncio
async def test_load_or_create_initializes_hub(services, new_session):
    _, state = await new_session(services)
    assert state.worlds_completed == 0
    assert state.total_score == 0
    assert state.world_status[0] is WorldStatus.UNLOCKED
    assert state.save_status == COMMITTED


@pytest.mark.asyncio
async def test_load_or_create_returns_existing(services, new_session):
    code, state = await new_session(services)
    again = await services.hub.load_or_create(await services.auth.validate(code))
    assert again.session_id == state.session_id
    assert again.created_at == state.created_at


@pytest.mark.asyncio
async def test_unknown_session(services):
    with pytest.raises(SessionNotFound):
        await services.hub.get("missing")


@pytest.mark.asyncio
async def test_happy_path_unlocks_next_world(services, new_session):
    _, state = await new_session(services)
    await _start_world(services, state.session_id, 1)
    state = await services.hub.apply_world_completion(state.session_id, 1, 90)
    assert state.total_score == 90
    assert state.worlds_completed == 1
    assert state.world(2).status is WorldStatus.UNLOCKED
    assert "first_world_complete" in state.achievements


@pytest.mark.asyncio
async def test_completion_is_idempotent(services, new_session):
    _, state = await new_session(services)
    await _start_world(services, state.session_id, 1)
    first = await services.hub.apply_world_completion(state.session_id, 1, 90)
    second = await services.hub.apply_world_completion(state.session_id, 1, 90)
    assert second.total_score == first.total_score == 90
    assert second.worlds_completed == first.worlds_completed == 1
    assert second.revision == first.revision


@pytest.mark.asyncio
async def test_lower_score_does_not_replace(services, new_session):
    _, state = await new_session(services)
    await _start_world(services, state.session_id, 1)
    await services.hub.apply_world_completion(state.session_id, 1, 90)
    state = await services.hub.apply_world_completion(state.session_id, 1, 60)
    assert state.world(1).score == 90
    assert state.total_score == 90


@pytest.mark.asyncio
async def test_higher_replay_score_replaces(services, new_session):
    _, state = await new_session(services)
    await _start_world(services, state.session_id, 1)
    await services.hub.apply_world_completion(state.session_id, 1, 85)
    state = await services.hub.apply_world_completion(state.session_id, 1, 95)
    assert state.world(1).score == 95
    assert state.total_score == 95
    assert state.worlds_completed == 1


@pytest.mark.asyncio
async def test_below_threshold_keeps_next_locked(services, new_session):
    _, state = await new_session(services)
    await _start_world(services, state.session_id, 1)
    state = await services.hub.apply_world_completion(state.session_id, 1, 50)
    assert state.world(1).is_completed
    assert state.world(2).status is WorldStatus.LOCKED


@pytest.mark.asyncio
async def test_locked_world_cannot_complete(services, new_session):
    _, state = await new_session(services)
    with pytest.raises(WorldLocked):
        await services.hub.apply_world_completion(state.session_id, 3, 90)


@pytest.mark.asyncio
async def test_completion_requires_in_progress(services, new_session):
    _, state = await new_session(services)
    with pytest.raises(InvalidTransition):
        await services.hub.apply_world_completion(state.session_id, 1, 90)


@pytest.mark.asyncio
async def test_negative_score_rejected(services, new_session):
    _, state = await new_session(services)
    with pytest.raises(ValueError):
        await services.hub.apply_world_completion(state.session_id, 1, -1)


@pytest.mark.asyncio
async def test_achievement_flags_recorded(services, new_session):
    _, state = await new_session(services)
    await _start_world(services, state.session_id, 1)
    state = await services.hub.apply_world_completion(state.session_id, 1, 100, ["fast_learner"])
    assert {"fast_learner", "perfect_world", "first_world_complete"} <= state.achievements.keys()


@pytest.mark.asyncio
async def test_commit_persists_and_broadcasts(services, store, redis_mock, new_session):
    _, state = await new_session(services)
    await _start_world(services, state.session_id, 1)
    await services.hub.apply_world_completion(state.session_id, 1, 90, device_id="device-a")

    stored = await store.load(state.session_id)
    assert stored.total_score == 90
    assert stored.world(2).status is WorldStatus.UNLOCKED

    channel, message = redis_mock.publish.call_args.args
    assert channel == f"worldhub:session:{state.session_id}"
    assert '"origin_device": "device-a"' in message


@pytest.mark.asyncio
async def test_unchanged_mutation_is_not_committed(services, redis_mock, new_session):
    _, state = await new_session(services)
    redis_mock.publish.reset_mock()

    async def noop(_state):
        return False

    result = await services.hub.mutate(state.session_id, noop, device_id="d")
    assert result.revision == state.revision
    redis_mock.publish.assert_not_called()


@pytest.mark.asyncio
async def test_unlock_eligibility(services, new_session):
    _, state = await new_session(services)
    assert services.hub.compute_unlock_eligibility(state) == {1}


@pytest.mark.asyncio
async def test_concurrent_writer_change_is_not_lost(services, store, settings, clock, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    other = HubStateManager(store, CommitQueue(store), settings, clock=clock)
    interleaved = False

    async def add_other(state):
        state.achievements["from_other_worker"] = clock()
        return True

    async def add_own(state):
        nonlocal interleaved
        if not interleaved:
            interleaved = True
            # the first manager commits between this read and its commit
            await services.hub.mutate(sid, add_other, device_id="device-a")
        state.achievements["from_this_worker"] = clock()
        return True

    result = await other.mutate(sid, add_own, device_id="device-b")
    assert result.save_status == COMMITTED
    stored = await store.load(sid)
    assert {"from_other_worker", "from_this_worker"} <= stored.achievements.keys()
    assert stored.revision == result.revision
