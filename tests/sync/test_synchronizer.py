"""Tests for cross-device synchronization."""

from __future__ import annotations

import asyncio
import base64
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from worldhub.hub.state import WorldStatus
from worldhub.persistence.codec import decompress_blob
from worldhub.sync.delta import OP_ACHIEVEMENT, OP_CHECKPOINT, OP_COMPLETE, OP_CONTEXT, OP_STATUS, SyncDelta
from worldhub.sync.replica import DeviceReplica
from worldhub.redis_client import session_channel


def _delta(session_id, device_id, clock, *ops):
    return SyncDelta(device_id=device_id, session_id=session_id, clock=clock, ops=list(ops))


def _finish(world, score):
    """Ops a device sends for a world it entered and finished offline."""
    return [
        {"op": OP_STATUS, "world": world, "status": "in_progress"},
        {"op": OP_COMPLETE, "world": world, "score": score},
    ]


@pytest.mark.asyncio
async def test_push_merges_and_logs(services, store, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    result = await services.synchronizer.push(
        sid, "device-a", [_delta(sid, "device-a", 1, *_finish(1, 88))],
    )

    assert result.report.applied == 2
    assert result.logged == 1
    assert result.state.world(1).score == 88
    assert result.state.world(2).status is WorldStatus.UNLOCKED
    assert "first_world_complete" in result.state.achievements

    logged = await store.list_deltas(sid)
    assert len(logged) == 1
    assert logged[0].applied


@pytest.mark.asyncio
async def test_push_overrides_claimed_identity(services, new_session):
    _, state = await new_session(services)
    delta = _delta("someone-else", "spoofed", 1, {"op": OP_STATUS, "world": 1, "status": "in_progress"})
    await services.synchronizer.push(state.session_id, "device-a", [delta])
    assert delta.session_id == state.session_id
    assert delta.device_id == "device-a"


@pytest.mark.asyncio
async def test_pull_returns_authoritative_state(services, new_session):
    _, state = await new_session(services)
    pulled = await services.synchronizer.pull(state.session_id)
    assert pulled.session_id == state.session_id
    assert pulled.world(1).status is WorldStatus.UNLOCKED


@pytest.mark.asyncio
async def test_locked_world_ops_are_rejected(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    result = await services.synchronizer.push(
        sid, "device-a", [_delta(sid, "device-a", 1, {"op": OP_COMPLETE, "world": 3, "score": 99})],
    )
    assert result.report.rejected == 1
    assert result.report.rejections[0]["reason"] == "world_locked"
    assert result.state.world(3).status is WorldStatus.LOCKED


@pytest.mark.asyncio
async def test_completion_of_unentered_world_is_rejected(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    result = await services.synchronizer.push(
        sid, "device-a", [_delta(sid, "device-a", 1, {"op": OP_COMPLETE, "world": 1, "score": 100})],
    )
    assert result.report.rejections[0]["reason"] == "not_in_progress"
    assert result.report.conflicts == 1
    assert result.state.world(1).status is WorldStatus.UNLOCKED
    assert result.state.total_score == 0


@pytest.mark.asyncio
async def test_completion_of_abandoned_world_is_rejected(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    handle = await services.controller.enter(sid, 1, "device-a")
    await services.controller.exit(handle.handle_id)

    result = await services.synchronizer.push(
        sid, "device-b", [_delta(sid, "device-b", 1, {"op": OP_COMPLETE, "world": 1, "score": 100})],
    )
    assert result.report.rejections[0]["reason"] == "not_in_progress"
    assert result.state.world(1).status is WorldStatus.ABANDONED
    assert result.state.world(1).score is None


@pytest.mark.asyncio
async def test_malformed_ops_are_rejected_not_raised(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    result = await services.synchronizer.push(sid, "device-a", [_delta(
        sid, "device-a", 1,
        {"op": OP_COMPLETE, "world": 9, "score": 10},
        {"op": OP_CHECKPOINT, "world": 1, "blob": "not base64!"},
        {"op": "teleport"},
    )])
    assert result.report.rejected == 3
    assert result.report.applied == 0


@pytest.mark.asyncio
async def test_conflicting_completions_keep_higher_score(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    await services.synchronizer.push(sid, "device-b", [_delta(sid, "device-b", 4, *_finish(1, 70))])
    result = await services.synchronizer.push(
        sid, "device-a", [_delta(sid, "device-a", 3, {"op": OP_COMPLETE, "world": 1, "score": 85})],
    )
    assert result.report.conflicts == 1
    assert result.state.world(1).score == 85
    assert result.state.total_score == 85


@pytest.mark.asyncio
async def test_completed_world_never_regresses(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    await services.synchronizer.push(sid, "device-a", [_delta(sid, "device-a", 1, *_finish(1, 90))])
    result = await services.synchronizer.push(
        sid, "device-b", [_delta(sid, "device-b", 50, {"op": OP_STATUS, "world": 1, "status": "in_progress"})],
    )
    assert result.state.world(1).status is WorldStatus.COMPLETED
    assert result.report.rejections[0]["reason"] == "regression"


@pytest.mark.asyncio
async def test_checkpoint_last_writer_wins(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    newer = _delta(sid, "device-b", 7, {"op": OP_CHECKPOINT, "world": 1, "blob": base64.b64encode(b"newer").decode()})
    older = _delta(sid, "device-a", 5, {"op": OP_CHECKPOINT, "world": 1, "blob": base64.b64encode(b"older").decode()})
    await services.synchronizer.push(sid, "device-b", [newer])
    result = await services.synchronizer.push(sid, "device-a", [older])
    assert decompress_blob(result.state.world(1).state_blob) == b"newer"


@pytest.mark.asyncio
async def test_achievements_union_keeps_earliest_unlock(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    await services.synchronizer.push(sid, "device-a", [_delta(
        sid, "device-a", 1, {"op": OP_ACHIEVEMENT, "id": "speedrun", "unlocked_at": "2026-03-01T12:00:00+00:00"},
    )])
    result = await services.synchronizer.push(sid, "device-b", [_delta(
        sid, "device-b", 2,
        {"op": OP_ACHIEVEMENT, "id": "speedrun", "unlocked_at": "2026-02-01T12:00:00+00:00"},
        {"op": OP_ACHIEVEMENT, "id": "collector"},
    )])
    assert set(result.state.achievements) >= {"speedrun", "collector"}
    assert result.state.achievements["speedrun"].month == 2


@pytest.mark.asyncio
async def test_cultural_context_follows_latest_clock(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    await services.synchronizer.push(sid, "device-a", [_delta(sid, "device-a", 10, {"op": OP_CONTEXT, "cultural_context": "german_municipal"})])
    result = await services.synchronizer.push(
        sid, "device-b", [_delta(sid, "device-b", 2, {"op": OP_CONTEXT, "cultural_context": "swedish_municipal"})],
    )
    assert result.state.cultural_context == "german_municipal"


@pytest.mark.asyncio
async def test_replayed_push_is_idempotent(services, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    ops = (*_finish(1, 84), {"op": OP_ACHIEVEMENT, "id": "collector"})
    first = await services.synchronizer.push(sid, "device-a", [_delta(sid, "device-a", 3, *ops)])
    again = await services.synchronizer.push(sid, "device-a", [_delta(sid, "device-a", 3, *ops)])
    assert again.report.applied == 0
    assert again.state.total_score == first.state.total_score
    assert again.state.achievements == first.state.achievements


def _summary(state):
    return (
        [(w.status, w.score) for w in state.worlds],
        sorted(state.achievements),
        state.total_score,
        state.worlds_completed,
    )


@pytest.mark.asyncio
async def test_offline_replicas_converge_in_any_order(services, new_session):
    outcomes = []
    for order in (("a", "b"), ("b", "a")):
        _, state = await new_session(services)
        replicas = {
            "a": DeviceReplica(state.session_id, "device-a", state),
            "b": DeviceReplica(state.session_id, "device-b", state),
        }
        replicas["a"].record(*_finish(1, 85))
        replicas["a"].record({"op": OP_ACHIEVEMENT, "id": "collector"})
        replicas["b"].record(*_finish(1, 82))
        replicas["b"].record({"op": OP_STATUS, "world": 2, "status": "in_progress"})

        for name in order:
            await replicas[name].flush(services.synchronizer)
        for replica in replicas.values():
            await replica.refresh(services.synchronizer)
        assert _summary(replicas["a"].state) == _summary(replicas["b"].state)
        outcomes.append(_summary(replicas["a"].state))

    assert outcomes[0] == outcomes[1]
    statuses, achievements, total, completed = outcomes[0]
    assert statuses[0] == (WorldStatus.COMPLETED, 85)
    assert statuses[1][0] is WorldStatus.IN_PROGRESS
    assert "collector" in achievements
    assert total == 85
    assert completed == 1


@pytest.mark.asyncio
async def test_replica_keeps_buffer_when_push_times_out(services, new_session):
    _, state = await new_session(services)
    replica = DeviceReplica(state.session_id, "device-a", state)
    replica.record(*_finish(1, 90))

    async with services.hub.lock(state.session_id):
        assert await replica.flush(services.synchronizer, timeout=0.05) is None
    assert len(replica.buffer) == 1
    assert not replica.syncing

    result = await replica.flush(services.synchronizer)
    assert result.state.world(1).score == 90
    assert replica.buffer == []


@pytest.mark.asyncio
async def test_commits_are_broadcast_to_session_channel(services, redis_mock, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    redis_mock.publish.reset_mock()
    await services.synchronizer.push(sid, "device-a", [_delta(sid, "device-a", 1, *_finish(1, 81))])

    redis_mock.publish.assert_awaited_once()
    channel, payload = redis_mock.publish.await_args.args
    assert channel == session_channel(sid)
    message = json.loads(payload)
    assert message["event"] == "hub_updated"
    assert message["origin_device"] == "device-a"
    assert message["data"]["total_score"] == 81
    assert "code_hash" not in message["data"]


@pytest.mark.asyncio
async def test_broadcast_failure_does_not_fail_the_write(services, redis_mock, new_session):
    _, state = await new_session(services)
    sid = state.session_id
    redis_mock.publish.side_effect = RedisConnectionError("down")
    result = await services.synchronizer.push(
        sid, "device-a", [_delta(sid, "device-a", 1, *_finish(1, 81))],
    )
    assert result.state.world(1).score == 81
    assert (await services.hub.get(sid)).world(1).score == 81


@pytest.mark.asyncio
async def test_slow_broadcast_times_out(services, redis_mock, new_session):
    _, state = await new_session(services)

    async def hang(*args):
        await asyncio.sleep(5)

    redis_mock.publish.side_effect = hang
    await services.synchronizer.broadcast(state, "device-a")
