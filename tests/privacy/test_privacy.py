"""Tests for session export and erasure."""

import base64

import pytest

from worldhub.errors import InvalidCode, SessionNotFound
from worldhub.sync.delta import OP_ACHIEVEMENT, SyncDelta


async def _play(services, state):
    handle = await services.controller.enter(state.session_id, 1, "device-a")
    await services.controller.checkpoint(handle.handle_id, b"save-1")
    await services.controller.complete(handle.handle_id, 91)
    second = await services.controller.enter(state.session_id, 2, "device-a")
    await services.controller.checkpoint(second.handle_id, b"save-2")
    await services.synchronizer.push(state.session_id, "device-b", [SyncDelta(
        device_id="device-b", session_id=state.session_id, clock=1, ops=[{"op": OP_ACHIEVEMENT, "id": "collector"}],
    )])


@pytest.mark.asyncio
async def test_export_contains_everything_stored(services, new_session):
    code, state = await new_session(services)
    await _play(services, state)

    export = await services.privacy.export_session(code)

    assert export["session"]["sessionId"] == state.session_id
    assert "codeHash" not in export["session"]
    assert code not in str(export)
    worlds = {w["worldIndex"]: w for w in export["worlds"]}
    assert worlds[1]["status"] == "completed"
    assert worlds[1]["score"] == 91
    assert base64.b64decode(worlds[2]["stateBlob"]) == b"save-2"
    ids = {a["id"] for a in export["achievements"]}
    assert {"first_world_complete", "collector"} <= ids
    titles = {a["id"]: a["title"] for a in export["achievements"]}
    assert titles["first_world_complete"] == "First world complete"
    assert len(export["syncLog"]) == 1
    assert "30 days" in export["retentionPolicy"]


@pytest.mark.asyncio
async def test_export_unknown_code(services):
    with pytest.raises(InvalidCode):
        await services.privacy.export_session("AB3DFJ9Q")


@pytest.mark.asyncio
async def test_erasure_is_complete(services, store, new_session):
    code, state = await new_session(services)
    await _play(services, state)
    other_code, other = await new_session(services)

    result = await services.privacy.erase_session(code)
    assert result["erased"] is True
    assert result["sessionId"] == state.session_id

    with pytest.raises(InvalidCode):
        await services.auth.validate(code)
    with pytest.raises(InvalidCode):
        await services.privacy.export_session(code)
    with pytest.raises(SessionNotFound):
        await services.hub.get(state.session_id)
    assert await store.load(state.session_id) is None
    assert await store.list_deltas(state.session_id) == []
    assert await store.get_lease(state.session_id, 2) is None
    assert services.controller.active_handles(state.session_id) == []
    assert (state.session_id, 1) not in services.cache

    # Other sessions are untouched
    assert (await services.auth.validate(other_code)).session_id == other.session_id


@pytest.mark.asyncio
async def test_erasing_twice_fails(services, new_session):
    code, _ = await new_session(services)
    await services.privacy.erase_session(code)
    with pytest.raises(InvalidCode):
        await services.privacy.erase_session(code)
