"""Data-subject rights: portable export and unrecoverable erasure."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from typing import Any

import structlog

from worldhub.achievements.aggregator import ACHIEVEMENTS_BY_ID
from worldhub.auth.service import CodeAuthenticator
from worldhub.config import Settings
from worldhub.hub.service import HubStateManager
from worldhub.persistence.codec import decompress_blob
from worldhub.persistence.store import SessionStore
from worldhub.worlds.controller import WorldSessionController

logger = structlog.get_logger()


class PrivacyService:
    def __init__(
        self,
        auth: CodeAuthenticator,
        hub: HubStateManager,
        store: SessionStore,
        controller: WorldSessionController,
        settings: Settings,
    ) -> None:
        self._auth = auth
        self._hub = hub
        self._store = store
        self._controller = controller
        self._settings = settings

    @property
    def retention_policy(self) -> str:
        return (
            f"Progress is deleted after {self._settings.session_retention_days} days without activity "
            "or immediately on request."
        )

    async def export_session(self, code: str) -> dict[str, Any]:
        """Everything stored about the session behind ``code``.

        Raises InvalidCode for unknown or erased codes. Expired codes can still
        be exported until the retention sweep removes them.
        """
        record = await self._auth.lookup(code)
        state = await self._hub.find(record.session_id)
        deltas = await self._store.list_deltas(record.session_id)

        export: dict[str, Any] = {
            "session": {
                "sessionId": record.session_id,
                "culturalContext": record.cultural_context,
                "issuedAt": record.issued_at.isoformat(),
                "lastActiveAt": record.last_active_at.isoformat(),
                "expiresAt": record.expires_at.isoformat(),
            },
            "worlds": [],
            "achievements": [],
            "syncLog": [
                {
                    "deltaId": d.delta_id,
                    "deviceId": d.device_id,
                    "clock": d.clock,
                    "ops": d.ops,
                    "applied": d.applied,
                    "receivedAt": d.created_at.isoformat(),
                }
                for d in deltas
            ],
            "exportedAt": datetime.now(timezone.utc).isoformat(),
            "retentionPolicy": self.retention_policy,
        }
        if state is not None:
            session = state.to_record()
            session.pop("codeHash")
            export["session"] = session
            export["worlds"] = [
                {
                    "worldIndex": w.world_index,
                    "worldId": w.world_id,
                    "status": w.status.value,
                    "score": w.score,
                    "timeSpentMs": w.time_spent_ms,
                    "startedAt": w.started_at.isoformat() if w.started_at else None,
                    "completedAt": w.completed_at.isoformat() if w.completed_at else None,
                    "stateBlob": (
                        base64.b64encode(decompress_blob(w.state_blob)).decode() if w.state_blob else None
                    ),
                }
                for w in state.worlds
            ]
            export["achievements"] = [
                {
                    "id": achievement_id,
                    "title": ACHIEVEMENTS_BY_ID[achievement_id].title if achievement_id in ACHIEVEMENTS_BY_ID else None,
                    "unlockedAt": unlocked_at.isoformat(),
                }
                for achievement_id, unlocked_at in sorted(state.achievements.items())
            ]

        logger.info("session_exported", session_id=record.session_id)
        return export

    async def purge(self, session_id: str) -> int:
        """Remove a session from memory and storage. Returns the rows deleted."""
        self._controller.drop_session(session_id)
        async with self._hub.lock(session_id):
            self._hub.forget(session_id)
            return await self._store.delete_session(session_id)

    async def erase_session(self, code: str) -> dict[str, Any]:
        """Delete the session, its world blobs and its delta log.

        Afterwards the code no longer validates and nothing is exportable.
        """
        record = await self._auth.lookup(code)
        session_id = record.session_id
        removed = await self.purge(session_id)
        logger.info("session_erased", session_id=session_id, rows=removed)
        return {"erased": True, "sessionId": session_id, "erasedAt": datetime.now(timezone.utc).isoformat()}
