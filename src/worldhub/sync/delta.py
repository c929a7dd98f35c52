"""Sync delta unit exchanged between devices and the synchronizer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

OP_STATUS = "status"
OP_COMPLETE = "complete"
OP_CHECKPOINT = "checkpoint"
OP_ACHIEVEMENT = "achievement"
OP_CONTEXT = "context"

KNOWN_OPS = frozenset({OP_STATUS, OP_COMPLETE, OP_CHECKPOINT, OP_ACHIEVEMENT, OP_CONTEXT})


@dataclass
class SyncDelta:
    """One buffered change from one device.

    ``clock`` is the device's Lamport clock for the session when the change
    was made. Deltas are ephemeral: once merged the hub state is the only
    source of truth and the delta is kept only in the audit log.
    """

    device_id: str
    session_id: str
    clock: int
    ops: list[dict[str, Any]]
    delta_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    applied: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def sort_key(self) -> tuple[int, str, str]:
        return (self.clock, self.device_id, self.delta_id)
