"""Access code issuance and validation."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from worldhub.auth.codes import generate_code, hash_code, is_well_formed, normalize_code
from worldhub.config import Settings
from worldhub.errors import Expired, GenerationExhausted, InvalidCode
from worldhub.persistence.store import AccessCodeRecord, SessionStore
from worldhub.worlds.content import resolve_variant

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedCode:
    """A freshly issued code. This is the only time the cleartext code exists server-side."""

    code: str
    session_id: str
    cultural_context: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionHandle:
    """Result of a successful validation. Never exposes the code hash to clients."""

    session_id: str
    code_hash: str
    cultural_context: str
    last_active_at: datetime
    expires_at: datetime


class CodeAuthenticator:
    """Issues and validates anonymous access codes."""

    def __init__(self, store: SessionStore, settings: Settings, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self._settings.session_retention_days)

    def _hash(self, code: str) -> str:
        return hash_code(code, self._settings.code_hash_secret)

    async def issue(self, cultural_context: str) -> IssuedCode:
        """Issue a code unique among active codes.

        A candidate colliding with an active code is redrawn. A candidate
        matching an expired code takes it over after the expired session is
        purged.
        """
        variant = resolve_variant(cultural_context)
        for attempt in range(1, self._settings.code_max_attempts + 1):
            code = generate_code()
            code_hash = self._hash(code)
            now = self._clock()

            existing = await self._store.find_code(code_hash)
            if existing is not None:
                if existing.expires_at > now:
                    logger.info("code_collision", attempt=attempt)
                    continue
                await self._store.delete_session(existing.session_id)
                logger.info("expired_code_reissued", session_id=existing.session_id)

            record = AccessCodeRecord(
                code_hash=code_hash,
                session_id=str(uuid.uuid4()),
                cultural_context=variant.value,
                issued_at=now,
                last_active_at=now,
                expires_at=now + self.retention,
            )
            if not await self._store.create_code(record):
                logger.info("code_collision", attempt=attempt)
                continue

            logger.info("code_issued", session_id=record.session_id, cultural_context=variant.value)
            return IssuedCode(
                code=code,
                session_id=record.session_id,
                cultural_context=record.cultural_context,
                expires_at=record.expires_at,
            )

        logger.error("code_generation_exhausted", attempts=self._settings.code_max_attempts)
        raise GenerationExhausted(attempts=self._settings.code_max_attempts)

    async def lookup(self, code: str) -> AccessCodeRecord:
        """Resolve a code without touching it. Raises InvalidCode."""
        normalized = normalize_code(code)
        if not is_well_formed(normalized):
            raise InvalidCode()
        record = await self._store.find_code(self._hash(normalized))
        if record is None:
            raise InvalidCode()
        return record

    async def validate(self, code: str) -> SessionHandle:
        """Validate a code. The only side effect is recording activity."""
        record = await self.lookup(code)
        now = self._clock()
        if record.expires_at <= now:
            logger.info("code_expired", session_id=record.session_id)
            raise Expired()

        last_active = max(now, record.last_active_at)
        expires_at = max(record.expires_at, last_active + self.retention)
        await self._store.touch_code(record.code_hash, last_active, expires_at)
        return SessionHandle(
            session_id=record.session_id,
            code_hash=record.code_hash,
            cultural_context=record.cultural_context,
            last_active_at=last_active,
            expires_at=expires_at,
        )
