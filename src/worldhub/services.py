"""Wiring of the engine components for one process."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from worldhub.auth.service import CodeAuthenticator, utcnow
from worldhub.config import Settings
from worldhub.hub.service import HubStateManager
from worldhub.persistence.commits import CommitQueue
from worldhub.persistence.store import SessionStore
from worldhub.privacy.service import PrivacyService
from worldhub.sync.service import Synchronizer
from worldhub.worlds.cache import WorldCache
from worldhub.worlds.content import ContentProvider, StaticContentProvider
from worldhub.worlds.controller import WorldSessionController


@dataclass
class Services:
    settings: Settings
    store: SessionStore
    commits: CommitQueue
    auth: CodeAuthenticator
    hub: HubStateManager
    synchronizer: Synchronizer
    cache: WorldCache
    controller: WorldSessionController
    privacy: PrivacyService

    async def close(self) -> None:
        await self.commits.close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    redis: aioredis.Redis | None = None,
    content: ContentProvider | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    store = SessionStore(session_factory)
    commits = CommitQueue(
        store,
        timeout=settings.persistence_timeout_seconds,
        base_delay=settings.persistence_retry_base_seconds,
        max_delay=settings.persistence_retry_max_seconds,
        max_attempts=settings.persistence_retry_attempts,
    )
    auth = CodeAuthenticator(store, settings, clock=clock)
    hub = HubStateManager(store, commits, settings, clock=clock)
    synchronizer = Synchronizer(hub, store, settings, redis=redis)
    cache = WorldCache(settings.memory_budget_bytes, settings.hub_reserved_bytes)
    controller = WorldSessionController(
        hub,
        store,
        content or StaticContentProvider(),
        cache,
        settings,
        synchronizer=synchronizer,
        clock=clock,
    )
    privacy = PrivacyService(auth, hub, store, controller, settings)
    return Services(
        settings=settings,
        store=store,
        commits=commits,
        auth=auth,
        hub=hub,
        synchronizer=synchronizer,
        cache=cache,
        controller=controller,
        privacy=privacy,
    )
