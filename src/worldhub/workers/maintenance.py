"""Periodic maintenance sweep.

- idle leases past expiry are released and their worlds marked abandoned
- sessions inactive past the retention window are deleted outright
- applied deltas older than the retention window are pruned from the log
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import structlog

from worldhub.errors import PersistenceUnavailable
from worldhub.services import Services

logger = structlog.get_logger()


class MaintenanceSweeper:
    def __init__(self, services: Services) -> None:
        self.services = services
        self._running = False

    async def run_once(self, now: datetime | None = None) -> dict[str, int]:
        services = self.services
        now = now or services.hub.now()
        retention = timedelta(days=services.settings.session_retention_days)

        leases = await services.controller.expire_idle_leases(now)

        purged = 0
        for session_id in await services.store.expired_session_ids(now):
            state = await services.hub.find(session_id)
            if state is not None and state.expires_at > now:
                continue
            await services.privacy.purge(session_id)
            purged += 1
            logger.info("session_retention_expired", session_id=session_id)

        pruned = await services.store.prune_applied_deltas(now - retention)

        summary = {"leases_expired": leases, "sessions_purged": purged, "deltas_pruned": pruned}
        if any(summary.values()):
            logger.info("maintenance_sweep", **summary)
        return summary

    async def run_forever(self) -> None:
        interval = self.services.settings.maintenance_interval_seconds
        self._running = True
        logger.info("maintenance_started", interval=interval)
        while self._running:
            try:
                await self.run_once()
            except PersistenceUnavailable:
                logger.warning("maintenance_skipped", reason="persistence_unavailable")
            except Exception:
                logger.exception("maintenance_failed")
            await asyncio.sleep(interval)

    def stop(self) -> None:
        self._running = False
