"""TTL-based cleanup of finished jobs and their log channels."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from ci_provisioner.jobs.broker import LogStreamBroker
from ci_provisioner.jobs.registry import JobRegistry, utcnow

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Removes terminal jobs whose last update is older than the TTL."""

    def __init__(self, registry: JobRegistry, broker: LogStreamBroker, retention_hours: int = 24):
        self._registry = registry
        self._broker = broker
        self._ttl = timedelta(hours=retention_hours)
        self._task: Optional[asyncio.Task] = None

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Remove expired jobs. Returns count of removed jobs."""
        now = now or utcnow()
        removed = 0
        for job in self._registry.list_jobs():
            if not job.status.is_terminal:
                continue
            if now - job.updated_at <= self._ttl:
                continue
            if self._registry.remove(job.id):
                self._broker.discard(job.id)
                removed += 1
        if removed:
            logger.info("Retention sweep removed %d job(s)", removed)
        return removed

    async def start(self, interval: float) -> None:
        self._task = asyncio.create_task(self._loop(interval))

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()
