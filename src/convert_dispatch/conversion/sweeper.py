"""
Retention sweeper.

Periodically removes jobs whose creation time is older than the retention
window, together with their upload and output files. Sweeps never overlap.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..logging_config import get_logger
from .errors import StorageError
from .interfaces import StorageGateway
from .jobs import JobStore

logger = get_logger(name=__name__)


@dataclass(frozen=True)
class SweepReport:
    jobs_removed: int
    bytes_freed: int
    cutoff: datetime


class RetentionSweeper:
    def __init__(self, store: JobStore, storage: StorageGateway) -> None:
        self._store = store
        self._storage = storage
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def sweeping(self) -> bool:
        return self._lock.locked()

    async def sweep(self, max_age: timedelta, now: datetime | None = None) -> SweepReport | None:
        """Remove every job created before now - max_age.

        Returns None without doing anything if another sweep is in progress.
        """
        if self._lock.locked():
            logger.info("Sweep already in progress; skipping")
            return None
        async with self._lock:
            cutoff = (now or self._store.now()) - max_age
            removed = 0
            freed = 0
            for job in self._store.expired(cutoff):
                if self._store.discard(job.id) is None:
                    continue
                removed += 1
                try:
                    freed += await asyncio.to_thread(self._storage.remove_job_files, job.owner, job.id)
                except StorageError as e:
                    logger.error("Could not remove files of expired job {}: {}", job.id, e)
            if removed:
                logger.info("Retention sweep removed {} jobs, freed {} bytes", removed, freed)
            return SweepReport(jobs_removed=removed, bytes_freed=freed, cutoff=cutoff)

    def start(self, interval: float, max_age: timedelta) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(interval, max_age))
        logger.info("Retention sweeper every {}s, max age {}", interval, max_age)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self, interval: float, max_age: timedelta) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep(max_age)
            except Exception:
                logger.exception("Retention sweep failed")
