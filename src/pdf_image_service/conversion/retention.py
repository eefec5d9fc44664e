"""Periodic purge of jobs older than the retention threshold."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .errors import ConversionServiceError
from .interfaces import StorageGateway
from .models import utcnow

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Deletes every job whose age exceeds the retention threshold, whatever its status.

    The sweeper owns its scheduling task: start() runs one sweep right away
    and then one per interval until stop() is called.
    """

    def __init__(
        self,
        storage: StorageGateway,
        *,
        retention: timedelta = timedelta(days=2),
        interval: timedelta = timedelta(days=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._retention = retention
        self._interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _created_at(self, job_id: str) -> datetime:
        try:
            return self._storage.load_job(job_id).created_at
        except ConversionServiceError:
            # Unreadable record: fall back to the directory timestamp.
            return self._storage.job_mtime(job_id)

    def sweep(self) -> list[str]:
        now = self._clock()
        logger.info("Retention sweep started (retention: %s)", self._retention)
        deleted: list[str] = []
        for job_id in self._storage.list_job_ids():
            try:
                age = now - self._created_at(job_id)
                if age <= self._retention:
                    continue
                self._storage.delete_job(job_id)
            except ConversionServiceError as e:
                logger.error("Retention sweep could not purge %s: %s", job_id, e)
                continue
            deleted.append(job_id)
            logger.info("Deleted %s (%d day(s) old)", job_id, age.days)
        logger.info("Retention sweep finished: %d job(s) deleted", len(deleted))
        return deleted

    async def _loop(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Retention sweep failed")
            await asyncio.sleep(self._interval.total_seconds())

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="retention-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
