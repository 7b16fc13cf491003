import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable

from app.cache.keys import TASK_LIST_KEY, task_key
from app.cache.layer import CacheLayer
from app.core.exceptions import TaskNotFound
from app.models import PurgeJob, get_utc_now
from app.repositories.purge_queue import PurgeQueue
from app.repositories.task_store import TaskStore

logger = logging.getLogger(__name__)


class DeferredDeletionScheduler:
    """
    Hard-deletes completed tasks some delay after they were completed.

    Jobs are not cancelled when a task is toggled back: every job re-reads
    the task when it fires and only purges if it is still completed. Several
    jobs for one task are fine; the first to purge removes the row and the
    rest find nothing.
    """

    def __init__(
        self,
        store: TaskStore,
        queue: PurgeQueue,
        cache: CacheLayer,
        *,
        delay_seconds: float = 600,
        retry_delay_seconds: float = 60,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = get_utc_now,
    ):
        self._store = store
        self._queue = queue
        self._cache = cache
        self.delay_seconds = delay_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.max_attempts = max_attempts
        self._clock = clock

    def _run_at(self, delay: float | None) -> datetime:
        delay = self.delay_seconds if delay is None else delay
        return self._clock() + timedelta(seconds=delay)

    def build_job(self, task_id: uuid.UUID, delay: float | None = None) -> PurgeJob:
        """Unsaved purge job, for callers that insert it in their own transaction."""
        return PurgeJob(task_id=task_id, run_at=self._run_at(delay))

    async def schedule_purge(
        self, task_id: uuid.UUID, delay: float | None = None
    ) -> PurgeJob:
        run_at = self._run_at(delay)
        job = await self._queue.enqueue(task_id, run_at)
        logger.info("Purge of task %s scheduled for %s", task_id, run_at.isoformat())
        return job

    async def purge(self, task_id: uuid.UUID) -> bool:
        """Hard-delete the task if it still exists and is still completed."""
        try:
            task = await self._store.find_any(task_id)
        except TaskNotFound:
            logger.debug("Purge skipped, task %s already gone", task_id)
            return False

        if not task.completed:
            logger.info("Purge skipped, task %s is no longer completed", task_id)
            return False

        # Re-checked inside the DELETE: a reopen after the read above wins,
        # and so does another job for the same task that got there first.
        if not await self._store.hard_delete_if_completed(task_id):
            logger.info("Purge skipped, task %s changed before delete", task_id)
            return False

        await self._cache.invalidate(TASK_LIST_KEY)
        await self._cache.invalidate(task_key(task_id))
        logger.info("Task %s purged", task_id)
        return True

    async def run_due(self, now: datetime | None = None, limit: int = 32) -> int:
        """Run every job whose time has come. Returns how many jobs finished."""
        now = now or self._clock()
        lease_until = now + timedelta(seconds=self.retry_delay_seconds)
        finished = 0

        for job in await self._queue.due(now, limit=limit):
            if not await self._queue.claim(job, lease_until):
                continue

            try:
                await self.purge(job.task_id)
            except Exception:
                logger.exception(
                    "Purge job %s for task %s failed (attempt %s/%s)",
                    job.id,
                    job.task_id,
                    job.attempts + 1,
                    self.max_attempts,
                )
                if job.attempts + 1 >= self.max_attempts:
                    logger.error("Purge job %s dropped after %s attempts", job.id, self.max_attempts)
                    await self._queue.complete(job.id)
                continue

            await self._queue.complete(job.id)
            finished += 1

        return finished

    async def run_worker(self, interval_seconds: float = 5.0, batch_limit: int = 32) -> None:
        """
        Polling loop for the purge queue.

        To stop the worker, cancel the coroutine/task.
        """
        sleep_s = max(0.5, float(interval_seconds))
        logger.info("Purge worker started (interval=%ss)", sleep_s)

        while True:
            try:
                await self.run_due(limit=batch_limit)
            except Exception:
                logger.exception("Purge worker iteration failed")

            await asyncio.sleep(sleep_s)
