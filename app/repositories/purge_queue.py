import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.exceptions import StorageFault
from app.models import PurgeJob

logger = logging.getLogger(__name__)


class PurgeQueue:
    """
    Durable delayed-work queue for purge jobs, backed by the purge_jobs table.

    A job is a task id plus a not-before timestamp. Workers claim jobs with an
    optimistic update on the attempts counter, which also pushes run_at out so
    the claim acts as a lease: a worker that dies mid-job leaves the row to be
    picked up again once the lease expires.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"Purge queue operation failed: {e}")
            raise StorageFault(str(e)) from e

    async def enqueue(self, task_id: uuid.UUID, run_at: datetime) -> PurgeJob:
        job = PurgeJob(task_id=task_id, run_at=run_at)
        async with self._session() as db:
            db.add(job)
            await db.commit()
            await db.refresh(job)
        return job

    async def due(self, now: datetime, limit: int = 32) -> list[PurgeJob]:
        query = (
            select(PurgeJob)
            .where(col(PurgeJob.run_at) <= now)
            .order_by(col(PurgeJob.run_at), col(PurgeJob.id))
            .limit(limit)
        )
        async with self._session() as db:
            result = await db.exec(query)
            return list(result.all())

    async def claim(self, job: PurgeJob, lease_until: datetime) -> bool:
        """Claim a job seen by due(); False if another worker got there first."""
        stmt = (
            update(PurgeJob)
            .where(col(PurgeJob.id) == job.id, col(PurgeJob.attempts) == job.attempts)
            .values(attempts=job.attempts + 1, run_at=lease_until)
        )
        async with self._session() as db:
            conn = await db.connection()
            result = await conn.execute(stmt)
            await db.commit()
        return result.rowcount == 1

    async def complete(self, job_id: int) -> None:
        async with self._session() as db:
            conn = await db.connection()
            await conn.execute(delete(PurgeJob).where(col(PurgeJob.id) == job_id))
            await db.commit()

    async def pending_for(self, task_id: uuid.UUID) -> list[PurgeJob]:
        query = (
            select(PurgeJob)
            .where(col(PurgeJob.task_id) == task_id)
            .order_by(col(PurgeJob.run_at))
        )
        async with self._session() as db:
            result = await db.exec(query)
            return list(result.all())
