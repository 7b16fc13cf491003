import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.exceptions import StorageFault, TaskNotFound
from app.models import PurgeJob, Task, TaskCreate, get_utc_now

logger = logging.getLogger(__name__)


class TaskStore:
    """
    Durable task persistence with soft-delete semantics.

    Every operation opens its own session, so each call is atomic on its own
    and the store can be shared between concurrent requests and the purge
    worker. Lookups raise TaskNotFound; driver errors surface as StorageFault.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"Storage operation failed: {e}")
            raise StorageFault(str(e)) from e

    async def create(self, task_data: TaskCreate) -> Task:
        now = get_utc_now()
        task = Task.model_validate(task_data, update={"created_at": now, "updated_at": now})
        async with self._session() as db:
            async with db.begin():
                db.add(task)
            await db.refresh(task)
        logger.debug("Task %s stored", task.id)
        return task

    async def find_active(self, task_id: uuid.UUID) -> Task:
        async with self._session() as db:
            task = await db.get(Task, task_id)
        if task is None or task.deleted_at is not None:
            raise TaskNotFound(task_id)
        return task

    async def find_any(self, task_id: uuid.UUID) -> Task:
        """Lookup that also sees soft-deleted rows (used by the purge job)."""
        async with self._session() as db:
            task = await db.get(Task, task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    async def list_active(self) -> list[Task]:
        query = (
            select(Task)
            .where(col(Task.deleted_at).is_(None))
            .order_by(col(Task.created_at).desc(), col(Task.id).desc())
        )
        async with self._session() as db:
            result = await db.exec(query)
            return list(result.all())

    async def update(self, task_id: uuid.UUID, fields: dict[str, Any]) -> Task:
        """Apply only the given fields; everything else keeps its stored value."""
        async with self._session() as db:
            async with db.begin():
                task = await db.get(Task, task_id)
                if task is None or task.deleted_at is not None:
                    raise TaskNotFound(task_id)
                task.sqlmodel_update(fields)
                task.updated_at = get_utc_now()
            await db.refresh(task)
        return task

    async def soft_delete(self, task_id: uuid.UUID) -> None:
        # A second call finds no active row and raises TaskNotFound.
        async with self._session() as db:
            async with db.begin():
                task = await db.get(Task, task_id)
                if task is None or task.deleted_at is not None:
                    raise TaskNotFound(task_id)
                now = get_utc_now()
                task.deleted_at = now
                task.updated_at = now

    async def restore(self, task_id: uuid.UUID) -> Task:
        async with self._session() as db:
            async with db.begin():
                task = await db.get(Task, task_id)
                if task is None or task.deleted_at is None:
                    raise TaskNotFound(task_id)
                task.deleted_at = None
                task.updated_at = get_utc_now()
            await db.refresh(task)
        return task

    async def hard_delete(self, task_id: uuid.UUID) -> None:
        async with self._session() as db:
            async with db.begin():
                task = await db.get(Task, task_id)
                if task is None:
                    raise TaskNotFound(task_id)
                await db.delete(task)

    async def hard_delete_if_completed(self, task_id: uuid.UUID) -> bool:
        """
        Delete the row only if it is still completed at this moment.

        The completed check is part of the DELETE itself, so a task reopened
        after a caller's last read survives. Returns False when nothing matched.
        """
        stmt = delete(Task).where(
            col(Task.id) == task_id, col(Task.completed).is_(True)
        )
        async with self._session() as db:
            async with db.begin():
                conn = await db.connection()
                result = await conn.execute(stmt)
        return result.rowcount == 1

    async def toggle_completed(
        self,
        task_id: uuid.UUID,
        on_completed: Callable[[uuid.UUID], PurgeJob] | None = None,
    ) -> Task:
        """
        Flip completed on an active task.

        When the flip lands on completed, the job built by on_completed is
        inserted in the same transaction, so a task is never left completed
        without its purge job (or queued without the flip).
        """
        async with self._session() as db:
            async with db.begin():
                task = await db.get(Task, task_id)
                if task is None or task.deleted_at is not None:
                    raise TaskNotFound(task_id)
                task.completed = not task.completed
                task.updated_at = get_utc_now()
                if task.completed and on_completed is not None:
                    db.add(on_completed(task_id))
            await db.refresh(task)
        return task
