import logging
import uuid

from pydantic import TypeAdapter

from app.cache.decorators import cached, invalidates
from app.cache.keys import TASK_LIST_KEY, task_key
from app.cache.layer import CacheLayer
from app.models import TaskCreate, TaskRead, TaskUpdate
from app.repositories.task_store import TaskStore
from app.services.purge_scheduler import DeferredDeletionScheduler

logger = logging.getLogger(__name__)

_task_adapter = TypeAdapter(TaskRead)
_task_list_adapter = TypeAdapter(list[TaskRead])


def _list_key(*_, **__) -> str:
    return TASK_LIST_KEY


def _task_key(task_id, *_, **__) -> str:
    return task_key(task_id)


class TaskService:
    """
    Task lifecycle operations used by the API layer.

    Reads go through the cache; writes go straight to the store and then
    drop the list key and the task's own key before returning. TaskNotFound
    and StorageFault from the store propagate unchanged.
    """

    def __init__(
        self,
        store: TaskStore,
        cache: CacheLayer,
        scheduler: DeferredDeletionScheduler,
        cache_ttl: float = 60,
    ):
        self.store = store
        self.cache = cache
        self.scheduler = scheduler
        self.cache_ttl = cache_ttl

    @cached(_list_key, _task_list_adapter)
    async def list_tasks(self) -> list[TaskRead]:
        tasks = await self.store.list_active()
        return [TaskRead.model_validate(task) for task in tasks]

    @cached(_task_key, _task_adapter)
    async def get_task(self, task_id: uuid.UUID) -> TaskRead:
        task = await self.store.find_active(task_id)
        return TaskRead.model_validate(task)

    @invalidates(_list_key)
    async def create_task(self, task_data: TaskCreate) -> TaskRead:
        task = await self.store.create(task_data)
        logger.info("Task %s created", task.id)
        return TaskRead.model_validate(task)

    @invalidates(_list_key, _task_key)
    async def update_task(self, task_id: uuid.UUID, task_data: TaskUpdate) -> TaskRead:
        update_data = task_data.model_dump(exclude_unset=True)
        task = await self.store.update(task_id, update_data)
        logger.info("Task %s updated fields=%s", task_id, sorted(update_data))
        return TaskRead.model_validate(task)

    @invalidates(_list_key, _task_key)
    async def delete_task(self, task_id: uuid.UUID) -> bool:
        await self.store.soft_delete(task_id)
        logger.info("Task %s soft-deleted", task_id)
        return True

    @invalidates(_list_key, _task_key)
    async def restore_task(self, task_id: uuid.UUID) -> TaskRead:
        task = await self.store.restore(task_id)
        logger.info("Task %s restored", task_id)
        return TaskRead.model_validate(task)

    @invalidates(_list_key, _task_key)
    async def toggle_task(self, task_id: uuid.UUID) -> TaskRead:
        # Completing queues the purge in the same transaction as the flip.
        # Toggling back needs no cancel: the purge re-checks on fire.
        task = await self.store.toggle_completed(task_id, on_completed=self.scheduler.build_job)
        logger.info("Task %s toggled completed=%s", task_id, task.completed)
        return TaskRead.model_validate(task)
