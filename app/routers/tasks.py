import uuid

from fastapi import APIRouter, status

from app.dependencies import TaskServiceDep
from app.models import Envelope, TaskCreate, TaskRead, TaskUpdate

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("", response_model=Envelope[list[TaskRead]])
async def list_tasks(service: TaskServiceDep):
    """List active tasks, newest first"""
    tasks = await service.list_tasks()
    return Envelope(data=tasks, message="Tasks listed successfully.")


@router.post(
    "", response_model=Envelope[TaskRead], status_code=status.HTTP_201_CREATED
)
async def create_task(task_data: TaskCreate, service: TaskServiceDep):
    """Create a new task"""
    task = await service.create_task(task_data)
    return Envelope(data=task, message="Task created successfully.")


@router.get("/{task_id}", response_model=Envelope[TaskRead])
async def get_task(task_id: uuid.UUID, service: TaskServiceDep):
    """Get a specific task by ID"""
    task = await service.get_task(task_id)
    return Envelope(data=task, message="Task found.")


@router.patch("/{task_id}", response_model=Envelope[TaskRead])
@router.put("/{task_id}", response_model=Envelope[TaskRead])
async def update_task(task_id: uuid.UUID, task_data: TaskUpdate, service: TaskServiceDep):
    task = await service.update_task(task_id, task_data)
    return Envelope(data=task, message="Task updated successfully.")


@router.delete("/{task_id}", response_model=Envelope[None])
async def delete_task(task_id: uuid.UUID, service: TaskServiceDep):
    """Soft-delete a task"""
    await service.delete_task(task_id)
    return Envelope(message="Task deleted successfully.")


@router.patch("/{task_id}/toggle", response_model=Envelope[TaskRead])
async def toggle_task(task_id: uuid.UUID, service: TaskServiceDep):
    """Flip the completion flag; completing schedules a deferred purge"""
    task = await service.toggle_task(task_id)
    message = (
        "Task marked as completed." if task.completed else "Task marked as not completed."
    )
    return Envelope(data=task, message=message)


@router.post("/{task_id}/restore", response_model=Envelope[TaskRead])
async def restore_task(task_id: uuid.UUID, service: TaskServiceDep):
    """Bring back a soft-deleted task that has not been purged yet"""
    task = await service.restore_task(task_id)
    return Envelope(data=task, message="Task restored successfully.")
