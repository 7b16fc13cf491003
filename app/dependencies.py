from fastapi import Depends, Request
from typing_extensions import Annotated

from app.services.task_service import TaskService


def get_task_service(request: Request) -> TaskService:
    return request.app.state.task_service


TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]
