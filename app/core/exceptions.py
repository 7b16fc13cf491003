class TaskManagerError(Exception):
    """Base class for errors raised by the task core."""


class TaskNotFound(TaskManagerError):
    def __init__(self, task_id):
        self.task_id = task_id
        super().__init__(f"Task with id {task_id} not found")


class StorageFault(TaskManagerError):
    """The persistence layer failed. The original error is chained as __cause__."""
