import uuid

TASK_LIST_KEY = "tasks:index"


def task_key(task_id: uuid.UUID | str) -> str:
    return f"task:{task_id}"
