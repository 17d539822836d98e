class TaskNotFoundError(Exception):
    """Raised when the store has no task with the requested id."""

    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task with id {task_id} not found")


class TaskStoreError(Exception):
    """
    Any other failure reported by the task store (connectivity, constraints).

    committed is True when the write already reached the database and only a
    later step (reloading the row) failed.
    """

    def __init__(self, message: str, committed: bool = False):
        self.committed = committed
        super().__init__(message)


class TaskValidationError(Exception):
    """Rejected input: invalid status, empty title, malformed filter."""

    def __init__(self, *errors: str):
        self.errors = list(errors)
        super().__init__("; ".join(errors))


class CacheBackendError(Exception):
    """Cache backend unreachable or erroring. Never leaves the listing cache."""
