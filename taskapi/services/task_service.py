import time
from contextlib import asynccontextmanager

from taskapi.cache.listing import TaskListCache
from taskapi.core.errors import TaskValidationError
from taskapi.core.metrics import MetricsRecorder, NullMetrics
from taskapi.models import Task, TaskCreate, TaskPage, TaskStatus, TaskUpdate
from taskapi.repositories.task_repository import TaskStore
from taskapi.schemas import ListQuery

SERVICE_LABEL = "task_service"


def validate_status(value: str | None, required: bool = False) -> TaskStatus:
    """Resolve a raw status. An unset one defaults to pending unless required."""
    if value is None or value == "":
        if required:
            raise TaskValidationError("Status is required")
        return TaskStatus.PENDING
    try:
        return TaskStatus(value)
    except ValueError:
        raise TaskValidationError("Invalid task status")


def validate_title(value: str) -> str:
    if not value or not value.strip():
        raise TaskValidationError("Title is required")
    return value


class TaskService:
    """
    Listings and writes go through the listing cache; point reads hit the
    store directly. Every call is timed into request_latency_seconds.
    """

    def __init__(
        self,
        store: TaskStore,
        listing_cache: TaskListCache,
        metrics: MetricsRecorder | None = None,
    ):
        self.store = store
        self.listing_cache = listing_cache
        self.metrics = metrics or NullMetrics()

    async def create_task(self, task_data: TaskCreate) -> Task:
        title = validate_title(task_data.title)
        status = validate_status(task_data.status)
        task = Task(
            title=title,
            description=task_data.description,
            status=status,
            assignee_id=task_data.assignee_id,
        )
        async with self._timed("POST"):
            created = await self.listing_cache.create_task(task)
        self.metrics.increment("tasks_created_total", service=SERVICE_LABEL)
        return created

    async def get_task(self, task_id: int) -> Task:
        async with self._timed("GET"):
            return await self.store.get_by_id(task_id)

    async def list_tasks(self, query: ListQuery) -> TaskPage:
        async with self._timed("GET"):
            return await self.listing_cache.list_tasks(query)

    async def update_task(self, task_id: int, task_data: TaskUpdate) -> Task:
        changes = {
            "title": validate_title(task_data.title),
            "description": task_data.description,
            "status": validate_status(task_data.status, required=True),
            "assignee_id": task_data.assignee_id,
        }
        async with self._timed("PUT"):
            return await self.listing_cache.update_task(task_id, changes)

    async def delete_task(self, task_id: int) -> None:
        async with self._timed("DELETE"):
            await self.listing_cache.delete_task(task_id)
        self.metrics.increment("tasks_deleted_total", service=SERVICE_LABEL)

    @asynccontextmanager
    async def _timed(self, method: str):
        start = time.perf_counter()
        status = "success"
        try:
            yield
        except Exception:
            status = "error"
            raise
        finally:
            self.metrics.observe(
                "request_latency_seconds",
                time.perf_counter() - start,
                method=method,
                status=status,
                service=SERVICE_LABEL,
            )
