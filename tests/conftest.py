from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from taskapi.cache.layer import MemoryCacheBackend
from taskapi.cache.listing import TaskListCache
from taskapi.core.errors import CacheBackendError, TaskNotFoundError
from taskapi.models import Task, TaskStatus
from taskapi.services.task_service import TaskService


class InMemoryTaskStore:
    """TaskStore fake. Counts calls and can be told to fail."""

    def __init__(self):
        self.tasks: dict[int, Task] = {}
        self.calls: dict[str, int] = {}
        self.fail_with: Exception | None = None
        self._next_id = 1

    def _record(self, name: str):
        self.calls[name] = self.calls.get(name, 0) + 1
        if self.fail_with is not None:
            raise self.fail_with

    async def create(self, task: Task) -> Task:
        self._record("create")
        now = datetime.now(timezone.utc)
        task.id = self._next_id
        task.created_at = now
        task.updated_at = now
        self._next_id += 1
        self.tasks[task.id] = task
        return task

    async def get_by_id(self, task_id: int) -> Task:
        self._record("get_by_id")
        if task_id not in self.tasks:
            raise TaskNotFoundError(task_id)
        return self.tasks[task_id]

    async def update(self, task_id: int, changes) -> Task:
        self._record("update")
        if task_id not in self.tasks:
            raise TaskNotFoundError(task_id)
        task = self.tasks[task_id]
        for field, value in changes.items():
            setattr(task, field, value)
        task.updated_at = datetime.now(timezone.utc)
        return task

    async def delete(self, task_id: int) -> None:
        self._record("delete")
        if task_id not in self.tasks:
            raise TaskNotFoundError(task_id)
        del self.tasks[task_id]

    async def list(self, filters, page: int, per_page: int):
        self._record("list")
        matching = [
            task
            for task in self.tasks.values()
            if all(_field_value(task, field) == value for field, value in filters.items())
        ]
        matching.sort(key=lambda task: (task.created_at, task.id), reverse=True)
        offset = (page - 1) * per_page
        return matching[offset : offset + per_page], len(matching)


def _field_value(task: Task, field: str) -> str:
    value = getattr(task, field)
    if isinstance(value, TaskStatus):
        return value.value
    return str(value)


class FailingCacheBackend:
    """Every operation fails as if Redis were unreachable."""

    def __init__(self):
        self.calls = 0

    async def _fail(self):
        self.calls += 1
        raise CacheBackendError("connection refused")

    async def get(self, key):
        await self._fail()

    async def set(self, key, value, ttl_seconds):
        await self._fail()

    async def delete(self, key):
        await self._fail()

    async def delete_prefix(self, prefix):
        await self._fail()


class HangingCacheBackend:
    """Every operation blocks far longer than any sane cache timeout."""

    async def _hang(self):
        await asyncio.sleep(10)

    async def get(self, key):
        await self._hang()

    async def set(self, key, value, ttl_seconds):
        await self._hang()

    async def delete(self, key):
        await self._hang()

    async def delete_prefix(self, prefix):
        await self._hang()


class RecordingMetrics:
    def __init__(self):
        self.increments: list[tuple[str, float, dict]] = []
        self.observations: list[tuple[str, float, dict]] = []

    def increment(self, name, amount=1, **labels):
        self.increments.append((name, amount, labels))

    def observe(self, name, value, **labels):
        self.observations.append((name, value, labels))

    def count(self, name, **labels) -> float:
        return sum(
            amount
            for recorded, amount, recorded_labels in self.increments
            if recorded == name and all(recorded_labels.get(k) == v for k, v in labels.items())
        )


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def backend() -> MemoryCacheBackend:
    return MemoryCacheBackend(maxsize=128)


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def listing_cache(store, backend, metrics) -> TaskListCache:
    return TaskListCache(store, backend, ttl_seconds=600, namespace="test:", metrics=metrics)


@pytest.fixture
def service(store, listing_cache, metrics) -> TaskService:
    return TaskService(store, listing_cache, metrics)
