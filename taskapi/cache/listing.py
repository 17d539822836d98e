import asyncio
import logging
from typing import Any, Mapping

from pydantic import ValidationError

from taskapi.cache.keys import encode_listing_key, listing_prefix
from taskapi.cache.layer import CacheBackend
from taskapi.core.errors import CacheBackendError, TaskStoreError
from taskapi.core.metrics import MetricsRecorder, NullMetrics
from taskapi.models import Task, TaskPage, TaskResponse
from taskapi.repositories.task_repository import TaskStore
from taskapi.schemas import ListQuery

logger = logging.getLogger(__name__)

CACHE_EVENTS = "listing_cache_events_total"


class TaskListCache:
    """
    Cache-aside coordinator for task listings.

    Reads: cache -> store on miss -> best-effort populate.
    Writes: store first, then drop every cached listing (coarse invalidation).

    Cache failures never escape this class: a failed read is a miss, a failed
    populate or invalidation is logged. Store failures always propagate.
    Holds no mutable state, so one instance per request is fine.
    """

    def __init__(
        self,
        store: TaskStore,
        backend: CacheBackend,
        ttl_seconds: int = 600,
        namespace: str = "",
        op_timeout: float | None = 1.0,
        metrics: MetricsRecorder | None = None,
    ):
        self.store = store
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace
        self.op_timeout = op_timeout
        self.metrics = metrics or NullMetrics()

    async def list_tasks(self, query: ListQuery) -> TaskPage:
        key = encode_listing_key(query, self.namespace)

        cached = await self._read(key)
        if cached is not None:
            self.metrics.increment(CACHE_EVENTS, event="hit")
            logger.debug(f"Listing cache hit: {key}")
            return cached

        self.metrics.increment(CACHE_EVENTS, event="miss")
        tasks, total = await self.store.list(query.filters, query.page, query.per_page)
        page = TaskPage(
            items=[TaskResponse.model_validate(task) for task in tasks], total=total
        )

        try:
            await self._call(self.backend.set(key, page.model_dump_json(), self.ttl_seconds))
        except (CacheBackendError, asyncio.TimeoutError) as e:
            self.metrics.increment(CACHE_EVENTS, event="error")
            logger.warning(f"Listing cache populate failed for {key}: {e!r}")

        return page

    async def create_task(self, task: Task) -> Task:
        return await self._mutate(self.store.create(task))

    async def update_task(self, task_id: int, changes: Mapping[str, Any]) -> Task:
        return await self._mutate(self.store.update(task_id, changes))

    async def delete_task(self, task_id: int) -> None:
        await self._mutate(self.store.delete(task_id))

    async def _mutate(self, write):
        # A store error after commit still changed the data, so listings go too.
        try:
            result = await write
        except TaskStoreError as e:
            if e.committed:
                await self.invalidate()
            raise
        await self.invalidate()
        return result

    async def invalidate(self) -> None:
        """Drop all cached listings. Never raises."""
        prefix = listing_prefix(self.namespace)
        try:
            deleted = await self._call(self.backend.delete_prefix(prefix))
        except (CacheBackendError, asyncio.TimeoutError) as e:
            self.metrics.increment(CACHE_EVENTS, event="invalidate_error")
            logger.warning(
                f"Listing cache invalidation failed, listings may be stale "
                f"for up to {self.ttl_seconds}s: {e!r}"
            )
            return
        self.metrics.increment(CACHE_EVENTS, event="invalidate")
        logger.debug(f"Invalidated {deleted} cached listings")

    async def _read(self, key: str) -> TaskPage | None:
        try:
            raw = await self._call(self.backend.get(key))
        except (CacheBackendError, asyncio.TimeoutError) as e:
            self.metrics.increment(CACHE_EVENTS, event="error")
            logger.warning(f"Listing cache read failed for {key}, using store: {e!r}")
            return None

        if raw is None:
            return None

        try:
            return TaskPage.model_validate_json(raw)
        except ValidationError as e:
            self.metrics.increment(CACHE_EVENTS, event="error")
            logger.warning(f"Discarding undecodable listing cache entry {key}: {e}")
            return None

    async def _call(self, awaitable):
        if self.op_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.op_timeout)
