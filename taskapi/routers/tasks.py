import logging

from fastapi import APIRouter, Depends, Path, Request, Response, status
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from taskapi.cache.listing import TaskListCache
from taskapi.database import get_db
from taskapi.models import DB_INT_MAX, Task, TaskCreate, TaskResponse, TaskUpdate
from taskapi.repositories.task_repository import SQLTaskStore, TaskStore
from taskapi.schemas import (
    ListQuery,
    PaginationMeta,
    StandardResponse,
    success_response,
)
from taskapi.services.task_service import TaskService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


def get_task_store(db: AsyncSession = Depends(get_db)) -> TaskStore:
    return SQLTaskStore(db)


def get_task_service(
    request: Request, store: TaskStore = Depends(get_task_store)
) -> TaskService:
    state = request.app.state
    settings = state.settings
    listing_cache = TaskListCache(
        store,
        state.cache_backend,
        ttl_seconds=settings.list_cache_ttl_seconds,
        namespace=settings.cache_namespace,
        op_timeout=settings.cache_op_timeout_seconds,
        metrics=state.metrics,
    )
    return TaskService(store, listing_cache, state.metrics)


TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]
TaskId = Annotated[int, Path(ge=1, le=DB_INT_MAX)]


def _task_data(task: Task) -> dict:
    return TaskResponse.model_validate(task).model_dump(mode="json")


@router.post("", response_model=StandardResponse, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, service: TaskServiceDep):
    """Create a new task. Status defaults to pending."""
    logger.info("Incoming task create request")
    task = await service.create_task(task_data)
    logger.info(f"Task created successfully: ID={task.id}")
    return success_response(_task_data(task))


@router.get("", response_model=StandardResponse)
async def list_tasks(request: Request, service: TaskServiceDep):
    """
    Paginated listing, served from the listing cache when possible.

    Query parameters: page, per_page and exact-match filters on title,
    status and assignee_id. Anything else is ignored.
    """
    logger.info("Incoming task list request")
    query = ListQuery.from_params(request.query_params)
    page = await service.list_tasks(query)
    logger.info(f"Task list fetched successfully: total={page.total}")
    return success_response(
        [item.model_dump(mode="json") for item in page.items],
        PaginationMeta.build(query.page, query.per_page, page.total),
    )


@router.get("/{task_id}", response_model=StandardResponse)
async def get_task(task_id: TaskId, service: TaskServiceDep):
    """Get a specific task by ID"""
    logger.info("Incoming task fetch request")
    task = await service.get_task(task_id)
    logger.info(f"Task fetched successfully: ID={task_id}")
    return success_response(_task_data(task))


@router.put("/{task_id}", response_model=StandardResponse)
async def update_task(task_id: TaskId, task_data: TaskUpdate, service: TaskServiceDep):
    logger.info("Incoming task update request")
    task = await service.update_task(task_id, task_data)
    logger.info(f"Task updated successfully: ID={task_id}")
    return success_response(_task_data(task))


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: TaskId, service: TaskServiceDep):
    """Delete a task"""
    logger.info("Incoming task delete request")
    await service.delete_task(task_id)
    logger.info(f"Task deleted successfully: ID={task_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
