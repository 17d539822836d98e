import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskapi.core.errors import TaskNotFoundError, TaskStoreError, TaskValidationError
from taskapi.models import Task, TaskStatus

logger = logging.getLogger(__name__)


class TaskStore(Protocol):
    async def create(self, task: Task) -> Task: ...

    async def get_by_id(self, task_id: int) -> Task: ...

    async def update(self, task_id: int, changes: Mapping[str, Any]) -> Task: ...

    async def delete(self, task_id: int) -> None: ...

    async def list(
        self, filters: Mapping[str, str], page: int, per_page: int
    ) -> tuple[list[Task], int]: ...


class SQLTaskStore:
    """TaskStore over a SQLModel async session. One instance per request."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, task: Task) -> Task:
        now = datetime.now(timezone.utc)
        task.created_at = now
        task.updated_at = now
        self.db.add(task)
        await self._commit("create")
        await self._refresh(task, "create")
        return task

    async def get_by_id(self, task_id: int) -> Task:
        try:
            task = await self.db.get(Task, task_id)
        except SQLAlchemyError as e:
            raise TaskStoreError(f"get task {task_id} failed: {e}") from e
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def update(self, task_id: int, changes: Mapping[str, Any]) -> Task:
        task = await self.get_by_id(task_id)
        task.sqlmodel_update(dict(changes))
        task.updated_at = datetime.now(timezone.utc)
        await self._commit("update")
        await self._refresh(task, "update")
        return task

    async def delete(self, task_id: int) -> None:
        task = await self.get_by_id(task_id)
        await self.db.delete(task)
        await self._commit("delete")

    async def list(
        self, filters: Mapping[str, str], page: int, per_page: int
    ) -> tuple[list[Task], int]:
        conditions = _filter_conditions(filters)

        count_query = select(func.count()).select_from(Task)
        query = select(Task)
        for condition in conditions:
            count_query = count_query.where(condition)
            query = query.where(condition)

        query = (
            query.order_by(Task.created_at.desc(), Task.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )

        try:
            total = (await self.db.exec(count_query)).one()
            tasks = (await self.db.exec(query)).all()
        except SQLAlchemyError as e:
            raise TaskStoreError(f"list tasks failed: {e}") from e
        return list(tasks), total

    async def _commit(self, operation: str):
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Task {operation} failed, transaction rolled back: {e}")
            raise TaskStoreError(f"{operation} task failed: {e}") from e

    async def _refresh(self, task: Task, operation: str):
        try:
            await self.db.refresh(task)
        except SQLAlchemyError as e:
            logger.error(f"Task {operation} committed but reload failed: {e}")
            raise TaskStoreError(
                f"{operation} task committed, reload failed: {e}", committed=True
            ) from e


def _filter_conditions(filters: Mapping[str, str]) -> list:
    conditions = []
    for field, value in filters.items():
        if field == "title":
            conditions.append(Task.title == value)
        elif field == "status":
            try:
                conditions.append(Task.status == TaskStatus(value))
            except ValueError:
                raise TaskValidationError("Invalid task status")
        elif field == "assignee_id":
            try:
                conditions.append(Task.assignee_id == int(value))
            except ValueError:
                raise TaskValidationError("assignee_id must be an integer")
    return conditions
