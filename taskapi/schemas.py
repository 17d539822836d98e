import math
from typing import Any, Mapping

from pydantic import BaseModel, Field

from taskapi.core.errors import TaskValidationError
from taskapi.models import DB_INT_MAX, DB_INT_MIN, TaskStatus

OK = "ok"
FAIL = "fail"

PAGE = "page"
PER_PAGE = "per_page"
DEFAULT_PAGE = 1
DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100

FILTER_FIELDS = ("title", "status", "assignee_id")


class ListQuery(BaseModel):
    """Exact-match filters plus offset pagination for a task listing."""

    filters: dict[str, str] = Field(default_factory=dict)
    page: int = Field(default=DEFAULT_PAGE, ge=1)
    per_page: int = Field(default=DEFAULT_PER_PAGE, ge=1)

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> "ListQuery":
        """
        Build a query from raw query-string parameters.

        Unknown parameters are dropped so they never leak into cache keys.
        Filter values are normalized: status must be a known value and
        assignee_id must be an integer ("05" and "5" are the same filter).
        """
        errors: list[str] = []
        filters: dict[str, str] = {}

        page = _parse_positive_int(params.get(PAGE), PAGE, DEFAULT_PAGE, DB_INT_MAX, errors)
        per_page = _parse_positive_int(
            params.get(PER_PAGE), PER_PAGE, DEFAULT_PER_PAGE, MAX_PER_PAGE, errors
        )

        for field in FILTER_FIELDS:
            value = params.get(field)
            if value is None:
                continue
            if field == "status" and value not in TaskStatus.values():
                errors.append("Invalid task status")
                continue
            if field == "assignee_id":
                try:
                    assignee_id = int(value)
                except ValueError:
                    errors.append("assignee_id must be an integer")
                    continue
                if not DB_INT_MIN <= assignee_id <= DB_INT_MAX:
                    errors.append("assignee_id is out of range")
                    continue
                value = str(assignee_id)
            filters[field] = value

        if errors:
            raise TaskValidationError(*errors)

        return cls(filters=filters, page=page, per_page=per_page)


def _parse_positive_int(
    raw: str | None, name: str, default: int, maximum: int, errors: list[str]
) -> int:
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        errors.append(f"{name} must be an integer")
        return default
    if value < 1:
        errors.append(f"{name} must be at least 1")
        return default
    if value > maximum:
        errors.append(f"{name} must be at most {maximum}")
        return default
    return value


class PaginationMeta(BaseModel):
    page: int
    per_page: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, per_page: int, total: int) -> "PaginationMeta":
        return cls(
            page=page,
            per_page=per_page,
            total=total,
            total_pages=math.ceil(total / per_page) if per_page else 0,
        )


class StandardResponse(BaseModel):
    data: Any = None
    meta: PaginationMeta | None = None
    message: str
    errors: list[str] | None = None
    status: str


def success_response(data: Any, meta: PaginationMeta | None = None) -> StandardResponse:
    return StandardResponse(data=data, meta=meta, message="success", status=OK)


def failed_response(message: str, errors: list[str] | None = None) -> StandardResponse:
    return StandardResponse(data=None, message=message, errors=errors, status=FAIL)


NOT_FOUND = failed_response("Not Found!")
INTERNAL_SERVER_ERROR = failed_response("Internal Server Error")
