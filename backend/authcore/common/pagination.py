"""Page-based pagination for list endpoints."""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from fastapi import Query
from pydantic import BaseModel
from sqlalchemy.orm import Query as ORMQuery

from authcore.core.app_exceptions import INVALID_INPUT, raise_domain_error

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100


class PaginationParams(BaseModel):
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    page: int
    page_size: int
    total: int


def pagination_params(
    page: int = Query(1, ge=1, description="Page number (1-based)"),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, description=f"Page size (max {MAX_PAGE_SIZE})"),
) -> PaginationParams:
    """Oversized pages are refused with INVALID_INPUT rather than clamped."""
    if page_size > MAX_PAGE_SIZE:
        raise_domain_error(INVALID_INPUT, f"page_size must be <= {MAX_PAGE_SIZE}", {"max": MAX_PAGE_SIZE})
    return PaginationParams(page=page, page_size=page_size)


def paginate(query: ORMQuery, params: PaginationParams, *order_by: Any) -> tuple[list, int]:
    """Return (rows for the requested page, total matching rows)."""
    total = query.order_by(None).count()
    rows = query.order_by(*order_by).offset(params.offset).limit(params.page_size).all()
    return rows, total
