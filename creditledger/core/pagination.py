"""Limit/offset pages for transaction listings (newest first)."""

from typing import Generic, Sequence, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

MAX_PAGE_SIZE = 200


class Page(BaseModel, Generic[T]):
    items: list[T]
    limit: int
    offset: int
    total: int
    has_more: bool = False


def paginate(limit: int, offset: int, max_limit: int = MAX_PAGE_SIZE) -> tuple[int, int]:
    """Clamp limit/offset; return (limit, offset)."""
    return max(1, min(limit, max_limit)), max(0, offset)


def page_of(items: Sequence[T], total: int, limit: int, offset: int) -> Page[T]:
    return Page(items=list(items), limit=limit, offset=offset, total=total, has_more=offset + len(items) < total)
