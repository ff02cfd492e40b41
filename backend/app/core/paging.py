from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.orm import Query

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200


def clamp_paging(page: int | None, page_size: int | None) -> tuple[int, int]:
    safe_page = max(1, page or 1)
    safe_page_size = max(1, min(page_size or DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE))
    return safe_page, safe_page_size


def paginate_query(
    query: Query,
    *,
    page: int | None,
    page_size: int | None = DEFAULT_PAGE_SIZE,
    serializer: Callable[[T], dict],
) -> tuple[list[dict], int, int, int]:
    safe_page, safe_page_size = clamp_paging(page, page_size)
    total = query.count()
    rows = query.offset((safe_page - 1) * safe_page_size).limit(safe_page_size).all()
    return [serializer(row) for row in rows], total, safe_page, safe_page_size
