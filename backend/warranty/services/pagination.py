# Overview: Page/size pagination shared by list endpoints.

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..errors import ValidationError

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class PageRequest:
    page: int = 1
    size: int = DEFAULT_PAGE_SIZE

    def __post_init__(self):
        if self.page < 1:
            raise ValidationError("page must be >= 1", details={"field": "page"})
        if not 1 <= self.size <= MAX_PAGE_SIZE:
            raise ValidationError(f"size must be between 1 and {MAX_PAGE_SIZE}", details={"field": "size"})

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.size


@dataclass(frozen=True)
class Page:
    items: list[Any]
    page: int
    size: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.size - 1) // self.size if self.total else 0

    def pagination(self) -> dict:
        return {"page": self.page, "size": self.size, "total": self.total, "pages": self.pages}


def paginate(query, page_request: PageRequest) -> Page:
    """Run count + slice on an already ordered query."""
    total = query.order_by(None).count()
    items = query.limit(page_request.size).offset(page_request.offset).all()
    return Page(items=items, page=page_request.page, size=page_request.size, total=total)
