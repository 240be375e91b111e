"""Result containers shared by the listing functions.

History queries return a PaginatedResult. Callers that want everything
pass pagination=None and get a single page holding every row.
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, TypeVar

T = TypeVar("T")

DEFAULT_PER_PAGE = 50
MAX_PER_PAGE = 1000


@dataclass
class PaginationParams:
    """Which page of a listing to return.

    Attributes:
        page: 1-indexed page number
        per_page: Page size, 1 to 1000

    Raises:
        ValueError: If either value is out of range
    """

    page: int = 1
    per_page: int = DEFAULT_PER_PAGE

    def __post_init__(self) -> None:
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if self.per_page < 1:
            raise ValueError("per_page must be >= 1")
        if self.per_page > MAX_PER_PAGE:
            raise ValueError(f"per_page must be <= {MAX_PER_PAGE}")

    def offset(self) -> int:
        """Rows to skip before this page."""
        return (self.page - 1) * self.per_page


@dataclass
class PaginatedResult(Generic[T]):
    """Rows of one page and the counts needed to navigate the rest.

    Example:
        history = get_transfer_history(vessel_id=3, pagination=PaginationParams(page=2))
        for transfer in history.items:
            ...
        if history.has_next:
            ...
    """

    items: List[T]
    total: int
    page: int
    per_page: int

    @property
    def pages(self) -> int:
        """Page count; an empty listing still has one (empty) page."""
        return max(1, -(-self.total // self.per_page))

    @property
    def has_next(self) -> bool:
        return self.page < self.pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @classmethod
    def single_page(cls, items: List[T]) -> "PaginatedResult[T]":
        return cls(items=items, total=len(items), page=1, per_page=len(items) or 1)


def paginate(
    query: Any,
    pagination: Optional[PaginationParams],
    convert: Callable[[Any], T],
) -> PaginatedResult[T]:
    """
    Run an ordered ORM query for one page (or every row) and convert each row.

    Args:
        query: SQLAlchemy Query, already filtered and ordered
        pagination: Page to fetch, or None for all rows
        convert: Applied to each row (usually a to_dict)
    """
    if pagination is None:
        return PaginatedResult.single_page([convert(row) for row in query.all()])

    total = query.count()
    rows = query.offset(pagination.offset()).limit(pagination.per_page).all()
    return PaginatedResult(
        items=[convert(row) for row in rows],
        total=total,
        page=pagination.page,
        per_page=pagination.per_page,
    )
