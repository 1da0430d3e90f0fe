"""
Value types shared by the query engine.
"""
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Generic, List, Mapping, Optional, Tuple, TypeVar

T = TypeVar("T")

RESERVED_PARAMS = ("search", "sort", "page", "limit", "select", "populate")
MAX_SEARCH_LENGTH = 100


@dataclass(frozen=True)
class EntityQueryConfig:
    """
    Static per-entity query configuration.

    An empty whitelist means "no restriction"; a non-empty one silently drops
    every field it doesn't name.
    """
    search_fields: Tuple[str, ...] = ()
    sortable_fields: Tuple[str, ...] = ()
    selectable_fields: Tuple[str, ...] = ()
    filterable_fields: Tuple[str, ...] = ()
    default_sort: str = "created_at"
    default_limit: int = 20
    max_limit: int = 100
    enable_text_search: bool = False
    query_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        # Accept lists from callers; store tuples so the config stays hashable
        for name in ("search_fields", "sortable_fields", "selectable_fields", "filterable_fields"):
            object.__setattr__(self, name, tuple(getattr(self, name)))
        if self.default_limit < 1 or self.max_limit < 1:
            raise ValueError("default_limit and max_limit must be positive")
        if self.default_limit > self.max_limit:
            raise ValueError("default_limit cannot exceed max_limit")


@dataclass(frozen=True)
class Pagination:
    page: int
    limit: int
    skip: int

    @classmethod
    def of(cls, page: int, limit: int) -> "Pagination":
        return cls(page=page, limit=limit, skip=(page - 1) * limit)


@dataclass(frozen=True)
class PaginationInfo:
    page: int
    limit: int
    total_count: int
    total_pages: int
    has_next: bool
    has_prev: bool
    start_index: int
    end_index: int

    @classmethod
    def compute(cls, page: int, limit: int, total_count: int) -> "PaginationInfo":
        skip = (page - 1) * limit
        total_pages = math.ceil(total_count / limit)
        return cls(
            page=page,
            limit=limit,
            total_count=total_count,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
            start_index=skip + 1 if total_count > 0 else 0,
            end_index=min(skip + limit, total_count) if total_count > 0 else 0,
        )


@dataclass(frozen=True)
class ParsedQuery:
    """
    The database-independent result of parsing raw parameters.

    ``filter`` is a predicate tree (see ``storefront.query.filters``) or None
    when nothing constrains the query; ``sort`` maps field -> 1 / -1 in
    application order.
    """
    filter: Optional[Any]
    sort: Mapping[str, int]
    pagination: Pagination
    select: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.sort, MappingProxyType):
            object.__setattr__(self, "sort", MappingProxyType(dict(self.sort)))


@dataclass
class PaginatedData(Generic[T]):
    items: List[T]
    pagination: PaginationInfo = field(repr=False)
