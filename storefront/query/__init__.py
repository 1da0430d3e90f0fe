"""
Query engine shared by every list endpoint.

Turns untrusted query parameters into filtered, searched, sorted, projected
and paginated SQLAlchemy queries, constrained by per-entity whitelists.
"""
from storefront.query.builder import QueryBuilder, build
from storefront.query.operators import FilterOperator, coerce_value
from storefront.query.params import decode_query_params
from storefront.query.types import (
    EntityQueryConfig,
    PaginatedData,
    Pagination,
    PaginationInfo,
    ParsedQuery,
)

__all__ = [
    "QueryBuilder",
    "build",
    "FilterOperator",
    "coerce_value",
    "decode_query_params",
    "EntityQueryConfig",
    "PaginatedData",
    "Pagination",
    "PaginationInfo",
    "ParsedQuery",
]
