"""
Storefront - e-commerce backend

Catalog, carts and orders over SQLAlchemy with:
- A generic, whitelist-driven query engine for every list endpoint
- Inventory-consistent checkout (conditional stock decrements in one transaction)
- Guest carts that merge into the user's cart on sign-in
"""

from storefront.core.config import StorefrontConfig, load_config
from storefront.query.builder import QueryBuilder, build
from storefront.query.types import EntityQueryConfig, PaginatedData, PaginationInfo
from storefront.services.orders import OrderFlow

__all__ = [
    'StorefrontConfig',
    'load_config',
    'QueryBuilder',
    'build',
    'EntityQueryConfig',
    'PaginatedData',
    'PaginationInfo',
    'OrderFlow',
]

__version__ = '0.1.0'
