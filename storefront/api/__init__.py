"""
API module for the storefront backend.

Provides the REST API over the catalog, cart and order services.
"""
from storefront.api.models import (
    CartItemRequest,
    CreateCategoryRequest,
    CreateProductRequest,
    MergeCartRequest,
    PlaceOrderRequest,
    ResponseStatus,
    UpdateCartItemRequest,
    UpdateOrderStatusRequest,
)

__all__ = [
    "CartItemRequest",
    "CreateCategoryRequest",
    "CreateProductRequest",
    "MergeCartRequest",
    "PlaceOrderRequest",
    "ResponseStatus",
    "UpdateCartItemRequest",
    "UpdateOrderStatusRequest",
]
