"""
Pydantic v2 schemas for the storefront API.

All request schemas use extra="forbid" to reject unknown fields.
Every response uses the same envelope: {status, data, error}.
"""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from storefront.core.errors import InsufficientStockError, StorefrontError
from storefront.data.models import DELIVERY_ZONES, PAYMENT_METHODS


class ResponseStatus(str, Enum):
    """Top-level outcome of a request, one per error kind plus OK."""
    OK = "OK"
    INVALID = "INVALID"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    UNAVAILABLE = "UNAVAILABLE"
    ERROR = "ERROR"


_STATUS_BY_KIND = {
    "client_input": ResponseStatus.INVALID,
    "not_found": ResponseStatus.NOT_FOUND,
    "conflict": ResponseStatus.CONFLICT,
    "transient": ResponseStatus.UNAVAILABLE,
}


def status_for(exc: StorefrontError) -> ResponseStatus:
    if isinstance(exc, InsufficientStockError):
        return ResponseStatus.OUT_OF_STOCK
    return _STATUS_BY_KIND.get(exc.kind, ResponseStatus.ERROR)


#
# Response envelope
#

class ErrorDetail(BaseModel):
    """Machine-readable kind and code plus a message safe to show to users."""
    kind: str = Field(..., description="Error category: client_input | conflict | not_found | programming | transient")
    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable explanation")
    details: Optional[Dict[str, Any]] = Field(None, description="Structured data about the failure")


class Envelope(BaseModel):
    status: ResponseStatus
    data: Optional[Any] = None
    error: Optional[ErrorDetail] = None


def ok(data: Any) -> Dict[str, Any]:
    return {"status": ResponseStatus.OK.value, "data": data, "error": None}


def paginated(page) -> Dict[str, Any]:
    """Envelope for a PaginatedData result."""
    info = page.pagination
    return ok({
        "items": page.items,
        "pagination": {
            "page": info.page,
            "limit": info.limit,
            "total_count": info.total_count,
            "total_pages": info.total_pages,
            "has_next": info.has_next,
            "has_prev": info.has_prev,
            "start_index": info.start_index,
            "end_index": info.end_index,
        },
    })


def error_envelope(exc: StorefrontError) -> Dict[str, Any]:
    return Envelope(status=status_for(exc), data=None, error=ErrorDetail(**exc.to_dict())).model_dump(mode="json")


#
# Requests
#

class CreateCategoryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None


class CreateProductRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    price_cents: int = Field(..., ge=0, description="Price in cents (BDT paisa)")
    category_id: str
    stock_quantity: int = Field(0, ge=0)
    slug: Optional[str] = Field(None, max_length=255)
    sku: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    status: str = Field("active", pattern="^(active|inactive)$")
    delivery_zone: str = Field("inside_dhaka", description=f"One of {', '.join(DELIVERY_ZONES)}")
    vendor_id: Optional[str] = None


class CartItemRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: str
    quantity: int = Field(1, ge=1, le=1000)


class UpdateCartItemRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: str
    quantity: int = Field(..., ge=0, le=1000, description="0 removes the line")


class MergeCartRequest(BaseModel):
    """Guest session to fold into the signed-in user's cart; defaults to the session cookie."""
    model_config = ConfigDict(extra="forbid")

    session_id: Optional[str] = None


class ShippingAddress(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postal_code: Optional[str] = None
    country: str = "BD"


class PlaceOrderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shipping_address: ShippingAddress
    payment_method: str = Field("cod", description=f"One of {', '.join(PAYMENT_METHODS)}")
    delivery_zone: Optional[str] = None
    transaction_id: Optional[str] = None


class UpdateOrderStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str


class UpdatePaymentStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_status: str
    transaction_id: Optional[str] = None

