"""
Error taxonomy for the storefront backend.

Every error carries a machine-readable ``kind`` and ``code`` plus a
human-readable message; the API layer turns them into the response envelope.
"""
from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
    """Base class for all reported storefront errors."""

    kind = "error"
    code = "ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "details": self.details or None,
        }


# Client input (4xx)

class ClientInputError(StorefrontError):
    """The request itself is malformed or asks for something not allowed."""
    kind = "client_input"
    code = "INVALID_INPUT"
    status_code = 400


class LimitExceededError(ClientInputError):
    code = "LIMIT_EXCEEDED"


class QueryValidationError(ClientInputError):
    code = "INVALID_QUERY"


class EmptyCartError(ClientInputError):
    code = "CART_EMPTY"


class InvalidCartIdentifierError(ClientInputError):
    code = "INVALID_CART_IDENTIFIER"


# Conflicts (409)

class ConflictError(StorefrontError):
    """The request is valid but conflicts with current state."""
    kind = "conflict"
    code = "CONFLICT"
    status_code = 409


class DuplicateError(ConflictError):
    code = "DUPLICATE"


class InvalidStatusTransitionError(ConflictError):
    code = "INVALID_STATUS_TRANSITION"


class InsufficientStockError(ConflictError):
    """
    One or more lines cannot be fulfilled from current stock.

    ``failures`` holds one entry per failing line with product_id,
    product_name, requested_qty and available_qty.
    """
    code = "INSUFFICIENT_STOCK"

    def __init__(self, failures: List[Dict[str, Any]]):
        self.failures = failures
        parts = [
            f'"{f["product_name"]}" (requested {f["requested_qty"]}, available {f["available_qty"]})'
            for f in failures
        ]
        super().__init__(
            "Insufficient stock for " + ", ".join(parts),
            details={"items": failures},
        )


class ProductUnavailableError(ConflictError):
    """Cart references products that were removed or deactivated."""
    code = "PRODUCT_UNAVAILABLE"

    def __init__(self, failures: List[Dict[str, Any]]):
        self.failures = failures
        parts = []
        for f in failures:
            if f.get("product_name"):
                parts.append(f'"{f["product_name"]}" is no longer available')
            else:
                parts.append(f'product {f["product_id"]} no longer exists')
        super().__init__(
            "Cart verification failed: " + ", ".join(parts),
            details={"items": failures},
        )


# Not found (404)

class NotFoundError(StorefrontError):
    kind = "not_found"
    code = "NOT_FOUND"
    status_code = 404


# Programming errors (500, not user-actionable)

class ProgrammingError(StorefrontError):
    kind = "programming"
    code = "PROGRAMMING_ERROR"
    status_code = 500


class QueryNotBoundError(ProgrammingError):
    code = "QUERY_NOT_BOUND"


# Transient storage failures (503)

class TransientStorageError(StorefrontError):
    """Query timeout, lock contention or transaction conflict; safe to retry."""
    kind = "transient"
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
