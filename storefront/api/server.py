"""
FastAPI server for the storefront backend.

Endpoints:
- GET  /health                    - Health check
- GET  /products, /products/{id}  - Catalog (query engine parameters on lists)
- POST /products, /categories     - Catalog administration
- GET  /categories, /vendors, /users, /carts
- GET  /cart, POST|PATCH /cart/items, DELETE /cart/items/{product_id}, DELETE /cart
- POST /cart/verify, /cart/merge
- POST /orders, GET /orders, GET /orders/{id}
- PATCH /orders/{id}/status, /orders/{id}/payment

The cart owner is the ``X-User-Id`` header when present (authentication is
handled upstream), otherwise a guest session cookie issued on first use.
"""
import time
import traceback
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.core.config import StorefrontConfig, load_config
from storefront.core.errors import InvalidCartIdentifierError, StorefrontError
from storefront.data.database import create_engine_from_config, create_session_factory, get_db, init_db
from storefront.query.builder import to_plain
from storefront.query.params import decode_query_params
from storefront.services import accounts, carts, catalog, orders
from storefront.services.carts import CartIdentifier
from storefront.utils.logger import get_logger, set_log_level

from storefront.api.models import (
    CartItemRequest, CreateCategoryRequest, CreateProductRequest, MergeCartRequest, PlaceOrderRequest,
    ResponseStatus, UpdateCartItemRequest, UpdateOrderStatusRequest, UpdatePaymentStatusRequest,
    error_envelope, ok, paginated,
)

logger = get_logger("api.server")

API_VERSION = "0.1.0"

router = APIRouter()


# ============================================================================
# Dependencies
# ============================================================================

def get_config(request: Request) -> StorefrontConfig:
    return request.app.state.config


def list_params(request: Request) -> dict:
    """Raw query-engine parameters decoded from the query string."""
    return decode_query_params(request.query_params.multi_items())


def read_sessions(request: Request):
    """Session factory for concurrent count/page reads, or None where unsupported."""
    return request.app.state.read_session_factory


def cart_owner(
    request: Request,
    response: Response,
    x_user_id: Optional[str] = Header(None),
) -> CartIdentifier:
    if x_user_id:
        return CartIdentifier.for_user(x_user_id)

    config: StorefrontConfig = request.app.state.config
    session_id = request.cookies.get(config.guest_cookie_name)
    if not session_id or not session_id.startswith(carts.GUEST_SESSION_PREFIX):
        session_id = carts.new_guest_session_id()
        response.set_cookie(
            config.guest_cookie_name,
            session_id,
            max_age=config.guest_cookie_max_age_days * 24 * 3600,
            httponly=True,
            samesite="lax",
            secure=config.is_production,
        )
        logger.info("api: guest_session issued session_id=%s", session_id)
    return CartIdentifier.for_guest(session_id)


# ============================================================================
# Health
# ============================================================================

@router.get("/health")
def health_check(request: Request, db: Session = Depends(get_db)):
    """Health check including database connectivity."""
    database = "healthy"
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("api: health database_error=%s", e)
        database = "unavailable"
    return {
        "status": "healthy" if database == "healthy" else "degraded",
        "database": database,
        "version": API_VERSION,
        "environment": request.app.state.config.env,
    }


# ============================================================================
# Catalog
# ============================================================================

@router.get("/products")
def list_products(params: dict = Depends(list_params), db: Session = Depends(get_db), factory=Depends(read_sessions)):
    return paginated(catalog.search_products(db, params, factory))


@router.get("/products/{product_id}")
def get_product(product_id: str, db: Session = Depends(get_db)):
    return ok(catalog.product_to_dict(catalog.get_product(db, product_id)))


@router.post("/products", status_code=201)
def create_product(request: CreateProductRequest, db: Session = Depends(get_db)):
    product = catalog.create_product(db, request.model_dump())
    return ok(catalog.product_to_dict(product))


@router.get("/categories")
def list_categories(params: dict = Depends(list_params), db: Session = Depends(get_db), factory=Depends(read_sessions)):
    return paginated(catalog.search_categories(db, params, factory))


@router.post("/categories", status_code=201)
def create_category(request: CreateCategoryRequest, db: Session = Depends(get_db)):
    category = catalog.create_category(db, request.name, request.slug, request.description)
    return ok(to_plain(category))


# ============================================================================
# Accounts
# ============================================================================

@router.get("/vendors")
def list_vendors(params: dict = Depends(list_params), db: Session = Depends(get_db), factory=Depends(read_sessions)):
    return paginated(accounts.search_vendors(db, params, factory))


@router.get("/users")
def list_users(params: dict = Depends(list_params), db: Session = Depends(get_db), factory=Depends(read_sessions)):
    return paginated(accounts.search_users(db, params, factory))


# ============================================================================
# Carts
# ============================================================================

@router.get("/carts")
def list_carts(params: dict = Depends(list_params), db: Session = Depends(get_db), factory=Depends(read_sessions)):
    return paginated(carts.search_carts(db, params, factory))


@router.get("/cart")
def get_cart(owner: CartIdentifier = Depends(cart_owner), db: Session = Depends(get_db)):
    return ok(carts.cart_to_dict(carts.get_or_create_cart(db, owner)))


@router.post("/cart/items")
def add_cart_item(request: CartItemRequest, owner: CartIdentifier = Depends(cart_owner), db: Session = Depends(get_db)):
    cart = carts.add_item(db, owner, request.product_id, request.quantity)
    return ok(carts.cart_to_dict(cart))


@router.patch("/cart/items")
def update_cart_item(
    request: UpdateCartItemRequest,
    owner: CartIdentifier = Depends(cart_owner),
    db: Session = Depends(get_db),
):
    cart = carts.update_item(db, owner, request.product_id, request.quantity)
    return ok(carts.cart_to_dict(cart))


@router.delete("/cart/items/{product_id}")
def remove_cart_item(product_id: str, owner: CartIdentifier = Depends(cart_owner), db: Session = Depends(get_db)):
    return ok(carts.cart_to_dict(carts.remove_item(db, owner, product_id)))


@router.delete("/cart")
def clear_cart(owner: CartIdentifier = Depends(cart_owner), db: Session = Depends(get_db)):
    return ok(carts.cart_to_dict(carts.clear_cart(db, owner)))


@router.post("/cart/verify")
def verify_cart(owner: CartIdentifier = Depends(cart_owner), db: Session = Depends(get_db)):
    return ok(carts.verify_cart_items(db, owner))


@router.post("/cart/merge")
def merge_cart(
    http_request: Request,
    request: Optional[MergeCartRequest] = None,
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(get_db),
):
    """Merge the guest cart (body ``session_id`` or cookie) into the X-User-Id user's cart."""
    config: StorefrontConfig = http_request.app.state.config
    session_id = (request.session_id if request else None) or http_request.cookies.get(config.guest_cookie_name)
    if not x_user_id or not session_id:
        raise InvalidCartIdentifierError(
            "Merging requires the X-User-Id header and a guest session",
            details={"user_id": x_user_id, "session_id": session_id},
        )
    cart = carts.merge_guest_cart(db, session_id, x_user_id)
    return ok(carts.cart_to_dict(cart))


# ============================================================================
# Orders
# ============================================================================

@router.post("/orders", status_code=201)
def place_order(
    request: PlaceOrderRequest,
    owner: CartIdentifier = Depends(cart_owner),
    db: Session = Depends(get_db),
    config: StorefrontConfig = Depends(get_config),
):
    details = orders.OrderDetails(
        shipping_address=request.shipping_address.model_dump(),
        payment_method=request.payment_method,
        delivery_zone=request.delivery_zone,
        transaction_id=request.transaction_id,
    )
    order = orders.OrderFlow(db, config).place_order(owner, details)
    return ok(orders.order_to_dict(order))


@router.get("/orders")
def list_orders(params: dict = Depends(list_params), db: Session = Depends(get_db), factory=Depends(read_sessions)):
    return paginated(orders.search_orders(db, params, factory))


@router.get("/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db)):
    return ok(orders.order_to_dict(orders.get_order(db, order_id)))


@router.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, request: UpdateOrderStatusRequest, db: Session = Depends(get_db)):
    return ok(orders.order_to_dict(orders.update_order_status(db, order_id, request.status)))


@router.patch("/orders/{order_id}/payment")
def update_payment_status(order_id: str, request: UpdatePaymentStatusRequest, db: Session = Depends(get_db)):
    order = orders.update_payment_status(db, order_id, request.payment_status, request.transaction_id)
    return ok(orders.order_to_dict(order))


# ============================================================================
# Application
# ============================================================================

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every non-OPTIONS request with method, path, status and duration."""

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return await call_next(request)
        t0 = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - t0) * 1000
        logger.info(
            "api: method=%s path=%s status=%d duration_ms=%.1f",
            request.method, request.url.path, response.status_code, duration_ms,
        )
        return response


async def storefront_error_handler(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("api: path=%s error=%s code=%s message=%s", request.url.path, exc.kind, exc.code, exc.message)
    else:
        logger.info("api: path=%s error=%s code=%s", request.url.path, exc.kind, exc.code)
    return JSONResponse(status_code=exc.status_code, content=error_envelope(exc))


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "status": ResponseStatus.INVALID.value,
            "data": None,
            "error": {
                "kind": "client_input",
                "code": "INVALID",
                "message": "Request validation failed",
                "details": {"errors": jsonable_encoder(exc.errors())},
            },
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    """Log with traceback; never return internal error text to the caller."""
    logger.error("api: unhandled exception path=%s error=%s\n%s", request.url.path, exc, traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={
            "status": ResponseStatus.ERROR.value,
            "data": None,
            "error": {"kind": "programming", "code": "INTERNAL_ERROR", "message": "Internal server error", "details": None},
        },
    )


def create_app(config: Optional[StorefrontConfig] = None) -> FastAPI:
    """Build the application around an explicit configuration."""
    config = config or load_config()
    set_log_level(config.log_level)

    engine = create_engine_from_config(config)
    session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables if they don't exist; use migrations in production
        init_db(engine)
        logger.info("Storefront API started env=%s dialect=%s", config.env, engine.dialect.name)
        yield
        engine.dispose()

    app = FastAPI(
        title="Storefront API",
        description="E-commerce backend: catalog, carts and inventory-consistent checkout",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.engine = engine
    app.state.session_factory = session_factory
    # SQLite serializes on one file; only fan out count/page reads on a real server
    app.state.read_session_factory = None if engine.dialect.name == "sqlite" else session_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(StorefrontError, storefront_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(router)
    return app


def main():
    """Run the API server."""
    config = load_config()
    uvicorn.run(
        "storefront.api.server:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=not config.is_production,
    )


if __name__ == "__main__":
    main()
