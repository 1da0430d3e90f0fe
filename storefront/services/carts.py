"""
Cart service.

A cart belongs to exactly one owner: a signed-in user or a guest session
(``guest_<uuid4>`` cookie). Each owner has at most one ``active`` cart.
Every mutation recomputes the cached ``subtotal_cents``.

Usage:
    ident = CartIdentifier.for_user(user_id)
    cart = add_item(db, ident, product_id, 2)
"""
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload, sessionmaker

from storefront.core.errors import (
    ClientInputError, DuplicateError, EmptyCartError, InsufficientStockError,
    InvalidCartIdentifierError, NotFoundError, ProductUnavailableError,
)
from storefront.data.database import storage_errors, transaction
from storefront.data.models import Cart, CartItem, Product, User
from storefront.query.builder import QueryBuilder
from storefront.query.types import EntityQueryConfig
from storefront.utils.logger import get_logger

logger = get_logger("services.carts")

GUEST_SESSION_PREFIX = "guest_"

CART_QUERY = QueryBuilder(EntityQueryConfig(
    sortable_fields=("created_at", "updated_at", "subtotal_cents"),
    filterable_fields=("status", "user_id", "session_id", "created_at"),
    default_sort="-updated_at",
))


def new_guest_session_id() -> str:
    return f"{GUEST_SESSION_PREFIX}{uuid.uuid4()}"


@dataclass(frozen=True)
class CartIdentifier:
    """Owner of a cart: exactly one of ``user_id`` or ``session_id``."""
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self) -> None:
        if bool(self.user_id) == bool(self.session_id):
            raise InvalidCartIdentifierError(
                "Provide exactly one of a user id or a guest session id",
                details={"user_id": self.user_id, "session_id": self.session_id},
            )

    @classmethod
    def for_user(cls, user_id: str) -> "CartIdentifier":
        return cls(user_id=user_id)

    @classmethod
    def for_guest(cls, session_id: str) -> "CartIdentifier":
        return cls(session_id=session_id)

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    def owner_clause(self):
        if self.user_id:
            return Cart.user_id == self.user_id
        return Cart.session_id == self.session_id

    def __str__(self) -> str:
        return f"user:{self.user_id}" if self.user_id else f"session:{self.session_id}"


@dataclass
class VerifiedLine:
    """A cart line checked against the live product record."""
    item: CartItem
    product: Product
    live_price_cents: int

    @property
    def line_total_cents(self) -> int:
        return self.live_price_cents * self.item.quantity

    @property
    def price_changed(self) -> bool:
        return self.item.price_cents != self.live_price_cents


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

def find_active_cart(db: Session, ident: CartIdentifier) -> Optional[Cart]:
    stmt = (
        select(Cart)
        .where(ident.owner_clause(), Cart.status == "active")
        .options(selectinload(Cart.items).selectinload(CartItem.product))
    )
    with storage_errors("find_active_cart"):
        return db.execute(stmt).scalars().first()


def get_cart(db: Session, ident: CartIdentifier) -> Cart:
    cart = find_active_cart(db, ident)
    if cart is None:
        raise NotFoundError(f"No active cart for {ident}", details={"owner": str(ident)})
    return cart


def get_or_create_cart(db: Session, ident: CartIdentifier) -> Cart:
    cart = find_active_cart(db, ident)
    if cart is not None:
        return cart

    if ident.user_id and db.get(User, ident.user_id) is None:
        raise NotFoundError(f"User '{ident.user_id}' does not exist", details={"user_id": ident.user_id})

    cart = Cart(user_id=ident.user_id, session_id=ident.session_id, status="active", subtotal_cents=0)
    try:
        with transaction(db, "create_cart"):
            db.add(cart)
    except DuplicateError:
        # A concurrent request created the active cart first
        logger.info("cart: method=get_or_create_cart owner=%s result=lost_race", ident)
        return get_cart(db, ident)
    logger.info("cart: method=get_or_create_cart owner=%s cart_id=%s result=created", ident, cart.id)
    return cart


def search_carts(db: Session, params: Dict[str, Any], session_factory: Optional[sessionmaker] = None):
    return (
        CART_QUERY.query(db, Cart, params, session_factory=session_factory)
        .populate("items")
        .paginate()
        .lean()
        .execute()
    )


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def add_item(db: Session, ident: CartIdentifier, product_id: str, quantity: int = 1) -> Cart:
    """Add ``quantity`` units, merging with an existing line for the same product."""
    logger.info("cart: method=add_item owner=%s product_id=%s quantity=%s", ident, product_id, quantity)
    if quantity < 1:
        raise ClientInputError("Quantity must be at least 1", details={"quantity": quantity})

    product = _available_product(db, product_id)
    cart = get_or_create_cart(db, ident)
    existing = cart.find_item(product_id)
    requested = quantity + (existing.quantity if existing else 0)
    _ensure_stock(product, requested)

    with transaction(db, "add_item"):
        if existing:
            existing.quantity = requested
            existing.price_cents = product.price_cents
        else:
            cart.items.append(CartItem(product_id=product.id, quantity=quantity, price_cents=product.price_cents))
        cart.recalculate()
    return cart


def update_item(db: Session, ident: CartIdentifier, product_id: str, quantity: int) -> Cart:
    """Set a line's quantity and refresh its price snapshot; 0 removes the line."""
    logger.info("cart: method=update_item owner=%s product_id=%s quantity=%s", ident, product_id, quantity)
    if quantity < 0:
        raise ClientInputError("Quantity cannot be negative", details={"quantity": quantity})
    if quantity == 0:
        return remove_item(db, ident, product_id)

    cart = get_cart(db, ident)
    item = _require_item(cart, product_id)
    product = _available_product(db, product_id)
    _ensure_stock(product, quantity)

    with transaction(db, "update_item"):
        item.quantity = quantity
        item.price_cents = product.price_cents
        cart.recalculate()
    return cart


def remove_item(db: Session, ident: CartIdentifier, product_id: str) -> Cart:
    logger.info("cart: method=remove_item owner=%s product_id=%s", ident, product_id)
    cart = get_cart(db, ident)
    item = _require_item(cart, product_id)
    with transaction(db, "remove_item"):
        cart.items.remove(item)
        cart.recalculate()
    return cart


def clear_cart(db: Session, ident: CartIdentifier) -> Cart:
    logger.info("cart: method=clear_cart owner=%s", ident)
    cart = get_cart(db, ident)
    with transaction(db, "clear_cart"):
        cart.items.clear()
        cart.recalculate()
    return cart


def merge_guest_cart(db: Session, session_id: str, user_id: str) -> Cart:
    """
    Fold a guest cart into the user's cart after sign-in.

    An empty or missing guest cart leaves the user's cart as it is. With no
    active user cart the guest cart is simply re-owned. Otherwise lines are
    merged by product (quantities summed) and the guest cart is marked
    ``converted``. Stock is not checked here; checkout does that.
    """
    logger.info("cart: method=merge_guest_cart session_id=%s user_id=%s", session_id, user_id)
    guest_ident = CartIdentifier.for_guest(session_id)
    user_ident = CartIdentifier.for_user(user_id)

    guest = find_active_cart(db, guest_ident)
    if guest is None or not guest.items:
        return get_or_create_cart(db, user_ident)

    if db.get(User, user_id) is None:
        raise NotFoundError(f"User '{user_id}' does not exist", details={"user_id": user_id})

    user_cart = find_active_cart(db, user_ident)
    with transaction(db, "merge_guest_cart"):
        if user_cart is None:
            guest.session_id = None
            guest.user_id = user_id
            merged = guest
        else:
            for guest_item in guest.items:
                existing = user_cart.find_item(guest_item.product_id)
                if existing:
                    existing.quantity += guest_item.quantity
                else:
                    user_cart.items.append(CartItem(
                        product_id=guest_item.product_id,
                        quantity=guest_item.quantity,
                        price_cents=guest_item.price_cents,
                    ))
            user_cart.recalculate()
            guest.status = "converted"
            merged = user_cart

    logger.info(
        "cart: method=merge_guest_cart user_id=%s cart_id=%s result=%s",
        user_id, merged.id, "reowned" if merged is guest else "merged",
    )
    return merged


# ---------------------------------------------------------------------------
# Verification (shared with checkout)
# ---------------------------------------------------------------------------

def verify_lines(db: Session, cart: Optional[Cart]) -> List[VerifiedLine]:
    """
    Check every line of ``cart`` against freshly read product rows.

    Raises EmptyCartError for a missing or empty cart, then
    ProductUnavailableError naming every removed or inactive product, then
    InsufficientStockError naming every line short of stock. Price drift is
    logged, never raised.
    """
    if cart is None or not cart.items:
        raise EmptyCartError("Cart is empty", details={"cart_id": cart.id if cart else None})

    product_ids = [item.product_id for item in cart.items]
    stmt = (
        select(Product)
        .where(Product.id.in_(product_ids))
        .execution_options(populate_existing=True)
    )
    with storage_errors("verify_lines"):
        products = {p.id: p for p in db.execute(stmt).scalars()}

    unavailable = []
    for item in cart.items:
        product = products.get(item.product_id)
        if product is None:
            unavailable.append({"product_id": item.product_id, "product_name": None})
        elif product.status != "active":
            unavailable.append({"product_id": product.id, "product_name": product.name})
    if unavailable:
        raise ProductUnavailableError(unavailable)

    lines = [VerifiedLine(item, products[item.product_id], products[item.product_id].price_cents) for item in cart.items]

    shortages = [_shortage(line.product, line.item.quantity) for line in lines if line.product.stock_quantity < line.item.quantity]
    if shortages:
        raise InsufficientStockError(shortages)

    for line in lines:
        if line.price_changed:
            logger.warning(
                "cart: method=verify_lines cart_id=%s product_id=%s cached_price=%s live_price=%s result=price_changed",
                cart.id, line.product.id, line.item.price_cents, line.live_price_cents,
            )
    return lines


def verify_cart_items(db: Session, ident: CartIdentifier) -> Dict[str, Any]:
    """
    Dry run of checkout validation. Refreshes stale price snapshots, changes
    nothing else, and raises the same errors checkout would.
    """
    cart = find_active_cart(db, ident)
    lines = verify_lines(db, cart)
    price_changes = [
        {"product_id": line.product.id, "old_price_cents": line.item.price_cents, "new_price_cents": line.live_price_cents}
        for line in lines if line.price_changed
    ]
    if price_changes:
        with transaction(db, "refresh_cart_prices"):
            for line in lines:
                line.item.price_cents = line.live_price_cents
            cart.recalculate()
    return {"cart_id": cart.id, "valid": True, "subtotal_cents": cart.subtotal_cents, "price_changes": price_changes}


def cart_to_dict(cart: Cart) -> Dict[str, Any]:
    return {
        "id": cart.id,
        "user_id": cart.user_id,
        "session_id": cart.session_id,
        "status": cart.status,
        "subtotal_cents": cart.subtotal_cents,
        "items": [
            {
                "product_id": item.product_id,
                "product_name": item.product.name if item.product else None,
                "quantity": item.quantity,
                "price_cents": item.price_cents,
                "line_total_cents": item.price_cents * item.quantity,
            }
            for item in cart.items
        ],
    }


def _available_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id, populate_existing=True)
    if product is None:
        raise NotFoundError(f"Product '{product_id}' does not exist", details={"product_id": product_id})
    if product.status != "active":
        raise ProductUnavailableError([{"product_id": product.id, "product_name": product.name}])
    return product


def _ensure_stock(product: Product, requested: int) -> None:
    if product.stock_quantity < requested:
        raise InsufficientStockError([_shortage(product, requested)])


def _shortage(product: Product, requested: int) -> Dict[str, Any]:
    return {
        "product_id": product.id,
        "product_name": product.name,
        "requested_qty": requested,
        "available_qty": product.stock_quantity,
    }


def _require_item(cart: Cart, product_id: str) -> CartItem:
    item = cart.find_item(product_id)
    if item is None:
        raise NotFoundError(
            f"Product '{product_id}' is not in the cart",
            details={"cart_id": cart.id, "product_id": product_id},
        )
    return item
