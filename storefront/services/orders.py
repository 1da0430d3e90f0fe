"""
Order service: inventory-consistent checkout and the order status machine.

``OrderFlow.place_order`` runs verification, stock decrements, order creation
and cart conversion as one database transaction. The pre-check in
``verify_lines`` only gives an early, batched error message; what prevents
overselling is the conditional decrement in ``catalog.decrement_stock``,
which the database evaluates at write time.
"""
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, selectinload, sessionmaker

from storefront.core.config import StorefrontConfig
from storefront.core.errors import (
    ClientInputError, InsufficientStockError, InvalidStatusTransitionError, NotFoundError,
    TransientStorageError,
)
from storefront.data.database import transaction
from storefront.data.models import PAYMENT_METHODS, PAYMENT_STATUSES, Order, OrderItem, Product
from storefront.query.builder import QueryBuilder, to_plain
from storefront.query.types import EntityQueryConfig
from storefront.services.carts import CartIdentifier, VerifiedLine, find_active_cart, verify_lines
from storefront.services.catalog import decrement_stock, increment_stock
from storefront.utils.logger import get_logger

logger = get_logger("services.orders")

ORDER_QUERY = QueryBuilder(EntityQueryConfig(
    sortable_fields=("created_at", "total_cents", "status"),
    filterable_fields=("status", "payment_status", "payment_method", "user_id", "created_at", "total_cents"),
    default_sort="-created_at",
))

# Allowed status changes; delivered and cancelled are terminal
ORDER_TRANSITIONS = {
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("processing", "cancelled"),
    "processing": ("shipped", "cancelled"),
    "shipped": ("delivered", "cancelled"),
    "delivered": (),
    "cancelled": (),
}

REQUIRED_ADDRESS_FIELDS = ("name", "phone", "address", "city")


@dataclass
class OrderDetails:
    """Checkout input besides the cart itself."""
    shipping_address: Dict[str, Any]
    payment_method: str = "cod"
    delivery_zone: Optional[str] = None
    transaction_id: Optional[str] = None

    def validate(self) -> None:
        if self.payment_method not in PAYMENT_METHODS:
            raise ClientInputError(
                f"Unsupported payment method '{self.payment_method}'",
                details={"allowed": list(PAYMENT_METHODS)},
            )
        missing = [f for f in REQUIRED_ADDRESS_FIELDS if not self.shipping_address.get(f)]
        if missing:
            raise ClientInputError("Shipping address is incomplete", details={"missing_fields": missing})


class OrderFlow:
    """
    Places orders from carts.

    Transient storage failures (lock timeouts, serialization conflicts) are
    retried up to ``config.checkout_max_retries`` times; every other error
    propagates after the transaction has been rolled back.
    """

    def __init__(self, db: Session, config: Optional[StorefrontConfig] = None):
        self.db = db
        self.config = config or StorefrontConfig()

    def place_order(self, ident: CartIdentifier, details: OrderDetails) -> Order:
        details.validate()
        attempts = max(1, self.config.checkout_max_retries)
        for attempt in range(1, attempts + 1):
            try:
                return self._place_order_once(ident, details)
            except TransientStorageError:
                if attempt == attempts:
                    logger.error("order: method=place_order owner=%s result=gave_up attempts=%s", ident, attempt)
                    raise
                logger.warning("order: method=place_order owner=%s result=retry attempt=%s", ident, attempt)
                time.sleep(self.config.checkout_retry_backoff_seconds * attempt)
        raise AssertionError("unreachable")

    def _place_order_once(self, ident: CartIdentifier, details: OrderDetails) -> Order:
        db = self.db
        logger.info("order: method=place_order owner=%s", ident)
        with transaction(db, "place_order"):
            cart = find_active_cart(db, ident)
            lines = self.verify(cart)
            self.reserve_stock(lines)

            subtotal = sum(line.line_total_cents for line in lines)
            shipping = self.config.shipping_cost_for(details.delivery_zone)
            order = Order(
                user_id=cart.user_id,
                session_id=cart.session_id,
                cart_id=cart.id,
                shipping_address=details.shipping_address,
                delivery_zone=details.delivery_zone,
                payment_method=details.payment_method,
                payment_status="pending",
                transaction_id=details.transaction_id,
                status="pending",
                subtotal_cents=subtotal,
                shipping_cost_cents=shipping,
                total_cents=subtotal + shipping,
                items=[
                    OrderItem(
                        product_id=line.product.id,
                        name=line.product.name,
                        price_cents=line.live_price_cents,
                        quantity=line.item.quantity,
                        total_cents=line.line_total_cents,
                    )
                    for line in lines
                ],
            )
            db.add(order)

            for line in lines:
                line.item.price_cents = line.live_price_cents
            cart.recalculate()
            cart.status = "converted"

        db.refresh(order)
        logger.info(
            "order: method=place_order owner=%s order_id=%s total_cents=%s result=success",
            ident, order.id, order.total_cents,
        )
        return order

    def verify(self, cart) -> List[VerifiedLine]:
        return verify_lines(self.db, cart)

    def reserve_stock(self, lines: List[VerifiedLine]) -> None:
        """Conditionally decrement every line; the first miss aborts the whole unit."""
        for line in lines:
            if decrement_stock(self.db, line.product.id, line.item.quantity):
                continue
            current = self.db.get(Product, line.product.id, populate_existing=True)
            available = current.stock_quantity if current is not None else 0
            logger.warning(
                "order: method=reserve_stock product_id=%s requested=%s available=%s result=lost_race",
                line.product.id, line.item.quantity, available,
            )
            raise InsufficientStockError([{
                "product_id": line.product.id,
                "product_name": line.product.name,
                "requested_qty": line.item.quantity,
                "available_qty": available,
            }])


# ---------------------------------------------------------------------------
# Order queries and status changes
# ---------------------------------------------------------------------------

def search_orders(db: Session, params: Dict[str, Any], session_factory: Optional[sessionmaker] = None):
    return (
        ORDER_QUERY.query(db, Order, params, session_factory=session_factory)
        .populate("items")
        .paginate()
        .lean()
        .execute()
    )


def get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id, options=[selectinload(Order.items)])
    if order is None:
        raise NotFoundError(f"Order '{order_id}' does not exist", details={"order_id": order_id})
    return order


def order_to_dict(order: Order) -> Dict[str, Any]:
    return to_plain(order, {"items": {}})


def update_order_status(db: Session, order_id: str, status: str) -> Order:
    """Move an order along the status machine; cancelling puts the stock back."""
    order = get_order(db, order_id)
    if status not in ORDER_TRANSITIONS:
        raise ClientInputError(f"Unknown order status '{status}'", details={"allowed": list(ORDER_TRANSITIONS)})
    if status not in ORDER_TRANSITIONS[order.status]:
        raise InvalidStatusTransitionError(
            f"Cannot change order status from '{order.status}' to '{status}'",
            details={"from": order.status, "to": status, "allowed": list(ORDER_TRANSITIONS[order.status])},
        )

    previous = order.status
    with transaction(db, "update_order_status"):
        # Claim the transition at write time; a concurrent change leaves no row to match
        claimed = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == previous)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.warning(
                "order: method=update_order_status order_id=%s from=%s to=%s result=lost_race",
                order_id, previous, status,
            )
            raise InvalidStatusTransitionError(
                f"Order '{order_id}' is no longer '{previous}'",
                details={"from": previous, "to": status},
            )
        if status == "cancelled":
            for item in order.items:
                increment_stock(db, item.product_id, item.quantity)
        db.refresh(order, ["status", "updated_at"])
    logger.info("order: method=update_order_status order_id=%s from=%s to=%s", order_id, previous, status)
    return order


def update_payment_status(db: Session, order_id: str, payment_status: str, transaction_id: Optional[str] = None) -> Order:
    if payment_status not in PAYMENT_STATUSES:
        raise ClientInputError(
            f"Unknown payment status '{payment_status}'", details={"allowed": list(PAYMENT_STATUSES)},
        )
    order = get_order(db, order_id)
    with transaction(db, "update_payment_status"):
        order.payment_status = payment_status
        if transaction_id:
            order.transaction_id = transaction_id
    logger.info("order: method=update_payment_status order_id=%s payment_status=%s", order_id, payment_status)
    return order
