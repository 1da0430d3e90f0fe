"""
SQLAlchemy database models.
These are the authoritative source of truth for all storefront data.

Money is stored in integer cents to avoid floating point issues.
"""
import uuid

from sqlalchemy import (
    JSON, CheckConstraint, Column, DDL, DateTime, Float, ForeignKey, Index,
    Integer, String, Text, UniqueConstraint, event, text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from storefront.core.errors import InvalidCartIdentifierError
from storefront.data.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


# Status vocabularies
PRODUCT_STATUSES = ("active", "inactive")
DELIVERY_ZONES = ("inside_dhaka", "outside_dhaka")
VENDOR_STATUSES = ("pending", "active", "suspended")
USER_ROLES = ("customer", "admin")
USER_STATUSES = ("active", "disabled")
CART_STATUSES = ("active", "abandoned", "converted")
ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")
PAYMENT_METHODS = ("cod", "card", "bkash", "nagad")
PAYMENT_STATUSES = ("pending", "paid", "failed")


class TimestampMixin:
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class User(TimestampMixin, Base):
    """Customer or admin account. Credentials live with the auth provider."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(20), nullable=False, default="customer")
    status = Column(String(20), nullable=False, default="active", index=True)

    carts = relationship("Cart", back_populates="user")
    orders = relationship("Order", back_populates="user")


class Vendor(TimestampMixin, Base):
    __tablename__ = "vendors"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="pending", index=True)

    products = relationship("Product", back_populates="vendor")


class Category(TimestampMixin, Base):
    __tablename__ = "categories"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False, index=True)
    slug = Column(String(255), nullable=False, unique=True)
    description = Column(Text)

    products = relationship("Product", back_populates="category")


class Product(TimestampMixin, Base):
    """
    Product catalog. ``stock_quantity`` is the one contended field: it is only
    changed through conditional UPDATE statements, never read-modify-write.
    """
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        CheckConstraint("price_cents >= 0", name="ck_products_price_non_negative"),
        Index("ix_products_category_status", "category_id", "status"),
    )
    # Expression index created for Postgres below; used by indexed text search
    __text_search_index__ = "ix_products_fulltext"
    __text_search_columns__ = ("name", "description")

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False, index=True)
    slug = Column(String(255), nullable=False, unique=True)
    sku = Column(String(100), nullable=False, unique=True)
    description = Column(Text)
    price_cents = Column(Integer, nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="active", index=True)
    rating = Column(Float, nullable=False, default=0)
    review_count = Column(Integer, nullable=False, default=0)
    delivery_zone = Column(String(30), nullable=False, default="inside_dhaka")

    category_id = Column(String(36), ForeignKey("categories.id"), nullable=False, index=True)
    vendor_id = Column(String(36), ForeignKey("vendors.id"), nullable=True, index=True)

    category = relationship("Category", back_populates="products")
    vendor = relationship("Vendor", back_populates="products")


event.listen(
    Product.__table__,
    "after_create",
    DDL(
        "CREATE INDEX IF NOT EXISTS ix_products_fulltext ON products USING gin "
        "(to_tsvector('simple', coalesce(name, '') || ' ' || coalesce(description, '')))"
    ).execute_if(dialect="postgresql"),
)


class Cart(TimestampMixin, Base):
    """
    Shopping cart owned by exactly one of a signed-in user or a guest session.
    ``subtotal_cents`` is a cached sum, recomputed on every mutation.
    """
    __tablename__ = "carts"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_carts_single_owner",
        ),
        Index(
            "ux_carts_active_user", "user_id", unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index(
            "ux_carts_active_session", "session_id", unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    session_id = Column(String(100), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="active", index=True)
    subtotal_cents = Column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="carts")
    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )

    def recalculate(self) -> int:
        self.subtotal_cents = sum(item.price_cents * item.quantity for item in self.items)
        return self.subtotal_cents

    def find_item(self, product_id: str):
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None


@event.listens_for(Cart, "before_insert")
@event.listens_for(Cart, "before_update")
def _check_cart_owner(mapper, connection, cart: Cart) -> None:
    if bool(cart.user_id) == bool(cart.session_id):
        raise InvalidCartIdentifierError(
            "A cart must belong to exactly one of a user or a guest session",
            details={"user_id": cart.user_id, "session_id": cart.session_id},
        )


class CartItem(Base):
    """One product line in a cart; ``price_cents`` is the price seen when added."""
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "product_id", name="ux_cart_items_cart_product"),
        CheckConstraint("quantity >= 1", name="ck_cart_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    cart_id = Column(String(36), ForeignKey("carts.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)
    added_at = Column(DateTime(timezone=True), server_default=func.now())

    cart = relationship("Cart", back_populates="items")
    product = relationship("Product")


class Order(TimestampMixin, Base):
    """
    Order created from a verified cart. Totals are computed once at creation;
    line items are copies so later product edits don't alter history.
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    session_id = Column(String(100), nullable=True, index=True)
    cart_id = Column(String(36), ForeignKey("carts.id"), nullable=False)

    shipping_address = Column(JSON, nullable=False)
    delivery_zone = Column(String(30), nullable=True)
    payment_method = Column(String(20), nullable=False)
    payment_status = Column(String(20), nullable=False, default="pending", index=True)
    transaction_id = Column(String(100), nullable=True)

    status = Column(String(20), nullable=False, default="pending", index=True)
    subtotal_cents = Column(Integer, nullable=False)
    shipping_cost_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="BDT")

    user = relationship("User", back_populates="orders")
    cart = relationship("Cart")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    total_cents = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
