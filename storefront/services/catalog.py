"""
Catalog service: products and categories.

Product stock is only ever changed here, through ``decrement_stock`` and
``increment_stock``, both single conditional UPDATE statements evaluated by
the database.
"""
import re
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from storefront.core.errors import ClientInputError, NotFoundError
from storefront.data.database import storage_errors, transaction
from storefront.data.models import DELIVERY_ZONES, PRODUCT_STATUSES, Category, Product, Vendor
from storefront.query.builder import QueryBuilder, to_plain
from storefront.query.types import EntityQueryConfig
from storefront.utils.logger import get_logger

logger = get_logger("services.catalog")

PRODUCT_QUERY = QueryBuilder(EntityQueryConfig(
    search_fields=("name", "description", "slug"),
    sortable_fields=("name", "created_at", "price_cents", "rating", "stock_quantity"),
    filterable_fields=(
        "name", "created_at", "category_id", "vendor_id", "price_cents", "stock_quantity", "status",
    ),
    default_sort="-created_at",
    enable_text_search=True,
))

CATEGORY_QUERY = QueryBuilder(EntityQueryConfig(
    search_fields=("name",),
    sortable_fields=("name", "created_at"),
    filterable_fields=("name", "created_at"),
    default_sort="created_at",
))

# Fields an admin may change through update_product; stock goes through restock_product
PRODUCT_EDITABLE_FIELDS = (
    "name", "slug", "description", "price_cents", "status", "delivery_zone", "category_id", "vendor_id",
)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

def search_products(db: Session, params: Dict[str, Any], session_factory: Optional[sessionmaker] = None):
    """Paginated product listing with the category expanded."""
    return (
        PRODUCT_QUERY.query(db, Product, params, session_factory=session_factory)
        .populate("category")
        .paginate()
        .lean()
        .execute()
    )


def get_product(db: Session, product_id: str) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product '{product_id}' does not exist", details={"product_id": product_id})
    return product


def product_to_dict(product: Product) -> Dict[str, Any]:
    return to_plain(product, {"category": {}})


def create_product(db: Session, data: Dict[str, Any]) -> Product:
    """Create a product; ``slug`` and ``sku`` are generated when omitted."""
    _validate_product_fields(data)
    if db.get(Category, data["category_id"]) is None:
        raise NotFoundError(
            f"Category '{data['category_id']}' does not exist",
            details={"category_id": data["category_id"]},
        )
    if data.get("vendor_id") and db.get(Vendor, data["vendor_id"]) is None:
        raise NotFoundError(f"Vendor '{data['vendor_id']}' does not exist", details={"vendor_id": data["vendor_id"]})

    product = Product(
        name=data["name"],
        slug=data.get("slug") or slugify(data["name"]),
        sku=data.get("sku") or f"SKU-{uuid.uuid4().hex[:10].upper()}",
        description=data.get("description"),
        price_cents=int(data["price_cents"]),
        stock_quantity=int(data.get("stock_quantity", 0)),
        status=data.get("status", "active"),
        delivery_zone=data.get("delivery_zone", "inside_dhaka"),
        category_id=data["category_id"],
        vendor_id=data.get("vendor_id"),
    )
    with transaction(db, "create_product"):
        db.add(product)
    db.refresh(product)
    logger.info("catalog: method=create_product product_id=%s sku=%s", product.id, product.sku)
    return product


def update_product(db: Session, product_id: str, changes: Dict[str, Any]) -> Product:
    product = get_product(db, product_id)
    _validate_product_fields(changes)
    with transaction(db, "update_product"):
        for key in PRODUCT_EDITABLE_FIELDS:
            if key in changes:
                setattr(product, key, changes[key])
    logger.info("catalog: method=update_product product_id=%s fields=%s", product_id, sorted(changes))
    return product


def deactivate_product(db: Session, product_id: str) -> Product:
    """Soft delete: products referenced by orders are never removed."""
    return update_product(db, product_id, {"status": "inactive"})


def restock_product(db: Session, product_id: str, quantity: int) -> Product:
    if quantity < 1:
        raise ClientInputError("Restock quantity must be at least 1", details={"quantity": quantity})
    product = get_product(db, product_id)
    with transaction(db, "restock_product"):
        increment_stock(db, product_id, quantity)
    db.refresh(product)
    logger.info("catalog: method=restock_product product_id=%s quantity=%s", product_id, quantity)
    return product


def _validate_product_fields(data: Dict[str, Any]) -> None:
    if "price_cents" in data and int(data["price_cents"]) < 0:
        raise ClientInputError("price_cents cannot be negative", details={"price_cents": data["price_cents"]})
    if "stock_quantity" in data and int(data["stock_quantity"]) < 0:
        raise ClientInputError(
            "stock_quantity cannot be negative", details={"stock_quantity": data["stock_quantity"]},
        )
    if "status" in data and data["status"] not in PRODUCT_STATUSES:
        raise ClientInputError(f"Unknown product status '{data['status']}'", details={"allowed": list(PRODUCT_STATUSES)})
    if "delivery_zone" in data and data["delivery_zone"] not in DELIVERY_ZONES:
        raise ClientInputError(
            f"Unknown delivery zone '{data['delivery_zone']}'", details={"allowed": list(DELIVERY_ZONES)},
        )


# ---------------------------------------------------------------------------
# Stock
# ---------------------------------------------------------------------------

def decrement_stock(db: Session, product_id: str, quantity: int) -> bool:
    """
    Take ``quantity`` units in one conditional UPDATE. Returns False, changing
    nothing, when fewer than ``quantity`` units remain at write time.
    """
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.stock_quantity >= quantity)
        .values(stock_quantity=Product.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    with storage_errors("decrement_stock"):
        result = db.execute(stmt)
    _expire_cached_stock(db, product_id)
    return result.rowcount == 1


def increment_stock(db: Session, product_id: str, quantity: int) -> None:
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(stock_quantity=Product.stock_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    with storage_errors("increment_stock"):
        db.execute(stmt)
    _expire_cached_stock(db, product_id)


def _expire_cached_stock(db: Session, product_id: str) -> None:
    # Bulk UPDATEs bypass the identity map; reload stock on next access
    cached = db.identity_map.get(db.identity_key(Product, product_id))
    if cached is not None:
        db.expire(cached, ["stock_quantity"])


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

def search_categories(db: Session, params: Dict[str, Any], session_factory: Optional[sessionmaker] = None):
    return CATEGORY_QUERY.query(db, Category, params, session_factory=session_factory).paginate().lean().execute()


def get_category(db: Session, category_id: str) -> Category:
    category = db.get(Category, category_id)
    if category is None:
        raise NotFoundError(f"Category '{category_id}' does not exist", details={"category_id": category_id})
    return category


def create_category(db: Session, name: str, slug: Optional[str] = None, description: Optional[str] = None) -> Category:
    category = Category(name=name, slug=slug or slugify(name), description=description)
    with transaction(db, "create_category"):
        db.add(category)
    db.refresh(category)
    logger.info("catalog: method=create_category category_id=%s slug=%s", category.id, category.slug)
    return category
