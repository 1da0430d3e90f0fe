"""
Tests for the catalog and accounts services.
"""
import pytest

from storefront.core.errors import ClientInputError, DuplicateError, NotFoundError
from storefront.data.models import Product
from storefront.services import accounts, catalog


def test_slugify():
    assert catalog.slugify("  Rice Cooker 5L! ") == "rice-cooker-5l"
    assert len(catalog.slugify("!!!")) == 8


#
# Test: products
#

def test_create_product_generates_slug_and_sku(db, make_category):
    category = make_category(db, "Kitchen")
    product = catalog.create_product(db, {"name": "Rice Cooker", "price_cents": 4500, "category_id": category.id})

    assert product.slug == "rice-cooker"
    assert product.sku.startswith("SKU-")
    assert product.status == "active"
    assert product.stock_quantity == 0
    assert catalog.product_to_dict(product)["category"]["name"] == "Kitchen"


def test_create_product_validates_references_and_values(db, make_category):
    category = make_category(db)
    with pytest.raises(NotFoundError):
        catalog.create_product(db, {"name": "X", "price_cents": 1, "category_id": "missing"})
    with pytest.raises(NotFoundError):
        catalog.create_product(db, {"name": "X", "price_cents": 1, "category_id": category.id, "vendor_id": "missing"})
    with pytest.raises(ClientInputError):
        catalog.create_product(db, {"name": "X", "price_cents": -1, "category_id": category.id})
    with pytest.raises(ClientInputError):
        catalog.create_product(db, {"name": "X", "price_cents": 1, "category_id": category.id, "status": "deleted"})


def test_update_product_only_touches_editable_fields(db, make_product):
    product = make_product(db, "Fan", price_cents=2000, stock_quantity=4)
    updated = catalog.update_product(db, product.id, {"name": "Ceiling Fan", "price_cents": 2500, "stock_quantity": 99})

    assert (updated.name, updated.price_cents) == ("Ceiling Fan", 2500)
    assert updated.stock_quantity == 4


def test_deactivate_and_restock(db, make_product):
    product = make_product(db, stock_quantity=1)

    assert catalog.deactivate_product(db, product.id).status == "inactive"
    assert catalog.restock_product(db, product.id, 5).stock_quantity == 6
    with pytest.raises(ClientInputError):
        catalog.restock_product(db, product.id, 0)
    with pytest.raises(NotFoundError):
        catalog.get_product(db, "missing")


def test_decrement_stock_is_conditional(db, make_product):
    product = make_product(db, stock_quantity=5)

    assert catalog.decrement_stock(db, product.id, 3) is True
    assert product.stock_quantity == 2
    assert catalog.decrement_stock(db, product.id, 3) is False
    assert product.stock_quantity == 2
    db.commit()

    assert db.get(Product, product.id, populate_existing=True).stock_quantity == 2


def test_search_products_expands_category(db, make_category, make_product):
    category = make_category(db, "Audio")
    make_product(db, "Speaker", category_id=category.id)

    page = catalog.search_products(db, {"search": "speak"})
    assert page.pagination.total_count == 1
    assert page.items[0]["category"]["name"] == "Audio"


#
# Test: categories
#

def test_categories(db):
    created = catalog.create_category(db, "Home & Living", description="Everything for the house")
    assert created.slug == "home-living"
    assert catalog.get_category(db, created.id).name == "Home & Living"
    assert catalog.search_categories(db, {"search": "home"}).pagination.total_count == 1

    with pytest.raises(NotFoundError):
        catalog.get_category(db, "missing")
    with pytest.raises(DuplicateError):
        catalog.create_category(db, "Home Living", slug="home-living")


#
# Test: accounts
#

def test_users(db):
    user = accounts.create_user(db, "Nadia", "  Nadia@Example.COM ")
    assert user.email == "nadia@example.com"
    assert user.role == "customer"
    assert accounts.get_user(db, user.id).name == "Nadia"

    with pytest.raises(DuplicateError):
        accounts.create_user(db, "Other Nadia", "nadia@example.com")
    with pytest.raises(ClientInputError):
        accounts.create_user(db, "Root", "root@example.com", role="superuser")
    with pytest.raises(NotFoundError):
        accounts.get_user(db, "missing")


def test_user_listing_applies_select_whitelist(db):
    accounts.create_user(db, "Farhan", "farhan@example.com")
    page = accounts.search_users(db, {"select": "name,email,updated_at"})
    assert set(page.items[0]) == {"id", "name", "email"}


def test_vendors(db):
    vendor = accounts.create_vendor(db, "Dhaka Electronics", "sales@dhaka-electronics.example")
    assert vendor.status == "pending"
    assert accounts.get_vendor(db, vendor.id).name == "Dhaka Electronics"
    assert accounts.search_vendors(db, {"status": "pending"}).pagination.total_count == 1

    with pytest.raises(ClientInputError):
        accounts.create_vendor(db, "Bad", "bad@example.com", status="unknown")
    with pytest.raises(NotFoundError):
        accounts.get_vendor(db, "missing")
