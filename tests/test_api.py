"""
Tests for the HTTP API.

Tests verify:
- Every response uses the {status, data, error} envelope
- Query-engine parameters in bracket notation reach the product listing
- Error kinds map to HTTP status codes and envelope statuses
- Guest cookie carts, checkout and sign-in merge over HTTP
"""
import pytest
from fastapi.testclient import TestClient

from storefront.api.server import create_app
from storefront.core.config import StorefrontConfig
from storefront.services import accounts

ADDRESS = {"name": "Karim", "phone": "01800000000", "address": "Road 5", "city": "Chattogram"}


@pytest.fixture
def client(tmp_path):
    config = StorefrontConfig(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        shipping_rates={"inside_dhaka": 6000, "outside_dhaka": 12000},
        log_level="WARNING",
    )
    app = create_app(config)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def category_id(client):
    response = client.post("/categories", json={"name": "Home Appliances"})
    assert response.status_code == 201
    return response.json()["data"]["id"]


@pytest.fixture
def create_product(client, category_id):
    def _create(name, price_cents=1000, stock_quantity=10, **extra):
        payload = {"name": name, "price_cents": price_cents, "stock_quantity": stock_quantity, "category_id": category_id}
        payload.update(extra)
        response = client.post("/products", json=payload)
        assert response.status_code == 201, response.text
        return response.json()["data"]
    return _create


def create_user(db, name="Shopper"):
    return accounts.create_user(db, name=name, email=f"{name.lower()}@example.com")


@pytest.fixture
def app_db(client):
    """Direct session against the app's database, for seeding what has no endpoint."""
    session = client.app.state.session_factory()
    yield session
    session.close()


#
# Test: health and envelope
#

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"] == "healthy"


def test_create_and_fetch_product(client, create_product):
    product = create_product("Rice Cooker", price_cents=350000, stock_quantity=4)
    assert product["slug"] == "rice-cooker"
    assert product["sku"].startswith("SKU-")

    body = client.get(f"/products/{product['id']}").json()
    assert body["status"] == "OK"
    assert body["error"] is None
    assert body["data"]["name"] == "Rice Cooker"
    assert body["data"]["category"]["name"] == "Home Appliances"


def test_product_listing_uses_query_parameters(client, create_product):
    create_product("Fan", price_cents=2000)
    create_product("Iron", price_cents=4000)
    create_product("Blender", price_cents=9000)

    response = client.get("/products", params={"price_cents[gte]": "3000", "sort": "price_cents", "limit": "1"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert [p["name"] for p in data["items"]] == ["Iron"]
    assert data["pagination"]["total_count"] == 2
    assert data["pagination"]["has_next"] is True
    assert data["items"][0]["category"]["name"] == "Home Appliances"


def test_product_search(client, create_product):
    create_product("Steam Iron")
    create_product("Table Fan")
    items = client.get("/products", params={"search": "iron"}).json()["data"]["items"]
    assert [p["name"] for p in items] == ["Steam Iron"]


#
# Test: error mapping
#

def test_limit_above_maximum_is_400(client):
    response = client.get("/products", params={"limit": "1000"})
    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "INVALID"
    assert body["data"] is None
    assert body["error"]["kind"] == "client_input"
    assert body["error"]["code"] == "LIMIT_EXCEEDED"


def test_missing_product_is_404(client):
    response = client.get("/products/does-not-exist")
    assert response.status_code == 404
    assert response.json()["status"] == "NOT_FOUND"
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_unknown_request_field_is_422(client, category_id):
    response = client.post("/products", json={
        "name": "Kettle", "price_cents": 100, "category_id": category_id, "discount": 5,
    })
    assert response.status_code == 422
    assert response.json()["status"] == "INVALID"
    assert response.json()["error"]["kind"] == "client_input"


def test_duplicate_slug_is_409(client):
    assert client.post("/categories", json={"name": "Books"}).status_code == 201
    response = client.post("/categories", json={"name": "Books"})
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "DUPLICATE"


#
# Test: guest cart and checkout
#

def test_guest_cart_checkout(client, create_product):
    product = create_product("Pressure Cooker", price_cents=250000, stock_quantity=2)

    response = client.post("/cart/items", json={"product_id": product["id"], "quantity": 2})
    assert response.status_code == 200
    assert client.cookies.get("cartSessionId").startswith("guest_")
    cart = response.json()["data"]
    assert cart["subtotal_cents"] == 500000
    assert cart["items"][0]["product_name"] == "Pressure Cooker"

    response = client.post("/orders", json={"shipping_address": ADDRESS, "delivery_zone": "outside_dhaka"})
    assert response.status_code == 201, response.text
    order = response.json()["data"]
    assert order["total_cents"] == 500000 + 12000
    assert order["status"] == "pending"

    fetched = client.get(f"/orders/{order['id']}").json()["data"]
    assert fetched["items"][0]["quantity"] == 2

    product_after = client.get(f"/products/{product['id']}").json()["data"]
    assert product_after["stock_quantity"] == 0

    # Cart was converted; a fresh one starts empty
    assert client.get("/cart").json()["data"]["items"] == []


def test_out_of_stock_is_409(client, create_product):
    product = create_product("Air Cooler", stock_quantity=1)
    response = client.post("/cart/items", json={"product_id": product["id"], "quantity": 2})
    assert response.status_code == 409
    body = response.json()
    assert body["status"] == "OUT_OF_STOCK"
    assert body["error"]["code"] == "INSUFFICIENT_STOCK"
    assert body["error"]["details"]["items"][0]["available_qty"] == 1


def test_checkout_with_empty_cart_is_400(client):
    response = client.post("/orders", json={"shipping_address": ADDRESS})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "CART_EMPTY"


def test_cart_update_remove_and_verify(client, create_product):
    a = create_product("Toaster", price_cents=3000)
    b = create_product("Grill", price_cents=5000)
    client.post("/cart/items", json={"product_id": a["id"], "quantity": 1})
    client.post("/cart/items", json={"product_id": b["id"], "quantity": 1})

    cart = client.patch("/cart/items", json={"product_id": a["id"], "quantity": 3}).json()["data"]
    assert cart["subtotal_cents"] == 3 * 3000 + 5000

    cart = client.delete(f"/cart/items/{b['id']}").json()["data"]
    assert [i["product_id"] for i in cart["items"]] == [a["id"]]

    verified = client.post("/cart/verify").json()["data"]
    assert verified["valid"] is True
    assert verified["price_changes"] == []

    assert client.delete("/cart").json()["data"]["items"] == []


#
# Test: signed-in users
#

def test_merge_guest_cart_on_sign_in(client, app_db, create_product):
    user = create_user(app_db)
    product = create_product("Microwave", price_cents=12000)

    client.post("/cart/items", json={"product_id": product["id"], "quantity": 2})
    response = client.post("/cart/merge", headers={"X-User-Id": user.id})
    assert response.status_code == 200
    merged = response.json()["data"]
    assert merged["user_id"] == user.id
    assert merged["session_id"] is None
    assert merged["items"][0]["quantity"] == 2

    cart = client.get("/cart", headers={"X-User-Id": user.id}).json()["data"]
    assert cart["id"] == merged["id"]


def test_merge_without_user_is_400(client):
    response = client.post("/cart/merge", json={"session_id": "guest_abc"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_CART_IDENTIFIER"


def test_order_status_updates(client, app_db, create_product):
    user = create_user(app_db, "Buyer")
    headers = {"X-User-Id": user.id}
    product = create_product("Heater", price_cents=8000, stock_quantity=3)
    client.post("/cart/items", json={"product_id": product["id"], "quantity": 1}, headers=headers)
    order = client.post("/orders", json={"shipping_address": ADDRESS}, headers=headers).json()["data"]
    assert order["user_id"] == user.id

    response = client.patch(f"/orders/{order['id']}/status", json={"status": "confirmed"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "confirmed"

    response = client.patch(f"/orders/{order['id']}/status", json={"status": "delivered"})
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"

    response = client.patch(f"/orders/{order['id']}/payment", json={"payment_status": "paid", "transaction_id": "T-1"})
    assert response.json()["data"]["payment_status"] == "paid"

    listing = client.get("/orders", params={"user_id": user.id}).json()["data"]
    assert [o["id"] for o in listing["items"]] == [order["id"]]
