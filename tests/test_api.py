import pytest

from tests.conftest import new_id, product_fields

ADDRESS = {"street": "12 Orchard Lane", "city": "Fresno"}


@pytest.fixture
def farmer(register):
    return register("farmer", "farmer@example.com")


@pytest.fixture
def customer(register):
    return register("customer", "customer@example.com")


@pytest.fixture
def product_id(client, farmer):
    headers, _ = farmer
    resp = client.post("/products", json=product_fields(), headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["product"]["id"]


def place(client, customer, farmer_id, product_id, quantity=2):
    headers, _ = customer
    body = {
        "farmer_id": farmer_id,
        "items": [{"product_id": product_id, "quantity": quantity}],
        "delivery_address": ADDRESS,
    }
    return client.post("/orders", json=body, headers=headers)


# ----------------------- Health -----------------------
def test_root(client):
    assert client.get("/").json() == {"message": "Farm Marketplace API running"}


def test_database_check(client):
    resp = client.get("/test")
    assert resp.json()["connection_status"] == "Connected"


# ----------------------- Auth -----------------------
def test_register_hides_password(client, store):
    resp = client.post("/auth/register", json={
        "name": "Sam Okafor",
        "email": "Sam@Example.com",
        "password": "hunter22",
        "phone": "555-0101",
        "profile": {"role": "customer", "preferences": ["organic"]},
    })

    assert resp.status_code == 201
    user = resp.json()["user"]
    assert user["email"] == "sam@example.com"
    assert user["role"] == "customer"
    assert user["profile"]["preferences"] == ["organic"]
    assert "password_hash" not in user
    stored = store.find_one("user", {"email": "sam@example.com"})
    assert "hunter22" not in stored["password_hash"]


def test_farmer_needs_farm_name(client):
    resp = client.post("/auth/register", json={
        "name": "Sam Okafor",
        "email": "sam@example.com",
        "password": "hunter22",
        "phone": "555-0101",
        "profile": {"role": "farmer"},
    })

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert any("farm_name" in e["field"] for e in body["errors"])


def test_duplicate_email(client, register):
    register("customer", "dup@example.com")
    resp = client.post("/auth/register", json={
        "name": "Other Person",
        "email": "dup@example.com",
        "password": "secret123",
        "phone": "555-0102",
        "profile": {"role": "customer"},
    })

    assert resp.status_code == 400
    assert resp.json()["message"] == "User already exists with this email"


def test_login(client, farmer):
    resp = client.post("/auth/login", json={"email": "farmer@example.com", "password": "secret123"})

    assert resp.status_code == 200
    assert resp.json()["token"]
    assert resp.json()["user"]["profile"]["farm_name"] == "Green Acres"

    bad = client.post("/auth/login", json={"email": "farmer@example.com", "password": "wrong-pass"})
    assert bad.status_code == 401
    assert bad.json() == {"success": False, "message": "Invalid credentials"}


def test_me_requires_token(client):
    assert client.get("/auth/me").status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_update_profile_ignores_other_role_fields(client, customer):
    headers, _ = customer
    resp = client.put("/auth/me", json={"phone": "555-0199", "farm_name": "Nope", "preferences": ["dairy"]},
                      headers=headers)

    user = resp.json()["user"]
    assert user["phone"] == "555-0199"
    assert user["profile"]["preferences"] == ["dairy"]
    assert "farm_name" not in user["profile"]


# ----------------------- Products -----------------------
def test_customer_cannot_list_products_for_sale(client, customer):
    headers, _ = customer
    resp = client.post("/products", json=product_fields(), headers=headers)
    assert resp.status_code == 403


def test_list_products_filters_and_pages(client, farmer):
    headers, _ = farmer
    client.post("/products", json=product_fields(name="Carrots", price=1.5), headers=headers)
    client.post("/products", json=product_fields(name="Apples", category="fruits", price=3.0), headers=headers)
    client.post("/products", json=product_fields(name="Pears", category="fruits", price=5.0,
                                                 is_organic=False), headers=headers)

    fruits = client.get("/products", params={"category": "fruits", "sort_by": "price", "sort_order": "asc"}).json()
    assert [p["name"] for p in fruits["products"]] == ["Apples", "Pears"]

    cheap = client.get("/products", params={"max_price": 3.0}).json()
    assert {p["name"] for p in cheap["products"]} == {"Carrots", "Apples"}

    organic = client.get("/products", params={"organic": "true"}).json()
    assert organic["total"] == 2

    found = client.get("/products", params={"search": "carr"}).json()
    assert [p["name"] for p in found["products"]] == ["Carrots"]

    page = client.get("/products", params={"limit": 2, "page": 1}).json()
    assert page["count"] == 2
    assert page["pagination"] == {"current_page": 1, "total_pages": 2, "has_next": True, "has_prev": False}


def test_product_detail_includes_farm(client, product_id):
    product = client.get(f"/products/{product_id}").json()["product"]
    assert product["farmer"]["farm_name"] == "Green Acres"

    assert client.get(f"/products/{new_id()}").status_code == 404
    assert client.get("/products/not-an-id").status_code == 400


def test_only_owner_edits_product(client, register, product_id, farmer):
    other_headers, _ = register("farmer", "other@example.com", farm_name="Hill Farm")
    assert client.put(f"/products/{product_id}", json={"price": 1.0}, headers=other_headers).status_code == 403
    assert client.delete(f"/products/{product_id}", headers=other_headers).status_code == 403

    headers, farmer_id = farmer
    resp = client.put(f"/products/{product_id}", json={"price": 3.25, "quantity": 0}, headers=headers)
    assert resp.json()["product"]["price"] == 3.25

    assert client.put(f"/products/{product_id}", json={"quantity": -1}, headers=headers).status_code == 400

    listed = client.get(f"/products/farmer/{farmer_id}").json()
    assert listed["count"] == 1

    assert client.delete(f"/products/{product_id}", headers=headers).status_code == 200
    assert client.get(f"/products/{product_id}").status_code == 404


# ----------------------- Orders -----------------------
def test_order_lifecycle(client, farmer, customer, product_id):
    farmer_headers, farmer_id = farmer
    customer_headers, _ = customer

    resp = place(client, customer, farmer_id, product_id)
    assert resp.status_code == 201
    order = resp.json()["order"]
    assert order["subtotal"] == 5.98
    assert order["status"] == "pending"
    assert client.get(f"/products/{product_id}").json()["product"]["quantity"] == 48

    status_url = f"/orders/{order['id']}/status"
    assert client.put(status_url, json={"status": "confirmed"}, headers=customer_headers).status_code == 403

    delivered = client.put(status_url, json={"status": "delivered"}, headers=farmer_headers).json()["order"]
    assert delivered["actual_delivery"]

    review_url = f"/orders/{order['id']}/review"
    reviewed = client.post(review_url, json={"rating": 5, "review": "  Great  "}, headers=customer_headers)
    assert reviewed.status_code == 200
    assert reviewed.json()["order"]["rating"] == 5
    assert reviewed.json()["order"]["review"] == "Great"

    again = client.post(review_url, json={"rating": 4}, headers=customer_headers)
    assert again.status_code == 400
    assert again.json()["message"] == "Order already reviewed"


def test_order_with_too_many_units(client, farmer, customer, product_id):
    _, farmer_id = farmer
    resp = place(client, customer, farmer_id, product_id, quantity=51)

    assert resp.status_code == 400
    assert resp.json()["message"] == "Insufficient quantity for Heirloom Tomatoes"
    assert client.get(f"/products/{product_id}").json()["product"]["quantity"] == 50


def test_order_validation_errors(client, farmer, customer, product_id):
    headers, _ = customer
    _, farmer_id = farmer

    resp = client.post("/orders", json={"farmer_id": farmer_id, "items": [], "delivery_address": ADDRESS},
                       headers=headers)
    assert resp.status_code == 400
    assert resp.json()["errors"][0]["field"] == "items"

    resp = client.post("/orders", json={
        "farmer_id": "bogus",
        "items": [{"product_id": product_id, "quantity": 0}],
    }, headers=headers)
    fields = {e["field"] for e in resp.json()["errors"]}
    assert {"farmer_id", "items.0.quantity", "delivery_address"} <= fields


def test_farmers_cannot_place_orders(client, farmer, product_id):
    headers, farmer_id = farmer
    resp = client.post("/orders", json={
        "farmer_id": farmer_id,
        "items": [{"product_id": product_id, "quantity": 1}],
        "delivery_address": ADDRESS,
    }, headers=headers)
    assert resp.status_code == 403


def test_order_detail_access(client, register, farmer, customer, product_id):
    _, farmer_id = farmer
    order_id = place(client, customer, farmer_id, product_id).json()["order"]["id"]

    customer_headers, _ = customer
    detail = client.get(f"/orders/{order_id}", headers=customer_headers).json()["order"]
    assert detail["farmer"]["farm_name"] == "Green Acres"
    assert detail["customer"]["phone"] == "555-0100"

    stranger_headers, _ = register("customer", "stranger@example.com")
    assert client.get(f"/orders/{order_id}", headers=stranger_headers).status_code == 403


def test_invalid_status_value(client, farmer, customer, product_id):
    farmer_headers, farmer_id = farmer
    order_id = place(client, customer, farmer_id, product_id).json()["order"]["id"]

    resp = client.put(f"/orders/{order_id}/status", json={"status": "pending"}, headers=farmer_headers)
    assert resp.status_code == 400

    client.put(f"/orders/{order_id}/status", json={"status": "ready"}, headers=farmer_headers)
    resp = client.put(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers=farmer_headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Cannot change order status from ready to confirmed"


def test_order_lists(client, farmer, customer, product_id):
    farmer_headers, farmer_id = farmer
    customer_headers, _ = customer
    for _ in range(3):
        place(client, customer, farmer_id, product_id, quantity=1)

    mine = client.get("/orders/customer", params={"limit": 2}, headers=customer_headers).json()
    assert mine["total"] == 3
    assert mine["count"] == 2
    assert mine["pagination"]["has_next"] is True

    incoming = client.get("/orders/farmer", params={"status": "pending"}, headers=farmer_headers).json()
    assert incoming["total"] == 3

    none = client.get("/orders/farmer", params={"status": "delivered"}, headers=farmer_headers).json()
    assert none["orders"] == []
    assert none["pagination"]["total_pages"] == 0

    assert client.get("/orders/farmer", headers=customer_headers).status_code == 403


def test_update_rejects_blank_name_and_no_images(client, farmer, product_id):
    headers, _ = farmer

    blank = client.put(f"/products/{product_id}", json={"name": "   "}, headers=headers)
    assert blank.status_code == 400
    assert blank.json()["errors"][0]["field"] == "name"

    no_images = client.put(f"/products/{product_id}", json={"images": []}, headers=headers)
    assert no_images.status_code == 400

    renamed = client.put(f"/products/{product_id}", json={"name": "  Cherry Tomatoes "}, headers=headers)
    assert renamed.json()["product"]["name"] == "Cherry Tomatoes"
    product = client.get(f"/products/{product_id}").json()["product"]
    assert product["images"] == ["https://images.example.com/tomatoes.jpg"]


def test_organic_false_does_not_filter(client, farmer):
    headers, _ = farmer
    client.post("/products", json=product_fields(name="Kale", is_organic=True), headers=headers)
    client.post("/products", json=product_fields(name="Leeks", is_organic=False, is_available=False),
                headers=headers)

    assert client.get("/products", params={"organic": "false"}).json()["total"] == 2
    assert client.get("/products", params={"available": "false"}).json()["total"] == 2
    assert client.get("/products", params={"available": "true"}).json()["total"] == 1


def test_listings_include_farm(client, farmer, customer, product_id):
    farmer_headers, farmer_id = farmer
    customer_headers, _ = customer
    place(client, customer, farmer_id, product_id)

    products = client.get("/products").json()["products"]
    assert products[0]["farmer"]["farm_name"] == "Green Acres"

    farm_products = client.get(f"/products/farmer/{farmer_id}").json()["products"]
    assert farm_products[0]["farmer"]["name"] == "Pat Rivera"

    mine = client.get("/orders/customer", headers=customer_headers).json()["orders"]
    assert mine[0]["farmer"]["farm_name"] == "Green Acres"
    assert mine[0]["items"][0]["product"]["images"] == ["https://images.example.com/tomatoes.jpg"]

    incoming = client.get("/orders/farmer", headers=farmer_headers).json()["orders"]
    assert incoming[0]["customer"]["phone"] == "555-0100"


def test_login_with_corrupt_stored_hash(client, store, customer):
    store.db["user"].update_one({"email": "customer@example.com"},
                                {"$set": {"password_hash": "pbkdf2_sha256$many$zz$00"}})

    resp = client.post("/auth/login", json={"email": "customer@example.com", "password": "secret123"})
    assert resp.status_code == 401
