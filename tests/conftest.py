import mongomock
import pytest
from bson.objectid import ObjectId
from fastapi.testclient import TestClient

import auth
from database import Store, get_store
from main import app
from schemas import Product

TEST_DB = "farm_market_test"


def product_fields(**overrides):
    fields = {
        "name": "Heirloom Tomatoes",
        "description": "Vine ripened, picked this morning",
        "category": "vegetables",
        "price": 2.99,
        "unit": "kg",
        "quantity": 50,
        "images": ["https://images.example.com/tomatoes.jpg"],
        "is_organic": True,
        "location": {"type": "Point", "coordinates": [-122.41, 37.77]},
    }
    fields.update(overrides)
    return fields


def new_id() -> str:
    return str(ObjectId())


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(auth, "PBKDF2_ITERATIONS", 1000)


@pytest.fixture
def store():
    client = mongomock.MongoClient()
    yield Store(client[TEST_DB])
    client.drop_database(TEST_DB)


@pytest.fixture
def add_product(store):
    def _add(farmer_id, **overrides):
        pid = store.create_document("product", Product(farmer_id=farmer_id, **product_fields(**overrides)))
        return pid

    return _add


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def register(client):
    """Register an account over HTTP; returns (auth headers, user id)."""

    def _register(role, email, **profile):
        if role == "farmer":
            profile.setdefault("farm_name", "Green Acres")
        body = {
            "name": "Pat Rivera",
            "email": email,
            "password": "secret123",
            "phone": "555-0100",
            "profile": {"role": role, **profile},
        }
        resp = client.post("/auth/register", json=body)
        assert resp.status_code == 201, resp.text
        data = resp.json()
        return {"Authorization": f"Bearer {data['token']}"}, data["user"]["id"]

    return _register
