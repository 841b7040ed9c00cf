import os

os.environ.pop("DATABASE_URL", None)
os.environ["JWT_SECRET"] = "test-access-secret"
os.environ["JWT_REFRESH_SECRET"] = "test-refresh-secret"
os.environ["BCRYPT_ROUNDS"] = "4"

import mongomock
import pytest

import database

# Must be swapped in before any module does `from database import db`.
database.db = mongomock.MongoClient()["marketplace_test"]

from fastapi.testclient import TestClient

from database import create_document
from main import app
from schemas import Category, Product, slugify
from seed import seed_admin

db = database.db

ADDRESS = {
    "street": "1 Market St",
    "city": "Springfield",
    "state": "OR",
    "country": "US",
    "postal_code": "97477",
}


@pytest.fixture(autouse=True)
def clean_db():
    yield
    for name in db.list_collection_names():
        db.drop_collection(name)


@pytest.fixture
def client():
    return TestClient(app)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, email, role="buyer", password="secret123"):
    return client.post("/api/auth/register", json={
        "email": email,
        "password": password,
        "first_name": "Test",
        "last_name": "User",
        "role": role,
    })


def login(client, email, password="secret123"):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def session(resp):
    data = resp.json()["data"]
    return {
        "id": data["user"]["id"],
        "access_token": data["tokens"]["access_token"],
        "refresh_token": data["tokens"]["refresh_token"],
        "headers": auth(data["tokens"]["access_token"]),
    }


@pytest.fixture
def buyer(client):
    return session(register(client, "buyer@marketplace.com"))


@pytest.fixture
def other_buyer(client):
    return session(register(client, "second.buyer@marketplace.com"))


@pytest.fixture
def vendor(client):
    resp = register(client, "vendor@marketplace.com", role="vendor")
    user_id = resp.json()["data"]["user"]["id"]
    db["user"].update_one({"_id": database.oid(user_id)}, {"$set": {"is_approved": True}})
    return session(login(client, "vendor@marketplace.com"))


@pytest.fixture
def admin(client):
    seed_admin("admin@marketplace.com", "adminpass")
    return session(login(client, "admin@marketplace.com", "adminpass"))


@pytest.fixture
def category():
    cid = create_document("category", Category(name="Electronics", slug="electronics"))
    return cid


@pytest.fixture
def make_product(vendor, category):
    def factory(name="Widget", price=10.0, quantity=10, track_quantity=True,
                allow_backorder=False, is_active=True, is_approved=True, images=None):
        product = Product(
            name=name,
            slug=slugify(name),
            description="A product used in tests",
            price=price,
            sku=f"SKU-{slugify(name)}",
            track_quantity=track_quantity,
            quantity=quantity,
            allow_backorder=allow_backorder,
            images=images or [],
            featured_image=(images or [None])[0],
            category_id=category,
            vendor_id=vendor["id"],
            is_active=is_active,
            is_approved=is_approved,
        )
        return create_document("product", product)
    return factory


def stock_of(product_id):
    return db["product"].find_one({"_id": database.oid(product_id)})["quantity"]
