"""Shared fixtures: an in-memory MongoDB, a small seeded catalog, users and API clients."""
import os

os.environ.setdefault("ENVIRONMENT", "test")

import mongomock
import pytest
from fastapi.testclient import TestClient

from accounts import Accounts
from carts import CartManager, GuestCartStore, UserCartStore
from catalog import Catalog
from database import ensure_indexes, get_db
from schemas import Category, Product, RegisterRequest

PASSWORD = "secret123"


@pytest.fixture()
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture()
def catalog(db):
    return Catalog(db)


@pytest.fixture()
def category(catalog):
    return catalog.create_category(Category(name="Shirts", description="Casual and formal shirts"))


@pytest.fixture()
def shirt(catalog, category):
    """The 29.99 oxford shirt: 55 in M/Blue, 5 in L/Blue."""
    return catalog.create_product(Product(
        name="Oxford Shirt",
        description="Classic button-down oxford",
        price=29.99,
        compare_price=39.99,
        cost_price=12.0,
        sku="SHIRT-001",
        category=category["id"],
        brand="Northwind",
        images=[{"url": "/images/oxford.jpg", "is_main": True}],
        variants=[
            {"size": "M", "color": "Blue", "stock": 55},
            {"size": "L", "color": "Blue", "stock": 5},
        ],
        specifications={"fabric": "Cotton"},
        tags=["oxford", "cotton"],
    ))


@pytest.fixture()
def jacket(catalog, category):
    return catalog.create_product(Product(
        name="Denim Jacket",
        description="Heavy denim jacket",
        price=80.0,
        sku="JACKET-001",
        category=category["id"],
        brand="Ridgeline",
        variants=[
            {"size": "L", "color": "Indigo", "stock": 3},
            {"size": "XL", "color": "Black", "stock": 2, "price": 90.0},
        ],
        specifications={"fabric": "Denim"},
        tags=["outerwear"],
    ))


def register(db, email, first_name="Test", last_name="User"):
    return Accounts(db).register(RegisterRequest(
        first_name=first_name,
        last_name=last_name,
        email=email,
        password=PASSWORD,
        confirm_password=PASSWORD,
    ))


@pytest.fixture()
def user(db):
    return register(db, "shopper@example.com", "Sam", "Shopper")


@pytest.fixture()
def admin(db):
    created = register(db, "admin@example.com", "Ada", "Admin")
    db["user"].update_one({"email": "admin@example.com"}, {"$set": {"role": "admin"}})
    return {**created, "role": "admin"}


@pytest.fixture()
def session():
    return {}


@pytest.fixture()
def guest_cart(session, catalog):
    return CartManager(GuestCartStore(session), catalog)


@pytest.fixture()
def user_cart(db, user, catalog):
    return CartManager(UserCartStore(db, user["id"]), catalog)


@pytest.fixture()
def client(db):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def login(client, email, password=PASSWORD):
    response = client.post("/api/login", data={"username": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture()
def user_headers(client, user):
    return login(client, user["email"])


@pytest.fixture()
def admin_headers(client, admin):
    return login(client, admin["email"])
