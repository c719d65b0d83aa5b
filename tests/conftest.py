"""Pytest fixtures for storefront tests."""

import copy
import threading
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from schemas import Product, Template, User, Variant


class MemorySession:
    """Undo log for one in-memory transaction."""

    def __init__(self):
        self.undo = []

    def rollback(self):
        for action in reversed(self.undo):
            action()
        self.undo.clear()


class MemoryStore:
    """In-process stand-in for MongoStore with the same method contract.

    Single-document operations are atomic under one lock; a transaction is
    rolled back by replaying inverse operations, so concurrent transactions
    only ever undo their own writes.
    """

    name = "memory"

    def __init__(self):
        self.collections = defaultdict(dict)
        self.lock = threading.RLock()
        self.fail_on = set()

    def _check(self, operation):
        if operation in self.fail_on:
            raise RuntimeError(f"{operation} failed")

    def collection_names(self):
        return sorted(name for name, docs in self.collections.items() if docs)

    def run_in_transaction(self, callback):
        session = MemorySession()
        try:
            return callback(session)
        except Exception:
            with self.lock:
                session.rollback()
            raise

    def insert(self, collection_name, doc):
        doc = dict(doc)
        doc.setdefault("_id", ObjectId())
        with self.lock:
            self.collections[collection_name][doc["_id"]] = doc
        return doc["_id"]

    def get(self, collection_name, doc_id):
        with self.lock:
            return copy.deepcopy(self.collections[collection_name].get(doc_id))

    def find_product(self, product_id, session=None):
        return self.find_by_id("product", product_id, session=session)

    def try_decrement_variant(self, product_id, variant_id, amount, session=None):
        with self.lock:
            product = self.collections["product"].get(product_id)
            if product is None:
                return False
            for variant in product.get("variants", []):
                if variant["_id"] == variant_id and variant["quantity"] >= amount:
                    variant["quantity"] -= amount
                    if session is not None:
                        session.undo.append(lambda: self._restock(product_id, variant_id, amount))
                    return True
            return False

    def _restock(self, product_id, variant_id, amount):
        product = self.collections["product"].get(product_id)
        for variant in (product or {}).get("variants", []):
            if variant["_id"] == variant_id:
                variant["quantity"] += amount

    def create_document(self, collection_name, data, session=None):
        self._check(f"create:{collection_name}")
        if hasattr(data, "model_dump"):
            data = data.model_dump(by_alias=True, exclude_none=True)
        doc = copy.deepcopy(dict(data))
        now = datetime.now(timezone.utc)
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        doc_id = self.insert(collection_name, doc)
        if session is not None:
            session.undo.append(lambda: self.collections[collection_name].pop(doc_id, None))
        return str(doc_id)

    def find_by_id(self, collection_name, doc_id, session=None):
        self._check(f"find:{collection_name}")
        return self.get(collection_name, doc_id)

    def find_one(self, collection_name, query, session=None):
        self._check(f"find:{collection_name}")
        with self.lock:
            for doc in self.collections[collection_name].values():
                if all(doc.get(key) == value for key, value in query.items()):
                    return copy.deepcopy(doc)
        return None

    def set_payment_status(self, collection_name, doc_id, allowed_from, changes, session=None):
        with self.lock:
            doc = self.collections[collection_name].get(doc_id)
            if doc is None or doc.get("paymentStatus") not in tuple(allowed_from):
                return False
            previous = {key: doc.get(key) for key in changes}
            doc.update(changes)
            if session is not None:
                session.undo.append(lambda: doc.update(previous))
            return True

    def increment(self, collection_name, doc_id, field, amount=1, session=None):
        self._check(f"increment:{collection_name}")
        with self.lock:
            doc = self.collections[collection_name].get(doc_id)
            if doc is None:
                return
            doc[field] = doc.get(field, 0) + amount
            if session is not None:
                session.undo.append(lambda: doc.update({field: doc[field] - amount}))

    def add_to_set(self, collection_name, doc_id, field, value, session=None):
        with self.lock:
            doc = self.collections[collection_name].get(doc_id)
            if doc is None:
                return
            values = doc.setdefault(field, [])
            if value in values:
                return
            values.append(value)
            if session is not None:
                session.undo.append(lambda: values.remove(value))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def broadcaster():
    from notifications import Broadcaster

    return Broadcaster()


@pytest.fixture
def hmac_secret(monkeypatch):
    secret = "test-hmac-secret"
    monkeypatch.setenv("PAYMOB_HMAC_SECRET", secret)
    return secret


@pytest.fixture
def client(store, broadcaster, monkeypatch):
    """Test client wired to the in-memory store."""
    monkeypatch.setenv("APP_URL", "https://shop.example.com")

    from main import app, get_broadcaster, get_order_limiter, get_store
    from security import RateLimiter

    limiter = RateLimiter(max_requests=5, window_seconds=3600)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    app.dependency_overrides[get_order_limiter] = lambda: limiter
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def add_product(store, name="Linen Shirt", price=250.0, variants=None):
    """Insert a product; variants are (size, color, quantity) tuples."""
    product = Product(
        name=name,
        price=price,
        variants=[Variant(size=size, color=color, quantity=qty, sku=f"{name[:3].upper()}-{size}-{color}")
                  for size, color, qty in (variants or [])],
    )
    return store.insert("product", product.model_dump(by_alias=True, exclude_none=True))


def variant_ids(store, product_id):
    return [v["_id"] for v in store.get("product", product_id)["variants"]]


def variant_quantity(store, product_id, index=0):
    return store.get("product", product_id)["variants"][index]["quantity"]


def add_user(store, name="Mona", email="mona@example.com", is_admin=False, token=None):
    user_id = store.insert("user", User(name=name, email=email, isAdmin=is_admin).model_dump())
    if token:
        store.insert(
            "session",
            {
                "sessionToken": token,
                "userId": user_id,
                "expires": datetime.now(timezone.utc) + timedelta(days=1),
            },
        )
    return user_id


def add_template(store, name="Pitch Deck", price=99.0, active=True):
    template = Template(name=name, slug=name.lower().replace(" ", "-"), price=price, isActive=active)
    return store.insert("template", template.model_dump())


def add_purchase(store, user_id, template_id, payment_status="pending", paymob_order_id=None):
    doc = {
        "userId": user_id,
        "templateId": template_id,
        "purchasePrice": 99.0,
        "paymentStatus": payment_status,
        "status": "active" if payment_status == "paid" else "pending",
        "downloadCount": 0,
    }
    if paymob_order_id:
        doc["paymobOrderId"] = paymob_order_id
    return store.insert("purchase", doc)


GUEST_ADDRESS = {
    "name": "Sara Ali",
    "phone": "01012345678",
    "address": "12 Nile Street",
    "city": "Cairo",
    "state": "Cairo",
}
