"""Pytest fixtures for printshop tests."""

import tempfile
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest

from printshop.bundle import BundleBuilder
from printshop.cart import CartConsolidator
from printshop.db import Database
from printshop.models import Identity
from printshop.notifications import NotificationEmitter
from printshop.object_store import DEFAULT_CHUNK_SIZE, StoredObject
from printshop.orders import OrderStateMachine
from printshop.uploads import UploadService

STAFF_EMAIL = "staff@printshop.test"


class FakeStream:
    """Readable body with the iter_chunks/close surface of botocore's StreamingBody."""

    def __init__(self, data: bytes, fail: bool = False):
        self._data = data
        self._fail = fail
        self.closed = False

    def iter_chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        for start in range(0, len(self._data), chunk_size):
            if self.closed:
                raise ValueError("read from closed stream")
            yield self._data[start:start + chunk_size]
            if self._fail:
                raise OSError("connection reset by peer")

    def close(self) -> None:
        self.closed = True


class FakeObjectStore:
    """In-memory ObjectStore."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str | None] = {}
        self.modified: dict[str, datetime] = {}
        self.failing_keys: set[str] = set()
        self.opened: list[FakeStream] = []

    def list_objects(self, prefix: str) -> list[StoredObject]:
        return [
            StoredObject(key=key, size=len(data), last_modified=self.modified.get(key))
            for key, data in sorted(self.objects.items())
            if key.startswith(prefix)
        ]

    def open_object(self, key: str) -> FakeStream:
        stream = FakeStream(self.objects[key], fail=key in self.failing_keys)
        self.opened.append(stream)
        return stream

    def put_object(self, key: str, body: bytes, content_type: str | None = None) -> None:
        self.objects[key] = bytes(body)
        self.content_types[key] = content_type

    def delete_object(self, key: str) -> None:
        self.objects.pop(key, None)

    def presigned_url(self, key: str, expires_in: int = 3600) -> str:
        return f"https://objects.test/{key}?expires={expires_in}"


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def database_url(temp_dir):
    return f"sqlite:///{temp_dir / 'printshop.db'}"


@pytest.fixture
def database(database_url):
    """A migrated SQLite database in a temporary directory."""
    db = Database(database_url)
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def notifier(database):
    return NotificationEmitter(database)


@pytest.fixture
def orders(database, notifier):
    return OrderStateMachine(database, notifier, staff_email=STAFF_EMAIL)


@pytest.fixture
def cart(database):
    return CartConsolidator(database)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def bundles(orders, object_store):
    return BundleBuilder(orders, object_store, chunk_size=1024)


@pytest.fixture
def uploads(orders, object_store):
    return UploadService(orders, object_store)


@pytest.fixture
def customer():
    return Identity(email="alice@example.com")


@pytest.fixture
def other_customer():
    return Identity(email="bob@example.com")


@pytest.fixture
def staff():
    return Identity(email=STAFF_EMAIL, is_staff=True)


@pytest.fixture
def product_data():
    """A valid print job as submitted by the storefront."""
    return {
        "album_name": "Summer Trip",
        "size": "4x6",
        "paper_type": "Glossy",
        "printing_format": "Borderless",
        "quantity": 3,
        "unit_price": Decimal("12.50"),
    }


@pytest.fixture
def committed_order(cart, orders, customer, product_data):
    """ID of a checked-out order with one product, payment not yet approved."""
    line = cart.add_to_cart(customer, product_data)
    orders.commit_cart(customer, line.order_id, "delivery")
    return line.order_id


@pytest.fixture
def approved_order(orders, committed_order):
    orders.approve_payment(committed_order)
    return committed_order
