"""Tests for the FastAPI API."""

import io
import zipfile

import pytest
from fastapi.testclient import TestClient

from printshop.api import create_app, error_status
from printshop.config import Settings
from printshop.errors import (
    BundleStreamError,
    EmptyCartError,
    EmptyFolderError,
    NoStatusToAdvanceError,
    OrderCanceledError,
    StorageError,
)

CUSTOMER = {"X-User-Email": "alice@example.com", "X-User-Role": "customer"}
OTHER = {"X-User-Email": "bob@example.com"}
STAFF = {"X-User-Email": "staff@printshop.test", "X-User-Role": "staff"}

ITEM = {
    "album_name": "Summer Trip",
    "size": "4x6",
    "paper_type": "Glossy",
    "printing_format": "Borderless",
    "quantity": 2,
    "unit_price": "10.00",
}


@pytest.fixture
def api_client(database, database_url, object_store):
    """Test client bound to the temporary database and in-memory object store."""
    settings = Settings(database_url=database_url, staff_email="staff@printshop.test")
    app = create_app(settings=settings, database=database, object_store=object_store)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def order_id(api_client):
    """A checked-out order owned by CUSTOMER."""
    api_client.post("/api/cart/items", json=ITEM, headers=CUSTOMER)
    response = api_client.post("/api/cart/commit", json={"shipping_option": "D"}, headers=CUSTOMER)
    assert response.status_code == 200
    return response.json()["order_id"]


class TestHealthCheck:
    def test_health(self, api_client):
        response = api_client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestCart:
    def test_add_item(self, api_client):
        response = api_client.post("/api/cart/items", json=ITEM, headers=CUSTOMER)
        assert response.status_code == 201
        assert response.json() == {
            "order_id": "ord00001",
            "product_id": "prd00001",
            "folder_path": "products/prd00001/",
        }

    def test_add_item_unauthenticated(self, api_client):
        response = api_client.post("/api/cart/items", json=ITEM)
        assert response.status_code == 401
        assert response.json()["error_type"] == "NotAuthenticatedError"

    def test_add_item_missing_field(self, api_client):
        body = {k: v for k, v in ITEM.items() if k != "size"}
        response = api_client.post("/api/cart/items", json=body, headers=CUSTOMER)
        assert response.status_code == 400
        assert response.json()["error_type"] == "ValidationError"
        assert "size" in response.json()["fields"]

    def test_add_item_blank_field(self, api_client):
        response = api_client.post("/api/cart/items", json={**ITEM, "album_name": "  "}, headers=CUSTOMER)
        assert response.status_code == 400
        assert response.json()["fields"] == ["album_name"]

    def test_commit_defaults_to_open_cart(self, api_client):
        api_client.post("/api/cart/items", json=ITEM, headers=CUSTOMER)
        response = api_client.post("/api/cart/commit", json={"shipping_option": "pickup"}, headers=CUSTOMER)

        assert response.status_code == 200
        data = response.json()
        assert data["order_id"] == "ord00001"
        assert data["shipping_option"] == "pickup"
        assert data["order_date"] is not None

    def test_commit_without_cart(self, api_client):
        response = api_client.post("/api/cart/commit", json={}, headers=CUSTOMER)
        assert response.status_code == 404

    def test_commit_twice(self, api_client, order_id):
        response = api_client.post("/api/cart/commit", json={"order_id": order_id}, headers=CUSTOMER)
        assert response.status_code == 409
        assert response.json()["error_type"] == "CartNotOpenError"

    def test_commit_someone_elses_cart(self, api_client):
        line = api_client.post("/api/cart/items", json=ITEM, headers=CUSTOMER).json()
        response = api_client.post("/api/cart/commit", json={"order_id": line["order_id"]}, headers=OTHER)
        assert response.status_code == 403


class TestOrderLifecycle:
    def test_full_scenario(self, api_client):
        api_client.post("/api/cart/items", json=ITEM, headers=CUSTOMER)
        api_client.post("/api/cart/items", json={**ITEM, "album_name": "Wedding"}, headers=CUSTOMER)

        orders = api_client.get("/api/orders", headers=CUSTOMER).json()
        assert orders["count"] == 1
        order = orders["orders"][0]
        assert order["status"] == "PaymentNotApproved"
        assert len(order["products"]) == 2
        assert order["total_price"] == "40.00"

        order_id = order["order_id"]
        api_client.post("/api/cart/commit", json={"shipping_option": "delivery"}, headers=CUSTOMER)
        assert api_client.put(f"/api/orders/{order_id}/payment/approve", headers=STAFF).status_code == 200
        assert api_client.get(f"/api/orders/{order_id}", headers=CUSTOMER).json()["status"] == "WaitingForProcess"

        response = api_client.put(f"/api/orders/{order_id}/status/advance", headers=STAFF)
        assert response.status_code == 200
        assert [s["is_completed"] for s in response.json()["statuses"]] == [True, False, False]
        assert api_client.get(f"/api/orders/{order_id}", headers=CUSTOMER).json()["status"] == "ReceiveOrder"

        inbox = api_client.get("/api/notifications", headers=CUSTOMER).json()
        assert [m["msg"] for m in inbox["messages"]] == [
            f"Order #{order_id} has been received.",
            f"Order #{order_id} has been received and payment has been confirmed.",
        ]
        assert inbox["unread"] == 2

    def test_customer_cannot_approve(self, api_client, order_id):
        response = api_client.put(f"/api/orders/{order_id}/payment/approve", headers=CUSTOMER)
        assert response.status_code == 403

    def test_approve_unknown_order(self, api_client):
        response = api_client.put("/api/orders/ord09999/payment/approve", headers=STAFF)
        assert response.status_code == 404

    def test_advance_after_last_status(self, api_client, order_id):
        api_client.put(f"/api/orders/{order_id}/payment/approve", headers=STAFF)
        for _ in range(3):
            assert api_client.put(f"/api/orders/{order_id}/status/advance", headers=STAFF).status_code == 200

        response = api_client.put(f"/api/orders/{order_id}/status/advance", headers=STAFF)
        assert response.status_code == 400
        assert response.json()["detail"] == "No status found"

    def test_advance_canceled(self, api_client, order_id):
        assert api_client.post(f"/api/orders/{order_id}/cancel", headers=CUSTOMER).status_code == 200

        response = api_client.put(f"/api/orders/{order_id}/status/advance", headers=STAFF)
        assert response.status_code == 400
        assert response.json() == {"detail": "Cannot update: canceled", "error_type": "OrderCanceledError"}

    def test_advance_before_approval(self, api_client, order_id):
        response = api_client.put(f"/api/orders/{order_id}/status/advance", headers=STAFF)
        assert response.status_code == 409
        assert response.json()["error_type"] == "PaymentNotApprovedError"

    def test_statuses(self, api_client, order_id):
        response = api_client.get(f"/api/orders/{order_id}/statuses", headers=CUSTOMER)
        assert response.status_code == 200
        assert [s["status_name"] for s in response.json()["statuses"]] == [
            "ReceiveOrder",
            "OrderCompleted",
            "Shipped",
        ]

    def test_tracking(self, api_client, order_id):
        response = api_client.put(
            f"/api/orders/{order_id}/tracking",
            json={"tracking_number": "TH0001"},
            headers=STAFF,
        )
        assert response.status_code == 200
        assert response.json()["tracking_number"] == "TH0001"

    def test_order_visibility(self, api_client, order_id):
        assert api_client.get(f"/api/orders/{order_id}", headers=OTHER).status_code == 403
        assert api_client.get("/api/orders", headers=OTHER).json()["count"] == 0
        assert api_client.get("/api/orders", headers=STAFF).json()["count"] == 1

    def test_status_filter(self, api_client, order_id):
        response = api_client.get("/api/orders", params={"status": "PaymentPending"}, headers=STAFF)
        assert response.json()["count"] == 0

        response = api_client.get("/api/orders", params={"status": "Lost"}, headers=STAFF)
        assert response.status_code == 400


class TestDeletion:
    def test_delete_product_cascades(self, api_client, order_id, object_store):
        object_store.put_object("products/prd00001/prd00001-1-a.jpg", b"a")

        response = api_client.delete(f"/api/orders/{order_id}/products/prd00001", headers=CUSTOMER)

        assert response.status_code == 200
        assert response.json()["order_deleted"] is True
        assert object_store.objects == {}
        assert api_client.get(f"/api/orders/{order_id}", headers=CUSTOMER).status_code == 404

    def test_delete_order(self, api_client, order_id):
        response = api_client.delete(f"/api/orders/{order_id}", headers=CUSTOMER)
        assert response.status_code == 200
        assert response.json() == {"order_id": order_id, "deleted_products": ["prd00001"]}


class TestFiles:
    def test_upload_and_download_bundle(self, api_client, order_id):
        for seq, data in enumerate([b"first photo", b"second photo"], start=1):
            response = api_client.put(
                f"/api/products/prd00001/files/photo{seq}.jpg",
                params={"sequence": seq},
                content=data,
                headers={**CUSTOMER, "Content-Type": "image/jpeg"},
            )
            assert response.status_code == 201

        response = api_client.get(
            "/api/bundles", params={"folder": "products/prd00001/"}, headers=STAFF
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert response.headers["content-disposition"] == 'attachment; filename="prd00001.zip"'
        archive = zipfile.ZipFile(io.BytesIO(response.content))
        assert sorted(archive.namelist()) == ["prd00001-1-photo1.jpg", "prd00001-2-photo2.jpg"]
        assert archive.read("prd00001-2-photo2.jpg") == b"second photo"

    def test_bundle_forbidden(self, api_client, order_id, object_store):
        object_store.put_object("products/prd00001/a.jpg", b"a")
        response = api_client.get("/api/bundles", params={"folder": "products/prd00001/"}, headers=OTHER)
        assert response.status_code == 403

    def test_bundle_empty_folder(self, api_client, order_id):
        response = api_client.get("/api/bundles", params={"folder": "products/prd00001/"}, headers=CUSTOMER)
        assert response.status_code == 404
        assert response.json()["error_type"] == "EmptyFolderError"

    def test_receipt_upload(self, api_client, order_id, object_store):
        response = api_client.put(
            f"/api/orders/{order_id}/receipt",
            params={"filename": "slip.png"},
            content=b"png-bytes",
            headers={**CUSTOMER, "Content-Type": "image/png"},
        )

        assert response.status_code == 200
        assert response.json()["payment_status"] == "Pending"
        assert object_store.objects[f"receipts/receipt_{order_id}.png"] == b"png-bytes"

        inbox = api_client.get("/api/notifications", headers=STAFF).json()
        assert inbox["count"] == 1

    def test_receipt_wrong_type(self, api_client, order_id):
        response = api_client.put(
            f"/api/orders/{order_id}/receipt",
            params={"filename": "slip.pdf"},
            content=b"%PDF",
            headers={**CUSTOMER, "Content-Type": "application/pdf"},
        )
        assert response.status_code == 400

    def test_file_links(self, api_client, order_id, object_store):
        object_store.put_object("products/prd00001/prd00001-1-a.jpg", b"a")
        response = api_client.get("/api/products/prd00001/files", headers=CUSTOMER)
        assert response.status_code == 200
        assert list(response.json()["files"]) == ["prd00001-1-a.jpg"]


class TestNotifications:
    def test_read_all(self, api_client, order_id):
        api_client.put(f"/api/orders/{order_id}/payment/approve", headers=STAFF)

        response = api_client.put("/api/notifications/read-all", headers=CUSTOMER)
        assert response.json() == {"updated": 1}

        inbox = api_client.get("/api/notifications", params={"unread_only": True}, headers=CUSTOMER).json()
        assert inbox["count"] == 0
        assert inbox["unread"] == 0


class TestErrorMapping:
    @pytest.mark.parametrize(
        "exc,status",
        [
            (OrderCanceledError("ord00001"), 400),
            (NoStatusToAdvanceError("ord00001"), 400),
            (EmptyCartError("ord00001"), 409),
            (EmptyFolderError("products/prd00001/"), 404),
            (BundleStreamError("products/prd00001/", "k", "OSError"), 500),
            (StorageError("list_objects", "ClientError"), 500),
        ],
    )
    def test_status_codes(self, exc, status):
        assert error_status(exc) == status

    def test_storage_error_body_is_generic(self, api_client, object_store, order_id, monkeypatch):
        def broken(prefix):
            raise StorageError("list_objects", "EndpointConnectionError", prefix=prefix)

        monkeypatch.setattr(object_store, "list_objects", broken)
        response = api_client.get("/api/bundles", params={"folder": "products/prd00001/"}, headers=CUSTOMER)

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal storage error", "error_type": "StorageError"}
