"""Tests for open-cart consolidation."""

import threading
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from printshop.db import orders as orders_table
from printshop.db import products as products_table
from printshop.errors import NotAuthenticatedError, ValidationError
from printshop.models import CompositeStatus, Identity, ProductSpec, StatusName


def _open_carts(database, email):
    with database.transaction() as conn:
        return conn.scalar(
            select(func.count())
            .select_from(orders_table)
            .where(orders_table.c.email == email, orders_table.c.order_date.is_(None))
        )


class TestAddToCart:
    def test_first_item_creates_cart(self, cart, orders, customer, product_data):
        line = cart.add_to_cart(customer, product_data)

        assert line.order_id == "ord00001"
        assert line.product_id == "prd00001"
        assert line.folder_path == "products/prd00001/"

        view = orders.get_order(customer, line.order_id)
        assert view.order.is_open
        assert view.status == CompositeStatus.PAYMENT_NOT_APPROVED
        assert view.products[0].price == Decimal("37.50")

    def test_items_accumulate_on_one_order(self, cart, orders, database, customer, product_data):
        first = cart.add_to_cart(customer, product_data)
        second = cart.add_to_cart(customer, {**product_data, "album_name": "Wedding"})

        assert first.order_id == second.order_id
        assert first.product_id != second.product_id
        assert first.folder_path != second.folder_path
        assert len(orders.get_order(customer, first.order_id).products) == 2
        assert _open_carts(database, customer.email) == 1

    def test_status_placeholders_seeded(self, cart, orders, customer, product_data):
        line = cart.add_to_cart(customer, product_data)
        events = orders.list_statuses(line.order_id)

        assert [e.status_name for e in events] == [
            StatusName.RECEIVE_ORDER,
            StatusName.ORDER_COMPLETED,
            StatusName.SHIPPED,
        ]
        assert not any(e.is_completed for e in events)

    def test_customers_get_separate_carts(self, cart, customer, other_customer, product_data):
        mine = cart.add_to_cart(customer, product_data)
        theirs = cart.add_to_cart(other_customer, product_data)
        assert mine.order_id != theirs.order_id

    def test_new_cart_after_checkout(self, cart, orders, customer, product_data):
        first = cart.add_to_cart(customer, product_data)
        orders.commit_cart(customer, first.order_id, "pickup")

        second = cart.add_to_cart(customer, product_data)
        assert second.order_id != first.order_id
        assert orders.find_open_cart(customer.email).order_id == second.order_id

    def test_email_casing_shares_one_cart(self, cart, orders, database, product_data):
        first = cart.add_to_cart(Identity(email="alice@example.com"), product_data)
        second = cart.add_to_cart(Identity(email=" Alice@Example.COM "), product_data)

        assert first.order_id == second.order_id
        assert _open_carts(database, "alice@example.com") == 1
        assert orders.find_open_cart("ALICE@example.com").order_id == first.order_id

    def test_accepts_product_spec(self, cart, customer, product_data):
        line = cart.add_to_cart(customer, ProductSpec.from_dict(product_data))
        assert line.product_id == "prd00001"

    def test_requires_identity(self, cart, product_data):
        with pytest.raises(NotAuthenticatedError):
            cart.add_to_cart(None, product_data)
        with pytest.raises(NotAuthenticatedError):
            cart.add_to_cart(Identity(email=""), product_data)

    def test_missing_fields(self, cart, database, customer, product_data):
        del product_data["paper_type"]
        with pytest.raises(ValidationError) as exc_info:
            cart.add_to_cart(customer, product_data)
        assert exc_info.value.fields == ["paper_type"]
        assert _open_carts(database, customer.email) == 0

    @pytest.mark.parametrize("quantity", [0, -2, "many"])
    def test_bad_quantity(self, cart, customer, product_data, quantity):
        with pytest.raises(ValidationError):
            cart.add_to_cart(customer, {**product_data, "quantity": quantity})

    def test_bad_price(self, cart, customer, product_data):
        with pytest.raises(ValidationError):
            cart.add_to_cart(customer, {**product_data, "unit_price": "free"})


class TestConcurrentAdds:
    def test_single_open_cart_under_concurrency(self, cart, database, customer, product_data):
        workers = 6
        barrier = threading.Barrier(workers)
        lines = []
        errors = []

        def add():
            barrier.wait()
            try:
                lines.append(cart.add_to_cart(customer, product_data))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=add) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({line.order_id for line in lines}) == 1
        assert len({line.product_id for line in lines}) == workers
        assert _open_carts(database, customer.email) == 1
        with database.transaction() as conn:
            count = conn.scalar(select(func.count()).select_from(products_table))
        assert count == workers
