"""Tests for notification messages."""

import pytest

from printshop.db import Database
from printshop.models import NotificationKind, ShippingOption
from printshop.notifications import NotificationEmitter, render_message


class TestRenderMessage:
    @pytest.mark.parametrize(
        "status,expected",
        [
            ("ReceiveOrder", "Order #ord00007 has been received."),
            ("OrderCompleted", "Order #ord00007 has been completed."),
            ("Shipped", "Order #ord00007 has been shipped."),
        ],
    )
    def test_status_messages(self, status, expected):
        assert render_message("ord00007", NotificationKind.STATUS_ADVANCED, status) == expected

    def test_pickup_ready(self):
        text = render_message(
            "ord00007", NotificationKind.STATUS_ADVANCED, "Shipped", ShippingOption.PICKUP
        )
        assert text == "Order #ord00007 is ready for pickup."

    def test_unknown_status_fallback(self):
        text = render_message("ord00007", NotificationKind.STATUS_ADVANCED, "Packed")
        assert text == "Order #ord00007 status has been updated to: Packed"

    def test_payment_confirmed(self):
        text = render_message("ord00007", NotificationKind.PAYMENT_CONFIRMED)
        assert text == "Order #ord00007 has been received and payment has been confirmed."


class TestNotificationEmitter:
    def test_notify_stores_unread_message(self, notifier):
        msg_id = notifier.notify("ord00001", "alice@example.com", NotificationKind.PAYMENT_CONFIRMED)

        assert msg_id == "msg00001"
        [message] = notifier.list_for("alice@example.com")
        assert message.msg_id == msg_id
        assert message.order_id == "ord00001"
        assert not message.is_read
        assert message.notified_date is not None

    def test_newest_first(self, notifier):
        notifier.notify("ord00001", "alice@example.com", NotificationKind.PAYMENT_CONFIRMED)
        notifier.notify("ord00001", "alice@example.com", NotificationKind.STATUS_ADVANCED, "ReceiveOrder")

        assert [m.msg_id for m in notifier.list_for("alice@example.com")] == ["msg00002", "msg00001"]

    def test_mark_all_read_is_per_recipient(self, notifier):
        notifier.notify("ord00001", "alice@example.com", NotificationKind.PAYMENT_CONFIRMED)
        notifier.notify("ord00001", "alice@example.com", NotificationKind.STATUS_ADVANCED, "ReceiveOrder")
        notifier.notify("ord00002", "bob@example.com", NotificationKind.PAYMENT_CONFIRMED)

        assert notifier.unread_count("alice@example.com") == 2
        assert notifier.mark_all_read("alice@example.com") == 2

        assert notifier.unread_count("alice@example.com") == 0
        assert notifier.unread_count("bob@example.com") == 1
        assert notifier.list_for("alice@example.com", unread_only=True) == []
        assert notifier.mark_all_read("alice@example.com") == 0

    def test_recipient_email_casing(self, notifier):
        notifier.notify("ord00001", "Alice@Example.com", NotificationKind.PAYMENT_CONFIRMED)

        assert [m.email for m in notifier.list_for("alice@example.com")] == ["alice@example.com"]
        assert notifier.unread_count("ALICE@example.com") == 1
        assert notifier.mark_all_read("alice@EXAMPLE.com") == 1

    def test_messages_outlive_orders(self, orders, customer, notifier, approved_order):
        orders.delete_order(customer, approved_order)
        assert len(notifier.list_for(customer.email)) == 1

    def test_failure_is_swallowed(self, temp_dir):
        broken = Database(f"sqlite:///{temp_dir / 'no-schema.db'}")
        try:
            emitter = NotificationEmitter(broken)
            assert emitter.notify("ord00001", "alice@example.com", NotificationKind.PAYMENT_CONFIRMED) is None
        finally:
            broken.dispose()
