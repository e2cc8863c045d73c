"""Customer- and staff-facing notification messages, passively polled."""

import structlog
from sqlalchemy import func, insert, select, update

from .db import Database, messages
from .models import (
    NotificationKind,
    NotificationMessage,
    SequenceDomain,
    ShippingOption,
    StatusName,
    _utc_now,
    normalize_email,
)
from .sequences import next_id

logger = structlog.get_logger(__name__)

STATUS_MESSAGES = {
    StatusName.RECEIVE_ORDER.value: "Order #{order_id} has been received.",
    StatusName.ORDER_COMPLETED.value: "Order #{order_id} has been completed.",
    StatusName.SHIPPED.value: "Order #{order_id} has been shipped.",
}
PICKUP_READY_MESSAGE = "Order #{order_id} is ready for pickup."
FALLBACK_STATUS_MESSAGE = "Order #{order_id} status has been updated to: {status}"

PAYMENT_MESSAGES = {
    NotificationKind.PAYMENT_CONFIRMED: (
        "Order #{order_id} has been received and payment has been confirmed."
    ),
    NotificationKind.PAYMENT_SUBMITTED: "New payment received for order #{order_id}.",
}


def render_message(
    order_id: str,
    kind: NotificationKind,
    detail: str | None = None,
    shipping_option: ShippingOption | None = None,
) -> str:
    """Build the message text for a transition."""
    if kind in PAYMENT_MESSAGES:
        return PAYMENT_MESSAGES[kind].format(order_id=order_id)

    status = detail or ""
    if status == StatusName.SHIPPED.value and shipping_option == ShippingOption.PICKUP:
        return PICKUP_READY_MESSAGE.format(order_id=order_id)
    template = STATUS_MESSAGES.get(status, FALLBACK_STATUS_MESSAGE)
    return template.format(order_id=order_id, status=status)


class NotificationEmitter:
    """Writes one NotifiedMsg row per customer-visible milestone."""

    def __init__(self, database: Database):
        self.database = database

    def notify(
        self,
        order_id: str,
        recipient: str,
        kind: NotificationKind,
        detail: str | None = None,
        shipping_option: ShippingOption | None = None,
    ) -> str | None:
        """
        Persist a message for ``recipient`` about ``order_id``.

        Never raises: a failed write is logged and reported as None so the
        transition that triggered it stands.

        Returns:
            The new message ID, or None if the message could not be stored.
        """
        recipient = normalize_email(recipient)
        text = render_message(order_id, kind, detail, shipping_option)
        try:
            with self.database.transaction("notify", order_id=order_id) as conn:
                msg_id = next_id(conn, SequenceDomain.MESSAGE)
                conn.execute(
                    insert(messages).values(
                        msg_id=msg_id,
                        email=recipient,
                        order_id=order_id,
                        msg=text,
                        is_read=False,
                        notified_date=_utc_now(),
                    )
                )
        except Exception:
            logger.exception(
                "notification_failed",
                order_id=order_id,
                recipient=recipient,
                kind=kind.value,
            )
            return None

        logger.info("notification_sent", msg_id=msg_id, order_id=order_id, kind=kind.value)
        return msg_id

    def list_for(self, recipient: str, unread_only: bool = False) -> list[NotificationMessage]:
        """List a recipient's messages, newest first."""
        query = select(messages).where(messages.c.email == normalize_email(recipient))
        if unread_only:
            query = query.where(messages.c.is_read.is_(False))
        query = query.order_by(messages.c.notified_date.desc(), messages.c.msg_id.desc())

        with self.database.transaction("list_notifications") as conn:
            rows = conn.execute(query).mappings().all()
        return [NotificationMessage.from_row(r) for r in rows]

    def unread_count(self, recipient: str) -> int:
        with self.database.transaction("unread_count") as conn:
            return conn.scalar(
                select(func.count())
                .select_from(messages)
                .where(
                    messages.c.email == normalize_email(recipient),
                    messages.c.is_read.is_(False),
                )
            )

    def mark_all_read(self, recipient: str) -> int:
        """
        Clear the unread flag on every message of ``recipient``.

        Returns:
            Number of messages updated.
        """
        with self.database.transaction("mark_all_read") as conn:
            result = conn.execute(
                update(messages)
                .where(
                    messages.c.email == normalize_email(recipient),
                    messages.c.is_read.is_(False),
                )
                .values(is_read=True)
            )
        logger.info("notifications_read", recipient=recipient, count=result.rowcount)
        return result.rowcount
