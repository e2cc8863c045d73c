"""Payment and fulfillment state machine for orders."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

import structlog
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection

from .db import Database, orders, products, statuses
from .errors import (
    CartNotOpenError,
    ConflictError,
    EmptyCartError,
    FolderNotFoundError,
    ForbiddenError,
    InvalidTransitionError,
    NoStatusToAdvanceError,
    OrderCanceledError,
    OrderNotFoundError,
    PaymentNotApprovedError,
    ProductNotFoundError,
)
from .models import (
    FULFILLMENT_SEQUENCE,
    CompositeStatus,
    Identity,
    NotificationKind,
    Order,
    OrderView,
    PaymentStatus,
    Product,
    SequenceDomain,
    ShippingOption,
    StatusEvent,
    StatusName,
    _utc_now,
    normalize_email,
)
from .notifications import NotificationEmitter
from .object_store import normalize_folder
from .sequences import next_id

logger = structlog.get_logger(__name__)

_PAYMENT_COMPOSITES = {
    PaymentStatus.NOT_APPROVED: CompositeStatus.PAYMENT_NOT_APPROVED,
    PaymentStatus.PENDING: CompositeStatus.PAYMENT_PENDING,
}


def composite_status(payment_status: PaymentStatus, events: Iterable[StatusEvent]) -> CompositeStatus:
    """Derive the client-facing status of an order."""
    if payment_status in _PAYMENT_COMPOSITES:
        return _PAYMENT_COMPOSITES[payment_status]

    completed = [e for e in events if e.is_completed]
    if payment_status == PaymentStatus.CANCELED or any(
        e.status_name == StatusName.CANCELED for e in completed
    ):
        return CompositeStatus.CANCELED
    if not completed:
        return CompositeStatus.WAITING_FOR_PROCESS

    latest = max(completed, key=lambda e: (e.status_date is not None, e.status_date or 0, e.rank))
    return CompositeStatus(latest.status_name.value)


def seed_status_events(conn: Connection, order_id: str) -> list[str]:
    """Insert the three incomplete fulfillment milestones of a new order."""
    status_ids = []
    for name in FULFILLMENT_SEQUENCE:
        status_id = next_id(conn, SequenceDomain.STATUS)
        conn.execute(
            insert(statuses).values(
                status_id=status_id,
                order_id=order_id,
                status_name=name.value,
                is_completed=False,
                status_date=None,
            )
        )
        status_ids.append(status_id)
    return status_ids


def _is_canceled(order: Order, events: Iterable[StatusEvent]) -> bool:
    if order.payment_status == PaymentStatus.CANCELED:
        return True
    return any(e.status_name == StatusName.CANCELED and e.is_completed for e in events)


@dataclass
class ProductRemoval:
    """Outcome of deleting a product from an order."""

    product: Product
    order_deleted: bool


class OrderStateMachine:
    """Owns every payment and fulfillment transition of an order."""

    def __init__(
        self,
        database: Database,
        notifier: NotificationEmitter,
        payment_window: timedelta = timedelta(hours=24),
        staff_email: str | None = None,
    ):
        self.database = database
        self.notifier = notifier
        self.payment_window = payment_window
        self.staff_email = staff_email

    # --- Loading ---

    def _load_order(self, conn: Connection, order_id: str, lock: bool = False) -> Order:
        query = select(orders).where(orders.c.order_id == order_id)
        if lock:
            query = query.with_for_update()
        row = conn.execute(query).mappings().first()
        if row is None:
            raise OrderNotFoundError(order_id)
        return Order.from_row(row)

    def _load_statuses(self, conn: Connection, order_id: str) -> list[StatusEvent]:
        rows = conn.execute(select(statuses).where(statuses.c.order_id == order_id)).mappings()
        events = [StatusEvent.from_row(r) for r in rows]
        events.sort(key=lambda e: (e.rank, e.status_id))
        return events

    def _load_products(self, conn: Connection, order_id: str) -> list[Product]:
        rows = conn.execute(
            select(products)
            .where(products.c.order_id == order_id)
            .order_by(products.c.product_id)
        ).mappings()
        return [Product.from_row(r) for r in rows]

    def _authorize(self, identity: Identity, order: Order) -> None:
        if not identity.can_access(order.email):
            logger.warning("order_access_denied", order_id=order.order_id, email=identity.email)
            raise ForbiddenError(f"order {order.order_id}", identity.email)

    def _view(self, conn: Connection, order: Order) -> OrderView:
        events = self._load_statuses(conn, order.order_id)
        return OrderView(
            order=order,
            products=self._load_products(conn, order.order_id),
            statuses=events,
            status=composite_status(order.payment_status, events),
        )

    # --- Transitions ---

    def commit_cart(
        self,
        identity: Identity,
        order_id: str,
        shipping_option: ShippingOption | str | None,
        note: str | None = None,
        payment_deadline: datetime | None = None,
    ) -> Order:
        """
        Check out an open cart.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            ForbiddenError: If the caller doesn't own the order.
            CartNotOpenError: If the order was already checked out.
            EmptyCartError: If the cart holds no products.
        """
        option = ShippingOption.parse(shipping_option)
        now = _utc_now()
        deadline = payment_deadline or now + self.payment_window

        with self.database.transaction("commit_cart", order_id=order_id) as conn:
            order = self._load_order(conn, order_id, lock=True)
            self._authorize(identity, order)
            if not order.is_open:
                raise CartNotOpenError(order_id)

            count = conn.scalar(
                select(func.count()).select_from(products).where(products.c.order_id == order_id)
            )
            if not count:
                raise EmptyCartError(order_id)

            result = conn.execute(
                update(orders)
                .where(orders.c.order_id == order_id, orders.c.order_date.is_(None))
                .values(
                    order_date=now,
                    payment_status=PaymentStatus.NOT_APPROVED.value,
                    shipping_option=option.value if option else None,
                    note=note,
                    payment_deadline=deadline,
                    cart_owner=None,
                )
            )
            if result.rowcount != 1:
                raise CartNotOpenError(order_id)
            order = self._load_order(conn, order_id)

        logger.info("cart_committed", order_id=order_id, email=order.email, products=count)
        return order

    def submit_payment(self, identity: Identity, order_id: str, receipt_ref: str) -> Order:
        """
        Record an uploaded payment receipt and mark payment as pending review.

        Raises:
            CartNotOpenError: If the order is still an open cart.
            OrderCanceledError: If the order was canceled.
            InvalidTransitionError: If payment was already approved.
        """
        with self.database.transaction("submit_payment", order_id=order_id) as conn:
            order = self._load_order(conn, order_id, lock=True)
            self._authorize(identity, order)
            if order.is_open:
                raise CartNotOpenError(order_id, expected_open=False)
            if _is_canceled(order, self._load_statuses(conn, order_id)):
                raise OrderCanceledError(order_id)
            if order.payment_status == PaymentStatus.APPROVED:
                raise InvalidTransitionError(
                    order_id, order.payment_status.value, PaymentStatus.PENDING.value
                )

            conn.execute(
                update(orders)
                .where(orders.c.order_id == order_id)
                .values(payment_status=PaymentStatus.PENDING.value, receipt_ref=receipt_ref)
            )
            order = self._load_order(conn, order_id)

        logger.info("payment_submitted", order_id=order_id, receipt=receipt_ref)
        if self.staff_email:
            self.notifier.notify(order_id, self.staff_email, NotificationKind.PAYMENT_SUBMITTED)
        return order

    def approve_payment(self, order_id: str) -> Order:
        """
        Approve an order's payment. Approving twice is a no-op.

        Raises:
            OrderNotFoundError: If the order doesn't exist.
            OrderCanceledError: If the order was canceled.
            CartNotOpenError: If the order is still an open cart.
        """
        with self.database.transaction("approve_payment", order_id=order_id) as conn:
            order = self._load_order(conn, order_id, lock=True)
            if _is_canceled(order, self._load_statuses(conn, order_id)):
                raise OrderCanceledError(order_id)
            if order.is_open:
                raise CartNotOpenError(order_id, expected_open=False)
            if order.payment_status == PaymentStatus.APPROVED:
                return order

            result = conn.execute(
                update(orders)
                .where(
                    orders.c.order_id == order_id,
                    orders.c.payment_status.in_(
                        [PaymentStatus.NOT_APPROVED.value, PaymentStatus.PENDING.value]
                    ),
                )
                .values(payment_status=PaymentStatus.APPROVED.value)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Order {order_id} was updated concurrently; retry")
            order = self._load_order(conn, order_id)

        logger.info("payment_approved", order_id=order_id)
        self.notifier.notify(order_id, order.email, NotificationKind.PAYMENT_CONFIRMED)
        return order

    def advance_status(self, order_id: str) -> list[StatusEvent]:
        """
        Complete the next fulfillment milestone.

        Returns:
            The order's status events after the update, in fulfillment order.

        Raises:
            OrderCanceledError: If a Canceled status has been completed.
            NoStatusToAdvanceError: If payment was canceled or every milestone is done.
            PaymentNotApprovedError: If payment hasn't been approved yet.
        """
        with self.database.transaction("advance_status", order_id=order_id) as conn:
            order = self._load_order(conn, order_id, lock=True)
            events = self._load_statuses(conn, order_id)

            if any(e.status_name == StatusName.CANCELED and e.is_completed for e in events):
                raise OrderCanceledError(order_id)
            if order.payment_status == PaymentStatus.CANCELED:
                raise NoStatusToAdvanceError(order_id)
            if order.payment_status != PaymentStatus.APPROVED:
                raise PaymentNotApprovedError(order_id, order.payment_status.value)

            pending = [
                e for e in events if not e.is_completed and e.status_name != StatusName.CANCELED
            ]
            if not pending:
                raise NoStatusToAdvanceError(order_id)
            target = pending[0]

            result = conn.execute(
                update(statuses)
                .where(statuses.c.status_id == target.status_id, statuses.c.is_completed.is_(False))
                .values(is_completed=True, status_date=_utc_now())
            )
            if result.rowcount != 1:
                raise ConflictError(f"Order {order_id} was updated concurrently; retry")
            events = self._load_statuses(conn, order_id)

        logger.info("status_advanced", order_id=order_id, status=target.status_name.value)
        self.notifier.notify(
            order_id,
            order.email,
            NotificationKind.STATUS_ADVANCED,
            detail=target.status_name.value,
            shipping_option=order.shipping_option,
        )
        return events

    def cancel(self, identity: Identity, order_id: str) -> Order:
        """
        Cancel a checked-out order. Irreversible.

        Raises:
            CartNotOpenError: If the order is still an open cart.
            OrderCanceledError: If the order is already canceled.
            ForbiddenError: If the caller may not cancel this order.
        """
        with self.database.transaction("cancel_order", order_id=order_id) as conn:
            order = self._load_order(conn, order_id, lock=True)
            self._authorize(identity, order)
            if order.is_open:
                raise CartNotOpenError(order_id, expected_open=False)
            events = self._load_statuses(conn, order_id)
            if _is_canceled(order, events):
                raise OrderCanceledError(order_id)

            now = _utc_now()
            sentinel = next((e for e in events if e.status_name == StatusName.CANCELED), None)
            if sentinel is None:
                conn.execute(
                    insert(statuses).values(
                        status_id=next_id(conn, SequenceDomain.STATUS),
                        order_id=order_id,
                        status_name=StatusName.CANCELED.value,
                        is_completed=True,
                        status_date=now,
                    )
                )
            else:
                conn.execute(
                    update(statuses)
                    .where(statuses.c.status_id == sentinel.status_id)
                    .values(is_completed=True, status_date=now)
                )
            conn.execute(
                update(orders)
                .where(orders.c.order_id == order_id)
                .values(payment_status=PaymentStatus.CANCELED.value)
            )
            order = self._load_order(conn, order_id)

        logger.info("order_canceled", order_id=order_id, by=identity.email)
        return order

    def update_tracking(
        self,
        order_id: str,
        tracking_number: str | None = None,
        received_date: datetime | None = None,
    ) -> Order:
        """Record shipment tracking details on an order."""
        with self.database.transaction("update_tracking", order_id=order_id) as conn:
            order = self._load_order(conn, order_id, lock=True)
            if _is_canceled(order, self._load_statuses(conn, order_id)):
                raise OrderCanceledError(order_id)

            values = {}
            if tracking_number is not None:
                values["tracking_number"] = tracking_number
            if received_date is not None:
                values["received_date"] = received_date
            if values:
                conn.execute(update(orders).where(orders.c.order_id == order_id).values(**values))
            order = self._load_order(conn, order_id)

        logger.info("tracking_updated", order_id=order_id, tracking_number=tracking_number)
        return order

    def delete_product(self, identity: Identity, order_id: str, product_id: str) -> ProductRemoval:
        """
        Remove one product; removing the last one deletes the order as well.

        Raises:
            ProductNotFoundError: If the product isn't part of the order.
        """
        with self.database.transaction("delete_product", order_id=order_id) as conn:
            order = self._load_order(conn, order_id, lock=True)
            self._authorize(identity, order)

            row = (
                conn.execute(
                    select(products).where(
                        products.c.product_id == product_id, products.c.order_id == order_id
                    )
                )
                .mappings()
                .first()
            )
            if row is None:
                raise ProductNotFoundError(product_id, order_id)
            product = Product.from_row(row)

            conn.execute(delete(products).where(products.c.product_id == product_id))
            remaining = conn.scalar(
                select(func.count()).select_from(products).where(products.c.order_id == order_id)
            )
            order_deleted = remaining == 0
            if order_deleted:
                self._delete_order_rows(conn, order_id)

        logger.info(
            "product_deleted",
            order_id=order_id,
            product_id=product_id,
            order_deleted=order_deleted,
        )
        return ProductRemoval(product=product, order_deleted=order_deleted)

    def delete_order(self, identity: Identity, order_id: str) -> list[Product]:
        """
        Delete an order with its products and status rows.

        Returns:
            The products that were removed.
        """
        with self.database.transaction("delete_order", order_id=order_id) as conn:
            order = self._load_order(conn, order_id, lock=True)
            self._authorize(identity, order)
            removed = self._load_products(conn, order_id)
            conn.execute(delete(products).where(products.c.order_id == order_id))
            self._delete_order_rows(conn, order_id)

        logger.info("order_deleted", order_id=order_id, products=len(removed))
        return removed

    def _delete_order_rows(self, conn: Connection, order_id: str) -> None:
        conn.execute(delete(statuses).where(statuses.c.order_id == order_id))
        conn.execute(delete(orders).where(orders.c.order_id == order_id))

    # --- Queries ---

    def get_order(self, identity: Identity, order_id: str) -> OrderView:
        with self.database.transaction("get_order", order_id=order_id) as conn:
            order = self._load_order(conn, order_id)
            self._authorize(identity, order)
            return self._view(conn, order)

    def list_statuses(self, order_id: str) -> list[StatusEvent]:
        with self.database.transaction("list_statuses", order_id=order_id) as conn:
            self._load_order(conn, order_id)
            return self._load_statuses(conn, order_id)

    def find_open_cart(self, email: str) -> Order | None:
        with self.database.transaction("find_open_cart") as conn:
            row = (
                conn.execute(select(orders).where(orders.c.cart_owner == normalize_email(email)))
                .mappings()
                .first()
            )
        return Order.from_row(row) if row else None

    def list_orders(
        self,
        identity: Identity,
        status: CompositeStatus | str | None = None,
    ) -> list[OrderView]:
        """
        List orders visible to the caller, optionally filtered by composite status.

        Staff see every order; customers see their own. Checked-out orders come
        newest first, followed by the open cart.
        """
        wanted = CompositeStatus(status) if status else None
        query = select(orders)
        if not identity.is_staff:
            query = query.where(orders.c.email == identity.email)

        with self.database.transaction("list_orders") as conn:
            order_list = [Order.from_row(r) for r in conn.execute(query).mappings()]
            ids = [o.order_id for o in order_list]
            if not ids:
                return []

            product_map: dict[str, list[Product]] = {i: [] for i in ids}
            for r in conn.execute(
                select(products)
                .where(products.c.order_id.in_(ids))
                .order_by(products.c.product_id)
            ).mappings():
                product_map[r["order_id"]].append(Product.from_row(r))

            status_map: dict[str, list[StatusEvent]] = {i: [] for i in ids}
            for r in conn.execute(select(statuses).where(statuses.c.order_id.in_(ids))).mappings():
                status_map[r["order_id"]].append(StatusEvent.from_row(r))

        views = []
        for order in order_list:
            events = sorted(status_map[order.order_id], key=lambda e: (e.rank, e.status_id))
            view = OrderView(
                order=order,
                products=product_map[order.order_id],
                statuses=events,
                status=composite_status(order.payment_status, events),
            )
            if wanted is None or view.status == wanted:
                views.append(view)

        views.sort(key=lambda v: v.order.order_id, reverse=True)
        views.sort(key=lambda v: (v.order.order_date is None, _neg_timestamp(v.order.order_date)))
        return views

    def resolve_folder(self, folder_path: str) -> tuple[Product, Order]:
        """
        Find the product and order owning a storage folder.

        Raises:
            FolderNotFoundError: If no product references the folder.
        """
        folder = normalize_folder(folder_path)
        with self.database.transaction("resolve_folder", folder=folder) as conn:
            row = (
                conn.execute(select(products).where(products.c.folder_path == folder))
                .mappings()
                .first()
            )
            if row is None:
                raise FolderNotFoundError(folder)
            product = Product.from_row(row)
            order = self._load_order(conn, product.order_id)
        return product, order


def _neg_timestamp(value: datetime | None) -> float:
    return -value.timestamp() if value is not None else 0.0
