"""Keeps one open cart per customer and appends print jobs to it."""

from typing import Any, Mapping

import structlog
from sqlalchemy import insert, select
from sqlalchemy.engine import Connection

from .db import Database, orders, products
from .errors import NotAuthenticatedError, StorageError
from .models import CartLine, Identity, PaymentStatus, ProductSpec, SequenceDomain
from .object_store import product_folder
from .orders import seed_status_events
from .sequences import next_id

logger = structlog.get_logger(__name__)

MAX_ATTEMPTS = 3


class CartConsolidator:
    """Finds or creates a customer's open cart and adds product lines to it."""

    def __init__(self, database: Database):
        self.database = database

    def add_to_cart(
        self,
        identity: Identity | None,
        spec: ProductSpec | Mapping[str, Any],
    ) -> CartLine:
        """
        Add a print job to the caller's open cart, creating the cart if needed.

        Repeated calls before checkout accumulate products on the same order.
        The order row, its status placeholders and the product are written in
        one transaction. A concurrent call that created the cart first makes
        the cart_owner constraint reject our insert; the attempt is retried and
        then reuses that cart.

        Returns:
            The order and product IDs plus the product's upload folder.

        Raises:
            NotAuthenticatedError: If no customer identity is available.
            ValidationError: If required product fields are absent or malformed.
        """
        if identity is None or not identity.email:
            raise NotAuthenticatedError()
        if not isinstance(spec, ProductSpec):
            spec = ProductSpec.from_dict(spec)
        email = identity.email

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                with self.database.transaction("add_to_cart", email=email) as conn:
                    order_id, created = self._find_or_create_cart(conn, email)
                    line = self._insert_product(conn, order_id, spec)
            except StorageError as e:
                if not e.conflict or attempt == MAX_ATTEMPTS:
                    raise
                logger.warning("cart_insert_conflict", email=email, attempt=attempt)
                continue

            logger.info(
                "product_added",
                email=email,
                order_id=line.order_id,
                product_id=line.product_id,
                new_cart=created,
            )
            return line

        raise StorageError("add_to_cart", "open cart could not be resolved", email=email)

    def _find_or_create_cart(self, conn: Connection, email: str) -> tuple[str, bool]:
        existing = conn.scalar(select(orders.c.order_id).where(orders.c.cart_owner == email))
        if existing is not None:
            return existing, False

        order_id = next_id(conn, SequenceDomain.ORDER)
        conn.execute(
            insert(orders).values(
                order_id=order_id,
                email=email,
                shipping_option=None,
                payment_status=PaymentStatus.NOT_APPROVED.value,
                order_date=None,
                cart_owner=email,
            )
        )
        seed_status_events(conn, order_id)
        return order_id, True

    def _insert_product(self, conn: Connection, order_id: str, spec: ProductSpec) -> CartLine:
        product_id = next_id(conn, SequenceDomain.PRODUCT)
        folder = product_folder(product_id)
        conn.execute(
            insert(products).values(
                product_id=product_id,
                order_id=order_id,
                album_name=spec.album_name,
                size=spec.size,
                paper_type=spec.paper_type,
                printing_format=spec.printing_format,
                quantity=spec.quantity,
                unit_price=spec.unit_price,
                price=spec.total_price,
                folder_path=folder,
            )
        )
        return CartLine(order_id=order_id, product_id=product_id, folder_path=folder)
