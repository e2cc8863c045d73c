"""Placing customer photos and payment receipts in the object store."""

import re
from pathlib import PurePosixPath

import structlog

from .errors import (
    CartNotOpenError,
    FolderNotFoundError,
    ForbiddenError,
    InvalidTransitionError,
    NotAuthenticatedError,
    OrderCanceledError,
    ProductNotFoundError,
    StorageError,
    ValidationError,
)
from .models import CompositeStatus, Identity, Order, PaymentStatus
from .object_store import RECEIPTS_PREFIX, ObjectStore, normalize_folder, product_folder
from .orders import OrderStateMachine

logger = structlog.get_logger(__name__)

RECEIPT_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp", ".heic", ".svg"})

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _split_filename(filename: str) -> tuple[str, str]:
    """Return a storage-safe (stem, extension) pair of an uploaded file's name."""
    name = PurePosixPath(filename.replace("\\", "/")).name
    path = PurePosixPath(name)
    stem = _UNSAFE_CHARS.sub("_", path.stem).strip("._")
    suffix = path.suffix.lower()
    if not stem:
        raise ValidationError(f"Invalid file name: {filename!r}", fields=["filename"])
    return stem, suffix


def product_file_key(product_id: str, filename: str, sequence: int = 1) -> str:
    """``products/<prd>/<prd>-<seq>-<stem><ext>``"""
    stem, suffix = _split_filename(filename)
    return f"{product_folder(product_id)}{product_id}-{sequence}-{stem}{suffix}"


def receipt_key(order_id: str, filename: str) -> str:
    """``receipts/receipt_<ord><ext>``; only image extensions are accepted."""
    _, suffix = _split_filename(filename)
    if suffix not in RECEIPT_EXTENSIONS:
        allowed = ", ".join(sorted(RECEIPT_EXTENSIONS))
        raise ValidationError(
            f"Receipt must be an image ({allowed}), got {suffix or 'no extension'}",
            fields=["filename"],
        )
    return f"{RECEIPTS_PREFIX}receipt_{order_id}{suffix}"


class UploadService:
    """Stores files for products and orders the caller may access."""

    def __init__(self, orders: OrderStateMachine, store: ObjectStore):
        self.orders = orders
        self.store = store

    def store_product_file(
        self,
        identity: Identity | None,
        product_id: str,
        filename: str,
        body: bytes,
        content_type: str | None = None,
        sequence: int = 1,
    ) -> str:
        """
        Upload one photo into a product's folder.

        Returns:
            The object key the file was stored under.

        Raises:
            NotAuthenticatedError: If no identity is available.
            ProductNotFoundError: If the product doesn't exist.
            ForbiddenError: If the caller doesn't own the product's order.
            ValidationError: If the file name or sequence is unusable, or the body is empty.
        """
        if identity is None or not identity.email:
            raise NotAuthenticatedError()
        if sequence < 1:
            raise ValidationError("Sequence must be at least 1", fields=["sequence"])
        if not body:
            raise ValidationError("Uploaded file is empty", fields=["body"])

        key = product_file_key(product_id, filename, sequence)
        try:
            _, order = self.orders.resolve_folder(product_folder(product_id))
        except FolderNotFoundError as e:
            raise ProductNotFoundError(product_id) from e
        self._check_owner(identity, order)

        self.store.put_object(key, body, content_type)
        logger.info("product_file_stored", product_id=product_id, key=key, size=len(body))
        return key

    def store_receipt(
        self,
        identity: Identity | None,
        order_id: str,
        filename: str,
        body: bytes,
        content_type: str | None = None,
    ) -> Order:
        """
        Upload a payment receipt and move the order's payment to Pending.

        Raises:
            ValidationError: If the file isn't an accepted image type or is empty.
        """
        if identity is None or not identity.email:
            raise NotAuthenticatedError()
        if not body:
            raise ValidationError("Uploaded file is empty", fields=["body"])
        key = receipt_key(order_id, filename)

        # Ownership and order state are checked before anything is written
        view = self.orders.get_order(identity, order_id)
        if view.order.is_open:
            raise CartNotOpenError(order_id, expected_open=False)
        if view.status == CompositeStatus.CANCELED:
            raise OrderCanceledError(order_id)
        if view.order.payment_status == PaymentStatus.APPROVED:
            raise InvalidTransitionError(
                order_id, PaymentStatus.APPROVED.value, PaymentStatus.PENDING.value
            )

        self.store.put_object(key, body, content_type)
        logger.info("receipt_stored", order_id=order_id, key=key, size=len(body))
        return self.orders.submit_payment(identity, order_id, key)

    def delete_folder(self, folder_path: str) -> int:
        """
        Remove every stored file under a folder, best effort.

        Returns:
            Number of objects deleted.
        """
        folder = normalize_folder(folder_path)
        if not folder:
            raise ValidationError("Folder path is required", fields=["folder_path"])
        deleted = 0
        try:
            for obj in self.store.list_objects(folder):
                self.store.delete_object(obj.key)
                deleted += 1
        except StorageError as e:
            logger.warning("folder_cleanup_failed", folder=folder, deleted=deleted, error=str(e))
            return deleted
        logger.info("folder_deleted", folder=folder, deleted=deleted)
        return deleted

    def file_urls(self, identity: Identity, folder_path: str, expires_in: int = 3600) -> dict[str, str]:
        """Presigned download URLs of a product's files, keyed by file name."""
        folder = normalize_folder(folder_path)
        _, order = self.orders.resolve_folder(folder)
        self._check_owner(identity, order)
        return {
            obj.key[len(folder):]: self.store.presigned_url(obj.key, expires_in)
            for obj in self.store.list_objects(folder)
            if not obj.key.endswith("/")
        }

    def _check_owner(self, identity: Identity, order: Order) -> None:
        if not identity.can_access(order.email):
            raise ForbiddenError(f"order {order.order_id}", identity.email)
