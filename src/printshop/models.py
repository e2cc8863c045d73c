"""Data models for printshop."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from .errors import ValidationError


def _utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Canonical form of an email address as stored and compared."""
    return email.strip().lower()


def _iso(value: datetime | None) -> str | None:
    """Render a timestamp as ISO 8601, keeping None as None."""
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


class SequenceDomain(str, Enum):
    """Independently numbered identifier series."""

    ORDER = "order"
    PRODUCT = "product"
    STATUS = "status"
    MESSAGE = "message"

    @property
    def prefix(self) -> str:
        return _PREFIXES[self]


_PREFIXES = {
    SequenceDomain.ORDER: "ord",
    SequenceDomain.PRODUCT: "prd",
    SequenceDomain.STATUS: "stt",
    SequenceDomain.MESSAGE: "msg",
}


class PaymentStatus(str, Enum):
    NOT_APPROVED = "NotApproved"
    PENDING = "Pending"
    APPROVED = "Approved"
    CANCELED = "Canceled"


class StatusName(str, Enum):
    """Fulfillment milestones plus the cancellation sentinel."""

    RECEIVE_ORDER = "ReceiveOrder"
    ORDER_COMPLETED = "OrderCompleted"
    SHIPPED = "Shipped"
    CANCELED = "Canceled"


# Fixed completion order of the fulfillment milestones
FULFILLMENT_SEQUENCE: tuple[StatusName, ...] = (
    StatusName.RECEIVE_ORDER,
    StatusName.ORDER_COMPLETED,
    StatusName.SHIPPED,
)


class CompositeStatus(str, Enum):
    """Single human-facing status derived from payment and fulfillment state."""

    PAYMENT_NOT_APPROVED = "PaymentNotApproved"
    PAYMENT_PENDING = "PaymentPending"
    WAITING_FOR_PROCESS = "WaitingForProcess"
    RECEIVE_ORDER = "ReceiveOrder"
    ORDER_COMPLETED = "OrderCompleted"
    SHIPPED = "Shipped"
    CANCELED = "Canceled"


class ShippingOption(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"

    @classmethod
    def parse(cls, value: "str | ShippingOption | None") -> "ShippingOption | None":
        """Parse canonical values and the legacy storefront codes."""
        if value is None or isinstance(value, ShippingOption):
            return value
        key = value.strip().lower().replace(" ", "").replace("_", "")
        if not key:
            return None
        try:
            return _SHIPPING_ALIASES[key]
        except KeyError:
            raise ValidationError(
                f"Unknown shipping option: {value}", fields=["shipping_option"]
            )


_SHIPPING_ALIASES = {
    "delivery": ShippingOption.DELIVERY,
    "d": ShippingOption.DELIVERY,
    "thailandpost": ShippingOption.DELIVERY,
    "pickup": ShippingOption.PICKUP,
    "p": ShippingOption.PICKUP,
}


class NotificationKind(str, Enum):
    PAYMENT_CONFIRMED = "PaymentConfirmed"
    PAYMENT_SUBMITTED = "PaymentSubmitted"
    STATUS_ADVANCED = "StatusAdvanced"


@dataclass(frozen=True)
class Identity:
    """The caller as asserted by the upstream auth gateway."""

    email: str
    is_staff: bool = False

    def __post_init__(self):
        object.__setattr__(self, "email", normalize_email(self.email))

    def can_access(self, owner_email: str) -> bool:
        return self.is_staff or self.email == normalize_email(owner_email)


@dataclass
class ProductSpec:
    """A print job as submitted to the cart."""

    album_name: str
    size: str
    paper_type: str
    printing_format: str
    quantity: int
    unit_price: Decimal

    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProductSpec":
        """
        Build a validated spec from loosely typed input.

        Raises:
            ValidationError: If required fields are absent or malformed.
        """
        missing = [
            name
            for name in ("album_name", "size", "paper_type", "printing_format")
            if not str(data.get(name) or "").strip()
        ]
        if missing:
            raise ValidationError(
                f"Missing required product fields: {', '.join(missing)}", fields=missing
            )

        try:
            quantity = int(data.get("quantity"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise ValidationError("Quantity must be an integer", fields=["quantity"])
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", fields=["quantity"])

        try:
            unit_price = Decimal(str(data.get("unit_price")))
        except ArithmeticError:
            raise ValidationError("Unit price must be a number", fields=["unit_price"])
        if not unit_price.is_finite() or unit_price < 0:
            raise ValidationError("Unit price must be zero or more", fields=["unit_price"])

        return cls(
            album_name=str(data["album_name"]).strip(),
            size=str(data["size"]).strip(),
            paper_type=str(data["paper_type"]).strip(),
            printing_format=str(data["printing_format"]).strip(),
            quantity=quantity,
            unit_price=unit_price,
        )


@dataclass
class Order:
    order_id: str
    email: str
    payment_status: PaymentStatus
    shipping_option: ShippingOption | None = None
    order_date: datetime | None = None  # None while the order is an open cart
    received_date: datetime | None = None
    payment_deadline: datetime | None = None
    note: str | None = None
    tracking_number: str | None = None
    receipt_ref: str | None = None

    @property
    def is_open(self) -> bool:
        return self.order_date is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "email": self.email,
            "payment_status": self.payment_status.value,
            "shipping_option": self.shipping_option.value if self.shipping_option else None,
            "order_date": _iso(self.order_date),
            "received_date": _iso(self.received_date),
            "payment_deadline": _iso(self.payment_deadline),
            "note": self.note,
            "tracking_number": self.tracking_number,
            "receipt_ref": self.receipt_ref,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Order":
        return cls(
            order_id=row["order_id"],
            email=row["email"],
            payment_status=PaymentStatus(row["payment_status"]),
            shipping_option=ShippingOption(row["shipping_option"]) if row["shipping_option"] else None,
            order_date=row["order_date"],
            received_date=row["received_date"],
            payment_deadline=row["payment_deadline"],
            note=row["note"],
            tracking_number=row["tracking_number"],
            receipt_ref=row["receipt_ref"],
        )


@dataclass
class Product:
    product_id: str
    order_id: str
    album_name: str
    size: str
    paper_type: str
    printing_format: str
    quantity: int
    unit_price: Decimal
    price: Decimal  # line total
    folder_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "order_id": self.order_id,
            "album_name": self.album_name,
            "size": self.size,
            "paper_type": self.paper_type,
            "printing_format": self.printing_format,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "price": str(self.price),
            "folder_path": self.folder_path,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Product":
        return cls(
            product_id=row["product_id"],
            order_id=row["order_id"],
            album_name=row["album_name"],
            size=row["size"],
            paper_type=row["paper_type"],
            printing_format=row["printing_format"],
            quantity=row["quantity"],
            unit_price=Decimal(row["unit_price"]),
            price=Decimal(row["price"]),
            folder_path=row["folder_path"],
        )


@dataclass
class StatusEvent:
    status_id: str
    order_id: str
    status_name: StatusName
    is_completed: bool = False
    status_date: datetime | None = None

    @property
    def rank(self) -> int:
        """Position in the fixed fulfillment order; the cancel sentinel sorts last."""
        if self.status_name in FULFILLMENT_SEQUENCE:
            return FULFILLMENT_SEQUENCE.index(self.status_name)
        return len(FULFILLMENT_SEQUENCE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status_id": self.status_id,
            "order_id": self.order_id,
            "status_name": self.status_name.value,
            "is_completed": self.is_completed,
            "status_date": _iso(self.status_date),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "StatusEvent":
        return cls(
            status_id=row["status_id"],
            order_id=row["order_id"],
            status_name=StatusName(row["status_name"]),
            is_completed=bool(row["is_completed"]),
            status_date=row["status_date"],
        )


@dataclass
class NotificationMessage:
    msg_id: str
    email: str
    order_id: str
    msg: str
    is_read: bool = False
    notified_date: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "msg_id": self.msg_id,
            "email": self.email,
            "order_id": self.order_id,
            "msg": self.msg,
            "is_read": self.is_read,
            "notified_date": _iso(self.notified_date),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "NotificationMessage":
        return cls(
            msg_id=row["msg_id"],
            email=row["email"],
            order_id=row["order_id"],
            msg=row["msg"],
            is_read=bool(row["is_read"]),
            notified_date=row["notified_date"],
        )


@dataclass
class CartLine:
    """Result of adding a product to a customer's open cart."""

    order_id: str
    product_id: str
    folder_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "product_id": self.product_id,
            "folder_path": self.folder_path,
        }


@dataclass
class OrderView:
    """An order with its children and derived status."""

    order: Order
    products: list[Product]
    statuses: list[StatusEvent]
    status: CompositeStatus

    @property
    def total_price(self) -> Decimal:
        return sum((p.price for p in self.products), Decimal("0"))

    def to_dict(self) -> dict[str, Any]:
        result = self.order.to_dict()
        result["status"] = self.status.value
        result["total_price"] = str(self.total_price)
        result["products"] = [p.to_dict() for p in self.products]
        result["statuses"] = [s.to_dict() for s in self.statuses]
        return result
