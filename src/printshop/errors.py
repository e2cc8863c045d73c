"""Custom exceptions for printshop."""


class PrintshopError(Exception):
    """Base exception for all printshop errors."""

    pass


# --- 400 ---


class ValidationError(PrintshopError):
    """Raised when input is missing or malformed."""

    def __init__(self, message: str, fields: list[str] | None = None):
        self.fields = fields or []
        super().__init__(message)


# --- 401 / 403 ---


class NotAuthenticatedError(PrintshopError):
    """Raised when no customer or staff identity is available."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class ForbiddenError(PrintshopError):
    """Raised when an identity is present but lacks rights on a resource."""

    def __init__(self, resource: str, email: str | None = None):
        self.resource = resource
        self.email = email
        super().__init__(f"Not allowed to access {resource}")


# --- 404 ---


class NotFoundError(PrintshopError):
    """Raised when a referenced order, product or folder is absent."""

    pass


class OrderNotFoundError(NotFoundError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ProductNotFoundError(NotFoundError):
    """Raised when a product ID doesn't exist under the given order."""

    def __init__(self, product_id: str, order_id: str | None = None):
        self.product_id = product_id
        self.order_id = order_id
        msg = f"Product not found: {product_id}"
        if order_id:
            msg = f"{msg} (order {order_id})"
        super().__init__(msg)


class FolderNotFoundError(NotFoundError):
    """Raised when no product references a folder path."""

    def __init__(self, folder_path: str):
        self.folder_path = folder_path
        super().__init__(f"No product owns folder: {folder_path}")


class EmptyFolderError(NotFoundError):
    """Raised when a product folder holds no stored files."""

    def __init__(self, folder_path: str):
        self.folder_path = folder_path
        super().__init__(f"No files found in folder: {folder_path}")


# --- 409 / 400 ---


class ConflictError(PrintshopError):
    """Raised when an operation would violate an order invariant."""

    pass


class OrderCanceledError(ConflictError):
    """Raised when a transition is attempted on a canceled order."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Cannot update: canceled")


class NoStatusToAdvanceError(ConflictError):
    """Raised when an order has no remaining status to complete."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("No status found")


class PaymentNotApprovedError(ConflictError):
    """Raised when fulfillment is advanced before payment approval."""

    def __init__(self, order_id: str, payment_status: str):
        self.order_id = order_id
        self.payment_status = payment_status
        super().__init__(
            f"Order {order_id} payment is {payment_status}; approve payment first"
        )


class CartNotOpenError(ConflictError):
    """Raised when an operation needs an open cart but the order is committed, or vice versa."""

    def __init__(self, order_id: str, expected_open: bool = True):
        self.order_id = order_id
        self.expected_open = expected_open
        if expected_open:
            msg = f"Order {order_id} has already been checked out"
        else:
            msg = f"Order {order_id} is still an open cart"
        super().__init__(msg)


class EmptyCartError(ConflictError):
    """Raised when committing a cart without products."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} has no products")


class InvalidTransitionError(ConflictError):
    """Raised when a payment transition is not allowed from the current state."""

    def __init__(self, order_id: str, current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")


# --- 500 ---


class StorageError(PrintshopError):
    """Raised when the relational store or the object store is unavailable."""

    def __init__(self, operation: str, reason: str, conflict: bool = False, **context: str):
        self.operation = operation
        self.reason = reason
        self.conflict = conflict  # a uniqueness or foreign key constraint rejected the write
        self.context = context
        details = ", ".join(f"{k}={v}" for k, v in context.items())
        msg = f"Storage failure during {operation}: {reason}"
        if details:
            msg = f"{msg} ({details})"
        super().__init__(msg)


class BundleStreamError(StorageError):
    """Raised when a file read fails while an archive is being streamed."""

    def __init__(self, folder_path: str, key: str, reason: str):
        self.folder_path = folder_path
        self.key = key
        super().__init__("download_bundle", reason, folder=folder_path, key=key)
