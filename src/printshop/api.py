"""FastAPI REST API for the printshop order engine."""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from starlette.concurrency import run_in_threadpool

from . import __version__
from .bundle import BundleBuilder
from .cart import CartConsolidator
from .config import Settings
from .db import Database
from .errors import (
    ConflictError,
    ForbiddenError,
    NoStatusToAdvanceError,
    NotAuthenticatedError,
    NotFoundError,
    OrderCanceledError,
    PrintshopError,
    StorageError,
    ValidationError,
)
from .models import CompositeStatus, Identity
from .notifications import NotificationEmitter
from .object_store import ObjectStore, S3ObjectStore, product_folder
from .orders import OrderStateMachine
from .uploads import UploadService

logger = structlog.get_logger(__name__)

STAFF_ROLE = "staff"


# --- Pydantic Schemas ---


class CartItemRequest(BaseModel):
    """Request body for adding a print job to the cart."""

    album_name: str
    size: str
    paper_type: str
    printing_format: str
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)


class CartLineSchema(BaseModel):
    order_id: str
    product_id: str
    folder_path: str


class CommitRequest(BaseModel):
    """Request body for checking out. Defaults to the caller's open cart."""

    order_id: Optional[str] = None
    shipping_option: Optional[str] = Field(
        default=None,
        description="'delivery' or 'pickup' (legacy codes D, ThailandPost, P, PickUp accepted)",
    )
    note: Optional[str] = None


class TrackingRequest(BaseModel):
    tracking_number: Optional[str] = None
    received_date: Optional[datetime] = None


class ProductSchema(BaseModel):
    product_id: str
    order_id: str
    album_name: str
    size: str
    paper_type: str
    printing_format: str
    quantity: int
    unit_price: str
    price: str
    folder_path: str


class StatusSchema(BaseModel):
    status_id: str
    order_id: str
    status_name: str
    is_completed: bool
    status_date: Optional[str] = None


class OrderSummarySchema(BaseModel):
    order_id: str
    email: str
    payment_status: str
    shipping_option: Optional[str] = None
    order_date: Optional[str] = None
    received_date: Optional[str] = None
    payment_deadline: Optional[str] = None
    note: Optional[str] = None
    tracking_number: Optional[str] = None
    receipt_ref: Optional[str] = None


class OrderSchema(OrderSummarySchema):
    status: str
    total_price: str
    products: list[ProductSchema]
    statuses: list[StatusSchema]


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    count: int


class StatusListResponse(BaseModel):
    order_id: str
    statuses: list[StatusSchema]
    count: int


class ProductRemovalResponse(BaseModel):
    order_id: str
    product_id: str
    order_deleted: bool


class OrderDeletionResponse(BaseModel):
    order_id: str
    deleted_products: list[str]


class UploadResponse(BaseModel):
    key: str


class FileListResponse(BaseModel):
    folder_path: str
    files: dict[str, str]


class NotificationSchema(BaseModel):
    msg_id: str
    email: str
    order_id: str
    msg: str
    is_read: bool
    notified_date: Optional[str] = None


class NotificationListResponse(BaseModel):
    messages: list[NotificationSchema]
    count: int
    unread: int


class MarkReadResponse(BaseModel):
    updated: int


# --- Error Mapping ---


# Looked up along the exception's MRO, most specific class first
ERROR_STATUS_CODES: dict[type, int] = {
    ValidationError: 400,
    NotAuthenticatedError: 401,
    ForbiddenError: 403,
    NotFoundError: 404,
    OrderCanceledError: 400,
    NoStatusToAdvanceError: 400,
    ConflictError: 409,
    StorageError: 500,
}


def error_status(exc: PrintshopError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


async def printshop_error_handler(request: Request, exc: PrintshopError) -> JSONResponse:
    """Map PrintshopError subclasses to appropriate HTTP responses."""
    status_code = error_status(exc)
    if status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
        detail = "Internal storage error"
    else:
        detail = str(exc)
    content = {"detail": detail, "error_type": type(exc).__name__}
    if isinstance(exc, ValidationError) and exc.fields:
        content["fields"] = exc.fields
    return JSONResponse(status_code=status_code, content=content)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies and parameters as 400 ValidationError."""
    errors = exc.errors()
    fields = [".".join(str(p) for p in e.get("loc", ()) if p != "body") for e in errors]
    if errors:
        first = errors[0]
        detail = f"{fields[0] or 'request'}: {first.get('msg', 'invalid value')}"
    else:
        detail = "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"detail": detail, "error_type": "ValidationError", "fields": fields},
    )


# --- Dependencies ---


def get_identity(
    x_user_email: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Optional[Identity]:
    """Identity asserted by the upstream auth gateway, if any."""
    email = (x_user_email or "").strip()
    if not email:
        return None
    return Identity(email=email, is_staff=(x_user_role or "").strip().lower() == STAFF_ROLE)


def require_identity(identity: Optional[Identity] = Depends(get_identity)) -> Identity:
    if identity is None:
        raise NotAuthenticatedError()
    return identity


def require_staff(identity: Identity = Depends(require_identity)) -> Identity:
    if not identity.is_staff:
        raise ForbiddenError("staff operations", identity.email)
    return identity


def get_orders(request: Request) -> OrderStateMachine:
    return request.app.state.orders


def get_cart(request: Request) -> CartConsolidator:
    return request.app.state.cart


def get_notifier(request: Request) -> NotificationEmitter:
    return request.app.state.notifier


def get_uploads(request: Request) -> UploadService:
    uploads = request.app.state.uploads
    if uploads is None:
        raise StorageError("object_store", "no bucket configured")
    return uploads


def get_bundles(request: Request) -> BundleBuilder:
    bundles = request.app.state.bundles
    if bundles is None:
        raise StorageError("object_store", "no bucket configured")
    return bundles


def _remove_folders(request: Request, folders: list[str]) -> None:
    uploads = request.app.state.uploads
    if uploads is None:
        return
    for folder in folders:
        uploads.delete_folder(folder)


# --- FastAPI App ---


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    object_store: ObjectStore | None = None,
) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Runtime settings; read from the environment when omitted.
        database: Database handle to use instead of one built from settings.
        object_store: Object store to use instead of the configured S3 bucket.
    """
    settings = settings or Settings.from_env()
    database = database or Database(settings.database_url)
    if object_store is None and settings.s3_bucket:
        object_store = S3ObjectStore(
            bucket=settings.s3_bucket,
            region_name=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.create_schema:
            database.create_schema()
        logger.info("api_started", object_store=object_store is not None)
        yield
        database.dispose()

    app = FastAPI(
        title="printshop API",
        description="Order lifecycle and fulfillment for the photo print shop",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PrintshopError, printshop_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    notifier = NotificationEmitter(database)
    orders = OrderStateMachine(
        database,
        notifier,
        payment_window=settings.payment_window,
        staff_email=settings.staff_email,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.notifier = notifier
    app.state.orders = orders
    app.state.cart = CartConsolidator(database)
    app.state.uploads = UploadService(orders, object_store) if object_store else None
    app.state.bundles = BundleBuilder(orders, object_store) if object_store else None

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    def health_check(request: Request):
        """
        Health check endpoint.

        Reports whether the database answers a trivial query.
        """
        try:
            with request.app.state.database.transaction("health") as conn:
                conn.execute(select(1))
        except StorageError as e:
            return {"status": "error", "detail": e.reason}
        return {"status": "ok", "version": __version__}

    # --- Cart Endpoints ---

    @app.post("/api/cart/items", response_model=CartLineSchema, status_code=201)
    def add_cart_item(
        body: CartItemRequest,
        identity: Identity = Depends(require_identity),
        cart: CartConsolidator = Depends(get_cart),
    ):
        """Add a print job to the caller's open cart."""
        line = cart.add_to_cart(identity, body.model_dump())
        return CartLineSchema(**line.to_dict())

    @app.post("/api/cart/commit", response_model=OrderSummarySchema)
    def commit_cart(
        body: CommitRequest,
        identity: Identity = Depends(require_identity),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        """Check out the caller's open cart (or the given order)."""
        order_id = body.order_id
        if order_id is None:
            cart = orders.find_open_cart(identity.email)
            if cart is None:
                raise NotFoundError(f"No open cart for {identity.email}")
            order_id = cart.order_id
        order = orders.commit_cart(identity, order_id, body.shipping_option, note=body.note)
        return OrderSummarySchema(**order.to_dict())

    # --- Order Endpoints ---

    @app.get("/api/orders", response_model=OrderListResponse)
    def list_orders(
        status: Optional[CompositeStatus] = Query(default=None),
        identity: Identity = Depends(require_identity),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        """List orders; staff see every order, customers their own."""
        views = orders.list_orders(identity, status)
        return OrderListResponse(
            orders=[OrderSchema(**v.to_dict()) for v in views],
            count=len(views),
        )

    @app.get("/api/orders/{order_id}", response_model=OrderSchema)
    def get_order(
        order_id: str,
        identity: Identity = Depends(require_identity),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        return OrderSchema(**orders.get_order(identity, order_id).to_dict())

    @app.get("/api/orders/{order_id}/statuses", response_model=StatusListResponse)
    def list_order_statuses(
        order_id: str,
        identity: Identity = Depends(require_identity),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        view = orders.get_order(identity, order_id)
        return StatusListResponse(
            order_id=order_id,
            statuses=[StatusSchema(**s.to_dict()) for s in view.statuses],
            count=len(view.statuses),
        )

    @app.put("/api/orders/{order_id}/status/advance", response_model=StatusListResponse)
    def advance_order_status(
        order_id: str,
        identity: Identity = Depends(require_staff),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        """Complete the next fulfillment milestone (staff only)."""
        events = orders.advance_status(order_id)
        return StatusListResponse(
            order_id=order_id,
            statuses=[StatusSchema(**e.to_dict()) for e in events],
            count=len(events),
        )

    @app.put("/api/orders/{order_id}/payment/approve", response_model=OrderSummarySchema)
    def approve_payment(
        order_id: str,
        identity: Identity = Depends(require_staff),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        """Approve an order's payment (staff only)."""
        return OrderSummarySchema(**orders.approve_payment(order_id).to_dict())

    @app.put("/api/orders/{order_id}/receipt", response_model=OrderSummarySchema)
    async def upload_receipt(
        order_id: str,
        request: Request,
        filename: str = Query(..., min_length=1),
        identity: Identity = Depends(require_identity),
        uploads: UploadService = Depends(get_uploads),
    ):
        """Upload a payment receipt (raw request body); payment becomes Pending."""
        body = await request.body()
        order = await run_in_threadpool(
            uploads.store_receipt,
            identity,
            order_id,
            filename,
            body,
            request.headers.get("content-type"),
        )
        return OrderSummarySchema(**order.to_dict())

    @app.put("/api/orders/{order_id}/tracking", response_model=OrderSummarySchema)
    def update_tracking(
        order_id: str,
        body: TrackingRequest,
        identity: Identity = Depends(require_staff),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        order = orders.update_tracking(
            order_id,
            tracking_number=body.tracking_number,
            received_date=body.received_date,
        )
        return OrderSummarySchema(**order.to_dict())

    @app.post("/api/orders/{order_id}/cancel", response_model=OrderSummarySchema)
    def cancel_order(
        order_id: str,
        identity: Identity = Depends(require_identity),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        return OrderSummarySchema(**orders.cancel(identity, order_id).to_dict())

    @app.delete("/api/orders/{order_id}", response_model=OrderDeletionResponse)
    def delete_order(
        order_id: str,
        request: Request,
        identity: Identity = Depends(require_identity),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        """Delete an order with its products, statuses and stored files."""
        removed = orders.delete_order(identity, order_id)
        _remove_folders(request, [p.folder_path for p in removed])
        return OrderDeletionResponse(
            order_id=order_id,
            deleted_products=[p.product_id for p in removed],
        )

    @app.delete(
        "/api/orders/{order_id}/products/{product_id}",
        response_model=ProductRemovalResponse,
    )
    def delete_product(
        order_id: str,
        product_id: str,
        request: Request,
        identity: Identity = Depends(require_identity),
        orders: OrderStateMachine = Depends(get_orders),
    ):
        """Remove a product; removing the last one deletes the order."""
        removal = orders.delete_product(identity, order_id, product_id)
        _remove_folders(request, [removal.product.folder_path])
        return ProductRemovalResponse(
            order_id=order_id,
            product_id=product_id,
            order_deleted=removal.order_deleted,
        )

    # --- File Endpoints ---

    @app.put(
        "/api/products/{product_id}/files/{filename}",
        response_model=UploadResponse,
        status_code=201,
    )
    async def upload_product_file(
        product_id: str,
        filename: str,
        request: Request,
        sequence: int = Query(default=1, ge=1),
        identity: Identity = Depends(require_identity),
        uploads: UploadService = Depends(get_uploads),
    ):
        """Upload one photo (raw request body) into a product's folder."""
        body = await request.body()
        key = await run_in_threadpool(
            uploads.store_product_file,
            identity,
            product_id,
            filename,
            body,
            request.headers.get("content-type"),
            sequence,
        )
        return UploadResponse(key=key)

    @app.get("/api/products/{product_id}/files", response_model=FileListResponse)
    def list_product_files(
        product_id: str,
        identity: Identity = Depends(require_identity),
        uploads: UploadService = Depends(get_uploads),
    ):
        """Presigned download links for a product's files."""
        folder = product_folder(product_id)
        return FileListResponse(folder_path=folder, files=uploads.file_urls(identity, folder))

    @app.get("/api/bundles")
    def download_bundle(
        folder: str = Query(..., min_length=1, description="Product folder, e.g. products/prd00001/"),
        identity: Identity = Depends(require_identity),
        bundles: BundleBuilder = Depends(get_bundles),
    ):
        """Stream a zip of every file in a product folder."""
        bundle = bundles.open_bundle(identity, folder)
        return StreamingResponse(
            bundle.chunks,
            media_type=bundle.content_type,
            headers={"Content-Disposition": f'attachment; filename="{bundle.filename}"'},
        )

    # --- Notification Endpoints ---

    @app.get("/api/notifications", response_model=NotificationListResponse)
    def list_notifications(
        unread_only: bool = Query(default=False),
        identity: Identity = Depends(require_identity),
        notifier: NotificationEmitter = Depends(get_notifier),
    ):
        messages = notifier.list_for(identity.email, unread_only=unread_only)
        return NotificationListResponse(
            messages=[NotificationSchema(**m.to_dict()) for m in messages],
            count=len(messages),
            unread=notifier.unread_count(identity.email),
        )

    @app.put("/api/notifications/read-all", response_model=MarkReadResponse)
    def mark_notifications_read(
        identity: Identity = Depends(require_identity),
        notifier: NotificationEmitter = Depends(get_notifier),
    ):
        return MarkReadResponse(updated=notifier.mark_all_read(identity.email))
