"""Relational storage for printshop: table definitions and the Database handle."""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    create_engine,
    event,
    insert,
    select,
)
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import StorageError
from .models import SequenceDomain

logger = structlog.get_logger(__name__)

metadata = MetaData()

orders = Table(
    "Orders",
    metadata,
    Column("order_id", String(16), primary_key=True),
    Column("email", String(255), nullable=False, index=True),
    Column("shipping_option", String(16)),
    Column("payment_status", String(16), nullable=False, default="NotApproved"),
    Column("order_date", DateTime(timezone=True)),
    Column("received_date", DateTime(timezone=True)),
    Column("payment_deadline", DateTime(timezone=True)),
    Column("note", Text),
    Column("tracking_number", String(64)),
    Column("receipt_ref", String(512)),
    # Equals email while the order is an open cart, NULL once committed.
    # The unique constraint keeps one open cart per customer.
    Column("cart_owner", String(255), unique=True),
)

products = Table(
    "Product",
    metadata,
    Column("product_id", String(16), primary_key=True),
    Column(
        "order_id",
        String(16),
        ForeignKey("Orders.order_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("album_name", String(255), nullable=False),
    Column("size", String(64), nullable=False),
    Column("paper_type", String(64), nullable=False),
    Column("printing_format", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("price", Numeric(12, 2), nullable=False),
    Column("folder_path", String(512), nullable=False, unique=True),
)

statuses = Table(
    "Status",
    metadata,
    Column("status_id", String(16), primary_key=True),
    Column(
        "order_id",
        String(16),
        ForeignKey("Orders.order_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("status_name", String(32), nullable=False),
    Column("is_completed", Boolean, nullable=False, default=False),
    Column("status_date", DateTime(timezone=True)),
)

# Weak reference to Orders: messages outlive deleted orders
messages = Table(
    "NotifiedMsg",
    metadata,
    Column("msg_id", String(16), primary_key=True),
    Column("email", String(255), nullable=False, index=True),
    Column("order_id", String(16), nullable=False),
    Column("msg", Text, nullable=False),
    Column("is_read", Boolean, nullable=False, default=False),
    Column("notified_date", DateTime(timezone=True), nullable=False),
)

id_sequences = Table(
    "IdSequence",
    metadata,
    Column("domain", String(16), primary_key=True),
    Column("last_value", Integer, nullable=False, default=0),
)

# Table and identifier column numbered by each sequence domain
DOMAIN_COLUMNS = {
    SequenceDomain.ORDER: orders.c.order_id,
    SequenceDomain.PRODUCT: products.c.product_id,
    SequenceDomain.STATUS: statuses.c.status_id,
    SequenceDomain.MESSAGE: messages.c.msg_id,
}


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Owns the SQLAlchemy engine.

    Construct once at process start, acquire a transaction per operation with
    ``transaction()``, and call ``dispose()`` at shutdown.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self._echo = echo
        self._engine: Engine | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    def _create_engine(self) -> Engine:
        url = make_url(self.url)
        kwargs: dict = {"echo": self._echo}
        if url.get_backend_name() == "sqlite":
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        else:
            kwargs["pool_pre_ping"] = True

        engine = create_engine(url, **kwargs)
        if url.get_backend_name() == "sqlite":
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        logger.info("database_opened", backend=url.get_backend_name())
        return engine

    @contextmanager
    def transaction(self, operation: str = "transaction", **context: str) -> Iterator[Connection]:
        """
        Yield a connection inside an all-or-nothing transaction.

        PrintshopError raised inside the block rolls back and propagates as is;
        driver errors roll back and surface as StorageError.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            conflict = isinstance(e, IntegrityError)
            logger.error(
                "storage_error", operation=operation, error=str(e), conflict=conflict, **context
            )
            raise StorageError(operation, type(e).__name__, conflict=conflict, **context) from e

    def create_schema(self) -> None:
        """Create tables and the per-domain counter rows if missing."""
        with self.transaction("create_schema") as conn:
            metadata.create_all(conn)
            existing = set(conn.scalars(select(id_sequences.c.domain)))
            missing = [d.value for d in SequenceDomain if d.value not in existing]
            if missing:
                conn.execute(
                    insert(id_sequences),
                    [{"domain": d, "last_value": 0} for d in missing],
                )
        logger.info("schema_ready", seeded_counters=missing)

    def drop_schema(self) -> None:
        with self.transaction("drop_schema") as conn:
            metadata.drop_all(conn)

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            logger.info("database_closed")
