"""Command-line interface for printshop staff operations."""

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from . import __version__
from .bundle import BundleBuilder
from .config import Settings
from .db import Database
from .errors import PrintshopError
from .log import configure_logging
from .models import CompositeStatus, Identity, OrderView
from .notifications import NotificationEmitter
from .object_store import S3ObjectStore
from .orders import OrderStateMachine

CLI_OPERATOR = "printshop-cli"


@dataclass
class Services:
    settings: Settings
    database: Database
    notifier: NotificationEmitter
    orders: OrderStateMachine

    @property
    def operator(self) -> Identity:
        """CLI users act as staff."""
        return Identity(email=self.settings.staff_email or CLI_OPERATOR, is_staff=True)

    def close(self) -> None:
        self.database.dispose()


def get_services(settings: Settings | None = None) -> Services:
    """Build the engine services from settings (environment by default)."""
    settings = settings or Settings.from_env()
    database = Database(settings.database_url)
    notifier = NotificationEmitter(database)
    orders = OrderStateMachine(
        database,
        notifier,
        payment_window=settings.payment_window,
        staff_email=settings.staff_email,
    )
    return Services(settings=settings, database=database, notifier=notifier, orders=orders)


def format_order(view: OrderView, verbose: bool = False) -> str:
    """One line per order, plus products and statuses when verbose."""
    order = view.order
    placed = order.order_date.strftime("%Y-%m-%d %H:%M") if order.order_date else "open cart"
    line = (
        f"{order.order_id}  {view.status.value:<18}  {order.email:<30}  "
        f"{view.total_price:>10}  {placed}"
    )
    if not verbose:
        return line

    lines = [line]
    shipping = order.shipping_option.value if order.shipping_option else "-"
    lines.append(f"  payment: {order.payment_status.value}  shipping: {shipping}")
    if order.tracking_number:
        lines.append(f"  tracking: {order.tracking_number}")
    if order.note:
        lines.append(f"  note: {order.note}")
    for p in view.products:
        lines.append(
            f"  {p.product_id}  {p.album_name} ({p.size}, {p.paper_type}, {p.printing_format})"
            f"  x{p.quantity}  {p.price}  {p.folder_path}"
        )
    for s in view.statuses:
        mark = "x" if s.is_completed else " "
        when = s.status_date.strftime("%Y-%m-%d %H:%M") if s.status_date else ""
        lines.append(f"  [{mark}] {s.status_name.value:<15} {when}")
    return "\n".join(lines)


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create tables and sequence counters."""
    services = get_services()
    try:
        if args.drop:
            services.database.drop_schema()
        services.database.create_schema()
        print(f"Database ready: {services.database.engine.url.render_as_string(hide_password=True)}")
        return 0

    except PrintshopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_orders_list(args: argparse.Namespace) -> int:
    """List orders, optionally filtered by composite status."""
    services = get_services()
    try:
        views = services.orders.list_orders(services.operator, args.status)

        if args.json:
            print(json.dumps([v.to_dict() for v in views], indent=2))
            return 0
        if not views:
            print("No orders found.")
            return 0

        print(f"Orders ({len(views)}):")
        for view in views:
            print(format_order(view))
        return 0

    except PrintshopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_orders_show(args: argparse.Namespace) -> int:
    """Show one order with its products and statuses."""
    services = get_services()
    try:
        view = services.orders.get_order(services.operator, args.order_id)
        if args.json:
            print(json.dumps(view.to_dict(), indent=2))
        else:
            print(format_order(view, verbose=True))
        return 0

    except PrintshopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_approve(args: argparse.Namespace) -> int:
    """Approve an order's payment."""
    services = get_services()
    try:
        order = services.orders.approve_payment(args.order_id)
        print(f"Payment approved: {order.order_id} ({order.email})")
        return 0

    except PrintshopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_advance(args: argparse.Namespace) -> int:
    """Complete the next fulfillment milestone of an order."""
    services = get_services()
    try:
        events = services.orders.advance_status(args.order_id)
        done = [e for e in events if e.is_completed]
        print(f"Advanced {args.order_id}: {done[-1].status_name.value if done else '-'}")
        return 0

    except PrintshopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_cancel(args: argparse.Namespace) -> int:
    """Cancel an order."""
    services = get_services()
    try:
        order = services.orders.cancel(services.operator, args.order_id)
        print(f"Canceled: {order.order_id}")
        return 0

    except PrintshopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_bundle(args: argparse.Namespace) -> int:
    """Write a product folder's zip bundle to a local file."""
    output = Path(args.output)
    started = False
    services = get_services()
    try:
        settings = services.settings
        if not settings.s3_bucket:
            print("Error: PRINTSHOP_S3_BUCKET is not set", file=sys.stderr)
            return 1
        store = S3ObjectStore(
            bucket=settings.s3_bucket,
            region_name=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
        )
        bundle = BundleBuilder(services.orders, store).open_bundle(services.operator, args.folder)

        written = 0
        started = True
        with output.open("wb") as f:
            for chunk in bundle.chunks:
                f.write(chunk)
                written += len(chunk)
        print(f"Wrote {bundle.entries} files ({written} bytes) to {output}")
        return 0

    except PrintshopError as e:
        # A partial archive is unusable
        if started:
            output.unlink(missing_ok=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_notifications(args: argparse.Namespace) -> int:
    """Show (and optionally clear) a recipient's notifications."""
    services = get_services()
    try:
        notifier = services.notifier
        messages = notifier.list_for(args.email, unread_only=args.unread)

        if args.json:
            print(json.dumps([m.to_dict() for m in messages], indent=2))
        elif not messages:
            print("No notifications.")
        else:
            for m in messages:
                mark = " " if m.is_read else "*"
                when = m.notified_date.strftime("%Y-%m-%d %H:%M") if m.notified_date else ""
                print(f"{mark} {m.msg_id}  {when}  {m.msg}")

        if args.read_all:
            count = notifier.mark_all_read(args.email)
            print(f"Marked {count} notification(s) as read.")
        return 0

    except PrintshopError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        print("Starting printshop API server...")
        print(f"API docs: http://{args.host}:{args.port}/docs")

        uvicorn.run(
            "printshop.api:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level="info",
        )
        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="printshop",
        description="Order lifecycle and fulfillment tools for the photo print shop.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # init-db
    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.add_argument(
        "--drop", action="store_true", help="Drop existing tables first (destroys data)"
    )

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve_parser.add_argument("--port", "-p", type=int, default=8000, help="Port (default: 8000)")
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes")

    # orders
    orders_parser = subparsers.add_parser("orders", help="Inspect orders")
    orders_sub = orders_parser.add_subparsers(dest="orders_command", help="Order commands")

    orders_list = orders_sub.add_parser("list", help="List orders")
    orders_list.add_argument(
        "--status",
        "-s",
        choices=[s.value for s in CompositeStatus],
        help="Only orders with this status",
    )
    orders_list.add_argument("--json", action="store_true", help="Output as JSON")

    orders_show = orders_sub.add_parser("show", help="Show one order")
    orders_show.add_argument("order_id", help="Order ID, e.g. ord00001")
    orders_show.add_argument("--json", action="store_true", help="Output as JSON")

    # transitions
    approve_parser = subparsers.add_parser("approve", help="Approve an order's payment")
    approve_parser.add_argument("order_id", help="Order ID")

    advance_parser = subparsers.add_parser("advance", help="Complete the next fulfillment step")
    advance_parser.add_argument("order_id", help="Order ID")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel an order")
    cancel_parser.add_argument("order_id", help="Order ID")

    # bundle
    bundle_parser = subparsers.add_parser("bundle", help="Download a product folder as zip")
    bundle_parser.add_argument("folder", help="Product folder, e.g. products/prd00001/")
    bundle_parser.add_argument("--output", "-o", required=True, help="Zip file to write")

    # notifications
    notif_parser = subparsers.add_parser("notifications", help="Show a recipient's notifications")
    notif_parser.add_argument("email", help="Recipient email")
    notif_parser.add_argument("--unread", action="store_true", help="Only unread messages")
    notif_parser.add_argument(
        "--read-all", action="store_true", help="Mark every message as read afterwards"
    )
    notif_parser.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    load_dotenv()
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_json, stream=sys.stderr)

    if args.command == "orders":
        if not getattr(args, "orders_command", None):
            parser.parse_args(["orders", "--help"])
            return 0
        if args.orders_command == "list":
            return cmd_orders_list(args)
        elif args.orders_command == "show":
            return cmd_orders_show(args)

    commands = {
        "init-db": cmd_init_db,
        "serve": cmd_serve,
        "approve": cmd_approve,
        "advance": cmd_advance,
        "cancel": cmd_cancel,
        "bundle": cmd_bundle,
        "notifications": cmd_notifications,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
