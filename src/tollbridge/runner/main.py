"""
CLI main entry point.
"""

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path

from ..config import Config, create_default_config, load_valid_config
from ..errors import ImportAbortedError, TollBridgeError
from ..parsers import read_header_row, suggest_mapping
from ..schemas import ColumnMapping
from ..services import ReconcileResult, TollImporter, TollReconciler, match_manual, set_status
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="tollbridge",
        description="Import toll-operator exports and reconcile them onto concept invoices",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # import command
    import_parser = subparsers.add_parser("import", help="Import a toll export (XLSX or CSV)")
    import_parser.add_argument("file", type=Path, help="Toll export file")
    import_parser.add_argument(
        "--mapping",
        type=str,
        required=True,
        help="Column mapping as JSON, or @path to a JSON file",
    )
    import_parser.add_argument(
        "--no-reconcile",
        action="store_true",
        help="Only store the rows; do not run reconciliation afterwards",
    )

    # headers command
    headers_parser = subparsers.add_parser(
        "headers", help="Show the header row of an export and a suggested mapping"
    )
    headers_parser.add_argument("file", type=Path, help="Toll export file")

    # reconcile command
    subparsers.add_parser("reconcile", help="Match new transactions to concept invoices")

    # set-status command
    status_parser = subparsers.add_parser("set-status", help="Change transaction status")
    status_parser.add_argument(
        "--status",
        required=True,
        choices=["new", "matched", "ignored"],
        help="Target status",
    )
    status_parser.add_argument("ids", nargs="+", help="Transaction ids")

    # match command
    match_parser = subparsers.add_parser(
        "match", help="Match transactions of one plate/date onto a concept invoice"
    )
    match_parser.add_argument("--invoice", required=True, help="Concept invoice id")
    match_parser.add_argument(
        "--no-create",
        action="store_true",
        help="Fail instead of appending a toll line when none qualifies",
    )
    match_parser.add_argument("ids", nargs="+", help="Transaction ids")

    # add-toll command
    add_toll_parser = subparsers.add_parser(
        "add-toll", help="Pull all toll of an invoice's plate and week onto it"
    )
    add_toll_parser.add_argument("invoice_id", help="Concept invoice id")

    # status command
    subparsers.add_parser("status", help="Show transaction and invoice statistics")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind the web server (default: 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port for the web server (default: 8080)",
    )

    # create-admin command
    admin_parser = subparsers.add_parser(
        "create-admin", help="Create or reset a staff user for the HTTP API"
    )
    admin_parser.add_argument("username", help="Login name")
    admin_parser.add_argument(
        "--password",
        help="Password (default: TOLLBRIDGE_ADMIN_PASSWORD, or prompt)",
    )

    # init-config command
    init_parser = subparsers.add_parser("init-config", help="Write a default config file")
    init_parser.add_argument("path", type=Path, help="Where to write the config")

    return parser


def _load_mapping(raw: str) -> ColumnMapping:
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text(encoding="utf-8")
    return ColumnMapping.from_json(raw)


def _print_reconcile(result: ReconcileResult) -> None:
    print(f"  Processed transactions: {result.processed_transactions}")
    print(f"  Matched transactions:   {result.matched_transactions}")
    print(f"  Updated invoice lines:  {result.updated_invoice_lines}")
    if result.unmatched_groups:
        print(f"  Unmatched groups:       {len(result.unmatched_groups)}")
        for group in result.unmatched_groups:
            print(f"   - {group.license_plate} {group.transaction_date}: {group.reason}")


def cmd_import(config: Config, file: Path, mapping_arg: str, reconcile: bool = True) -> int:
    """Import a toll export file."""
    try:
        mapping = _load_mapping(mapping_arg)
        payload = file.read_bytes()
    except (OSError, TollBridgeError) as e:
        print(f"❌ {e}")
        return 1

    store = StateStore(config.state_db_path)
    reconciler = TollReconciler(store, config) if reconcile else None
    importer = TollImporter(store, config, reconciler)

    print(f"📥 Importing {file.name}...")
    try:
        result = importer.import_file(payload, mapping)
    except ImportAbortedError as e:
        print(f"❌ {e}")
        print(f"   Inserted before the failure: {e.partial.inserted_rows}")
        return 1
    except TollBridgeError as e:
        print(f"❌ {e}")
        return 1

    print(f"  Parsed rows:        {result.parsed_rows}")
    print(f"  Inserted rows:      {result.inserted_rows}")
    print(f"  Already imported:   {result.skipped_duplicates}")
    print(f"  Dropped rows:       {result.dropped_rows}")
    for warning in result.warnings:
        print(f"  ⚠️  {warning}")

    if result.reconcile_error:
        print(f"  ⚠️  Reconciliation failed, import kept: {result.reconcile_error}")
    elif result.reconcile is not None and reconcile:
        print("\n🔄 Reconciliation")
        _print_reconcile(result.reconcile)

    print("\n✓ Import finished")
    return 0


def cmd_headers(file: Path) -> int:
    """Print the header row and a suggested column mapping."""
    try:
        headers = read_header_row(file.read_bytes())
    except OSError as e:
        print(f"❌ {e}")
        return 1

    if not headers:
        print("⚠️  File has no header row")
        return 1

    print("📋 Columns:")
    for header in headers:
        print(f"  - {header}")
    print("\nSuggested mapping:")
    print(json.dumps(suggest_mapping(headers), indent=2, ensure_ascii=False))
    return 0


def cmd_reconcile(config: Config) -> int:
    """Run the reconciliation matcher once."""
    store = StateStore(config.state_db_path)
    print("🔄 Reconciling new toll transactions...")
    result = TollReconciler(store, config).reconcile_new()
    _print_reconcile(result)
    print("✓ Reconciliation completed")
    return 0


def cmd_set_status(config: Config, ids: list[str], status: str) -> int:
    store = StateStore(config.state_db_path)
    try:
        updated = set_status(store, ids, status)
    except TollBridgeError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ Updated {updated} of {len(ids)} transaction(s) to '{status}'")
    return 0


def cmd_match(config: Config, invoice_id: str, ids: list[str], create: bool = True) -> int:
    store = StateStore(config.state_db_path)
    reconciler = TollReconciler(store, config)
    try:
        result = match_manual(store, reconciler, ids, invoice_id, create_if_missing=create)
    except TollBridgeError as e:
        print(f"❌ {e}")
        return 1

    print(f"✓ Matched {len(ids)} transaction(s) onto line {result.invoice_line_id}")
    print(f"  Total:     {result.total}")
    print(f"  VAT:       {result.vat_rate}%")
    print(f"  Invoice:   {result.invoice_reference or invoice_id}")
    print(f"  Status:    {result.toll_status}")
    return 0


def cmd_add_toll(config: Config, invoice_id: str) -> int:
    store = StateStore(config.state_db_path)
    try:
        result = TollReconciler(store, config).add_toll_to_invoice(invoice_id)
    except TollBridgeError as e:
        print(f"❌ {e}")
        return 1
    print(f"✓ {result['message']}")
    return 0


def cmd_serve(config: Config, config_path: Path, host: str, port: int) -> int:
    """Start the HTTP API."""
    from ..web.app import run_server

    try:
        run_server(
            host=host,
            port=port,
            config_path=str(config_path) if config_path.exists() else None,
            state_db_path=str(config.state_db_path),
        )
    except KeyboardInterrupt:
        print("\n✓ Server stopped")

    return 0


def cmd_create_admin(config: Config, config_path: Path, username: str, password: str | None) -> int:
    """Create a staff user who can sign in to the HTTP API."""
    from ..web.app import create_admin

    password = password or os.environ.get("TOLLBRIDGE_ADMIN_PASSWORD") or getpass.getpass()
    if not password:
        print("❌ A password is required")
        return 1

    created = create_admin(
        username,
        password,
        config_path=str(config_path) if config_path.exists() else None,
        state_db_path=str(config.state_db_path),
    )
    if created:
        print(f"✓ Created admin user {username}")
    else:
        print(f"✓ Updated admin user {username}")
    return 0


def cmd_status(config: Config) -> int:
    """Show engine status."""
    store = StateStore(config.state_db_path)
    stats = store.get_stats()

    print("\n📊 Toll Status")
    print("=" * 40)
    print(f"  Transactions total:     {stats['transactions_total']}")
    print(f"  New:                    {stats['transactions_new']}")
    print(f"  Matched:                {stats['transactions_matched']}")
    print(f"  Ignored:                {stats['transactions_ignored']}")
    print(f"  Concept invoices:       {stats['concept_invoices']}")
    print(f"  Invoices needing toll:  {stats['invoices_needing_toll']}")
    print()

    return 0


def cmd_init_config(path: Path) -> int:
    if path.exists():
        print(f"❌ {path} already exists")
        return 1
    create_default_config(path)
    print(f"✓ Wrote default config to {path}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    if parsed.command == "init-config":
        return cmd_init_config(parsed.path)
    if parsed.command == "headers":
        return cmd_headers(parsed.file)

    # Load config
    try:
        config = load_valid_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    # Route to command
    if parsed.command == "import":
        return cmd_import(config, parsed.file, parsed.mapping, reconcile=not parsed.no_reconcile)
    elif parsed.command == "reconcile":
        return cmd_reconcile(config)
    elif parsed.command == "set-status":
        return cmd_set_status(config, parsed.ids, parsed.status)
    elif parsed.command == "match":
        return cmd_match(config, parsed.invoice, parsed.ids, create=not parsed.no_create)
    elif parsed.command == "add-toll":
        return cmd_add_toll(config, parsed.invoice_id)
    elif parsed.command == "status":
        return cmd_status(config)
    elif parsed.command == "serve":
        return cmd_serve(config, parsed.config, parsed.host, parsed.port)
    elif parsed.command == "create-admin":
        return cmd_create_admin(config, parsed.config, parsed.username, parsed.password)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
