#!/usr/bin/env python3
"""
Fiscal inbox command line: create tables, collect, import, process and
inspect mappings for one tenant.

Uses the active configuration (fiscal_config.get_active_config).  The
distribution API client secret is read from the environment variable
named by ``distribution_api.client_secret_env``.

Usage:
    python3 scripts/inbox_cli.py [--config PATH] [--db-url URL] <command> [options]

Examples:
    # Create tables
    python3 scripts/inbox_cli.py init-db

    # Capture documents received by a CNPJ
    python3 scripts/inbox_cli.py collect --tenant <uuid> --tax-id 12345678000195

    # Import an XML by hand, then run the pipeline on 4 workers
    python3 scripts/inbox_cli.py import-xml --tenant <uuid> --file nota.xml
    python3 scripts/inbox_cli.py process --tenant <uuid> --workers 4

    # Counts by status
    python3 scripts/inbox_cli.py summary --tenant <uuid>

    # Documents stuck in error
    python3 scripts/inbox_cli.py list --tenant <uuid> --status error

    # List supplier mappings
    python3 scripts/inbox_cli.py mappings --tenant <uuid> --supplier 12345678000195
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from uuid import UUID

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fiscal inbox: capture, import and process received NF-e documents.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Configuration file (default: fiscal_config/sets/default.yaml).",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help="Database URL (default: database.url from the configuration).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all tables.")

    collect = sub.add_parser("collect", help="Pull new documents from the distribution API.")
    collect.add_argument("--tenant", required=True, type=UUID)
    collect.add_argument("--tax-id", required=True, help="CNPJ/CPF of the recipient.")

    importer = sub.add_parser("import-xml", help="Import an NF-e XML file.")
    importer.add_argument("--tenant", required=True, type=UUID)
    importer.add_argument("--file", required=True, type=Path)
    importer.add_argument("--actor-id", type=UUID, default=None)

    process = sub.add_parser("process", help="Run eligible pipeline units once.")
    process.add_argument("--tenant", type=UUID, default=None, help="Default: all tenants.")
    process.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Worker threads; 0 processes sequentially on one session.",
    )

    summary = sub.add_parser("summary", help="Document and queue counts by status.")
    summary.add_argument("--tenant", required=True, type=UUID)

    documents = sub.add_parser("list", help="List documents, newest issue date first.")
    documents.add_argument("--tenant", required=True, type=UUID)
    documents.add_argument("--status", default=None)
    documents.add_argument("--kind", default=None)
    documents.add_argument("--issuer", default=None, help="Part of the issuer name.")
    documents.add_argument("--limit", type=int, default=20)
    documents.add_argument("--page", type=int, default=1)

    mappings = sub.add_parser("mappings", help="List supplier product mappings.")
    mappings.add_argument("--tenant", required=True, type=UUID)
    mappings.add_argument("--supplier", default=None, help="Supplier CNPJ/CPF filter.")
    mappings.add_argument("--all", action="store_true", help="Include disabled mappings.")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    # Lazy imports so we fail fast on args first
    from fiscal_config import get_active_config
    from fiscal_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
        session_scope,
    )
    from fiscal_kernel.exceptions import FiscalInboxError
    from fiscal_kernel.logging_config import configure_logging
    from fiscal_services import FiscalInboxService

    try:
        config = get_active_config(args.config)
    except FiscalInboxError as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1

    configure_logging(level=config.logging.level)
    init_engine_from_url(
        args.db_url or config.database.url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
    )

    if args.command == "init-db":
        create_tables()
        print("Tables created.")
        return 0

    if args.command == "import-xml" and not args.file.is_file():
        print(f"ERROR: File not found: {args.file}", file=sys.stderr)
        return 1

    try:
        with session_scope() as session:
            inbox = FiscalInboxService.from_session(session, config)
            try:
                return _dispatch(args, inbox, get_session_factory())
            finally:
                inbox.close()
    except (FiscalInboxError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


def _dispatch(args: argparse.Namespace, inbox, session_factory) -> int:
    if args.command == "collect":
        result = inbox.collect(args.tenant, args.tax_id)
        print(f"New documents: {result.new_documents}")
        print(f"Already known: {result.skipped_documents}")
        print(f"Acknowledged:  {result.acknowledged_documents}")
        for error in result.errors:
            print(f"  ERROR {error}")
        return 0 if result.success else 2

    if args.command == "import-xml":
        payload = args.file.read_text(encoding="utf-8")
        info = inbox.manual_import(args.tenant, payload, actor_id=args.actor_id)
        print(f"Imported {info.access_key} as {info.document_id}")
        return 0

    if args.command == "process":
        if args.workers > 0:
            result = inbox.process_queue_concurrently(
                args.tenant, session_factory, max_workers=args.workers,
            )
        else:
            result = inbox.process_queue(args.tenant)
        print(
            f"Selected {result.selected}, processed {result.processed}, "
            f"errors {result.errors} ({result.terminal_errors} terminal), "
            f"skipped {result.skipped}"
        )
        for unit in result.results:
            if unit.error_message:
                print(f"  {unit.stage.value} {unit.document_id}: {unit.error_message}")
        return 0

    if args.command == "summary":
        summary = inbox.inbox_summary(args.tenant)
        print(f"Documents ({summary.total_documents}):")
        for status, count in summary.documents.items():
            print(f"  {status:<16} {count}")
        print("Queue units:")
        for status, count in summary.queue.items():
            print(f"  {status:<16} {count}")
        return 0

    if args.command == "list":
        page = inbox.list_documents(
            args.tenant,
            status=args.status,
            kind=args.kind,
            issuer_name=args.issuer,
            limit=args.limit,
            offset=(args.page - 1) * args.limit,
        )
        for doc in page.documents:
            issued = doc.issue_date.date().isoformat() if doc.issue_date else "-"
            print(
                f"{issued} {doc.access_key} {doc.status.value:<16} "
                f"{doc.issuer_name or ''}"
            )
            if doc.pipeline_error:
                print(f"  {doc.pipeline_error}")
        print(f"Page {args.page} of {page.total_pages} ({page.total} documents)")
        return 0

    if args.command == "mappings":
        rows = inbox.list_supplier_mappings(
            args.tenant, args.supplier, include_inactive=args.all,
        )
        if not rows:
            print("No mappings.")
        for m in rows:
            flag = "" if m.is_active else " (disabled)"
            print(
                f"{m.supplier_tax_id} {m.supplier_code:<20} -> {m.product_id} "
                f"[{m.origin.value}, used {m.times_used}x]{flag}"
            )
        return 0

    raise ValueError(f"unknown command {args.command!r}")


if __name__ == "__main__":
    sys.exit(main())
