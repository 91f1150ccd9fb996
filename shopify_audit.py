#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
shopify_audit.py

Command-line entry point for the Shopify catalog audit.

Reads one or more supplier feed files, compares them against the store,
writes the two-section audit report and, when asked, pushes fixes and
creates the missing products.

Settings come from the environment (a .env file next to the working
directory is loaded first):

    SHOPIFY_STORE_DOMAIN, SHOPIFY_ADMIN_TOKEN, SHOPIFY_LOCATION_ID
    SHOPIFY_API_VERSION, SHOPIFY_PUBLICATION_IDS (optional)
    AUDIT_CACHE_DIR, AUDIT_LOG_DIR (optional)
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from audit_logging import get_logger, setup_logging
from shopaudit.config import AuditSettings
from shopaudit.errors import AuditError
from shopaudit.exporters.report_csv import DEFAULT_REPORT_NAME, write_audit_report
from shopaudit.feed import is_full_catalog_export, parse_feed_file
from shopaudit.models import BulkItemProgress, CanonicalRecord, ProgressEvent
from shopaudit.processing import AuditSession

logger = get_logger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Audit supplier feed files against a Shopify store.\n\n"
            "A file whose name contains 'shopifyproductimport.csv' triggers a "
            "full-catalog audit; files with 'clearance' in the name are treated "
            "as clearance lists."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("files", nargs="+", type=str, help="Feed files (CSV or tab-delimited)")
    parser.add_argument(
        "--report",
        type=str,
        default=DEFAULT_REPORT_NAME,
        help="Where to write the audit report CSV",
    )
    parser.add_argument(
        "--force-refresh",
        action="store_true",
        help="Ignore the cached catalog and any finished bulk export",
    )
    parser.add_argument(
        "--reuse-cache",
        action="store_true",
        help="Reuse the catalog cached by the previous run instead of starting a fresh audit",
    )
    parser.add_argument(
        "--fix-all",
        action="store_true",
        help="Push every fixable discrepancy to Shopify after the audit",
    )
    parser.add_argument(
        "--create-all",
        action="store_true",
        help="Create every missing product in Shopify after the audit",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for the run log file",
    )
    return parser.parse_args(argv)


FEED_ENCODINGS = ("utf-8-sig", "cp1252")


def read_feed_text(path: Path) -> str:
    """Decode a feed file as UTF-8, falling back to Windows-1252 for older supplier exports."""
    data = path.read_bytes()
    for encoding in FEED_ENCODINGS:
        try:
            text = data.decode(encoding)
        except UnicodeDecodeError:
            continue
        if encoding != FEED_ENCODINGS[0]:
            logger.warning("%s is not UTF-8; read it as %s", path.name, encoding)
        return text
    raise AuditError(f"Could not decode {path.name}; save it as UTF-8 and try again.")


def load_feeds(paths: List[Path]) -> List[CanonicalRecord]:
    records: List[CanonicalRecord] = []
    for path in paths:
        text = read_feed_text(path)
        feed = parse_feed_file(path.name, text)
        for row in feed.warnings:
            logger.warning("%s line %d: %s", path.name, row.line_number, row.warning)
        records.extend(feed.records)
    return records


def _print_fetch_progress(event: ProgressEvent) -> None:
    print(f"[{event.stage}] {event.message}", flush=True)


def _print_bulk_progress(progress: BulkItemProgress) -> None:
    print(f"({progress.current}/{progress.total}) {progress.label}", flush=True)


def main(argv: Optional[List[str]] = None) -> None:
    if argv is None:
        argv = sys.argv[1:]

    load_dotenv()
    args = parse_args(argv)
    setup_logging(level=getattr(logging, args.log_level))

    paths = [Path(f) for f in args.files]
    for path in paths:
        if not path.exists():
            logger.error("Input file does not exist: %s", path)
            sys.exit(1)

    try:
        settings = AuditSettings.from_env()
        session = AuditSession.from_settings(settings)
        if not session.connect():
            logger.error("Could not connect to %s; check the access token.", settings.store_domain)
            sys.exit(1)
        if not args.reuse_cache:
            session.new_audit()

        records = load_feeds(paths)
        if not records:
            logger.error("No valid product rows found in %s", ", ".join(args.files))
            sys.exit(1)

        clearance = {r.identifier for r in records if r.is_on_clearance}
        full_audit = any(is_full_catalog_export(p.name) for p in paths)
        result = session.run_reconciliation(
            records,
            clearance_identifiers=clearance,
            force_refresh=args.force_refresh,
            is_full_catalog_audit=full_audit,
            source_labels=[p.name for p in paths],
            on_progress=_print_fetch_progress,
        )
        write_audit_report(result, args.report)
        print(
            f"Audit complete: {len(result.missing_groups)} missing product(s), "
            f"{len(result.discrepancies)} discrepancy(ies). Report: {args.report}"
        )

        if args.fix_all:
            outcome = session.bulk_fix(on_progress=_print_bulk_progress)
            print(f"Fixed {len(outcome.succeeded)} of {outcome.attempted}; {len(outcome.errors)} failed.")
        if args.create_all:
            outcome = session.bulk_create(on_progress=_print_bulk_progress)
            print(f"Created {len(outcome.succeeded)} of {outcome.attempted}; {len(outcome.errors)} failed.")
    except (AuditError, OSError) as e:
        logger.error("Fatal error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
