from __future__ import annotations

import csv
import logging
import os
from typing import Any, Dict, List, Sequence, TextIO, Union

from shopaudit.exporters.base import ReportExporter
from shopaudit.models import AuditResult, CanonicalRecord, Discrepancy, MissingGroup

logger = logging.getLogger(__name__)

DEFAULT_REPORT_NAME = "shopify_product_audit_report.csv"

MISSING_HEADER = "MISSING PRODUCTS"
ISSUES_HEADER = "PRODUCTS WITH ISSUES"
NO_MISSING = "No missing products found."
NO_ISSUES = "No discrepancies found."

MISSING_FIELDS = [
    "Handle",
    "SKU",
    "ProductName",
    "Price",
    "StockQuantity",
    "ImageUrl",
    "IsClearance",
    "Vendor",
    "CompareAtPrice",
    "CostPerItem",
    "Barcode",
    "ProductType",
    "ProductCategory",
    "Tags",
    "Option1Name",
    "Option1Value",
    "Option2Name",
    "Option2Value",
    "Option3Name",
    "Option3Value",
]
ISSUE_FIELDS = ["SKU", "ProductName", "FieldWithIssue", "FTP_Value", "Shopify_Value"]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def _missing_row(record: CanonicalRecord) -> Dict[str, str]:
    # Description markup is left out of the report.
    values = {
        "Handle": record.group_key,
        "SKU": record.identifier,
        "ProductName": record.display_name,
        "Price": record.price,
        "StockQuantity": record.stock_quantity,
        "ImageUrl": record.image_url,
        "IsClearance": record.is_on_clearance,
        "Vendor": record.vendor,
        "CompareAtPrice": record.compare_at_price,
        "CostPerItem": record.cost_per_item,
        "Barcode": record.barcode,
        "ProductType": record.product_type,
        "ProductCategory": record.product_category,
        "Tags": record.tags,
        "Option1Name": record.option1_name,
        "Option1Value": record.option1_value,
        "Option2Name": record.option2_name,
        "Option2Value": record.option2_value,
        "Option3Name": record.option3_name,
        "Option3Value": record.option3_value,
    }
    return {k: _cell(v) for k, v in values.items()}


def _issue_row(discrepancy: Discrepancy) -> Dict[str, str]:
    return {
        "SKU": _cell(discrepancy.identifier),
        "ProductName": _cell(discrepancy.display_name),
        "FieldWithIssue": discrepancy.kind.value,
        "FTP_Value": _cell(discrepancy.local_value),
        "Shopify_Value": _cell(discrepancy.remote_value),
    }


class CsvReportExporter:
    """
    Two-section audit report: missing products first, then discrepancies.

    Every value is quoted, with embedded quotes doubled.
    """

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream
        self.rows_written = 0

    def _section(self, title: str, fieldnames: List[str], rows: List[Dict[str, str]], empty: str) -> None:
        self.stream.write(f"{title}\n")
        if not rows:
            self.stream.write(f"{empty}\n")
            return
        writer = csv.DictWriter(
            self.stream,
            fieldnames=fieldnames,
            quoting=csv.QUOTE_ALL,
            lineterminator="\n",
        )
        writer.writeheader()
        writer.writerows(rows)
        self.rows_written += len(rows)

    def write_missing(self, groups: Sequence[MissingGroup]) -> None:
        rows = [_missing_row(r) for g in groups for r in g.member_records]
        self._section(MISSING_HEADER, MISSING_FIELDS, rows, NO_MISSING)
        self.stream.write("\n")

    def write_discrepancies(self, discrepancies: Sequence[Discrepancy]) -> None:
        rows = [_issue_row(d) for d in discrepancies]
        self._section(ISSUES_HEADER, ISSUE_FIELDS, rows, NO_ISSUES)

    def finalize(self) -> None:
        self.stream.flush()


def export_result(result: AuditResult, exporter: ReportExporter) -> None:
    exporter.write_missing(result.missing_groups)
    exporter.write_discrepancies(result.discrepancies)
    exporter.finalize()


def write_audit_report(result: AuditResult, target: Union[str, os.PathLike, TextIO]) -> None:
    """Write the report to a path or an open text stream."""
    if hasattr(target, "write"):
        export_result(result, CsvReportExporter(target))
        return
    with open(target, "w", newline="", encoding="utf-8") as fh:
        exporter = CsvReportExporter(fh)
        export_result(result, exporter)
    logger.info("Wrote audit report (%d rows) to %s", exporter.rows_written, target)
