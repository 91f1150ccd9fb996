from __future__ import annotations

import io
import logging
import math
from typing import Dict, List, Optional
from urllib.parse import quote

import pandas as pd

from shopaudit.config import CLEARANCE_MARKER, FULL_EXPORT_MARKER
from shopaudit.errors import SchemaError
from shopaudit.models import CanonicalRecord, ParsedFeed, ParsedRow

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE_HOST = "via.placeholder.com"

# Lower-cased header names accepted for each logical field, in priority order.
HEADER_ALIASES: Dict[str, List[str]] = {
    "group_key": ["handle"],
    "identifier": ["sku"],
    "display_name": ["productname", "title"],
    "price": ["price"],
    "stock_quantity": ["stockquantity", "variant inventory qty", "inventory quantity", "total inventory"],
    "image_url": ["imageurl", "variant image"],
    "description": ["description", "body (html)"],
    "vendor": ["vendor"],
    "cost_per_item": ["cost per item", "cost"],
    "compare_at_price": ["compare at price"],
    "weight": ["variant grams", "weight"],
    "weight_unit": ["variant weight unit", "weight unit"],
    "barcode": ["variant barcode", "barcode"],
    "product_type": ["type"],
    "product_category": ["category", "product category"],
    "seo_title": ["seo title"],
    "seo_description": ["seo description"],
    "tags": ["tags"],
    "option1_name": ["option1 name"],
    "option1_value": ["option1 value"],
    "option2_name": ["option2 name"],
    "option2_value": ["option2 value"],
    "option3_name": ["option3 name"],
    "option3_value": ["option3 value"],
}

REQUIRED_FIELDS = ("group_key", "identifier", "display_name", "price", "stock_quantity")

_OPTIONAL_TEXT_FIELDS = (
    "description",
    "vendor",
    "weight_unit",
    "barcode",
    "product_type",
    "product_category",
    "seo_title",
    "seo_description",
    "option1_name",
    "option1_value",
    "option2_name",
    "option2_value",
    "option3_name",
    "option3_value",
)
_OPTIONAL_NUMBER_FIELDS = ("cost_per_item", "compare_at_price", "weight")


def is_clearance_source(filename: str) -> bool:
    return CLEARANCE_MARKER in (filename or "").lower()


def is_full_catalog_export(filename: str) -> bool:
    return FULL_EXPORT_MARKER in (filename or "").lower()


def placeholder_image_url(identifier: str) -> str:
    """Stand-in image that embeds the SKU so two imageless rows never collide."""
    return f"https://{PLACEHOLDER_IMAGE_HOST}/150/F3F4F6/9CA3AF?text={quote(identifier, safe='')}"


def is_placeholder_image(url: Optional[str]) -> bool:
    return bool(url) and PLACEHOLDER_IMAGE_HOST in url


def detect_delimiter(header_line: str) -> str:
    """Tab wins only when the header has strictly more tabs than commas."""
    if header_line.count("\t") > header_line.count(","):
        return "\t"
    return ","


def find_column(headers: List[str], field_name: str) -> Optional[str]:
    normalized = {}
    for header in headers:
        normalized.setdefault(header.strip().lower(), header)
    for alias in HEADER_ALIASES[field_name]:
        if alias in normalized:
            return normalized[alias]
    return None


def _to_float(text: str) -> Optional[float]:
    try:
        value = float(text.strip())
    except (AttributeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _to_int(text: str) -> Optional[int]:
    value = _to_float(text)
    return int(value) if value is not None else None


def _tokenize(text: str, delimiter: str) -> pd.DataFrame:
    header_frame = pd.read_csv(
        io.StringIO(text), sep=delimiter, nrows=0, dtype=str, engine="python", index_col=False
    )
    header_count = len(header_frame.columns)
    frame = pd.read_csv(
        io.StringIO(text),
        sep=delimiter,
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        index_col=False,
        engine="python",
        quotechar='"',
        doublequote=True,
        # Overlong lines keep their leading cells instead of failing the file.
        on_bad_lines=lambda bad_line: bad_line[:header_count],
    )
    return frame.fillna("")


def _read_frame(text: str, delimiter: str) -> pd.DataFrame:
    try:
        return _tokenize(text, delimiter)
    except pd.errors.ParserError as exc:
        logger.warning("Unterminated quoted field, reading it to the end of the file: %s", exc)
    # An open quote swallows the rest of the input into one cell.
    try:
        return _tokenize(text + '"', delimiter)
    except pd.errors.ParserError as exc:
        raise SchemaError(f"The file could not be read as delimited text: {exc}") from exc


def parse_feed(raw_text: str, is_clearance: bool = False) -> ParsedFeed:
    """
    Parse delimited feed text into canonical records plus one ParsedRow per data line.

    Bad rows become warnings; only an unresolvable required column raises SchemaError.
    """
    text = (raw_text or "").lstrip("\ufeff").strip("\r\n")
    if not text.strip():
        return ParsedFeed(records=[], rows=[], headers=[])

    delimiter = detect_delimiter(text.split("\n", 1)[0])
    frame = _read_frame(text, delimiter)
    headers = [str(c).strip() for c in frame.columns]
    frame.columns = headers
    if frame.empty:
        return ParsedFeed(records=[], rows=[], headers=headers)

    columns: Dict[str, Optional[str]] = {}
    for field_name in REQUIRED_FIELDS:
        column = find_column(headers, field_name)
        if column is None:
            aliases = '", "'.join(HEADER_ALIASES[field_name])
            raise SchemaError(
                f"CSV is missing a required column for '{field_name}'. "
                f'Looked for header(s): "{aliases}".'
            )
        columns[field_name] = column
    for field_name in HEADER_ALIASES:
        if field_name not in columns:
            columns[field_name] = find_column(headers, field_name)

    records: List[CanonicalRecord] = []
    rows: List[ParsedRow] = []

    for line_number, values in enumerate(frame.to_dict(orient="records"), start=1):
        raw_fields = {h: str(values.get(h, "")) for h in headers}
        if all(not v.strip() for v in raw_fields.values()):
            continue

        def cell(field_name: str) -> str:
            column = columns.get(field_name)
            return raw_fields.get(column, "") if column else ""

        group_key = cell("group_key").strip()
        identifier = cell("identifier").strip()
        if not group_key or not identifier:
            rows.append(ParsedRow(line_number, raw_fields, warning="Missing or empty Handle or SKU."))
            continue

        price_text = cell("price")
        stock_text = cell("stock_quantity")
        price = _to_float(price_text)
        stock = _to_int(stock_text)
        if price is None or stock is None:
            rows.append(
                ParsedRow(
                    line_number,
                    raw_fields,
                    warning=(
                        "Could not parse Price or StockQuantity. "
                        f"Found Price: '{price_text}', StockQuantity: '{stock_text}'."
                    ),
                )
            )
            continue
        if price < 0:
            rows.append(
                ParsedRow(
                    line_number,
                    raw_fields,
                    warning=f"Price must not be negative. Found Price: '{price_text}'.",
                )
            )
            continue

        optional = {}
        for field_name in _OPTIONAL_TEXT_FIELDS:
            optional[field_name] = cell(field_name).strip() or None
        for field_name in _OPTIONAL_NUMBER_FIELDS:
            optional[field_name] = _to_float(cell(field_name)) if cell(field_name).strip() else None
        tags_text = cell("tags")
        tags = [t.strip() for t in tags_text.split(",") if t.strip()] if tags_text.strip() else None

        record = CanonicalRecord(
            group_key=group_key,
            identifier=identifier,
            display_name=cell("display_name").strip() or "N/A",
            price=price,
            stock_quantity=stock,
            image_url=cell("image_url").strip() or placeholder_image_url(identifier),
            is_on_clearance=is_clearance,
            tags=tags,
            **optional,
        )
        records.append(record)
        rows.append(ParsedRow(line_number, raw_fields, record=record))

    warned = sum(1 for r in rows if r.warning)
    logger.info(
        "Parsed feed: delimiter=%r rows=%d records=%d warnings=%d",
        delimiter,
        len(rows),
        len(records),
        warned,
    )
    return ParsedFeed(records=records, rows=rows, headers=headers)


def parse_feed_file(filename: str, raw_text: str) -> ParsedFeed:
    """Parse a feed file; files named like a clearance list mark every record as clearance."""
    clearance = is_clearance_source(filename)
    logger.info("Parsing %s (clearance=%s)", filename, clearance)
    return parse_feed(raw_text, is_clearance=clearance)
