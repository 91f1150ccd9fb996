from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from shopaudit.config import TargetLocation
from shopaudit.feed import placeholder_image_url
from shopaudit.models import CanonicalRecord, RemoteVariant

logger = logging.getLogger(__name__)


def _edges(connection: Optional[dict]) -> List[dict]:
    if not connection:
        return []
    return [edge.get("node") or {} for edge in connection.get("edges") or [] if edge]


def stock_at_location(variant: RemoteVariant, location: TargetLocation) -> int:
    """Available quantity at the target location; 0 when the variant is not stocked there."""
    levels = _edges((variant.get("inventoryItem") or {}).get("inventoryLevels"))
    for level in levels:
        if not location.matches(level.get("location") or {}):
            continue
        for quantity in level.get("quantities") or []:
            if quantity.get("name") == "available":
                return int(quantity.get("quantity") or 0)
        return 0
    return 0


def _parse_price(value) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_variants(
    raw_variants: Iterable[RemoteVariant],
    location: TargetLocation,
) -> Tuple[List[CanonicalRecord], Dict[str, RemoteVariant]]:
    """
    Map store variant nodes onto CanonicalRecord and index the raw nodes by SKU.

    Variants without a parent product or a SKU are dropped from both outputs.
    When the store holds duplicate SKUs the index keeps the last node seen.
    """
    records: List[CanonicalRecord] = []
    raw_by_identifier: Dict[str, RemoteVariant] = {}
    dropped = 0

    for item in raw_variants:
        if not item or not item.get("product") or not item.get("sku"):
            dropped += 1
            continue
        sku = item["sku"]
        product = item["product"]
        raw_by_identifier[sku] = item

        image = item.get("image") or {}
        records.append(
            CanonicalRecord(
                group_key=product.get("handle") or "",
                identifier=sku,
                display_name=product.get("title") or "",
                price=_parse_price(item.get("price")) or 0.0,
                stock_quantity=stock_at_location(item, location),
                image_url=image.get("url") or placeholder_image_url(sku),
                compare_at_price=_parse_price(item.get("compareAtPrice")),
                tags=list(product.get("tags") or []),
                group_ref=product.get("id"),
                variant_ref=item.get("id"),
                inventory_item_ref=(item.get("inventoryItem") or {}).get("id"),
                location_ref=location.gid,
            )
        )

    if dropped:
        logger.debug("Skipped %d store variants without product or SKU", dropped)
    logger.info("Normalized %d store variants", len(records))
    return records, raw_by_identifier
