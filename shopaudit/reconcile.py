from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Optional, Set, Tuple

from shopaudit.models import (
    AuditResult,
    CanonicalRecord,
    CompareAtPriceIssue,
    Discrepancy,
    DuplicateIdentifier,
    ForbiddenMarkupInDescription,
    GroupImage,
    MissingGroup,
    MissingRequiredTag,
    PriceDiscrepancy,
    RemoteVariant,
    UnexpectedTag,
)

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = 0.001
H1_PATTERN = re.compile(r"<h1\b", re.IGNORECASE)


def has_clearance_tag(tags: Optional[Iterable]) -> bool:
    return any(isinstance(t, str) and t.strip().lower() == "clearance" for t in tags or [])


def _tags_display(tags) -> str:
    if isinstance(tags, list):
        return ", ".join(str(t) for t in tags)
    return str(tags) if tags else ""


def _normalized_compare_at(value: Optional[float]) -> Optional[float]:
    """0 and absent both mean 'no compare-at price'."""
    if value is None or value == 0:
        return None
    return value


def compare_at_differs(local: Optional[float], remote: Optional[float]) -> bool:
    local, remote = _normalized_compare_at(local), _normalized_compare_at(remote)
    if local is None and remote is None:
        return False
    if local is None or remote is None:
        return True
    return abs(local - remote) >= PRICE_TOLERANCE


def _image_url(variant: RemoteVariant) -> Optional[str]:
    return (variant.get("image") or {}).get("url")


def _compare_fields(
    local_records: Iterable[CanonicalRecord],
    remote_by_identifier: Dict[str, CanonicalRecord],
) -> Tuple[List[CanonicalRecord], List[Discrepancy]]:
    missing: List[CanonicalRecord] = []
    discrepancies: List[Discrepancy] = []

    for local in local_records:
        if not local.identifier:
            continue
        remote = remote_by_identifier.get(local.identifier)
        if remote is None:
            missing.append(local)
            continue
        if not remote.variant_ref:
            continue
        image_url = remote.image_url or local.image_url

        if abs(local.price - remote.price) > PRICE_TOLERANCE:
            discrepancies.append(
                PriceDiscrepancy(
                    identifier=local.identifier,
                    display_name=remote.display_name,
                    local_value=local.price,
                    remote_value=remote.price,
                    variant_ref=remote.variant_ref,
                    image_url=image_url,
                    group_ref=remote.group_ref or "",
                )
            )

        if local.is_on_clearance and compare_at_differs(local.compare_at_price, remote.compare_at_price):
            discrepancies.append(
                CompareAtPriceIssue(
                    identifier=local.identifier,
                    display_name=remote.display_name,
                    local_value=local.compare_at_price if local.compare_at_price is not None else "Not Provided",
                    remote_value=remote.compare_at_price if remote.compare_at_price is not None else "Not Set",
                    variant_ref=remote.variant_ref,
                    image_url=image_url,
                    group_ref=remote.group_ref or "",
                )
            )
    return missing, discrepancies


def find_duplicate_identifiers(
    raw_variants: Iterable[RemoteVariant],
    local_identifiers: Set[str],
) -> List[Discrepancy]:
    """SKUs the store holds more than once. Only SKUs present in the feed are reported."""
    by_sku: Dict[str, List[RemoteVariant]] = {}
    for variant in raw_variants:
        if variant and variant.get("sku"):
            by_sku.setdefault(variant["sku"], []).append(variant)

    found: List[Discrepancy] = []
    for sku, variants in by_sku.items():
        if len(variants) < 2 or sku not in local_identifiers:
            continue
        primary = next((v for v in variants if v.get("product")), variants[0])
        titles = [(v.get("product") or {}).get("title") for v in variants]
        found.append(
            DuplicateIdentifier(
                identifier=sku,
                display_name=" & ".join(t for t in titles if t) or "Orphaned or Missing Product Info",
                local_value="Expected 1",
                remote_value=f"Found {len(variants)} times",
                variant_ref=primary.get("id") or "",
                image_url=_image_url(primary),
                group_ref=(primary.get("product") or {}).get("id") or "",
            )
        )
    return found


def _products_in_order(raw_variants: Iterable[RemoteVariant]) -> Dict[str, List[RemoteVariant]]:
    """Variants with a product and SKU, grouped by product handle in first-seen order."""
    grouped: Dict[str, List[RemoteVariant]] = {}
    for variant in raw_variants:
        product = (variant or {}).get("product") or {}
        if not product.get("id") or not variant.get("sku"):
            continue
        grouped.setdefault(product.get("handle") or product["id"], []).append(variant)
    return grouped


def find_forbidden_markup(
    products: Dict[str, List[RemoteVariant]],
    local_identifiers: Set[str],
) -> List[Discrepancy]:
    found: List[Discrepancy] = []
    for variants in products.values():
        matched = [v for v in variants if v["sku"] in local_identifiers]
        if not matched:
            continue
        product = variants[0]["product"]
        if not H1_PATTERN.search(product.get("descriptionHtml") or ""):
            continue
        first = matched[0]
        found.append(
            ForbiddenMarkupInDescription(
                identifier=first["sku"],
                display_name=product.get("title") or "",
                local_value="Not allowed",
                remote_value="Contains <h1> tag",
                variant_ref=first.get("id") or "",
                image_url=_image_url(first),
                group_ref=product["id"],
            )
        )
    return found


def find_missing_clearance_tags(
    products: Dict[str, List[RemoteVariant]],
    clearance_identifiers: Set[str],
) -> List[Discrepancy]:
    found: List[Discrepancy] = []
    for variants in products.values():
        flagged = [v for v in variants if v["sku"] in clearance_identifiers]
        if not flagged:
            continue
        product = variants[0]["product"]
        tags = product.get("tags")
        if has_clearance_tag(tags):
            continue
        first = flagged[0]
        found.append(
            MissingRequiredTag(
                identifier=first["sku"],
                display_name=product.get("title") or "",
                local_value="Required",
                remote_value=_tags_display(tags) or "None",
                variant_ref=first.get("id") or "",
                image_url=_image_url(first),
                group_ref=product["id"],
            )
        )
    return found


def find_unexpected_clearance_tags(
    products: Dict[str, List[RemoteVariant]],
    local_identifiers: Set[str],
    clearance_identifiers: Set[str],
) -> List[Discrepancy]:
    """Tagged products none of whose feed variants came from a clearance list."""
    found: List[Discrepancy] = []
    for variants in products.values():
        matched = [v for v in variants if v["sku"] in local_identifiers]
        if not matched:
            continue
        product = variants[0]["product"]
        tags = product.get("tags")
        if not has_clearance_tag(tags):
            continue
        if any(v["sku"] in clearance_identifiers for v in matched):
            continue
        first = matched[0]
        found.append(
            UnexpectedTag(
                identifier=first["sku"],
                display_name=product.get("title") or "",
                local_value="Not in clearance file",
                remote_value=_tags_display(tags),
                variant_ref=first.get("id") or "",
                image_url=_image_url(first),
                group_ref=product["id"],
            )
        )
    return found


def merge_duplicate_records(local_records: Iterable[CanonicalRecord]) -> List[CanonicalRecord]:
    """
    Collapse records sharing an identifier into one, in first-seen order.

    The same SKU can arrive from the main feed and from a clearance list. The
    clearance copy supplies the values when there is one; otherwise the first
    copy wins.
    """
    merged: Dict[str, CanonicalRecord] = {}
    repeats = 0
    for record in local_records:
        kept = merged.get(record.identifier)
        if kept is None:
            merged[record.identifier] = record
            continue
        repeats += 1
        if record.is_on_clearance and not kept.is_on_clearance:
            merged[record.identifier] = record
    if repeats:
        logger.info("Merged %d feed records that repeat an identifier", repeats)
    return list(merged.values())


def group_missing_records(
    missing: Iterable[CanonicalRecord],
    remote_group_keys: Set[str],
) -> List[MissingGroup]:
    by_group: Dict[str, List[CanonicalRecord]] = {}
    for record in missing:
        by_group.setdefault(record.group_key, []).append(record)

    groups: List[MissingGroup] = []
    for group_key, members in by_group.items():
        first = members[0]
        image_urls = list(dict.fromkeys(m.image_url for m in members if m.image_url))
        groups.append(
            MissingGroup(
                group_key=group_key,
                display_name=first.display_name,
                member_records=members,
                is_new_entity=group_key not in remote_group_keys,
                is_clearance_group=any(m.is_on_clearance for m in members),
                vendor=first.vendor,
                product_type=first.product_type,
                product_category=first.product_category,
                description=first.description,
                seo_title=first.seo_title,
                seo_description=first.seo_description,
                tags=first.tags,
                option1_name=first.option1_name,
                option2_name=first.option2_name,
                option3_name=first.option3_name,
                images=[
                    GroupImage(source_url=url, alt_text=first.display_name, group_id=str(index))
                    for index, url in enumerate(image_urls)
                ],
            )
        )
    return groups


def reconcile(
    local_records: List[CanonicalRecord],
    remote_records: List[CanonicalRecord],
    raw_remote: Iterable[RemoteVariant],
    raw_remote_by_identifier: Dict[str, RemoteVariant],
    clearance_identifiers: Set[str],
    is_full_catalog_audit: bool,
) -> AuditResult:
    """
    Compare feed records against store records.

    `raw_remote` is every fetched variant node, duplicates included; the
    duplicate and product-level checks run over it.
    """
    local_records = merge_duplicate_records(local_records)
    raw_remote = list(raw_remote)
    remote_by_identifier = {r.identifier: r for r in remote_records}
    remote_group_keys = {r.group_key for r in remote_records}
    local_identifiers = {r.identifier for r in local_records if r.identifier}

    missing, discrepancies = _compare_fields(local_records, remote_by_identifier)

    products = _products_in_order(raw_remote)
    discrepancies.extend(find_duplicate_identifiers(raw_remote, local_identifiers))
    discrepancies.extend(find_forbidden_markup(products, local_identifiers))
    discrepancies.extend(find_missing_clearance_tags(products, clearance_identifiers))
    if is_full_catalog_audit:
        discrepancies.extend(
            find_unexpected_clearance_tags(products, local_identifiers, clearance_identifiers)
        )

    missing_groups = group_missing_records(missing, remote_group_keys)
    logger.info(
        "Reconciled %d feed records: missing=%d (in %d products) discrepancies=%d",
        len(local_records),
        len(missing),
        len(missing_groups),
        len(discrepancies),
    )
    return AuditResult(
        missing_groups=missing_groups,
        discrepancies=discrepancies,
        raw_remote_by_identifier=dict(raw_remote_by_identifier),
    )
