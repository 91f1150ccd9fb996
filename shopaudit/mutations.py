from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from shopaudit.clients.shopify import ShopifyClient, raise_for_user_errors
from shopaudit.config import CLEARANCE_TAG, TargetLocation
from shopaudit.errors import (
    AuditError,
    DuplicateCreateError,
    MediaReferenceError,
    UnsupportedFixError,
)
from shopaudit.feed import is_placeholder_image
from shopaudit.fetching import build_sku_query
from shopaudit.models import (
    BulkItemProgress,
    BulkOutcome,
    CanonicalRecord,
    CompareAtPriceIssue,
    Discrepancy,
    EntityDiscrepancy,
    ForbiddenMarkupInDescription,
    MissingGroup,
    MissingRequiredTag,
    PriceDiscrepancy,
    UnexpectedTag,
)

logger = logging.getLogger(__name__)

PRODUCT_GID_PREFIX = "gid://shopify/Product/"
MEDIA_IMAGE_GID_PREFIX = "gid://shopify/MediaImage/"

EXISTING_VARIANTS_QUERY = """
query getVariantsBySkus($query: String!) {
  productVariants(first: 250, query: $query) {
    edges {
      node {
        sku
      }
    }
  }
}
"""

PRODUCT_SET_MUTATION = """
mutation createProduct($input: ProductSetInput!) {
  productSet(input: $input, synchronous: true) {
    product {
      id
    }
    userErrors {
      field
      message
    }
  }
}
"""

PUBLISH_MUTATION = """
mutation publishablePublish($id: ID!, $input: [PublicationInput!]!) {
  publishablePublish(id: $id, input: $input) {
    userErrors {
      field
      message
    }
  }
}
"""

COLLECTION_BY_TITLE_QUERY = """
query getCollectionByTitle($query: String!) {
  collections(first: 1, query: $query) {
    edges {
      node {
        id
        title
      }
    }
  }
}
"""

COLLECTION_ADD_PRODUCTS_MUTATION = """
mutation collectionAddProducts($id: ID!, $productIds: [ID!]!) {
  collectionAddProducts(id: $id, productIds: $productIds) {
    collection {
      id
    }
    userErrors {
      field
      message
    }
  }
}
"""

PRODUCT_FOR_FIX_QUERY = """
query getProductForFix($id: ID!) {
  product(id: $id) {
    id
    descriptionHtml
    tags
  }
}
"""

PRODUCT_UPDATE_MUTATION = """
mutation productUpdate($product: ProductUpdateInput!) {
  productUpdate(product: $product) {
    product {
      id
    }
    userErrors {
      field
      message
    }
  }
}
"""

VARIANTS_BULK_UPDATE_MUTATION = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants {
      id
    }
    userErrors {
      field
      message
    }
  }
}
"""

DELETE_MEDIA_MUTATION = """
mutation productDeleteMedia($productId: ID!, $mediaIds: [ID!]!) {
  productDeleteMedia(productId: $productId, mediaIds: $mediaIds) {
    deletedMediaIds
    userErrors {
      field
      message
    }
  }
}
"""

FILE_UPDATE_MUTATION = """
mutation fileUpdate($files: [FileUpdateInput!]!) {
  fileUpdate(files: $files) {
    files {
      id
      alt
    }
    userErrors {
      field
      message
    }
  }
}
"""

_H1_OPEN = re.compile(r"<h1\b", re.IGNORECASE)
_H1_CLOSE = re.compile(r"</h1\s*>", re.IGNORECASE)

WEIGHT_UNITS = (
    ("g", "GRAMS"),
    ("k", "KILOGRAMS"),
    ("o", "OUNCES"),
    ("lb", "POUNDS"),
    ("p", "POUNDS"),
)


def demote_h1(html: Optional[str]) -> Optional[str]:
    """Turn every level-1 heading into a level-2 heading by tag substitution."""
    if html is None:
        return None
    return _H1_CLOSE.sub("</h2>", _H1_OPEN.sub("<h2", html))


def weight_unit_enum(unit: Optional[str]) -> Optional[str]:
    if not unit:
        return None
    lowered = unit.strip().lower()
    for prefix, enum in WEIGHT_UNITS:
        if lowered.startswith(prefix):
            return enum
    return None


def add_clearance_tag(tags: Iterable[str]) -> List[str]:
    tags = list(tags or [])
    if not any(t.lower() == CLEARANCE_TAG.lower() for t in tags):
        tags.append(CLEARANCE_TAG)
    return tags


def remove_clearance_tag(tags: Iterable[str]) -> List[str]:
    return [t for t in tags or [] if t.lower() != CLEARANCE_TAG.lower()]


def _format_money(value: float) -> str:
    return f"{value:.2f}"


class MutationOrchestrator:
    """
    Writes audit outcomes back to the store: product creation, discrepancy
    fixes and media maintenance.

    Every single-item call either completes or raises; remote userErrors come
    back as RemoteUserError naming the operation.
    """

    def __init__(
        self,
        client: ShopifyClient,
        location: TargetLocation,
        publication_ids: Sequence[str] = (),
        post_create_workers: int = 2,
    ) -> None:
        self.client = client
        self.location = location
        self.publication_ids = list(publication_ids)
        self.post_create_workers = post_create_workers

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def find_existing_identifiers(self, identifiers: Iterable[str]) -> List[str]:
        identifiers = [i for i in identifiers if i]
        if not identifiers:
            return []
        data = self.client.query(EXISTING_VARIANTS_QUERY, {"query": build_sku_query(identifiers)})
        edges = (data.get("productVariants") or {}).get("edges") or []
        wanted = set(identifiers)
        # The search is fuzzy; only exact SKU hits count as conflicts.
        found = [(e.get("node") or {}).get("sku") for e in edges]
        return list(dict.fromkeys(s for s in found if s in wanted))

    def _option_names(self, group: MissingGroup) -> List[str]:
        names = [group.option1_name, group.option2_name, group.option3_name]
        return [n.strip() for n in names if n and n.strip()]

    def _option_values(self, group: MissingGroup, record: CanonicalRecord) -> List[str]:
        values = []
        if group.option1_name and group.option1_name.strip():
            values.append((record.option1_value or "").strip() or record.identifier)
        if group.option2_name and group.option2_name.strip():
            values.append((record.option2_value or "").strip() or "-")
        if group.option3_name and group.option3_name.strip():
            values.append((record.option3_value or "").strip() or "-")
        return values

    def _variant_input(self, group: MissingGroup, record: CanonicalRecord, option_names: List[str]) -> Dict[str, Any]:
        values = self._option_values(group, record) or ["Default Title"]
        inventory_item: Dict[str, Any] = {"tracked": True}
        if record.cost_per_item is not None:
            inventory_item["cost"] = record.cost_per_item
        if record.weight:
            inventory_item["measurement"] = {
                "weight": {
                    "value": record.weight,
                    "unit": weight_unit_enum(record.weight_unit) or "GRAMS",
                }
            }

        variant: Dict[str, Any] = {
            "optionValues": [
                {"optionName": name, "name": value} for name, value in zip(option_names, values)
            ],
            "price": _format_money(record.price),
            "sku": record.identifier,
            "inventoryPolicy": "DENY",
            "inventoryItem": inventory_item,
            "inventoryQuantities": [
                {
                    "locationId": self.location.gid,
                    "name": "available",
                    "quantity": record.stock_quantity,
                }
            ],
        }
        if record.barcode:
            variant["barcode"] = record.barcode
        if record.compare_at_price:
            variant["compareAtPrice"] = _format_money(record.compare_at_price)
        if record.image_url and not is_placeholder_image(record.image_url):
            variant["file"] = {
                "originalSource": record.image_url,
                "alt": group.display_name,
                "contentType": "IMAGE",
            }
        return variant

    def build_create_input(self, group: MissingGroup) -> Dict[str, Any]:
        option_names = self._option_names(group) or ["Title"]
        variants = [self._variant_input(group, r, option_names) for r in group.member_records]

        product_options = []
        for position, name in enumerate(option_names):
            seen = list(dict.fromkeys(v["optionValues"][position]["name"] for v in variants))
            product_options.append({"name": name, "values": [{"name": value} for value in seen]})

        files = []
        seen_urls = set()
        for image in group.images:
            if not image.source_url or is_placeholder_image(image.source_url):
                continue
            if image.source_url in seen_urls:
                continue
            seen_urls.add(image.source_url)
            files.append(
                {
                    "originalSource": image.source_url,
                    "alt": image.alt_text or group.display_name,
                    "contentType": "IMAGE",
                }
            )

        product: Dict[str, Any] = {
            "title": group.display_name,
            "handle": group.group_key,
            "tags": [CLEARANCE_TAG] if group.is_clearance_group else [],
            "productOptions": product_options,
            "variants": variants,
            "files": files,
        }
        if group.description:
            product["descriptionHtml"] = demote_h1(group.description)
        if group.vendor:
            product["vendor"] = group.vendor
        if group.product_type:
            product["productType"] = group.product_type
        return product

    def create_group(self, group: MissingGroup) -> str:
        """Create the product for a missing group and return its GID."""
        conflicts = self.find_existing_identifiers(r.identifier for r in group.member_records)
        if conflicts:
            raise DuplicateCreateError(conflicts)

        logger.info(
            "Creating product handle=%s title=%s variants=%d",
            group.group_key,
            group.display_name,
            len(group.member_records),
        )
        data = self.client.query(PRODUCT_SET_MUTATION, {"input": self.build_create_input(group)})
        payload = raise_for_user_errors(
            data, "productSet", f"Failed to create product '{group.display_name}'"
        )
        product_gid = (payload.get("product") or {}).get("id")
        if not product_gid:
            raise AuditError(
                f"Failed to create product '{group.display_name}'. Response was empty or invalid."
            )
        logger.info("Created product %s for handle=%s", product_gid, group.group_key)

        self._run_post_create(product_gid, group)
        return product_gid

    def _run_post_create(self, product_gid: str, group: MissingGroup) -> None:
        tasks: Dict[str, Callable[[], None]] = {}
        if self.publication_ids:
            tasks["publish"] = lambda: self.publish(product_gid)
        if group.product_category:
            tasks["collection link"] = lambda: self.link_collection(product_gid, group.product_category)
        if not tasks:
            return

        with ThreadPoolExecutor(max_workers=self.post_create_workers) as executor:
            futures = {executor.submit(task): name for name, task in tasks.items()}
            for future, name in futures.items():
                try:
                    future.result()
                except AuditError as exc:
                    logger.warning("Post-create %s failed for %s: %s", name, group.group_key, exc)
                except Exception:
                    logger.exception("Post-create %s crashed for %s", name, group.group_key)

    def publish(self, product_gid: str) -> None:
        variables = {
            "id": product_gid,
            "input": [{"publicationId": pub} for pub in self.publication_ids],
        }
        data = self.client.query(PUBLISH_MUTATION, variables)
        raise_for_user_errors(data, "publishablePublish", f"Failed to publish {product_gid}")
        logger.info("Published %s to %d channel(s)", product_gid, len(self.publication_ids))

    def find_collection(self, title: str) -> Optional[str]:
        escaped = title.replace("\\", "\\\\").replace("'", "\\'")
        data = self.client.query(COLLECTION_BY_TITLE_QUERY, {"query": f"title:'{escaped}'"})
        edges = (data.get("collections") or {}).get("edges") or []
        if not edges:
            return None
        return (edges[0].get("node") or {}).get("id")

    def link_collection(self, product_gid: str, collection_title: str) -> None:
        collection_gid = self.find_collection(collection_title)
        if not collection_gid:
            logger.info("No collection titled %r; skipping link for %s", collection_title, product_gid)
            return
        data = self.client.query(
            COLLECTION_ADD_PRODUCTS_MUTATION, {"id": collection_gid, "productIds": [product_gid]}
        )
        raise_for_user_errors(
            data, "collectionAddProducts", f"Failed to add {product_gid} to {collection_gid}"
        )
        logger.info("Linked %s to collection %s", product_gid, collection_gid)

    # ------------------------------------------------------------------
    # Fix
    # ------------------------------------------------------------------

    def fix_discrepancy(self, discrepancy: Discrepancy) -> None:
        if not discrepancy.fixable:
            raise UnsupportedFixError(
                f"'{discrepancy.kind.value}' for {discrepancy.identifier} cannot be fixed automatically."
            )
        logger.info("%s", discrepancy.label)
        if isinstance(discrepancy, EntityDiscrepancy):
            self._fix_entity(discrepancy)
        elif isinstance(discrepancy, (PriceDiscrepancy, CompareAtPriceIssue)):
            self._fix_variant(discrepancy)
        else:
            raise UnsupportedFixError(f"Unsupported discrepancy field for fixing: {discrepancy.kind.value}")

    def _fix_entity(self, discrepancy: EntityDiscrepancy) -> None:
        product_gid = discrepancy.group_ref
        if not product_gid:
            raise AuditError(f"Cannot fix '{discrepancy.kind.value}' without a product ID.")

        # Re-read the product: the fix transforms what is there now, not the audit snapshot.
        product = self.client.query(PRODUCT_FOR_FIX_QUERY, {"id": product_gid}).get("product")
        if not product:
            raise AuditError(f"Could not fetch product with GID {product_gid}.")

        update: Dict[str, Any] = {"id": product_gid}
        if isinstance(discrepancy, ForbiddenMarkupInDescription):
            description = product.get("descriptionHtml")
            if not isinstance(description, str):
                raise AuditError(f"Could not get product description for product ID {product_gid}.")
            update["descriptionHtml"] = demote_h1(description)
        elif isinstance(discrepancy, MissingRequiredTag):
            update["tags"] = add_clearance_tag(product.get("tags"))
        elif isinstance(discrepancy, UnexpectedTag):
            update["tags"] = remove_clearance_tag(product.get("tags"))
        else:
            raise UnsupportedFixError(f"Unsupported discrepancy field for fixing: {discrepancy.kind.value}")

        data = self.client.query(PRODUCT_UPDATE_MUTATION, {"product": update})
        raise_for_user_errors(data, "productUpdate", f"Failed to update product {product_gid}")

    def _fix_variant(self, discrepancy: Discrepancy) -> None:
        if not discrepancy.variant_ref:
            raise AuditError(f"Cannot fix '{discrepancy.kind.value}' without a variant ID.")
        if not discrepancy.group_ref:
            raise AuditError(f"Cannot fix '{discrepancy.kind.value}' without a product ID.")

        variant: Dict[str, Any] = {"id": discrepancy.variant_ref}
        target = discrepancy.local_value
        if isinstance(discrepancy, PriceDiscrepancy):
            variant["price"] = _format_money(float(target))
        else:
            positive = isinstance(target, (int, float)) and not isinstance(target, bool) and target > 0
            variant["compareAtPrice"] = _format_money(float(target)) if positive else None

        data = self.client.query(
            VARIANTS_BULK_UPDATE_MUTATION,
            {"productId": discrepancy.group_ref, "variants": [variant]},
        )
        raise_for_user_errors(
            data, "productVariantsBulkUpdate", f"Failed to update variant {discrepancy.variant_ref}"
        )

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    @staticmethod
    def _require_product_ref(group_ref: str, action: str) -> None:
        if not group_ref or not group_ref.startswith(PRODUCT_GID_PREFIX):
            raise MediaReferenceError(f"Invalid or missing product GID for {action}: {group_ref!r}")

    @staticmethod
    def _require_media_refs(media_refs: Iterable[Optional[str]], action: str) -> None:
        invalid = [ref for ref in media_refs if not ref or not ref.startswith(MEDIA_IMAGE_GID_PREFIX)]
        if invalid:
            shown = ", ".join(repr(ref) for ref in invalid)
            raise MediaReferenceError(f"Cannot {action}: image has no valid media reference ({shown}).")

    def reassign_variant_images(self, group_ref: str, assignments: Dict[str, str]) -> None:
        """Point each variant (by GID) at a media image of the same product."""
        if not assignments:
            return
        self._require_product_ref(group_ref, "variant image update")
        self._require_media_refs(assignments.values(), "assign variant image")
        variants = [{"id": variant, "mediaId": media} for variant, media in assignments.items()]
        data = self.client.query(
            VARIANTS_BULK_UPDATE_MUTATION, {"productId": group_ref, "variants": variants}
        )
        raise_for_user_errors(data, "productVariantsBulkUpdate", "Failed to update variant images")
        logger.info("Reassigned images for %d variant(s) of %s", len(variants), group_ref)

    def delete_media(self, group_ref: str, media_refs: Sequence[Optional[str]]) -> List[str]:
        if not media_refs:
            return []
        self._require_product_ref(group_ref, "media deletion")
        self._require_media_refs(media_refs, "delete image")
        data = self.client.query(
            DELETE_MEDIA_MUTATION, {"productId": group_ref, "mediaIds": list(media_refs)}
        )
        payload = raise_for_user_errors(data, "productDeleteMedia", "Failed to delete media")
        deleted = payload.get("deletedMediaIds") or []
        logger.info("Deleted %d media item(s) from %s", len(deleted), group_ref)
        return deleted

    def update_alt_texts(self, updates: Dict[str, str]) -> None:
        """Set alt text on media images, keyed by media GID, in one request."""
        if not updates:
            return
        self._require_media_refs(updates.keys(), "update alt text")
        files = [{"id": ref, "alt": alt} for ref, alt in updates.items()]
        data = self.client.query(FILE_UPDATE_MUTATION, {"files": files})
        raise_for_user_errors(data, "fileUpdate", "Failed to update image alt text")
        logger.info("Updated alt text on %d image(s)", len(files))


T = TypeVar("T")


def run_bulk(
    items: Sequence[T],
    action: Callable[[T], Any],
    key: Callable[[T], str],
    label: Callable[[T], str],
    on_progress: Optional[Callable[[BulkItemProgress], None]] = None,
) -> BulkOutcome:
    """
    Apply `action` to each item in order, one at a time.

    Progress is reported before each attempt. A failing item records its error
    and the run moves on; the outcome lists succeeded keys in input order.
    """
    outcome = BulkOutcome()
    total = len(items)
    for index, item in enumerate(items, start=1):
        item_key = key(item)
        if on_progress:
            on_progress(BulkItemProgress(current=index, total=total, label=label(item)))
        try:
            action(item)
        except AuditError as exc:
            logger.warning("Bulk item %d/%d (%s) failed: %s", index, total, item_key, exc)
            outcome.errors[item_key] = str(exc)
            continue
        except Exception as exc:
            logger.exception("Bulk item %d/%d (%s) crashed", index, total, item_key)
            outcome.errors[item_key] = f"Unexpected error: {exc!r}"
            continue
        outcome.succeeded.append(item_key)
    logger.info(
        "Bulk run finished: %d succeeded, %d failed of %d",
        len(outcome.succeeded),
        len(outcome.errors),
        total,
    )
    return outcome
