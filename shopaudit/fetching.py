"""
Read-only retrieval of store variants.

Two strategies:
    BulkCatalogFetcher  - runs (or resumes, or reuses) a bulk export job for the
                          whole catalog, polls it and downloads the JSONL result.
    BatchedSkuFetcher   - queries an explicit SKU list in fixed-size batches,
                          pacing on the API cost budget and backing off when
                          throttled.

Both report progress as ProgressEvent objects, passed to an optional callback
as they happen and returned on the FetchOutcome in order.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from shopaudit.clients.shopify import ShopifyClient, raise_for_user_errors
from shopaudit.config import (
    BATCH_QUERY_LIMIT,
    BATCH_SIZE,
    BULK_POLL_INTERVAL_SECONDS,
    PACING_BUFFER_SECONDS,
    PACING_FALLBACK_DELAY_SECONDS,
    PACING_FLAT_DELAY_SECONDS,
    THROTTLE_BACKOFF_FACTOR,
    THROTTLE_BASE_DELAY_SECONDS,
    THROTTLE_MAX_ATTEMPTS,
)
from shopaudit.errors import (
    BulkDataError,
    BulkJobCanceled,
    BulkJobError,
    BulkJobExpired,
    BulkJobFailed,
    BulkJobTimeout,
    FetchTimeout,
    RemoteTransportError,
    ThrottleError,
)
from shopaudit.models import ProgressEvent, RemoteVariant

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


# ---------------------------------------------------------------------------
# GraphQL documents
# ---------------------------------------------------------------------------

_MEDIA_IMAGE_NODE = """
          ... on MediaImage {
            id
            image {
              id
              url
              altText
            }
          }
"""

VARIANT_FIELDS = f"""
  id
  sku
  price
  compareAtPrice
  image {{ id url altText }}
  media(first: 1) {{
    edges {{
      node {{
{_MEDIA_IMAGE_NODE}
      }}
    }}
  }}
  selectedOptions {{
    name
    value
  }}
  product {{
    id
    title
    handle
    descriptionHtml
    tags
    media(first: 250) {{
      edges {{
        node {{
{_MEDIA_IMAGE_NODE}
        }}
      }}
    }}
  }}
  inventoryItem {{
    id
    tracked
    inventoryLevels(first: 10) {{
      edges {{
        node {{
          quantities(names: ["available"]) {{
            name
            quantity
          }}
          location {{
            id
            legacyResourceId
            name
          }}
        }}
      }}
    }}
  }}
"""

BATCHED_VARIANTS_QUERY = f"""
query getProductVariantsBySku($query: String!) {{
  productVariants(first: {BATCH_QUERY_LIMIT}, query: $query) {{
    edges {{
      node {{
{VARIANT_FIELDS}
      }}
    }}
  }}
}}
"""

# Bulk exports flatten nested connections into child lines (see _attach_child).
BULK_VARIANTS_QUERY = f"""
{{
  productVariants {{
    edges {{
      node {{
        id
        sku
        price
        compareAtPrice
        image {{ id url altText }}
        selectedOptions {{
          name
          value
        }}
        product {{
          id
          title
          handle
          descriptionHtml
          tags
          media {{
            edges {{
              node {{
{_MEDIA_IMAGE_NODE}
              }}
            }}
          }}
        }}
        inventoryItem {{
          id
          tracked
          inventoryLevels {{
            edges {{
              node {{
                quantities(names: ["available"]) {{
                  name
                  quantity
                }}
                location {{
                  id
                  legacyResourceId
                  name
                }}
              }}
            }}
          }}
        }}
      }}
    }}
  }}
}}
"""

BULK_OPERATION_RUN_MUTATION = """
mutation bulkOperationRunQuery($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation {
      id
      status
    }
    userErrors {
      field
      message
    }
  }
}
"""

CURRENT_BULK_OPERATION_QUERY = """
query {
  currentBulkOperation {
    id
    status
    errorCode
    url
    objectCount
  }
}
"""


# ---------------------------------------------------------------------------
# Retry / pacing policy
# ---------------------------------------------------------------------------


def throttle_backoff(attempt: int) -> Optional[float]:
    """
    Seconds to wait after the `attempt`-th throttled try of one batch, or None
    once the attempt cap is reached.
    """
    if attempt >= THROTTLE_MAX_ATTEMPTS:
        return None
    return THROTTLE_BASE_DELAY_SECONDS * THROTTLE_BACKOFF_FACTOR ** (attempt - 1)


def pacing_delay(extensions: Optional[Dict[str, Any]]) -> float:
    """Seconds to wait before the next batch, from the cost extension of the last one."""
    cost = (extensions or {}).get("cost")
    if not cost:
        return PACING_FALLBACK_DELAY_SECONDS
    throttle = cost.get("throttleStatus") or {}
    query_cost = cost.get("actualQueryCost")
    if query_cost is None:
        query_cost = cost.get("requestedQueryCost")
    available = throttle.get("currentlyAvailable")
    restore_rate = throttle.get("restoreRate")
    if query_cost is None or available is None or not restore_rate:
        return PACING_FALLBACK_DELAY_SECONDS
    if available < query_cost:
        wait_ms = math.ceil((query_cost - available) / restore_rate * 1000)
        return wait_ms / 1000.0 + PACING_BUFFER_SECONDS
    return PACING_FLAT_DELAY_SECONDS


def build_sku_query(skus: Iterable[str]) -> str:
    parts = []
    for sku in skus:
        escaped = sku.replace("\\", "\\\\").replace('"', '\\"')
        parts.append(f'sku:"{escaped}"')
    return " OR ".join(parts)


# ---------------------------------------------------------------------------
# Progress plumbing
# ---------------------------------------------------------------------------


@dataclass
class FetchOutcome:
    variants: List[RemoteVariant]
    events: List[ProgressEvent] = field(default_factory=list)
    job_id: Optional[str] = None
    reused_job: bool = False


class _ProgressLog:
    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self.callback = callback
        self.events: List[ProgressEvent] = []

    def emit(self, stage: str, message: str, **counts: Optional[int]) -> None:
        event = ProgressEvent(stage=stage, message=message, **counts)
        self.events.append(event)
        if self.callback:
            self.callback(event)


def _object_count(operation: Dict[str, Any]) -> Optional[int]:
    raw = operation.get("objectCount")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Strategy A: bulk export job
# ---------------------------------------------------------------------------

IN_FLIGHT_STATUSES = ("CREATED", "RUNNING", "CANCELING")
REUSABLE_STATUSES = ("COMPLETED", "CANCELED")


class BulkCatalogFetcher:
    """Fetch every variant through the platform's asynchronous bulk export."""

    def __init__(
        self,
        client: ShopifyClient,
        poll_interval: float = BULK_POLL_INTERVAL_SECONDS,
        deadline_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.poll_interval = poll_interval
        self.deadline_seconds = deadline_seconds
        self.sleep = sleep
        self.clock = clock

    def _current_operation(self) -> Optional[Dict[str, Any]]:
        return self.client.query(CURRENT_BULK_OPERATION_QUERY).get("currentBulkOperation")

    def _start_operation(self) -> Dict[str, Any]:
        data = self.client.query(BULK_OPERATION_RUN_MUTATION, {"query": BULK_VARIANTS_QUERY})
        payload = raise_for_user_errors(data, "bulkOperationRunQuery", "Error starting bulk operation")
        operation = payload.get("bulkOperation")
        if not operation or operation.get("status") != "CREATED":
            raise BulkJobError("Failed to create bulk operation.")
        logger.info("Created bulk operation %s", operation.get("id"))
        return operation

    def fetch(self, force_refresh: bool = False, on_progress: Optional[ProgressCallback] = None) -> FetchOutcome:
        progress = _ProgressLog(on_progress)
        progress.emit("discovery", "Checking for existing operations...")
        operation = self._current_operation()
        status = (operation or {}).get("status")
        has_url = bool((operation or {}).get("url"))
        logger.info("Current bulk operation status: %s", status or "none")

        reused = False
        if operation and status in REUSABLE_STATUSES and has_url and not force_refresh:
            reused = True
            label = "cached (previously canceled)" if status == "CANCELED" else "recently completed"
            progress.emit(
                "discovery",
                f"Found a {label} audit. Downloading results...",
                total=_object_count(operation),
            )
        elif operation and (status in IN_FLIGHT_STATUSES or (status == "COMPLETED" and not has_url)):
            progress.emit(
                "discovery",
                "Found an existing audit in progress. Resuming...",
                total=_object_count(operation),
            )
        else:
            progress.emit("creation", "Initiating a new product data fetch...")
            operation = self._start_operation()

        if not reused:
            operation = self._poll_until_complete(operation, progress)

        variants = self._download(operation, progress)
        return FetchOutcome(
            variants=variants,
            events=progress.events,
            job_id=operation.get("id"),
            reused_job=reused,
        )

    def _poll_until_complete(self, operation: Dict[str, Any], progress: _ProgressLog) -> Dict[str, Any]:
        started = self.clock()
        polls = 0
        while not (operation.get("status") == "COMPLETED" and operation.get("url")):
            if self.deadline_seconds is not None and self.clock() - started >= self.deadline_seconds:
                raise BulkJobTimeout(self.deadline_seconds)
            self.sleep(self.poll_interval)
            polls += 1

            operation = self._current_operation()
            if not operation:
                raise BulkJobError("The bulk operation disappeared unexpectedly.")
            status = operation.get("status")
            count = _object_count(operation)
            logger.debug("Bulk poll %d: status=%s objectCount=%s", polls, status, count)

            if status == "COMPLETED":
                if not operation.get("url"):
                    progress.emit(
                        "processing",
                        "Shopify has processed products, waiting for download URL...",
                        processed=count,
                    )
            elif status == "FAILED":
                logger.error("Bulk operation failed: %s", operation.get("errorCode"))
                raise BulkJobFailed(operation.get("errorCode"))
            elif status == "CANCELED":
                raise BulkJobCanceled()
            elif status == "EXPIRED":
                raise BulkJobExpired()
            elif status in IN_FLIGHT_STATUSES:
                progress.emit(
                    "processing",
                    f"Shopify is processing {count if count is not None else 'many'} products...",
                    processed=count,
                )
            else:
                raise BulkJobError(f"Unhandled bulk operation status: {status}")

        logger.info("Bulk operation %s completed after %d polls", operation.get("id"), polls)
        return operation

    def _download(self, operation: Dict[str, Any], progress: _ProgressLog) -> List[RemoteVariant]:
        total = _object_count(operation)
        progress.emit("downloading", "Downloading processed data...", total=total)

        variants: List[RemoteVariant] = []
        by_id: Dict[str, RemoteVariant] = {}
        line_number = 0
        for line in self.client.download_lines(operation["url"]):
            line_number += 1
            if not line or not line.strip():
                continue
            try:
                obj = json.loads(line)
            except ValueError as exc:
                raise BulkDataError(line_number, str(exc)) from exc
            if not isinstance(obj, dict):
                raise BulkDataError(line_number, "expected a JSON object")

            parent_id = obj.pop("__parentId", None)
            if parent_id is None:
                variants.append(obj)
                if obj.get("id"):
                    by_id[obj["id"]] = obj
            else:
                _attach_child(by_id.get(parent_id), obj, line_number)

        logger.info("Downloaded %d product variants", len(variants))
        progress.emit(
            "downloaded",
            f"Successfully downloaded {len(variants)} product variants.",
            processed=len(variants),
            total=total or len(variants),
        )
        return variants


def _attach_child(parent: Optional[RemoteVariant], child: Dict[str, Any], line_number: int) -> None:
    """Fold a flattened connection line back into its parent variant."""
    if parent is None:
        logger.warning("Bulk line %d references an unknown parent; ignored", line_number)
        return
    if "location" in child or "quantities" in child:
        item = parent.setdefault("inventoryItem", {}) or {}
        parent["inventoryItem"] = item
        levels = item.get("inventoryLevels") or {"edges": []}
        item["inventoryLevels"] = levels
        levels.setdefault("edges", []).append({"node": child})
    elif "image" in child:
        product = parent.get("product")
        if not product:
            return
        media = product.get("media") or {"edges": []}
        product["media"] = media
        media.setdefault("edges", []).append({"node": child})
    else:
        logger.debug("Bulk line %d has an unrecognized child shape; ignored", line_number)


# ---------------------------------------------------------------------------
# Strategy B: batched targeted query
# ---------------------------------------------------------------------------


class BatchedSkuFetcher:
    """Fetch only the variants whose SKU appears in an explicit list."""

    def __init__(
        self,
        client: ShopifyClient,
        batch_size: int = BATCH_SIZE,
        deadline_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        backoff: Callable[[int], Optional[float]] = throttle_backoff,
    ) -> None:
        self.client = client
        self.batch_size = batch_size
        self.deadline_seconds = deadline_seconds
        self.sleep = sleep
        self.clock = clock
        self.backoff = backoff

    def fetch(self, identifiers: Iterable[str], on_progress: Optional[ProgressCallback] = None) -> FetchOutcome:
        progress = _ProgressLog(on_progress)
        skus = list(dict.fromkeys(s for s in identifiers if s))
        total = len(skus)
        started = self.clock()
        found: List[RemoteVariant] = []

        progress.emit("batch", f"Starting batched fetch for {total} SKUs...", processed=0, total=total, found=0)
        for start in range(0, total, self.batch_size):
            batch = skus[start:start + self.batch_size]
            result = self._fetch_batch(batch, start, total, started, progress)
            edges = ((result.get("data") or {}).get("productVariants") or {}).get("edges") or []
            found.extend(edge["node"] for edge in edges if edge and edge.get("node"))

            processed = min(start + self.batch_size, total)
            progress.emit(
                "batch",
                f"Fetched data for {processed} of {total} SKUs. "
                f"Found {len(found)} matching variants so far.",
                processed=processed,
                total=total,
                found=len(found),
            )
            if processed < total:
                delay = pacing_delay(result.get("extensions"))
                logger.debug("Pacing next batch by %.3fs", delay)
                self.sleep(delay)

        progress.emit(
            "done",
            f"Successfully fetched data for {len(found)} matching variants.",
            processed=total,
            total=total,
            found=len(found),
        )
        return FetchOutcome(variants=found, events=progress.events)

    def _check_deadline(self, started: float) -> None:
        if self.deadline_seconds is not None and self.clock() - started >= self.deadline_seconds:
            raise FetchTimeout(f"Batched fetch did not finish within {self.deadline_seconds:.0f}s.")

    def _fetch_batch(
        self,
        batch: List[str],
        start: int,
        total: int,
        started: float,
        progress: _ProgressLog,
    ) -> Dict[str, Any]:
        attempt = 0
        while True:
            self._check_deadline(started)
            try:
                return self.client.execute(BATCHED_VARIANTS_QUERY, {"query": build_sku_query(batch)})
            except ThrottleError as exc:
                attempt += 1
                delay = self.backoff(attempt)
                if delay is None:
                    raise RemoteTransportError(
                        f"Failed to fetch product data for batch starting with SKU {batch[0]} "
                        f"after {attempt} attempts due to persistent throttling."
                    ) from exc
                logger.warning(
                    "Throttled on batch starting with %s; retrying in %.1fs (attempt %d/%d)",
                    batch[0],
                    delay,
                    attempt,
                    THROTTLE_MAX_ATTEMPTS,
                )
                progress.emit(
                    "throttled",
                    f"Shopify API rate limit reached. Retrying in {delay:g}s...",
                    processed=start,
                    total=total,
                )
                self.sleep(delay)
            except RemoteTransportError as exc:
                logger.error("Failed to fetch batch starting with SKU %s: %s", batch[0], exc)
                raise RemoteTransportError(
                    f"Failed to fetch product data for batch starting with SKU {batch[0]}. "
                    f"Original error: {exc}",
                    status_code=exc.status_code,
                ) from exc
