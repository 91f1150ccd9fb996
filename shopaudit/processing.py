from __future__ import annotations

import json
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from shopaudit.cache import FileCache
from shopaudit.clients.shopify import ShopifyClient
from shopaudit.config import CACHE_KEY, AuditSettings, TargetLocation
from shopaudit.errors import AuditError
from shopaudit.fetching import BatchedSkuFetcher, BulkCatalogFetcher, ProgressCallback
from shopaudit.models import (
    AuditResult,
    BulkItemProgress,
    BulkOutcome,
    CanonicalRecord,
    Discrepancy,
    ItemKind,
    MissingGroup,
    RemoteVariant,
)
from shopaudit.mutations import MutationOrchestrator, run_bulk
from shopaudit.normalize import normalize_variants
from shopaudit.reconcile import reconcile

BulkProgressCallback = Callable[[BulkItemProgress], None]


class AuditSession:
    """
    The operator's view of one audit: fetch, reconcile, then act on the result.

    Holds the current AuditResult and prunes it as creates and fixes succeed.
    """

    def __init__(
        self,
        client: ShopifyClient,
        location: TargetLocation,
        cache: Optional[FileCache] = None,
        mutations: Optional[MutationOrchestrator] = None,
        bulk_fetcher: Optional[BulkCatalogFetcher] = None,
        batched_fetcher: Optional[BatchedSkuFetcher] = None,
    ) -> None:
        self.client = client
        self.location = location
        self.cache = cache
        self.mutations = mutations or MutationOrchestrator(client, location)
        self.bulk_fetcher = bulk_fetcher or BulkCatalogFetcher(client)
        self.batched_fetcher = batched_fetcher or BatchedSkuFetcher(client)
        self.result: Optional[AuditResult] = None
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_settings(cls, settings: AuditSettings) -> "AuditSession":
        client = ShopifyClient(
            settings.store_domain,
            settings.access_token,
            api_version=settings.api_version,
        )
        return cls(
            client,
            settings.location,
            cache=FileCache(str(settings.cache_dir)),
            mutations=MutationOrchestrator(client, settings.location, settings.publication_ids),
            bulk_fetcher=BulkCatalogFetcher(client, deadline_seconds=settings.poll_deadline_seconds),
            batched_fetcher=BatchedSkuFetcher(client, deadline_seconds=settings.fetch_deadline_seconds),
        )

    def connect(self) -> bool:
        ok = self.client.verify_credentials()
        if not ok:
            self.logger.error("Could not verify credentials for %s", self.client.store_domain)
        return ok

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _cached_variants(self) -> Optional[List[RemoteVariant]]:
        if self.cache is None:
            return None
        blob = self.cache.get(CACHE_KEY)
        if blob is None:
            return None
        try:
            variants = json.loads(blob.decode("utf-8"))
        except ValueError as exc:
            self.logger.warning("Ignoring unreadable catalog cache: %s", exc)
            return None
        if not isinstance(variants, list):
            self.logger.warning("Ignoring catalog cache with unexpected shape")
            return None
        return variants

    def _fetch_remote(
        self,
        local_records: Sequence[CanonicalRecord],
        force_refresh: bool,
        is_full_catalog_audit: bool,
        on_progress: Optional[ProgressCallback],
    ) -> List[RemoteVariant]:
        if not is_full_catalog_audit:
            self.logger.info("Fetch strategy: batched lookup of %d SKUs", len(local_records))
            outcome = self.batched_fetcher.fetch((r.identifier for r in local_records), on_progress)
            return outcome.variants

        if not force_refresh:
            cached = self._cached_variants()
            if cached is not None:
                self.logger.info("Using cached catalog (%d variants)", len(cached))
                return cached

        self.logger.info("Fetch strategy: bulk export (force_refresh=%s)", force_refresh)
        outcome = self.bulk_fetcher.fetch(force_refresh=force_refresh, on_progress=on_progress)
        if self.cache is not None:
            self.cache.set(CACHE_KEY, json.dumps(outcome.variants).encode("utf-8"))
        return outcome.variants

    def run_reconciliation(
        self,
        local_records: Sequence[CanonicalRecord],
        clearance_identifiers: Iterable[str] = (),
        force_refresh: bool = False,
        is_full_catalog_audit: bool = False,
        source_labels: Sequence[str] = (),
        on_progress: Optional[ProgressCallback] = None,
    ) -> AuditResult:
        self.logger.info(
            "Starting audit of %d records from %s (full=%s)",
            len(local_records),
            ", ".join(source_labels) or "<unnamed>",
            is_full_catalog_audit,
        )
        try:
            raw = self._fetch_remote(local_records, force_refresh, is_full_catalog_audit, on_progress)
        except AuditError as exc:
            self.logger.error("Audit aborted: %s", exc)
            raise AuditError(f"The audit could not be completed. {exc}") from exc

        remote_records, raw_by_identifier = normalize_variants(raw, self.location)
        self.result = reconcile(
            list(local_records),
            remote_records,
            raw,
            raw_by_identifier,
            set(clearance_identifiers),
            is_full_catalog_audit,
        )
        return self.result

    def new_audit(self) -> None:
        """Forget the current result and the cached catalog."""
        self.result = None
        self._invalidate_cache()

    def _invalidate_cache(self) -> None:
        if self.cache is not None:
            self.cache.delete(CACHE_KEY)

    def _require_result(self) -> AuditResult:
        if self.result is None:
            raise AuditError("No audit has been run yet.")
        return self.result

    # ------------------------------------------------------------------
    # Actions on the result
    # ------------------------------------------------------------------

    def create_group(self, group: MissingGroup) -> str:
        product_gid = self.mutations.create_group(group)
        self._invalidate_cache()
        if self.result is not None:
            self.result.remove_item(group.key, ItemKind.MISSING)
        return product_gid

    def fix_discrepancy(self, discrepancy: Discrepancy) -> None:
        self.mutations.fix_discrepancy(discrepancy)
        self._invalidate_cache()
        if self.result is not None:
            self.result.remove_item(discrepancy.key, ItemKind.ISSUES)

    def bulk_create(
        self,
        groups: Optional[Sequence[MissingGroup]] = None,
        on_progress: Optional[BulkProgressCallback] = None,
    ) -> BulkOutcome:
        if groups is None:
            groups = list(self._require_result().missing_groups)
        outcome = run_bulk(
            groups,
            self.mutations.create_group,
            key=lambda g: g.key,
            label=lambda g: f"Creating {g.label}",
            on_progress=on_progress,
        )
        if outcome.succeeded:
            self._invalidate_cache()
        if self.result is not None:
            self.result.remove_items(outcome.succeeded, ItemKind.MISSING)
        return outcome

    def bulk_fix(
        self,
        discrepancies: Optional[Sequence[Discrepancy]] = None,
        on_progress: Optional[BulkProgressCallback] = None,
    ) -> BulkOutcome:
        if discrepancies is None:
            discrepancies = self._require_result().discrepancies
        fixable = [d for d in discrepancies if d.fixable]
        skipped = len(discrepancies) - len(fixable)
        if skipped:
            self.logger.info("Skipping %d discrepancies that cannot be fixed automatically", skipped)
        outcome = run_bulk(
            fixable,
            self.mutations.fix_discrepancy,
            key=lambda d: d.key,
            label=lambda d: d.label,
            on_progress=on_progress,
        )
        if outcome.succeeded:
            self._invalidate_cache()
        if self.result is not None:
            self.result.remove_items(outcome.succeeded, ItemKind.ISSUES)
        return outcome

    def reassign_variant_images(self, group_ref: str, assignments: Dict[str, str]) -> None:
        self.mutations.reassign_variant_images(group_ref, assignments)

    def delete_media(self, group_ref: str, media_refs: Sequence[Optional[str]]) -> List[str]:
        return self.mutations.delete_media(group_ref, media_refs)

    def update_alt_text(self, updates: Dict[str, str]) -> None:
        self.mutations.update_alt_texts(updates)

    def save_image_changes(
        self,
        group_ref: str,
        assignments: Optional[Dict[str, str]] = None,
        deletions: Optional[Sequence[str]] = None,
        alt_updates: Optional[Dict[str, str]] = None,
    ) -> None:
        """Apply an image-management edit, then drop the cached catalog it made stale."""
        if assignments:
            self.reassign_variant_images(group_ref, assignments)
        if alt_updates:
            self.update_alt_text(alt_updates)
        if deletions:
            self.delete_media(group_ref, deletions)
        self._invalidate_cache()

    def remove_item(self, key: str, kind: ItemKind) -> int:
        return self._require_result().remove_item(key, kind)

    def remove_items(self, keys: Iterable[str], kind: ItemKind) -> int:
        return self._require_result().remove_items(keys, kind)
