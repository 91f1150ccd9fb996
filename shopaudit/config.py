"""Centralized configuration for the catalog audit.

Values come from the environment (the CLI loads a .env file first) with the
defaults below. Only the store domain, token and target location are required.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from shopaudit.errors import ConfigError

DEFAULT_API_VERSION = "2025-07"
LOCATION_GID_PREFIX = "gid://shopify/Location/"

# Remote fetch
BULK_POLL_INTERVAL_SECONDS = 3.0
BATCH_SIZE = 150
BATCH_QUERY_LIMIT = 250
THROTTLE_MAX_ATTEMPTS = 5
THROTTLE_BASE_DELAY_SECONDS = 0.5
THROTTLE_BACKOFF_FACTOR = 2.0
PACING_BUFFER_SECONDS = 0.25
PACING_FLAT_DELAY_SECONDS = 0.25
PACING_FALLBACK_DELAY_SECONDS = 0.5
HTTP_TIMEOUT_SECONDS = 30

# Single-slot cache of the last full catalog fetch
CACHE_KEY = "shopify_product_data"

FULL_EXPORT_MARKER = "shopifyproductimport.csv"
CLEARANCE_MARKER = "clearance"
CLEARANCE_TAG = "Clearance"


def _default_home() -> Path:
    return Path(os.path.expanduser("~/.shopify_audit"))


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number of seconds, got {raw!r}") from exc


def normalize_store_domain(value: str) -> str:
    value = value.strip().rstrip("/")
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    if value and "." not in value:
        value = f"{value}.myshopify.com"
    return value


@dataclass(frozen=True)
class TargetLocation:
    """The inventory location stock is read from and written to.

    The API reports locations both as a resource reference and as a legacy
    numeric id; either encoding identifies the same location.
    """

    gid: str
    legacy_id: str

    @classmethod
    def parse(cls, value: str) -> "TargetLocation":
        value = (value or "").strip()
        if value.startswith(LOCATION_GID_PREFIX):
            legacy = value[len(LOCATION_GID_PREFIX):]
        else:
            legacy = value
        if not legacy.isdigit():
            raise ConfigError(f"Unrecognized location id: {value!r}")
        return cls(gid=f"{LOCATION_GID_PREFIX}{legacy}", legacy_id=legacy)

    def matches(self, location: dict) -> bool:
        if not location:
            return False
        if str(location.get("legacyResourceId") or "") == self.legacy_id:
            return True
        return location.get("id") == self.gid


@dataclass
class AuditSettings:
    store_domain: str
    access_token: str
    location: TargetLocation
    api_version: str = DEFAULT_API_VERSION
    publication_ids: List[str] = field(default_factory=list)
    cache_dir: Path = field(default_factory=lambda: _default_home() / "cache")
    log_dir: Path = field(default_factory=lambda: _default_home() / "logs")
    poll_deadline_seconds: Optional[float] = None
    fetch_deadline_seconds: Optional[float] = None

    @classmethod
    def from_env(cls) -> "AuditSettings":
        domain = normalize_store_domain(os.getenv("SHOPIFY_STORE_DOMAIN", ""))
        token = os.getenv("SHOPIFY_ADMIN_TOKEN", "").strip()
        location = os.getenv("SHOPIFY_LOCATION_ID", "").strip()
        for name, value in (
            ("SHOPIFY_STORE_DOMAIN", domain),
            ("SHOPIFY_ADMIN_TOKEN", token),
            ("SHOPIFY_LOCATION_ID", location),
        ):
            if not value:
                raise ConfigError(f"Missing required setting {name}")

        publications = [
            p.strip() for p in os.getenv("SHOPIFY_PUBLICATION_IDS", "").split(",") if p.strip()
        ]
        cache_dir = os.getenv("AUDIT_CACHE_DIR", "").strip()
        log_dir = os.getenv("AUDIT_LOG_DIR", "").strip()
        return cls(
            store_domain=domain,
            access_token=token,
            location=TargetLocation.parse(location),
            api_version=os.getenv("SHOPIFY_API_VERSION", DEFAULT_API_VERSION).strip()
            or DEFAULT_API_VERSION,
            publication_ids=publications,
            cache_dir=Path(cache_dir).expanduser() if cache_dir else _default_home() / "cache",
            log_dir=Path(log_dir).expanduser() if log_dir else _default_home() / "logs",
            poll_deadline_seconds=_optional_float("AUDIT_POLL_DEADLINE_SECONDS"),
            fetch_deadline_seconds=_optional_float("AUDIT_FETCH_DEADLINE_SECONDS"),
        )
