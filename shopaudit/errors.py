from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional


class AuditError(Exception):
    """Base class for every failure surfaced to the operator."""


class ConfigError(AuditError):
    """A required setting is missing or malformed."""


class SchemaError(AuditError):
    """A required feed column could not be located by any of its aliases."""


class RemoteTransportError(AuditError):
    """Non-200 response, network failure, or top-level GraphQL errors."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ThrottleError(RemoteTransportError):
    """The platform rejected the call for rate-limit reasons."""


def format_user_errors(user_errors: Iterable[Dict[str, Any]]) -> str:
    parts: List[str] = []
    for err in user_errors:
        field = err.get("field")
        message = err.get("message") or "Unknown error"
        if field:
            path = ".".join(str(p) for p in field) if isinstance(field, list) else str(field)
            parts.append(f"[{path}] {message}")
        else:
            parts.append(message)
    return "; ".join(parts)


class RemoteUserError(AuditError):
    """The request was accepted but the platform reported userErrors."""

    def __init__(self, context: str, user_errors: List[Dict[str, Any]]) -> None:
        self.context = context
        self.user_errors = list(user_errors)
        super().__init__(f"{context}: {format_user_errors(self.user_errors)}")


class BulkJobError(AuditError):
    """The bulk export job ended without a downloadable result."""


class BulkJobFailed(BulkJobError):
    def __init__(self, error_code: Optional[str]) -> None:
        self.error_code = error_code
        super().__init__(f"Bulk operation failed. Error: {error_code}")


class BulkJobCanceled(BulkJobError):
    def __init__(self) -> None:
        super().__init__("Bulk operation has status: CANCELED.")


class BulkJobExpired(BulkJobError):
    def __init__(self) -> None:
        super().__init__("Bulk operation has status: EXPIRED.")


class BulkJobTimeout(BulkJobError):
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(f"Bulk operation did not finish within {seconds:.0f}s.")


class BulkDataError(AuditError):
    """A line of the bulk result could not be parsed."""

    def __init__(self, line_number: int, detail: str) -> None:
        self.line_number = line_number
        super().__init__(f"Malformed bulk data on line {line_number}: {detail}")


class FetchTimeout(AuditError):
    """A batched fetch ran past its configured deadline."""


class DuplicateCreateError(AuditError):
    def __init__(self, identifiers: List[str]) -> None:
        self.identifiers = list(identifiers)
        super().__init__(
            "Cannot create product. The following SKU(s) already exist in Shopify: "
            f"{', '.join(self.identifiers)}. Please run a fresh audit to sync data."
        )


class UnsupportedFixError(AuditError):
    """The discrepancy kind has no automatic fix."""


class MediaReferenceError(AuditError):
    """An image lacks a usable media reference, or a reference is malformed."""
