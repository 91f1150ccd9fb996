from __future__ import annotations

from typing import Protocol, Sequence

from shopaudit.models import Discrepancy, MissingGroup


class ReportExporter(Protocol):
    """Common interface for audit report targets."""

    def write_missing(self, groups: Sequence[MissingGroup]) -> None:
        ...

    def write_discrepancies(self, discrepancies: Sequence[Discrepancy]) -> None:
        ...

    def finalize(self) -> None:
        ...
