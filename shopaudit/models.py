from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, List, Optional

# One remote variant node as returned by the Admin GraphQL API, with its parent
# product and inventory levels embedded.
RemoteVariant = Dict[str, Any]


@dataclass
class CanonicalRecord:
    """One purchasable variant, from the feed or from the store."""

    group_key: str
    identifier: str
    display_name: str
    price: float
    stock_quantity: int
    image_url: Optional[str] = None
    is_on_clearance: bool = False
    vendor: Optional[str] = None
    cost_per_item: Optional[float] = None
    compare_at_price: Optional[float] = None
    weight: Optional[float] = None
    weight_unit: Optional[str] = None
    barcode: Optional[str] = None
    product_type: Optional[str] = None
    product_category: Optional[str] = None
    description: Optional[str] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    tags: Optional[List[str]] = None
    option1_name: Optional[str] = None
    option1_value: Optional[str] = None
    option2_name: Optional[str] = None
    option2_value: Optional[str] = None
    option3_name: Optional[str] = None
    option3_value: Optional[str] = None
    # Only set for records normalized from the store.
    group_ref: Optional[str] = None
    variant_ref: Optional[str] = None
    inventory_item_ref: Optional[str] = None
    location_ref: Optional[str] = None


@dataclass(frozen=True)
class ParsedRow:
    """One data line of a feed file and what became of it."""

    line_number: int
    raw_fields: Dict[str, str]
    record: Optional[CanonicalRecord] = None
    warning: Optional[str] = None


@dataclass
class ParsedFeed:
    records: List[CanonicalRecord]
    rows: List[ParsedRow]
    headers: List[str]

    @property
    def warnings(self) -> List[ParsedRow]:
        return [r for r in self.rows if r.warning]

    def row(self, line_number: int) -> Optional[ParsedRow]:
        for r in self.rows:
            if r.line_number == line_number:
                return r
        return None


class FieldKind(str, Enum):
    PRICE = "Price"
    DUPLICATE_IDENTIFIER = "Duplicate SKU"
    FORBIDDEN_MARKUP = "H1 in Description"
    COMPARE_AT_PRICE = "Compare Price Issue"
    MISSING_REQUIRED_TAG = "Missing Clearance Tag"
    UNEXPECTED_TAG = "Unexpected Clearance Tag"


def discrepancy_key(identifier: str, kind: FieldKind) -> str:
    return f"{identifier}-{kind.value}"


@dataclass(frozen=True)
class Discrepancy:
    """A field-level mismatch between a feed record and the store."""

    kind: ClassVar[FieldKind]
    fixable: ClassVar[bool] = True

    identifier: str
    display_name: str
    local_value: Any
    remote_value: Any
    variant_ref: str
    image_url: Optional[str] = None
    group_ref: str = ""

    @property
    def key(self) -> str:
        return discrepancy_key(self.identifier, self.kind)

    @property
    def label(self) -> str:
        return f"Fixing {self.kind.value} for {self.identifier}"


@dataclass(frozen=True)
class EntityDiscrepancy(Discrepancy):
    """A mismatch fixed on the parent product rather than the variant."""


@dataclass(frozen=True)
class PriceDiscrepancy(Discrepancy):
    kind: ClassVar[FieldKind] = FieldKind.PRICE


@dataclass(frozen=True)
class CompareAtPriceIssue(Discrepancy):
    kind: ClassVar[FieldKind] = FieldKind.COMPARE_AT_PRICE


@dataclass(frozen=True)
class DuplicateIdentifier(Discrepancy):
    kind: ClassVar[FieldKind] = FieldKind.DUPLICATE_IDENTIFIER
    fixable: ClassVar[bool] = False


@dataclass(frozen=True)
class ForbiddenMarkupInDescription(EntityDiscrepancy):
    kind: ClassVar[FieldKind] = FieldKind.FORBIDDEN_MARKUP


@dataclass(frozen=True)
class MissingRequiredTag(EntityDiscrepancy):
    kind: ClassVar[FieldKind] = FieldKind.MISSING_REQUIRED_TAG


@dataclass(frozen=True)
class UnexpectedTag(EntityDiscrepancy):
    kind: ClassVar[FieldKind] = FieldKind.UNEXPECTED_TAG


@dataclass
class GroupImage:
    source_url: str
    group_id: str
    alt_text: Optional[str] = None


@dataclass
class MissingGroup:
    """A product (or part of one) present in the feed but not in the store."""

    group_key: str
    display_name: str
    member_records: List[CanonicalRecord]
    is_new_entity: bool
    is_clearance_group: bool = False
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    product_category: Optional[str] = None
    description: Optional[str] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    tags: Optional[List[str]] = None
    option1_name: Optional[str] = None
    option2_name: Optional[str] = None
    option3_name: Optional[str] = None
    images: List[GroupImage] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.group_key

    @property
    def label(self) -> str:
        return self.display_name

    def assign_image_group(self, source_url: str, group_id: str) -> None:
        """Direct an image to an upload slot; images sharing a slot upload once."""
        for image in self.images:
            if image.source_url == source_url:
                image.group_id = group_id
                return
        raise KeyError(source_url)


class ItemKind(str, Enum):
    MISSING = "missing"
    ISSUES = "issues"


@dataclass
class AuditResult:
    missing_groups: List[MissingGroup]
    discrepancies: List[Discrepancy]
    raw_remote_by_identifier: Dict[str, RemoteVariant] = field(default_factory=dict)

    def remove_item(self, key: str, kind: ItemKind) -> int:
        return self.remove_items([key], kind)

    def remove_items(self, keys: Iterable[str], kind: ItemKind) -> int:
        """Drop items by key. Unknown keys are ignored. Returns the number removed."""
        wanted = set(keys)
        if kind == ItemKind.MISSING:
            before = len(self.missing_groups)
            self.missing_groups = [g for g in self.missing_groups if g.group_key not in wanted]
            return before - len(self.missing_groups)
        before = len(self.discrepancies)
        self.discrepancies = [d for d in self.discrepancies if d.key not in wanted]
        return before - len(self.discrepancies)


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification from a long-running fetch."""

    stage: str
    message: str
    processed: Optional[int] = None
    total: Optional[int] = None
    found: Optional[int] = None


@dataclass(frozen=True)
class BulkItemProgress:
    current: int
    total: int
    label: str


@dataclass
class BulkOutcome:
    """Keys that went through, and the error text of each one that did not."""

    succeeded: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.errors)
