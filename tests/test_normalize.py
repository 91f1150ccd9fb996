"""Store variant normalization."""

import pytest

from shopaudit.config import TargetLocation
from shopaudit.feed import is_placeholder_image
from shopaudit.normalize import normalize_variants, stock_at_location


def test_maps_core_fields(location, variant_factory):
    raw = variant_factory(
        "S1",
        price="12.50",
        compare_at="20.00",
        tags=["Clearance"],
        image_url="https://cdn.example.com/s1.jpg",
    )
    records, index = normalize_variants([raw], location)

    record = records[0]
    assert record.identifier == "S1"
    assert record.group_key == "h1"
    assert record.display_name == "Widget"
    assert record.price == pytest.approx(12.5)
    assert record.compare_at_price == pytest.approx(20.0)
    assert record.stock_quantity == 5
    assert record.tags == ["Clearance"]
    assert record.image_url == "https://cdn.example.com/s1.jpg"
    assert record.variant_ref == "gid://shopify/ProductVariant/S1"
    assert record.group_ref == "gid://shopify/Product/1"
    assert record.location_ref == location.gid
    assert index["S1"] is raw


def test_drops_variants_without_product_or_sku(location, variant_factory):
    orphan = variant_factory("S2")
    orphan["product"] = None
    no_sku = variant_factory("")
    records, index = normalize_variants([orphan, no_sku, variant_factory("S3")], location)

    assert [r.identifier for r in records] == ["S3"]
    assert list(index) == ["S3"]


def test_duplicate_sku_index_keeps_last(location, variant_factory):
    first = variant_factory("DUP", product_id="gid://shopify/Product/1")
    second = variant_factory("DUP", product_id="gid://shopify/Product/2")
    records, index = normalize_variants([first, second], location)

    assert len(records) == 2
    assert index["DUP"] is second


def test_missing_image_uses_placeholder(location, variant_factory):
    records, _ = normalize_variants([variant_factory("S1")], location)
    assert is_placeholder_image(records[0].image_url)


def test_missing_compare_at_is_none(location, variant_factory):
    records, _ = normalize_variants([variant_factory("S1", compare_at=None)], location)
    assert records[0].compare_at_price is None


class TestStockAtLocation:
    def test_other_location_counts_as_zero(self, location, variant_factory):
        raw = variant_factory("S1", quantity=9, location_legacy_id="999")
        assert stock_at_location(raw, location) == 0

    def test_matches_by_gid_when_legacy_id_absent(self, location, variant_factory):
        raw = variant_factory("S1", quantity=7)
        level = raw["inventoryItem"]["inventoryLevels"]["edges"][0]["node"]
        level["location"] = {"id": location.gid}
        assert stock_at_location(raw, location) == 7

    def test_picks_target_among_several_levels(self, variant_factory):
        target = TargetLocation.parse("gid://shopify/Location/42")
        raw = variant_factory("S1", quantity=3, location_legacy_id="1")
        raw["inventoryItem"]["inventoryLevels"]["edges"].append(
            {
                "node": {
                    "quantities": [{"name": "available", "quantity": 11}],
                    "location": {"id": "gid://shopify/Location/42", "legacyResourceId": "42"},
                }
            }
        )
        assert stock_at_location(raw, target) == 11

    def test_no_inventory_item(self, location, variant_factory):
        raw = variant_factory("S1")
        raw["inventoryItem"] = None
        assert stock_at_location(raw, location) == 0
