"""Feed parsing: delimiters, header aliases, row validation."""

import pytest

from shopaudit.errors import SchemaError
from shopaudit.feed import (
    detect_delimiter,
    is_clearance_source,
    is_full_catalog_export,
    is_placeholder_image,
    parse_feed,
    parse_feed_file,
)


class TestDelimiterDetection:
    def test_tabs_only_selects_tab(self):
        assert detect_delimiter("a\tb\tc\td\te\tf") == "\t"

    def test_commas_only_selects_comma(self):
        assert detect_delimiter("a,b,c,d,e,f") == ","

    def test_tie_selects_comma(self):
        assert detect_delimiter("a\tb,c") == ","

    def test_no_delimiters_selects_comma(self):
        assert detect_delimiter("handle") == ","


class TestParseFeed:
    def test_basic_rows(self, sample_csv):
        feed = parse_feed(sample_csv)

        assert [r.identifier for r in feed.records] == ["S1", "S2", "S3"]
        assert feed.warnings == []
        first = feed.records[0]
        assert first.group_key == "h1"
        assert first.display_name == "Widget"
        assert first.price == pytest.approx(9.99)
        assert first.stock_quantity == 5
        assert first.vendor == "Acme"
        assert first.tags == ["new", "sale"]
        assert first.is_on_clearance is False

    def test_missing_image_gets_placeholder_per_sku(self, sample_csv):
        feed = parse_feed(sample_csv)
        s2 = feed.records[1]
        assert is_placeholder_image(s2.image_url)
        assert "S2" in s2.image_url

    def test_single_row_scenario(self):
        feed = parse_feed("handle,sku,title,price,stockquantity\nh1,S1,Widget,9.99,5\n")

        assert len(feed.records) == 1
        record = feed.records[0]
        assert (record.group_key, record.identifier) == ("h1", "S1")
        assert record.price == pytest.approx(9.99)
        assert record.stock_quantity == 5

    def test_quoted_field_with_delimiter_and_escaped_quote(self):
        text = 'Handle,SKU,Title,Price,StockQuantity\nh1,S1,"1,000 ""units""",9.99,5\n'
        feed = parse_feed(text)

        assert feed.warnings == []
        assert feed.records[0].display_name == '1,000 "units"'

    def test_tab_delimited_with_aliases(self):
        text = (
            "Handle\tSKU\tTitle\tPrice\tVariant Inventory Qty\tBody (HTML)\tVariant Image\n"
            "h9\tT-1\tLamp\t15.5\t3\t<p>Bright</p>\thttps://cdn.example.com/lamp.jpg\n"
        )
        feed = parse_feed(text)

        record = feed.records[0]
        assert record.identifier == "T-1"
        assert record.stock_quantity == 3
        assert record.description == "<p>Bright</p>"
        assert record.image_url == "https://cdn.example.com/lamp.jpg"

    def test_headers_match_case_insensitively_with_padding(self):
        text = " HANDLE , Sku ,ProductName, PRICE ,Total Inventory\nh1,S1,Widget,1,2\n"
        feed = parse_feed(text)
        assert feed.records[0].display_name == "Widget"

    def test_byte_order_mark_is_ignored(self):
        text = "\ufeffHandle,SKU,Title,Price,StockQuantity\nh1,S1,Widget,1,1\n"
        assert parse_feed(text).records[0].group_key == "h1"

    def test_missing_required_column_raises(self):
        text = "Handle,SKU,Title,StockQuantity\nh1,S1,Widget,5\n"
        with pytest.raises(SchemaError) as excinfo:
            parse_feed(text)
        assert "'price'" in str(excinfo.value)

    def test_empty_input_yields_nothing(self):
        feed = parse_feed("")
        assert feed.records == []
        assert feed.rows == []

    def test_header_only_input_yields_no_rows(self):
        feed = parse_feed("Handle,SKU,Title,Price,StockQuantity\n")
        assert feed.records == []
        assert feed.headers == ["Handle", "SKU", "Title", "Price", "StockQuantity"]

    def test_row_without_sku_is_a_warning(self):
        text = "Handle,SKU,Title,Price,StockQuantity\nh1,,Widget,1,1\nh1,S2,Widget,1,1\n"
        feed = parse_feed(text)

        assert [r.identifier for r in feed.records] == ["S2"]
        assert len(feed.warnings) == 1
        row = feed.warnings[0]
        assert row.line_number == 1
        assert row.warning == "Missing or empty Handle or SKU."
        assert row.raw_fields["Handle"] == "h1"

    def test_unparseable_price_is_a_warning(self):
        text = "Handle,SKU,Title,Price,StockQuantity\nh1,S1,Widget,abc,1\n"
        feed = parse_feed(text)

        assert feed.records == []
        assert "Found Price: 'abc', StockQuantity: '1'" in feed.warnings[0].warning

    def test_negative_price_is_a_warning(self):
        text = "Handle,SKU,Title,Price,StockQuantity\nh1,S1,Widget,-2,1\n"
        feed = parse_feed(text)
        assert feed.records == []
        assert "negative" in feed.warnings[0].warning

    def test_blank_rows_are_skipped(self):
        text = "Handle,SKU,Title,Price,StockQuantity\nh1,S1,Widget,1,1\n,,,,\nh2,S2,Other,2,2\n"
        feed = parse_feed(text)
        assert [r.identifier for r in feed.records] == ["S1", "S2"]
        assert feed.warnings == []

    def test_optional_numbers(self):
        text = (
            "Handle,SKU,Title,Price,StockQuantity,Compare At Price,Cost per item,Variant Grams,Variant Weight Unit\n"
            "h1,S1,Widget,8,1,12.5,3,250,g\n"
        )
        record = parse_feed(text).records[0]
        assert record.compare_at_price == pytest.approx(12.5)
        assert record.cost_per_item == pytest.approx(3.0)
        assert record.weight == pytest.approx(250.0)
        assert record.weight_unit == "g"

    def test_row_lookup_by_line_number(self, sample_csv):
        feed = parse_feed(sample_csv)
        assert feed.row(3).record.identifier == "S3"
        assert feed.row(99) is None

    def test_unterminated_quote_runs_to_end_of_input(self):
        text = (
            "Handle,SKU,Title,Price,StockQuantity\n"
            "h0,S0,Lamp,5,1\n"
            'h1,S1,"Widget,9.99,5\n'
            "h2,S2,Gadget,1,1\n"
        )

        feed = parse_feed(text)

        assert [r.identifier for r in feed.records] == ["S0"]
        assert len(feed.rows) == 2
        broken = feed.rows[1]
        assert broken.record is None
        assert broken.warning.startswith("Could not parse Price or StockQuantity.")
        assert broken.raw_fields["Title"].startswith("Widget,9.99,5")
        assert "h2,S2,Gadget" in broken.raw_fields["Title"]


class TestFileSignals:
    def test_clearance_filename_marks_records(self):
        text = "Handle,SKU,Title,Price,StockQuantity\nh1,S1,Widget,1,1\n"
        feed = parse_feed_file("Summer_CLEARANCE_list.csv", text)
        assert feed.records[0].is_on_clearance is True

    def test_clearance_detection(self):
        assert is_clearance_source("clearance.csv")
        assert not is_clearance_source("products.csv")

    def test_full_export_detection(self):
        assert is_full_catalog_export("2024-ShopifyProductImport.csv")
        assert not is_full_catalog_export("supplier.csv")
