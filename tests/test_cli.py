"""Command-line entry point."""

from unittest.mock import MagicMock

import pytest

import shopify_audit
from shopaudit.models import AuditResult, BulkOutcome


@pytest.fixture
def cli_env(monkeypatch, tmp_path, restore_root):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AUDIT_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("SHOPIFY_STORE_DOMAIN", "test-store")
    monkeypatch.setenv("SHOPIFY_ADMIN_TOKEN", "shpat_x")
    monkeypatch.setenv("SHOPIFY_LOCATION_ID", "12345")
    return tmp_path


@pytest.fixture
def fake_session(monkeypatch):
    session = MagicMock()
    session.connect.return_value = True
    session.run_reconciliation.return_value = AuditResult(missing_groups=[], discrepancies=[])
    session.bulk_fix.return_value = BulkOutcome()
    monkeypatch.setattr(shopify_audit.AuditSession, "from_settings", classmethod(lambda cls, s: session))
    return session


def test_missing_input_file_exits(cli_env):
    with pytest.raises(SystemExit) as excinfo:
        shopify_audit.main([str(cli_env / "nope.csv")])
    assert excinfo.value.code == 1


def test_full_audit_run(cli_env, fake_session, sample_csv):
    feed = cli_env / "ShopifyProductImport.csv"
    clearance = cli_env / "clearance_items.csv"
    feed.write_text(sample_csv, encoding="utf-8")
    clearance.write_text("Handle,SKU,Title,Price,StockQuantity\nh9,C1,Sale item,5,1\n", encoding="utf-8")
    report = cli_env / "out.csv"

    shopify_audit.main([str(feed), str(clearance), "--report", str(report), "--fix-all"])

    kwargs = fake_session.run_reconciliation.call_args[1]
    assert kwargs["is_full_catalog_audit"] is True
    assert kwargs["clearance_identifiers"] == {"C1"}
    records = fake_session.run_reconciliation.call_args[0][0]
    assert [r.identifier for r in records] == ["S1", "S2", "S3", "C1"]
    fake_session.bulk_fix.assert_called_once()
    fake_session.bulk_create.assert_not_called()
    assert report.read_text(encoding="utf-8").startswith("MISSING PRODUCTS")


def test_connection_failure_exits(cli_env, fake_session, sample_csv):
    feed = cli_env / "supplier.csv"
    feed.write_text(sample_csv, encoding="utf-8")
    fake_session.connect.return_value = False

    with pytest.raises(SystemExit):
        shopify_audit.main([str(feed)])
    fake_session.run_reconciliation.assert_not_called()


def test_each_run_starts_a_fresh_audit(cli_env, fake_session, sample_csv):
    feed = cli_env / "supplier.csv"
    feed.write_text(sample_csv, encoding="utf-8")

    shopify_audit.main([str(feed), "--report", str(cli_env / "out.csv")])

    fake_session.new_audit.assert_called_once_with()


def test_reuse_cache_keeps_previous_catalog(cli_env, fake_session, sample_csv):
    feed = cli_env / "supplier.csv"
    feed.write_text(sample_csv, encoding="utf-8")

    shopify_audit.main([str(feed), "--reuse-cache", "--report", str(cli_env / "out.csv")])

    fake_session.new_audit.assert_not_called()


def test_windows_1252_feed_is_read(cli_env):
    feed = cli_env / "supplier.csv"
    feed.write_bytes("Handle,SKU,Title,Price,StockQuantity\nh1,S1,Café table,9.99,2\n".encode("cp1252"))

    records = shopify_audit.load_feeds([feed])

    assert [r.display_name for r in records] == ["Café table"]


def test_undecodable_feed_exits_cleanly(cli_env, fake_session):
    feed = cli_env / "supplier.csv"
    feed.write_bytes(b"Handle,SKU,Title,Price,StockQuantity\nh1,S1,Bad \x81 byte,9.99,2\n")

    with pytest.raises(SystemExit) as excinfo:
        shopify_audit.main([str(feed)])

    assert excinfo.value.code == 1
    fake_session.run_reconciliation.assert_not_called()
