"""Shared test fixtures for the audit test suite."""

import logging
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from shopaudit.config import TargetLocation
from shopaudit.models import CanonicalRecord

LOCATION_LEGACY_ID = "12345"


@pytest.fixture
def location():
    return TargetLocation.parse(LOCATION_LEGACY_ID)


def make_variant(
    sku: str,
    price: str = "10.00",
    handle: str = "h1",
    title: str = "Widget",
    product_id: str = "gid://shopify/Product/1",
    variant_id: Optional[str] = None,
    compare_at: Optional[str] = None,
    tags: Optional[List[str]] = None,
    description: str = "<p>Plain</p>",
    quantity: int = 5,
    location_legacy_id: str = LOCATION_LEGACY_ID,
    image_url: Optional[str] = None,
) -> Dict[str, Any]:
    """A store variant node shaped like the Admin GraphQL response."""
    return {
        "id": variant_id or f"gid://shopify/ProductVariant/{sku}",
        "sku": sku,
        "price": price,
        "compareAtPrice": compare_at,
        "image": {"id": f"gid://shopify/ProductImage/{sku}", "url": image_url} if image_url else None,
        "product": {
            "id": product_id,
            "title": title,
            "handle": handle,
            "descriptionHtml": description,
            "tags": list(tags or []),
        },
        "inventoryItem": {
            "id": f"gid://shopify/InventoryItem/{sku}",
            "inventoryLevels": {
                "edges": [
                    {
                        "node": {
                            "quantities": [{"name": "available", "quantity": quantity}],
                            "location": {
                                "id": f"gid://shopify/Location/{location_legacy_id}",
                                "legacyResourceId": location_legacy_id,
                            },
                        }
                    }
                ]
            },
        },
    }


def make_record(
    sku: str,
    price: float = 10.0,
    handle: str = "h1",
    name: str = "Widget",
    stock: int = 5,
    **kwargs: Any,
) -> CanonicalRecord:
    """A feed-side record."""
    return CanonicalRecord(
        group_key=handle,
        identifier=sku,
        display_name=name,
        price=price,
        stock_quantity=stock,
        **kwargs,
    )


@pytest.fixture
def variant_factory():
    return make_variant


@pytest.fixture
def record_factory():
    return make_record


class GraphQLRouter:
    """
    Routes client.query() calls to canned responses by a substring of the
    query document (e.g. the root field name).

    A response may be a dict, an exception instance (raised), or a list that is
    consumed one item per call.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, Any] = {}
        self.calls: List[tuple] = []

    def add(self, marker: str, response: Any) -> None:
        self.routes[marker] = response

    def calls_for(self, marker: str) -> List[tuple]:
        return [c for c in self.calls if marker in c[0]]

    def __call__(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.calls.append((query, variables))
        for marker, response in self.routes.items():
            if marker not in query:
                continue
            if isinstance(response, list):
                response = response.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        raise AssertionError(f"Unexpected query: {query[:80]!r}")


@pytest.fixture
def router():
    return GraphQLRouter()


@pytest.fixture
def mock_client(router):
    """A ShopifyClient stand-in whose query() goes through the router."""
    client = MagicMock()
    client.store_domain = "test-store.myshopify.com"
    client.query.side_effect = router
    return client


@pytest.fixture
def sleeps():
    """Records requested sleeps instead of sleeping."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


@pytest.fixture
def sample_csv():
    return (
        "Handle,SKU,Title,Price,StockQuantity,ImageUrl,Vendor,Tags\n"
        "h1,S1,Widget,9.99,5,https://cdn.example.com/s1.jpg,Acme,\"new, sale\"\n"
        "h1,S2,Widget,10.49,0,,Acme,\n"
        "h2,S3,Gadget,25,12,https://cdn.example.com/s3.jpg,Globex,\n"
    )


@pytest.fixture
def restore_root():
    """Puts the root logger back the way pytest set it up."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
