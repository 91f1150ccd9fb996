from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Optional

import requests

from shopaudit.config import DEFAULT_API_VERSION, HTTP_TIMEOUT_SECONDS, normalize_store_domain
from shopaudit.errors import RemoteTransportError, RemoteUserError, ThrottleError

logger = logging.getLogger(__name__)

SHOP_NAME_QUERY = """
query getShopInfo {
  shop {
    name
  }
}
"""


def _is_throttled(errors: Any) -> bool:
    for err in errors or []:
        if not isinstance(err, dict):
            continue
        code = (err.get("extensions") or {}).get("code")
        if code == "THROTTLED" or "throttled" in str(err.get("message", "")).lower():
            return True
    return False


def raise_for_user_errors(data: Dict[str, Any], root_field: str, context: str) -> Dict[str, Any]:
    """Return data[root_field], raising RemoteUserError if it carries userErrors."""
    payload = (data or {}).get(root_field) or {}
    user_errors = payload.get("userErrors") or []
    if user_errors:
        logger.warning("%s userErrors: %s", root_field, user_errors)
        raise RemoteUserError(context, user_errors)
    return payload


class ShopifyClient:
    """Minimal Shopify Admin GraphQL client used by the audit."""

    def __init__(
        self,
        store_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        session: Optional[requests.Session] = None,
        timeout: int = HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.store_domain = normalize_store_domain(store_domain)
        self.access_token = access_token
        self.api_version = api_version
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"https://{self.store_domain}/admin/api/{self.api_version}/{path.lstrip('/')}"

    def execute(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        POST a query document and return the whole response body (data + extensions).

        Raises ThrottleError on rate limiting and RemoteTransportError on any other
        HTTP or top-level GraphQL failure. userErrors are left for the caller.
        """
        body: Dict[str, Any] = {"query": query}
        if variables is not None:
            body["variables"] = variables
        try:
            resp = self.session.post(
                self._url("graphql.json"),
                headers=self._headers(),
                json=body,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise RemoteTransportError(f"Shopify API call failed: {exc}") from exc

        if resp.status_code == 429:
            raise ThrottleError("Shopify API call THROTTLED (HTTP 429)", status_code=429)
        if resp.status_code != 200:
            raise RemoteTransportError(
                f"Shopify API call failed. Status: {resp.status_code}. Body: {resp.text}",
                status_code=resp.status_code,
            )
        try:
            result = resp.json()
        except ValueError as exc:
            raise RemoteTransportError(f"Shopify API response parse failed: {exc}") from exc

        errors = result.get("errors")
        if errors:
            if _is_throttled(errors):
                raise ThrottleError(f"Shopify GraphQL Error: THROTTLED {errors}")
            raise RemoteTransportError(f"Shopify GraphQL Error: {errors}")
        return result

    def query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Like execute() but returns only the data object."""
        return self.execute(query, variables).get("data") or {}

    def download_lines(self, url: str) -> Iterator[str]:
        """Stream a result file line by line (bulk exports are JSON Lines)."""
        try:
            resp = self.session.get(url, stream=True, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise RemoteTransportError(f"Failed to download bulk data: {exc}") from exc
        try:
            if resp.status_code != 200:
                raise RemoteTransportError(
                    f"Failed to download bulk data. Status: {resp.status_code}",
                    status_code=resp.status_code,
                )
            for line in resp.iter_lines(decode_unicode=True):
                if isinstance(line, bytes):
                    line = line.decode("utf-8")
                yield line
        finally:
            resp.close()

    def verify_credentials(self) -> bool:
        data = self.query(SHOP_NAME_QUERY)
        name = (data.get("shop") or {}).get("name")
        if name:
            logger.info("Connected to Shopify store %s (%s)", name, self.store_domain)
        return bool(name)
