"""Coupang Partners affiliate resolver.

Signs requests with HMAC-SHA256 (CEA scheme) and exposes two calls:
`search` (filtered product listings) and `deeplink` (tracked short link).
Neither raises: search degrades to [] and deeplink to the input URL, so
an affiliate outage only ever costs an item its tracked link.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import urllib.parse
from typing import Any

import httpx
import structlog

from deskgarden.config import AffiliateCredentials, Settings, settings
from deskgarden.models.contracts import AffiliateProduct, ProductSearchQuery

log = structlog.get_logger("deskgarden.coupang")

SEARCH_PATH = "/v2/providers/affiliate_open_api/apis/openapi/v1/products/search"
DEEPLINK_PATH = "/v2/providers/affiliate_open_api/apis/openapi/v1/deeplink"
SOLDOUT_KEYWORDS = ("품절", "판매 중인 상품이 아닙니다", "이미지 준비 중")


class CoupangAPIError(RuntimeError):
    """Non-2xx response or unusable body from the Coupang Partners API."""


def sign_request(
    secret_key: str,
    timestamp: str,
    method: str,
    path: str,
    query: str = "",
    body: str = "",
) -> str:
    """Hex HMAC-SHA256 over `timestamp\\nmethod\\npath\\nquery\\nbody`."""
    message = f"{timestamp}\n{method}\n{path}\n{query}\n{body}"
    return hmac.new(secret_key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def authorization_header(credentials: AffiliateCredentials, timestamp: str, signature: str) -> str:
    return (
        f"CEA algorithm=HmacSHA256, access-key={credentials.access_key}, "
        f"signed-date={timestamp}, signature={signature}"
    )


def _includes_all_tokens(value: str, tokens: list[str]) -> bool:
    lowered = value.lower()
    return all(token.lower() in lowered for token in tokens)


def is_valid_listing(raw: dict[str, Any], must_tokens: list[str] | None = None) -> bool:
    """Coupang-hosted, complete, not sold out, and naming every must-token."""
    link = raw.get("productUrl") or raw.get("productUrlMobile") or ""
    image = raw.get("productImage") or raw.get("productImageMobile") or ""
    name = raw.get("productName") or ""
    if not link or not image or not name:
        return False

    try:
        hostname = urllib.parse.urlsplit(str(link)).hostname or ""
    except ValueError:
        hostname = ""
    if not hostname.endswith("coupang.com"):
        return False

    text_blob = f"{name} {raw.get('sellerName') or ''} {raw.get('vendorName') or ''}"
    if any(keyword in text_blob for keyword in SOLDOUT_KEYWORDS):
        return False
    tokens = must_tokens or []
    return not tokens or _includes_all_tokens(str(name), tokens)


def _listing_rows(payload: Any) -> list[dict[str, Any]]:
    """`data` is either the listing array or an object with `productData`."""
    if not isinstance(payload, dict):
        return []
    data = payload.get("data")
    if isinstance(data, dict):
        data = data.get("productData")
    if not isinstance(data, list):
        return []
    return [row for row in data if isinstance(row, dict)]


def _listing_price(raw: dict[str, Any]) -> int | None:
    price = raw.get("productPrice", raw.get("price"))
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return None
    return round(price)


class CoupangProvider:
    """Affiliate resolver bound to one set of credentials.

    Built once per process by the API dependency factory; tests inject an
    `httpx.AsyncClient` backed by `httpx.MockTransport`.
    """

    name = "coupang"

    def __init__(
        self,
        credentials: AffiliateCredentials,
        config: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        config = config or settings
        self._credentials = credentials
        self._host = config.coupang_api_host.rstrip("/")
        self._timeout = config.affiliate_timeout_seconds
        self._client = client

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        body: str = "",
    ) -> Any:
        timestamp = str(int(time.time() * 1000))
        query = urllib.parse.urlencode(params or {})
        signature = sign_request(self._credentials.secret_key, timestamp, method, path, query, body)
        headers = {
            "Authorization": authorization_header(self._credentials, timestamp, signature),
            "Content-Type": "application/json",
            "X-EXTENDED-TIMESTAMP": timestamp,
        }
        url = f"{self._host}{path}" + (f"?{query}" if query else "")

        if self._client is not None:
            response = await self._client.request(
                method, url, headers=headers, content=body or None, timeout=self._timeout
            )
        else:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method, url, headers=headers, content=body or None, timeout=self._timeout
                )

        if response.status_code >= 400:
            raise CoupangAPIError(f"Coupang API {path} failed: {response.status_code} {response.text[:200]}")
        return response.json()

    async def _search_products(self, query: ProductSearchQuery) -> list[AffiliateProduct]:
        params = {"keyword": query.query, "sort": "scoreDesc", "limit": str(query.limit)}
        if self._credentials.partner_id:
            params["subId"] = self._credentials.partner_id

        log.info("coupang_search", query=query.query, tokens=query.must_tokens)
        payload = await self._request("GET", SEARCH_PATH, params=params)

        return [
            AffiliateProduct(
                product_name=row.get("productName") or query.query,
                image_url=row.get("productImage") or row.get("productImageMobile") or "",
                purchase_url=row.get("productUrl") or row.get("productUrlMobile") or "",
                price=_listing_price(row),
            )
            for row in _listing_rows(payload)
            if is_valid_listing(row, query.must_tokens)
        ]

    async def search(self, query: ProductSearchQuery) -> list[AffiliateProduct]:
        try:
            return await self._search_products(query)
        except (httpx.HTTPError, CoupangAPIError, ValueError) as exc:
            # ValueError covers JSON decode errors
            log.warning("coupang_search_failed", query=query.query, error=str(exc) or type(exc).__name__)
            return []

    async def deeplink(self, url: str) -> str:
        if not url:
            return url
        request_body: dict[str, Any] = {"coupangUrls": [url]}
        if self._credentials.partner_id:
            request_body["subId"] = self._credentials.partner_id

        try:
            payload = await self._request("POST", DEEPLINK_PATH, body=json.dumps(request_body))
        except (httpx.HTTPError, CoupangAPIError, ValueError) as exc:
            log.warning("coupang_deeplink_failed", url=url, error=str(exc) or type(exc).__name__)
            return url

        data = payload.get("data") if isinstance(payload, dict) else None
        first = data[0] if isinstance(data, list) and data and isinstance(data[0], dict) else {}
        deeplink = first.get("shortenUrl") or first.get("url") or url
        log.info("coupang_deeplink_ok", url=url, deeplink=deeplink)
        return str(deeplink)
