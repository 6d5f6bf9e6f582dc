"""Field and count validation for raw consultation output.

Runs on the ingestion-stage dicts (model field names, camelCase aliases
included) before anything is converted into contract models. Checks
repair what they can in place and report the first unrecoverable
problem as a ValidationFailure, which the orchestrator turns into a
targeted critique prompt.
"""

from __future__ import annotations

import math
import urllib.parse
from typing import Any

import structlog

from deskgarden.models.contracts import ALLOWED_PURCHASE_DOMAINS, NormalizeLimits, ValidationFailure
from deskgarden.utils.geometry import clamp01
from deskgarden.utils.price import parse_price
from deskgarden.utils.text import sentence_count

log = structlog.get_logger("deskgarden.validation")

SUMMARY_MIN_SENTENCES = 2


def first_text(raw: dict[str, Any], *keys: str) -> str:
    """First non-empty string value among alias keys, stripped."""
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def _hostname(url: str) -> str | None:
    try:
        parsed = urllib.parse.urlsplit(url.strip())
    except ValueError:
        return None
    if parsed.scheme != "https" or not parsed.hostname:
        return None
    return parsed.hostname.lower()


def is_https_url(url: str | None) -> bool:
    return bool(url) and _hostname(str(url)) is not None


def is_allowed_purchase_url(url: str | None) -> bool:
    """https:// and hosted on an allow-listed marketplace (subdomains included)."""
    if not url:
        return False
    host = _hostname(str(url))
    if host is None:
        return False
    return any(host == suffix or host.endswith(f".{suffix}") for suffix in ALLOWED_PURCHASE_DOMAINS)


def _repair_hotspot(raw: dict[str, Any]) -> dict[str, float]:
    hotspot = raw.get("hotspotCoordinates") or raw.get("hotspot")
    if not isinstance(hotspot, dict):
        return {"x": 0.5, "y": 0.5}
    x, y = hotspot.get("x"), hotspot.get("y")
    for value in (x, y):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            return {"x": 0.5, "y": 0.5}
    return {"x": clamp01(x), "y": clamp01(y)}


def validate_changed_items(
    items: Any,
    min_count: int = 2,
    max_count: int = 7,
) -> ValidationFailure | None:
    """Validate and coerce raw item dicts in place.

    Returns the first failure found, or None when every item passes.
    Invalid prices are coerced to None and logged rather than rejected.
    """
    if not isinstance(items, list) or not min_count <= len(items) <= max_count:
        count = len(items) if isinstance(items, list) else 0
        return ValidationFailure(
            reason="DOT_COUNT",
            payload={"changedItems": items},
            detail=f"expected {min_count}-{max_count} items, got {count}",
        )

    for index, item in enumerate(items):
        if not isinstance(item, dict) or item.get("isNewItem") is not True:
            return ValidationFailure(reason="IS_NEW_FALSE", payload={"item": item}, detail=f"index={index}")

        item["hotspotCoordinates"] = _repair_hotspot(item)

        name = first_text(item, "productName", "name")
        if not name:
            return ValidationFailure(reason="NAME_MISSING", payload={"item": item}, detail=f"index={index}")
        item["productName"] = name
        item["name"] = name

        price = parse_price(item.get("price"))
        if price is None or price < 0:
            log.warning("recommendation_price_invalid", item=name, price=item.get("price"))
            item["price"] = None
        else:
            item["price"] = price

        category = first_text(item, "productCategory", "category")
        if not category:
            return ValidationFailure(reason="CATEGORY_MISSING", payload={"item": item}, detail=f"index={index}")
        item["productCategory"] = category
        item["category"] = category

        purchase_url = first_text(item, "purchaseURL", "purchaseLinkUrl")
        if not is_allowed_purchase_url(purchase_url):
            return ValidationFailure(
                reason="PURCHASE_URL_INVALID",
                payload={"item": item},
                detail=purchase_url[:200],
            )

        image_url = first_text(item, "imageURL", "imageUrl")
        if not is_https_url(image_url):
            return ValidationFailure(
                reason="IMAGE_URL_INVALID",
                payload={"item": item},
                detail=image_url[:200],
            )

    return None


def check_lengths(draft: dict[str, Any], limits: NormalizeLimits) -> ValidationFailure | None:
    """Summary and after-description length checks on a clamped draft."""
    summary = str(draft.get("styleSummary") or "")
    if sentence_count(summary) < SUMMARY_MIN_SENTENCES:
        return ValidationFailure(
            reason="LEN_SUMMARY",
            payload=draft,
            detail=f"sentences={sentence_count(summary)}",
        )

    description = str(draft.get("afterImageDescription") or "").strip()
    sentences = sentence_count(description)
    if (
        not description
        or sentences < limits.sentence_min
        or sentences > limits.sentence_max
        or len(description) > limits.char_max
    ):
        return ValidationFailure(
            reason="LEN_AFTER",
            payload=draft,
            detail=f"sentences={sentences} chars={len(description)}",
        )
    return None
