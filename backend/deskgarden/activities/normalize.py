"""Consultation normalizer: raw model JSON to a validated ConsultationPayload.

Ingestion order for one attempt:
alias reconciliation -> text/array clamps -> summary/after length checks
-> raw item validation -> model conversion with batch hotspot layout
-> dedup by name -> declustering -> price/category normalization.

Alias handling (styleSummary/summary, changedItems/items and the
camelCase item keys) is confined to this module; everything downstream
only sees contract models.
"""

from __future__ import annotations

import copy
import math
from typing import Any

import structlog

from deskgarden.activities.validation import check_lengths, first_text, validate_changed_items
from deskgarden.models.contracts import (
    ALLOWED_CATEGORIES,
    DEFAULT_CATEGORY,
    DEFAULT_LIMITS,
    BoundingBox,
    ConsultationDebug,
    ConsultationPayload,
    HotspotCoordinates,
    NormalizeLimits,
    RecommendedItem,
    ValidationFailure,
)
from deskgarden.utils.geometry import normalize_hotspot_layout
from deskgarden.utils.price import clamp_price, parse_price, to_price_int
from deskgarden.utils.text import clamp_list, clamp_sentences, truncate_with_ellipsis

log = structlog.get_logger("deskgarden.normalize")

NORMALIZED_HOTSPOT_PADDING = 0.05
NORMALIZED_HOTSPOT_MIN_DISTANCE = 0.14
STYLE_SUMMARY_MAX_CHARS = 300
AFTER_DESCRIPTION_MAX_CHARS = 800
CHANGED_ITEMS_MAX_COUNT = 7
DECLUSTER_MIN_DISTANCE = 0.12
DECLUSTER_GRID = 3
DECLUSTER_MIN_KEEP = 2

_TEXT_FIELDS = {
    "before_image_analysis": "beforeImageAnalysis",
    "improvement_points": "improvementPoints",
    "rearrangement_recommendation": "rearrangementRecommendation",
    "changed_desk_analysis": "changedDeskAnalysis",
}


# === Alias Reconciliation & Clamps ===


def harmonize_aliases(raw: dict[str, Any]) -> dict[str, Any]:
    """Deep-copy a raw consultation and fill missing aliases from their twins."""
    draft = copy.deepcopy(raw) if isinstance(raw, dict) else {}

    summary = draft.get("summary") if isinstance(draft.get("summary"), str) else None
    style_summary = draft.get("styleSummary") if isinstance(draft.get("styleSummary"), str) else None
    if not style_summary and summary:
        draft["styleSummary"] = summary
    elif not summary and style_summary:
        draft["summary"] = style_summary

    items = draft.get("items") if isinstance(draft.get("items"), list) else None
    changed = draft.get("changedItems") if isinstance(draft.get("changedItems"), list) else None
    if changed is None and items is not None:
        draft["changedItems"] = items
    elif items is None and changed is not None:
        draft["items"] = changed
    elif changed is None and isinstance(draft.get("recommendedItems"), list):
        draft["changedItems"] = draft["items"] = draft["recommendedItems"]
    return draft


def clamp_text(value: str, max_chars: int, label: str) -> str:
    """Ellipsis-truncate and log a `length_fix` line when anything was cut."""
    if not value or len(value) <= max_chars:
        return value
    truncated = truncate_with_ellipsis(value, max_chars)
    log.info("length_fix", label=label, before=len(value), after=len(truncated))
    return truncated


def normalize_after(draft: dict[str, Any], limits: NormalizeLimits) -> dict[str, Any]:
    """Apply the limit profile's sentence, char and item-count clamps."""
    description = draft.get("afterImageDescription")
    if isinstance(description, str):
        draft["afterImageDescription"] = clamp_sentences(
            description, limits.sentence_max, limits.char_max
        )

    items = draft.get("changedItems")
    if isinstance(items, list) and len(items) > limits.item_max:
        trimmed = clamp_list(items, limits.item_max)
        log.info("length_fix", label="changedItems", before=len(items), after=len(trimmed))
        draft["changedItems"] = trimmed

    draft["styleSummary"] = clamp_text(
        str(draft.get("styleSummary") or ""), STYLE_SUMMARY_MAX_CHARS, "styleSummary"
    )
    draft["afterImageDescription"] = clamp_text(
        str(draft.get("afterImageDescription") or ""),
        min(AFTER_DESCRIPTION_MAX_CHARS, limits.char_max),
        "afterImageDescription",
    )
    return draft


# === Items ===


def _has_usable_hotspot(raw: Any) -> bool:
    if not isinstance(raw, dict):
        return False
    point = raw.get("hotspotCoordinates") or raw.get("hotspot")
    if isinstance(point, dict):
        x, y = point.get("x"), point.get("y")
        if all(isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v) for v in (x, y)):
            return True
    return isinstance(raw.get("boundingBox") or raw.get("box"), dict)


def hotspot_debug(raw_items: list[Any]) -> ConsultationDebug:
    return ConsultationDebug(
        hotspot_count=sum(1 for item in raw_items if _has_usable_hotspot(item)),
        total_items=len(raw_items),
    )


def items_from_raw(
    raw_items: list[dict[str, Any]],
    padding: float = NORMALIZED_HOTSPOT_PADDING,
    min_distance: float = NORMALIZED_HOTSPOT_MIN_DISTANCE,
) -> list[RecommendedItem]:
    """Convert validated raw items into models, laying out hotspots as one batch.

    Each item's own bounding box, when present, locks its hotspot.
    """
    points, boxes = normalize_hotspot_layout(
        [
            {
                "point": raw.get("hotspotCoordinates") or raw.get("hotspot"),
                "box": raw.get("boundingBox") or raw.get("box"),
            }
            for raw in raw_items
        ],
        padding=padding,
        min_distance=min_distance,
    )

    models: list[RecommendedItem] = []
    for idx, raw in enumerate(raw_items):
        box = boxes[idx]
        models.append(
            RecommendedItem(
                id=str(raw.get("id") or f"item-{idx + 1}"),
                name=first_text(raw, "productName", "name") or f"아이템 {idx + 1}",
                description=str(raw.get("description") or ""),
                price=to_price_int(raw.get("price")),
                category=first_text(raw, "category", "productCategory") or DEFAULT_CATEGORY,
                product_category=first_text(raw, "productCategory", "category") or None,
                purchase_url=first_text(raw, "purchaseURL", "purchaseLinkUrl"),
                image_url=first_text(raw, "imageURL", "imageUrl"),
                hotspot_coordinates=HotspotCoordinates(**points[idx]),
                bounding_box=BoundingBox(**box) if box is not None else None,
                is_new_item=raw.get("isNewItem", True) is not False,
            )
        )
    return models


def normalize_name(name: str) -> str:
    return " ".join(str(name or "").lower().split())


def dedupe_by_name(items: list[RecommendedItem]) -> list[RecommendedItem]:
    """Drop later items whose case/space-insensitive name was already seen."""
    seen: set[str] = set()
    out: list[RecommendedItem] = []
    for item in items:
        key = normalize_name(item.name)
        if key and key not in seen:
            seen.add(key)
            out.append(item)
    return out


def grid_cell(point: HotspotCoordinates) -> tuple[int, int]:
    return (math.floor(point.x * DECLUSTER_GRID), math.floor(point.y * DECLUSTER_GRID))


def is_too_close(a: HotspotCoordinates, b: HotspotCoordinates, min_distance: float = DECLUSTER_MIN_DISTANCE) -> bool:
    return math.hypot(a.x - b.x, a.y - b.y) < min_distance


def decluster(items: list[RecommendedItem]) -> list[RecommendedItem]:
    """Keep the first item per 3x3 grid cell and drop near neighbours.

    If fewer than two items would survive, the original list is returned
    untouched.
    """
    used: set[tuple[int, int]] = set()
    out: list[RecommendedItem] = []
    for item in items:
        point = item.hotspot_coordinates
        cell = grid_cell(point)
        if cell in used or any(is_too_close(kept.hotspot_coordinates, point) for kept in out):
            continue
        used.add(cell)
        out.append(item)
    return out if len(out) >= DECLUSTER_MIN_KEEP else items


def coerce_category(value: str | None) -> str:
    category = (value or "").strip()
    return category if category in ALLOWED_CATEGORIES else DEFAULT_CATEGORY


def normalize_prices_and_categories(items: list[RecommendedItem], stage: str) -> list[RecommendedItem]:
    """Drop items without a usable price; clamp prices and coerce categories.

    After enrichment a linked product's KRW price takes precedence over the
    model's estimate.
    """
    out: list[RecommendedItem] = []
    for item in items:
        linked_price = item.linked_product.price_krw if item.linked_product else None
        price = parse_price(linked_price)
        if price is None or price < 0:
            price = parse_price(item.price)
        if price is None or price < 0:
            log.warning("recommendation_price_dropped", item=item.name, stage=stage)
            continue
        raw_category = (item.product_category or item.category or "").strip()
        item.price = clamp_price(price)
        item.category = coerce_category(raw_category)
        item.product_category = raw_category or item.category
        out.append(item)
    return out


def trim_items(items: list[RecommendedItem], label: str) -> list[RecommendedItem]:
    if len(items) <= CHANGED_ITEMS_MAX_COUNT:
        return items
    trimmed = clamp_list(items, CHANGED_ITEMS_MAX_COUNT)
    log.info("length_fix", label=label, before=len(items), after=len(trimmed))
    return trimmed


# === Payload ===


def normalize_consultation(
    raw: dict[str, Any],
    limits: NormalizeLimits = DEFAULT_LIMITS,
    recommendations_enabled: bool = True,
) -> ConsultationPayload | ValidationFailure:
    """Run one ingestion pass over a raw `consultation` object.

    Returns the payload on success, or the first ValidationFailure with the
    clamped draft (or offending item) attached for a repair prompt.
    """
    draft = normalize_after(harmonize_aliases(raw), limits)
    raw_items = draft.get("changedItems") if isinstance(draft.get("changedItems"), list) else []
    debug = hotspot_debug(raw_items)

    failure = check_lengths(draft, limits)
    if failure is not None:
        return failure

    items: list[RecommendedItem] = []
    if recommendations_enabled:
        failure = validate_changed_items(raw_items, min_count=limits.item_min, max_count=limits.item_max)
        if failure is not None:
            return failure
        items = items_from_raw(raw_items)
        items = dedupe_by_name(items)
        items = decluster(items)
        items = normalize_prices_and_categories(items, stage="validation")

    return ConsultationPayload(
        style_summary=draft["styleSummary"],
        after_image_description=draft["afterImageDescription"].strip(),
        items=trim_items(items, "changedItems"),
        debug=debug,
        **{field: str(draft.get(key) or "") for field, key in _TEXT_FIELDS.items()},
    )


def finalize_items(items: list[RecommendedItem], recommendations_enabled: bool) -> list[RecommendedItem]:
    """Post-enrichment pass: flag check, price re-derivation and final trim."""
    if not recommendations_enabled:
        return []
    items = normalize_prices_and_categories(items, stage="enrichment")
    return trim_items(items, "recommendedItems")
