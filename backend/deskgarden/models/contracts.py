"""Desk Garden contract models.

Canonical, snake_case shapes for everything the consultation pipeline
hands across module boundaries. Raw model output (camelCase, aliased,
untrusted) never reaches these models directly: ingestion in
activities/normalize.py resolves aliases first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, model_validator

# === Shared Types ===

ProductSource = Literal["Coupang", "Naver", "Amazon", "Internal"]
MatchType = Literal["exact", "close", "style"]
AttrValue = str | int | float | bool

PLACEHOLDER_STATUS = "상품 준비 중"
DEFAULT_CATEGORY = "기타"
ALLOWED_CATEGORIES: frozenset[str] = frozenset(
    {
        "책상조명",
        "모니터받침대",
        "케이블정리",
        "데스크매트",
        "선반",
        "식물/화분",
        "의자방석",
        DEFAULT_CATEGORY,
    }
)

# Purchase links must be https and hosted on one of these (subdomains included)
ALLOWED_PURCHASE_DOMAINS: tuple[str, ...] = (
    "coupang.com",
    "smartstore.naver.com",
    "amazon.com",
    "amazon.co",
    "amazon.co.kr",
    "amazon.jp",
)

EXACT_MATCH_THRESHOLD = 0.75
CLOSE_MATCH_THRESHOLD = 0.5


def decide_match_type(confidence: float) -> MatchType:
    """Map a [0, 1] confidence onto the fixed match-type buckets."""
    if confidence >= EXACT_MATCH_THRESHOLD:
        return "exact"
    if confidence >= CLOSE_MATCH_THRESHOLD:
        return "close"
    return "style"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HotspotCoordinates(BaseModel):
    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)


class BoundingBox(BaseModel):
    """Top-left anchored box in unit-square coordinates."""

    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)
    w: float = Field(gt=0, le=1)
    h: float = Field(gt=0, le=1)

    @model_validator(mode="after")
    def _fits_unit_square(self) -> BoundingBox:
        if self.x + self.w > 1 + 1e-9 or self.y + self.h > 1 + 1e-9:
            raise ValueError("bounding box must lie inside the unit square")
        return self

    def contains(self, point: HotspotCoordinates, tolerance: float = 1e-9) -> bool:
        return (
            self.x - tolerance <= point.x <= self.x + self.w + tolerance
            and self.y - tolerance <= point.y <= self.y + self.h + tolerance
        )


class LinkedProduct(BaseModel):
    """The real product resolved for a recommended item.

    match_type is derived from confidence on every read, so the two can
    never disagree.
    """

    title: str
    brand: str | None = None
    model: str | None = None
    category: str | None = None
    attrs: dict[str, AttrValue] = {}
    link: str = ""
    price_krw: int | None = None
    image: str | None = None
    source: ProductSource = "Internal"
    confidence: float = Field(ge=0, le=1)
    fetched_at: datetime = Field(default_factory=_utcnow)
    is_affiliate: bool = False
    platform: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def match_type(self) -> MatchType:
        return decide_match_type(self.confidence)


class RecommendedItem(BaseModel):
    """One piece of furniture/decor surfaced to the user.

    Mutated in place by the normalizer and the product-matching stages
    during a single consultation request.
    """

    id: str
    name: str
    description: str = ""
    price: int | None = Field(default=None, ge=0)
    category: str = DEFAULT_CATEGORY
    product_category: str | None = None  # raw label from the model
    purchase_url: str = ""
    image_url: str = ""
    hotspot_coordinates: HotspotCoordinates = Field(
        default_factory=lambda: HotspotCoordinates(x=0.5, y=0.5)
    )
    bounding_box: BoundingBox | None = None
    linked_product: LinkedProduct | None = None
    in_stock: bool | None = None
    stock_status: str | None = None
    fallback_used: bool = False
    fallback_purchase_url: str | None = None
    is_new_item: bool = True
    seller_id: str = "ai-recommendation"


class ConsultationDebug(BaseModel):
    hotspot_count: int = 0
    total_items: int = 0


class ConsultationPayload(BaseModel):
    """Structured consultation returned to the UI layer.

    `summary`, `changed_items` and `recommended_items` are output mirrors
    of `style_summary` and `items`; only the canonical fields are stored.
    """

    style_summary: str = ""
    after_image_description: str = ""
    before_image_analysis: str = ""
    improvement_points: str = ""
    rearrangement_recommendation: str = ""
    changed_desk_analysis: str = ""
    items: list[RecommendedItem] = []
    debug: ConsultationDebug = Field(default_factory=ConsultationDebug)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def summary(self) -> str:
        return self.style_summary

    @computed_field  # type: ignore[prop-decorator]
    @property
    def changed_items(self) -> list[RecommendedItem]:
        return self.items

    @computed_field  # type: ignore[prop-decorator]
    @property
    def recommended_items(self) -> list[RecommendedItem]:
        return self.items


# === Normalization Limits ===


class NormalizeLimits(BaseModel):
    model_config = {"frozen": True}

    sentence_min: int = 10
    sentence_max: int = 14
    char_max: int = 800
    item_min: int = 5
    item_max: int = 7


DEFAULT_LIMITS = NormalizeLimits()
STRICT_LIMITS = NormalizeLimits(
    sentence_min=9,
    sentence_max=12,
    char_max=600,
    item_min=5,
    item_max=5,
)


# === Validation Results ===

ValidationReason = Literal[
    "DOT_COUNT",
    "IS_NEW_FALSE",
    "NAME_MISSING",
    "CATEGORY_MISSING",
    "PURCHASE_URL_INVALID",
    "IMAGE_URL_INVALID",
    "LEN_SUMMARY",
    "LEN_AFTER",
    "JSON_OUTER_NOT_FOUND",
    "JSON_PARSE_ERROR",
    "GENERATION_FAILED",
]


@dataclass(frozen=True)
class ValidationFailure:
    """A named, repairable validation failure.

    `payload` is the partially valid JSON the critique prompt should
    reference when asking the model to fix only the broken parts.
    """

    reason: ValidationReason
    payload: dict[str, Any] = field(default_factory=dict)
    detail: str = ""


# === Product Search ===


class ExtractedItem(BaseModel):
    """Search identity inferred for one recommended item."""

    name: str
    brand: str | None = None
    model: str | None = None
    category: str | None = None
    attrs: dict[str, AttrValue] = {}
    keywords: list[str] = []


class CatalogQuery(BaseModel):
    keywords: list[str] = []
    brand: str | None = None
    model: str | None = None
    category: str | None = None


class SimilarQuery(BaseModel):
    name: str | None = None
    category: str | None = None


class ProductHit(BaseModel):
    """Unranked catalog hit."""

    title: str
    brand: str | None = None
    model: str | None = None
    link: str = ""
    image: str | None = None
    price_krw: int | None = None
    source: ProductSource | None = None
    attrs: dict[str, AttrValue] = {}


class SimilarHit(BaseModel):
    title: str = ""
    link: str = ""
    image: str | None = None
    in_stock: bool | None = None


class ProductSearchQuery(BaseModel):
    query: str
    must_tokens: list[str] = []
    limit: int = Field(default=10, ge=1, le=100)


class AffiliateProduct(BaseModel):
    product_name: str
    image_url: str
    purchase_url: str
    price: int | None = None
    is_affiliate: bool = True
    in_stock: bool = True
    platform: str = "Coupang"


# === API Request/Response Models ===


class ConsultationRequest(BaseModel):
    image: str = Field(min_length=1)  # data URI of the "before" desk photo
    style: str = Field(min_length=1)
    user_prompt: str = ""


class AfterImageRequest(BaseModel):
    image: str = Field(min_length=1)
    style: str = Field(min_length=1)
    prompt: str = ""


class AfterImageResponse(BaseModel):
    image: str  # data URI


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool
    detail: str | None = None
