"""Tests for contract model invariants."""

import pytest
from pydantic import ValidationError

from deskgarden.models.contracts import (
    DEFAULT_LIMITS,
    STRICT_LIMITS,
    BoundingBox,
    ConsultationPayload,
    ErrorResponse,
    HotspotCoordinates,
    LinkedProduct,
    RecommendedItem,
    decide_match_type,
)


class TestMatchType:
    @pytest.mark.parametrize(
        "confidence,expected",
        [(1.0, "exact"), (0.75, "exact"), (0.74, "close"), (0.5, "close"), (0.49, "style"), (0.0, "style")],
    )
    def test_buckets(self, confidence, expected):
        assert decide_match_type(confidence) == expected

    def test_linked_product_derives_match_type(self):
        product = LinkedProduct(title="램프", confidence=0.6)
        assert product.match_type == "close"
        assert product.model_dump()["match_type"] == "close"

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            LinkedProduct(title="램프", confidence=1.2)


class TestGeometryModels:
    def test_hotspot_bounds(self):
        with pytest.raises(ValidationError):
            HotspotCoordinates(x=1.1, y=0.5)

    def test_box_must_fit_unit_square(self):
        with pytest.raises(ValidationError):
            BoundingBox(x=0.9, y=0.1, w=0.2, h=0.2)

    def test_box_zero_area_rejected(self):
        with pytest.raises(ValidationError):
            BoundingBox(x=0.1, y=0.1, w=0, h=0.2)

    def test_box_contains(self):
        box = BoundingBox(x=0.2, y=0.2, w=0.2, h=0.2)
        assert box.contains(HotspotCoordinates(x=0.3, y=0.4))
        assert not box.contains(HotspotCoordinates(x=0.5, y=0.3))


class TestRecommendedItem:
    def test_defaults(self):
        item = RecommendedItem(id="item-1", name="램프")
        assert item.category == "기타"
        assert item.hotspot_coordinates == HotspotCoordinates(x=0.5, y=0.5)
        assert item.is_new_item is True
        assert item.seller_id == "ai-recommendation"

    def test_negative_price_rejected(self):
        with pytest.raises(ValidationError):
            RecommendedItem(id="item-1", name="램프", price=-1)


class TestConsultationPayload:
    def test_mirrors_serialized(self):
        payload = ConsultationPayload(
            style_summary="요약.",
            items=[RecommendedItem(id="item-1", name="램프")],
        )
        dumped = payload.model_dump()
        assert dumped["summary"] == "요약."
        assert dumped["changed_items"] == dumped["items"]
        assert dumped["recommended_items"] == dumped["items"]


class TestLimits:
    def test_profiles(self):
        assert (DEFAULT_LIMITS.sentence_min, DEFAULT_LIMITS.sentence_max, DEFAULT_LIMITS.char_max) == (10, 14, 800)
        assert (STRICT_LIMITS.sentence_min, STRICT_LIMITS.sentence_max, STRICT_LIMITS.char_max) == (9, 12, 600)
        assert STRICT_LIMITS.item_max == 5

    def test_limits_are_frozen(self):
        with pytest.raises(ValidationError):
            DEFAULT_LIMITS.char_max = 10


class TestErrorResponse:
    def test_detail_optional(self):
        error = ErrorResponse(error="consultation_failed", message="실패", retryable=True)
        assert error.detail is None
