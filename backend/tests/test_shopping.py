"""Tests for the product matching pipeline.

Covers identity building, ranking, candidate validation (domain, product
page patterns, sold-out detection), the similar-item fallback, affiliate
linking, and the unavailable state.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from deskgarden.activities.shopping import (
    AFFILIATE_CONFIDENCE,
    ChosenProduct,
    apply_affiliate_product,
    attach_products,
    build_extracted_items,
    build_tokens,
    choose_ranked,
    choose_similar,
    commit_product,
    contains_sold_out,
    guess_category,
    hybrid_search,
    is_allowed_domain,
    is_likely_product_url,
    mark_unavailable,
    name_similarity,
    pick_identity,
    rank_candidates,
    score,
    source_for_link,
    validate_candidate,
)
from deskgarden.models.contracts import (
    PLACEHOLDER_STATUS,
    AffiliateProduct,
    CatalogQuery,
    ExtractedItem,
    LinkedProduct,
    ProductHit,
    ProductSearchQuery,
    RecommendedItem,
    SimilarHit,
    SimilarQuery,
)
from deskgarden.providers.static_catalog import StaticCatalogProvider

LAMP_URL = "https://www.coupang.com/vp/products/6553924110"
LAMP_IMAGE = "https://thumbnail.coupangcdn.com/thumbnails/lamp.jpg"


def _item(name="벤큐 스크린바 조명", **kwargs) -> RecommendedItem:
    return RecommendedItem(id="item-1", name=name, price=39000, category="책상조명", **kwargs)


def _hit(title="벤큐 ScreenBar 램프", link=LAMP_URL, image=LAMP_IMAGE, **kwargs) -> ProductHit:
    return ProductHit(title=title, link=link, image=image, **kwargs)


class _StaticProvider:
    def __init__(self, hits, name="fake"):
        self.name = name
        self.hits = hits
        self.queries: list[CatalogQuery] = []

    async def search(self, query):
        self.queries.append(query)
        return list(self.hits)


class _FailingProvider:
    name = "broken"

    async def search(self, query):
        raise RuntimeError("provider down")


class _SlowProvider:
    name = "slow"

    async def search(self, query):
        await asyncio.sleep(1.0)
        return [_hit(title="too late")]


class _SimilarProvider:
    name = "similar"

    def __init__(self, alternatives):
        self.alternatives = alternatives
        self.queries: list[SimilarQuery] = []

    async def search(self, query):
        return []

    async def search_similar(self, query: SimilarQuery):
        self.queries.append(query)
        return list(self.alternatives)


class _BrokenSimilarProvider:
    name = "broken"

    async def search(self, query):
        return []

    async def search_similar(self, query: SimilarQuery):
        raise RuntimeError("similar search down")


def _affiliate(deeplink="https://link.coupang.com/a/tracked", results=None) -> AsyncMock:
    affiliate = AsyncMock()
    affiliate.deeplink.return_value = deeplink
    affiliate.search.return_value = results or []
    return affiliate


# === Identity ===


class TestIdentity:
    def test_build_tokens_brand_and_model(self):
        identity = ExtractedItem(name="키보드", brand="Logitech", model="MX")
        assert build_tokens(identity) == ["Logitech", "MX"]

    def test_build_tokens_none(self):
        assert build_tokens(None) == []
        assert build_tokens(ExtractedItem(name="키보드")) == []

    def test_guess_category_prefers_longer_keyword(self):
        assert guess_category("듀얼 모니터암") == "monitor_arm"
        assert guess_category("27인치 모니터") == "monitor"
        assert guess_category("미니 화분") is None

    def test_build_extracted_items_merges_description_keywords(self):
        items = [_item("원목 모니터 받침대")]
        [identity] = build_extracted_items("따뜻한 조명이 켜집니다.", items)
        assert identity.name == "원목 모니터 받침대"
        assert identity.category == "monitor"
        assert identity.keywords[:3] == ["원목", "모니터", "받침대"]
        assert "따뜻한" in identity.keywords

    def test_pick_identity_by_name(self):
        extracted = [ExtractedItem(name="미니 화분"), ExtractedItem(name="무선 키보드")]
        assert pick_identity("로지텍 무선 키보드", extracted).name == "무선 키보드"

    def test_pick_identity_by_category(self):
        extracted = [ExtractedItem(name="화분"), ExtractedItem(name="키보드 A", category="keyboard")]
        assert pick_identity("기계식 키보드", extracted).name == "키보드 A"

    def test_pick_identity_falls_back_to_first(self):
        extracted = [ExtractedItem(name="화분"), ExtractedItem(name="램프")]
        assert pick_identity("데스크매트", extracted).name == "화분"

    def test_pick_identity_empty(self):
        assert pick_identity("anything", []) is None


# === Ranking ===


class TestScoring:
    def test_brand_and_model_weights(self):
        identity = ExtractedItem(name="키보드", brand="Logitech", model="MX Keys")
        hit = ProductHit(title="로지텍 MX Keys Mini", brand="Logitech")
        assert score(identity, hit) == pytest.approx(0.8)

    def test_category_weight(self):
        identity = ExtractedItem(name="lamp", category="lamp")
        assert score(identity, ProductHit(title="LED desk lamp")) == pytest.approx(0.15)

    def test_attrs_bonus_is_proportional(self):
        identity = ExtractedItem(name="x", attrs={"color": "white", "size": "dual"})
        hit = ProductHit(title="white monitor arm", attrs={"color": "white"})
        assert score(identity, hit) == pytest.approx(0.1)

    def test_score_clamped_to_one(self):
        identity = ExtractedItem(
            name="x", brand="Camel", model="GMA", category="arm", attrs={"color": "white"}
        )
        hit = ProductHit(title="Camel GMA arm white", attrs={"color": "white"})
        assert score(identity, hit) == 1.0

    def test_rank_orders_by_score(self):
        identity = ExtractedItem(name="x", brand="BenQ")
        ranked = rank_candidates(identity, [ProductHit(title="generic lamp"), ProductHit(title="BenQ lamp")])
        assert [hit.title for hit, _ in ranked] == ["BenQ lamp", "generic lamp"]

    def test_name_similarity(self):
        assert name_similarity("a b c", "a b d") == pytest.approx(0.5)
        assert name_similarity("", "a") == 0.0


# === Validation ===


class TestDomainAndUrls:
    def test_allowed_domain(self):
        assert is_allowed_domain("https://www.coupang.com/vp/products/1")
        assert not is_allowed_domain("https://example.com/vp/products/1")
        assert not is_allowed_domain("")

    def test_coupang_search_rejected_product_accepted(self):
        assert not is_likely_product_url("https://www.coupang.com/np/search?q=lamp")
        assert is_likely_product_url("https://www.coupang.com/vp/products/12345")

    def test_coupang_unknown_host_rejected(self):
        assert not is_likely_product_url("https://shop.coupang.com/vp/products/12345")

    def test_coupang_soldout_query_rejected(self):
        assert not is_likely_product_url("https://www.coupang.com/vp/products/12345?soldout=true")

    def test_amazon_search_rejected_dp_accepted(self):
        assert not is_likely_product_url("https://www.amazon.com/s?k=desk+lamp")
        assert is_likely_product_url("https://www.amazon.com/dp/B0C12345XY")

    def test_smartstore_requires_product_path(self):
        assert is_likely_product_url("https://smartstore.naver.com/shop/products/4821159317")
        assert not is_likely_product_url("https://smartstore.naver.com/shop/category/1")

    def test_sold_out_detection(self):
        assert contains_sold_out("일시 품절 상품")
        assert contains_sold_out("Sold Out")
        assert not contains_sold_out("In stock, ships tomorrow")
        assert not contains_sold_out(None)

    def test_source_for_link(self):
        assert source_for_link(LAMP_URL) == "Coupang"
        assert source_for_link("https://smartstore.naver.com/a/products/1") == "Naver"
        assert source_for_link("https://www.amazon.co.kr/dp/B0C12345XY") == "Amazon"
        assert source_for_link("https://example.com") == "Internal"


class TestValidateCandidate:
    def test_valid_candidate(self):
        assert validate_candidate(_hit()).ok

    def test_sold_out_title(self):
        check = validate_candidate(_hit(title="[품절] 모니터 조명", link="https://www.coupang.com/vp/products/99999"))
        assert not check.ok
        assert check.reason == "soldout"

    def test_coupang_search_page(self):
        check = validate_candidate(_hit(link="https://www.coupang.com/np/search?q=lamp"))
        assert check.reason == "non-product"

    def test_missing_link(self):
        assert validate_candidate(_hit(link="")).reason == "missing-link"

    def test_foreign_domain(self):
        assert validate_candidate(_hit(link="https://example.com/products/1")).reason == "domain"

    def test_missing_image(self):
        assert validate_candidate(_hit(image=None)).reason == "no-image"

    def test_similar_hit_supported(self):
        assert validate_candidate(SimilarHit(title="lamp", link=LAMP_URL, image=LAMP_IMAGE)).ok


# === Choosing ===


class TestChoose:
    def test_choose_ranked_skips_rejected(self):
        identity = ExtractedItem(name="램프")
        ranked = [(_hit(image=None), 0.9), (_hit(title="램프 B", link="https://www.coupang.com/vp/products/2"), 0.5)]
        chosen = choose_ranked(identity, ranked)
        assert chosen.title == "램프 B"
        assert chosen.fallback_used is True
        assert chosen.score == 0.5

    def test_choose_ranked_top_hit(self):
        chosen = choose_ranked(ExtractedItem(name="램프"), [(_hit(), 0.8)])
        assert chosen.fallback_used is False

    def test_choose_ranked_none(self):
        assert choose_ranked(ExtractedItem(name="램프"), [(_hit(link=""), 0.8)]) is None

    def test_choose_similar_skips_providers_without_capability(self):
        alternative = SimilarHit(title="대체 램프", link=LAMP_URL, image=LAMP_IMAGE)
        chosen = asyncio.run(
            choose_similar(
                ExtractedItem(name="램프"),
                [_StaticProvider([]), _SimilarProvider([SimilarHit(title="no link"), alternative])],
                timeout=1.0,
            )
        )
        assert chosen.title == "대체 램프"
        assert chosen.fallback_used is True
        assert chosen.score == pytest.approx(0.4)

    def test_choose_similar_nothing_valid(self):
        sold_out = SimilarHit(title="품절 램프", link=LAMP_URL, image=LAMP_IMAGE)
        chosen = asyncio.run(choose_similar(ExtractedItem(name="램프"), [_SimilarProvider([sold_out])], 1.0))
        assert chosen is None

    def test_choose_similar_stops_at_first_valid_provider(self):
        first = _SimilarProvider([SimilarHit(title="대체 램프", link=LAMP_URL, image=LAMP_IMAGE)])
        second = _SimilarProvider([SimilarHit(title="다른 램프", link=LAMP_URL, image=LAMP_IMAGE)])
        chosen = asyncio.run(choose_similar(ExtractedItem(name="램프"), [first, second], 1.0))
        assert chosen.title == "대체 램프"
        assert len(first.queries) == 1
        assert second.queries == []

    def test_choose_similar_failing_provider_is_skipped(self):
        broken = _BrokenSimilarProvider()
        working = _SimilarProvider([SimilarHit(title="대체 램프", link=LAMP_URL, image=LAMP_IMAGE)])
        with patch("deskgarden.activities.shopping.log") as log:
            chosen = asyncio.run(choose_similar(ExtractedItem(name="램프"), [broken, working], 1.0))
        assert chosen.title == "대체 램프"
        assert len(working.queries) == 1
        log.warning.assert_called_once_with(
            "product_fallback_search_failed", provider="broken", error="similar search down"
        )


class TestHybridSearch:
    def test_failed_provider_ignored_and_links_deduped(self):
        first = _StaticProvider([_hit(), _hit(title="other", link="https://www.coupang.com/vp/products/2")])
        second = _StaticProvider([_hit(title="duplicate link")])
        hits = asyncio.run(
            hybrid_search(ExtractedItem(name="램프", brand="BenQ"), [first, _FailingProvider(), second], 1.0)
        )
        assert [hit.title for hit in hits] == ["벤큐 ScreenBar 램프", "other"]
        assert first.queries[0].brand == "BenQ"

    def test_no_providers(self):
        assert asyncio.run(hybrid_search(ExtractedItem(name="램프"), [], 1.0)) == []

    def test_hung_provider_times_out_without_failing_batch(self):
        hits = asyncio.run(
            hybrid_search(ExtractedItem(name="램프"), [_SlowProvider(), _StaticProvider([_hit()])], 0.01)
        )
        assert [hit.title for hit in hits] == ["벤큐 ScreenBar 램프"]

    def test_static_catalog_brand_filter(self):
        provider = StaticCatalogProvider()
        hits = asyncio.run(provider.search(CatalogQuery(keywords=["키보드"], brand="Logitech")))
        assert [hit.brand for hit in hits] == ["Logitech"]

    def test_static_catalog_category_match(self):
        provider = StaticCatalogProvider()
        hits = asyncio.run(provider.search(CatalogQuery(category="monitor_arm")))
        assert [hit.model for hit in hits] == ["GMA-2DS"]


# === Commit / affiliate / unavailable ===


class TestItemUpdates:
    def test_commit_keeps_existing_link_for_top_hit(self):
        item = _item(purchase_url="https://www.coupang.com/vp/products/1", image_url="https://img/1.jpg")
        chosen = ChosenProduct(
            title="램프", link=LAMP_URL, image=LAMP_IMAGE, score=0.8, fallback_used=False, similarity=0.5
        )
        commit_product(item, ExtractedItem(name="램프", category="lamp"), chosen)
        assert item.purchase_url == "https://www.coupang.com/vp/products/1"
        assert item.linked_product.link == LAMP_URL
        assert item.linked_product.match_type == "exact"
        assert item.linked_product.source == "Coupang"
        assert item.in_stock is True

    def test_commit_fallback_overrides_link(self):
        item = _item(purchase_url="https://www.coupang.com/vp/products/1")
        chosen = ChosenProduct(
            title="램프", link=LAMP_URL, image=LAMP_IMAGE, score=0.4, fallback_used=True, similarity=0.2
        )
        commit_product(item, ExtractedItem(name="램프"), chosen)
        assert item.purchase_url == LAMP_URL
        assert item.fallback_purchase_url == LAMP_URL
        assert item.fallback_used is True
        assert item.linked_product.match_type == "style"

    def test_apply_affiliate_product(self):
        item = _item()
        product = AffiliateProduct(
            product_name="로지텍 MX Keys Mini",
            image_url="https://thumbnail.coupangcdn.com/mx.jpg",
            purchase_url="https://link.coupang.com/a/mx",
            price=129000,
            is_affiliate=True,
            platform="Coupang",
        )
        apply_affiliate_product(item, product)
        assert item.purchase_url == "https://link.coupang.com/a/mx"
        assert item.price == 129000
        assert item.linked_product.platform == "Coupang"
        assert item.linked_product.is_affiliate is True
        assert item.linked_product.confidence == AFFILIATE_CONFIDENCE

    def test_mark_unavailable(self):
        item = _item(purchase_url=LAMP_URL, fallback_purchase_url=LAMP_URL)
        item.linked_product = LinkedProduct(title="램프", link=LAMP_URL, price_krw=39000, confidence=0.8)
        mark_unavailable(item, "no-affiliate-results")
        assert item.in_stock is False
        assert item.purchase_url == ""
        assert item.fallback_purchase_url is None
        assert item.stock_status == PLACEHOLDER_STATUS
        assert item.linked_product.confidence == 0.0
        assert item.linked_product.price_krw == 39000


class TestAttachProducts:
    def _run(self, items, providers, affiliate):
        return asyncio.run(
            attach_products(
                items,
                extracted=build_extracted_items(None, items),
                providers=providers,
                affiliate=affiliate,
                provider_timeout=1.0,
                affiliate_timeout=1.0,
            )
        )

    def test_missing_affiliate_marks_all_unavailable(self):
        items = [_item(purchase_url=LAMP_URL), _item("미니 화분")]
        self._run(items, [_StaticProvider([_hit()])], None)
        assert all(item.stock_status == PLACEHOLDER_STATUS for item in items)
        assert all(item.purchase_url == "" for item in items)

    def test_no_identity_marks_unavailable(self):
        item = _item()
        asyncio.run(attach_products([item], extracted=[], providers=[], affiliate=_affiliate()))
        assert item.in_stock is False

    def test_ranked_match_is_deeplinked(self):
        item = _item()
        affiliate = _affiliate()
        self._run([item], [_StaticProvider([_hit()])], affiliate)
        affiliate.deeplink.assert_awaited_once_with(LAMP_URL)
        assert item.purchase_url == "https://link.coupang.com/a/tracked"
        assert item.linked_product.link == "https://link.coupang.com/a/tracked"
        assert item.linked_product.is_affiliate is True
        assert item.in_stock is True

    def test_non_coupang_match_not_deeplinked(self):
        item = _item()
        hit = _hit(link="https://www.amazon.com/dp/B0C12345XY", image="https://m.media-amazon.com/a.jpg")
        affiliate = _affiliate()
        self._run([item], [_StaticProvider([hit])], affiliate)
        affiliate.deeplink.assert_not_awaited()
        assert item.purchase_url == "https://www.amazon.com/dp/B0C12345XY"
        assert item.linked_product.source == "Amazon"

    def test_similar_fallback_used(self):
        item = _item()
        alternative = SimilarHit(title="대체 조명", link=LAMP_URL, image=LAMP_IMAGE)
        provider = _SimilarProvider([alternative])
        self._run([item], [provider], _affiliate(deeplink=LAMP_URL))
        assert item.fallback_used is True
        assert item.fallback_purchase_url == LAMP_URL
        assert item.linked_product.is_affiliate is False

    def test_affiliate_search_when_nothing_matches(self):
        item = _item()
        product = AffiliateProduct(
            product_name="벤큐 스크린바 헤일로",
            image_url=LAMP_IMAGE,
            purchase_url=LAMP_URL,
            price=219000,
        )
        affiliate = _affiliate(results=[product])
        self._run([item], [_StaticProvider([])], affiliate)
        query: ProductSearchQuery = affiliate.search.await_args.args[0]
        assert query.query == "벤큐 스크린바 조명"
        assert item.purchase_url == "https://link.coupang.com/a/tracked"
        assert item.price == 219000
        assert item.linked_product.confidence == AFFILIATE_CONFIDENCE

    def test_no_affiliate_results_marks_unavailable(self):
        item = _item()
        self._run([item], [_StaticProvider([])], _affiliate())
        assert item.stock_status == PLACEHOLDER_STATUS
        assert item.in_stock is False

    def test_deeplink_timeout_keeps_committed_link(self):
        item = _item()
        affiliate = _affiliate()
        affiliate.deeplink.side_effect = TimeoutError()
        self._run([item], [_StaticProvider([_hit()])], affiliate)
        assert item.purchase_url == LAMP_URL
        assert item.in_stock is True

    def test_failing_provider_does_not_fail_item(self):
        item = _item()
        self._run([item], [_FailingProvider(), _StaticProvider([_hit()])], _affiliate())
        assert item.linked_product.title == "벤큐 ScreenBar 램프"
