"""Product matching pipeline: identify, search, rank, validate, link.

Per recommended item:
1. Identify: pick the extracted search identity for the item
2. Hybrid search: every catalog provider, concurrently, failures isolated
3. Rank: weighted brand/model/category/attribute overlap
4. Validate top-down: domain allow-list, product-page pattern, sold-out
   keywords, image present
5. Similar fallback: optional provider capability, tried sequentially
6. Commit, then convert Coupang links into affiliate deeplinks

Items that end up with no validated product are marked unavailable with
the placeholder status instead of failing the consultation.
"""

from __future__ import annotations

import asyncio
import re
import urllib.parse
from dataclasses import dataclass
from typing import Any

import structlog

from deskgarden.models.contracts import (
    ALLOWED_PURCHASE_DOMAINS,
    PLACEHOLDER_STATUS,
    AffiliateProduct,
    CatalogQuery,
    ExtractedItem,
    LinkedProduct,
    ProductHit,
    ProductSearchQuery,
    ProductSource,
    RecommendedItem,
    SimilarHit,
    SimilarQuery,
)
from deskgarden.providers.base import (
    AffiliateResolver,
    CatalogProvider,
    provider_name,
    supports_similar,
)

log = structlog.get_logger("deskgarden.shopping")

SOLDOUT_KEYWORDS = (
    "품절",
    "품 절",
    "일시품절",
    "일시 품절",
    "재고없음",
    "재고 없음",
    "판매중단",
    "판매 중단",
    "단종",
    "soldout",
    "sold out",
    "out of stock",
    "currently unavailable",
    "not available",
    "unavailable",
    "현재 판매 중인 상품이 아닙니다",
)

COUPANG_HOST_WHITELIST = frozenset({"www.coupang.com", "m.coupang.com"})
COUPANG_PRODUCT_PATTERNS = (
    re.compile(r"^/vp/products/\d+"),
    re.compile(r"^/np/products/\d+"),
    re.compile(r"^/vp/subscription/\d+"),
)
COUPANG_PATH_BLOCKLIST = (
    "/np/search",
    "/np/categories",
    "/np/campaigns",
    "/np/promotion",
    "/np/coupangglobal",
    "/np/coupangglobalmall",
    "/vp/events",
)
COUPANG_QUERY_BLOCKLIST = ("soldout", "oos", "isavailable=false", "soldout=true", "outofstock=true")
AMAZON_PRODUCT_PATTERNS = (
    re.compile(r"^/dp/[a-z0-9]{5,}", re.IGNORECASE),
    re.compile(r"^/gp/product/[a-z0-9]{5,}", re.IGNORECASE),
    re.compile(r"^/gp/aw/d/[a-z0-9]{5,}", re.IGNORECASE),
)
SMARTSTORE_PRODUCT_PATTERN = re.compile(r"/products/\d+")

BRAND_WEIGHT = 0.45
MODEL_WEIGHT = 0.35
CATEGORY_WEIGHT = 0.15
ATTRS_MAX_BONUS = 0.2
SIMILAR_FALLBACK_CONFIDENCE = 0.4
AFFILIATE_CONFIDENCE = 0.9
AFFILIATE_SEARCH_LIMIT = 10
DEFAULT_AFFILIATE_QUERY = "데스크 용품"

# Korean item words -> catalog category keys; longer words first so
# "모니터암" is not swallowed by "모니터"
CATEGORY_KEYWORDS: dict[str, str] = {
    "모니터암": "monitor_arm",
    "키보드": "keyboard",
    "마우스": "mouse",
    "모니터": "monitor",
    "스탠드": "stand",
    "램프": "lamp",
    "조명": "lamp",
    "선반": "shelf",
    "의자": "chair",
    "책상": "desk",
}
NAME_KEYWORD_LIMIT = 6
DESCRIPTION_KEYWORD_LIMIT = 20
KEYWORD_LIMIT = 10

_SIMILARITY_TOKEN_RE = re.compile(r"[^a-z0-9가-힣]+")
_SCORE_NORM_RE = re.compile(r"[^a-z0-9가-힣]")
_KEYWORD_STRIP_RE = re.compile(r"[^\w\s]|_")


# === Step 1: Search identities ===


def _keyword_tokens(text: str) -> list[str]:
    return _KEYWORD_STRIP_RE.sub(" ", text).split()


def guess_category(name: str) -> str | None:
    lowered = name.lower()
    for word, key in CATEGORY_KEYWORDS.items():
        if word in lowered:
            return key
    return None


def build_extracted_items(
    after_description: str | None,
    items: list[RecommendedItem],
) -> list[ExtractedItem]:
    """One search identity per item, keywords enriched from the after-description."""
    extracted = [
        ExtractedItem(
            name=item.name,
            category=guess_category(item.name),
            keywords=_keyword_tokens(item.name)[:NAME_KEYWORD_LIMIT],
        )
        for item in items
    ]

    description_tokens = _keyword_tokens(after_description or "")[:DESCRIPTION_KEYWORD_LIMIT]
    if description_tokens:
        for identity in extracted:
            merged = list(dict.fromkeys([*identity.keywords, *description_tokens]))
            identity.keywords = merged[:KEYWORD_LIMIT]
    return extracted


def pick_identity(label: str, extracted: list[ExtractedItem]) -> ExtractedItem | None:
    """Identity named in the label, then one sharing its category, else the first one."""
    if not extracted:
        return None
    lowered = (label or "").lower().strip()
    for identity in extracted:
        name = identity.name.lower().strip()
        if name and name in lowered:
            return identity
    category = guess_category(lowered)
    if category is not None:
        for identity in extracted:
            if identity.category == category:
                return identity
    return extracted[0]


def build_tokens(identity: ExtractedItem | None) -> list[str]:
    """Brand/model tokens every affiliate listing name must contain."""
    if identity is None:
        return []
    return [token for token in (identity.brand, identity.model) if token]


# === Step 2: Hybrid search ===


async def hybrid_search(
    identity: ExtractedItem,
    providers: list[CatalogProvider],
    timeout: float,
) -> list[ProductHit]:
    """Fan out to every provider; failed providers contribute nothing."""
    if not providers:
        return []
    query = CatalogQuery(
        keywords=identity.keywords,
        brand=identity.brand,
        model=identity.model,
        category=identity.category,
    )
    tasks = [asyncio.wait_for(provider.search(query), timeout=timeout) for provider in providers]
    results = await asyncio.gather(*tasks, return_exceptions=True)

    seen_links: set[str] = set()
    deduped: list[ProductHit] = []
    for provider, result in zip(providers, results, strict=True):
        if isinstance(result, BaseException):
            log.warning(
                "catalog_provider_failed",
                provider=provider_name(provider),
                error=str(result) or type(result).__name__,
            )
            continue
        for hit in result:
            if hit.link in seen_links:
                continue
            seen_links.add(hit.link)
            deduped.append(hit)
    return deduped


# === Step 3: Rank ===


def _norm(text: str | None) -> str:
    return " ".join(_SCORE_NORM_RE.sub(" ", (text or "").lower()).split())


def _includes(haystack: str, needle: str) -> bool:
    return needle in haystack or all(word in haystack for word in needle.split(" "))


def score(identity: ExtractedItem, hit: ProductHit) -> float:
    """Weighted attribute overlap between an identity and a hit, in [0, 1]."""
    text = _norm(f"{hit.title} {hit.brand or ''} {hit.model or ''}")
    total = 0.0
    for value, weight in (
        (identity.brand, BRAND_WEIGHT),
        (identity.model, MODEL_WEIGHT),
        (identity.category, CATEGORY_WEIGHT),
    ):
        needle = _norm(value)
        if needle and _includes(text, needle):
            total += weight

    if identity.attrs and hit.attrs:
        matched = [v for v in identity.attrs.values() if _includes(text, _norm(str(v)))]
        total += min(ATTRS_MAX_BONUS, len(matched) / max(1, len(identity.attrs)) * ATTRS_MAX_BONUS)
    return min(1.0, total)


def rank_candidates(identity: ExtractedItem, hits: list[ProductHit]) -> list[tuple[ProductHit, float]]:
    ranked = [(hit, score(identity, hit)) for hit in hits]
    ranked.sort(key=lambda pair: pair[1], reverse=True)
    return ranked


# === Step 4: Validation ===


def _parse_url(url: str) -> urllib.parse.SplitResult | None:
    try:
        parsed = urllib.parse.urlsplit(url.strip())
    except ValueError:
        return None
    if not parsed.scheme or not parsed.hostname:
        return None
    return parsed


def is_allowed_domain(url: str | None) -> bool:
    if not url:
        return False
    parsed = _parse_url(url)
    if parsed is None or parsed.hostname is None:
        return False
    host = parsed.hostname.lower()
    return any(host == domain or host.endswith(f".{domain}") for domain in ALLOWED_PURCHASE_DOMAINS)


def contains_sold_out(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in SOLDOUT_KEYWORDS)


def is_likely_product_url(url: str | None) -> bool:
    """Whether a URL looks like a single product page on its marketplace."""
    if not url:
        return False
    parsed = _parse_url(url)
    if parsed is None or parsed.hostname is None:
        return False
    host = parsed.hostname.lower()
    path = parsed.path

    if host.endswith("coupang.com"):
        if host not in COUPANG_HOST_WHITELIST:
            return False
        if any(path.startswith(prefix) for prefix in COUPANG_PATH_BLOCKLIST):
            return False
        if not any(pattern.match(path) for pattern in COUPANG_PRODUCT_PATTERNS):
            return False
        query = parsed.query.lower()
        return not any(token in query for token in COUPANG_QUERY_BLOCKLIST)
    if any(host.endswith(suffix) for suffix in ("amazon.com", "amazon.co.kr", "amazon.co", "amazon.jp")):
        return any(pattern.match(path) for pattern in AMAZON_PRODUCT_PATTERNS)
    if host.endswith("smartstore.naver.com"):
        return SMARTSTORE_PRODUCT_PATTERN.search(path) is not None
    return True


@dataclass(frozen=True)
class CandidateCheck:
    ok: bool
    reason: str | None = None


def validate_candidate(candidate: ProductHit | SimilarHit) -> CandidateCheck:
    """Reasons, in check order: missing-link, domain, non-product, soldout, no-image."""
    if not candidate.link:
        return CandidateCheck(ok=False, reason="missing-link")
    if not is_allowed_domain(candidate.link):
        return CandidateCheck(ok=False, reason="domain")
    if not is_likely_product_url(candidate.link):
        return CandidateCheck(ok=False, reason="non-product")
    if contains_sold_out(candidate.title) or contains_sold_out(candidate.link):
        return CandidateCheck(ok=False, reason="soldout")
    if not candidate.image:
        return CandidateCheck(ok=False, reason="no-image")
    return CandidateCheck(ok=True)


def _similarity_tokens(text: str | None) -> set[str]:
    return {t for t in _SIMILARITY_TOKEN_RE.split((text or "").lower()) if t}


def name_similarity(a: str | None, b: str | None) -> float:
    """Jaccard overlap of lowercase alphanumeric/Hangul tokens."""
    set_a, set_b = _similarity_tokens(a), _similarity_tokens(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def source_for_link(link: str) -> ProductSource:
    parsed = _parse_url(link)
    host = (parsed.hostname or "").lower() if parsed else ""
    if host.endswith("coupang.com"):
        return "Coupang"
    if host.endswith("naver.com"):
        return "Naver"
    if ".amazon." in f".{host}":
        return "Amazon"
    return "Internal"


# === Steps 4-5: Choose ===


@dataclass
class ChosenProduct:
    title: str
    link: str
    image: str | None
    score: float
    fallback_used: bool
    similarity: float
    price_krw: int | None = None
    brand: str | None = None
    model: str | None = None
    source: ProductSource | None = None
    attrs: dict[str, Any] | None = None


def choose_ranked(
    identity: ExtractedItem,
    ranked: list[tuple[ProductHit, float]],
) -> ChosenProduct | None:
    """First ranked candidate that passes validation."""
    for idx, (hit, hit_score) in enumerate(ranked):
        check = validate_candidate(hit)
        if check.ok:
            return ChosenProduct(
                title=hit.title,
                link=hit.link,
                image=hit.image,
                score=hit_score,
                fallback_used=idx > 0,
                similarity=name_similarity(identity.name, hit.title),
                price_krw=hit.price_krw,
                brand=hit.brand,
                model=hit.model,
                source=hit.source,
                attrs=ranked[0][0].attrs,
            )
        log.info("product_candidate_rejected", reason=check.reason, link=hit.link or "unknown-link")
    return None


async def choose_similar(
    identity: ExtractedItem,
    providers: list[CatalogProvider],
    timeout: float,
) -> ChosenProduct | None:
    """Ask providers for alternatives one at a time; first validated one wins."""
    query = SimilarQuery(name=identity.name, category=identity.category)
    for provider in providers:
        if not supports_similar(provider):
            continue
        try:
            alternatives = await asyncio.wait_for(provider.search_similar(query), timeout=timeout)  # type: ignore[attr-defined]
        except Exception as exc:
            log.warning(
                "product_fallback_search_failed",
                provider=provider_name(provider),
                error=str(exc) or type(exc).__name__,
            )
            continue

        for alt in alternatives or []:
            if not alt.link:
                continue
            check = validate_candidate(alt)
            if not check.ok:
                log.info("product_fallback_rejected", reason=check.reason, link=alt.link)
                continue
            return ChosenProduct(
                title=alt.title,
                link=alt.link,
                image=alt.image,
                score=SIMILAR_FALLBACK_CONFIDENCE,
                fallback_used=True,
                similarity=name_similarity(identity.name, alt.title),
            )
    return None


# === Step 6: Commit ===


def commit_product(item: RecommendedItem, identity: ExtractedItem, chosen: ChosenProduct) -> None:
    """Attach the chosen product; existing non-fallback links are preserved."""
    item.linked_product = LinkedProduct(
        title=chosen.title or item.name,
        brand=chosen.brand,
        model=chosen.model,
        category=identity.category,
        attrs=chosen.attrs or {},
        link=chosen.link,
        price_krw=chosen.price_krw,
        image=chosen.image,
        source=chosen.source or source_for_link(chosen.link),
        confidence=max(0.0, min(1.0, chosen.score)),
    )
    if not item.purchase_url or chosen.fallback_used:
        item.purchase_url = chosen.link
    if chosen.image and (not item.image_url or chosen.fallback_used):
        item.image_url = chosen.image
    if chosen.price_krw is not None:
        item.price = chosen.price_krw
    item.in_stock = True
    item.stock_status = None
    item.fallback_used = chosen.fallback_used
    if chosen.fallback_used:
        item.fallback_purchase_url = chosen.link
    log.info(
        "product_linked",
        title=chosen.title,
        similarity=round(chosen.similarity, 2),
        fallback_used=chosen.fallback_used,
    )


def apply_affiliate_product(
    item: RecommendedItem,
    product: AffiliateProduct,
    confidence: float = AFFILIATE_CONFIDENCE,
) -> None:
    """Overwrite an item's links, image and price with an affiliate listing."""
    item.purchase_url = product.purchase_url
    item.image_url = product.image_url
    item.in_stock = product.in_stock
    item.stock_status = None if product.in_stock else PLACEHOLDER_STATUS
    if product.price is not None:
        item.price = product.price
    if product.product_name:
        item.name = product.product_name

    existing = item.linked_product
    platform = product.platform or "Coupang"
    item.linked_product = LinkedProduct(
        title=product.product_name or item.name,
        brand=existing.brand if existing else None,
        model=existing.model if existing else None,
        category=existing.category if existing else None,
        attrs=existing.attrs if existing else {},
        link=product.purchase_url,
        image=product.image_url,
        price_krw=product.price if product.price is not None else (existing.price_krw if existing else None),
        source="Coupang" if platform == "Coupang" else source_for_link(product.purchase_url),
        confidence=confidence,
        is_affiliate=product.is_affiliate,
        platform=platform,
    )


def mark_unavailable(item: RecommendedItem, reason: str) -> None:
    """Terminal Unavailable state: purchase links cleared, placeholder status shown."""
    log.warning("affiliate_link_failed", item=item.name, reason=reason)
    item.in_stock = False
    item.purchase_url = ""
    item.fallback_purchase_url = None
    item.stock_status = PLACEHOLDER_STATUS
    existing = item.linked_product
    item.linked_product = LinkedProduct(
        title=existing.title if existing else item.name,
        brand=existing.brand if existing else None,
        model=existing.model if existing else None,
        category=existing.category if existing else None,
        link="",
        price_krw=existing.price_krw if existing else None,
        image=(existing.image if existing else None) or item.image_url or None,
        source=existing.source if existing else "Coupang",
        confidence=0.0,
        is_affiliate=False,
        platform=(existing.platform if existing else None) or "Coupang",
    )


# === Affiliate links ===


async def _deeplink_match(item: RecommendedItem, affiliate: AffiliateResolver, timeout: float) -> None:
    """Swap a committed Coupang link for its tracked deeplink."""
    linked = item.linked_product
    if linked is None or source_for_link(linked.link) != "Coupang":
        return
    original = linked.link
    deeplink = await asyncio.wait_for(affiliate.deeplink(original), timeout=timeout)
    linked.link = deeplink
    linked.is_affiliate = deeplink != original
    linked.platform = "Coupang"
    if item.purchase_url == original:
        item.purchase_url = deeplink
    if item.fallback_purchase_url == original:
        item.fallback_purchase_url = deeplink
    log.info("affiliate_link_ok", item=item.name, link=deeplink)


async def _affiliate_search(
    item: RecommendedItem,
    identity: ExtractedItem,
    affiliate: AffiliateResolver,
    timeout: float,
) -> bool:
    """Fill an unmatched item from the affiliate resolver's own search."""
    query = ProductSearchQuery(
        query=identity.name or item.name or DEFAULT_AFFILIATE_QUERY,
        must_tokens=build_tokens(identity),
        limit=AFFILIATE_SEARCH_LIMIT,
    )
    results = await asyncio.wait_for(affiliate.search(query), timeout=timeout)
    if not results:
        return False
    chosen = results[0]
    deeplink = await asyncio.wait_for(affiliate.deeplink(chosen.purchase_url), timeout=timeout)
    apply_affiliate_product(item, chosen.model_copy(update={"purchase_url": deeplink}))
    log.info("affiliate_link_ok", item=item.name, link=deeplink)
    return True


# === Main entrypoint ===


async def attach_products(
    items: list[RecommendedItem],
    *,
    extracted: list[ExtractedItem],
    providers: list[CatalogProvider],
    affiliate: AffiliateResolver | None,
    provider_timeout: float = 10.0,
    affiliate_timeout: float = 10.0,
) -> list[RecommendedItem]:
    """Resolve a real, in-stock product for every item, mutating items in place.

    `affiliate` is None when affiliate credentials are not configured; every
    item then goes straight to the unavailable state.
    """
    for item in items:
        if affiliate is None:
            mark_unavailable(item, "missing-affiliate-env")
            continue

        identity = pick_identity(item.name, extracted)
        if identity is None:
            mark_unavailable(item, "no-search-candidate")
            continue

        hits = await hybrid_search(identity, providers, provider_timeout)
        chosen = choose_ranked(identity, rank_candidates(identity, hits))
        if chosen is None:
            chosen = await choose_similar(identity, providers, provider_timeout)

        try:
            if chosen is not None:
                commit_product(item, identity, chosen)
                await _deeplink_match(item, affiliate, affiliate_timeout)
            elif not await _affiliate_search(item, identity, affiliate, affiliate_timeout):
                mark_unavailable(item, "no-affiliate-results")
        except TimeoutError:
            if chosen is None:
                mark_unavailable(item, "affiliate-timeout")
            else:
                log.warning("affiliate_link_failed", item=item.name, reason="affiliate-timeout")

    return items
