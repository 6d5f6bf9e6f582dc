"""In-process catalog of curated desk SKUs.

Always available, needs no credentials, and gives the matching pipeline
something to rank when no network provider is configured.
"""

from __future__ import annotations

import re

from deskgarden.models.contracts import CatalogQuery, ProductHit, SimilarHit, SimilarQuery

_TOKEN_RE = re.compile(r"[^a-z0-9가-힣]+")

CURATED_PRODUCTS: tuple[ProductHit, ...] = (
    ProductHit(
        title="로지텍 MX Keys Mini 무선 키보드 (그라파이트)",
        brand="Logitech",
        model="MX Keys Mini",
        link="https://www.coupang.com/vp/products/6195436702",
        image="https://thumbnail.coupangcdn.com/thumbnails/remote/492x492ex/image/mx-keys-mini.jpg",
        price_krw=129000,
        source="Coupang",
        attrs={"layout": "75%", "color": "gray", "category": "keyboard"},
    ),
    ProductHit(
        title="카멜 듀얼 모니터암 GMA-2DS (화이트)",
        brand="Camel",
        model="GMA-2DS",
        link="https://smartstore.naver.com/camelmount/products/4821159317",
        image="https://shop-phinf.pstatic.net/camel/gma2ds.jpg",
        price_krw=89000,
        source="Naver",
        attrs={"color": "white", "size": "dual", "category": "monitor_arm"},
    ),
    ProductHit(
        title="벤큐 ScreenBar Halo 모니터 조명 램프",
        brand="BenQ",
        model="ScreenBar Halo",
        link="https://www.coupang.com/vp/products/6553924110",
        image="https://thumbnail.coupangcdn.com/thumbnails/remote/492x492ex/image/screenbar-halo.jpg",
        price_krw=219000,
        source="Coupang",
        attrs={"color": "black", "category": "lamp"},
    ),
    ProductHit(
        title="원목 모니터 받침대 스탠드 2단 선반",
        brand="Woodplus",
        model="MS-2",
        link="https://www.coupang.com/vp/products/1873004412",
        image="https://thumbnail.coupangcdn.com/thumbnails/remote/492x492ex/image/wood-stand.jpg",
        price_krw=39900,
        source="Coupang",
        attrs={"material": "wood", "category": "stand"},
    ),
    ProductHit(
        title="Grovemade Wool Felt Desk Pad",
        brand="Grovemade",
        model="Desk Pad",
        link="https://www.amazon.com/dp/B07FKMV8XQ",
        image="https://m.media-amazon.com/images/I/desk-pad.jpg",
        price_krw=159000,
        source="Amazon",
        attrs={"material": "wool", "category": "desk"},
    ),
    ProductHit(
        title="언더데스크 케이블 정리 트레이 선반",
        brand="Baseus",
        model="CT-01",
        link="https://www.coupang.com/vp/products/7319904521",
        image="https://thumbnail.coupangcdn.com/thumbnails/remote/492x492ex/image/cable-tray.jpg",
        price_krw=24900,
        source="Coupang",
        attrs={"color": "black", "category": "shelf"},
    ),
    ProductHit(
        title="시디즈 T50 의자 방석 메모리폼",
        brand="Sidiz",
        model="T50",
        link="https://www.coupang.com/vp/products/5126637709",
        image="https://thumbnail.coupangcdn.com/thumbnails/remote/492x492ex/image/cushion.jpg",
        price_krw=32000,
        source="Coupang",
        attrs={"material": "memory foam", "category": "chair"},
    ),
)


def _tokens(text: str | None) -> set[str]:
    return {t for t in _TOKEN_RE.split((text or "").lower()) if t}


def _haystack(product: ProductHit) -> str:
    return f"{product.title} {product.brand or ''} {product.model or ''}".lower()


def _category_of(product: ProductHit) -> str:
    return str(product.attrs.get("category", ""))


class StaticCatalogProvider:
    """Searches CURATED_PRODUCTS (or an injected list) in memory."""

    name = "static"

    def __init__(self, products: tuple[ProductHit, ...] | list[ProductHit] = CURATED_PRODUCTS) -> None:
        self._products = list(products)

    async def search(self, query: CatalogQuery) -> list[ProductHit]:
        required = _tokens(query.brand) | _tokens(query.model)
        wanted = {t for k in query.keywords for t in _tokens(k)}
        hits: list[ProductHit] = []
        for product in self._products:
            haystack = _haystack(product)
            if not all(token in haystack for token in required):
                continue
            keyword_hit = any(token in haystack for token in wanted)
            category_hit = bool(query.category) and _category_of(product) == query.category
            if keyword_hit or category_hit:
                hits.append(product.model_copy(deep=True))
        return hits

    async def search_similar(self, query: SimilarQuery) -> list[SimilarHit]:
        name_tokens = _tokens(query.name)
        similar: list[SimilarHit] = []
        for product in self._products:
            same_category = bool(query.category) and _category_of(product) == query.category
            if same_category or name_tokens & _tokens(product.title):
                similar.append(
                    SimilarHit(title=product.title, link=product.link, image=product.image, in_stock=True)
                )
        return similar
