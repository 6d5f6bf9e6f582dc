"""Catalog and affiliate provider interfaces.

`search` is required of every catalog provider; `search_similar` is an
optional capability detected at runtime with `supports_similar`.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from deskgarden.models.contracts import (
    AffiliateProduct,
    CatalogQuery,
    ProductHit,
    ProductSearchQuery,
    SimilarHit,
    SimilarQuery,
)


class CatalogProvider(Protocol):
    name: str

    async def search(self, query: CatalogQuery) -> list[ProductHit]:
        """Unranked hits for an item identity."""
        ...


@runtime_checkable
class SimilarSearchProvider(Protocol):
    async def search_similar(self, query: SimilarQuery) -> list[SimilarHit]:
        """Alternatives for an item whose ranked candidates were all rejected."""
        ...


class AffiliateResolver(Protocol):
    async def search(self, query: ProductSearchQuery) -> list[AffiliateProduct]:
        """Filtered affiliate listings; empty on any failure."""
        ...

    async def deeplink(self, url: str) -> str:
        """Tracked link for `url`; the input unchanged on any failure."""
        ...


def supports_similar(provider: object) -> bool:
    return isinstance(provider, SimilarSearchProvider)


def provider_name(provider: object) -> str:
    return getattr(provider, "name", type(provider).__name__)
