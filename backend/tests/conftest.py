"""Shared fixtures: an in-process API client and a valid raw consultation."""

import copy

import httpx
import pytest

from deskgarden.main import app

# "hello" in base64: decodes fine, but is not an image Pillow can open
TINY_IMAGE = "data:image/png;base64,aGVsbG8="

_ITEMS = [
    ("item-1", "벤큐 스크린바 조명", "책상조명", 0.15, 0.15, "6553924110"),
    ("item-2", "원목 모니터 받침대", "모니터받침대", 0.85, 0.15, "1873004412"),
    ("item-3", "케이블 정리 트레이", "케이블정리", 0.5, 0.5, "7319904521"),
    ("item-4", "울 펠트 데스크매트", "데스크매트", 0.15, 0.85, "4410293381"),
    ("item-5", "미니 화분 세트", "식물/화분", 0.85, 0.85, "5529104476"),
]


def make_raw_item(item_id, name, category, x, y, product_id):
    return {
        "id": item_id,
        "name": name,
        "productName": name,
        "isNewItem": True,
        "hotspotCoordinates": {"x": x, "y": y},
        "description": f"{name}로 책상을 정돈합니다.",
        "price": 39000,
        "category": category,
        "productCategory": category,
        "purchaseURL": f"https://www.coupang.com/vp/products/{product_id}",
        "imageURL": f"https://thumbnail.coupangcdn.com/thumbnails/{product_id}.jpg",
    }


def after_description(sentences: int) -> str:
    return " ".join(f"변화 {i}: 책상이 한층 정돈되었습니다." for i in range(1, sentences + 1))


_RAW_CONSULTATION = {
    "styleSummary": "따뜻한 우드 톤으로 책상을 정리했습니다. 조명과 수납을 더해 집중하기 좋은 공간이 되었습니다.",
    "afterImageDescription": after_description(12),
    "beforeImageAnalysis": "케이블과 소품이 흩어져 있습니다.",
    "improvementPoints": "조명 보강, 케이블 정리, 모니터 높이 조절.",
    "rearrangementRecommendation": "모니터를 중앙에 두고 소품은 오른쪽으로 옮기세요.",
    "changedDeskAnalysis": "시선이 모니터로 모이고 작업 공간이 넓어졌습니다.",
    "changedItems": [make_raw_item(*item) for item in _ITEMS],
}


@pytest.fixture
def raw_consultation():
    """A fresh, valid `consultation` object as the model would return it."""
    return copy.deepcopy(_RAW_CONSULTATION)


@pytest.fixture
async def client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_item():
    return make_raw_item


@pytest.fixture
def after_text():
    return after_description
