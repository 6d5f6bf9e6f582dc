"""Consultation orchestrator: generate, validate, repair, retry, enrich.

States: Generating -> Validating -> (Retrying -> Validating) -> Enriching
-> Done, or Failed. Retries are bounded: one strict-profile repair for an
over-long after-description and one critique generation for everything
else. A second failure raises ConsultationFailed.
"""

from __future__ import annotations

import asyncio
import json
from functools import cache
from pathlib import Path
from typing import Any, Protocol

import structlog

from deskgarden.activities.normalize import finalize_items, normalize_consultation
from deskgarden.activities.shopping import attach_products, build_extracted_items
from deskgarden.config import (
    AffiliateCredentialsMissing,
    Settings,
    resolve_affiliate_credentials,
    settings,
)
from deskgarden.models.contracts import (
    DEFAULT_LIMITS,
    STRICT_LIMITS,
    ConsultationPayload,
    ValidationFailure,
)
from deskgarden.providers.base import AffiliateResolver, CatalogProvider
from deskgarden.providers.coupang import CoupangProvider
from deskgarden.providers.static_catalog import StaticCatalogProvider
from deskgarden.utils.gemini import MODEL_CALL_ERRORS, GeminiConsultationModel
from deskgarden.utils.image import resize_image_for_ai
from deskgarden.utils.safe_json import ENVELOPE_KEY, ParseError, safe_parse_json
from deskgarden.utils.text import sentence_count

log = structlog.get_logger("deskgarden.consultation")

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

USER_FAILURE_MESSAGE = "AI가 유효한 형식의 응답을 생성하지 못했습니다."
PREVIOUS_JSON_MAX_CHARS = 6000

LENGTH_DIRECTIVE = (
    "styleSummary ≤ 300 chars; afterImageDescription ≤ 800 chars; "
    "changedItems/items must be 5–7 entries."
)
JSON_GUARD_BASE = (
    f"{LENGTH_DIRECTIVE} Return ONLY one JSON object with top-level key 'consultation'. "
    "No markdown fences or extra text."
)
JSON_GUARD_STRICT = (
    f"{LENGTH_DIRECTIVE} Only JSON. Absolutely no extra characters. "
    "Keep response under 800 tokens. Top-level key must be 'consultation'."
)


class ConsultationFailed(RuntimeError):
    """Both generation attempts failed to produce a valid consultation."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        self.user_message = USER_FAILURE_MESSAGE
        super().__init__(f"{USER_FAILURE_MESSAGE} ({reason})")


class ConsultationModel(Protocol):
    async def generate(self, prompt: str, image: str, temperature: float | None = None) -> str: ...


# === Response Schema ===

_ITEM_PROPERTIES: dict[str, Any] = {
    "id": {"type": "STRING", "description": "아이템 고유 ID, 예: 'item-1'"},
    "name": {"type": "STRING", "description": "아이템 이름 (실제 제품명)"},
    "isNewItem": {"type": "BOOLEAN", "description": "반드시 true (새로 추가된 아이템만 포함)"},
    "hotspotCoordinates": {
        "type": "OBJECT",
        "description": "After 이미지에서 아이템 중심 좌표. x, y는 0.0~1.0 범위.",
        "properties": {"x": {"type": "NUMBER"}, "y": {"type": "NUMBER"}},
        "required": ["x", "y"],
    },
    "description": {"type": "STRING", "description": "짧고 매력적인 설명 (한국어)"},
    "price": {"type": "INTEGER", "description": "예상 가격 (KRW). 현실적 범위."},
    "category": {"type": "STRING", "description": "카테고리. 예: '책상조명', '모니터받침대', '케이블정리'"},
    "productName": {"type": "STRING", "description": "제품 고유 이름 (표시용)"},
    "productCategory": {"type": "STRING", "description": "제품 카테고리 (표시/정렬용)"},
    "purchaseURL": {
        "type": "STRING",
        "description": "실제 구매 가능한 상품 URL (https://, Coupang/SmartStore/Amazon)",
    },
    "imageURL": {"type": "STRING", "description": "상품 대표 이미지 URL (https://)"},
}

_ITEM_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": _ITEM_PROPERTIES,
    "required": [
        "id",
        "name",
        "productName",
        "isNewItem",
        "hotspotCoordinates",
        "description",
        "price",
        "category",
        "productCategory",
        "purchaseURL",
        "imageURL",
    ],
}

CONSULTATION_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "description": "AI consultation response must be wrapped inside the 'consultation' property.",
    "properties": {
        ENVELOPE_KEY: {
            "type": "OBJECT",
            "description": "Structured consultation payload.",
            "properties": {
                "styleSummary": {"type": "STRING", "description": "2~3문장 요약 (한국어, 300자 이하)."},
                "afterImageDescription": {
                    "type": "STRING",
                    "description": "10~14문장 묘사 (한국어). 전체 길이는 800자 이하.",
                },
                "beforeImageAnalysis": {"type": "STRING", "description": "1~2문장 (한국어)."},
                "improvementPoints": {"type": "STRING", "description": "2~3개 구체적 개선 포인트 (한국어)."},
                "rearrangementRecommendation": {"type": "STRING", "description": "1~2문장 (한국어)."},
                "changedDeskAnalysis": {"type": "STRING", "description": "1~2문장 (한국어)."},
                "changedItems": {
                    "type": "ARRAY",
                    "description": "After 이미지에서 새로 추가된 5~7개 아이템. isNewItem=true 필수.",
                    "items": _ITEM_SCHEMA,
                },
                "summary": {"type": "STRING", "description": "styleSummary와 동일한 요약."},
                "items": {
                    "type": "ARRAY",
                    "description": "changedItems와 동일한 아이템 목록.",
                    "items": {**_ITEM_SCHEMA, "required": ["id", "name"]},
                },
            },
            "required": [
                "styleSummary",
                "afterImageDescription",
                "beforeImageAnalysis",
                "improvementPoints",
                "rearrangementRecommendation",
                "changedDeskAnalysis",
                "changedItems",
                "summary",
                "items",
            ],
        },
    },
    "required": [ENVELOPE_KEY],
}


# === Prompt Builders ===


@cache
def _load_prompt(name: str) -> str:
    return (PROMPTS_DIR / name).read_text(encoding="utf-8")


def build_user_instruction(style: str, user_prompt: str = "") -> str:
    user_context = ""
    if user_prompt and user_prompt.strip():
        user_context = (
            "\n---\n**CRITICAL USER INPUT - MUST FOLLOW**\n"
            f"<user_request>\n{user_prompt.strip()}\n</user_request>\n---\n"
        )
    return _load_prompt("user_instruction.txt").format(style=style, user_context=user_context).strip()


def build_critique_instruction(reason: str, previous: dict[str, Any]) -> str:
    previous_json = json.dumps(previous, ensure_ascii=False, default=str)[:PREVIOUS_JSON_MAX_CHARS]
    return (
        _load_prompt("critique_instruction.txt")
        .format(reason=reason, previous_json=previous_json)
        .strip()
    )


def build_after_image_prompt(prompt: str, style: str) -> str:
    return _load_prompt("after_image.txt").format(style=style, prompt=prompt.strip()).strip()


def with_guard(guard: str, instruction: str) -> str:
    return f"{guard}\n\n{instruction}".strip()


def _parse_failure(parsed: ParseError) -> ValidationFailure:
    reason = "JSON_OUTER_NOT_FOUND" if parsed.error == "JSON_OUTER_NOT_FOUND" else "JSON_PARSE_ERROR"
    return ValidationFailure(reason=reason, payload={"raw_head": parsed.raw_head}, detail=parsed.error)


# === Pipeline ===


def build_affiliate_resolver(config: Settings | None = None) -> AffiliateResolver | None:
    """Coupang resolver when credentials are configured, otherwise None."""
    config = config or settings
    try:
        credentials = resolve_affiliate_credentials(config)
    except AffiliateCredentialsMissing:
        return None
    return CoupangProvider(credentials=credentials, config=config)


class ConsultationPipeline:
    """One configured consultation pipeline; safe to share across requests."""

    def __init__(
        self,
        model: ConsultationModel,
        providers: list[CatalogProvider] | None = None,
        affiliate: AffiliateResolver | None = None,
        config: Settings | None = None,
    ) -> None:
        self.model = model
        self.providers = providers if providers is not None else []
        self.affiliate = affiliate
        self.config = config or settings

    # --- Generating ---

    async def _generate(
        self,
        instruction: str,
        image: str,
        guard: str,
        temperature: float | None,
        stage: str,
    ) -> dict[str, Any] | ParseError:
        log.info("consultation_generating", stage=stage)
        raw = await self.model.generate(with_guard(guard, instruction), image, temperature)
        parsed = safe_parse_json(raw)
        if isinstance(parsed, ParseError):
            log.warning("consultation_parse_failed", stage=stage, error=parsed.error, raw_head=parsed.raw_head)
            return parsed
        consultation = parsed.data[ENVELOPE_KEY]
        return consultation if isinstance(consultation, dict) else {}

    # --- Validating ---

    def _validate(self, consultation: dict[str, Any]) -> ConsultationPayload | ValidationFailure:
        enabled = self.config.recommendations_enabled
        result = normalize_consultation(consultation, DEFAULT_LIMITS, recommendations_enabled=enabled)
        if isinstance(result, ValidationFailure) and result.reason == "LEN_AFTER":
            description = str(result.payload.get("afterImageDescription") or "")
            items = result.payload.get("changedItems")
            log.warning(
                "consultation_len_after",
                sentences=sentence_count(description),
                chars=len(description),
                items=len(items) if isinstance(items, list) else 0,
            )
            log.info("consultation_strict_repair")
            result = normalize_consultation(result.payload, STRICT_LIMITS, recommendations_enabled=enabled)
        if isinstance(result, ValidationFailure):
            log.warning("consultation_validation_failed", reason=result.reason, detail=result.detail)
        return result

    # --- Enriching ---

    async def _enrich(self, payload: ConsultationPayload) -> ConsultationPayload:
        if not self.config.recommendations_enabled:
            payload.items = []
            return payload
        if payload.items:
            log.info("consultation_enriching", items=len(payload.items))
            await attach_products(
                payload.items,
                extracted=build_extracted_items(payload.after_image_description, payload.items),
                providers=self.providers,
                affiliate=self.affiliate,
                provider_timeout=self.config.provider_timeout_seconds,
                affiliate_timeout=self.config.affiliate_timeout_seconds,
            )
        payload.items = finalize_items(payload.items, self.config.recommendations_enabled)
        return payload

    # --- Entry ---

    async def run(self, image: str, style: str, user_prompt: str = "") -> ConsultationPayload:
        """Produce a validated, enriched consultation or raise ConsultationFailed."""
        resized = await asyncio.to_thread(resize_image_for_ai, image, self.config.image_max_size)
        instruction = build_user_instruction(style, user_prompt)

        try:
            first = await self._generate(
                instruction, resized, JSON_GUARD_BASE, None, stage="initial"
            )
        except MODEL_CALL_ERRORS as exc:
            log.warning("consultation_critique_retry", reason="GENERATION_FAILED", error=str(exc))
            second = await self._retry(instruction, image, JSON_GUARD_STRICT, reason="GENERATION_FAILED")
            return await self._finish(second)

        if isinstance(first, ParseError):
            failure = _parse_failure(first)
        else:
            validated = self._validate(first)
            if isinstance(validated, ConsultationPayload):
                return await self._enrich_and_log(validated)
            failure = validated

        log.warning("consultation_critique_retry", reason=failure.reason)
        second = await self._retry(
            build_critique_instruction(failure.reason, failure.payload),
            image,
            JSON_GUARD_BASE,
            reason=failure.reason,
        )
        return await self._finish(second)

    async def _retry(
        self,
        instruction: str,
        image: str,
        guard: str,
        reason: str,
    ) -> ConsultationPayload | ValidationFailure:
        try:
            parsed = await self._generate(
                instruction, image, guard, self.config.critique_temperature, stage="critique"
            )
        except MODEL_CALL_ERRORS as exc:
            return ValidationFailure(reason="GENERATION_FAILED", detail=f"{reason}: {exc}")
        if isinstance(parsed, ParseError):
            return _parse_failure(parsed)
        return self._validate(parsed)

    async def _finish(self, result: ConsultationPayload | ValidationFailure) -> ConsultationPayload:
        if isinstance(result, ValidationFailure):
            log.error("consultation_failed", reason=result.reason, detail=result.detail)
            raise ConsultationFailed(result.reason)
        return await self._enrich_and_log(result)

    async def _enrich_and_log(self, payload: ConsultationPayload) -> ConsultationPayload:
        payload = await self._enrich(payload)
        log.info(
            "consultation_done",
            items=len(payload.items),
            hotspot_count=payload.debug.hotspot_count,
        )
        return payload


def build_pipeline(config: Settings | None = None) -> ConsultationPipeline:
    """Wire the Gemini model, the static catalog and (if configured) Coupang."""
    config = config or settings
    return ConsultationPipeline(
        model=GeminiConsultationModel(CONSULTATION_RESPONSE_SCHEMA, config=config),
        providers=[StaticCatalogProvider()],
        affiliate=build_affiliate_resolver(config),
        config=config,
    )


async def get_ai_consultation(
    image: str,
    style: str,
    user_prompt: str = "",
    pipeline: ConsultationPipeline | None = None,
) -> ConsultationPayload:
    pipeline = pipeline or build_pipeline()
    return await pipeline.run(image, style, user_prompt)
