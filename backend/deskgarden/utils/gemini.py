"""Gemini client helpers for consultation JSON and after-image generation.

The google-genai client is synchronous here; calls run in a worker thread
under an asyncio timeout so a hung request cannot stall the event loop.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog
from google import genai
from google.genai import errors, types

from deskgarden.config import Settings, settings
from deskgarden.utils.image import split_data_uri, to_data_uri

logger = structlog.get_logger()

RETRY_BACKOFF_SECONDS = 1.0

# APIError covers HTTP error responses; transport failures surface as raw httpx errors
MODEL_CALL_ERRORS: tuple[type[Exception], ...] = (errors.APIError, httpx.HTTPError, TimeoutError)


class AfterImageGenerationError(RuntimeError):
    """The image model produced no image after every retry."""


def get_client(config: Settings | None = None) -> genai.Client:
    """Create a Gemini client using the configured API key."""
    config = config or settings
    return genai.Client(api_key=config.google_ai_api_key)


def image_part(data_uri: str) -> types.Part:
    mime_type, data = split_data_uri(data_uri)
    return types.Part.from_bytes(data=data, mime_type=mime_type)


def extract_text(response: types.GenerateContentResponse) -> str:
    """Extract all text parts from a Gemini response."""
    if not response.candidates:
        return ""
    content = response.candidates[0].content
    if content is None or content.parts is None:
        return ""
    texts = [part.text for part in content.parts if part.text]
    return "\n".join(texts).strip()


def extract_image_data_uri(response: types.GenerateContentResponse) -> str | None:
    """First inline image part of a response as a data URI, or None."""
    if not response.candidates:
        return None
    content = response.candidates[0].content
    if content is None or content.parts is None:
        return None
    for part in content.parts:
        inline = part.inline_data
        if inline is None or not inline.data:
            continue
        mime_type = inline.mime_type or ""
        if mime_type.startswith("image/"):
            return to_data_uri(inline.data, mime_type)
    return None


class GeminiConsultationModel:
    """Text+image to structured JSON completion against a response schema."""

    def __init__(
        self,
        response_schema: dict[str, Any],
        config: Settings | None = None,
        client: genai.Client | None = None,
    ) -> None:
        self._config = config or settings
        self._client = client
        self._schema = response_schema

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = get_client(self._config)
        return self._client

    def _generation_config(self, temperature: float | None) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=self._schema,
            max_output_tokens=self._config.consultation_max_output_tokens,
            temperature=(
                temperature if temperature is not None else self._config.consultation_temperature
            ),
            top_p=self._config.consultation_top_p,
            candidate_count=1,
        )

    async def generate(self, prompt: str, image: str, temperature: float | None = None) -> str:
        """Return the raw response text; raises on API errors and timeouts."""
        contents: list[Any] = [image_part(image), prompt] if image else [prompt]
        async with asyncio.timeout(self._config.model_timeout_seconds):
            response = await asyncio.to_thread(
                self.client.models.generate_content,
                model=self._config.consultation_model,
                contents=contents,
                config=self._generation_config(temperature),
            )
        return extract_text(response)


async def generate_after_image(
    prompt: str,
    before_image: str,
    config: Settings | None = None,
    client: genai.Client | None = None,
) -> str:
    """One image-model call; returns the generated image as a data URI."""
    config = config or settings
    client = client or get_client(config)
    async with asyncio.timeout(config.model_timeout_seconds):
        response = await asyncio.to_thread(
            client.models.generate_content,
            model=config.image_model,
            contents=[image_part(before_image), prompt],
            config=types.GenerateContentConfig(
                response_modalities=["IMAGE", "TEXT"],
                temperature=config.image_temperature,
            ),
        )

    if not response.candidates:
        raise AfterImageGenerationError("AI가 이미지를 생성하지 못했습니다. (no candidates)")
    data_uri = extract_image_data_uri(response)
    if data_uri is None:
        raise AfterImageGenerationError(
            f"AI가 이미지를 생성하지 못했습니다. (Image part not found in response) {extract_text(response)[:200]}"
        )
    return data_uri


async def generate_after_image_with_retry(
    prompt: str,
    before_image: str,
    config: Settings | None = None,
    client: genai.Client | None = None,
) -> str:
    """Retry generate_after_image with a linear backoff (1s x attempt)."""
    config = config or settings
    max_retries = max(1, config.after_image_max_retries)
    last_error: Exception | None = None
    for attempt in range(1, max_retries + 1):
        logger.info("after_image_attempt", attempt=attempt, max_retries=max_retries)
        try:
            return await generate_after_image(prompt, before_image, config=config, client=client)
        except (AfterImageGenerationError, *MODEL_CALL_ERRORS) as exc:
            last_error = exc
            logger.warning("after_image_attempt_failed", attempt=attempt, error=str(exc))
            if attempt < max_retries:
                await asyncio.sleep(RETRY_BACKOFF_SECONDS * attempt)
    raise AfterImageGenerationError("이미지 생성에 실패했습니다.") from last_error
