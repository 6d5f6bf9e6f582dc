"""Sentence-aware text clamps for model-generated prose."""

from __future__ import annotations

import re
from typing import TypeVar

T = TypeVar("T")

SENTENCE_DELIMITERS = ".!?？！。…"
_SENTENCE_RE = re.compile(rf"[^{SENTENCE_DELIMITERS}]+[{SENTENCE_DELIMITERS}]+|[^{SENTENCE_DELIMITERS}]+$")
_TERMINATOR_RUN_RE = re.compile(rf"[{SENTENCE_DELIMITERS}]+")


def split_sentences(text: str) -> list[str]:
    """Split into sentences, keeping each sentence's terminating punctuation."""
    if not text:
        return []
    return [m.group(0) for m in _SENTENCE_RE.finditer(text) if m.group(0).strip()]


def sentence_count(text: str) -> int:
    """Number of terminated sentences (runs of terminal punctuation)."""
    if not text:
        return 0
    return len(_TERMINATOR_RUN_RE.findall(text))


def clamp_sentences(text: str, max_sentences: int, max_chars: int | None = None) -> str:
    """Keep at most `max_sentences` sentences, then at most `max_chars` characters.

    Both bounds apply independently; whichever is stricter wins.
    """
    if not text:
        return ""
    sentences = split_sentences(text)
    clamped = "".join(sentences[:max_sentences]).strip() if sentences else text.strip()
    if max_chars is not None and len(clamped) > max_chars:
        clamped = clamped[:max_chars].strip()
    return clamped


def clamp_chars(text: str, max_chars: int) -> str:
    if not text:
        return ""
    return text[:max_chars].strip() if len(text) > max_chars else text


def truncate_with_ellipsis(text: str, max_chars: int) -> str:
    """Cut to `max_chars` including a trailing ellipsis."""
    if not text or len(text) <= max_chars:
        return text or ""
    if max_chars <= 1:
        return "…"[:max_chars]
    return text[: max_chars - 1].rstrip() + "…"


def clamp_list(items: list[T], max_len: int) -> list[T]:
    """Truncate without reordering."""
    return list(items[: max(0, max_len)])
