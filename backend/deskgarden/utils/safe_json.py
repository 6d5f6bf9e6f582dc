"""Extract the consultation JSON envelope from raw model text.

Parsing failures are an expected outcome here, so they are returned as
ParseError values rather than raised.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

RAW_HEAD_CHARS = 300
ENVELOPE_KEY = "consultation"

_FULL_FENCE_RE = re.compile(r"^```(?:json)?\s*([\s\S]*?)```$", re.IGNORECASE)
_LEADING_FENCE_RE = re.compile(r"^```[^\n]*\n?")
_TRAILING_FENCE_RE = re.compile(r"\n?```\s*$")


@dataclass(frozen=True)
class ParseOk:
    data: dict[str, Any]
    ok: Literal[True] = True


@dataclass(frozen=True)
class ParseError:
    error: str
    raw_head: str
    ok: Literal[False] = False


ParseResult = ParseOk | ParseError


def strip_code_fence(text: str) -> str:
    """Remove markdown code fences around model output.

    A fully fenced blob loses its single fence pair; otherwise stray
    leading/trailing fence lines are removed independently.
    """
    text = text.lstrip("\ufeff").strip()
    match = _FULL_FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    text = _LEADING_FENCE_RE.sub("", text)
    text = _TRAILING_FENCE_RE.sub("", text)
    return text.strip()


def extract_first_object(text: str) -> str | None:
    """Return the first balanced `{...}` substring, honoring strings and escapes."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def safe_parse_json(raw: str, required_key: str = ENVELOPE_KEY) -> ParseResult:
    """Parse one JSON object carrying `required_key` out of a noisy text blob."""
    candidate = strip_code_fence(raw or "")
    snippet = extract_first_object(candidate)
    if snippet is None:
        return ParseError(error="JSON_OUTER_NOT_FOUND", raw_head=candidate[:RAW_HEAD_CHARS])

    try:
        data = json.loads(snippet)
    except json.JSONDecodeError as exc:
        return ParseError(error=f"JSON_PARSE_ERROR: {exc.msg}", raw_head=snippet[:RAW_HEAD_CHARS])

    if not isinstance(data, dict) or required_key not in data:
        return ParseError(error="JSON_OUTER_NOT_FOUND", raw_head=snippet[:RAW_HEAD_CHARS])
    return ParseOk(data=data)
