"""structlog setup for the consultation API and library callers.

Log events routinely carry model output and request payloads, so a
shortening processor runs before rendering: inline `data:` images are
reduced to their mime type and size, and any other long string field is
cut to MAX_FIELD_CHARS.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import IO, Any

import structlog

from deskgarden.config import Settings, settings

MAX_FIELD_CHARS = 2000
_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(;[^,]*)?,")


def _shorten(value: str) -> str:
    match = _DATA_URI.match(value)
    if match:
        return f"<{match.group('mime') or 'data'} {len(value) - match.end()} chars>"
    if len(value) > MAX_FIELD_CHARS:
        return f"{value[:MAX_FIELD_CHARS]}...(+{len(value) - MAX_FIELD_CHARS} chars)"
    return value


def shorten_payloads(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Replace data URIs and oversized strings in every field except the event name."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str):
            event_dict[key] = _shorten(value)
    return event_dict


class _FileMirror:
    """stdout plus an append-only copy in `path`.

    The copy is dropped (with one stderr notice) on the first I/O error;
    stdout output is never interrupted.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._file: IO[str] | None = None
        try:
            self._file = open(path, "a", encoding="utf-8")  # noqa: SIM115
        except OSError as exc:
            self._notice(f"Could not open log file {path!r}: {exc}")

    @staticmethod
    def _notice(message: str) -> None:
        # structlog may not be configured yet
        print(f"WARNING: {message}. Logging to stdout only.", file=sys.stderr)

    def _mirror(self, action: str, *args: str) -> None:
        if self._file is None:
            return
        try:
            if args:
                self._file.write(*args)
            self._file.flush()
        except (OSError, ValueError) as exc:
            self._file = None
            self._notice(f"Log file {action} to {self._path!r} failed: {exc}")

    def write(self, data: str) -> None:
        sys.stdout.write(data)
        self._mirror("write", data)

    def flush(self) -> None:
        sys.stdout.flush()
        self._mirror("flush")


def configure_logging(config: Settings | None = None) -> None:
    """Console output in development, JSON lines elsewhere; optional file copy."""
    config = config or settings
    if config.environment == "development":
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer(ensure_ascii=False)

    level = logging.getLevelNamesMapping().get(config.log_level.upper(), logging.INFO)
    output = _FileMirror(config.log_file) if config.log_file else None

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            shorten_payloads,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),  # type: ignore[arg-type]
        cache_logger_on_first_use=True,
    )
