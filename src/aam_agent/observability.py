from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO, cast


_LOGGER_NAME: Final[str] = "aam_agent"
_MAX_VALUE_LEN: Final[int] = 120
_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_SECRET_FIELD_NAMES: Final[frozenset[str]] = frozenset({"api_key", "key", "token_value"})
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "guard_passed",
        "poller_started",
        "poller_stopped",
        "cursor_reset_to_fallback",
        "activity_handler_failed",
        "resolution_submitted",
        "resolution_outcome_unknown",
        "retry_exhausted",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    mode = _normalize_verbose_mode(verbose)
    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(_UtcDailyFileHandler(logs_dir=state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_FORMAT))
        if mode == "low":
            handler.addFilter(_LowVerbosityFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: object
) -> None:
    logger.log(level, _build_event_message(event=event, fields=fields))


def redact_api_key(api_key: str) -> str:
    """Keep the `<prefix>_<keyId>` head of an agent key and mask the secret."""
    parts = api_key.split("_")
    if len(parts) >= 4 and all(parts[:3]):
        return f"{parts[0]}_{parts[1]}_{parts[2]}_***"
    if not api_key:
        return "<empty>"
    return "***"


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields):
        value = fields[key]
        if key in _SECRET_FIELD_NAMES and isinstance(value, str):
            value = redact_api_key(value)
        parts.append(f"{key}={_normalize_field_value(value)}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _extract_event_name(message: str) -> str | None:
    if not message.startswith("event="):
        return None
    name = message.split(" ", 1)[0][len("event=") :]
    return name or None


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return _extract_event_name(record.getMessage()) in _LOW_VERBOSITY_EVENTS


class _UtcDailyFileHandler(logging.Handler):
    """Append records to `<logs_dir>/<YYYY-MM-DD>.log`, rolling at UTC midnight."""

    def __init__(self, *, logs_dir: Path) -> None:
        super().__init__()
        self._logs_dir = logs_dir
        self._stream: TextIO | None = None
        self._active_date = ""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            if self._stream is None or self._active_date != date_key:
                self._close_stream()
                self._logs_dir.mkdir(parents=True, exist_ok=True)
                self._stream = (self._logs_dir / f"{date_key}.log").open("a", encoding="utf-8")
                self._active_date = date_key
            self._stream.write(f"{self.format(record)}\n")
            self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            self._close_stream()
            super().close()
        finally:
            self.release()

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None
