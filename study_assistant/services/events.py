"""Structured log events for database, storage and generation activity.

Every event is a single log record whose message reads
``[TYPE] message (key=value, ...)``. The raw fields are also attached to the
record (``event_type``, ``event_payload`` and friends) so handlers that ship
JSON can pick them up without parsing the message.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("study_assistant.events")

DB_QUERY = "DB_QUERY"
FILE_OP = "FILE_OP"
GENERATION = "GENERATION"

_MAX_VALUE_LENGTH = 200

LoggerLike = logging.Logger | logging.LoggerAdapter


def sanitize_context_value(value: Any) -> Any:
    """Return a compact, JSON-friendly rendering of *value* or ``None`` if empty."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return normalize_context(value) or None
    if isinstance(value, Path):
        text = str(value)
    elif isinstance(value, (list, tuple, set, frozenset)):
        text = ", ".join(str(item) for item in value)
    else:
        text = str(value)
    text = text.strip()
    if not text:
        return None
    if len(text) > _MAX_VALUE_LENGTH:
        return text[:_MAX_VALUE_LENGTH] + "…"
    return text


def normalize_context(values: Optional[Mapping[Any, Any]]) -> Dict[str, Any]:
    """Drop empty entries from *values* and sanitize the rest."""

    normalized: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        if key is None or key == "":
            continue
        value = sanitize_context_value(raw)
        if value is None or value == "":
            continue
        normalized[str(key)] = value
    return normalized


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: LoggerLike = DEFAULT_EVENT_LOGGER,
) -> None:
    """Log *message* as an event of *event_type* with its metadata."""

    text = str(message).strip()
    sections = {
        "event_correlation": normalize_context(correlation),
        "event_context": normalize_context(context),
        "event_payload": normalize_context(payload),
    }
    details: Dict[str, Any] = {}
    for section in sections.values():
        details.update(section)

    rendered = f"[{event_type}] {text}" if event_type else text
    if details:
        rendered += " (" + ", ".join(f"{key}={value}" for key, value in details.items()) + ")"

    extra: Dict[str, Any] = {"event": text, "event_type": event_type or ""}
    extra.update({name: section for name, section in sections.items() if section})
    if duration_ms is not None:
        extra["event_duration_ms"] = float(duration_ms)
    logger.log(level, rendered, extra=extra)


def emit_db_event(
    action: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.DEBUG,
    logger: LoggerLike = DEFAULT_EVENT_LOGGER,
) -> None:
    emit_structured_event(
        DB_QUERY,
        action,
        payload=payload,
        context=context,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def emit_file_event(
    operation: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: LoggerLike = DEFAULT_EVENT_LOGGER,
) -> None:
    emit_structured_event(
        FILE_OP,
        operation,
        payload=payload,
        context=context,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def emit_generation_event(
    phase: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: LoggerLike = DEFAULT_EVENT_LOGGER,
) -> None:
    """Log one step (``phase``) of a quiz, summary or chat generation run."""

    emit_structured_event(
        GENERATION,
        message or phase,
        payload={"phase": phase, **(payload or {})},
        context=context,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


__all__ = [
    "DB_QUERY",
    "DEFAULT_EVENT_LOGGER",
    "FILE_OP",
    "GENERATION",
    "emit_db_event",
    "emit_file_event",
    "emit_generation_event",
    "emit_structured_event",
    "normalize_context",
    "sanitize_context_value",
]
