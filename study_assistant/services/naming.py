"""Naming helpers for stored uploads and attachments."""

from __future__ import annotations

from datetime import datetime, timezone
import re
import uuid
from pathlib import PurePath
from typing import Optional, Tuple

__all__ = [
    "slugify",
    "split_filename",
    "build_upload_name",
]

_STAMP_FORMAT = "%Y%m%d-%H%M%S"


def slugify(value: str) -> str:
    """Return a URL-safe slug for *value* (``"item"`` when nothing survives)."""

    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")
    return slug or "item"


def split_filename(filename: str) -> Tuple[str, str]:
    """Return ``(stem, extension)`` for the last path component of *filename*.

    Directory parts sent by browsers are discarded and the extension is
    lower-cased so MIME lookups by suffix stay predictable.
    """

    path = PurePath(PurePath(filename or "").name)
    return path.stem, path.suffix.lower()


def build_upload_name(
    filename: str,
    *,
    timestamp: Optional[str] = None,
    token: Optional[str] = None,
) -> str:
    """Return ``<slug>-<token>-<timestamp><ext>`` for an uploaded *filename*.

    The random token keeps two uploads of the same file within one second
    from colliding.
    """

    stem, extension = split_filename(filename)
    stamp = timestamp or datetime.now(timezone.utc).strftime(_STAMP_FORMAT)
    unique = token or uuid.uuid4().hex[:8]
    return f"{slugify(stem)}-{unique}-{stamp}{extension}"
