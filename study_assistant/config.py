"""Configuration loading utilities for the Study Assistant service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".study_assistant_write_check"

_DEFAULT_QUIZ_MODEL = "gemini-1.5-pro"
_DEFAULT_SUMMARY_MODEL = "gemini-1.5-pro"
_DEFAULT_CHAT_MODEL = "gemini-1.5-flash"
_DEFAULT_CHAT_TIMEOUT_SECONDS = 55.0
_DEFAULT_SESSION_TTL_HOURS = 24

_SECRET_ENV_VAR = "STUDY_ASSISTANT_SECRET"


class MissingSecretError(RuntimeError):
    """Raised when no session signing secret is configured."""


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The helper attempts to create ``preferred`` and returns it when writable. If
    the preferred location is unavailable, each candidate in ``fallbacks`` is
    tried in order. The first writable fallback is returned along with a flag
    indicating that a fallback was used. When no candidate can be prepared the
    original ``preferred`` path is returned.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and generation settings for the service."""

    storage_root: Path
    database_file: Path
    uploads_root: Path
    quiz_model: str = _DEFAULT_QUIZ_MODEL
    summary_model: str = _DEFAULT_SUMMARY_MODEL
    chat_model: str = _DEFAULT_CHAT_MODEL
    chat_timeout_seconds: float = _DEFAULT_CHAT_TIMEOUT_SECONDS
    session_ttl_hours: int = _DEFAULT_SESSION_TTL_HOURS

    @property
    def temp_root(self) -> Path:
        """Location used while handing uploads to the generation provider."""

        return (self.storage_root / "_tmp").resolve()

    @property
    def session_secret(self) -> str:
        secret = (os.environ.get(_SECRET_ENV_VAR) or "").strip()
        if secret:
            return secret
        raise MissingSecretError(
            f"{_SECRET_ENV_VAR} must be set to sign session tokens"
        )

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        """Build a config from the JSON *mapping*, resolving paths against *base_path*.

        When the storage root is not writable the whole tree moves to
        ``~/.study_assistant/storage``. Uploads and the database move with it
        when they were configured below the storage root.
        """

        configured_storage = (base_path / mapping["storage_root"]).resolve()
        storage_root, relocated = _select_writable_directory(
            configured_storage,
            label="storage",
            fallbacks=(Path.home() / ".study_assistant" / "storage",),
        )

        def _follow_storage(path: Path) -> Path:
            if not relocated:
                return path
            try:
                return (storage_root / path.relative_to(configured_storage)).resolve()
            except ValueError:
                return path

        uploads_root, _ = _select_writable_directory(
            _follow_storage((base_path / mapping["uploads_root"]).resolve()),
            label="uploads",
            fallbacks=(storage_root / "uploads",),
        )
        database_file = _select_database_file(
            (base_path / mapping["database_file"]).resolve(),
            _follow_storage,
            storage_root,
        )

        generation = mapping.get("generation") or {}
        return cls(
            storage_root=storage_root,
            database_file=database_file,
            uploads_root=uploads_root,
            quiz_model=str(generation.get("quiz_model") or _DEFAULT_QUIZ_MODEL),
            summary_model=str(generation.get("summary_model") or _DEFAULT_SUMMARY_MODEL),
            chat_model=str(generation.get("chat_model") or _DEFAULT_CHAT_MODEL),
            chat_timeout_seconds=float(
                generation.get("chat_timeout_seconds", _DEFAULT_CHAT_TIMEOUT_SECONDS)
            ),
            session_ttl_hours=int(
                mapping.get("session_ttl_hours", _DEFAULT_SESSION_TTL_HOURS)
            ),
        )


def _select_database_file(
    configured: Path,
    follow_storage: Callable[[Path], Path],
    storage_root: Path,
) -> Path:
    """Return a database path whose parent directory is writable."""

    for candidate in (follow_storage(configured), (storage_root / configured.name).resolve()):
        if _ensure_writable_directory(candidate.parent):
            if candidate != configured:
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    configured,
                    candidate,
                )
            return candidate

    LOGGER.warning(
        "Database location '%s' is not writable and no fallback is available.", configured
    )
    return configured


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the service configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "MissingSecretError", "load_config"]
