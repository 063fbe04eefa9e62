"""Binary object storage for chat attachments."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlparse

import requests

from ..config import AppConfig
from .events import emit_file_event
from .naming import build_upload_name


LOGGER = logging.getLogger(__name__)

STORAGE_URL_PREFIX = "/storage/"
ATTACHMENTS_DIRNAME = "attachments"
_DEFAULT_HTTP_TIMEOUT = 30.0
_DEFAULT_MAX_FETCH_BYTES = 100 * 1024 * 1024
_FETCH_CHUNK_SIZE = 64 * 1024


class ObjectStoreError(RuntimeError):
    """Raised when an object cannot be stored or retrieved."""


@dataclass(frozen=True)
class StoredObject:
    url: str
    path: Path
    size: int
    name: str


class LocalObjectStore:
    """Store attachments in ``<uploads_root>/attachments`` and serve them under ``/storage``.

    Only that directory is reachable through ``/storage`` URLs; the database,
    logs and provider hand-off files elsewhere in the storage root are not.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        http_timeout: float = _DEFAULT_HTTP_TIMEOUT,
        max_fetch_bytes: int = _DEFAULT_MAX_FETCH_BYTES,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._root = (config.uploads_root / ATTACHMENTS_DIRNAME).resolve()
        self._http_timeout = http_timeout
        self._max_fetch_bytes = max_fetch_bytes
        self._session = session or requests.Session()

    @property
    def root(self) -> Path:
        return self._root

    def resolve_path(self, relative: str) -> Path:
        """Map a ``/storage`` relative path to disk; anything outside the attachments root is rejected."""

        candidate = (self._root / unquote(relative).lstrip("/")).resolve()
        if candidate == self._root:
            raise ObjectStoreError(f"Not a stored object: {relative}")
        try:
            candidate.relative_to(self._root)
        except ValueError as error:
            raise ObjectStoreError(f"Path escapes attachments root: {relative}") from error
        return candidate

    def url_for(self, path: Path) -> str:
        relative = path.resolve().relative_to(self._root)
        return STORAGE_URL_PREFIX + PurePosixPath(*relative.parts).as_posix()

    def put(self, data: bytes, filename: str) -> StoredObject:
        name = build_upload_name(filename)
        target = self._root / name
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as error:
            raise ObjectStoreError(f"Could not store {filename}: {error}") from error
        emit_file_event(
            "object_stored",
            payload={"name": name, "size": len(data), "original_name": filename},
        )
        return StoredObject(url=self.url_for(target), path=target, size=len(data), name=name)

    def fetch(self, url: str) -> bytes:
        """Return the bytes stored at *url* (local ``/storage`` or remote HTTP)."""

        parsed = urlparse(url)
        if not parsed.scheme and parsed.path.startswith(STORAGE_URL_PREFIX):
            path = self.resolve_path(parsed.path[len(STORAGE_URL_PREFIX):])
            try:
                return path.read_bytes()
            except OSError as error:
                raise ObjectStoreError(f"Stored object not found: {url}") from error

        if parsed.scheme not in ("http", "https"):
            raise ObjectStoreError(f"Unsupported object URL: {url}")

        LOGGER.debug("Fetching remote object %s", url)
        try:
            with self._session.get(url, timeout=self._http_timeout, stream=True) as response:
                response.raise_for_status()
                return self._read_limited(url, response)
        except requests.RequestException as error:
            raise ObjectStoreError(f"Failed to fetch {url}: {error}") from error

    def _read_limited(self, url: str, response: requests.Response) -> bytes:
        limit = self._max_fetch_bytes
        declared = response.headers.get("Content-Length")
        if limit > 0 and declared and declared.isdigit() and int(declared) > limit:
            raise ObjectStoreError(f"Remote object {url} exceeds {limit} bytes")
        buffer = bytearray()
        for chunk in response.iter_content(chunk_size=_FETCH_CHUNK_SIZE):
            buffer.extend(chunk)
            if limit > 0 and len(buffer) > limit:
                raise ObjectStoreError(f"Remote object {url} exceeds {limit} bytes")
        return bytes(buffer)


__all__ = [
    "ATTACHMENTS_DIRNAME",
    "LocalObjectStore",
    "ObjectStoreError",
    "STORAGE_URL_PREFIX",
    "StoredObject",
]
