from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from study_assistant.bootstrap import Bootstrapper
from study_assistant.config import AppConfig
from study_assistant.services.generation import (
    FileReference,
    GenerationError,
    GenerationSettings,
    HistoryTurn,
    InlineData,
    UploadedFile,
)
from study_assistant.services.storage import StudyRepository


class FakeGenerationClient:
    """In-memory stand-in for the Gemini client.

    Document prompts are answered from ``responses`` keyed by the resolved
    file URI (``uri://<provider name>``); chat turns get ``chat_reply``.
    A response that is an exception instance is raised instead.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Any]] = None,
        *,
        chat_reply: Any = "Here is an explanation.",
        delay: float = 0.0,
    ) -> None:
        self.responses: Dict[str, Any] = dict(responses or {})
        self.chat_reply = chat_reply
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.uploads: List[Dict[str, Any]] = []

    def generate(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        file_refs: Sequence[FileReference] = (),
        history: Sequence[HistoryTurn] = (),
        inline: Optional[InlineData] = None,
        settings: Optional[GenerationSettings] = None,
    ) -> str:
        self.calls.append(
            {
                "prompt": prompt,
                "model": model,
                "file_refs": list(file_refs),
                "history": list(history),
                "inline": inline,
                "settings": settings,
            }
        )
        if self.delay:
            time.sleep(self.delay)
        if history:
            response = self.chat_reply
        else:
            key = file_refs[0].uri if file_refs else ""
            response = self.responses.get(key, "")
        if isinstance(response, Exception):
            raise response
        if not response:
            raise GenerationError("Empty response from Gemini API")
        return response

    def upload_file(self, path: Path, *, mime_type: str, display_name: str) -> UploadedFile:
        index = len(self.uploads) + 1
        self.uploads.append(
            {
                "data": Path(path).read_bytes(),
                "mime_type": mime_type,
                "display_name": display_name,
            }
        )
        return UploadedFile(
            name=f"files/upload-{index}",
            uri=f"https://generativelanguage.example/files/upload-{index}",
            mime_type=mime_type,
            display_name=display_name,
        )

    def resolve_file(self, name: str) -> FileReference:
        return FileReference(uri=f"uri://{name}", mime_type="")


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",\n
            \"database_file\": \"storage/study_assistant.db\",\n
            \"uploads_root\": \"storage/uploads\"\n
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STUDY_ASSISTANT_SECRET", "test-signing-secret")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/study_assistant.db",
            "uploads_root": "storage/uploads",
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> StudyRepository:
    return StudyRepository(temp_config)


@pytest.fixture()
def fake_client() -> FakeGenerationClient:
    return FakeGenerationClient()
