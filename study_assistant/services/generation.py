"""Client for the Gemini generative API and the prompts sent to it."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Literal, Optional, Protocol, Sequence

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .events import emit_generation_event


LOGGER = logging.getLogger(__name__)

_API_KEY_ENV_VAR = "GEMINI_API_KEY"


QUIZ_PROMPT = """Generate a well-structured JSON output for a multiple-choice quiz designed for studying and revision. Ensure the output strictly follows this format:
{
  "title": "Quiz Title Here",
  "questions": [
    {
      "id": 1,
      "question": "Question text here?",
      "options": [
        { "id": "a", "text": "Option A text" },
        { "id": "b", "text": "Option B text" },
        { "id": "c", "text": "Option C text" },
        { "id": "d", "text": "Option D text" }
      ],
      "correctAnswer": "b"
    }
  ]
}
Guidelines:
- The title should be relevant to the subject matter in the document
- Each question must have four multiple-choice options labeled "a", "b", "c", and "d"
- The correctAnswer field must store the correct option's letter
- Generate a balanced mix of conceptual and factual questions
- Keep the structure consistent for easy parsing
- Generate at least 5 questions"""


SUMMARY_PROMPT = """Please analyze this document and provide a structured chapter-wise summary. Ensure the response is always in the following JSON format:
[
  {
    "title": "<Chapter Title>",
    "content": "<Concise but comprehensive summary of the chapter>"
  }
]

Guidelines:
- Each chapter or major section should have a unique "title" corresponding to the topic.
- The "content" should provide a well-structured, concise, but informative summary of that chapter.
- Do not include additional metadata or formatting outside of the JSON structure.
- Ensure the output remains consistent across all generations."""


class GenerationError(RuntimeError):
    """Raised when the generative API fails or returns nothing usable."""


@dataclass(frozen=True)
class FileReference:
    uri: str
    mime_type: str


@dataclass(frozen=True)
class InlineData:
    data: bytes
    mime_type: str


@dataclass(frozen=True)
class HistoryTurn:
    role: Literal["user", "model"]
    text: str


@dataclass(frozen=True)
class UploadedFile:
    name: str
    uri: str
    mime_type: str
    display_name: str


@dataclass(frozen=True)
class GenerationSettings:
    temperature: float = 0.5
    top_k: int = 10
    top_p: float = 0.95
    max_output_tokens: int = 4096


CHAT_SETTINGS = GenerationSettings()

_BLOCKED_CATEGORIES = (
    types.HarmCategory.HARM_CATEGORY_HARASSMENT,
    types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
)


class GenerationClient(Protocol):
    """Interface used by the orchestrator and chat service."""

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
        ...

    def upload_file(self, path: Path, *, mime_type: str, display_name: str) -> UploadedFile:
        ...

    def resolve_file(self, name: str) -> FileReference:
        ...


def _safety_settings() -> List[types.SafetySetting]:
    return [
        types.SafetySetting(
            category=category,
            threshold=types.HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
        )
        for category in _BLOCKED_CATEGORIES
    ]


class GeminiGenerationClient:
    """:class:`GenerationClient` backed by the ``google-genai`` SDK."""

    def __init__(
        self,
        *,
        default_model: str,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self._default_model = default_model
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            api_key = (self._api_key or os.environ.get(_API_KEY_ENV_VAR) or "").strip()
            if not api_key:
                raise GenerationError(f"{_API_KEY_ENV_VAR} is not configured")
            self._client = genai.Client(api_key=api_key)
        return self._client

    def _build_config(self, settings: Optional[GenerationSettings]) -> types.GenerateContentConfig:
        if settings is None:
            return types.GenerateContentConfig(safety_settings=_safety_settings())
        return types.GenerateContentConfig(
            temperature=settings.temperature,
            top_k=settings.top_k,
            top_p=settings.top_p,
            max_output_tokens=settings.max_output_tokens,
            safety_settings=_safety_settings(),
        )

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
        model_name = model or self._default_model
        contents: List[types.Content] = [
            types.Content(role=turn.role, parts=[types.Part.from_text(text=turn.text)])
            for turn in history
        ]
        parts: List[types.Part] = [
            types.Part.from_uri(file_uri=reference.uri, mime_type=reference.mime_type)
            for reference in file_refs
        ]
        if inline is not None:
            parts.append(types.Part.from_bytes(data=inline.data, mime_type=inline.mime_type))
        parts.append(types.Part.from_text(text=prompt))
        contents.append(types.Content(role="user", parts=parts))

        LOGGER.debug(
            "Requesting generation from %s (history=%s, files=%s, inline=%s)",
            model_name,
            len(history),
            len(file_refs),
            inline is not None,
        )
        start = time.perf_counter()
        try:
            response = self.client.models.generate_content(
                model=model_name,
                contents=contents,
                config=self._build_config(settings),
            )
        except genai_errors.APIError as error:
            raise GenerationError(f"Gemini request failed: {error}") from error

        text = (response.text or "").strip()
        duration_ms = (time.perf_counter() - start) * 1000.0
        if not text:
            raise GenerationError("Empty response from Gemini API")
        emit_generation_event(
            "model_response",
            "Received generation response",
            payload={"model": model_name, "response_length": len(text)},
            duration_ms=duration_ms,
            level=logging.DEBUG,
        )
        return text

    def upload_file(self, path: Path, *, mime_type: str, display_name: str) -> UploadedFile:
        try:
            uploaded = self.client.files.upload(
                file=str(path),
                config={"mime_type": mime_type, "display_name": display_name},
            )
            details = self.client.files.get(name=uploaded.name)
        except genai_errors.APIError as error:
            raise GenerationError(f"Gemini file upload failed: {error}") from error
        LOGGER.info("Uploaded '%s' to Gemini as %s", display_name, details.name)
        return UploadedFile(
            name=details.name,
            uri=details.uri,
            mime_type=details.mime_type or mime_type,
            display_name=display_name,
        )

    def resolve_file(self, name: str) -> FileReference:
        try:
            details = self.client.files.get(name=name)
        except genai_errors.APIError as error:
            raise GenerationError(f"Gemini file lookup failed for {name}: {error}") from error
        return FileReference(uri=details.uri, mime_type=details.mime_type or "")


__all__ = [
    "CHAT_SETTINGS",
    "FileReference",
    "GeminiGenerationClient",
    "GenerationClient",
    "GenerationError",
    "GenerationSettings",
    "HistoryTurn",
    "InlineData",
    "QUIZ_PROMPT",
    "SUMMARY_PROMPT",
    "UploadedFile",
]
