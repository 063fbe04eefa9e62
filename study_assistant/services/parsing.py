"""Turn free-text model output into validated quiz questions and chapters."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Iterable, List, Literal, Optional, Sequence, Tuple, Union

from .storage import Chapter, Option, Question


LOGGER = logging.getLogger(__name__)

LEGACY_CHAPTER_MARKER = "```json"

ParseKind = Literal["quiz", "summary"]

_FENCED_JSON_PATTERN = re.compile(r"```json\s*([\[{][\s\S]*?[\]}])\s*```")
_FENCE_LINE_PATTERN = re.compile(r"^\s*```[\w-]*\s*$")
_HEADING_PATTERN = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:\*\*)?\s*(?:chapter\b|section\b|\d+\.)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ParsedQuiz:
    title: str
    questions: Tuple[Question, ...]


@dataclass(frozen=True)
class ParsedSummary:
    chapters: Tuple[Chapter, ...]


@dataclass(frozen=True)
class ParseFailure:
    """Empty parse result; ``reason`` is kept for logging only."""

    reason: str

    @property
    def title(self) -> str:
        return ""

    @property
    def questions(self) -> Tuple[Question, ...]:
        return ()

    @property
    def chapters(self) -> Tuple[Chapter, ...]:
        return ()


ParseResult = Union[ParsedQuiz, ParsedSummary, ParseFailure]


def _extract_fenced_json(text: str) -> Optional[str]:
    match = _FENCED_JSON_PATTERN.search(text)
    return match.group(1) if match else None


def _loads(candidate: Optional[str]) -> Any:
    if candidate is None:
        return None
    try:
        return json.loads(candidate)
    except (TypeError, ValueError):
        return None


def _clean(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)):
        return str(value).strip()
    return ""


def _coerce_question(raw: Any, position: int) -> Optional[Question]:
    if not isinstance(raw, dict):
        return None
    raw_options = raw.get("options")
    if not isinstance(raw_options, list):
        return None
    options = tuple(
        Option(id=_clean(item.get("id")).lower(), text=_clean(item.get("text")))
        for item in raw_options
        if isinstance(item, dict)
    )
    raw_id = raw.get("id")
    try:
        question_id = int(raw_id)
    except (TypeError, ValueError):
        question_id = position
    return Question(
        id=question_id,
        question=_clean(raw.get("question")),
        options=options,
        correct_answer=_clean(raw.get("correctAnswer")).lower(),
    )


def _normalize_questions(raw_questions: Iterable[Any]) -> List[Question]:
    questions: List[Question] = []
    for position, raw in enumerate(raw_questions, start=1):
        question = _coerce_question(raw, position)
        if question is None or not question.is_valid():
            LOGGER.warning("Dropping malformed quiz question at position %s", position)
            continue
        questions.append(question)
    return questions


def normalize_chapters(raw_chapters: Iterable[Any]) -> List[Chapter]:
    """Trim chapter fields and discard entries that end up empty."""

    chapters: List[Chapter] = []
    for raw in raw_chapters:
        if isinstance(raw, Chapter):
            title, content = raw.title.strip(), raw.content.strip()
        elif isinstance(raw, dict):
            title, content = _clean(raw.get("title")), _clean(raw.get("content"))
        else:
            continue
        if not title or not content:
            continue
        chapters.append(Chapter(title=title, content=content))
    return chapters


def _chapters_from_json(data: Any) -> List[Chapter]:
    if isinstance(data, dict):
        data = data.get("chapters")
    if not isinstance(data, list):
        return []
    return normalize_chapters(data)


def _split_heuristically(text: str) -> List[Chapter]:
    lines = [line for line in text.splitlines() if not _FENCE_LINE_PATTERN.match(line)]
    segments: List[List[str]] = []
    current: List[str] = []
    for line in lines:
        if not line.strip():
            # A heading followed by a blank line keeps collecting its body.
            if len(current) == 1 and _HEADING_PATTERN.match(current[0]):
                continue
            if current:
                segments.append(current)
                current = []
            continue
        if current and _HEADING_PATTERN.match(line):
            segments.append(current)
            current = []
        current.append(line)
    if current:
        segments.append(current)

    chapters: List[Chapter] = []
    for segment in segments:
        title = segment[0].strip().lstrip("#").strip().strip("*").strip()
        content = "\n".join(segment[1:]).strip()
        if title and content:
            chapters.append(Chapter(title=title, content=content))
    return chapters


def _parse_quiz(text: str) -> ParseResult:
    fenced = _extract_fenced_json(text)
    data = _loads(fenced if fenced is not None else text.strip())
    if data is None:
        return ParseFailure("quiz output is not valid JSON")

    title = ""
    if isinstance(data, dict):
        title = _clean(data.get("title"))
        raw_questions = data.get("questions")
    else:
        raw_questions = data
    if not isinstance(raw_questions, list):
        return ParseFailure("quiz output has no question list")
    return ParsedQuiz(title=title, questions=tuple(_normalize_questions(raw_questions)))


def _parse_summary(text: str) -> ParseResult:
    fenced = _extract_fenced_json(text)
    for candidate in (fenced, text.strip()):
        data = _loads(candidate)
        if data is None:
            continue
        chapters = _chapters_from_json(data)
        if chapters:
            return ParsedSummary(chapters=tuple(chapters))
        # Valid JSON without usable chapters must not reach the text splitter.
        return ParseFailure("summary JSON contains no usable chapters")

    chapters = _split_heuristically(text)
    if chapters:
        return ParsedSummary(chapters=tuple(chapters))
    return ParseFailure("no chapters found in summary output")


def parse_generation_output(text: Optional[str], kind: ParseKind) -> ParseResult:
    """Parse model output for *kind* (``"quiz"`` or ``"summary"``).

    Malformed output never raises; it yields :class:`ParseFailure`, which
    behaves as an empty result.
    """

    if kind not in ("quiz", "summary"):
        raise ValueError(f"Unsupported parse kind: {kind}")
    if not text or not text.strip():
        return ParseFailure("empty output")
    try:
        if kind == "quiz":
            return _parse_quiz(text)
        return _parse_summary(text)
    except Exception as error:  # pragma: no cover - parser must not raise
        LOGGER.exception("Unexpected error while parsing %s output", kind)
        return ParseFailure(f"{error.__class__.__name__}: {error}")


def tag_questions(questions: Sequence[Question], source_file_id: int) -> List[Question]:
    """Attribute every question to the file that produced it."""

    return [replace(question, source_file_id=source_file_id) for question in questions]


def renumber_questions(questions: Sequence[Question]) -> List[Question]:
    return [replace(question, id=index) for index, question in enumerate(questions, start=1)]


__all__ = [
    "LEGACY_CHAPTER_MARKER",
    "ParseFailure",
    "ParseKind",
    "ParseResult",
    "ParsedQuiz",
    "ParsedSummary",
    "normalize_chapters",
    "parse_generation_output",
    "renumber_questions",
    "tag_questions",
]
