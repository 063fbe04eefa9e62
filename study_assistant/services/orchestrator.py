"""Drive per-file quiz and summary generation and persist the results."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from .events import emit_generation_event
from .generation import QUIZ_PROMPT, SUMMARY_PROMPT, FileReference, GenerationClient
from .parsing import ParseFailure, parse_generation_output, renumber_questions, tag_questions
from .storage import (
    DuplicateSummaryError,
    FileRecord,
    Question,
    QuizRecord,
    StudyRepository,
    SummaryRecord,
)


LOGGER = logging.getLogger(__name__)


class FilesNotFoundError(LookupError):
    """Raised when none of the requested files exist for the caller."""


class FolderNotFoundError(LookupError):
    """Raised when a folder is missing or owned by someone else."""


class InstanceNotFoundError(LookupError):
    """Raised when an instance is missing, of the wrong type, or not owned."""


FileStatus = Literal["ok", "failed", "duplicate"]


@dataclass(frozen=True)
class FileReport:
    """Outcome of generation for a single source file."""

    file_id: int
    display_name: str
    status: FileStatus
    item_count: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileId": self.file_id,
            "displayName": self.display_name,
            "status": self.status,
            "itemCount": self.item_count,
            "error": self.error,
        }


@dataclass
class QuizOutcome:
    quiz: QuizRecord
    reports: List[FileReport] = field(default_factory=list)


@dataclass
class SummaryOutcome:
    status: Literal["no_new_files", "completed"]
    summaries: List[SummaryRecord] = field(default_factory=list)
    reports: List[FileReport] = field(default_factory=list)


def quiz_title(file_count: int) -> str:
    return f"Quiz on {file_count} Document{'s' if file_count > 1 else ''}"


class GenerationOrchestrator:
    """Sequentially generate study material for files using a :class:`GenerationClient`."""

    def __init__(
        self,
        repository: StudyRepository,
        client: GenerationClient,
        *,
        quiz_model: Optional[str] = None,
        summary_model: Optional[str] = None,
    ) -> None:
        self._repository = repository
        self._client = client
        self._quiz_model = quiz_model
        self._summary_model = summary_model

    def _generate_for_file(self, file: FileRecord, prompt: str, model: Optional[str]) -> str:
        resolved = self._client.resolve_file(file.name)
        reference = FileReference(uri=resolved.uri, mime_type=file.mime_type)
        return self._client.generate(prompt, model=model, file_refs=[reference])

    def generate_quiz(
        self,
        user_id: int,
        file_ids: Sequence[int],
        folder_id: int,
        instance_id: int,
    ) -> QuizOutcome:
        if self._repository.get_folder(folder_id, user_id=user_id) is None:
            raise FolderNotFoundError(f"Folder {folder_id} not found")

        instance = self._repository.get_instance(instance_id, user_id=user_id)
        if instance is None or instance.folder_id != folder_id:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")

        files = [
            file
            for file in self._repository.find_files(file_ids, user_id=user_id)
            if file.folder_id == folder_id
        ]
        if not files:
            LOGGER.warning("No files found for quiz request (file_ids=%s)", list(file_ids))
            raise FilesNotFoundError("Files not found")

        LOGGER.info(
            "Generating quiz for instance id=%s from %s file(s)", instance_id, len(files)
        )
        questions: List[Question] = []
        reports: List[FileReport] = []
        for file in files:
            start = time.perf_counter()
            try:
                text = self._generate_for_file(file, QUIZ_PROMPT, self._quiz_model)
            except Exception as error:
                LOGGER.exception("Quiz generation failed for file '%s'", file.display_name)
                reports.append(
                    FileReport(file.id, file.display_name, "failed", error=str(error))
                )
                continue

            result = parse_generation_output(text, "quiz")
            if isinstance(result, ParseFailure):
                LOGGER.error(
                    "Failed to parse quiz data for file '%s': %s",
                    file.display_name,
                    result.reason,
                )
                reports.append(
                    FileReport(file.id, file.display_name, "failed", error=result.reason)
                )
                continue

            tagged = tag_questions(result.questions, file.id)
            questions.extend(tagged)
            reports.append(FileReport(file.id, file.display_name, "ok", item_count=len(tagged)))
            emit_generation_event(
                "quiz_file",
                "Generated quiz questions for file",
                payload={"file_id": file.id, "questions": len(tagged)},
                duration_ms=(time.perf_counter() - start) * 1000.0,
            )

        numbered = renumber_questions(questions)
        resolved_ids = [file.id for file in files]
        quiz_id = self._repository.add_quiz(
            user_id,
            folder_id,
            instance_id,
            title=quiz_title(len(files)),
            questions=numbered,
            file_ids=resolved_ids,
        )
        if not numbered:
            LOGGER.warning("Quiz id=%s was created without any questions", quiz_id)
        quiz = self._repository.get_quiz(quiz_id)
        assert quiz is not None  # nosec - inserted above
        return QuizOutcome(quiz=quiz, reports=reports)

    def generate_summaries(self, user_id: int, folder_id: int) -> SummaryOutcome:
        if self._repository.get_folder(folder_id, user_id=user_id) is None:
            raise FolderNotFoundError(f"Folder {folder_id} not found")

        files = self._repository.list_unsummarized_files(folder_id, user_id=user_id)
        if not files:
            LOGGER.info("No new files to summarize in folder id=%s", folder_id)
            return SummaryOutcome(status="no_new_files")

        summaries: List[SummaryRecord] = []
        reports: List[FileReport] = []
        for file in files:
            LOGGER.info("Generating summary for file: %s", file.display_name)
            start = time.perf_counter()
            try:
                text = self._generate_for_file(file, SUMMARY_PROMPT, self._summary_model)
            except Exception as error:
                LOGGER.exception("Summary generation failed for file '%s'", file.display_name)
                reports.append(
                    FileReport(file.id, file.display_name, "failed", error=str(error))
                )
                continue

            result = parse_generation_output(text, "summary")
            if isinstance(result, ParseFailure):
                LOGGER.error(
                    "No chapters could be parsed for file '%s': %s",
                    file.display_name,
                    result.reason,
                )
                reports.append(
                    FileReport(file.id, file.display_name, "failed", error=result.reason)
                )
                continue

            try:
                self._repository.add_summary(
                    user_id,
                    file.id,
                    folder_id,
                    file_name=file.display_name,
                    chapters=result.chapters,
                )
            except DuplicateSummaryError:
                LOGGER.info("Skipping file id=%s; summarized concurrently", file.id)
                reports.append(FileReport(file.id, file.display_name, "duplicate"))
                continue

            summary = self._repository.get_summary_for_file(file.id)
            if summary is not None:
                summaries.append(summary)
            reports.append(
                FileReport(file.id, file.display_name, "ok", item_count=len(result.chapters))
            )
            emit_generation_event(
                "summary_file",
                "Generated summary for file",
                payload={"file_id": file.id, "chapters": len(result.chapters)},
                duration_ms=(time.perf_counter() - start) * 1000.0,
            )

        return SummaryOutcome(status="completed", summaries=summaries, reports=reports)


__all__ = [
    "FileReport",
    "FilesNotFoundError",
    "FolderNotFoundError",
    "GenerationOrchestrator",
    "InstanceNotFoundError",
    "QuizOutcome",
    "SummaryOutcome",
    "quiz_title",
]
