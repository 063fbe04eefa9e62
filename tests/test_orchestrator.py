from __future__ import annotations

import json

import pytest

from study_assistant.services.generation import GenerationError, QUIZ_PROMPT, SUMMARY_PROMPT
from study_assistant.services.orchestrator import (
    FilesNotFoundError,
    FolderNotFoundError,
    GenerationOrchestrator,
    InstanceNotFoundError,
    quiz_title,
)
from study_assistant.services.storage import Chapter, StudyRepository

from conftest import FakeGenerationClient


def _quiz_text(count: int, title: str = "Generated") -> str:
    questions = [
        {
            "id": index + 1,
            "question": f"{title} question {index + 1}?",
            "options": [{"id": letter, "text": letter.upper()} for letter in "abcd"],
            "correctAnswer": "c",
        }
        for index in range(count)
    ]
    return "```json\n" + json.dumps({"title": title, "questions": questions}) + "\n```"


def _seed(repository: StudyRepository, *file_names: str):
    user_id = repository.add_user("ada", "ada@example.com", "hash")
    folder_id = repository.add_folder(user_id, "Science")
    instance_id = repository.add_instance(
        user_id, folder_id, "Practice", "quiz", {"questions": [], "score": None}
    )
    file_ids = [
        repository.add_file(
            user_id,
            folder_id,
            name=f"files/{name}",
            display_name=f"{name}.pdf",
            mime_type="application/pdf",
            file_uri=f"https://example.test/{name}",
            size=64,
        )
        for name in file_names
    ]
    return user_id, folder_id, instance_id, file_ids


def test_summaries_for_two_files_use_primary_and_fallback_parsing(
    repository: StudyRepository,
) -> None:
    user_id, folder_id, _, (file_a, file_b) = _seed(repository, "a", "b")
    client = FakeGenerationClient(
        {
            "uri://files/a": '```json\n[{"title":"T1","content":"C1"}]\n```',
            "uri://files/b": "Chapter One\nSome text",
        }
    )
    orchestrator = GenerationOrchestrator(repository, client, summary_model="summary-model")

    outcome = orchestrator.generate_summaries(user_id, folder_id)

    assert outcome.status == "completed"
    assert [report.status for report in outcome.reports] == ["ok", "ok"]
    summary_a = repository.get_summary_for_file(file_a)
    summary_b = repository.get_summary_for_file(file_b)
    assert summary_a is not None and summary_a.chapters == [Chapter(title="T1", content="C1")]
    assert summary_b is not None and summary_b.chapters == [
        Chapter(title="Chapter One", content="Some text")
    ]
    assert summary_a.file_name == "a.pdf"
    assert all(call["prompt"] == SUMMARY_PROMPT for call in client.calls)
    assert all(call["model"] == "summary-model" for call in client.calls)
    assert client.calls[0]["file_refs"][0].mime_type == "application/pdf"


def test_second_summary_run_is_a_no_op(repository: StudyRepository) -> None:
    user_id, folder_id, _, _ = _seed(repository, "a", "b")
    client = FakeGenerationClient(
        {
            "uri://files/a": '```json\n[{"title":"T1","content":"C1"}]\n```',
            "uri://files/b": '```json\n[{"title":"T2","content":"C2"}]\n```',
        }
    )
    orchestrator = GenerationOrchestrator(repository, client)

    orchestrator.generate_summaries(user_id, folder_id)
    calls_after_first_run = len(client.calls)
    second = orchestrator.generate_summaries(user_id, folder_id)

    assert second.status == "no_new_files"
    assert second.summaries == []
    assert len(client.calls) == calls_after_first_run
    assert len(repository.list_summaries(folder_id)) == 2


def test_failed_summary_file_is_skipped_and_retried_later(repository: StudyRepository) -> None:
    user_id, folder_id, _, (file_a, file_b) = _seed(repository, "a", "b")
    client = FakeGenerationClient(
        {
            "uri://files/a": GenerationError("quota exceeded"),
            "uri://files/b": '```json\n[{"title":"T2","content":"C2"}]\n```',
        }
    )
    orchestrator = GenerationOrchestrator(repository, client)

    outcome = orchestrator.generate_summaries(user_id, folder_id)

    assert [(report.file_id, report.status) for report in outcome.reports] == [
        (file_a, "failed"),
        (file_b, "ok"),
    ]
    assert repository.get_summary_for_file(file_a) is None

    client.responses["uri://files/a"] = '```json\n[{"title":"T1","content":"C1"}]\n```'
    retry = orchestrator.generate_summaries(user_id, folder_id)

    assert [summary.file_id for summary in retry.summaries] == [file_a]
    assert len(repository.list_summaries(folder_id)) == 2


def test_concurrent_duplicate_summary_is_skipped(
    repository: StudyRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    user_id, folder_id, _, (file_a,) = _seed(repository, "a")
    repository.add_summary(
        user_id, file_a, folder_id, file_name="a.pdf", chapters=[Chapter("Old", "Existing")]
    )
    stale_listing = repository.find_files([file_a])
    monkeypatch.setattr(
        repository, "list_unsummarized_files", lambda folder_id, user_id=None: stale_listing
    )
    client = FakeGenerationClient({"uri://files/a": '```json\n[{"title":"New","content":"C"}]\n```'})

    outcome = GenerationOrchestrator(repository, client).generate_summaries(user_id, folder_id)

    assert [report.status for report in outcome.reports] == ["duplicate"]
    summaries = repository.list_summaries(folder_id)
    assert len(summaries) == 1
    assert summaries[0].chapters == [Chapter("Old", "Existing")]


def test_summaries_require_an_owned_folder(repository: StudyRepository) -> None:
    user_id, folder_id, _, _ = _seed(repository, "a")
    stranger = repository.add_user("eve", "eve@example.com", "hash")
    orchestrator = GenerationOrchestrator(repository, FakeGenerationClient())

    with pytest.raises(FolderNotFoundError):
        orchestrator.generate_summaries(stranger, folder_id)


def test_multi_file_quiz_is_numbered_and_attributed(repository: StudyRepository) -> None:
    user_id, folder_id, instance_id, (file_a, file_b) = _seed(repository, "a", "b")
    client = FakeGenerationClient(
        {"uri://files/a": _quiz_text(2, "A"), "uri://files/b": _quiz_text(3, "B")}
    )
    orchestrator = GenerationOrchestrator(repository, client, quiz_model="quiz-model")

    outcome = orchestrator.generate_quiz(user_id, [file_a, file_b], folder_id, instance_id)

    quiz = outcome.quiz
    assert quiz.title == "Quiz on 2 Documents"
    assert [question.id for question in quiz.questions] == [1, 2, 3, 4, 5]
    assert [question.source_file_id for question in quiz.questions] == [
        file_a,
        file_a,
        file_b,
        file_b,
        file_b,
    ]
    assert quiz.file_ids == [file_a, file_b]
    assert quiz.file_id == file_a
    assert [(report.status, report.item_count) for report in outcome.reports] == [
        ("ok", 2),
        ("ok", 3),
    ]
    assert all(call["prompt"] == QUIZ_PROMPT for call in client.calls)
    assert all(call["model"] == "quiz-model" for call in client.calls)
    stored = repository.find_quiz_by_instance(instance_id, user_id=user_id)
    assert stored is not None and stored.id == quiz.id


def test_quiz_for_unknown_file_creates_nothing(repository: StudyRepository) -> None:
    user_id, folder_id, instance_id, _ = _seed(repository)
    client = FakeGenerationClient()
    orchestrator = GenerationOrchestrator(repository, client)

    with pytest.raises(FilesNotFoundError):
        orchestrator.generate_quiz(user_id, [4242], folder_id, instance_id)

    assert repository.find_quiz_by_instance(instance_id) is None
    assert client.calls == []


def test_quiz_records_per_file_failures(repository: StudyRepository) -> None:
    user_id, folder_id, instance_id, (file_a, file_b) = _seed(repository, "a", "b")
    client = FakeGenerationClient(
        {"uri://files/a": "I could not read this document.", "uri://files/b": _quiz_text(1)}
    )

    outcome = GenerationOrchestrator(repository, client).generate_quiz(
        user_id, [file_a, file_b], folder_id, instance_id
    )

    assert [(report.file_id, report.status) for report in outcome.reports] == [
        (file_a, "failed"),
        (file_b, "ok"),
    ]
    assert outcome.reports[0].error
    assert [question.source_file_id for question in outcome.quiz.questions] == [file_b]


def test_quiz_without_any_questions_is_still_created(repository: StudyRepository) -> None:
    user_id, folder_id, instance_id, (file_a,) = _seed(repository, "a")
    client = FakeGenerationClient({"uri://files/a": GenerationError("boom")})

    outcome = GenerationOrchestrator(repository, client).generate_quiz(
        user_id, [file_a], folder_id, instance_id
    )

    assert outcome.quiz.title == "Quiz on 1 Document"
    assert outcome.quiz.questions == []
    assert repository.get_quiz(outcome.quiz.id) is not None


def test_quiz_requires_an_owned_instance(repository: StudyRepository) -> None:
    user_id, folder_id, _, (file_a,) = _seed(repository, "a")

    with pytest.raises(InstanceNotFoundError):
        GenerationOrchestrator(repository, FakeGenerationClient()).generate_quiz(
            user_id, [file_a], folder_id, 999
        )


def test_quiz_requires_an_owned_folder(repository: StudyRepository) -> None:
    user_id, folder_id, instance_id, (file_a,) = _seed(repository, "a")
    stranger = repository.add_user("eve", "eve@example.com", "hash")
    client = FakeGenerationClient({"uri://files/a": _quiz_text(1)})
    orchestrator = GenerationOrchestrator(repository, client)

    with pytest.raises(FolderNotFoundError):
        orchestrator.generate_quiz(user_id, [file_a], 4242, instance_id)
    with pytest.raises(FolderNotFoundError):
        orchestrator.generate_quiz(stranger, [file_a], folder_id, instance_id)

    assert client.calls == []
    assert repository.find_quiz_by_instance(instance_id) is None


def test_quiz_instance_and_files_must_belong_to_the_folder(
    repository: StudyRepository,
) -> None:
    user_id, folder_id, instance_id, (file_a,) = _seed(repository, "a")
    other_folder = repository.add_folder(user_id, "History")
    other_instance = repository.add_instance(
        user_id, other_folder, "Elsewhere", "quiz", {"questions": [], "score": None}
    )
    other_file = repository.add_file(
        user_id,
        other_folder,
        name="files/b",
        display_name="b.pdf",
        mime_type="application/pdf",
        file_uri="https://example.test/b",
        size=64,
    )
    client = FakeGenerationClient(
        {"uri://files/a": _quiz_text(1), "uri://files/b": _quiz_text(2)}
    )
    orchestrator = GenerationOrchestrator(repository, client)

    with pytest.raises(InstanceNotFoundError):
        orchestrator.generate_quiz(user_id, [file_a], folder_id, other_instance)
    with pytest.raises(FilesNotFoundError):
        orchestrator.generate_quiz(user_id, [other_file], folder_id, instance_id)

    outcome = orchestrator.generate_quiz(user_id, [file_a, other_file], folder_id, instance_id)

    assert outcome.quiz.file_ids == [file_a]
    assert outcome.quiz.folder_id == folder_id
    assert len(client.calls) == 1


def test_quiz_title_pluralization() -> None:
    assert quiz_title(1) == "Quiz on 1 Document"
    assert quiz_title(3) == "Quiz on 3 Documents"
