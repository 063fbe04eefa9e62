from __future__ import annotations

import json
from dataclasses import replace
from typing import Dict

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from study_assistant.services.parsing import LEGACY_CHAPTER_MARKER
from study_assistant.services.storage import Chapter, StudyRepository
from study_assistant.web import create_app
from study_assistant.web import server as web_server

from conftest import FakeGenerationClient


def _quiz_text(count: int) -> str:
    questions = [
        {
            "id": index + 1,
            "question": f"Question {index + 1}?",
            "options": [{"id": letter, "text": letter.upper()} for letter in "abcd"],
            "correctAnswer": "a",
        }
        for index in range(count)
    ]
    return "```json\n" + json.dumps({"title": "Generated", "questions": questions}) + "\n```"


def _build_client(repository, config, generation_client=None) -> TestClient:
    app = create_app(
        repository,
        config=config,
        generation_client=generation_client or FakeGenerationClient(),
    )
    return TestClient(app)


def _login(client: TestClient, email: str = "ada@example.com") -> Dict[str, str]:
    username = email.split("@", 1)[0]
    response = client.post(
        "/api/auth/signup",
        json={"username": username, "email": email, "password": "secret"},
    )
    assert response.status_code == 201
    response = client.post("/api/auth/login", json={"email": email, "password": "secret"})
    assert response.status_code == 200
    client.cookies.clear()
    return {"Authorization": f"Bearer {response.json()['token']}"}


def _create_folder(client: TestClient, headers: Dict[str, str], name: str = "Biology") -> int:
    response = client.post("/api/folders", json={"name": name}, headers=headers)
    assert response.status_code == 201
    return response.json()["folder"]["id"]


def _create_instance(
    client: TestClient, headers: Dict[str, str], folder_id: int, instance_type: str
) -> int:
    response = client.post(
        "/api/instances",
        json={"name": f"My {instance_type}", "type": instance_type, "folderId": folder_id},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["instance"]["id"]


def _upload(client: TestClient, headers: Dict[str, str], folder_id: int, name: str) -> dict:
    response = client.post(
        "/api/files",
        files={"file": (name, b"%PDF-1.4 sample", "application/pdf")},
        data={"folderId": str(folder_id)},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["file"]


def test_signup_login_and_session_cookie(temp_config, repository) -> None:
    client = _build_client(repository, temp_config)

    assert client.get("/api/folders").status_code == 401

    signup = client.post(
        "/api/auth/signup",
        json={"username": "ada", "email": "Ada@Example.com", "password": "secret"},
    )
    assert signup.status_code == 201
    assert signup.json()["user"]["email"] == "ada@example.com"
    assert "password" not in json.dumps(signup.json())

    duplicate = client.post(
        "/api/auth/signup",
        json={"username": "ada", "email": "ada@example.com", "password": "secret"},
    )
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"] == "Email already registered"

    bad_login = client.post(
        "/api/auth/login", json={"email": "ada@example.com", "password": "nope"}
    )
    assert bad_login.status_code == 401

    login = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "secret"})
    assert login.status_code == 200
    set_cookie = login.headers["set-cookie"].lower()
    assert "token=" in set_cookie
    assert "httponly" in set_cookie
    assert "samesite=strict" in set_cookie

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["user"]["username"] == "ada"

    assert client.get("/api/auth/me", headers={"Authorization": "Bearer junk"}).status_code == 200
    client.post("/api/auth/logout")
    client.cookies.clear()
    assert client.get("/api/auth/me").status_code == 401


def test_folder_crud_and_instance_cascade(temp_config, repository) -> None:
    client = _build_client(repository, temp_config)
    headers = _login(client)

    folder_id = _create_folder(client, headers)
    newer_id = _create_folder(client, headers, "Chemistry")
    listing = client.get("/api/folders", headers=headers).json()["folders"]
    assert [folder["id"] for folder in listing] == [newer_id, folder_id]

    updated = client.put(
        f"/api/folders/{folder_id}",
        json={"name": "Biology 101", "description": "Cells"},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["folder"]["name"] == "Biology 101"
    assert updated.json()["folder"]["description"] == "Cells"

    blank = client.put(f"/api/folders/{folder_id}", json={"name": "  "}, headers=headers)
    assert blank.status_code == 400

    chat_id = _create_instance(client, headers, folder_id, "chat")

    deleted = client.delete(f"/api/folders/{folder_id}", headers=headers)
    assert deleted.status_code == 204
    assert client.get(f"/api/folders/{folder_id}", headers=headers).status_code == 404
    assert client.get(f"/api/instances/{chat_id}", headers=headers).status_code == 404


def test_other_users_cannot_see_folders(temp_config, repository) -> None:
    client = _build_client(repository, temp_config)
    owner = _login(client, "ada@example.com")
    intruder = _login(client, "eve@example.com")
    folder_id = _create_folder(client, owner)

    assert client.get(f"/api/folders/{folder_id}", headers=intruder).status_code == 404
    assert client.delete(f"/api/folders/{folder_id}", headers=intruder).status_code == 404
    assert client.get("/api/folders", headers=intruder).json() == {"folders": []}
    response = client.post(
        "/api/instances",
        json={"name": "Sneaky", "type": "chat", "folderId": folder_id},
        headers=intruder,
    )
    assert response.status_code == 404


def test_instances_start_with_type_specific_content(temp_config, repository) -> None:
    client = _build_client(repository, temp_config)
    headers = _login(client)
    folder_id = _create_folder(client, headers)

    chat_id = _create_instance(client, headers, folder_id, "chat")
    quiz_id = _create_instance(client, headers, folder_id, "quiz")
    cards_id = _create_instance(client, headers, folder_id, "flashcard")

    def content(instance_id: int) -> dict:
        response = client.get(f"/api/instances/{instance_id}", headers=headers)
        return response.json()["instance"]["content"]

    assert content(chat_id) == {"lastMessage": None, "messageCount": 0}
    assert content(quiz_id) == {"questions": [], "score": None}
    assert content(cards_id) == {"cards": [], "lastReviewed": None}

    filtered = client.get(
        "/api/instances", params={"folderId": folder_id, "type": "quiz"}, headers=headers
    ).json()["instances"]
    assert [instance["id"] for instance in filtered] == [quiz_id]

    renamed = client.put(
        f"/api/instances/{quiz_id}",
        json={"name": "Final", "content": {"questions": [], "score": 3}},
        headers=headers,
    )
    assert renamed.json()["instance"]["name"] == "Final"
    assert renamed.json()["instance"]["content"]["score"] == 3

    bad_type = client.post(
        "/api/instances",
        json={"name": "Notes", "type": "notes", "folderId": folder_id},
        headers=headers,
    )
    assert bad_type.status_code == 400

    assert client.delete(f"/api/instances/{cards_id}", headers=headers).status_code == 204


def test_file_upload_registers_provider_reference(temp_config, repository) -> None:
    fake = FakeGenerationClient()
    client = _build_client(repository, temp_config, fake)
    headers = _login(client)
    folder_id = _create_folder(client, headers)

    record = _upload(client, headers, folder_id, "Lecture 1.pdf")

    assert record["name"] == "files/upload-1"
    assert record["displayName"] == "Lecture 1.pdf"
    assert record["mimeType"] == "application/pdf"
    assert record["fileUri"] == "https://generativelanguage.example/files/upload-1"
    assert record["size"] == len(b"%PDF-1.4 sample")
    assert fake.uploads[0]["data"] == b"%PDF-1.4 sample"
    assert list(temp_config.temp_root.iterdir()) == []

    listing = client.get("/api/files", params={"folderId": folder_id}, headers=headers)
    assert [item["id"] for item in listing.json()["files"]] == [record["id"]]

    missing = client.get("/api/files", headers=headers)
    assert missing.status_code == 400
    assert missing.json()["detail"] == "Folder ID is required"


def test_file_upload_rejects_oversized_payload(
    temp_config, repository, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(web_server, "_MAX_UPLOAD_BYTES", 4)
    fake = FakeGenerationClient()
    client = _build_client(repository, temp_config, fake)
    headers = _login(client)
    folder_id = _create_folder(client, headers)

    response = client.post(
        "/api/files",
        files={"file": ("big.pdf", b"0123456789", "application/pdf")},
        data={"folderId": str(folder_id)},
        headers=headers,
    )

    assert response.status_code == 413
    assert fake.uploads == []
    assert repository.list_files(folder_id) == []


def test_quiz_generation_endpoint(temp_config, repository) -> None:
    fake = FakeGenerationClient(
        {"uri://files/upload-1": _quiz_text(2), "uri://files/upload-2": _quiz_text(1)}
    )
    client = _build_client(repository, temp_config, fake)
    headers = _login(client)
    folder_id = _create_folder(client, headers)
    instance_id = _create_instance(client, headers, folder_id, "quiz")
    first = _upload(client, headers, folder_id, "a.pdf")
    second = _upload(client, headers, folder_id, "b.pdf")

    response = client.post(
        "/api/quizzes",
        json={
            "fileIds": [first["id"], second["id"]],
            "folderId": folder_id,
            "instanceId": instance_id,
        },
        headers=headers,
    )

    assert response.status_code == 201
    quiz = response.json()["quiz"]
    assert quiz["title"] == "Quiz on 2 Documents"
    assert [question["id"] for question in quiz["questions"]] == [1, 2, 3]
    assert [question["sourceFileId"] for question in quiz["questions"]] == [
        first["id"],
        first["id"],
        second["id"],
    ]
    assert quiz["fileIds"] == [first["id"], second["id"]]
    assert [item["status"] for item in response.json()["files"]] == ["ok", "ok"]

    latest = client.get("/api/quizzes", params={"instanceId": instance_id}, headers=headers)
    assert latest.json()["quiz"]["id"] == quiz["id"]
    assert client.get(f"/api/quizzes/{quiz['id']}", headers=headers).status_code == 200


def test_quiz_generation_rejects_unknown_files(temp_config, repository) -> None:
    client = _build_client(repository, temp_config)
    headers = _login(client)
    folder_id = _create_folder(client, headers)
    instance_id = _create_instance(client, headers, folder_id, "quiz")

    missing = client.post(
        "/api/quizzes",
        json={"fileIds": [999], "folderId": folder_id, "instanceId": instance_id},
        headers=headers,
    )
    empty = client.post(
        "/api/quizzes",
        json={"fileIds": [], "folderId": folder_id, "instanceId": instance_id},
        headers=headers,
    )

    assert missing.status_code == 404
    assert missing.json()["detail"] == "Files not found"
    assert empty.status_code == 422
    none = client.get("/api/quizzes", params={"instanceId": instance_id}, headers=headers)
    assert none.json() == {"quiz": None}


def test_quiz_generation_rejects_foreign_folder(temp_config, repository) -> None:
    client = _build_client(repository, temp_config)
    owner = _login(client)
    folder_id = _create_folder(client, owner)
    instance_id = _create_instance(client, owner, folder_id, "quiz")
    uploaded = _upload(client, owner, folder_id, "a.pdf")
    intruder = _login(client, "eve@example.com")

    response = client.post(
        "/api/quizzes",
        json={"fileIds": [uploaded["id"]], "folderId": folder_id, "instanceId": instance_id},
        headers=intruder,
    )
    unknown = client.post(
        "/api/quizzes",
        json={"fileIds": [uploaded["id"]], "folderId": 4242, "instanceId": instance_id},
        headers=owner,
    )

    assert response.status_code == 404
    assert response.json()["detail"] == "Folder not found"
    assert unknown.status_code == 404
    assert unknown.json()["detail"] == "Folder not found"


def test_summary_generation_is_incremental(temp_config, repository) -> None:
    fake = FakeGenerationClient(
        {
            "uri://files/upload-1": '```json\n[{"title":"T1","content":"C1"}]\n```',
            "uri://files/upload-2": "Chapter One\nSome text",
        }
    )
    client = _build_client(repository, temp_config, fake)
    headers = _login(client)
    folder_id = _create_folder(client, headers)
    _upload(client, headers, folder_id, "a.pdf")
    _upload(client, headers, folder_id, "b.pdf")

    first = client.post("/api/summaries", json={"folderId": folder_id}, headers=headers)
    second = client.post("/api/summaries", json={"folderId": folder_id}, headers=headers)

    assert first.status_code == 200
    chapters = [summary["chapters"] for summary in first.json()["summaries"]]
    assert chapters == [
        [{"title": "T1", "content": "C1"}],
        [{"title": "Chapter One", "content": "Some text"}],
    ]
    assert second.json() == {"message": "No new files to summarize", "summaries": [], "files": []}
    assert len(fake.calls) == 2

    listing = client.get("/api/summaries", params={"folderId": folder_id}, headers=headers)
    assert len(listing.json()["summaries"]) == 2


def test_legacy_summaries_are_upgraded_when_read(temp_config, repository) -> None:
    client = _build_client(repository, temp_config)
    headers = _login(client)
    folder_id = _create_folder(client, headers)
    user = repository.find_user_by_email("ada@example.com")
    legacy_content = json.dumps([{"title": "Cells", "content": "Units of life"}]) + "\n```"
    repository.add_summary(
        user.id,
        77,
        folder_id,
        file_name="old.pdf",
        chapters=[Chapter(title=LEGACY_CHAPTER_MARKER, content=legacy_content)],
    )

    response = client.get("/api/summaries", params={"folderId": folder_id}, headers=headers)

    assert response.json()["summaries"][0]["chapters"] == [
        {"title": "Cells", "content": "Units of life"}
    ]


def test_chat_round_trip_with_attachment(temp_config, repository) -> None:
    fake = FakeGenerationClient(chat_reply="That diagram shows mitosis.")
    client = _build_client(repository, temp_config, fake)
    headers = _login(client)
    folder_id = _create_folder(client, headers)
    chat_id = _create_instance(client, headers, folder_id, "chat")

    upload = client.post(
        "/api/upload",
        files={"file": ("Diagram.png", b"png-bytes", "image/png")},
        headers=headers,
    )
    assert upload.status_code == 201
    stored = upload.json()
    assert stored["name"] == "Diagram.png"
    assert client.get(stored["url"], headers=headers).content == b"png-bytes"
    assert client.get(stored["url"]).status_code == 401

    empty = client.post("/api/chat", json={"instanceId": chat_id, "message": " "}, headers=headers)
    assert empty.status_code == 400

    response = client.post(
        "/api/chat",
        json={
            "instanceId": chat_id,
            "message": "",
            "attachment": {"type": "image", "url": stored["url"], "name": stored["name"]},
        },
        headers=headers,
    )

    assert response.status_code == 200
    user_message, reply = response.json()["messages"]
    assert user_message["attachments"][0]["url"] == stored["url"]
    assert reply == {
        "role": "assistant",
        "content": "That diagram shows mitosis.",
        "timestamp": reply["timestamp"],
    }
    assert fake.calls[0]["inline"].mime_type == "image/png"

    history = client.get("/api/chat", params={"instanceId": chat_id}, headers=headers)
    assert len(history.json()["messages"]) == 2
    assert client.get("/api/chat", params={"instanceId": 999}, headers=headers).status_code == 404


def test_chat_timeout_returns_408(temp_config, repository) -> None:
    config = replace(temp_config, chat_timeout_seconds=0.05)
    client = _build_client(repository, config, FakeGenerationClient(delay=0.5))
    headers = _login(client)
    folder_id = _create_folder(client, headers)
    chat_id = _create_instance(client, headers, folder_id, "chat")

    response = client.post(
        "/api/chat", json={"instanceId": chat_id, "message": "Hello?"}, headers=headers
    )

    assert response.status_code == 408
    assert "took too long" in response.json()["detail"]
    assert repository.get_instance(chat_id).messages == []


def test_storage_route_rejects_traversal(temp_config, repository: StudyRepository) -> None:
    client = _build_client(repository, temp_config)
    headers = _login(client)

    assert client.get("/storage/missing.png", headers=headers).status_code == 404
    assert client.get("/storage/..%2F..%2Fetc%2Fpasswd", headers=headers).status_code == 404


def test_storage_route_only_serves_attachments(temp_config, repository: StudyRepository) -> None:
    client = _build_client(repository, temp_config)
    headers = _login(client)
    assert temp_config.database_file.exists()

    for path in (
        "/storage/study_assistant.db",
        "/storage/..%2Fstudy_assistant.db",
        "/storage/..%2F..%2Fstudy_assistant.db",
        "/storage/uploads/attachments/../../study_assistant.db",
    ):
        assert client.get(path, headers=headers).status_code == 404
    assert client.get("/storage/study_assistant.db").status_code == 401


def test_chat_rejects_attachment_outside_attachments(temp_config, repository) -> None:
    fake = FakeGenerationClient(chat_reply="unused")
    client = _build_client(repository, temp_config, fake)
    headers = _login(client)
    folder_id = _create_folder(client, headers)
    chat_id = _create_instance(client, headers, folder_id, "chat")

    for url in ("/storage/study_assistant.db", "/storage/../study_assistant.db"):
        response = client.post(
            "/api/chat",
            json={
                "instanceId": chat_id,
                "message": "What is in this file?",
                "attachment": {"type": "document", "url": url, "name": "notes.pdf"},
            },
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Attachment unavailable: notes.pdf"

    assert fake.calls == []
    assert repository.get_instance(chat_id).messages == []
