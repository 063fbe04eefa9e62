"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Sequence, Tuple

from ..config import AppConfig


InstanceType = Literal["chat", "quiz", "flashcard"]
INSTANCE_TYPES: Tuple[str, ...] = ("chat", "quiz", "flashcard")


@dataclass(frozen=True)
class Option:
    id: str
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text}


@dataclass(frozen=True)
class Question:
    """A multiple-choice question with exactly four options."""

    id: int
    question: str
    options: Tuple[Option, ...]
    correct_answer: str
    source_file_id: Optional[int] = None

    def is_valid(self) -> bool:
        option_ids = [option.id for option in self.options]
        return (
            bool(self.question)
            and len(option_ids) == 4
            and len(set(option_ids)) == 4
            and self.correct_answer in option_ids
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "question": self.question,
            "options": [option.to_dict() for option in self.options],
            "correctAnswer": self.correct_answer,
            "sourceFileId": self.source_file_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        return cls(
            id=int(data.get("id") or 0),
            question=str(data.get("question") or ""),
            options=tuple(
                Option(id=str(item.get("id") or ""), text=str(item.get("text") or ""))
                for item in data.get("options") or []
            ),
            correct_answer=str(data.get("correctAnswer") or ""),
            source_file_id=data.get("sourceFileId"),
        )


@dataclass(frozen=True)
class Chapter:
    title: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chapter":
        return cls(title=str(data.get("title") or ""), content=str(data.get("content") or ""))


@dataclass(frozen=True)
class Attachment:
    type: Literal["document", "image"]
    url: str
    name: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "url": self.url, "name": self.name}


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["user", "assistant"]
    content: str
    timestamp: str
    attachments: Tuple[Attachment, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.attachments:
            payload["attachments"] = [attachment.to_dict() for attachment in self.attachments]
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            role="assistant" if data.get("role") == "assistant" else "user",
            content=str(data.get("content") or ""),
            timestamp=str(data.get("timestamp") or ""),
            attachments=tuple(
                Attachment(
                    type="image" if item.get("type") == "image" else "document",
                    url=str(item.get("url") or ""),
                    name=str(item.get("name") or ""),
                )
                for item in data.get("attachments") or []
            ),
        )


@dataclass
class UserRecord:
    id: int
    username: str
    email: str
    password_hash: str
    created_at: str


@dataclass
class FolderRecord:
    id: int
    user_id: int
    name: str
    description: str
    created_at: str


@dataclass
class InstanceRecord:
    id: int
    user_id: int
    folder_id: int
    name: str
    type: str
    content: Dict[str, Any]
    messages: List[ChatMessage]
    created_at: str
    updated_at: str


@dataclass
class FileRecord:
    id: int
    user_id: int
    folder_id: int
    name: str
    display_name: str
    mime_type: str
    file_uri: str
    size: int
    uploaded_at: str


@dataclass
class QuizRecord:
    id: int
    user_id: int
    folder_id: int
    instance_id: int
    title: str
    questions: List[Question]
    file_id: Optional[int]
    file_ids: List[int] = field(default_factory=list)
    created_at: str = ""


@dataclass
class SummaryRecord:
    id: int
    user_id: int
    file_id: int
    folder_id: int
    file_name: str
    chapters: List[Chapter]
    created_at: str
    updated_at: str


class DuplicateSummaryError(RuntimeError):
    """Raised when a summary already exists for a file."""

    def __init__(self, file_id: int) -> None:
        super().__init__(f"A summary already exists for file {file_id}")
        self.file_id = file_id


_MISSING = object()


LOGGER = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("Discarding undecodable JSON column value (length=%s)", len(raw))
        return default


_FILE_COLUMNS = "id, user_id, folder_id, name, display_name, mime_type, file_uri, size, uploaded_at"
_INSTANCE_COLUMNS = "id, user_id, folder_id, name, type, content, messages, created_at, updated_at"
_QUIZ_COLUMNS = "id, user_id, folder_id, instance_id, title, questions, file_id, file_ids, created_at"
_SUMMARY_COLUMNS = "id, user_id, file_id, folder_id, file_name, chapters, created_at, updated_at"


def _instance_from_row(row: sqlite3.Row) -> InstanceRecord:
    content = _load_json(row["content"], {})
    return InstanceRecord(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        folder_id=int(row["folder_id"]),
        name=row["name"],
        type=row["type"],
        content=content if isinstance(content, dict) else {},
        messages=[ChatMessage.from_dict(item) for item in _load_json(row["messages"], [])],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _quiz_from_row(row: sqlite3.Row) -> QuizRecord:
    return QuizRecord(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        folder_id=int(row["folder_id"]),
        instance_id=int(row["instance_id"]),
        title=row["title"],
        questions=[Question.from_dict(item) for item in _load_json(row["questions"], [])],
        file_id=row["file_id"],
        file_ids=[int(item) for item in _load_json(row["file_ids"], [])],
        created_at=row["created_at"],
    )


def _summary_from_row(row: sqlite3.Row) -> SummaryRecord:
    return SummaryRecord(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        file_id=int(row["file_id"]),
        folder_id=int(row["folder_id"]),
        file_name=row["file_name"],
        chapters=[Chapter.from_dict(item) for item in _load_json(row["chapters"], [])],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class StudyRepository:
    """Repository exposing CRUD helpers for every persisted entity."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured debug event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:  # pragma: no cover - instrumentation only
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...]
        if parameters is None:
            params = ()
        elif isinstance(parameters, tuple):
            params = parameters
        else:
            params = tuple(parameters)
        sql_summary = self._summarize_sql(statement)
        with self._track_db_event(
            action,
            table=table,
            sql=sql_summary,
            parameter_count=len(params),
        ) as event:
            try:
                cursor = connection.execute(statement, params)
            except Exception as exc:
                event.setdefault("status", "error")
                event.setdefault("error", f"{exc.__class__.__name__}: {exc}")
                raise
            rowcount = cursor.rowcount if cursor.rowcount >= 0 else None
            if rowcount is not None:
                event.setdefault("rowcount", int(rowcount))
            return cursor

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection: Optional[sqlite3.Connection] = None
        with self._track_db_event(
            "connect", database=str(self._db_path)
        ) as event:
            connection = sqlite3.connect(self._db_path)
            event.setdefault("sqlite_version", sqlite3.sqlite_version)
        assert connection is not None  # nosec - validated above
        connection.row_factory = sqlite3.Row
        self._execute(
            connection,
            "PRAGMA foreign_keys = ON",
            action="pragma_foreign_keys",
        )
        return connection

    def _fetch_all(
        self,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None,
        *,
        action: str,
        table: str,
    ) -> List[sqlite3.Row]:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                statement,
                parameters,
                action=action,
                table=table,
            )
            return cursor.fetchall()

    def _fetch_one(
        self,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None,
        *,
        action: str,
        table: str,
    ) -> Optional[sqlite3.Row]:
        with self._connect() as connection:
            cursor = self._execute(
                connection,
                statement,
                parameters,
                action=action,
                table=table,
            )
            return cursor.fetchone()

    @staticmethod
    def _owner_clause(user_id: Optional[int], params: List[Any]) -> str:
        if user_id is None:
            return ""
        params.append(user_id)
        return " AND user_id = ?"

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def add_user(self, username: str, email: str, password_hash: str) -> int:
        LOGGER.debug("Adding user '%s'", email)
        with self._track_db_event("add_user", table="users") as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "INSERT INTO users(username, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
                    (username, email, password_hash, _utcnow()),
                    action="users.insert",
                    table="users",
                )
                event["user_id"] = int(cursor.lastrowid)
                return int(cursor.lastrowid)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        row = self._fetch_one(
            "SELECT id, username, email, password_hash, created_at FROM users WHERE id = ?",
            (user_id,),
            action="users.get",
            table="users",
        )
        return UserRecord(**row) if row else None

    def find_user_by_email(self, email: str) -> Optional[UserRecord]:
        LOGGER.debug("Looking up user by email '%s'", email)
        row = self._fetch_one(
            "SELECT id, username, email, password_hash, created_at FROM users WHERE email = ?",
            (email,),
            action="users.lookup_by_email",
            table="users",
        )
        return UserRecord(**row) if row else None

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    def add_folder(self, user_id: int, name: str, description: str = "") -> int:
        description_length = len(description or "")
        LOGGER.debug(
            "Adding folder '%s' for user_id=%s (description length=%s)",
            name,
            user_id,
            description_length,
        )
        with self._track_db_event(
            "add_folder",
            table="folders",
            user_id=user_id,
            description_length=description_length,
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "INSERT INTO folders(user_id, name, description, created_at) VALUES (?, ?, ?, ?)",
                    (user_id, name, description, _utcnow()),
                    action="folders.insert",
                    table="folders",
                )
                event["folder_id"] = int(cursor.lastrowid)
                LOGGER.debug("Folder '%s' inserted with id=%s", name, cursor.lastrowid)
                return int(cursor.lastrowid)

    def get_folder(self, folder_id: int, *, user_id: Optional[int] = None) -> Optional[FolderRecord]:
        params: List[Any] = [folder_id]
        owner = self._owner_clause(user_id, params)
        row = self._fetch_one(
            f"SELECT id, user_id, name, description, created_at FROM folders WHERE id = ?{owner}",
            params,
            action="folders.get",
            table="folders",
        )
        if row is None:
            LOGGER.debug("Folder id=%s not found (user_id=%s)", folder_id, user_id)
        return FolderRecord(**row) if row else None

    def list_folders(self, user_id: int) -> List[FolderRecord]:
        rows = self._fetch_all(
            """
            SELECT id, user_id, name, description, created_at
            FROM folders
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (user_id,),
            action="folders.list",
            table="folders",
        )
        return [FolderRecord(**row) for row in rows]

    def update_folder(
        self,
        folder_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        assignments: List[str] = []
        params: List[Any] = []
        if name is not None:
            assignments.append("name = ?")
            params.append(name)
        if description is not None:
            assignments.append("description = ?")
            params.append(description)
        with self._track_db_event("update_folder", folder_id=folder_id) as event:
            if not assignments:
                LOGGER.debug("No changes requested for folder id=%s", folder_id)
                event["result"] = "no_changes"
                return
            params.append(folder_id)
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "UPDATE folders SET " + ", ".join(assignments) + " WHERE id = ?",
                    params,
                    action="folders.update",
                    table="folders",
                )
                event.update({"result": "updated", "rowcount": max(cursor.rowcount, 0)})

    def remove_folder(self, folder_id: int) -> int:
        """Delete a folder together with its instances.

        Files, quizzes and summaries that reference the folder are kept.
        Returns the number of instances removed.
        """

        LOGGER.debug("Removing folder id=%s", folder_id)
        with self._track_db_event("remove_folder", table="folders", folder_id=folder_id) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM instances WHERE folder_id = ?",
                    (folder_id,),
                    action="instances.delete_by_folder",
                    table="instances",
                )
                removed_instances = max(cursor.rowcount, 0)
                self._execute(
                    connection,
                    "DELETE FROM folders WHERE id = ?",
                    (folder_id,),
                    action="folders.delete",
                    table="folders",
                )
                LOGGER.debug(
                    "Folder id=%s removed along with %s instance(s)",
                    folder_id,
                    removed_instances,
                )
                event.update({"result": "deleted", "instances_removed": removed_instances})
                return removed_instances

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------
    def add_instance(
        self,
        user_id: int,
        folder_id: int,
        name: str,
        instance_type: str,
        content: Dict[str, Any],
    ) -> int:
        if instance_type not in INSTANCE_TYPES:
            raise ValueError(f"Unsupported instance type: {instance_type}")
        LOGGER.debug(
            "Adding %s instance '%s' to folder_id=%s", instance_type, name, folder_id
        )
        timestamp = _utcnow()
        with self._track_db_event(
            "add_instance",
            table="instances",
            folder_id=folder_id,
            instance_type=instance_type,
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    """
                    INSERT INTO instances(
                        user_id, folder_id, name, type, content, messages, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, '[]', ?, ?)
                    """,
                    (
                        user_id,
                        folder_id,
                        name,
                        instance_type,
                        json.dumps(content),
                        timestamp,
                        timestamp,
                    ),
                    action="instances.insert",
                    table="instances",
                )
                event["instance_id"] = int(cursor.lastrowid)
                return int(cursor.lastrowid)

    def get_instance(
        self,
        instance_id: int,
        *,
        user_id: Optional[int] = None,
        instance_type: Optional[str] = None,
    ) -> Optional[InstanceRecord]:
        params: List[Any] = [instance_id]
        clauses = self._owner_clause(user_id, params)
        if instance_type is not None:
            clauses += " AND type = ?"
            params.append(instance_type)
        row = self._fetch_one(
            f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE id = ?{clauses}",
            params,
            action="instances.get",
            table="instances",
        )
        return _instance_from_row(row) if row else None

    def list_instances(
        self,
        user_id: int,
        *,
        folder_id: Optional[int] = None,
        instance_type: Optional[str] = None,
    ) -> List[InstanceRecord]:
        clauses = ["user_id = ?"]
        params: List[Any] = [user_id]
        if folder_id is not None:
            clauses.append("folder_id = ?")
            params.append(folder_id)
        if instance_type is not None:
            clauses.append("type = ?")
            params.append(instance_type)
        rows = self._fetch_all(
            f"""
            SELECT {_INSTANCE_COLUMNS}
            FROM instances
            WHERE {' AND '.join(clauses)}
            ORDER BY created_at DESC, id DESC
            """,
            params,
            action="instances.list",
            table="instances",
        )
        return [_instance_from_row(row) for row in rows]

    def update_instance(
        self,
        instance_id: int,
        *,
        name: Optional[str] | object = _MISSING,
        content: Optional[Dict[str, Any]] | object = _MISSING,
    ) -> None:
        """Update name and/or content; omitted values are left untouched."""

        assignments: List[str] = []
        params: List[Any] = []
        if name is not _MISSING and name is not None:
            assignments.append("name = ?")
            params.append(name)
        if content is not _MISSING and content is not None:
            assignments.append("content = ?")
            params.append(json.dumps(content))
        with self._track_db_event(
            "update_instance", instance_id=instance_id, changes=len(assignments)
        ) as event:
            if not assignments:
                event["result"] = "no_changes"
                return
            assignments.append("updated_at = ?")
            params.extend([_utcnow(), instance_id])
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "UPDATE instances SET " + ", ".join(assignments) + " WHERE id = ?",
                    params,
                    action="instances.update",
                    table="instances",
                )
                event.update({"result": "updated", "rowcount": max(cursor.rowcount, 0)})

    def save_messages(
        self,
        instance_id: int,
        messages: Sequence[ChatMessage],
        content: Dict[str, Any],
    ) -> None:
        """Replace the stored message list and the denormalized content blob."""

        with self._track_db_event(
            "save_messages", table="instances", instance_id=instance_id, message_count=len(messages)
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "UPDATE instances SET messages = ?, content = ?, updated_at = ? WHERE id = ?",
                    (
                        json.dumps([message.to_dict() for message in messages]),
                        json.dumps(content),
                        _utcnow(),
                        instance_id,
                    ),
                    action="instances.save_messages",
                    table="instances",
                )
                event["rowcount"] = max(cursor.rowcount, 0)

    def remove_instance(self, instance_id: int) -> None:
        LOGGER.debug("Removing instance id=%s", instance_id)
        with self._track_db_event("remove_instance", table="instances", instance_id=instance_id) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM instances WHERE id = ?",
                    (instance_id,),
                    action="instances.delete",
                    table="instances",
                )
                event.update({"result": "deleted", "rowcount": max(cursor.rowcount, 0)})

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    def add_file(
        self,
        user_id: int,
        folder_id: int,
        *,
        name: str,
        display_name: str,
        mime_type: str,
        file_uri: str,
        size: int,
    ) -> int:
        LOGGER.debug(
            "Adding file '%s' (%s, %s bytes) to folder_id=%s",
            display_name,
            mime_type,
            size,
            folder_id,
        )
        with self._track_db_event(
            "add_file", table="files", folder_id=folder_id, mime_type=mime_type, size=size
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    """
                    INSERT INTO files(
                        user_id, folder_id, name, display_name, mime_type, file_uri, size, uploaded_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        folder_id,
                        name,
                        display_name,
                        mime_type,
                        file_uri,
                        int(size),
                        _utcnow(),
                    ),
                    action="files.insert",
                    table="files",
                )
                event["file_id"] = int(cursor.lastrowid)
                return int(cursor.lastrowid)

    def get_file(self, file_id: int, *, user_id: Optional[int] = None) -> Optional[FileRecord]:
        params: List[Any] = [file_id]
        owner = self._owner_clause(user_id, params)
        row = self._fetch_one(
            f"SELECT {_FILE_COLUMNS} FROM files WHERE id = ?{owner}",
            params,
            action="files.get",
            table="files",
        )
        return FileRecord(**row) if row else None

    def list_files(self, folder_id: int, *, user_id: Optional[int] = None) -> List[FileRecord]:
        params: List[Any] = [folder_id]
        owner = self._owner_clause(user_id, params)
        rows = self._fetch_all(
            f"""
            SELECT {_FILE_COLUMNS}
            FROM files
            WHERE folder_id = ?{owner}
            ORDER BY uploaded_at DESC, id DESC
            """,
            params,
            action="files.list",
            table="files",
        )
        return [FileRecord(**row) for row in rows]

    def find_files(
        self, file_ids: Iterable[int], *, user_id: Optional[int] = None
    ) -> List[FileRecord]:
        """Return the files matching *file_ids* in request order; unknown ids are skipped."""

        identifiers: List[int] = []
        for file_id in file_ids:
            if file_id not in identifiers:
                identifiers.append(file_id)
        if not identifiers:
            return []
        placeholders = ", ".join("?" for _ in identifiers)
        params: List[Any] = list(identifiers)
        owner = self._owner_clause(user_id, params)
        with self._track_db_event(
            "find_files", table="files", requested=len(identifiers)
        ) as event:
            rows = self._fetch_all(
                f"SELECT {_FILE_COLUMNS} FROM files WHERE id IN ({placeholders}){owner}",
                params,
                action="files.find_many",
                table="files",
            )
            by_id = {int(row["id"]): FileRecord(**row) for row in rows}
            event["found"] = len(by_id)
        return [by_id[file_id] for file_id in identifiers if file_id in by_id]

    def list_unsummarized_files(
        self, folder_id: int, *, user_id: Optional[int] = None
    ) -> List[FileRecord]:
        params: List[Any] = [folder_id]
        owner = self._owner_clause(user_id, params)
        rows = self._fetch_all(
            f"""
            SELECT {_FILE_COLUMNS}
            FROM files
            WHERE folder_id = ?{owner}
              AND id NOT IN (SELECT file_id FROM summaries)
            ORDER BY uploaded_at, id
            """,
            params,
            action="files.list_unsummarized",
            table="files",
        )
        return [FileRecord(**row) for row in rows]

    # ------------------------------------------------------------------
    # Quizzes
    # ------------------------------------------------------------------
    def add_quiz(
        self,
        user_id: int,
        folder_id: int,
        instance_id: int,
        *,
        title: str,
        questions: Sequence[Question],
        file_ids: Sequence[int],
    ) -> int:
        primary_file_id = file_ids[0] if file_ids else None
        LOGGER.debug(
            "Adding quiz '%s' with %s question(s) from %s file(s)",
            title,
            len(questions),
            len(file_ids),
        )
        with self._track_db_event(
            "add_quiz",
            table="quizzes",
            instance_id=instance_id,
            question_count=len(questions),
            file_count=len(file_ids),
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    """
                    INSERT INTO quizzes(
                        user_id, folder_id, instance_id, title, questions, file_id, file_ids, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        folder_id,
                        instance_id,
                        title,
                        json.dumps([question.to_dict() for question in questions]),
                        primary_file_id,
                        json.dumps(list(file_ids)),
                        _utcnow(),
                    ),
                    action="quizzes.insert",
                    table="quizzes",
                )
                event["quiz_id"] = int(cursor.lastrowid)
                return int(cursor.lastrowid)

    def get_quiz(self, quiz_id: int, *, user_id: Optional[int] = None) -> Optional[QuizRecord]:
        params: List[Any] = [quiz_id]
        owner = self._owner_clause(user_id, params)
        row = self._fetch_one(
            f"SELECT {_QUIZ_COLUMNS} FROM quizzes WHERE id = ?{owner}",
            params,
            action="quizzes.get",
            table="quizzes",
        )
        return _quiz_from_row(row) if row else None

    def find_quiz_by_instance(
        self, instance_id: int, *, user_id: Optional[int] = None
    ) -> Optional[QuizRecord]:
        params: List[Any] = [instance_id]
        owner = self._owner_clause(user_id, params)
        row = self._fetch_one(
            f"""
            SELECT {_QUIZ_COLUMNS}
            FROM quizzes
            WHERE instance_id = ?{owner}
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            params,
            action="quizzes.lookup_by_instance",
            table="quizzes",
        )
        return _quiz_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------
    def add_summary(
        self,
        user_id: int,
        file_id: int,
        folder_id: int,
        *,
        file_name: str,
        chapters: Sequence[Chapter],
    ) -> int:
        """Persist a summary; raises :class:`DuplicateSummaryError` if *file_id* has one."""

        timestamp = _utcnow()
        with self._track_db_event(
            "add_summary",
            table="summaries",
            file_id=file_id,
            folder_id=folder_id,
            chapter_count=len(chapters),
        ) as event:
            try:
                with self._connect() as connection:
                    cursor = self._execute(
                        connection,
                        """
                        INSERT INTO summaries(
                            user_id, file_id, folder_id, file_name, chapters, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            user_id,
                            file_id,
                            folder_id,
                            file_name,
                            json.dumps([chapter.to_dict() for chapter in chapters]),
                            timestamp,
                            timestamp,
                        ),
                        action="summaries.insert",
                        table="summaries",
                    )
            except sqlite3.IntegrityError as error:
                if "UNIQUE" not in str(error).upper():
                    raise
                event["result"] = "duplicate"
                LOGGER.debug("Summary for file_id=%s already exists", file_id)
                raise DuplicateSummaryError(file_id) from error
            event["summary_id"] = int(cursor.lastrowid)
            return int(cursor.lastrowid)

    def get_summary_for_file(self, file_id: int) -> Optional[SummaryRecord]:
        row = self._fetch_one(
            f"SELECT {_SUMMARY_COLUMNS} FROM summaries WHERE file_id = ?",
            (file_id,),
            action="summaries.lookup_by_file",
            table="summaries",
        )
        return _summary_from_row(row) if row else None

    def list_summaries(
        self, folder_id: int, *, user_id: Optional[int] = None
    ) -> List[SummaryRecord]:
        params: List[Any] = [folder_id]
        owner = self._owner_clause(user_id, params)
        rows = self._fetch_all(
            f"""
            SELECT {_SUMMARY_COLUMNS}
            FROM summaries
            WHERE folder_id = ?{owner}
            ORDER BY created_at DESC, id DESC
            """,
            params,
            action="summaries.list",
            table="summaries",
        )
        return [_summary_from_row(row) for row in rows]

    def iter_summaries(self) -> Iterable[SummaryRecord]:
        LOGGER.debug("Iterating over all summaries")
        with self._track_db_event("iter_summaries", table="summaries") as event:
            rows = self._fetch_all(
                f"SELECT {_SUMMARY_COLUMNS} FROM summaries ORDER BY id",
                None,
                action="summaries.iter",
                table="summaries",
            )
            event["rowcount"] = len(rows)
        for row in rows:
            yield _summary_from_row(row)

    def replace_summary_chapters(self, summary_id: int, chapters: Sequence[Chapter]) -> None:
        with self._track_db_event(
            "replace_summary_chapters",
            table="summaries",
            summary_id=summary_id,
            chapter_count=len(chapters),
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "UPDATE summaries SET chapters = ?, updated_at = ? WHERE id = ?",
                    (
                        json.dumps([chapter.to_dict() for chapter in chapters]),
                        _utcnow(),
                        summary_id,
                    ),
                    action="summaries.update_chapters",
                    table="summaries",
                )
                event["rowcount"] = max(cursor.rowcount, 0)


__all__ = [
    "Attachment",
    "Chapter",
    "ChatMessage",
    "DuplicateSummaryError",
    "FileRecord",
    "FolderRecord",
    "INSTANCE_TYPES",
    "InstanceRecord",
    "InstanceType",
    "Option",
    "Question",
    "QuizRecord",
    "StudyRepository",
    "SummaryRecord",
    "UserRecord",
]
