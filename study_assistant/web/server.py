"""FastAPI application exposing the Study Assistant API."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import logging
import mimetypes
import os
import shutil
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
)
from fastapi import status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..services.auth import (
    AuthService,
    AuthenticationError,
    Principal,
    RegistrationError,
    TOKEN_COOKIE_NAME,
    extract_token,
)
from ..services.chat import (
    ChatAttachmentError,
    ChatGenerationError,
    ChatService,
    ChatTimeoutError,
)
from ..services.events import (
    emit_db_event,
    emit_file_event,
    emit_structured_event,
)
from ..services.generation import GeminiGenerationClient, GenerationClient, GenerationError
from ..services.legacy import upgrade_legacy_chapters
from ..services.naming import build_upload_name
from ..services.objects import LocalObjectStore, ObjectStoreError
from ..services.orchestrator import (
    FilesNotFoundError,
    FolderNotFoundError,
    GenerationOrchestrator,
    InstanceNotFoundError,
)
from ..services.storage import (
    INSTANCE_TYPES,
    Attachment,
    ChatMessage,
    FileRecord,
    FolderRecord,
    InstanceRecord,
    QuizRecord,
    StudyRepository,
    SummaryRecord,
    UserRecord,
)


_DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024
try:
    _MAX_UPLOAD_BYTES = int(
        (os.environ.get("STUDY_ASSISTANT_MAX_UPLOAD_BYTES") or "").strip()
        or _DEFAULT_MAX_UPLOAD_BYTES
    )
except ValueError:
    _MAX_UPLOAD_BYTES = _DEFAULT_MAX_UPLOAD_BYTES

_DEFAULT_UPLOAD_CHUNK_SIZE = 1024 * 1024


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes."""

    return int(_MAX_UPLOAD_BYTES)


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "study_assistant_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "study_assistant_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = _format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor_hint)

        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


def _copy_upload_stream(
    upload: UploadFile,
    target: Path,
    *,
    chunk_size: int = _DEFAULT_UPLOAD_CHUNK_SIZE,
) -> int:
    """Synchronously copy ``upload`` to ``target`` and return the byte count."""

    source = upload.file
    if hasattr(source, "seek"):
        with contextlib.suppress(OSError, ValueError):
            source.seek(0)
    with target.open("wb") as buffer:
        shutil.copyfileobj(source, buffer, length=chunk_size)
    return target.stat().st_size


async def _persist_upload_file(
    upload: UploadFile,
    target: Path,
    *,
    chunk_size: int = _DEFAULT_UPLOAD_CHUNK_SIZE,
) -> int:
    """Persist an uploaded file to disk without blocking the event loop."""

    loop = asyncio.get_running_loop()
    copy_operation = functools.partial(_copy_upload_stream, upload, target, chunk_size=chunk_size)
    return await loop.run_in_executor(None, copy_operation)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        correlation = _collect_correlation_context()
        for key, value in correlation.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("study_assistant.web.events"), {})


def _emit_debug_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = EVENT_LOGGER,
) -> None:
    correlation = _collect_correlation_context()
    emit_structured_event(
        event_type,
        message,
        payload=payload,
        context=context,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def _emit_db_event(
    action: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.DEBUG,
) -> None:
    correlation = _collect_correlation_context()
    emit_db_event(
        action,
        payload=payload,
        context=context,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def _emit_file_event(
    operation: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
) -> None:
    correlation = _collect_correlation_context()
    emit_file_event(
        operation,
        payload=payload,
        context=context,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def _log_event(message: str, **context: Any) -> None:
    _emit_debug_event("APP_EVENT", message, context=context)


def _serialize_user(user: UserRecord) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "createdAt": user.created_at,
    }


def _serialize_folder(folder: FolderRecord) -> Dict[str, Any]:
    return {
        "id": folder.id,
        "name": folder.name,
        "description": folder.description or "",
        "userId": folder.user_id,
        "createdAt": folder.created_at,
    }


def _serialize_message(message: ChatMessage) -> Dict[str, Any]:
    return message.to_dict()


def _serialize_instance(instance: InstanceRecord) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "name": instance.name,
        "type": instance.type,
        "folderId": instance.folder_id,
        "userId": instance.user_id,
        "content": instance.content,
        "messages": [_serialize_message(message) for message in instance.messages],
        "createdAt": instance.created_at,
        "updatedAt": instance.updated_at,
    }


def _serialize_file(file: FileRecord) -> Dict[str, Any]:
    return {
        "id": file.id,
        "name": file.name,
        "displayName": file.display_name,
        "mimeType": file.mime_type,
        "fileUri": file.file_uri,
        "folderId": file.folder_id,
        "userId": file.user_id,
        "size": file.size,
        "uploadedAt": file.uploaded_at,
    }


def _serialize_quiz(quiz: QuizRecord) -> Dict[str, Any]:
    return {
        "id": quiz.id,
        "title": quiz.title,
        "questions": [question.to_dict() for question in quiz.questions],
        "fileId": quiz.file_id,
        "fileIds": list(quiz.file_ids),
        "folderId": quiz.folder_id,
        "instanceId": quiz.instance_id,
        "createdAt": quiz.created_at,
    }


def _serialize_summary(summary: SummaryRecord) -> Dict[str, Any]:
    return {
        "id": summary.id,
        "fileId": summary.file_id,
        "folderId": summary.folder_id,
        "fileName": summary.file_name,
        "chapters": [chapter.to_dict() for chapter in upgrade_legacy_chapters(summary.chapters)],
        "createdAt": summary.created_at,
        "updatedAt": summary.updated_at,
    }


def _initial_instance_content(instance_type: str) -> Dict[str, Any]:
    if instance_type == "chat":
        return {"lastMessage": None, "messageCount": 0}
    if instance_type == "quiz":
        return {"questions": [], "score": None}
    return {"cards": [], "lastReviewed": None}


def normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


class SignupPayload(BaseModel):
    username: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


class LoginPayload(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class FolderCreatePayload(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""


class FolderUpdatePayload(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class InstanceCreatePayload(BaseModel):
    name: str = Field(..., min_length=1)
    type: str
    folder_id: int = Field(..., alias="folderId")


class InstanceUpdatePayload(BaseModel):
    name: Optional[str] = None
    content: Optional[Dict[str, Any]] = None


class QuizGeneratePayload(BaseModel):
    file_ids: List[int] = Field(..., alias="fileIds", min_length=1)
    folder_id: int = Field(..., alias="folderId")
    instance_id: int = Field(..., alias="instanceId")


class SummaryGeneratePayload(BaseModel):
    folder_id: int = Field(..., alias="folderId")


class AttachmentPayload(BaseModel):
    type: str
    url: str = Field(..., min_length=1)
    name: str = ""


class ChatPayload(BaseModel):
    message: str = ""
    instance_id: int = Field(..., alias="instanceId")
    attachment: Optional[AttachmentPayload] = None


def create_app(
    repository: StudyRepository,
    *,
    config: AppConfig,
    generation_client: Optional[GenerationClient] = None,
    object_store: Optional[LocalObjectStore] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    normalized_root = normalize_root_path(root_path)
    app = FastAPI(
        title="Study Assistant",
        description="Folders, documents and AI-generated study material",
        root_path=normalized_root,
    )

    def _repository_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
        if event_type == "DB_QUERY":
            _emit_db_event(message, **kwargs)
        elif event_type == "FILE_OP":
            _emit_file_event(message, **kwargs)
        else:
            _emit_debug_event(event_type, message, **kwargs)

    configure_emitter = getattr(repository, "configure_event_emitter", None)
    if callable(configure_emitter):
        configure_emitter(_repository_event_emitter)

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    client: GenerationClient = generation_client or GeminiGenerationClient(
        default_model=config.chat_model
    )
    store = object_store or LocalObjectStore(config, max_fetch_bytes=get_max_upload_bytes())
    auth_service = AuthService(
        repository,
        secret=config.session_secret,
        ttl_hours=config.session_ttl_hours,
    )
    orchestrator = GenerationOrchestrator(
        repository,
        client,
        quiz_model=config.quiz_model,
        summary_model=config.summary_model,
    )
    chat_service = ChatService(
        repository,
        client,
        store,
        model=config.chat_model,
        timeout_seconds=config.chat_timeout_seconds,
    )
    app.state.repository = repository
    app.state.generation_client = client
    app.state.object_store = store
    app.state.auth_service = auth_service
    app.state.orchestrator = orchestrator
    app.state.chat_service = chat_service

    async def current_principal(request: Request) -> Principal:
        token = extract_token(
            request.cookies.get(TOKEN_COOKIE_NAME),
            request.headers.get("authorization"),
        )
        try:
            principal = auth_service.authenticate(token)
        except AuthenticationError as error:
            raise HTTPException(status_code=401, detail=str(error)) from error
        _ACTOR_VAR.set(_format_actor_label("user", str(principal.user_id)))
        return principal

    def _require_folder(folder_id: int, principal: Principal) -> FolderRecord:
        folder = repository.get_folder(folder_id, user_id=principal.user_id)
        if folder is None:
            raise HTTPException(status_code=404, detail="Folder not found")
        return folder

    def _require_instance(instance_id: int, principal: Principal) -> InstanceRecord:
        instance = repository.get_instance(instance_id, user_id=principal.user_id)
        if instance is None:
            raise HTTPException(status_code=404, detail="Instance not found")
        return instance

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @app.post("/api/auth/signup", status_code=status.HTTP_201_CREATED)
    async def signup(payload: SignupPayload) -> Dict[str, Any]:
        _log_event("Registering user")
        try:
            user = auth_service.register(payload.username, payload.email, payload.password)
        except RegistrationError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        return {"user": _serialize_user(user)}

    @app.post("/api/auth/login")
    async def login(payload: LoginPayload) -> JSONResponse:
        try:
            user, token = auth_service.login(payload.email, payload.password)
        except AuthenticationError as error:
            raise HTTPException(status_code=401, detail=str(error)) from error
        _log_event("User logged in", user_id=user.id)
        response = JSONResponse({"user": _serialize_user(user), "token": token})
        response.set_cookie(
            TOKEN_COOKIE_NAME,
            token,
            max_age=auth_service.ttl_seconds,
            httponly=True,
            samesite="strict",
            path="/",
        )
        return response

    @app.post("/api/auth/logout")
    async def logout() -> JSONResponse:
        response = JSONResponse({"message": "Logged out"})
        response.delete_cookie(TOKEN_COOKIE_NAME, path="/")
        return response

    @app.get("/api/auth/me")
    async def me(principal: Principal = Depends(current_principal)) -> Dict[str, Any]:
        user = repository.get_user(principal.user_id)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")
        return {"user": _serialize_user(user)}

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    @app.get("/api/folders")
    async def list_folders(principal: Principal = Depends(current_principal)) -> Dict[str, Any]:
        folders = repository.list_folders(principal.user_id)
        _log_event("Listed folders", folder_count=len(folders))
        return {"folders": [_serialize_folder(folder) for folder in folders]}

    @app.post("/api/folders", status_code=status.HTTP_201_CREATED)
    async def create_folder(
        payload: FolderCreatePayload,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Folder name is required")
        folder_id = repository.add_folder(principal.user_id, name, payload.description.strip())
        folder = repository.get_folder(folder_id)
        if folder is None:
            raise HTTPException(status_code=500, detail="Folder creation failed")
        _log_event("Created folder", folder_id=folder_id)
        return {"folder": _serialize_folder(folder)}

    @app.get("/api/folders/{folder_id}")
    async def get_folder(
        folder_id: int,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        return {"folder": _serialize_folder(_require_folder(folder_id, principal))}

    @app.put("/api/folders/{folder_id}")
    async def update_folder(
        folder_id: int,
        payload: FolderUpdatePayload,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        _require_folder(folder_id, principal)
        updates: Dict[str, Any] = {}
        if payload.name is not None:
            name = payload.name.strip()
            if not name:
                raise HTTPException(status_code=400, detail="Folder name is required")
            updates["name"] = name
        if payload.description is not None:
            updates["description"] = payload.description.strip()
        if updates:
            repository.update_folder(folder_id, **updates)
        updated = repository.get_folder(folder_id)
        if updated is None:
            raise HTTPException(status_code=500, detail="Folder update failed")
        _log_event("Updated folder", folder_id=folder_id)
        return {"folder": _serialize_folder(updated)}

    @app.delete(
        "/api/folders/{folder_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_folder(
        folder_id: int,
        principal: Principal = Depends(current_principal),
    ) -> Response:
        _require_folder(folder_id, principal)
        removed = repository.remove_folder(folder_id)
        _log_event("Deleted folder", folder_id=folder_id, instance_count=removed)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------
    @app.get("/api/instances")
    async def list_instances(
        folder_id: Optional[int] = Query(None, alias="folderId"),
        instance_type: Optional[str] = Query(None, alias="type"),
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        if instance_type is not None and instance_type not in INSTANCE_TYPES:
            raise HTTPException(status_code=400, detail="Unsupported instance type")
        instances = repository.list_instances(
            principal.user_id,
            folder_id=folder_id,
            instance_type=instance_type,
        )
        return {"instances": [_serialize_instance(instance) for instance in instances]}

    @app.post("/api/instances", status_code=status.HTTP_201_CREATED)
    async def create_instance(
        payload: InstanceCreatePayload,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        if payload.type not in INSTANCE_TYPES:
            raise HTTPException(status_code=400, detail="Unsupported instance type")
        name = payload.name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Instance name is required")
        _require_folder(payload.folder_id, principal)
        instance_id = repository.add_instance(
            principal.user_id,
            payload.folder_id,
            name,
            payload.type,
            _initial_instance_content(payload.type),
        )
        instance = repository.get_instance(instance_id)
        if instance is None:
            raise HTTPException(status_code=500, detail="Instance creation failed")
        _log_event("Created instance", instance_id=instance_id, instance_type=payload.type)
        return {"instance": _serialize_instance(instance)}

    @app.get("/api/instances/{instance_id}")
    async def get_instance(
        instance_id: int,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        return {"instance": _serialize_instance(_require_instance(instance_id, principal))}

    @app.put("/api/instances/{instance_id}")
    async def update_instance(
        instance_id: int,
        payload: InstanceUpdatePayload,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        _require_instance(instance_id, principal)
        name = payload.name.strip() if payload.name is not None else None
        if payload.name is not None and not name:
            raise HTTPException(status_code=400, detail="Instance name is required")
        repository.update_instance(instance_id, name=name, content=payload.content)
        updated = repository.get_instance(instance_id)
        if updated is None:
            raise HTTPException(status_code=500, detail="Instance update failed")
        _log_event("Updated instance", instance_id=instance_id)
        return {"instance": _serialize_instance(updated)}

    @app.delete(
        "/api/instances/{instance_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_instance(
        instance_id: int,
        principal: Principal = Depends(current_principal),
    ) -> Response:
        _require_instance(instance_id, principal)
        repository.remove_instance(instance_id)
        _log_event("Deleted instance", instance_id=instance_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    @app.get("/api/files")
    async def list_files(
        folder_id: Optional[int] = Query(None, alias="folderId"),
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        if folder_id is None:
            raise HTTPException(status_code=400, detail="Folder ID is required")
        files = repository.list_files(folder_id, user_id=principal.user_id)
        return {"files": [_serialize_file(file) for file in files]}

    @app.post("/api/files", status_code=status.HTTP_201_CREATED)
    async def upload_file(
        file: Optional[UploadFile] = File(None),
        folder_id: Optional[int] = Form(None, alias="folderId"),
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        if file is None or folder_id is None:
            raise HTTPException(status_code=400, detail="File and folder ID are required")
        _require_folder(folder_id, principal)

        display_name = Path(file.filename or "").name or "document"
        mime_type = (
            file.content_type
            or mimetypes.guess_type(display_name)[0]
            or "application/octet-stream"
        )
        temp_root = config.temp_root
        temp_root.mkdir(parents=True, exist_ok=True)
        target = temp_root / build_upload_name(display_name)
        _log_event("Uploading file", folder_id=folder_id, filename=display_name)
        try:
            try:
                size = await _persist_upload_file(file, target)
            finally:
                await file.close()
            limit = get_max_upload_bytes()
            if limit > 0 and size > limit:
                raise HTTPException(status_code=413, detail="File exceeds the upload limit")
            try:
                uploaded = await asyncio.to_thread(
                    client.upload_file,
                    target,
                    mime_type=mime_type,
                    display_name=display_name,
                )
            except GenerationError as error:
                LOGGER.error("Upload to the generation provider failed: %s", error)
                raise HTTPException(status_code=500, detail="Failed to upload file") from error
        finally:
            with contextlib.suppress(FileNotFoundError):
                target.unlink()

        file_id = repository.add_file(
            principal.user_id,
            folder_id,
            name=uploaded.name,
            display_name=display_name,
            mime_type=mime_type,
            file_uri=uploaded.uri,
            size=size,
        )
        record = repository.get_file(file_id)
        if record is None:
            raise HTTPException(status_code=500, detail="File registration failed")
        _emit_file_event(
            "file_registered",
            payload={"file_id": file_id, "size": size, "mime_type": mime_type},
        )
        return {"file": _serialize_file(record)}

    @app.post("/api/upload", status_code=status.HTTP_201_CREATED)
    async def upload_attachment(
        file: Optional[UploadFile] = File(None),
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        if file is None:
            raise HTTPException(status_code=400, detail="No file provided")
        filename = Path(file.filename or "").name or "attachment"
        try:
            data = await file.read()
        finally:
            await file.close()
        limit = get_max_upload_bytes()
        if limit > 0 and len(data) > limit:
            raise HTTPException(status_code=413, detail="File exceeds the upload limit")
        try:
            stored = await asyncio.to_thread(store.put, data, filename)
        except ObjectStoreError as error:
            raise HTTPException(status_code=500, detail="Failed to upload file") from error
        _log_event("Stored attachment", user_id=principal.user_id, size=stored.size)
        return {"url": stored.url, "name": filename, "size": stored.size}

    @app.get("/storage/{path:path}")
    async def serve_storage_file(
        path: str,
        principal: Principal = Depends(current_principal),
    ) -> FileResponse:
        try:
            target = store.resolve_path(path)
        except ObjectStoreError as error:
            raise HTTPException(status_code=404, detail="File not found") from error
        if not target.exists() or target.is_dir():
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(target)

    # ------------------------------------------------------------------
    # Quizzes
    # ------------------------------------------------------------------
    @app.get("/api/quizzes")
    async def get_quiz_for_instance(
        instance_id: Optional[int] = Query(None, alias="instanceId"),
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        if instance_id is None:
            raise HTTPException(status_code=400, detail="Instance ID is required")
        quiz = repository.find_quiz_by_instance(instance_id, user_id=principal.user_id)
        return {"quiz": _serialize_quiz(quiz) if quiz is not None else None}

    @app.get("/api/quizzes/{quiz_id}")
    async def get_quiz(
        quiz_id: int,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        quiz = repository.get_quiz(quiz_id, user_id=principal.user_id)
        if quiz is None:
            raise HTTPException(status_code=404, detail="Quiz not found")
        return {"quiz": _serialize_quiz(quiz)}

    @app.post("/api/quizzes", status_code=status.HTTP_201_CREATED)
    async def generate_quiz(
        payload: QuizGeneratePayload,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        _log_event(
            "Received quiz generation request",
            file_ids=payload.file_ids,
            folder_id=payload.folder_id,
            instance_id=payload.instance_id,
        )
        try:
            outcome = await asyncio.to_thread(
                orchestrator.generate_quiz,
                principal.user_id,
                payload.file_ids,
                payload.folder_id,
                payload.instance_id,
            )
        except FolderNotFoundError as error:
            raise HTTPException(status_code=404, detail="Folder not found") from error
        except FilesNotFoundError as error:
            raise HTTPException(status_code=404, detail="Files not found") from error
        except InstanceNotFoundError as error:
            raise HTTPException(status_code=404, detail="Instance not found") from error
        except Exception as error:
            LOGGER.exception("Error generating quiz")
            raise HTTPException(status_code=500, detail="Failed to generate quiz") from error
        _log_event(
            "Quiz created",
            quiz_id=outcome.quiz.id,
            question_count=len(outcome.quiz.questions),
        )
        return {
            "quiz": _serialize_quiz(outcome.quiz),
            "files": [report.to_dict() for report in outcome.reports],
        }

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------
    @app.get("/api/summaries")
    async def list_summaries(
        folder_id: Optional[int] = Query(None, alias="folderId"),
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        if folder_id is None:
            raise HTTPException(status_code=400, detail="Folder ID is required")
        summaries = repository.list_summaries(folder_id, user_id=principal.user_id)
        return {"summaries": [_serialize_summary(summary) for summary in summaries]}

    @app.post("/api/summaries")
    async def generate_summaries(
        payload: SummaryGeneratePayload,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        _log_event("Received summary generation request", folder_id=payload.folder_id)
        try:
            outcome = await asyncio.to_thread(
                orchestrator.generate_summaries,
                principal.user_id,
                payload.folder_id,
            )
        except FolderNotFoundError as error:
            raise HTTPException(status_code=404, detail="Folder not found") from error
        except Exception as error:
            LOGGER.exception("Error generating summaries")
            raise HTTPException(status_code=500, detail="Failed to generate summaries") from error
        if outcome.status == "no_new_files":
            return {"message": "No new files to summarize", "summaries": [], "files": []}
        return {
            "summaries": [_serialize_summary(summary) for summary in outcome.summaries],
            "files": [report.to_dict() for report in outcome.reports],
        }

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    @app.get("/api/chat")
    async def get_chat_messages(
        instance_id: Optional[int] = Query(None, alias="instanceId"),
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        if instance_id is None:
            raise HTTPException(status_code=400, detail="Instance ID is required")
        try:
            messages = chat_service.get_messages(principal.user_id, instance_id)
        except InstanceNotFoundError as error:
            raise HTTPException(status_code=404, detail="Chat instance not found") from error
        return {"messages": [_serialize_message(message) for message in messages]}

    @app.post("/api/chat")
    async def post_chat_message(
        payload: ChatPayload,
        principal: Principal = Depends(current_principal),
    ) -> Dict[str, Any]:
        attachment: Optional[Attachment] = None
        if payload.attachment is not None:
            if payload.attachment.type not in ("document", "image"):
                raise HTTPException(status_code=400, detail="Unsupported attachment type")
            attachment = Attachment(
                type="image" if payload.attachment.type == "image" else "document",
                url=payload.attachment.url,
                name=payload.attachment.name or Path(payload.attachment.url).name,
            )
        if not payload.message.strip() and attachment is None:
            raise HTTPException(status_code=400, detail="Message or attachment is required")

        try:
            user_message, assistant_message = await chat_service.post_message(
                principal.user_id,
                payload.instance_id,
                payload.message,
                attachment,
            )
        except InstanceNotFoundError as error:
            raise HTTPException(status_code=404, detail="Chat instance not found") from error
        except ChatAttachmentError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except ChatTimeoutError as error:
            raise HTTPException(status_code=408, detail=str(error)) from error
        except ChatGenerationError as error:
            raise HTTPException(status_code=500, detail=str(error)) from error
        _log_event("Chat turn completed", instance_id=payload.instance_id)
        return {
            "messages": [
                _serialize_message(user_message),
                _serialize_message(assistant_message),
            ]
        }

    return app


__all__ = ["create_app", "get_max_upload_bytes", "normalize_root_path"]
