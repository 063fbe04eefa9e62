"""Assemble chat turns for the generative API and persist the exchange."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .events import emit_generation_event
from .generation import (
    CHAT_SETTINGS,
    FileReference,
    GenerationClient,
    HistoryTurn,
    InlineData,
)
from .objects import LocalObjectStore, ObjectStoreError
from .orchestrator import InstanceNotFoundError
from .storage import Attachment, ChatMessage, InstanceRecord, StudyRepository


LOGGER = logging.getLogger(__name__)

INITIAL_CONTEXT = (
    "You are a helpful study assistant. Your goal is to help students understand "
    "concepts, explain topics clearly, and provide relevant examples. Be concise but "
    "thorough in your explanations. Format your responses in markdown for better "
    "readability."
)

IMAGE_PROMPT = (
    "Please analyze this image and provide a detailed explanation of its educational "
    "content, key concepts, and any important observations."
)

TIMEOUT_MESSAGE = (
    "The request took too long to process. Please try again with a shorter message."
)
GENERATION_FAILED_MESSAGE = "Failed to generate AI response"

_IMAGE_MIME_TYPES = {"jpg": "image/jpeg", "jpeg": "image/jpeg", "png": "image/png"}
_DOCUMENT_MIME_TYPES = {"pdf": "application/pdf", "txt": "text/plain"}


class ChatTimeoutError(RuntimeError):
    """Raised when the model does not answer within the configured timeout."""


class ChatGenerationError(RuntimeError):
    """Raised when the model call fails for any reason other than a timeout."""


class ChatAttachmentError(ValueError):
    """Raised when a chat attachment URL cannot be read from the object store."""


def get_mime_type(file_name: str, attachment_type: str) -> str:
    extension = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
    if attachment_type == "image":
        return _IMAGE_MIME_TYPES.get(extension, "image/jpeg")
    return _DOCUMENT_MIME_TYPES.get(extension, "application/octet-stream")


def default_prompt(attachment: Optional[Attachment]) -> str:
    if attachment is not None and attachment.type == "image":
        return IMAGE_PROMPT
    file_name = attachment.name if attachment is not None and attachment.name else "file"
    return (
        f"Please analyze this document ({file_name}) and provide a comprehensive study guide with:\n"
        "\n"
        "1. **Main Topic & Key Concepts**\n"
        "2. **Detailed Explanation**\n"
        "3. **Important Points & Examples**\n"
        "4. **Summary & Review Notes**\n"
        "5. **Practice Questions**\n"
        "\n"
        "Please format the response in markdown for better readability."
    )


def _map_role(role: str) -> str:
    return "model" if role == "assistant" else "user"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatService:
    def __init__(
        self,
        repository: StudyRepository,
        client: GenerationClient,
        object_store: LocalObjectStore,
        *,
        model: Optional[str] = None,
        timeout_seconds: float = 55.0,
    ) -> None:
        self._repository = repository
        self._client = client
        self._object_store = object_store
        self._model = model
        self._timeout_seconds = timeout_seconds

    def _load_chat(self, user_id: int, instance_id: int) -> InstanceRecord:
        instance = self._repository.get_instance(
            instance_id, user_id=user_id, instance_type="chat"
        )
        if instance is None:
            raise InstanceNotFoundError("Chat instance not found")
        return instance

    def get_messages(self, user_id: int, instance_id: int) -> List[ChatMessage]:
        return list(self._load_chat(user_id, instance_id).messages)

    def _generate_reply(
        self,
        instance: InstanceRecord,
        message: str,
        attachment: Optional[Attachment],
    ) -> str:
        folder_files = self._repository.list_files(instance.folder_id, user_id=instance.user_id)
        file_refs = [
            FileReference(uri=file.file_uri, mime_type=file.mime_type) for file in folder_files
        ]
        inline: Optional[InlineData] = None
        if attachment is not None:
            try:
                data = self._object_store.fetch(attachment.url)
            except ObjectStoreError as error:
                raise ChatAttachmentError(f"Attachment unavailable: {attachment.name}") from error
            inline = InlineData(data=data, mime_type=get_mime_type(attachment.name, attachment.type))
        history = [HistoryTurn(role="user", text=INITIAL_CONTEXT)]
        history.extend(
            HistoryTurn(role=_map_role(item.role), text=item.content) for item in instance.messages
        )
        LOGGER.debug(
            "Sending chat turn for instance id=%s (history=%s, files=%s, attachment=%s)",
            instance.id,
            len(history),
            len(file_refs),
            attachment.name if attachment else "none",
        )
        return self._client.generate(
            message or default_prompt(attachment),
            model=self._model,
            file_refs=file_refs,
            history=history,
            inline=inline,
            settings=CHAT_SETTINGS,
        )

    async def post_message(
        self,
        user_id: int,
        instance_id: int,
        message: str,
        attachment: Optional[Attachment] = None,
    ) -> Tuple[ChatMessage, ChatMessage]:
        """Run one chat turn and return the appended ``(user, assistant)`` pair.

        Nothing is persisted unless the model answers in time.
        """

        instance = self._load_chat(user_id, instance_id)
        user_message = ChatMessage(
            role="user",
            content=message,
            timestamp=_timestamp(),
            attachments=(attachment,) if attachment is not None else (),
        )

        start = time.perf_counter()
        try:
            reply = await asyncio.wait_for(
                asyncio.to_thread(self._generate_reply, instance, message, attachment),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError as error:
            LOGGER.warning(
                "Chat generation for instance id=%s timed out after %.1fs",
                instance_id,
                self._timeout_seconds,
            )
            raise ChatTimeoutError(TIMEOUT_MESSAGE) from error
        except ChatAttachmentError:
            LOGGER.warning("Rejected chat attachment for instance id=%s", instance_id)
            raise
        except Exception as error:
            LOGGER.exception("Error generating chat response for instance id=%s", instance_id)
            raise ChatGenerationError(GENERATION_FAILED_MESSAGE) from error

        assistant_message = ChatMessage(role="assistant", content=reply, timestamp=_timestamp())
        messages = [*instance.messages, user_message, assistant_message]
        self._repository.save_messages(
            instance_id,
            messages,
            {"lastMessage": assistant_message.content, "messageCount": len(messages)},
        )
        emit_generation_event(
            "chat_turn",
            "Generated chat reply",
            payload={"instance_id": instance_id, "message_count": len(messages)},
            duration_ms=(time.perf_counter() - start) * 1000.0,
        )
        return user_message, assistant_message


__all__ = [
    "ChatAttachmentError",
    "ChatGenerationError",
    "ChatService",
    "ChatTimeoutError",
    "GENERATION_FAILED_MESSAGE",
    "INITIAL_CONTEXT",
    "InstanceNotFoundError",
    "TIMEOUT_MESSAGE",
    "default_prompt",
    "get_mime_type",
]
