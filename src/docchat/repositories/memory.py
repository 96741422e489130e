"""In-memory repository implementation."""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import UUID

import structlog

from ..domain.errors import InvalidStatusTransition, NotFound
from ..domain.models import (
    Conversation,
    FileUpload,
    Message,
    MessageRole,
    User,
    status_can_follow,
)
from .base import Repository

logger = structlog.get_logger()


class InMemoryRepository(Repository):
    """Coroutine-safe in-memory document store.

    Entities are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self) -> None:
        """Initialize empty storage."""
        self._users: Dict[str, User] = {}
        self._conversations: Dict[UUID, Conversation] = {}
        self._messages: Dict[UUID, List[Message]] = {}
        self._file_uploads: Dict[UUID, FileUpload] = {}
        self._async_lock = asyncio.Lock()
        self._last_stamp: Optional[datetime] = None
        logger.info("repository_initialized")

    def _stamp(self) -> datetime:
        """Strictly increasing timestamp, so two writes in one clock tick keep insertion order."""
        now = datetime.utcnow()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    async def get_or_create_user(
        self,
        subject: str,
        email: str,
        name: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> User:
        """Return the user for an identity subject, creating it on first sight."""
        async with self._async_lock:
            user = self._users.get(subject)
            if user is None:
                user = User(subject=subject, email=email, name=name, picture=picture)
                self._users[subject] = user
                logger.info("user_created", user_id=str(user.id))
            return user.model_copy()

    async def create_conversation(
        self, user_id: UUID, title: Optional[str] = None, title_is_custom: bool = False
    ) -> Conversation:
        """Create a new conversation owned by ``user_id``."""
        async with self._async_lock:
            stamp = self._stamp()
            conversation = Conversation(
                user_id=user_id,
                title=title,
                title_is_custom=title_is_custom,
                created_at=stamp,
                updated_at=stamp,
            )
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
            logger.info("conversation_created", conversation_id=str(conversation.id))
            return conversation.model_copy()

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        async with self._async_lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                logger.warning("conversation_not_found", conversation_id=str(conversation_id))
                return None
            return conversation.model_copy()

    async def list_conversations(
        self, user_id: UUID, limit: int = 50, offset: int = 0
    ) -> List[Conversation]:
        """List a user's conversations, most recently updated first."""
        async with self._async_lock:
            conversations = sorted(
                (c for c in self._conversations.values() if c.user_id == user_id),
                key=lambda c: c.updated_at,
                reverse=True,
            )
            return [c.model_copy() for c in conversations[offset : offset + limit]]

    async def update_conversation_title(
        self, conversation_id: UUID, title: str, custom: bool
    ) -> Conversation:
        """Set a conversation title."""
        async with self._async_lock:
            conversation = self._require_conversation(conversation_id)
            conversation.title = title
            conversation.title_is_custom = conversation.title_is_custom or custom
            conversation.updated_at = self._stamp()
            return conversation.model_copy()

    async def delete_conversation(self, conversation_id: UUID) -> None:
        """Delete a conversation with its messages and upload metadata."""
        async with self._async_lock:
            self._require_conversation(conversation_id)
            del self._conversations[conversation_id]
            removed = self._messages.pop(conversation_id, [])
            for file_id in [
                f.id for f in self._file_uploads.values() if f.conversation_id == conversation_id
            ]:
                del self._file_uploads[file_id]
            logger.info(
                "conversation_deleted",
                conversation_id=str(conversation_id),
                messages_removed=len(removed),
            )

    async def add_message(self, message: Message) -> Message:
        """Append a message; stamps ``created_at`` and advances the conversation's ``updated_at``."""
        async with self._async_lock:
            conversation = self._conversations.get(message.conversation_id)
            if not conversation:
                logger.error(
                    "conversation_not_found_for_message",
                    conversation_id=str(message.conversation_id),
                )
                raise NotFound(f"Conversation {message.conversation_id} not found")

            stored = message.model_copy(deep=True)
            stored.created_at = stored.updated_at = self._stamp()
            self._messages[message.conversation_id].append(stored)
            conversation.updated_at = stored.created_at

            logger.info(
                "message_added",
                conversation_id=str(message.conversation_id),
                message_id=str(stored.id),
                message_role=stored.role.value,
            )
            return stored.model_copy(deep=True)

    async def get_message(self, message_id: UUID) -> Optional[Message]:
        """Retrieve a message by ID."""
        async with self._async_lock:
            message = self._find_message(message_id)
            return message.model_copy(deep=True) if message else None

    async def update_message_content(self, message_id: UUID, content: str) -> Message:
        """Replace a message's content in place, keeping its ``created_at``."""
        async with self._async_lock:
            message = self._find_message(message_id)
            if message is None:
                raise NotFound(f"Message {message_id} not found")
            message.content = content
            message.updated_at = datetime.utcnow()
            self._conversations[message.conversation_id].updated_at = self._stamp()
            logger.info("message_updated", message_id=str(message_id))
            return message.model_copy(deep=True)

    async def get_messages(
        self,
        conversation_id: UUID,
        limit: Optional[int] = None,
        offset: int = 0,
        until: Optional[datetime] = None,
    ) -> List[Message]:
        """Messages in ascending creation order, optionally only those created at or before ``until``."""
        async with self._async_lock:
            messages = self._ordered(conversation_id, until)
            end = None if limit is None else offset + limit
            return [m.model_copy(deep=True) for m in messages[offset:end]]

    async def get_recent_messages(
        self, conversation_id: UUID, limit: int, until: Optional[datetime] = None
    ) -> List[Message]:
        """The ``limit`` most recent messages, returned oldest first."""
        async with self._async_lock:
            messages = self._ordered(conversation_id, until)
            recent = messages[-limit:] if limit > 0 else []
            return [m.model_copy(deep=True) for m in recent]

    async def delete_messages_after(self, conversation_id: UUID, created_at: datetime) -> int:
        """Delete messages created strictly after ``created_at``; returns how many went."""
        async with self._async_lock:
            self._require_conversation(conversation_id)
            messages = self._messages[conversation_id]
            kept = [m for m in messages if m.created_at <= created_at]
            removed = len(messages) - len(kept)
            self._messages[conversation_id] = kept
            if removed:
                logger.info(
                    "messages_truncated",
                    conversation_id=str(conversation_id),
                    removed=removed,
                )
            return removed

    async def count_messages(
        self, conversation_id: UUID, role: Optional[MessageRole] = None
    ) -> int:
        """Count messages in a conversation, optionally of one role."""
        async with self._async_lock:
            messages = self._messages.get(conversation_id, [])
            return sum(1 for m in messages if role is None or m.role == role)

    async def add_file_upload(self, file_upload: FileUpload) -> FileUpload:
        """Store upload metadata."""
        async with self._async_lock:
            stored = file_upload.model_copy()
            stored.created_at = stored.updated_at = self._stamp()
            self._file_uploads[stored.id] = stored
            logger.info(
                "file_upload_recorded",
                file_id=str(stored.id),
                status=stored.processing_status.value,
            )
            return stored.model_copy()

    async def get_file_upload(self, file_id: UUID) -> Optional[FileUpload]:
        """Retrieve upload metadata by ID."""
        async with self._async_lock:
            file_upload = self._file_uploads.get(file_id)
            return file_upload.model_copy() if file_upload else None

    async def list_file_uploads(
        self, user_id: UUID, conversation_id: Optional[UUID] = None
    ) -> List[FileUpload]:
        """A user's uploads, newest first, optionally scoped to one conversation."""
        async with self._async_lock:
            uploads = [
                f
                for f in self._file_uploads.values()
                if f.user_id == user_id
                and (conversation_id is None or f.conversation_id == conversation_id)
            ]
            uploads.sort(key=lambda f: f.created_at, reverse=True)
            return [f.model_copy() for f in uploads]

    async def save_file_upload(self, file_upload: FileUpload) -> FileUpload:
        """Persist changes to upload metadata."""
        async with self._async_lock:
            current = self._file_uploads.get(file_upload.id)
            if current is None:
                raise NotFound(f"File {file_upload.id} not found")
            if current.processing_status != file_upload.processing_status and not status_can_follow(
                current.processing_status, file_upload.processing_status
            ):
                raise InvalidStatusTransition(
                    f"File {file_upload.id} is {current.processing_status.value}, "
                    f"cannot store {file_upload.processing_status.value}"
                )
            stored = file_upload.model_copy()
            self._file_uploads[stored.id] = stored
            return stored.model_copy()

    def _require_conversation(self, conversation_id: UUID) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        return conversation

    def _find_message(self, message_id: UUID) -> Optional[Message]:
        for messages in self._messages.values():
            for message in messages:
                if message.id == message_id:
                    return message
        return None

    def _ordered(self, conversation_id: UUID, until: Optional[datetime]) -> List[Message]:
        if conversation_id not in self._conversations:
            logger.error(
                "conversation_not_found_for_messages",
                conversation_id=str(conversation_id),
            )
            raise NotFound(f"Conversation {conversation_id} not found")
        messages = self._messages.get(conversation_id, [])
        if until is not None:
            messages = [m for m in messages if m.created_at <= until]
        # Stamps are strictly increasing, and sort is stable for anything inserted out of band.
        return sorted(messages, key=lambda m: m.created_at)
