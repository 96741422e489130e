"""Base repository interface."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from ..domain.models import Conversation, FileUpload, Message, MessageRole, User


class Repository(ABC):
    """Abstract document store for users, conversations, messages and upload metadata."""

    @abstractmethod
    async def get_or_create_user(
        self,
        subject: str,
        email: str,
        name: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> User:
        """Return the user for an identity subject, creating it on first sight."""
        pass

    @abstractmethod
    async def create_conversation(
        self, user_id: UUID, title: Optional[str] = None, title_is_custom: bool = False
    ) -> Conversation:
        """Create a new conversation owned by ``user_id``."""
        pass

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def list_conversations(
        self, user_id: UUID, limit: int = 50, offset: int = 0
    ) -> List[Conversation]:
        """List a user's conversations, most recently updated first."""
        pass

    @abstractmethod
    async def update_conversation_title(
        self, conversation_id: UUID, title: str, custom: bool
    ) -> Conversation:
        """Set a conversation title."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID) -> None:
        """Delete a conversation with its messages and upload metadata."""
        pass

    @abstractmethod
    async def add_message(self, message: Message) -> Message:
        """Append a message; stamps ``created_at`` and advances the conversation's ``updated_at``."""
        pass

    @abstractmethod
    async def get_message(self, message_id: UUID) -> Optional[Message]:
        """Retrieve a message by ID."""
        pass

    @abstractmethod
    async def update_message_content(self, message_id: UUID, content: str) -> Message:
        """Replace a message's content in place, keeping its ``created_at``."""
        pass

    @abstractmethod
    async def get_messages(
        self,
        conversation_id: UUID,
        limit: Optional[int] = None,
        offset: int = 0,
        until: Optional[datetime] = None,
    ) -> List[Message]:
        """Messages in ascending creation order, optionally only those created at or before ``until``."""
        pass

    @abstractmethod
    async def get_recent_messages(
        self, conversation_id: UUID, limit: int, until: Optional[datetime] = None
    ) -> List[Message]:
        """The ``limit`` most recent messages, returned oldest first."""
        pass

    @abstractmethod
    async def delete_messages_after(self, conversation_id: UUID, created_at: datetime) -> int:
        """Delete messages created strictly after ``created_at``; returns how many went."""
        pass

    @abstractmethod
    async def count_messages(
        self, conversation_id: UUID, role: Optional[MessageRole] = None
    ) -> int:
        """Count messages in a conversation, optionally of one role."""
        pass

    @abstractmethod
    async def add_file_upload(self, file_upload: FileUpload) -> FileUpload:
        """Store upload metadata."""
        pass

    @abstractmethod
    async def get_file_upload(self, file_id: UUID) -> Optional[FileUpload]:
        """Retrieve upload metadata by ID."""
        pass

    @abstractmethod
    async def list_file_uploads(
        self, user_id: UUID, conversation_id: Optional[UUID] = None
    ) -> List[FileUpload]:
        """A user's uploads, newest first, optionally scoped to one conversation."""
        pass

    @abstractmethod
    async def save_file_upload(self, file_upload: FileUpload) -> FileUpload:
        """Persist changes to upload metadata."""
        pass
