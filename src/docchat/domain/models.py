"""Domain models for the chat application."""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from .errors import InvalidStatusTransition


class MessageRole(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"


class ProcessingStatus(str, Enum):
    """Extraction state of an uploaded file."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed forward moves; completed and failed are terminal.
_STATUS_TRANSITIONS = {
    ProcessingStatus.PENDING: {ProcessingStatus.PROCESSING, ProcessingStatus.COMPLETED, ProcessingStatus.FAILED},
    ProcessingStatus.PROCESSING: {ProcessingStatus.COMPLETED, ProcessingStatus.FAILED},
    ProcessingStatus.COMPLETED: set(),
    ProcessingStatus.FAILED: set(),
}


def status_can_follow(current: ProcessingStatus, new: ProcessingStatus) -> bool:
    """Whether an upload in ``current`` may move to ``new``."""
    return new in _STATUS_TRANSITIONS[current]


class User(BaseModel):
    """User model, created lazily from identity-provider claims."""

    id: UUID = Field(default_factory=uuid4)
    subject: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Conversation(BaseModel):
    """Conversation model."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    title: Optional[str] = None
    # Set once the owner names the conversation; auto-derived titles never overwrite it.
    title_is_custom: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class AttachedFile(BaseModel):
    """Descriptor of a file attached to a user message."""

    name: str
    type: str
    size: Optional[int] = None
    url: Optional[str] = None


class Message(BaseModel):
    """Message model."""

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    content: str = Field(min_length=1)
    role: MessageRole = MessageRole.USER
    attached_file: Optional[AttachedFile] = None
    # Stamped by the repository on insert; the ordering key for replay.
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class FileUpload(BaseModel):
    """Metadata for an uploaded file and its extraction progress."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    conversation_id: Optional[UUID] = None
    file_name: str
    file_type: str
    file_url: str
    size: int = 0
    extracted_text: Optional[str] = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def advance(self, status: ProcessingStatus) -> None:
        """Move to ``status``, refusing regressions and exits from terminal states."""
        if not status_can_follow(self.processing_status, status):
            raise InvalidStatusTransition(
                f"Cannot move file {self.id} from {self.processing_status.value} to {status.value}"
            )
        self.processing_status = status
        self.updated_at = datetime.utcnow()


class Attachment(BaseModel):
    """Raw file submitted alongside a prompt."""

    filename: str
    media_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class TextOnly(BaseModel):
    """A turn carrying only a text prompt."""

    kind: Literal["text"] = "text"
    prompt: str
    conversation_id: Optional[UUID] = None


class WithAttachment(BaseModel):
    """A turn carrying a text prompt and one file."""

    kind: Literal["attachment"] = "attachment"
    prompt: str
    conversation_id: Optional[UUID] = None
    file: Attachment


TurnRequest = Union[TextOnly, WithAttachment]
