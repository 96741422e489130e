"""Error taxonomy shared by the chat turn pipeline and its HTTP surface."""


class ChatError(Exception):
    """Base class for all chat errors."""

    code = "chat_error"


class Unauthenticated(ChatError):
    """No resolvable caller identity."""

    code = "unauthenticated"


class NotFound(ChatError):
    """Conversation, message or file does not exist."""

    code = "not_found"


class AccessDenied(ChatError):
    """Resource exists but belongs to another user, or the action is not allowed on it."""

    code = "access_denied"


class ValidationError(ChatError):
    """Request rejected before any side effect."""

    code = "validation_error"


class UnsupportedMediaType(ValidationError):
    code = "unsupported_media_type"


class AttachmentTooLarge(ValidationError):
    code = "attachment_too_large"


class AttachmentProcessingError(ChatError):
    """A supported attachment could not be encoded; the turn degrades without it."""

    code = "attachment_degraded"


class UpstreamGenerationError(ChatError):
    """The generation endpoint failed or the stream broke."""

    code = "upstream_generation_failure"


class GenerationTimeout(UpstreamGenerationError):
    code = "generation_timeout"


class PersistenceError(ChatError):
    """A document store write failed."""

    code = "persistence_failure"


class ResponseNotSaved(PersistenceError):
    """The caller received the full response but the assistant message was not stored."""

    code = "response_not_saved"


class InvalidStatusTransition(ChatError):
    code = "invalid_status_transition"
