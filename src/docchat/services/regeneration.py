"""Edit a sent user message and regenerate the conversation from that point."""

from uuid import UUID

import structlog

from ..domain.errors import AccessDenied, ChatError, NotFound, PersistenceError, ValidationError
from ..domain.models import MessageRole
from .turns import TurnCoordinator, TurnStream

logger = structlog.get_logger()


class EditRegenerationCoordinator:
    """Rewrites history at a user message and re-enters the turn pipeline.

    Messages created after the edited one are deleted for good. The
    coordinator does not serialize concurrent edits on one conversation;
    callers hold a per-conversation lock for the life of the stream.
    """

    def __init__(self, turns: TurnCoordinator):
        self.turns = turns
        self.repository = turns.repository

    async def edit_and_regenerate(
        self, user_id: UUID, message_id: UUID, new_content: str
    ) -> TurnStream:
        """Apply the edit, truncate later messages, and open a fresh model stream."""
        content = new_content.strip()
        if not content:
            raise ValidationError("Content is required")

        message = await self.repository.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        conversation = await self.repository.get_conversation(message.conversation_id)
        if conversation is None:
            raise NotFound("Message not found")
        if conversation.user_id != user_id:
            logger.warning("message_access_denied", message_id=str(message_id), user_id=str(user_id))
            raise AccessDenied("Access denied")
        if message.role != MessageRole.USER:
            logger.warning("assistant_message_edit_rejected", message_id=str(message_id))
            raise AccessDenied("Cannot edit an assistant's message")

        log = logger.bind(conversation_id=str(conversation.id), message_id=str(message_id))
        try:
            edited = await self.repository.update_message_content(message_id, content)
            removed = await self.repository.delete_messages_after(conversation.id, edited.created_at)
        except ChatError:
            raise
        except Exception as e:
            log.error("edit_not_saved", error=str(e))
            raise PersistenceError("Could not save the edit") from e
        log.info("message_edited", messages_removed=removed)

        conversation = await self.repository.get_conversation(conversation.id)
        if conversation is None:
            raise NotFound("Conversation not found")
        encoded, degraded, attachment = await self.turns.reload_attachment(edited)
        return await self.turns.start_generation(
            conversation, edited, content, encoded=encoded, degraded=degraded, attachment=attachment
        )
