"""Bounded conversation context for prompting the model."""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

import structlog

from ..domain.models import Message
from ..repositories.base import Repository

logger = structlog.get_logger()

# Below this many messages (the current prompt included) there is nothing to recall.
MIN_MESSAGES_FOR_CONTEXT = 2


@dataclass(frozen=True)
class ContextEntry:
    role: str
    content: str
    message_id: Optional[UUID] = None


class ContextAssembler:
    """Loads recent turns and folds them into the prompt text."""

    def __init__(self, repository: Repository, retrieval_limit: int = 20, prompt_limit: int = 10):
        self.repository = repository
        self.retrieval_limit = retrieval_limit
        self.prompt_limit = prompt_limit

    async def assemble(
        self,
        conversation_id: UUID,
        limit: Optional[int] = None,
        until: Optional[datetime] = None,
    ) -> List[ContextEntry]:
        """Up to ``limit`` most recent messages as role/content pairs, oldest first.

        ``until`` restricts the window to messages created at or before that
        instant, which is how regeneration replays history up to an edit.
        """
        limit = self.retrieval_limit if limit is None else limit
        messages = await self.repository.get_recent_messages(conversation_id, limit, until=until)
        logger.debug(
            "context_loaded",
            conversation_id=str(conversation_id),
            messages=len(messages),
        )
        return [ContextEntry(role=m.role.value, content=m.content, message_id=m.id) for m in messages]

    def render_prompt(
        self, window: Sequence[ContextEntry], prompt: str, current: Optional[Message] = None
    ) -> str:
        """Prefix ``prompt`` with the textual context block, or return it untouched on a first turn.

        ``window`` is expected to end with the message carrying ``prompt``
        when ``current`` is given; that message is left out of the block so the
        question is not repeated as its own history.
        """
        if len(window) < MIN_MESSAGES_FOR_CONTEXT:
            return prompt

        history = list(window)
        if current is not None and history and history[-1].message_id == current.id:
            history = history[:-1]

        block = "\n".join(
            f"{entry.role.capitalize()}: {entry.content}" for entry in history[-self.prompt_limit :]
        )
        return f"Previous conversation context:\n{block}\n\nCurrent question: {prompt}"
