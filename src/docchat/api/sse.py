"""Server-Sent Events framing for streamed chat turns."""

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

from structlog import get_logger

from ..domain.errors import ChatError
from ..services.turns import TurnStream

logger = get_logger()


class EventType(str, Enum):
    """SSE event types of a turn stream."""

    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


@dataclass
class SSEEvent:
    """An SSE event to send to clients."""

    event: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def encode(self) -> str:
        """Encode as SSE format."""
        lines = [
            f"id: {self.id}",
            f"event: {self.event}",
            f"data: {json.dumps(self.data)}",
            "",  # Empty line to end the event
        ]
        return "\n".join(lines) + "\n"


async def turn_events(
    stream: TurnStream,
    on_close: Optional[Callable[[], Awaitable[None]]] = None,
) -> AsyncGenerator[str, None]:
    """Relay a turn as ``chunk`` events closed by exactly one ``done`` or ``error`` event.

    ``done`` is only sent once the assistant message is stored, so a stream
    without it is a failed turn.
    """
    try:
        async for chunk in stream:
            yield SSEEvent(event=EventType.CHUNK.value, data={"text": chunk}).encode()
        yield SSEEvent(
            event=EventType.DONE.value,
            data={
                "conversation_id": str(stream.conversation.id),
                "message_id": str(stream.assistant_message.id),
                "user_message_id": str(stream.user_message.id),
                "title": stream.conversation.title,
                "attachment_degraded": stream.attachment_degraded,
            },
        ).encode()
    except ChatError as e:
        yield SSEEvent(event=EventType.ERROR.value, data={"code": e.code, "detail": str(e)}).encode()
    except Exception as e:
        logger.error("turn_stream_error", conversation_id=str(stream.conversation.id), error=str(e))
        yield SSEEvent(
            event=EventType.ERROR.value,
            data={"code": "internal_error", "detail": "Internal error"},
        ).encode()
    finally:
        if on_close is not None:
            await on_close()
