"""Per-conversation serialization of turns and edits at the HTTP boundary."""

import asyncio
from typing import Dict, Optional
from uuid import UUID

import structlog

from ..domain.errors import ChatError

logger = structlog.get_logger()


class ConversationBusy(ChatError):
    """Another turn or edit on the conversation did not finish in time."""

    code = "conversation_busy"


class GateLease:
    """Exclusive hold on one conversation; release exactly once."""

    def __init__(self, gate: "ConversationGate", conversation_id: UUID, lock: asyncio.Lock):
        self._gate = gate
        self._lock = lock
        self.conversation_id = conversation_id
        self._released = False

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._lock.release()
        await self._gate._forget(self.conversation_id)


class ConversationGate:
    """Hands out one lease per conversation at a time.

    A lease is held for the whole life of a streamed turn, so a second edit
    on the same conversation waits until the first has persisted or failed.
    """

    def __init__(self, acquire_timeout: float = 30.0) -> None:
        """Initialize the gate with a bounded wait for busy conversations."""
        self.acquire_timeout = acquire_timeout
        self._lock = asyncio.Lock()
        self._locks: Dict[UUID, asyncio.Lock] = {}
        self._holders: Dict[UUID, int] = {}
        logger.info("conversation_gate_initialized", acquire_timeout=acquire_timeout)

    async def acquire(self, conversation_id: UUID, timeout: Optional[float] = None) -> GateLease:
        """Wait for the conversation to be free and take it."""
        async with self._lock:
            lock = self._locks.setdefault(conversation_id, asyncio.Lock())
            self._holders[conversation_id] = self._holders.get(conversation_id, 0) + 1

        try:
            await asyncio.wait_for(
                lock.acquire(),
                timeout=self.acquire_timeout if timeout is None else timeout,
            )
        except asyncio.TimeoutError:
            await self._forget(conversation_id)
            logger.warning("conversation_busy", conversation_id=str(conversation_id))
            raise ConversationBusy("Another request is still running on this conversation")
        return GateLease(self, conversation_id, lock)

    def is_busy(self, conversation_id: UUID) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    async def _forget(self, conversation_id: UUID) -> None:
        """Drop the lock once nobody holds or waits for it."""
        async with self._lock:
            remaining = self._holders.get(conversation_id, 0) - 1
            if remaining <= 0:
                self._holders.pop(conversation_id, None)
                self._locks.pop(conversation_id, None)
            else:
                self._holders[conversation_id] = remaining
