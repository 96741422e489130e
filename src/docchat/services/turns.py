"""Turn coordination: one user prompt in, one streamed and persisted answer out.

A turn moves through ``TurnState`` in order. Everything up to opening the
model stream happens inside ``TurnCoordinator.submit_turn`` so validation,
access and invocation failures surface before a response starts; the
returned ``TurnStream`` relays chunks and persists the assistant message
only after a clean end of stream.
"""

import asyncio
from enum import Enum
from typing import AsyncIterator, List, Optional, Tuple
from uuid import UUID

import structlog

from .. import metrics
from ..domain.errors import (
    AccessDenied,
    ChatError,
    GenerationTimeout,
    NotFound,
    PersistenceError,
    ResponseNotSaved,
    UpstreamGenerationError,
    ValidationError,
)
from ..domain.models import (
    AttachedFile,
    Attachment,
    Conversation,
    FileUpload,
    Message,
    MessageRole,
    ProcessingStatus,
    TurnRequest,
    WithAttachment,
)
from ..repositories.base import Repository
from .attachments import AttachmentEncoder, EncodedAttachment, mention
from .blob_store import BlobStore
from .context import ContextAssembler
from .llm import GenerationClient, Part, TextPart

logger = structlog.get_logger()

ELLIPSIS = "..."


class TurnState(str, Enum):
    IDLE = "idle"
    CONVERSATION_RESOLVED = "conversation_resolved"
    USER_MESSAGE_PERSISTED = "user_message_persisted"
    CONTEXT_ASSEMBLED = "context_assembled"
    MODEL_INVOKED = "model_invoked"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


def derive_title(prompt: str, max_length: int = 50) -> str:
    """Provisional conversation title from the first prompt."""
    prompt = prompt.strip()
    if len(prompt) <= max_length:
        return prompt
    return prompt[:max_length] + ELLIPSIS


class TurnStream:
    """Streamed assistant response for one turn.

    Iterate once to receive text chunks in model order. When iteration ends
    normally the assistant message has been persisted and is available as
    ``assistant_message``. Iteration raises ``UpstreamGenerationError`` if
    the model fails (nothing is persisted) and ``ResponseNotSaved`` if the
    full response was relayed but could not be stored.
    """

    def __init__(
        self,
        coordinator: "TurnCoordinator",
        conversation: Conversation,
        user_message: Message,
        prompt: str,
        chunks: AsyncIterator[str],
        first_exchange: bool,
        attachment_degraded: bool = False,
        transitions: Optional[List[TurnState]] = None,
    ):
        self._coordinator = coordinator
        self._chunks = chunks
        self._consumed = False
        self.conversation = conversation
        self.user_message = user_message
        self.prompt = prompt
        self.first_exchange = first_exchange
        self.attachment_degraded = attachment_degraded
        self.assistant_message: Optional[Message] = None
        self.transitions: List[TurnState] = list(transitions or [TurnState.MODEL_INVOKED])

    @property
    def state(self) -> TurnState:
        return self.transitions[-1]

    @state.setter
    def state(self, state: TurnState) -> None:
        self.transitions.append(state)

    @property
    def conversation_id(self) -> UUID:
        return self.conversation.id

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("A turn stream can only be consumed once")
        self._consumed = True
        return self._relay()

    async def _next_chunk(self, deadline: float) -> str:
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise GenerationTimeout("Generation exceeded its time budget")
        try:
            return await asyncio.wait_for(self._chunks.__anext__(), timeout=remaining)
        except asyncio.TimeoutError as e:
            raise GenerationTimeout("Generation exceeded its time budget") from e

    async def _relay(self) -> AsyncIterator[str]:
        log = logger.bind(
            conversation_id=str(self.conversation.id),
            user_message_id=str(self.user_message.id),
        )
        deadline = asyncio.get_running_loop().time() + self._coordinator.generation_timeout
        accumulated: List[str] = []
        self.state = TurnState.STREAMING
        try:
            while True:
                try:
                    chunk = await self._next_chunk(deadline)
                except StopAsyncIteration:
                    break
                except UpstreamGenerationError:
                    raise
                except Exception as e:
                    raise UpstreamGenerationError(f"Generation stream failed: {e}") from e
                accumulated.append(chunk)
                yield chunk
        except UpstreamGenerationError as e:
            self.state = TurnState.FAILED
            metrics.TURNS_FAILED.inc()
            log.error("turn_failed", error=str(e), chunks_relayed=len(accumulated))
            raise
        except (GeneratorExit, asyncio.CancelledError):
            self.state = TurnState.FAILED
            log.warning("turn_cancelled", chunks_relayed=len(accumulated))
            raise
        finally:
            aclose = getattr(self._chunks, "aclose", None)
            if aclose is not None and self.state != TurnState.STREAMING:
                await aclose()

        text = "".join(accumulated)
        if not text.strip():
            self.state = TurnState.FAILED
            metrics.TURNS_FAILED.inc()
            log.error("turn_failed", error="empty response")
            raise UpstreamGenerationError("The model returned an empty response")

        await self._complete(text, log)

    async def _complete(self, text: str, log) -> None:
        repository = self._coordinator.repository
        try:
            self.assistant_message = await repository.add_message(
                Message(
                    conversation_id=self.conversation.id,
                    content=text,
                    role=MessageRole.ASSISTANT,
                )
            )
        except Exception as e:
            self.state = TurnState.FAILED
            metrics.RESPONSES_NOT_SAVED.inc()
            log.error("assistant_message_not_saved", error=str(e), response_length=len(text))
            raise ResponseNotSaved("The response was delivered but could not be saved") from e

        if self.first_exchange and not self.conversation.title_is_custom:
            title = derive_title(self.prompt, self._coordinator.title_max_length)
            try:
                self.conversation = await repository.update_conversation_title(
                    self.conversation.id, title, custom=False
                )
            except ChatError as e:
                log.warning("title_update_failed", error=str(e))

        self.state = TurnState.COMPLETED
        metrics.TURNS_COMPLETED.inc()
        log.info(
            "turn_completed",
            assistant_message_id=str(self.assistant_message.id),
            response_length=len(text),
        )


class TurnCoordinator:
    """Owns the lifecycle of a chat turn from submission to persisted answer."""

    def __init__(
        self,
        repository: Repository,
        client: GenerationClient,
        encoder: AttachmentEncoder,
        assembler: ContextAssembler,
        blob_store: Optional[BlobStore] = None,
        generation_timeout: float = 120.0,
        title_max_length: int = 50,
    ):
        self.repository = repository
        self.client = client
        self.encoder = encoder
        self.assembler = assembler
        self.blob_store = blob_store
        self.generation_timeout = generation_timeout
        self.title_max_length = title_max_length

    async def submit_turn(self, user_id: UUID, request: TurnRequest) -> TurnStream:
        """Run a turn up to an open model stream and hand back the stream to relay."""
        prompt = request.prompt.strip()
        if not prompt:
            raise ValidationError("Prompt is required")
        attachment = request.file if isinstance(request, WithAttachment) else None
        if attachment is not None:
            # Rejected types stop the whole turn, text included.
            self.encoder.validate(attachment.media_type, attachment.size)

        log = logger.bind(user_id=str(user_id))
        log.info("turn_started", conversation_id=str(request.conversation_id), has_attachment=attachment is not None)
        transitions = [TurnState.IDLE]

        conversation = await self.resolve_conversation(user_id, request.conversation_id, prompt)
        transitions.append(TurnState.CONVERSATION_RESOLVED)
        log = log.bind(conversation_id=str(conversation.id))

        attached_file = None
        upload = None
        if attachment is not None:
            attached_file, upload = await self._store_attachment(user_id, conversation.id, attachment)

        user_message = await self._persist_user_message(conversation.id, prompt, attached_file)
        transitions.append(TurnState.USER_MESSAGE_PERSISTED)
        log.info("user_message_persisted", message_id=str(user_message.id))

        encoded = None
        degraded = False
        if attachment is not None:
            encoded, degraded = await self._encode_attachment(attachment, upload)

        return await self.start_generation(
            conversation, user_message, prompt, encoded=encoded, degraded=degraded,
            attachment=attachment, transitions=transitions,
        )

    async def resolve_conversation(
        self, user_id: UUID, conversation_id: Optional[UUID], prompt: str
    ) -> Conversation:
        """Load the caller's conversation, or start a new one titled after the prompt."""
        if conversation_id is None:
            return await self.repository.create_conversation(
                user_id, title=derive_title(prompt, self.title_max_length)
            )
        return await self.get_owned_conversation(user_id, conversation_id)

    async def get_owned_conversation(self, user_id: UUID, conversation_id: UUID) -> Conversation:
        conversation = await self.repository.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        if conversation.user_id != user_id:
            logger.warning(
                "conversation_access_denied",
                conversation_id=str(conversation_id),
                user_id=str(user_id),
            )
            raise AccessDenied("Conversation not found or access denied")
        return conversation

    async def start_generation(
        self,
        conversation: Conversation,
        user_message: Message,
        prompt: str,
        encoded: Optional[EncodedAttachment] = None,
        degraded: bool = False,
        attachment: Optional[Attachment] = None,
        transitions: Optional[List[TurnState]] = None,
    ) -> TurnStream:
        """Assemble context up to ``user_message``, invoke the model, and wrap its stream.

        Without ``transitions`` the conversation and user message are taken
        as already resolved and persisted, as they are after an edit.
        """
        log = logger.bind(conversation_id=str(conversation.id), user_message_id=str(user_message.id))
        if transitions is None:
            transitions = [
                TurnState.IDLE,
                TurnState.CONVERSATION_RESOLVED,
                TurnState.USER_MESSAGE_PERSISTED,
            ]

        window = await self.assembler.assemble(conversation.id, until=user_message.created_at)
        prompt_text = self.assembler.render_prompt(window, prompt, current=user_message)
        transitions.append(TurnState.CONTEXT_ASSEMBLED)
        log.info("context_assembled", messages=len(window), context_included=prompt_text != prompt)

        parts: List[Part]
        if encoded is not None:
            parts = encoded.parts(prompt_text)
        elif degraded and attachment is not None:
            parts = [TextPart(f"{mention(attachment.filename, attachment.media_type)}\n\n{prompt_text}")]
        else:
            parts = [TextPart(prompt_text)]

        assistant_count = await self.repository.count_messages(conversation.id, MessageRole.ASSISTANT)

        try:
            chunks = await asyncio.wait_for(
                self.client.generate_stream(parts), timeout=self.generation_timeout
            )
        except asyncio.TimeoutError as e:
            metrics.TURNS_FAILED.inc()
            log.error("turn_failed", error="generation request timed out")
            raise GenerationTimeout("Generation request timed out") from e
        except UpstreamGenerationError as e:
            metrics.TURNS_FAILED.inc()
            log.error("turn_failed", error=str(e))
            raise
        except Exception as e:
            metrics.TURNS_FAILED.inc()
            log.error("turn_failed", error=str(e))
            raise UpstreamGenerationError(f"Generation request failed: {e}") from e

        metrics.TURNS_STARTED.inc()
        log.info("generation_started", parts=len(parts))
        return TurnStream(
            self,
            conversation,
            user_message,
            prompt,
            chunks,
            first_exchange=assistant_count == 0,
            attachment_degraded=degraded,
            transitions=transitions + [TurnState.MODEL_INVOKED],
        )

    async def _persist_user_message(
        self, conversation_id: UUID, prompt: str, attached_file: Optional[AttachedFile]
    ) -> Message:
        try:
            return await self.repository.add_message(
                Message(
                    conversation_id=conversation_id,
                    content=prompt,
                    role=MessageRole.USER,
                    attached_file=attached_file,
                )
            )
        except ChatError:
            raise
        except Exception as e:
            logger.error("user_message_not_saved", conversation_id=str(conversation_id), error=str(e))
            raise PersistenceError("Could not save the message") from e

    async def _store_attachment(self, user_id: UUID, conversation_id: UUID, attachment: Attachment):
        """Write the file to the blob store and record its metadata; a store failure only drops the URL."""
        attached_file = AttachedFile(
            name=attachment.filename, type=attachment.media_type, size=attachment.size
        )
        if self.blob_store is None:
            return attached_file, None
        try:
            url = await self.blob_store.put(attachment.data, attachment.filename, attachment.media_type)
        except OSError as e:
            logger.warning("attachment_store_failed", filename=attachment.filename, error=str(e))
            return attached_file, None

        attached_file.url = url
        upload = await self.repository.add_file_upload(
            FileUpload(
                user_id=user_id,
                conversation_id=conversation_id,
                file_name=attachment.filename,
                file_type=attachment.media_type,
                file_url=url,
                size=attachment.size,
            )
        )
        return attached_file, upload

    async def _encode_attachment(self, attachment: Attachment, upload: Optional[FileUpload]):
        """Encode the attachment, degrading to a mention when it cannot be used."""
        if upload is not None:
            upload.advance(ProcessingStatus.PROCESSING)
            upload = await self.repository.save_file_upload(upload)
        try:
            encoded = await self.encoder.encode(attachment.data, attachment.media_type, attachment.filename)
        except Exception as e:
            metrics.ATTACHMENTS_DEGRADED.inc()
            logger.warning("attachment_degraded", filename=attachment.filename, error=str(e))
            if upload is not None:
                upload.advance(ProcessingStatus.FAILED)
                await self.repository.save_file_upload(upload)
            return None, True

        if upload is not None:
            upload.extracted_text = encoded.extracted_text
            upload.advance(ProcessingStatus.COMPLETED)
            await self.repository.save_file_upload(upload)
        return encoded, False

    async def reload_attachment(
        self, message: Message
    ) -> Tuple[Optional[EncodedAttachment], bool, Optional[Attachment]]:
        """Re-encode the file stored with ``message`` so a regenerated answer sees it again."""
        attached_file = message.attached_file
        if attached_file is None:
            return None, False, None

        attachment = Attachment(filename=attached_file.name, media_type=attached_file.type, data=b"")
        if self.blob_store is None or not attached_file.url:
            metrics.ATTACHMENTS_DEGRADED.inc()
            logger.warning("attachment_degraded", filename=attached_file.name, error="no stored copy")
            return None, True, attachment
        try:
            data = await self.blob_store.get(attached_file.url)
        except OSError as e:
            metrics.ATTACHMENTS_DEGRADED.inc()
            logger.warning("attachment_degraded", filename=attached_file.name, error=str(e))
            return None, True, attachment

        attachment = Attachment(filename=attached_file.name, media_type=attached_file.type, data=data)
        encoded, degraded = await self._encode_attachment(attachment, None)
        return encoded, degraded, attachment
