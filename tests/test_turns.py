"""Test suite for the chat turn pipeline."""

import pytest

from conftest import FakeGenerationClient
from docchat.domain.errors import (
    AccessDenied,
    GenerationTimeout,
    NotFound,
    ResponseNotSaved,
    UnsupportedMediaType,
    UpstreamGenerationError,
    ValidationError,
)
from docchat.domain.models import (
    Attachment,
    Message,
    MessageRole,
    ProcessingStatus,
    TextOnly,
    WithAttachment,
)
from docchat.repositories.memory import InMemoryRepository
from docchat.services.attachments import DOCX_TYPE, AttachmentEncoder
from docchat.services.context import ContextAssembler
from docchat.services.llm import InlinePart, TextPart
from docchat.services.turns import TurnCoordinator, TurnState, derive_title


async def drain(stream):
    return [chunk async for chunk in stream]


@pytest.mark.asyncio
async def test_new_conversation_turn(coordinator, repository, user, fake_client):
    """A turn without a conversation id creates one and persists both sides."""
    stream = await coordinator.submit_turn(user.id, TextOnly(prompt="Hello"))
    chunks = await drain(stream)

    assert chunks == ["Hello", " there", "!"]
    assert stream.state == TurnState.COMPLETED
    conversation = await repository.get_conversation(stream.conversation_id)
    assert conversation.title == "Hello"
    assert conversation.user_id == user.id
    messages = await repository.get_messages(conversation.id)
    assert [(m.role, m.content) for m in messages] == [
        (MessageRole.USER, "Hello"),
        (MessageRole.ASSISTANT, "Hello there!"),
    ]
    assert stream.assistant_message.id == messages[1].id
    assert fake_client.calls == [[TextPart("Hello")]]


@pytest.mark.asyncio
async def test_continuation_includes_context(coordinator, repository, user, fake_client):
    first = await coordinator.submit_turn(user.id, TextOnly(prompt="Hello"))
    await drain(first)

    second = await coordinator.submit_turn(
        user.id, TextOnly(prompt="And then?", conversation_id=first.conversation_id)
    )
    await drain(second)

    assert await repository.count_messages(first.conversation_id) == 4
    assert fake_client.calls[-1] == [
        TextPart(
            "Previous conversation context:\n"
            "User: Hello\n"
            "Assistant: Hello there!\n"
            "\n"
            "Current question: And then?"
        )
    ]


@pytest.mark.asyncio
async def test_user_message_persisted_before_model_call(repository, user, encoder):
    seen = []

    class RecordingClient(FakeGenerationClient):
        async def generate_stream(self, parts):
            conversations = await repository.list_conversations(user.id)
            seen.extend(await repository.get_messages(conversations[0].id))
            return await super().generate_stream(parts)

    coordinator = TurnCoordinator(repository, RecordingClient(), encoder, ContextAssembler(repository))
    await drain(await coordinator.submit_turn(user.id, TextOnly(prompt="Hi")))

    assert [(m.role, m.content) for m in seen] == [(MessageRole.USER, "Hi")]


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", ["", "   \n\t"])
async def test_empty_prompt_is_rejected(coordinator, repository, user, prompt):
    conversation = await repository.create_conversation(user.id, title="Existing")

    with pytest.raises(ValidationError):
        await coordinator.submit_turn(user.id, TextOnly(prompt=prompt, conversation_id=conversation.id))

    assert await repository.count_messages(conversation.id) == 0
    assert len(await repository.list_conversations(user.id)) == 1
    assert (await repository.get_conversation(conversation.id)).updated_at == conversation.updated_at


@pytest.mark.asyncio
async def test_cross_user_access_is_rejected(coordinator, repository, user):
    other = await repository.get_or_create_user("user-2", "user-2@test.dev")
    conversation = await repository.create_conversation(user.id, title="Private")

    with pytest.raises(AccessDenied):
        await coordinator.submit_turn(other.id, TextOnly(prompt="peek", conversation_id=conversation.id))

    assert await repository.count_messages(conversation.id) == 0
    assert await repository.list_conversations(other.id) == []


@pytest.mark.asyncio
async def test_unknown_conversation_is_not_found(coordinator, user):
    from uuid import uuid4

    with pytest.raises(NotFound):
        await coordinator.submit_turn(user.id, TextOnly(prompt="hi", conversation_id=uuid4()))


@pytest.mark.asyncio
async def test_failure_at_invocation_keeps_user_message(repository, user, encoder):
    """A model that fails on request leaves exactly one user message and no answer."""
    coordinator = TurnCoordinator(
        repository, FakeGenerationClient(fail_on_request=True), encoder, ContextAssembler(repository)
    )
    conversation = await repository.create_conversation(user.id)

    with pytest.raises(UpstreamGenerationError):
        await coordinator.submit_turn(user.id, TextOnly(prompt="Hi", conversation_id=conversation.id))

    messages = await repository.get_messages(conversation.id)
    assert [(m.role, m.content) for m in messages] == [(MessageRole.USER, "Hi")]


@pytest.mark.asyncio
async def test_mid_stream_failure_persists_no_partial_answer(repository, user, encoder):
    client = FakeGenerationClient(chunks=["Par", "tial", " answer"], fail_after=2)
    coordinator = TurnCoordinator(repository, client, encoder, ContextAssembler(repository))

    stream = await coordinator.submit_turn(user.id, TextOnly(prompt="Hi"))
    received = []
    with pytest.raises(UpstreamGenerationError):
        async for chunk in stream:
            received.append(chunk)

    assert received == ["Par", "tial"]
    assert stream.state == TurnState.FAILED
    assert stream.assistant_message is None
    messages = await repository.get_messages(stream.conversation_id)
    assert [m.role for m in messages] == [MessageRole.USER]


@pytest.mark.asyncio
async def test_slow_stream_times_out_without_persisting(repository, user, encoder):
    client = FakeGenerationClient(chunks=["a", "b", "c"], delay=0.2)
    coordinator = TurnCoordinator(
        repository, client, encoder, ContextAssembler(repository), generation_timeout=0.3
    )

    stream = await coordinator.submit_turn(user.id, TextOnly(prompt="Hi"))
    with pytest.raises(GenerationTimeout):
        await drain(stream)

    assert await repository.count_messages(stream.conversation_id, MessageRole.ASSISTANT) == 0


@pytest.mark.asyncio
async def test_empty_model_response_is_a_failure(repository, user, encoder):
    coordinator = TurnCoordinator(
        repository, FakeGenerationClient(chunks=[]), encoder, ContextAssembler(repository)
    )

    stream = await coordinator.submit_turn(user.id, TextOnly(prompt="Hi"))
    with pytest.raises(UpstreamGenerationError):
        await drain(stream)

    assert await repository.count_messages(stream.conversation_id, MessageRole.ASSISTANT) == 0


@pytest.mark.asyncio
async def test_lost_response_is_reported_distinctly(user, encoder, fake_client):
    class AssistantWritesFail(InMemoryRepository):
        async def add_message(self, message: Message) -> Message:
            if message.role == MessageRole.ASSISTANT:
                raise RuntimeError("disk full")
            return await super().add_message(message)

    repository = AssistantWritesFail()
    owner = await repository.get_or_create_user("user-1", "user-1@test.dev")
    coordinator = TurnCoordinator(repository, fake_client, encoder, ContextAssembler(repository))

    stream = await coordinator.submit_turn(owner.id, TextOnly(prompt="Hi"))
    received = []
    with pytest.raises(ResponseNotSaved):
        async for chunk in stream:
            received.append(chunk)

    assert "".join(received) == "Hello there!"
    assert await repository.count_messages(stream.conversation_id) == 1


@pytest.mark.asyncio
async def test_chunk_order_is_preserved(repository, user, encoder):
    chunks = [f"<{i}>" for i in range(50)]
    coordinator = TurnCoordinator(
        repository, FakeGenerationClient(chunks=chunks), encoder, ContextAssembler(repository)
    )

    stream = await coordinator.submit_turn(user.id, TextOnly(prompt="count"))

    assert await drain(stream) == chunks
    assert stream.assistant_message.content == "".join(chunks)


@pytest.mark.asyncio
async def test_stream_is_single_use(coordinator, user):
    stream = await coordinator.submit_turn(user.id, TextOnly(prompt="Hi"))
    await drain(stream)

    with pytest.raises(RuntimeError):
        await drain(stream)


def test_long_prompt_title_is_truncated():
    prompt = "x" * 80

    assert derive_title(prompt) == "x" * 50 + "..."
    assert derive_title("short") == "short"


@pytest.mark.asyncio
async def test_custom_title_survives_first_exchange(coordinator, repository, user):
    conversation = await repository.create_conversation(user.id, title="Mine", title_is_custom=True)

    stream = await coordinator.submit_turn(user.id, TextOnly(prompt="Hello", conversation_id=conversation.id))
    await drain(stream)

    assert (await repository.get_conversation(conversation.id)).title == "Mine"


@pytest.mark.asyncio
async def test_default_title_is_replaced_on_first_exchange(coordinator, repository, user):
    conversation = await repository.create_conversation(user.id, title="New Chat")

    stream = await coordinator.submit_turn(user.id, TextOnly(prompt="Plan a trip", conversation_id=conversation.id))
    await drain(stream)

    assert stream.conversation.title == "Plan a trip"
    assert (await repository.get_conversation(conversation.id)).title == "Plan a trip"


@pytest.mark.asyncio
async def test_unsupported_attachment_rejects_whole_turn(coordinator, repository, user, fake_client):
    request = WithAttachment(
        prompt="Run this",
        file=Attachment(filename="a.out", media_type="application/x-executable", data=b"\x7fELF"),
    )

    with pytest.raises(UnsupportedMediaType):
        await coordinator.submit_turn(user.id, request)

    assert await repository.list_conversations(user.id) == []
    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_image_attachment_is_sent_inline_first(coordinator, repository, user, fake_client):
    request = WithAttachment(
        prompt="What is this?",
        file=Attachment(filename="cat.png", media_type="image/png", data=b"png-bytes"),
    )

    stream = await coordinator.submit_turn(user.id, request)
    await drain(stream)

    parts = fake_client.calls[0]
    assert isinstance(parts[0], InlinePart)
    assert parts[0].mime_type == "image/png"
    assert parts[1] == TextPart("What is this?")
    user_message = stream.user_message
    assert user_message.attached_file.name == "cat.png"
    assert user_message.attached_file.size == len(b"png-bytes")
    assert user_message.attached_file.url.startswith("http://test/uploads/")
    uploads = await repository.list_file_uploads(user.id, conversation_id=stream.conversation_id)
    assert [u.processing_status for u in uploads] == [ProcessingStatus.COMPLETED]


@pytest.mark.asyncio
async def test_broken_attachment_degrades_instead_of_aborting(coordinator, repository, user, fake_client):
    """An attachment whose encoding throws still gets the text prompt answered."""
    request = WithAttachment(
        prompt="Summarize the report",
        file=Attachment(filename="report.docx", media_type=DOCX_TYPE, data=b"not a docx"),
    )

    stream = await coordinator.submit_turn(user.id, request)
    await drain(stream)

    assert stream.attachment_degraded is True
    assert stream.state == TurnState.COMPLETED
    messages = await repository.get_messages(stream.conversation_id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    (text_part,) = fake_client.calls[0]
    assert "report.docx" in text_part.text
    assert text_part.text.endswith("Summarize the report")
    uploads = await repository.list_file_uploads(user.id)
    assert uploads[0].processing_status == ProcessingStatus.FAILED


@pytest.mark.asyncio
async def test_text_attachment_is_extracted_into_prompt(coordinator, repository, user, fake_client):
    request = WithAttachment(
        prompt="What does it say?",
        file=Attachment(filename="notes.txt", media_type="text/plain", data=b"buy milk"),
    )

    stream = await coordinator.submit_turn(user.id, request)
    await drain(stream)

    assert fake_client.calls[0] == [
        TextPart("Attached document (notes.txt):\nbuy milk\n\nWhat does it say?")
    ]
    uploads = await repository.list_file_uploads(user.id)
    assert uploads[0].extracted_text == "buy milk"
    assert uploads[0].processing_status == ProcessingStatus.COMPLETED


@pytest.mark.asyncio
async def test_blob_store_failure_keeps_attachment_descriptor(repository, user, encoder, fake_client):
    class BrokenStore:
        async def put(self, data, filename, media_type):
            raise OSError("read-only filesystem")

    coordinator = TurnCoordinator(
        repository, fake_client, encoder, ContextAssembler(repository), blob_store=BrokenStore()
    )
    request = WithAttachment(
        prompt="Look",
        file=Attachment(filename="cat.png", media_type="image/png", data=b"png"),
    )

    stream = await coordinator.submit_turn(user.id, request)
    await drain(stream)

    assert stream.user_message.attached_file.url is None
    assert isinstance(fake_client.calls[0][0], InlinePart)


@pytest.mark.asyncio
async def test_turn_walks_every_state_in_order(coordinator, user):
    stream = await coordinator.submit_turn(user.id, TextOnly(prompt="Hello"))
    assert stream.state == TurnState.MODEL_INVOKED

    await drain(stream)

    assert stream.transitions == [
        TurnState.IDLE,
        TurnState.CONVERSATION_RESOLVED,
        TurnState.USER_MESSAGE_PERSISTED,
        TurnState.CONTEXT_ASSEMBLED,
        TurnState.MODEL_INVOKED,
        TurnState.STREAMING,
        TurnState.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_unexpected_encoder_error_degrades(repository, user, blob_store, fake_client):
    class ExplodingEncoder(AttachmentEncoder):
        async def encode(self, data, media_type, filename="attachment"):
            raise RuntimeError("codec crashed")

    coordinator = TurnCoordinator(
        repository,
        fake_client,
        ExplodingEncoder(),
        ContextAssembler(repository),
        blob_store=blob_store,
    )
    request = WithAttachment(
        prompt="Describe it",
        file=Attachment(filename="cat.png", media_type="image/png", data=b"png"),
    )

    stream = await coordinator.submit_turn(user.id, request)
    await drain(stream)

    assert stream.attachment_degraded is True
    assert stream.state == TurnState.COMPLETED
    (text_part,) = fake_client.calls[0]
    assert "cat.png" in text_part.text
    uploads = await repository.list_file_uploads(user.id)
    assert uploads[0].processing_status == ProcessingStatus.FAILED
