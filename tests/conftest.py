"""Shared fixtures for the test suite."""

import asyncio
import json
from typing import List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from docchat.api.app import app
from docchat.api.conversation_gate import ConversationGate
from docchat.api.dependencies import (
    get_blob_store,
    get_conversation_gate,
    get_generation_client,
    get_repository,
)
from docchat.api.rate_limiter import RateLimiter
from docchat.config import get_settings
from docchat.domain.errors import UpstreamGenerationError
from docchat.repositories.memory import InMemoryRepository
from docchat.services.attachments import AttachmentEncoder
from docchat.services.blob_store import LocalBlobStore
from docchat.services.context import ContextAssembler
from docchat.services.llm import GenerationClient, Part
from docchat.services.regeneration import EditRegenerationCoordinator
from docchat.services.turns import TurnCoordinator


class FakeGenerationClient(GenerationClient):
    """Scripted stand-in for the generation endpoint."""

    def __init__(
        self,
        chunks: Optional[List[str]] = None,
        fail_after: Optional[int] = None,
        fail_on_request: bool = False,
        delay: float = 0.0,
    ):
        self.chunks = chunks if chunks is not None else ["Hello", " there", "!"]
        self.fail_after = fail_after
        self.fail_on_request = fail_on_request
        self.delay = delay
        self.calls: List[List[Part]] = []

    async def generate_stream(self, parts: List[Part]):
        self.calls.append(list(parts))
        if self.fail_on_request:
            raise UpstreamGenerationError("model unavailable")
        return self._iterate()

    async def _iterate(self):
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise UpstreamGenerationError("stream broke")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk


def make_token(subject: str = "user-1", **claims) -> str:
    settings = get_settings()
    return jwt.encode({"sub": subject, **claims}, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def auth_headers(subject: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {make_token(subject, email=f'{subject}@test.dev')}"}


def parse_events(body: str) -> List[Tuple[str, dict]]:
    """Split an SSE body into (event, data) pairs."""
    events = []
    for block in body.strip().split("\n\n"):
        if not block.strip():
            continue
        fields = dict(line.split(": ", 1) for line in block.split("\n") if ": " in line)
        events.append((fields["event"], json.loads(fields["data"])))
    return events


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def fake_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(str(tmp_path / "uploads"), "http://test")


@pytest.fixture
def encoder() -> AttachmentEncoder:
    return AttachmentEncoder(max_bytes=1024 * 1024, extraction_timeout=2.0)


@pytest.fixture
def coordinator(repository, fake_client, encoder, blob_store) -> TurnCoordinator:
    return TurnCoordinator(
        repository=repository,
        client=fake_client,
        encoder=encoder,
        assembler=ContextAssembler(repository),
        blob_store=blob_store,
        generation_timeout=5.0,
    )


@pytest.fixture
def edit_coordinator(coordinator) -> EditRegenerationCoordinator:
    return EditRegenerationCoordinator(coordinator)


@pytest_asyncio.fixture
async def user(repository):
    return await repository.get_or_create_user("user-1", "user-1@test.dev")


@pytest_asyncio.fixture
async def client(repository, fake_client, blob_store):
    gate = ConversationGate(acquire_timeout=5.0)
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_generation_client] = lambda: fake_client
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_conversation_gate] = lambda: gate
    app.state.rate_limiter = RateLimiter(rate_limit=10_000, time_window=60)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()
