"""Service instances and FastAPI dependency providers."""

from functools import lru_cache

from fastapi import Depends

from ..config import Settings, get_settings
from ..repositories.base import Repository
from ..repositories.memory import InMemoryRepository
from ..services.attachments import AttachmentEncoder
from ..services.blob_store import BlobStore, LocalBlobStore
from ..services.context import ContextAssembler
from ..services.file_processing import FileProcessor
from ..services.llm import GeminiClient, GenerationClient
from ..services.regeneration import EditRegenerationCoordinator
from ..services.turns import TurnCoordinator
from .conversation_gate import ConversationGate

# Core service instances
repository = InMemoryRepository()
conversation_gate = ConversationGate(acquire_timeout=get_settings().gate_timeout_seconds)


def get_repository() -> Repository:
    """Returns the document store"""
    return repository


@lru_cache
def _gemini_client(api_key: str, model_name: str) -> GeminiClient:
    return GeminiClient(api_key=api_key, model_name=model_name)


def get_generation_client(settings: Settings = Depends(get_settings)) -> GenerationClient:
    """Returns the generation endpoint handle"""
    return _gemini_client(settings.gemini_api_key, settings.gemini_model)


def get_blob_store(settings: Settings = Depends(get_settings)) -> BlobStore:
    """Returns the blob store for uploaded files"""
    return LocalBlobStore(settings.upload_dir, settings.public_base_url)


def get_encoder(settings: Settings = Depends(get_settings)) -> AttachmentEncoder:
    """Returns the attachment encoder"""
    return AttachmentEncoder(
        max_bytes=settings.max_attachment_bytes,
        extraction_timeout=settings.extraction_timeout_seconds,
    )


def get_turn_coordinator(
    repository: Repository = Depends(get_repository),
    client: GenerationClient = Depends(get_generation_client),
    encoder: AttachmentEncoder = Depends(get_encoder),
    blob_store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_settings),
) -> TurnCoordinator:
    """Returns a turn coordinator wired to the request's collaborators"""
    return TurnCoordinator(
        repository=repository,
        client=client,
        encoder=encoder,
        assembler=ContextAssembler(
            repository,
            retrieval_limit=settings.context_retrieval_limit,
            prompt_limit=settings.context_prompt_limit,
        ),
        blob_store=blob_store,
        generation_timeout=settings.generation_timeout_seconds,
        title_max_length=settings.title_max_length,
    )


def get_edit_coordinator(
    turns: TurnCoordinator = Depends(get_turn_coordinator),
) -> EditRegenerationCoordinator:
    """Returns the edit-and-regenerate coordinator"""
    return EditRegenerationCoordinator(turns)


def get_file_processor(
    repository: Repository = Depends(get_repository),
    encoder: AttachmentEncoder = Depends(get_encoder),
    blob_store: BlobStore = Depends(get_blob_store),
) -> FileProcessor:
    """Returns the upload extraction processor"""
    return FileProcessor(repository, encoder, blob_store)


def get_conversation_gate() -> ConversationGate:
    """Returns the per-conversation gate"""
    return conversation_gate
