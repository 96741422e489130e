"""
FastAPI Application Module

A document-aware chat API: authenticated users hold conversations with a
hosted Gemini model, optionally attaching files, and receive answers as a
server-sent event stream that is persisted alongside the history.

Key Features:
- Streamed chat turns with per-conversation serialization
- Edit-and-regenerate of earlier user messages
- File uploads with background text extraction
- Rate limiting, structured logging, Prometheus metrics and OpenTelemetry tracing
"""

from contextlib import asynccontextmanager
from typing import List, Optional
from uuid import UUID

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Request,
    Response,
    UploadFile,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from pydantic import BaseModel, Field
from structlog import get_logger

from .. import metrics
from ..config import Settings, get_settings
from ..domain.errors import (
    AccessDenied,
    AttachmentTooLarge,
    ChatError,
    GenerationTimeout,
    InvalidStatusTransition,
    NotFound,
    UnsupportedMediaType,
    UpstreamGenerationError,
    ValidationError,
)
from ..domain.models import (
    Attachment,
    Conversation,
    FileUpload,
    Message,
    TextOnly,
    TurnRequest,
    User,
    WithAttachment,
)
from ..repositories.base import Repository
from ..services.attachments import AttachmentEncoder
from ..services.blob_store import BlobStore
from ..services.file_processing import FileProcessor
from ..services.regeneration import EditRegenerationCoordinator
from ..services.turns import TurnCoordinator, TurnStream
from .auth import get_current_user
from .conversation_gate import ConversationBusy, ConversationGate, GateLease
from .dependencies import (
    get_blob_store,
    get_conversation_gate,
    get_edit_coordinator,
    get_encoder,
    get_file_processor,
    get_repository,
    get_turn_coordinator,
)
from .rate_limiter import RateLimiter, RateLimitExceeded, rate_limit_middleware
from .sse import turn_events

logger = get_logger()

DEFAULT_CONVERSATION_TITLE = "New Chat"


class ConversationCreate(BaseModel):
    """Defines the structure for conversation creation requests"""
    title: Optional[str] = None


class ConversationRename(BaseModel):
    """Defines the structure for conversation rename requests"""
    title: str = Field(min_length=1)


class MessageEdit(BaseModel):
    """Defines the structure for message edit requests"""
    content: str


class ProcessFileRequest(BaseModel):
    fileId: UUID


def _status_for(error: ChatError, access_denied_status: int = 404) -> int:
    """HTTP status for a chat error raised before a stream starts."""
    if isinstance(error, AccessDenied):
        # Conversations are reported as missing so their existence does not leak.
        return access_denied_status
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, UnsupportedMediaType):
        return 415
    if isinstance(error, AttachmentTooLarge):
        return 413
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, GenerationTimeout):
        return 504
    if isinstance(error, UpstreamGenerationError):
        return 502
    if isinstance(error, (ConversationBusy, InvalidStatusTransition)):
        return 409
    return 500


def _http_error(error: ChatError, access_denied_status: int = 404) -> HTTPException:
    status_code = _status_for(error, access_denied_status)
    if status_code >= 500:
        metrics.ERRORS.inc()
    return HTTPException(status_code=status_code, detail=str(error))


def _parse_conversation_id(raw: Optional[str]) -> Optional[UUID]:
    if not raw:
        return None
    try:
        return UUID(raw)
    except ValueError:
        raise NotFound("Conversation not found")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and resource management"""
    await app.state.rate_limiter.start()
    logger.info("application_startup_complete")

    yield

    await app.state.rate_limiter.stop()
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="DocChat API",
    description="Document-aware streaming chat over a hosted generation model",
    version="0.1.0",
    lifespan=lifespan
)
app.state.rate_limiter = RateLimiter(
    rate_limit=get_settings().rate_limit,
    time_window=get_settings().rate_limit_window_seconds,
)

# Enable cross-origin requests; the conversation id travels in a response header.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Conversation-Id", "X-User-Message-Id"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests and enforces rate limits"""
    metrics.REQUESTS.inc()
    logger.info("request_started", path=request.url.path, method=request.method)
    try:
        await rate_limit_middleware(request, request.app.state.rate_limiter)
    except RateLimitExceeded as e:
        return JSONResponse(
            status_code=429,
            content={"detail": str(e)},
            headers={"Retry-After": str(e.retry_after)},
        )
    try:
        return await call_next(request)
    except Exception as e:
        metrics.ERRORS.inc()
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise


def _stream_response(stream: TurnStream, lease: Optional[GateLease]) -> StreamingResponse:
    """Wrap a turn stream as SSE; the conversation id rides in headers, outside the body."""
    return StreamingResponse(
        turn_events(stream, on_close=lease.release if lease is not None else None),
        media_type="text/event-stream",
        headers={
            "X-Conversation-Id": str(stream.conversation.id),
            "X-User-Message-Id": str(stream.user_message.id),
            "Cache-Control": "no-cache",
        },
    )


@app.get("/me", response_model=User)
async def get_me(user: User = Depends(get_current_user)) -> User:
    """Returns the caller's user record"""
    return user


@app.get("/conversations", response_model=List[Conversation])
async def list_conversations(
    limit: int = 50,
    offset: int = 0,
    user: User = Depends(get_current_user),
    repository: Repository = Depends(get_repository)
) -> List[Conversation]:
    """Lists the caller's conversations, most recently active first"""
    return await repository.list_conversations(user.id, limit=limit, offset=offset)


@app.post("/conversations", response_model=Conversation)
async def create_conversation(
    body: Optional[ConversationCreate] = None,
    user: User = Depends(get_current_user),
    repository: Repository = Depends(get_repository)
) -> Conversation:
    """Starts a new, empty conversation"""
    title = body.title.strip() if body and body.title and body.title.strip() else None
    conversation = await repository.create_conversation(
        user.id,
        title=title or DEFAULT_CONVERSATION_TITLE,
        title_is_custom=title is not None,
    )
    logger.info("conversation_created", conversation_id=str(conversation.id), user_id=str(user.id))
    return conversation


@app.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    turns: TurnCoordinator = Depends(get_turn_coordinator)
) -> Conversation:
    """Retrieves one of the caller's conversations"""
    try:
        return await turns.get_owned_conversation(user.id, conversation_id)
    except ChatError as e:
        raise _http_error(e)


@app.patch("/conversations/{conversation_id}", response_model=Conversation)
async def rename_conversation(
    conversation_id: UUID,
    body: ConversationRename,
    user: User = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
    turns: TurnCoordinator = Depends(get_turn_coordinator)
) -> Conversation:
    """Renames a conversation; automatic titles never overwrite the new name"""
    try:
        await turns.get_owned_conversation(user.id, conversation_id)
        return await repository.update_conversation_title(
            conversation_id, body.title.strip(), custom=True
        )
    except ChatError as e:
        raise _http_error(e)


@app.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
    turns: TurnCoordinator = Depends(get_turn_coordinator),
    gate: ConversationGate = Depends(get_conversation_gate)
) -> dict:
    """Deletes a conversation with all of its messages"""
    try:
        await turns.get_owned_conversation(user.id, conversation_id)
        lease = await gate.acquire(conversation_id)
        try:
            await repository.delete_conversation(conversation_id)
        finally:
            await lease.release()
    except ChatError as e:
        raise _http_error(e)
    return {"success": True}


@app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def get_messages(
    conversation_id: UUID,
    user: User = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
    turns: TurnCoordinator = Depends(get_turn_coordinator)
) -> List[Message]:
    """Gets the conversation's messages in creation order"""
    try:
        await turns.get_owned_conversation(user.id, conversation_id)
        return await repository.get_messages(conversation_id)
    except ChatError as e:
        raise _http_error(e)


@app.post("/chat")
async def submit_turn(
    prompt: str = Form(""),
    conversationId: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    user: User = Depends(get_current_user),
    turns: TurnCoordinator = Depends(get_turn_coordinator),
    gate: ConversationGate = Depends(get_conversation_gate)
) -> StreamingResponse:
    """
    Submits a prompt, optionally with a file, and streams the answer.
    A new conversation is created when no conversationId is given.
    """
    lease = None
    try:
        conversation_id = _parse_conversation_id(conversationId)
        request: TurnRequest
        if file is not None and file.filename:
            request = WithAttachment(
                prompt=prompt,
                conversation_id=conversation_id,
                file=Attachment(
                    filename=file.filename,
                    media_type=file.content_type or "application/octet-stream",
                    data=await file.read(),
                ),
            )
        else:
            request = TextOnly(prompt=prompt, conversation_id=conversation_id)

        if conversation_id is not None:
            await turns.get_owned_conversation(user.id, conversation_id)
            lease = await gate.acquire(conversation_id)
        stream = await turns.submit_turn(user.id, request)
    except ChatError as e:
        if lease is not None:
            await lease.release()
        raise _http_error(e)
    except Exception:
        if lease is not None:
            await lease.release()
        raise

    return _stream_response(stream, lease)


@app.put("/messages/{message_id}")
async def edit_message(
    message_id: UUID,
    body: MessageEdit,
    user: User = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
    edits: EditRegenerationCoordinator = Depends(get_edit_coordinator),
    gate: ConversationGate = Depends(get_conversation_gate)
) -> StreamingResponse:
    """Edits a user message, drops everything after it, and streams a new answer"""
    lease = None
    try:
        if not body.content.strip():
            raise ValidationError("Content is required")
        message = await repository.get_message(message_id)
        if message is None:
            raise NotFound("Message not found")
        lease = await gate.acquire(message.conversation_id)
        stream = await edits.edit_and_regenerate(user.id, message_id, body.content)
    except ChatError as e:
        if lease is not None:
            await lease.release()
        raise _http_error(e, access_denied_status=403)
    except Exception:
        if lease is not None:
            await lease.release()
        raise

    return _stream_response(stream, lease)


async def _process_upload(processor: FileProcessor, file_id: UUID) -> None:
    """Best-effort extraction trigger; failures stay on the upload record."""
    try:
        await processor.process(file_id)
    except ChatError as e:
        logger.error("file_processing_trigger_failed", file_id=str(file_id), error=str(e))


@app.post("/upload", status_code=201)
async def upload_file(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    conversationId: Optional[str] = Form(None),
    user: User = Depends(get_current_user),
    repository: Repository = Depends(get_repository),
    turns: TurnCoordinator = Depends(get_turn_coordinator),
    encoder: AttachmentEncoder = Depends(get_encoder),
    blob_store: BlobStore = Depends(get_blob_store),
    processor: FileProcessor = Depends(get_file_processor)
) -> dict:
    """Stores a file and starts text extraction in the background"""
    try:
        data = await file.read()
        media_type = encoder.validate(file.content_type or "application/octet-stream", len(data))
        conversation_id = _parse_conversation_id(conversationId)
        if conversation_id is not None:
            await turns.get_owned_conversation(user.id, conversation_id)
    except ChatError as e:
        raise _http_error(e)

    filename = file.filename or "upload"
    try:
        url = await blob_store.put(data, filename, media_type)
    except OSError as e:
        logger.error("upload_store_failed", filename=filename, error=str(e))
        metrics.ERRORS.inc()
        raise HTTPException(status_code=500, detail="Failed to store file")

    upload = await repository.add_file_upload(
        FileUpload(
            user_id=user.id,
            conversation_id=conversation_id,
            file_name=filename,
            file_type=media_type,
            file_url=url,
            size=len(data),
        )
    )
    background_tasks.add_task(_process_upload, processor, upload.id)
    return {
        "message": "File uploaded and processing started.",
        "file": upload.model_dump(mode="json"),
    }


@app.get("/uploaded-files")
async def list_uploaded_files(
    fileId: Optional[UUID] = None,
    conversationId: Optional[UUID] = None,
    user: User = Depends(get_current_user),
    repository: Repository = Depends(get_repository)
) -> dict:
    """Looks up one upload, a conversation's uploads, or all of the caller's uploads"""
    if fileId is not None:
        upload = await repository.get_file_upload(fileId)
        if upload is None or upload.user_id != user.id:
            raise HTTPException(status_code=404, detail="File not found")
        return {"file": upload.model_dump(mode="json")}
    uploads = await repository.list_file_uploads(user.id, conversation_id=conversationId)
    return {"files": [u.model_dump(mode="json") for u in uploads]}


@app.post("/webhook/process-file")
async def process_file(
    body: ProcessFileRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    processor: FileProcessor = Depends(get_file_processor)
) -> dict:
    """Runs extraction for an uploaded file; callers authenticate with the shared secret"""
    if request.headers.get("authorization") != f"Bearer {settings.webhook_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        upload = await processor.process(body.fileId)
    except ChatError as e:
        raise _http_error(e)
    return {"success": True, "status": upload.processing_status.value}


@app.get("/metrics")
async def get_metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(metrics.CUSTOM_REGISTRY), media_type="text/plain")
