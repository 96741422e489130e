"""Out-of-band extraction for files uploaded outside a chat turn."""

from uuid import UUID

import structlog

from ..domain.errors import AttachmentProcessingError, NotFound
from ..domain.models import FileUpload, ProcessingStatus
from ..repositories.base import Repository
from .attachments import AttachmentEncoder
from .blob_store import BlobStore

logger = structlog.get_logger()


class FileProcessor:
    """Drives a FileUpload through ``pending -> processing -> completed | failed``.

    Failed is terminal: a failed file is never retried here, the caller has
    to upload it again.
    """

    def __init__(self, repository: Repository, encoder: AttachmentEncoder, blob_store: BlobStore):
        self.repository = repository
        self.encoder = encoder
        self.blob_store = blob_store

    async def process(self, file_id: UUID) -> FileUpload:
        """Extract text for ``file_id`` from its stored bytes."""
        upload = await self.repository.get_file_upload(file_id)
        if upload is None:
            raise NotFound(f"File {file_id} not found")
        if upload.processing_status != ProcessingStatus.PENDING:
            logger.info(
                "file_processing_skipped",
                file_id=str(file_id),
                status=upload.processing_status.value,
            )
            return upload

        upload.advance(ProcessingStatus.PROCESSING)
        upload = await self.repository.save_file_upload(upload)

        try:
            data = await self.blob_store.get(upload.file_url)
            encoded = await self.encoder.encode(data, upload.file_type, upload.file_name)
        except (OSError, AttachmentProcessingError) as e:
            upload.advance(ProcessingStatus.FAILED)
            upload = await self.repository.save_file_upload(upload)
            logger.warning("file_processing_failed", file_id=str(file_id), error=str(e))
            return upload

        # Inline formats carry no extracted text; the model reads their bytes directly.
        upload.extracted_text = encoded.extracted_text
        upload.advance(ProcessingStatus.COMPLETED)
        upload = await self.repository.save_file_upload(upload)
        logger.info(
            "file_processing_completed",
            file_id=str(file_id),
            extracted=encoded.extracted_text is not None,
        )
        return upload
