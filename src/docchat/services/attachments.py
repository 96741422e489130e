"""Attachment encoding: turns uploaded bytes into something the model can read.

Images and PDFs travel inline, since the model reads them natively. Text
documents are extracted synchronously in a worker thread under a hard
timeout; when extraction runs out of time, formats the model can also read
raw fall back to inline bytes and the rest degrade to a textual mention.
"""

import asyncio
import io
import re
from dataclasses import dataclass
from typing import List, Optional

import structlog
from docx import Document as DocxDocument

from ..domain.errors import AttachmentProcessingError, AttachmentTooLarge, UnsupportedMediaType
from .llm import InlinePart, Part, TextPart

logger = structlog.get_logger()

DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

INLINE_TYPES = frozenset({
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/heic",
    "image/heif",
    "application/pdf",
})

TEXT_TYPES = frozenset({
    "text/plain",
    "text/markdown",
    "text/csv",
    "text/rtf",
})

EXTRACTABLE_TYPES = TEXT_TYPES | {DOCX_TYPE}

ALLOWED_MEDIA_TYPES = INLINE_TYPES | EXTRACTABLE_TYPES

_RTF_GROUPS = re.compile(r"\{\\\*[^{}]*\}")
_RTF_CONTROL = re.compile(r"\\[a-zA-Z]+-?\d* ?|\\'[0-9a-fA-F]{2}|\\[{}\\]")


def normalize_media_type(media_type: str) -> str:
    """Lower-cased media type without parameters."""
    return media_type.split(";", 1)[0].strip().lower()


def _extract_docx(data: bytes) -> str:
    """Paragraphs and table cells of a .docx file."""
    doc = DocxDocument(io.BytesIO(data))
    parts = []
    for para in doc.paragraphs:
        text = para.text.strip()
        if text:
            parts.append(text)
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append("\t".join(cells))
    return "\n".join(parts)


def _extract_rtf(data: bytes) -> str:
    text = data.decode("utf-8")
    text = _RTF_GROUPS.sub("", text)
    text = _RTF_CONTROL.sub("", text)
    return text.replace("{", "").replace("}", "").strip()


def extract_text(data: bytes, media_type: str) -> str:
    """Blocking text extraction for the extractable media types."""
    if media_type == DOCX_TYPE:
        return _extract_docx(data)
    if media_type == "text/rtf":
        return _extract_rtf(data)
    return data.decode("utf-8-sig")


@dataclass
class EncodedAttachment:
    """Model-ready form of one attachment."""

    filename: str
    media_type: str
    inline: Optional[InlinePart] = None
    extracted_text: Optional[str] = None

    def parts(self, prompt_text: str) -> List[Part]:
        """Attachment part first, then the prompt; extracted text rides inside the text part."""
        if self.inline is not None:
            return [self.inline, TextPart(prompt_text)]
        return [
            TextPart(
                f"Attached document ({self.filename}):\n{self.extracted_text}\n\n{prompt_text}"
            )
        ]


def mention(filename: str, media_type: str) -> str:
    """Textual stand-in for an attachment whose content could not be used."""
    return f"[The user attached {filename} ({media_type}), but its content could not be processed.]"


class AttachmentEncoder:
    """Validates and encodes attachments."""

    def __init__(self, max_bytes: int = 10 * 1024 * 1024, extraction_timeout: float = 10.0):
        self.max_bytes = max_bytes
        self.extraction_timeout = extraction_timeout

    def validate(self, media_type: str, size: int) -> str:
        """Reject media types outside the allow-list and oversized files; returns the normalized type."""
        normalized = normalize_media_type(media_type)
        if normalized not in ALLOWED_MEDIA_TYPES:
            logger.warning("attachment_rejected", media_type=media_type, reason="unsupported_type")
            raise UnsupportedMediaType(f"Unsupported attachment type: {media_type}")
        if size > self.max_bytes:
            logger.warning("attachment_rejected", media_type=media_type, size=size, reason="too_large")
            raise AttachmentTooLarge(
                f"Attachment is {size} bytes; the limit is {self.max_bytes} bytes"
            )
        return normalized

    async def extract(self, data: bytes, media_type: str) -> str:
        """Run extraction in a worker thread, bounded by the extraction timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(extract_text, data, media_type),
            timeout=self.extraction_timeout,
        )

    async def encode(self, data: bytes, media_type: str, filename: str = "attachment") -> EncodedAttachment:
        """Encode a validated attachment.

        Raises ``AttachmentProcessingError`` when the content cannot be used;
        callers degrade to a mention instead of failing the turn.
        """
        media_type = self.validate(media_type, len(data))

        if media_type in INLINE_TYPES:
            return EncodedAttachment(
                filename=filename,
                media_type=media_type,
                inline=InlinePart.from_bytes(data, media_type),
            )

        try:
            text = await self.extract(data, media_type)
        except asyncio.TimeoutError as e:
            if media_type in TEXT_TYPES:
                logger.warning("extraction_timeout_inline_fallback", media_type=media_type)
                return EncodedAttachment(
                    filename=filename,
                    media_type=media_type,
                    inline=InlinePart.from_bytes(data, media_type),
                )
            raise AttachmentProcessingError(f"Extraction of {filename} timed out") from e
        except Exception as e:
            raise AttachmentProcessingError(f"Extraction of {filename} failed: {e}") from e

        if not text.strip():
            raise AttachmentProcessingError(f"No text could be extracted from {filename}")
        return EncodedAttachment(filename=filename, media_type=media_type, extracted_text=text)
