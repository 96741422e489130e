"""Generation endpoint client built on Google's Gemini model."""

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, List, Union

import google.generativeai as genai
import structlog
from google.api_core import exceptions
from google.generativeai.types import BlockedPromptException, StopCandidateException

from ..domain.errors import UpstreamGenerationError

logger = structlog.get_logger()


@dataclass(frozen=True)
class TextPart:
    """Plain text handed to the model."""

    text: str


@dataclass(frozen=True)
class InlinePart:
    """Base64-encoded bytes with their declared media type."""

    mime_type: str
    data: str

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str) -> "InlinePart":
        return cls(mime_type=mime_type, data=base64.b64encode(data).decode("ascii"))


Part = Union[TextPart, InlinePart]


class GenerationClient(ABC):
    """Handle on a streaming generation endpoint.

    ``generate_stream`` issues the request and returns once the endpoint has
    accepted it; the returned iterator yields text fragments in emission order
    and raises ``UpstreamGenerationError`` if the stream breaks.
    """

    @abstractmethod
    async def generate_stream(self, parts: List[Part]) -> AsyncIterator[str]:
        pass


class GeminiClient(GenerationClient):
    """Streaming client for the Gemini API."""

    def __init__(self, api_key: str, model_name: str = "gemini-1.5-flash"):
        """Initialize the client."""
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.model = genai.GenerativeModel(model_name)
        logger.info("generation_client_init", model=model_name, has_api_key=bool(api_key))

    def _to_contents(self, parts: List[Part]) -> list:
        """Convert parts into the content list the SDK accepts."""
        contents = []
        for part in parts:
            if isinstance(part, InlinePart):
                contents.append(
                    {"mime_type": part.mime_type, "data": base64.b64decode(part.data)}
                )
            else:
                contents.append(part.text)
        return contents

    async def generate_stream(self, parts: List[Part]) -> AsyncIterator[str]:
        """Send parts to the model and return an iterator over its text fragments."""
        try:
            response = await self.model.generate_content_async(
                self._to_contents(parts), stream=True
            )
        except (exceptions.GoogleAPIError, BlockedPromptException, StopCandidateException) as e:
            logger.error("generation_request_failed", model=self.model_name, error=str(e))
            raise UpstreamGenerationError(f"Generation request failed: {e}") from e
        return self._iterate(response)

    async def _iterate(self, response) -> AsyncIterator[str]:
        try:
            async for chunk in response:
                text = _chunk_text(chunk)
                if text:
                    yield text
        except (exceptions.GoogleAPIError, BlockedPromptException, StopCandidateException) as e:
            logger.error("generation_stream_failed", model=self.model_name, error=str(e))
            raise UpstreamGenerationError(f"Generation stream failed: {e}") from e


def _chunk_text(chunk) -> str:
    """Text carried by one streamed chunk; empty for chunks without text parts."""
    if not chunk.candidates:
        return ""
    return "".join(
        part.text for part in chunk.candidates[0].content.parts if getattr(part, "text", "")
    )
