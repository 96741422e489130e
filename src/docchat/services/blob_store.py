"""Blob storage for uploaded files."""

import asyncio
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from uuid import uuid4

import structlog

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


class BlobStore(ABC):
    """Durable byte storage returning retrievable URLs."""

    @abstractmethod
    async def put(self, data: bytes, filename: str, media_type: str) -> str:
        """Store ``data`` and return its URL."""
        pass

    @abstractmethod
    async def get(self, url: str) -> bytes:
        """Fetch the bytes behind a URL returned by ``put``; raises ``OSError`` when gone."""
        pass


class LocalBlobStore(BlobStore):
    """Stores files under a local directory served at ``{base_url}/uploads``."""

    def __init__(self, root: str, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def _write(self, name: str, data: bytes) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / name).write_bytes(data)

    async def put(self, data: bytes, filename: str, media_type: str) -> str:
        """Write ``data`` to disk under a timestamped, sanitized name."""
        name = f"{int(time.time() * 1000)}-{uuid4().hex[:8]}-{_UNSAFE_CHARS.sub('_', filename)}"
        await asyncio.to_thread(self._write, name, data)
        url = f"{self.base_url}/uploads/{name}"
        logger.info("blob_stored", url=url, media_type=media_type, size=len(data))
        return url

    def _read(self, name: str) -> bytes:
        return (self.root / name).read_bytes()

    async def get(self, url: str) -> bytes:
        """Read back a blob previously returned by ``put``."""
        prefix = f"{self.base_url}/uploads/"
        if not url.startswith(prefix):
            raise FileNotFoundError(url)
        name = url[len(prefix):]
        if "/" in name or name in ("", ".", ".."):
            raise FileNotFoundError(url)
        return await asyncio.to_thread(self._read, name)
