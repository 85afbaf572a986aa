"""Raw object storage for uploaded files.

The RAG core only needs the key and url of a stored object, never the
storage protocol, so the filesystem backend here can be swapped for an
S3/MinIO one with the same three coroutines.
"""
import asyncio
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional

import structlog

from clinrag import config

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class StoredObject:
    url: str
    key: str
    size: int


def safe_file_name(name: str) -> str:
    """Reduce an uploaded file name to a filesystem-safe form."""
    base = PurePosixPath(name.replace("\\", "/")).name
    cleaned = _UNSAFE_CHARS.sub("-", base).strip("-.")
    return cleaned or "upload"


class LocalObjectStorage:
    """Stores objects as files below a root directory."""

    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root or config.UPLOADS_DIR)

    def _resolve(self, key: str) -> Path:
        path = (self.root / key).resolve()
        root = self.root.resolve()
        if root != path and root not in path.parents:
            raise ValueError(f"Object key escapes storage root: {key!r}")
        return path

    async def put_object(self, data: bytes, key: str) -> StoredObject:
        """Write ``data`` under ``key`` and return its location."""
        path = self._resolve(key)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(write)
        logger.info("object_stored", key=key, size=len(data))
        return StoredObject(url=path.as_uri(), key=key, size=len(data))

    async def get_object(self, key: str) -> bytes:
        """Read an object back.

        Raises:
            FileNotFoundError: If no object exists under ``key``
        """
        return await asyncio.to_thread(self._resolve(key).read_bytes)

    async def delete_object(self, key: str) -> bool:
        path = self._resolve(key)

        def remove() -> bool:
            if not path.exists():
                return False
            path.unlink()
            return True

        removed = await asyncio.to_thread(remove)
        if removed:
            logger.info("object_deleted", key=key)
        return removed
