"""Blob storage abstraction. Bytes are addressed by (bucket, key); local filesystem for now."""
import os
import uuid
import logging
import aiofiles
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from filehub.config import settings

logger = logging.getLogger(__name__)


def new_blob_key(original_name: str) -> str:
    """Unique key that keeps the original extension."""
    return f"{uuid.uuid4()}{Path(original_name).suffix}"


class BlobStore(ABC):
    @abstractmethod
    async def put(self, bucket: str, key: str, data: bytes) -> str:
        """Store bytes. Returns the key they can be read back with."""

    @abstractmethod
    async def get(self, bucket: str, key: str) -> bytes:
        pass

    @abstractmethod
    async def delete(self, bucket: str, key: str) -> None:
        pass

    def local_path(self, bucket: str, key: str) -> Optional[Path]:
        """Filesystem path of a blob, when the backend has one."""
        return None


class LocalBlobStore(BlobStore):
    """Stores each bucket as a directory under ``base_path``."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def local_path(self, bucket: str, key: str) -> Path:
        path = (self.base_path / bucket / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes storage root: {key}")
        return path

    async def put(self, bucket: str, key: str, data: bytes) -> str:
        path = self.local_path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(data)
        logger.debug("Stored blob %s/%s (%d bytes)", bucket, key, len(data))
        return key

    async def get(self, bucket: str, key: str) -> bytes:
        async with aiofiles.open(self.local_path(bucket, key), "rb") as f:
            return await f.read()

    async def delete(self, bucket: str, key: str) -> None:
        """Delete a blob. Deleting a missing blob is not an error."""
        path = self.local_path(bucket, key)
        if path.exists():
            os.remove(path)


def create_blob_store() -> BlobStore:
    if settings.FILE_STORAGE_TYPE == "local":
        return LocalBlobStore(settings.FILE_STORAGE_PATH)
    raise ValueError(f"Unknown storage type: {settings.FILE_STORAGE_TYPE}")


file_storage = create_blob_store()
