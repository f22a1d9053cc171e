"""File record, batch outcome and upload response schemas."""
from datetime import datetime
from typing import Optional

from filehub.schemas.base import CamelModel


class FileRecordResponse(CamelModel):
    id: str
    name: str
    kind: str
    size: Optional[int] = None
    mime_type: Optional[str] = None
    url: Optional[str] = None
    parent_id: Optional[str] = None
    owner_id: str
    is_favorite: bool = False
    is_deleted: bool = False
    created_at: datetime
    updated_at: datetime


class BatchOutcome(CamelModel):
    """Counts reported by a best-effort batch transition.

    ``requested`` is the number of distinct ids asked for, ``owned`` how many
    of them resolved to records of the caller, ``succeeded`` how many of those
    the transition was applied to. ``processed_count`` mirrors ``owned``.
    """
    requested: int = 0
    owned: int = 0
    succeeded: int = 0
    processed_count: int = 0
    files_deleted: int = 0
    folders_deleted: int = 0
    added_to_favorites: int = 0
    removed_from_favorites: int = 0
    blob_failures: int = 0

    @property
    def failed(self) -> int:
        return self.owned - self.succeeded


class UploadResponse(CamelModel):
    """Body of POST /api/upload, both on success and on rejection."""
    success: bool
    file_id: Optional[str] = None
    url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    error: Optional[str] = None


class BatchRequest(CamelModel):
    owner_id: str
    ids: list[str]
