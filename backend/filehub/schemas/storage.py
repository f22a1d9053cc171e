"""Storage accounting schemas."""
from pydantic import Field

from filehub.schemas.base import CamelModel


class StorageBreakdown(CamelModel):
    photos: int = 0
    videos: int = 0
    documents: int = 0
    others: int = 0

    def total(self) -> int:
        return self.photos + self.videos + self.documents + self.others


class StorageUsage(CamelModel):
    total_size: int = 0
    total_files: int = 0
    breakdown: StorageBreakdown = Field(default_factory=StorageBreakdown)


class StorageSummary(CamelModel):
    total_size: int
    max_storage: int
    usage_percentage: float
    total_files: int
    breakdown: StorageBreakdown
