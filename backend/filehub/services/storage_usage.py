"""Storage accounting: usage totals, category breakdown and plan quotas.

Trashed files still occupy storage, so usage counts every file record of
the owner regardless of ``is_deleted``. Folders carry no bytes and are
not counted as files.
"""
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from filehub.config import settings
from filehub.exceptions import QuotaExceededError
from filehub.schemas.storage import StorageBreakdown, StorageSummary, StorageUsage
from filehub.services.queries import fetch_all
from filehub.services.record_store import FILES, SUBSCRIPTIONS, RecordStore, eq

logger = logging.getLogger(__name__)

GIB = 1024 ** 3
TIB = 1024 ** 4

FREE_PLAN = "free"
PLAN_QUOTAS = {
    FREE_PLAN: 10 * GIB,
    "basic": 50 * GIB,
    "pro": 1 * TIB,
    "enterprise": 10 * TIB,
}

DOCUMENT_MIME_MARKERS = (
    "document", "pdf", "text", "spreadsheet", "presentation",
    "word", "excel", "powerpoint", "msword",
    "vnd.openxmlformats", "vnd.ms-excel", "vnd.ms-powerpoint",
)


def categorize(mime_type: Optional[str]) -> str:
    """Map a mime type to one of photos / videos / documents / others."""
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return "photos"
    if mime.startswith("video/"):
        return "videos"
    if mime and any(marker in mime for marker in DOCUMENT_MIME_MARKERS):
        return "documents"
    return "others"


def usage_percentage(total_size: int, max_storage: int) -> float:
    """Percentage of quota used, rounded half up to an integer.

    Any non-zero usage reports at least 0.1 so a nearly empty account is
    distinguishable from an empty one.
    """
    if total_size <= 0 or max_storage <= 0:
        return 0
    pct = math.floor(total_size / max_storage * 100 + 0.5)
    return pct if pct > 0 else 0.1


@dataclass
class PlanInfo:
    plan_id: str
    status: str = "active"


class PlanSource(ABC):
    """Where an owner's current plan comes from."""

    @abstractmethod
    async def get_plan(self, owner_id: str) -> Optional[PlanInfo]:
        pass


class RecordStorePlanSource(PlanSource):
    """Reads the most recently updated subscription record of the owner."""

    def __init__(self, record_store: RecordStore):
        self.record_store = record_store

    async def get_plan(self, owner_id: str) -> Optional[PlanInfo]:
        rows = await self.record_store.list(
            SUBSCRIPTIONS, [eq("owner_id", owner_id)],
            offset=0, limit=1, order_by="updated_at", descending=True,
        )
        if not rows:
            return None
        return PlanInfo(plan_id=rows[0].plan_id, status=rows[0].status)


class StorageAccountingService:

    def __init__(
        self,
        record_store: RecordStore,
        plan_source: Optional[PlanSource] = None,
        *,
        page_size: Optional[int] = None,
    ):
        self.record_store = record_store
        self.plan_source = plan_source or RecordStorePlanSource(record_store)
        self.page_size = page_size or settings.PAGE_SIZE

    async def compute_usage(self, owner_id: str) -> StorageUsage:
        """Total bytes, file count and per-category breakdown, trash included."""
        records = await fetch_all(
            self.record_store, FILES, [eq("owner_id", owner_id)], page_size=self.page_size,
        )
        breakdown = StorageBreakdown()
        total_size = 0
        total_files = 0
        for record in records:
            if not record.is_file:
                continue
            size = record.size or 0
            total_size += size
            total_files += 1
            bucket = categorize(record.mime_type)
            setattr(breakdown, bucket, getattr(breakdown, bucket) + size)

        return StorageUsage(total_size=total_size, total_files=total_files, breakdown=breakdown)

    async def resolve_quota(self, owner_id: str) -> int:
        """Quota in bytes for the owner's plan. Anything unresolvable means free."""
        try:
            plan = await self.plan_source.get_plan(owner_id)
        except Exception as e:
            logger.warning("Plan lookup failed for %s, using free quota: %s", owner_id, e)
            return PLAN_QUOTAS[FREE_PLAN]

        if plan is None or plan.status == "canceled":
            return PLAN_QUOTAS[FREE_PLAN]
        quota = PLAN_QUOTAS.get(plan.plan_id)
        if quota is None:
            logger.warning("Unknown plan %r for %s, using free quota", plan.plan_id, owner_id)
            return PLAN_QUOTAS[FREE_PLAN]
        return quota

    async def get_storage_summary(self, owner_id: str) -> StorageSummary:
        usage = await self.compute_usage(owner_id)
        max_storage = await self.resolve_quota(owner_id)
        return StorageSummary(
            total_size=usage.total_size,
            max_storage=max_storage,
            usage_percentage=usage_percentage(usage.total_size, max_storage),
            total_files=usage.total_files,
            breakdown=usage.breakdown,
        )

    async def check_quota(self, owner_id: str, size_bytes: int) -> None:
        """Raise QuotaExceededError if ``size_bytes`` more would exceed the owner's quota."""
        usage = await self.compute_usage(owner_id)
        quota = await self.resolve_quota(owner_id)
        if usage.total_size + size_bytes > quota:
            logger.info(
                "Quota exceeded for %s: %d used + %d requested > %d",
                owner_id, usage.total_size, size_bytes, quota,
            )
            raise QuotaExceededError(quota, usage.total_size, size_bytes)
