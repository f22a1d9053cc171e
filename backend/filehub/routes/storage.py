"""Storage accounting API route."""
from fastapi import APIRouter, Depends, Query

from filehub.dependencies import get_record_store
from filehub.schemas.storage import StorageSummary
from filehub.services.record_store import RecordStore
from filehub.services.storage_usage import StorageAccountingService

router = APIRouter(prefix="/api/storage", tags=["storage"])


@router.get("", response_model=StorageSummary)
async def get_storage_summary(
    owner_id: str = Query(..., alias="ownerId"),
    store: RecordStore = Depends(get_record_store),
):
    """Usage, quota and per-category breakdown for the owner."""
    return await StorageAccountingService(store).get_storage_summary(owner_id)
