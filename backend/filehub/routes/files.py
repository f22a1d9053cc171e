"""Files API routes."""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse, Response

from filehub.config import settings
from filehub.dependencies import get_blob_store, get_record_store
from filehub.exceptions import NotFoundError, UnauthorizedError
from filehub.schemas.file import BatchOutcome, BatchRequest, FileRecordResponse
from filehub.services.file_lifecycle import FileLifecycleService
from filehub.services.file_storage import BlobStore
from filehub.services.record_store import RecordStore

router = APIRouter(prefix="/api/files", tags=["files"])

BATCH_ACTIONS = {
    "toggle-favorite": FileLifecycleService.batch_toggle_favorite,
    "trash": FileLifecycleService.batch_move_to_trash,
    "restore": FileLifecycleService.batch_restore_from_trash,
    "delete": FileLifecycleService.batch_permanently_delete,
}


@router.get("", response_model=list[FileRecordResponse])
async def list_files(
    owner_id: str = Query(..., alias="ownerId"),
    parent_id: Optional[str] = Query(None, alias="parentId"),
    store: RecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
):
    """List non-trashed items in a folder (root when parentId is omitted)."""
    service = FileLifecycleService(store, blobs, owner_id)
    return await service.list_files(parent_id)


@router.post("/batch/{action}", response_model=BatchOutcome)
async def batch_action(
    action: str,
    body: BatchRequest,
    store: RecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
):
    """Apply toggle-favorite, trash, restore or delete to many items at once."""
    operation = BATCH_ACTIONS.get(action)
    if operation is None:
        raise HTTPException(status_code=404, detail=f"Unknown batch action: {action}")
    service = FileLifecycleService(store, blobs, body.owner_id)
    return await operation(service, body.ids)


@router.delete("/trash", response_model=BatchOutcome)
async def empty_trash(
    owner_id: str = Query(..., alias="ownerId"),
    store: RecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
):
    """Permanently delete everything in the owner's trash."""
    service = FileLifecycleService(store, blobs, owner_id)
    return await service.empty_trash()


async def _get_owned(service: FileLifecycleService, file_id: str):
    try:
        return await service.get_item(file_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="File not found")
    except UnauthorizedError:
        raise HTTPException(status_code=403, detail="Not allowed to access this file")


@router.get("/{file_id}", response_model=FileRecordResponse)
async def get_file_metadata(
    file_id: str,
    owner_id: str = Query(..., alias="ownerId"),
    store: RecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
):
    """Get file metadata by ID."""
    return await _get_owned(FileLifecycleService(store, blobs, owner_id), file_id)


@router.get("/{file_id}/download")
async def download_file(
    file_id: str,
    owner_id: str = Query(..., alias="ownerId"),
    store: RecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
):
    """Download a file owned by the caller."""
    record = await _get_owned(FileLifecycleService(store, blobs, owner_id), file_id)
    if not record.is_file or not record.blob_ref:
        raise HTTPException(status_code=404, detail="File has no content")

    media_type = record.mime_type or "application/octet-stream"
    path = blobs.local_path(settings.BLOB_BUCKET, record.blob_ref)
    if path is not None:
        if not path.exists():
            raise HTTPException(status_code=404, detail="File content missing")
        return FileResponse(path=path, filename=record.name, media_type=media_type)

    data = await blobs.get(settings.BLOB_BUCKET, record.blob_ref)
    return Response(
        content=data,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{record.name}"'},
    )
