"""Upload API route. The endpoint the upload orchestrator POSTs to."""
import logging
import uuid
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File as FastAPIFile, Form, UploadFile
from fastapi.responses import JSONResponse

from filehub.config import settings
from filehub.dependencies import get_blob_store, get_record_store
from filehub.exceptions import QuotaExceededError, StoreUnavailableError
from filehub.models.file_record import KIND_FILE
from filehub.schemas.file import UploadResponse
from filehub.services.file_storage import BlobStore, new_blob_key
from filehub.services.record_store import FILES, RecordStore
from filehub.services.storage_usage import StorageAccountingService
from filehub.services.upload_tracker import format_file_size

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/upload", tags=["upload"])


def _reject(status_code: int, message: str) -> JSONResponse:
    body = UploadResponse(success=False, error=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True))


def download_url(record_id: str, owner_id: str) -> str:
    base = settings.PUBLIC_BASE_URL.rstrip("/")
    return f"{base}/api/files/{record_id}/download?ownerId={quote(owner_id)}"


@router.post("", response_model=UploadResponse, response_model_exclude_none=True)
async def upload_file(
    file: Optional[UploadFile] = FastAPIFile(None),
    owner_id: str = Form("", alias="ownerId"),
    parent_id: Optional[str] = Form(None, alias="parentId"),
    store: RecordStore = Depends(get_record_store),
    blobs: BlobStore = Depends(get_blob_store),
):
    """Store the file bytes, then create the file record.

    If the record cannot be written the stored blob is removed again.
    """
    if not owner_id:
        return _reject(400, "Owner is required")
    if file is None or not file.filename:
        return _reject(400, "No file provided")

    contents = await file.read()
    size = len(contents)
    if size > settings.MAX_UPLOAD_SIZE:
        return _reject(400, f"File size exceeds {format_file_size(settings.MAX_UPLOAD_SIZE)} limit")

    if parent_id:
        parent = await store.get(FILES, parent_id)
        if parent is None or parent.owner_id != owner_id or not parent.is_folder:
            return _reject(400, "Invalid parent folder")

    try:
        await StorageAccountingService(store).check_quota(owner_id, size)
    except QuotaExceededError as e:
        return _reject(400, f"Storage quota exceeded: {format_file_size(e.used_bytes)} of {format_file_size(e.quota_bytes)} used")

    mime_type = file.content_type or "application/octet-stream"
    blob_key = new_blob_key(file.filename)
    try:
        await blobs.put(settings.BLOB_BUCKET, blob_key, contents)
    except Exception:
        logger.exception(f"Failed to store blob for {file.filename}")
        return _reject(500, "Failed to store file")

    record_id = str(uuid.uuid4())
    url = download_url(record_id, owner_id)
    try:
        await store.create(FILES, {
            "name": file.filename,
            "kind": KIND_FILE,
            "size": size,
            "mime_type": mime_type,
            "blob_ref": blob_key,
            "url": url,
            "parent_id": parent_id,
            "owner_id": owner_id,
        }, record_id=record_id)
    except StoreUnavailableError as e:
        logger.error(f"Failed to save file record for {file.filename}, removing blob {blob_key}: {e}")
        try:
            await blobs.delete(settings.BLOB_BUCKET, blob_key)
        except Exception as cleanup_err:
            logger.warning(f"Failed to clean up blob {blob_key}: {cleanup_err}")
        return _reject(500, "Failed to save file record")

    logger.info(f"Uploaded {file.filename} ({size} bytes) as {record_id} for {owner_id}")
    return UploadResponse(
        success=True,
        file_id=record_id,
        url=url,
        file_name=file.filename,
        file_size=size,
        mime_type=mime_type,
    )
