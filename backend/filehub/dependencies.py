"""FastAPI dependencies that hand services their store adapters.

Tests swap these out with ``app.dependency_overrides``.
"""
from filehub.database import async_session
from filehub.services.file_storage import BlobStore, file_storage
from filehub.services.record_store import RecordStore, SqlRecordStore


def get_record_store() -> RecordStore:
    return SqlRecordStore(async_session)


def get_blob_store() -> BlobStore:
    return file_storage
