"""Shared fixtures for filehub tests."""

import os
import tempfile

# Settings are read at import time, so point them at throwaway resources first.
os.environ.setdefault('DATABASE_URL', 'sqlite+aiosqlite:///:memory:')
os.environ.setdefault('FILE_STORAGE_PATH', tempfile.mkdtemp(prefix='filehub-blobs-'))

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from filehub.models import Base  # noqa: E402
from filehub.models.file_record import KIND_FILE, KIND_FOLDER  # noqa: E402
from filehub.services.file_lifecycle import FileLifecycleService  # noqa: E402
from filehub.services.file_storage import LocalBlobStore  # noqa: E402
from filehub.services.record_store import FILES, SqlRecordStore  # noqa: E402

BUCKET = 'files'


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh sqlite file database.

    A file (not :memory:) database lets concurrent sessions see each
    other's writes, which the parallel batch operations rely on.

    Yields:
        async_sessionmaker bound to the test engine.
    """
    engine = create_async_engine(f'sqlite+aiosqlite:///{tmp_path / "test.db"}')
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def record_store(session_factory):
    """Record store with the production array limit of 25."""
    return SqlRecordStore(session_factory, query_array_limit=25)


@pytest.fixture
def blob_store(tmp_path):
    """Local blob store rooted in the test's temp dir."""
    return LocalBlobStore(tmp_path / 'blobs')


@pytest.fixture
def owner():
    return 'user-1'


@pytest.fixture
def other_owner():
    """Second owner for isolation tests."""
    return 'user-2'


@pytest.fixture
def lifecycle(record_store, blob_store, owner):
    return FileLifecycleService(
        record_store, blob_store, owner, bucket=BUCKET, page_size=100,
    )


@pytest.fixture
def make_file(record_store, blob_store):
    """Factory creating file records, with a stored blob by default.

    Returns:
        async (owner_id, name='file.txt', **fields) -> FileRecord
    """
    counter = {'n': 0}

    async def _make(owner_id, name='file.txt', *, size=100, mime_type='text/plain',
                    with_blob=True, **fields):
        counter['n'] += 1
        blob_ref = None
        if with_blob:
            blob_ref = f'{owner_id}-{counter["n"]}-{name}'
            await blob_store.put(BUCKET, blob_ref, b'x' * min(size or 0, 16))
        return await record_store.create(FILES, {
            'name': name,
            'kind': KIND_FILE,
            'size': size,
            'mime_type': mime_type,
            'blob_ref': blob_ref,
            'owner_id': owner_id,
            **fields,
        })

    return _make


@pytest.fixture
def make_folder(record_store):
    """Factory creating folder records.

    Returns:
        async (owner_id, name='folder', **fields) -> FileRecord
    """

    async def _make(owner_id, name='folder', **fields):
        return await record_store.create(FILES, {
            'name': name,
            'kind': KIND_FOLDER,
            'size': 0,
            'owner_id': owner_id,
            **fields,
        })

    return _make
