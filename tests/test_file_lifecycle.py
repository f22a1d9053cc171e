"""Tests for the file lifecycle service."""

import pytest

from filehub.exceptions import BlobDeleteFailure, NotFoundError, StoreUnavailableError, UnauthorizedError
from filehub.services.file_lifecycle import FileLifecycleService
from filehub.services.record_store import FILES

BUCKET = 'files'


class FailingBlobStore:
    """Blob store whose deletes always fail."""

    def __init__(self, inner):
        self.inner = inner
        self.attempted = []

    async def put(self, bucket, key, data):
        return await self.inner.put(bucket, key, data)

    async def get(self, bucket, key):
        return await self.inner.get(bucket, key)

    async def delete(self, bucket, key):
        self.attempted.append(key)
        raise OSError('blob backend unavailable')

    def local_path(self, bucket, key):
        return self.inner.local_path(bucket, key)


class StickyRecordStore:
    """Record store that refuses to delete the given ids."""

    def __init__(self, inner, sticky_ids):
        self.inner = inner
        self.sticky_ids = set(sticky_ids)

    async def delete(self, collection, record_id):
        if record_id in self.sticky_ids:
            raise StoreUnavailableError(f'cannot delete {record_id}')
        return await self.inner.delete(collection, record_id)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class TestQueries:
    """Tests for the listing operations."""

    async def test_list_files_root_and_folder(self, lifecycle, make_file, make_folder, owner, other_owner):
        """Test root listing and folder listing are scoped and exclude trash."""
        folder = await make_folder(owner, 'Photos')
        await make_file(owner, 'root.txt')
        await make_file(owner, 'inside.jpg', parent_id=folder.id)
        await make_file(owner, 'trashed.txt', is_deleted=True)
        await make_file(other_owner, 'foreign.txt')

        root = await lifecycle.list_files()
        inside = await lifecycle.list_files(folder.id)
        root_folders = await lifecycle.list_files(kind='folder')

        assert {r.name for r in root} == {'Photos', 'root.txt'}
        assert [r.name for r in inside] == ['inside.jpg']
        assert [r.name for r in root_folders] == ['Photos']

    async def test_list_by_mime_prefix(self, lifecycle, make_file, owner):
        """Test mime prefix listing returns only matching live files."""
        await make_file(owner, 'a.png', mime_type='image/png')
        await make_file(owner, 'b.mp4', mime_type='video/mp4')
        await make_file(owner, 'c.png', mime_type='image/png', is_deleted=True)

        images = await lifecycle.list_by_mime_prefix('image/')

        assert [r.name for r in images] == ['a.png']

    async def test_favorites_and_trash(self, lifecycle, make_file, owner):
        """Test favorites exclude trashed items and trash lists only trashed ones."""
        await make_file(owner, 'fav.txt', is_favorite=True)
        await make_file(owner, 'fav-trashed.txt', is_favorite=True, is_deleted=True)
        await make_file(owner, 'plain.txt')

        assert [r.name for r in await lifecycle.list_favorites()] == ['fav.txt']
        assert [r.name for r in await lifecycle.list_trash()] == ['fav-trashed.txt']

    async def test_list_recent(self, lifecycle, make_file, owner):
        """Test recent returns newest updates first, limited."""
        first = await make_file(owner, 'first.txt')
        for i in range(3):
            await make_file(owner, f'{i}.txt')
        await lifecycle.rename_item(first.id, 'touched.txt')

        recent = await lifecycle.list_recent(limit=2)

        assert len(recent) == 2
        assert recent[0].name == 'touched.txt'

    async def test_search_files(self, lifecycle, make_file, owner, other_owner):
        """Test search is case-insensitive and owner-scoped."""
        await make_file(owner, 'Annual Report.pdf')
        await make_file(owner, 'notes.txt')
        await make_file(other_owner, 'report-copy.pdf')

        found = await lifecycle.search_files('report')

        assert [r.name for r in found] == ['Annual Report.pdf']
        assert await lifecycle.search_files('   ') == []

    async def test_listing_walks_all_pages(self, record_store, blob_store, make_file, owner):
        """Test listings return more than one page of records."""
        service = FileLifecycleService(record_store, blob_store, owner, page_size=10)
        for i in range(23):
            await make_file(owner, f'{i}.txt', with_blob=False)

        assert len(await service.list_files()) == 23

    async def test_get_item_ownership(self, lifecycle, make_file, other_owner):
        """Test get_item fails closed for missing and foreign records."""
        foreign = await make_file(other_owner, 'theirs.txt')

        with pytest.raises(NotFoundError):
            await lifecycle.get_item('missing')
        with pytest.raises(UnauthorizedError):
            await lifecycle.get_item(foreign.id)


class TestSingleMutations:
    """Tests for single-item transitions."""

    async def test_create_folder(self, lifecycle, owner):
        """Test folder creation at root and nested."""
        parent = await lifecycle.create_folder('  Projects ')
        child = await lifecycle.create_folder('2026', parent_id=parent.id)

        assert parent.name == 'Projects'
        assert parent.is_folder
        assert parent.owner_id == owner
        assert child.parent_id == parent.id

    async def test_create_folder_validation(self, lifecycle, make_file, other_owner):
        """Test blank names, file parents and foreign parents are rejected."""
        file_record = await lifecycle.record_store.create(FILES, {
            'name': 'a.txt', 'kind': 'file', 'owner_id': lifecycle.owner_id,
        })
        foreign_folder = await lifecycle.record_store.create(FILES, {
            'name': 'x', 'kind': 'folder', 'owner_id': other_owner,
        })

        with pytest.raises(ValueError):
            await lifecycle.create_folder('   ')
        with pytest.raises(ValueError):
            await lifecycle.create_folder('sub', parent_id=file_record.id)
        with pytest.raises(UnauthorizedError):
            await lifecycle.create_folder('sub', parent_id=foreign_folder.id)

    async def test_rename(self, lifecycle, make_file, owner, other_owner):
        """Test rename updates the name and checks ownership."""
        mine = await make_file(owner, 'old.txt')
        theirs = await make_file(other_owner, 'theirs.txt')

        renamed = await lifecycle.rename_item(mine.id, 'new.txt')

        assert renamed.name == 'new.txt'
        assert (await lifecycle.get_item(mine.id)).name == 'new.txt'
        with pytest.raises(UnauthorizedError):
            await lifecycle.rename_item(theirs.id, 'mine now')
        with pytest.raises(ValueError):
            await lifecycle.rename_item(mine.id, '')

    async def test_toggle_favorite_twice_restores(self, lifecycle, make_file, owner):
        """Test toggling twice returns the original value."""
        record = await make_file(owner)

        once = await lifecycle.toggle_favorite(record.id)
        twice = await lifecycle.toggle_favorite(record.id)

        assert once.is_favorite is True
        assert twice.is_favorite is False

    async def test_trash_then_restore_is_identity(self, lifecycle, make_file, owner):
        """Test trash + restore leaves the record as it was, apart from updated_at."""
        record = await make_file(owner, 'keep.txt', is_favorite=True)
        before = await lifecycle.get_item(record.id)

        trashed = await lifecycle.move_to_trash(record.id)
        assert trashed.is_deleted is True
        assert await lifecycle.list_files() == []

        await lifecycle.restore_from_trash(record.id)
        after = await lifecycle.get_item(record.id)

        for field in ('id', 'name', 'kind', 'size', 'mime_type', 'blob_ref',
                      'parent_id', 'owner_id', 'is_favorite', 'is_deleted', 'created_at'):
            assert getattr(after, field) == getattr(before, field)

    async def test_trash_is_noop_when_already_trashed(self, lifecycle, make_file, owner):
        """Test trashing a trashed record writes nothing."""
        record = await make_file(owner, is_deleted=True)
        before = await lifecycle.get_item(record.id)

        await lifecycle.move_to_trash(record.id)
        after = await lifecycle.get_item(record.id)

        assert after.updated_at == before.updated_at

    async def test_restore_is_noop_when_not_trashed(self, lifecycle, make_file, owner):
        """Test restoring a live record writes nothing."""
        record = await make_file(owner)
        before = await lifecycle.get_item(record.id)

        result = await lifecycle.restore_from_trash(record.id)

        assert result.is_deleted is False
        assert (await lifecycle.get_item(record.id)).updated_at == before.updated_at

    async def test_permanently_delete_removes_blob_and_record(self, lifecycle, blob_store, make_file, owner):
        """Test permanent deletion removes both blob and record."""
        record = await make_file(owner)
        assert blob_store.local_path(BUCKET, record.blob_ref).exists()

        await lifecycle.permanently_delete(record.id)

        assert not blob_store.local_path(BUCKET, record.blob_ref).exists()
        with pytest.raises(NotFoundError):
            await lifecycle.get_item(record.id)

    async def test_permanently_delete_tolerates_blob_failure(self, record_store, blob_store, make_file, owner):
        """Test the record is deleted even when the blob delete fails."""
        failures = []
        service = FileLifecycleService(
            record_store, FailingBlobStore(blob_store), owner,
            bucket=BUCKET, on_blob_failure=failures.append,
        )
        record = await make_file(owner)

        await service.permanently_delete(record.id)

        assert await record_store.get(FILES, record.id) is None
        assert len(failures) == 1
        assert isinstance(failures[0], BlobDeleteFailure)
        assert failures[0].record_id == record.id
        assert failures[0].blob_ref == record.blob_ref

    async def test_permanently_delete_folder_keeps_children(self, lifecycle, make_file, make_folder, owner):
        """Test deleting a folder does not cascade to its children."""
        folder = await make_folder(owner, 'Old')
        child = await make_file(owner, 'child.txt', parent_id=folder.id)

        await lifecycle.permanently_delete(folder.id)

        remaining = await lifecycle.list_files(folder.id)
        assert [r.id for r in remaining] == [child.id]

    async def test_foreign_record_mutations_rejected(self, lifecycle, make_file, other_owner):
        """Test every single-item mutation refuses foreign records."""
        foreign = await make_file(other_owner)

        for operation in (lifecycle.toggle_favorite, lifecycle.move_to_trash,
                          lifecycle.restore_from_trash, lifecycle.permanently_delete):
            with pytest.raises(UnauthorizedError):
                await operation(foreign.id)

        assert await lifecycle.record_store.get(FILES, foreign.id) is not None


class TestBatchMutations:
    """Tests for the best-effort batch operations."""

    async def test_batch_trash_drops_foreign_records(self, lifecycle, record_store, make_file, owner, other_owner):
        """Test 30 ids with 10 foreign ones trash exactly the 20 owned records."""
        mine = [await make_file(owner, f'm{i}.txt', with_blob=False) for i in range(20)]
        theirs = [await make_file(other_owner, f't{i}.txt', with_blob=False) for i in range(10)]
        ids = [r.id for r in theirs[:5] + mine + theirs[5:]]

        outcome = await lifecycle.batch_move_to_trash(ids)

        assert outcome.requested == 30
        assert outcome.owned == 20
        assert outcome.succeeded == 20
        assert outcome.processed_count == 20
        assert {r.id for r in await lifecycle.list_trash()} == {r.id for r in mine}
        for record in theirs:
            assert (await record_store.get(FILES, record.id)).is_deleted is False

    async def test_batch_restore(self, lifecycle, make_file, owner):
        """Test batch restore brings trashed records back."""
        records = [await make_file(owner, f'{i}.txt', is_deleted=True) for i in range(3)]

        outcome = await lifecycle.batch_restore_from_trash([r.id for r in records])

        assert outcome.processed_count == 3
        assert await lifecycle.list_trash() == []
        assert len(await lifecycle.list_files()) == 3

    async def test_batch_toggle_favorite_counts(self, lifecycle, make_file, owner):
        """Test toggle reports how many were added and removed."""
        fav = [await make_file(owner, f'f{i}.txt', is_favorite=True) for i in range(2)]
        plain = [await make_file(owner, f'p{i}.txt') for i in range(3)]

        outcome = await lifecycle.batch_toggle_favorite([r.id for r in fav + plain])

        assert outcome.added_to_favorites == 3
        assert outcome.removed_from_favorites == 2
        assert {r.id for r in await lifecycle.list_favorites()} == {r.id for r in plain}

    async def test_batch_ignores_unknown_and_duplicate_ids(self, lifecycle, make_file, owner):
        """Test missing and repeated ids are not counted as owned."""
        record = await make_file(owner)

        outcome = await lifecycle.batch_move_to_trash([record.id, record.id, 'ghost'])

        assert outcome.requested == 2
        assert outcome.owned == 1
        assert outcome.processed_count == 1

    async def test_batch_empty_input(self, lifecycle):
        """Test an empty id list is a no-op."""
        outcome = await lifecycle.batch_permanently_delete([])

        assert outcome.processed_count == 0
        assert outcome.requested == 0

    async def test_batch_spans_multiple_chunks(self, lifecycle, make_file, owner):
        """Test more ids than one chunk holds are all processed."""
        records = [await make_file(owner, f'{i}.txt', with_blob=False) for i in range(60)]

        outcome = await lifecycle.batch_move_to_trash([r.id for r in records])

        assert outcome.processed_count == 60
        assert len(await lifecycle.list_trash()) == 60

    async def test_batch_permanently_delete(self, lifecycle, blob_store, make_file, make_folder, owner, other_owner):
        """Test files and folders are counted separately and foreign ones survive."""
        files = [await make_file(owner, f'{i}.txt') for i in range(2)]
        folder = await make_folder(owner)
        foreign = await make_file(other_owner)

        outcome = await lifecycle.batch_permanently_delete([r.id for r in files] + [folder.id, foreign.id])

        assert outcome.files_deleted == 2
        assert outcome.folders_deleted == 1
        assert outcome.processed_count == 3
        assert outcome.blob_failures == 0
        for record in files:
            assert not blob_store.local_path(BUCKET, record.blob_ref).exists()
        assert await lifecycle.record_store.get(FILES, foreign.id) is not None

    async def test_batch_permanently_delete_with_blob_failures(self, record_store, blob_store, make_file, owner):
        """Test blob failures are reported but records still go."""
        failures = []
        service = FileLifecycleService(
            record_store, FailingBlobStore(blob_store), owner,
            bucket=BUCKET, on_blob_failure=failures.append,
        )
        records = [await make_file(owner, f'{i}.txt') for i in range(3)]

        outcome = await service.batch_permanently_delete([r.id for r in records])

        assert outcome.files_deleted == 3
        assert outcome.blob_failures == 3
        assert len(failures) == 3
        for record in records:
            assert await record_store.get(FILES, record.id) is None


class TestEmptyTrash:
    """Tests for empty_trash."""

    async def test_empty_trash_counts(self, lifecycle, blob_store, make_file, make_folder, owner, other_owner):
        """Test 3 trashed files and 2 trashed folders are all purged."""
        files = [await make_file(owner, f'{i}.txt', is_deleted=True) for i in range(3)]
        for i in range(2):
            await make_folder(owner, f'dir{i}', is_deleted=True)
        live = await make_file(owner, 'live.txt')
        foreign = await make_file(other_owner, 'foreign.txt', is_deleted=True)

        outcome = await lifecycle.empty_trash()

        assert outcome.processed_count == 5
        assert outcome.files_deleted == 3
        assert outcome.folders_deleted == 2
        assert await lifecycle.list_trash() == []
        for record in files:
            assert not blob_store.local_path(BUCKET, record.blob_ref).exists()
        assert (await lifecycle.get_item(live.id)).name == 'live.txt'
        assert await lifecycle.record_store.get(FILES, foreign.id) is not None

    async def test_empty_trash_when_empty(self, lifecycle):
        """Test emptying an empty trash reports zeros."""
        outcome = await lifecycle.empty_trash()

        assert outcome.processed_count == 0
        assert outcome.files_deleted == 0
        assert outcome.folders_deleted == 0

    async def test_empty_trash_tolerates_blob_failures(self, record_store, blob_store, make_file, owner):
        """Test blob failures do not stop the trash from being emptied."""
        failures = []
        service = FileLifecycleService(
            record_store, FailingBlobStore(blob_store), owner,
            bucket=BUCKET, on_blob_failure=failures.append,
        )
        for i in range(2):
            await make_file(owner, f'{i}.txt', is_deleted=True)

        outcome = await service.empty_trash()

        assert outcome.files_deleted == 2
        assert outcome.blob_failures == 2
        assert await service.list_trash() == []

    async def test_empty_trash_counts_only_deleted_records(self, record_store, blob_store, make_file, make_folder, owner):
        """Test records the store refused to delete are not reported as deleted."""
        stuck_file = await make_file(owner, 'stuck.txt', is_deleted=True)
        await make_file(owner, 'gone.txt', is_deleted=True)
        stuck_folder = await make_folder(owner, 'stuck-dir', is_deleted=True)
        await make_folder(owner, 'gone-dir', is_deleted=True)
        service = FileLifecycleService(
            StickyRecordStore(record_store, [stuck_file.id, stuck_folder.id]), blob_store, owner, bucket=BUCKET,
        )

        outcome = await service.empty_trash()

        assert outcome.processed_count == 4
        assert outcome.succeeded == 2
        assert outcome.files_deleted == 1
        assert outcome.folders_deleted == 1
        assert {r.id for r in await service.list_trash()} == {stuck_file.id, stuck_folder.id}

    async def test_raising_blob_failure_hook_is_tolerated(self, record_store, blob_store, make_file, owner):
        """Test a broken failure hook does not stop records from being deleted."""
        def broken_hook(failure):
            raise RuntimeError('hook bug')

        service = FileLifecycleService(
            record_store, FailingBlobStore(blob_store), owner,
            bucket=BUCKET, on_blob_failure=broken_hook,
        )
        for i in range(2):
            await make_file(owner, f'{i}.txt', is_deleted=True)

        outcome = await service.empty_trash()

        assert outcome.files_deleted == 2
        assert outcome.blob_failures == 2
        assert await service.list_trash() == []
