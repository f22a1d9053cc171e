"""File lifecycle engine: listing, favorites, trash, restore and permanent deletion.

One ``FileLifecycleService`` is built per calling owner. Every query is
scoped to that owner and every single-item mutation checks ownership first.

Batch operations are best-effort and non-transactional: ids are looked up in
chunks bounded by the store's "in" filter cap, records of other owners are
dropped silently, and the transition is applied to the rest in parallel.
One record failing does not stop the others; the outcome reports counts.

Deleting a folder does not touch its children. They keep their parent_id
and stay listable on their own.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from filehub.config import settings
from filehub.exceptions import BlobDeleteFailure, NotFoundError, UnauthorizedError
from filehub.models import FileRecord
from filehub.models.file_record import KIND_FILE, KIND_FOLDER
from filehub.schemas.file import BatchOutcome
from filehub.services.file_storage import BlobStore
from filehub.services.queries import fetch_all, iter_records_by_ids, unique_ids
from filehub.services.record_store import FILES, RecordStore, eq, is_null, search, starts_with

logger = logging.getLogger(__name__)

BlobFailureHook = Callable[[BlobDeleteFailure], None]


class FileLifecycleService:
    """File and folder state transitions for a single owner."""

    def __init__(
        self,
        record_store: RecordStore,
        blob_store: BlobStore,
        owner_id: str,
        *,
        bucket: Optional[str] = None,
        chunk_size: Optional[int] = None,
        page_size: Optional[int] = None,
        on_blob_failure: Optional[BlobFailureHook] = None,
    ):
        if not owner_id:
            raise ValueError("owner_id is required")
        self.record_store = record_store
        self.blob_store = blob_store
        self.owner_id = owner_id
        self.bucket = bucket or settings.BLOB_BUCKET
        self.chunk_size = chunk_size or settings.QUERY_ARRAY_LIMIT
        self.page_size = page_size or settings.PAGE_SIZE
        self.on_blob_failure = on_blob_failure

    # ── Queries ─────────────────────────────────────────────────

    def _owned(self, *filters):
        return [eq("owner_id", self.owner_id), *filters]

    async def _fetch_all(self, *filters, order_by=None, descending=False) -> list[FileRecord]:
        return await fetch_all(
            self.record_store, FILES, self._owned(*filters),
            page_size=self.page_size, order_by=order_by, descending=descending,
        )

    async def list_files(self, parent_id: Optional[str] = None, kind: Optional[str] = None) -> list[FileRecord]:
        """Non-trashed items directly under ``parent_id`` (the root when None)."""
        filters = [
            eq("is_deleted", False),
            eq("parent_id", parent_id) if parent_id else is_null("parent_id"),
        ]
        if kind:
            filters.append(eq("kind", kind))
        return await self._fetch_all(*filters)

    async def list_by_mime_prefix(self, prefix: str) -> list[FileRecord]:
        """Non-trashed files whose mime type starts with ``prefix`` (e.g. "image/")."""
        return await self._fetch_all(
            eq("is_deleted", False), eq("kind", KIND_FILE), starts_with("mime_type", prefix),
        )

    async def list_favorites(self) -> list[FileRecord]:
        return await self._fetch_all(eq("is_favorite", True), eq("is_deleted", False))

    async def list_trash(self) -> list[FileRecord]:
        return await self._fetch_all(eq("is_deleted", True))

    async def list_recent(self, limit: int = 10) -> list[FileRecord]:
        """Most recently updated non-trashed items. Single page, newest first."""
        return await self.record_store.list(
            FILES, self._owned(eq("is_deleted", False)),
            offset=0, limit=limit, order_by="updated_at", descending=True,
        )

    async def search_files(self, query: str) -> list[FileRecord]:
        """Non-trashed items whose name contains ``query``, ignoring case."""
        query = query.strip()
        if not query:
            return []
        return await self._fetch_all(eq("is_deleted", False), search("name", query))

    async def get_item(self, record_id: str) -> FileRecord:
        """Fetch one record owned by the caller.

        Raises:
            NotFoundError: no record with this id.
            UnauthorizedError: the record belongs to someone else.
        """
        record = await self.record_store.get(FILES, record_id)
        if record is None:
            raise NotFoundError(FILES, record_id)
        if record.owner_id != self.owner_id:
            raise UnauthorizedError(record_id, self.owner_id)
        return record

    # ── Single-item mutations ──────────────────────────────────

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> FileRecord:
        name = _clean_name(name)
        if parent_id:
            parent = await self.get_item(parent_id)
            if not parent.is_folder:
                raise ValueError(f"Parent {parent_id} is not a folder")
        folder = await self.record_store.create(FILES, {
            "name": name,
            "kind": KIND_FOLDER,
            "size": 0,
            "parent_id": parent_id,
            "owner_id": self.owner_id,
        })
        logger.info("Folder created: %s (ID: %s, owner: %s)", name, folder.id, self.owner_id)
        return folder

    async def rename_item(self, record_id: str, new_name: str) -> FileRecord:
        new_name = _clean_name(new_name)
        record = await self.get_item(record_id)
        if record.name == new_name:
            return record
        updated = await self.record_store.update(FILES, record.id, {"name": new_name})
        logger.info("Renamed %s: %r -> %r", record_id, record.name, new_name)
        return updated

    async def toggle_favorite(self, record_id: str) -> FileRecord:
        record = await self.get_item(record_id)
        return await self._flip_favorite(record)

    async def move_to_trash(self, record_id: str) -> FileRecord:
        """Soft delete. Trashed files still count toward storage usage."""
        record = await self.get_item(record_id)
        return await self._set_deleted(record, True)

    async def restore_from_trash(self, record_id: str) -> FileRecord:
        record = await self.get_item(record_id)
        return await self._set_deleted(record, False)

    async def permanently_delete(self, record_id: str) -> None:
        """Remove the blob (best-effort) and then the record."""
        record = await self.get_item(record_id)
        await self._purge(record)

    async def _flip_favorite(self, record: FileRecord) -> FileRecord:
        return await self.record_store.update(FILES, record.id, {"is_favorite": not record.is_favorite})

    async def _set_deleted(self, record: FileRecord, deleted: bool) -> FileRecord:
        if record.is_deleted == deleted:
            return record
        updated = await self.record_store.update(FILES, record.id, {"is_deleted": deleted})
        logger.info(
            "%s %s: %s (ID: %s)",
            "Moved to trash" if deleted else "Restored from trash", record.kind, record.name, record.id,
        )
        return updated

    async def _delete_blob(self, record: FileRecord) -> bool:
        """Delete a file's blob. Returns False when deletion failed (and was tolerated)."""
        if not record.is_file or not record.blob_ref:
            return True
        try:
            await self.blob_store.delete(self.bucket, record.blob_ref)
            return True
        except Exception as e:
            failure = BlobDeleteFailure(record.id, record.blob_ref, e)
            logger.warning("%s; deleting record anyway", failure)
            if self.on_blob_failure:
                try:
                    self.on_blob_failure(failure)
                except Exception as hook_error:
                    logger.warning("Blob failure hook raised for %s: %s", record.id, hook_error)
            return False

    async def _purge(self, record: FileRecord) -> bool:
        blob_ok = await self._delete_blob(record)
        await self.record_store.delete(FILES, record.id)
        logger.info("Permanently deleted %s: %s (ID: %s)", record.kind, record.name, record.id)
        return blob_ok

    # ── Batch mutations ────────────────────────────────────────

    async def _run_batch(
        self,
        ids: Sequence[str],
        action: Callable[[FileRecord], Awaitable],
        label: str,
    ) -> tuple[BatchOutcome, list[tuple[FileRecord, object]]]:
        """Apply ``action`` to every owned record among ``ids``.

        Returns the base outcome plus (record, result) pairs for the records
        the action succeeded on, so callers can add operation-specific counts.
        """
        requested = unique_ids(ids)
        owned_count = 0
        done: list[tuple[FileRecord, object]] = []

        async for records in iter_records_by_ids(
            self.record_store, FILES, requested, chunk_size=self.chunk_size,
        ):
            owned = [r for r in records if r.owner_id == self.owner_id]
            if len(owned) < len(records):
                logger.debug("%s: dropped %d record(s) not owned by %s", label, len(records) - len(owned), self.owner_id)
            owned_count += len(owned)

            results = await asyncio.gather(*(action(r) for r in owned), return_exceptions=True)
            for record, result in zip(owned, results):
                if isinstance(result, Exception):
                    logger.warning("%s failed for %s: %s", label, record.id, result)
                else:
                    done.append((record, result))

        outcome = BatchOutcome(
            requested=len(requested),
            owned=owned_count,
            succeeded=len(done),
            processed_count=owned_count,
        )
        logger.info(
            "%s: %d requested, %d owned, %d succeeded (owner: %s)",
            label, outcome.requested, outcome.owned, outcome.succeeded, self.owner_id,
        )
        return outcome, done

    async def batch_toggle_favorite(self, ids: Sequence[str]) -> BatchOutcome:
        outcome, done = await self._run_batch(ids, self._flip_favorite, "batch_toggle_favorite")
        added = sum(1 for _, updated in done if updated.is_favorite)
        outcome.added_to_favorites = added
        outcome.removed_from_favorites = len(done) - added
        return outcome

    async def batch_move_to_trash(self, ids: Sequence[str]) -> BatchOutcome:
        outcome, _ = await self._run_batch(
            ids, lambda r: self._set_deleted(r, True), "batch_move_to_trash",
        )
        return outcome

    async def batch_restore_from_trash(self, ids: Sequence[str]) -> BatchOutcome:
        outcome, _ = await self._run_batch(
            ids, lambda r: self._set_deleted(r, False), "batch_restore_from_trash",
        )
        return outcome

    async def batch_permanently_delete(self, ids: Sequence[str]) -> BatchOutcome:
        outcome, done = await self._run_batch(ids, self._purge, "batch_permanently_delete")
        outcome.files_deleted = sum(1 for record, _ in done if record.is_file)
        outcome.folders_deleted = sum(1 for record, _ in done if record.is_folder)
        outcome.blob_failures = sum(1 for _, blob_ok in done if not blob_ok)
        return outcome

    async def empty_trash(self) -> BatchOutcome:
        """Permanently delete everything in the owner's trash.

        All blobs are deleted in parallel first (failures tolerated), then all
        records in parallel.
        """
        trashed = await self.list_trash()
        if not trashed:
            return BatchOutcome()

        files = [r for r in trashed if r.is_file]

        blob_results = await asyncio.gather(*(self._delete_blob(r) for r in files))
        record_results = await asyncio.gather(
            *(self.record_store.delete(FILES, r.id) for r in trashed), return_exceptions=True,
        )
        deleted = []
        for record, res in zip(trashed, record_results):
            if isinstance(res, Exception):
                logger.warning("empty_trash could not delete record %s: %s", record.id, res)
            else:
                deleted.append(record)

        outcome = BatchOutcome(
            requested=len(trashed),
            owned=len(trashed),
            succeeded=len(deleted),
            processed_count=len(trashed),
            files_deleted=sum(1 for r in deleted if r.is_file),
            folders_deleted=sum(1 for r in deleted if r.is_folder),
            blob_failures=blob_results.count(False),
        )
        logger.info(
            "Emptied trash for %s: %d files, %d folders, %d blob failures",
            self.owner_id, outcome.files_deleted, outcome.folders_deleted, outcome.blob_failures,
        )
        return outcome


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Name must not be empty")
    if "/" in cleaned:
        raise ValueError("Name must not contain '/'")
    return cleaned
