"""Concurrent upload client: bounded parallelism, retry with backoff, per-attempt timeout.

Each file becomes a task in an ``UploadProgressTracker``. At most
``max_concurrent`` tasks hold an upload slot at a time. Transient failures
(network errors, timeouts, 5xx) are retried with exponential backoff; the
slot is released during the backoff sleep so queued files can go ahead.

Pausing does not interrupt a request already on the wire. A paused task
keeps its slot and is not retried until it is resumed. Cancelling removes
the task from tracking and prevents further attempts, but an in-flight
request is left to finish on its own.

Usage:
    with UploadProgressTracker() as tracker:
        async with HttpUploadTransport() as transport:
            orchestrator = UploadOrchestrator(tracker, transport)
            results = await orchestrator.upload_many(sources, owner_id="u1")
"""
import asyncio
import json
import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Sequence

import aiofiles
import aiohttp

from filehub.config import settings
from filehub.exceptions import (
    RetryLimitError,
    TrackerDisposedError,
    UploadError,
    UploadTerminalFailure,
    UploadTransientFailure,
)
from filehub.services.upload_tracker import PAUSED, UploadProgressTracker, UploadStats, UploadTask

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {408, 429}
CANCELLED_MESSAGE = "Upload cancelled"

ProgressCallback = Callable[[int, int], None]


@dataclass
class UploadSource:
    file_name: str
    content: bytes
    mime_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)

    @classmethod
    async def from_path(cls, path: str | Path, mime_type: Optional[str] = None) -> "UploadSource":
        path = Path(path)
        async with aiofiles.open(path, "rb") as f:
            content = await f.read()
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(path.name, content, mime_type or guessed or "application/octet-stream")


@dataclass
class UploadResult:
    task_id: str
    file_name: str
    success: bool
    file_id: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


def results_by_task(results: Sequence[UploadResult]) -> dict[str, UploadResult]:
    return {r.task_id: r for r in results}


class UploadTransport(ABC):
    """Sends one file to the upload endpoint."""

    @abstractmethod
    async def send(
        self,
        source: UploadSource,
        owner_id: str,
        parent_id: Optional[str],
        on_progress: ProgressCallback,
    ) -> dict:
        """Upload ``source`` and return the endpoint's JSON body.

        Raises:
            UploadTransientFailure: worth retrying.
            UploadTerminalFailure: the server rejected the file.
        """


class HttpUploadTransport(UploadTransport):
    """Multipart POST to the upload endpoint using aiohttp.

    Supports async context manager for connection pooling across uploads.
    Falls back to a per-call session if used without ``async with``.
    """

    def __init__(
        self,
        endpoint_url: Optional[str] = None,
        chunk_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.endpoint_url = endpoint_url or settings.UPLOAD_ENDPOINT_URL
        self.chunk_size = chunk_size or settings.UPLOAD_CHUNK_SIZE
        self._timeout = aiohttp.ClientTimeout(total=timeout or settings.UPLOAD_TIMEOUT)
        self._session: Optional[aiohttp.ClientSession] = None

    async def open(self) -> None:
        """Open a persistent session for connection pooling."""
        if not self._session:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "HttpUploadTransport":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _stream(self, content: bytes, on_progress: ProgressCallback) -> AsyncIterator[bytes]:
        total = len(content)
        sent = 0
        on_progress(0, total)
        for start in range(0, total, self.chunk_size):
            chunk = content[start:start + self.chunk_size]
            yield chunk
            sent += len(chunk)
            on_progress(sent, total)

    def _build_form(self, source: UploadSource, owner_id: str, parent_id: Optional[str], on_progress) -> aiohttp.FormData:
        form = aiohttp.FormData()
        form.add_field(
            "file", self._stream(source.content, on_progress),
            filename=source.file_name, content_type=source.mime_type,
        )
        form.add_field("ownerId", owner_id)
        if parent_id:
            form.add_field("parentId", parent_id)
        return form

    async def send(self, source, owner_id, parent_id, on_progress) -> dict:
        form = self._build_form(source, owner_id, parent_id, on_progress)
        try:
            if self._session:
                return await self._post(self._session, form)
            async with aiohttp.ClientSession() as session:
                return await self._post(session, form)
        except UploadError:
            raise
        except asyncio.TimeoutError as e:
            raise UploadTransientFailure("Request timed out, upload endpoint did not respond in time") from e
        except aiohttp.ClientError as e:
            raise UploadTransientFailure(str(e) or type(e).__name__) from e

    async def _post(self, session: aiohttp.ClientSession, form: aiohttp.FormData) -> dict:
        async with session.post(self.endpoint_url, data=form, timeout=self._timeout) as resp:
            text = await resp.text()
            body = _parse_json(text)
            message = (body or {}).get("error") or text[:500] or resp.reason or "No response body"

            if resp.status >= 500 or resp.status in RETRYABLE_STATUSES:
                raise UploadTransientFailure(message, status=resp.status)
            if resp.status >= 400:
                raise UploadTerminalFailure(message, status=resp.status)
            if body is None or not body.get("success"):
                raise UploadTerminalFailure(message if body else "Malformed upload response", status=resp.status)
            return body


def _parse_json(text: str) -> Optional[dict]:
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


class UploadOrchestrator:
    """Drives a set of uploads through a transport, recording progress in a tracker."""

    def __init__(
        self,
        tracker: UploadProgressTracker,
        transport: UploadTransport,
        *,
        max_concurrent: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        request_timeout: Optional[float] = None,
        backoff_factor: float = 1.0,
    ):
        self.tracker = tracker
        self.transport = transport
        self.max_concurrent = max_concurrent or settings.UPLOAD_MAX_CONCURRENT
        self.retry_attempts = settings.UPLOAD_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        self.request_timeout = request_timeout or settings.UPLOAD_TIMEOUT
        self.backoff_factor = backoff_factor
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {self.max_concurrent}")

        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._cancelled: set[str] = set()
        self._resume_events: dict[str, asyncio.Event] = {}
        self._retry_counts: dict[str, int] = {}
        self._in_flight = 0
        self._unsubscribe = tracker.subscribe(self._on_tracker_change)

    def close(self) -> None:
        """Stop listening to the tracker."""
        self._unsubscribe()

    @property
    def active_uploads(self) -> int:
        return self._in_flight

    def retry_delay(self, retry: int) -> float:
        """Seconds to wait before retry number ``retry`` (1-based): 2, 4, 8, ..."""
        return self.backoff_factor * (2 ** retry)

    # ── Public API ─────────────────────────────────────────────

    async def upload_many(
        self,
        files: Sequence[UploadSource],
        owner_id: str,
        parent_id: Optional[str] = None,
    ) -> list[UploadResult]:
        """Upload all files. Results come back in completion order."""
        if not files:
            return []
        task_ids = [self.tracker.initialize_upload(f.file_name, f.size) for f in files]
        logger.info(f"Queued {len(files)} upload(s) for owner {owner_id} (max {self.max_concurrent} concurrent)")

        tasks = [
            asyncio.create_task(self._run_task(task_id, source, owner_id, parent_id))
            for task_id, source in zip(task_ids, files)
        ]
        results = []
        try:
            for next_done in asyncio.as_completed(tasks):
                results.append(await next_done)
        except BaseException:
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        ok = sum(1 for r in results if r.success)
        logger.info(f"Uploads finished for owner {owner_id}: {ok} ok, {len(results) - ok} failed")
        return results

    async def upload_one(
        self,
        source: UploadSource,
        owner_id: str,
        parent_id: Optional[str] = None,
    ) -> UploadResult:
        task_id = self.tracker.initialize_upload(source.file_name, source.size)
        return await self._run_task(task_id, source, owner_id, parent_id)

    async def retry_upload(
        self,
        task_id: str,
        source: UploadSource,
        owner_id: str,
        parent_id: Optional[str] = None,
    ) -> UploadResult:
        """Upload a failed file again under a new task id.

        Manual retries are counted per file: the count follows the file to
        its new task id, and once ``retry_attempts`` retries have been used
        RetryLimitError is raised instead.
        """
        used = self._retry_counts.get(task_id, 0)
        if used >= self.retry_attempts:
            raise RetryLimitError(task_id, used)

        self._retry_counts.pop(task_id, None)
        self.tracker.remove_upload(task_id)
        new_id = self.tracker.initialize_upload(source.file_name, source.size)
        self._retry_counts[new_id] = used + 1
        logger.info(f"Retrying {source.file_name} as {new_id} (manual retry {used + 1}/{self.retry_attempts})")
        return await self._run_task(new_id, source, owner_id, parent_id)

    def cancel_upload(self, task_id: str) -> bool:
        """Stop tracking a task and prevent further attempts. In-flight I/O is not aborted."""
        self._cancelled.add(task_id)
        removed = self.tracker.remove_upload(task_id)
        if removed:
            logger.info(f"Upload {task_id} cancelled")
        return removed

    def pause_upload(self, task_id: str) -> bool:
        return self.tracker.pause_upload(task_id)

    def resume_upload(self, task_id: str) -> bool:
        return self.tracker.resume_upload(task_id)

    def get_upload_stats(self) -> UploadStats:
        return self.tracker.get_stats()

    def get_upload_state(self) -> dict[str, UploadTask]:
        return self.tracker.get_progress_state()

    def clear_uploads(self) -> None:
        """Drop every tracked task. Tasks not yet sent are never sent."""
        self._cancelled.update(self.tracker.get_progress_state())
        self._retry_counts.clear()
        self.tracker.clear_all()

    # ── Internals ──────────────────────────────────────────────

    def _on_tracker_change(self, snapshot: dict[str, UploadTask]) -> None:
        # Runs synchronously inside tracker calls made from the event loop
        for task_id, event in list(self._resume_events.items()):
            task = snapshot.get(task_id)
            if task is None or task.status != PAUSED:
                event.set()

    async def _wait_while_paused(self, task_id: str) -> None:
        event = asyncio.Event()
        self._resume_events[task_id] = event
        try:
            task = self.tracker.get_upload_progress(task_id)
            if task is not None and task.status == PAUSED:
                logger.debug(f"Upload {task_id} paused, waiting for resume")
                await event.wait()
        finally:
            self._resume_events.pop(task_id, None)

    def _cancelled_result(self, task_id: str, source: UploadSource, attempts: int, body: Optional[dict] = None) -> UploadResult:
        body = body or {}
        return UploadResult(
            task_id=task_id, file_name=source.file_name, success=False,
            file_id=body.get("fileId"), url=body.get("url"),
            error=CANCELLED_MESSAGE, attempts=attempts,
        )

    async def _attempt(self, task_id: str, source: UploadSource, owner_id: str, parent_id: Optional[str]) -> dict:
        def on_progress(sent: int, total: int) -> None:
            self.tracker.update_progress(task_id, sent, total)

        try:
            return await asyncio.wait_for(
                self.transport.send(source, owner_id, parent_id, on_progress),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            raise UploadTransientFailure(f"Upload timed out after {self.request_timeout}s")

    async def _run_task(
        self,
        task_id: str,
        source: UploadSource,
        owner_id: str,
        parent_id: Optional[str],
    ) -> UploadResult:
        attempts = 0
        try:
            while True:
                async with self._semaphore:
                    if task_id in self._cancelled:
                        return self._cancelled_result(task_id, source, attempts)

                    self.tracker.start_upload(task_id)
                    attempts += 1
                    self._in_flight += 1
                    error: Optional[UploadError] = None
                    body: dict = {}
                    try:
                        body = await self._attempt(task_id, source, owner_id, parent_id)
                    except UploadError as e:
                        error = e
                    except TrackerDisposedError:
                        raise
                    except Exception as e:
                        logger.exception(f"Unexpected error uploading {source.file_name}")
                        error = UploadTerminalFailure(str(e) or type(e).__name__)
                    finally:
                        self._in_flight -= 1

                    if task_id in self._cancelled:
                        return self._cancelled_result(task_id, source, attempts, body)

                    if error is None:
                        self.tracker.complete_upload(task_id)
                        logger.info(f"Uploaded {source.file_name} ({source.size} bytes) as {body.get('fileId')}")
                        return UploadResult(
                            task_id=task_id, file_name=source.file_name, success=True,
                            file_id=body.get("fileId"), url=body.get("url"), attempts=attempts,
                        )

                    retries_used = attempts - 1
                    if not isinstance(error, UploadTransientFailure) or retries_used >= self.retry_attempts:
                        self.tracker.set_upload_error(task_id, str(error))
                        logger.warning(f"Upload of {source.file_name} failed after {attempts} attempt(s): {error}")
                        return UploadResult(
                            task_id=task_id, file_name=source.file_name, success=False,
                            error=str(error), attempts=attempts,
                        )

                    # Paused tasks hold their slot and are not retried until resumed
                    await self._wait_while_paused(task_id)
                    if task_id in self._cancelled:
                        return self._cancelled_result(task_id, source, attempts)
                    self.tracker.requeue_upload(task_id)

                delay = self.retry_delay(retries_used + 1)
                logger.warning(
                    "Upload of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    source.file_name, attempts, self.retry_attempts + 1, delay, error,
                )
                await asyncio.sleep(delay)
        except TrackerDisposedError:
            # Tracker went away mid-upload; nothing left to report progress to
            logger.warning(f"Upload tracker disposed, abandoning {source.file_name}")
            return self._cancelled_result(task_id, source, attempts)
