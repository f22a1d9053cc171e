"""Per-task upload progress tracking with speed/ETA and change notifications.

State machine (any other transition is ignored):

    queued --start--> uploading --complete--> completed
    uploading --pause--> paused --resume--> uploading
    uploading | paused --complete--> completed
    queued | uploading | paused --error--> error
    uploading | paused --requeue--> queued     (between retry attempts)

Every mutating call notifies subscribers synchronously with a snapshot of
all tasks. Mutation and snapshot happen under one lock, so listeners never
observe a half-applied update.
"""
import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Optional

from filehub.exceptions import TrackerDisposedError

logger = logging.getLogger(__name__)

QUEUED = "queued"
UPLOADING = "uploading"
PAUSED = "paused"
COMPLETED = "completed"
ERROR = "error"
TERMINAL_STATUSES = (COMPLETED, ERROR)


@dataclass
class UploadTask:
    task_id: str
    file_name: str
    file_size: int
    status: str = QUEUED
    uploaded_bytes: int = 0
    progress: float = 0.0
    speed: float = 0.0  # bytes/s, last sample
    eta: Optional[float] = None  # seconds; None while unknown
    start_time: Optional[float] = None
    last_update_time: Optional[float] = None
    end_time: Optional[float] = None
    error: Optional[str] = None
    attempts: int = 0


@dataclass
class UploadStats:
    total: int = 0
    queued: int = 0
    uploading: int = 0
    completed: int = 0
    error: int = 0
    paused: int = 0
    total_size: int = 0
    uploaded_size: int = 0


ProgressListener = Callable[[dict[str, UploadTask]], None]


class UploadProgressTracker:
    """Holds upload tasks for one client session.

    Call ``init()`` before use and ``dispose()`` when done, or use it as a
    context manager. ``clock`` returns seconds and is injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.RLock()
        self._tasks: dict[str, UploadTask] = {}
        self._listeners: list[ProgressListener] = []
        self._active = False

    # ── Lifecycle ──────────────────────────────────────────────

    def init(self) -> "UploadProgressTracker":
        with self._lock:
            self._active = True
        return self

    def dispose(self) -> None:
        with self._lock:
            self._active = False
            self._tasks.clear()
            # Listeners get the empty state once before they are dropped
            self._notify()
            self._listeners.clear()

    @property
    def is_active(self) -> bool:
        return self._active

    def __enter__(self) -> "UploadProgressTracker":
        return self.init()

    def __exit__(self, *exc) -> None:
        self.dispose()

    def _require_active(self) -> None:
        if not self._active:
            raise TrackerDisposedError("Upload tracker is not initialized or was disposed")

    # ── Subscriptions ──────────────────────────────────────────

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._require_active()
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _snapshot(self) -> dict[str, UploadTask]:
        return {task_id: replace(task) for task_id, task in self._tasks.items()}

    def _notify(self) -> None:
        # Caller holds the lock
        snapshot = self._snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Upload progress listener failed: {e}")

    # ── Mutations ──────────────────────────────────────────────

    def initialize_upload(self, file_name: str, file_size: int, task_id: Optional[str] = None) -> str:
        self._require_active()
        task_id = task_id or str(uuid.uuid4())
        with self._lock:
            self._tasks[task_id] = UploadTask(task_id=task_id, file_name=file_name, file_size=max(0, file_size))
            self._notify()
        return task_id

    def _transition(self, task_id: str, allowed: tuple[str, ...], apply: Callable[[UploadTask, float], None]) -> bool:
        self._require_active()
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status not in allowed:
                return False
            apply(task, self._clock())
            self._notify()
            return True

    def start_upload(self, task_id: str) -> bool:
        def apply(task: UploadTask, now: float) -> None:
            task.status = UPLOADING
            task.start_time = now
            task.last_update_time = now
            task.end_time = None
            task.error = None
            task.attempts += 1

        return self._transition(task_id, (QUEUED,), apply)

    def update_progress(self, task_id: str, uploaded_bytes: int, total_bytes: Optional[int] = None) -> bool:
        """Record bytes sent so far. Ignored unless the task is uploading."""

        def apply(task: UploadTask, now: float) -> None:
            if total_bytes:
                task.file_size = total_bytes
            total = task.file_size
            uploaded = max(uploaded_bytes, 0)
            if total:
                uploaded = min(uploaded, total)
            # Never move backwards within an attempt
            uploaded = max(uploaded, task.uploaded_bytes)

            elapsed = now - (task.last_update_time if task.last_update_time is not None else now)
            speed = (uploaded - task.uploaded_bytes) / elapsed if elapsed > 0 else 0.0

            task.uploaded_bytes = uploaded
            if total > 0:
                task.progress = max(task.progress, min(100.0, uploaded / total * 100))
            task.speed = speed
            task.eta = (total - uploaded) / speed if speed > 0 else None
            task.last_update_time = now

        return self._transition(task_id, (UPLOADING,), apply)

    def complete_upload(self, task_id: str) -> bool:
        def apply(task: UploadTask, now: float) -> None:
            task.status = COMPLETED
            task.progress = 100.0
            task.uploaded_bytes = task.file_size
            task.eta = 0
            task.end_time = now

        return self._transition(task_id, (UPLOADING, PAUSED), apply)

    def set_upload_error(self, task_id: str, message: str) -> bool:
        def apply(task: UploadTask, now: float) -> None:
            task.status = ERROR
            task.error = message
            task.end_time = now
            task.speed = 0.0
            task.eta = None

        return self._transition(task_id, (QUEUED, UPLOADING, PAUSED), apply)

    def pause_upload(self, task_id: str) -> bool:
        def apply(task: UploadTask, now: float) -> None:
            task.status = PAUSED
            task.speed = 0.0
            task.eta = None

        return self._transition(task_id, (UPLOADING,), apply)

    def resume_upload(self, task_id: str) -> bool:
        def apply(task: UploadTask, now: float) -> None:
            task.status = UPLOADING
            # Do not count the paused interval in the next speed sample
            task.last_update_time = now

        return self._transition(task_id, (PAUSED,), apply)

    def requeue_upload(self, task_id: str) -> bool:
        """Put a failed attempt back in the queue, discarding its byte counters."""

        def apply(task: UploadTask, now: float) -> None:
            task.status = QUEUED
            task.uploaded_bytes = 0
            task.progress = 0.0
            task.speed = 0.0
            task.eta = None

        return self._transition(task_id, (UPLOADING, PAUSED), apply)

    def remove_upload(self, task_id: str) -> bool:
        self._require_active()
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                return False
            self._notify()
            return True

    def clear_all(self) -> None:
        self._require_active()
        with self._lock:
            self._tasks.clear()
            self._notify()

    # ── Reads ──────────────────────────────────────────────────

    def get_progress_state(self) -> dict[str, UploadTask]:
        with self._lock:
            return self._snapshot()

    def get_upload_progress(self, task_id: str) -> Optional[UploadTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return replace(task) if task else None

    def get_stats(self) -> UploadStats:
        stats = UploadStats()
        with self._lock:
            for task in self._tasks.values():
                stats.total += 1
                setattr(stats, task.status, getattr(stats, task.status) + 1)
                stats.total_size += task.file_size
                stats.uploaded_size += task.uploaded_bytes
        return stats


def format_file_size(num_bytes: float) -> str:
    if not num_bytes or num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = max(0, min(int(math.floor(math.log(num_bytes, 1024))), len(units) - 1))
    value = f"{num_bytes / 1024 ** i:.2f}".rstrip("0").rstrip(".")
    return f"{value} {units[i]}"


def format_speed(bytes_per_second: float) -> str:
    return format_file_size(bytes_per_second) + "/s"


def format_time(seconds: Optional[float]) -> str:
    """Human readable ETA; unknown or zero reads as "Calculating..."."""
    if not seconds or not math.isfinite(seconds):
        return "Calculating..."
    hours = int(seconds // 3600)
    minutes = int(seconds % 3600 // 60)
    secs = int(seconds % 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
