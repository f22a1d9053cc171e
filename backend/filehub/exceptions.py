"""Exceptions raised by the file services.

Routes translate these into HTTP status codes; services let them propagate
except where a failure is explicitly tolerated (blob cleanup, batch items).
"""


class NotFoundError(Exception):
    """Record does not exist in the given collection."""

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection}/{record_id} not found")


class UnauthorizedError(Exception):
    """Record exists but belongs to another owner."""

    def __init__(self, record_id: str, owner_id: str):
        self.record_id = record_id
        self.owner_id = owner_id
        super().__init__(f"Record {record_id} is not owned by {owner_id}")


class StoreUnavailableError(Exception):
    """Record or blob store call failed at the adapter level."""


class QueryLimitError(ValueError):
    """An id-list filter carries more values than the store accepts in one call."""

    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(f"'in' filter has {count} values, store accepts at most {limit}")


class BlobDeleteFailure(Exception):
    """Blob deletion failed while the record deletion went ahead.

    Never raised out of the lifecycle service; instances are logged and passed
    to the ``on_blob_failure`` hook so orphaned blobs can be swept later.
    """

    def __init__(self, record_id: str, blob_ref: str, cause: BaseException):
        self.record_id = record_id
        self.blob_ref = blob_ref
        self.cause = cause
        super().__init__(f"Failed to delete blob {blob_ref} of record {record_id}: {cause}")


class QuotaExceededError(Exception):
    """Storing the given number of bytes would take the owner over quota."""

    def __init__(self, quota_bytes: int, used_bytes: int, required_bytes: int):
        self.quota_bytes = quota_bytes
        self.used_bytes = used_bytes
        self.required_bytes = required_bytes
        super().__init__(
            f"Storage quota exceeded: {used_bytes} of {quota_bytes} bytes used, "
            f"{required_bytes} more requested"
        )


class UploadError(Exception):
    """Base for upload transport failures. Carries the HTTP status when there was one."""

    def __init__(self, message: str, status: int = 0):
        self.message = message
        self.status = status
        super().__init__(message)

    def __str__(self) -> str:
        if self.status:
            return f"HTTP {self.status}: {self.message}"
        return self.message


class UploadTransientFailure(UploadError):
    """Network error, timeout or 5xx. Retried by the orchestrator."""


class UploadTerminalFailure(UploadError):
    """Server rejected the upload. Not retried."""


class TrackerDisposedError(RuntimeError):
    """Upload tracker used before init() or after dispose()."""


class RetryLimitError(Exception):
    """Manual retry requested for a task whose retries are used up."""

    def __init__(self, task_id: str, attempts: int):
        self.task_id = task_id
        self.attempts = attempts
        super().__init__("Maximum retry attempts reached")
