"""Exception taxonomy for the job queue.

Errors raised *by processors* derive from :class:`JobError` and carry an
:class:`ErrorKind` the retry policy uses to decide between rescheduling and
finalizing. Errors raised *by the queue* derive from :class:`QueueError`.
"""

from enum import Enum
from typing import Any, Iterable, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    TRANSIENT = "transient"
    FATAL = "fatal"
    SYSTEM = "system"


class QueueError(Exception):
    """Base class for errors raised by the queue itself."""


class JobNotFoundError(QueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class StaleClaimError(QueueError):
    """The caller no longer owns the job (forced cancel, timeout or re-claim)."""

    def __init__(self, job_id: str):
        super().__init__(f"Claim on job {job_id} is no longer held")
        self.job_id = job_id


class StoreUnavailableError(QueueError):
    kind = ErrorKind.SYSTEM


class CancellationRejectedError(QueueError):
    pass


class JobError(Exception):
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, *, result: Optional[Any] = None):
        super().__init__(message)
        # partial JobResult accumulated before the error, if any
        self.result = result


class JobValidationError(JobError):
    kind = ErrorKind.VALIDATION


class PayloadValidationError(JobValidationError):
    def __init__(self, job_type: str, errors: Iterable[str]):
        self.job_type = job_type
        self.errors = list(errors)
        super().__init__(
            f"{job_type} payload validation failed: {'; '.join(self.errors)}"
        )


class UnknownJobTypeError(JobValidationError):
    def __init__(self, job_type: Any):
        super().__init__(f"No processor registered for job type {job_type!r}")
        self.job_type = job_type


class TransientJobError(JobError):
    kind = ErrorKind.TRANSIENT


class FatalJobError(JobError):
    kind = ErrorKind.FATAL


class JobTimeoutError(TransientJobError):
    def __init__(self, job_id: str, timeout: float):
        super().__init__(f"Job {job_id} timed out after {timeout:g}s")
        self.job_id = job_id
        self.timeout = timeout


class WorkerLostError(TransientJobError):
    def __init__(self, job_id: str, worker_id: Optional[str]):
        super().__init__(f"Worker {worker_id or '?'} stopped while holding job {job_id}")
        self.job_id = job_id
        self.worker_id = worker_id


class JobCancelledError(JobError):
    """Raised at a processor checkpoint once cancellation has been requested."""

    kind = ErrorKind.FATAL
