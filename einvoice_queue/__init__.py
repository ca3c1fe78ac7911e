"""Asynchronous job processing for bulk e-Invoice work."""

from .cancellation import CancellationCoordinator, CancellationPolicy, CancellationToken
from .errors import (
    ErrorKind, FatalJobError, JobError, JobNotFoundError, JobValidationError,
    StaleClaimError, TransientJobError,
)
from .events import JobEvent, JobEventEmitter
from .models import (
    CancellationMethod, CancellationReason, Job, JobConfig, JobPriority, JobProgress,
    JobResult, JobStatus, JobType, RetryStrategy,
)
from .queue import JobQueue
from .registry import ProcessorRegistry
from .worker import WorkerPool

__version__ = "0.1.0"
