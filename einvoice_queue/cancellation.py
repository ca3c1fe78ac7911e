"""Cancellation tokens and the rules deciding how a cancel request is carried out."""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Mapping, Optional

from .errors import CancellationRejectedError, JobCancelledError
from .models import (
    Cancellation, CancellationMethod, CancellationReason, Job, JobStatus, JobType,
)
from .utils import utcnow


class CancellationToken:
    """Thread-safe flag handed to ``Processor.execute``.

    Processors poll ``is_cancelled`` (or call ``raise_if_cancelled``) at their
    own safe points, e.g. between CSV batches.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[CancellationReason] = None

    def cancel(self, reason: CancellationReason = CancellationReason.USER_REQUESTED) -> bool:
        """Set the flag. Returns False if it was already set; the first reason wins."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = CancellationReason(reason)
            self._event.set()
            return True

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[CancellationReason]:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self, result=None) -> None:
        if self._event.is_set():
            raise JobCancelledError(
                f"cancelled ({self._reason.value if self._reason else 'unknown'})",
                result=result,
            )

    def __bool__(self) -> bool:
        return self.is_cancelled


@dataclass(frozen=True)
class CancellationPolicy:
    allow_user_cancellation: bool = True
    can_cancel_after_start: bool = True
    grace_period: Optional[float] = None  # None: the queue-wide default


DEFAULT_CANCELLATION_POLICIES: Dict[JobType, CancellationPolicy] = {
    JobType.CSV_IMPORT: CancellationPolicy(grace_period=30.0),
    JobType.BULK_EXPORT: CancellationPolicy(grace_period=15.0),
    JobType.BULK_VALIDATION: CancellationPolicy(grace_period=10.0),
    # a half-sent batch to the tax portal is worse than a finished one
    JobType.BULK_SUBMISSION: CancellationPolicy(can_cancel_after_start=False, grace_period=300.0),
    JobType.DATA_CLEANUP: CancellationPolicy(allow_user_cancellation=False, grace_period=60.0),
}


@dataclass(frozen=True)
class CancellationPlan:
    cancellation: Cancellation
    # finalize to CANCELLED right now instead of waiting on the processor
    finalize_now: bool
    grace_period: float

    @property
    def method(self) -> CancellationMethod:
        return self.cancellation.method

    @property
    def reason(self) -> CancellationReason:
        return self.cancellation.reason


class CancellationCoordinator:
    def __init__(
        self,
        default_grace_period: float = 5.0,
        policies: Optional[Mapping[JobType, CancellationPolicy]] = None,
    ):
        self.default_grace_period = default_grace_period
        self.policies: Dict[JobType, CancellationPolicy] = dict(DEFAULT_CANCELLATION_POLICIES)
        if policies:
            self.policies.update(policies)

    def policy_for(self, job_type: JobType) -> CancellationPolicy:
        return self.policies.get(JobType(job_type), CancellationPolicy())

    def grace_period_for(self, job_type: JobType) -> float:
        policy = self.policy_for(job_type)
        if policy.grace_period is None:
            return self.default_grace_period
        return policy.grace_period

    def plan(
        self,
        job: Job,
        reason: CancellationReason = CancellationReason.USER_REQUESTED,
        method: CancellationMethod = CancellationMethod.COOPERATIVE,
        now: Optional[datetime] = None,
    ) -> CancellationPlan:
        """Decide how to cancel ``job``; raises CancellationRejectedError when refused."""
        reason = CancellationReason(reason)
        method = CancellationMethod(method)
        if job.is_terminal:
            raise CancellationRejectedError(f"Job {job.id} is already {job.status.value}")
        if reason == CancellationReason.TIMEOUT:
            # timeouts go through the retry policy, not through cancel()
            raise CancellationRejectedError("timeouts are handled by the health check")

        policy = self.policy_for(job.type)
        if reason == CancellationReason.USER_REQUESTED:
            if not policy.allow_user_cancellation:
                raise CancellationRejectedError(f"{job.type.value} jobs cannot be cancelled by users")
            if job.status == JobStatus.PROCESSING and not policy.can_cancel_after_start:
                raise CancellationRejectedError(
                    f"{job.type.value} jobs cannot be cancelled once started"
                )

        if job.status != JobStatus.PROCESSING:
            # nothing is running: no one to wait for
            method = CancellationMethod.FORCED
        return CancellationPlan(
            cancellation=Cancellation(reason=reason, method=method, requested_at=now or utcnow()),
            finalize_now=method == CancellationMethod.FORCED,
            grace_period=self.grace_period_for(job.type),
        )
