import threading

import pytest

from einvoice_queue.cancellation import (
    CancellationCoordinator, CancellationPolicy, CancellationToken,
)
from einvoice_queue.errors import CancellationRejectedError, JobCancelledError
from einvoice_queue.models import (
    CancellationMethod, CancellationReason, Job, JobStatus, JobType,
)


def _job(status, job_type=JobType.CSV_IMPORT):
    return Job(id="j1", type=job_type, payload={}, status=status)


def test_token_first_reason_wins():
    token = CancellationToken()
    assert not token
    assert token.cancel(CancellationReason.SUPERSEDED) is True
    assert token.cancel(CancellationReason.TIMEOUT) is False
    assert token.is_cancelled
    assert token.reason == CancellationReason.SUPERSEDED


def test_token_raise_if_cancelled_carries_partial_result():
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    with pytest.raises(JobCancelledError) as exc:
        token.raise_if_cancelled(result={"rows": 3})
    assert exc.value.result == {"rows": 3}


def test_token_wakes_waiters():
    token = CancellationToken()
    threading.Timer(0.05, token.cancel).start()
    assert token.wait(timeout=2) is True


def test_pending_job_is_cancelled_immediately():
    plan = CancellationCoordinator().plan(_job(JobStatus.PENDING))
    assert plan.finalize_now
    assert plan.method == CancellationMethod.FORCED
    assert plan.reason == CancellationReason.USER_REQUESTED


def test_processing_job_gets_cooperative_plan_with_type_grace_period():
    coordinator = CancellationCoordinator(default_grace_period=5)
    plan = coordinator.plan(_job(JobStatus.PROCESSING))
    assert not plan.finalize_now
    assert plan.method == CancellationMethod.COOPERATIVE
    assert plan.grace_period == 30.0


def test_default_grace_period_when_policy_has_none():
    coordinator = CancellationCoordinator(
        default_grace_period=2.5, policies={JobType.CSV_IMPORT: CancellationPolicy()}
    )
    assert coordinator.plan(_job(JobStatus.PROCESSING)).grace_period == 2.5


def test_forced_method_on_processing_job():
    plan = CancellationCoordinator().plan(
        _job(JobStatus.PROCESSING), method=CancellationMethod.FORCED
    )
    assert plan.finalize_now


def test_started_submission_cannot_be_cancelled_by_user():
    coordinator = CancellationCoordinator()
    with pytest.raises(CancellationRejectedError):
        coordinator.plan(_job(JobStatus.PROCESSING, JobType.BULK_SUBMISSION))
    # still fine before it starts, and on shutdown
    assert coordinator.plan(_job(JobStatus.PENDING, JobType.BULK_SUBMISSION)).finalize_now
    shutdown = coordinator.plan(
        _job(JobStatus.PROCESSING, JobType.BULK_SUBMISSION), CancellationReason.SYSTEM_SHUTDOWN
    )
    assert shutdown.grace_period == 300.0


def test_cleanup_jobs_reject_user_cancellation():
    coordinator = CancellationCoordinator()
    with pytest.raises(CancellationRejectedError):
        coordinator.plan(_job(JobStatus.PENDING, JobType.DATA_CLEANUP))
    assert coordinator.plan(
        _job(JobStatus.PENDING, JobType.DATA_CLEANUP), CancellationReason.SUPERSEDED
    ).finalize_now


@pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
def test_terminal_jobs_cannot_be_cancelled(status):
    with pytest.raises(CancellationRejectedError):
        CancellationCoordinator().plan(_job(status))


def test_timeout_is_not_a_cancel_request():
    with pytest.raises(CancellationRejectedError):
        CancellationCoordinator().plan(_job(JobStatus.PROCESSING), CancellationReason.TIMEOUT)
