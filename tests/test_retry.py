from datetime import datetime, timezone

import pytest

from einvoice_queue.errors import (
    ErrorKind, FatalJobError, JobValidationError, TransientJobError,
)
from einvoice_queue.models import Job, JobConfig, JobType, RetryStrategy
from einvoice_queue.registry import ProcessorRegistry
from einvoice_queue.retry import (
    DEFAULT_JOB_CONFIGS, RetryPolicyEngine, classify_error, compute_delay, job_config_for,
)

from conftest import FakeProcessor, MONDAY_10AM_MYT


def _job(attempt, **config):
    return Job(id="j1", type=JobType.CSV_IMPORT, payload={}, attempt=attempt, config=JobConfig(**config))


def test_fixed_linear_exponential_delays():
    fixed = JobConfig(retry_delay_base=5, retry_strategy=RetryStrategy.FIXED, max_retry_delay=100)
    linear = JobConfig(retry_delay_base=5, retry_strategy=RetryStrategy.LINEAR, max_retry_delay=100)
    expo = JobConfig(retry_delay_base=5, retry_strategy=RetryStrategy.EXPONENTIAL, max_retry_delay=100)
    assert [compute_delay(fixed, a) for a in (1, 2, 3)] == [5, 5, 5]
    assert [compute_delay(linear, a) for a in (1, 2, 3)] == [5, 10, 15]
    assert [compute_delay(expo, a) for a in (1, 2, 3, 4)] == [5, 10, 20, 40]


def test_delay_is_capped():
    cfg = JobConfig(retry_delay_base=10, retry_strategy=RetryStrategy.EXPONENTIAL, max_retry_delay=30)
    assert compute_delay(cfg, 5) == 30


def test_jitter_adds_at_most_thirty_percent():
    cfg = JobConfig(retry_delay_base=10, retry_strategy=RetryStrategy.FIXED, jitter=True, max_retry_delay=100)
    assert compute_delay(cfg, 1, rand=lambda: 0.0) == 10
    assert compute_delay(cfg, 1, rand=lambda: 1.0) == pytest.approx(13.0)


def test_business_hours_inside_window_behaves_like_exponential():
    cfg = JobConfig(retry_delay_base=60, retry_strategy=RetryStrategy.BUSINESS_HOURS, max_retry_delay=3600)
    assert compute_delay(cfg, 2, now=MONDAY_10AM_MYT) == 120


def test_business_hours_outside_window_waits_for_next_opening():
    cfg = JobConfig(retry_delay_base=60, retry_strategy=RetryStrategy.BUSINESS_HOURS, max_retry_delay=3600)
    # Saturday 7 March 2026, 20:00 MYT -> Monday 09:00 MYT
    saturday_evening = datetime(2026, 3, 7, 12, 0, tzinfo=timezone.utc)
    assert compute_delay(cfg, 1, now=saturday_evening) == (24 + 13) * 3600
    # Monday 07:00 MYT -> same day 09:00
    early_monday = datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc)
    assert compute_delay(cfg, 1, now=early_monday) == 2 * 3600


@pytest.mark.parametrize("error,kind", [
    (JobValidationError("bad row"), ErrorKind.VALIDATION),
    (FatalJobError("gone"), ErrorKind.FATAL),
    (TransientJobError("later"), ErrorKind.TRANSIENT),
    (ConnectionResetError("peer reset"), ErrorKind.TRANSIENT),
    (RuntimeError("ECONNRESET while uploading"), ErrorKind.TRANSIENT),
    (RuntimeError("Rate limit exceeded"), ErrorKind.TRANSIENT),
    (ValueError("invalid TIN"), ErrorKind.VALIDATION),
    (KeyError("invoice not found"), ErrorKind.FATAL),
    (RuntimeError("something odd"), ErrorKind.TRANSIENT),
])
def test_classify_error(error, kind):
    assert classify_error(error) == kind


def test_job_config_for_applies_overrides_to_type_defaults():
    cfg = job_config_for(JobType.BULK_SUBMISSION, {"max_retries": 1, "retry_strategy": "linear"})
    default = DEFAULT_JOB_CONFIGS[JobType.BULK_SUBMISSION]
    assert cfg.max_retries == 1
    assert cfg.retry_strategy == RetryStrategy.LINEAR
    assert cfg.timeout == default.timeout


def test_submission_retries_more_patiently_than_validation():
    submission = DEFAULT_JOB_CONFIGS[JobType.BULK_SUBMISSION]
    validation = DEFAULT_JOB_CONFIGS[JobType.BULK_VALIDATION]
    assert submission.retry_delay_base > validation.retry_delay_base


@pytest.mark.parametrize("overrides", [
    {"nope": 1},
    {"max_retries": 11},
    {"max_retries": -1},
    {"timeout": 0},
    {"retry_strategy": "sometimes"},
])
def test_job_config_for_rejects_bad_overrides(overrides):
    with pytest.raises(JobValidationError):
        job_config_for(JobType.CSV_IMPORT, overrides)


def test_decide_retries_transient_until_exhausted():
    engine = RetryPolicyEngine()
    cfg = dict(max_retries=2, retry_delay_base=1, retry_strategy=RetryStrategy.EXPONENTIAL)
    first = engine.decide(_job(1, **cfg), TransientJobError("x"))
    second = engine.decide(_job(2, **cfg), TransientJobError("x"))
    third = engine.decide(_job(3, **cfg), TransientJobError("x"))
    assert (first.retry, first.delay) == (True, 1)
    assert (second.retry, second.delay) == (True, 2)
    assert third.retry is False
    assert "exhausted" in third.reason


def test_decide_never_retries_validation_or_fatal():
    engine = RetryPolicyEngine()
    assert engine.decide(_job(1), JobValidationError("x")).retry is False
    fatal = engine.decide(_job(1), FatalJobError("x"))
    assert fatal.retry is False
    assert fatal.kind == ErrorKind.FATAL


def test_processor_classification_takes_precedence():
    class Picky(FakeProcessor):
        def classify_error(self, error):
            return ErrorKind.FATAL if isinstance(error, TimeoutError) else None

    registry = ProcessorRegistry({JobType.CSV_IMPORT: Picky()})
    engine = RetryPolicyEngine(registry)
    assert engine.decide(_job(1), TimeoutError("slow")).retry is False
    assert engine.decide(_job(1), ConnectionError("down")).retry is True
