"""Retry policy: classify a failure and decide whether, and when, to run again."""

import logging
import random
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from .errors import ErrorKind, JobError, JobValidationError
from .models import Job, JobConfig, JobType, RetryStrategy
from .utils import is_business_hours, next_business_open, utcnow

logger = logging.getLogger(__name__)

MAX_RETRIES_LIMIT = 10
JITTER_RATIO = 0.3

# Submissions to the tax portal retry patiently; validation retries fast.
DEFAULT_JOB_CONFIGS: Dict[JobType, JobConfig] = {
    JobType.CSV_IMPORT: JobConfig(
        max_retries=5, retry_delay_base=30.0, retry_strategy=RetryStrategy.EXPONENTIAL,
        max_retry_delay=600.0, jitter=True, timeout=900.0,
    ),
    JobType.BULK_EXPORT: JobConfig(
        max_retries=4, retry_delay_base=45.0, retry_strategy=RetryStrategy.EXPONENTIAL,
        max_retry_delay=900.0, jitter=True, timeout=600.0,
    ),
    JobType.BULK_VALIDATION: JobConfig(
        max_retries=3, retry_delay_base=10.0, retry_strategy=RetryStrategy.EXPONENTIAL,
        max_retry_delay=120.0, jitter=False, timeout=300.0,
    ),
    JobType.BULK_SUBMISSION: JobConfig(
        max_retries=3, retry_delay_base=600.0, retry_strategy=RetryStrategy.BUSINESS_HOURS,
        max_retry_delay=7200.0, jitter=True, timeout=1800.0,
    ),
    JobType.DATA_CLEANUP: JobConfig(
        max_retries=2, retry_delay_base=1800.0, retry_strategy=RetryStrategy.FIXED,
        max_retry_delay=7200.0, jitter=False, timeout=600.0,
    ),
}

_TRANSIENT_HINTS = ("econnreset", "enotfound", "timeout", "timed out", "rate limit",
                    "temporarily", "unavailable", "busy")
_VALIDATION_HINTS = ("validation", "invalid")
_FATAL_HINTS = ("not found", "permission", "authentication", "forbidden")


def job_config_for(job_type: JobType, overrides: Optional[Mapping[str, Any]] = None) -> JobConfig:
    """Per-type default config with per-enqueue overrides applied and checked."""
    base = DEFAULT_JOB_CONFIGS.get(JobType(job_type), JobConfig())
    if not overrides:
        return base
    known = {f.name for f in fields(JobConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise JobValidationError(f"Unknown job config keys: {', '.join(sorted(unknown))}")
    values = dict(overrides)
    try:
        if "retry_strategy" in values:
            values["retry_strategy"] = RetryStrategy(values["retry_strategy"])
        for key in ("retry_delay_base", "max_retry_delay", "timeout"):
            if key in values:
                values[key] = float(values[key])
        if "max_retries" in values:
            values["max_retries"] = int(values["max_retries"])
        if "jitter" in values:
            values["jitter"] = bool(values["jitter"])
    except (TypeError, ValueError) as e:
        raise JobValidationError(f"Invalid job config: {e}")
    config = replace(base, **values)
    if not 0 <= config.max_retries <= MAX_RETRIES_LIMIT:
        raise JobValidationError(f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}")
    if config.retry_delay_base <= 0 or config.timeout <= 0 or config.max_retry_delay <= 0:
        raise JobValidationError("retry_delay_base, max_retry_delay and timeout must be positive")
    return config


def classify_error(error: BaseException) -> ErrorKind:
    if isinstance(error, JobError):
        return error.kind
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorKind.TRANSIENT
    message = str(error).lower()
    if any(h in message for h in _TRANSIENT_HINTS):
        return ErrorKind.TRANSIENT
    if any(h in message for h in _VALIDATION_HINTS):
        return ErrorKind.VALIDATION
    if any(h in message for h in _FATAL_HINTS):
        return ErrorKind.FATAL
    return ErrorKind.TRANSIENT


def compute_delay(config: JobConfig, attempt: int, now: Optional[datetime] = None,
                  rand: Callable[[], float] = random.random) -> float:
    """Seconds to wait before re-running after failed attempt number ``attempt``."""
    attempt = max(1, attempt)
    base = config.retry_delay_base
    strategy = config.retry_strategy
    if strategy == RetryStrategy.FIXED:
        delay = base
    elif strategy == RetryStrategy.LINEAR:
        delay = base * attempt
    else:
        delay = base * 2 ** (attempt - 1)

    if config.jitter:
        delay *= 1 + rand() * JITTER_RATIO
    delay = min(delay, config.max_retry_delay)

    if strategy == RetryStrategy.BUSINESS_HOURS:
        now = now or utcnow()
        if not is_business_hours(now):
            # wait for the portal's business window rather than hammer it overnight
            delay = (next_business_open(now) - now).total_seconds()
    return delay


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0
    kind: ErrorKind = ErrorKind.TRANSIENT
    reason: str = ""


class RetryPolicyEngine:
    def __init__(self, registry=None, rand: Callable[[], float] = random.random):
        self.registry = registry
        self.rand = rand

    def classify(self, job: Job, error: BaseException) -> ErrorKind:
        if self.registry is not None:
            kind = self.registry.classify_error(job.type, error)
            if kind is not None:
                return kind
        return classify_error(error)

    def decide(self, job: Job, error: BaseException, now: Optional[datetime] = None) -> RetryDecision:
        kind = self.classify(job, error)
        if kind in (ErrorKind.VALIDATION, ErrorKind.FATAL):
            return RetryDecision(False, kind=kind, reason=f"{kind.value} errors are not retried")
        if job.attempt > job.config.max_retries:
            return RetryDecision(
                False, kind=kind,
                reason=f"retries exhausted after {job.attempt} attempts",
            )
        delay = compute_delay(job.config, job.attempt, now, self.rand)
        logger.debug(
            "retry scheduled in %.3fs", delay,
            extra={"job_id": job.id, "event": "retry_decided"},
        )
        return RetryDecision(True, delay=delay, kind=kind, reason=f"{kind.value} error")
