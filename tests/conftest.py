import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import BaseModel, Field

from einvoice_queue.cancellation import CancellationPolicy
from einvoice_queue.config import QueueSettings
from einvoice_queue.models import JobResult, JobType
from einvoice_queue.processors.base import Processor
from einvoice_queue.queue import JobQueue
from einvoice_queue.registry import ProcessorRegistry

# Monday 2 March 2026, 10:00 in Kuala Lumpur
MONDAY_10AM_MYT = datetime(2026, 3, 2, 2, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, start=MONDAY_10AM_MYT):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakePayload(BaseModel):
    organization_id: str = "org-1"
    rows: int = Field(default=1, ge=0)


class FakeProcessor(Processor):
    """Records every attempt; ``behavior(job, report_progress, token)`` decides the outcome."""

    payload_model = FakePayload

    def __init__(self, job_type=JobType.CSV_IMPORT, behavior=None):
        self.job_type = job_type
        self.behavior = behavior
        self.calls = []
        self._lock = threading.Lock()

    def execute(self, job, report_progress, token):
        with self._lock:
            self.calls.append(job.attempt)
        if self.behavior is not None:
            return self.behavior(job, report_progress, token)
        return JobResult(success=True, data={"attempt": job.attempt})


def wait_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


FAST_SETTINGS = dict(
    poll_interval=0.05,
    health_check_interval=0.05,
    grace_period=0.3,
    max_processing_time=600.0,
)

# short grace periods so forced cancellation happens quickly in tests
FAST_POLICIES = {t: CancellationPolicy(grace_period=0.3) for t in (
    JobType.CSV_IMPORT, JobType.BULK_EXPORT, JobType.BULK_VALIDATION,
)}


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def make_queue(db_path):
    queues = []

    def _make(*processors, **kwargs):
        registry = ProcessorRegistry({p.job_type: p for p in processors})
        kwargs.setdefault("settings", QueueSettings(**FAST_SETTINGS))
        kwargs.setdefault("cancellation_policies", FAST_POLICIES)
        q = JobQueue(db_path, registry, **kwargs)
        queues.append(q)
        return q

    yield _make
    for q in queues:
        q.close()


@pytest.fixture
def queue(make_queue, processor, clock):
    return make_queue(processor, clock=clock)
