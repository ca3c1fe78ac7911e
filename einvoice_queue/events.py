"""In-process job lifecycle events.

The notification service (emails, UI push) subscribes here; events are
emitted after the state change that caused them has been committed.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .models import Job
from .utils import utcnow

logger = logging.getLogger(__name__)

JOB_CREATED = "job.created"
JOB_STARTED = "job.started"
JOB_PROGRESS = "job.progress"
JOB_RETRY = "job.retry"
JOB_COMPLETED = "job.completed"
JOB_FAILED = "job.failed"
JOB_CANCELLED = "job.cancelled"

TERMINAL_EVENTS = (JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED)
ALL_EVENTS = "*"


@dataclass(frozen=True)
class JobEvent:
    name: str
    job_id: str
    job_type: str
    status: str
    owner_id: Optional[str] = None
    attempt: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_job(cls, name: str, job: Job, **data) -> "JobEvent":
        if name in TERMINAL_EVENTS and job.result is not None:
            data.setdefault("result", job.result.summary())
        return cls(
            name=name,
            job_id=job.id,
            job_type=job.type.value,
            status=job.status.value,
            owner_id=job.owner_id,
            attempt=job.attempt,
            data=data,
        )


Listener = Callable[[JobEvent], None]


class JobEventEmitter:
    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, name: str, listener: Listener) -> Listener:
        with self._lock:
            self._listeners[name].append(listener)
        return listener

    def off(self, name: str, listener: Listener) -> bool:
        with self._lock:
            try:
                self._listeners[name].remove(listener)
                return True
            except ValueError:
                return False

    def emit(self, event: JobEvent) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event.name, ())) + list(self._listeners.get(ALL_EVENTS, ()))
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # a broken subscriber must not affect the job
                logger.exception(
                    "listener %r failed for %s", listener, event.name,
                    extra={"job_id": event.job_id, "event": event.name},
                )
