import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from .errors import ErrorKind
from .utils import to_iso, from_iso


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


CLAIMABLE_STATES = (JobStatus.PENDING, JobStatus.RETRYING)
TERMINAL_STATES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobPriority(IntEnum):
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4

    @classmethod
    def parse(cls, value: Any) -> "JobPriority":
        if isinstance(value, cls):
            return value
        if isinstance(value, str) and not value.isdigit():
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown priority {value!r}")
        return cls(int(value))


class JobType(str, Enum):
    CSV_IMPORT = "csv_import"
    BULK_EXPORT = "bulk_export"
    BULK_SUBMISSION = "bulk_submission"
    BULK_VALIDATION = "bulk_validation"
    DATA_CLEANUP = "data_cleanup"


class RetryStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    BUSINESS_HOURS = "business_hours"


class CancellationReason(str, Enum):
    USER_REQUESTED = "user_requested"
    SUPERSEDED = "superseded"
    SYSTEM_SHUTDOWN = "system_shutdown"
    TIMEOUT = "timeout"


class CancellationMethod(str, Enum):
    COOPERATIVE = "cooperative"
    FORCED = "forced"


@dataclass(frozen=True)
class JobConfig:
    max_retries: int = 3
    retry_delay_base: float = 30.0
    retry_strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    max_retry_delay: float = 600.0
    jitter: bool = False
    timeout: float = 300.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["retry_strategy"] = self.retry_strategy.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobConfig":
        data = dict(data)
        if "retry_strategy" in data:
            data["retry_strategy"] = RetryStrategy(data["retry_strategy"])
        return cls(**data)


@dataclass
class JobProgress:
    percent: float = 0.0
    message: Optional[str] = None
    processed_count: Optional[int] = None
    total_count: Optional[int] = None

    def advance(self, percent: float, message: Optional[str] = None,
                processed_count: Optional[int] = None,
                total_count: Optional[int] = None) -> "JobProgress":
        """Next progress value; percent never moves backwards within an attempt."""
        clamped = min(100.0, max(0.0, float(percent)))
        return JobProgress(
            percent=max(self.percent, clamped),
            message=message if message is not None else self.message,
            processed_count=processed_count if processed_count is not None else self.processed_count,
            total_count=total_count if total_count is not None else self.total_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobProgress":
        return cls(**data) if data else cls()


@dataclass
class JobResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    statistics: Optional[Dict[str, int]] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["JobResult"]:
        if data is None:
            return None
        return cls(**data)

    def summary(self) -> Dict[str, Any]:
        return {"success": self.success, "error": self.error, "statistics": self.statistics}


@dataclass(frozen=True)
class RetryEntry:
    attempt: int
    error: str
    kind: ErrorKind
    failed_at: datetime
    scheduled_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "error": self.error,
            "kind": self.kind.value,
            "failed_at": to_iso(self.failed_at),
            "scheduled_at": to_iso(self.scheduled_at),
        }


@dataclass(frozen=True)
class Cancellation:
    reason: CancellationReason
    method: CancellationMethod
    requested_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason.value,
            "method": self.method.value,
            "requested_at": to_iso(self.requested_at),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Cancellation"]:
        if not data:
            return None
        return cls(
            reason=CancellationReason(data["reason"]),
            method=CancellationMethod(data["method"]),
            requested_at=from_iso(data["requested_at"]),
        )


@dataclass
class Job:
    id: str
    type: JobType
    payload: Dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    attempt: int = 0
    config: JobConfig = field(default_factory=JobConfig)
    progress: JobProgress = field(default_factory=JobProgress)
    result: Optional[JobResult] = None
    retry_history: List[RetryEntry] = field(default_factory=list)
    cancellation: Optional[Cancellation] = None
    owner_id: Optional[str] = None
    claim_token: Optional[str] = None
    picked_by: Optional[str] = None
    not_before: Optional[datetime] = None
    cancel_deadline: Optional[datetime] = None
    retry_of: Optional[str] = None
    seq: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @classmethod
    def from_row(cls, row, history: Optional[List[RetryEntry]] = None) -> "Job":
        return cls(
            id=row["id"],
            type=JobType(row["type"]),
            payload=json.loads(row["payload"]),
            priority=JobPriority(row["priority"]),
            status=JobStatus(row["status"]),
            attempt=row["attempt"],
            config=JobConfig.from_dict(json.loads(row["config"])),
            progress=JobProgress.from_dict(json.loads(row["progress"])),
            result=JobResult.from_dict(json.loads(row["result"]) if row["result"] else None),
            retry_history=history or [],
            cancellation=Cancellation.from_dict(
                json.loads(row["cancellation"]) if row["cancellation"] else None
            ),
            owner_id=row["owner_id"],
            claim_token=row["claim_token"],
            picked_by=row["picked_by"],
            not_before=from_iso(row["not_before"]),
            cancel_deadline=from_iso(row["cancel_deadline"]),
            retry_of=row["retry_of"],
            seq=row["seq"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
            started_at=from_iso(row["started_at"]),
            completed_at=from_iso(row["completed_at"]),
        )

    def status_view(self) -> Dict[str, Any]:
        """What a polling client needs for a progress bar."""
        view = {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "attempt": self.attempt,
            "progress": self.progress.to_dict(),
        }
        if self.result is not None:
            view["result"] = self.result.to_dict()
        if self.cancellation is not None:
            view["cancellation"] = self.cancellation.to_dict()
        return view

    def to_dict(self) -> Dict[str, Any]:
        d = self.status_view()
        d.update({
            "payload": self.payload,
            "priority": self.priority.name,
            "owner_id": self.owner_id,
            "config": self.config.to_dict(),
            "retry_history": [e.to_dict() for e in self.retry_history],
            "picked_by": self.picked_by,
            "not_before": to_iso(self.not_before),
            "retry_of": self.retry_of,
            "created_at": to_iso(self.created_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        })
        return d
