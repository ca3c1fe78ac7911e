from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Type

from pydantic import BaseModel, ValidationError

from ..errors import ErrorKind, PayloadValidationError
from ..models import Job, JobResult, JobType

# report_progress(percent, message=None, processed_count=None, total_count=None)
ProgressCallback = Callable[..., None]


class Processor(ABC):
    """Handler for one job type.

    ``execute`` may be invoked several times for the same job (once per
    attempt), always from the start; it must be safe to repeat.
    """

    job_type: JobType
    payload_model: Type[BaseModel]

    def validate_payload(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            model = self.payload_model.model_validate(payload)
        except ValidationError as e:
            raise PayloadValidationError(
                self.job_type.value,
                [f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}" for err in e.errors()],
            )
        self.check_payload(model)
        return model.model_dump(mode="json")

    def check_payload(self, payload: BaseModel) -> None:
        """Extra checks beyond the schema; raise PayloadValidationError."""

    def parse(self, job: Job):
        return self.payload_model.model_validate(job.payload)

    def estimate_duration(self, payload: Mapping[str, Any]) -> float:
        return 30.0

    def classify_error(self, error: BaseException) -> Optional[ErrorKind]:
        return None

    @abstractmethod
    def execute(self, job: Job, report_progress: ProgressCallback, token) -> JobResult:
        ...


def run_batches(
    items: Sequence[Any],
    batch_size: int,
    handle_batch: Callable[[List[Any]], Mapping[str, int]],
    report_progress: ProgressCallback,
    token,
    label: str = "item",
) -> Dict[str, int]:
    """Feed ``items`` to ``handle_batch`` in slices, one progress report per slice.

    ``handle_batch`` returns counts keyed by ``successful``/``failed``/``skipped``.
    The token is checked before every slice; on cancellation the loop stops
    and the counts so far are returned with ``cancelled`` set to 1.
    """
    total = len(items)
    stats = {"processed": 0, "successful": 0, "failed": 0, "skipped": 0, "cancelled": 0}
    batches = max(1, -(-total // batch_size))
    for index in range(0, total, batch_size):
        if token.is_cancelled:
            stats["cancelled"] = 1
            return stats
        batch = list(items[index:index + batch_size])
        counts = handle_batch(batch)
        for key in ("successful", "failed", "skipped"):
            stats[key] += int(counts.get(key, 0))
        stats["processed"] += len(batch)
        report_progress(
            100.0 * stats["processed"] / total,
            f"Processed {label} batch {index // batch_size + 1}/{batches}",
            processed_count=stats["processed"],
            total_count=total,
        )
    return stats


def batch_result(stats: Dict[str, int], data: Optional[Dict[str, Any]] = None,
                 warnings: Optional[List[str]] = None) -> JobResult:
    cancelled = bool(stats.pop("cancelled", 0))
    return JobResult(
        success=not cancelled,
        data=data,
        error="cancelled before all batches ran" if cancelled else None,
        statistics=stats,
        warnings=warnings or [],
    )
