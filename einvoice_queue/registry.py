import logging
from typing import Any, Dict, Iterator, Mapping, Optional

from .errors import ErrorKind, UnknownJobTypeError
from .models import JobType

logger = logging.getLogger(__name__)


class ProcessorRegistry:
    """Job type -> Processor lookup. The queue never branches on job type itself."""

    def __init__(self, processors: Optional[Mapping[Any, Any]] = None):
        self._processors: Dict[JobType, Any] = {}
        for job_type, processor in (processors or {}).items():
            self.register(job_type, processor)

    def register(self, job_type, processor, replace: bool = False) -> None:
        job_type = self.resolve_type(job_type)
        if job_type in self._processors and not replace:
            raise ValueError(f"A processor is already registered for {job_type.value}")
        self._processors[job_type] = processor
        logger.debug("registered %s for %s", type(processor).__name__, job_type.value)

    @staticmethod
    def resolve_type(job_type) -> JobType:
        try:
            return JobType(job_type)
        except ValueError:
            raise UnknownJobTypeError(job_type)

    def get(self, job_type):
        job_type = self.resolve_type(job_type)
        try:
            return self._processors[job_type]
        except KeyError:
            raise UnknownJobTypeError(job_type.value)

    def __contains__(self, job_type) -> bool:
        try:
            return self.resolve_type(job_type) in self._processors
        except UnknownJobTypeError:
            return False

    def __iter__(self) -> Iterator[JobType]:
        return iter(self._processors)

    def validate(self, job_type, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Normalized payload, or PayloadValidationError / UnknownJobTypeError."""
        return self.get(job_type).validate_payload(payload)

    def estimate_duration(self, job_type, payload: Mapping[str, Any]) -> float:
        return float(self.get(job_type).estimate_duration(payload))

    def classify_error(self, job_type, error: BaseException) -> Optional[ErrorKind]:
        if job_type not in self:
            return None
        return self.get(job_type).classify_error(error)
