import logging
from datetime import timedelta
from typing import Any, Mapping, Optional

from ..db import connect_db, transaction
from ..models import Job, JobResult, JobType
from ..payloads import DataCleanupPayload
from ..repository import purge_finished
from ..utils import utcnow
from .base import Processor

logger = logging.getLogger(__name__)


class DataCleanupProcessor(Processor):
    """Maintenance job: drop finished job records past their retention."""

    job_type = JobType.DATA_CLEANUP
    payload_model = DataCleanupPayload

    def __init__(self, db_path: Optional[str] = None, clock=utcnow):
        self.db_path = db_path
        self.clock = clock

    def estimate_duration(self, payload: Mapping[str, Any]) -> float:
        return 60.0

    def execute(self, job: Job, report_progress, token) -> JobResult:
        payload = self.parse(job)
        cutoff = self.clock() - timedelta(days=payload.older_than_days)
        report_progress(0, f"Purging jobs finished before {cutoff.date().isoformat()}")
        token.raise_if_cancelled()
        conn = connect_db(self.db_path)
        try:
            with transaction(conn):
                removed = purge_finished(conn, cutoff, owner_id=payload.organization_id)
        finally:
            conn.close()
        report_progress(100, f"Removed {removed} job records", processed_count=removed)
        logger.info("purged %d finished jobs", removed,
                    extra={"job_id": job.id, "event": "cleanup_finished"})
        return JobResult(success=True, statistics={"processed": removed, "successful": removed,
                                                   "failed": 0, "skipped": 0})
