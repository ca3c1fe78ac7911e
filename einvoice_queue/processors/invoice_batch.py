"""Processors that work through a list of invoice ids in batches.

The per-batch work (rendering, portal submission, rule checks) is supplied by
the application as ``handle_batch(payload, invoice_ids) -> counts``.
"""

from typing import Any, Callable, List, Mapping

from pydantic import BaseModel

from ..models import Job, JobResult, JobType
from ..payloads import (
    MYINVOIS_BATCH_LIMIT, BulkSubmissionPayload, BulkValidationPayload, ExportPayload,
)
from .base import Processor, batch_result, run_batches

BatchHandler = Callable[[BaseModel, List[str]], Mapping[str, int]]


class InvoiceBatchProcessor(Processor):
    batch_size = 50

    def __init__(self, handle_batch: BatchHandler):
        self.handle_batch = handle_batch

    def batch_size_for(self, payload) -> int:
        return self.batch_size

    def execute(self, job: Job, report_progress, token) -> JobResult:
        payload = self.parse(job)
        stats = run_batches(
            payload.invoice_ids,
            self.batch_size_for(payload),
            lambda ids: self.handle_batch(payload, ids),
            report_progress,
            token,
            label="invoice",
        )
        return batch_result(stats, data={"invoice_count": len(payload.invoice_ids)})


class BulkExportProcessor(InvoiceBatchProcessor):
    job_type = JobType.BULK_EXPORT
    payload_model = ExportPayload
    batch_size = 25

    def estimate_duration(self, payload: Mapping[str, Any]) -> float:
        per_invoice = 3.0 if payload.get("export_type") == "pdf" else 0.5
        if payload.get("include_attachments"):
            per_invoice *= 1.5
        return max(10.0, len(payload.get("invoice_ids") or []) * per_invoice)


class BulkSubmissionProcessor(InvoiceBatchProcessor):
    job_type = JobType.BULK_SUBMISSION
    payload_model = BulkSubmissionPayload

    def batch_size_for(self, payload: BulkSubmissionPayload) -> int:
        return MYINVOIS_BATCH_LIMIT if payload.submission_type == "batch" else 1

    def estimate_duration(self, payload: Mapping[str, Any]) -> float:
        count = len(payload.get("invoice_ids") or [])
        seconds = count * 10.0
        if payload.get("submission_type") == "batch" and count > 10:
            seconds *= 0.7
        if payload.get("environment") == "production":
            seconds *= 1.5
        # portal round-trip overhead
        return max(30.0, seconds)


class BulkValidationProcessor(InvoiceBatchProcessor):
    job_type = JobType.BULK_VALIDATION
    payload_model = BulkValidationPayload
    batch_size = 100

    def estimate_duration(self, payload: Mapping[str, Any]) -> float:
        per_invoice = 0.2 if payload.get("validation_type") == "quick" else 0.5
        return max(5.0, len(payload.get("invoice_ids") or []) * per_invoice)
