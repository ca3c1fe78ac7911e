"""Payload schemas, one per job type.

The queue only ever stores the validated ``model_dump`` of these models; the
matching processor parses the stored mapping back into its own model.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

MYINVOIS_BATCH_LIMIT = 100


class BasePayload(BaseModel):
    organization_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    source: Literal["api", "web", "system"] = "api"
    metadata: Optional[Dict[str, Any]] = None


class CsvImportPayload(BasePayload):
    file_key: str = Field(min_length=1)
    file_name: str = Field(min_length=1)
    file_size: int = Field(gt=0)
    column_mapping: Dict[str, str]
    validation_rules: Optional[List[str]] = None
    batch_size: int = Field(default=100, gt=0)


class InvoiceBatchPayload(BasePayload):
    invoice_ids: List[str] = Field(min_length=1)


class ExportPayload(InvoiceBatchPayload):
    export_type: Literal["pdf", "json", "csv"]
    filters: Optional[Dict[str, Any]] = None
    include_attachments: bool = False


class BulkSubmissionPayload(InvoiceBatchPayload):
    submission_type: Literal["single", "batch"] = "single"
    environment: Literal["sandbox", "production"] = "sandbox"

    @model_validator(mode="after")
    def _check_invoice_count(self) -> "BulkSubmissionPayload":
        if self.submission_type == "single" and len(self.invoice_ids) != 1:
            raise ValueError("single submissions carry exactly one invoice")
        if self.submission_type == "batch" and len(self.invoice_ids) > MYINVOIS_BATCH_LIMIT:
            raise ValueError(f"batch submissions are limited to {MYINVOIS_BATCH_LIMIT} invoices")
        return self


class BulkValidationPayload(InvoiceBatchPayload):
    validation_type: Literal["full", "quick", "compliance_only"] = "full"
    malaysian_rules: bool = True


class DataCleanupPayload(BasePayload):
    organization_id: Optional[str] = None
    source: Literal["api", "web", "system"] = "system"
    older_than_days: int = Field(default=7, ge=1)
