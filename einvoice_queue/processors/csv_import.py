"""Bulk CSV invoice import with Malaysian e-Invoice row checks."""

import csv
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..errors import FatalJobError, PayloadValidationError
from ..models import Job, JobResult, JobType
from ..payloads import CsvImportPayload
from .base import Processor, batch_result, run_batches

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("customer_name", "amount", "currency")
SUPPORTED_CURRENCIES = {"MYR", "USD", "SGD", "EUR", "GBP"}
SST_RATE = Decimal("0.06")
MAX_WARNINGS = 50

CORPORATE_TIN_RE = re.compile(r"^C\d{10}$")
INDIVIDUAL_TIN_RE = re.compile(r"^\d{12}$")


def valid_tin(tin: str) -> bool:
    return bool(CORPORATE_TIN_RE.match(tin) or INDIVIDUAL_TIN_RE.match(tin))


def read_csv_rows(path: str, column_mapping: Mapping[str, str]) -> List[Dict[str, str]]:
    """Rows of ``path`` keyed by mapped field name; unmapped columns are dropped."""
    try:
        with open(path, newline="", encoding="utf-8-sig") as fh:
            reader = csv.DictReader(fh)
            return [
                {field: (row.get(column) or "").strip() for column, field in column_mapping.items()}
                for row in reader
            ]
    except FileNotFoundError:
        raise FatalJobError(f"CSV file not found: {path}")


def check_row(row: Mapping[str, str]) -> Tuple[List[str], List[str]]:
    """Errors and warnings for one mapped row."""
    errors, warnings = [], []
    for field in REQUIRED_FIELDS:
        if not row.get(field):
            errors.append(f"missing required field '{field}'")

    currency = (row.get("currency") or "").upper()
    if currency and currency not in SUPPORTED_CURRENCIES:
        errors.append(f"unsupported currency '{currency}'")
    if currency and currency != "MYR" and not row.get("exchange_rate"):
        errors.append("exchange rate required for non-MYR invoices")

    amount = None
    if row.get("amount"):
        try:
            amount = Decimal(row["amount"])
        except InvalidOperation:
            errors.append(f"invalid amount '{row['amount']}'")

    tin = row.get("customer_tin")
    if tin and not valid_tin(tin):
        errors.append("invalid Malaysian TIN format")

    if amount is not None and row.get("sst_amount"):
        try:
            if abs(amount * SST_RATE - Decimal(row["sst_amount"])) > Decimal("0.01"):
                warnings.append("SST amount does not match 6% calculation")
        except InvalidOperation:
            warnings.append(f"invalid SST amount '{row['sst_amount']}'")
    return errors, warnings


class CsvImportProcessor(Processor):
    job_type = JobType.CSV_IMPORT
    payload_model = CsvImportPayload

    def __init__(
        self,
        load_rows: Optional[Callable[[CsvImportPayload], List[Dict[str, Any]]]] = None,
        save_rows: Optional[Callable[[CsvImportPayload, List[Dict[str, Any]]], None]] = None,
    ):
        self.load_rows = load_rows or (lambda p: read_csv_rows(p.file_key, p.column_mapping))
        # persisting invoices belongs to the application; default keeps nothing
        self.save_rows = save_rows

    def check_payload(self, payload: CsvImportPayload) -> None:
        mapped = set(payload.column_mapping.values())
        missing = [f for f in REQUIRED_FIELDS if f not in mapped]
        if missing:
            raise PayloadValidationError(
                self.job_type.value,
                [f"column_mapping must map a column to '{f}'" for f in missing],
            )

    def estimate_duration(self, payload: Mapping[str, Any]) -> float:
        # roughly 30 seconds per megabyte, at least 30 seconds
        base = max(30.0, payload.get("file_size", 0) * 30.0 / 1_000_000)
        factor = 1.0
        if len(payload.get("validation_rules") or []) > 5:
            factor += 0.5
        if payload.get("batch_size", 100) < 50:
            factor += 0.3
        return round(base * factor, 3)

    def execute(self, job: Job, report_progress, token) -> JobResult:
        payload = self.parse(job)
        rows = self.load_rows(payload)
        warnings: List[str] = []
        offset = {"row": 0}

        def handle(batch: List[Dict[str, Any]]) -> Dict[str, int]:
            counts = {"successful": 0, "failed": 0, "skipped": 0}
            accepted = []
            for row in batch:
                offset["row"] += 1
                if not any(v for v in row.values()):
                    counts["skipped"] += 1
                    continue
                errors, row_warnings = check_row(row)
                for message in errors + row_warnings:
                    if len(warnings) < MAX_WARNINGS:
                        warnings.append(f"Row {offset['row']}: {message}")
                if errors:
                    counts["failed"] += 1
                else:
                    accepted.append(row)
            if accepted and self.save_rows is not None:
                self.save_rows(payload, accepted)
            counts["successful"] += len(accepted)
            return counts

        stats = run_batches(rows, payload.batch_size, handle, report_progress, token, label="row")
        logger.info(
            "imported %s: %s", payload.file_name, stats,
            extra={"job_id": job.id, "event": "csv_import_finished"},
        )
        return batch_result(stats, data={"file_name": payload.file_name}, warnings=warnings)
