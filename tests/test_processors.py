import pytest

from einvoice_queue.cancellation import CancellationToken
from einvoice_queue.errors import FatalJobError, PayloadValidationError, UnknownJobTypeError
from einvoice_queue.models import Job, JobResult, JobStatus, JobType
from einvoice_queue.processors import (
    BulkExportProcessor, BulkSubmissionProcessor, BulkValidationProcessor,
    CsvImportProcessor, DataCleanupProcessor, default_registry, run_batches,
)
from einvoice_queue.processors.csv_import import check_row, read_csv_rows
from einvoice_queue.registry import ProcessorRegistry

from conftest import FakeProcessor

MAPPING = {"Customer": "customer_name", "Total": "amount", "Currency": "currency",
           "Rate": "exchange_rate", "TIN": "customer_tin"}


def _csv_payload(**overrides):
    payload = {
        "organization_id": "org-1",
        "file_key": "uploads/a.csv",
        "file_name": "a.csv",
        "file_size": 1024,
        "column_mapping": MAPPING,
    }
    payload.update(overrides)
    return payload


def _job(job_type, payload, attempt=1):
    return Job(id="job-1", type=job_type, payload=payload, status=JobStatus.PROCESSING, attempt=attempt)


class Recorder:
    def __init__(self):
        self.reports = []

    def __call__(self, percent, message=None, processed_count=None, total_count=None):
        self.reports.append((percent, processed_count, total_count))


def test_run_batches_stops_between_batches_when_cancelled():
    token = CancellationToken()
    seen = []

    def handle(batch):
        seen.append(len(batch))
        if len(seen) == 2:
            token.cancel()
        return {"successful": len(batch)}

    report = Recorder()
    stats = run_batches(list(range(10)), 3, handle, report, token)
    assert seen == [3, 3]
    assert stats["processed"] == 6
    assert stats["cancelled"] == 1
    assert [r[0] for r in report.reports] == [pytest.approx(30.0), pytest.approx(60.0)]


def test_check_row_rules():
    assert check_row({"customer_name": "A", "amount": "10", "currency": "MYR"}) == ([], [])
    errors, _ = check_row({"customer_name": "A", "amount": "10", "currency": "USD"})
    assert errors == ["exchange rate required for non-MYR invoices"]
    errors, _ = check_row({"amount": "ten", "currency": "JPY", "exchange_rate": "0.03"})
    assert "missing required field 'customer_name'" in errors
    assert "unsupported currency 'JPY'" in errors
    assert "invalid amount 'ten'" in errors
    errors, _ = check_row({"customer_name": "A", "amount": "1", "currency": "MYR", "customer_tin": "X1"})
    assert errors == ["invalid Malaysian TIN format"]
    _, warnings = check_row({"customer_name": "A", "amount": "100", "currency": "MYR", "sst_amount": "5"})
    assert warnings == ["SST amount does not match 6% calculation"]


def test_read_csv_rows_applies_column_mapping(tmp_path):
    path = tmp_path / "invoices.csv"
    path.write_text("Customer,Total,Currency,Notes\nAcme Sdn Bhd,106.00,MYR,first\n", encoding="utf-8")
    rows = read_csv_rows(str(path), {"Customer": "customer_name", "Total": "amount", "Currency": "currency"})
    assert rows == [{"customer_name": "Acme Sdn Bhd", "amount": "106.00", "currency": "MYR"}]


def test_read_csv_rows_missing_file_is_fatal(tmp_path):
    with pytest.raises(FatalJobError):
        read_csv_rows(str(tmp_path / "nope.csv"), MAPPING)


def test_csv_payload_must_map_required_fields():
    processor = CsvImportProcessor()
    with pytest.raises(PayloadValidationError) as exc:
        processor.validate_payload(_csv_payload(column_mapping={"Customer": "customer_name"}))
    assert any("'amount'" in e for e in exc.value.errors)
    with pytest.raises(PayloadValidationError):
        processor.validate_payload(_csv_payload(file_size=0))
    assert processor.validate_payload(_csv_payload())["batch_size"] == 100


def test_csv_import_counts_rows(tmp_path):
    path = tmp_path / "invoices.csv"
    path.write_text(
        "Customer,Total,Currency,Rate,TIN\n"
        "Acme,100,MYR,,C1234567890\n"
        "Globex,50,USD,,\n"
        ",,,,\n"
        "Initech,75,SGD,3.4,123456789012\n",
        encoding="utf-8",
    )
    saved = []
    processor = CsvImportProcessor(save_rows=lambda payload, rows: saved.extend(rows))
    payload = processor.validate_payload(_csv_payload(file_key=str(path), batch_size=2))
    report = Recorder()
    result = processor.execute(_job(JobType.CSV_IMPORT, payload), report, CancellationToken())
    assert result.success
    assert result.statistics == {"processed": 4, "successful": 2, "failed": 1, "skipped": 1}
    assert [r["customer_name"] for r in saved] == ["Acme", "Initech"]
    assert result.warnings == ["Row 2: exchange rate required for non-MYR invoices"]
    assert [r[0] for r in report.reports] == [pytest.approx(50.0), pytest.approx(100.0)]


def test_csv_import_returns_partial_result_when_cancelled():
    rows = [{"customer_name": "A", "amount": "1", "currency": "MYR"}] * 10
    processor = CsvImportProcessor(load_rows=lambda payload: rows)
    payload = processor.validate_payload(_csv_payload(batch_size=5))
    token = CancellationToken()
    token.cancel()
    result = processor.execute(_job(JobType.CSV_IMPORT, payload), Recorder(), token)
    assert result.success is False
    assert result.statistics["processed"] == 0


def test_csv_estimate_duration():
    processor = CsvImportProcessor()
    assert processor.estimate_duration(_csv_payload(file_size=10)) == 30.0
    assert processor.estimate_duration(_csv_payload(file_size=2_000_000)) == 60.0
    assert processor.estimate_duration(_csv_payload(file_size=2_000_000, batch_size=10)) == 78.0


def test_submission_payload_limits():
    processor = BulkSubmissionProcessor(lambda payload, ids: {"successful": len(ids)})
    base = {"organization_id": "org-1"}
    processor.validate_payload(dict(base, invoice_ids=["inv-1"], submission_type="single"))
    with pytest.raises(PayloadValidationError):
        processor.validate_payload(dict(base, invoice_ids=["a", "b"], submission_type="single"))
    with pytest.raises(PayloadValidationError):
        processor.validate_payload(
            dict(base, invoice_ids=[f"inv-{i}" for i in range(101)], submission_type="batch")
        )
    with pytest.raises(PayloadValidationError):
        processor.validate_payload(dict(base, invoice_ids=[], submission_type="batch"))


def test_submission_estimate_duration():
    processor = BulkSubmissionProcessor(lambda payload, ids: {})
    assert processor.estimate_duration({"invoice_ids": ["a"], "submission_type": "single"}) == 30.0
    batch = {"invoice_ids": [str(i) for i in range(20)], "submission_type": "batch",
             "environment": "production"}
    assert processor.estimate_duration(batch) == pytest.approx(20 * 10 * 0.7 * 1.5)


def test_batch_submission_sends_up_to_one_hundred_per_call():
    calls = []
    processor = BulkSubmissionProcessor(lambda payload, ids: calls.append(list(ids)) or {"successful": len(ids)})
    payload = processor.validate_payload({
        "organization_id": "org-1", "invoice_ids": [f"inv-{i}" for i in range(100)],
        "submission_type": "batch",
    })
    result = processor.execute(_job(JobType.BULK_SUBMISSION, payload), Recorder(), CancellationToken())
    assert [len(c) for c in calls] == [100]
    assert result.statistics["successful"] == 100


def test_export_and_validation_batches():
    exported, validated = [], []
    export = BulkExportProcessor(lambda payload, ids: exported.append(len(ids)) or {"successful": len(ids)})
    validation = BulkValidationProcessor(
        lambda payload, ids: validated.append(len(ids)) or {"successful": len(ids) - 1, "failed": 1}
    )
    ids = [f"inv-{i}" for i in range(60)]
    payload = export.validate_payload({"organization_id": "o", "invoice_ids": ids, "export_type": "pdf"})
    assert export.execute(_job(JobType.BULK_EXPORT, payload), Recorder(), CancellationToken()).success
    assert exported == [25, 25, 10]
    payload = validation.validate_payload({"organization_id": "o", "invoice_ids": ids})
    result = validation.execute(_job(JobType.BULK_VALIDATION, payload), Recorder(), CancellationToken())
    assert validated == [60]
    assert result.statistics["failed"] == 1
    with pytest.raises(PayloadValidationError):
        export.validate_payload({"organization_id": "o", "invoice_ids": ids, "export_type": "xml"})


def test_data_cleanup_purges_old_finished_jobs(make_queue, db_path, clock):
    queue = make_queue(FakeProcessor(), DataCleanupProcessor(db_path, clock=clock), clock=clock)
    old_id = queue.enqueue(JobType.CSV_IMPORT, {})
    job = queue.claim_next("w1")
    queue.complete(job.id, job.claim_token, JobResult(success=True))
    clock.advance(10 * 86400)

    cleanup_id = queue.enqueue(JobType.DATA_CLEANUP, {"older_than_days": 7})
    cleanup = queue.claim_next("w1")
    assert cleanup.id == cleanup_id
    cleanup_processor = queue.registry.get(JobType.DATA_CLEANUP)
    result = cleanup_processor.execute(cleanup, Recorder(), CancellationToken())
    assert result.statistics["processed"] == 1
    assert [j.id for j in queue.list_jobs()] == [cleanup_id]
    assert old_id not in {j.id for j in queue.list_jobs()}


def test_registry_lookup():
    registry = ProcessorRegistry()
    processor = FakeProcessor()
    registry.register("csv_import", processor)
    assert registry.get(JobType.CSV_IMPORT) is processor
    assert JobType.CSV_IMPORT in registry
    assert "bulk_export" not in registry
    assert "unknown" not in registry
    with pytest.raises(ValueError):
        registry.register(JobType.CSV_IMPORT, FakeProcessor())
    registry.register(JobType.CSV_IMPORT, FakeProcessor(), replace=True)
    with pytest.raises(UnknownJobTypeError):
        registry.get(JobType.BULK_EXPORT)
    assert registry.estimate_duration(JobType.CSV_IMPORT, {}) == 30.0


def test_default_registry_registers_batch_processors_only_with_handlers(db_path):
    registry = default_registry(db_path)
    assert set(registry) == {JobType.CSV_IMPORT, JobType.DATA_CLEANUP}
    full = default_registry(
        db_path,
        export_handler=lambda p, ids: {},
        submission_handler=lambda p, ids: {},
        validation_handler=lambda p, ids: {},
    )
    assert set(full) == set(JobType)
