import json
import logging

from einvoice_queue.logging_utils import JsonFormatter


def _record(**extra):
    record = logging.LogRecord("einvoice_queue.worker", logging.INFO, __file__, 1,
                               "claimed %s", ("job-1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_json_with_job_fields():
    line = JsonFormatter().format(_record(job_id="job-1", event="claimed", worker_id="worker-2"))
    data = json.loads(line)
    assert data["msg"] == "claimed job-1"
    assert data["level"] == "INFO"
    assert data["logger"] == "einvoice_queue.worker"
    assert data["job_id"] == "job-1"
    assert data["event"] == "claimed"
    assert data["worker_id"] == "worker-2"
    assert data["ts"].endswith("Z")


def test_formatter_omits_missing_fields():
    data = json.loads(JsonFormatter().format(_record()))
    assert "job_id" not in data
    assert "exc_info" not in data
