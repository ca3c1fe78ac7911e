import json
import sqlite3
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config import ALLOWED_CONFIG_KEYS, validate_config_value
from .errors import ErrorKind
from .models import (
    CLAIMABLE_STATES, CancellationMethod, Job, JobProgress, JobStatus, JobType, RetryEntry,
)
from .utils import to_iso, from_iso

ANY_CLAIM = object()

# CAS losses are re-selected inside the claiming transaction, this many times
CLAIM_SELECT_LIMIT = 10


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    normalized = validate_config_value(key, value)
    conn.execute(
        "INSERT INTO config(key,value) VALUES(?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, normalized),
    )
    return normalized


# ---------- Jobs: insert / fetch ----------
def insert_job(conn, job: Job) -> int:
    """Persist a PENDING job and its pending-index entry. Returns the enqueue sequence."""
    seq = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 AS s FROM jobs").fetchone()["s"]
    ts = to_iso(job.created_at)
    not_before = to_iso(job.not_before) or ts
    conn.execute(
        """INSERT INTO jobs
           (id, seq, type, payload, owner_id, priority, status, attempt, config, progress,
            not_before, retry_of, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (job.id, seq, job.type.value, dump_json(job.payload), job.owner_id, int(job.priority),
         JobStatus.PENDING.value, 0, dump_json(job.config), dump_json(job.progress),
         not_before, job.retry_of, ts, ts),
    )
    conn.execute(
        "INSERT INTO pending_index(job_id, priority, seq, not_before) VALUES (?, ?, ?, ?)",
        (job.id, int(job.priority), seq, not_before),
    )
    job.seq = seq
    return seq


def fetch_history(conn, job_id: str) -> List[RetryEntry]:
    rows = conn.execute(
        "SELECT * FROM retry_history WHERE job_id=? ORDER BY attempt ASC", (job_id,)
    ).fetchall()
    return [
        RetryEntry(
            attempt=r["attempt"],
            error=r["error"],
            kind=ErrorKind(r["error_kind"]),
            failed_at=from_iso(r["failed_at"]),
            scheduled_at=from_iso(r["scheduled_at"]),
        )
        for r in rows
    ]


def fetch_job(conn, job_id: str, with_history: bool = True) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    if row is None:
        return None
    history = fetch_history(conn, job_id) if with_history else None
    return Job.from_row(row, history)


# ---------- Jobs: transitions ----------
class _Raw(str):
    """SQL expression used verbatim as an UPDATE value."""


def update_job(
    conn,
    job_id: str,
    fields: Dict[str, Any],
    *,
    from_statuses: Optional[Sequence[JobStatus]] = None,
    claim_token: Any = ANY_CLAIM,
) -> bool:
    """Compare-and-swap update of one job row. True when the row matched."""
    sets = ", ".join(
        f"{k}={v}" if isinstance(v, _Raw) else f"{k}=?" for k, v in fields.items()
    )
    params: List[Any] = [v for v in fields.values() if not isinstance(v, _Raw)]
    sql = f"UPDATE jobs SET {sets} WHERE id=?"
    params.append(job_id)
    if from_statuses:
        sql += " AND status IN (%s)" % ", ".join("?" * len(from_statuses))
        params.extend(s.value for s in from_statuses)
    if claim_token is not ANY_CLAIM:
        sql += " AND claim_token IS ?"
        params.append(claim_token)
    return conn.execute(sql, params).rowcount == 1


def claim_one(conn, worker_id: str, claim_token: str, now: datetime) -> Optional[Job]:
    """Take the highest-priority, oldest eligible job. Must run inside transaction()."""
    now_s = to_iso(now)
    for _ in range(CLAIM_SELECT_LIMIT):
        row = conn.execute(
            """SELECT job_id FROM pending_index
               WHERE not_before <= ?
               ORDER BY priority DESC, seq ASC
               LIMIT 1""",
            (now_s,),
        ).fetchone()
        if not row:
            return None
        job_id = row["job_id"]
        conn.execute("DELETE FROM pending_index WHERE job_id=?", (job_id,))
        claimed = update_job(
            conn,
            job_id,
            {
                "status": JobStatus.PROCESSING.value,
                "attempt": _Raw("attempt + 1"),
                "claim_token": claim_token,
                "picked_by": worker_id,
                "progress": dump_json(JobProgress()),
                "not_before": None,
                "started_at": now_s,
                "updated_at": now_s,
            },
            from_statuses=CLAIMABLE_STATES,
        )
        if claimed:
            return fetch_job(conn, job_id)
        # another worker won, or the index entry was stale; select again
    return None


def schedule_retry(conn, job: Job, entry: RetryEntry, claim_token: Optional[str]) -> bool:
    scheduled = to_iso(entry.scheduled_at)
    ok = update_job(
        conn,
        job.id,
        {
            "status": JobStatus.RETRYING.value,
            "claim_token": None,
            "not_before": scheduled,
            "updated_at": to_iso(entry.failed_at),
        },
        from_statuses=(JobStatus.PROCESSING,),
        claim_token=claim_token,
    )
    if not ok:
        return False
    conn.execute(
        """INSERT INTO retry_history(job_id, attempt, error, error_kind, failed_at, scheduled_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (job.id, entry.attempt, entry.error[:2000], entry.kind.value,
         to_iso(entry.failed_at), scheduled),
    )
    conn.execute(
        "INSERT OR REPLACE INTO pending_index(job_id, priority, seq, not_before) VALUES (?, ?, ?, ?)",
        (job.id, int(job.priority), job.seq, scheduled),
    )
    return True


def remove_pending(conn, job_id: str):
    conn.execute("DELETE FROM pending_index WHERE job_id=?", (job_id,))


# ---------- Queries ----------
def list_jobs(
    conn,
    status: Optional[JobStatus] = None,
    job_type: Optional[JobType] = None,
    owner_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Job]:
    clauses, params = [], []
    if status:
        clauses.append("status=?")
        params.append(JobStatus(status).value)
    if job_type:
        clauses.append("type=?")
        params.append(JobType(job_type).value)
    if owner_id:
        clauses.append("owner_id=?")
        params.append(owner_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = conn.execute(
        f"SELECT * FROM jobs {where} ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?",
        (*params, int(limit), int(offset)),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def list_processing(conn) -> List[Job]:
    rows = conn.execute(
        "SELECT * FROM jobs WHERE status=? ORDER BY started_at ASC",
        (JobStatus.PROCESSING.value,),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def list_active_ids(conn, owner_id: Optional[str] = None) -> List[str]:
    """Ids of PENDING, RETRYING and PROCESSING jobs, oldest first."""
    sql = "SELECT id FROM jobs WHERE status IN (?, ?, ?)"
    params: List[Any] = [JobStatus.PENDING.value, JobStatus.RETRYING.value, JobStatus.PROCESSING.value]
    if owner_id:
        sql += " AND owner_id=?"
        params.append(owner_id)
    return [r["id"] for r in conn.execute(sql + " ORDER BY seq ASC", params)]


def list_cancel_requested(conn, job_ids: Sequence[str]) -> List[Job]:
    """Jobs among ``job_ids`` that carry a cancellation, whatever their status."""
    if not job_ids:
        return []
    marks = ",".join("?" * len(job_ids))
    rows = conn.execute(
        f"SELECT * FROM jobs WHERE cancellation IS NOT NULL AND id IN ({marks})",
        tuple(job_ids),
    ).fetchall()
    return [Job.from_row(r) for r in rows]


def counts(conn) -> Dict[str, int]:
    out = {s.value: 0 for s in JobStatus}
    for r in conn.execute("SELECT status, COUNT(1) AS c FROM jobs GROUP BY status"):
        out[r["status"]] = r["c"]
    return out


def average_processing_seconds(conn) -> float:
    row = conn.execute(
        """SELECT AVG((julianday(completed_at) - julianday(started_at)) * 86400.0) AS avg_s
           FROM jobs WHERE status=? AND started_at IS NOT NULL AND completed_at IS NOT NULL""",
        (JobStatus.COMPLETED.value,),
    ).fetchone()
    return float(row["avg_s"] or 0.0)


def retry_stats(conn) -> Dict[str, Dict[str, Any]]:
    """Per job type: retries scheduled, their outcome, delay and error kinds."""
    out: Dict[str, Dict[str, Any]] = {
        t.value: {
            "total_retries": 0,
            "successful_retries": 0,
            "failed_retries": 0,
            "average_retry_delay": 0.0,
            "error_kinds": {},
            "retry_success_rate": 0.0,
        }
        for t in JobType
    }
    for r in conn.execute(
        """SELECT j.type AS type, COUNT(1) AS c,
                  AVG((julianday(h.scheduled_at) - julianday(h.failed_at)) * 86400.0) AS avg_delay
           FROM retry_history h JOIN jobs j ON j.id = h.job_id GROUP BY j.type"""
    ):
        out[r["type"]]["total_retries"] = r["c"]
        out[r["type"]]["average_retry_delay"] = round(float(r["avg_delay"] or 0.0), 3)
    for r in conn.execute(
        """SELECT j.type AS type, h.error_kind AS kind, COUNT(1) AS c
           FROM retry_history h JOIN jobs j ON j.id = h.job_id GROUP BY j.type, h.error_kind"""
    ):
        out[r["type"]]["error_kinds"][r["kind"]] = r["c"]
    # jobs that needed at least one retry, by how they ended
    for r in conn.execute(
        """SELECT type, status, COUNT(1) AS c FROM jobs
           WHERE status IN (?, ?)
             AND EXISTS (SELECT 1 FROM retry_history h WHERE h.job_id = jobs.id)
           GROUP BY type, status""",
        (JobStatus.COMPLETED.value, JobStatus.FAILED.value),
    ):
        key = "successful_retries" if r["status"] == JobStatus.COMPLETED.value else "failed_retries"
        out[r["type"]][key] = r["c"]
    for stats in out.values():
        finished = stats["successful_retries"] + stats["failed_retries"]
        if finished:
            stats["retry_success_rate"] = round(stats["successful_retries"] / finished, 4)
    return out


def cancellation_stats(conn) -> Dict[str, Dict[str, Any]]:
    """Per job type: cancellations by reason and method, and time to cancel."""
    out: Dict[str, Dict[str, Any]] = {
        t.value: {
            "total_cancellations": 0,
            "by_reason": {},
            "by_method": {},
            "average_cancellation_seconds": 0.0,
            "cooperative_success_rate": 0.0,
        }
        for t in JobType
    }
    durations: Dict[str, List[float]] = {t.value: [] for t in JobType}
    rows = conn.execute(
        "SELECT type, cancellation, completed_at FROM jobs WHERE status=? AND cancellation IS NOT NULL",
        (JobStatus.CANCELLED.value,),
    )
    for r in rows:
        data = json.loads(r["cancellation"])
        stats = out[r["type"]]
        stats["total_cancellations"] += 1
        stats["by_reason"][data["reason"]] = stats["by_reason"].get(data["reason"], 0) + 1
        stats["by_method"][data["method"]] = stats["by_method"].get(data["method"], 0) + 1
        if r["completed_at"]:
            elapsed = from_iso(r["completed_at"]) - from_iso(data["requested_at"])
            durations[r["type"]].append(max(elapsed.total_seconds(), 0.0))
    for job_type, stats in out.items():
        if durations[job_type]:
            stats["average_cancellation_seconds"] = round(
                sum(durations[job_type]) / len(durations[job_type]), 3
            )
        if stats["total_cancellations"]:
            cooperative = stats["by_method"].get(CancellationMethod.COOPERATIVE.value, 0)
            stats["cooperative_success_rate"] = round(cooperative / stats["total_cancellations"], 4)
    return out


def purge_finished(conn, older_than: datetime, owner_id: Optional[str] = None) -> int:
    """Delete COMPLETED/CANCELLED records finished before ``older_than``."""
    sql = "SELECT id FROM jobs WHERE status IN (?, ?) AND completed_at < ?"
    params: List[Any] = [JobStatus.COMPLETED.value, JobStatus.CANCELLED.value, to_iso(older_than)]
    if owner_id:
        sql += " AND owner_id=?"
        params.append(owner_id)
    ids = [r["id"] for r in conn.execute(sql, params)]
    for job_id in ids:
        conn.execute("DELETE FROM retry_history WHERE job_id=?", (job_id,))
        conn.execute("DELETE FROM pending_index WHERE job_id=?", (job_id,))
        conn.execute("DELETE FROM jobs WHERE id=?", (job_id,))
    return len(ids)


# ---------- DLQ ----------
def add_dead_letter(conn, job: Job, error: str, failed_at: datetime):
    conn.execute(
        """INSERT OR REPLACE INTO dead_letter(job_id, type, attempt, last_error, failed_at)
           VALUES (?, ?, ?, ?, ?)""",
        (job.id, job.type.value, job.attempt, error[:2000], to_iso(failed_at)),
    )


def dlq_list(conn) -> Iterable[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM dead_letter ORDER BY failed_at DESC"
    ).fetchall()


def dlq_contains(conn, job_id: str) -> bool:
    return conn.execute(
        "SELECT 1 FROM dead_letter WHERE job_id=?", (job_id,)
    ).fetchone() is not None


def dlq_remove(conn, job_id: str) -> bool:
    return conn.execute("DELETE FROM dead_letter WHERE job_id=?", (job_id,)).rowcount == 1
