"""The job queue: enqueue, claim, progress and every status transition.

All transitions run inside a ``BEGIN IMMEDIATE`` transaction and are
compare-and-swap updates on the job row, so a job is only ever moved by the
party that currently owns it. Events are emitted after commit.
"""

import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from . import repository as repo
from .cancellation import CancellationCoordinator, CancellationToken
from .config import QueueSettings
from .db import connect_db, init_db, transaction
from .errors import (
    CancellationRejectedError, JobNotFoundError, JobTimeoutError,
    StaleClaimError, StoreUnavailableError, WorkerLostError,
)
from .events import (
    JOB_CANCELLED, JOB_COMPLETED, JOB_CREATED, JOB_FAILED, JOB_PROGRESS, JOB_RETRY,
    JOB_STARTED, JobEvent, JobEventEmitter,
)
from .models import (
    Cancellation, CancellationMethod, CancellationReason, Job, JobPriority, JobProgress,
    JobResult, JobStatus, RetryEntry,
)
from .retry import RetryPolicyEngine, job_config_for
from .utils import parse_delay_to_seconds, to_iso, utcnow

logger = logging.getLogger(__name__)

# immediate re-attempts of a claim that hit a busy/locked database
CLAIM_RETRY_LIMIT = 3


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


def _failure_result(error: BaseException) -> JobResult:
    partial = getattr(error, "result", None)
    message = str(error) or type(error).__name__
    if isinstance(partial, JobResult):
        return JobResult(
            success=False,
            data=partial.data,
            error=partial.error or message,
            statistics=partial.statistics,
            warnings=list(partial.warnings),
        )
    return JobResult(success=False, error=message)


class JobQueue:
    def __init__(
        self,
        db_path: Optional[str] = None,
        registry=None,
        *,
        settings: Optional[QueueSettings] = None,
        retry_engine: Optional[RetryPolicyEngine] = None,
        coordinator: Optional[CancellationCoordinator] = None,
        cancellation_policies=None,
        events: Optional[JobEventEmitter] = None,
        clock=utcnow,
    ):
        init_db(db_path)
        self.db_path = db_path
        self.clock = clock
        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()

        if settings is None:
            settings = QueueSettings.from_config(repo.get_config(self._conn()))
        self.settings = settings
        if registry is None:
            from .processors import default_registry
            registry = default_registry(db_path)
        self.registry = registry
        self.retry = retry_engine or RetryPolicyEngine(registry)
        self.coordinator = coordinator or CancellationCoordinator(
            settings.grace_period, cancellation_policies
        )
        self.events = events or JobEventEmitter()

        self._lock = threading.Lock()
        # job id -> (claim token, cancellation token), for attempts running in this process
        self._inflight: Dict[str, Tuple[str, CancellationToken]] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._work = threading.Condition()
        self._work_gen = 0
        self._finished = threading.Condition()

    # ---------- Connections ----------
    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = connect_db(self.db_path, check_same_thread=False)
            self._local.conn = conn
            with self._conns_lock:
                self._conns.append(conn)
        return conn

    def release_connection(self) -> None:
        """Close the calling thread's connection, if it has one."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None
        with self._conns_lock:
            if conn in self._conns:
                self._conns.remove(conn)
        conn.close()

    def close(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()
        self._local = threading.local()

    # ---------- Wakeups ----------
    @property
    def work_generation(self) -> int:
        with self._work:
            return self._work_gen

    def notify_work(self) -> None:
        with self._work:
            self._work_gen += 1
            self._work.notify_all()

    def wait_for_work(self, seen_generation: int, timeout: float) -> bool:
        """Block until notify_work() moved past ``seen_generation`` or timeout."""
        with self._work:
            return self._work.wait_for(lambda: self._work_gen != seen_generation, timeout)

    def _notify_finished(self) -> None:
        with self._finished:
            self._finished.notify_all()

    def _emit(self, name: str, job: Job, **data) -> None:
        self.events.emit(JobEvent.from_job(name, job, **data))

    # ---------- Enqueue ----------
    def enqueue(
        self,
        job_type,
        payload: Mapping[str, Any],
        config: Optional[Mapping[str, Any]] = None,
        *,
        priority: Union[JobPriority, int, str] = JobPriority.NORMAL,
        owner_id: Optional[str] = None,
        delay: Union[None, float, str] = None,
    ) -> str:
        """Validate and persist a PENDING job. Raises JobValidationError on bad input."""
        job_type = self.registry.resolve_type(job_type)
        normalized = self.registry.validate(job_type, payload)
        job_config = job_config_for(job_type, config)
        now = self.clock()
        if isinstance(delay, str):
            delay = parse_delay_to_seconds(delay)
        job = Job(
            id=str(uuid.uuid4()),
            type=job_type,
            payload=normalized,
            priority=JobPriority.parse(priority),
            config=job_config,
            owner_id=owner_id or normalized.get("organization_id"),
            not_before=now + timedelta(seconds=delay) if delay else None,
            created_at=now,
            updated_at=now,
        )
        with transaction(self._conn()) as conn:
            repo.insert_job(conn, job)
        logger.info(
            "enqueued %s (priority=%s)", job.type.value, job.priority.name,
            extra={"job_id": job.id, "event": "enqueued"},
        )
        self._emit(JOB_CREATED, job)
        self.notify_work()
        return job.id

    # ---------- Claim ----------
    def claim_next(self, worker_id: str) -> Optional[Job]:
        """Atomically move the best eligible job to PROCESSING for ``worker_id``."""
        claim_token = uuid.uuid4().hex
        for attempt in range(1, CLAIM_RETRY_LIMIT + 1):
            try:
                with transaction(self._conn()) as conn:
                    job = repo.claim_one(conn, worker_id, claim_token, self.clock())
                break
            except sqlite3.OperationalError as e:
                if not _is_lock_error(e):
                    raise
                logger.debug("claim attempt %d hit a locked store: %s", attempt, e,
                              extra={"worker_id": worker_id, "event": "claim_contended"})
        else:
            raise StoreUnavailableError(f"could not claim after {CLAIM_RETRY_LIMIT} attempts")

        if job is None:
            return None
        with self._lock:
            self._inflight[job.id] = (claim_token, CancellationToken())
        logger.info(
            "claimed %s attempt %d", job.type.value, job.attempt,
            extra={"job_id": job.id, "event": "claimed", "worker_id": worker_id},
        )
        self._emit(JOB_STARTED, job, worker_id=worker_id)
        return job

    def cancellation_token(self, job_id: str) -> Optional[CancellationToken]:
        with self._lock:
            entry = self._inflight.get(job_id)
        return entry[1] if entry else None

    def _attempt_token(self, job_id: str, claim_token: Optional[str]) -> Optional[CancellationToken]:
        with self._lock:
            entry = self._inflight.get(job_id)
        if entry is None or entry[0] != claim_token:
            return None
        return entry[1]

    def _release(self, job_id: str, claim_token: Any = repo.ANY_CLAIM, terminal: bool = True) -> None:
        """Forget the attempt holding ``claim_token`` and, once terminal, the grace timer."""
        with self._lock:
            entry = self._inflight.get(job_id)
            if entry is not None and (claim_token is repo.ANY_CLAIM or entry[0] == claim_token):
                del self._inflight[job_id]
            timer = self._timers.pop(job_id, None) if terminal else None
        if timer is not None:
            timer.cancel()

    def _owned(self, conn, job_id: str, claim_token: str) -> Job:
        job = repo.fetch_job(conn, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.PROCESSING or job.claim_token != claim_token:
            raise StaleClaimError(job_id)
        return job

    # ---------- Progress ----------
    def report_progress(
        self,
        job_id: str,
        claim_token: str,
        percent: float,
        message: Optional[str] = None,
        processed_count: Optional[int] = None,
        total_count: Optional[int] = None,
    ) -> JobProgress:
        """Persist progress for the owning worker; percent never goes down."""
        with transaction(self._conn()) as conn:
            job = self._owned(conn, job_id, claim_token)
            progress = job.progress.advance(percent, message, processed_count, total_count)
            repo.update_job(
                conn, job_id,
                {"progress": repo.dump_json(progress), "updated_at": to_iso(self.clock())},
                from_statuses=(JobStatus.PROCESSING,),
                claim_token=claim_token,
            )
        job.progress = progress
        self._emit(JOB_PROGRESS, job, progress=progress.to_dict())
        return progress

    # ---------- Terminal transitions ----------
    def _finalize(
        self,
        conn,
        job: Job,
        status: JobStatus,
        now: datetime,
        *,
        result: Optional[JobResult] = None,
        cancellation: Optional[Cancellation] = None,
        claim_token: Any = repo.ANY_CLAIM,
    ) -> None:
        ts = to_iso(now)
        fields = {
            "status": status.value,
            "result": repo.dump_json(result),
            "claim_token": None,
            "not_before": None,
            "cancel_deadline": None,
            "completed_at": ts,
            "updated_at": ts,
        }
        if status == JobStatus.COMPLETED:
            fields["progress"] = repo.dump_json(job.progress.advance(100))
        if cancellation is not None:
            fields["cancellation"] = repo.dump_json(cancellation)
        if not repo.update_job(conn, job.id, fields, from_statuses=(job.status,),
                               claim_token=claim_token):
            raise StaleClaimError(job.id)
        repo.remove_pending(conn, job.id)

    def _apply_failure(
        self, conn, job: Job, error: BaseException, now: datetime, claim_token: Optional[str]
    ) -> Tuple[str, Dict[str, Any]]:
        """Retry or finalize a failed attempt. Returns the event to emit."""
        if job.cancellation is not None:
            partial = getattr(error, "result", None)
            self._finalize(conn, job, JobStatus.CANCELLED, now,
                           result=partial if isinstance(partial, JobResult) else None,
                           claim_token=claim_token)
            return JOB_CANCELLED, {"reason": job.cancellation.reason.value}

        decision = self.retry.decide(job, error, now)
        if decision.retry:
            entry = RetryEntry(
                attempt=job.attempt,
                error=str(error) or type(error).__name__,
                kind=decision.kind,
                failed_at=now,
                scheduled_at=now + timedelta(seconds=decision.delay),
            )
            if not repo.schedule_retry(conn, job, entry, claim_token):
                raise StaleClaimError(job.id)
            logger.warning(
                "attempt %d failed (%s), retrying in %.1fs: %s",
                job.attempt, decision.kind.value, decision.delay, entry.error,
                extra={"job_id": job.id, "event": "retry_scheduled"},
            )
            return JOB_RETRY, {"delay": decision.delay, "error": entry.error,
                               "kind": decision.kind.value}

        result = _failure_result(error)
        self._finalize(conn, job, JobStatus.FAILED, now, result=result, claim_token=claim_token)
        if self.settings.dead_letter_enabled:
            repo.add_dead_letter(conn, job, result.error, now)
        logger.error(
            "failed after %d attempt(s): %s (%s)", job.attempt, result.error, decision.reason,
            extra={"job_id": job.id, "event": "failed"},
        )
        return JOB_FAILED, {"kind": decision.kind.value}

    def _after_transition(
        self, job_id: str, name: str, data: Dict[str, Any], claim_token: Optional[str]
    ) -> Job:
        """Post-commit bookkeeping for the attempt that held ``claim_token``."""
        job = self.get_status(job_id)
        # by now another slot may hold a newer attempt of a retried job
        self._release(job_id, claim_token, terminal=job.is_terminal)
        self._emit(name, job, **data)
        if name == JOB_RETRY:
            self.notify_work()
        if job.is_terminal:
            self._notify_finished()
        return job

    def complete(self, job_id: str, claim_token: str, result: JobResult) -> Job:
        """COMPLETED, or CANCELLED with ``result`` attached if a cancel was requested."""
        now = self.clock()
        with transaction(self._conn()) as conn:
            job = self._owned(conn, job_id, claim_token)
            if job.cancellation is not None:
                status, name = JobStatus.CANCELLED, JOB_CANCELLED
            else:
                status, name = JobStatus.COMPLETED, JOB_COMPLETED
            self._finalize(conn, job, status, now, result=result, claim_token=claim_token)
        logger.info("%s", status.value, extra={"job_id": job_id, "event": status.value})
        return self._after_transition(job_id, name, {}, claim_token)

    def fail(self, job_id: str, claim_token: str, error: BaseException) -> Job:
        """Hand a failed attempt to the retry policy: RETRYING or FAILED."""
        now = self.clock()
        with transaction(self._conn()) as conn:
            job = self._owned(conn, job_id, claim_token)
            name, data = self._apply_failure(conn, job, error, now, claim_token)
        return self._after_transition(job_id, name, data, claim_token)

    def time_out(self, job_id: str, timeout: float) -> Optional[Job]:
        """Fail a PROCESSING job that ran past ``timeout`` seconds."""
        now = self.clock()
        with transaction(self._conn()) as conn:
            job = repo.fetch_job(conn, job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return None
            error = JobTimeoutError(job_id, timeout)
            name, data = self._apply_failure(conn, job, error, now, job.claim_token)
        token = self._attempt_token(job_id, job.claim_token)
        if token is not None:
            token.cancel(CancellationReason.TIMEOUT)
        logger.warning("timed out after %gs", timeout,
                       extra={"job_id": job_id, "event": "timed_out"})
        return self._after_transition(job_id, name, data, job.claim_token)

    # ---------- Cancellation ----------
    def cancel(
        self,
        job_id: str,
        reason: CancellationReason = CancellationReason.USER_REQUESTED,
        method: CancellationMethod = CancellationMethod.COOPERATIVE,
        wait: bool = False,
    ) -> bool:
        """Request cancellation. False if the job is terminal or the request is refused."""
        now = self.clock()
        method = CancellationMethod(method)
        with transaction(self._conn()) as conn:
            job = repo.fetch_job(conn, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            already = job.cancellation is not None and not job.is_terminal
            if already and method != CancellationMethod.FORCED:
                plan = None
            else:
                try:
                    plan = self.coordinator.plan(job, reason, method, now)
                except CancellationRejectedError as e:
                    logger.info("cancel refused: %s", e,
                                extra={"job_id": job_id, "event": "cancel_refused"})
                    return False
                if plan.finalize_now:
                    self._finalize(conn, job, JobStatus.CANCELLED, now,
                                   cancellation=plan.cancellation)
                else:
                    repo.update_job(
                        conn, job_id,
                        {
                            "cancellation": repo.dump_json(plan.cancellation),
                            "cancel_deadline": to_iso(now + timedelta(seconds=plan.grace_period)),
                            "updated_at": to_iso(now),
                        },
                        from_statuses=(JobStatus.PROCESSING,),
                    )

        grace = self.coordinator.grace_period_for(job.type)
        if plan is not None:
            token = self.cancellation_token(job_id)
            if token is not None:
                token.cancel(plan.reason)
            logger.info(
                "cancel requested (%s, %s)", plan.reason.value, plan.method.value,
                extra={"job_id": job_id, "event": "cancel_requested"},
            )
            if plan.finalize_now:
                self._after_transition(job_id, JOB_CANCELLED, {"reason": plan.reason.value},
                                       job.claim_token)
            else:
                self._arm_grace_timer(job_id, plan.grace_period)
        if wait:
            self.wait_for(job_id, timeout=grace + 1.0)
        return True

    def _cancel_many(
        self, job_ids: List[str], reason: CancellationReason, method: CancellationMethod
    ) -> Dict[str, bool]:
        outcome = {}
        for job_id in job_ids:
            try:
                outcome[job_id] = self.cancel(job_id, reason, method)
            except JobNotFoundError:
                # purged between listing and cancelling
                outcome[job_id] = False
        return outcome

    def cancel_owner_jobs(
        self,
        owner_id: str,
        reason: CancellationReason = CancellationReason.USER_REQUESTED,
        method: CancellationMethod = CancellationMethod.COOPERATIVE,
    ) -> Dict[str, bool]:
        """Cancel every active job of one owner. Maps job id to whether it was accepted."""
        outcome = self._cancel_many(repo.list_active_ids(self._conn(), owner_id), reason, method)
        logger.info("bulk cancel for owner %s: %d of %d accepted", owner_id,
                    sum(outcome.values()), len(outcome), extra={"event": "owner_cancelled"})
        return outcome

    def cancel_all_active(
        self,
        reason: CancellationReason = CancellationReason.SYSTEM_SHUTDOWN,
        method: CancellationMethod = CancellationMethod.FORCED,
    ) -> Dict[str, bool]:
        """Cancel every active job in the store, whichever process runs it."""
        outcome = self._cancel_many(repo.list_active_ids(self._conn()), reason, method)
        logger.warning("cancelled %d active job(s) (%s)", sum(outcome.values()),
                       CancellationReason(reason).value, extra={"event": "all_cancelled"})
        return outcome

    def _arm_grace_timer(self, job_id: str, grace_period: float) -> None:
        timer = threading.Timer(grace_period, self._grace_expired, args=(job_id,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(job_id, None)
            self._timers[job_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()

    def _grace_expired(self, job_id: str) -> None:
        try:
            self.force_cancel(job_id)
        except Exception:
            logger.exception("forced cancellation failed", extra={"job_id": job_id,
                                                                  "event": "force_cancel_error"})
        finally:
            self.release_connection()

    def force_cancel(self, job_id: str) -> bool:
        """Finalize a job whose cooperative cancellation was not honoured in time."""
        now = self.clock()
        with transaction(self._conn()) as conn:
            job = repo.fetch_job(conn, job_id)
            if job is None or job.is_terminal or job.cancellation is None:
                return False
            cancellation = Cancellation(
                reason=job.cancellation.reason,
                method=CancellationMethod.FORCED,
                requested_at=job.cancellation.requested_at,
            )
            # the running attempt is abandoned; its late result is refused
            self._finalize(conn, job, JobStatus.CANCELLED, now, cancellation=cancellation)
        logger.warning("cancellation forced after grace period",
                       extra={"job_id": job_id, "event": "cancel_forced"})
        self._after_transition(job_id, JOB_CANCELLED,
                              {"reason": cancellation.reason.value, "forced": True},
                              job.claim_token)
        return True

    # ---------- Health ----------
    def enforce_deadlines(self, max_processing_time: Optional[float] = None) -> Dict[str, int]:
        """Time out overrunning jobs, force expired cancellations, then sync the rest."""
        limit_cap = max_processing_time or self.settings.max_processing_time
        now = self.clock()
        swept = {"timed_out": 0, "forced": 0, "propagated": 0}
        for job in repo.list_processing(self._conn()):
            if job.cancellation is not None:
                if job.cancel_deadline is not None and now >= job.cancel_deadline:
                    if self.force_cancel(job.id):
                        swept["forced"] += 1
                continue
            limit = min(job.config.timeout, limit_cap)
            if job.started_at is not None and (now - job.started_at).total_seconds() > limit:
                if self.time_out(job.id, limit) is not None:
                    swept["timed_out"] += 1
        swept["propagated"] = self.sync_cancellations()
        return swept

    def sync_cancellations(self) -> int:
        """Apply cancellations recorded by other processes to attempts running here.

        A cooperative request cancels the attempt's token and arms a grace timer
        for the time left until the recorded ``cancel_deadline``. An attempt
        whose job was already finalized elsewhere is cancelled and forgotten.
        Returns how many tokens were cancelled.
        """
        with self._lock:
            running = dict(self._inflight)
            armed = set(self._timers)
        if not running:
            return 0
        now = self.clock()
        picked = 0
        for job in repo.list_cancel_requested(self._conn(), list(running)):
            claim_token, token = running[job.id]
            if job.is_terminal:
                if token.cancel(job.cancellation.reason):
                    picked += 1
                self._release(job.id, claim_token)
                continue
            if job.status != JobStatus.PROCESSING or job.claim_token != claim_token:
                continue
            if token.cancel(job.cancellation.reason):
                picked += 1
                logger.info("cancellation picked up from the store",
                            extra={"job_id": job.id, "event": "cancel_propagated"})
            if job.id not in armed and job.cancel_deadline is not None:
                remaining = (job.cancel_deadline - now).total_seconds()
                self._arm_grace_timer(job.id, max(remaining, 0.0))
        return picked

    def recover_orphans(self, worker_prefix: str) -> List[str]:
        """Fail PROCESSING jobs held by a previous run of this pool."""
        with self._lock:
            running = set(self._inflight)
        recovered = []
        for job in repo.list_processing(self._conn()):
            owner = job.picked_by or ""
            if job.id in running or not (owner == worker_prefix or owner.startswith(worker_prefix + "-")):
                continue
            now = self.clock()
            with transaction(self._conn()) as conn:
                current = repo.fetch_job(conn, job.id)
                if current is None or current.status != JobStatus.PROCESSING:
                    continue
                name, data = self._apply_failure(
                    conn, current, WorkerLostError(job.id, owner), now, current.claim_token
                )
            self._after_transition(job.id, name, data, current.claim_token)
            recovered.append(job.id)
        if recovered:
            logger.warning("recovered %d orphaned job(s)", len(recovered),
                           extra={"event": "orphans_recovered"})
        return recovered

    # ---------- Queries ----------
    def get_status(self, job_id: str) -> Job:
        job = repo.fetch_job(self._conn(), job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until the job is terminal or ``timeout`` elapses; returns the latest record."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self.get_status(job_id)
            if job.is_terminal:
                return job
            step = 0.25
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return job
                step = min(step, remaining)
            # other processes do not notify us, so poll as well
            with self._finished:
                self._finished.wait(step)

    def list_jobs(self, status=None, job_type=None, owner_id=None, limit=100, offset=0) -> List[Job]:
        return repo.list_jobs(self._conn(), status, job_type, owner_id, limit, offset)

    def counts(self) -> Dict[str, int]:
        return repo.counts(self._conn())

    def stats(self) -> Dict[str, Any]:
        conn = self._conn()
        counts = repo.counts(conn)
        total = sum(counts.values())
        failure_rate = counts[JobStatus.FAILED.value] / total if total else 0.0
        pending = counts[JobStatus.PENDING.value] + counts[JobStatus.RETRYING.value]
        if failure_rate > 0.1:
            health = "critical"
        elif failure_rate > 0.05 or pending > 100:
            health = "degraded"
        else:
            health = "healthy"
        return {
            "counts": counts,
            "total": total,
            "average_processing_seconds": round(repo.average_processing_seconds(conn), 3),
            "failure_rate": round(failure_rate, 4),
            "dead_letter": len(repo.dlq_list(conn)),
            "health": health,
            "retries": repo.retry_stats(conn),
            "cancellations": repo.cancellation_stats(conn),
        }

    def purge_finished(self, older_than_days: Optional[int] = None) -> int:
        days = older_than_days or self.settings.retention_days
        with transaction(self._conn()) as conn:
            removed = repo.purge_finished(conn, self.clock() - timedelta(days=days))
        logger.info("purged %d finished job(s)", removed, extra={"event": "purged"})
        return removed

    # ---------- Dead letters ----------
    def dead_letters(self) -> List[Dict[str, Any]]:
        return [dict(r) for r in repo.dlq_list(self._conn())]

    def requeue_dead_letter(self, job_id: str) -> str:
        """Submit a dead-lettered job again as a new job linked by ``retry_of``."""
        now = self.clock()
        with transaction(self._conn()) as conn:
            if not repo.dlq_contains(conn, job_id):
                raise JobNotFoundError(job_id)
            old = repo.fetch_job(conn, job_id, with_history=False)
            if old is None:
                raise JobNotFoundError(job_id)
            job = Job(
                id=str(uuid.uuid4()),
                type=old.type,
                payload=old.payload,
                priority=old.priority,
                config=old.config,
                owner_id=old.owner_id,
                retry_of=old.id,
                created_at=now,
                updated_at=now,
            )
            repo.insert_job(conn, job)
            repo.dlq_remove(conn, job_id)
        logger.info("requeued dead letter %s", job_id,
                    extra={"job_id": job.id, "event": "dlq_requeued"})
        self._emit(JOB_CREATED, job, retry_of=job_id)
        self.notify_work()
        return job.id
