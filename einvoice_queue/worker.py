import logging
import signal
import threading
import time
from typing import Dict, List, Optional

from .cancellation import CancellationToken
from .errors import FatalJobError, StaleClaimError, StoreUnavailableError
from .models import CancellationReason, Job, JobResult

logger = logging.getLogger(__name__)


class WorkerPool:
    """Fixed number of slots, each claiming and running one job at a time."""

    def __init__(
        self,
        queue,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        health_check_interval: Optional[float] = None,
        max_processing_time: Optional[float] = None,
        cancel_check_interval: Optional[float] = None,
        name: str = "worker",
    ):
        settings = queue.settings
        self.queue = queue
        self.concurrency = concurrency or settings.concurrency
        self.poll_interval = poll_interval or settings.poll_interval
        self.health_check_interval = health_check_interval or settings.health_check_interval
        self.max_processing_time = max_processing_time or settings.max_processing_time
        self.cancel_check_interval = cancel_check_interval or settings.cancel_check_interval
        self.name = name
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._current: Dict[str, str] = {}
        self._current_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def active_jobs(self) -> Dict[str, str]:
        """slot name -> job id currently executing in it."""
        with self._current_lock:
            return dict(self._current)

    def start(self) -> None:
        if self.running:
            raise RuntimeError(f"pool {self.name} is already running")
        self._stop.clear()
        recovered = self.queue.recover_orphans(self.name)
        if recovered:
            logger.warning("recovered %d job(s) left by a previous run", len(recovered),
                           extra={"worker_id": self.name, "event": "orphans_recovered"})
        self._threads = []
        for i in range(self.concurrency):
            slot = f"{self.name}-{i + 1}"
            t = threading.Thread(target=self._slot_loop, args=(slot,), name=slot, daemon=True)
            t.start()
            self._threads.append(t)
            logger.info("started %s", slot, extra={"worker_id": slot, "event": "slot_started"})
        t = threading.Thread(target=self._health_loop, name=f"{self.name}-health", daemon=True)
        t.start()
        self._threads.append(t)

    def request_stop(self) -> None:
        self._stop.set()
        self.queue.notify_work()

    def stop(self, timeout: Optional[float] = None, cancel_running: bool = False) -> None:
        """Stop claiming; running jobs finish first unless ``cancel_running``."""
        if cancel_running:
            for job_id in self.active_jobs.values():
                self.queue.cancel(job_id, CancellationReason.SYSTEM_SHUTDOWN)
        self.request_stop()
        for t in self._threads:
            t.join(timeout)
        logger.info("all workers stopped", extra={"worker_id": self.name, "event": "pool_stopped"})

    def run_forever(self) -> None:
        self.start()
        try:
            while not self._stop.wait(0.5):
                pass
        finally:
            self.stop()

    def check_health(self) -> Dict[str, int]:
        swept = self.queue.enforce_deadlines(self.max_processing_time)
        if any(swept.values()):
            logger.warning("health check: %s", swept,
                           extra={"worker_id": self.name, "event": "health_check"})
        return swept

    # ---------- Threads ----------
    def _slot_loop(self, slot: str) -> None:
        try:
            while not self._stop.is_set():
                generation = self.queue.work_generation
                try:
                    job = self.queue.claim_next(slot)
                except StoreUnavailableError as e:
                    logger.warning("store unavailable, backing off: %s", e,
                                   extra={"worker_id": slot, "event": "claim_backoff"})
                    self._stop.wait(self.poll_interval)
                    continue
                except Exception:
                    logger.exception("claim failed", extra={"worker_id": slot, "event": "claim_error"})
                    self._stop.wait(self.poll_interval)
                    continue

                if job is None:
                    self.queue.wait_for_work(generation, self.poll_interval)
                    continue
                self._run(slot, job)
        finally:
            self.queue.release_connection()
            logger.info("%s stopped", slot, extra={"worker_id": slot, "event": "slot_stopped"})

    def _health_loop(self) -> None:
        # cancellations from other processes are polled more often than the full sweep
        tick = min(self.cancel_check_interval, self.health_check_interval)
        next_sweep = time.monotonic() + self.health_check_interval
        try:
            while not self._stop.wait(tick):
                try:
                    if time.monotonic() >= next_sweep:
                        next_sweep = time.monotonic() + self.health_check_interval
                        self.check_health()
                    else:
                        self.queue.sync_cancellations()
                except Exception:
                    logger.exception("health check failed",
                                     extra={"worker_id": self.name, "event": "health_error"})
        finally:
            self.queue.release_connection()

    def _run(self, slot: str, job: Job) -> None:
        claim_token = job.claim_token
        token = self.queue.cancellation_token(job.id) or CancellationToken()
        log_extra = {"job_id": job.id, "worker_id": slot}
        with self._current_lock:
            self._current[slot] = job.id

        def report_progress(percent, message=None, processed_count=None, total_count=None):
            self.queue.report_progress(job.id, claim_token, percent, message,
                                       processed_count, total_count)

        try:
            try:
                processor = self.queue.registry.get(job.type)
                result = processor.execute(job, report_progress, token)
            except StaleClaimError:
                logger.info("claim lost during execution, attempt abandoned",
                            extra={**log_extra, "event": "abandoned"})
                return
            except Exception as e:
                logger.info("execution raised %s: %s", type(e).__name__, e,
                            extra={**log_extra, "event": "execute_error"})
                self.queue.fail(job.id, claim_token, e)
                return

            if result is None:
                result = JobResult(success=True)
            if result.success or token.is_cancelled:
                self.queue.complete(job.id, claim_token, result)
            else:
                self.queue.fail(job.id, claim_token, FatalJobError(
                    result.error or "processor reported failure", result=result
                ))
        except StaleClaimError:
            # forced cancel, timeout or orphan recovery already moved the job
            logger.info("result discarded, claim no longer held",
                        extra={**log_extra, "event": "result_discarded"})
        except Exception:
            logger.exception("could not record outcome", extra={**log_extra, "event": "record_error"})
        finally:
            with self._current_lock:
                self._current.pop(slot, None)


def setup_signal_handlers(pool: WorkerPool):
    def _handler(signum, frame):
        logger.info("received signal %s, stopping workers", signum,
                    extra={"worker_id": pool.name, "event": "signal"})
        pool.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # only the main thread may install handlers
            logger.debug("cannot install handler for %s outside the main thread", sig)
