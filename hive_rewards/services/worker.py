"""
Polling job worker

Each poll claims at most one job, dispatches it to the handler registered for
its type and acknowledges the outcome. A poll that starts while the previous
one is still running in this process is skipped, so one worker instance never
executes jobs concurrently. A failing job is logged and retried through the
queue; it never stops the loop. About once a minute the worker also
requeues jobs left running by a worker that died mid-run.
"""
import logging
import signal
import threading
import time
from typing import Any, Callable, Dict, Optional

from hive_rewards.config import JobWorkerSettings
from hive_rewards.errors import PermanentJobFailure
from hive_rewards.models.db import Job
from hive_rewards.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], None]

# seconds between sweeps for jobs whose worker died mid-run
RECLAIM_INTERVAL_SECONDS = 60


class JobWorker:
    """
    Worker loop over a JobQueue

    Handlers receive the job payload. Raising marks the attempt failed;
    raising PermanentJobFailure fails the job without further retries.
    """

    def __init__(self, queue: JobQueue, settings: JobWorkerSettings, handlers: Optional[Dict[str, JobHandler]] = None):
        self.queue = queue
        self.settings = settings
        self.instance_id = settings.instance_id
        self.handlers: Dict[str, JobHandler] = dict(handlers or {})
        self.jobs_processed = 0
        self.jobs_failed = 0
        self._cycle_lock = threading.Lock()
        self._stop = threading.Event()
        self._next_reclaim = 0.0

    def register(self, job_type: str, handler: JobHandler) -> None:
        self.handlers[job_type] = handler

    def process_job(self, job: Job) -> bool:
        """Run one claimed job and acknowledge it; returns True on success"""
        logger.info(f"[{self.instance_id}] Processing job {job.id} ({job.type})")
        handler = self.handlers.get(job.type)
        try:
            if handler is None:
                raise PermanentJobFailure(f"Unknown job type: {job.type}", code="unknown_job_type")
            handler(job.payload or {})
        except PermanentJobFailure as e:
            self.jobs_failed += 1
            self.queue.mark_failed(job.id, e.message, permanent=True)
            return False
        except Exception as e:
            self.jobs_failed += 1
            logger.error(f"[{self.instance_id}] Job {job.id} failed: {e}", exc_info=True)
            self.queue.mark_failed(job.id, str(e) or e.__class__.__name__)
            return False

        self.queue.mark_succeeded(job.id)
        self.jobs_processed += 1
        return True

    def reclaim_stale(self) -> int:
        """Requeue jobs whose lock is older than JOB_STALE_LOCK_MINUTES"""
        self._next_reclaim = time.monotonic() + RECLAIM_INTERVAL_SECONDS
        return self.queue.reclaim_stale(self.settings.stale_lock_minutes)

    def run_cycle(self) -> int:
        """
        Claim and process at most one job

        Returns:
            1 if a job was processed successfully, otherwise 0
        """
        if not self._cycle_lock.acquire(blocking=False):
            return 0

        try:
            if time.monotonic() >= self._next_reclaim:
                self.reclaim_stale()
            job = self.queue.claim(self.instance_id)
            if job is None:
                return 0
            return 1 if self.process_job(job) else 0
        except Exception as e:
            logger.error(f"[{self.instance_id}] Worker cycle error: {e}", exc_info=True)
            return 0
        finally:
            self._cycle_lock.release()

    def start(self, install_signal_handlers: bool = True) -> None:
        """
        Main worker loop; blocks until stop() is called or a signal arrives
        """
        if not self.settings.enabled:
            logger.info("Job worker disabled (JOB_WORKER_ENABLED=false)")
            return

        if install_signal_handlers:
            self._setup_signal_handlers()

        interval = self.settings.poll_interval_ms / 1000.0
        logger.info(f"[{self.instance_id}] Started, polling every {interval:.1f}s")

        self._stop.clear()
        while not self._stop.is_set():
            self.run_cycle()
            self._stop.wait(interval)

        logger.info(
            f"[{self.instance_id}] Shutting down. "
            f"Processed: {self.jobs_processed}, Failed: {self.jobs_failed}"
        )

    def stop(self) -> None:
        self._stop.set()

    def _setup_signal_handlers(self) -> None:
        """Graceful shutdown on SIGTERM/SIGINT"""
        def shutdown_handler(signum, frame):
            logger.info(f"[{self.instance_id}] Received signal {signum}, shutting down...")
            self.stop()

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)
