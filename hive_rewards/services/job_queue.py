"""
Durable job queue backed by the jobs table

Producers enqueue work; workers claim one eligible job at a time. Claiming is
a single UPDATE whose target row is chosen by a FOR UPDATE SKIP LOCKED
subquery, so concurrent workers never receive the same job. Failed jobs are
retried with exponential backoff until their attempts run out.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

from hive_rewards.db import Database
from hive_rewards.errors import ConflictError, NotFoundError
from hive_rewards.models.contribution import JobStatus
from hive_rewards.models.db import Job, utcnow

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 300


def backoff_seconds(attempts: int) -> int:
    """Delay before the next run: 2^attempts seconds, capped at 5 minutes"""
    return min(2 ** attempts, MAX_BACKOFF_SECONDS)


class JobQueue:
    """
    Job store with enqueue/claim/ack/fail semantics

    Job types:
    - 'rewards_pool_transfer' → move a forfeited stake to the rewards wallet

    Other subsystems may register their own types with the worker.
    """

    def __init__(self, database: Database, default_max_attempts: int = 5):
        self.database = database
        self.default_max_attempts = default_max_attempts

    def enqueue(
            self,
            job_type: str,
            payload: Dict[str, Any],
            max_attempts: Optional[int] = None,
            run_at=None
    ) -> str:
        """
        Add a job to the queue

        Example:
            queue.enqueue('rewards_pool_transfer', {'ledger_entry_id': '...'})

        Returns:
            The new job id
        """
        now = utcnow()
        job = Job(
            type=job_type,
            payload=payload,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or self.default_max_attempts,
            run_at=run_at or now,
            created_at=now,
            updated_at=now
        )
        with self.database.session() as session:
            session.add(job)
            session.flush()
            job_id = job.id

        logger.info(f"Job enqueued: {job_id} ({job_type})")
        return job_id

    def claim(self, worker_id: str) -> Optional[Job]:
        """
        Atomically claim the oldest eligible pending job

        Rows locked by another transaction are skipped rather than waited on.

        Returns:
            The claimed job, now 'running' and tagged with worker_id, or None
        """
        now = utcnow()
        # aliased so the subquery is not correlated to the UPDATE target
        pending = aliased(Job, name="pending_job")
        candidate = (
            select(pending.id)
            .where(pending.status == JobStatus.PENDING.value, pending.run_at <= now)
            .order_by(pending.run_at.asc(), pending.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(Job)
            .where(Job.id == candidate)
            .values(
                status=JobStatus.RUNNING.value,
                locked_at=now,
                locked_by=worker_id,
                updated_at=now
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )

        with self.database.session() as session:
            job_id = session.execute(stmt).scalar_one_or_none()
            if job_id is None:
                return None
            job = session.get(Job, job_id)

        logger.debug(f"Job claimed: {job.id} ({job.type}) by {worker_id}")
        return job

    def mark_succeeded(self, job_id: str) -> None:
        """Set a job succeeded and clear its lock"""
        with self.database.session() as session:
            session.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(
                    status=JobStatus.SUCCEEDED.value,
                    locked_at=None,
                    locked_by=None,
                    last_error=None,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
        logger.info(f"Job succeeded: {job_id}")

    def mark_failed(self, job_id: str, error: str, permanent: bool = False) -> Job:
        """
        Record a failed attempt

        The job goes back to 'pending' with a backoff delay while attempts
        remain; otherwise (or when permanent is set) it becomes 'failed'.

        Returns:
            The updated job
        """
        now = utcnow()
        with self.database.session() as session:
            job = session.get(Job, job_id, with_for_update=True)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", code="job_not_found")

            job.attempts += 1
            job.last_error = error
            job.locked_at = None
            job.locked_by = None
            job.updated_at = now

            if permanent or job.attempts >= job.max_attempts:
                job.status = JobStatus.FAILED.value
                logger.error(f"Job permanently failed: {job_id} after {job.attempts} attempts: {error}")
            else:
                delay = backoff_seconds(job.attempts)
                job.status = JobStatus.PENDING.value
                job.run_at = now + timedelta(seconds=delay)
                logger.warning(
                    f"Job failed, will retry: {job_id} attempt {job.attempts}/{job.max_attempts} "
                    f"in {delay}s: {error}"
                )
            return job

    def reclaim_stale(self, older_than_minutes: int = 15) -> int:
        """
        Return jobs stuck in 'running' to the queue

        A job locked before the cutoff belongs to a worker that died mid-run.
        The lost run counts as an attempt; jobs with attempts left become
        pending again, the rest fail.

        Returns:
            Number of jobs reclaimed
        """
        now = utcnow()
        cutoff = now - timedelta(minutes=older_than_minutes)
        with self.database.session() as session:
            jobs = session.scalars(
                select(Job)
                .where(Job.status == JobStatus.RUNNING.value, Job.locked_at < cutoff)
                .with_for_update(skip_locked=True)
            ).all()

            for job in jobs:
                logger.warning(f"Reclaiming job {job.id} ({job.type}) locked by {job.locked_by} at {job.locked_at}")
                job.attempts += 1
                job.last_error = f"Lock expired (held by {job.locked_by})"
                job.locked_at = None
                job.locked_by = None
                job.updated_at = now
                if job.attempts >= job.max_attempts:
                    job.status = JobStatus.FAILED.value
                else:
                    job.status = JobStatus.PENDING.value
                    job.run_at = now
            reclaimed = len(jobs)

        if reclaimed:
            logger.info(f"Reclaimed {reclaimed} stale jobs")
        return reclaimed

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.database.session() as session:
            return session.get(Job, job_id)

    def get_jobs_by_status(self, status: Optional[str] = None, limit: int = 50) -> List[Job]:
        """Newest jobs first, optionally filtered by status (for the admin surface)"""
        stmt = select(Job)
        if status:
            stmt = stmt.where(Job.status == JobStatus(status).value)
        stmt = stmt.order_by(Job.created_at.desc()).limit(limit)
        with self.database.session() as session:
            return list(session.scalars(stmt).all())

    def retry(self, job_id: str) -> Job:
        """
        Requeue a permanently failed job with a fresh attempt budget

        Raises:
            NotFoundError: If the job does not exist
            ConflictError: If the job is not in the 'failed' state
        """
        with self.database.session() as session:
            job = session.get(Job, job_id, with_for_update=True)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found", code="job_not_found")
            if job.status != JobStatus.FAILED.value:
                raise ConflictError(
                    f"Can only retry failed jobs, current status: {job.status}",
                    code="job_not_failed"
                )

            now = utcnow()
            job.status = JobStatus.PENDING.value
            job.attempts = 0
            job.last_error = None
            job.run_at = now
            job.locked_at = None
            job.locked_by = None
            job.updated_at = now

        logger.info(f"Job reset for retry: {job_id} ({job.type})")
        return job

    def cleanup_old_jobs(self, older_than_days: int = 7) -> int:
        """Delete succeeded jobs last updated before the retention window"""
        cutoff = utcnow() - timedelta(days=older_than_days)
        try:
            with self.database.session() as session:
                result = session.execute(
                    delete(Job)
                    .where(Job.status == JobStatus.SUCCEEDED.value, Job.updated_at <= cutoff)
                    .execution_options(synchronize_session=False)
                )
                deleted = result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Database error cleaning up jobs: {e}")
            raise

        if deleted:
            logger.info(f"Cleaned up {deleted} succeeded jobs older than {older_than_days} days")
        return deleted
