"""
Durable job queue backed by SQLAlchemy.

Jobs move waiting -> active -> completed | failed. A worker claims a job with
an atomic compare-and-set on the state column and receives a lease token;
every later mutation of that attempt must present the token, so at most one
worker can drive a job at a time. Failed attempts are re-queued with
exponential backoff until max_attempts is reached.

Logs only job_id, state, attempt - never payloads.
"""
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy import func

from deployer.core.metrics import metrics
from deployer.db.database import Database
from deployer.db.models import DeployJob, DeployJobLog
from deployer.schemas.deploy import JobState

logger = logging.getLogger(__name__)

QUEUE_NAME = "build-and-deploy"
STALLED_REASON = "job stalled more than allowable limit"


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff: delay_ms * multiplier ** (attempt - 1)."""
    delay_ms: int = 5000
    multiplier: float = 2.0

    def delay_for(self, attempts_made: int) -> int:
        return int(self.delay_ms * (self.multiplier ** max(0, attempts_made - 1)))


@dataclass(frozen=True)
class Retention:
    """How many finished jobs to keep, and for how long. None = unbounded."""
    max_completed: Optional[int] = 100
    max_failed: Optional[int] = 50
    completed_max_age_ms: Optional[int] = 24 * 3600 * 1000
    failed_max_age_ms: Optional[int] = None


@dataclass(frozen=True)
class JobOptions:
    max_attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    retention: Retention = field(default_factory=Retention)

    @classmethod
    def from_settings(cls, settings) -> "JobOptions":
        return cls(
            max_attempts=settings.max_attempts,
            backoff=Backoff(settings.backoff_delay_ms, settings.backoff_multiplier),
            retention=Retention(
                max_completed=settings.keep_completed,
                max_failed=settings.keep_failed,
                completed_max_age_ms=settings.completed_max_age_s * 1000,
                failed_max_age_ms=(
                    settings.failed_max_age_s * 1000
                    if settings.failed_max_age_s is not None else None
                ),
            ),
        )


@dataclass
class ClaimedJob:
    """An attempt handed to a worker."""
    id: str
    data: dict[str, Any]
    attempt: int
    max_attempts: int
    token: str

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class JobSnapshot:
    """Read-only view of a job for pollers."""
    id: str
    name: str
    data: dict[str, Any]
    state: JobState
    progress: int
    logs: list[str]
    result: Optional[dict[str, Any]]
    failed_reason: Optional[str]
    attempts_made: int
    max_attempts: int
    timestamp: int
    processed_on: Optional[int]
    finished_on: Optional[int]


def _model_to_snapshot(model: DeployJob, logs: list[str]) -> JobSnapshot:
    return JobSnapshot(
        id=model.id,
        name=model.name,
        data=json.loads(model.data) if model.data else {},
        state=JobState(model.state),
        progress=model.progress or 0,
        logs=logs,
        result=json.loads(model.result) if model.result else None,
        failed_reason=model.failed_reason,
        attempts_made=model.attempts_made or 0,
        max_attempts=model.max_attempts,
        timestamp=model.timestamp,
        processed_on=model.processed_on,
        finished_on=model.finished_on,
    )


class JobQueue:
    """SQL-backed durable queue with leases, retries and retention."""

    def __init__(
        self,
        database: Database,
        default_options: Optional[JobOptions] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._database = database
        self.default_options = default_options or JobOptions()
        self._clock = clock or time.time

    def _now(self) -> int:
        return int(round(self._clock() * 1000))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def init(self) -> None:
        self._database.init()
        logger.info(f"queue_ready name={QUEUE_NAME}")

    def close(self) -> None:
        self._database.close()
        logger.info(f"queue_closed name={QUEUE_NAME}")

    # -------------------------------------------------------------------------
    # Producer side
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        data: dict[str, Any],
        options: Optional[JobOptions] = None,
        name: str = "deploy",
    ) -> str:
        """Persist a new waiting job and return its id."""
        options = options or self.default_options
        if options.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        job_id = str(uuid.uuid4())
        now = self._now()

        db = self._database.session()
        try:
            db.add(DeployJob(
                id=job_id,
                name=name,
                data=json.dumps(data),
                state=JobState.WAITING.value,
                progress=0,
                attempts_made=0,
                max_attempts=options.max_attempts,
                backoff_delay_ms=options.backoff.delay_ms,
                backoff_multiplier=options.backoff.multiplier,
                keep_completed=options.retention.max_completed,
                keep_failed=options.retention.max_failed,
                completed_max_age_ms=options.retention.completed_max_age_ms,
                failed_max_age_ms=options.retention.failed_max_age_ms,
                timestamp=now,
                available_at=now,
            ))
            db.commit()
        finally:
            db.close()

        logger.info(f"job_enqueued job_id={job_id} max_attempts={options.max_attempts}")
        metrics.inc("deploy_jobs_enqueued_total")
        return job_id

    # -------------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------------

    def claim(self, worker_id: str, lease_ms: int) -> Optional[ClaimedJob]:
        """
        Atomically take the oldest due waiting job.

        Returns None when nothing is due. Two workers racing for the same row
        both issue the conditional update; only one sees rowcount == 1.
        """
        now = self._now()
        db = self._database.session()
        try:
            candidates = (
                db.query(DeployJob.id)
                .filter(
                    DeployJob.state == JobState.WAITING.value,
                    DeployJob.available_at <= now,
                )
                .order_by(DeployJob.available_at, DeployJob.timestamp)
                .limit(5)
                .all()
            )

            for (job_id,) in candidates:
                token = uuid.uuid4().hex
                updated = (
                    db.query(DeployJob)
                    .filter(DeployJob.id == job_id, DeployJob.state == JobState.WAITING.value)
                    .update(
                        {
                            DeployJob.state: JobState.ACTIVE.value,
                            DeployJob.lease_token: token,
                            DeployJob.lease_owner: worker_id,
                            DeployJob.lease_expires_at: now + lease_ms,
                            DeployJob.attempts_made: DeployJob.attempts_made + 1,
                            DeployJob.progress: 0,
                            DeployJob.processed_on: now,
                        },
                        synchronize_session=False,
                    )
                )
                db.commit()
                if updated != 1:
                    continue

                model = db.query(DeployJob).filter(DeployJob.id == job_id).first()
                logger.info(
                    f"job_claimed job_id={job_id} worker={worker_id} "
                    f"attempt={model.attempts_made}/{model.max_attempts}"
                )
                return ClaimedJob(
                    id=model.id,
                    data=json.loads(model.data),
                    attempt=model.attempts_made,
                    max_attempts=model.max_attempts,
                    token=token,
                )
            return None
        finally:
            db.close()

    def _owned(self, db, job_id: str, token: str):
        return db.query(DeployJob).filter(
            DeployJob.id == job_id,
            DeployJob.state == JobState.ACTIVE.value,
            DeployJob.lease_token == token,
        )

    def extend_lease(self, job_id: str, token: str, lease_ms: int) -> bool:
        """Heartbeat. False means the lease was lost."""
        db = self._database.session()
        try:
            updated = self._owned(db, job_id, token).update(
                {DeployJob.lease_expires_at: self._now() + lease_ms},
                synchronize_session=False,
            )
            db.commit()
            return updated == 1
        finally:
            db.close()

    def update_progress(self, job_id: str, token: str, value: int) -> bool:
        """Raise progress to value (0-100). Never lowers it."""
        value = max(0, min(100, int(value)))
        db = self._database.session()
        try:
            updated = (
                self._owned(db, job_id, token)
                .filter(DeployJob.progress < value)
                .update({DeployJob.progress: value}, synchronize_session=False)
            )
            db.commit()
            return updated == 1
        finally:
            db.close()

    def append_log(self, job_id: str, token: str, line: str) -> bool:
        """Append one line to the job log if the caller still owns the job."""
        db = self._database.session()
        try:
            if self._owned(db, job_id, token).first() is None:
                return False
            db.add(DeployJobLog(job_id=job_id, line=line, created_at=self._now()))
            db.commit()
            return True
        finally:
            db.close()

    def complete(self, job_id: str, token: str, result: dict[str, Any]) -> bool:
        """Mark the attempt successful and store its result."""
        now = self._now()
        db = self._database.session()
        try:
            model = self._owned(db, job_id, token).first()
            if model is None:
                logger.warning(f"complete_rejected job_id={job_id} reason=lease_lost")
                return False

            model.state = JobState.COMPLETED.value
            model.result = json.dumps(result)
            model.finished_on = now
            model.lease_token = None
            model.lease_expires_at = None
            db.commit()

            duration_ms = now - (model.processed_on or now)
            logger.info(f"job_completed job_id={job_id} duration_ms={duration_ms}")
            metrics.inc("deploy_jobs_completed_total")

            self._apply_retention(db, JobState.COMPLETED, model.keep_completed, model.completed_max_age_ms, now)
            return True
        finally:
            db.close()

    def fail(
        self,
        job_id: str,
        token: str,
        reason: str,
        retry: bool = True,
    ) -> Optional[JobState]:
        """
        Report a failed attempt.

        Returns WAITING when a retry was scheduled, FAILED when attempts are
        exhausted (or retry is False), None when the caller no longer owns
        the job.
        """
        db = self._database.session()
        try:
            model = self._owned(db, job_id, token).first()
            if model is None:
                logger.warning(f"fail_rejected job_id={job_id} reason=lease_lost")
                return None
            return self._fail_model(db, model, reason, self._now(), retry=retry)
        finally:
            db.close()

    def _fail_model(
        self,
        db,
        model: DeployJob,
        reason: str,
        now: int,
        retry: bool = True,
    ) -> JobState:
        model.lease_token = None
        model.lease_expires_at = None

        if retry and model.attempts_made < model.max_attempts:
            delay = Backoff(model.backoff_delay_ms, model.backoff_multiplier).delay_for(
                model.attempts_made
            )
            model.state = JobState.WAITING.value
            model.available_at = now + delay
            db.commit()
            logger.info(
                f"job_retry_scheduled job_id={model.id} "
                f"attempt={model.attempts_made}/{model.max_attempts} delay_ms={delay}"
            )
            metrics.inc("deploy_jobs_retried_total")
            return JobState.WAITING

        model.state = JobState.FAILED.value
        model.failed_reason = reason
        model.finished_on = now
        db.commit()
        logger.info(f"job_failed job_id={model.id} attempts={model.attempts_made}")
        metrics.inc("deploy_jobs_failed_total")

        self._apply_retention(db, JobState.FAILED, model.keep_failed, model.failed_max_age_ms, now)
        return JobState.FAILED

    def release(self, job_id: str, token: str) -> bool:
        """Give an abandoned attempt back to the queue without consuming it."""
        db = self._database.session()
        try:
            model = self._owned(db, job_id, token).first()
            if model is None:
                return False
            model.state = JobState.WAITING.value
            model.attempts_made = max(0, model.attempts_made - 1)
            model.available_at = self._now()
            model.lease_token = None
            model.lease_owner = None
            model.lease_expires_at = None
            db.commit()
            logger.info(f"job_released job_id={job_id}")
            return True
        finally:
            db.close()

    def _stalled_jobs(self, db, now: int) -> list[tuple[str, str]]:
        rows = (
            db.query(DeployJob.id, DeployJob.lease_token)
            .filter(
                DeployJob.state == JobState.ACTIVE.value,
                DeployJob.lease_expires_at < now,
            )
            .all()
        )
        return [(job_id, token) for job_id, token in rows]

    def recover_stalled(self) -> int:
        """
        Treat active jobs with an expired lease as failed attempts.

        Each stalled row is taken over with a conditional update on the lease
        token it was read with, so a job that was meanwhile recovered and
        claimed by another worker is left alone.
        """
        now = self._now()
        db = self._database.session()
        recovered = 0
        try:
            for job_id, stale_token in self._stalled_jobs(db, now):
                recovery_token = uuid.uuid4().hex
                updated = (
                    self._owned(db, job_id, stale_token)
                    .filter(DeployJob.lease_expires_at < now)
                    .update({DeployJob.lease_token: recovery_token}, synchronize_session=False)
                )
                db.commit()
                if updated != 1:
                    continue

                model = self._owned(db, job_id, recovery_token).first()
                logger.warning(f"job_stalled job_id={job_id} owner={model.lease_owner}")
                metrics.inc("deploy_jobs_stalled_total")
                self._fail_model(db, model, STALLED_REASON, now)
                recovered += 1
            return recovered
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def _delete_jobs(self, db, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        db.query(DeployJobLog).filter(DeployJobLog.job_id.in_(job_ids)).delete(
            synchronize_session=False
        )
        deleted = db.query(DeployJob).filter(DeployJob.id.in_(job_ids)).delete(
            synchronize_session=False
        )
        db.commit()
        return deleted

    def _apply_retention(
        self,
        db,
        state: JobState,
        keep: Optional[int],
        max_age_ms: Optional[int],
        now: int,
    ) -> int:
        doomed: set[str] = set()
        finished = db.query(DeployJob.id).filter(DeployJob.state == state.value)

        if keep is not None:
            overflow = (
                finished.order_by(DeployJob.finished_on.desc(), DeployJob.timestamp.desc())
                .offset(keep)
                .all()
            )
            doomed.update(row[0] for row in overflow)

        if max_age_ms is not None:
            expired = finished.filter(DeployJob.finished_on < now - max_age_ms).all()
            doomed.update(row[0] for row in expired)

        deleted = self._delete_jobs(db, list(doomed))
        if deleted > 0:
            logger.info(f"retention_pruned state={state.value} deleted={deleted}")
        return deleted

    def prune(self) -> int:
        """Apply the queue's default retention to all finished jobs."""
        retention = self.default_options.retention
        now = self._now()
        db = self._database.session()
        try:
            return (
                self._apply_retention(db, JobState.COMPLETED, retention.max_completed, retention.completed_max_age_ms, now)
                + self._apply_retention(db, JobState.FAILED, retention.max_failed, retention.failed_max_age_ms, now)
            )
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _log_lines(self, db, job_id: str) -> list[str]:
        rows = (
            db.query(DeployJobLog.line)
            .filter(DeployJobLog.job_id == job_id)
            .order_by(DeployJobLog.id)
            .all()
        )
        return [row[0] for row in rows]

    def get(self, job_id: str) -> Optional[JobSnapshot]:
        """Get a job by ID, including its logs."""
        db = self._database.session()
        try:
            model = db.query(DeployJob).filter(DeployJob.id == job_id).first()
            if model is None:
                return None
            return _model_to_snapshot(model, self._log_lines(db, job_id))
        finally:
            db.close()

    def get_logs(self, job_id: str) -> Optional[list[str]]:
        """Get a job's log lines, or None if the job does not exist."""
        db = self._database.session()
        try:
            exists = db.query(DeployJob.id).filter(DeployJob.id == job_id).first()
            if exists is None:
                return None
            return self._log_lines(db, job_id)
        finally:
            db.close()

    def counts(self) -> dict[str, int]:
        """Number of jobs per state."""
        db = self._database.session()
        try:
            counts = {state.value: 0 for state in JobState}
            rows = (
                db.query(DeployJob.state, func.count(DeployJob.id))
                .group_by(DeployJob.state)
                .all()
            )
            for state, count in rows:
                counts[state] = count
            return counts
        finally:
            db.close()
