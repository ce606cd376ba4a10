"""
Worker pool: pulls deploy jobs from the queue and runs pipelines.

A fixed number of asyncio slots share one process. Each slot claims a job,
runs its pipeline to completion, then reports success or failure back to the
queue. The queue's lease decides ownership, so several worker processes can
share one database.
"""
import asyncio
import logging
import socket
import uuid
from typing import Optional

from deployer.core.commands import CancelToken
from deployer.core.errors import DeployError, PipelineCancelled, SubmissionValidationError
from deployer.core.logging import job_logger
from deployer.core.pipeline import DeployPipeline, JobReporter
from deployer.core.queue import ClaimedJob, JobQueue
from deployer.schemas.deploy import JobState

logger = logging.getLogger(__name__)

HOUSEKEEPING_INTERVAL_S = 30.0


class WorkerPool:
    """Runs up to `concurrency` deploy pipelines at a time."""

    def __init__(
        self,
        queue: JobQueue,
        pipeline: DeployPipeline,
        concurrency: int = 2,
        poll_interval_s: float = 1.0,
        lease_ms: int = 60_000,
        shutdown_grace_s: float = 30.0,
        housekeeping_interval_s: float = HOUSEKEEPING_INTERVAL_S,
        worker_id: Optional[str] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.pipeline = pipeline
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self.lease_ms = lease_ms
        self.shutdown_grace_s = shutdown_grace_s
        self.housekeeping_interval_s = housekeeping_interval_s
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self._stopping = asyncio.Event()
        self._running: dict[str, CancelToken] = {}

    @classmethod
    def from_settings(cls, queue: JobQueue, pipeline: DeployPipeline, settings) -> "WorkerPool":
        return cls(
            queue=queue,
            pipeline=pipeline,
            concurrency=settings.concurrency,
            poll_interval_s=settings.poll_interval_s,
            lease_ms=settings.lease_ms,
            shutdown_grace_s=settings.shutdown_grace_s,
        )

    @property
    def active_jobs(self) -> list[str]:
        return list(self._running)

    def stop(self) -> None:
        """Stop claiming new jobs. run() returns once in-flight jobs settle."""
        if not self._stopping.is_set():
            logger.info(f"worker_stopping worker={self.worker_id} active={len(self._running)}")
        self._stopping.set()

    async def run(self) -> None:
        """Serve jobs until stop() is called."""
        logger.info(f"worker_started worker={self.worker_id} concurrency={self.concurrency}")
        slots = [asyncio.create_task(self._slot(n)) for n in range(self.concurrency)]
        housekeeping = asyncio.create_task(self._housekeeping())

        try:
            await self._stopping.wait()

            # Let running pipelines finish within the grace period
            _, pending = await asyncio.wait(slots, timeout=self.shutdown_grace_s)
            if pending:
                logger.warning(
                    f"worker_abandoning_jobs worker={self.worker_id} jobs={len(self._running)}"
                )
                for token in list(self._running.values()):
                    token.cancel("worker shutting down")
                await asyncio.wait(pending)
        finally:
            housekeeping.cancel()
            for slot in slots:
                slot.cancel()
            await asyncio.gather(housekeeping, *slots, return_exceptions=True)
            logger.info(f"worker_stopped worker={self.worker_id}")

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_s)
        except asyncio.TimeoutError:
            pass

    async def _slot(self, slot_no: int) -> None:
        while not self._stopping.is_set():
            try:
                job = await asyncio.to_thread(self.queue.claim, self.worker_id, self.lease_ms)
            except Exception:
                logger.exception(f"claim_failed worker={self.worker_id} slot={slot_no}")
                await self._idle()
                continue

            if job is None:
                await self._idle()
                continue

            await self.process(job)

    async def _heartbeat(self, job: ClaimedJob, cancel: CancelToken) -> None:
        interval = max(self.lease_ms / 3000, 0.05)
        while True:
            await asyncio.sleep(interval)
            owned = await asyncio.to_thread(
                self.queue.extend_lease, job.id, job.token, self.lease_ms
            )
            if not owned:
                logger.warning(f"lease_lost job_id={job.id}")
                cancel.cancel("lease lost")
                return

    async def process(self, job: ClaimedJob) -> Optional[JobState]:
        """
        Run one claimed attempt and report its outcome.

        Returns the job's resulting state (COMPLETED, WAITING for a scheduled
        retry, FAILED), or None if the attempt was abandoned.
        """
        log = job_logger(logger, job.id, attempt=job.attempt, worker_id=self.worker_id)
        cancel = CancelToken()
        self._running[job.id] = cancel
        reporter = JobReporter(self.queue, job)
        heartbeat = asyncio.create_task(self._heartbeat(job, cancel))

        try:
            result = await self.pipeline.run(job, reporter, cancel)
        except PipelineCancelled:
            released = await asyncio.to_thread(self.queue.release, job.id, job.token)
            log.info(f"job_abandoned job_id={job.id} released={released}")
            return None
        except SubmissionValidationError as e:
            # Retrying cannot fix a malformed payload
            return await asyncio.to_thread(
                self.queue.fail, job.id, job.token, str(e), False
            )
        except DeployError as e:
            return await asyncio.to_thread(self.queue.fail, job.id, job.token, str(e))
        except Exception as e:
            log.exception(f"pipeline_error job_id={job.id}")
            reason = str(e) or f"Unexpected error: {type(e).__name__}"
            return await asyncio.to_thread(self.queue.fail, job.id, job.token, reason)
        finally:
            heartbeat.cancel()
            self._running.pop(job.id, None)

        completed = await asyncio.to_thread(self.queue.complete, job.id, job.token, result)
        return JobState.COMPLETED if completed else None

    async def _housekeeping(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(self.queue.recover_stalled)
                await asyncio.to_thread(self.queue.prune)
                await asyncio.to_thread(self.pipeline.workspaces.cleanup_old_workspaces)
            except Exception as e:
                # Never crash the worker on housekeeping failure
                logger.warning(f"housekeeping_failed error_type={type(e).__name__}")
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self.housekeeping_interval_s
                )
            except asyncio.TimeoutError:
                pass
