"""
Tests for the worker pool: outcome routing, concurrency and shutdown.
"""
import asyncio

import pytest

from deployer.core.errors import PipelineCancelled
from deployer.core.worker import WorkerPool
from deployer.schemas.deploy import JobState

from conftest import write_tree


def submit(queue, deployment_id):
    return queue.enqueue({
        "repoUrl": "https://github.com/acme/site",
        "repoName": "site",
        "branch": "main",
        "buildPath": "",
        "deploymentId": deployment_id,
    })


async def wait_for(predicate, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class StubPipeline:
    """Pipeline whose run() raises a given exception."""

    def __init__(self, workspaces, error):
        self.workspaces = workspaces
        self.error = error

    async def run(self, job, reporter, cancel):
        raise self.error


class TestProcess:

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_attempt(self, queue, workspaces):
        pool = WorkerPool(queue, StubPipeline(workspaces, RuntimeError("disk on fire")))
        job_id = submit(queue, "dep1")
        job = queue.claim(pool.worker_id, pool.lease_ms)

        assert await pool.process(job) == JobState.WAITING
        assert queue.get(job_id).attempts_made == 1
        assert pool.active_jobs == []

    @pytest.mark.asyncio
    async def test_unexpected_error_reason_on_final_attempt(self, queue, workspaces, clock):
        pool = WorkerPool(queue, StubPipeline(workspaces, KeyError()))
        job_id = submit(queue, "dep1")

        for _ in range(3):
            clock.advance(60)
            state = await pool.process(queue.claim(pool.worker_id, pool.lease_ms))

        assert state == JobState.FAILED
        assert queue.get(job_id).failed_reason == "Unexpected error: KeyError"

    @pytest.mark.asyncio
    async def test_cancelled_attempt_is_released(self, queue, workspaces):
        pool = WorkerPool(queue, StubPipeline(workspaces, PipelineCancelled("stop")))
        job_id = submit(queue, "dep1")

        assert await pool.process(queue.claim(pool.worker_id, pool.lease_ms)) is None

        job = queue.get(job_id)
        assert job.state == JobState.WAITING
        assert job.attempts_made == 0

    @pytest.mark.asyncio
    async def test_stale_attempt_cannot_complete(self, queue, pipeline, runner, source_repo, clock):
        """An attempt whose lease expired mid-build leaves the job to its new owner."""
        write_tree(source_repo, {"package.json": '{"scripts": {"build": "x"}}'})
        runner.build_files = {"dist/index.html": "x"}
        pool = WorkerPool(queue, pipeline, lease_ms=1000)
        job_id = submit(queue, "dep1")

        async def stall(cancel):
            clock.advance(5)
            queue.recover_stalled()

        runner.on_build = stall

        assert await pool.process(queue.claim(pool.worker_id, pool.lease_ms)) is None

        job = queue.get(job_id)
        assert job.state == JobState.WAITING
        assert job.result is None
        assert not any("SUCCESS" in line for line in job.logs)

    @pytest.mark.asyncio
    async def test_invalid_payload_fails_without_retry(self, queue, pipeline, runner):
        pool = WorkerPool(queue, pipeline)
        job_id = submit(queue, "../etc")

        assert await pool.process(queue.claim(pool.worker_id, pool.lease_ms)) == JobState.FAILED

        job = queue.get(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 1
        assert "Invalid deploymentId" in job.failed_reason
        assert runner.calls == []
        assert queue.claim(pool.worker_id, pool.lease_ms) is None

    def test_concurrency_must_be_positive(self, queue, pipeline):
        with pytest.raises(ValueError):
            WorkerPool(queue, pipeline, concurrency=0)


class TestRun:

    @pytest.mark.asyncio
    async def test_pool_processes_queued_jobs(self, queue, pipeline, source_repo):
        write_tree(source_repo, {"index.html": "<html></html>"})
        ids = [submit(queue, f"dep{n}") for n in range(3)]
        pool = WorkerPool(queue, pipeline, concurrency=2, poll_interval_s=0.05)

        task = asyncio.create_task(pool.run())
        await wait_for(lambda: all(queue.get(i).state == JobState.COMPLETED for i in ids))
        pool.stop()
        await asyncio.wait_for(task, timeout=5)

        for job_id in ids:
            assert queue.get(job_id).attempts_made == 1

    @pytest.mark.asyncio
    async def test_stop_abandons_jobs_after_grace_period(self, queue, pipeline, runner, source_repo):
        write_tree(source_repo, {"package.json": '{"scripts": {"build": "x"}}'})
        started = asyncio.Event()

        async def hang(cancel):
            started.set()
            await cancel.wait()
            cancel.raise_if_cancelled()

        runner.on_build = hang
        job_id = submit(queue, "dep1")
        pool = WorkerPool(queue, pipeline, concurrency=1, poll_interval_s=0.05, shutdown_grace_s=0.2)

        task = asyncio.create_task(pool.run())
        await asyncio.wait_for(started.wait(), timeout=10)
        assert pool.active_jobs == [job_id]

        pool.stop()
        await asyncio.wait_for(task, timeout=5)

        job = queue.get(job_id)
        assert job.state == JobState.WAITING
        assert job.attempts_made == 0
        assert not pipeline.workspaces.clone_path("dep1").exists()

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_job(self, queue, pipeline, runner, source_repo):
        write_tree(source_repo, {"package.json": '{"scripts": {"build": "x"}}'})
        runner.build_files = {"dist/index.html": "x"}
        started = asyncio.Event()

        async def slow(cancel):
            started.set()
            await asyncio.sleep(0.2)

        runner.on_build = slow
        job_id = submit(queue, "dep1")
        pool = WorkerPool(queue, pipeline, concurrency=1, poll_interval_s=0.05, shutdown_grace_s=5)

        task = asyncio.create_task(pool.run())
        await asyncio.wait_for(started.wait(), timeout=10)
        pool.stop()
        await asyncio.wait_for(task, timeout=10)

        assert queue.get(job_id).state == JobState.COMPLETED
