#!/usr/bin/env python3
"""
Deploy worker process.

Pulls build-and-deploy jobs from the queue until SIGTERM/SIGINT, then lets
running jobs finish (or abandons them after the grace period) before closing
the queue connection.
"""
import asyncio
import signal

from deployer.config import get_settings
from deployer.core.logging import setup_logging
from deployer.core.object_store import S3ObjectStore
from deployer.core.pipeline import DeployPipeline
from deployer.core.queue import JobOptions, JobQueue
from deployer.core.uploader import ArtifactUploader
from deployer.core.worker import WorkerPool
from deployer.db.database import Database


async def serve(pool: WorkerPool) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, pool.stop)
    await pool.run()


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)

    queue = JobQueue(Database(settings.database_url), JobOptions.from_settings(settings))
    queue.init()
    try:
        uploader = ArtifactUploader(S3ObjectStore.from_settings(settings))
        pipeline = DeployPipeline.from_settings(settings, uploader)
        pool = WorkerPool.from_settings(queue, pipeline, settings)
        asyncio.run(serve(pool))
    finally:
        queue.close()


if __name__ == "__main__":
    main()
