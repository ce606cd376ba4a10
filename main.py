#!/usr/bin/env python3
"""
repo-deployer: FastAPI service for submitting build-and-deploy jobs and
polling their status. Jobs are executed by worker processes (see worker.py).
"""
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from deployer.api.deploy import router as deploy_router
from deployer.api.metrics import router as metrics_router
from deployer.api.s3_upload import router as s3_upload_router
from deployer.config import Settings, get_settings
from deployer.core.logging import setup_logging
from deployer.core.object_store import ObjectStore, S3ObjectStore
from deployer.core.queue import JobOptions, JobQueue
from deployer.core.request_logging import RequestLoggingMiddleware
from deployer.core.workspace import WorkspaceManager
from deployer.db.database import Database

PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "").rstrip("/")
PORT = int(os.environ.get("PORT", "8000"))
LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
VERSION = "1.0.0"


def get_base_url(request: Optional[Request] = None) -> str:
    """
    Base URL for absolute links.

    PUBLIC_BASE_URL wins, then the (possibly proxied) request host, then
    localhost with the configured port.
    """
    if PUBLIC_BASE_URL:
        return PUBLIC_BASE_URL
    if request:
        scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
        host = request.headers.get("x-forwarded-host", request.headers.get("host", ""))
        if host:
            return f"{scheme}://{host}"
    return f"http://localhost:{PORT}"


def create_app(
    settings: Optional[Settings] = None,
    queue: Optional[JobQueue] = None,
    workspaces: Optional[WorkspaceManager] = None,
    object_store: Optional[ObjectStore] = None,
) -> FastAPI:
    """
    Build the API app.

    Collaborators not passed in are constructed from settings when the app
    starts, and the queue is closed again on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        setup_logging(cfg.log_level)

        app.state.settings = cfg
        app.state.queue = queue or JobQueue(
            Database(cfg.database_url), JobOptions.from_settings(cfg)
        )
        app.state.workspaces = workspaces or WorkspaceManager(
            cfg.workspaces_dir, cfg.artifacts_dir
        )
        app.state.object_store = object_store or S3ObjectStore.from_settings(cfg)

        app.state.queue.init()
        try:
            yield
        finally:
            app.state.queue.close()

    app = FastAPI(
        title="repo-deployer",
        description="Build repositories and publish their static output",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(deploy_router)
    app.include_router(s3_upload_router)
    app.include_router(metrics_router)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/meta")
    def meta(request: Request):
        """Queue depth and service metadata."""
        return {
            "version": VERSION,
            "base_url": get_base_url(request),
            "port": PORT,
            "queue": app.state.queue.counts(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=LISTEN_HOST, port=PORT)
