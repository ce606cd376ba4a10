"""
Deploy API routes: submit a job, then poll its status and logs.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from deployer.core.queue import JobQueue
from deployer.core.workspace import WorkspaceManager
from deployer.schemas.deploy import (
    DEPLOYMENT_ID_PATTERN,
    DeploymentInfoResponse,
    DeployRequest,
    DeployResponse,
    JobLogsResponse,
    JobStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deploy", tags=["deploy"])


def generate_deployment_id() -> str:
    """Random 16-hex-char id naming the deployment's paths and object prefix."""
    return secrets.token_hex(8)


def get_queue(request: Request) -> JobQueue:
    return request.app.state.queue


def get_workspaces(request: Request) -> WorkspaceManager:
    return request.app.state.workspaces


@router.post("", response_model=DeployResponse)
def submit_deploy(body: DeployRequest, request: Request) -> DeployResponse:
    """
    Enqueue a build-and-deploy job.

    The request is fully validated before anything is queued; invalid
    requests are rejected with 422 and never retried.
    """
    queue = get_queue(request)
    deployment_id = generate_deployment_id()

    job_id = queue.enqueue(body.to_job_data(deployment_id))
    logger.info(f"deploy_submitted job_id={job_id} deployment_id={deployment_id}")

    return DeployResponse(
        deploymentId=deployment_id,
        jobId=job_id,
        repoName=body.repo_name,
        branch=body.branch,
        message="Deployment job created. Build process will start shortly.",
        statusUrl=f"/api/deploy/status?jobId={job_id}",
        logsUrl=f"/api/deploy/logs?jobId={job_id}",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/status", response_model=JobStatusResponse)
def get_status(request: Request, jobId: Optional[str] = Query(default=None)) -> JobStatusResponse:
    """Current state, progress, logs and result of a job."""
    if not jobId:
        raise HTTPException(status_code=400, detail="Job ID is required")

    job = get_queue(request).get(jobId)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobStatusResponse(
        jobId=job.id,
        state=job.state,
        progress=job.progress,
        data=job.data,
        logs=job.logs,
        result=job.result,
        failedReason=job.failed_reason,
        attemptsMade=job.attempts_made,
        timestamp=job.timestamp,
        processedOn=job.processed_on,
        finishedOn=job.finished_on,
    )


@router.get("/logs", response_model=JobLogsResponse)
def get_logs(request: Request, jobId: Optional[str] = Query(default=None)) -> JobLogsResponse:
    """Ordered log lines of a job."""
    if not jobId:
        raise HTTPException(status_code=400, detail="Job ID is required")

    logs = get_queue(request).get_logs(jobId)
    if logs is None:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobLogsResponse(jobId=jobId, logs=logs)


@router.get("", response_model=DeploymentInfoResponse)
def get_deployment(
    request: Request,
    deploymentId: Optional[str] = Query(default=None),
) -> DeploymentInfoResponse:
    """Check whether a deployment's artifact directory exists locally."""
    if not deploymentId:
        raise HTTPException(status_code=400, detail="Deployment ID is required")
    if not DEPLOYMENT_ID_PATTERN.match(deploymentId):
        raise HTTPException(status_code=400, detail="Invalid deployment ID")

    info = get_workspaces(request).describe_artifact(deploymentId)
    if info is None:
        return DeploymentInfoResponse(
            success=False,
            deploymentId=deploymentId,
            exists=False,
            message="Deployment not found",
        )

    store = request.app.state.object_store
    return DeploymentInfoResponse(
        success=True,
        deploymentId=deploymentId,
        exists=True,
        path=info["path"],
        filesCount=info["files_count"],
        modified=info["modified"],
        s3Url=store.public_url(f"{deploymentId}/index.html"),
    )
