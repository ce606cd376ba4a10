"""
Re-upload routes: push an already packaged deployment to the object store
again, optionally into a different bucket.
"""
import logging
from typing import Optional, Union

from fastapi import APIRouter, HTTPException, Query, Request

from deployer.core.uploader import INDEX_DOCUMENT, ArtifactUploader
from deployer.schemas.deploy import (
    DEPLOYMENT_ID_PATTERN,
    S3UploadRequest,
    S3UploadResponse,
    S3UrlResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/s3-upload", tags=["s3-upload"])


def _check_deployment_id(deployment_id: Optional[str]) -> str:
    if not deployment_id:
        raise HTTPException(status_code=400, detail="Deployment ID is required")
    if not DEPLOYMENT_ID_PATTERN.match(deployment_id):
        raise HTTPException(status_code=400, detail="Invalid deployment ID")
    return deployment_id


@router.post("", response_model=S3UploadResponse)
async def reupload(body: S3UploadRequest, request: Request) -> S3UploadResponse:
    """
    Upload every file of dist/<deploymentId> to the object store.

    Per-file failures are reported in the response; the request itself only
    fails when the deployment does not exist locally.
    """
    deployment_id = _check_deployment_id(body.deploymentId)

    artifact_dir = request.app.state.workspaces.artifact_path(deployment_id)
    if not artifact_dir.is_dir():
        raise HTTPException(status_code=404, detail="Deployment not found")

    store = request.app.state.object_store
    if body.bucketName:
        store = store.with_bucket(body.bucketName)

    logger.info(f"reupload_started deployment_id={deployment_id} bucket={store.bucket}")
    result = await ArtifactUploader(store).upload(deployment_id, artifact_dir)

    return S3UploadResponse(
        message="Files uploaded to S3 successfully",
        deploymentId=deployment_id,
        bucket=result.bucket,
        totalFiles=result.total_files,
        uploadedCount=result.uploaded_count,
        failedCount=len(result.failed_files),
        uploadedFiles=result.uploaded_files,
        failedFiles=[{"path": f.path, "error": f.error} for f in result.failed_files],
        s3Url=result.object_store_url,
        s3Path=f"s3://{result.bucket}/{deployment_id}/",
    )


@router.get("", response_model=None)
def get_upload_url(
    request: Request,
    deploymentId: Optional[str] = Query(default=None),
) -> Union[S3UrlResponse, dict]:
    """Public URL of a deployment's index document in the default bucket."""
    if not deploymentId:
        return {"message": "S3 Upload API is running", "endpoint": "/api/s3-upload"}

    deployment_id = _check_deployment_id(deploymentId)
    store = request.app.state.object_store
    return S3UrlResponse(
        deploymentId=deployment_id,
        s3Url=store.public_url(f"{deployment_id}/{INDEX_DOCUMENT}"),
        bucket=store.bucket,
    )
