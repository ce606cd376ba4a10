"""
Pydantic schemas for the deploy API requests and responses.
"""
import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobState(str, Enum):
    """Queue state of a deploy job."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Remote shapes accepted for repoUrl
GIT_URL_PATTERN = re.compile(
    r"^(https?://)?([\w.-]+@)?([\w.-]+)(:\d+)?(/[\w.-]+)*\.git$", re.IGNORECASE
)
SCP_URL_PATTERN = re.compile(r"^[\w.-]+@[\w.-]+:[\w./-]+\.git$", re.IGNORECASE)
GITHUB_URL_PATTERN = re.compile(r"^https?://github\.com/[\w.-]+/[\w.-]+/?$", re.IGNORECASE)

BRANCH_PATTERN = re.compile(r"^[\w][\w./-]{0,254}$")

# S3 bucket naming rules (lowercase, 3-63 chars)
BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")

# Names the clone workspace, artifact directory and object prefix
DEPLOYMENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def is_valid_repo_url(url: str) -> bool:
    """Check that a URL looks like a git remote we know how to clone."""
    if not url or url.startswith("-"):
        return False
    return bool(
        GIT_URL_PATTERN.match(url)
        or SCP_URL_PATTERN.match(url)
        or GITHUB_URL_PATTERN.match(url)
    )


class DeployRequest(BaseModel):
    """Request body for POST /api/deploy."""
    model_config = ConfigDict(populate_by_name=True, validate_default=True)

    repo_url: str = Field(..., alias="repoUrl", min_length=1, max_length=2048)
    repo_name: Optional[str] = Field(default=None, alias="repoName", max_length=256)
    branch: Optional[str] = Field(default="main", max_length=255)
    build_path: Optional[str] = Field(default="", alias="buildPath", max_length=1024)

    @field_validator("repo_url")
    @classmethod
    def check_repo_url(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_repo_url(v):
            raise ValueError("Invalid repository URL format")
        return v

    @field_validator("repo_name")
    @classmethod
    def default_repo_name(cls, v: Optional[str]) -> str:
        v = (v or "").strip()
        return v or "repository"

    @field_validator("branch")
    @classmethod
    def check_branch(cls, v: Optional[str]) -> str:
        v = (v or "").strip() or "main"
        if not BRANCH_PATTERN.match(v) or ".." in v:
            raise ValueError("Invalid branch name")
        return v

    @field_validator("build_path")
    @classmethod
    def check_build_path(cls, v: Optional[str]) -> str:
        v = (v or "").strip().strip("/")
        if v.startswith("~") or ".." in v.split("/"):
            raise ValueError("buildPath must be a relative path inside the repository")
        return v

    def to_job_data(self, deployment_id: str) -> dict[str, Any]:
        """Payload stored with the queued job."""
        return {
            "repoUrl": self.repo_url,
            "repoName": self.repo_name,
            "branch": self.branch,
            "buildPath": self.build_path,
            "deploymentId": deployment_id,
        }


class DeployResponse(BaseModel):
    """Response for POST /api/deploy."""
    success: bool = True
    deploymentId: str
    jobId: str
    repoName: str
    branch: str
    message: str
    statusUrl: str
    logsUrl: str
    timestamp: str


class JobStatusResponse(BaseModel):
    """Response for GET /api/deploy/status."""
    jobId: str
    state: JobState
    progress: int
    data: dict[str, Any]
    logs: list[str]
    result: Optional[dict[str, Any]] = None
    failedReason: Optional[str] = None
    attemptsMade: int
    timestamp: int
    processedOn: Optional[int] = None
    finishedOn: Optional[int] = None


class JobLogsResponse(BaseModel):
    """Response for GET /api/deploy/logs."""
    jobId: str
    logs: list[str]


class DeploymentInfoResponse(BaseModel):
    """Response for GET /api/deploy?deploymentId=..."""
    success: bool
    deploymentId: str
    exists: bool
    path: Optional[str] = None
    filesCount: Optional[int] = None
    modified: Optional[str] = None
    s3Url: Optional[str] = None
    message: Optional[str] = None


class S3UploadRequest(BaseModel):
    """Request body for POST /api/s3-upload (re-upload an existing deployment)."""
    deploymentId: Optional[str] = Field(default=None, max_length=64)
    bucketName: Optional[str] = Field(default=None, max_length=63)

    @field_validator("bucketName")
    @classmethod
    def check_bucket_name(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        if not v:
            return None
        if not BUCKET_NAME_PATTERN.match(v) or ".." in v:
            raise ValueError("Invalid bucket name")
        return v


class S3UploadResponse(BaseModel):
    """Response for POST /api/s3-upload."""
    success: bool = True
    message: str
    deploymentId: str
    bucket: str
    totalFiles: int
    uploadedCount: int
    failedCount: int
    uploadedFiles: list[str]
    failedFiles: list[dict[str, str]]
    s3Url: str
    s3Path: str


class S3UrlResponse(BaseModel):
    """Response for GET /api/s3-upload?deploymentId=..."""
    deploymentId: str
    s3Url: str
    bucket: str
