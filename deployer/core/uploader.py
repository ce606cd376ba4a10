"""
Artifact uploader.

Ships every regular file of an artifact directory to the object store under
"<deploymentId>/<relative path>". Per-file failures are collected in the
result instead of aborting the batch.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from deployer.core.commands import CancelToken
from deployer.core.errors import UploadError
from deployer.core.metrics import metrics
from deployer.core.object_store import ObjectStore

logger = logging.getLogger(__name__)

UPLOAD_PROGRESS_START = 75
UPLOAD_PROGRESS_END = 100
UPLOADED_PREVIEW_LIMIT = 20
LOG_EVERY_N_FILES = 10
INDEX_DOCUMENT = "index.html"
DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES = {
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".json": "application/json",
    ".map": "application/json",
    ".webmanifest": "application/manifest+json",
    ".xml": "application/xml",
    ".txt": "text/plain",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".ico": "image/x-icon",
    ".pdf": "application/pdf",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".eot": "application/vnd.ms-fontobject",
    ".wasm": "application/wasm",
}

ProgressCallback = Callable[[int], Awaitable[None]]
LogCallback = Callable[[str], Awaitable[None]]


@dataclass
class FailedFile:
    path: str
    error: str


@dataclass
class UploadResult:
    """Outcome of one artifact upload batch."""
    total_files: int
    uploaded_count: int
    failed_files: list[FailedFile] = field(default_factory=list)
    uploaded_files: list[str] = field(default_factory=list)  # preview only
    object_store_url: str = ""
    bucket: str = ""
    prefix: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalFiles": self.total_files,
            "uploadedCount": self.uploaded_count,
            "failedCount": len(self.failed_files),
            "failedFiles": [{"path": f.path, "error": f.error} for f in self.failed_files],
            "uploadedFiles": self.uploaded_files,
            "objectStoreURL": self.object_store_url,
            "bucket": self.bucket,
            "prefix": self.prefix,
        }


def content_type_for(path: Path) -> str:
    """Content type from the file extension."""
    return CONTENT_TYPES.get(path.suffix.lower(), DEFAULT_CONTENT_TYPE)


def object_key(deployment_id: str, relative: Path) -> str:
    """Object key with forward slashes regardless of platform."""
    return f"{deployment_id}/{relative.as_posix().replace(chr(92), '/')}"


def list_artifact_files(artifact_dir: Path) -> list[Path]:
    """Snapshot of regular files (symlinks excluded), sorted for stable order."""
    return sorted(
        p for p in Path(artifact_dir).rglob("*")
        if p.is_file() and not p.is_symlink()
    )


def upload_progress(done: int, total: int) -> int:
    if total <= 0:
        return UPLOAD_PROGRESS_END
    span = UPLOAD_PROGRESS_END - UPLOAD_PROGRESS_START
    return UPLOAD_PROGRESS_START + (done * span) // total


class ArtifactUploader:
    """Uploads artifact directories to an object store."""

    def __init__(self, store: ObjectStore):
        self.store = store

    async def _upload_one(self, path: Path, key: str) -> None:
        try:
            body = await asyncio.to_thread(path.read_bytes)
            await asyncio.to_thread(self.store.put_object, key, body, content_type_for(path))
        except Exception as e:
            # Any client/IO failure for a single file is recorded, not fatal
            raise UploadError(str(e) or type(e).__name__) from e

    async def upload(
        self,
        deployment_id: str,
        artifact_dir: Path,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> UploadResult:
        """
        Upload every file under artifact_dir.

        Files are enumerated once up front; anything created afterwards is not
        uploaded. uploaded_count + len(failed_files) == total_files always.
        """
        artifact_dir = Path(artifact_dir)
        files = list_artifact_files(artifact_dir)
        total = len(files)

        result = UploadResult(
            total_files=total,
            uploaded_count=0,
            bucket=self.store.bucket,
            prefix=f"{deployment_id}/",
            object_store_url=self.store.public_url(f"{deployment_id}/{INDEX_DOCUMENT}"),
        )

        if on_log:
            await on_log(f"Uploading {total} files to bucket {self.store.bucket}...")
        if not (artifact_dir / INDEX_DOCUMENT).is_file():
            logger.warning(f"index_document_missing deployment_id={deployment_id}")
            if on_log:
                await on_log(f"⚠ No {INDEX_DOCUMENT} at the artifact root")

        for done, path in enumerate(files, start=1):
            if cancel is not None:
                cancel.raise_if_cancelled()

            relative = path.relative_to(artifact_dir)
            key = object_key(deployment_id, relative)
            try:
                await self._upload_one(path, key)
                result.uploaded_count += 1
                if len(result.uploaded_files) < UPLOADED_PREVIEW_LIMIT:
                    result.uploaded_files.append(relative.as_posix())
                metrics.inc("deploy_files_uploaded_total")
            except UploadError as e:
                result.failed_files.append(FailedFile(path=relative.as_posix(), error=str(e)))
                metrics.inc("deploy_files_failed_total")
                logger.warning(f"upload_failed deployment_id={deployment_id} error_type={type(e.__cause__).__name__}")
                if on_log:
                    await on_log(f"✗ Failed to upload {relative.as_posix()}: {e}")

            if on_progress:
                await on_progress(upload_progress(done, total))
            if on_log and done % LOG_EVERY_N_FILES == 0:
                await on_log(f"Uploaded {result.uploaded_count}/{total} files")

        if on_progress:
            await on_progress(UPLOAD_PROGRESS_END)

        logger.info(
            f"upload_done deployment_id={deployment_id} total={total} "
            f"uploaded={result.uploaded_count} failed={len(result.failed_files)}"
        )
        return result
