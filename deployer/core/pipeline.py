"""
Build & deploy pipeline - one attempt of a deploy job.

Stages run strictly in order:
clone -> resolve -> detect -> install -> build -> locate output -> package
-> upload -> cleanup

Every stage appends to the job log and advances progress. A fatal error
aborts the attempt: the clone workspace and any partial artifact directory
are removed and the original error is re-raised for the queue to retry.
Retries re-run the whole pipeline including the clone; no stage results are
carried between attempts.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from deployer.core.commands import (
    COMMAND_TIMEOUT,
    CancelToken,
    CommandResult,
    CommandRunner,
    run_command,
)
from deployer.core.errors import (
    BranchCheckoutError,
    BuildError,
    CleanupError,
    CloneError,
    CommandError,
    DirectoryNotFound,
    InstallError,
    OutputNotFound,
    SubmissionValidationError,
)
from deployer.core.logging import job_logger
from deployer.core.manifest import ManifestInfo, detect_manifest
from deployer.core.queue import ClaimedJob, JobQueue
from deployer.core.resolver import MAX_SEARCH_DEPTH, resolve_build_directory
from deployer.core.uploader import ArtifactUploader
from deployer.core.workspace import WorkspaceManager
from deployer.schemas.deploy import DEPLOYMENT_ID_PATTERN

logger = logging.getLogger(__name__)

# Progress schedule (percent)
PROGRESS_STARTED = 5
PROGRESS_CLONED = 15
PROGRESS_INSTALLING = 20
PROGRESS_INSTALLED = 50
PROGRESS_BUILT = 70
PROGRESS_PACKAGED = 75
PROGRESS_DONE = 100

# Checked in order directly under the build directory; first hit wins
OUTPUT_CANDIDATES = ("dist", "build", "out", ".next")

# Branches that need no explicit checkout after cloning
DEFAULT_BRANCHES = {"main", "master"}


class MissingOutputPolicy(str, Enum):
    """What to deploy when a build ran but no known output folder exists."""
    USE_BUILD_DIRECTORY = "use_build_directory"
    FAIL = "fail"


class JobReporter:
    """
    Writes progress and log lines for one attempt.

    Lines are tagged with the attempt number. Queue calls run in a thread so
    slow database writes never stall other worker slots.
    """

    def __init__(self, queue: JobQueue, job: ClaimedJob):
        self._queue = queue
        self._job = job
        self._progress = 0

    @property
    def current_progress(self) -> int:
        return self._progress

    async def log(self, message: str) -> None:
        line = f"[attempt {self._job.attempt}] {message}"
        await asyncio.to_thread(self._queue.append_log, self._job.id, self._job.token, line)

    async def progress(self, value: int) -> None:
        value = max(0, min(100, int(value)))
        if value <= self._progress:
            return
        self._progress = value
        await asyncio.to_thread(
            self._queue.update_progress, self._job.id, self._job.token, value
        )


@dataclass
class DeployResult:
    """Stored as the job result on success."""
    deployment_id: str
    repo_name: str
    bucket: str
    total_files: int
    uploaded_count: int
    object_store_url: str
    local_path: str
    build_directory: str
    built: bool
    failed_files: list[dict[str, str]] = field(default_factory=list)
    uploaded_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "deploymentId": self.deployment_id,
            "repoName": self.repo_name,
            "bucket": self.bucket,
            "totalFiles": self.total_files,
            "uploadedCount": self.uploaded_count,
            "failedCount": len(self.failed_files),
            "failedFiles": self.failed_files,
            "uploadedFiles": self.uploaded_files,
            "s3Url": self.object_store_url,
            "s3Path": f"s3://{self.bucket}/{self.deployment_id}/",
            "localPath": self.local_path,
            "buildDirectory": self.build_directory,
            "built": self.built,
        }


def _list_names(path: Path) -> str:
    try:
        return ", ".join(sorted(p.name for p in path.iterdir())) or "(empty)"
    except OSError:
        return "(unreadable)"


class DeployPipeline:
    """Runs deploy attempts."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        uploader: ArtifactUploader,
        runner: CommandRunner = run_command,
        command_timeout: int = COMMAND_TIMEOUT,
        missing_output_policy: MissingOutputPolicy = MissingOutputPolicy.USE_BUILD_DIRECTORY,
        max_search_depth: int = MAX_SEARCH_DEPTH,
    ):
        self.workspaces = workspaces
        self.uploader = uploader
        self.runner = runner
        self.command_timeout = command_timeout
        self.missing_output_policy = MissingOutputPolicy(missing_output_policy)
        self.max_search_depth = max_search_depth

    @classmethod
    def from_settings(cls, settings, uploader: ArtifactUploader, **kwargs) -> "DeployPipeline":
        return cls(
            workspaces=WorkspaceManager(settings.workspaces_dir, settings.artifacts_dir),
            uploader=uploader,
            command_timeout=settings.command_timeout_s,
            missing_output_policy=MissingOutputPolicy(settings.missing_output_policy),
            **kwargs,
        )

    async def run(
        self,
        job: ClaimedJob,
        reporter: JobReporter,
        cancel: Optional[CancelToken] = None,
    ) -> dict[str, Any]:
        """
        Execute one attempt.

        Returns:
            The job result dict

        Raises:
            DeployError subclasses for fatal stage failures (unchanged)
        """
        cancel = cancel or CancelToken()
        deployment_id = job.data.get("deploymentId") or ""
        if not DEPLOYMENT_ID_PATTERN.match(deployment_id):
            raise SubmissionValidationError(f"Invalid deploymentId: {deployment_id!r}")

        try:
            return await self._execute(job, deployment_id, reporter, cancel)
        except Exception as e:
            job_logger(logger, job.id, attempt=job.attempt, deployment_id=deployment_id).warning(
                f"attempt_failed job_id={job.id} attempt={job.attempt} "
                f"error_type={type(e).__name__}"
            )
            await reporter.log("=== ERROR ===")
            await reporter.log(str(e) or type(e).__name__)
            await self._cleanup_after_failure(deployment_id, reporter)
            raise

    async def _execute(
        self,
        job: ClaimedJob,
        deployment_id: str,
        reporter: JobReporter,
        cancel: CancelToken,
    ) -> dict[str, Any]:
        data = job.data
        repo_url = data["repoUrl"]
        branch = (data.get("branch") or "main").strip()
        build_path = (data.get("buildPath") or "").strip()

        await reporter.log(f"Starting build & deploy for: {deployment_id}")
        await reporter.log(f'Build path parameter: "{build_path}"')
        await reporter.progress(PROGRESS_STARTED)

        # Clone
        clone_root = await self._clone(deployment_id, repo_url, branch, reporter, cancel)
        await reporter.progress(PROGRESS_CLONED)

        # Resolve
        cancel.raise_if_cancelled()
        build_dir = await self._resolve(clone_root, build_path, reporter)
        build_rel = build_dir.relative_to(clone_root).as_posix()

        # Detect
        cancel.raise_if_cancelled()
        manifest = detect_manifest(build_dir)
        built = False

        if manifest is None:
            await reporter.log("ℹ No package.json found - treating as static site")
            await reporter.log(f"Directory contains: {_list_names(build_dir)}")
            output_dir = build_dir
        else:
            await reporter.log("✓ package.json found")
            await reporter.log(f"Has dependencies: {'Yes' if manifest.has_dependencies else 'No'}")
            await reporter.log(f"Has build script: {'Yes' if manifest.has_build_script else 'No'}")

            await self._install(manifest, build_dir, reporter, cancel)

            if manifest.has_build_script:
                await self._build(manifest, build_dir, reporter, cancel)
                built = True
                output_dir = await self._locate_output(build_dir, reporter)
            else:
                await reporter.log("ℹ No build script found - treating as pre-built or static")
                await reporter.progress(PROGRESS_BUILT)
                output_dir = build_dir

        # Package
        cancel.raise_if_cancelled()
        await reporter.log(f"Copying files to artifact directory {deployment_id}...")
        artifact_dir = await asyncio.to_thread(self.workspaces.package, output_dir, deployment_id)
        await reporter.log("✓ Files copied")
        await reporter.progress(PROGRESS_PACKAGED)

        # Upload
        cancel.raise_if_cancelled()
        upload = await self.uploader.upload(
            deployment_id,
            artifact_dir,
            on_progress=reporter.progress,
            on_log=reporter.log,
            cancel=cancel,
        )
        if upload.failed_files:
            await reporter.log(
                f"⚠ {len(upload.failed_files)} of {upload.total_files} files failed to upload"
            )

        # Cleanup
        await reporter.log("Cleaning up...")
        try:
            await asyncio.to_thread(self.workspaces.cleanup_clone, deployment_id)
        except CleanupError as e:
            logger.warning(f"cleanup_failed deployment_id={deployment_id} error={e}")
            await reporter.log(f"⚠ Cleanup failed: {e}")

        await reporter.progress(PROGRESS_DONE)
        await reporter.log("=== SUCCESS ===")
        await reporter.log(f"URL: {upload.object_store_url}")

        return DeployResult(
            deployment_id=deployment_id,
            repo_name=data.get("repoName") or "repository",
            bucket=upload.bucket,
            total_files=upload.total_files,
            uploaded_count=upload.uploaded_count,
            object_store_url=upload.object_store_url,
            local_path=str(artifact_dir),
            build_directory=build_rel,
            built=built,
            failed_files=[{"path": f.path, "error": f.error} for f in upload.failed_files],
            uploaded_files=upload.uploaded_files,
        ).to_dict()

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _run(
        self,
        cmd: list[str],
        cwd: Path,
        cancel: CancelToken,
    ) -> CommandResult:
        return await self.runner(cmd, cwd, timeout=self.command_timeout, cancel=cancel)

    def _check(self, result: CommandResult, error_cls: type[CommandError], label: str) -> None:
        if result.timed_out:
            raise error_cls(f"{label} timed out after {self.command_timeout}s", result.exit_code)
        if result.exit_code != 0:
            raise error_cls(
                f"{label} (exit code {result.exit_code}): {result.tail()}",
                result.exit_code,
                result.tail(),
            )

    async def _clone(
        self,
        deployment_id: str,
        repo_url: str,
        branch: str,
        reporter: JobReporter,
        cancel: CancelToken,
    ) -> Path:
        clone_path = await asyncio.to_thread(self.workspaces.prepare_clone, deployment_id)

        await reporter.log(f"Cloning repository: {repo_url}")
        result = await self._run(
            ["git", "clone", "--depth", "1", "--no-single-branch", "--", repo_url, str(clone_path)],
            self.workspaces.workspaces_dir,
            cancel,
        )
        self._check(result, CloneError, "Failed to clone repository")

        if branch not in DEFAULT_BRANCHES:
            await reporter.log(f"Checking out branch: {branch}")
            result = await self._run(["git", "checkout", branch, "--"], clone_path, cancel)
            self._check(result, BranchCheckoutError, f"Failed to checkout branch '{branch}'")

        await reporter.log("=== Repository Structure ===")
        await reporter.log(f"Root contains: {_list_names(clone_path)}")
        return clone_path

    async def _resolve(self, clone_root: Path, build_path: str, reporter: JobReporter) -> Path:
        if not build_path:
            await reporter.log("Using repository root")
            return clone_root

        await reporter.log(f'Searching for folder: "{build_path}"...')
        try:
            build_dir = await asyncio.to_thread(
                resolve_build_directory, clone_root, build_path, self.max_search_depth
            )
        except DirectoryNotFound as e:
            await reporter.log(f'✗ Could not find "{build_path}"')
            await reporter.log(f"Available folders: {', '.join(e.available) or '(none)'}")
            raise

        await reporter.log(f"✓ Found at: {build_dir.relative_to(clone_root).as_posix()}")
        return build_dir

    async def _install(
        self,
        manifest: ManifestInfo,
        build_dir: Path,
        reporter: JobReporter,
        cancel: CancelToken,
    ) -> None:
        if not manifest.has_dependencies:
            await reporter.log("ℹ No dependencies to install")
            await reporter.progress(PROGRESS_INSTALLED)
            return

        cancel.raise_if_cancelled()
        await reporter.log(f"Installing dependencies ({' '.join(manifest.install_command)})...")
        await reporter.progress(PROGRESS_INSTALLING)
        result = await self._run(manifest.install_command, build_dir, cancel)
        self._check(result, InstallError, "Dependency installation failed")
        await reporter.log("✓ Dependencies installed")
        await reporter.progress(PROGRESS_INSTALLED)

    async def _build(
        self,
        manifest: ManifestInfo,
        build_dir: Path,
        reporter: JobReporter,
        cancel: CancelToken,
    ) -> None:
        cancel.raise_if_cancelled()
        await reporter.log("Building project...")
        result = await self._run(manifest.build_command, build_dir, cancel)
        self._check(result, BuildError, "Build failed")
        await reporter.log("✓ Build complete")
        await reporter.progress(PROGRESS_BUILT)

    async def _locate_output(self, build_dir: Path, reporter: JobReporter) -> Path:
        await reporter.log("=== Locating Build Output ===")
        await reporter.log(f"Build directory now contains: {_list_names(build_dir)}")

        for name in OUTPUT_CANDIDATES:
            candidate = build_dir / name
            if candidate.is_dir():
                await reporter.log(f"✓ Using build output: {name}/")
                return candidate

        if self.missing_output_policy == MissingOutputPolicy.FAIL:
            raise OutputNotFound(
                "Build finished but no output folder was found "
                f"(looked for: {', '.join(OUTPUT_CANDIDATES)})"
            )

        await reporter.log("⚠ No build output folder found, using build directory")
        return build_dir

    async def _cleanup_after_failure(self, deployment_id: str, reporter: JobReporter) -> None:
        """Best-effort removal of everything this attempt created."""
        for remove in (self.workspaces.cleanup_clone, self.workspaces.cleanup_artifact):
            try:
                await asyncio.to_thread(remove, deployment_id)
            except CleanupError as e:
                logger.warning(f"cleanup_failed deployment_id={deployment_id} error={e}")
                await reporter.log(f"⚠ Cleanup failed: {e}")
