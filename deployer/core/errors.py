"""
Error taxonomy for the build-and-deploy pipeline.

Fatal stage errors abort the attempt and are handed to the queue for retry.
UploadError and CleanupError are recovered locally and never abort a job.
"""
from typing import Optional


class DeployError(Exception):
    """Base class for deployer errors."""
    pass


class SubmissionValidationError(DeployError):
    """Submission rejected before enqueue. Never retried."""
    pass


class CommandError(DeployError):
    """An external command (git, npm) failed."""

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class CloneError(CommandError):
    pass


class BranchCheckoutError(CommandError):
    pass


class InstallError(CommandError):
    pass


class BuildError(CommandError):
    pass


class DirectoryNotFound(DeployError):
    """Requested build directory does not exist within the search bound."""

    def __init__(self, target: str, available: list[str]):
        super().__init__(f'Folder "{target}" not found in repository')
        self.target = target
        self.available = available


class ManifestParseError(DeployError):
    pass


class OutputNotFound(DeployError):
    """A build ran but produced none of the recognized output folders."""
    pass


class UploadError(DeployError):
    """A single artifact file failed to upload."""
    pass


class CleanupError(DeployError):
    pass


class PipelineCancelled(DeployError):
    """The attempt was aborted because the worker is shutting down."""
    pass
