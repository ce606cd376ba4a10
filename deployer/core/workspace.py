"""
Per-deployment filesystem layout.

Each deployment gets a temporary clone workspace and a final artifact
directory, both named by its DeploymentId, so jobs never share paths.
"""
import logging
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from deployer.core.errors import CleanupError

logger = logging.getLogger(__name__)

# Stale clones left behind by crashed workers
WORKSPACE_RETENTION_HOURS = 24

# Never copied into the artifact directory
PACKAGE_IGNORE = shutil.ignore_patterns(".git", "node_modules")


class WorkspaceManager:
    """Manages clone workspaces and artifact directories."""

    def __init__(self, workspaces_dir: Path, artifacts_dir: Path):
        self._workspaces_dir = Path(workspaces_dir)
        self._artifacts_dir = Path(artifacts_dir)
        self._workspaces_dir.mkdir(parents=True, exist_ok=True)
        self._artifacts_dir.mkdir(parents=True, exist_ok=True)

    @property
    def workspaces_dir(self) -> Path:
        return self._workspaces_dir

    @property
    def artifacts_dir(self) -> Path:
        return self._artifacts_dir

    def clone_path(self, deployment_id: str) -> Path:
        return self._workspaces_dir / deployment_id

    def artifact_path(self, deployment_id: str) -> Path:
        return self._artifacts_dir / deployment_id

    def prepare_clone(self, deployment_id: str) -> Path:
        """
        Return an empty, not-yet-existing clone path.

        A previous attempt of the same job may have left a partial clone.
        """
        path = self.clone_path(deployment_id)
        if path.exists():
            self._remove(path)
        return path

    def package(self, source: Path, deployment_id: str) -> Path:
        """Copy the output tree into the artifact directory."""
        dest = self.artifact_path(deployment_id)
        if dest.exists():
            self._remove(dest)
        shutil.copytree(source, dest, symlinks=True, ignore=PACKAGE_IGNORE)
        logger.info(f"artifact_packaged deployment_id={deployment_id}")
        return dest

    def _remove(self, path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CleanupError(f"Failed to remove {path.name}: {e.strerror or e}")

    def cleanup_clone(self, deployment_id: str) -> bool:
        """Remove the clone workspace. Raises CleanupError on failure."""
        path = self.clone_path(deployment_id)
        if not path.exists():
            return False
        self._remove(path)
        logger.info(f"workspace_cleaned deployment_id={deployment_id}")
        return True

    def cleanup_artifact(self, deployment_id: str) -> bool:
        """Remove the artifact directory. Raises CleanupError on failure."""
        path = self.artifact_path(deployment_id)
        if not path.exists():
            return False
        self._remove(path)
        logger.info(f"artifact_cleaned deployment_id={deployment_id}")
        return True

    def describe_artifact(self, deployment_id: str) -> Optional[dict]:
        """File count and mtime of an artifact directory, or None if absent."""
        path = self.artifact_path(deployment_id)
        if not path.is_dir():
            return None
        files = [p for p in path.rglob("*") if p.is_file() and not p.is_symlink()]
        mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return {"path": str(path), "files_count": len(files), "modified": mtime.isoformat()}

    def cleanup_old_workspaces(self) -> int:
        """Remove clone workspaces older than the retention period."""
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=WORKSPACE_RETENTION_HOURS)
            deleted = 0

            for item in self._workspaces_dir.iterdir():
                if item.is_dir():
                    mtime = datetime.fromtimestamp(item.stat().st_mtime, tz=timezone.utc)
                    if mtime < cutoff:
                        shutil.rmtree(item, ignore_errors=True)
                        deleted += 1

            if deleted > 0:
                logger.info(f"cleanup_workspaces deleted={deleted}")
            return deleted
        except OSError as e:
            logger.warning(f"cleanup_workspaces_failed error={type(e).__name__}")
            return 0
