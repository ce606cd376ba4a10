"""
Project manifest detection.

A build directory with a package.json is a Node project; without one it is
treated as pre-built static content.
"""
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from deployer.core.errors import ManifestParseError

MANIFEST_NAME = "package.json"
LOCKFILE_NAME = "package-lock.json"


@dataclass
class ManifestInfo:
    """What the manifest declares."""
    path: Path
    has_dependencies: bool
    has_build_script: bool
    has_lockfile: bool = False

    @property
    def install_command(self) -> list[str]:
        # npm ci for reproducible installs when a lockfile exists
        if self.has_lockfile:
            return ["npm", "ci"]
        return ["npm", "install"]

    @property
    def build_command(self) -> list[str]:
        return ["npm", "run", "build"]


def detect_manifest(build_dir: Path) -> Optional[ManifestInfo]:
    """
    Look for a package.json in build_dir.

    Returns:
        ManifestInfo, or None when there is no manifest

    Raises:
        ManifestParseError: If the manifest is not a valid JSON object
    """
    manifest_path = Path(build_dir) / MANIFEST_NAME
    if not manifest_path.is_file():
        return None

    try:
        pkg = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestParseError(f"Invalid {MANIFEST_NAME}: {e}")
    except OSError as e:
        raise ManifestParseError(f"Cannot read {MANIFEST_NAME}: {e.strerror}")

    if not isinstance(pkg, dict):
        raise ManifestParseError(f"Invalid {MANIFEST_NAME}: expected a JSON object")

    scripts = pkg.get("scripts") or {}
    if not isinstance(scripts, dict):
        raise ManifestParseError(f"Invalid {MANIFEST_NAME}: 'scripts' must be an object")

    return ManifestInfo(
        path=manifest_path,
        has_dependencies=bool(pkg.get("dependencies") or pkg.get("devDependencies")),
        has_build_script=bool(scripts.get("build")),
        has_lockfile=(Path(build_dir) / LOCKFILE_NAME).is_file(),
    )
