"""
Build directory resolution.

Finds the folder a deploy should build from: the clone root, a direct
relative path, or the shallowest directory with the requested name found by a
bounded breadth-first search.
"""
import logging
import os
from collections import deque
from pathlib import Path

from deployer.core.errors import DirectoryNotFound

logger = logging.getLogger(__name__)

MAX_SEARCH_DEPTH = 3

# Dependency caches are never build roots and can be huge
SKIPPED_DIRECTORIES = {
    "node_modules",
    "bower_components",
    "jspm_packages",
    "vendor",
    "__pycache__",
}


def _is_skipped(name: str) -> bool:
    return name.startswith(".") or name in SKIPPED_DIRECTORIES


def _is_safe_target(target: str) -> bool:
    """Check a target is relative and stays inside the root."""
    normalized = os.path.normpath(target)
    if os.path.isabs(normalized):
        return False
    return ".." not in normalized.split(os.sep)


def _is_within(root: Path, candidate: Path) -> bool:
    """Check candidate, with symlinks resolved, is root or lies under it."""
    real_root = os.path.realpath(root)
    real_candidate = os.path.realpath(candidate)
    return real_candidate == real_root or real_candidate.startswith(real_root + os.sep)


def list_top_level_directories(root: Path) -> list[str]:
    """Non-hidden directory names directly under root, sorted."""
    try:
        return sorted(
            entry.name
            for entry in root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )
    except OSError:
        return []


def search_for_directory(root: Path, target: str, max_depth: int = MAX_SEARCH_DEPTH):
    """
    Breadth-first search for a directory named target under root.

    Directories at depth < max_depth are expanded, so matches are found down
    to max_depth levels below root. Siblings are visited in sorted order, so
    the first match is the shallowest one with the smallest name path.

    Returns the matching Path or None.
    """
    root = Path(root)
    visited: set[str] = set()
    queue = deque([(root, 0)])

    while queue:
        current, depth = queue.popleft()

        try:
            canonical = os.path.realpath(current)
        except OSError:
            continue
        if canonical in visited:
            continue
        visited.add(canonical)

        try:
            names = sorted(os.listdir(current))
        except OSError:
            continue

        for name in names:
            if _is_skipped(name):
                continue
            item = current / name
            if not item.is_dir():
                continue
            # Symlinks out of the clone are neither matched nor expanded
            if not _is_within(root, item):
                continue
            if name == target:
                return item
            if depth + 1 < max_depth:
                queue.append((item, depth + 1))

    return None


def resolve_build_directory(
    root: Path,
    target: str,
    max_depth: int = MAX_SEARCH_DEPTH,
) -> Path:
    """
    Resolve the build directory for a clone.

    Args:
        root: Clone root
        target: Requested folder name or relative path ("" = root)
        max_depth: Maximum depth below root searched by name

    Returns:
        Path to the build directory

    Raises:
        DirectoryNotFound: If no match exists within the bound
    """
    root = Path(root)
    target = (target or "").strip().strip("/\\")

    if not target:
        return root

    if not _is_safe_target(target):
        raise DirectoryNotFound(target, list_top_level_directories(root))

    # Direct match takes priority over search
    direct = root / target
    if direct.is_dir() and _is_within(root, direct):
        logger.info("build_dir_resolved match=direct")
        return direct

    # Only bare folder names can be searched for
    if "/" not in target and "\\" not in target:
        found = search_for_directory(root, target, max_depth)
        if found is not None:
            logger.info("build_dir_resolved match=search")
            return found

    raise DirectoryNotFound(target, list_top_level_directories(root))
