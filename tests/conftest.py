"""
Pytest configuration and fixtures.
"""
import os
import shutil
import sys
from pathlib import Path
from typing import Optional

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from deployer.core.commands import CommandResult
from deployer.core.object_store import InMemoryObjectStore
from deployer.core.pipeline import DeployPipeline
from deployer.core.queue import Backoff, JobOptions, JobQueue, Retention
from deployer.core.uploader import ArtifactUploader
from deployer.core.workspace import WorkspaceManager
from deployer.db.database import Database


class FakeClock:
    """Controllable time source (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def ms(self) -> int:
        return int(round(self.now * 1000))


def _result(cmd, exit_code=0, stdout="", stderr="") -> CommandResult:
    return CommandResult(command=list(cmd), exit_code=exit_code, stdout=stdout, stderr=stderr, duration_ms=1)


class FakeRunner:
    """
    Stands in for git and npm.

    `git clone` copies `repo` to the destination, `npm run build` writes
    `build_files` under the build directory. Failures are configured per step.
    """

    def __init__(self, repo: Path):
        self.repo = repo
        self.calls: list[list[str]] = []
        self.clone_failures = 0
        self.checkout_fails = False
        self.install_fails = False
        self.build_fails = False
        self.build_files: dict[str, str] = {}
        self.on_build = None

    def commands(self, program: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == program]

    async def __call__(self, cmd, cwd, timeout=None, cancel=None, **kwargs) -> CommandResult:
        self.calls.append(list(cmd))

        if cmd[:2] == ["git", "clone"]:
            if self.clone_failures > 0:
                self.clone_failures -= 1
                return _result(cmd, 128, stderr="fatal: unable to access 'https://unreachable.invalid/'")
            shutil.copytree(self.repo, Path(cmd[-1]))
            return _result(cmd)

        if cmd[:2] == ["git", "checkout"]:
            if self.checkout_fails:
                return _result(cmd, 1, stderr=f"error: pathspec '{cmd[2]}' did not match")
            return _result(cmd)

        if cmd[:2] in (["npm", "install"], ["npm", "ci"]):
            if self.install_fails:
                return _result(cmd, 1, stderr="npm ERR! 404 Not Found")
            (Path(cwd) / "node_modules").mkdir(exist_ok=True)
            return _result(cmd)

        if cmd[:3] == ["npm", "run", "build"]:
            if self.on_build is not None:
                await self.on_build(cancel)
            if self.build_fails:
                return _result(cmd, 2, stderr="SyntaxError: Unexpected token")
            for rel, content in self.build_files.items():
                target = Path(cwd) / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content)
            return _result(cmd)

        return _result(cmd, 127, stderr=f"{cmd[0]}: not found")


class FlakyObjectStore(InMemoryObjectStore):
    """Fails uploads for the given keys."""

    def __init__(self, failing_keys: Optional[set] = None):
        super().__init__(bucket="test-bucket", region="eu-north-1")
        self.failing_keys = failing_keys or set()

    def put_object(self, key: str, body: bytes, content_type: str) -> None:
        if key in self.failing_keys:
            raise ConnectionError("simulated transient fault")
        super().put_object(key, body, content_type)


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """Create files (relative path -> content) under root."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(tmp_path):
    db = Database(f"sqlite:///{tmp_path / 'deployer.db'}")
    db.init()
    yield db
    db.close()


@pytest.fixture
def job_options():
    return JobOptions(
        max_attempts=3,
        backoff=Backoff(delay_ms=1000, multiplier=2.0),
        retention=Retention(max_completed=100, max_failed=50, completed_max_age_ms=24 * 3600 * 1000),
    )


@pytest.fixture
def queue(database, job_options, clock):
    return JobQueue(database, job_options, clock=clock)


@pytest.fixture
def workspaces(tmp_path):
    return WorkspaceManager(tmp_path / "temp", tmp_path / "dist")


@pytest.fixture
def object_store():
    return FlakyObjectStore()


@pytest.fixture
def source_repo(tmp_path):
    """An empty source repository directory tests fill in."""
    repo = tmp_path / "source-repo"
    repo.mkdir()
    return repo


@pytest.fixture
def runner(source_repo):
    return FakeRunner(source_repo)


@pytest.fixture
def pipeline(workspaces, object_store, runner):
    return DeployPipeline(
        workspaces=workspaces,
        uploader=ArtifactUploader(object_store),
        runner=runner,
    )
