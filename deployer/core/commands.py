"""
External command execution for build pipelines.

Security:
- No shell=True anywhere; commands are argument lists
- Per-command timeouts
- Sanitized environment (no cloud credentials leak into builds)
- Output truncated before it reaches logs

Commands run as asyncio subprocesses so a long npm install does not block
other worker slots, and can be terminated when the worker shuts down.
"""
import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from deployer.core.errors import PipelineCancelled

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 900  # 15 minutes per command
TERMINATE_GRACE_S = 5
MAX_OUTPUT_CHARS = 256 * 1024

# Never forwarded to build processes
SECRET_ENV_VARS = {
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "DEPLOYER_DATABASE_URL",
}


class CancelToken:
    """Cooperative cancellation signal shared by one pipeline attempt."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "worker shutting down") -> None:
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineCancelled(f"Cancelled: {self.reason}")


@dataclass
class CommandResult:
    """Result of a subprocess command."""
    command: list[str]
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def tail(self, limit: int = 500) -> str:
        """Last part of stderr (or stdout) for error messages."""
        text = (self.stderr or self.stdout or "").strip()
        return text[-limit:]


CommandRunner = Callable[..., Awaitable[CommandResult]]


def _sanitize_env(env_override: Optional[dict] = None) -> dict:
    """Create the environment for build subprocesses."""
    env = {
        key: value
        for key, value in os.environ.items()
        if key not in SECRET_ENV_VARS
    }
    env.setdefault("PATH", "/usr/local/bin:/usr/bin:/bin")
    env.setdefault("HOME", "/tmp")
    env.setdefault("LANG", "C.UTF-8")
    # Fail instead of prompting for credentials on private repos
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["CI"] = "true"
    if env_override:
        env.update(env_override)
    return env


def _truncate(text: str) -> str:
    if len(text) > MAX_OUTPUT_CHARS:
        return text[:MAX_OUTPUT_CHARS] + f"\n... (truncated, {len(text)} total chars)"
    return text


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM, then SIGKILL after a grace period."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
        await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE_S)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
    except ProcessLookupError:
        pass


async def run_command(
    cmd: list[str],
    cwd: Path,
    timeout: int = COMMAND_TIMEOUT,
    env_override: Optional[dict] = None,
    cancel: Optional[CancelToken] = None,
) -> CommandResult:
    """
    Execute a command with no shell.

    Args:
        cmd: Command as list of strings
        cwd: Working directory
        timeout: Timeout in seconds
        env_override: Additional environment variables
        cancel: Terminates the process when fired

    Returns:
        CommandResult with output and status

    Raises:
        PipelineCancelled: If cancel fired while the command was running
    """
    if not isinstance(cmd, list):
        raise ValueError("Command must be a list, not a string")
    if len(cmd) == 0:
        raise ValueError("Command cannot be empty")

    if cancel is not None:
        cancel.raise_if_cancelled()

    start = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            env=_sanitize_env(env_override),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        return CommandResult(
            command=cmd,
            exit_code=127,
            stdout="",
            stderr=f"{cmd[0]}: {e.strerror or type(e).__name__}",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    communicate = asyncio.ensure_future(proc.communicate())
    waiters = {communicate}
    cancel_wait = None
    if cancel is not None:
        cancel_wait = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_wait)

    timed_out = False
    cancelled = False
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        if communicate not in done:
            cancelled = cancel_wait is not None and cancel_wait in done
            timed_out = not cancelled
            logger.warning(
                f"command_interrupted cmd={cmd[0]} "
                f"reason={'cancelled' if cancelled else 'timeout'} timeout={timeout}"
            )
            await _terminate(proc)
        stdout_bytes, stderr_bytes = await communicate
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()

    if cancelled:
        raise PipelineCancelled(f"Cancelled during '{' '.join(cmd[:3])}': {cancel.reason}")

    return CommandResult(
        command=cmd,
        exit_code=proc.returncode if not timed_out else -1,
        stdout=_truncate((stdout_bytes or b"").decode("utf-8", errors="replace")),
        stderr=_truncate((stderr_bytes or b"").decode("utf-8", errors="replace")),
        duration_ms=int((time.monotonic() - start) * 1000),
        timed_out=timed_out,
    )
