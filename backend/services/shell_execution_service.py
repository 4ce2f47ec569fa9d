"""
Shell Execution Service

Runs shell-mode task commands as real subprocesses with:
- an execution directory confined to the workspace root
- a hard wall-clock timeout: SIGTERM to the process group, then SIGKILL
  if it is still alive after a short grace period
- captured stdout/stderr, bounded while streaming and in the preview

Spawn failures and timeouts are folded into a failed ShellResult; the
caller never sees an exception from run().
"""

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from backend.schemas.runtime_state import clamp, number_or, sanitize_text
from backend.services.runtime_errors import ShellExecutionError

logger = logging.getLogger(__name__)

STREAM_LIMIT = 24_000
PREVIEW_LIMIT = 4_000
READ_CHUNK = 4096
TERM_GRACE_SECONDS = 2.0
KILL_GRACE_SECONDS = 2.0


@dataclass
class ShellResult:
    """Outcome of one shell command"""
    ok: bool
    exit_code: Optional[int]
    timed_out: bool
    duration_ms: int
    stdout: str
    stderr: str
    cwd: str

    def summary(self) -> str:
        seconds = round(self.duration_ms / 100) / 10
        if self.ok:
            return f"shell exit {self.exit_code if self.exit_code is not None else 0} in {seconds}s"
        if self.timed_out:
            return f"shell timeout after {seconds}s"
        exit_label = self.exit_code if self.exit_code is not None else "unknown"
        return f"shell failed with exit {exit_label}"

    def preview(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


def terminate_process_group(process: asyncio.subprocess.Process, sig: int = signal.SIGTERM) -> None:
    """
    Send `sig` (SIGTERM by default) to the command and everything it started

    SIGKILL is sent even after the leader exited, so children left
    holding its output pipes are reaped too.
    """
    if process.returncode is not None and sig != signal.SIGKILL:
        return
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"Could not signal process group {process.pid}: {e}")
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


async def _drain(stream: Optional[asyncio.StreamReader], sink: list) -> None:
    if stream is None:
        return
    # Multi-byte characters may straddle chunk boundaries
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(READ_CHUNK)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            sink[0] = (sink[0] + text)[-STREAM_LIMIT:]
        if not chunk:
            break


async def _collect(process: asyncio.subprocess.Process, stdout: list, stderr: list) -> int:
    await asyncio.gather(_drain(process.stdout, stdout), _drain(process.stderr, stderr))
    return await process.wait()


class ShellExecutionService:
    """
    Bounded subprocess runner

    Usage:
        service = ShellExecutionService(workspace_root=Path("/srv/work"))
        result = await service.run("make deploy", cwd="site", timeout_ms=180_000)
    """

    def __init__(self, workspace_root: Path, shell: str = "bash"):
        self.workspace_root = Path(workspace_root).resolve()
        self.shell = shell

    def resolve_exec_cwd(self, raw: Optional[str]) -> Path:
        """
        Resolve a requested working directory inside the workspace root

        Relative paths are taken from the workspace root. Anything that
        escapes the root or is not an existing directory falls back to
        the root itself.
        """
        value = sanitize_text(raw or "")
        if not value:
            return self.workspace_root

        candidate = Path(value)
        if not candidate.is_absolute():
            candidate = self.workspace_root / candidate
        resolved = candidate.resolve()

        if resolved != self.workspace_root and self.workspace_root not in resolved.parents:
            logger.warning(f"Execution directory {value!r} escapes workspace, using root")
            return self.workspace_root
        if not resolved.is_dir():
            return self.workspace_root
        return resolved

    async def _spawn(self, command: str, cwd: Path) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.shell,
                "-lc",
                command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ShellExecutionError(f"failed to spawn {self.shell}: {e}") from e

    async def run(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        on_spawn: Optional[Callable[[asyncio.subprocess.Process], None]] = None,
    ) -> ShellResult:
        """
        Run a command to completion or timeout

        Args:
            command: Shell command line
            cwd: Requested execution directory (confined to the workspace)
            timeout_ms: Hard timeout, clamped to 5s..600s (default 90s)
            on_spawn: Called with the process right after it starts

        Returns:
            ShellResult; ok only for exit code 0 without timeout
        """
        exec_cwd = self.resolve_exec_cwd(cwd)
        timeout = clamp(int(number_or(timeout_ms, 90_000)), 5_000, 600_000) / 1000
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            process = await self._spawn(command, exec_cwd)
        except ShellExecutionError as e:
            logger.error(f"Shell spawn failed: {e}")
            return ShellResult(
                ok=False,
                exit_code=None,
                timed_out=False,
                duration_ms=elapsed_ms(),
                stdout="",
                stderr=str(e)[:PREVIEW_LIMIT],
                cwd=str(exec_cwd),
            )

        if on_spawn is not None:
            on_spawn(process)

        stdout: list = [""]
        stderr: list = [""]
        timed_out = False
        exit_code: Optional[int] = None
        completion = asyncio.ensure_future(_collect(process, stdout, stderr))

        try:
            exit_code = await asyncio.wait_for(asyncio.shield(completion), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Shell command timed out after {timeout}s, sending SIGTERM")
            terminate_process_group(process)
            try:
                exit_code = await asyncio.wait_for(
                    asyncio.shield(completion), timeout=TERM_GRACE_SECONDS
                )
            except asyncio.TimeoutError:
                logger.warning(f"Shell command ignored SIGTERM, sending SIGKILL to group {process.pid}")
                terminate_process_group(process, signal.SIGKILL)
                try:
                    exit_code = await asyncio.wait_for(completion, timeout=KILL_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    logger.error(f"Shell process {process.pid} still running after SIGKILL")
        except asyncio.CancelledError:
            terminate_process_group(process)
            completion.cancel()
            raise

        return ShellResult(
            ok=exit_code == 0 and not timed_out,
            exit_code=exit_code,
            timed_out=timed_out,
            duration_ms=elapsed_ms(),
            stdout=stdout[0][:PREVIEW_LIMIT],
            stderr=stderr[0][:PREVIEW_LIMIT],
            cwd=str(exec_cwd),
        )
