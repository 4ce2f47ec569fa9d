"""
Test suite for the shell execution service.

Tests follow BDD-style naming (Given/When/Then) as per project standards.
These tests run real bash subprocesses.
"""

import asyncio
import gc

import pytest

from backend.services.shell_execution_service import (
    READ_CHUNK,
    STREAM_LIMIT,
    ShellExecutionService,
    ShellResult,
    _drain,
)


@pytest.fixture
def shell(tmp_path):
    return ShellExecutionService(workspace_root=tmp_path)


class TestResolveExecCwd:
    """Test execution directory confinement"""

    def test_empty_uses_root(self, shell, tmp_path):
        assert shell.resolve_exec_cwd("") == tmp_path.resolve()
        assert shell.resolve_exec_cwd(None) == tmp_path.resolve()

    def test_relative_subdirectory(self, shell, tmp_path):
        (tmp_path / "site").mkdir()

        assert shell.resolve_exec_cwd("site") == (tmp_path / "site").resolve()

    def test_escape_falls_back_to_root(self, shell, tmp_path):
        assert shell.resolve_exec_cwd("../..") == tmp_path.resolve()
        assert shell.resolve_exec_cwd("/etc") == tmp_path.resolve()

    def test_missing_directory_falls_back_to_root(self, shell, tmp_path):
        assert shell.resolve_exec_cwd("nope") == tmp_path.resolve()


class TestShellResult:
    """Test summaries"""

    def test_summaries(self):
        ok = ShellResult(True, 0, False, 1234, "out", "", "/")
        timeout = ShellResult(False, -15, True, 5000, "", "", "/")
        failed = ShellResult(False, 2, False, 10, "", "err", "/")
        unknown = ShellResult(False, None, False, 10, "", "", "/")

        assert ok.summary() == "shell exit 0 in 1.2s"
        assert timeout.summary() == "shell timeout after 5.0s"
        assert failed.summary() == "shell failed with exit 2"
        assert unknown.summary() == "shell failed with exit unknown"
        assert failed.preview() == "err"


class TestRun:
    """Test running real commands"""

    @pytest.mark.asyncio
    async def test_successful_command(self, shell, tmp_path):
        result = await shell.run("pwd; echo done", timeout_ms=10_000)

        assert result.ok is True
        assert result.exit_code == 0
        assert str(tmp_path.resolve()) in result.stdout
        assert "done" in result.stdout

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, shell):
        result = await shell.run("echo broken >&2; exit 3", timeout_ms=10_000)

        assert result.ok is False
        assert result.exit_code == 3
        assert result.timed_out is False
        assert "broken" in result.stderr

    @pytest.mark.asyncio
    async def test_timeout_terminates_command(self, shell):
        """
        GIVEN a command that outlives its timeout
        WHEN running it
        THEN it is terminated and reported as timed out
        """
        result = await shell.run("sleep 30", timeout_ms=5_000)

        assert result.ok is False
        assert result.timed_out is True
        assert result.duration_ms < 15_000
        assert result.summary().startswith("shell timeout after")

    @pytest.mark.asyncio
    async def test_output_is_bounded(self, shell):
        result = await shell.run(f"head -c {STREAM_LIMIT * 2} /dev/zero | tr '\\0' x", timeout_ms=10_000)

        assert result.ok is True
        assert len(result.stdout) == 4_000

    @pytest.mark.asyncio
    async def test_spawn_failure_is_a_failed_result(self, tmp_path):
        shell = ShellExecutionService(workspace_root=tmp_path, shell="/nonexistent/shell")

        result = await shell.run("echo hi")

        assert result.ok is False
        assert result.exit_code is None
        assert "failed to spawn" in result.stderr

    @pytest.mark.asyncio
    async def test_on_spawn_receives_process(self, shell):
        seen = []

        await shell.run("true", on_spawn=seen.append)

        assert len(seen) == 1
        assert isinstance(seen[0], asyncio.subprocess.Process)

    @pytest.mark.asyncio
    async def test_timeout_kills_command_ignoring_sigterm(self, shell):
        """
        GIVEN a command group that ignores SIGTERM
        WHEN it outlives its timeout
        THEN it is killed after the grace period and run() still returns
        """
        result = await asyncio.wait_for(
            shell.run("trap '' TERM; sleep 20", timeout_ms=5_000),
            timeout=12,
        )

        assert result.ok is False
        assert result.timed_out is True
        assert result.duration_ms < 12_000

    @pytest.mark.asyncio
    async def test_cancel_leaves_no_pending_readers(self, shell):
        """
        GIVEN a long command
        WHEN the task running it is cancelled
        THEN the process is terminated and no reader future is left unretrieved
        """
        loop = asyncio.get_running_loop()
        errors = []
        loop.set_exception_handler(lambda _loop, context: errors.append(context))
        spawned = []

        try:
            runner = asyncio.ensure_future(shell.run("sleep 30", on_spawn=spawned.append))
            while not spawned:
                await asyncio.sleep(0.02)
            runner.cancel()
            with pytest.raises(asyncio.CancelledError):
                await runner

            returncode = await asyncio.wait_for(spawned[0].wait(), timeout=5)
            await asyncio.sleep(0.1)
            gc.collect()
        finally:
            loop.set_exception_handler(None)

        assert returncode != 0
        assert errors == []


class TestDrain:
    """Test stream draining"""

    @pytest.mark.asyncio
    async def test_multibyte_character_split_across_chunks(self):
        """
        GIVEN output where a UTF-8 character straddles a read boundary
        WHEN draining the stream
        THEN the character is decoded intact
        """
        reader = asyncio.StreamReader()
        reader.feed_data(b"a" * (READ_CHUNK - 1) + "é".encode("utf-8") + b"z")
        reader.feed_eof()
        sink = [""]

        await _drain(reader, sink)

        assert sink[0].endswith("éz")
        assert "\ufffd" not in sink[0]
