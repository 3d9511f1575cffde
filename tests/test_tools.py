"""Tests for external tool discovery and invocation."""

import asyncio
import sys
import time
from unittest.mock import patch

import pytest

from voxscribe.cancellation import CancellationToken
from voxscribe.errors import ToolMissingError, TranscriptionCancelled
from voxscribe.tools import ToolResult, find_binary, find_ffmpeg, find_ffprobe, run_tool


class TestFindBinary:
    """Test binary discovery."""

    @patch("voxscribe.tools.shutil.which")
    def test_found_on_path(self, mock_which):
        """PATH lookup wins."""
        mock_which.return_value = "/usr/bin/ffmpeg"
        assert find_binary("ffmpeg") == "/usr/bin/ffmpeg"

    @patch("voxscribe.tools.shutil.which", return_value=None)
    def test_missing_raises(self, mock_which, tmp_path):
        """Absent everywhere raises ToolMissingError."""
        with patch("voxscribe.tools.COMMON_BINARY_DIRS", (tmp_path,)):
            with pytest.raises(ToolMissingError, match="ffmpeg not found"):
                find_ffmpeg()

    def test_found_in_common_dir(self, tmp_path):
        """Falls back to well-known install directories."""
        binary = tmp_path / "ffmpeg"
        binary.write_text("")

        def which(name):
            return name if name == str(binary) else None

        with patch("voxscribe.tools.shutil.which", side_effect=which), \
             patch("voxscribe.tools.COMMON_BINARY_DIRS", (tmp_path,)):
            assert find_binary("ffmpeg") == str(binary)

    @patch("voxscribe.tools.find_binary", side_effect=ToolMissingError("nope"))
    def test_ffprobe_optional(self, mock_find):
        """Missing ffprobe returns None instead of raising."""
        assert find_ffprobe() is None


class TestToolResult:
    """Test ToolResult."""

    def test_ok(self):
        assert ToolResult(0, b"", b"").ok is True
        assert ToolResult(1, b"", b"err").ok is False


class TestRunTool:
    """Test subprocess execution."""

    @pytest.mark.asyncio
    async def test_captures_output(self):
        """stdout, stderr and exit code are captured."""
        result = await run_tool(
            [
                sys.executable,
                "-c",
                "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)",
            ]
        )
        assert result.returncode == 3
        assert result.stdout.strip() == b"out"
        assert result.stderr.strip() == b"err"

    @pytest.mark.asyncio
    async def test_success_with_token(self):
        """A token that never fires does not interfere."""
        result = await run_tool([sys.executable, "-c", "print('ok')"], CancellationToken())
        assert result.ok
        assert result.stdout.strip() == b"ok"

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        """A nonexistent executable raises ToolMissingError."""
        with pytest.raises(ToolMissingError):
            await run_tool(["/nonexistent/ffmpeg-xyz", "-version"])

    @pytest.mark.asyncio
    async def test_pre_cancelled_token(self):
        """No process is started once the token has fired."""
        token = CancellationToken()
        token.cancel()
        with patch("voxscribe.tools.asyncio.create_subprocess_exec") as mock_exec:
            with pytest.raises(TranscriptionCancelled):
                await run_tool(["ffmpeg"], token)
            mock_exec.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_kills_process(self):
        """Cancelling mid-run kills the process promptly."""
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.2, token.cancel)

        start = time.monotonic()
        with pytest.raises(TranscriptionCancelled):
            await run_tool([sys.executable, "-c", "import time; time.sleep(30)"], token)
        assert time.monotonic() - start < 10

    @pytest.mark.asyncio
    async def test_task_cancel_without_token_kills_process(self):
        """Cancelling the task kills the child even when no token is given."""
        real_exec = asyncio.create_subprocess_exec
        processes = []

        async def spawn(*args, **kwargs):
            process = await real_exec(*args, **kwargs)
            processes.append(process)
            return process

        with patch("voxscribe.tools.asyncio.create_subprocess_exec", side_effect=spawn):
            task = asyncio.create_task(
                run_tool([sys.executable, "-c", "import time; time.sleep(30)"])
            )
            await asyncio.sleep(0.2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await asyncio.wait_for(task, timeout=10)

        assert processes[0].returncode is not None

    @pytest.mark.asyncio
    async def test_task_cancel_kills_process(self):
        """Cancelling the awaiting task also kills the process."""
        task = asyncio.create_task(
            run_tool(
                [sys.executable, "-c", "import time; time.sleep(30)"],
                CancellationToken(),
            )
        )
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=10)
