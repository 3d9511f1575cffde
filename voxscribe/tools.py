"""Discovery and cancellable invocation of the ffmpeg/ffprobe binaries."""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from voxscribe.cancellation import CancellationToken
from voxscribe.errors import ToolMissingError, TranscriptionCancelled

logger = logging.getLogger(__name__)

COMMON_BINARY_DIRS = (
    Path("/opt/homebrew/bin"),
    Path("/usr/local/bin"),
    Path("/usr/bin"),
)


@dataclass(frozen=True)
class ToolResult:
    """Completed external tool invocation."""

    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def find_binary(binary_name: str) -> str:
    """Locate an executable on PATH or in common install directories.

    Args:
        binary_name: Executable name (e.g., "ffmpeg")

    Returns:
        Path to the binary

    Raises:
        ToolMissingError: If the binary is not found anywhere
    """
    binary_path = shutil.which(binary_name)
    if binary_path:
        logger.debug("Found %s on PATH: %s", binary_name, binary_path)
        return binary_path

    for directory in COMMON_BINARY_DIRS:
        candidate = directory / binary_name
        if candidate.is_file() and shutil.which(str(candidate)):
            logger.debug("Found %s at %s", binary_name, candidate)
            return str(candidate)

    raise ToolMissingError(
        f"{binary_name} not found. Please install it and ensure it is in your "
        "system's PATH."
    )


def find_ffmpeg() -> str:
    return find_binary("ffmpeg")


def find_ffprobe() -> str | None:
    """Locate ffprobe, returning None when absent (probing is advisory)."""
    try:
        return find_binary("ffprobe")
    except ToolMissingError:
        logger.warning("ffprobe not found, skipping audio metadata extraction")
        return None


async def run_tool(
    args: Sequence[str],
    token: CancellationToken | None = None,
) -> ToolResult:
    """Run an external tool to completion while observing cancellation.

    The token is checked before the process starts. If it fires while the
    process runs, the process is killed and reaped before
    TranscriptionCancelled propagates.

    Args:
        args: Command and arguments
        token: Optional cancellation token

    Returns:
        ToolResult with exit code and captured output

    Raises:
        TranscriptionCancelled: If the token fires before or during the run
        ToolMissingError: If the executable cannot be started
    """
    if token is not None:
        token.raise_if_cancelled()

    logger.debug("Executing: %s", " ".join(str(a) for a in args))
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ToolMissingError(f"{args[0]} not found: {e}") from e

    communicate = asyncio.ensure_future(process.communicate())
    if token is None:
        try:
            stdout, stderr = await asyncio.shield(communicate)
        except asyncio.CancelledError:
            await _kill(process, communicate, args[0])
            raise
        return ToolResult(process.returncode, stdout, stderr)

    cancelled = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait(
            {communicate, cancelled}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        await _kill(process, communicate, args[0])
        raise
    finally:
        cancelled.cancel()

    if not communicate.done():
        await _kill(process, communicate, args[0])
        raise TranscriptionCancelled()

    stdout, stderr = communicate.result()
    return ToolResult(process.returncode, stdout, stderr)


async def _kill(process, communicate: asyncio.Future, name: str) -> None:
    """Kill a running tool process and reap it."""
    logger.info("Killing %s (pid %s)", Path(name).name, process.pid)
    try:
        process.kill()
    except ProcessLookupError:
        pass
    communicate.cancel()
    try:
        await communicate
    except asyncio.CancelledError:
        pass
    await process.wait()
