"""Request-scoped cancellation token and temporary chunk workspace."""

import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, TypeVar

from voxscribe.errors import TranscriptionCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Token for cooperatively aborting a transcription request.

    One token is created per request and passed to every stage. Stages call
    ``raise_if_cancelled()`` before starting a unit of work and may ``await
    wait()`` to stop waiting on work that is already running.
    """

    def __init__(self):
        """Initialize cancellation token in non-cancelled state."""
        self._event = asyncio.Event()

    def cancel(self) -> None:
        """Mark token as cancelled."""
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    def is_cancelled(self) -> bool:
        """Check if token is cancelled.

        Returns:
            True if cancelled, False otherwise
        """
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise TranscriptionCancelled if the token has fired."""
        if self._event.is_set():
            raise TranscriptionCancelled()

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    def reset(self) -> None:
        """Reset token to non-cancelled state."""
        self._event.clear()


async def wait_or_cancel(awaitable: Awaitable[T], token: CancellationToken) -> T:
    """Await ``awaitable`` unless the token fires first.

    On cancellation the pending awaitable is cancelled (work already handed
    to a thread pool is abandoned, not interrupted).

    Raises:
        TranscriptionCancelled: If the token fires before the result arrives
    """
    if token.is_cancelled():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise TranscriptionCancelled()
    task = asyncio.ensure_future(awaitable)
    cancelled = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise
    finally:
        cancelled.cancel()

    if not task.done():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise TranscriptionCancelled()
    return task.result()


@asynccontextmanager
async def chunk_workspace(
    prefix: str = "voxscribe-chunks-",
    grace_delay: float = 0.5,
) -> AsyncIterator[Path]:
    """Create a private temporary directory for chunk files.

    The directory is removed recursively exactly once when the block exits,
    whether it completed, raised, or was cancelled. Removal waits
    ``grace_delay`` seconds so abandoned readers can release their handles.
    Removal failures are logged and never raised.

    Args:
        prefix: Directory name prefix
        grace_delay: Seconds to wait before removal

    Yields:
        Path to the new directory
    """
    workdir = Path(tempfile.mkdtemp(prefix=prefix))
    logger.debug("Created chunk workspace: %s", workdir)
    try:
        yield workdir
    finally:
        try:
            if grace_delay > 0:
                await asyncio.sleep(grace_delay)
        finally:
            _remove_workspace(workdir)


def _remove_workspace(workdir: Path) -> None:
    try:
        shutil.rmtree(workdir)
        logger.debug("Removed chunk workspace: %s", workdir)
    except FileNotFoundError:
        logger.debug("Chunk workspace already gone: %s", workdir)
    except Exception as e:
        logger.warning("Failed to remove chunk workspace %s: %s", workdir, e)
