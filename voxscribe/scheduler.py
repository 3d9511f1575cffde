"""Bounded-concurrency transcription of chunk files."""

import asyncio
import logging
from typing import Callable, Protocol, Sequence

from voxscribe._types import ChunkFile, ChunkResult, RecognitionOptions, TranscriptionJob
from voxscribe.cancellation import CancellationToken
from voxscribe.errors import TranscriptionCancelled
from voxscribe.transcriber_deepgram import extract_transcript, normalize_text

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class ChunkTranscriber(Protocol):
    """What the scheduler needs from a recognition client."""

    async def transcribe(self, audio_path, options: RecognitionOptions | None = None) -> dict:
        ...


class TranscriptionScheduler:
    """Transcribes chunks with at most ``concurrency`` requests in flight.

    Workers take jobs from a shared queue in index order, so a freed worker
    always starts the lowest unstarted index. Per-chunk failures become empty
    results; only cancellation stops the batch.
    """

    def __init__(
        self,
        transcriber: ChunkTranscriber,
        concurrency: int = 3,
        options: RecognitionOptions | None = None,
        delete_after_read: bool = True,
    ):
        """Initialize scheduler.

        Args:
            transcriber: Client with an async ``transcribe(path, options)``
            concurrency: Maximum concurrent remote calls
            options: Recognition options for every job
            delete_after_read: Remove each chunk file once it has been sent
        """
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")

        self.transcriber = transcriber
        self.concurrency = concurrency
        self.options = options or getattr(transcriber, "options", None) or RecognitionOptions()
        self.delete_after_read = delete_after_read
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(
        self,
        chunks: Sequence[ChunkFile],
        token: CancellationToken,
        on_progress: ProgressCallback | None = None,
    ) -> list[ChunkResult]:
        """Transcribe every chunk and return one result per chunk, in index order.

        Args:
            chunks: Chunk files from the segmenter
            token: Cancellation token
            on_progress: Called with (completed, total) after each job

        Returns:
            ChunkResult list ordered by index

        Raises:
            TranscriptionCancelled: If the token fires before all jobs finish
        """
        token.raise_if_cancelled()

        ordered = sorted(chunks, key=lambda c: c.index)
        total = len(ordered)
        if total == 0:
            return []

        queue: asyncio.Queue[TranscriptionJob] = asyncio.Queue()
        for chunk in ordered:
            queue.put_nowait(TranscriptionJob(chunk=chunk, options=self.options))

        results: dict[int, ChunkResult] = {}
        completed = 0

        async def worker(worker_id: int) -> None:
            nonlocal completed
            while not token.is_cancelled():
                try:
                    job = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return

                result = await self._run_job(job, token)
                if token.is_cancelled():
                    logger.debug("Worker %d discarding chunk %d result", worker_id, job.chunk.index)
                    return

                results[job.chunk.index] = result
                completed += 1
                logger.info("Processed %d of %d chunks", completed, total)
                if on_progress is not None:
                    try:
                        on_progress(completed, total)
                    except Exception as e:
                        logger.warning("Progress callback failed: %s", e)

        logger.info(
            "Transcribing %d chunk(s) with concurrency %d", total, self.concurrency
        )
        workers = [
            asyncio.create_task(worker(i)) for i in range(min(self.concurrency, total))
        ]
        all_done = asyncio.gather(*workers)
        cancelled = asyncio.ensure_future(token.wait())

        try:
            await asyncio.wait({all_done, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._abandon(workers)
            raise
        finally:
            cancelled.cancel()

        if token.is_cancelled():
            await self._abandon(workers)
            if all_done.done() and not all_done.cancelled():
                all_done.exception()
            logger.info(
                "Transcription cancelled after %d of %d chunks", completed, total
            )
            raise TranscriptionCancelled()

        all_done.result()

        missing = [c.index for c in ordered if c.index not in results]
        if missing:
            raise RuntimeError(f"No result for chunks {missing}")

        return [results[c.index] for c in ordered]

    async def _abandon(self, workers: list[asyncio.Task]) -> None:
        """Stop waiting on workers; executor calls already running are discarded."""
        for task in workers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def _run_job(self, job: TranscriptionJob, token: CancellationToken) -> ChunkResult:
        chunk = job.chunk
        token.raise_if_cancelled()

        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        logger.debug("Transcribing chunk %d: %s", chunk.index, chunk.path.name)
        try:
            payload = await self.transcriber.transcribe(chunk.path, job.options)
        except (asyncio.CancelledError, TranscriptionCancelled):
            raise
        except Exception as e:
            logger.warning("Chunk %d transcription failed: %s", chunk.index, e)
            return ChunkResult(index=chunk.index, text="", raw=None, failed=True)
        finally:
            self.in_flight -= 1
            if self.delete_after_read:
                try:
                    chunk.path.unlink(missing_ok=True)
                except OSError as e:
                    logger.debug("Could not delete chunk %s: %s", chunk.path, e)

        text = extract_transcript(payload)
        if text is None:
            logger.warning("Chunk %d returned a malformed response", chunk.index)
            return ChunkResult(index=chunk.index, text="", raw=None, failed=True)

        if not text.strip():
            logger.warning("No transcript returned for chunk %d", chunk.index)
            return ChunkResult(index=chunk.index, text="", raw=payload)

        return ChunkResult(index=chunk.index, text=normalize_text(text), raw=payload)
