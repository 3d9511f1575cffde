"""Split a source file into size-bounded chunk files with ffmpeg."""

import logging
import math
import re
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from voxscribe._types import AudioSource, ChunkFile, ChunkFormat, ChunkPlan
from voxscribe.cancellation import CancellationToken
from voxscribe.errors import ChunkingError, TranscriptionCancelled
from voxscribe.prober import format_file_size, get_format_info
from voxscribe.tools import ToolResult, run_tool

logger = logging.getLogger(__name__)

ToolRunner = Callable[[Sequence[str], CancellationToken | None], Awaitable[ToolResult]]

CHUNK_PREFIX = "chunk_"

FLAC_FORMAT = ChunkFormat(
    name="flac",
    extension="flac",
    codec_args=("-c:a", "flac"),
    lossless=True,
)


class SegmentationFailed(Exception):
    """A single ffmpeg attempt failed for a reason other than cancellation."""


def lossless_format_for(source: AudioSource) -> ChunkFormat:
    """Pick the lossless chunk format for a source.

    Audio containers ffmpeg can segment without re-encoding are stream-copied
    into their own container; everything else is encoded to FLAC.
    """
    info = get_format_info(source.path.suffix)
    if info is not None and info.stream_copy:
        return ChunkFormat(
            name=f"{info.extension} (stream copy)",
            extension=info.extension,
            codec_args=("-c:a", "copy"),
            lossless=True,
        )
    return FLAC_FORMAT


def compressed_format(bitrate: str = "128k") -> ChunkFormat:
    return ChunkFormat(
        name=f"mp3 {bitrate}",
        extension="mp3",
        codec_args=("-c:a", "libmp3lame", "-b:a", bitrate),
        lossless=False,
    )


def list_chunks(workdir: Path, extension: str) -> list[ChunkFile]:
    """List chunk files in time order and assign their indices.

    Chunks are ordered by the sequence number in their name. ffmpeg widens
    the zero-padded number past 999, so plain string order is not time order.
    Indices are contiguous from 0.
    """
    pattern = re.compile(rf"^{CHUNK_PREFIX}(\d+)\.{re.escape(extension)}$")
    numbered = []
    for path in Path(workdir).glob(f"{CHUNK_PREFIX}*.{extension}"):
        match = pattern.match(path.name)
        if match:
            numbered.append((int(match.group(1)), path))
    paths = [path for _, path in sorted(numbered)]
    return [
        ChunkFile(index=index, path=path, size=path.stat().st_size)
        for index, path in enumerate(paths)
    ]


def clear_chunks(workdir: Path) -> int:
    """Delete every chunk file in ``workdir``; returns how many were removed."""
    removed = 0
    for path in Path(workdir).glob(f"{CHUNK_PREFIX}*"):
        try:
            path.unlink()
            removed += 1
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete chunk %s: %s", path, e)
    return removed


class Segmenter:
    """Runs ffmpeg with a layered fallback until every chunk fits the ceiling.

    Strategy order:
        1. Single-chunk fast path (when the plan says the file fits).
        2. Lossless segmentation, shrinking the duration after oversize output.
        3. Compressed (MP3) segmentation from a reset duration.
    Each tier is bounded by ``max_attempts``. A tool failure is retried once
    within a tier and escalates on the second failure. Cancellation aborts the
    running ffmpeg process and is never retried.
    """

    def __init__(
        self,
        ffmpeg: str,
        runner: ToolRunner = run_tool,
        max_attempts: int = 3,
        lossless_shrink: float = 0.7,
        compressed_shrink: float = 0.8,
        compressed_bitrate: str = "128k",
        default_duration: float = 300.0,
        min_duration: float = 60.0,
    ):
        """Initialize segmenter.

        Args:
            ffmpeg: Path to the ffmpeg binary
            runner: Coroutine used to execute ffmpeg
            max_attempts: Attempts per strategy tier
            lossless_shrink: Duration factor after an oversize lossless attempt
            compressed_shrink: Duration factor after an oversize compressed attempt
            compressed_bitrate: Bitrate of the compressed fallback
            default_duration: Duration the compressed tier restarts from
            min_duration: Floor for chunk durations
        """
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if not 0 < lossless_shrink < 1 or not 0 < compressed_shrink < 1:
            raise ValueError("shrink factors must be between 0 and 1")

        self.ffmpeg = ffmpeg
        self.runner = runner
        self.max_attempts = max_attempts
        self.lossless_shrink = lossless_shrink
        self.compressed_shrink = compressed_shrink
        self.compressed_bitrate = compressed_bitrate
        self.default_duration = default_duration
        self.min_duration = min_duration

    async def segment(
        self,
        source: AudioSource,
        workdir: Path,
        plan: ChunkPlan,
        token: CancellationToken,
    ) -> list[ChunkFile]:
        """Produce ordered chunk files no larger than ``plan.max_bytes``.

        Args:
            source: Source audio
            workdir: Private directory for chunk files
            plan: Initial plan from the planner (mutated across attempts)
            token: Cancellation token

        Returns:
            Chunk files with contiguous indices starting at 0

        Raises:
            TranscriptionCancelled: If the token fires
            ChunkingError: If every strategy fails
        """
        token.raise_if_cancelled()
        workdir = Path(workdir)
        lossless = lossless_format_for(source)

        try:
            if plan.single_chunk:
                chunks = await self._single_chunk(source, workdir, plan, lossless, token)
                if chunks:
                    return chunks
                plan.single_chunk = False
                plan.duration = min(plan.duration, self.default_duration)
                logger.info(
                    "Single chunk did not fit, segmenting at %.0fs", plan.duration
                )

            chunks = await self._run_tier(
                source, workdir, plan, lossless, self.lossless_shrink, token
            )
            if chunks:
                return chunks

            logger.warning(
                "Lossless segmentation failed, falling back to %s",
                self.compressed_bitrate,
            )
            plan.duration = self.default_duration
            chunks = await self._run_tier(
                source,
                workdir,
                plan,
                compressed_format(self.compressed_bitrate),
                self.compressed_shrink,
                token,
            )
            if chunks:
                return chunks
        except TranscriptionCancelled:
            clear_chunks(workdir)
            raise

        clear_chunks(workdir)
        raise ChunkingError(
            f"Unable to chunk audio: no strategy produced chunks under "
            f"{format_file_size(plan.max_bytes)}"
        )

    async def _single_chunk(
        self,
        source: AudioSource,
        workdir: Path,
        plan: ChunkPlan,
        chunk_format: ChunkFormat,
        token: CancellationToken,
    ) -> list[ChunkFile] | None:
        """Convert the whole file into one chunk; None if it fails or is too big."""
        plan.chunk_format = chunk_format
        output = workdir / f"{CHUNK_PREFIX}000.{chunk_format.extension}"
        args = [
            self.ffmpeg,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            str(source.path),
            "-vn",
            "-map",
            "0:a:0",
            *chunk_format.codec_args,
            "-y",
            str(output),
        ]

        for attempt in (1, 2):
            plan.attempt = attempt
            try:
                await self._invoke(args, workdir, chunk_format, token)
            except SegmentationFailed as e:
                clear_chunks(workdir)
                logger.warning("Single-chunk conversion attempt %d failed: %s", attempt, e)
                continue

            chunks = list_chunks(workdir, chunk_format.extension)
            if len(chunks) == 1 and chunks[0].size <= plan.max_bytes:
                logger.info(
                    "Single chunk ready: %s (%s)",
                    chunks[0].path.name,
                    format_file_size(chunks[0].size),
                )
                return chunks

            logger.info(
                "Single chunk exceeds ceiling (%s > %s)",
                format_file_size(sum(c.size for c in chunks)),
                format_file_size(plan.max_bytes),
            )
            clear_chunks(workdir)
            return None

        return None

    async def _run_tier(
        self,
        source: AudioSource,
        workdir: Path,
        plan: ChunkPlan,
        chunk_format: ChunkFormat,
        shrink: float,
        token: CancellationToken,
    ) -> list[ChunkFile] | None:
        """Segment-check-shrink loop for one format; None when the tier is exhausted."""
        plan.chunk_format = chunk_format
        failures = 0

        for attempt in range(1, self.max_attempts + 1):
            plan.attempt = attempt
            logger.info(
                "Segmenting as %s at %.0fs (attempt %d/%d)",
                chunk_format.name,
                plan.duration,
                attempt,
                self.max_attempts,
            )

            try:
                chunks = await self._segment_once(source, workdir, plan, chunk_format, token)
            except SegmentationFailed as e:
                clear_chunks(workdir)
                failures += 1
                if failures > 1:
                    logger.warning("Segmentation failed again (%s), giving up on %s", e, chunk_format.name)
                    return None
                logger.warning("Segmentation attempt %d failed (%s), retrying", attempt, e)
                continue

            oversized = [c for c in chunks if c.size > plan.max_bytes]
            if not oversized:
                logger.info(
                    "Segmentation produced %d chunks (%s total)",
                    len(chunks),
                    format_file_size(sum(c.size for c in chunks)),
                )
                return chunks

            logger.info(
                "%d of %d chunks exceed %s (largest %s)",
                len(oversized),
                len(chunks),
                format_file_size(plan.max_bytes),
                format_file_size(max(c.size for c in oversized)),
            )
            clear_chunks(workdir)

            next_duration = max(self.min_duration, math.floor(plan.duration * shrink))
            if next_duration >= plan.duration:
                logger.warning(
                    "Chunk duration already at minimum %.0fs for %s",
                    plan.duration,
                    chunk_format.name,
                )
                return None
            plan.duration = float(next_duration)

        return None

    async def _segment_once(
        self,
        source: AudioSource,
        workdir: Path,
        plan: ChunkPlan,
        chunk_format: ChunkFormat,
        token: CancellationToken,
    ) -> list[ChunkFile]:
        pattern = workdir / f"{CHUNK_PREFIX}%03d.{chunk_format.extension}"
        args = [
            self.ffmpeg,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            str(source.path),
            "-vn",
            "-map",
            "0:a:0",
            "-f",
            "segment",
            "-segment_time",
            str(max(1, int(plan.duration))),
            "-reset_timestamps",
            "1",
            *chunk_format.codec_args,
            "-y",
            str(pattern),
        ]
        return await self._invoke(args, workdir, chunk_format, token)

    async def _invoke(
        self,
        args: list[str],
        workdir: Path,
        chunk_format: ChunkFormat,
        token: CancellationToken,
    ) -> list[ChunkFile]:
        """Run ffmpeg once and list its output.

        Raises:
            SegmentationFailed: On a non-zero exit or when no chunks were written
            TranscriptionCancelled: If the token fires
        """
        try:
            result = await self.runner(args, token)
        except TranscriptionCancelled:
            raise
        except OSError as e:
            raise SegmentationFailed(str(e)) from e

        if not result.ok:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise SegmentationFailed(
                f"ffmpeg exited with code {result.returncode}: {stderr[-500:]}"
            )

        chunks = list_chunks(workdir, chunk_format.extension)
        if not chunks:
            raise SegmentationFailed("ffmpeg produced no chunks")
        return chunks
