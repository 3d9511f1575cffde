"""Chunk duration planning from file size and probed duration."""

import logging
import math

from voxscribe._types import ChunkPlan

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_DURATION = 300.0
MIN_CHUNK_DURATION = 60.0
SINGLE_CHUNK_MAX_DURATION = 3600.0
DEFAULT_MAX_CHUNK_BYTES = 150 * 1024 * 1024


def plan_chunks(
    size: int,
    duration: float | None,
    max_bytes: int = DEFAULT_MAX_CHUNK_BYTES,
    default_duration: float = DEFAULT_CHUNK_DURATION,
    min_duration: float = MIN_CHUNK_DURATION,
    single_chunk_max_duration: float = SINGLE_CHUNK_MAX_DURATION,
) -> ChunkPlan:
    """Estimate a chunk duration that keeps chunks under ``max_bytes``.

    A file that already fits the byte ceiling and is no longer than
    ``single_chunk_max_duration`` (or whose duration is unknown) is planned as
    one chunk. Otherwise the duration is derived from the effective bitrate
    and capped at ``default_duration``, never going below ``min_duration``.
    Without a known duration the default is used as-is.

    The result is an estimate: actual chunk sizes depend on ffmpeg's output,
    so the segmenter checks them again.

    Args:
        size: Source size in bytes
        duration: Probed duration in seconds, or None/0 if unknown
        max_bytes: Byte ceiling for a single chunk
        default_duration: Upper bound for the chunk duration
        min_duration: Lower bound for the chunk duration
        single_chunk_max_duration: Longest source sent as a single chunk

    Returns:
        ChunkPlan with the planned duration
    """
    known = duration is not None and duration > 0

    if size <= max_bytes and (not known or duration <= single_chunk_max_duration):
        plan_duration = duration if known else default_duration
        logger.info(
            "Planning single chunk (size=%d bytes, duration=%s)",
            size,
            f"{duration:.1f}s" if known else "unknown",
        )
        return ChunkPlan(duration=plan_duration, max_bytes=max_bytes, single_chunk=True)

    if not known:
        logger.info(
            "Duration unknown, using default chunk duration %.0fs", default_duration
        )
        return ChunkPlan(duration=default_duration, max_bytes=max_bytes)

    bitrate = size * 8 / duration
    fitting = math.floor(max_bytes * 8 / bitrate)
    target = max(min_duration, min(default_duration, fitting))
    logger.info(
        "Planned chunk duration %.0fs (bitrate=%.0f bps, ceiling=%d bytes)",
        target,
        bitrate,
        max_bytes,
    )
    return ChunkPlan(duration=float(target), max_bytes=max_bytes)
