"""Reassemble per-chunk results into one transcript."""

from typing import Iterable

from voxscribe._types import AggregateResult, AudioMetadata, ChunkResult


def aggregate_results(
    results: Iterable[ChunkResult],
    processed_bytes: int = 0,
    chunk_format: str = "",
    source_metadata: AudioMetadata | None = None,
) -> AggregateResult:
    """Combine chunk results in index order.

    Completion order never matters: results are sorted by index, non-empty
    texts are joined with a single space, and non-null payloads are kept in
    the same order. Failed or empty chunks leave no placeholder text.
    """
    ordered = sorted(results, key=lambda r: r.index)

    transcript = " ".join(r.text.strip() for r in ordered if r.text and r.text.strip())
    raw_payloads = [r.raw for r in ordered if r.raw is not None]

    return AggregateResult(
        transcript=transcript.strip(),
        raw_payloads=raw_payloads,
        processed_bytes=processed_bytes,
        chunk_format=chunk_format,
        source_metadata=source_metadata,
        chunk_count=len(ordered),
        failed_chunks=sum(1 for r in ordered if r.failed),
    )
