"""End-to-end file transcription: validate, probe, plan, segment, transcribe, aggregate."""

import logging
from enum import Enum
from pathlib import Path
from typing import Callable

from voxscribe._types import AggregateResult
from voxscribe.aggregator import aggregate_results
from voxscribe.cancellation import CancellationToken, chunk_workspace, wait_or_cancel
from voxscribe.config import ChunkingConfig, Config, TranscriptionConfig, load_config
from voxscribe.errors import SourceInvalidError
from voxscribe.planner import plan_chunks
from voxscribe.prober import load_source, validate_source
from voxscribe.scheduler import ChunkTranscriber, ProgressCallback, TranscriptionScheduler
from voxscribe.segmenter import Segmenter
from voxscribe.tools import find_ffmpeg, find_ffprobe
from voxscribe.transcriber_deepgram import DeepgramTranscriber

logger = logging.getLogger(__name__)


class Stage(Enum):
    """Pipeline stage, reported to the stage callback."""

    VALIDATION = "validation"
    PREPARATION = "preparation"
    CHUNKING = "chunking"
    TRANSCRIPTION = "transcription"
    DONE = "done"


StageCallback = Callable[[Stage], None]


class TranscriptionPipeline:
    """Coordinates prober, planner, segmenter, scheduler, and aggregator.

    Every request gets a cancellation token and a private chunk directory that
    is removed when the request settles, however it ends.
    """

    def __init__(
        self,
        transcriber: ChunkTranscriber,
        chunking: ChunkingConfig | None = None,
        transcription: TranscriptionConfig | None = None,
        validate_api_key: bool = True,
        ffmpeg: str | None = None,
        ffprobe: str | None = None,
        segmenter: Segmenter | None = None,
    ):
        """Initialize pipeline.

        Args:
            transcriber: Recognition client (DeepgramTranscriber in production)
            chunking: Chunk sizing settings
            transcription: Scheduling settings
            validate_api_key: Check the API key before doing any work
            ffmpeg: ffmpeg path; located on first use when None
            ffprobe: ffprobe path; located on first use when None
            segmenter: Pre-built segmenter (built from ``chunking`` when None)
        """
        self.transcriber = transcriber
        self.chunking = chunking or ChunkingConfig()
        self.transcription = transcription or TranscriptionConfig()
        self.validate_api_key = validate_api_key
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self._ffprobe_resolved = ffprobe is not None
        self.segmenter = segmenter

    @classmethod
    def from_config(cls, config: Config) -> "TranscriptionPipeline":
        """Build a pipeline with a Deepgram transcriber from configuration."""
        transcriber = DeepgramTranscriber(
            api_key=config.deepgram.api_key,
            model=config.deepgram.model,
            smart_format=config.deepgram.smart_format,
            detect_language=config.deepgram.detect_language,
            timeout=config.deepgram.timeout,
            max_workers=config.transcription.concurrency,
        )
        return cls(
            transcriber,
            chunking=config.chunking,
            transcription=config.transcription,
            validate_api_key=config.deepgram.validate_api_key,
        )

    def _resolve_ffprobe(self) -> str | None:
        if not self._ffprobe_resolved:
            self.ffprobe = find_ffprobe()
            self._ffprobe_resolved = True
        return self.ffprobe

    def _build_segmenter(self, ffmpeg: str) -> Segmenter:
        return Segmenter(
            ffmpeg,
            max_attempts=self.chunking.max_attempts,
            lossless_shrink=self.chunking.lossless_shrink_factor,
            compressed_shrink=self.chunking.compressed_shrink_factor,
            compressed_bitrate=self.chunking.compressed_bitrate,
            default_duration=self.chunking.chunk_duration,
            min_duration=self.chunking.min_chunk_duration,
        )

    async def transcribe(
        self,
        file_path: Path,
        token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
        on_stage: StageCallback | None = None,
    ) -> AggregateResult:
        """Transcribe one file.

        Args:
            file_path: Audio or video file
            token: Cancellation token (a fresh one when None)
            on_progress: Called with (completed, total) per finished chunk
            on_stage: Called when the pipeline enters a new stage

        Returns:
            AggregateResult with transcript, payloads, and metadata

        Raises:
            SourceInvalidError: Missing, empty, or unsupported source
            ToolMissingError: ffmpeg not installed
            InvalidApiKeyError: Deepgram rejected the key
            ChunkingError: No segmentation strategy succeeded
            TranscriptionCancelled: The token fired
        """
        token = token or CancellationToken()
        path = Path(file_path)

        def enter(stage: Stage) -> None:
            token.raise_if_cancelled()
            logger.info("Stage: %s", stage.value)
            if on_stage is not None:
                on_stage(stage)

        enter(Stage.VALIDATION)
        ffprobe = self._resolve_ffprobe()
        await validate_source(path, ffprobe, token, deep=False)
        source = await load_source(path, ffprobe, token)
        if self.transcription.validate_audio and ffprobe and source.metadata is None:
            raise SourceInvalidError(f"Invalid audio file or corrupted: {path}")
        ffmpeg = self.ffmpeg or find_ffmpeg()
        if self.validate_api_key:
            await wait_or_cancel(self.transcriber.validate_api_key(), token)

        enter(Stage.PREPARATION)
        plan = plan_chunks(
            source.size,
            source.duration,
            max_bytes=self.chunking.max_chunk_bytes,
            default_duration=self.chunking.chunk_duration,
            min_duration=self.chunking.min_chunk_duration,
            single_chunk_max_duration=self.chunking.single_chunk_max_duration,
        )
        segmenter = self.segmenter or self._build_segmenter(ffmpeg)

        async with chunk_workspace(grace_delay=self.chunking.cleanup_grace_delay) as workdir:
            enter(Stage.CHUNKING)
            chunks = await segmenter.segment(source, workdir, plan, token)
            processed_bytes = sum(c.size for c in chunks)

            enter(Stage.TRANSCRIPTION)
            scheduler = TranscriptionScheduler(
                self.transcriber, concurrency=self.transcription.concurrency
            )
            results = await scheduler.run(chunks, token, on_progress)

        result = aggregate_results(
            results,
            processed_bytes=processed_bytes,
            chunk_format=plan.chunk_format.extension if plan.chunk_format else "",
            source_metadata=source.metadata,
        )
        if result.failed_chunks:
            logger.warning(
                "%d of %d chunks failed; transcript has gaps",
                result.failed_chunks,
                result.chunk_count,
            )
        logger.info(
            "Transcription complete: %d chunks, %d characters",
            result.chunk_count,
            len(result.transcript),
        )
        if on_stage is not None:
            on_stage(Stage.DONE)
        return result

    async def close(self, wait: bool = True) -> None:
        """Shut down the transcriber; ``wait=False`` abandons in-flight requests."""
        shutdown = getattr(self.transcriber, "shutdown", None)
        if shutdown is not None:
            await shutdown(wait=wait)


async def transcribe(
    file_path: Path,
    token: CancellationToken | None = None,
    on_progress: ProgressCallback | None = None,
    config: Config | None = None,
) -> AggregateResult:
    """Transcribe a file with a pipeline built from ``config`` (loaded when None).

    Raises:
        ConfigError: If the configuration is invalid
    """
    config = config or load_config()
    config.validate()
    pipeline = TranscriptionPipeline.from_config(config)
    token = token or CancellationToken()
    try:
        return await pipeline.transcribe(file_path, token, on_progress)
    finally:
        await pipeline.close(wait=not token.is_cancelled())
