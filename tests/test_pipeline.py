"""Tests for the end-to-end transcription pipeline."""

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from voxscribe import pipeline as pipeline_module
from voxscribe._types import ChunkFile
from voxscribe.cancellation import CancellationToken
from voxscribe.config import ChunkingConfig, Config, ConfigError, TranscriptionConfig
from voxscribe.errors import (
    ChunkingError,
    InvalidApiKeyError,
    SourceInvalidError,
    ToolMissingError,
    TranscriptionCancelled,
)
from voxscribe.pipeline import Stage, TranscriptionPipeline
from voxscribe.tools import ToolResult

PROBE_JSON = {
    "format": {"format_name": "mp3", "duration": "900.0", "bit_rate": "128000", "size": "64"},
    "streams": [
        {"codec_type": "audio", "codec_name": "mp3", "sample_rate": "44100", "channels": 2}
    ],
}


class FakeSegmenter:
    """Writes ``count`` chunk files into the workspace."""

    def __init__(self, count=3, error=None):
        self.count = count
        self.error = error
        self.calls = []

    async def segment(self, source, workdir, plan, token):
        self.calls.append((source, workdir, plan))
        token.raise_if_cancelled()
        if self.error:
            raise self.error
        chunks = []
        for i in range(self.count):
            path = workdir / f"chunk_{i:03d}.mp3"
            path.write_bytes(b"x" * (10 + i))
            chunks.append(ChunkFile(index=i, path=path, size=10 + i))
        return chunks


class FakeTranscriber:
    """Answers "chunk N" for each chunk after an optional delay."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.validate_api_key = AsyncMock()
        self.shutdown = AsyncMock()

    async def transcribe(self, audio_path, options=None):
        await asyncio.sleep(self.delay)
        index = int(audio_path.stem.split("_")[1])
        return {
            "results": {"channels": [{"alternatives": [{"transcript": f"chunk {index}"}]}]}
        }


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "meeting.mp3"
    path.write_bytes(b"\xff\xfb" * 32)
    return path


@pytest.fixture
def ffprobe_output():
    mock_run = AsyncMock(return_value=ToolResult(0, json.dumps(PROBE_JSON).encode(), b""))
    with patch("voxscribe.prober.run_tool", mock_run):
        yield mock_run


def _pipeline(transcriber=None, segmenter=None, **kwargs):
    return TranscriptionPipeline(
        transcriber or FakeTranscriber(),
        chunking=ChunkingConfig(cleanup_grace_delay=0),
        transcription=TranscriptionConfig(concurrency=2),
        ffmpeg="ffmpeg",
        ffprobe="ffprobe",
        segmenter=segmenter or FakeSegmenter(),
        **kwargs,
    )


class TestPipeline:
    """Test the happy path."""

    @pytest.mark.asyncio
    async def test_transcribe(self, audio_file, ffprobe_output):
        """Chunks are transcribed and joined in order."""
        segmenter = FakeSegmenter(count=3)
        stages = []
        progress = []

        result = await _pipeline(segmenter=segmenter).transcribe(
            audio_file,
            on_progress=lambda done, total: progress.append((done, total)),
            on_stage=stages.append,
        )

        assert result.transcript == "chunk 0 chunk 1 chunk 2"
        assert result.chunk_count == 3
        assert result.processed_bytes == 10 + 11 + 12
        assert len(result.raw_payloads) == 3
        assert result.source_metadata.duration == 900.0
        assert stages == [
            Stage.VALIDATION,
            Stage.PREPARATION,
            Stage.CHUNKING,
            Stage.TRANSCRIPTION,
            Stage.DONE,
        ]
        assert progress[-1] == (3, 3)
        assert ffprobe_output.await_count == 1

        source, workdir, plan = segmenter.calls[0]
        assert source.duration == 900.0
        assert plan.single_chunk is True
        assert not workdir.exists()

    @pytest.mark.asyncio
    async def test_idempotent(self, audio_file, ffprobe_output):
        """Two runs over the same file give the same result."""
        pipeline = _pipeline()
        first = await pipeline.transcribe(audio_file)
        second = await pipeline.transcribe(audio_file)
        assert first.transcript == second.transcript
        assert first.raw_payloads == second.raw_payloads

    @pytest.mark.asyncio
    async def test_api_key_checked_first(self, audio_file, ffprobe_output):
        transcriber = FakeTranscriber()
        await _pipeline(transcriber).transcribe(audio_file)
        transcriber.validate_api_key.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_api_key_check_disabled(self, audio_file, ffprobe_output):
        transcriber = FakeTranscriber()
        await _pipeline(transcriber, validate_api_key=False).transcribe(audio_file)
        transcriber.validate_api_key.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_shuts_down_transcriber(self):
        transcriber = FakeTranscriber()
        await _pipeline(transcriber).close(wait=False)
        transcriber.shutdown.assert_awaited_once_with(wait=False)


class TestPipelineFailures:
    """Test terminal errors."""

    @pytest.mark.asyncio
    async def test_missing_source(self, tmp_path):
        segmenter = FakeSegmenter()
        with pytest.raises(SourceInvalidError) as exc_info:
            await _pipeline(segmenter=segmenter).transcribe(tmp_path / "gone.mp3")
        assert exc_info.value.stage == "validation"
        assert segmenter.calls == []

    @pytest.mark.asyncio
    async def test_corrupt_source_rejected(self, audio_file):
        """A file ffprobe cannot read is rejected during validation."""
        segmenter = FakeSegmenter()
        with patch(
            "voxscribe.prober.run_tool", AsyncMock(return_value=ToolResult(1, b"", b"bad"))
        ):
            with pytest.raises(SourceInvalidError, match="corrupted"):
                await _pipeline(segmenter=segmenter).transcribe(audio_file)
        assert segmenter.calls == []

    @pytest.mark.asyncio
    async def test_invalid_api_key(self, audio_file, ffprobe_output):
        transcriber = FakeTranscriber()
        transcriber.validate_api_key.side_effect = InvalidApiKeyError("Invalid Deepgram API key")
        segmenter = FakeSegmenter()

        with pytest.raises(InvalidApiKeyError):
            await _pipeline(transcriber, segmenter).transcribe(audio_file)
        assert segmenter.calls == []

    @pytest.mark.asyncio
    async def test_ffmpeg_missing(self, audio_file, ffprobe_output):
        pipeline = _pipeline()
        pipeline.ffmpeg = None
        with patch(
            "voxscribe.pipeline.find_ffmpeg", side_effect=ToolMissingError("ffmpeg not found")
        ):
            with pytest.raises(ToolMissingError) as exc_info:
                await pipeline.transcribe(audio_file)
        assert exc_info.value.stage == "environment"

    @pytest.mark.asyncio
    async def test_chunking_error_cleans_workspace(self, audio_file, ffprobe_output):
        segmenter = FakeSegmenter(error=ChunkingError("Unable to chunk audio"))
        with pytest.raises(ChunkingError):
            await _pipeline(segmenter=segmenter).transcribe(audio_file)
        _, workdir, _ = segmenter.calls[0]
        assert not workdir.exists()


class TestPipelineCancellation:
    """Test cancellation across stages."""

    @pytest.mark.asyncio
    async def test_cancel_during_transcription(self, audio_file, ffprobe_output):
        """Cancelling mid-batch raises and removes every temporary file."""
        segmenter = FakeSegmenter(count=6)
        token = CancellationToken()

        def on_progress(done, total):
            token.cancel()

        with pytest.raises(TranscriptionCancelled):
            await _pipeline(FakeTranscriber(delay=0.05), segmenter).transcribe(
                audio_file, token, on_progress=on_progress
            )

        _, workdir, _ = segmenter.calls[0]
        assert not workdir.exists()

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, audio_file, ffprobe_output):
        token = CancellationToken()
        token.cancel()
        segmenter = FakeSegmenter()
        with pytest.raises(TranscriptionCancelled):
            await _pipeline(segmenter=segmenter).transcribe(audio_file, token)
        assert segmenter.calls == []
        ffprobe_output.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_during_api_key_check(self, audio_file, ffprobe_output):
        """A slow key check is abandoned as soon as the token fires."""
        transcriber = FakeTranscriber()

        async def slow_check():
            await asyncio.sleep(3)

        transcriber.validate_api_key.side_effect = slow_check
        segmenter = FakeSegmenter()
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        start = time.monotonic()
        with pytest.raises(TranscriptionCancelled):
            await _pipeline(transcriber, segmenter).transcribe(audio_file, token)

        assert time.monotonic() - start < 1.0
        assert segmenter.calls == []


class TestFromConfig:
    """Test construction from configuration."""

    def test_from_config(self):
        cfg = Config()
        cfg.deepgram.api_key = "key"
        cfg.deepgram.model = "nova-3"
        cfg.transcription.concurrency = 4

        pipeline = TranscriptionPipeline.from_config(cfg)

        assert pipeline.transcriber.options.model == "nova-3"
        assert pipeline.transcription.concurrency == 4
        assert pipeline.chunking is cfg.chunking

    @pytest.mark.asyncio
    async def test_module_transcribe(self, audio_file):
        """The module-level helper builds, runs and closes a pipeline."""
        mock_pipeline = MagicMock()
        mock_pipeline.transcribe = AsyncMock(return_value="result")
        mock_pipeline.close = AsyncMock()

        cfg = Config()
        cfg.deepgram.api_key = "key"

        with patch.object(
            pipeline_module.TranscriptionPipeline, "from_config", return_value=mock_pipeline
        ):
            result = await pipeline_module.transcribe(audio_file, config=cfg)

        assert result == "result"
        mock_pipeline.close.assert_awaited_once_with(wait=True)

    @pytest.mark.asyncio
    async def test_module_transcribe_validates_config(self, audio_file):
        """An invalid configuration fails before any pipeline is built."""
        with patch.object(pipeline_module.TranscriptionPipeline, "from_config") as mock_build:
            with pytest.raises(ConfigError, match="API key is required"):
                await pipeline_module.transcribe(audio_file, config=Config())
        mock_build.assert_not_called()
