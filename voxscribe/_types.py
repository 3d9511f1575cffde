"""Shared types and dataclasses for cross-module use."""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class AudioMetadata:
    """Audio properties reported by ffprobe."""

    format: str
    codec: str
    duration: float
    bitrate: int
    sample_rate: int
    channels: int
    size: int
    is_lossless: bool


@dataclass(frozen=True)
class AudioSource:
    """Source file as read at pipeline start."""

    path: Path
    size: int
    duration: float | None = None
    metadata: AudioMetadata | None = None

    @property
    def bitrate(self) -> float | None:
        """Effective bitrate in bits per second, or None if duration is unknown."""
        if not self.duration or self.duration <= 0:
            return None
        return self.size * 8 / self.duration


@dataclass(frozen=True)
class ChunkFormat:
    """Container and codec settings used to write chunk files."""

    name: str
    extension: str
    codec_args: tuple[str, ...]
    lossless: bool


@dataclass
class ChunkPlan:
    """Segmentation plan, mutated by the segmenter across fallback attempts."""

    duration: float
    max_bytes: int
    chunk_format: ChunkFormat | None = None
    attempt: int = 0
    single_chunk: bool = False


@dataclass(frozen=True)
class ChunkFile:
    """One chunk produced by the segmenter."""

    index: int
    path: Path
    size: int


@dataclass(frozen=True)
class RecognitionOptions:
    """Request options sent with every chunk."""

    model: str = "nova-2"
    detect_language: bool = True
    smart_format: bool = True


@dataclass(frozen=True)
class TranscriptionJob:
    """A chunk paired with its recognition request options."""

    chunk: ChunkFile
    options: RecognitionOptions = field(default_factory=RecognitionOptions)


@dataclass(frozen=True)
class ChunkResult:
    """Outcome of transcribing one chunk."""

    index: int
    text: str
    raw: dict | None = None
    failed: bool = False


@dataclass(frozen=True)
class AggregateResult:
    """Final transcript assembled from all chunk results."""

    transcript: str
    raw_payloads: list[dict] = field(default_factory=list)
    processed_bytes: int = 0
    chunk_format: str = ""
    source_metadata: AudioMetadata | None = None
    chunk_count: int = 0
    failed_chunks: int = 0

    @property
    def raw_data(self) -> str:
        """Raw payloads serialized as a JSON array."""
        return json.dumps(self.raw_payloads)

    def to_dict(self) -> dict:
        return {
            "transcript": self.transcript,
            "raw_data": self.raw_data,
            "chunk_info": {
                "size": self.processed_bytes,
                "extension": self.chunk_format,
            },
            "chunk_count": self.chunk_count,
            "failed_chunks": self.failed_chunks,
            "audio_metadata": (
                asdict(self.source_metadata) if self.source_metadata else None
            ),
        }
