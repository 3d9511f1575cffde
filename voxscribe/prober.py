"""Audio probing, source validation, and metadata formatting."""

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path

from voxscribe._types import AudioMetadata, AudioSource
from voxscribe.cancellation import CancellationToken
from voxscribe.errors import SourceInvalidError, TranscriptionCancelled
from voxscribe.tools import run_tool

logger = logging.getLogger(__name__)

__all__ = [
    "SupportedFormat",
    "SUPPORTED_FORMATS",
    "get_format_info",
    "is_supported_extension",
    "probe_duration",
    "probe_metadata",
    "load_source",
    "validate_source",
    "format_duration",
    "format_bitrate",
    "format_sample_rate",
    "format_file_size",
]

LOSSLESS_CODECS = ("flac", "wav", "aiff", "alac", "pcm_s16le", "pcm_s24le", "pcm_s32le")


@dataclass(frozen=True)
class SupportedFormat:
    """Accepted input container."""

    extension: str
    description: str
    is_lossless: bool
    stream_copy: bool
    is_video: bool = False


SUPPORTED_FORMATS: tuple[SupportedFormat, ...] = (
    SupportedFormat("mp3", "MPEG Audio Layer 3", False, True),
    SupportedFormat("wav", "Waveform Audio File Format", True, True),
    SupportedFormat("flac", "Free Lossless Audio Codec", True, True),
    SupportedFormat("aac", "Advanced Audio Codec", False, True),
    SupportedFormat("ogg", "Ogg Vorbis", False, True),
    SupportedFormat("opus", "Opus Audio Codec", False, True),
    SupportedFormat("m4a", "MPEG-4 Audio", False, True),
    SupportedFormat("wma", "Windows Media Audio", False, False),
    SupportedFormat("aiff", "Audio Interchange File Format", True, True),
    SupportedFormat("mp4", "MPEG-4 Video", False, False, is_video=True),
    SupportedFormat("mov", "QuickTime Movie", False, False, is_video=True),
    SupportedFormat("mkv", "Matroska Video", False, False, is_video=True),
    SupportedFormat("webm", "WebM Video", False, False, is_video=True),
    SupportedFormat("avi", "Audio Video Interleave", False, False, is_video=True),
)


def get_format_info(extension: str) -> SupportedFormat | None:
    """Look up a supported format by file extension (with or without dot)."""
    normalized = extension.lower().lstrip(".")
    for fmt in SUPPORTED_FORMATS:
        if fmt.extension == normalized:
            return fmt
    return None


def is_supported_extension(extension: str) -> bool:
    return get_format_info(extension) is not None


async def _run_ffprobe(
    path: Path,
    ffprobe: str | None,
    token: CancellationToken | None,
) -> dict | None:
    """Run ffprobe once and return its parsed JSON, or None on any failure."""
    if not ffprobe:
        return None

    try:
        result = await run_tool(
            [
                ffprobe,
                "-v",
                "quiet",
                "-print_format",
                "json",
                "-show_format",
                "-show_streams",
                str(path),
            ],
            token,
        )
    except TranscriptionCancelled:
        raise
    except Exception as e:
        logger.warning("ffprobe failed for %s: %s", path, e)
        return None

    if not result.ok:
        logger.warning("ffprobe exited with code %d for %s", result.returncode, path)
        return None

    try:
        data = json.loads(result.stdout.decode("utf-8", errors="replace"))
    except ValueError as e:
        logger.warning("ffprobe returned malformed JSON for %s: %s", path, e)
        return None

    return data if isinstance(data, dict) else None


def _parse_duration(value) -> float | None:
    try:
        duration = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(duration) or duration <= 0:
        return None
    return duration


def _parse_int(*values) -> int:
    for value in values:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            continue
    return 0


async def probe_duration(
    path: Path,
    ffprobe: str | None,
    token: CancellationToken | None = None,
) -> float | None:
    """Best-effort duration in seconds.

    Returns None when ffprobe is missing, fails, or reports a duration that is
    not a positive finite number. Only cancellation is raised.
    """
    data = await _run_ffprobe(Path(path), ffprobe, token)
    if data is None:
        return None
    return _parse_duration((data.get("format") or {}).get("duration"))


def _metadata_from_probe(data: dict) -> AudioMetadata | None:
    streams = data.get("streams") or []
    audio_stream = next(
        (s for s in streams if isinstance(s, dict) and s.get("codec_type") == "audio"),
        None,
    )
    fmt = data.get("format")
    if audio_stream is None or not isinstance(fmt, dict):
        return None

    format_name = (fmt.get("format_name") or "").split(",")[0]
    format_info = get_format_info(format_name)
    codec_name = (audio_stream.get("codec_name") or "").lower()
    is_lossless = bool(format_info and format_info.is_lossless) or codec_name in LOSSLESS_CODECS

    return AudioMetadata(
        format=fmt.get("format_long_name") or fmt.get("format_name") or "Unknown",
        codec=audio_stream.get("codec_long_name") or audio_stream.get("codec_name") or "Unknown",
        duration=_parse_duration(fmt.get("duration")) or 0.0,
        bitrate=_parse_int(fmt.get("bit_rate"), audio_stream.get("bit_rate")),
        sample_rate=_parse_int(audio_stream.get("sample_rate")),
        channels=_parse_int(audio_stream.get("channels")),
        size=_parse_int(fmt.get("size")),
        is_lossless=is_lossless,
    )


async def probe_metadata(
    path: Path,
    ffprobe: str | None,
    token: CancellationToken | None = None,
) -> AudioMetadata | None:
    """Detailed audio metadata, or None if unavailable or there is no audio stream."""
    data = await _run_ffprobe(Path(path), ffprobe, token)
    if data is None:
        return None
    return _metadata_from_probe(data)


async def load_source(
    path: Path,
    ffprobe: str | None,
    token: CancellationToken | None = None,
) -> AudioSource:
    """Build an AudioSource from a stat call and a single probe.

    Raises:
        SourceInvalidError: If the file cannot be stat'ed
    """
    path = Path(path)
    try:
        size = path.stat().st_size
    except OSError as e:
        raise SourceInvalidError(f"Cannot read source file {path}: {e}") from e

    metadata = await probe_metadata(path, ffprobe, token)
    duration = metadata.duration if metadata and metadata.duration > 0 else None
    logger.info(
        "Source %s: %s, duration=%s",
        path.name,
        format_file_size(size),
        format_duration(duration) if duration else "unknown",
    )
    return AudioSource(path=path, size=size, duration=duration, metadata=metadata)


async def validate_source(
    path: Path,
    ffprobe: str | None = None,
    token: CancellationToken | None = None,
    deep: bool = True,
) -> SupportedFormat:
    """Check that a file exists, is non-empty and looks like audio/video.

    Args:
        path: Source file
        ffprobe: ffprobe binary; deep validation is skipped when None
        token: Optional cancellation token
        deep: Require ffprobe to report an audio stream

    Returns:
        The matching SupportedFormat

    Raises:
        SourceInvalidError: On any validation failure
    """
    path = Path(path)
    if not path.exists():
        raise SourceInvalidError(f"File does not exist: {path}")
    if not path.is_file():
        raise SourceInvalidError(f"Not a regular file: {path}")
    if path.stat().st_size == 0:
        raise SourceInvalidError(f"File is empty: {path}")

    fmt = get_format_info(path.suffix)
    if fmt is None:
        raise SourceInvalidError(
            f"Unsupported format '{path.suffix or '(none)'}'. Supported: "
            f"{', '.join(f.extension for f in SUPPORTED_FORMATS)}"
        )

    if deep and ffprobe:
        metadata = await probe_metadata(path, ffprobe, token)
        if metadata is None:
            raise SourceInvalidError(f"Invalid audio file or corrupted: {path}")

    logger.debug("Validated source %s (%s)", path, fmt.description)
    return fmt


def format_duration(seconds: float | None) -> str:
    """Render seconds as M:SS or H:MM:SS."""
    if not seconds or seconds <= 0:
        return "Unknown"

    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_bitrate(bitrate: float | None) -> str:
    if not bitrate or bitrate <= 0:
        return "Unknown"
    if bitrate >= 1_000_000:
        return f"{bitrate / 1_000_000:.1f} Mbps"
    return f"{round(bitrate / 1000)} kbps"


def format_sample_rate(sample_rate: int | None) -> str:
    if not sample_rate or sample_rate <= 0:
        return "Unknown"
    if sample_rate >= 1000:
        return f"{sample_rate / 1000:.1f} kHz"
    return f"{sample_rate} Hz"


def format_file_size(size: int | None) -> str:
    """Render a byte count with a binary unit (B, KB, MB, GB)."""
    if not size or size <= 0:
        return "Unknown"

    units = ("B", "KB", "MB", "GB")
    value = float(size)
    unit_index = 0
    while value >= 1024 and unit_index < len(units) - 1:
        value /= 1024
        unit_index += 1
    return f"{value:.1f} {units[unit_index]}"
