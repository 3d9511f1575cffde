"""Typer CLI entrypoint for voxscribe."""

import asyncio
import json
import logging
import signal
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

import typer

from voxscribe._types import AggregateResult
from voxscribe.cancellation import CancellationToken
from voxscribe.config import Config, ConfigError, load_config
from voxscribe.errors import PipelineError, TranscriptionCancelled
from voxscribe.history import HistoryItem, TranscriptionHistory
from voxscribe.live import LiveTranscriber
from voxscribe.pipeline import Stage, TranscriptionPipeline
from voxscribe.prober import (
    format_bitrate,
    format_duration,
    format_file_size,
    format_sample_rate,
    probe_metadata,
)
from voxscribe.recorder import MicrophoneSource
from voxscribe.tools import find_ffprobe

app = typer.Typer(help="Transcribe audio and video files with Deepgram")

logger = logging.getLogger(__name__)

EXIT_CANCELLED = 130

STAGE_MESSAGES = {
    Stage.VALIDATION: "Validating audio...",
    Stage.PREPARATION: "Preparing audio...",
    Stage.CHUNKING: "Splitting audio into chunks...",
    Stage.TRANSCRIPTION: "Transcribing audio...",
    Stage.DONE: "Transcription complete!",
}


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class Notifier:
    """Prints user-facing status lines to stderr according to the verbosity level."""

    def __init__(self, level: str = "all"):
        self.level = level

    def info(self, message: str) -> None:
        if self.level == "all":
            typer.echo(message, err=True)

    def error(self, message: str) -> None:
        if self.level != "none":
            typer.echo(message, err=True)


def _merge_config_overrides(
    cfg: Config,
    *,
    model: str | None = None,
    concurrency: int | None = None,
    chunk_mb: float | None = None,
    audio_device: str | None = None,
) -> Config:
    """Apply CLI overrides to configuration.

    CLI options take precedence over config file values.

    Raises:
        ConfigError: If override values are invalid
    """
    if model is not None:
        logger.debug("Overriding model to '%s'", model)
        cfg.deepgram.model = model

    if concurrency is not None:
        if concurrency < 1:
            raise ConfigError(f"Invalid concurrency {concurrency}. Must be at least 1")
        logger.debug("Overriding concurrency to %d", concurrency)
        cfg.transcription.concurrency = concurrency

    if chunk_mb is not None:
        if chunk_mb <= 0:
            raise ConfigError(f"Invalid chunk size {chunk_mb} MB. Must be positive")
        logger.debug("Overriding chunk size to %.1f MB", chunk_mb)
        cfg.chunking.target_chunk_mb = chunk_mb

    if audio_device is not None:
        logger.debug("Overriding audio device to '%s'", audio_device)
        cfg.audio.device = int(audio_device) if audio_device.isdigit() else audio_device

    return cfg


def _load(config: Path | None, verbose: bool) -> Config:
    cfg = load_config(config)
    _setup_logging(verbose or cfg.general.verbose)
    logger.info("Loaded config from: %s", config or "default locations")
    return cfg


def _install_cancel_handler(token: CancellationToken) -> bool:
    """Route Ctrl-C to the token instead of raising KeyboardInterrupt."""
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, token.cancel)
        return True
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("Signal handlers unavailable, Ctrl-C will interrupt directly")
        return False


def _remove_cancel_handler() -> None:
    try:
        asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
    except (NotImplementedError, RuntimeError, ValueError):
        pass


async def _run_transcription(
    cfg: Config,
    file: Path,
    notifier: Notifier,
) -> AggregateResult:
    token = CancellationToken()
    installed = _install_cancel_handler(token)
    pipeline = TranscriptionPipeline.from_config(cfg)
    try:
        return await pipeline.transcribe(
            file,
            token,
            on_progress=lambda done, total: notifier.info(
                f"Processed {done} of {total} chunks"
            ),
            on_stage=lambda stage: notifier.info(STAGE_MESSAGES[stage]),
        )
    finally:
        if installed:
            _remove_cancel_handler()
        await pipeline.close(wait=not token.is_cancelled())


@app.command()
def transcribe(
    file: Path = typer.Argument(..., help="Audio or video file to transcribe"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Override Deepgram model"
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-c", help="Override concurrent chunk requests"
    ),
    chunk_mb: float | None = typer.Option(
        None, "--chunk-mb", help="Override target chunk size in MB"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output full result as JSON"
    ),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write output to file instead of stdout"
    ),
    no_history: bool = typer.Option(
        False, "--no-history", help="Do not save to transcription history"
    ),
) -> None:
    """Transcribe an audio or video file."""
    notifier = Notifier()
    try:
        cfg = _load(config, verbose)
        notifier.level = cfg.general.notifications
        cfg = _merge_config_overrides(
            cfg, model=model, concurrency=concurrency, chunk_mb=chunk_mb
        )
        cfg.validate()

        result = asyncio.run(_run_transcription(cfg, file, notifier))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        notifier.error(f"Configuration error: {e}")
        raise typer.Exit(1)
    except TranscriptionCancelled:
        notifier.info("Transcription cancelled.")
        raise typer.Exit(EXIT_CANCELLED)
    except PipelineError as e:
        logger.error("Transcription failed at %s stage: %s", e.stage, e)
        notifier.error(f"Transcription failed ({e.stage}): {e}")
        raise typer.Exit(1)
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        notifier.error(f"Transcription failed: {e}")
        raise typer.Exit(1)

    if result.failed_chunks:
        notifier.error(
            f"Warning: {result.failed_chunks} of {result.chunk_count} chunks could not be transcribed"
        )

    text = json.dumps(result.to_dict(), indent=2) if json_output else result.transcript
    if output:
        output.write_text(text + "\n", encoding="utf-8")
        notifier.info(f"Saved to {output}")
    else:
        typer.echo(text)

    if not no_history:
        history = TranscriptionHistory(cfg.history.resolved_path, cfg.history.retention)
        try:
            history.save(HistoryItem.from_result(str(file.resolve()), result))
        except OSError as e:
            logger.warning("Could not save history: %s", e)


async def _run_live(cfg: Config, notifier: Notifier) -> AggregateResult:
    token = CancellationToken()
    installed = _install_cancel_handler(token)
    microphone = MicrophoneSource(
        sample_rate=cfg.audio.sample_rate,
        channels=cfg.audio.channels,
        chunk_size=cfg.audio.chunk_size,
        device=cfg.audio.device,
    )
    live = LiveTranscriber(
        api_key=cfg.deepgram.api_key,
        model=cfg.deepgram.model,
        smart_format=cfg.deepgram.smart_format,
        sample_rate=cfg.audio.sample_rate,
        channels=cfg.audio.channels,
        session_timeout=cfg.audio.session_timeout,
    )
    try:
        notifier.info("Listening... press Ctrl-C to stop and save.")
        async for event in live.stream(microphone.frames(token), token):
            if event.is_final:
                typer.echo(event.text)
    finally:
        if installed:
            _remove_cancel_handler()
        microphone.close()
    return live.result


@app.command()
def live(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    audio_device: str | None = typer.Option(
        None, "--audio-device", "-a", help="Override audio device by index or name"
    ),
    no_history: bool = typer.Option(
        False, "--no-history", help="Do not save to transcription history"
    ),
) -> None:
    """Transcribe the microphone live until Ctrl-C."""
    notifier = Notifier()
    try:
        cfg = _load(config, verbose)
        notifier.level = cfg.general.notifications
        cfg = _merge_config_overrides(cfg, audio_device=audio_device)
        cfg.validate()
        result = asyncio.run(_run_live(cfg, notifier))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        notifier.error(f"Configuration error: {e}")
        raise typer.Exit(1)
    except Exception as e:
        logger.error("Live transcription failed: %s", e, exc_info=True)
        notifier.error(f"Live transcription failed: {e}")
        raise typer.Exit(1)

    notifier.info("Transcription complete.")
    if not no_history and result.transcript:
        history = TranscriptionHistory(cfg.history.resolved_path, cfg.history.retention)
        history.save(HistoryItem.from_result("Live Transcription", result))


@app.command()
def probe(
    file: Path = typer.Argument(..., help="Audio or video file"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """Show audio metadata for a file."""
    _setup_logging(verbose)
    ffprobe = find_ffprobe()
    if ffprobe is None:
        typer.echo("ffprobe not found. Please install FFmpeg.", err=True)
        raise typer.Exit(1)

    metadata = asyncio.run(probe_metadata(file, ffprobe))
    if metadata is None:
        typer.echo(f"Invalid audio file or corrupted: {file}", err=True)
        raise typer.Exit(1)

    if json_output:
        typer.echo(json.dumps(asdict(metadata), indent=2))
        return

    typer.echo(f"Format:      {metadata.format}")
    typer.echo(f"Codec:       {metadata.codec}")
    typer.echo(f"Duration:    {format_duration(metadata.duration)}")
    typer.echo(f"Bitrate:     {format_bitrate(metadata.bitrate)}")
    typer.echo(f"Sample rate: {format_sample_rate(metadata.sample_rate)}")
    typer.echo(f"Channels:    {metadata.channels}")
    typer.echo(f"Size:        {format_file_size(metadata.size)}")
    typer.echo(f"Lossless:    {'yes' if metadata.is_lossless else 'no'}")


@app.command()
def history(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List saved transcriptions."""
    try:
        cfg = load_config(config)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1)

    items = TranscriptionHistory(cfg.history.resolved_path, cfg.history.retention).list()
    if json_output:
        typer.echo(json.dumps([asdict(i) for i in items], indent=2))
        return

    if not items:
        typer.echo("No transcriptions yet.")
        return

    for item in items:
        when = datetime.fromtimestamp(item.timestamp).strftime("%Y-%m-%d %H:%M")
        duration = (item.audio_metadata or {}).get("duration")
        preview = item.transcript[:60] + ("..." if len(item.transcript) > 60 else "")
        typer.echo(f"{when}  {Path(item.file_path).name}  ({format_duration(duration)})")
        typer.echo(f"    {preview}")


@app.command()
def clear_history(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Delete all saved transcriptions."""
    try:
        cfg = load_config(config)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1)

    if not yes and not typer.confirm("Clear all transcription history?"):
        raise typer.Exit(0)

    TranscriptionHistory(cfg.history.resolved_path, cfg.history.retention).clear()
    typer.echo("History cleared.")


@app.command()
def list_audio(
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of table"
    ),
) -> None:
    """List available audio input devices for live transcription."""
    _setup_logging(verbose)
    devices = MicrophoneSource.list_devices()
    if not devices:
        logger.warning("No audio devices found")
        return

    if json_output:
        typer.echo(json.dumps(devices, indent=2))
    else:
        typer.echo("Available audio devices:")
        for dev in devices:
            typer.echo(
                f"  [{dev['index']}] {dev['name']} "
                f"({dev['channels']}ch, {dev['sample_rate']}Hz)"
            )


if __name__ == "__main__":
    app()
