"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "DeepgramConfig",
    "ChunkingConfig",
    "TranscriptionConfig",
    "AudioConfig",
    "HistoryConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "NOTIFICATION_LEVELS",
    "load_config",
]

NOTIFICATION_LEVELS = ("all", "errors", "none")

SECTIONS = ("deepgram", "chunking", "transcription", "audio", "history", "general")


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class DeepgramConfig:
    """Deepgram API configuration."""

    api_key: str | None = None
    model: str = "nova-2"
    smart_format: bool = True
    detect_language: bool = True
    validate_api_key: bool = True
    timeout: float = 600.0


@dataclass
class ChunkingConfig:
    """Chunk sizing and segmentation fallback settings."""

    target_chunk_mb: float = 150.0
    chunk_duration: float = 300.0
    min_chunk_duration: float = 60.0
    single_chunk_max_duration: float = 3600.0
    max_attempts: int = 3
    lossless_shrink_factor: float = 0.7
    compressed_shrink_factor: float = 0.8
    compressed_bitrate: str = "128k"
    cleanup_grace_delay: float = 0.5

    @property
    def max_chunk_bytes(self) -> int:
        return int(self.target_chunk_mb * 1024 * 1024)


@dataclass
class TranscriptionConfig:
    """Transcription scheduling settings."""

    concurrency: int = 3
    validate_audio: bool = True


@dataclass
class AudioConfig:
    """Microphone capture configuration for live transcription."""

    sample_rate: int = 16000
    channels: int = 1
    chunk_size: int = 4096
    device: int | str | None = None
    session_timeout: float = 600.0


@dataclass
class HistoryConfig:
    """Transcription history settings."""

    retention: int = 10
    path: str | None = None

    @property
    def resolved_path(self) -> Path:
        if self.path:
            return Path(self.path).expanduser()
        return Path.home() / ".local" / "share" / "voxscribe" / "history.json"


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False
    notifications: str = "all"


@dataclass
class Config:
    """Main configuration container."""

    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. VOXSCRIBE_CONFIG env var
                  2. ./voxscribe.toml
                  3. ~/.config/voxscribe.toml
                  and falls back to defaults when none exists.
            env: Environment variables for overrides (defaults to os.environ)

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If an explicit config file is missing or values are invalid
        """
        if env is None:
            import os

            env = os.environ

        resolved_path = _resolve_config_path(path, env)
        raw_data = _load_toml_file(resolved_path) if resolved_path else {}

        try:
            coerced = _coerce_config_values(raw_data, env)
            return cls(
                deepgram=DeepgramConfig(**coerced["deepgram"]),
                chunking=ChunkingConfig(**coerced["chunking"]),
                transcription=TranscriptionConfig(**coerced["transcription"]),
                audio=AudioConfig(**coerced["audio"]),
                history=HistoryConfig(**coerced["history"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: If any value is out of range
        """
        validate_deepgram_config(self.deepgram)
        validate_chunking_config(self.chunking)

        if self.transcription.concurrency < 1:
            raise ConfigError(
                f"transcription.concurrency must be at least 1, got {self.transcription.concurrency}"
            )
        if self.history.retention < 0:
            raise ConfigError(
                f"history.retention must be non-negative, got {self.history.retention}"
            )
        if self.general.notifications not in NOTIFICATION_LEVELS:
            raise ConfigError(
                f"Invalid notifications level '{self.general.notifications}'. "
                f"Must be one of: {', '.join(NOTIFICATION_LEVELS)}"
            )
        if self.audio.sample_rate <= 0:
            raise ConfigError("audio.sample_rate must be positive")
        if self.audio.channels not in (1, 2):
            raise ConfigError("audio.channels must be 1 or 2")


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path | None:
    """Resolve configuration file path following search order.

    Search order:
    1. CLI-provided path (must exist)
    2. VOXSCRIBE_CONFIG environment variable (must exist)
    3. ./voxscribe.toml (current directory)
    4. ~/.config/voxscribe.toml (user config directory)

    Returns:
        The config path, or None to use defaults

    Raises:
        ConfigError: If an explicitly requested file is missing
    """
    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("VOXSCRIBE_CONFIG"):
        candidate = Path(env_path)
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()
        raise ConfigError(f"Config file from VOXSCRIBE_CONFIG not found: {candidate}")

    for candidate in (Path("voxscribe.toml"), Path.home() / ".config" / "voxscribe.toml"):
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    logger.info("No config file found, using defaults")
    return None


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Args:
        raw_data: Raw parsed TOML dictionary
        env: Environment variables for overrides

    Returns:
        Coerced dictionary ready for dataclass instantiation
    """
    coerced = {}

    for section in SECTIONS:
        value = raw_data.get(section, {})
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(value)

    unknown = set(raw_data) - set(SECTIONS)
    if unknown:
        logger.warning("Ignoring unknown config sections: %s", ", ".join(sorted(unknown)))

    # Handle Deepgram API key from environment variable if not in config
    deepgram_section = coerced["deepgram"]
    if not deepgram_section.get("api_key"):
        deepgram_section["api_key"] = env.get("DEEPGRAM_API_KEY")

    for key in ("target_chunk_mb", "chunk_duration", "min_chunk_duration", "single_chunk_max_duration"):
        if key in coerced["chunking"]:
            try:
                coerced["chunking"][key] = float(coerced["chunking"][key])
            except (TypeError, ValueError) as e:
                raise ConfigError(f"chunking.{key} must be a number") from e

    return coerced


def validate_deepgram_config(deepgram_cfg: DeepgramConfig) -> None:
    """Validate Deepgram configuration.

    Raises:
        ConfigError: If Deepgram configuration is invalid
    """
    if not deepgram_cfg.api_key:
        raise ConfigError(
            "Deepgram API key is required. "
            "Set it in config file or via DEEPGRAM_API_KEY environment variable."
        )

    if not deepgram_cfg.model:
        raise ConfigError("deepgram.model must not be empty")

    if deepgram_cfg.timeout <= 0:
        raise ConfigError(f"Deepgram timeout must be positive, got {deepgram_cfg.timeout}")


def validate_chunking_config(chunking_cfg: ChunkingConfig) -> None:
    """Validate chunk sizing settings.

    Raises:
        ConfigError: If any setting is out of range
    """
    if chunking_cfg.target_chunk_mb <= 0:
        raise ConfigError(
            f"target_chunk_mb must be positive, got {chunking_cfg.target_chunk_mb}"
        )
    if chunking_cfg.min_chunk_duration <= 0:
        raise ConfigError(
            f"min_chunk_duration must be positive, got {chunking_cfg.min_chunk_duration}"
        )
    if chunking_cfg.chunk_duration < chunking_cfg.min_chunk_duration:
        raise ConfigError(
            f"chunk_duration ({chunking_cfg.chunk_duration}) must not be below "
            f"min_chunk_duration ({chunking_cfg.min_chunk_duration})"
        )
    if chunking_cfg.max_attempts < 1:
        raise ConfigError(f"max_attempts must be at least 1, got {chunking_cfg.max_attempts}")

    for name in ("lossless_shrink_factor", "compressed_shrink_factor"):
        value = getattr(chunking_cfg, name)
        if not 0 < value < 1:
            raise ConfigError(f"{name} must be between 0 and 1, got {value}")

    if chunking_cfg.cleanup_grace_delay < 0:
        raise ConfigError("cleanup_grace_delay must be non-negative")


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().

    Args:
        path: Explicit config file path (optional)
        env: Environment variables (defaults to os.environ)

    Returns:
        Loaded Config instance

    Raises:
        ConfigError: If config cannot be loaded
    """
    return Config.from_toml(path, env=env)
