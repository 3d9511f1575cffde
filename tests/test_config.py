"""Tests for config module."""

import tempfile
from pathlib import Path

import pytest

from voxscribe.config import (
    AudioConfig,
    ChunkingConfig,
    Config,
    ConfigError,
    DeepgramConfig,
    GeneralConfig,
    HistoryConfig,
    TranscriptionConfig,
    load_config,
)


@pytest.fixture
def tmp_config_file():
    """Create a temporary TOML config file for testing."""

    def _create(content: str) -> Path:
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write(content)
            return Path(f.name)

    return _create


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run from an empty directory with an empty home so no config is found."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


@pytest.fixture
def full_config_content():
    """Full configuration with all sections."""
    return """
[deepgram]
api_key = "dg-test-key"
model = "nova-3"
smart_format = false
detect_language = true
timeout = 120.0

[chunking]
target_chunk_mb = 50
chunk_duration = 240
min_chunk_duration = 30
max_attempts = 4

[transcription]
concurrency = 5
validate_audio = false

[audio]
sample_rate = 16000
channels = 1
device = 2

[history]
retention = 20
path = "~/transcripts/history.json"

[general]
verbose = true
notifications = "errors"
"""


class TestConfigDataclasses:
    """Test configuration dataclasses."""

    def test_deepgram_config_defaults(self):
        cfg = DeepgramConfig()
        assert cfg.api_key is None
        assert cfg.model == "nova-2"
        assert cfg.smart_format is True
        assert cfg.detect_language is True

    def test_chunking_config_defaults(self):
        """Defaults match the documented chunking behavior."""
        cfg = ChunkingConfig()
        assert cfg.max_chunk_bytes == 150 * 1024 * 1024
        assert cfg.chunk_duration == 300.0
        assert cfg.min_chunk_duration == 60.0
        assert cfg.max_attempts == 3
        assert cfg.lossless_shrink_factor == 0.7
        assert cfg.compressed_shrink_factor == 0.8

    def test_transcription_config_defaults(self):
        assert TranscriptionConfig().concurrency == 3

    def test_audio_config_defaults(self):
        cfg = AudioConfig()
        assert cfg.sample_rate == 16000
        assert cfg.channels == 1

    def test_history_config_default_path(self):
        cfg = HistoryConfig()
        assert cfg.resolved_path.name == "history.json"
        assert cfg.retention == 10

    def test_general_config_defaults(self):
        assert GeneralConfig().notifications == "all"


class TestConfigLoading:
    """Test configuration loading from TOML."""

    def test_load_config_from_explicit_path(self, tmp_config_file, full_config_content):
        """Test loading config from explicit path."""
        cfg = load_config(tmp_config_file(full_config_content), env={})

        assert cfg.deepgram.api_key == "dg-test-key"
        assert cfg.deepgram.model == "nova-3"
        assert cfg.deepgram.smart_format is False
        assert cfg.chunking.target_chunk_mb == 50.0
        assert isinstance(cfg.chunking.chunk_duration, float)
        assert cfg.chunking.max_attempts == 4
        assert cfg.transcription.concurrency == 5
        assert cfg.audio.device == 2
        assert cfg.history.resolved_path == Path.home() / "transcripts" / "history.json"
        assert cfg.general.notifications == "errors"
        cfg.validate()

    def test_no_config_uses_defaults(self, isolated):
        """Without any config file the defaults are used."""
        cfg = load_config(None, env={})
        assert cfg == Config()

    def test_local_config_discovered(self, isolated):
        """./voxscribe.toml is picked up."""
        (isolated / "voxscribe.toml").write_text('[deepgram]\nmodel = "nova-3"\n')
        assert load_config(None, env={}).deepgram.model == "nova-3"

    def test_env_config_path(self, isolated, tmp_config_file):
        """VOXSCRIBE_CONFIG points at a config file."""
        path = tmp_config_file("[transcription]\nconcurrency = 7\n")
        cfg = load_config(None, env={"VOXSCRIBE_CONFIG": str(path)})
        assert cfg.transcription.concurrency == 7

    def test_env_config_path_missing(self, isolated):
        with pytest.raises(ConfigError, match="VOXSCRIBE_CONFIG"):
            load_config(None, env={"VOXSCRIBE_CONFIG": "/nonexistent/voxscribe.toml"})

    def test_cli_path_takes_precedence(self, isolated, tmp_config_file):
        path1 = tmp_config_file("[transcription]\nconcurrency = 1\n")
        path2 = tmp_config_file("[transcription]\nconcurrency = 2\n")
        cfg = load_config(path2, env={"VOXSCRIBE_CONFIG": str(path1)})
        assert cfg.transcription.concurrency == 2

    def test_load_config_file_not_found(self):
        with pytest.raises(ConfigError, match="not found"):
            load_config(Path("/nonexistent/config.toml"), env={})

    def test_load_config_invalid_toml(self, tmp_config_file):
        with pytest.raises(ConfigError, match="Failed to parse"):
            load_config(tmp_config_file("[deepgram\nmodel = "), env={})

    def test_unknown_key_rejected(self, tmp_config_file):
        with pytest.raises(ConfigError, match="Invalid configuration values"):
            load_config(tmp_config_file("[chunking]\nbogus = 1\n"), env={})

    def test_section_must_be_table(self, tmp_config_file):
        with pytest.raises(ConfigError, match="must be a table"):
            load_config(tmp_config_file('chunking = "big"\n'), env={})

    def test_unknown_section_ignored(self, tmp_config_file):
        cfg = load_config(tmp_config_file("[extras]\nfoo = 1\n"), env={})
        assert cfg == Config()

    def test_api_key_from_env(self, tmp_config_file):
        """DEEPGRAM_API_KEY fills in a missing key."""
        cfg = load_config(tmp_config_file("[deepgram]\n"), env={"DEEPGRAM_API_KEY": "env-key"})
        assert cfg.deepgram.api_key == "env-key"

    def test_api_key_in_file_wins(self, tmp_config_file, full_config_content):
        cfg = load_config(
            tmp_config_file(full_config_content), env={"DEEPGRAM_API_KEY": "env-key"}
        )
        assert cfg.deepgram.api_key == "dg-test-key"


class TestConfigValidation:
    """Test value validation."""

    def _config(self, **chunking):
        cfg = Config()
        cfg.deepgram.api_key = "key"
        for key, value in chunking.items():
            setattr(cfg.chunking, key, value)
        return cfg

    def test_valid(self):
        self._config().validate()

    def test_missing_api_key(self):
        with pytest.raises(ConfigError, match="API key is required"):
            Config().validate()

    @pytest.mark.parametrize(
        "field,value",
        [
            ("target_chunk_mb", 0),
            ("min_chunk_duration", 0),
            ("chunk_duration", 10.0),
            ("max_attempts", 0),
            ("lossless_shrink_factor", 1.0),
            ("compressed_shrink_factor", 0.0),
            ("cleanup_grace_delay", -1),
        ],
    )
    def test_invalid_chunking(self, field, value):
        with pytest.raises(ConfigError):
            self._config(**{field: value}).validate()

    def test_invalid_concurrency(self):
        cfg = self._config()
        cfg.transcription.concurrency = 0
        with pytest.raises(ConfigError, match="concurrency"):
            cfg.validate()

    def test_invalid_notifications(self):
        cfg = self._config()
        cfg.general.notifications = "loud"
        with pytest.raises(ConfigError, match="notifications"):
            cfg.validate()

    def test_invalid_channels(self):
        cfg = self._config()
        cfg.audio.channels = 6
        with pytest.raises(ConfigError, match="channels"):
            cfg.validate()
