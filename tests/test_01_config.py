"""
Tests for configuration loading, validation and audio clamping.

Tests cover:
- Defaults class values
- NarrationConfig.from_settings() for every section
- ConfigValidationError on invalid structural values
- Audio settings clamped instead of rejected
- AudioSettings.update() partial updates
- Environment overrides for credentials, region and voice
- load_settings() from YAML
"""
import pytest

from narration_ms.core.config import (
    AudioSettings,
    ConfigValidationError,
    Defaults,
    NarrationConfig,
    PollyConfig,
    Settings,
    apply_env_overrides,
    clamp_audio_value,
    load_settings,
)


class TestDefaults:
    """Tests for Defaults class values."""

    def test_polly_defaults(self):
        assert Defaults.POLLY_REGION == "us-east-1"
        assert Defaults.POLLY_VOICE_ID == "Matthew"
        assert Defaults.POLLY_OUTPUT_FORMAT == "mp3"
        assert Defaults.POLLY_ENGINE == "neural"

    def test_synthesis_defaults(self):
        assert Defaults.SYNTHESIS_TIMEOUT_S == 10.0
        assert Defaults.SYNTHESIS_MAX_TEXT_LENGTH == 3000

    def test_circuit_defaults(self):
        """Breaker opens after 5 failures and cools down for 5 minutes."""
        assert Defaults.CIRCUIT_FAILURE_THRESHOLD == 5
        assert Defaults.CIRCUIT_COOLDOWN_MS == 300_000

    def test_audio_defaults(self):
        assert Defaults.AUDIO_MAX_CONCURRENT == 3
        assert Defaults.AUDIO_DEFAULT_VOLUME == 0.7
        assert Defaults.AUDIO_FADE_OUT_MS == 500
        assert Defaults.AUDIO_QUEUE_DELAY_MS == 100
        assert Defaults.AUDIO_FADE_STEPS == 20


class TestFromSettings:
    """Tests for NarrationConfig.from_settings()."""

    def test_empty_settings_use_defaults(self):
        config = NarrationConfig.from_settings(Settings(raw={}))

        assert config.polly.voice_id == "Matthew"
        assert config.synthesis.timeout_s == 10.0
        assert config.stream.max_reads == 1000
        assert config.circuit.failure_threshold == 5
        assert config.audio.max_concurrent_audio == 3
        assert config.autoplay.gesture_timeout_s == 30.0
        assert config.logging.level == 2

    def test_sections_are_read(self):
        settings = Settings(raw={
            "polly": {"region": "eu-west-1", "voice_id": "Amy", "engine": "standard"},
            "synthesis": {"timeout_s": 4, "max_text_length": 500},
            "circuit": {"failure_threshold": 2, "cooldown_ms": 1000},
            "audio": {"max_concurrent_audio": 2, "default_volume": 0.5},
        })
        config = settings.get_config()

        assert config.polly.region == "eu-west-1"
        assert config.polly.voice_id == "Amy"
        assert config.polly.engine == "standard"
        assert config.synthesis.timeout_s == 4.0
        assert config.synthesis.max_text_length == 500
        assert config.circuit.failure_threshold == 2
        assert config.audio.max_concurrent_audio == 2
        assert config.audio.default_volume == 0.5

    def test_blank_region_kept_blank(self):
        """The client, not the config, applies the us-east-1 fallback."""
        config = Settings(raw={"polly": {"region": "  "}}).get_config()
        assert config.polly.region == ""

    def test_empty_voice_rejected(self):
        with pytest.raises(ConfigValidationError, match="voice_id"):
            Settings(raw={"polly": {"voice_id": ""}}).get_config()

    @pytest.mark.parametrize("section,key,value", [
        ("synthesis", "timeout_s", 0),
        ("synthesis", "max_text_length", -1),
        ("stream", "max_reads", 0),
        ("circuit", "failure_threshold", 0),
        ("circuit", "cooldown_ms", -5),
        ("autoplay", "gesture_timeout_s", 0),
    ])
    def test_invalid_structural_values_rejected(self, section, key, value):
        with pytest.raises(ConfigValidationError, match=f"{section}.{key}"):
            Settings(raw={section: {key: value}}).get_config()

    def test_string_log_level(self):
        config = Settings(raw={"logging": {"level": "DEBUG"}}).get_config()
        assert config.logging.level == 4

    def test_log_level_out_of_range(self):
        with pytest.raises(ConfigValidationError, match="logging.level"):
            Settings(raw={"logging": {"level": 9}}).get_config()

    def test_out_of_range_audio_clamped_not_rejected(self):
        config = Settings(raw={"audio": {
            "max_concurrent_audio": 50,
            "default_volume": 2.0,
            "fade_out_duration_ms": 9000,
            "queue_processing_delay_ms": -10,
        }}).get_config()

        assert config.audio.max_concurrent_audio == 10
        assert config.audio.default_volume == 1.0
        assert config.audio.fade_out_duration_ms == 5000
        assert config.audio.queue_processing_delay_ms == 0


class TestAudioSettings:
    """Tests for clamping and partial updates."""

    def test_clamp_bounds(self):
        assert clamp_audio_value("max_concurrent_audio", 0) == 1
        assert clamp_audio_value("max_concurrent_audio", 11) == 10
        assert clamp_audio_value("default_volume", -0.5) == 0.0
        assert clamp_audio_value("fade_out_duration_ms", 5001) == 5000
        assert clamp_audio_value("queue_processing_delay_ms", 100000) == 100000

    def test_clamp_types(self):
        assert isinstance(clamp_audio_value("max_concurrent_audio", 2.0), int)
        assert isinstance(clamp_audio_value("default_volume", 1), float)
        assert clamp_audio_value("default_volume", "0.25") == 0.25

    def test_clamp_rejects_non_numeric(self):
        with pytest.raises(ConfigValidationError):
            clamp_audio_value("default_volume", "loud")

    def test_clamp_rejects_unknown_name(self):
        with pytest.raises(ConfigValidationError, match="unknown"):
            clamp_audio_value("bass_boost", 3)

    def test_assignment_is_clamped(self):
        audio = AudioSettings()
        audio.default_volume = 7
        assert audio.default_volume == 1.0

    def test_update_returns_changes(self):
        audio = AudioSettings()
        changed = audio.update(max_concurrent_audio=5, default_volume=0.7, fade_out_duration_ms=None)

        assert changed == {"max_concurrent_audio": 5}
        assert audio.max_concurrent_audio == 5
        assert audio.fade_out_duration_ms == 500

    def test_update_rejects_unknown_keys_atomically(self):
        audio = AudioSettings()
        with pytest.raises(ConfigValidationError, match="pitch"):
            audio.update(default_volume=0.1, pitch=3)
        assert audio.default_volume == 0.7

    @pytest.mark.parametrize("name", ["max_concurrent_audio", "default_volume", "queue_processing_delay_ms"])
    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf"), "nan"])
    def test_clamp_rejects_non_finite(self, name, value):
        with pytest.raises(ConfigValidationError, match="finite"):
            clamp_audio_value(name, value)

    def test_update_rejects_non_finite_atomically(self):
        audio = AudioSettings()
        with pytest.raises(ConfigValidationError):
            audio.update(default_volume=0.1, max_concurrent_audio=float("nan"))
        assert audio.default_volume == 0.7
        assert audio.max_concurrent_audio == 3

    def test_derived_seconds(self):
        audio = AudioSettings(fade_out_duration_ms=250, queue_processing_delay_ms=40)
        assert audio.fade_out_s == 0.25
        assert audio.queue_delay_s == 0.04


class TestPollyConfig:
    def test_credentials_configured(self):
        assert PollyConfig(access_key_id="AK", secret_access_key="SK").credentials_configured
        assert not PollyConfig(access_key_id="AK", secret_access_key=" ").credentials_configured

    def test_secret_not_in_repr(self):
        assert "topsecret" not in repr(PollyConfig(access_key_id="AK", secret_access_key="topsecret"))


class TestEnvOverrides:
    """Tests for apply_env_overrides()."""

    def test_credentials_region_and_voice(self, monkeypatch):
        monkeypatch.setenv("AWS_ACCESS_KEY_ID", "AKIAENV")
        monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "env-secret")
        monkeypatch.setenv("AWS_REGION", "ap-southeast-2")
        monkeypatch.setenv("NARRATION_MS_VOICE", "Joanna")

        raw = apply_env_overrides({"polly": {"region": "us-east-1", "voice_id": "Matthew"}})

        assert raw["polly"] == {
            "region": "ap-southeast-2",
            "voice_id": "Joanna",
            "access_key_id": "AKIAENV",
            "secret_access_key": "env-secret",
        }

    def test_unset_env_keeps_file_values(self, monkeypatch):
        for name in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION",
                     "AWS_DEFAULT_REGION", "NARRATION_MS_VOICE"):
            monkeypatch.delenv(name, raising=False)

        raw = apply_env_overrides({"polly": None})
        assert raw["polly"] == {}


class TestLoadSettings:
    def test_load_from_yaml(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NARRATION_MS_VOICE", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text(
            "polly:\n  voice_id: Brian\naudio:\n  max_concurrent_audio: 4\n",
            encoding="utf-8",
        )

        settings = load_settings(str(path))

        assert settings.voice_id == "Brian"
        assert settings.get_config().audio.max_concurrent_audio == 4

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_settings_is_frozen(self):
        settings = Settings(raw={})
        with pytest.raises(Exception):
            settings.raw = {"x": 1}
