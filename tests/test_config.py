"""Tests for knowhow.voice.config configuration parsing and helpers."""

from __future__ import annotations

from pathlib import Path

import pytest
from knowhow.voice.config import (
    DEFAULT_MODE,
    FIELD_GREETING,
    MicConfig,
    VoiceConfig,
    _env_bool,
    _env_float,
    _env_int,
    _normalize_choice,
    _optional_wyoming_endpoint,
    _strip_or_none,
)

# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------

_BASE_ENV: dict[str, str] = {
    "KNOWHOW_HOSTNAME": "field-tablet",
    "KNOWHOW_BASE_URL": "https://knowhow.example.com/",
    "KNOWHOW_TOKEN": "secret",
}


def _from_env(overrides: dict[str, str] | None = None) -> VoiceConfig:
    env = dict(_BASE_ENV)
    if overrides:
        env.update(overrides)
    return VoiceConfig.from_env(env)


# ===================================================================
# _strip_or_none
# ===================================================================


class TestStripOrNone:
    def test_none_returns_none(self) -> None:
        assert _strip_or_none(None) is None

    def test_whitespace_only_returns_none(self) -> None:
        assert _strip_or_none("   ") is None

    def test_normal_string_stripped(self) -> None:
        assert _strip_or_none("  hello  ") == "hello"


# ===================================================================
# _env_bool / _env_int / _env_float
# ===================================================================


class TestEnvHelpers:
    @pytest.mark.parametrize("value", ["1", "true", "YES", " on "])
    def test_bool_truthy(self, value: str) -> None:
        assert _env_bool({"FLAG": value}, "FLAG", False) is True

    def test_bool_missing_or_blank_uses_default(self) -> None:
        assert _env_bool({}, "FLAG", True) is True
        assert _env_bool({"FLAG": "  "}, "FLAG", True) is True

    def test_bool_unknown_word_is_false(self) -> None:
        assert _env_bool({"FLAG": "nope"}, "FLAG", True) is False

    def test_int_fallback(self) -> None:
        assert _env_int({"PORT": "12"}, "PORT", 3) == 12
        assert _env_int({"PORT": "twelve"}, "PORT", 3) == 3
        assert _env_int({}, "PORT", 3) == 3

    def test_float_fallback(self) -> None:
        assert _env_float({"DELAY": "2.5"}, "DELAY", 1.0) == 2.5
        assert _env_float({"DELAY": "fast"}, "DELAY", 1.0) == 1.0


# ===================================================================
# _normalize_choice / _optional_wyoming_endpoint
# ===================================================================


class TestNormalizeChoice:
    def test_known_value_lowercased(self) -> None:
        assert _normalize_choice(" Office ", {"field", "office"}, "field") == "office"

    def test_unknown_value_uses_default(self) -> None:
        assert _normalize_choice("warehouse", {"field", "office"}, "field") == "field"

    def test_missing_value_uses_default(self) -> None:
        assert _normalize_choice(None, {"field"}, "field") == "field"


class TestOptionalWyomingEndpoint:
    def test_missing_host(self) -> None:
        assert _optional_wyoming_endpoint({}, host_key="H", port_key="P") is None

    def test_missing_port(self) -> None:
        assert _optional_wyoming_endpoint({"H": "whisper"}, host_key="H", port_key="P") is None

    def test_with_model(self) -> None:
        endpoint = _optional_wyoming_endpoint(
            {"H": "whisper", "P": "10300", "M": "large-v3"},
            host_key="H",
            port_key="P",
            model_key="M",
        )
        assert endpoint is not None
        assert endpoint.host == "whisper"
        assert endpoint.port == 10300
        assert endpoint.model == "large-v3"


# ===================================================================
# MicConfig
# ===================================================================


def test_bytes_per_chunk() -> None:
    mic = MicConfig(command=["arecord"], rate=16000, width=2, channels=1, chunk_ms=30)
    assert mic.bytes_per_chunk == 960


# ===================================================================
# VoiceConfig.from_env
# ===================================================================


class TestFromEnv:
    def test_service_settings(self) -> None:
        config = _from_env()

        assert config.hostname == "field-tablet"
        assert config.service.base_url == "https://knowhow.example.com"
        assert config.service.token == "secret"
        assert config.service.verify_ssl is True
        assert config.service.timeout == 30.0

    def test_timeout_clamped(self) -> None:
        config = _from_env({"KNOWHOW_TIMEOUT_SECONDS": "0.1"})
        assert config.service.timeout == 1.0

    def test_dialogue_defaults(self) -> None:
        config = _from_env()

        assert config.dialogue.mode == DEFAULT_MODE
        assert config.dialogue.greeting == FIELD_GREETING
        assert config.dialogue.language == "ja-JP"
        assert config.dialogue.analysis_min_turns == 5
        assert config.dialogue.registration_min_turns == 4
        assert config.dialogue.analyze_on_stop is True

    def test_greeting_override(self) -> None:
        config = _from_env({"KNOWHOW_GREETING": "おはようございます"})
        assert config.dialogue.greeting == "おはようございます"

    def test_greeting_from_file(self, tmp_path: Path) -> None:
        greeting_file = tmp_path / "greeting.txt"
        greeting_file.write_text("本日もご安全に\n", encoding="utf-8")

        config = _from_env({"KNOWHOW_GREETING_FILE": str(greeting_file)})

        assert config.dialogue.greeting == "本日もご安全に"

    def test_timing_and_echo(self) -> None:
        config = _from_env(
            {
                "KNOWHOW_SILENCE_SECONDS": "1.5",
                "KNOWHOW_ECHO_TAIL_SECONDS": "-3",
                "KNOWHOW_ECHO_THRESHOLD": "1.7",
            }
        )

        assert config.timing.silence_seconds == 1.5
        assert config.timing.echo_tail_seconds == 0.0
        assert config.echo.threshold == 1.0

    def test_vad_settings(self) -> None:
        config = _from_env({"KNOWHOW_VAD_CALIBRATION_SAMPLES": "0", "KNOWHOW_VAD_FLOOR": "30"})

        assert config.vad.calibration_samples == 1
        assert config.vad.floor == 30.0
        assert config.vad.multiplier == 2.5

    def test_wyoming_endpoints(self) -> None:
        config = _from_env(
            {
                "WYOMING_WHISPER_HOST": "whisper",
                "WYOMING_WHISPER_PORT": "10300",
                "WYOMING_PIPER_HOST": "piper",
            }
        )

        assert config.stt_endpoint is not None
        assert config.stt_endpoint.port == 10300
        assert config.tts_endpoint is None

    def test_mqtt_topic_base(self) -> None:
        config = _from_env({"MQTT_HOST": "broker", "MQTT_USER": "voice"})

        assert config.mqtt.host == "broker"
        assert config.mqtt.username == "voice"
        assert config.mqtt.topic_base == "knowhow/field-tablet/voice"

    def test_mic_command_split(self) -> None:
        config = _from_env({"KNOWHOW_MIC_CMD": "arecord -D plughw:1 -f S16_LE -"})
        assert config.mic.command == ["arecord", "-D", "plughw:1", "-f", "S16_LE", "-"]

    def test_log_transcripts_flag(self) -> None:
        assert _from_env().log_transcripts is False
        assert _from_env({"KNOWHOW_LOG_TRANSCRIPTS": "yes"}).log_transcripts is True
