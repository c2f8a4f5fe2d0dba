"""Configuration helpers for the Knowhow voice engine."""

from __future__ import annotations

import os
import shlex
import socket
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path


def _env_bool(source: Mapping[str, str], key: str, default: bool) -> bool:
    value = source.get(key)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(source: Mapping[str, str], key: str, default: int) -> int:
    try:
        return int(source.get(key, ""))
    except ValueError:
        return default


def _env_float(source: Mapping[str, str], key: str, default: float) -> float:
    try:
        return float(source.get(key, ""))
    except ValueError:
        return default


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


DEFAULT_MODE = "field"
DIALOGUE_MODES = {"field", "office"}


@dataclass(frozen=True)
class WyomingEndpoint:
    host: str
    port: int
    model: str | None = None


@dataclass(frozen=True)
class MicConfig:
    command: list[str]
    rate: int
    width: int
    channels: int
    chunk_ms: int

    @property
    def bytes_per_chunk(self) -> int:
        samples = int(self.rate * (self.chunk_ms / 1000))
        return samples * self.width * self.channels


@dataclass(frozen=True)
class PhraseConfig:
    min_seconds: float
    max_seconds: float
    silence_ms: int
    rms_floor: int


@dataclass(frozen=True)
class ServiceConfig:
    base_url: str | None
    token: str | None
    verify_ssl: bool
    timeout: float
    tts_voice: str | None


@dataclass(frozen=True)
class TimingConfig:
    silence_seconds: float = 2.5
    echo_tail_seconds: float = 1.0
    restart_delay: float = 0.3
    error_restart_delay: float = 0.5
    failure_restart_delay: float = 1.0


@dataclass(frozen=True)
class EchoConfig:
    threshold: float = 0.35
    ngram_size: int = 3
    min_chars: int = 2


@dataclass(frozen=True)
class VadConfig:
    interval: float = 0.1
    calibration_samples: int = 15
    multiplier: float = 2.5
    margin: float = 15.0
    floor: float = 25.0
    meter_window: int = 5


@dataclass(frozen=True)
class DialogueConfig:
    mode: str = DEFAULT_MODE
    greeting: str | None = None
    language: str = "ja-JP"
    analysis_min_turns: int = 5
    registration_min_turns: int = 4
    soft_closing_max_chars: int = 25
    analyze_on_stop: bool = True


@dataclass(frozen=True)
class MqttConfig:
    host: str | None
    port: int
    username: str | None
    password: str | None
    tls_enabled: bool
    cert: str | None
    key: str | None
    ca_cert: str | None
    topic_base: str


@dataclass(frozen=True)
class VoiceConfig:
    hostname: str
    service: ServiceConfig
    mic: MicConfig
    phrase: PhraseConfig
    stt_endpoint: WyomingEndpoint | None
    tts_endpoint: WyomingEndpoint | None
    tts_voice: str | None
    timing: TimingConfig
    echo: EchoConfig
    vad: VadConfig
    dialogue: DialogueConfig
    mqtt: MqttConfig
    log_transcripts: bool

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> VoiceConfig:
        source = env or os.environ
        hostname = source.get("KNOWHOW_HOSTNAME") or socket.gethostname()

        base_url = _strip_or_none(source.get("KNOWHOW_BASE_URL"))
        if base_url:
            base_url = base_url.rstrip("/")
        service = ServiceConfig(
            base_url=base_url,
            token=_strip_or_none(source.get("KNOWHOW_TOKEN")),
            verify_ssl=_env_bool(source, "KNOWHOW_VERIFY_SSL", True),
            timeout=max(1.0, _env_float(source, "KNOWHOW_TIMEOUT_SECONDS", 30.0)),
            tts_voice=_strip_or_none(source.get("KNOWHOW_TTS_VOICE")),
        )

        mic_cmd = shlex.split(
            source.get(
                "KNOWHOW_MIC_CMD",
                "arecord -q -t raw -f S16_LE -c 1 -r 16000 -",
            )
        )
        mic = MicConfig(
            command=mic_cmd,
            rate=_env_int(source, "KNOWHOW_MIC_RATE", 16000),
            width=_env_int(source, "KNOWHOW_MIC_WIDTH", 2),
            channels=_env_int(source, "KNOWHOW_MIC_CHANNELS", 1),
            chunk_ms=_env_int(source, "KNOWHOW_MIC_CHUNK_MS", 30),
        )

        phrase = PhraseConfig(
            min_seconds=_env_float(source, "KNOWHOW_MIN_PHRASE_SECONDS", 0.4),
            max_seconds=_env_float(source, "KNOWHOW_MAX_PHRASE_SECONDS", 15.0),
            silence_ms=_env_int(source, "KNOWHOW_PHRASE_SILENCE_MS", 700),
            rms_floor=_env_int(source, "KNOWHOW_RMS_THRESHOLD", 120),
        )

        stt_endpoint = _optional_wyoming_endpoint(
            source,
            host_key="WYOMING_WHISPER_HOST",
            port_key="WYOMING_WHISPER_PORT",
            model_key="KNOWHOW_STT_MODEL",
        )
        tts_endpoint = _optional_wyoming_endpoint(
            source,
            host_key="WYOMING_PIPER_HOST",
            port_key="WYOMING_PIPER_PORT",
        )

        timing = TimingConfig(
            silence_seconds=max(0.1, _env_float(source, "KNOWHOW_SILENCE_SECONDS", 2.5)),
            echo_tail_seconds=max(0.0, _env_float(source, "KNOWHOW_ECHO_TAIL_SECONDS", 1.0)),
        )
        echo = EchoConfig(
            threshold=min(1.0, max(0.0, _env_float(source, "KNOWHOW_ECHO_THRESHOLD", 0.35))),
        )
        vad = VadConfig(
            interval=max(0.01, _env_float(source, "KNOWHOW_VAD_INTERVAL_SECONDS", 0.1)),
            calibration_samples=max(1, _env_int(source, "KNOWHOW_VAD_CALIBRATION_SAMPLES", 15)),
            multiplier=_env_float(source, "KNOWHOW_VAD_MULTIPLIER", 2.5),
            margin=_env_float(source, "KNOWHOW_VAD_MARGIN", 15.0),
            floor=_env_float(source, "KNOWHOW_VAD_FLOOR", 25.0),
        )

        greeting = source.get("KNOWHOW_GREETING", "").strip()
        greeting_file = source.get("KNOWHOW_GREETING_FILE")
        if not greeting and greeting_file:
            candidate = Path(greeting_file)
            if candidate.is_file():
                greeting = candidate.read_text(encoding="utf-8").strip()
        dialogue = DialogueConfig(
            mode=_normalize_choice(source.get("KNOWHOW_MODE"), DIALOGUE_MODES, DEFAULT_MODE),
            greeting=greeting or FIELD_GREETING,
            language=source.get("KNOWHOW_LANGUAGE", "ja-JP"),
            analysis_min_turns=max(2, _env_int(source, "KNOWHOW_ANALYSIS_MIN_TURNS", 5)),
            registration_min_turns=max(2, _env_int(source, "KNOWHOW_REGISTRATION_MIN_TURNS", 4)),
            analyze_on_stop=_env_bool(source, "KNOWHOW_ANALYZE_ON_STOP", True),
        )

        topic_base = source.get("KNOWHOW_TOPIC_BASE") or f"knowhow/{hostname}/voice"
        mqtt = MqttConfig(
            host=_strip_or_none(source.get("MQTT_HOST")),
            port=_env_int(source, "MQTT_PORT", 1883),
            username=_strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=_strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            tls_enabled=_env_bool(source, "MQTT_TLS_ENABLED", False),
            cert=_strip_or_none(source.get("MQTT_CERT")),
            key=_strip_or_none(source.get("MQTT_KEY")),
            ca_cert=_strip_or_none(source.get("MQTT_CA_CERT")),
            topic_base=topic_base.rstrip("/"),
        )

        return VoiceConfig(
            hostname=hostname,
            service=service,
            mic=mic,
            phrase=phrase,
            stt_endpoint=stt_endpoint,
            tts_endpoint=tts_endpoint,
            tts_voice=source.get("KNOWHOW_WYOMING_VOICE"),
            timing=timing,
            echo=echo,
            vad=vad,
            dialogue=dialogue,
            mqtt=mqtt,
            log_transcripts=_env_bool(source, "KNOWHOW_LOG_TRANSCRIPTS", False),
        )


FIELD_GREETING = (
    "お疲れ様です。現場の状況や確認したいことを音声で話しかけてください。\n\n"
    "**作業内容を教えていただければ、関連するナレッジや注意点をお伝えします。**\n\n"
    "作業中に気づいたことや対処法は「記録して」と言えばナレッジとして登録できます。"
)


def _optional_wyoming_endpoint(
    source: dict[str, str],
    *,
    host_key: str,
    port_key: str,
    model_key: str | None = None,
) -> WyomingEndpoint | None:
    host = source.get(host_key)
    if not host:
        return None
    port = _env_int(source, port_key, 0)
    if not port:
        return None
    model = source.get(model_key) if model_key else None
    return WyomingEndpoint(host=host, port=port, model=model)


def _normalize_choice(value: str | None, allowed: set[str], default: str) -> str:
    if not value:
        return default
    lowered = value.strip().lower()
    if lowered in allowed:
        return lowered
    return default
