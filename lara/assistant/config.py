"""Configuration helpers for the Lara voice assistant."""

from __future__ import annotations

import os
import shlex
import socket
from dataclasses import dataclass, field

from lara.utils import (
    parse_bool,
    parse_float,
    parse_float_map,
    parse_int,
    split_csv,
)

from .models import Intent


def _strip_or_none(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


DEFAULT_WAKE_PHRASE = "hey lara"
DEFAULT_WAKE_VARIANTS = ("hey laura", "hey lora", "hey larra", "hey laira", "hey lera")
DEFAULT_WAKE_MODEL = "hey_jarvis"
DEFAULT_ACKNOWLEDGEMENT = "How can I help you?"
CLASSIFIER_PROVIDERS = {"openai", "gemini", "none"}

# General queries without a matching fallback rule land at 0.3 and are asked to repeat.
DEFAULT_CLARIFY_THRESHOLD = 0.5
DEFAULT_INTENT_THRESHOLDS: dict[str, float] = {
    Intent.GENERAL_QUERY.value: 0.35,
}


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

    def bytes_for_ms(self, duration_ms: float) -> int:
        frames = int(self.rate * (duration_ms / 1000))
        return frames * self.width * self.channels


@dataclass(frozen=True)
class CaptureConfig:
    min_seconds: float
    max_seconds: float
    silence_ms: int
    rms_floor: int
    min_capture_ms: int


@dataclass(frozen=True)
class ClassifierConfig:
    provider: str
    timeout: float
    openai_model: str
    openai_api_key: str | None
    openai_base_url: str
    gemini_model: str
    gemini_api_key: str | None
    gemini_base_url: str
    system_prompt: str = ""


@dataclass(frozen=True)
class DispatchConfig:
    default_threshold: float
    thresholds: dict[str, float]
    handler_timeout: float

    def threshold_for(self, intent: Intent) -> float:
        return self.thresholds.get(intent.value, self.default_threshold)


@dataclass(frozen=True)
class SessionConfig:
    user_id: str
    wake_mode: bool
    wake_phrases: tuple[str, ...]
    barge_in: bool
    idle_timeout: float
    capture_timeout: float
    transcribe_timeout: float
    max_audio_bytes: int
    synthesis_timeout: float
    language: str | None = None
    tts_voice: str | None = None
    acknowledgement: str | None = None


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
class AssistantConfig:
    hostname: str
    device_name: str
    mic: MicConfig
    capture: CaptureConfig
    wake_endpoint: WyomingEndpoint
    wake_models: list[str]
    stt_endpoint: WyomingEndpoint
    tts_endpoint: WyomingEndpoint
    classifier: ClassifierConfig
    dispatch: DispatchConfig
    session: SessionConfig
    mqtt: MqttConfig
    log_transcripts: bool = False
    action_topics: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_env(env: dict[str, str] | None = None) -> AssistantConfig:
        source = env if env is not None else os.environ
        hostname = source.get("LARA_HOSTNAME") or socket.gethostname()
        device_name = source.get("LARA_NAME") or hostname.replace("-", " ").title()

        mic_cmd = shlex.split(
            source.get(
                "LARA_MIC_CMD",
                "arecord -q -t raw -f S16_LE -c 1 -r 16000 -",
            )
        )
        mic = MicConfig(
            command=mic_cmd,
            rate=parse_int(source.get("LARA_MIC_RATE"), 16000),
            width=parse_int(source.get("LARA_MIC_WIDTH"), 2),
            channels=parse_int(source.get("LARA_MIC_CHANNELS"), 1),
            chunk_ms=max(10, parse_int(source.get("LARA_MIC_CHUNK_MS"), 30)),
        )

        min_seconds = max(0.0, parse_float(source.get("LARA_MIN_PHRASE_SECONDS"), 1.0))
        max_seconds = max(min_seconds + 0.5, parse_float(source.get("LARA_MAX_PHRASE_SECONDS"), 8.0))
        capture = CaptureConfig(
            min_seconds=min_seconds,
            max_seconds=max_seconds,
            silence_ms=max(100, parse_int(source.get("LARA_SILENCE_MS"), 1200)),
            rms_floor=max(0, parse_int(source.get("LARA_RMS_THRESHOLD"), 120)),
            min_capture_ms=max(0, parse_int(source.get("LARA_MIN_CAPTURE_MS"), 300)),
        )

        wake_endpoint = WyomingEndpoint(
            host=source.get("WYOMING_OPENWAKEWORD_HOST", "127.0.0.1"),
            port=parse_int(source.get("WYOMING_OPENWAKEWORD_PORT"), 10400),
        )
        stt_endpoint = WyomingEndpoint(
            host=source.get("WYOMING_WHISPER_HOST", "127.0.0.1"),
            port=parse_int(source.get("WYOMING_WHISPER_PORT"), 10300),
            model=source.get("LARA_STT_MODEL"),
        )
        tts_endpoint = WyomingEndpoint(
            host=source.get("WYOMING_PIPER_HOST", "127.0.0.1"),
            port=parse_int(source.get("WYOMING_PIPER_PORT"), 10200),
        )
        wake_models = split_csv(source.get("LARA_WAKE_MODELS")) or [DEFAULT_WAKE_MODEL]

        provider = _normalize_choice(source.get("LARA_CLASSIFIER_PROVIDER"), CLASSIFIER_PROVIDERS, "openai")
        classifier = ClassifierConfig(
            provider=provider,
            timeout=max(0.5, parse_float(source.get("LARA_CLASSIFIER_TIMEOUT_SECONDS"), 6.0)),
            openai_model=source.get("OPENAI_MODEL", "gpt-4o-mini"),
            openai_api_key=_strip_or_none(source.get("OPENAI_API_KEY")),
            openai_base_url=source.get("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            gemini_model=source.get("GEMINI_MODEL", "gemini-1.5-flash-latest"),
            gemini_api_key=_strip_or_none(source.get("GEMINI_API_KEY")),
            gemini_base_url=source.get("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"),
            system_prompt=(source.get("LARA_CLASSIFIER_PROMPT") or "").strip(),
        )

        default_threshold = _unit_interval(
            parse_float(source.get("LARA_CLARIFY_THRESHOLD"), DEFAULT_CLARIFY_THRESHOLD),
            DEFAULT_CLARIFY_THRESHOLD,
        )
        thresholds = dict(DEFAULT_INTENT_THRESHOLDS)
        for name, value in parse_float_map(source.get("LARA_CLARIFY_THRESHOLDS")).items():
            if Intent.parse(name) is None:
                continue
            thresholds[name] = _unit_interval(value, default_threshold)
        dispatch = DispatchConfig(
            default_threshold=default_threshold,
            thresholds=thresholds,
            handler_timeout=max(1.0, parse_float(source.get("LARA_HANDLER_TIMEOUT_SECONDS"), 15.0)),
        )

        wake_phrase = (source.get("LARA_WAKE_PHRASE") or DEFAULT_WAKE_PHRASE).strip().lower()
        variants = split_csv(source.get("LARA_WAKE_VARIANTS"))
        if "LARA_WAKE_VARIANTS" not in source:
            variants = list(DEFAULT_WAKE_VARIANTS)
        wake_phrases = tuple(dict.fromkeys([wake_phrase, *(v.lower() for v in variants)]))
        session = SessionConfig(
            user_id=source.get("LARA_USER_ID") or hostname,
            wake_mode=parse_bool(source.get("LARA_WAKE_MODE"), True),
            wake_phrases=wake_phrases,
            barge_in=parse_bool(source.get("LARA_BARGE_IN"), True),
            idle_timeout=max(0.0, parse_float(source.get("LARA_IDLE_TIMEOUT_SECONDS"), 0.0)),
            capture_timeout=max_seconds + 2.0,
            transcribe_timeout=max(1.0, parse_float(source.get("LARA_TRANSCRIBE_TIMEOUT_SECONDS"), 15.0)),
            max_audio_bytes=max(1, parse_int(source.get("LARA_MAX_AUDIO_BYTES"), 4 * 1024 * 1024)),
            synthesis_timeout=max(1.0, parse_float(source.get("LARA_SYNTHESIS_TIMEOUT_SECONDS"), 30.0)),
            language=_strip_or_none(source.get("LARA_LANGUAGE")),
            tts_voice=_strip_or_none(source.get("LARA_TTS_VOICE")),
            acknowledgement=_strip_or_none(source.get("LARA_WAKE_ACK", DEFAULT_ACKNOWLEDGEMENT)),
        )

        topic_base = source.get("LARA_TOPIC_BASE") or f"lara/{hostname}/assistant"
        mqtt = MqttConfig(
            host=_strip_or_none(source.get("MQTT_HOST")),
            port=parse_int(source.get("MQTT_PORT"), 1883),
            username=_strip_or_none(source.get("MQTT_USER") or source.get("MQTT_USERNAME")),
            password=_strip_or_none(source.get("MQTT_PASS") or source.get("MQTT_PASSWORD")),
            tls_enabled=parse_bool(source.get("MQTT_TLS_ENABLED"), False),
            cert=_strip_or_none(source.get("MQTT_CERT")),
            key=_strip_or_none(source.get("MQTT_KEY")),
            ca_cert=_strip_or_none(source.get("MQTT_CA_CERT")),
            topic_base=topic_base.rstrip("/"),
        )
        action_topics = {intent.value: f"{mqtt.topic_base}/actions/{intent.value}" for intent in Intent}

        return AssistantConfig(
            hostname=hostname,
            device_name=device_name,
            mic=mic,
            capture=capture,
            wake_endpoint=wake_endpoint,
            wake_models=wake_models,
            stt_endpoint=stt_endpoint,
            tts_endpoint=tts_endpoint,
            classifier=classifier,
            dispatch=dispatch,
            session=session,
            mqtt=mqtt,
            log_transcripts=parse_bool(source.get("LARA_LOG_TRANSCRIPTS"), False),
            action_topics=action_topics,
        )


def _normalize_choice(value: str | None, allowed: set[str], default: str) -> str:
    if not value:
        return default
    lowered = value.strip().lower()
    if lowered in allowed:
        return lowered
    return default


def _unit_interval(value: float, default: float) -> float:
    if not 0.0 <= value <= 1.0:
        return default
    return value
