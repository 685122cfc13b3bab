"""Tests for lara.assistant.config: environment parsing and defaults."""

from __future__ import annotations

import pytest
from lara.assistant.config import (
    DEFAULT_ACKNOWLEDGEMENT,
    DEFAULT_CLARIFY_THRESHOLD,
    DEFAULT_WAKE_MODEL,
    AssistantConfig,
    DispatchConfig,
    MicConfig,
    _normalize_choice,
    _strip_or_none,
    _unit_interval,
)
from lara.assistant.models import Intent

# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------

_BASE_ENV: dict[str, str] = {
    "LARA_HOSTNAME": "kitchen-hub",
}


def _from_env(overrides: dict[str, str] | None = None) -> AssistantConfig:
    env = dict(_BASE_ENV)
    if overrides:
        env.update(overrides)
    return AssistantConfig.from_env(env)


# ===================================================================
# Helpers
# ===================================================================


class TestStripOrNone:
    def test_none_returns_none(self) -> None:
        assert _strip_or_none(None) is None

    def test_blank_returns_none(self) -> None:
        assert _strip_or_none("   ") is None

    def test_strips(self) -> None:
        assert _strip_or_none("  key ") == "key"


class TestNormalizeChoice:
    def test_accepts_allowed_case_insensitive(self) -> None:
        assert _normalize_choice(" Gemini ", {"openai", "gemini"}, "openai") == "gemini"

    def test_unknown_uses_default(self) -> None:
        assert _normalize_choice("claude", {"openai", "gemini"}, "openai") == "openai"

    def test_empty_uses_default(self) -> None:
        assert _normalize_choice(None, {"openai"}, "openai") == "openai"


@pytest.mark.parametrize(("value", "expected"), [(0.0, 0.0), (0.7, 0.7), (1.0, 1.0), (1.5, 0.5), (-0.1, 0.5)])
def test_unit_interval(value, expected) -> None:
    assert _unit_interval(value, 0.5) == expected


def test_mic_config_byte_sizes() -> None:
    mic = MicConfig(command=["arecord"], rate=16000, width=2, channels=1, chunk_ms=30)

    assert mic.bytes_per_chunk == 960
    assert mic.bytes_for_ms(1000) == 32000


def test_dispatch_threshold_lookup() -> None:
    config = DispatchConfig(default_threshold=0.5, thresholds={"general_query": 0.35}, handler_timeout=5.0)

    assert config.threshold_for(Intent.GENERAL_QUERY) == 0.35
    assert config.threshold_for(Intent.PLAY_MUSIC) == 0.5


# ===================================================================
# AssistantConfig.from_env
# ===================================================================


class TestFromEnvDefaults:
    def test_identity(self) -> None:
        config = _from_env()

        assert config.hostname == "kitchen-hub"
        assert config.device_name == "Kitchen Hub"
        assert config.session.user_id == "kitchen-hub"

    def test_audio_defaults(self) -> None:
        config = _from_env()

        assert config.mic.command[0] == "arecord"
        assert (config.mic.rate, config.mic.width, config.mic.channels) == (16000, 2, 1)
        assert config.capture.min_seconds == 1.0
        assert config.capture.max_seconds == 8.0
        assert config.capture.silence_ms == 1200
        assert config.capture.rms_floor == 120
        assert config.session.capture_timeout == 10.0

    def test_endpoints(self) -> None:
        config = _from_env()

        assert (config.wake_endpoint.host, config.wake_endpoint.port) == ("127.0.0.1", 10400)
        assert config.stt_endpoint.port == 10300
        assert config.tts_endpoint.port == 10200
        assert config.wake_models == [DEFAULT_WAKE_MODEL]

    def test_classifier_defaults(self) -> None:
        config = _from_env()

        assert config.classifier.provider == "openai"
        assert config.classifier.openai_api_key is None
        assert config.classifier.timeout == 6.0

    def test_dispatch_defaults(self) -> None:
        config = _from_env()

        assert config.dispatch.default_threshold == DEFAULT_CLARIFY_THRESHOLD
        assert config.dispatch.thresholds == {"general_query": 0.35}

    def test_wake_phrases_include_variants(self) -> None:
        config = _from_env()

        assert config.session.wake_phrases[0] == "hey lara"
        assert "hey laura" in config.session.wake_phrases
        assert config.session.wake_mode is True
        assert config.session.barge_in is True
        assert config.session.acknowledgement == DEFAULT_ACKNOWLEDGEMENT

    def test_mqtt_disabled_without_host(self) -> None:
        config = _from_env()

        assert config.mqtt.host is None
        assert config.mqtt.topic_base == "lara/kitchen-hub/assistant"

    def test_action_topics_cover_every_intent(self) -> None:
        config = _from_env()

        assert config.action_topics["play_music"] == "lara/kitchen-hub/assistant/actions/play_music"
        assert set(config.action_topics) == {intent.value for intent in Intent}


class TestFromEnvOverrides:
    def test_provider_and_keys(self) -> None:
        config = _from_env(
            {
                "LARA_CLASSIFIER_PROVIDER": "GEMINI",
                "GEMINI_API_KEY": " gm-key ",
                "LARA_CLASSIFIER_TIMEOUT_SECONDS": "0.1",
            }
        )

        assert config.classifier.provider == "gemini"
        assert config.classifier.gemini_api_key == "gm-key"
        assert config.classifier.timeout == 0.5

    def test_thresholds(self) -> None:
        config = _from_env(
            {
                "LARA_CLARIFY_THRESHOLD": "0.6",
                "LARA_CLARIFY_THRESHOLDS": "play_music=0.7,bogus=0.1,navigate:2.0",
            }
        )

        assert config.dispatch.default_threshold == 0.6
        assert config.dispatch.thresholds["play_music"] == 0.7
        assert config.dispatch.thresholds["navigate"] == 0.6
        assert "bogus" not in config.dispatch.thresholds
        assert config.dispatch.thresholds["general_query"] == 0.35

    def test_out_of_range_default_threshold_ignored(self) -> None:
        config = _from_env({"LARA_CLARIFY_THRESHOLD": "4"})

        assert config.dispatch.default_threshold == DEFAULT_CLARIFY_THRESHOLD

    def test_custom_wake_phrase_without_variants(self) -> None:
        config = _from_env({"LARA_WAKE_PHRASE": "Hello Lara", "LARA_WAKE_VARIANTS": ""})

        assert config.session.wake_phrases == ("hello lara",)

    def test_duplicate_variants_are_collapsed(self) -> None:
        config = _from_env({"LARA_WAKE_VARIANTS": "hey lara, Hey Laura, hey laura"})

        assert config.session.wake_phrases == ("hey lara", "hey laura")

    def test_capture_limits_are_consistent(self) -> None:
        config = _from_env({"LARA_MIN_PHRASE_SECONDS": "3", "LARA_MAX_PHRASE_SECONDS": "1"})

        assert config.capture.max_seconds == 3.5
        assert config.session.capture_timeout == 5.5

    def test_mqtt_settings(self) -> None:
        config = _from_env(
            {
                "MQTT_HOST": "broker.local",
                "MQTT_PORT": "8883",
                "MQTT_USER": "lara",
                "MQTT_PASS": "secret",
                "MQTT_TLS_ENABLED": "true",
                "LARA_TOPIC_BASE": "home/lara/",
            }
        )

        assert config.mqtt.host == "broker.local"
        assert config.mqtt.port == 8883
        assert config.mqtt.username == "lara"
        assert config.mqtt.tls_enabled is True
        assert config.mqtt.topic_base == "home/lara"
        assert config.action_topics["navigate"] == "home/lara/actions/navigate"

    def test_wake_mode_off(self) -> None:
        config = _from_env({"LARA_WAKE_MODE": "no", "LARA_BARGE_IN": "0"})

        assert config.session.wake_mode is False
        assert config.session.barge_in is False

    def test_invalid_numbers_fall_back(self) -> None:
        config = _from_env({"LARA_MIC_RATE": "fast", "MQTT_PORT": ""})

        assert config.mic.rate == 16000
        assert config.mqtt.port == 1883

    def test_wake_models_list(self) -> None:
        config = _from_env({"LARA_WAKE_MODELS": "hey_jarvis, alexa"})

        assert config.wake_models == ["hey_jarvis", "alexa"]

    @pytest.mark.parametrize(("value", "expected"), [("  Yes?  ", "Yes?"), ("", None), ("   ", None)])
    def test_wake_acknowledgement(self, value, expected) -> None:
        config = _from_env({"LARA_WAKE_ACK": value})

        assert config.session.acknowledgement == expected
