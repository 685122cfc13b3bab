"""Shared test fixtures for the Lara test suite.

This module provides reusable fixtures for common test scenarios including:
- Configuration objects
- Mocked pipeline stages (capture, transcriber, classifier, synthesizer)
- MQTT client mocking
"""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, Mock

import pytest
from lara.assistant.audio import CapturedAudio
from lara.assistant.config import DispatchConfig, MqttConfig, SessionConfig
from lara.assistant.models import ActionResult
from lara.assistant.wyoming import Transcript

# ============================================================================
# Pytest Configuration
# ============================================================================


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio backend for async tests."""
    return "asyncio"


# ============================================================================
# Logging Fixtures
# ============================================================================


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    return Mock(spec=logging.Logger)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def mqtt_config():
    """Basic MQTT configuration for testing."""
    return MqttConfig(
        host="localhost",
        port=1883,
        username=None,
        password=None,
        tls_enabled=False,
        cert=None,
        key=None,
        ca_cert=None,
        topic_base="lara/test-host/assistant",
    )


@pytest.fixture
def dispatch_config():
    return DispatchConfig(default_threshold=0.5, thresholds={"general_query": 0.35}, handler_timeout=1.0)


@pytest.fixture
def session_config():
    return SessionConfig(
        user_id="user-1",
        wake_mode=True,
        wake_phrases=("hey lara", "hey laura"),
        barge_in=True,
        idle_timeout=0.0,
        capture_timeout=2.0,
        transcribe_timeout=1.0,
        max_audio_bytes=1024 * 1024,
        synthesis_timeout=1.0,
    )


# ============================================================================
# Pipeline Stage Fixtures
# ============================================================================


@pytest.fixture
def captured_audio():
    return CapturedAudio(audio=b"\x10\x00" * 16000, rate=16000, width=2, channels=1)


@pytest.fixture
def mock_capture(captured_audio):
    capture = Mock()
    capture.record = AsyncMock(return_value=captured_audio)
    return capture


@pytest.fixture
def mock_transcriber():
    transcriber = Mock()
    transcriber.transcribe = AsyncMock(return_value=Transcript(text="show my tasks"))
    return transcriber


@pytest.fixture
def mock_synthesizer():
    synthesizer = Mock()
    synthesizer.speak = AsyncMock()
    return synthesizer


@pytest.fixture
def mock_handler():
    handler = Mock()
    handler.handle = AsyncMock(return_value=ActionResult(success=True, message="Done it."))
    return handler


@pytest.fixture
def mock_publisher():
    """Mock MQTT-like publisher exposing ``publish``."""
    publisher = Mock()
    publisher.publish = Mock()
    return publisher
