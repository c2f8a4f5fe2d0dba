"""Shared test fixtures and configuration for the Knowhow voice test suite.

This module provides reusable fixtures for common test scenarios including:
- Knowhow API client mocking
- MQTT broker/client mocking
- Fake speech capture and synthesis collaborators
- Dialogue orchestrator factories
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from unittest.mock import AsyncMock, Mock

import httpx
import paho.mqtt.client as mqtt
import pytest
from knowhow.voice.config import (
    DialogueConfig,
    EchoConfig,
    MqttConfig,
    ServiceConfig,
    TimingConfig,
    VadConfig,
)
from knowhow.voice.orchestrator import DialogueOrchestrator
from knowhow.voice.services import (
    CaptureError,
    KnowledgeStore,
    SpeechCapture,
    SpeechSynthesizer,
)
from knowhow.voice.session import AnalysisResult, ChatReply, PartialTranscript

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
# Knowhow API Fixtures
# ============================================================================


@pytest.fixture
def service_config():
    """Create a basic Knowhow service configuration for testing."""
    return ServiceConfig(
        base_url="https://knowhow.example.com",
        token="test_token_123",
        verify_ssl=True,
        timeout=10.0,
        tts_voice=None,
    )


@pytest.fixture
def mock_response():
    """Create a factory for mock Knowhow API responses.

    Usage:
        response = mock_response(status_code=200, json_data={"corrected": "..."})
    """

    def _create_response(
        status_code: int = 200,
        json_data: Any = None,
        text: str = "",
        content: bytes = b"",
        content_type: str = "application/json",
    ) -> Mock:
        response = Mock(spec=httpx.Response)
        response.status_code = status_code
        response.json = Mock(return_value=json_data if json_data is not None else {})
        response.text = text
        response.content = content
        response.headers = {"content-type": content_type}
        return response

    return _create_response


# ============================================================================
# MQTT Fixtures
# ============================================================================


@pytest.fixture
def mqtt_config():
    """Create a basic MQTT configuration for testing."""
    return MqttConfig(
        host="localhost",
        port=1883,
        topic_base="knowhow/test-device/voice",
        username=None,
        password=None,
        tls_enabled=False,
        ca_cert=None,
        cert=None,
        key=None,
    )


@pytest.fixture
def mock_mqtt_client():
    """Create a mock paho MQTT client."""
    client = Mock(spec=mqtt.Client)
    client.connect = Mock()
    client.disconnect = Mock()
    client.subscribe = Mock(return_value=(mqtt.MQTT_ERR_SUCCESS, 1))
    message_info = Mock(spec=mqtt.MQTTMessageInfo)
    message_info.rc = mqtt.MQTT_ERR_SUCCESS
    message_info.mid = 1
    client.publish = Mock(return_value=message_info)
    client.loop_start = Mock()
    client.loop_stop = Mock()
    client.is_connected = Mock(return_value=True)
    return client


# ============================================================================
# Speech Collaborator Fakes
# ============================================================================


class FakeCapture(SpeechCapture):
    """Recognition stream driven by the test."""

    def __init__(self) -> None:
        self._active = False
        self.opened = False
        self.open_count = 0
        self.close_count = 0
        self.open_error: CaptureError | None = None
        self.start_count = 0
        self.stop_count = 0
        self.on_event = None
        self.on_error = None
        self.on_end = None

    @property
    def active(self) -> bool:
        return self._active

    async def open(self) -> None:
        if self.opened:
            return
        if self.open_error is not None:
            raise self.open_error
        self.open_count += 1
        self.opened = True

    async def close(self) -> None:
        await self.stop()
        if self.opened:
            self.close_count += 1
        self.opened = False

    async def start(self, on_event, on_error, on_end=None) -> None:
        await self.open()
        self.start_count += 1
        self._active = True
        self.on_event = on_event
        self.on_error = on_error
        self.on_end = on_end

    async def stop(self) -> None:
        self.stop_count += 1
        self._active = False

    def emit(self, text: str, *, is_final: bool = False) -> None:
        assert self.on_event is not None
        self.on_event(PartialTranscript(text=text, is_final=is_final))

    def fail(self, code: str) -> None:
        assert self.on_error is not None
        self._active = False
        self.on_error(CaptureError(code))


class FakeSynthesizer(SpeechSynthesizer):
    """Records spoken text; optionally blocks until stopped to simulate long playback."""

    def __init__(self, *, block: bool = False) -> None:
        self.block = block
        self.spoken: list[str] = []
        self.stop_count = 0
        self.playing = False
        self._release: asyncio.Event | None = None

    async def speak(self, text: str) -> None:
        self.spoken.append(text)
        if not self.block:
            return
        self._release = asyncio.Event()
        self.playing = True
        try:
            await self._release.wait()
        finally:
            self.playing = False

    async def stop(self) -> None:
        self.stop_count += 1
        if self._release is not None:
            self._release.set()

    def finish(self) -> None:
        if self._release is not None:
            self._release.set()


class FakeKnowledgeStore(KnowledgeStore):
    """In-memory knowledge articles keyed by id."""

    def __init__(self) -> None:
        self.articles: dict[int, dict[str, Any]] = {}
        self.invalidations = 0
        self.fail = False

    async def create_knowledge(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self.fail:
            raise RuntimeError("knowledge service unavailable")
        knowledge_id = len(self.articles) + 1
        article = {"id": knowledge_id, **payload}
        self.articles[knowledge_id] = article
        return article

    def get(self, knowledge_id: int) -> dict[str, Any]:
        return self.articles[knowledge_id]

    def invalidate_cache(self) -> None:
        self.invalidations += 1


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def knowledge_store():
    return FakeKnowledgeStore()


@pytest.fixture
def conversation_service():
    """Chat/analysis/correction service with canned replies."""
    service = Mock()
    service.chat = AsyncMock(return_value=ChatReply(text="足場の点検は**朝礼後**に行ってください。"))
    service.analyze = AsyncMock(return_value=AnalysisResult(should_register=False))
    service.correct = AsyncMock(side_effect=lambda text: text)
    return service


@pytest.fixture
def session_store():
    store = Mock()
    store.create_session = AsyncMock(return_value="42")
    store.append_messages = AsyncMock(return_value=None)
    store.complete_session = AsyncMock(return_value=None)
    store.delete_session = AsyncMock(return_value=None)
    store.get_session = AsyncMock(return_value=[])
    return store


@pytest.fixture
def fast_timing():
    """Short timers so debounce and restart paths run quickly."""
    return TimingConfig(
        silence_seconds=0.05,
        echo_tail_seconds=0.05,
        restart_delay=0.01,
        error_restart_delay=0.02,
        failure_restart_delay=0.03,
    )


@pytest.fixture
def make_orchestrator(capture, synthesizer, conversation_service, session_store, knowledge_store, fast_timing):
    """Factory fixture for orchestrators wired to the fake collaborators.

    Usage:
        orchestrator = make_orchestrator(dialogue=DialogueConfig(greeting="..."))
    """

    def _create(**overrides: Any) -> DialogueOrchestrator:
        kwargs: dict[str, Any] = {
            "capture": capture,
            "synthesizer": synthesizer,
            "conversation": conversation_service,
            "sessions": session_store,
            "knowledge": knowledge_store,
            "dialogue": DialogueConfig(),
            "timing": fast_timing,
            "echo": EchoConfig(),
            "vad": VadConfig(),
        }
        kwargs.update(overrides)
        return DialogueOrchestrator(**kwargs)

    return _create

