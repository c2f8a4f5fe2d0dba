"""MQTT telemetry and remote control for the voice engine.

Everything lives under ``<topic_base>``:

- ``state``   retained dialogue state (``offline`` via the last will)
- ``turn``    every appended conversation turn
- ``metrics`` per-turn latency breakdown
- ``error``   user-facing error notices
- ``command`` inbound control commands (see ``bin/knowhow-voice.py``)

Handlers registered with ``subscribe`` are remembered and re-subscribed from
paho's connect callback, so remote control survives a broker restart.
"""

from __future__ import annotations

import json
import logging
import ssl
import threading
from collections.abc import Callable
from typing import Any

import paho.mqtt.client as mqtt

from .config import MqttConfig
from .session import Turn

MessageHandler = Callable[[str], None]

STATE_TOPIC = "state"
TURN_TOPIC = "turn"
METRICS_TOPIC = "metrics"
ERROR_TOPIC = "error"
COMMAND_TOPIC = "command"

OFFLINE_PAYLOAD = json.dumps({"state": "offline"})


def _encode(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False)


def _build_client(config: MqttConfig) -> mqtt.Client:
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=f"knowhow-voice-{config.topic_base}",
        clean_session=True,
    )
    if config.username:
        client.username_pw_set(config.username, config.password or "")
    if config.tls_enabled:
        client.tls_set(
            ca_certs=config.ca_cert,
            certfile=config.cert,
            keyfile=config.key,
            tls_version=ssl.PROTOCOL_TLS_CLIENT,
        )
    client.will_set(f"{config.topic_base}/{STATE_TOPIC}", payload=OFFLINE_PAYLOAD, retain=True)
    return client


class VoiceMqtt:
    """Thread-safe paho wrapper; every call is a no-op when ``MQTT_HOST`` is unset."""

    def __init__(self, config: MqttConfig, logger: logging.Logger | None = None) -> None:
        self.config = config
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._lock = threading.Lock()
        self._handlers: dict[str, MessageHandler] = {}

    def topic(self, name: str) -> str:
        return f"{self.config.topic_base}/{name}"

    @property
    def state_topic(self) -> str:
        return self.topic(STATE_TOPIC)

    @property
    def metrics_topic(self) -> str:
        return self.topic(METRICS_TOPIC)

    @property
    def command_topic(self) -> str:
        return self.topic(COMMAND_TOPIC)

    def connect(self) -> None:
        if not self.config.host:
            self._logger.debug("[mqtt] MQTT host not configured; voice telemetry disabled")
            return
        with self._lock:
            if self._client is not None:
                return
            client = _build_client(self.config)
            client.on_connect = self._handle_connect
            try:
                client.connect(self.config.host, self.config.port, keepalive=30)
            except (OSError, ValueError) as exc:
                self._logger.warning("[mqtt] Broker %s:%s unreachable: %s", self.config.host, self.config.port, exc)
                return
            client.loop_start()
            self._client = client
        self._logger.info("[mqtt] Voice telemetry on %s", self.config.topic_base)

    def disconnect(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        client.loop_stop()
        client.disconnect()

    def is_connected(self) -> bool:
        client = self._client
        return client is not None and client.is_connected()

    # ------------------------------------------------------------------
    # Outbound

    def publish(self, topic: str, payload: Any, retain: bool = False) -> None:
        client = self._client
        if client is None:
            return
        try:
            client.publish(topic, payload=_encode(payload), qos=0, retain=retain)
        except (OSError, ValueError) as exc:
            self._logger.debug("[mqtt] Dropped message for %s: %s", topic, exc)

    def publish_state(self, state: str, **extra: Any) -> None:
        self.publish(self.state_topic, {"state": state, **extra}, retain=True)

    def publish_turn(self, turn: Turn) -> None:
        self.publish(
            self.topic(TURN_TOPIC),
            {"role": turn.role.value, "content": turn.content, "notice": turn.is_notice},
        )

    def publish_metrics(self, metrics: dict[str, Any]) -> None:
        self.publish(self.metrics_topic, metrics)

    def publish_error(self, message: str) -> None:
        self.publish(self.topic(ERROR_TOPIC), {"message": message})

    # ------------------------------------------------------------------
    # Inbound

    def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Route text payloads on ``topic`` to ``handler``, now and after reconnects."""
        self._handlers[topic] = handler
        client = self._client
        if client is not None:
            self._attach(client, topic)

    def _attach(self, client: mqtt.Client, topic: str) -> None:
        result, _mid = client.subscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.warning("[mqtt] Subscribe to %s failed (rc=%s)", topic, result)
        client.message_callback_add(topic, self._handle_message)

    def _handle_connect(self, client, _userdata, _flags, reason_code, _properties=None) -> None:  # type: ignore[no-untyped-def]
        if getattr(reason_code, "is_failure", False):
            self._logger.warning("[mqtt] Connection refused: %s", reason_code)
            return
        for topic in list(self._handlers):
            self._attach(client, topic)

    def _handle_message(self, _client, _userdata, message) -> None:  # type: ignore[no-untyped-def]
        handler = self._handlers.get(message.topic)
        if handler is None:
            return
        try:
            handler(message.payload.decode("utf-8", errors="ignore"))
        except Exception:
            self._logger.exception("[mqtt] Handler for %s failed", message.topic)
