"""Tests for the voice MQTT telemetry client (knowhow/voice/mqtt.py)."""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import Mock, patch

import paho.mqtt.client as mqtt
import pytest
from knowhow.voice.config import MqttConfig
from knowhow.voice.mqtt import VoiceMqtt
from knowhow.voice.session import Turn

BASE = "knowhow/test-device/voice"
CONNACK_OK = SimpleNamespace(is_failure=False)


@pytest.fixture
def mqtt_config_with_tls():
    """MQTT configuration with TLS enabled."""
    return MqttConfig(
        host="localhost",
        port=8883,
        topic_base=BASE,
        username="voice",
        password="secret",
        tls_enabled=True,
        ca_cert="/etc/ssl/ca.pem",
        cert="/etc/ssl/client.pem",
        key="/etc/ssl/client.key",
    )


@pytest.fixture
def connected(mqtt_config, mock_mqtt_client):
    with patch("knowhow.voice.mqtt.mqtt.Client", return_value=mock_mqtt_client):
        client = VoiceMqtt(mqtt_config, logging.getLogger("test-mqtt"))
        client.connect()
        yield client


def _payload(mock_client: Mock) -> dict:
    return json.loads(mock_client.publish.call_args.kwargs["payload"])


def _message(topic: str, payload: bytes) -> SimpleNamespace:
    return SimpleNamespace(topic=topic, payload=payload)


class TestTopics:
    def test_named_topics(self, mqtt_config):
        client = VoiceMqtt(mqtt_config)
        assert client.state_topic == f"{BASE}/state"
        assert client.metrics_topic == f"{BASE}/metrics"
        assert client.command_topic == f"{BASE}/command"
        assert client.topic("turn") == f"{BASE}/turn"


class TestConnection:
    def test_connect_without_host_is_noop(self, mqtt_config):
        with patch("knowhow.voice.mqtt.mqtt.Client") as client_cls:
            client = VoiceMqtt(replace(mqtt_config, host=None))
            client.connect()
            client.publish_state("listening")
        client_cls.assert_not_called()
        assert not client.is_connected()

    def test_connect_sets_offline_last_will(self, connected, mock_mqtt_client):
        mock_mqtt_client.will_set.assert_called_once_with(
            f"{BASE}/state", payload=json.dumps({"state": "offline"}), retain=True
        )
        mock_mqtt_client.connect.assert_called_once_with("localhost", 1883, keepalive=30)
        mock_mqtt_client.loop_start.assert_called_once()
        assert connected.is_connected()

    def test_connect_twice_reuses_client(self, mqtt_config, mock_mqtt_client):
        with patch("knowhow.voice.mqtt.mqtt.Client", return_value=mock_mqtt_client) as client_cls:
            client = VoiceMqtt(mqtt_config)
            client.connect()
            client.connect()
        assert client_cls.call_count == 1

    def test_tls_and_credentials(self, mqtt_config_with_tls, mock_mqtt_client):
        with patch("knowhow.voice.mqtt.mqtt.Client", return_value=mock_mqtt_client):
            VoiceMqtt(mqtt_config_with_tls).connect()

        mock_mqtt_client.username_pw_set.assert_called_once_with("voice", "secret")
        tls_kwargs = mock_mqtt_client.tls_set.call_args.kwargs
        assert tls_kwargs["ca_certs"] == "/etc/ssl/ca.pem"
        assert tls_kwargs["certfile"] == "/etc/ssl/client.pem"
        assert tls_kwargs["keyfile"] == "/etc/ssl/client.key"

    def test_unreachable_broker_logged(self, mqtt_config, mock_mqtt_client, mock_logger):
        mock_mqtt_client.connect.side_effect = OSError("refused")
        with patch("knowhow.voice.mqtt.mqtt.Client", return_value=mock_mqtt_client):
            client = VoiceMqtt(mqtt_config, mock_logger)
            client.connect()

        mock_logger.warning.assert_called_once()
        assert client._client is None

    def test_disconnect(self, connected, mock_mqtt_client):
        connected.disconnect()
        connected.disconnect()

        mock_mqtt_client.loop_stop.assert_called_once()
        mock_mqtt_client.disconnect.assert_called_once()
        assert not connected.is_connected()


class TestPublishing:
    def test_state_is_retained(self, connected, mock_mqtt_client):
        connected.publish_state("listening", registration="none", session_id="42")

        assert mock_mqtt_client.publish.call_args.args[0] == f"{BASE}/state"
        assert _payload(mock_mqtt_client) == {"state": "listening", "registration": "none", "session_id": "42"}
        assert mock_mqtt_client.publish.call_args.kwargs["retain"] is True

    def test_metrics_keep_japanese(self, connected, mock_mqtt_client):
        connected.publish_metrics({"intent": "chat", "note": "完了"})

        kwargs = mock_mqtt_client.publish.call_args.kwargs
        assert "完了" in kwargs["payload"]
        assert kwargs["retain"] is False

    def test_turn(self, connected, mock_mqtt_client):
        connected.publish_turn(Turn.assistant("登録しました", notice=True))

        assert mock_mqtt_client.publish.call_args.args[0] == f"{BASE}/turn"
        assert _payload(mock_mqtt_client) == {"role": "assistant", "content": "登録しました", "notice": True}

    def test_error(self, connected, mock_mqtt_client):
        connected.publish_error("応答の取得に失敗しました")

        assert mock_mqtt_client.publish.call_args.args[0] == f"{BASE}/error"
        assert _payload(mock_mqtt_client) == {"message": "応答の取得に失敗しました"}

    def test_publish_failure_swallowed(self, connected, mock_mqtt_client):
        mock_mqtt_client.publish.side_effect = ValueError("bad topic")
        connected.publish("bad/#", "x")


class TestCommands:
    def test_subscribe_before_connect_is_applied_on_connect(self, mqtt_config, mock_mqtt_client):
        received: list[str] = []
        with patch("knowhow.voice.mqtt.mqtt.Client", return_value=mock_mqtt_client):
            client = VoiceMqtt(mqtt_config)
            client.subscribe(client.command_topic, received.append)
            client.connect()

        mock_mqtt_client.subscribe.assert_not_called()
        client._handle_connect(mock_mqtt_client, None, None, CONNACK_OK)

        mock_mqtt_client.subscribe.assert_called_once_with(f"{BASE}/command")
        client._handle_message(None, None, _message(f"{BASE}/command", "start".encode()))
        assert received == ["start"]

    def test_reconnect_resubscribes(self, connected, mock_mqtt_client):
        connected.subscribe(connected.command_topic, lambda _payload: None)
        connected._handle_connect(mock_mqtt_client, None, None, CONNACK_OK)

        assert mock_mqtt_client.subscribe.call_count == 2

    def test_unknown_topic_ignored(self, connected):
        connected._handle_message(None, None, _message(f"{BASE}/other", b"start"))

    def test_handler_errors_are_logged(self, mqtt_config, mock_mqtt_client, mock_logger):
        with patch("knowhow.voice.mqtt.mqtt.Client", return_value=mock_mqtt_client):
            client = VoiceMqtt(mqtt_config, mock_logger)
            client.connect()

        def _boom(_payload: str) -> None:
            raise ValueError("bad command")

        client.subscribe("topic", _boom)
        client._handle_message(None, None, _message("topic", b"x"))

        mock_logger.exception.assert_called_once()

    def test_subscribe_failure_warns(self, mqtt_config, mock_mqtt_client, mock_logger):
        mock_mqtt_client.subscribe.return_value = (mqtt.MQTT_ERR_NO_CONN, None)
        with patch("knowhow.voice.mqtt.mqtt.Client", return_value=mock_mqtt_client):
            client = VoiceMqtt(mqtt_config, mock_logger)
            client.connect()
        client.subscribe("topic", lambda _payload: None)

        mock_logger.warning.assert_called_once()
