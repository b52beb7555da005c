"""
Unit tests for the telemetry sinks.

Tests verify:
- LogTelemetry writes the record as JSON to the log.
- MqttTelemetry connects in the background and publishes JSON records.
- A failed MQTT publish is logged, never raised.

CHANGELOG:
- 2026-03-07: Initial creation (STORY-110)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock, patch

import paho.mqtt.client as paho
import pytest
from charger.src.models import ChargeState, EvseCommand, TelemetryRecord
from charger.src.telemetry import LogTelemetry, MqttTelemetry
from conftest import T0


def _record() -> TelemetryRecord:
    return TelemetryRecord(
        timestamp=T0,
        average_watts=2400.0,
        interval_seconds=60.0,
        available_current_amps=10.0,
        charge_state=ChargeState.CHARGING,
        command=EvseCommand.charge(10),
        applied=True,
    )


def _mqtt(mock_client: MagicMock, **kwargs: object) -> MqttTelemetry:
    with patch("charger.src.telemetry.paho.Client", return_value=mock_client):
        return MqttTelemetry(host="broker.lan", port=1884, topic="pv/telemetry", **kwargs)  # type: ignore[arg-type]


class TestLogTelemetry:
    """Without a broker, records go to the log."""

    def test_publish_logs_json(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="charger.src.telemetry"):
            LogTelemetry().publish(_record())

        assert '"charge_state":"charging"' in caplog.text

    def test_close_is_noop(self) -> None:
        LogTelemetry().close()


class TestMqttTelemetry:
    """MQTT publishing is fire-and-forget."""

    def test_start_connects_in_background(self) -> None:
        client = MagicMock()
        sink = _mqtt(client)

        sink.start()

        client.connect_async.assert_called_once_with("broker.lan", 1884, keepalive=60)
        client.loop_start.assert_called_once()

    def test_credentials_set_when_configured(self) -> None:
        client = MagicMock()
        _mqtt(client, username="charger", password="mqtt-secret")
        client.username_pw_set.assert_called_once_with("charger", "mqtt-secret")

    def test_no_credentials_by_default(self) -> None:
        client = MagicMock()
        _mqtt(client)
        client.username_pw_set.assert_not_called()

    def test_publish_sends_json(self) -> None:
        client = MagicMock()
        client.publish.return_value.rc = paho.MQTT_ERR_SUCCESS
        sink = _mqtt(client)

        sink.publish(_record())

        topic, payload = client.publish.call_args.args
        assert topic == "pv/telemetry"
        body = json.loads(payload)
        assert body["command"] == {"enabled": True, "charge_current_amps": 10.0}
        assert body["applied"] is True
        assert client.publish.call_args.kwargs["qos"] == 0

    def test_failed_publish_logged_not_raised(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        client = MagicMock()
        client.publish.return_value.rc = paho.MQTT_ERR_NO_CONN
        sink = _mqtt(client)

        with caplog.at_level(logging.WARNING, logger="charger.src.telemetry"):
            sink.publish(_record())

        assert "dropped" in caplog.text

    def test_close_stops_network_thread(self) -> None:
        client = MagicMock()
        sink = _mqtt(client)

        sink.close()

        client.disconnect.assert_called_once()
        client.loop_stop.assert_called_once()
