"""
Telemetry side-channel for per-cycle control records.

Publishing is fire-and-forget: a broker that is down or slow must never
stall or abort a control cycle. MqttTelemetry hands messages to paho-mqtt's
background network thread (``loop_start``) and returns immediately; paho
reconnects on its own. LogTelemetry is used when no broker is configured.

CHANGELOG:
- 2026-03-07: Initial creation (STORY-110)

TODO:
- None
"""

from __future__ import annotations

import logging

import paho.mqtt.client as paho

from charger.src.models import TelemetryRecord

logger = logging.getLogger(__name__)


class LogTelemetry:
    """Writes telemetry records to the log."""

    def publish(self, record: TelemetryRecord) -> None:
        logger.info("Telemetry: %s", record.model_dump_json())

    def close(self) -> None:
        pass


class MqttTelemetry:
    """Publishes telemetry records as JSON to an MQTT topic.

    Args:
        host: Broker hostname.
        port: Broker port.
        topic: Topic to publish records on.
        client_id: MQTT client identifier.
        username: Optional broker username.
        password: Optional broker password.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 1883,
        topic: str,
        client_id: str = "pv-surplus-charger",
        username: str = "",
        password: str = "",
    ) -> None:
        self._host = host
        self._port = port
        self._topic = topic
        self._client = paho.Client(paho.CallbackAPIVersion.VERSION2, client_id)
        if username:
            self._client.username_pw_set(username, password or None)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect

    def start(self) -> None:
        """Start the network thread and connect in the background."""
        self._client.connect_async(self._host, self._port, keepalive=60)
        self._client.loop_start()
        logger.info("MQTT telemetry to %s:%d topic=%s", self._host, self._port, self._topic)

    def publish(self, record: TelemetryRecord) -> None:
        """Queue a record for publication; drops it if the broker is down."""
        info = self._client.publish(self._topic, record.model_dump_json(), qos=0)
        if info.rc != paho.MQTT_ERR_SUCCESS:
            logger.warning("MQTT publish dropped (rc=%s)", info.rc)

    def close(self) -> None:
        self._client.disconnect()
        self._client.loop_stop()

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:  # noqa: ANN001
        if reason_code.is_failure:
            logger.warning("MQTT connect refused: %s", reason_code)
        else:
            logger.info("MQTT connected to %s:%d", self._host, self._port)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:  # noqa: ANN001
        logger.warning("MQTT disconnected: %s", reason_code)
