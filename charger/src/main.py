"""
Surplus charger daemon entrypoint.

Loads ChargerSettings, reads the token files, builds the Envoy meter client,
the OpenEVSE client, the charge controller and the telemetry sink, then runs
the SchedulerLoop until SIGTERM/SIGINT.

Startup is all-or-nothing: invalid configuration or an unreadable token file
is logged at CRITICAL and the process exits with status 2 before any
peripheral is contacted. On shutdown the cycle in flight is abandoned and no
command is sent to the EVSE, so a running charge session keeps its setpoint.

Structured JSON logging is used for all events.

CHANGELOG:
- 2026-03-07: Wire MQTT telemetry and health file (STORY-110)
- 2026-03-04: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from pydantic import ValidationError

from charger.src.controller import ChargeController
from charger.src.health import HealthWriter
from charger.src.scheduler import SchedulerLoop
from charger.src.telemetry import LogTelemetry, MqttTelemetry

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging for the charger daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    # httpx logs every request at INFO; one per RAPI command is too chatty.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(
    settings: object,
    envoy_token: str | None = None,
    openevse_token: str | None = None,
) -> None:
    """Log a config summary at startup, excluding secrets.

    Token contents and the MQTT password are never logged; tokens appear
    only as fingerprints.

    Args:
        settings: A ChargerSettings instance (or any object with the same attrs).
        envoy_token: Loaded Envoy token, fingerprinted in the log.
        openevse_token: Loaded OpenEVSE token, fingerprinted in the log.
    """
    logger.info(
        "Charger daemon starting with config: "
        "envoy_host=%s, openevse_host=%s, poll_interval_s=%s, "
        "min_current_a=%s, max_current_a=%s, current_step_a=%s, voltage_v=%s, "
        "target_export_current_a=%s, evse_load_on_meter=%s, debounce_cycles=%s, "
        "sample_interval_s=[%s, %s], retry_attempts=%s, "
        "apply_failure_alert_cycles=%s, mqtt_host=%s, mqtt_topic=%s, "
        "health_path=%s, envoy_token_masked=%s, openevse_token_masked=%s",
        settings.envoy_host,  # type: ignore[attr-defined]
        settings.openevse_host,  # type: ignore[attr-defined]
        settings.poll_interval_s,  # type: ignore[attr-defined]
        settings.min_current_a,  # type: ignore[attr-defined]
        settings.max_current_a,  # type: ignore[attr-defined]
        settings.current_step_a,  # type: ignore[attr-defined]
        settings.voltage_v,  # type: ignore[attr-defined]
        settings.target_export_current_a,  # type: ignore[attr-defined]
        settings.evse_load_on_meter,  # type: ignore[attr-defined]
        settings.debounce_cycles,  # type: ignore[attr-defined]
        settings.min_sample_interval_s,  # type: ignore[attr-defined]
        settings.max_sample_interval_s,  # type: ignore[attr-defined]
        settings.retry_attempts,  # type: ignore[attr-defined]
        settings.apply_failure_alert_cycles,  # type: ignore[attr-defined]
        settings.mqtt_host or "(log only)",  # type: ignore[attr-defined]
        settings.mqtt_topic,  # type: ignore[attr-defined]
        settings.health_path,  # type: ignore[attr-defined]
        _masked_token(envoy_token),
        _masked_token(openevse_token),
    )


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def build_controller(settings: object) -> ChargeController:
    """Create the ChargeController from settings."""
    return ChargeController(
        min_current_a=settings.min_current_a,  # type: ignore[attr-defined]
        max_current_a=settings.max_current_a,  # type: ignore[attr-defined]
        voltage_v=settings.voltage_v,  # type: ignore[attr-defined]
        debounce_cycles=settings.debounce_cycles,  # type: ignore[attr-defined]
        current_step_a=settings.current_step_a,  # type: ignore[attr-defined]
        target_export_current_a=settings.target_export_current_a,  # type: ignore[attr-defined]
        evse_load_on_meter=settings.evse_load_on_meter,  # type: ignore[attr-defined]
    )


def build_telemetry(settings: object) -> LogTelemetry | MqttTelemetry:
    """MQTT when a broker is configured, the log otherwise."""
    if not settings.mqtt_host:  # type: ignore[attr-defined]
        return LogTelemetry()
    return MqttTelemetry(
        host=settings.mqtt_host,  # type: ignore[attr-defined]
        port=settings.mqtt_port,  # type: ignore[attr-defined]
        topic=settings.mqtt_topic,  # type: ignore[attr-defined]
        username=settings.mqtt_username,  # type: ignore[attr-defined]
        password=settings.mqtt_password,  # type: ignore[attr-defined]
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run the loop.

    Sets up SIGTERM/SIGINT handlers to trigger shutdown.
    """
    configure_logging()

    from charger.src.config import ChargerSettings
    from charger.src.evse import OpenEvse
    from charger.src.meter import EnvoyMeter

    try:
        settings = ChargerSettings()
        envoy_token = settings.load_envoy_token()
        openevse_token = settings.load_openevse_token()
    except (ValidationError, ValueError) as exc:
        logger.critical("Refusing to start, invalid configuration: %s", exc)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc

    log_config_summary(settings, envoy_token, openevse_token)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    meter = EnvoyMeter(
        host=settings.envoy_host,
        token=envoy_token,
        timeout_s=settings.request_timeout_s,
    )
    evse = OpenEvse(
        host=settings.openevse_host,
        auth_token=openevse_token,
        timeout_s=settings.request_timeout_s,
    )
    telemetry = build_telemetry(settings)
    if isinstance(telemetry, MqttTelemetry):
        telemetry.start()

    scheduler = SchedulerLoop(
        meter=meter,
        evse=evse,
        controller=build_controller(settings),
        telemetry=telemetry,
        health=HealthWriter(settings.health_path),
        min_interval_s=settings.min_sample_interval_s,
        max_interval_s=settings.max_sample_interval_s,
        retry_attempts=settings.retry_attempts,
        retry_delay_s=settings.retry_delay_s,
        apply_failure_alert_cycles=settings.apply_failure_alert_cycles,
    )

    try:
        await scheduler.run(
            interval_s=settings.poll_interval_s,
            shutdown_event=shutdown_event,
        )
    finally:
        telemetry.close()
    logger.info("Shutdown complete, EVSE left at its last applied setpoint")


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for shutdown.
    """
    logger.info("Received shutdown signal, initiating shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the charger daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
