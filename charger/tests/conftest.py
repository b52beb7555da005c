"""
Shared test fixtures for surplus charger tests.

Provides environment variable fixtures for ChargerSettings configuration
tests and fakes for the meter, EVSE, and telemetry peripherals. All charger
env vars are cleaned before each test to ensure isolation.

CHANGELOG:
- 2026-03-07: Add fake peripherals for scheduler tests (STORY-110)
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from charger.src.errors import FetchError, FetchErrorKind
from charger.src.models import EvseCommand, EvseStatus, MeterReading, TelemetryRecord

# All ChargerSettings environment variable names, used for cleanup.
_ALL_CHARGER_ENV_VARS = (
    "ENVOY_HOST",
    "ENVOY_TOKEN_FILE",
    "OPENEVSE_HOST",
    "OPENEVSE_TOKEN_FILE",
    "POLL_INTERVAL_S",
    "MIN_CURRENT_A",
    "MAX_CURRENT_A",
    "CURRENT_STEP_A",
    "VOLTAGE_V",
    "TARGET_EXPORT_CURRENT_A",
    "EVSE_LOAD_ON_METER",
    "DEBOUNCE_CYCLES",
    "MIN_SAMPLE_INTERVAL_S",
    "MAX_SAMPLE_INTERVAL_S",
    "REQUEST_TIMEOUT_S",
    "RETRY_ATTEMPTS",
    "RETRY_DELAY_S",
    "APPLY_FAILURE_ALERT_CYCLES",
    "MQTT_HOST",
    "MQTT_PORT",
    "MQTT_TOPIC",
    "MQTT_USERNAME",
    "MQTT_PASSWORD",
    "HEALTH_PATH",
)

T0 = datetime(2026, 3, 7, 12, 0, 0, tzinfo=UTC)
"""Reference time for meter readings in tests."""


def reading(
    seconds: float,
    imported_wh: float = 1000.0,
    exported_wh: float = 5000.0,
) -> MeterReading:
    """Build a MeterReading ``seconds`` after T0."""
    return MeterReading(
        timestamp=T0 + timedelta(seconds=seconds),
        energy_imported_wh=imported_wh,
        energy_exported_wh=exported_wh,
    )


@pytest.fixture(autouse=True)
def _clean_charger_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all charger env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_CHARGER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def envoy_token_file(tmp_path: Path) -> Path:
    """Write a fake Envoy JWT to a file."""
    path = tmp_path / "envoy_token"
    path.write_text("eyJhbGciOiJFUzI1NiJ9.fake.jwt\n")
    return path


@pytest.fixture()
def env_vars_full(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, envoy_token_file: Path
) -> dict[str, str]:
    """Set all required and optional environment variables for ChargerSettings.

    Returns the dict of env var names to values for assertion convenience.
    """
    evse_token = tmp_path / "openevse_token"
    evse_token.write_text("YWRtaW46c2VjcmV0")
    env = {
        "ENVOY_HOST": "192.168.1.20",
        "ENVOY_TOKEN_FILE": str(envoy_token_file),
        "OPENEVSE_HOST": "192.168.1.30",
        "OPENEVSE_TOKEN_FILE": str(evse_token),
        "POLL_INTERVAL_S": "30",
        "MIN_CURRENT_A": "6",
        "MAX_CURRENT_A": "16",
        "CURRENT_STEP_A": "1",
        "VOLTAGE_V": "230",
        "TARGET_EXPORT_CURRENT_A": "1.0",
        "EVSE_LOAD_ON_METER": "true",
        "DEBOUNCE_CYCLES": "4",
        "MIN_SAMPLE_INTERVAL_S": "5",
        "MAX_SAMPLE_INTERVAL_S": "120",
        "REQUEST_TIMEOUT_S": "5",
        "RETRY_ATTEMPTS": "3",
        "RETRY_DELAY_S": "0.5",
        "APPLY_FAILURE_ALERT_CYCLES": "10",
        "MQTT_HOST": "broker.lan",
        "MQTT_PORT": "1884",
        "MQTT_TOPIC": "home/evse/surplus",
        "MQTT_USERNAME": "charger",
        "MQTT_PASSWORD": "mqtt-secret",
        "HEALTH_PATH": str(tmp_path / "health.json"),
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(
    monkeypatch: pytest.MonkeyPatch, envoy_token_file: Path
) -> dict[str, str]:
    """Set only the required environment variables (no optional ones).

    Optional variables should fall back to their defaults.
    """
    env = {"ENVOY_TOKEN_FILE": str(envoy_token_file)}
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


# ---------------------------------------------------------------------------
# Fake peripherals
# ---------------------------------------------------------------------------


class FakeMeter:
    """Returns queued readings; a queued exception is raised instead."""

    def __init__(self, results: list[MeterReading | Exception] | None = None) -> None:
        self.results = list(results or [])
        self.calls = 0

    async def fetch(self) -> MeterReading:
        self.calls += 1
        if not self.results:
            raise FetchError(FetchErrorKind.UNREACHABLE, "no more readings")
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeEvse:
    """Records applied commands; queued exceptions fail the next applies."""

    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.applied: list[EvseCommand] = []
        self.attempts = 0
        self.status_error: Exception | None = None

    async def apply(self, command: EvseCommand) -> None:
        self.attempts += 1
        if self.failures:
            raise self.failures.pop(0)
        self.applied.append(command)

    async def status(self) -> EvseStatus:
        if self.status_error is not None:
            raise self.status_error
        return EvseStatus(state_code=3, state_name="charging", elapsed_seconds=120)


class FakeTelemetry:
    """Collects published records."""

    def __init__(self) -> None:
        self.records: list[TelemetryRecord] = []

    def publish(self, record: TelemetryRecord) -> None:
        self.records.append(record)
