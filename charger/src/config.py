"""
Surplus charger configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Settings are frozen: they are read once at startup and never change for the
life of the process. Token files are checked for existence at load time so a
missing credential stops the daemon before it touches any peripheral.

CHANGELOG:
- 2026-03-12: Reject a sample window shorter than the poll interval (STORY-114)
- 2026-03-07: Add MQTT telemetry and health file settings (STORY-110)
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


def read_token_file(path: str) -> str:
    """Read a token file and return its stripped contents.

    Raises:
        ValueError: The file is missing, unreadable, or empty.
    """
    try:
        token = Path(path).read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ValueError(f"cannot read token file '{path}': {exc}") from exc
    if not token:
        raise ValueError(f"token file '{path}' is empty")
    return token


class ChargerSettings(BaseSettings):
    """Surplus charger configuration.

    Attributes:
        envoy_host: Enphase Envoy hostname / IP on the local LAN.
        envoy_token_file: File holding the Envoy local-API JWT.
        openevse_host: OpenEVSE hostname / IP on the local LAN.
        openevse_token_file: File holding the OpenEVSE HTTP Basic auth
            string. Empty means the EVSE has no auth configured.
        poll_interval_s: Seconds between control cycles (min 5).
        min_current_a: EVSE minimum charge current; less surplus than this
            puts the EVSE to sleep.
        max_current_a: EVSE maximum charge current; surplus above this is
            exported.
        current_step_a: EVSE setpoint resolution.
        voltage_v: Nominal line voltage for watts <-> amps.
        target_export_current_a: Current to keep exporting as a margin.
        evse_load_on_meter: True when the EVSE is on the metered circuit.
            The Envoy net-consumption CT measures the whole house, so a
            running charge eats the surplus it was started on. Left False,
            the EVSE then switches off after ``debounce_cycles``, the surplus
            returns, and it switches on again. Set True to add the commanded
            current back while charging.
        debounce_cycles: Consecutive cycles required before switching the
            EVSE on or off.
        min_sample_interval_s: Shortest accepted interval between readings.
        max_sample_interval_s: Longest accepted interval between readings.
        request_timeout_s: Timeout per HTTP request to a peripheral.
        retry_attempts: Immediate retries per peripheral call within a cycle.
        retry_delay_s: Pause between those retries.
        apply_failure_alert_cycles: Consecutive cycles of failed EVSE
            commands before failures are logged at ERROR.
        mqtt_host: MQTT broker host; empty sends telemetry to the log only.
        mqtt_port: MQTT broker port.
        mqtt_topic: Topic for per-cycle telemetry.
        mqtt_username: Broker username (optional).
        mqtt_password: Broker password (optional).
        health_path: JSON health file path.
    """

    envoy_host: str = "envoy.local"
    envoy_token_file: str
    openevse_host: str = "openevse"
    openevse_token_file: str = ""
    poll_interval_s: int = 60
    min_current_a: int = 6
    max_current_a: int = 30
    current_step_a: float = 1.0
    voltage_v: float = 240.0
    target_export_current_a: float = 0.0
    evse_load_on_meter: bool = False
    debounce_cycles: int = 3
    min_sample_interval_s: float = 10.0
    max_sample_interval_s: float = 300.0
    request_timeout_s: float = 10.0
    retry_attempts: int = 2
    retry_delay_s: float = 1.0
    apply_failure_alert_cycles: int = 5
    mqtt_host: str = ""
    mqtt_port: int = 1883
    mqtt_topic: str = "pvcharge/telemetry"
    mqtt_username: str = ""
    mqtt_password: str = ""
    health_path: str = "/data/health.json"

    @field_validator("envoy_token_file")
    @classmethod
    def envoy_token_file_must_exist(cls, v: str) -> str:
        """The Envoy refuses unauthenticated reads, so the token is required."""
        if not Path(v).is_file():
            raise ValueError(f"ENVOY_TOKEN_FILE '{v}' does not exist")
        return v

    @field_validator("openevse_token_file")
    @classmethod
    def openevse_token_file_must_exist_if_set(cls, v: str) -> str:
        """Validate the OpenEVSE token file when one is configured."""
        if v and not Path(v).is_file():
            raise ValueError(f"OPENEVSE_TOKEN_FILE '{v}' does not exist")
        return v

    @field_validator("poll_interval_s")
    @classmethod
    def poll_interval_must_be_reasonable(cls, v: int) -> int:
        """Minimum 5 seconds; the Envoy updates its meter readings slowly."""
        if v < 5:
            raise ValueError("POLL_INTERVAL_S must be >= 5")
        return v

    @field_validator("min_current_a")
    @classmethod
    def min_current_must_be_positive(cls, v: int) -> int:
        """Validate the EVSE minimum current is positive."""
        if v < 1:
            raise ValueError("MIN_CURRENT_A must be >= 1")
        return v

    @field_validator("max_current_a")
    @classmethod
    def max_current_must_be_valid(cls, v: int) -> int:
        """Validate against the OpenEVSE hardware ceiling of 80 A."""
        if v > 80:
            raise ValueError("MAX_CURRENT_A must be <= 80")
        return v

    @field_validator("current_step_a", "voltage_v", "request_timeout_s")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        """Validate strictly positive floats."""
        if v <= 0:
            raise ValueError("value must be > 0")
        return v

    @field_validator("target_export_current_a", "retry_delay_s")
    @classmethod
    def must_be_non_negative(cls, v: float) -> float:
        """Validate non-negative floats."""
        if v < 0:
            raise ValueError("value must be >= 0")
        return v

    @field_validator("debounce_cycles", "apply_failure_alert_cycles")
    @classmethod
    def cycles_must_be_at_least_one(cls, v: int) -> int:
        """Validate cycle counts."""
        if v < 1:
            raise ValueError("cycle count must be >= 1")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def retry_attempts_must_be_bounded(cls, v: int) -> int:
        """Retries happen inside one cycle, so keep them few."""
        if v < 0 or v > 10:
            raise ValueError("RETRY_ATTEMPTS must be between 0 and 10")
        return v

    @field_validator("mqtt_port")
    @classmethod
    def mqtt_port_must_be_valid(cls, v: int) -> int:
        """Validate MQTT port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("MQTT_PORT must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def _check_ranges(self) -> "ChargerSettings":
        """Validate cross-field ranges."""
        if self.max_current_a < self.min_current_a:
            raise ValueError("MAX_CURRENT_A must be >= MIN_CURRENT_A")
        if self.min_sample_interval_s <= 0:
            raise ValueError("MIN_SAMPLE_INTERVAL_S must be > 0")
        if self.max_sample_interval_s <= self.min_sample_interval_s:
            raise ValueError("MAX_SAMPLE_INTERVAL_S must be > MIN_SAMPLE_INTERVAL_S")
        # Readings are one poll apart; a shorter window rejects every sample.
        if self.max_sample_interval_s < self.poll_interval_s:
            raise ValueError("MAX_SAMPLE_INTERVAL_S must be >= POLL_INTERVAL_S")
        return self

    def load_envoy_token(self) -> str:
        """Return the Envoy JWT from ``envoy_token_file``."""
        return read_token_file(self.envoy_token_file)

    def load_openevse_token(self) -> str | None:
        """Return the OpenEVSE auth string, or None when auth is not used."""
        if not self.openevse_token_file:
            return None
        return read_token_file(self.openevse_token_file)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True}
