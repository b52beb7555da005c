"""
Pydantic models exchanged between the charger components.

MeterReading is produced by the meter client each poll, NetPowerSample by the
rate estimator, EvseCommand by the charge controller, and EvseStatus by the
EVSE client. TelemetryRecord bundles one cycle's outcome for the telemetry
side-channel.

CHANGELOG:
- 2026-03-05: Add EvseStatus and TelemetryRecord (STORY-109)
- 2026-03-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChargeState(StrEnum):
    """The two states of the charge controller."""

    OFF = "off"
    CHARGING = "charging"


class MeterReading(BaseModel):
    """One sample of the meter's cumulative energy counters.

    Attributes:
        timestamp: When the meter took the reading (meter clock).
        energy_imported_wh: Lifetime energy delivered from the grid, Wh.
        energy_exported_wh: Lifetime energy delivered to the grid, Wh.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    energy_imported_wh: float = Field(ge=0)
    energy_exported_wh: float = Field(ge=0)


class NetPowerSample(BaseModel):
    """Average net power over the interval between two readings.

    Attributes:
        average_watts: Positive = net export (surplus), negative = net import.
        interval_seconds: Length of the interval the average covers.
    """

    model_config = ConfigDict(frozen=True)

    average_watts: float
    interval_seconds: float = Field(gt=0)


class EvseCommand(BaseModel):
    """Desired EVSE state.

    ``charge_current_amps`` is required when enabled and must be ``None``
    when disabled.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool
    charge_current_amps: float | None = None

    @model_validator(mode="after")
    def _current_matches_enabled(self) -> EvseCommand:
        if self.enabled and self.charge_current_amps is None:
            raise ValueError("an enabled command needs charge_current_amps")
        if not self.enabled and self.charge_current_amps is not None:
            raise ValueError("a disabled command must not carry charge_current_amps")
        return self

    @classmethod
    def off(cls) -> EvseCommand:
        return cls(enabled=False)

    @classmethod
    def charge(cls, amps: float) -> EvseCommand:
        return cls(enabled=True, charge_current_amps=amps)


class EvseStatus(BaseModel):
    """EVSE status as reported by the controller board.

    Attributes:
        state_code: Raw EVSE state number.
        state_name: Readable name of ``state_code``.
        elapsed_seconds: Duration of the current charging session.
        current_capacity_amps: Currently configured charge current limit.
    """

    state_code: int
    state_name: str
    elapsed_seconds: int | None = None
    current_capacity_amps: int | None = None


class TelemetryRecord(BaseModel):
    """One control cycle, as published on the telemetry side-channel."""

    timestamp: datetime
    average_watts: float
    interval_seconds: float
    available_current_amps: float
    charge_state: ChargeState
    command: EvseCommand
    applied: bool
    error: str | None = None
    evse_status: EvseStatus | None = None
