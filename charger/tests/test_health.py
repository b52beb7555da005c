"""
Unit tests for the charger health writer module.

Tests verify:
- record_cycle() writes last_cycle_ts and charge_state.
- record_apply() sets last_apply_ts and clears the failure count.
- set_apply_failures() updates consecutive_apply_failures.
- The health file always contains all four fields.

CHANGELOG:
- 2026-03-07: Initial creation (STORY-111)

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path

from charger.src.health import HealthWriter
from charger.src.models import ChargeState

_FIELDS = {"last_cycle_ts", "last_apply_ts", "charge_state", "consecutive_apply_failures"}


def _read(path: Path) -> dict:
    return json.loads(path.read_text())


class TestRecordCycle:
    """record_cycle() marks liveness and the controller state."""

    def test_writes_cycle_timestamp_and_state(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)

        writer.record_cycle(ChargeState.CHARGING)

        data = _read(health_path)
        assert set(data) == _FIELDS
        assert "T" in data["last_cycle_ts"]
        assert data["charge_state"] == "charging"
        assert data["last_apply_ts"] is None
        assert data["consecutive_apply_failures"] == 0

    def test_accepts_str_path(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        HealthWriter(str(health_path)).record_cycle(ChargeState.OFF)
        assert _read(health_path)["charge_state"] == "off"


class TestApplyTracking:
    """Apply success and failure are both reflected in the file."""

    def test_failures_counted(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)

        writer.set_apply_failures(3)

        assert _read(health_path)["consecutive_apply_failures"] == 3

    def test_record_apply_resets_failures(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)
        writer.set_apply_failures(4)

        writer.record_apply()

        data = _read(health_path)
        assert data["consecutive_apply_failures"] == 0
        assert data["last_apply_ts"] is not None

    def test_fields_preserved_across_updates(self, tmp_path: Path) -> None:
        health_path = tmp_path / "health.json"
        writer = HealthWriter(health_path)

        writer.record_cycle(ChargeState.CHARGING)
        writer.record_apply()
        writer.set_apply_failures(1)

        data = _read(health_path)
        assert data["charge_state"] == "charging"
        assert data["last_cycle_ts"] is not None
        assert data["last_apply_ts"] is not None
        assert data["consecutive_apply_failures"] == 1
