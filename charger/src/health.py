"""
Health file writer for the surplus charger.

Writes a JSON health file at a configurable path with four fields:
- last_cycle_ts: ISO timestamp of the most recent control cycle.
- last_apply_ts: ISO timestamp of the most recent accepted EVSE command.
- charge_state: Controller state after the last cycle.
- consecutive_apply_failures: Cycles in a row whose EVSE command failed.

The file is overwritten on every state change, providing a simple liveness
signal that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-03-07: Track apply failures and charge state (STORY-111)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes charger health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_cycle_ts: str | None = None
        self._last_apply_ts: str | None = None
        self._charge_state: str | None = None
        self._consecutive_apply_failures: int = 0

    def record_cycle(self, charge_state: str) -> None:
        """Record a completed control cycle and write health file."""
        self._last_cycle_ts = datetime.now(tz=UTC).isoformat()
        self._charge_state = str(charge_state)
        self._write()

    def record_apply(self) -> None:
        """Record an accepted EVSE command and write health file."""
        self._last_apply_ts = datetime.now(tz=UTC).isoformat()
        self._consecutive_apply_failures = 0
        self._write()

    def set_apply_failures(self, count: int) -> None:
        """Update the consecutive apply failure count and write health file.

        Args:
            count: Cycles in a row whose EVSE command failed.
        """
        self._consecutive_apply_failures = count
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_cycle_ts": self._last_cycle_ts,
            "last_apply_ts": self._last_apply_ts,
            "charge_state": self._charge_state,
            "consecutive_apply_failures": self._consecutive_apply_failures,
        }
        self.path.write_text(json.dumps(data))
