"""
Charge controller: maps a NetPowerSample to the next EvseCommand.

Two states, OFF and CHARGING. Switching between them needs the condition to
hold for ``debounce_cycles`` consecutive decisions so a passing cloud does
not click the EVSE relay. While CHARGING the current setpoint follows the
surplus every cycle without delay.

Decisions are split into :meth:`ChargeController.propose` (pure) and
:meth:`ChargeController.commit` so the scheduler only advances the debounce
counters once the EVSE actually accepted the command. :meth:`decide` does
both in one call.

CHANGELOG:
- 2026-03-06: Add target export margin and EVSE-on-meter compensation (STORY-112)
- 2026-03-04: Split decide() into propose()/commit() (STORY-108)
- 2026-03-03: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace

from charger.src.models import ChargeState, EvseCommand, NetPowerSample

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ControllerState:
    """State carried between decisions.

    Attributes:
        charge_state: OFF or CHARGING.
        last_commanded: Last command the EVSE accepted.
        consecutive_below_threshold_count: Decisions in a row with less than
            the minimum current available.
        consecutive_above_threshold_count: Decisions in a row with at least
            the minimum current available.
    """

    charge_state: ChargeState = ChargeState.OFF
    last_commanded: EvseCommand = field(default_factory=EvseCommand.off)
    consecutive_below_threshold_count: int = 0
    consecutive_above_threshold_count: int = 0


@dataclass(frozen=True, slots=True)
class Decision:
    """Outcome of :meth:`ChargeController.propose`.

    Attributes:
        command: Command to send to the EVSE.
        available_current_amps: Surplus current the decision was based on.
        previous_state: State the decision was derived from.
        next_state: State to adopt once ``command`` has been applied.
    """

    command: EvseCommand
    available_current_amps: float
    previous_state: ControllerState
    next_state: ControllerState


class ChargeController:
    """Hysteresis state machine for surplus charging.

    Args:
        min_current_a: Lowest current the EVSE can charge at.
        max_current_a: Highest current the EVSE may be commanded.
        voltage_v: Nominal line voltage used to convert watts to amps.
        debounce_cycles: Consecutive decisions needed for an on/off switch.
        current_step_a: EVSE setpoint resolution; setpoints are floored to it.
        target_export_current_a: Current kept in reserve as export.
        evse_load_on_meter: The EVSE draws through the metered circuit, so
            its own commanded current is added back to the surplus while
            charging.
        state: Initial state, defaults to OFF with zeroed counters.
    """

    def __init__(
        self,
        *,
        min_current_a: float,
        max_current_a: float,
        voltage_v: float,
        debounce_cycles: int,
        current_step_a: float = 1.0,
        target_export_current_a: float = 0.0,
        evse_load_on_meter: bool = False,
        state: ControllerState | None = None,
    ) -> None:
        if min_current_a <= 0 or max_current_a < min_current_a:
            raise ValueError(
                f"invalid current range [{min_current_a}, {max_current_a}]"
            )
        if voltage_v <= 0:
            raise ValueError("voltage_v must be > 0")
        if debounce_cycles < 1:
            raise ValueError("debounce_cycles must be >= 1")
        if current_step_a <= 0:
            raise ValueError("current_step_a must be > 0")
        self._min_current_a = min_current_a
        self._max_current_a = max_current_a
        self._voltage_v = voltage_v
        self._debounce_cycles = debounce_cycles
        self._current_step_a = current_step_a
        self._target_export_current_a = target_export_current_a
        self._evse_load_on_meter = evse_load_on_meter
        self._state = state if state is not None else ControllerState()

    @property
    def state(self) -> ControllerState:
        return self._state

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def available_current(self, sample: NetPowerSample) -> float:
        """Surplus current for the EVSE in amps, never negative."""
        amps = sample.average_watts / self._voltage_v
        last = self._state.last_commanded
        if (
            self._evse_load_on_meter
            and self._state.charge_state is ChargeState.CHARGING
            and last.charge_current_amps is not None
        ):
            amps += last.charge_current_amps
        return max(0.0, amps - self._target_export_current_a)

    def setpoint(self, available_current_amps: float) -> float:
        """Floor to the EVSE resolution, then clamp to the allowed range."""
        steps = math.floor(available_current_amps / self._current_step_a)
        floored = steps * self._current_step_a
        return min(max(floored, self._min_current_a), self._max_current_a)

    def propose(self, sample: NetPowerSample) -> Decision:
        """Work out the next command without changing controller state."""
        state = self._state
        available = self.available_current(sample)
        above = available >= self._min_current_a

        if above:
            above_count = state.consecutive_above_threshold_count + 1
            below_count = 0
        else:
            above_count = 0
            below_count = state.consecutive_below_threshold_count + 1

        if state.charge_state is ChargeState.OFF:
            if above and above_count >= self._debounce_cycles:
                command = EvseCommand.charge(self.setpoint(available))
                next_state = ControllerState(ChargeState.CHARGING, command)
            else:
                command = EvseCommand.off()
                next_state = replace(
                    state,
                    last_commanded=command,
                    consecutive_below_threshold_count=below_count,
                    consecutive_above_threshold_count=above_count,
                )
        elif not above and below_count >= self._debounce_cycles:
            command = EvseCommand.off()
            next_state = ControllerState(ChargeState.OFF, command)
        else:
            # Still charging; below threshold this just holds min_current_a.
            command = EvseCommand.charge(self.setpoint(available))
            next_state = replace(
                state,
                last_commanded=command,
                consecutive_below_threshold_count=below_count,
                consecutive_above_threshold_count=above_count,
            )

        return Decision(
            command=command,
            available_current_amps=available,
            previous_state=state,
            next_state=next_state,
        )

    def commit(self, decision: Decision) -> None:
        """Adopt the state of a decision whose command has been applied.

        Raises:
            ValueError: The decision was proposed from a different state.
        """
        if decision.previous_state is not self._state:
            raise ValueError("decision is stale: controller state has changed")
        if decision.next_state.charge_state is not self._state.charge_state:
            logger.info(
                "Charge state %s -> %s (available %.2f A)",
                self._state.charge_state,
                decision.next_state.charge_state,
                decision.available_current_amps,
            )
        self._state = decision.next_state

    def decide(self, sample: NetPowerSample) -> EvseCommand:
        """Propose and commit in one step."""
        decision = self.propose(sample)
        self.commit(decision)
        return decision.command
