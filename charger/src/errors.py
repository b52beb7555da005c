"""
Error taxonomy for the surplus charger.

Peripheral clients translate transport exceptions into FetchError / ApplyError
at their boundary so the scheduler only ever deals with these types. The rate
estimator raises RateError subclasses for data anomalies.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

from enum import StrEnum


class FetchErrorKind(StrEnum):
    """Why a read from a peripheral failed."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    MALFORMED_RESPONSE = "malformed_response"


class ApplyErrorKind(StrEnum):
    """Why a command to the EVSE failed."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"


class FetchError(Exception):
    """A peripheral read failed.

    Args:
        kind: Failure category.
        message: Human-readable detail for logs.
    """

    def __init__(self, kind: FetchErrorKind, message: str = "") -> None:
        super().__init__(f"{kind}: {message}" if message else str(kind))
        self.kind = kind

    @property
    def transient(self) -> bool:
        """True when an immediate retry might succeed."""
        return self.kind in (FetchErrorKind.TIMEOUT, FetchErrorKind.UNREACHABLE)


class ApplyError(Exception):
    """The EVSE did not accept a command.

    Args:
        kind: Failure category.
        reason: Detail for logs; for REJECTED this is the EVSE's reply.
    """

    def __init__(self, kind: ApplyErrorKind, reason: str = "") -> None:
        super().__init__(f"{kind}: {reason}" if reason else str(kind))
        self.kind = kind
        self.reason = reason

    @property
    def transient(self) -> bool:
        """True when an immediate retry might succeed.

        A rejection is deterministic for the same setpoint, so it waits for
        the next cycle's re-clamped value instead.
        """
        return self.kind in (ApplyErrorKind.TIMEOUT, ApplyErrorKind.UNREACHABLE)


class RateError(Exception):
    """Two meter readings cannot be turned into a power sample."""


class NonMonotonicError(RateError):
    """Timestamp or an energy counter went backwards (meter reset, clock skew)."""


class IntervalTooShortError(RateError):
    """Readings are too close together to give a stable average."""


class IntervalTooLongError(RateError):
    """Readings are too far apart; the average would be stale."""
