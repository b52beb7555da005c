"""
Enphase Envoy meter client.

Reads the lifetime energy counters of the Envoy's net-consumption CT over the
local HTTPS API (bearer JWT auth) and returns them as a MeterReading:

- ``GET /ivp/meters`` lists the meters; the one with
  ``measurementType == "net-consumption"`` is the grid CT. Its EID is
  cached after the first lookup.
- ``GET /ivp/meters/readings`` returns per-meter counters; for the grid CT
  ``actEnergyDlvd`` is energy imported from the grid and ``actEnergyRcvd``
  is energy exported to it, both in Wh, stamped with ``timestamp`` in epoch
  seconds.

Every transport or parsing problem is raised as a FetchError; no httpx
exception escapes this module.

CHANGELOG:
- 2026-03-08: Rediscover the meter EID when it disappears from readings
- 2026-03-03: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import ValidationError

from charger.src.errors import FetchError, FetchErrorKind
from charger.src.models import MeterReading

logger = logging.getLogger(__name__)

NET_CONSUMPTION = "net-consumption"
"""measurementType of the Envoy's grid (net) CT."""

DEFAULT_TIMEOUT_S: float = 10.0


# ---------------------------------------------------------------------------
# Pure parsing helpers
# ---------------------------------------------------------------------------


def find_net_consumption_eid(meters: Any) -> int:
    """Return the EID of the enabled net-consumption meter.

    Args:
        meters: Decoded JSON body of ``/ivp/meters``.

    Raises:
        FetchError: MALFORMED_RESPONSE when no such meter is listed.
    """
    if not isinstance(meters, list):
        raise FetchError(FetchErrorKind.MALFORMED_RESPONSE, "meter list is not a list")
    for meter in meters:
        if not isinstance(meter, dict):
            continue
        if meter.get("measurementType") != NET_CONSUMPTION:
            continue
        if meter.get("state", "enabled") != "enabled":
            continue
        eid = meter.get("eid")
        if isinstance(eid, int):
            return eid
    raise FetchError(FetchErrorKind.MALFORMED_RESPONSE, "no net-consumption meter found")


def parse_reading(readings: Any, eid: int) -> MeterReading:
    """Build a MeterReading from the ``/ivp/meters/readings`` body.

    Args:
        readings: Decoded JSON body of ``/ivp/meters/readings``.
        eid: EID of the net-consumption meter.

    Raises:
        FetchError: MALFORMED_RESPONSE when the meter is missing or its
            fields are absent or invalid.
    """
    if not isinstance(readings, list):
        raise FetchError(FetchErrorKind.MALFORMED_RESPONSE, "readings is not a list")
    entry = next(
        (r for r in readings if isinstance(r, dict) and r.get("eid") == eid),
        None,
    )
    if entry is None:
        raise FetchError(
            FetchErrorKind.MALFORMED_RESPONSE, f"no reading for meter eid={eid}"
        )
    try:
        return MeterReading(
            timestamp=datetime.fromtimestamp(entry["timestamp"], tz=UTC),
            energy_imported_wh=entry["actEnergyDlvd"],
            energy_exported_wh=entry["actEnergyRcvd"],
        )
    except (KeyError, TypeError, ValueError, OverflowError, ValidationError) as exc:
        raise FetchError(
            FetchErrorKind.MALFORMED_RESPONSE, f"bad reading for eid={eid}: {exc}"
        ) from exc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class EnvoyMeter:
    """Envoy local-API client returning cumulative grid energy.

    The Envoy serves a self-signed certificate, so TLS verification is
    disabled for this LAN-only connection.

    Args:
        host: Envoy hostname or IP address.
        token: Envoy local-API JWT.
        timeout_s: Timeout per HTTP request.
    """

    def __init__(
        self,
        *,
        host: str,
        token: str,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._base_url = f"https://{host}"
        self._token = token
        self._timeout_s = timeout_s
        self._eid: int | None = None

    async def fetch(self) -> MeterReading:
        """Read the net-consumption meter's lifetime counters.

        Raises:
            FetchError: On timeout, connection failure, non-200 status, or a
                body that cannot be parsed.
        """
        if self._eid is None:
            self._eid = find_net_consumption_eid(await self._get_json("/ivp/meters"))
            logger.info("Using net-consumption meter eid=%d", self._eid)

        readings = await self._get_json("/ivp/meters/readings")
        try:
            return parse_reading(readings, self._eid)
        except FetchError:
            # Meter may have been reconfigured; look it up again next time.
            self._eid = None
            raise

    async def _get_json(self, path: str) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(
                verify=False, timeout=self._timeout_s
            ) as client:
                response = await client.get(
                    url,
                    headers={"Authorization": f"Bearer {self._token}"},
                )
        except httpx.TimeoutException as exc:
            raise FetchError(FetchErrorKind.TIMEOUT, f"GET {path}: {exc}") from exc
        except httpx.TransportError as exc:
            raise FetchError(FetchErrorKind.UNREACHABLE, f"GET {path}: {exc}") from exc

        if response.status_code != 200:
            raise FetchError(
                FetchErrorKind.UNREACHABLE,
                f"GET {path}: HTTP {response.status_code}",
            )
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(
                FetchErrorKind.MALFORMED_RESPONSE, f"GET {path}: invalid JSON"
            ) from exc
