"""
OpenEVSE client speaking RAPI over the WiFi module's HTTP endpoint.

Each RAPI command is sent as ``GET http://<host>/r?json=1&rapi=$<CMD> <args>``
and answered with JSON such as ``{"cmd": "$GE", "ret": "$OK 30 0121^21"}``.
The reply starts with ``$OK`` or ``$NK``, followed by space-separated values
and an optional ``^xx`` checksum.

Commands used:

- ``$SC <amps> V``: set the charge current limit without writing EEPROM.
- ``$FE``: enable the EVSE (leave sleep).
- ``$FS``: put the EVSE to sleep (stop charging).
- ``$GS``: get EVSE state and session elapsed seconds.
- ``$GE``: get the current capacity and flags.

CHANGELOG:
- 2026-03-12: Guard enabled commands without a current (STORY-114)
- 2026-03-05: Add status() for telemetry (STORY-109)
- 2026-03-03: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import logging
import re

import httpx

from charger.src.errors import ApplyError, ApplyErrorKind, FetchError, FetchErrorKind
from charger.src.models import EvseCommand, EvseStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S: float = 10.0

_REPLY_RE = re.compile(r"^\$(?P<body>[^^]*)(?:\^[0-9A-Fa-f]{2})?\s*$")

EVSE_STATES: dict[int, str] = {
    1: "not_connected",
    2: "connected",
    3: "charging",
    4: "vent_required",
    5: "diode_check_failed",
    6: "gfci_fault",
    7: "no_ground",
    8: "stuck_relay",
    9: "gfci_self_test_failed",
    10: "over_temperature",
    11: "over_current",
    254: "sleeping",
    255: "disabled",
}
"""RAPI ``$GS`` state codes."""


class RapiReply:
    """Parsed RAPI reply.

    Attributes:
        ok: True for ``$OK``, False for ``$NK``.
        values: Tokens following the status word.
        raw: The reply string as received.
    """

    __slots__ = ("ok", "values", "raw")

    def __init__(self, ok: bool, values: list[str], raw: str) -> None:
        self.ok = ok
        self.values = values
        self.raw = raw


def parse_reply(ret: str) -> RapiReply | None:
    """Parse a RAPI reply string, or return None if it is not one."""
    match = _REPLY_RE.match(ret.strip())
    if match is None:
        return None
    tokens = match.group("body").split()
    if not tokens or tokens[0] not in ("OK", "NK"):
        return None
    return RapiReply(ok=tokens[0] == "OK", values=tokens[1:], raw=ret)


def format_amps(amps: float) -> str:
    """RAPI takes whole amps; truncation never rounds up."""
    return str(int(amps))


class OpenEvse:
    """OpenEVSE RAPI-over-HTTP client.

    Args:
        host: OpenEVSE hostname or IP address.
        auth_token: HTTP Basic auth string (base64 ``user:password``), or
            None when the WiFi module has no auth configured.
        timeout_s: Timeout per HTTP request.
    """

    def __init__(
        self,
        *,
        host: str,
        auth_token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self._url = f"http://{host}/r"
        self._auth_token = auth_token
        self._timeout_s = timeout_s

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def apply(self, command: EvseCommand) -> None:
        """Send a command to the EVSE.

        Enabled commands set the current limit first and then wake the EVSE,
        so it never charges at a stale limit. Disabled commands put it to
        sleep.

        Raises:
            ApplyError: TIMEOUT or UNREACHABLE on transport failure,
                REJECTED when the EVSE answers ``$NK`` or garbage.
        """
        if command.enabled:
            if command.charge_current_amps is None:
                raise ValueError("enabled EVSE command has no charge current")
            await self._command("SC", format_amps(command.charge_current_amps), "V")
            await self._command("FE")
        else:
            await self._command("FS")
        logger.debug("Applied EVSE command %s", command)

    async def status(self) -> EvseStatus:
        """Query EVSE state and configured current capacity.

        Raises:
            FetchError: On transport failure or an unusable reply.
        """
        state_reply = await self._query("GS")
        capacity_reply = await self._query("GE")
        try:
            state_code = int(state_reply.values[0])
            elapsed = int(state_reply.values[1]) if len(state_reply.values) > 1 else None
            capacity = int(capacity_reply.values[0])
        except (IndexError, ValueError) as exc:
            raise FetchError(
                FetchErrorKind.MALFORMED_RESPONSE,
                f"bad status reply: {state_reply.raw!r} / {capacity_reply.raw!r}",
            ) from exc
        return EvseStatus(
            state_code=state_code,
            state_name=EVSE_STATES.get(state_code, "unknown"),
            elapsed_seconds=elapsed,
            current_capacity_amps=capacity,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _command(self, cmd: str, *args: str) -> RapiReply:
        """Send a control command, translating failures to ApplyError."""
        try:
            reply = await self._request(cmd, *args)
        except httpx.TimeoutException as exc:
            raise ApplyError(ApplyErrorKind.TIMEOUT, f"${cmd}: {exc}") from exc
        except httpx.TransportError as exc:
            raise ApplyError(ApplyErrorKind.UNREACHABLE, f"${cmd}: {exc}") from exc
        except _BadStatus as exc:
            raise ApplyError(ApplyErrorKind.UNREACHABLE, str(exc)) from exc
        except _BadReply as exc:
            raise ApplyError(ApplyErrorKind.REJECTED, str(exc)) from exc
        if not reply.ok:
            raise ApplyError(ApplyErrorKind.REJECTED, f"${cmd} {' '.join(args)}: {reply.raw}")
        return reply

    async def _query(self, cmd: str) -> RapiReply:
        """Send a read command, translating failures to FetchError."""
        try:
            reply = await self._request(cmd)
        except httpx.TimeoutException as exc:
            raise FetchError(FetchErrorKind.TIMEOUT, f"${cmd}: {exc}") from exc
        except httpx.TransportError as exc:
            raise FetchError(FetchErrorKind.UNREACHABLE, f"${cmd}: {exc}") from exc
        except _BadStatus as exc:
            raise FetchError(FetchErrorKind.UNREACHABLE, str(exc)) from exc
        except _BadReply as exc:
            raise FetchError(FetchErrorKind.MALFORMED_RESPONSE, str(exc)) from exc
        if not reply.ok:
            raise FetchError(FetchErrorKind.MALFORMED_RESPONSE, f"${cmd}: {reply.raw}")
        return reply

    async def _request(self, cmd: str, *args: str) -> RapiReply:
        rapi = " ".join(("$" + cmd, *args))
        headers: dict[str, str] = {}
        if self._auth_token:
            headers["Authorization"] = f"Basic {self._auth_token}"

        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            response = await client.get(
                self._url,
                params={"json": "1", "rapi": rapi},
                headers=headers,
            )

        if response.status_code != 200:
            raise _BadStatus(f"{rapi}: HTTP {response.status_code}")
        try:
            ret = response.json()["ret"]
        except (ValueError, KeyError, TypeError) as exc:
            raise _BadReply(f"{rapi}: reply has no 'ret' field") from exc
        reply = parse_reply(ret) if isinstance(ret, str) else None
        if reply is None:
            raise _BadReply(f"{rapi}: unparseable reply {ret!r}")
        return reply


class _BadReply(Exception):
    """The EVSE answered, but not with a RAPI reply."""


class _BadStatus(Exception):
    """The WiFi module answered with a non-200 HTTP status."""
