"""
dm-tool bus client: the LightDM D-Bus objects and how we talk to them.

Objects:
    /org/freedesktop/DisplayManager      org.freedesktop.DisplayManager
    $XDG_SEAT_PATH                       org.freedesktop.DisplayManager.Seat
"""

from __future__ import annotations

import os
import re
from typing import Any

from sdbus import (
    DbusInterfaceCommonAsync,
    SdBusBaseError,
    dbus_method_async,
    sd_bus_open_system,
    sd_bus_open_user,
)

from dm_tool_log import log

# ============================================================================
# Constants
# ============================================================================

DBUS_NAME = "org.freedesktop.DisplayManager"
DBUS_PATH = "/org/freedesktop/DisplayManager"
SEAT_INTERFACE = "org.freedesktop.DisplayManager.Seat"
SEAT_PATH_ENV = "XDG_SEAT_PATH"

OBJECT_PATH_RE = re.compile(r"^/$|^(/[A-Za-z0-9_]+)+$")


# ============================================================================
# Errors
# ============================================================================

class DMToolError(Exception):
    """Failure reported to the operator as a single stderr line."""


class BusConnectionError(DMToolError):
    def __init__(self, reason: str):
        super().__init__(f"Unable to contact display manager: {reason}")
        self.reason = reason


class DisplayManagerError(DMToolError):
    """A method call came back with a D-Bus error."""

    def __init__(self, action: str, reason: str):
        super().__init__(f"Unable to {action}: {reason}")
        self.action = action
        self.reason = reason


class UnexpectedReplyError(DMToolError):
    """A reply did not have the signature the method promises."""

    def __init__(self, method: str, signature: str):
        super().__init__(f"Unexpected response to {method}: {signature}")
        self.method = method
        self.signature = signature


def describe_error(exc: BaseException) -> str:
    """Human-readable reason carried by an sdbus (or OS) error.

    Unmapped D-Bus errors carry (error_name, message); mapped ones and
    OSError put the message last too.
    """
    texts = [arg for arg in exc.args if isinstance(arg, str) and arg]
    if texts:
        return texts[-1]
    return str(exc) or type(exc).__name__


# ============================================================================
# Reply signatures
# ============================================================================

def is_object_path(value: Any) -> bool:
    return isinstance(value, str) and OBJECT_PATH_RE.match(value) is not None


def signature_of(value: Any) -> str:
    """Best-effort D-Bus signature for an unpacked sdbus value.

    Approximate: sdbus hands back plain Python types, so the wire type is
    guessed. Integers get the narrowest of i, u, x, t that holds them and
    path-shaped strings are reported as o.
    """
    if isinstance(value, bool):
        return "b"
    if isinstance(value, int):
        if -2**31 <= value < 2**31:
            return "i"
        if 0 <= value < 2**32:
            return "u"
        if -2**63 <= value < 2**63:
            return "x"
        return "t"
    if isinstance(value, float):
        return "d"
    if isinstance(value, bytes):
        return "ay"
    if isinstance(value, str):
        return "o" if is_object_path(value) else "s"
    if isinstance(value, tuple):
        return "(" + "".join(signature_of(v) for v in value) + ")"
    if isinstance(value, dict):
        if not value:
            return "a{sv}"
        key, item = next(iter(value.items()))
        return "a{" + signature_of(key) + signature_of(item) + "}"
    if isinstance(value, list):
        return "a" + (signature_of(value[0]) if value else "v")
    return "v"


def reply_signature(reply: Any) -> str:
    """Signature of a whole reply, written as a tuple like GVariant does."""
    if reply is None:
        return "()"
    if isinstance(reply, tuple):
        return signature_of(reply)
    return f"({signature_of(reply)})"


# ============================================================================
# D-Bus interfaces
# ============================================================================

class DisplayManagerInterface(DbusInterfaceCommonAsync, interface_name=DBUS_NAME):
    @dbus_method_async("sa(ss)", "o", method_name="AddSeat")
    async def add_seat(self, seat_type: str, properties: list[tuple[str, str]]) -> str: ...


class SeatInterface(DbusInterfaceCommonAsync, interface_name=SEAT_INTERFACE):
    @dbus_method_async("", "", method_name="SwitchToGreeter")
    async def switch_to_greeter(self) -> None: ...

    @dbus_method_async("ss", "", method_name="SwitchToUser")
    async def switch_to_user(self, username: str, session: str) -> None: ...

    @dbus_method_async("s", "", method_name="SwitchToGuest")
    async def switch_to_guest(self, session: str) -> None: ...


# ============================================================================
# Client
# ============================================================================

class DisplayManagerClient:
    """Manager and seat proxies for one invocation."""

    def __init__(self, manager: DisplayManagerInterface, seat: SeatInterface | None = None):
        self.manager = manager
        self.seat = seat

    @classmethod
    def connect(cls, session_bus: bool = False, seat_path: str | None = None) -> "DisplayManagerClient":
        """Open the bus and build both proxies.

        seat_path defaults to $XDG_SEAT_PATH. When that is unset the seat
        proxy stays None and only the seat methods fail.
        """
        if seat_path is None:
            seat_path = os.environ.get(SEAT_PATH_ENV)

        bus_name = "session" if session_bus else "system"
        try:
            bus = sd_bus_open_user() if session_bus else sd_bus_open_system()
            manager = DisplayManagerInterface.new_proxy(DBUS_NAME, DBUS_PATH, bus)
            seat = None
            if seat_path:
                if not is_object_path(seat_path):
                    raise BusConnectionError(f"invalid seat path {seat_path!r}")
                seat = SeatInterface.new_proxy(DBUS_NAME, seat_path, bus)
        except (SdBusBaseError, OSError) as e:
            raise BusConnectionError(describe_error(e)) from e

        log("BUS", {"event": "connected", "bus": bus_name, "seat": seat_path})
        return cls(manager, seat)

    def _require_seat(self) -> SeatInterface:
        if self.seat is None:
            raise BusConnectionError(f"{SEAT_PATH_ENV} is not set")
        return self.seat

    async def _call(self, member: str, action: str, method, *args) -> Any:
        log("BUS", {"call": member, "args": list(args)})
        try:
            reply = await method(*args)
        except SdBusBaseError as e:
            log("BUS", {"call": member, "error": describe_error(e)})
            raise DisplayManagerError(action, describe_error(e)) from e
        log("BUS", {"call": member, "reply": reply})
        return reply

    async def switch_to_greeter(self):
        seat = self._require_seat()
        await self._call("SwitchToGreeter", "switch to greeter", seat.switch_to_greeter)

    async def switch_to_user(self, username: str, session: str = ""):
        seat = self._require_seat()
        await self._call(
            "SwitchToUser", f"switch to user {username}",
            seat.switch_to_user, username, session,
        )

    async def switch_to_guest(self, session: str = ""):
        seat = self._require_seat()
        await self._call("SwitchToGuest", "switch to guest", seat.switch_to_guest, session)

    async def add_seat(self, seat_type: str, properties: list[tuple[str, str]]) -> str:
        """Ask the daemon for a dynamic seat; returns its object path."""
        reply = await self._call("AddSeat", "add seat", self.manager.add_seat, seat_type, properties)
        # sdbus unpacks by the reply's own signature and hides it, so only
        # the value's shape is checked: an (s) reply holding a valid path
        # passes as (o).
        if not is_object_path(reply):
            raise UnexpectedReplyError("AddSeat", reply_signature(reply))
        return reply
