"""Unit tests for the D-Bus client: connecting, calls and reply checks."""

import pytest
from unittest.mock import MagicMock

from sdbus import DbusFailedError

import dm_tool_bus
from dm_tool_bus import (
    DBUS_NAME,
    DBUS_PATH,
    BusConnectionError,
    DisplayManagerClient,
    DisplayManagerError,
    DisplayManagerInterface,
    SeatInterface,
    UnexpectedReplyError,
    describe_error,
    reply_signature,
    signature_of,
)

SEAT0 = "/org/freedesktop/DisplayManager/Seat0"


@pytest.fixture
def buses(monkeypatch):
    """Replace the bus openers and proxy factories with mocks."""
    system = MagicMock(name="system_bus")
    session = MagicMock(name="session_bus")
    monkeypatch.setattr(dm_tool_bus, "sd_bus_open_system", MagicMock(return_value=system))
    monkeypatch.setattr(dm_tool_bus, "sd_bus_open_user", MagicMock(return_value=session))
    manager_proxy = MagicMock(name="manager_proxy")
    seat_proxy = MagicMock(name="seat_proxy")
    monkeypatch.setattr(DisplayManagerInterface, "new_proxy", manager_proxy)
    monkeypatch.setattr(SeatInterface, "new_proxy", seat_proxy)
    return {"system": system, "session": session, "manager": manager_proxy, "seat": seat_proxy}


class TestConnect:

    def test_system_bus_by_default(self, buses, monkeypatch):
        monkeypatch.setenv("XDG_SEAT_PATH", SEAT0)
        client = DisplayManagerClient.connect()
        buses["manager"].assert_called_once_with(DBUS_NAME, DBUS_PATH, buses["system"])
        buses["seat"].assert_called_once_with(DBUS_NAME, SEAT0, buses["system"])
        assert client.manager is buses["manager"].return_value
        assert client.seat is buses["seat"].return_value

    def test_session_bus(self, buses):
        DisplayManagerClient.connect(session_bus=True, seat_path=SEAT0)
        dm_tool_bus.sd_bus_open_system.assert_not_called()
        buses["manager"].assert_called_once_with(DBUS_NAME, DBUS_PATH, buses["session"])
        buses["seat"].assert_called_once_with(DBUS_NAME, SEAT0, buses["session"])

    def test_bus_unavailable(self, buses, monkeypatch):
        monkeypatch.setattr(
            dm_tool_bus, "sd_bus_open_system",
            MagicMock(side_effect=OSError(2, "No such file or directory")),
        )
        with pytest.raises(BusConnectionError) as excinfo:
            DisplayManagerClient.connect(seat_path=SEAT0)
        assert str(excinfo.value) == "Unable to contact display manager: No such file or directory"

    def test_invalid_seat_path(self, buses):
        with pytest.raises(BusConnectionError, match="invalid seat path"):
            DisplayManagerClient.connect(seat_path="Seat0")

    def test_missing_seat_path_only_breaks_seat_calls(self, buses, monkeypatch):
        monkeypatch.delenv("XDG_SEAT_PATH", raising=False)
        client = DisplayManagerClient.connect()
        assert client.seat is None
        buses["seat"].assert_not_called()


class TestCalls:

    @pytest.mark.anyio
    async def test_switch_to_user_defaults_session(self, client, seat):
        await client.switch_to_user("alice")
        seat.switch_to_user.assert_awaited_once_with("alice", "")

    @pytest.mark.anyio
    async def test_seat_call_without_seat(self, manager):
        client = DisplayManagerClient(manager)
        with pytest.raises(BusConnectionError) as excinfo:
            await client.switch_to_greeter()
        assert str(excinfo.value) == "Unable to contact display manager: XDG_SEAT_PATH is not set"

    @pytest.mark.anyio
    async def test_remote_error(self, client, seat):
        seat.switch_to_greeter.side_effect = DbusFailedError("Seat is locked")
        with pytest.raises(DisplayManagerError) as excinfo:
            await client.switch_to_greeter()
        assert str(excinfo.value) == "Unable to switch to greeter: Seat is locked"

    @pytest.mark.anyio
    async def test_add_seat_returns_path(self, client, manager):
        path = await client.add_seat("xremote", [("a", "1"), ("a", "2")])
        assert path == "/org/freedesktop/DisplayManager/Seat1"
        manager.add_seat.assert_awaited_once_with("xremote", [("a", "1"), ("a", "2")])

    @pytest.mark.anyio
    async def test_add_seat_wrong_reply(self, client, manager):
        manager.add_seat.return_value = "not a path"
        with pytest.raises(UnexpectedReplyError) as excinfo:
            await client.add_seat("xremote", [])
        assert excinfo.value.signature == "(s)"

    @pytest.mark.anyio
    async def test_add_seat_accepts_path_shaped_string(self, client, manager):
        # Unpacked replies carry no signature, so a string holding a valid
        # path is indistinguishable from an object path.
        manager.add_seat.return_value = "/a/b"
        assert await client.add_seat("xremote", []) == "/a/b"


class TestReplySignature:

    @pytest.mark.parametrize("reply, signature", [
        (None, "()"),
        ("/org/freedesktop/DisplayManager/Seat1", "(o)"),
        ("Seat1", "(s)"),
        (("x", 1), "(si)"),
        ([("a", "b")], "(a(ss))"),
        ({"k": True}, "(a{sb})"),
        (b"\x00", "(ay)"),
    ])
    def test_signature(self, reply, signature):
        assert reply_signature(reply) == signature

    @pytest.mark.parametrize("value, signature", [
        (0, "i"),
        (-2**31, "i"),
        (2**31 - 1, "i"),
        (2**31, "u"),
        (2**32 - 1, "u"),
        (2**32, "x"),
        (-2**31 - 1, "x"),
        (-2**63, "x"),
        (2**63, "t"),
        (True, "b"),
    ])
    def test_integers_get_narrowest_type(self, value, signature):
        assert signature_of(value) == signature


def test_describe_error_prefers_message():
    assert describe_error(DbusFailedError("boom")) == "boom"
    assert describe_error(OSError(13, "Permission denied")) == "Permission denied"
    assert describe_error(RuntimeError()) == "RuntimeError"
