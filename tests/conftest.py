"""Shared fixtures: mocked sdbus proxies and the anyio backend."""

import pytest
from unittest.mock import AsyncMock

import dm_tool_log
from dm_tool_bus import DisplayManagerClient

SEAT_PATH = "/org/freedesktop/DisplayManager/Seat1"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def manager() -> AsyncMock:
    """Manager proxy whose AddSeat returns SEAT_PATH."""
    proxy = AsyncMock()
    proxy.add_seat.return_value = SEAT_PATH
    return proxy


@pytest.fixture
def seat() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def client(manager, seat) -> DisplayManagerClient:
    return DisplayManagerClient(manager, seat)


@pytest.fixture(autouse=True)
def reset_debug():
    yield
    dm_tool_log.set_debug(False)
