"""
dm-tool nested seats: run Xephyr and register it as an xremote seat.

Flow:
    1. pick the first display number without a /tmp/.X<n>-lock file
    2. listen for SIGUSR1, then spawn `Xephyr :<n>` with SIGUSR1 ignored
    3. Xephyr sends SIGUSR1 to its parent once it accepts connections
    4. AddSeat("xremote", [("xserver-display-number", "<n>")])

Xephyr is left running on success; on any failure after the spawn it
gets SIGQUIT.
"""

from __future__ import annotations

import itertools
import os
import shlex
import shutil
import signal
import subprocess
from dataclasses import dataclass

import anyio

from dm_tool_bus import DMToolError, DisplayManagerClient
from dm_tool_log import log

# ============================================================================
# Constants
# ============================================================================

XEPHYR = "Xephyr"
LOCK_FILE_TEMPLATE = "/tmp/.X{}-lock"
NESTED_SEAT_TYPE = "xremote"
DISPLAY_NUMBER_PROPERTY = "xserver-display-number"
READY_SIGNAL = signal.SIGUSR1
STOP_SIGNAL = signal.SIGQUIT


class NestedSeatError(DMToolError):
    """Xephyr could not be found, started, or never became ready."""


# ============================================================================
# Display numbers
# ============================================================================

def find_free_display_number(lock_template: str = LOCK_FILE_TEMPLATE) -> int:
    """First display number with no X lock file.

    Racy: another server may take the number before Xephyr locks it.
    """
    for number in itertools.count():
        if not os.path.exists(lock_template.format(number)):
            return number


# ============================================================================
# Process
# ============================================================================

def _ignore_ready_signal():
    # Runs in the child between fork and exec.
    signal.signal(READY_SIGNAL, signal.SIG_IGN)


@dataclass
class NestedDisplay:
    """A Xephyr child and what we know about it.

    Used as a context manager: leaving the block with an exception stops
    the child.
    """
    number: int
    process: subprocess.Popen | None = None
    ready: bool = False
    seat_path: str | None = None

    @property
    def display(self) -> str:
        return f":{self.number}"

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def start(self, program: str = XEPHYR):
        """Spawn the server. Not reaped: it outlives us on success."""
        argv = shlex.split(f"{program} {self.display}")
        try:
            self.process = subprocess.Popen(
                argv,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                preexec_fn=_ignore_ready_signal,
            )
        except (OSError, subprocess.SubprocessError) as e:
            reason = getattr(e, "strerror", None) or str(e)
            raise NestedSeatError(f"Error running {program}: {reason}") from e
        log("XEPHYR", {"event": "spawned", "argv": argv, "pid": self.process.pid})

    def stop(self):
        """Send SIGQUIT if the child is still running."""
        if self.process is None or self.process.poll() is not None:
            return
        self.process.send_signal(STOP_SIGNAL)
        log("XEPHYR", {"event": "stopped", "pid": self.process.pid})

    def detach(self):
        """Give up the child: it keeps running and we never wait for it.

        Marks the Popen finished so collecting it at exit neither warns
        about a running subprocess nor queues it for reaping.
        """
        if self.process is None or self.process.returncode is not None:
            return
        self.process.returncode = 0
        log("XEPHYR", {"event": "detached", "pid": self.process.pid})

    def __enter__(self) -> "NestedDisplay":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.stop()
        return False


# ============================================================================
# Readiness
# ============================================================================

async def wait_until_ready(nested: NestedDisplay, signals) -> None:
    """Consume signals until Xephyr reports readiness.

    `signals` is an anyio signal receiver opened before the spawn, so a
    SIGUSR1 sent during startup is already queued.
    """
    async for signum in signals:
        if signum == READY_SIGNAL:
            nested.ready = True
            log("XEPHYR", {"event": "ready", "display": nested.display})
            return
        if signum == signal.SIGCHLD:
            status = nested.process.poll()
            if status is not None:
                log("XEPHYR", {"event": "exited", "status": status})
                raise NestedSeatError(f"Xephyr exited before becoming ready (status {status})")
        else:
            raise NestedSeatError("Interrupted while waiting for Xephyr")


async def add_nested_seat(
    client: DisplayManagerClient,
    program: str = XEPHYR,
    lock_template: str = LOCK_FILE_TEMPLATE,
) -> NestedDisplay:
    """Start Xephyr and register it with the daemon as an xremote seat."""
    if shutil.which(program) is None:
        raise NestedSeatError(f"Unable to find {program}, please install it")

    nested = NestedDisplay(find_free_display_number(lock_template))
    log("XEPHYR", {"event": "allocated", "display": nested.display})

    with anyio.open_signal_receiver(
        READY_SIGNAL, signal.SIGCHLD, signal.SIGINT, signal.SIGTERM
    ) as signals:
        with nested:
            nested.start(program)
            await wait_until_ready(nested, signals)
            nested.seat_path = await client.add_seat(
                NESTED_SEAT_TYPE,
                [(DISPLAY_NUMBER_PROPERTY, str(nested.number))],
            )
    return nested
