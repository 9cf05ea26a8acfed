#!/usr/bin/env python3
"""
dm-tool - Display Manager tool

Usage:
    dm-tool [OPTION...] COMMAND [ARGS...]

    dm-tool switch-to-greeter                   Switch to the greeter
    dm-tool switch-to-user USERNAME [SESSION]   Switch to a user session
    dm-tool switch-to-guest [SESSION]           Switch to a guest session
    dm-tool add-nested-seat                     Start a nested display
    dm-tool add-seat TYPE [NAME=VALUE...]       Add a dynamic seat

Options:
    -h, --help        Show help options
    -v, --version     Show release version
    --session-bus     Use session D-Bus
    --debug           Trace bus calls and Xephyr to stderr
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import Callable

from dm_tool_bus import DMToolError, DisplayManagerClient
from dm_tool_log import emit, eprint, log, set_debug
from dm_tool_nested import add_nested_seat

__version__ = "1.4.0"

# ============================================================================
# Constants
# ============================================================================

PROG = "dm-tool"
USAGE_HINT = f"Run '{PROG} --help' to see a full list of available command line options."

EXIT_OPTIONS = ("-h", "--help", "-v", "--version")
OPTIONS = EXIT_OPTIONS + ("--session-bus", "--debug")


@dataclass(frozen=True)
class CommandSpec:
    name: str
    synopsis: str
    description: str
    min_args: int
    max_args: int | None = None

    @property
    def usage(self) -> str:
        return f"{self.name} {self.synopsis}".rstrip()

    def accepts(self, count: int) -> bool:
        if count < self.min_args:
            return False
        return self.max_args is None or count <= self.max_args


COMMANDS = {
    spec.name: spec
    for spec in (
        CommandSpec("switch-to-greeter", "", "Switch to the greeter", 0, 0),
        CommandSpec("switch-to-user", "USERNAME [SESSION]", "Switch to a user session", 1, 2),
        CommandSpec("switch-to-guest", "[SESSION]", "Switch to a guest session", 0, 1),
        CommandSpec("add-nested-seat", "", "Start a nested display", 0, 0),
        CommandSpec("add-seat", "TYPE [NAME=VALUE...]", "Add a dynamic seat", 1),
    )
}


def help_text() -> str:
    lines = [
        "Usage:",
        f"  {PROG} [OPTION...] COMMAND [ARGS...] - Display Manager tool",
        "",
        "Options:",
        "  -h, --help        Show help options",
        "  -v, --version     Show release version",
        "  --session-bus     Use session D-Bus",
        "  --debug           Trace bus calls and Xephyr to stderr",
        "",
        "Commands:",
    ]
    for spec in COMMANDS.values():
        lines.append(f"  {spec.usage:<36}{spec.description}")
    return "\n".join(lines)


class UsageError(DMToolError):
    """Bad command line; reported with the --help hint."""


# ============================================================================
# Seat properties
# ============================================================================

def parse_seat_properties(tokens: list[str]) -> list[tuple[str, str]]:
    """NAME=VALUE tokens to (name, value) pairs, in order.

    Split at the first '='; a token without one has an empty value.
    """
    properties = []
    for token in tokens:
        name, _, value = token.partition("=")
        properties.append((name, value))
    return properties


# ============================================================================
# Command line
# ============================================================================

class _Parser(argparse.ArgumentParser):
    def error(self, message: str):
        raise UsageError(message)


class _HelpAction(argparse.Action):
    def __init__(self, option_strings, dest, **kwargs):
        super().__init__(option_strings, dest, nargs=0, default=argparse.SUPPRESS, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        eprint(help_text())
        parser.exit(0)


class _VersionAction(argparse.Action):
    def __init__(self, option_strings, dest, **kwargs):
        super().__init__(option_strings, dest, nargs=0, default=argparse.SUPPRESS, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        # Not translated so it can be parsed
        eprint(f"lightdm {__version__}")
        parser.exit(0)


def build_parser() -> argparse.ArgumentParser:
    """Parser for the leading options only; the command is split off first."""
    parser = _Parser(prog=PROG, add_help=False, allow_abbrev=False)
    parser.add_argument("-h", "--help", action=_HelpAction)
    parser.add_argument("-v", "--version", action=_VersionAction)
    parser.add_argument("--session-bus", action="store_true")
    parser.add_argument("--debug", action="store_true")
    return parser


def split_command_line(argv: list[str]) -> tuple[list[str], list[str]]:
    """Leading '-' tokens, then the command and everything after it."""
    index = 0
    while index < len(argv) and argv[index].startswith("-"):
        index += 1
    return argv[:index], argv[index:]


def parse_command_line(argv: list[str] | None = None) -> tuple[argparse.Namespace, CommandSpec, list[str]]:
    """Split argv into options, one command and its positionals.

    Options come before the command; everything after it is positional.
    They are checked left to right, so an unknown option in front of
    --help or --version is reported instead of running them.
    """
    if argv is None:
        argv = sys.argv[1:]
    option_args, rest = split_command_line(list(argv))

    for arg in option_args:
        if arg in EXIT_OPTIONS:
            break
        if arg not in OPTIONS:
            raise UsageError(f"Unknown option {arg}")
    options = build_parser().parse_args(option_args)

    if not rest:
        raise UsageError("Missing command")
    command, args = rest[0], rest[1:]
    spec = COMMANDS.get(command)
    if spec is None:
        raise UsageError(f"Unknown command {command}")
    if not spec.accepts(len(args)):
        raise UsageError(f"Usage {spec.usage}")
    options.command = command
    options.args = args
    return options, spec, args


# ============================================================================
# Commands
# ============================================================================

async def cmd_switch_to_greeter(client: DisplayManagerClient, args: list[str]):
    await client.switch_to_greeter()


async def cmd_switch_to_user(client: DisplayManagerClient, args: list[str]):
    username = args[0]
    session = args[1] if len(args) > 1 else ""
    await client.switch_to_user(username, session)


async def cmd_switch_to_guest(client: DisplayManagerClient, args: list[str]):
    await client.switch_to_guest(args[0] if args else "")


async def cmd_add_nested_seat(client: DisplayManagerClient, args: list[str]):
    nested = await add_nested_seat(client)
    nested.detach()
    emit(nested.seat_path)


async def cmd_add_seat(client: DisplayManagerClient, args: list[str]):
    seat_type = args[0]
    path = await client.add_seat(seat_type, parse_seat_properties(args[1:]))
    emit(path)


HANDLERS = {
    "switch-to-greeter": cmd_switch_to_greeter,
    "switch-to-user": cmd_switch_to_user,
    "switch-to-guest": cmd_switch_to_guest,
    "add-nested-seat": cmd_add_nested_seat,
    "add-seat": cmd_add_seat,
}


async def run_command(
    options: argparse.Namespace,
    spec: CommandSpec,
    args: list[str],
    connect: Callable[..., DisplayManagerClient] | None = None,
) -> int:
    """Connect, run one command, and return the exit status."""
    connect = connect or DisplayManagerClient.connect
    try:
        client = connect(session_bus=options.session_bus)
        await HANDLERS[spec.name](client, args)
    except DMToolError as e:
        eprint(str(e))
        return 1
    return 0


def main(argv: list[str] | None = None, connect: Callable[..., DisplayManagerClient] | None = None) -> int:
    try:
        options, spec, args = parse_command_line(argv)
    except UsageError as e:
        eprint(str(e))
        eprint(USAGE_HINT)
        return 1

    set_debug(options.debug)
    log("CLI", {"command": spec.name, "args": args, "session_bus": options.session_bus})
    return asyncio.run(run_command(options, spec, args, connect))


if __name__ == "__main__":
    sys.exit(main())
