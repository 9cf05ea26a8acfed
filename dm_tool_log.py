"""
dm-tool output: user-facing console lines and the --debug trace.

Data (object paths) goes to stdout, everything else to stderr. Markup, emoji,
highlighting and wrapping are off so lines reach scripts byte for byte.
"""

from __future__ import annotations

import json
import sys

from rich.console import Console

console = Console(highlight=False, emoji=False, soft_wrap=True)
err_console = Console(stderr=True, highlight=False, emoji=False, soft_wrap=True)

_debug = False


def set_debug(enabled: bool):
    """Turn the [TAG] trace on or off."""
    global _debug
    _debug = enabled


def log(tag: str, msg: dict):
    """Log to stderr when --debug is given."""
    if not _debug:
        return
    compact = json.dumps(msg, separators=(",", ":"), default=str)
    print(f"[{tag}] {compact}", file=sys.stderr, flush=True)


def emit(text: str):
    """Write one line of data to stdout."""
    console.print(text, markup=False)


def eprint(text: str):
    """Write a diagnostic to stderr."""
    err_console.print(text, markup=False)
