"""
Debug output for the calendar engine.

Every module prints through a small tagged helper, timestamped, to stderr.
Verbose output is off unless switched on (the CLI does this for --debug);
errors are always printed.
"""

import sys
from datetime import datetime


_debug_enabled: bool = False


def set_debug(enabled: bool):
    """Turn verbose debug output on or off."""
    global _debug_enabled
    _debug_enabled = enabled


def debug_print(tag: str, msg: str, error: bool = False) -> None:
    if not (_debug_enabled or error):
        return
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] {tag}: {msg}", file=sys.stderr)
