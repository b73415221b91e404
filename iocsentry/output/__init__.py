"""
IOCSentry Output

Rich console rendering for the CLI.
"""

from iocsentry.output.console import IOCSentryConsole, get_console

__all__ = [
    "IOCSentryConsole",
    "get_console",
]
