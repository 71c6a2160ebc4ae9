"""Command-line escaping helpers.

Commands are always launched through the platform command interpreter
(``cmd.exe /C`` on Windows, ``/bin/sh -c`` elsewhere), so an argument list has
to be turned into a single string that survives two parsing passes:

1. The interpreter, which treats ``()%!^"<>&|`` specially on Windows.
2. The target program's own argument splitting, which on Windows follows the
   ``CommandLineToArgvW`` rules.

On POSIX the shell does both jobs and ``shlex`` quoting is sufficient.
"""

from __future__ import annotations

import shlex
import sys
from collections.abc import Iterable

__all__ = [
    "CMD_METACHARS",
    "args_to_command_line",
    "escape_cmd_metachars",
    "join_command",
]

IS_WINDOWS = sys.platform == "win32"

# Characters cmd.exe interprets; each is escaped by a preceding caret.
CMD_METACHARS = frozenset('()%!^"<>&|')

_NEEDS_QUOTING = frozenset(' \t\n\v"')


def _quote_arg(arg: str) -> str:
    if arg and not any(c in _NEEDS_QUOTING for c in arg):
        return arg

    parts = ['"']
    backslashes = 0
    for c in arg:
        if c == "\\":
            backslashes += 1
        elif c == '"':
            # Backslashes before a quote are doubled, plus one for the quote itself
            parts.append("\\" * (backslashes * 2 + 1))
            parts.append('"')
            backslashes = 0
        else:
            parts.append("\\" * backslashes)
            parts.append(c)
            backslashes = 0
    # Trailing backslashes precede the closing quote
    parts.append("\\" * (backslashes * 2))
    parts.append('"')
    return "".join(parts)


def args_to_command_line(args: Iterable[str]) -> str:
    """Join arguments into one command line using Windows quoting rules.

    An argument is wrapped in double quotes if it is empty or contains
    whitespace or a double quote. Inside a quoted argument, backslashes that
    precede a quote (including the closing one) are doubled and embedded
    quotes are escaped as ``\\"``. Other arguments are passed through as-is.

    Args:
        args: Program path followed by its arguments

    Returns:
        A command line that ``CommandLineToArgvW`` splits back into ``args``
    """
    return " ".join(_quote_arg(arg) for arg in args)


def escape_cmd_metachars(command: str) -> str:
    """Prefix every cmd.exe metacharacter with ``^``."""
    return "".join("^" + c if c in CMD_METACHARS else c for c in command)


def join_command(args: Iterable[str]) -> str:
    """Join arguments into a command string for the platform interpreter.

    Args:
        args: Program followed by its arguments

    Returns:
        On Windows, the ``CommandLineToArgvW``-quoted line with cmd.exe
        metacharacters escaped; elsewhere, a ``shlex``-quoted line.
    """
    args = list(args)
    if IS_WINDOWS:
        return escape_cmd_metachars(args_to_command_line(args))
    return shlex.join(args)
