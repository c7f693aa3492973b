"""Validation of configured command strings before execution.

Commands from configuration (``pytest -q``, ``ruff check .``) are split into
an argument vector with shell-like quoting and run directly. Anything that
would only make sense to a shell is rejected, so a command string can never
chain, pipe, redirect or substitute.
"""

from __future__ import annotations

import shlex
from pathlib import PurePath

from worker_engine.exceptions import CommandNotAllowedError

_CONTROL_TOKENS = frozenset({";", "&&", "||", "|", "&", ">", ">>", "<", "<<", "2>", "2>&1"})
_FORBIDDEN_SUBSTRINGS = ("`", "$(", "${", ";", "|", "&", ">", "<", "\n")


class CommandSanitizer:
    """Split and validate command strings.

    Args:
        allowed_executables: Executable names that may be run. ``None``
            allows any executable.
    """

    def __init__(self, allowed_executables: list[str] | None = None) -> None:
        self.allowed_executables = (
            frozenset(allowed_executables) if allowed_executables is not None else None
        )

    def parse(self, command: str) -> list[str]:
        """Split ``command`` into an argument vector and validate it.

        Raises:
            CommandNotAllowedError: For empty commands, shell syntax, or an
                executable outside the allow-list
        """
        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise CommandNotAllowedError(command, f"unparseable: {e}") from e

        self.validate(argv, display=command)
        return argv

    def validate(self, argv: list[str], display: str | None = None) -> None:
        display = display or shlex.join(argv)
        if not argv:
            raise CommandNotAllowedError(display, "empty command")

        for token in argv:
            if token in _CONTROL_TOKENS or any(part in token for part in _FORBIDDEN_SUBSTRINGS):
                raise CommandNotAllowedError(display, f"shell syntax in argument {token!r}")

        if self.allowed_executables is not None:
            executable = PurePath(argv[0]).name
            if executable not in self.allowed_executables:
                raise CommandNotAllowedError(display, f"executable {executable!r} is not allowed")
