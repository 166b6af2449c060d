"""Command-line flags bound to callbacks, with the ``start`` command run last."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Sequence, TextIO, Union

CommandCallback = Callable[[Any], Any]

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


class CommandError(Exception):
    """Raised when the command line is malformed or a command fails."""


class _ValueType(Enum):
    BOOL = "bool"
    STRING = "string"


@dataclass
class _Command:
    name: str
    value_type: _ValueType
    default: Union[bool, str]
    usage: str
    fn: CommandCallback
    value: Union[bool, str] = field(init=False)

    def __post_init__(self) -> None:
        self.value = self.default

    def execute(self) -> Any:
        return self.fn(self.value)


def _parse_bool(text: str, name: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise CommandError(f'invalid boolean value "{text}" for -{name}')


class CommandLine:
    """A set of named flags, each with a callback that receives the flag's value.

    ``run`` parses the arguments, calls every callback except ``start`` in
    registration order, then calls ``start``.
    """

    def __init__(self) -> None:
        self._commands: dict[str, _Command] = {}
        self.program_name = ""

    def _register(self, command: _Command) -> None:
        if command.name in self._commands:
            raise ValueError(f"flag redefined: {command.name}")
        self._commands[command.name] = command

    def register_bool(
        self, name: str, default: bool, usage: str, fn: CommandCallback
    ) -> None:
        """Register a boolean flag ``-name``."""
        self._register(_Command(name, _ValueType.BOOL, bool(default), usage, fn))

    def register_string(
        self, name: str, default: str, usage: str, fn: CommandCallback
    ) -> None:
        """Register a string flag ``-name value``."""
        self._register(_Command(name, _ValueType.STRING, str(default), usage, fn))

    def _parse(self, args: Sequence[str]) -> int:
        for command in self._commands.values():
            command.value = command.default

        seen: set[str] = set()
        position = 0
        while position < len(args):
            arg = args[position]
            if len(arg) < 2 or not arg.startswith("-"):
                break
            if arg == "--":
                break
            body = arg[2:] if arg.startswith("--") else arg[1:]
            if not body or body[0] in "-=":
                raise CommandError(f"bad flag syntax: {arg}")
            name, sep, value = body.partition("=")
            command = self._commands.get(name)
            if command is None:
                raise CommandError(f"flag provided but not defined: -{name}")
            if command.value_type is _ValueType.BOOL:
                command.value = _parse_bool(value, name) if sep else True
            else:
                if not sep:
                    position += 1
                    if position >= len(args):
                        raise CommandError(f"flag needs an argument: -{name}")
                    value = args[position]
                command.value = value
            seen.add(name)
            position += 1
        return len(seen)

    def run(self, argv: Optional[Sequence[str]] = None) -> None:
        """Parse ``argv`` (program name first) and execute the commands."""
        args = list(sys.argv if argv is None else argv)
        self.program_name = args[0] if args else ""
        hint = (
            "Command input parameter error,try "
            f"`{self.program_name} -help` for help"
        )
        if self._parse(args[1:]) <= 0:
            raise CommandError(hint)

        start: Optional[_Command] = None
        for command in self._commands.values():
            if command.name == "start":
                start = command
                continue
            command.execute()

        if start is None:
            raise CommandError(hint)
        start.execute()

    def print_defaults(self, file: Optional[TextIO] = None) -> None:
        """Write the list of options and their usage."""
        out = sys.stderr if file is None else file
        out.write("Options:\n")
        for command in self._commands.values():
            out.write(f"  -{command.name:<10}{command.usage:>10}\n")

    def get_string(self, name: str) -> str:
        """Value of the string flag ``name``; empty if unknown or not a string flag."""
        command = self._commands.get(name)
        if command is None or command.value_type is not _ValueType.STRING:
            return ""
        return str(command.value)

    def get_bool(self, name: str) -> bool:
        """Value of the boolean flag ``name``; False if unknown or not a boolean flag."""
        command = self._commands.get(name)
        if command is None or command.value_type is not _ValueType.BOOL:
            return False
        return bool(command.value)