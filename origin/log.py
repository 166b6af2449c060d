"""Levelled, coloured logging to a daily log file and/or the console."""

from __future__ import annotations

import math
import os
import re
import sys
import threading
import traceback
from datetime import datetime
from decimal import Decimal
from enum import IntEnum
from typing import Any, Iterable, Optional, TextIO

# Header flags, bit-compatible with the usual "log" package flags.
LDATE = 1
LTIME = 2
LMICROSECONDS = 4
LLONGFILE = 8
LSHORTFILE = 16
LUTC = 32
LMSGPREFIX = 64
LSTD_FLAGS = LDATE | LTIME

_TIME_FLAGS = LDATE | LTIME | LMICROSECONDS
_FILE_FLAGS = LSHORTFILE | LLONGFILE

# When a log directory is set, also echo every line to stdout.
open_console = False

_UNKNOWN = "<unknown type>"
_GO_VERB = re.compile(r"%[+#]?v")


class Level(IntEnum):
    """Severity levels, lowest first."""

    DEBUG = 0
    RELEASE = 1
    WARNING = 2
    ERROR = 3
    STACK = 4
    FATAL = 5

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def color(self) -> int:
        return _COLORS[self]


_LABELS = {
    Level.DEBUG: "[ debug ] ",
    Level.RELEASE: "[release] ",
    Level.WARNING: "[warning] ",
    Level.ERROR: "[ error ] ",
    Level.STACK: "[ stack ] ",
    Level.FATAL: "[ fatal ] ",
}

_RED, _GREEN, _YELLOW, _BLUE, _MAGENTA = 91, 92, 93, 94, 95

_COLORS = {
    Level.DEBUG: _BLUE,
    Level.RELEASE: _GREEN,
    Level.WARNING: _YELLOW,
    Level.ERROR: _RED,
    Level.STACK: _MAGENTA,
    Level.FATAL: _MAGENTA,
}


def parse_level(name: str) -> Level:
    """Return the level called ``name`` (case-insensitive)."""
    try:
        return Level[name.lower().upper()]
    except KeyError:
        raise ValueError(f"unknown level: {name}") from None


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return format(Decimal(repr(value)).normalize(), "f")


def _format_scalar(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, str):
        return value
    return None


def format_values(values: Iterable[Any]) -> str:
    """Concatenate values the way the structured log calls render them."""
    parts = []
    for value in values:
        text = _format_scalar(value)
        if text is None and isinstance(value, (list, tuple, bytes, bytearray)):
            items = [_format_scalar(item) for item in value]
            if all(item is not None for item in items):
                text = "[" + ",".join(items) + "]"
        parts.append(_UNKNOWN if text is None else text)
    return "".join(parts)


def _go_sprintf(fmt: str, args: tuple) -> str:
    if not args:
        return fmt
    try:
        return _GO_VERB.sub("%s", fmt) % tuple(args)
    except (TypeError, ValueError):
        return fmt + " " + " ".join(str(arg) for arg in args)


def _caller_info(depth: int) -> tuple[str, int]:
    try:
        frame = sys._getframe(depth + 1)
    except ValueError:
        return "???", 0
    return frame.f_code.co_filename, frame.f_lineno


class Logger:
    """A logger writing coloured lines to a per-day file and/or stdout."""

    def __init__(
        self,
        level: "Level | str" = "debug",
        path: "str | os.PathLike[str]" = "",
        file_pre: str = "",
        flags: int = LSTD_FLAGS | LSHORTFILE,
    ) -> None:
        self.level = level if isinstance(level, Level) else parse_level(level)
        self.path = os.fspath(path) if path else ""
        self.file_pre = file_pre
        self.flags = flags
        self._file_day: Optional[int] = None
        self._out_file: Optional[TextIO] = None
        self._out_console: Optional[TextIO] = None
        self._lock = threading.Lock()
        self.gen_day_file(datetime.now())

    def gen_day_file(self, now: datetime) -> None:
        """Open a new log file when the day of ``now`` differs from the current one."""
        if self._file_day == now.day:
            return
        filename = (
            f"{now.year}{now.month:02d}{now.day:02d}_"
            f"{now.hour:02d}_{now.minute:02d}_{now.second:02d}.log"
        )
        if self.path:
            new_file = open(
                os.path.join(self.path, self.file_pre + filename),
                "w",
                encoding="utf-8",
                newline="",
            )
            if self._out_file is not None:
                self._out_file.close()
            self._out_file = new_file
            self._file_day = now.day
            if open_console:
                self._out_console = sys.stdout
        else:
            self._out_console = sys.stdout

    def close(self) -> None:
        """Close the current log file, if any."""
        with self._lock:
            if self._out_file is not None:
                self._out_file.close()
                self._out_file = None

    def _format_header(self, now: datetime, file: str, line: int) -> str:
        flags = self.flags
        parts = []
        if flags & LMSGPREFIX:
            parts.append(self.file_pre)
        if flags & _TIME_FLAGS:
            if flags & LDATE:
                parts.append(f"{now.year}/{now.month}/{now.day} ")
            if flags & (LTIME | LMICROSECONDS):
                clock = f"{now.hour}:{now.minute}:{now.second}"
                if flags & LMICROSECONDS:
                    clock += f".{now.microsecond}"
                parts.append(clock + " ")
        if flags & _FILE_FLAGS:
            if flags & LSHORTFILE:
                file = os.path.basename(file)
            parts.append(f"{file}:{line}: ")
        if flags & LMSGPREFIX:
            parts.append(self.file_pre)
        return "".join(parts)

    def _write(self, level: Level, message: str) -> None:
        now = datetime.now()
        file, line = ("", 0)
        if self.flags & _FILE_FLAGS:
            # _caller_info <- _write <- _printf/_sprintf <- public call <- user
            file, line = _caller_info(3)
        text = (
            f"\x1b[{level.color}m[{self._format_header(now, file, line)}]"
            f"{level.label}\x1b[0m{message}\n"
        )
        with self._lock:
            try:
                self.gen_day_file(now)
            except OSError:
                pass
            if self._out_file is not None:
                self._out_file.write(text)
                self._out_file.flush()
            if self._out_console is not None:
                self._out_console.write(text)
                self._out_console.flush()
        if level == Level.FATAL:
            raise SystemExit(1)

    def _printf(self, level: Level, fmt: str, args: tuple, prefix: str = "") -> None:
        if level < self.level:
            return
        self._write(level, prefix + _go_sprintf(fmt, args))

    def _sprintf(self, level: Level, values: tuple) -> None:
        if level < self.level:
            return
        self._write(level, format_values(values))

    def debug(self, fmt: str, *args: Any) -> None:
        self._printf(Level.DEBUG, fmt, args)

    def release(self, fmt: str, *args: Any) -> None:
        self._printf(Level.RELEASE, fmt, args)

    def warning(self, fmt: str, *args: Any) -> None:
        self._printf(Level.WARNING, fmt, args)

    def error(self, fmt: str, *args: Any) -> None:
        self._printf(Level.ERROR, fmt, args)

    def stack(self, fmt: str, *args: Any) -> None:
        self._printf(Level.STACK, fmt, args)

    def fatal(self, fmt: str, *args: Any) -> None:
        """Log and exit with status 1."""
        self._printf(Level.FATAL, fmt, args)

    def sprint(self, level: "Level | int", *args: Any) -> None:
        """Log the concatenation of ``args`` at ``level``."""
        self._sprintf(Level(level), args)


_global_logger = Logger("debug", "", "", LSTD_FLAGS | LSHORTFILE)


def export(logger: Optional[Logger]) -> None:
    """Make ``logger`` the target of the module-level functions."""
    global _global_logger
    if logger is not None:
        _global_logger = logger


def debug(fmt: str, *args: Any) -> None:
    _global_logger._printf(Level.DEBUG, fmt, args)


def release(fmt: str, *args: Any) -> None:
    _global_logger._printf(Level.RELEASE, fmt, args)


def warning(fmt: str, *args: Any) -> None:
    _global_logger._printf(Level.WARNING, fmt, args)


def error(fmt: str, *args: Any) -> None:
    _global_logger._printf(Level.ERROR, fmt, args)


def stack(fmt: str, *args: Any) -> None:
    """Log the current call stack followed by the formatted message."""
    trace = "".join(traceback.format_stack())
    _global_logger._printf(Level.STACK, fmt, args, prefix=trace + "\n")


def fatal(fmt: str, *args: Any) -> None:
    _global_logger._printf(Level.FATAL, fmt, args)


def close() -> None:
    _global_logger.close()


def sdebug(*args: Any) -> None:
    _global_logger._sprintf(Level.DEBUG, args)


def srelease(*args: Any) -> None:
    _global_logger._sprintf(Level.RELEASE, args)


def swarning(*args: Any) -> None:
    _global_logger._sprintf(Level.WARNING, args)


def serror(*args: Any) -> None:
    _global_logger._sprintf(Level.ERROR, args)


def sstack(*args: Any) -> None:
    """Log the values, then the current call stack."""
    _global_logger._sprintf(Level.STACK, args)
    _global_logger._sprintf(Level.STACK, ("".join(traceback.format_stack()),))


def sfatal(*args: Any) -> None:
    _global_logger._sprintf(Level.FATAL, args)