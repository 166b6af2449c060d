"""Length-prefixed message framing: | len | data |."""

from __future__ import annotations

import struct
from typing import Any, Optional

from origin.network.mempool import MemAreaPool

_FORMATS = {1: "B", 2: "H", 4: "I"}
_LIMITS = {1: 0xFF, 2: 0xFFFF, 4: 0xFFFFFFFF}


class MessageLengthError(ValueError):
    """Raised when a message is longer or shorter than the parser allows."""


def _read_into(stream: Any, view: memoryview) -> None:
    filled = 0
    while filled < len(view):
        chunk = stream.read(len(view) - filled)
        if not chunk:
            raise EOFError("unexpected EOF" if filled else "EOF")
        view[filled : filled + len(chunk)] = chunk
        filled += len(chunk)


class MsgParser:
    """Reads and writes messages prefixed by a 1, 2 or 4 byte length."""

    def __init__(self, pool: Optional[MemAreaPool] = None) -> None:
        self.len_msg_len = 2
        self.min_msg_len = 1
        self.max_msg_len = 4096
        self.little_endian = False
        self.pool = pool if pool is not None else MemAreaPool()

    def set_msg_len(self, len_msg_len: int, min_msg_len: int, max_msg_len: int) -> None:
        """Set the header width and length bounds; zero or invalid values keep the current ones."""
        if len_msg_len in _FORMATS:
            self.len_msg_len = len_msg_len
        if min_msg_len:
            self.min_msg_len = min_msg_len
        if max_msg_len:
            self.max_msg_len = max_msg_len
        limit = _LIMITS[self.len_msg_len]
        self.min_msg_len = min(self.min_msg_len, limit)
        self.max_msg_len = min(self.max_msg_len, limit)

    def set_byte_order(self, little_endian: bool) -> None:
        self.little_endian = little_endian

    @property
    def _header(self) -> struct.Struct:
        order = "<" if self.little_endian else ">"
        return struct.Struct(order + _FORMATS[self.len_msg_len])

    def _check(self, length: int) -> None:
        if length > self.max_msg_len:
            raise MessageLengthError("message too long")
        if length < self.min_msg_len:
            raise MessageLengthError("message too short")

    def read(self, stream: Any) -> memoryview:
        """Read one message from ``stream`` (an object with ``read(size)``)."""
        header = memoryview(bytearray(self.len_msg_len))
        _read_into(stream, header)
        (length,) = self._header.unpack(header)
        self._check(length)
        data = self.pool.make(length)
        try:
            _read_into(stream, data)
        except BaseException:
            self.pool.release(data)
            raise
        return data

    def encode(self, *args: Any) -> memoryview:
        """Frame the concatenation of ``args`` into a pooled buffer."""
        length = sum(len(arg) for arg in args)
        self._check(length)
        header = self._header
        msg = self.pool.make(header.size + length)
        header.pack_into(msg, 0, length)
        position = header.size
        for arg in args:
            msg[position : position + len(arg)] = arg
            position += len(arg)
        return msg

    def write(self, conn: Any, *args: Any) -> None:
        """Frame ``args`` and hand the message to ``conn.write``."""
        conn.write(self.encode(*args))