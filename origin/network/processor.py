"""Message processors for client connections: JSON messages and raw typed packets."""

from __future__ import annotations

import base64
import dataclasses
import json
import struct
from dataclasses import dataclass
from typing import Any, Callable, Optional

from origin.network.mempool import MemAreaPool

MSG_TYPE_SIZE = 2

MessageHandler = Callable[[Any, Any], Any]
ConnectHandler = Callable[[Any], Any]
UnknownMessageHandler = Callable[[Any, bytes], Any]
RawMessageHandler = Callable[[Any, int, bytes], Any]


class ProcessorError(Exception):
    """Raised when a message cannot be decoded, encoded or routed."""


def _normalize(key: Any) -> str:
    return str(key).replace("_", "").lower()


def _as_bytes(data: Any) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    raise TypeError(f"cannot encode value of type {type(value).__name__}")


def _build(msg_cls: Any, obj: Any) -> Any:
    if dataclasses.is_dataclass(msg_cls):
        if not isinstance(obj, dict):
            raise ProcessorError(f"cannot decode {type(obj).__name__} into {msg_cls.__name__}")
        by_key = {_normalize(key): value for key, value in obj.items()}
        kwargs = {
            f.name: by_key[_normalize(f.name)]
            for f in dataclasses.fields(msg_cls)
            if f.init and _normalize(f.name) in by_key
        }
        try:
            return msg_cls(**kwargs)
        except TypeError as exc:
            raise ProcessorError(str(exc)) from exc
    try:
        return msg_cls(obj)
    except (TypeError, ValueError) as exc:
        raise ProcessorError(str(exc)) from exc


def _require(handler: Optional[Callable[..., Any]], what: str) -> Callable[..., Any]:
    if handler is None:
        raise ProcessorError(f"{what} handler is not registered")
    return handler


@dataclass
class JsonPackInfo:
    """A JSON message with its type number."""

    pack_type: int
    msg: Any = None
    raw_msg: Optional[bytes] = None


@dataclass
class _MessageJsonInfo:
    msg_cls: Any
    handler: MessageHandler


class JsonProcessor:
    """Decodes JSON messages whose ``typ`` field selects a registered class."""

    def __init__(self, pool: Optional[MemAreaPool] = None) -> None:
        self._messages: dict[int, _MessageJsonInfo] = {}
        self.little_endian = False
        self.pool = pool if pool is not None else MemAreaPool()
        self._unknown_handler: Optional[UnknownMessageHandler] = None
        self._connect_handler: Optional[ConnectHandler] = None
        self._disconnect_handler: Optional[ConnectHandler] = None

    def set_byte_order(self, little_endian: bool) -> None:
        self.little_endian = little_endian

    def register(self, msg_type: int, msg_cls: Any, handler: MessageHandler) -> None:
        """Decode messages of ``msg_type`` into ``msg_cls`` and pass them to ``handler``."""
        self._messages[msg_type] = _MessageJsonInfo(msg_cls, handler)

    def msg_route(self, msg: JsonPackInfo, user_data: Any) -> None:
        """Call the handler registered for the message's type."""
        info = self._messages.get(msg.pack_type)
        if info is None:
            raise ProcessorError(f"cannot find msgtype {msg.pack_type} is register!")
        info.handler(user_data, msg.msg)

    def unmarshal(self, data: Any) -> JsonPackInfo:
        """Decode ``data``; a pooled buffer is given back to the pool."""
        try:
            raw = _as_bytes(data)
        finally:
            self.pool.release(data)
        try:
            obj = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProcessorError(str(exc)) from exc
        if not isinstance(obj, dict):
            raise ProcessorError(f"cannot decode {type(obj).__name__} as a message")

        typ = 0
        for key, value in obj.items():
            if _normalize(key) == "typ" and value is not None:
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ProcessorError("message field typ must be an integer")
                typ = value
        msg_type = typ & 0xFFFF

        info = self._messages.get(msg_type)
        if info is None:
            raise ProcessorError(f"Cannot find register {msg_type} msgType!")
        return JsonPackInfo(msg_type, _build(info.msg_cls, obj))

    def marshal(self, msg: Any) -> bytes:
        """Encode ``msg`` (or the message of a JsonPackInfo) as compact JSON."""
        if isinstance(msg, JsonPackInfo):
            if msg.raw_msg is not None:
                return bytes(msg.raw_msg)
            msg = msg.msg
        try:
            text = json.dumps(
                msg, default=_json_default, separators=(",", ":"), allow_nan=False
            )
        except (TypeError, ValueError) as exc:
            raise ProcessorError(str(exc)) from exc
        return text.encode("utf-8")

    def make_msg(self, msg_type: int, msg: Any) -> JsonPackInfo:
        return JsonPackInfo(msg_type, msg=msg)

    def make_raw_msg(self, msg_type: int, raw: bytes) -> JsonPackInfo:
        return JsonPackInfo(msg_type, raw_msg=raw)

    def unknown_msg_route(self, msg: Any, user_data: Any) -> None:
        _require(self._unknown_handler, "unknown message")(user_data, _as_bytes(msg))

    def connected_route(self, user_data: Any) -> None:
        _require(self._connect_handler, "connect")(user_data)

    def disconnected_route(self, user_data: Any) -> None:
        _require(self._disconnect_handler, "disconnect")(user_data)

    def register_unknown_msg(self, handler: UnknownMessageHandler) -> None:
        self._unknown_handler = handler

    def register_connected(self, handler: ConnectHandler) -> None:
        self._connect_handler = handler

    def register_disconnected(self, handler: ConnectHandler) -> None:
        self._disconnect_handler = handler


@dataclass
class PBRawPackInfo:
    """A packet with a 2-byte type and its undecoded bytes."""

    pack_type: int = 0
    raw_msg: bytes = b""


class PBRawProcessor:
    """Splits packets into a 2-byte type and raw payload without decoding them."""

    def __init__(self) -> None:
        self.little_endian = False
        self._msg_handler: Optional[RawMessageHandler] = None
        self._unknown_handler: Optional[UnknownMessageHandler] = None
        self._connect_handler: Optional[ConnectHandler] = None
        self._disconnect_handler: Optional[ConnectHandler] = None

    @property
    def _type_format(self) -> str:
        return "<H" if self.little_endian else ">H"

    def set_byte_order(self, little_endian: bool) -> None:
        self.little_endian = little_endian

    def msg_route(self, msg: PBRawPackInfo, user_data: Any) -> None:
        _require(self._msg_handler, "raw message")(user_data, msg.pack_type, msg.raw_msg)

    def unmarshal(self, data: Any) -> PBRawPackInfo:
        """Read the type; the returned raw message is the whole packet."""
        raw = _as_bytes(data)
        if len(raw) < MSG_TYPE_SIZE:
            raise ProcessorError("packet is shorter than its type field")
        (msg_type,) = struct.unpack_from(self._type_format, raw)
        return PBRawPackInfo(msg_type, raw)

    def marshal(self, msg: PBRawPackInfo) -> bytes:
        """The 2-byte type followed by the raw message."""
        try:
            header = struct.pack(self._type_format, msg.pack_type)
        except struct.error as exc:
            raise ProcessorError(str(exc)) from exc
        return header + _as_bytes(msg.raw_msg)

    def set_raw_msg_handler(self, handler: RawMessageHandler) -> None:
        self._msg_handler = handler

    def make_raw_msg(self, msg_type: int, raw: bytes) -> PBRawPackInfo:
        return PBRawPackInfo(msg_type, raw)

    def unknown_msg_route(self, msg: Any, user_data: Any) -> None:
        if self._unknown_handler is None:
            return
        self._unknown_handler(user_data, _as_bytes(msg))

    def connected_route(self, user_data: Any) -> None:
        _require(self._connect_handler, "connect")(user_data)

    def disconnected_route(self, user_data: Any) -> None:
        _require(self._disconnect_handler, "disconnect")(user_data)

    def set_unknown_msg_handler(self, handler: UnknownMessageHandler) -> None:
        self._unknown_handler = handler

    def set_connected_handler(self, handler: ConnectHandler) -> None:
        self._connect_handler = handler

    def set_disconnected_handler(self, handler: ConnectHandler) -> None:
        self._disconnect_handler = handler