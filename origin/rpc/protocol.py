"""RPC wire records, the JSON codec and the registry of codecs."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
import queue
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Optional, Union


class RpcProcessorType(IntEnum):
    """Codec number sent as the first byte of every RPC message."""

    JSON = 0
    GOGOPB = 1


class RpcError(Exception):
    """An error carried back to the caller of an RPC."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RpcError) and other.message == self.message

    def __hash__(self) -> int:
        return hash(self.message)


def convert_error(err: Optional[BaseException]) -> Optional[RpcError]:
    """Turn any exception into an RpcError; None stays None."""
    if err is None:
        return None
    if isinstance(err, RpcError):
        return err
    return RpcError(str(err))


def _normalize(key: Any) -> str:
    return str(key).replace("_", "").lower()


def _encode_bytes(value: Optional[bytes]) -> Optional[str]:
    if value is None:
        return None
    return base64.b64encode(bytes(value)).decode("ascii")


def _decode_bytes(value: Any) -> Optional[bytes]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("byte field must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 data: {exc}") from exc


def _decode_uint(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{what} must be an unsigned integer")
    return value


def _wire_fields(obj: Any) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"cannot unmarshal {type(obj).__name__} into a record")
    return {_normalize(key): value for key, value in obj.items()}


@dataclass
class RpcRequestData:
    """Header and body of a request; the method id is not sent by the JSON codec."""

    seq: int = 0
    rpc_method_id: int = 0
    service_method: str = ""
    no_reply: bool = False
    in_param: Optional[bytes] = None

    def _to_wire(self) -> dict[str, Any]:
        return {
            "Seq": self.seq,
            "ServiceMethod": self.service_method,
            "NoReply": self.no_reply,
            "InParam": _encode_bytes(self.in_param),
        }

    def _load_wire(self, obj: Any) -> None:
        fields = _wire_fields(obj)
        if fields.get("seq") is not None:
            self.seq = _decode_uint(fields["seq"], "Seq")
        if fields.get("servicemethod") is not None:
            if not isinstance(fields["servicemethod"], str):
                raise ValueError("ServiceMethod must be a string")
            self.service_method = fields["servicemethod"]
        if fields.get("noreply") is not None:
            if not isinstance(fields["noreply"], bool):
                raise ValueError("NoReply must be a boolean")
            self.no_reply = fields["noreply"]
        if "inparam" in fields:
            self.in_param = _decode_bytes(fields["inparam"])


@dataclass
class RpcResponseData:
    """Header and body of a response; an empty ``error`` means success."""

    seq: int = 0
    error: str = ""
    reply: Optional[bytes] = None

    @property
    def err(self) -> Optional[RpcError]:
        return RpcError(self.error) if self.error else None

    def _to_wire(self) -> dict[str, Any]:
        return {"Seq": self.seq, "Err": self.error, "Reply": _encode_bytes(self.reply)}

    def _load_wire(self, obj: Any) -> None:
        fields = _wire_fields(obj)
        if fields.get("seq") is not None:
            self.seq = _decode_uint(fields["seq"], "Seq")
        if fields.get("err") is not None:
            if not isinstance(fields["err"], str):
                raise ValueError("Err must be a string")
            self.error = fields["err"]
        if "reply" in fields:
            self.reply = _decode_bytes(fields["reply"])


_WireRecord = (RpcRequestData, RpcResponseData)


def _json_default(value: Any) -> Any:
    if isinstance(value, _WireRecord):
        return value._to_wire()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    raise TypeError(f"cannot marshal value of type {type(value).__name__}")


def _dataclass_kwargs(cls: Any, obj: Any) -> dict[str, Any]:
    fields = _wire_fields(obj)
    return {
        f.name: fields[_normalize(f.name)]
        for f in dataclasses.fields(cls)
        if f.init and _normalize(f.name) in fields
    }


def _decode_into(obj: Any, target: Any) -> Any:
    if target is None:
        return obj
    if isinstance(target, type):
        if issubclass(target, _WireRecord):
            record = target()
            record._load_wire(obj)
            return record
        if issubclass(target, (bytes, bytearray)):
            decoded = _decode_bytes(obj)
            return target(decoded or b"")
        if dataclasses.is_dataclass(target):
            try:
                return target(**_dataclass_kwargs(target, obj))
            except TypeError as exc:
                raise ValueError(str(exc)) from exc
        if target is float and isinstance(obj, (int, float)) and not isinstance(obj, bool):
            return float(obj)
        if isinstance(obj, target) and not (target is int and isinstance(obj, bool)):
            return obj
        raise ValueError(f"cannot unmarshal {type(obj).__name__} into {target.__name__}")
    if isinstance(target, _WireRecord):
        target._load_wire(obj)
        return target
    if dataclasses.is_dataclass(target):
        for name, value in _dataclass_kwargs(type(target), obj).items():
            setattr(target, name, value)
        return target
    if isinstance(target, dict):
        if not isinstance(obj, dict):
            raise ValueError(f"cannot unmarshal {type(obj).__name__} into dict")
        target.update(obj)
        return target
    if isinstance(target, list):
        if not isinstance(obj, list):
            raise ValueError(f"cannot unmarshal {type(obj).__name__} into list")
        target[:] = obj
        return target
    raise TypeError(f"unsupported unmarshal target {type(target).__name__}")


class JsonRpcProcessor:
    """The JSON codec for RPC requests, responses and arguments."""

    processor_type = RpcProcessorType.JSON

    def marshal(self, value: Any) -> bytes:
        """Encode ``value`` as compact JSON; bytes become base64 strings."""
        return json.dumps(
            value, default=_json_default, separators=(",", ":"), allow_nan=False
        ).encode("utf-8")

    def unmarshal(self, data: Any, target: Any = None) -> Any:
        """Decode ``data`` into ``target`` and return the result.

        ``target`` may be an instance to fill in place (a record, a dataclass,
        a dict or a list), a type to build, or None for the plain JSON value.
        """
        raw = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        try:
            obj = json.loads(raw)
        except UnicodeDecodeError as exc:
            raise ValueError(str(exc)) from exc
        return _decode_into(obj, target)

    def make_rpc_request(
        self,
        seq: int,
        rpc_method_id: int,
        service_method: str,
        no_reply: bool,
        in_param: Optional[bytes],
    ) -> RpcRequestData:
        return RpcRequestData(seq, rpc_method_id, service_method, no_reply, in_param)

    def make_rpc_response(
        self, seq: int, err: Union[RpcError, str, None], reply: Optional[bytes]
    ) -> RpcResponseData:
        return RpcResponseData(seq, "" if err is None else str(err), reply)

    def is_parse(self, param: Any) -> bool:
        """True when ``param`` can be encoded by this codec."""
        try:
            self.marshal(param)
        except (TypeError, ValueError):
            return False
        return True


_processors: list[Any] = [JsonRpcProcessor()]


def _as_processor_type(index: int) -> Union[RpcProcessorType, int]:
    try:
        return RpcProcessorType(index)
    except ValueError:
        return index


def append_processor(processor: Any) -> None:
    """Register another codec; it gets the next processor number."""
    _processors.append(processor)


def get_processor_type(param: Any) -> tuple[Union[RpcProcessorType, int], Any]:
    """The first non-JSON codec that accepts ``param``, else the JSON codec."""
    for index, processor in enumerate(_processors[1:], start=1):
        if processor.is_parse(param):
            return _as_processor_type(index), processor
    return RpcProcessorType.JSON, _processors[RpcProcessorType.JSON]


def get_processor(processor_type: int) -> Optional[Any]:
    """The codec registered under ``processor_type``, or None."""
    index = int(processor_type)
    if 0 <= index < len(_processors):
        return _processors[index]
    return None


RequestHandle = Callable[[Any, Optional[RpcError]], Any]


@dataclass(eq=False)
class RpcRequest:
    """A request being dispatched to a handler."""

    rpc_request_data: Optional[RpcRequestData] = None
    in_param: Any = None
    local_reply: Any = None
    request_handle: Optional[RequestHandle] = None
    callback: Optional[Callable[..., Any]] = None
    rpc_processor: Any = None

    def clear(self) -> "RpcRequest":
        self.rpc_request_data = None
        self.in_param = None
        self.local_reply = None
        self.request_handle = None
        self.callback = None
        self.rpc_processor = None
        return self


def _new_done() -> "queue.Queue[Call]":
    return queue.Queue(maxsize=1)


@dataclass(eq=False)
class Call:
    """An outstanding call; ``finish`` signals it, ``done`` waits for it."""

    seq: int = 0
    service_method: str = ""
    reply: Any = None
    response: Any = None
    err: Optional[BaseException] = None
    conn_id: int = 0
    callback: Optional[Callable[..., Any]] = None
    rpc_handler: Any = None
    call_time: float = 0.0
    _done: "queue.Queue[Call]" = field(default_factory=_new_done, init=False, repr=False)

    def clear(self) -> "Call":
        self.seq = 0
        self.service_method = ""
        self.reply = None
        self.response = None
        if not self._done.empty():
            self._done = _new_done()
        self.err = None
        self.conn_id = 0
        self.callback = None
        self.rpc_handler = None
        return self

    def finish(self) -> None:
        """Mark the call complete; a second signal before ``done`` is dropped."""
        try:
            self._done.put_nowait(self)
        except queue.Full:
            pass

    def done(self, timeout: Optional[float] = None) -> "Call":
        """Wait until the call is complete and return it."""
        try:
            return self._done.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError(f"call {self.service_method} did not complete") from None