from dataclasses import dataclass

import pytest

from origin.network.processor import (
    JsonPackInfo,
    JsonProcessor,
    PBRawPackInfo,
    PBRawProcessor,
    ProcessorError,
)


@dataclass
class Chat:
    typ: int
    text: str = ""


@pytest.fixture
def json_proc():
    proc = JsonProcessor()
    calls = []
    proc.register(3, Chat, lambda client, msg: calls.append((client, msg)))
    proc.calls = calls
    return proc


def test_json_unmarshal_builds_registered_class(json_proc):
    pack = json_proc.unmarshal(b'{"typ":3,"text":"hi"}')
    assert pack.pack_type == 3
    assert pack.msg == Chat(3, "hi")


def test_json_keys_match_case_insensitively(json_proc):
    pack = json_proc.unmarshal(b'{"Typ":3,"TEXT":"hey"}')
    assert pack.msg == Chat(3, "hey")


def test_json_msg_route_calls_handler(json_proc):
    pack = json_proc.unmarshal(b'{"typ":3,"text":"x"}')
    json_proc.msg_route(pack, 42)
    assert json_proc.calls == [(42, Chat(3, "x"))]


def test_json_route_unregistered_type(json_proc):
    with pytest.raises(ProcessorError):
        json_proc.msg_route(JsonPackInfo(9, Chat(9)), 1)


def test_json_unmarshal_unregistered_type(json_proc):
    with pytest.raises(ProcessorError):
        json_proc.unmarshal(b'{"typ":4}')


def test_json_unmarshal_invalid_json(json_proc):
    with pytest.raises(ProcessorError):
        json_proc.unmarshal(b"{not json")


def test_json_unmarshal_non_object(json_proc):
    with pytest.raises(ProcessorError):
        json_proc.unmarshal(b"[1,2]")


def test_json_unmarshal_releases_pooled_buffer(json_proc):
    payload = b'{"typ":3,"text":"pool"}'
    view = json_proc.pool.make(len(payload))
    view[:] = payload
    pack = json_proc.unmarshal(view)
    assert pack.msg.text == "pool"
    again = json_proc.pool.make(len(payload))
    assert again.obj is view.obj


def test_json_marshal_round_trip(json_proc):
    msg = Chat(3, "round")
    data = json_proc.marshal(msg)
    assert data == b'{"typ":3,"text":"round"}'
    assert json_proc.unmarshal(data).msg == msg


def test_json_marshal_pack_info(json_proc):
    assert json_proc.marshal(json_proc.make_msg(3, Chat(3, "a"))) == json_proc.marshal(Chat(3, "a"))
    raw = json_proc.make_raw_msg(3, b'{"typ":3}')
    assert json_proc.marshal(raw) == b'{"typ":3}'


def test_json_marshal_unencodable(json_proc):
    with pytest.raises(ProcessorError):
        json_proc.marshal({1, 2})


def test_json_connection_handlers():
    proc = JsonProcessor()
    events = []
    proc.register_connected(lambda c: events.append(("on", c)))
    proc.register_disconnected(lambda c: events.append(("off", c)))
    proc.register_unknown_msg(lambda c, m: events.append(("unknown", c, m)))
    proc.connected_route(1)
    proc.unknown_msg_route(b"??", 1)
    proc.disconnected_route(1)
    assert events == [("on", 1), ("unknown", 1, b"??"), ("off", 1)]


def test_json_missing_connect_handler():
    with pytest.raises(ProcessorError):
        JsonProcessor().connected_route(1)


def test_raw_unmarshal_big_endian():
    proc = PBRawProcessor()
    pack = proc.unmarshal(b"\x00\x05abc")
    assert pack.pack_type == 5
    assert pack.raw_msg == b"\x00\x05abc"


def test_raw_unmarshal_little_endian():
    proc = PBRawProcessor()
    proc.set_byte_order(True)
    assert proc.unmarshal(b"\x05\x00").pack_type == 5


def test_raw_marshal_layout():
    proc = PBRawProcessor()
    assert proc.marshal(proc.make_raw_msg(0x0102, b"xy")) == b"\x01\x02xy"
    proc.set_byte_order(True)
    assert proc.marshal(proc.make_raw_msg(0x0102, b"xy")) == b"\x02\x01xy"


def test_raw_round_trip_keeps_type():
    proc = PBRawProcessor()
    data = proc.marshal(PBRawPackInfo(777, b"payload"))
    pack = proc.unmarshal(data)
    assert pack.pack_type == 777
    assert pack.raw_msg[2:] == b"payload"


def test_raw_unmarshal_too_short():
    with pytest.raises(ProcessorError):
        PBRawProcessor().unmarshal(b"\x01")


def test_raw_msg_route():
    proc = PBRawProcessor()
    calls = []
    proc.set_raw_msg_handler(lambda c, t, m: calls.append((c, t, m)))
    proc.msg_route(PBRawPackInfo(8, b"\x00\x08z"), 11)
    assert calls == [(11, 8, b"\x00\x08z")]


def test_raw_unknown_route_without_handler_is_ignored():
    proc = PBRawProcessor()
    calls = []
    proc.unknown_msg_route(b"zz", 7)
    assert calls == []
    proc.set_unknown_msg_handler(lambda c, m: calls.append((c, m)))
    proc.unknown_msg_route(b"zz", 7)
    assert calls == [(7, b"zz")]


def test_raw_connect_handlers():
    proc = PBRawProcessor()
    events = []
    proc.set_connected_handler(lambda c: events.append(("on", c)))
    proc.set_disconnected_handler(lambda c: events.append(("off", c)))
    proc.connected_route(2)
    proc.disconnected_route(2)
    assert events == [("on", 2), ("off", 2)]
    with pytest.raises(ProcessorError):
        PBRawProcessor().disconnected_route(2)