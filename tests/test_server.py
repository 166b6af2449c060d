import time

import pytest

from origin.rpc.client import Client
from origin.rpc.protocol import (
    JsonRpcProcessor,
    RpcError,
    RpcRequestData,
    RpcResponseData,
)
from origin.rpc.server import RpcAgent, Server

codec = JsonRpcProcessor()


class FakeConn:
    def __init__(self, messages=()):
        self.messages = list(messages)
        self.written = []

    def read_msg(self):
        if not self.messages:
            raise EOFError("EOF")
        return self.messages.pop(0)

    def write_msg(self, *args):
        self.written.append(b"".join(bytes(a) for a in args))

    def release_read_msg(self, buf):
        pass

    remote_addr = "peer"
    local_addr = "self"


class EchoHandler:
    def __init__(self, returns=None, err=None):
        self.requests = []
        self.methods = []
        self.returns = returns
        self.err = err

    def unmarshal_in_param(self, processor, service_method, method_id, in_param):
        return processor.unmarshal(in_param)

    def push_rpc_request(self, request):
        self.requests.append(request)
        if request.request_handle is not None:
            result = request.in_param if self.returns is None else self.returns
            request.request_handle(result, self.err)

    def call_method(self, service_method, param, reply):
        self.methods.append((service_method, param, reply))
        return param


class FailingHandler(EchoHandler):
    def push_rpc_request(self, request):
        raise RuntimeError("queue full")


class BadParamHandler(EchoHandler):
    def unmarshal_in_param(self, processor, service_method, method_id, in_param):
        raise ValueError("bad")


class Finder:
    def __init__(self, handlers):
        self.handlers = handlers

    def find_rpc_handler(self, name):
        return self.handlers.get(name)


class Recorder:
    def __init__(self):
        self.calls = []

    def push_rpc_response(self, call):
        self.calls.append(call)


def request_frame(seq, method, args, no_reply=False):
    return bytes([0]) + codec.marshal(
        RpcRequestData(seq, 0, method, no_reply, codec.marshal(args))
    )


def decode(frame):
    assert frame[0] == 0
    return codec.unmarshal(frame[1:], RpcResponseData)


def run_agent(handlers, messages):
    conn = FakeConn(messages)
    agent = Server(Finder(handlers)).new_agent(conn)
    agent.run()
    return conn


def test_agent_echoes_request():
    handler = EchoHandler()
    conn = run_agent({"Svc": handler}, [request_frame(7, "Svc.Echo", {"a": 1})])
    response = decode(conn.written[0])
    assert response.seq == 7
    assert response.error == ""
    assert codec.unmarshal(response.reply) == {"a": 1}
    assert handler.requests[0].in_param == {"a": 1}


def test_agent_reports_unknown_service():
    conn = run_agent({}, [request_frame(2, "Nope.M", 1)])
    response = decode(conn.written[0])
    assert response.seq == 2
    assert response.error == "service method Nope.M not config!"


def test_agent_silent_for_unknown_service_without_reply():
    conn = run_agent({}, [request_frame(2, "Nope.M", 1, no_reply=True)])
    assert conn.written == []


def test_agent_reports_param_error():
    conn = run_agent({"Svc": BadParamHandler()}, [request_frame(4, "Svc.M", 1)])
    assert decode(conn.written[0]).error.startswith("Call Rpc Svc.M Param error")


def test_agent_reports_push_failure():
    conn = run_agent({"Svc": FailingHandler()}, [request_frame(5, "Svc.M", 1)])
    assert decode(conn.written[0]).error == "queue full"


def test_agent_stops_on_unknown_processor():
    conn = run_agent(
        {"Svc": EchoHandler()}, [bytes([7, 1, 2]), request_frame(1, "Svc.M", 1)]
    )
    assert conn.written == []
    assert len(conn.messages) == 1


def test_agent_stops_on_garbage_without_seq():
    conn = run_agent(
        {"Svc": EchoHandler()}, [bytes([0]) + b"not json", request_frame(1, "Svc.M", 1)]
    )
    assert conn.written == []
    assert len(conn.messages) == 1


def test_agent_answers_bad_request_with_seq():
    conn = run_agent({"Svc": EchoHandler()}, [bytes([0]) + b'{"Seq":3,"NoReply":"x"}'])
    response = decode(conn.written[0])
    assert response.seq == 3
    assert response.error == "NoReply must be a boolean"


def test_write_response_with_unencodable_reply():
    conn = FakeConn()
    agent = RpcAgent(conn, Server())
    agent.write_response(codec, "Svc.M", 8, object(), None)
    response = decode(conn.written[0])
    assert response.seq == 8
    assert "object" in response.error
    assert response.reply is None


def test_myself_rpc_handler_go():
    handler = EchoHandler()
    server = Server(Finder({"Svc": handler}))
    assert server.myself_rpc_handler_go("Svc", "Svc.M", 11, None) == 11
    assert handler.methods == [("Svc.M", 11, None)]
    with pytest.raises(RpcError):
        server.myself_rpc_handler_go("Other", "Other.M", 1, None)


def test_self_node_go_copies_reply():
    client = Client()
    server = Server(Finder({"Svc": EchoHandler(returns={"x": 1})}))
    reply = {}
    call = server.self_node_rpc_handler_go(
        None, client, False, "Svc", 0, "Svc.M", {"a": 1}, reply, None
    )
    assert call.done(timeout=1).err is None
    assert reply == {"x": 1}
    assert client.find_pending(call.seq) is None


def test_self_node_go_passes_error():
    client = Client()
    server = Server(Finder({"Svc": EchoHandler(err=RpcError("fail"))}))
    call = server.self_node_rpc_handler_go(
        None, client, False, "Svc", 0, "Svc.M", 1, None, None
    )
    assert call.done(timeout=1).err == RpcError("fail")


def test_self_node_go_missing_handler():
    server = Server(Finder({}))
    call = server.self_node_rpc_handler_go(
        None, Client(), False, "Svc", 0, "Svc.M", 1, None, None
    )
    assert call.done(timeout=1).seq == 0
    assert call.err == RpcError("service method Svc.M not config!")


def test_self_node_go_decodes_raw_args():
    handler = EchoHandler()
    server = Server(Finder({"Svc": handler}))
    call = server.self_node_rpc_handler_go(
        codec, Client(), True, "Svc", 0, "Svc.M", None, None, codec.marshal([1, 2])
    )
    assert call.err is None
    assert handler.requests[0].in_param == [1, 2]


def test_self_node_go_push_failure():
    server = Server(Finder({"Svc": FailingHandler()}))
    call = server.self_node_rpc_handler_go(
        None, Client(), False, "Svc", 0, "Svc.M", 1, None, None
    )
    assert str(call.done(timeout=1).err) == "queue full"


def test_self_node_async_go_pushes_response():
    client = Client()
    caller = Recorder()
    server = Server(Finder({"Svc": EchoHandler(returns=[5])}))
    server.self_node_rpc_handler_async_go(
        client, caller, False, "Svc", "Svc.M", 1, None, lambda r, e: None
    )
    assert len(caller.calls) == 1
    assert caller.calls[0].reply == [5]
    assert caller.calls[0].err is None
    assert client.find_pending(caller.calls[0].seq) is None


def test_self_node_async_go_missing_handler():
    server = Server(Finder({}))
    with pytest.raises(RpcError):
        server.self_node_rpc_handler_async_go(
            Client(), Recorder(), False, "Svc", "Svc.M", 1, None, lambda r, e: None
        )


def test_start_rejects_bad_address():
    with pytest.raises(ValueError):
        Server(Finder({})).start("no-port")


def test_round_trip_over_tcp():
    server = Server(Finder({"Svc": EchoHandler()}))
    server.start("127.0.0.1:0")
    client = Client()
    try:
        port = server.address[1]
        client.connect(1, f"127.0.0.1:{port}")
        deadline = time.monotonic() + 5
        while not client.is_connected() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert client.is_connected() is True
        call = client.go(False, "Svc.Echo", {"a": 1}, None)
        done = call.done(timeout=5)
        assert done.err is None
        assert done.reply == {"a": 1}
    finally:
        client.close(True)
        server.close()