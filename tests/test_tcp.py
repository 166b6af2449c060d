import queue
import socket
import threading

import pytest

from origin.network.msgparser import MessageLengthError, MsgParser
from origin.network.tcp import Agent, ConnectionClosedError, TCPClient, TCPConn, TCPServer

_READ_ERRORS = (OSError, EOFError, MessageLengthError)


class EchoAgent(Agent):
    def __init__(self, conn):
        self.conn = conn

    def run(self):
        while True:
            try:
                msg = self.conn.read_msg()
            except _READ_ERRORS:
                return
            self.conn.write_msg(bytes(msg))
            self.conn.release_read_msg(msg)

    def on_close(self):
        pass


class PingAgent(Agent):
    def __init__(self, conn, replies, closed):
        self.conn = conn
        self.replies = replies
        self.closed = closed

    def run(self):
        self.conn.write_msg(b"ping")
        try:
            msg = self.conn.read_msg()
        except _READ_ERRORS:
            return
        self.replies.put(bytes(msg))

    def on_close(self):
        self.closed.set()


class ReadAgent(Agent):
    def __init__(self, conn, results):
        self.conn = conn
        self.results = results

    def run(self):
        try:
            self.conn.read_msg()
        except _READ_ERRORS:
            self.results.put("eof")
            return
        self.results.put("msg")

    def on_close(self):
        pass


def _refused_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


def _recv_exact(sock, n):
    data = b""
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


def test_echo_round_trip():
    server = TCPServer(addr="127.0.0.1:0", new_agent=EchoAgent)
    server.start()
    port = server.address[1]
    replies = queue.Queue()
    closed = threading.Event()
    client = TCPClient(
        addr=f"127.0.0.1:{port}",
        connect_interval=0.05,
        new_agent=lambda conn: PingAgent(conn, replies, closed),
    )
    try:
        client.start()
        assert replies.get(timeout=5) == b"ping"
        assert closed.wait(5) is True
    finally:
        client.close(True)
        server.close()


def test_server_rejects_over_max_connections():
    accepted = threading.Event()

    def factory(conn):
        accepted.set()
        return EchoAgent(conn)

    server = TCPServer(addr="127.0.0.1:0", max_conn_num=1, new_agent=factory)
    server.start()
    port = server.address[1]
    results = queue.Queue()
    first = TCPClient(addr=f"127.0.0.1:{port}", connect_interval=0.05,
                      new_agent=lambda conn: ReadAgent(conn, results))
    second = TCPClient(addr=f"127.0.0.1:{port}", connect_interval=0.05,
                       new_agent=lambda conn: ReadAgent(conn, results))
    try:
        first.start()
        assert accepted.wait(5) is True
        second.start()
        assert results.get(timeout=5) == "eof"
    finally:
        first.close(True)
        second.close(True)
        server.close()


def test_server_without_agent_factory_exits():
    server = TCPServer(addr="127.0.0.1:0")
    with pytest.raises(SystemExit):
        server.start()


def test_client_cannot_start_twice():
    client = TCPClient(
        addr=f"127.0.0.1:{_refused_port()}",
        connect_interval=0.05,
        new_agent=EchoAgent,
    )
    client.start()
    try:
        with pytest.raises(SystemExit):
            client.start()
    finally:
        client.close(True)
    assert all(not thread.is_alive() for thread in client._threads)


def test_conn_write_msg_frames_data():
    left, right = socket.socketpair()
    right.settimeout(5)
    parser = MsgParser()
    conn = TCPConn(left, 10, parser)
    try:
        conn.write_msg(b"hi")
        assert _recv_exact(right, 4) == bytes(parser.encode(b"hi"))
    finally:
        conn.destroy()
        right.close()


def test_conn_read_msg_and_release():
    left, right = socket.socketpair()
    parser = MsgParser()
    conn = TCPConn(left, 10, parser)
    try:
        right.sendall(bytes(parser.encode(b"abc")))
        msg = conn.read_msg()
        assert bytes(msg) == b"abc"
        base = msg.obj
        conn.release_read_msg(msg)
        assert parser.pool.make(3).obj is base
    finally:
        conn.destroy()
        right.close()


def test_write_after_close_raises():
    left, right = socket.socketpair()
    conn = TCPConn(left, 10, MsgParser())
    try:
        assert conn.is_connected() is True
        conn.close()
        assert conn.is_connected() is False
        with pytest.raises(ConnectionClosedError):
            conn.write_msg(b"x")
    finally:
        right.close()


def test_close_flushes_then_peer_sees_eof():
    left, right = socket.socketpair()
    right.settimeout(5)
    parser = MsgParser()
    conn = TCPConn(left, 10, parser)
    try:
        conn.write_msg(b"bye")
        conn.close()
        expected = bytes(parser.encode(b"bye"))
        assert _recv_exact(right, len(expected) + 1) == expected
    finally:
        right.close()


def test_destroy_marks_closed():
    left, right = socket.socketpair()
    conn = TCPConn(left, 10, MsgParser())
    try:
        conn.destroy()
        assert conn.is_connected() is False
        with pytest.raises(ConnectionClosedError):
            conn.write_msg(b"x")
    finally:
        right.close()