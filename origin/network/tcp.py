"""TCP server and client that run one agent per framed connection."""

from __future__ import annotations

import queue
import socket
import struct
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from origin import log
from origin.network.mempool import MemAreaPool
from origin.network.msgparser import MsgParser


class Agent(ABC):
    """Drives one connection: ``run`` until it ends, then ``on_close``."""

    @abstractmethod
    def run(self) -> None:
        """Serve the connection; returning ends it."""

    @abstractmethod
    def on_close(self) -> None:
        """Called after the connection has been closed."""


AgentFactory = Callable[["TCPConn"], Agent]


class ConnectionClosedError(ConnectionError):
    """Raised when writing to a closed connection."""


def _parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr!r} has no port")
    return host.strip("[]"), int(port)


def _shutdown_close(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


def _set_nodelay(sock: socket.socket) -> None:
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError:
        pass


class TCPConn:
    """A socket with a bounded write queue drained by a writer thread."""

    def __init__(self, sock: socket.socket, pending_write_num: int, msg_parser: MsgParser) -> None:
        self._sock = sock
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, pending_write_num))
        self._parser = msg_parser
        self._lock = threading.Lock()
        self._closed = False
        self._writer = threading.Thread(target=self._write_loop, daemon=True)
        self._writer.start()

    def _write_loop(self) -> None:
        while True:
            data = self._queue.get()
            if data is None:
                break
            try:
                self._sock.sendall(data)
            except OSError:
                self.release_read_msg(data)
                break
            self.release_read_msg(data)
        _shutdown_close(self._sock)
        with self._lock:
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not None:
                    self.release_read_msg(item)
            self._closed = True

    def _do_destroy(self) -> None:
        try:
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        except OSError:
            pass
        _shutdown_close(self._sock)
        if not self._closed:
            try:
                self._queue.put_nowait(None)
            except queue.Full:
                pass
            self._closed = True

    def _do_write(self, data: Any) -> None:
        try:
            self._queue.put_nowait(data)
        except queue.Full:
            self.release_read_msg(data)
            log.serror("close conn: channel full")
            self._do_destroy()

    def destroy(self) -> None:
        """Close at once, discarding anything not yet written."""
        with self._lock:
            self._do_destroy()

    def close(self) -> None:
        """Close after everything queued has been written."""
        with self._lock:
            if self._closed:
                return
            self._do_write(None)
            self._closed = True

    def write(self, data: Any) -> None:
        """Queue raw bytes for sending; ``data`` must not be modified afterwards."""
        with self._lock:
            if self._closed or data is None:
                self.release_read_msg(data)
                return
            self._do_write(data)

    def read(self, size: int) -> bytes:
        return self._sock.recv(size)

    def read_msg(self) -> memoryview:
        """Read one framed message; release it with ``release_read_msg``."""
        return self._parser.read(self)

    def write_msg(self, *args: Any) -> None:
        """Frame ``args`` as one message and queue it."""
        if self._closed:
            raise ConnectionClosedError("conn is close")
        self._parser.write(self, *args)

    def release_read_msg(self, buf: Any) -> None:
        self._parser.pool.release(buf)

    def is_connected(self) -> bool:
        return not self._closed

    @property
    def local_addr(self) -> Any:
        return self._sock.getsockname()

    @property
    def remote_addr(self) -> Any:
        return self._sock.getpeername()


def _make_parser(len_msg_len: int, min_msg_len: int, max_msg_len: int, little_endian: bool) -> MsgParser:
    parser = MsgParser()
    parser.set_msg_len(len_msg_len, min_msg_len, max_msg_len)
    parser.set_byte_order(little_endian)
    return parser


class TCPServer:
    """Accepts connections and runs an agent for each in its own thread."""

    def __init__(
        self,
        addr: str = "",
        max_conn_num: int = 0,
        pending_write_num: int = 0,
        new_agent: Optional[AgentFactory] = None,
        len_msg_len: int = 0,
        min_msg_len: int = 0,
        max_msg_len: int = 0,
        little_endian: bool = False,
    ) -> None:
        self.addr = addr
        self.max_conn_num = max_conn_num
        self.pending_write_num = pending_write_num
        self.new_agent = new_agent
        self.len_msg_len = len_msg_len
        self.min_msg_len = min_msg_len
        self.max_msg_len = max_msg_len
        self.little_endian = little_endian
        self.msg_parser: Optional[MsgParser] = None
        self._listener: Optional[socket.socket] = None
        self._closing = threading.Event()
        self._conns: set[socket.socket] = set()
        self._conns_lock = threading.Lock()
        self._accept_thread: Optional[threading.Thread] = None
        self._conn_threads: list[threading.Thread] = []

    @property
    def address(self) -> Any:
        """The bound address of the listening socket."""
        return None if self._listener is None else self._listener.getsockname()

    @property
    def mempool(self) -> MemAreaPool:
        if self.msg_parser is None:
            raise RuntimeError("server is not started")
        return self.msg_parser.pool

    @mempool.setter
    def mempool(self, pool: MemAreaPool) -> None:
        if self.msg_parser is None:
            raise RuntimeError("server is not started")
        self.msg_parser.pool = pool

    def _init(self) -> None:
        try:
            listener = socket.create_server(_parse_addr(self.addr))
        except (OSError, ValueError) as exc:
            log.sfatal("Listen tcp error:", str(exc))
            return
        if self.max_conn_num <= 0:
            self.max_conn_num = 100
            log.srelease("invalid MaxConnNum, reset to ", self.max_conn_num)
        if self.pending_write_num <= 0:
            self.pending_write_num = 100
            log.srelease("invalid PendingWriteNum, reset to ", self.pending_write_num)
        if self.new_agent is None:
            listener.close()
            log.sfatal("NewAgent must not be nil")
            return
        listener.settimeout(0.1)
        self._listener = listener
        self._conns = set()
        self._closing.clear()
        self.msg_parser = _make_parser(
            self.len_msg_len, self.min_msg_len, self.max_msg_len, self.little_endian
        )

    def start(self) -> None:
        """Listen on ``addr`` and accept connections in a background thread."""
        self._init()
        self._accept_thread = threading.Thread(target=self._run, daemon=True)
        self._accept_thread.start()

    def _run(self) -> None:
        assert self._listener is not None
        delay = 0.0
        while True:
            try:
                sock, _ = self._listener.accept()
            except socket.timeout:
                if self._closing.is_set():
                    return
                continue
            except OSError as exc:
                if self._closing.is_set():
                    return
                delay = min(delay * 2 if delay else 0.005, 1.0)
                log.srelease("accept error:", str(exc), "; retrying in ", delay, "s")
                time.sleep(delay)
                continue
            sock.setblocking(True)
            _set_nodelay(sock)
            delay = 0.0

            with self._conns_lock:
                accepted = len(self._conns) < self.max_conn_num
                if accepted:
                    self._conns.add(sock)
            if not accepted:
                sock.close()
                log.swarning("too many connections")
                continue

            conn = TCPConn(sock, self.pending_write_num, self.msg_parser)
            agent = self.new_agent(conn)
            thread = threading.Thread(target=self._serve, args=(sock, conn, agent), daemon=True)
            self._conn_threads = [t for t in self._conn_threads if t.is_alive()]
            self._conn_threads.append(thread)
            thread.start()

    def _serve(self, sock: socket.socket, conn: TCPConn, agent: Agent) -> None:
        try:
            agent.run()
        finally:
            conn.close()
            with self._conns_lock:
                self._conns.discard(sock)
            agent.on_close()

    def close(self) -> None:
        """Stop accepting, close every connection and wait for the agents."""
        self._closing.set()
        if self._listener is not None:
            self._listener.close()
        if self._accept_thread is not None:
            self._accept_thread.join()
        with self._conns_lock:
            for sock in self._conns:
                _shutdown_close(sock)
            self._conns = set()
        for thread in list(self._conn_threads):
            thread.join()


class TCPClient:
    """Keeps ``conn_num`` connections to ``addr``, optionally reconnecting."""

    def __init__(
        self,
        addr: str = "",
        conn_num: int = 0,
        connect_interval: float = 0.0,
        pending_write_num: int = 0,
        auto_reconnect: bool = False,
        new_agent: Optional[AgentFactory] = None,
        len_msg_len: int = 0,
        min_msg_len: int = 0,
        max_msg_len: int = 0,
        little_endian: bool = False,
    ) -> None:
        self.addr = addr
        self.conn_num = conn_num
        self.connect_interval = connect_interval
        self.pending_write_num = pending_write_num
        self.auto_reconnect = auto_reconnect
        self.new_agent = new_agent
        self.len_msg_len = len_msg_len
        self.min_msg_len = min_msg_len
        self.max_msg_len = max_msg_len
        self.little_endian = little_endian
        self.msg_parser: Optional[MsgParser] = None
        self._lock = threading.Lock()
        self._cons: Optional[set[socket.socket]] = None
        self._closed = threading.Event()
        self._threads: list[threading.Thread] = []

    def _init(self) -> None:
        with self._lock:
            if self.conn_num <= 0:
                self.conn_num = 1
                log.srelease("invalid ConnNum, reset to ", self.conn_num)
            if self.connect_interval <= 0:
                self.connect_interval = 3.0
                log.srelease("invalid ConnectInterval, reset to ", self.connect_interval, "s")
            if self.pending_write_num <= 0:
                self.pending_write_num = 1000
                log.srelease("invalid PendingWriteNum, reset to ", self.pending_write_num)
            if self.new_agent is None:
                log.sfatal("NewAgent must not be nil")
            if self._cons is not None:
                log.sfatal("client is running")
            self._cons = set()
            self._closed.clear()
            self.msg_parser = _make_parser(
                self.len_msg_len, self.min_msg_len, self.max_msg_len, self.little_endian
            )

    def start(self) -> None:
        """Open the connections, each in its own thread."""
        self._init()
        self._threads = []
        for _ in range(self.conn_num):
            thread = threading.Thread(target=self._connect, daemon=True)
            self._threads.append(thread)
            thread.start()

    def _dial(self) -> Optional[socket.socket]:
        while True:
            try:
                sock = socket.create_connection(
                    _parse_addr(self.addr), timeout=self.connect_interval
                )
            except (OSError, ValueError) as exc:
                if self._closed.is_set():
                    return None
                log.swarning("connect to ", self.addr, " error:", str(exc))
                if self._closed.wait(self.connect_interval):
                    return None
                continue
            if self._closed.is_set():
                return sock
            sock.settimeout(None)
            _set_nodelay(sock)
            return sock

    def _connect(self) -> None:
        while True:
            sock = self._dial()
            if sock is None:
                return
            with self._lock:
                if self._closed.is_set() or self._cons is None:
                    sock.close()
                    return
                self._cons.add(sock)

            conn = TCPConn(sock, self.pending_write_num, self.msg_parser)
            agent = self.new_agent(conn)
            try:
                agent.run()
            finally:
                conn.close()
                with self._lock:
                    if self._cons is not None:
                        self._cons.discard(sock)
                agent.on_close()

            if not self.auto_reconnect or self._closed.wait(self.connect_interval):
                return

    def close(self, wait_done: bool = True) -> None:
        """Close every connection; with ``wait_done`` wait for the agents to finish."""
        with self._lock:
            self._closed.set()
            for sock in self._cons or ():
                _shutdown_close(sock)
            self._cons = None
        if wait_done:
            for thread in self._threads:
                thread.join()