"""RPC client: sends requests to one node and matches responses to pending calls."""

from __future__ import annotations

import itertools
import threading
import time
import traceback
from collections import OrderedDict
from typing import Any, Callable, Optional

from origin import log
from origin.network.tcp import Agent, TCPClient, TCPConn
from origin.rpc.protocol import (
    Call,
    RpcError,
    RpcResponseData,
    get_processor,
    get_processor_type,
)

TriggerRpcEvent = Callable[[bool, int, int], Any]

CHECK_INTERVAL = 5.0
DEFAULT_CALL_TIMEOUT = 15.0
DEFAULT_MAX_CHECK_COUNT = 1000

_client_seq = itertools.count(1)
_client_seq_lock = threading.Lock()


def _next_client_seq() -> int:
    with _client_seq_lock:
        return next(_client_seq)


class Client(Agent):
    """Connection to one node; an empty address means the local node."""

    def __init__(
        self,
        trigger_rpc_event: Optional[TriggerRpcEvent] = None,
        little_endian: bool = False,
    ) -> None:
        self.trigger_rpc_event = trigger_rpc_event
        self.little_endian = little_endian
        self.client_seq = 0
        self.node_id = 0
        self.addr = ""
        self.self_node = False
        self.conn: Optional[TCPConn] = None
        self.call_rpc_timeout = DEFAULT_CALL_TIMEOUT
        self.max_check_call_rpc_count = DEFAULT_MAX_CHECK_COUNT
        self._pending_lock = threading.Lock()
        self._pending: "OrderedDict[int, Call]" = OrderedDict()
        self._seq_lock = threading.Lock()
        self._start_seq = 0
        self._tcp: Optional[TCPClient] = None
        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None

    def connect(self, node_id: int, addr: str) -> None:
        """Start connecting to ``addr``; with an empty address serve the local node."""
        self.client_seq = _next_client_seq()
        self.node_id = node_id
        self.addr = addr
        self.reset_pending()
        self._stop.clear()
        self._timer = threading.Thread(target=self._check_loop, daemon=True)
        self._timer.start()
        if not addr:
            self.self_node = True
            return
        self._tcp = TCPClient(
            addr=addr,
            conn_num=1,
            connect_interval=2.0,
            pending_write_num=200000,
            auto_reconnect=True,
            new_agent=self.new_client_agent,
            len_msg_len=2,
            min_msg_len=2,
            max_msg_len=0xFFFF,
            little_endian=self.little_endian,
        )
        self._tcp.start()

    def _check_loop(self) -> None:
        while not self._stop.wait(CHECK_INTERVAL):
            self.check_rpc_call_timeout()

    def new_client_agent(self, conn: TCPConn) -> "Client":
        self.conn = conn
        self.reset_pending()
        return self

    def _dispatch(self, call: Call) -> None:
        if call.callback is not None:
            call.rpc_handler.push_rpc_response(call)
        else:
            call.finish()

    def check_rpc_call_timeout(self) -> int:
        """Fail the oldest calls that have waited too long; return how many failed."""
        now = time.monotonic()
        failed = 0
        for _ in range(self.max_check_call_rpc_count):
            with self._pending_lock:
                if not self._pending:
                    break
                seq, call = next(iter(self._pending.items()))
                if now - call.call_time <= self.call_rpc_timeout:
                    break
                del self._pending[seq]
            call.err = RpcError(
                f"RPC call takes more than {int(self.call_rpc_timeout)} seconds"
            )
            self._dispatch(call)
            failed += 1
        return failed

    def reset_pending(self) -> None:
        """Fail every pending call as disconnected and start a fresh table."""
        with self._pending_lock:
            old, self._pending = self._pending, OrderedDict()
        for call in old.values():
            call.err = RpcError("node is disconnect")
            call.finish()

    def add_pending(self, call: Call) -> None:
        with self._pending_lock:
            call.call_time = time.monotonic()
            self._pending[call.seq] = call

    def remove_pending(self, seq: int) -> Optional[Call]:
        if seq == 0:
            return None
        with self._pending_lock:
            return self._pending.pop(seq, None)

    def find_pending(self, seq: int) -> Optional[Call]:
        with self._pending_lock:
            return self._pending.get(seq)

    def generate_seq(self) -> int:
        with self._seq_lock:
            self._start_seq += 1
            return self._start_seq

    def async_call(
        self,
        rpc_handler: Any,
        service_method: str,
        callback: Callable[..., Any],
        args: Any,
        reply: Any,
    ) -> None:
        """Send a request whose response goes to ``rpc_handler.push_rpc_response``."""
        processor_type, processor = get_processor_type(args)
        in_param = processor.marshal(args)
        seq = self.generate_seq()
        request = processor.make_rpc_request(seq, 0, service_method, False, in_param)
        data = processor.marshal(request)
        conn = self.conn
        if conn is None:
            raise RpcError(f"Rpc server is disconnect,call {service_method}")
        call = Call(
            seq=seq,
            service_method=service_method,
            reply=reply,
            callback=callback,
            rpc_handler=rpc_handler,
        )
        self.add_pending(call)
        try:
            conn.write_msg(bytes([int(processor_type)]), data)
        except Exception:
            self.remove_pending(seq)
            raise

    def raw_go(
        self,
        processor: Any,
        no_reply: bool,
        rpc_method_id: int,
        service_method: str,
        args: Optional[bytes],
        reply: Any,
    ) -> Call:
        """Send already encoded arguments; failures are set on the returned call."""
        call = Call(service_method=service_method, reply=reply, seq=self.generate_seq())
        request = processor.make_rpc_request(
            call.seq, rpc_method_id, service_method, no_reply, args
        )
        try:
            data = processor.marshal(request)
        except (TypeError, ValueError) as exc:
            call.seq = 0
            call.err = exc
            return call
        conn = self.conn
        if conn is None:
            call.seq = 0
            call.err = RpcError(
                f"{service_method}  was called failed,rpc client is disconnect"
            )
            return call
        if not no_reply:
            self.add_pending(call)
        try:
            conn.write_msg(bytes([int(processor.processor_type)]), data)
        except Exception as exc:
            self.remove_pending(call.seq)
            call.seq = 0
            call.err = exc
        return call

    def go(self, no_reply: bool, service_method: str, args: Any, reply: Any) -> Call:
        """Encode ``args`` and send them; wait on the returned call for the reply."""
        _, processor = get_processor_type(args)
        try:
            in_param = processor.marshal(args)
        except (TypeError, ValueError) as exc:
            return Call(service_method=service_method, err=exc)
        return self.raw_go(processor, no_reply, 0, service_method, in_param, reply)

    def _fire(self, connected: bool) -> None:
        if self.trigger_rpc_event is not None:
            self.trigger_rpc_event(connected, self.client_seq, self.node_id)

    def run(self) -> None:
        """Read responses until the connection ends."""
        try:
            self._fire(True)
            self._read_loop()
        except Exception as exc:
            log.serror("core dump info[", str(exc), "]\n", traceback.format_exc())

    def _read_loop(self) -> None:
        conn = self.conn
        if conn is None:
            return
        while True:
            try:
                data = conn.read_msg()
            except Exception as exc:
                log.serror("rpcClient ", self.addr, " ReadMsg error:", str(exc))
                return

            processor = get_processor(data[0])
            if processor is None:
                conn.release_read_msg(data)
                log.serror("rpcClient ", self.addr, " ReadMsg head error:", int(data[0]))
                return

            response = RpcResponseData()
            try:
                processor.unmarshal(data[1:], response)
            except (TypeError, ValueError) as exc:
                log.serror("rpcClient Unmarshal head error:", str(exc))
                continue
            finally:
                conn.release_read_msg(data)

            call = self.remove_pending(response.seq)
            if call is None:
                log.serror("rpcClient cannot find seq ", response.seq, " in pending")
                continue
            call.err = None
            if response.reply:
                try:
                    call.reply = processor.unmarshal(response.reply, call.reply)
                except (TypeError, ValueError) as exc:
                    log.serror("rpcClient Unmarshal body error:", str(exc))
                    call.err = exc
            if response.err is not None:
                call.err = response.err
            self._dispatch(call)

    def on_close(self) -> None:
        self._fire(False)

    def is_connected(self) -> bool:
        return self.self_node or (self.conn is not None and self.conn.is_connected())

    def close(self, wait_done: bool = True) -> None:
        """Stop the timeout checks and close the connection."""
        self._stop.set()
        if self._tcp is not None:
            self._tcp.close(wait_done)