"""RPC server: accepts node connections and dispatches requests to handlers."""

from __future__ import annotations

import traceback
from typing import Any, Callable, Optional

from origin import log
from origin.network.tcp import Agent, TCPServer
from origin.rpc.protocol import (
    Call,
    RpcError,
    RpcRequest,
    convert_error,
    get_processor,
    get_processor_type,
)


class RpcAgent(Agent):
    """Serves one incoming connection: reads requests and writes responses."""

    def __init__(self, conn: Any, rpc_server: "Server") -> None:
        self.conn = conn
        self.rpc_server = rpc_server
        self.user_data: Any = None

    def write_response(
        self,
        processor: Any,
        service_method: str,
        seq: int,
        reply: Any,
        rpc_error: Optional[RpcError],
    ) -> None:
        """Encode and send a response; an unencodable reply becomes its error."""
        encoded_reply: Optional[bytes] = None
        if reply is not None:
            try:
                encoded_reply = processor.marshal(reply)
            except (TypeError, ValueError) as exc:
                rpc_error = convert_error(exc)
        response = processor.make_rpc_response(seq, rpc_error, encoded_reply)
        try:
            data = processor.marshal(response)
        except (TypeError, ValueError) as exc:
            log.serror("service method ", service_method, " Marshal error:", str(exc))
            return
        try:
            self.conn.write_msg(bytes([int(processor.processor_type)]), data)
        except Exception as exc:
            log.serror("Rpc ", service_method, " return is error:", str(exc))

    def _responder(self, processor: Any, request: RpcRequest) -> Callable[[Any, Any], None]:
        data = request.rpc_request_data

        def handle(returns: Any, err: Optional[RpcError]) -> None:
            self.write_response(processor, data.service_method, data.seq, returns, err)

        return handle

    def run(self) -> None:
        """Read and dispatch requests until the connection ends."""
        while True:
            try:
                data = self.conn.read_msg()
            except Exception as exc:
                log.serror("remoteAddress:", str(self.remote_addr), ",read message: ", str(exc))
                break

            processor = get_processor(data[0])
            if processor is None:
                self.conn.release_read_msg(data)
                log.serror(
                    "remote rpc  ", str(self.remote_addr), " cannot find processor:", int(data[0])
                )
                return

            request_data = processor.make_rpc_request(0, 0, "", False, None)
            request = RpcRequest(rpc_request_data=request_data, rpc_processor=processor)
            try:
                processor.unmarshal(data[1:], request_data)
            except (TypeError, ValueError) as exc:
                log.serror("rpc Unmarshal request is error:", str(exc))
                if request_data.seq > 0:
                    if not request_data.no_reply:
                        self.write_response(
                            processor,
                            request_data.service_method,
                            request_data.seq,
                            None,
                            RpcError(str(exc)),
                        )
                    continue
                break
            finally:
                self.conn.release_read_msg(data)

            method = request_data.service_method
            handler = self.rpc_server._find(method.split(".")[0])
            if handler is None:
                message = f"service method {method} not config!"
                if not request_data.no_reply:
                    self.write_response(
                        processor, method, request_data.seq, None, RpcError(message)
                    )
                log.serror(message)
                continue

            if not request_data.no_reply:
                request.request_handle = self._responder(processor, request)

            try:
                request.in_param = handler.unmarshal_in_param(
                    processor, method, request_data.rpc_method_id, request_data.in_param
                )
            except Exception as exc:
                message = f"Call Rpc {method} Param error {exc}"
                if request.request_handle is not None:
                    request.request_handle(None, RpcError(message))
                log.serror(message)
                continue

            try:
                handler.push_rpc_request(request)
            except Exception as exc:
                if not request_data.no_reply:
                    self.write_response(
                        processor, method, request_data.seq, None, convert_error(exc)
                    )

    def on_close(self) -> None:
        pass

    @property
    def local_addr(self) -> Any:
        return self.conn.local_addr

    @property
    def remote_addr(self) -> Any:
        return self.conn.remote_addr

    def close(self) -> None:
        self.conn.close()

    def destroy(self) -> None:
        self.conn.destroy()


class Server:
    """Listens for other nodes and routes requests through ``rpc_handle_finder``."""

    def __init__(self, rpc_handle_finder: Any = None, little_endian: bool = False) -> None:
        self.rpc_handle_finder = rpc_handle_finder
        self.little_endian = little_endian
        self.tcp_server: Optional[TCPServer] = None

    def _find(self, handler_name: str) -> Any:
        if self.rpc_handle_finder is None:
            return None
        return self.rpc_handle_finder.find_rpc_handler(handler_name)

    def start(self, listen_addr: str) -> None:
        """Listen on every interface at the port of ``listen_addr`` ("host:port")."""
        parts = listen_addr.split(":")
        if len(parts) != 2:
            raise ValueError(f"listen addr is error :{listen_addr}")
        self.tcp_server = TCPServer(
            addr=":" + parts[1],
            max_conn_num=10000,
            pending_write_num=2000000,
            new_agent=self.new_agent,
            len_msg_len=2,
            min_msg_len=2,
            max_msg_len=0xFFFF,
            little_endian=self.little_endian,
        )
        self.tcp_server.start()

    @property
    def address(self) -> Any:
        return None if self.tcp_server is None else self.tcp_server.address

    def close(self) -> None:
        if self.tcp_server is not None:
            self.tcp_server.close()

    def new_agent(self, conn: Any) -> RpcAgent:
        return RpcAgent(conn, self)

    def myself_rpc_handler_go(
        self, handler_name: str, service_method: str, args: Any, reply: Any
    ) -> Any:
        """Call a method of a local handler directly."""
        handler = self._find(handler_name)
        if handler is None:
            err = RpcError(f"service method {service_method} not config!")
            log.serror(str(err))
            raise err
        return handler.call_method(service_method, args, reply)

    def self_node_rpc_handler_go(
        self,
        processor: Any,
        client: Any,
        no_reply: bool,
        handler_name: str,
        rpc_method_id: int,
        service_method: str,
        args: Any,
        reply: Any,
        raw_args: Optional[bytes],
    ) -> Call:
        """Queue a request on a local handler; the returned call completes with it."""
        call = Call(service_method=service_method, reply=reply, seq=client.generate_seq())

        handler = self._find(handler_name)
        if handler is None:
            call.seq = 0
            call.err = RpcError(f"service method {service_method} not config!")
            log.serror(str(call.err))
            call.finish()
            return call

        if processor is None:
            _, processor = get_processor_type(args)
        request = RpcRequest(
            rpc_request_data=processor.make_rpc_request(
                0, rpc_method_id, service_method, no_reply, None
            ),
            in_param=args,
            local_reply=reply,
            rpc_processor=processor,
        )
        if raw_args is not None:
            try:
                request.in_param = handler.unmarshal_in_param(
                    processor, service_method, rpc_method_id, raw_args
                )
            except Exception as exc:
                call.err = exc
                call.finish()
                return call

        if not no_reply:
            client.add_pending(call)

            def handle(returns: Any, err: Optional[RpcError]) -> None:
                if reply is not None and returns is not None and returns is not reply:
                    try:
                        processor.unmarshal(processor.marshal(returns), reply)
                    except (TypeError, ValueError):
                        log.serror("returns data cannot be copied ", call.seq)
                if client.remove_pending(call.seq) is None:
                    log.serror("rpcClient cannot find seq ", call.seq, " in pending")
                    return
                call.err = err if err is not None and str(err) else None
                call.finish()

            request.request_handle = handle

        try:
            handler.push_rpc_request(request)
        except Exception as exc:
            call.err = exc
            call.finish()
        return call

    def self_node_rpc_handler_async_go(
        self,
        client: Any,
        caller_rpc_handler: Any,
        no_reply: bool,
        handler_name: str,
        service_method: str,
        args: Any,
        reply: Any,
        callback: Callable[..., Any],
    ) -> None:
        """Queue a request on a local handler; the response goes back to the caller."""
        handler = self._find(handler_name)
        if handler is None:
            err = RpcError(f"service method {service_method} not config!")
            log.serror(str(err))
            raise err

        _, processor = get_processor_type(args)
        request = RpcRequest(
            rpc_request_data=processor.make_rpc_request(0, 0, service_method, no_reply, None),
            in_param=args,
            local_reply=reply,
            rpc_processor=processor,
        )

        call_seq = 0
        if not no_reply:
            call_seq = client.generate_seq()
            call = Call(
                seq=call_seq,
                service_method=service_method,
                rpc_handler=caller_rpc_handler,
                callback=callback,
                reply=reply,
            )
            client.add_pending(call)

            def handle(returns: Any, err: Optional[RpcError]) -> None:
                if client.remove_pending(call_seq) is None:
                    log.serror("rpcClient cannot find seq ", call_seq, " in pending")
                    return
                call.err = err if err is not None and str(err) else None
                if returns is not None:
                    call.reply = returns
                try:
                    call.rpc_handler.push_rpc_response(call)
                except Exception as exc:
                    log.serror("push rpc response error:", str(exc), "\n", traceback.format_exc())

            request.request_handle = handle

        try:
            handler.push_rpc_request(request)
        except Exception:
            if call_seq:
                client.remove_pending(call_seq)
            raise