# origin

Building blocks for clustered server processes, using only the standard
library.

## Modules

- `origin.log` — `Logger` writes coloured, levelled lines (`Level.DEBUG`
  through `Level.FATAL`) to a log file named after the date and time, opened
  anew when the day changes, or to stdout when no directory is given.
  Module-level `debug`, `release`, `warning`, `error`, `stack`, `fatal` take a
  format string; `sdebug`, `srelease`, `swarning`, `serror`, `sstack`,
  `sfatal` join their values (`format_values`). `export` replaces the logger
  those functions use. Fatal messages raise `SystemExit(1)`.
- `origin.profiler` — `reg_profiler(name)` returns a `Profiler`;
  `push(tag)` returns an `Analyzer` whose `pop()` (or leaving it as a context
  manager) ends the timing. Slow calls become `Record`s; `report()` passes
  them to the report function (`default_report_function` logs a summary, or
  set another with `set_report_function`).
- `origin.console` — `CommandLine` registers boolean and string flags, each
  with a callback. `run(argv)` parses `-name`, `-name=value` and
  `-name value`, runs every callback except `start` in registration order,
  then runs `start`; problems raise `CommandError`.
- `origin.event` — `Event`, `EventType`, `EventHandler` and `EventProcessor`.
  `reg_event_receiver_func` subscribes a handler to an event type on a
  processor; `cast_event` pushes an event to every listening processor's
  channel, and `handle_event` runs the bound callbacks.
- `origin.clusterconfig` — reads the JSON files in `<config dir>/cluster`:
  `read_local_cluster_config`, `read_local_service` and
  `load_local_config(config_dir, node_id)`, which returns a
  `LocalClusterConfig`. Malformed configuration raises `ConfigError`.
- `origin.network.mempool` — `MemAreaPool`, a size-bucketed pool of
  reusable buffers (`bucket_capacity` gives the bucket for a size).
- `origin.network.msgparser` — `MsgParser` frames messages with a 1, 2 or 4
  byte length prefix in either byte order; bad lengths raise
  `MessageLengthError`.
- `origin.network.tcp` — `TCPServer` and `TCPClient` run an `Agent` per
  connection over a `TCPConn` with a bounded write queue.
- `origin.network.processor` — `JsonProcessor` (JSON messages selected by
  their `typ` field) and `PBRawProcessor` (a 2-byte type followed by raw
  bytes); errors raise `ProcessorError`.
- `origin.rpc.protocol` — `RpcRequestData`, `RpcResponseData`, the
  `JsonRpcProcessor` codec, `RpcRequest`, `Call` and `RpcError`, with the
  codec registry `append_processor`, `get_processor_type`, `get_processor`.
- `origin.rpc.client` — `Client` sends requests to one node (or serves the
  local node when the address is empty), tracks pending calls and fails
  them after a timeout.
- `origin.rpc.server` — `Server` listens for other nodes and `RpcAgent`
  decodes requests and writes responses.

## Example

```python
from origin.network.msgparser import MsgParser

parser = MsgParser()
parser.set_msg_len(2, 1, 4096)
frame = parser.encode(b"hello")   # 2-byte big-endian length, then the data
```

```python
from origin import profiler

prof = profiler.reg_profiler("game")
with prof.push("tick"):
    ...  # work
profiler.report()
```

## What is not included

- There is no RPC handler class. `Server` and `Client` route requests to
  objects returned by a finder's `find_rpc_handler(name)`; those objects
  must themselves provide `unmarshal_in_param`, `push_rpc_request`,
  `call_method` and, for asynchronous calls, `push_rpc_response`.
- There is no cluster manager, service discovery or node process, and no
  command to start a node; `CommandLine` only parses flags for a program
  you write.

## Installing and testing

```
pip install .[test]
pytest
```