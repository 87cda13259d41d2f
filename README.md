# murakami

An in-memory, append-only stream store, plus the pieces of a threaded TCP
server that can sit in front of it. The package needs nothing outside the
standard library.

| Module | What it holds |
| --- | --- |
| `murakami.logtree` | `LogTree`, an append-only log shaped as a radix tree, and its `Node` |
| `murakami.store` | `InMemoryStreamStore`, `Record`, the `StoreError` family, `timestamp_key_generator`, `pad_key` |
| `murakami.connection` | `Connection`, `ConnectionPool` and the size and deadline constants |
| `murakami.server` | `Server`, `ServerState`, `TcpListener`, `ExponentialAcceptDelayer`, the `ServerError` family |

## Installation

```
pip install .
```

## The log

`LogTree` stores values under string keys. A key must be non-empty, and each
key must be greater than or equal to the key appended before it. If it is
not, `append` raises `ValueError`. Values under the same key are numbered
from 0 by a sequence number. Trimming does not change these numbers.

```python
from murakami.logtree import LogTree

log = LogTree()
log.append("1000", ["a", "b"])
log.append("2000", ["c"])

log.read("1000", 1, 10)      # ["b", "c"]: from key "1000", sequence 1, at most 10
log.last_position()          # ("2000", 0); ("", -1) when the log is empty
log.trim("2000", 0)          # removes every value before ("2000", 0)
len(log)                     # 1
```

`read` raises `ValueError` for a negative sequence number or a limit below 1.
`trim` raises `ValueError` for a negative sequence number. Keys are compared
as strings, so give them a fixed width. The store does this by padding.

## The stream store

`InMemoryStreamStore` holds named streams of `Record(id, value)` objects. It
is safe to use from several threads.

Record ids have the form `<millis>-<seq>`. When an append gives no
`millis_id`, the key generator passed to the constructor supplies one.
`timestamp_key_generator()` returns a generator that gives the current Unix
time in milliseconds. Any zero-argument callable that returns a digit string
works too. Within one stream, appends with the same millisecond part continue
its sequence numbers.

```python
from murakami.store import InMemoryStreamStore, timestamp_key_generator

store = InMemoryStreamStore(timestamp_key_generator())
store.create_stream("events")

last_id = store.append_records("events", [b"one", b"two"], millis_id="1000")
# last_id == "1000-1"
store.append_records("events", [b"three"], millis_id="1000")   # "1000-2"

for record in store.read_records("events", "0-0", 10, 0):
    print(record.id, record.value)

store.trim_stream("events", "1000-1")   # drops every record before 1000-1
store.delete_stream("events")
```

Store failures raise subclasses of `StoreError`:

- `StreamExistsError`: a stream with that name already exists.
- `UnknownStreamError`: the named stream does not exist.
- `NonMonotonicIDError`: the append's millisecond part is below the stream's last one.

Malformed input raises `ValueError`. That covers an empty stream name, an
empty record list, an id that is not `<digits>-<digits>`, a millisecond part
longer than 20 digits, a negative `block` and a `count` below 1.

### Blocking reads

`read_records(name, min_id, count, block, cancel)` returns at once when
records are available or when `block` is 0. Otherwise it waits up to `block`
seconds for an append and then reads again.

- If the wait times out, it returns an empty list.
- If the stream is deleted while it waits, it also returns an empty list, not an error.
- If a `threading.Event` is passed as `cancel` and it is set during the wait,
  the read raises `concurrent.futures.CancelledError`.

`pad_key(key)` left-pads a millisecond string with zeros to 20 characters.
The store uses it so that numeric keys sort correctly.

## Connections and the server

`Connection` wraps one socket at a time with a read buffer and a write
buffer. It is meant to be reused across sessions:

- `attach(sock)` starts a session.
- `detach()` ends it. It does not close the socket.
- `reset_limits()` starts a new exchange. It sets a read budget of
  `max_payload_size + read_buffer_size` bytes. It also sets a read deadline
  of `READ_DEADLINE` (10 s) and a write deadline of `WRITE_DEADLINE` (15 s).
  Once the budget is used up, reads behave as if the stream had ended. A
  deadline that has passed raises `TimeoutError`.
- `read(size)` and `readline()` return `b""` at end of stream or when detached.
- `write(data)` buffers the data and raises `EOFError` when detached.
- `flush()` sends everything buffered.

`ConnectionPool(size, ...)` creates `size` connections up front (1024 by
default). `get()` blocks while the pool is empty. `put()` drops the
connection if the pool is already full.

`Server(connection_provider, listener, accept_delayer, address)` works as
follows:

- `start(handler)` listens on `address` and accepts sockets until the server
  is stopped. Each accepted socket is served on its own thread.
- The handler is called as `handler(shutdown, connection)` once per exchange.
  `shutdown` is a `threading.Event` that is set when the accept loop ends.
  After each call the server flushes the connection.
- If the handler raises, or the flush fails, the session ends and the socket
  is closed.
- An accept that raises `TimeoutError` calls the delayer's `backoff()`. A
  successful accept calls its `reset()`.
- `ExponentialAcceptDelayer(initial, maximum, sleep)` starts at `initial`
  seconds and doubles each time, up to `maximum` (`DEFAULT_MAX_ACCEPT_DELAY`,
  1 s).

```python
import threading

from murakami.connection import ConnectionPool
from murakami.server import ExponentialAcceptDelayer, Server, TcpListener


def echo(shutdown, connection):
    line = connection.readline()
    if not line:
        raise EOFError("client closed the connection")
    connection.write(line)


server = Server(ConnectionPool(size=64), TcpListener(), ExponentialAcceptDelayer(0.005), "127.0.0.1:7000")
thread = threading.Thread(target=server.start, args=(echo,))
thread.start()
# ... serve clients ...
server.stop(timeout=5)
thread.join()
```

A server goes from `ServerState.IDLE` to `RUNNING` to `STOPPED`. `state`
reports which one it is in. A stopped server cannot be started again.
`start` raises these errors:

- `AlreadyStartedError` when the server is already running.
- `AlreadyStoppedError` when it has been stopped.
- `ServerError` when it cannot listen.
- Any accept error other than a timeout, re-raised.

`stop(timeout)` closes the listener and waits for active sessions to end. It
raises `TimeoutError` if sessions are still running after `timeout` seconds.
A second `stop` raises `AlreadyStoppedError`.

## What this package does not do

- There is no wire protocol. Nothing parses client commands or maps them
  onto `InMemoryStreamStore`; you write that in your handler.
- There is no command-line program that starts a server.
- Streams live only in memory. Nothing is written to disk.

## Running the tests

```
pip install ".[test]"
pytest
```