# connmux

`connmux` lets one listening socket serve several protocols. Each accepted
connection is matched on its first bytes and handed to the listener whose
matchers accept it. Those bytes are buffered, so the code that gets the
connection still reads the stream from its start.

## Installation

```
pip install connmux
```

To run the tests as well:

```
pip install "connmux[test]"
pytest
```

## Usage

```python
import socket
import threading

from connmux.mux import CMux, ListenerClosedError
from connmux.matchers import any_matcher, http1_fast, http2, http2_header_field

server = socket.create_server(("127.0.0.1", 8080))
mux = CMux(server)

# Matchers are tried in the order in which match() is called.
grpc_listener = mux.match(http2_header_field("content-type", "application/grpc"))
h2_listener = mux.match(http2())
http_listener = mux.match(http1_fast())
other_listener = mux.match(any_matcher())


def handle(listener):
    while True:
        try:
            conn = listener.accept()
        except ListenerClosedError:
            return
        data = conn.recv(4096)  # starts with the bytes the matchers saw
        ...


for listener in (grpc_listener, h2_listener, http_listener, other_listener):
    threading.Thread(target=handle, args=(listener,), daemon=True).start()

mux.serve()  # blocks; raises the error that made it stop
```

The root listener may be anything with `accept()` (returning a connection or
a `(connection, address)` pair, as `socket.socket.accept` does) and
`close()`. Connections need `recv(size)` and `close()`; `settimeout()` is used
when present.

## Modules

### `connmux.mux`

- `CMux(listener, match_timeout=None)` – the multiplexer.
  - `match(*matchers)` returns a `MuxListener` for connections accepted by
    any of the given matchers. Listeners registered earlier take priority.
  - `serve()` accepts connections and runs the matchers for each one in its
    own thread. It blocks until accepting fails with an error that is not
    passed over, and raises that error. On the way out it waits for the
    matching threads, closes connections still queued for the listeners, and
    makes every listener's `accept()` raise `ListenerClosedError`.
  - `handle_error(handler)` installs a handler called with each error.
- `MuxListener` – `accept()` blocks until a matched connection arrives and
  returns it as a `MuxConn`; `close()` closes the shared root listener; other
  attributes are those of the root listener.
- `MuxConn` – wraps an accepted connection. `recv(size)` (and its alias
  `read(size)`) first returns the bytes buffered while matching, then reads
  the connection. `sniffer()` gives a fresh reader for matchers; `close()`
  closes the connection. It works as a context manager, and other attributes
  are passed on to the wrapped connection.
- `NotMatchedError` – reported for a connection that no matcher accepted.
- `ListenerClosedError` – raised by `MuxListener.accept()` after `serve()`
  has stopped.

### `connmux.matchers`

A matcher is a callable that takes a reader with a `read(size)` method
returning bytes, and returns `True` when the connection belongs to its
listener.

- `any_matcher()` accepts every connection.
- `prefix_matcher(*prefixes)` accepts connections that start with one of the
  given strings or byte strings.
- `http1_fast(*extra_methods)` checks only for a known HTTP method at the
  start: `OPTIONS`, `GET`, `HEAD`, `POST`, `PUT`, `DELETE`, `TRACE`,
  `CONNECT`, plus any extra methods given.
- `http1()` parses the request line, reading at most 4096 bytes, and accepts
  HTTP/1.x.
- `http2()` looks for the HTTP/2 client connection preface.
- `http1_header_field(name, value)` parses the head of the first HTTP/1
  request and compares the first header called `name` (case-insensitive) with
  `value`; a missing header compares as the empty string.
- `http2_header_field(name, value)` decodes the HTTP/2 frames after the
  preface until the first request's header block is complete, and accepts
  the connection if it holds exactly `name: value`.
- `parse_request_line(line)` splits a request line into method, URI and
  protocol, raising `ValueError` when it has fewer than two spaces.

### `connmux.patricia` and `connmux.buffer`

`PatriciaTree(*keys)` holds a fixed set of strings; `match(reader)` tells
whether the stream equals one of them and `match_prefix(reader)` whether it
starts with one. `BufferedReader(source, buffer)` replays the bytes in
`buffer` and then reads from `source`, appending what it reads to `buffer`.

## Timeouts and errors

With `match_timeout` set, the connection's timeout is set to that many
seconds while matching and cleared once a matcher accepts it. A read that
times out, or fails in any other way, counts as "not matched". A connection
that no matcher accepts is closed and reported as `NotMatchedError`.

Errors decide whether serving goes on. If a handler is installed and returns
`False`, serving stops: for an error from accepting, `serve()` raises it; for
`NotMatchedError`, the root listener is closed, which ends `serve()`. When the
handler returns `True`, or none is installed, serving goes on only for
temporary errors: `NotMatchedError`, timeouts, aborted connections,
interrupted calls, and running out of file descriptors, buffers or memory.
Any other error from the root listener, such as it having been closed, ends
`serve()`.

## What it does not do

`connmux` only routes connections. It has no protocol servers of its own and
no command-line tool: HTTP, HTTP/2 or any other protocol is handled by your
code reading from the connections that each `MuxListener` hands out. It does
not do TLS either; to sniff inside TLS, wrap the accepted connections
yourself and build another `CMux` on top.