import http.client
import queue
import socket
import threading
import time

import pytest

from connmux.matchers import (
    HTTP2_CLIENT_PREFACE,
    any_matcher,
    http1,
    http1_fast,
    http2,
)
from connmux.mux import (
    CMux,
    ListenerClosedError,
    MuxConn,
    MuxListener,
    NotMatchedError,
)

HTTP1_BODY = b"http1"


class ChanListener:
    """A listener fed by hand; closing it makes accept fail."""

    def __init__(self):
        self.conns = queue.Queue()

    def accept(self):
        conn = self.conns.get()
        if conn is None:
            self.conns.put(None)
            raise OSError("use of closed network connection")
        return conn

    def close(self):
        self.conns.put(None)


def serve_in_background(mux):
    outcome = {}

    def run():
        try:
            mux.serve()
        except BaseException as err:
            outcome["error"] = err

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, outcome


def accept_within(listener, timeout=5.0):
    box = {}

    def run():
        try:
            box["conn"] = listener.accept()
        except BaseException as err:
            box["error"] = err

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    thread.join(timeout)
    assert not thread.is_alive(), "accept did not return in time"
    if "error" in box:
        raise box["error"]
    return box["conn"]


def recv_exactly(conn, size):
    data = bytearray()
    while len(data) < size:
        chunk = conn.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return bytes(data)


def read_request_head(conn):
    data = bytearray()
    while b"\r\n\r\n" not in data:
        chunk = conn.recv(4096)
        if not chunk:
            break
        data += chunk
    return bytes(data)


def run_http_server(listener):
    conn = listener.accept()
    with conn:
        read_request_head(conn)
        conn.sendall(
            b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\nConnection: close\r\n\r\n"
            + HTTP1_BODY
        )


def run_echo_server(listener, size):
    conn = listener.accept()
    with conn:
        conn.sendall(recv_exactly(conn, size))


def http_get(port):
    client = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        client.request("GET", "/")
        return client.getresponse().read()
    finally:
        client.close()


@pytest.fixture
def tcp_listener():
    listener = socket.create_server(("127.0.0.1", 0))
    listener.settimeout(0.1)
    yield listener
    listener.close()


def stop(listener, thread, outcome):
    listener.close()
    thread.join(5)
    assert not thread.is_alive()
    return outcome.get("error")


def test_read_replays_exactly_the_sniffed_bytes():
    payload = b"hello world\r\n"
    mult = 2
    writer, reader = socket.socketpair()
    writer.sendall(payload * mult)
    writer.close()

    listener = ChanListener()
    listener.conns.put(reader)
    mux = CMux(listener)

    def bogus(r):
        r.read(len(payload))
        return False

    mux.match(bogus)
    anyl = mux.match(any_matcher())
    thread, outcome = serve_in_background(mux)

    conn = accept_within(anyl)
    for _ in range(mult):
        assert conn.recv(len(payload)) == payload
    assert conn.recv(1) == b""
    conn.close()

    err = stop(listener, thread, outcome)
    assert isinstance(err, OSError)
    assert "use of closed network connection" in str(err)


def test_http2_preface_is_replayed():
    writer, reader = socket.socketpair()
    writer.sendall(HTTP2_CLIENT_PREFACE)
    writer.close()

    listener = ChanListener()
    listener.conns.put(reader)
    mux = CMux(listener)

    def bogus(r):
        r.read(1)
        return False

    mux.match(bogus)
    h2l = mux.match(http2())
    thread, outcome = serve_in_background(mux)

    conn = accept_within(h2l)
    assert conn.recv(len(HTTP2_CLIENT_PREFACE)) == HTTP2_CLIENT_PREFACE
    assert conn.recv(1) == b""
    conn.close()

    assert isinstance(stop(listener, thread, outcome), OSError)


def test_any_serves_http(tcp_listener):
    mux = CMux(tcp_listener)
    httpl = mux.match(any_matcher())
    server = threading.Thread(target=run_http_server, args=(httpl,), daemon=True)
    server.start()
    thread, outcome = serve_in_background(mux)

    assert http_get(tcp_listener.getsockname()[1]) == HTTP1_BODY
    server.join(5)

    assert isinstance(stop(tcp_listener, thread, outcome), OSError)


def test_http_and_raw_protocol_share_a_port(tcp_listener):
    mux = CMux(tcp_listener)
    httpl = mux.match(http2(), http1_fast())
    rawl = mux.match(any_matcher())
    payload = b"raw-protocol-payload-0123456789"

    http_server = threading.Thread(target=run_http_server, args=(httpl,), daemon=True)
    echo_server = threading.Thread(
        target=run_echo_server, args=(rawl, len(payload)), daemon=True
    )
    http_server.start()
    echo_server.start()
    thread, outcome = serve_in_background(mux)
    port = tcp_listener.getsockname()[1]

    assert http_get(port) == HTTP1_BODY

    with socket.create_connection(("127.0.0.1", port), timeout=5) as client:
        client.sendall(payload)
        assert recv_exactly(client, len(payload)) == payload

    http_server.join(5)
    echo_server.join(5)
    assert isinstance(stop(tcp_listener, thread, outcome), OSError)


def test_error_handler_sees_not_matched(tcp_listener):
    mux = CMux(tcp_listener)
    mux.match(http2(), http1_fast())
    errors = []
    seen = threading.Event()

    def handler(err):
        errors.append(err)
        seen.set()
        return True

    mux.handle_error(handler)
    thread, outcome = serve_in_background(mux)

    port = tcp_listener.getsockname()[1]
    with socket.create_connection(("127.0.0.1", port), timeout=5) as client:
        client.sendall(b"x" * 24)
        assert client.recv(1) == b""

    assert seen.wait(5)
    not_matched = [err for err in errors if isinstance(err, NotMatchedError)]
    assert len(not_matched) == 1
    assert not_matched[0].temporary is True
    assert "not matched by a matcher" in str(not_matched[0])

    assert isinstance(stop(tcp_listener, thread, outcome), OSError)


def test_error_handler_refusal_closes_root():
    writer, reader = socket.socketpair()
    writer.sendall(b"x" * 24)
    writer.close()

    listener = ChanListener()
    listener.conns.put(reader)
    mux = CMux(listener)
    mux.match(http1_fast())
    mux.handle_error(lambda err: False)
    thread, outcome = serve_in_background(mux)

    thread.join(5)
    assert not thread.is_alive()
    assert isinstance(outcome["error"], OSError)
    assert reader.fileno() == -1


def test_close_either_delivers_or_closes_pending_connection():
    listener = ChanListener()
    c1, c1_peer = socket.socketpair()
    c2, c2_peer = socket.socketpair()

    mux = CMux(listener)
    anyl = mux.match(any_matcher())
    thread, outcome = serve_in_background(mux)

    listener.conns.put(c1)
    first = accept_within(anyl)
    assert first.conn is c1

    listener.conns.put(c2)
    listener.close()

    try:
        second = accept_within(anyl)
    except ListenerClosedError:
        thread.join(5)
        assert c2.fileno() == -1
    else:
        assert second.conn is c2

    thread.join(5)
    assert isinstance(outcome["error"], OSError)
    for sock in (c1, c2, c1_peer, c2_peer):
        sock.close()


def test_listener_reports_closed_after_serve_ends():
    listener = ChanListener()
    mux = CMux(listener)
    anyl = mux.match(any_matcher())
    thread, outcome = serve_in_background(mux)

    listener.close()
    thread.join(5)
    assert isinstance(outcome["error"], OSError)
    for _ in range(2):
        with pytest.raises(ListenerClosedError, match="mux: listener closed"):
            accept_within(anyl)


def test_match_timeout_expires_closes_connection(tcp_listener):
    mux = CMux(tcp_listener, match_timeout=0.1)
    mux.match(http1())
    thread, outcome = serve_in_background(mux)

    port = tcp_listener.getsockname()[1]
    with socket.create_connection(("127.0.0.1", port), timeout=5) as client:
        time.sleep(0.3)
        assert client.recv(1) == b""

    assert isinstance(stop(tcp_listener, thread, outcome), OSError)


def test_match_timeout_does_not_expire_after_match(tcp_listener):
    mux = CMux(tcp_listener, match_timeout=0.1)
    anyl = mux.match(any_matcher())
    thread, outcome = serve_in_background(mux)

    port = tcp_listener.getsockname()[1]
    with socket.create_connection(("127.0.0.1", port), timeout=5) as client:
        matched = accept_within(anyl)
        assert matched.gettimeout() is None
        time.sleep(0.3)
        client.settimeout(0.5)
        with pytest.raises(TimeoutError):
            client.recv(1)
        matched.close()

    assert isinstance(stop(tcp_listener, thread, outcome), OSError)


def test_first_registered_listener_wins():
    writer, reader = socket.socketpair()
    listener = ChanListener()
    listener.conns.put(reader)
    mux = CMux(listener)
    first = mux.match(any_matcher())
    mux.match(any_matcher())
    thread, outcome = serve_in_background(mux)

    conn = accept_within(first)
    assert conn.conn is reader
    conn.close()
    writer.close()
    listener.close()
    thread.join(5)
    assert isinstance(outcome["error"], OSError)


def test_mux_conn_reads_buffer_before_socket():
    writer, reader = socket.socketpair()
    writer.sendall(b"abcdef")
    muxed = MuxConn(reader)
    assert muxed.sniffer().read(4) == b"abcd"
    assert muxed.sniffer().read(2) == b"ab"
    assert muxed.read(2) == b"ab"
    assert muxed.recv(10) == b"cd"
    assert muxed.recv(10) == b"ef"
    writer.close()
    assert muxed.recv(10) == b""
    muxed.close()
    assert reader.fileno() == -1


def test_mux_listener_close_closes_root():
    root = ChanListener()
    listener = MuxListener(root, 1)
    listener.close()
    with pytest.raises(OSError, match="closed"):
        root.accept()


def test_listener_closed_error_is_not_temporary():
    err = ListenerClosedError()
    assert str(err) == "mux: listener closed"
    assert err.temporary is False
    assert err.timeout is False


def test_not_matched_error_names_peer():
    left, right = socket.socketpair()
    err = NotMatchedError(left)
    assert str(err).startswith("mux: connection ")
    assert err.conn is left
    assert err.temporary is True
    left.close()
    right.close()