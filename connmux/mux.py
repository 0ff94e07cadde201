"""Serve several protocols from one listener by sniffing each connection's payload.

A :class:`CMux` accepts connections from a root listener, runs the registered
matchers against the first bytes of each connection and hands the connection
to the first :class:`MuxListener` whose matchers accept it.  The sniffed bytes
are replayed to whoever reads the connection afterwards.
"""

from __future__ import annotations

import errno
import queue
import threading
from contextlib import suppress
from typing import Any, Callable

from .buffer import BufferedReader
from .matchers import Matcher

ErrorHandler = Callable[[BaseException], bool]

DEFAULT_CAPACITY = 1024

_CLOSED = object()
_POLL_INTERVAL = 0.05
_TEMPORARY_ERRNOS = frozenset(
    {errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM, errno.EAGAIN}
)


class MuxError(Exception):
    """Base class of the multiplexer's errors."""

    temporary = False
    timeout = False


class NotMatchedError(MuxError):
    """A connection was not matched by any registered matcher."""

    temporary = True

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        super().__init__(f"mux: connection {_peer(conn)} not matched by a matcher")


class ListenerClosedError(MuxError):
    """The multiplexer stopped serving, so the listener has no more connections."""

    def __init__(self, message: str = "mux: listener closed") -> None:
        super().__init__(message)


def _peer(conn: Any) -> str:
    try:
        return str(conn.getpeername())
    except (AttributeError, OSError):
        return "<unknown>"


def _is_temporary(err: BaseException) -> bool:
    if isinstance(err, MuxError):
        return err.temporary
    if isinstance(err, (TimeoutError, ConnectionAbortedError, InterruptedError)):
        return True
    return isinstance(err, OSError) and err.errno in _TEMPORARY_ERRNOS


def _close_quietly(closable: Any) -> None:
    with suppress(OSError):
        closable.close()


def _set_timeout(conn: Any, value: float | None) -> None:
    settimeout = getattr(conn, "settimeout", None)
    if settimeout is not None:
        with suppress(OSError):
            settimeout(value)


class _ConnSource:
    """Presents a socket-like connection as a reader."""

    def __init__(self, conn: Any) -> None:
        self._conn = conn

    def read(self, size: int) -> bytes:
        return self._conn.recv(size)


class MuxConn:
    """A connection whose sniffed bytes are replayed before fresh data is read."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self._buffer = bytearray()

    def recv(self, size: int) -> bytes:
        """Return buffered bytes if any remain, otherwise read the connection."""
        if self._buffer:
            chunk = bytes(self._buffer[:size])
            del self._buffer[:size]
            return chunk
        return self.conn.recv(size)

    def read(self, size: int) -> bytes:
        """Same as :meth:`recv`."""
        return self.recv(size)

    def sniffer(self) -> BufferedReader:
        """A fresh reader that replays what was sniffed so far and keeps recording."""
        return BufferedReader(_ConnSource(self.conn), self._buffer)

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> MuxConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __getattr__(self, name: str) -> Any:
        if name == "conn":
            raise AttributeError(name)
        return getattr(self.conn, name)


class MuxListener:
    """Accepts only the connections matched for it by a :class:`CMux`."""

    def __init__(self, root: Any, capacity: int = DEFAULT_CAPACITY) -> None:
        self._root = root
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=capacity)

    def accept(self) -> MuxConn:
        """Block until a matched connection arrives.

        Raises :class:`ListenerClosedError` once the multiplexer has stopped.
        """
        item = self._queue.get()
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            raise ListenerClosedError()
        return item

    def close(self) -> None:
        """Close the root listener shared by the multiplexer."""
        self._root.close()

    def __getattr__(self, name: str) -> Any:
        if name == "_root":
            raise AttributeError(name)
        return getattr(self._root, name)

    def _offer(self, conn: MuxConn, done: threading.Event) -> bool:
        while not done.is_set():
            try:
                self._queue.put(conn, timeout=_POLL_INTERVAL)
            except queue.Full:
                continue
            return True
        return False

    def _shutdown(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not _CLOSED:
                _close_quietly(item)
        self._queue.put(_CLOSED)


class CMux:
    """Multiplexes the connections of one listener by their content."""

    def __init__(self, listener: Any, match_timeout: float | None = None) -> None:
        self._root = listener
        self._match_timeout = match_timeout
        self._capacity = DEFAULT_CAPACITY
        self._error_handler: ErrorHandler | None = None
        self._done = threading.Event()
        self._routes: list[tuple[tuple[Matcher, ...], MuxListener]] = []

    def match(self, *matchers: Matcher) -> MuxListener:
        """A listener for connections accepted by any of ``matchers``.

        Listeners registered earlier take priority.
        """
        listener = MuxListener(self._root, self._capacity)
        self._routes.append((matchers, listener))
        return listener

    def handle_error(self, handler: ErrorHandler) -> None:
        """Install a handler that decides whether serving goes on after an error."""
        self._error_handler = handler

    def serve(self) -> None:
        """Accept and dispatch connections until the root listener fails.

        Blocks; the error that stopped it is raised.
        """
        workers: list[threading.Thread] = []
        try:
            while True:
                try:
                    conn = self._accept()
                except Exception as err:
                    if not self._handle_error(err):
                        raise
                    continue
                workers = [worker for worker in workers if worker.is_alive()]
                worker = threading.Thread(
                    target=self._serve_conn, args=(conn,), daemon=True
                )
                workers.append(worker)
                worker.start()
        finally:
            self._done.set()
            for worker in workers:
                worker.join()
            for _, listener in self._routes:
                listener._shutdown()

    def _accept(self) -> Any:
        accepted = self._root.accept()
        if isinstance(accepted, tuple):
            return accepted[0]
        return accepted

    def _serve_conn(self, conn: Any) -> None:
        timed = self._match_timeout is not None and self._match_timeout > 0
        if timed:
            _set_timeout(conn, self._match_timeout)

        muxed = MuxConn(conn)
        for matchers, listener in self._routes:
            for matcher in matchers:
                try:
                    matched = matcher(muxed.sniffer())
                except OSError:
                    matched = False
                if not matched:
                    continue
                if timed:
                    _set_timeout(conn, None)
                if not listener._offer(muxed, self._done):
                    _close_quietly(conn)
                return

        _close_quietly(conn)
        if not self._handle_error(NotMatchedError(conn)):
            _close_quietly(self._root)

    def _handle_error(self, err: BaseException) -> bool:
        if self._error_handler is not None and not self._error_handler(err):
            return False
        return _is_temporary(err)