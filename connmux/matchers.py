"""Matchers that decide from a connection's first bytes which protocol it speaks."""

from __future__ import annotations

import string
from typing import Any, Callable

from h2.config import H2Configuration
from h2.connection import H2Connection
from h2.events import RequestReceived
from h2.exceptions import H2Error

from .buffer import _read_full
from .patricia import PatriciaTree

Matcher = Callable[[Any], bool]

HTTP2_CLIENT_PREFACE = b"PRI * HTTP/2.0\r\n\r\nSM\r\n\r\n"
MAX_HTTP_READ = 4096
DEFAULT_HTTP_METHODS = (
    "OPTIONS",
    "GET",
    "HEAD",
    "POST",
    "PUT",
    "DELETE",
    "TRACE",
    "CONNECT",
)

_CHUNK = 4096
_TOKEN_CHARS = frozenset(string.ascii_letters + string.digits + "!#$%&'*+-.^_`|~")


def _constant_matcher(result: bool) -> Matcher:
    """A matcher that gives ``result`` without reading the connection."""

    def _match(reader: Any) -> bool:
        return result

    return _match


def any_matcher() -> Matcher:
    """A matcher that accepts every connection."""
    return _constant_matcher(True)


def prefix_matcher(*prefixes: str | bytes) -> Matcher:
    """A matcher accepting connections that start with any of ``prefixes``."""
    return PatriciaTree(*prefixes).match_prefix


def http1_fast(*extra_methods: str) -> Matcher:
    """Match only the request method; optimistic but cheap."""
    return prefix_matcher(*DEFAULT_HTTP_METHODS, *extra_methods)


def parse_request_line(line: str) -> tuple[str, str, str]:
    """Split an HTTP request line into method, URI and protocol."""
    method, sep, rest = line.partition(" ")
    if not sep:
        raise ValueError(f"malformed HTTP request line {line!r}")
    uri, sep, proto = rest.partition(" ")
    if not sep:
        raise ValueError(f"malformed HTTP request line {line!r}")
    return method, uri, proto


def _parse_http_version(proto: str) -> tuple[int, int]:
    if proto == "HTTP/1.1":
        return 1, 1
    if proto == "HTTP/1.0":
        return 1, 0
    if not proto.startswith("HTTP/") or len(proto) != len("HTTP/X.Y") or proto[6] != ".":
        raise ValueError(f"malformed HTTP version {proto!r}")
    major, minor = proto[5], proto[7]
    if major not in string.digits or minor not in string.digits:
        raise ValueError(f"malformed HTTP version {proto!r}")
    return int(major), int(minor)


def _read_first_line(reader: Any) -> bytes | None:
    data = bytearray()
    while len(data) < MAX_HTTP_READ:
        try:
            chunk = reader.read(MAX_HTTP_READ - len(data))
        except OSError:
            break
        if not chunk:
            break
        data += chunk
        if b"\n" in chunk:
            break

    end = data.find(b"\n")
    if end < 0:
        if not data or len(data) >= MAX_HTTP_READ:
            return None
        return bytes(data)
    line = bytes(data[:end])
    return line[:-1] if line.endswith(b"\r") else line


def http1() -> Matcher:
    """Parse the first line, up to 4096 bytes, looking for an HTTP/1 request."""

    def _match_http1(reader: Any) -> bool:
        line = _read_first_line(reader)
        if line is None:
            return False
        try:
            _, _, proto = parse_request_line(line.decode("latin-1"))
            major, _ = _parse_http_version(proto)
        except ValueError:
            return False
        return major == 1

    return _match_http1


def _has_http2_preface(reader: Any) -> bool:
    return _read_full(reader, len(HTTP2_CLIENT_PREFACE)) == HTTP2_CLIENT_PREFACE


def http2() -> Matcher:
    """Match connections that open with the HTTP/2 client preface."""
    return _has_http2_preface


class _LineReader:
    """Splits a byte stream into lines ending in LF or CRLF."""

    def __init__(self, reader: Any) -> None:
        self._reader = reader
        self._pending = bytearray()

    def readline(self) -> bytes:
        while True:
            end = self._pending.find(b"\n")
            if end >= 0:
                line = bytes(self._pending[:end])
                del self._pending[: end + 1]
                return line[:-1] if line.endswith(b"\r") else line
            chunk = self._reader.read(_CHUNK)
            if not chunk:
                raise EOFError("stream ended inside the request head")
            self._pending += chunk


def _is_token(text: str) -> bool:
    return bool(text) and all(char in _TOKEN_CHARS for char in text)


def _read_request_headers(reader: Any) -> list[tuple[str, str]]:
    lines = _LineReader(reader)
    method, uri, proto = parse_request_line(lines.readline().decode("latin-1"))
    _parse_http_version(proto)
    if not _is_token(method):
        raise ValueError(f"invalid method {method!r}")
    if not uri:
        raise ValueError("empty request URI")

    headers: list[tuple[str, str]] = []
    while True:
        raw = lines.readline().decode("latin-1")
        if not raw:
            return headers
        if raw[0] in " \t":
            if not headers:
                raise ValueError(f"malformed header line {raw!r}")
            name, value = headers[-1]
            continuation = raw.strip(" \t")
            headers[-1] = (name, f"{value} {continuation}")
            continue
        name, sep, value = raw.partition(":")
        if not sep or not _is_token(name):
            raise ValueError(f"malformed header line {raw!r}")
        headers.append((name, value.strip(" \t")))


def _match_http1_field(reader: Any, name: str, value: str) -> bool:
    try:
        headers = _read_request_headers(reader)
    except (ValueError, EOFError, OSError):
        return False
    wanted = name.lower()
    found = next((val for key, val in headers if key.lower() == wanted), "")
    return found == value


def http1_header_field(name: str, value: str) -> Matcher:
    """Match the first HTTP/1 request whose header ``name`` equals ``value``."""

    def _match(reader: Any) -> bool:
        return _match_http1_field(reader, name, value)

    return _match


def _match_http2_field(reader: Any, name: str, value: str) -> bool:
    if not _has_http2_preface(reader):
        return False

    conn = H2Connection(
        config=H2Configuration(
            client_side=False,
            header_encoding=None,
            validate_inbound_headers=False,
            normalize_inbound_headers=False,
        )
    )
    conn.initiate_connection()
    wanted = (name.encode(), value.encode())
    pending = HTTP2_CLIENT_PREFACE
    while True:
        try:
            events = conn.receive_data(pending)
        except H2Error:
            return False
        for event in events:
            if isinstance(event, RequestReceived):
                return any((key, val) == wanted for key, val in event.headers)
        try:
            pending = reader.read(_CHUNK)
        except OSError:
            return False
        if not pending:
            return False


def http2_header_field(name: str, value: str) -> Matcher:
    """Match HTTP/2 connections whose first header block has ``name: value``."""

    def _match(reader: Any) -> bool:
        return _match_http2_field(reader, name, value)

    return _match