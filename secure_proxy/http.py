from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Iterator, List, Optional, Tuple
from urllib.parse import urlsplit

# Minimal HTTP/1.1 wire handling for the inbound side of the proxy.
# - Request line + headers are read with bounded line and header sizes.
# - Bodies are read fully (Content-Length or chunked) before forwarding.
# - Responses are always framed with Content-Length.

MAX_LINE_BYTES = 8192
MAX_HEADER_BYTES = 64 * 1024

# Statuses that never carry a body on the wire
_NO_BODY_STATUSES = {204, 304}


class RequestError(Exception):
    def __init__(self, status: int, reason: str) -> None:
        super().__init__(f"{status} {reason}")
        self.status = status
        self.reason = reason


class Headers:
    """Ordered header list with case-insensitive lookup. Duplicates are kept."""

    def __init__(self, items: Optional[List[Tuple[str, str]]] = None) -> None:
        self._items: List[Tuple[str, str]] = list(items or [])

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        n = name.lower()
        for k, v in self._items:
            if k.lower() == n:
                return v
        return default

    def get_all(self, name: str) -> List[str]:
        n = name.lower()
        return [v for k, v in self._items if k.lower() == n]

    def add(self, name: str, value: str) -> None:
        self._items.append((name, value))

    def remove(self, name: str) -> None:
        n = name.lower()
        self._items = [(k, v) for k, v in self._items if k.lower() != n]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"


def connection_tokens(headers: Headers) -> List[str]:
    tokens: List[str] = []
    for v in headers.get_all("Connection"):
        tokens.extend(t.strip().lower() for t in v.split(",") if t.strip())
    return tokens


@dataclass(frozen=True)
class IncomingRequest:
    method: str
    target: str
    version: str
    headers: Headers
    body: bytes = b""

    @property
    def path(self) -> str:
        """Request path without the query string, for origin- and absolute-form targets."""
        if "://" in self.target:
            try:
                return urlsplit(self.target).path or "/"
            except ValueError:
                return ""
        return self.target.split("?", 1)[0]

    @property
    def keep_alive(self) -> bool:
        tokens = connection_tokens(self.headers)
        if self.version.upper() == "HTTP/1.0":
            return "keep-alive" in tokens
        return "close" not in tokens


@dataclass
class Response:
    status: int
    reason: str = ""
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""

    def __post_init__(self) -> None:
        if not self.reason:
            try:
                self.reason = HTTPStatus(self.status).phrase
            except ValueError:
                self.reason = "Unknown"

    def encode(self, *, send_body: bool = True, keep_alive: bool = True) -> bytes:
        has_body = send_body and self.status >= 200 and self.status not in _NO_BODY_STATUSES
        lines = [f"HTTP/1.1 {self.status} {self.reason}"]
        for k, v in self.headers:
            lines.append(f"{k}: {v}")
        # HEAD replies keep whatever length the origin stated, or none
        if has_body and "Content-Length" not in self.headers:
            lines.append(f"Content-Length: {len(self.body)}")
        if not keep_alive:
            lines.append("Connection: close")
        head = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1", "replace")
        return head + self.body if has_body else head


def text_response(status: int, text: str, extra: Optional[List[Tuple[str, str]]] = None) -> Response:
    headers = Headers([("Content-Type", "text/plain; charset=utf-8")])
    for k, v in extra or []:
        headers.add(k, v)
    return Response(status=status, headers=headers, body=text.encode("utf-8"))


async def _readline(reader: asyncio.StreamReader, limit: int) -> bytes:
    try:
        line = await reader.readline()
    except (asyncio.LimitOverrunError, ValueError) as e:
        raise RequestError(431, "Request Header Fields Too Large") from e
    if len(line) > limit:
        raise RequestError(431, "Request Header Fields Too Large")
    return line


async def _read_chunked(reader: asyncio.StreamReader) -> bytes:
    body = bytearray()
    while True:
        size_line = await _readline(reader, MAX_LINE_BYTES)
        if not size_line:
            raise RequestError(400, "Truncated Chunked Body")
        size_s = size_line.split(b";", 1)[0].strip()
        try:
            size = int(size_s, 16)
        except ValueError as e:
            raise RequestError(400, "Bad Chunk Size") from e
        if size == 0:
            # Trailers until the blank line
            while True:
                t = await _readline(reader, MAX_LINE_BYTES)
                if not t or t in (b"\r\n", b"\n"):
                    return bytes(body)
        try:
            body += await reader.readexactly(size)
            await reader.readexactly(2)
        except asyncio.IncompleteReadError as e:
            raise RequestError(400, "Truncated Chunked Body") from e


async def read_request(reader: asyncio.StreamReader, idle_timeout: Optional[float] = None) -> Optional[IncomingRequest]:
    """
    Read one request. Returns None on a clean EOF before the request line.
    Raises RequestError for malformed or oversized input.

    idle_timeout bounds only the wait for the request line; once a request
    has started, headers and body are read without a deadline. Raises
    asyncio.TimeoutError when the client stays idle.
    """
    try:
        if idle_timeout:
            line = await asyncio.wait_for(reader.readline(), timeout=idle_timeout)
        else:
            line = await reader.readline()
    except (asyncio.LimitOverrunError, ValueError) as e:
        raise RequestError(414, "Request-URI Too Long") from e
    if not line:
        return None
    if len(line) > MAX_LINE_BYTES:
        raise RequestError(414, "Request-URI Too Long")
    req_line = line.decode("latin-1").rstrip("\r\n")
    parts = req_line.split(" ")
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise RequestError(400, "Bad Request")
    method, target, version = parts[0], parts[1], parts[2]
    if not version.upper().startswith("HTTP/1."):
        raise RequestError(505, "HTTP Version Not Supported")

    headers = Headers()
    total = len(line)
    while True:
        h = await _readline(reader, MAX_LINE_BYTES)
        if not h:
            raise RequestError(400, "Bad Request")
        total += len(h)
        if total > MAX_HEADER_BYTES:
            raise RequestError(431, "Request Header Fields Too Large")
        if h in (b"\r\n", b"\n"):
            break
        text = h.decode("latin-1").rstrip("\r\n")
        if ":" not in text:
            raise RequestError(400, "Bad Header")
        k, v = text.split(":", 1)
        if not k.strip() or k != k.strip():
            raise RequestError(400, "Bad Header")
        headers.add(k, v.strip())

    body = b""
    if method != "CONNECT":
        te = ",".join(headers.get_all("Transfer-Encoding")).lower()
        if "chunked" in te:
            body = await _read_chunked(reader)
        elif "Content-Length" in headers:
            try:
                length = int(headers.get("Content-Length") or "")
            except ValueError as e:
                raise RequestError(400, "Bad Content-Length") from e
            if length < 0:
                raise RequestError(400, "Bad Content-Length")
            try:
                body = await reader.readexactly(length)
            except asyncio.IncompleteReadError as e:
                raise RequestError(400, "Truncated Body") from e
    return IncomingRequest(method=method, target=target, version=version, headers=headers, body=body)
