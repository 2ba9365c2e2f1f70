from __future__ import annotations

import asyncio
import base64
import socket
from contextlib import asynccontextmanager
from types import MappingProxyType
from typing import AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from secure_proxy.config import ProxyConfig, ServerConfig
from secure_proxy.proxy_server import SecureProxyServer

TOKENS = {"alice": "tok-alice-0123456789", "bob": "tok-bob-9876543210"}
USERS = {"alice": "s3cret", "bob": "Hunter2"}

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


def make_config(scheme: str = "token", credentials: Optional[Mapping[str, str]] = None, **kw) -> ProxyConfig:
    if credentials is None:
        credentials = TOKENS if scheme == "token" else USERS
    kw.setdefault("connect_timeout", 5.0)
    kw.setdefault("forward_timeout", 10.0)
    return ProxyConfig(
        server=ServerConfig(host="127.0.0.1", port=0),
        scheme=scheme,
        credentials=MappingProxyType(dict(credentials)),
        **kw,
    )


def basic(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")


def free_port() -> int:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


@asynccontextmanager
async def running_proxy(cfg: ProxyConfig) -> AsyncIterator[SecureProxyServer]:
    server = SecureProxyServer(cfg)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


@asynccontextmanager
async def tcp_server(handler: Handler) -> AsyncIterator[int]:
    srv = await asyncio.start_server(handler, "127.0.0.1", 0)
    try:
        yield srv.sockets[0].getsockname()[1]
    finally:
        srv.close()
        await srv.wait_closed()


async def read_response(reader: asyncio.StreamReader) -> Tuple[int, Dict[str, str], bytes]:
    head = await reader.readuntil(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    status = int(lines[0].split(" ")[1])
    headers: Dict[str, str] = {}
    for ln in lines[1:]:
        if ln:
            k, v = ln.split(":", 1)
            headers[k.strip().lower()] = v.strip()
    length = int(headers.get("content-length", "0"))
    body = await reader.readexactly(length) if length else b""
    return status, headers, body


async def exchange(port: int, raw: bytes) -> Tuple[int, Dict[str, str], bytes]:
    """Send one raw request to the proxy and read one response."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        writer.write(raw)
        await writer.drain()
        return await asyncio.wait_for(read_response(reader), timeout=10.0)
    finally:
        writer.close()


async def open_tunnel(port: int, target: str, headers: str) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter, int]:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\n{headers}\r\n".encode("latin-1"))
    await writer.drain()
    status, _, _ = await asyncio.wait_for(read_response(reader), timeout=10.0)
    return reader, writer, status
