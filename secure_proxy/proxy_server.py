from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from typing import Optional, Set

from .auth import Authenticator, Deny, build_authenticator
from .config import SCHEME_TOKEN, ProxyConfig
from .forwarder import HttpForwarder
from .http import IncomingRequest, RequestError, Response, read_request, text_response
from .target import resolve_connect_target
from .tunnel import TunnelSession

# Authenticated forward proxy.
# - HTTPS via CONNECT as an opaque byte tunnel (no TLS termination).
# - Plain HTTP forwarded to the origin, response returned as-is.
# - GET /health is the only unauthenticated route.

logger = logging.getLogger("secure_proxy.server")

HEALTH_PATH = "/health"


def _new_cid() -> str:
    n = time.time_ns() ^ os.getpid() ^ threading.get_ident()
    return f"{n & 0xFFFFFFFFFFFF:012x}"


class SecureProxyServer:
    """
    Inbound TCP server; one asyncio task per client connection.

    CONNECT tunnels are detached into their own tasks so the connection
    handler never waits on a tunnel's lifetime. There is no cap on
    concurrent tunnels and no idle timeout on them.
    """

    def __init__(
        self,
        config: ProxyConfig,
        authenticator: Optional[Authenticator] = None,
        forwarder: Optional[HttpForwarder] = None,
        io_timeout: float = 30.0,
    ) -> None:
        self.config = config
        self.host = config.server.host
        self.port = config.server.port
        self.authenticator = authenticator or build_authenticator(config)
        strip = {config.token_header} if config.scheme == SCHEME_TOKEN else set()
        self.forwarder = forwarder or HttpForwarder(
            connect_timeout=config.connect_timeout,
            total_timeout=config.forward_timeout,
            strip_headers=strip,
        )
        self.io_timeout = float(io_timeout)
        self._server: Optional[asyncio.Server] = None
        self._client_tasks: Set[asyncio.Task] = set()
        self._tunnel_tasks: Set[asyncio.Task] = set()

    @property
    def active_tunnels(self) -> int:
        return len(self._tunnel_tasks)

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port, start_serving=True)
        sockets = self._server.sockets or []
        if sockets:
            # Resolve an ephemeral port (0) to the bound one
            self.port = sockets[0].getsockname()[1]
        addrs = ", ".join(str(s.getsockname()) for s in sockets)
        logger.info("proxy: listening on %s scheme=%s", addrs, self.authenticator.scheme)

    async def stop(self) -> None:
        srv = self._server
        if srv:
            srv.close()
        # Connections must be released before wait_closed() can return
        tasks = list(self._client_tasks) + list(self._tunnel_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if srv:
            try:
                await asyncio.wait_for(srv.wait_closed(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("proxy: listener did not close cleanly")
            self._server = None
        logger.info("proxy: stopped (%d tasks cancelled)", len(tasks))

    async def serve_until(self, stop_evt: threading.Event) -> None:
        await self.start()
        # poll stop event
        while not stop_evt.is_set():
            await asyncio.sleep(0.2)
        await self.stop()

    async def dispatch(
        self,
        req: IncomingRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        cid: str = "-",
    ) -> Optional[Response]:
        """
        Route one request. Returns the response to write, or None when the
        connection was handed to a tunnel and must not be touched again.
        """
        if req.method == "GET" and req.path == HEALTH_PATH:
            return text_response(200, "OK")

        decision = self.authenticator.authenticate(req.headers)
        if isinstance(decision, Deny):
            logger.warning("proxy[%s]: rejected %s %s status=%d reason=%s", cid, req.method, req.target, decision.status, decision.reason)
            extra = [decision.challenge] if decision.challenge else None
            return text_response(decision.status, decision.body, extra)

        if req.method == "CONNECT":
            resolved = resolve_connect_target(req.target)
            if resolved.fallback:
                logger.warning("proxy[%s]: CONNECT target %r not parseable, dialing raw %s", cid, req.target, resolved.dial_string)
            logger.info("proxy[%s]: CONNECT %s principal=%s", cid, resolved.dial_string, decision.principal)
            session = TunnelSession(reader, writer, resolved, connect_timeout=self.config.connect_timeout, cid=cid)
            self._spawn_tunnel(session)
            return None

        return await self.forwarder.forward(req, cid=cid)

    def _spawn_tunnel(self, session: TunnelSession) -> None:
        task = asyncio.create_task(session.run(), name=f"tunnel-{session.cid}")
        self._tunnel_tasks.add(task)
        task.add_done_callback(self._tunnel_done)

    def _tunnel_done(self, task: asyncio.Task) -> None:
        self._tunnel_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("proxy: tunnel task %s crashed: %r", task.get_name(), exc)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        cid = _new_cid()
        cur = asyncio.current_task()
        if cur is not None:
            self._client_tasks.add(cur)
        handed_off = False
        try:
            while True:
                try:
                    req = await read_request(reader, idle_timeout=self.io_timeout)
                except asyncio.TimeoutError:
                    # Idle between requests: close without a response
                    logger.info("proxy[%s]: client_idle_timeout peer=%s", cid, peer)
                    return
                except RequestError as e:
                    logger.info("proxy[%s]: reject peer=%s status=%d reason=%s", cid, peer, e.status, e.reason)
                    await self._respond(writer, text_response(e.status, e.reason), keep_alive=False)
                    return
                if req is None:
                    return
                logger.debug("proxy[%s]: %s %s %s peer=%s headers=%r", cid, req.method, req.target, req.version, peer, req.headers)

                resp = await self.dispatch(req, reader, writer, cid=cid)
                if resp is None:
                    handed_off = True
                    return
                keep_alive = req.keep_alive
                await self._respond(writer, resp, keep_alive=keep_alive, send_body=req.method != "HEAD")
                if not keep_alive:
                    return
        except (OSError, RuntimeError) as e:
            logger.debug("proxy[%s]: client error peer=%s err=%s", cid, peer, e)
        except asyncio.CancelledError:
            # Cancelled by stop(); the task ends normally
            logger.debug("proxy[%s]: handler cancelled peer=%s", cid, peer)
        finally:
            if not handed_off and not writer.is_closing():
                writer.close()
                try:
                    await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
                except (OSError, asyncio.TimeoutError):
                    pass
            if cur is not None:
                self._client_tasks.discard(cur)

    async def _respond(self, w: asyncio.StreamWriter, resp: Response, keep_alive: bool = True, send_body: bool = True) -> None:
        try:
            w.write(resp.encode(send_body=send_body, keep_alive=keep_alive))
            await asyncio.wait_for(w.drain(), timeout=self.io_timeout)
        except (OSError, RuntimeError, asyncio.TimeoutError) as e:
            logger.debug("proxy: failed to write response status=%d err=%s", resp.status, e)


def run_proxy(stop_event: threading.Event, config: ProxyConfig) -> None:
    """
    Blocking entry-point: runs an asyncio server until stop_event is set.
    Raises OSError when the listen address cannot be bound.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    server = SecureProxyServer(config)
    try:
        loop.run_until_complete(server.serve_until(stop_event))
    finally:
        pending = asyncio.all_tasks(loop)
        for t in pending:
            t.cancel()
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
