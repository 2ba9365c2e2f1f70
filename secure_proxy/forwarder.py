from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

import aiohttp

from .http import Headers, IncomingRequest, Response, text_response

logger = logging.getLogger("secure_proxy.forwarder")

# Never sent upstream; they describe the client<->proxy hop only.
HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-connection",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "host",
    }
)

# Recomputed for the client connection.
_RESPONSE_FRAMING = frozenset({"transfer-encoding", "content-length", "connection", "keep-alive"})

_SKIP_AUTO_HEADERS = ("User-Agent", "Accept", "Accept-Encoding", "Content-Type")


def absolute_uri(req: IncomingRequest) -> Optional[str]:
    target = req.target
    if target.startswith("http://") or target.startswith("https://"):
        return target
    host = req.headers.get("Host", "")
    if not host or not target.startswith("/"):
        return None
    return f"http://{host}{target}"


class HttpForwarder:
    """
    Forwards a plain HTTP request to its origin with a single attempt and
    hands back the origin's response unchanged apart from framing headers.
    """

    def __init__(
        self,
        connect_timeout: float = 10.0,
        total_timeout: float = 60.0,
        strip_headers: Optional[Set[str]] = None,
    ) -> None:
        self.connect_timeout = float(connect_timeout)
        self.total_timeout = float(total_timeout)
        # Extra request headers to drop, e.g. the proxy's own token header
        self.strip_headers = {h.lower() for h in (strip_headers or set())}

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.total_timeout or None,
            sock_connect=self.connect_timeout or None,
        )

    def _upstream_headers(self, req: IncomingRequest) -> list:
        dropped = HOP_BY_HOP | self.strip_headers
        # Headers named in Connection are hop-by-hop as well
        for v in req.headers.get_all("Connection"):
            dropped = dropped | {t.strip().lower() for t in v.split(",") if t.strip()}
        return [(k, v) for k, v in req.headers if k.lower() not in dropped]

    async def forward(self, req: IncomingRequest, cid: str = "-") -> Response:
        url = absolute_uri(req)
        if url is None:
            logger.info("forward[%s]: reject reason=missing_host target=%r", cid, req.target)
            return text_response(400, "Missing Host")

        logger.info("forward[%s]: %s %s", cid, req.method, url)
        try:
            async with aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(force_close=True, limit=1),
                timeout=self._timeout(),
                auto_decompress=False,
            ) as session:
                async with session.request(
                    req.method,
                    url,
                    headers=self._upstream_headers(req),
                    data=req.body if req.body else None,
                    allow_redirects=False,
                    skip_auto_headers=_SKIP_AUTO_HEADERS,
                ) as resp:
                    body = await resp.read()
                    headers = Headers()
                    for raw_k, raw_v in resp.raw_headers:
                        k = raw_k.decode("latin-1")
                        v = raw_v.decode("latin-1")
                        if k.lower() in _RESPONSE_FRAMING:
                            # HEAD responses keep the origin's length as-is
                            if req.method == "HEAD" and k.lower() == "content-length":
                                headers.add(k, v)
                            continue
                        headers.add(k, v)
                    logger.info(
                        "forward[%s]: ok status=%d bytes=%d url=%s", cid, resp.status, len(body), url
                    )
                    logger.debug("forward[%s]: response headers=%r", cid, headers)
                    return Response(status=resp.status, reason=resp.reason or "", headers=headers, body=body)
        except asyncio.TimeoutError:
            logger.error("forward[%s]: timeout url=%s", cid, url)
            return text_response(500, f"Proxy error: timed out forwarding to {url}")
        except (aiohttp.ClientError, OSError, ValueError) as e:
            logger.error("forward[%s]: error url=%s err=%s", cid, url, e)
            return text_response(500, f"Proxy error: {str(e) or type(e).__name__}")
