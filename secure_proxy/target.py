from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlsplit

logger = logging.getLogger("secure_proxy.target")

DEFAULT_CONNECT_PORT = 443


@dataclass(frozen=True)
class TunnelTarget:
    host: str
    port: int

    @property
    def authority(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ResolvedTarget:
    """
    Outcome of CONNECT target resolution.

    dial_string is always what gets dialed. When the input looked like a URI
    but could not be parsed, fallback is True and dial_string is the raw
    input (plus the default port if it had none); target is then whatever
    could be split out of it, possibly None.
    """

    dial_string: str
    target: Optional[TunnelTarget]
    fallback: bool = False


def _has_port(authority: str) -> bool:
    if authority.startswith("["):
        return "]:" in authority
    return ":" in authority


def split_host_port(hp: str) -> Tuple[str, Optional[int]]:
    s = (hp or "").strip()
    if not s:
        return "", None
    if s.startswith("["):
        host, _, rest = s[1:].partition("]")
        port_s = rest[1:] if rest.startswith(":") else ""
    elif ":" in s:
        host, port_s = s.rsplit(":", 1)
    else:
        return s, None
    try:
        port = int(port_s)
    except ValueError:
        return host, None
    if not 0 <= port <= 65535:
        return host, None
    return host, port


def _authority_from_uri(raw: str) -> Optional[str]:
    try:
        u = urlsplit(raw)
        host = u.hostname
        port = u.port
    except ValueError as e:
        logger.warning("target: failed to parse URI %r: %s", raw, e)
        return None
    if not host:
        logger.warning("target: no authority in URI %r", raw)
        return None
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{port}" if port is not None else host


def resolve_connect_target(raw: str) -> ResolvedTarget:
    """
    Turn a CONNECT request target into a host:port dial string.

    Accepts bare authorities (host, host:port) and full URIs
    (scheme://host[:port]/...). Port 443 is applied when none is given.
    """
    fallback = False
    authority = raw
    if "://" in raw:
        parsed = _authority_from_uri(raw)
        if parsed is None:
            fallback = True
        else:
            authority = parsed

    if not _has_port(authority):
        logger.debug("target: no port in %r, defaulting to %d", authority, DEFAULT_CONNECT_PORT)
        authority = f"{authority}:{DEFAULT_CONNECT_PORT}"

    host, port = split_host_port(authority)
    target = TunnelTarget(host=host, port=port) if host and port is not None else None
    return ResolvedTarget(dial_string=authority, target=target, fallback=fallback)
