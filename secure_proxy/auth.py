from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Tuple, Union

from .config import SCHEME_BASIC, SCHEME_TOKEN, ProxyConfig
from .http import Headers

logger = logging.getLogger("secure_proxy.auth")

PROXY_AUTHORIZATION = "Proxy-Authorization"
PROXY_AUTHENTICATE = "Proxy-Authenticate"

TOKEN_DENY_BODY = "Invalid or missing token"
BASIC_DENY_BODY = "Proxy authentication required"


@dataclass(frozen=True)
class Allow:
    principal: str


@dataclass(frozen=True)
class Deny:
    status: int
    reason: str
    body: str
    challenge: Optional[Tuple[str, str]] = None


Decision = Union[Allow, Deny]


class Authenticator(Protocol):
    scheme: str

    def authenticate(self, headers: Headers) -> Decision: ...


def redact(secret: str) -> str:
    """Show at most the first and last four characters of a credential."""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}…{secret[-4:]}"


def _as_text(raw: str) -> Optional[str]:
    # Header values arrive latin-1 decoded; valid text must round-trip as UTF-8.
    try:
        return raw.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        return None


class TokenAuthenticator:
    """Admits a request when its token header matches any configured token."""

    scheme = SCHEME_TOKEN

    def __init__(self, tokens: Mapping[str, str], header_name: str) -> None:
        self.tokens = tokens
        self.header_name = header_name

    def _deny(self, reason: str) -> Deny:
        return Deny(status=403, reason=reason, body=TOKEN_DENY_BODY)

    def authenticate(self, headers: Headers) -> Decision:
        raw = headers.get(self.header_name)
        if raw is None:
            logger.warning("auth: deny scheme=token reason=missing header=%s", self.header_name)
            return self._deny("missing")
        token = _as_text(raw)
        if token is None:
            logger.warning("auth: deny scheme=token reason=invalid-encoding")
            return self._deny("invalid-encoding")
        for name, valid in self.tokens.items():
            if valid == token:
                logger.info("auth: allow scheme=token reason=token-match principal=%s token=%s", name, redact(token))
                return Allow(principal=name)
        logger.warning("auth: deny scheme=token reason=unknown-token token=%s", redact(token))
        return self._deny("unknown-token")


class BasicAuthenticator:
    """
    Proxy-Authorization: Basic <base64(user:pass)> against a username/password map.
    Every denial carries a Proxy-Authenticate challenge so clients retry with credentials.
    """

    scheme = SCHEME_BASIC

    def __init__(self, users: Mapping[str, str], realm: str) -> None:
        self.users = users
        self.realm = realm

    def _deny(self, reason: str) -> Deny:
        return Deny(
            status=407,
            reason=reason,
            body=BASIC_DENY_BODY,
            challenge=(PROXY_AUTHENTICATE, f'Basic realm="{self.realm}"'),
        )

    def _parse(self, raw: str) -> Tuple[Optional[Tuple[str, str]], str]:
        scheme, sep, encoded = raw.partition(" ")
        if scheme != "Basic" or not sep or not encoded:
            return None, "bad-scheme"
        try:
            decoded = base64.b64decode(encoded.encode("ascii"), validate=True)
        except (UnicodeEncodeError, binascii.Error, ValueError):
            return None, "bad-base64"
        try:
            text = decoded.decode("utf-8")
        except UnicodeDecodeError:
            return None, "invalid-encoding"
        if text.count(":") != 1:
            return None, "bad-format"
        username, password = text.split(":", 1)
        return (username, password), ""

    def authenticate(self, headers: Headers) -> Decision:
        raw = headers.get(PROXY_AUTHORIZATION)
        if raw is None:
            logger.warning("auth: deny scheme=basic reason=missing")
            return self._deny("missing")
        pair, why = self._parse(raw)
        if pair is None:
            logger.warning("auth: deny scheme=basic reason=%s", why)
            return self._deny(why)
        username, password = pair
        stored = self.users.get(username)
        if stored is None:
            logger.warning("auth: deny scheme=basic reason=unknown-user user=%s", redact(username))
            return self._deny("unknown-user")
        if stored != password:
            logger.warning("auth: deny scheme=basic reason=bad-password user=%s", redact(username))
            return self._deny("bad-password")
        logger.info("auth: allow scheme=basic reason=credentials-match principal=%s", username)
        return Allow(principal=username)


def build_authenticator(cfg: ProxyConfig) -> Authenticator:
    if cfg.scheme == SCHEME_TOKEN:
        return TokenAuthenticator(cfg.credentials, cfg.token_header)
    if cfg.scheme == SCHEME_BASIC:
        return BasicAuthenticator(cfg.credentials, cfg.realm)
    raise ValueError(f"unknown auth scheme: {cfg.scheme!r}")
