from __future__ import annotations

import ipaddress
import logging
import os
import tomllib
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional

logger = logging.getLogger("secure_proxy.config")

DEFAULT_CONFIG_PATH = "config.toml"
DEFAULT_TOKEN_HEADER = "X-Proxy-Token"
DEFAULT_REALM = "Secure Proxy"

SCHEME_TOKEN = "token"
SCHEME_BASIC = "basic"

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class ConfigError(Exception):
    """Configuration could not be loaded or is invalid. Fatal at startup."""


@dataclass(frozen=True)
class ServerConfig:
    host: str
    port: int

    @property
    def address(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class ProxyConfig:
    server: ServerConfig
    # Exactly one scheme per deployment
    scheme: str
    credentials: Mapping[str, str]
    token_header: str = DEFAULT_TOKEN_HEADER
    realm: str = DEFAULT_REALM
    # Seconds; 0 disables
    connect_timeout: float = 10.0
    forward_timeout: float = 60.0
    log_level: str = "INFO"
    source: str = ""
    port_from_env: bool = False


def _table(data: Mapping[str, Any], name: str) -> Optional[Mapping[str, Any]]:
    value = data.get(name)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _credentials(table: Mapping[str, Any], name: str) -> Mapping[str, str]:
    creds: dict[str, str] = {}
    for k, v in table.items():
        if not isinstance(v, str):
            raise ConfigError(f"[{name}] value for {k!r} must be a string")
        creds[str(k)] = v
    if not creds:
        raise ConfigError(f"[{name}] is empty; at least one credential is required")
    return MappingProxyType(creds)


def _timeout(table: Mapping[str, Any], key: str, default: float) -> float:
    raw = table.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigError(f"timeouts.{key} must be a number")
    if raw < 0:
        raise ConfigError(f"timeouts.{key} must be >= 0")
    return float(raw)


def _validate_port(value: Any, origin: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{origin} must be an integer")
    if not 0 <= value <= 65535:
        raise ConfigError(f"{origin} out of range: {value}")
    return value


def _env_port(env: Mapping[str, str]) -> Optional[int]:
    raw = env.get("PORT")
    if raw is None:
        return None
    try:
        port = int(raw.strip())
    except ValueError:
        logger.warning("config: ignoring unparsable PORT=%r", raw)
        return None
    if not 0 <= port <= 65535:
        logger.warning("config: ignoring out-of-range PORT=%r", raw)
        return None
    return port


def parse_config(data: Mapping[str, Any], env: Optional[Mapping[str, str]] = None, source: str = "") -> ProxyConfig:
    """
    Build a frozen ProxyConfig from an already-decoded TOML document.

    The credential table present selects the scheme: [tokens] for the token
    header scheme, [users] for Basic proxy authentication. PORT in env
    overrides server.port.
    """
    env = os.environ if env is None else env

    server = _table(data, "server")
    if server is None:
        raise ConfigError("missing [server] table")
    host = env.get("SECURE_PROXY_HOST") or server.get("host")
    if not isinstance(host, str) or not host:
        raise ConfigError("server.host must be a non-empty string")
    try:
        ipaddress.ip_address(host)
    except ValueError as e:
        raise ConfigError(f"invalid listen address {host!r}: {e}") from e
    if "port" not in server:
        raise ConfigError("missing server.port")
    port = _validate_port(server.get("port"), "server.port")

    env_port = _env_port(env)
    if env_port is not None:
        port = env_port

    tokens = _table(data, "tokens")
    users = _table(data, "users")
    if tokens is not None and users is not None:
        raise ConfigError("[tokens] and [users] are mutually exclusive")
    if tokens is not None:
        scheme, creds = SCHEME_TOKEN, _credentials(tokens, "tokens")
    elif users is not None:
        scheme, creds = SCHEME_BASIC, _credentials(users, "users")
    else:
        raise ConfigError("no credentials configured: add a [tokens] or [users] table")

    auth = _table(data, "auth") or {}
    token_header = auth.get("token_header", DEFAULT_TOKEN_HEADER)
    realm = auth.get("realm", DEFAULT_REALM)
    if not isinstance(token_header, str) or not token_header.strip():
        raise ConfigError("auth.token_header must be a non-empty string")
    if not isinstance(realm, str) or '"' in realm:
        raise ConfigError("auth.realm must be a string without double quotes")

    timeouts = _table(data, "timeouts") or {}
    log_cfg = _table(data, "logging") or {}
    log_level = str(log_cfg.get("level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {', '.join(_LOG_LEVELS)}")

    return ProxyConfig(
        server=ServerConfig(host=host, port=port),
        scheme=scheme,
        credentials=creds,
        token_header=token_header.strip(),
        realm=realm,
        connect_timeout=_timeout(timeouts, "connect", 10.0),
        forward_timeout=_timeout(timeouts, "forward", 60.0),
        log_level=log_level,
        source=source,
        port_from_env=env_port is not None,
    )


def load_config(path: str = DEFAULT_CONFIG_PATH, env: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    logger.info("config: loading %s", path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"malformed TOML in {path}: {e}") from e
    cfg = parse_config(data, env=env, source=os.path.abspath(path))
    logger.info(
        "config: loaded scheme=%s credentials=%d listen=%s",
        cfg.scheme,
        len(cfg.credentials),
        cfg.server.address,
    )
    logger.debug("config: credential names=%s", sorted(cfg.credentials))
    return cfg
