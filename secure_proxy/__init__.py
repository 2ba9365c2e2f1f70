from .config import ConfigError, ProxyConfig, ServerConfig, load_config
from .proxy_server import SecureProxyServer, run_proxy

__all__ = [
    "ConfigError",
    "ProxyConfig",
    "SecureProxyServer",
    "ServerConfig",
    "load_config",
    "run_proxy",
]

__version__ = "0.1.0"
