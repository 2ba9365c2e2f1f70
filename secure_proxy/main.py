from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading

# Keep main minimal: wire-up config, logging, diagnostics, proxy
from .config import DEFAULT_CONFIG_PATH, ConfigError, load_config
from .proxy_server import run_proxy
from .status import report_missing_config, startup_banner

logger = logging.getLogger("secure_proxy.main")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(processName)s(%(process)d)/%(threadName)s: %(message)s"


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    CLI to override environment variables. Precedence: CLI > env > config file.
    """
    ap = argparse.ArgumentParser(
        prog="secure-proxy",
        description="Authenticated forward proxy: HTTP forwarding and CONNECT tunnels.",
    )
    # Only set values when flags are provided (no default), so env/config remain if omitted.
    ap.add_argument("--config", dest="config", help=f"Override SECURE_PROXY_CONFIG (default {DEFAULT_CONFIG_PATH})")
    ap.add_argument("--host", dest="host", help="Override SECURE_PROXY_HOST / server.host")
    ap.add_argument("--port", dest="port", type=int, help="Override PORT / server.port")
    ap.add_argument("--log-level", dest="log_level", help="Override SECURE_PROXY_LOG_LEVEL (e.g., DEBUG, INFO)")
    return ap.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    cli_to_env = {
        "config": "SECURE_PROXY_CONFIG",
        "host": "SECURE_PROXY_HOST",
        "port": "PORT",
        "log_level": "SECURE_PROXY_LOG_LEVEL",
    }
    for attr, env_key in cli_to_env.items():
        if getattr(args, attr, None) is not None:
            os.environ[env_key] = str(getattr(args, attr))

    env_level = os.environ.get("SECURE_PROXY_LOG_LEVEL")
    logging.basicConfig(level=(env_level or "INFO").upper(), format=LOG_FORMAT)

    path = os.environ.get("SECURE_PROXY_CONFIG", DEFAULT_CONFIG_PATH)
    if not os.path.exists(path):
        report_missing_config(path)
    try:
        cfg = load_config(path)
    except ConfigError as e:
        print(f"Failed to load {path}: {e}", file=sys.stderr)
        logger.error("config: failed to load %s: %s", path, e)
        return 1
    if not env_level:
        logging.getLogger().setLevel(cfg.log_level)

    startup_banner(cfg)
    if cfg.scheme == "token":
        logger.info("Send requests with '%s' header for authentication", cfg.token_header)
    else:
        logger.info("Send requests with 'Proxy-Authorization: Basic ...' for authentication")

    stop = threading.Event()

    def handle_signal(signum, _frame):
        logger.info("signal %s received, shutting down", signum)
        stop.set()

    for sig in ("SIGINT", "SIGTERM"):
        if hasattr(signal, sig):
            signal.signal(getattr(signal, sig), handle_signal)

    try:
        run_proxy(stop, cfg)
    except OSError as e:
        print(f"Failed to bind {cfg.server.address}: {e}", file=sys.stderr)
        logger.error("proxy: failed to bind %s: %s", cfg.server.address, e)
        return 1

    logger.info("stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
