from __future__ import annotations

import logging
import os
import sys
from typing import Optional, TextIO

from colorama import Fore, Style, init as colorama_init

from .config import ProxyConfig

colorama_init(autoreset=True)
logger = logging.getLogger("secure_proxy.status")

__all__ = [
    "humanize_bytes",
    "humanize_duration",
    "report_missing_config",
    "startup_banner",
]


def humanize_bytes(n: int) -> str:
    try:
        n = int(n)
    except (TypeError, ValueError):
        return "0B"
    units = ["B", "KB", "MB", "GB", "TB"]
    f = float(n)
    u = 0
    while f >= 1024.0 and u < len(units) - 1:
        f /= 1024.0
        u += 1
    if u == 0:
        return f"{int(f)}{units[u]}"
    return f"{f:.1f}{units[u]}"


def humanize_duration(seconds: float) -> str:
    try:
        s = float(seconds)
    except (TypeError, ValueError):
        s = 0.0
    s = max(0.0, s)
    if s < 1.0:
        return f"{int(s * 1000)}ms"
    m, s = divmod(int(round(s)), 60)
    h, m = divmod(m, 60)
    if h:
        return f"{h}h{m}m{s}s"
    if m:
        return f"{m}m{s}s"
    return f"{s}s"


def report_missing_config(path: str, out: Optional[TextIO] = None) -> None:
    """Print where we looked for the config file and what is there instead."""
    out = out or sys.stderr
    cwd = os.getcwd()
    print(f"{Fore.RED}✗ {path} NOT FOUND{Style.RESET_ALL} (cwd={cwd})", file=out)
    try:
        entries = sorted(os.listdir(cwd))
    except OSError as e:
        print(f"  cannot list {cwd}: {e}", file=out)
        return
    print("Files in current directory:", file=out)
    for name in entries:
        print(f"  - {name}", file=out)


def startup_banner(cfg: ProxyConfig, out: Optional[TextIO] = None) -> None:
    out = out or sys.stdout
    port_origin = "(from PORT env var)" if cfg.port_from_env else "(from config)"
    if cfg.scheme == "token":
        auth = f"token header {Fore.YELLOW}{cfg.token_header}{Style.RESET_ALL}"
    else:
        auth = f"basic realm={Fore.YELLOW}{cfg.realm!r}{Style.RESET_ALL}"
    lines = [
        f"{Fore.CYAN}secure-proxy{Style.RESET_ALL} starting",
        f"  {Fore.BLUE}listen{Style.RESET_ALL}={cfg.server.address} {port_origin}",
        f"  {Fore.MAGENTA}auth{Style.RESET_ALL}={auth} credentials={len(cfg.credentials)}",
        f"  config={cfg.source or '-'} connect_timeout={cfg.connect_timeout:g}s forward_timeout={cfg.forward_timeout:g}s",
    ]
    for ln in lines:
        print(ln, file=out)
    out.flush()
