#!/usr/bin/env python3
"""Small socket helpers: free ports, local-address checks, connect probes."""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from urllib.parse import urlsplit

from .config_constants import CONNECT_RETRY_INTERVAL, CONNECT_TIMEOUT
from .context import Context
from .errors import ConfigError, ResourceError

logger = logging.getLogger(__name__)


def split_host_port(addr: str) -> tuple[str, str]:
    """Split "host:port" / "[v6]:port"; raise ConfigError without a port."""
    if addr.startswith('['):
        host, sep, rest = addr[1:].partition(']')
        if not sep or not rest.startswith(':'):
            raise ConfigError(f"address {addr!r}: missing port")
        return host, rest[1:]
    host, sep, port = addr.rpartition(':')
    if not sep:
        raise ConfigError(f"address {addr!r}: missing port")
    if ':' in host:
        raise ConfigError(f"address {addr!r}: too many colons")
    return host, port


def join_host_port(host: str, port: str | int) -> str:
    if ':' in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def available_port(host: str) -> int:
    """Ask the OS for a free TCP port on host and release it again."""
    try:
        with socket.create_server((host, 0)) as sock:
            return sock.getsockname()[1]
    except OSError as e:
        raise ResourceError(f"cannot allocate a port on {host!r}: {e}") from e


def addr_is_local(addr: str) -> bool:
    """True if we can listen on addr (host:port) from this machine."""
    host, port = split_host_port(addr)
    try:
        with socket.create_server((host, int(port or 0))):
            return True
    except OSError as e:
        if e.errno == errno.EADDRNOTAVAIL:
            return False
        if e.errno == errno.EADDRINUSE:
            # Somebody local already owns it; the address itself is ours.
            return True
        raise ResourceError(f"cannot check address {addr!r}: {e}") from e


def url_port(url: str) -> str:
    """Explicit port of url, else the scheme default."""
    parts = urlsplit(url)
    if parts.port:
        return str(parts.port)
    if parts.scheme in ('https', 'wss'):
        return '443'
    return '80'


def url_host_port(url: str) -> str:
    parts = urlsplit(url)
    return join_host_port(parts.hostname or '', url_port(url))


def internal_port(internal_urls: dict) -> str:
    """Port of the single internal URL of a service."""
    if len(internal_urls) > 1:
        raise ConfigError("internal_port() doesn't work with multiple internal URLs")
    for url in internal_urls:
        return url_port(url)
    raise ConfigError("service has no internal URLs")


async def wait_for_connect(ctx: Context, addr: str) -> None:
    """Retry a TCP connect to addr until it works or ctx is cancelled."""
    host, port = split_host_port(addr)
    while True:
        try:
            _reader, writer = await ctx.wait_for(
                asyncio.wait_for(asyncio.open_connection(host, int(port)), CONNECT_TIMEOUT)
            )
        except (OSError, asyncio.TimeoutError):
            await ctx.sleep(CONNECT_RETRY_INTERVAL)
            continue
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        logger.debug(f"Connected to {addr}")
        return
