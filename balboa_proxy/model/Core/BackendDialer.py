import errno
import logging
import os
import selectors
import socket
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlsplit

import socks  # PySocks

from .CancelToken import CancelToken, Cancelled
from .header import DIAL_TIMEOUT, POLL_INTERVAL, Address, ConfigError, resolve_address

logger = logging.getLogger("balboa_proxy.dialer")

PROXY_TYPES = {
    "socks4": socks.SOCKS4,
    "socks5": socks.SOCKS5,
    "http": socks.HTTP,
}

_CONNECT_PENDING = {errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN}


@dataclass(frozen=True)
class UpstreamProxy:
    scheme: str
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None


def parse_proxy_url(url: str) -> UpstreamProxy:
    """
    Parse ``socks5://[user:pass@]host:port`` (also ``socks4://`` and ``http://``).
    """
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in PROXY_TYPES:
        raise ConfigError(f"Unsupported forward proxy scheme: {parts.scheme or url!r}")
    try:
        port = parts.port
    except ValueError:
        raise ConfigError(f"invalid port in forward proxy {url!r}") from None
    if not parts.hostname or port is None:
        raise ConfigError(f"forward proxy must be scheme://host:port, got {url!r}")
    return UpstreamProxy(
        scheme=scheme,
        host=parts.hostname,
        port=port,
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
    )


class BackendDialer:
    """
    Opens the backend connection for each session.

    Direct dials are non-blocking connects polled through a selector in
    ``poll_interval`` slices so a cancelled session gives up promptly. When a
    forward proxy is configured the connection goes through PySocks and the
    proxy resolves the backend name.
    """

    def __init__(self, address: Address, forward_proxy: Optional[str] = None,
                 dial_timeout: float = DIAL_TIMEOUT, poll_interval: float = POLL_INTERVAL):
        self.address = address
        self.dial_timeout = dial_timeout
        self.poll_interval = poll_interval
        self.proxy = parse_proxy_url(forward_proxy) if forward_proxy else None
        if not address.host:
            raise ConfigError(f"forward address needs a host: {address}")
        if self.proxy is None:
            self.family, self.sockaddr = resolve_address(address)
        else:
            self.family, self.sockaddr = None, (address.host, address.port)

    def dial(self, token: CancelToken) -> socket.socket:
        token.raise_if_cancelled()
        if self.proxy is not None:
            sock = self._dial_via_proxy()
        else:
            sock = self._dial_direct(token)
        logger.debug(f"Connected to {self.address} from {sock.getsockname()}")
        return sock

    def _dial_direct(self, token: CancelToken) -> socket.socket:
        sock = socket.socket(self.family, socket.SOCK_STREAM)
        selector = selectors.DefaultSelector()
        try:
            sock.setblocking(False)
            err = sock.connect_ex(self.sockaddr)
            if err not in (0, *_CONNECT_PENDING):
                raise OSError(err, os.strerror(err))

            selector.register(sock, selectors.EVENT_WRITE)
            deadline = time.monotonic() + self.dial_timeout
            while err != 0:
                token.raise_if_cancelled()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise socket.timeout(f"timed out connecting to {self.address}")
                if not selector.select(min(self.poll_interval, remaining)):
                    continue
                err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
                if err:
                    raise OSError(err, os.strerror(err))
                break

            sock.setblocking(True)
            return sock
        except Exception:
            sock.close()
            raise
        finally:
            selector.close()

    def _dial_via_proxy(self) -> socket.socket:
        proxy = self.proxy
        sock = socks.socksocket()
        try:
            sock.set_proxy(PROXY_TYPES[proxy.scheme], proxy.host, proxy.port,
                           rdns=True, username=proxy.username, password=proxy.password)
            sock.settimeout(self.dial_timeout)
            sock.connect(self.sockaddr)
            sock.settimeout(None)
            return sock
        except Exception:
            sock.close()
            raise
