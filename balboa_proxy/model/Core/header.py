# =============================================================================
# Core Types & Configuration
# =============================================================================

import ipaddress
import socket
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from .CancelToken import CancelToken

DEFAULT_DATA_ADDR = "[::]:4257"
DEFAULT_DISCOVERY_PORT = 30303
DEFAULT_DISCOVERY_NAME = "BWGSPA"
DEFAULT_DISCOVERY_MAC = "00-15-27-00-00-00"

BUFFER_SIZE = 4096
DISCOVERY_BUFFER_SIZE = 1024
POLL_INTERVAL = 1.0
DIAL_TIMEOUT = 10.0
NAME_WIDTH = 10


class ConfigError(ValueError):
    """Raised when a configuration value cannot be used."""


@dataclass(frozen=True)
class Address:
    host: str
    port: int

    def __str__(self):
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_address(text: str) -> Address:
    """
    Parse ``host:port``, ``[v6-host]:port`` or ``:port`` into an Address.

    An empty host means "all interfaces" when the address is used for a
    listener.
    """
    text = (text or "").strip()
    if not text:
        raise ConfigError("address is empty")

    if text.startswith("["):
        end = text.find("]")
        if end == -1 or text[end + 1:end + 2] != ":":
            raise ConfigError(f"malformed address {text!r}")
        host = text[1:end]
        port_text = text[end + 2:]
    else:
        host, sep, port_text = text.rpartition(":")
        if not sep:
            raise ConfigError(f"missing port in address {text!r}")
        if ":" in host:
            raise ConfigError(f"IPv6 address must be bracketed: {text!r}")

    try:
        port = int(port_text)
    except ValueError:
        raise ConfigError(f"invalid port in address {text!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"port out of range in address {text!r}")

    return Address(host, port)


def resolve_address(address: Address, kind: int = socket.SOCK_STREAM,
                    passive: bool = False) -> Tuple[int, tuple]:
    """Resolve an Address to ``(family, sockaddr)`` using the first result."""
    flags = socket.AI_PASSIVE if passive else 0
    try:
        infos = socket.getaddrinfo(address.host or None, address.port, type=kind, flags=flags)
    except socket.gaierror as e:
        raise ConfigError(f"unable to resolve {address}: {e}") from e
    if not infos:
        raise ConfigError(f"unable to resolve {address}")
    family, _, _, _, sockaddr = infos[0]
    return family, sockaddr


def build_discovery_response(name: str, mac: str) -> bytes:
    """Reply payload: name padded to ten columns, then the MAC, CRLF after each."""
    try:
        return f"{name:<{NAME_WIDTH}}\r\n{mac}\r\n".encode("ascii")
    except UnicodeEncodeError:
        raise ConfigError("discovery name and MAC must be ASCII") from None


@dataclass(frozen=True)
class ProxyConfig:
    forward_addr: Address
    data_addr: Address = field(default_factory=lambda: parse_address(DEFAULT_DATA_ADDR))
    discovery_host: str = ""
    discovery_port: int = DEFAULT_DISCOVERY_PORT
    discovery_name: str = DEFAULT_DISCOVERY_NAME
    discovery_mac: str = DEFAULT_DISCOVERY_MAC
    forward_proxy: Optional[str] = None
    poll_interval: float = POLL_INTERVAL
    dial_timeout: float = DIAL_TIMEOUT
    buffer_size: int = BUFFER_SIZE
    discovery_allow: Tuple[str, ...] = ()
    discovery_rate_limit: int = 0
    discovery_rate_window: float = 60.0

    def __post_init__(self):
        if not 0 <= self.discovery_port <= 65535:
            raise ConfigError(f"discovery port out of range: {self.discovery_port}")
        if self.poll_interval <= 0:
            raise ConfigError("poll interval must be positive")
        if self.dial_timeout <= 0:
            raise ConfigError("dial timeout must be positive")
        if self.buffer_size <= 0:
            raise ConfigError("buffer size must be positive")
        if self.discovery_rate_limit < 0:
            raise ConfigError("discovery rate limit cannot be negative")
        if self.discovery_rate_window <= 0:
            raise ConfigError("discovery rate window must be positive")
        for network in self.discovery_allow:
            try:
                ipaddress.ip_network(network, strict=False)
            except ValueError as e:
                raise ConfigError(f"invalid discovery allow entry {network!r}: {e}") from None
        build_discovery_response(self.discovery_name, self.discovery_mac)

    @property
    def discovery_response(self) -> bytes:
        return build_discovery_response(self.discovery_name, self.discovery_mac)


@dataclass
class SessionContext:
    session_id: str
    client_socket: socket.socket
    client_addr: tuple
    backend_socket: socket.socket
    backend_addr: tuple
    token: CancelToken
    start_time: datetime = field(default_factory=datetime.now)


def format_peer(addr) -> str:
    """Render a socket peer address (IPv4 or IPv6 tuple) as host:port."""
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(addr)
