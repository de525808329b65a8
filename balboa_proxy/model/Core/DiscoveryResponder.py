# =============================================================================
# Discovery Responder
# =============================================================================

import logging
import socket
from typing import Optional

from .CancelToken import CancelToken
from .header import DISCOVERY_BUFFER_SIZE, Address, ProxyConfig, format_peer, resolve_address
from .RateLimiter import RateLimiter
from .SourceFilter import SourceFilter
from .TrafficStats import TrafficStats

logger = logging.getLogger("balboa_proxy.discovery")


class DiscoveryResponder:
    """
    Answers the app's UDP discovery broadcasts with the configured identity.

    The payload of a probe is never inspected: every datagram gets exactly one
    reply, unless the optional allow-list or rate limit rejects its sender.

    Attributes:
        config (ProxyConfig): Resolved startup configuration
        response (bytes): Reply sent verbatim to every probe
        server_socket (socket): Bound UDP socket, None until bind() is called
    """

    def __init__(self, config: ProxyConfig, stats: Optional[TrafficStats] = None):
        self.config = config
        self.response = config.discovery_response
        self.stats = stats or TrafficStats()
        self.source_filter = SourceFilter(config.discovery_allow)
        self.rate_limiter = RateLimiter(config.discovery_rate_limit, config.discovery_rate_window)
        self.server_socket = None

    def bind(self):
        """
        Bind the UDP socket. Errors propagate: a responder that cannot bind is
        fatal at startup.
        """
        if self.config.discovery_host:
            family, sockaddr = resolve_address(
                Address(self.config.discovery_host, self.config.discovery_port),
                kind=socket.SOCK_DGRAM, passive=True,
            )
        else:
            # Discovery broadcasts are IPv4.
            family, sockaddr = socket.AF_INET, ("0.0.0.0", self.config.discovery_port)

        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            sock.settimeout(self.config.poll_interval)
        except OSError:
            sock.close()
            raise

        self.server_socket = sock
        logger.info(f"📍 Listening for discovery on udp {format_peer(self.address)}")

    @property
    def address(self):
        return self.server_socket.getsockname() if self.server_socket else None

    def serve(self, token: CancelToken):
        """Receive loop. Returns once ``token`` is cancelled."""
        if self.server_socket is None:
            self.bind()

        try:
            while not token.cancelled:
                try:
                    _, addr = self.server_socket.recvfrom(DISCOVERY_BUFFER_SIZE)
                except socket.timeout:
                    continue
                except OSError as e:
                    if token.cancelled:
                        break
                    logger.error(f"Discovery read error: {e}")
                    token.wait(self.config.poll_interval)
                    continue

                logger.info(f"Discovery request from {format_peer(addr)}")
                if not self._accept_probe(addr):
                    self.stats.probe_dropped()
                    continue

                try:
                    self.server_socket.sendto(self.response, addr)
                except OSError as e:
                    logger.error(f"Discovery write ({format_peer(addr)}) error: {e}")
                    continue
                self.stats.probe_answered()
        finally:
            self.close()

    def _accept_probe(self, addr) -> bool:
        source_ip = addr[0]
        if not self.source_filter.check_access(source_ip):
            logger.debug(f"Discovery probe from {source_ip} not in allow-list")
            return False
        if not self.rate_limiter.check_limit(source_ip):
            logger.debug(f"Discovery probe from {source_ip} over rate limit")
            return False
        return True

    def close(self):
        if self.server_socket:
            self.server_socket.close()
            self.server_socket = None
