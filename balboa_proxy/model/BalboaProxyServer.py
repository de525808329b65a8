"""
Balboa Proxy Server
Description: Impersonates a Balboa spa Wi-Fi module on the LAN and relays the
             spa app's TCP session to the real module, so the app can reach
             the spa from behind an intermediary.
"""
import logging
import threading
from typing import Optional

from .Core.BackendDialer import BackendDialer
from .Core.CancelToken import CancelToken
from .Core.DiscoveryResponder import DiscoveryResponder
from .Core.ForwardListener import ForwardListener
from .Core.header import ProxyConfig
from .Core.SessionRelay import SessionRelay
from .Core.TrafficStats import TrafficStats

logger = logging.getLogger("balboa_proxy.server")


class BalboaProxyServer:
    """
    Runs the discovery responder and the forward listener side by side.

    Both listeners hang off one root CancelToken. When discovery stops, for
    whatever reason, the forward side is cancelled too: a proxy that can no
    longer be discovered should not keep relaying. The forward side stopping
    does not cancel discovery.

    Attributes:
        config (ProxyConfig): Immutable startup configuration
        stats (TrafficStats): Counters shared with every component
        root (CancelToken): Process-wide cancellation signal
        discovery_token (CancelToken): Child of root driving the discovery loop
        forward_token (CancelToken): Child of root driving accepts and sessions
    """

    def __init__(self, config: ProxyConfig, stats: Optional[TrafficStats] = None):
        """
        Build every component. Raises ConfigError if the backend address
        cannot be resolved or the forward proxy URL is invalid.

        Args:
            config (ProxyConfig): Resolved configuration
            stats (TrafficStats): Shared counters (default: a fresh instance)
        """
        self.config = config
        self.stats = stats or TrafficStats()

        self.root = CancelToken(name="root")
        self.discovery_token = self.root.child("discovery")
        self.forward_token = self.root.child("forward")

        self.dialer = BackendDialer(
            config.forward_addr,
            forward_proxy=config.forward_proxy,
            dial_timeout=config.dial_timeout,
            poll_interval=config.poll_interval,
        )
        self.relay = SessionRelay(config.buffer_size, config.poll_interval, self.stats)
        self.discovery = DiscoveryResponder(config, self.stats)
        self.forward = ForwardListener(config, self.dialer, self.relay, self.stats)

        self.discovery_thread = None
        self.forward_thread = None

    def bind(self):
        """
        Bind both listeners. If the second bind fails the first socket is
        released before the error propagates.
        """
        self.discovery.bind()
        try:
            self.forward.bind()
        except OSError:
            self.discovery.close()
            raise

    def start(self):
        """Bind (if needed) and run both listeners in background threads."""
        if self.discovery.server_socket is None or self.forward.server_socket is None:
            self.bind()

        logger.info("🚀 Starting Balboa proxy")
        self.discovery_thread = threading.Thread(target=self._run_discovery, name="discovery", daemon=True)
        self.forward_thread = threading.Thread(target=self._run_forward, name="forward", daemon=True)
        self.discovery_thread.start()
        self.forward_thread.start()

    def _run_discovery(self):
        try:
            self.discovery.serve(self.discovery_token)
        except Exception:
            logger.exception("Discovery responder failed")
        finally:
            self.forward_token.cancel(self.discovery_token.reason or "discovery stopped")

    def _run_forward(self):
        try:
            self.forward.serve(self.forward_token)
        except Exception:
            logger.exception("Forward listener failed")

    def serve_forever(self):
        """
        Run until the forward side ends (a stop request, a signal, or
        discovery going away), then stop everything.
        """
        self.start()
        while self.forward_thread.is_alive():
            self.forward_thread.join(self.config.poll_interval)
        self.stop("forward listener stopped")
        self.join()
        logger.info("Goodbye 👋")

    def stop(self, reason: str = "stop requested"):
        if not self.root.cancelled:
            logger.info(f"🛑 Stopping proxy: {reason}")
        self.root.cancel(reason)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for both listener threads. Returns True if both have exited."""
        for thread in (self.discovery_thread, self.forward_thread):
            if thread is not None:
                thread.join(timeout)
        return not any(t is not None and t.is_alive() for t in (self.discovery_thread, self.forward_thread))

    def signal_handler(self, sig, frame):
        """
        Handle shutdown signals and stop the server.

        Args:
            sig (int): Signal number
            frame: Current stack frame
        """
        self.stop(f"signal {sig}")
