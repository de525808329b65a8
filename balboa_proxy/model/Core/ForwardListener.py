# =============================================================================
# Forward Listener
# =============================================================================

import logging
import socket
import threading
import uuid
from typing import Dict, Optional, Tuple

from .BackendDialer import BackendDialer
from .CancelToken import CancelToken, Cancelled
from .header import ProxyConfig, SessionContext, format_peer, resolve_address
from .SessionRelay import SessionRelay
from .TrafficStats import TrafficStats

logger = logging.getLogger("balboa_proxy.forward")


class ForwardListener:
    """
    Accepts app connections and relays each one to the backend.

    Every accepted connection is handled in its own thread: dial the backend,
    then hand both sockets to the SessionRelay. A failed dial closes the app
    connection straight away; nothing is retried.
    """

    def __init__(self, config: ProxyConfig, dialer: BackendDialer, relay: SessionRelay,
                 stats: Optional[TrafficStats] = None):
        self.config = config
        self.dialer = dialer
        self.relay = relay
        self.stats = stats or TrafficStats()
        self.server_socket = None
        self.sessions: Dict[str, threading.Thread] = {}
        self.lock = threading.Lock()

    def bind(self):
        """Create the listening socket. Errors propagate; a bind failure is fatal."""
        family, sockaddr = resolve_address(self.config.data_addr, passive=True)
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if family == socket.AF_INET6:
                # Accept IPv4 clients on the IPv6 wildcard too.
                try:
                    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                except (AttributeError, OSError) as e:
                    logger.debug(f"Dual-stack listener unavailable: {e}")
            sock.bind(sockaddr)
            sock.listen(128)
            sock.settimeout(self.config.poll_interval)
        except OSError:
            sock.close()
            raise

        self.server_socket = sock
        logger.info(f"📍 Listening for app connections on {format_peer(self.address)}")
        logger.info(f"Forwarding to {self.dialer.address}")

    @property
    def address(self):
        return self.server_socket.getsockname() if self.server_socket else None

    @property
    def active_sessions(self) -> int:
        with self.lock:
            return len(self.sessions)

    def serve(self, token: CancelToken):
        """
        Accept loop. Returns once ``token`` is cancelled, after closing the
        listener and waiting for the sessions it started.
        """
        if self.server_socket is None:
            self.bind()

        try:
            while not token.cancelled:
                try:
                    client_socket, client_addr = self.server_socket.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if token.cancelled:
                        break
                    logger.error(f"Data accept error: {e}")
                    # Back off instead of spinning on e.g. EMFILE.
                    token.wait(self.config.poll_interval)
                    continue

                self._handle_new_connection(client_socket, client_addr, token)
        finally:
            self.close()
            self.join_sessions()

    def _handle_new_connection(self, client_socket: socket.socket, client_addr: Tuple,
                               token: CancelToken):
        key = uuid.uuid4().hex
        session_id = key[:8]
        thread = threading.Thread(
            target=self._process_connection,
            args=(key, client_socket, client_addr, token),
            name=f"session-{session_id}",
            daemon=True,
        )
        with self.lock:
            self.sessions[key] = thread
        try:
            thread.start()
        except RuntimeError as e:
            logger.error(f"Unable to start session for {format_peer(client_addr)}: {e}")
            with self.lock:
                self.sessions.pop(key, None)
            client_socket.close()

    def _process_connection(self, key: str, client_socket: socket.socket,
                            client_addr: Tuple, token: CancelToken):
        """Dial the backend for one app connection and relay until done."""
        session_id = key[:8]
        relaying = False
        try:
            logger.info(f"Forwarding from {format_peer(client_addr)} [{session_id}]")
            session_token = token.child(session_id)
            try:
                backend_socket = self.dialer.dial(session_token)
            except Cancelled:
                logger.debug(f"Dial for {format_peer(client_addr)} cancelled [{session_id}]")
                client_socket.close()
                return
            except OSError as e:
                logger.error(f"Unable to dial {self.dialer.address} from {format_peer(client_addr)}: {e}")
                self.stats.dial_failed()
                client_socket.close()
                return

            session = SessionContext(
                session_id=session_id,
                client_socket=client_socket,
                client_addr=client_addr,
                backend_socket=backend_socket,
                backend_addr=self._peer(backend_socket),
                token=session_token,
            )
            relaying = True
            self.relay.run(session)
        except Exception:
            logger.exception(f"Session for {format_peer(client_addr)} failed [{session_id}]")
            if not relaying:
                self.stats.dial_failed()
                client_socket.close()
        finally:
            with self.lock:
                self.sessions.pop(key, None)

    @staticmethod
    def _peer(sock: socket.socket):
        try:
            return sock.getpeername()
        except OSError:
            return "?"

    def join_sessions(self, timeout: Optional[float] = None):
        """Wait for running sessions; each observes cancellation within one poll interval."""
        if timeout is None:
            timeout = self.config.dial_timeout + 2 * self.config.poll_interval
        with self.lock:
            threads = list(self.sessions.values())
        for thread in threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Session thread {thread.name} still running after {timeout:.1f}s")

    def close(self):
        if self.server_socket:
            self.server_socket.close()
            self.server_socket = None
