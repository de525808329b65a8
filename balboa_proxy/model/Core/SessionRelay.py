# =============================================================================
# Session Relay
# =============================================================================

import logging
import socket
import threading
from datetime import datetime
from typing import Optional

from .header import BUFFER_SIZE, POLL_INTERVAL, SessionContext, format_peer
from .TrafficStats import DOWNSTREAM, UPSTREAM, TrafficStats

logger = logging.getLogger("balboa_proxy.relay")


class SessionRelay:
    """
    Copies bytes between an app connection and its backend connection.

    Each direction runs in its own thread so that data flowing both ways at
    once can never deadlock. Both threads share the session's CancelToken:
    a read or write error in one direction cancels it and the other direction
    notices within one poll interval. A clean end-of-stream only half-closes
    the opposite socket, so the reverse direction keeps delivering.

    Attributes:
        buffer_size (int): Maximum bytes read per recv call
        poll_interval (float): Socket timeout after which cancellation is re-checked
        stats (TrafficStats): Shared counters updated per chunk and per session
    """

    def __init__(self, buffer_size: int = BUFFER_SIZE, poll_interval: float = POLL_INTERVAL,
                 stats: Optional[TrafficStats] = None):
        self.buffer_size = buffer_size
        self.poll_interval = poll_interval
        self.stats = stats or TrafficStats()

    def run(self, session: SessionContext):
        """
        Relay until both directions have finished, then close both sockets.

        Args:
            session (SessionContext): The connected pair. The relay takes
                ownership of both sockets.
        """
        client = session.client_socket
        backend = session.backend_socket
        self.stats.session_opened()
        logger.info(
            f"Session {session.session_id} started "
            f"{format_peer(session.client_addr)} <-> {format_peer(session.backend_addr)}"
        )

        counters = {UPSTREAM: 0, DOWNSTREAM: 0}
        threads = []
        try:
            for sock in (client, backend):
                sock.settimeout(self.poll_interval)

            for direction, src, dst in ((UPSTREAM, client, backend), (DOWNSTREAM, backend, client)):
                thread = threading.Thread(
                    target=self.pipe,
                    args=(session, src, dst, direction, counters),
                    name=f"relay-{session.session_id}-{direction}",
                    daemon=True,
                )
                thread.start()
                threads.append(thread)
        except (OSError, RuntimeError) as e:
            logger.error(f"Session {session.session_id} could not start: {e}")
            session.token.cancel("relay start failed")
        finally:
            for thread in threads:
                thread.join()
            self._close(session)
            self.stats.session_closed()

        elapsed = (datetime.now() - session.start_time).total_seconds()
        logger.info(
            f"Forward complete {format_peer(session.client_addr)} "
            f"[{session.session_id}] {elapsed:.1f}s "
            f"up={counters[UPSTREAM]} down={counters[DOWNSTREAM]}"
        )

    def pipe(self, session: SessionContext, src: socket.socket, dst: socket.socket,
             direction: str, counters: Optional[dict] = None):
        """Copy ``src`` to ``dst`` until end-of-stream, an error, or cancellation."""
        token = session.token
        route = self._route(session, direction)
        buf = bytearray(self.buffer_size)
        view = memoryview(buf)
        failed = False

        try:
            while not token.cancelled:
                try:
                    count = src.recv_into(buf)
                except socket.timeout:
                    continue
                except OSError as e:
                    logger.warning(f"Read error ({route}): {e}")
                    failed = True
                    return

                if count == 0:
                    logger.debug(f"End of stream ({route})")
                    return

                if not self._send_all(session, dst, view[:count], route):
                    failed = not token.cancelled
                    return

                self.stats.add_traffic(direction, count)
                if counters is not None:
                    counters[direction] += count
        finally:
            self._shutdown_write(dst, route)
            if failed:
                token.cancel(f"{route} failed")

    def _send_all(self, session: SessionContext, dst: socket.socket, data: memoryview,
                  route: str) -> bool:
        """Write every byte of ``data``. Returns False on error or cancellation."""
        sent = 0
        while sent < len(data):
            if session.token.cancelled:
                return False
            try:
                sent += dst.send(data[sent:])
            except socket.timeout:
                # Nothing went out yet; try again after re-checking the token.
                continue
            except OSError as e:
                logger.warning(f"Write error ({route}): {e}")
                return False
        return True

    def _shutdown_write(self, sock: socket.socket, route: str):
        try:
            sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            logger.debug(f"Half-close ({route}): {e}")

    def _close(self, session: SessionContext):
        for sock in (session.client_socket, session.backend_socket):
            try:
                sock.close()
            except OSError as e:
                logger.debug(f"Close error [{session.session_id}]: {e}")

    @staticmethod
    def _route(session: SessionContext, direction: str) -> str:
        client = format_peer(session.client_addr)
        backend = format_peer(session.backend_addr)
        if direction == UPSTREAM:
            return f"{client}->{backend}"
        return f"{backend}->{client}"
