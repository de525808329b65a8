import contextlib
import socket
import threading
import time

import pytest

from balboa_proxy.model.Core.header import Address, ProxyConfig

FAST_POLL = 0.1


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll ``predicate`` until it is truthy or ``timeout`` elapses."""
    end = time.time() + timeout
    while time.time() < end:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def recv_exactly(sock, size, timeout=5.0) -> bytes:
    sock.settimeout(timeout)
    buf = bytearray()
    while len(buf) < size:
        chunk = sock.recv(size - len(buf))
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def recv_until_eof(sock, timeout=5.0) -> bytes:
    sock.settimeout(timeout)
    buf = bytearray()
    while True:
        try:
            chunk = sock.recv(4096)
        except ConnectionResetError:
            break
        if not chunk:
            break
        buf += chunk
    return bytes(buf)


def free_port() -> int:
    """A loopback TCP port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class CaptureBackend:
    """
    Threaded TCP server standing in for the spa module. Records the bytes of
    every connection and optionally echoes them back.
    """

    def __init__(self, echo=False, close_on_eof=True):
        self.echo = echo
        self.close_on_eof = close_on_eof
        self.server = socket.create_server(("127.0.0.1", 0))
        self.server.settimeout(0.1)
        self.connections = []
        self.received = []
        self.lock = threading.Lock()
        self.stopped = threading.Event()
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    @property
    def address(self) -> Address:
        return Address("127.0.0.1", self.server.getsockname()[1])

    def _serve(self):
        while not self.stopped.is_set():
            try:
                conn, _ = self.server.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            with self.lock:
                index = len(self.connections)
                self.connections.append(conn)
                self.received.append(bytearray())
            threading.Thread(target=self._handle, args=(conn, index), daemon=True).start()

    def _handle(self, conn, index):
        conn.settimeout(0.1)
        while not self.stopped.is_set():
            try:
                data = conn.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            if not data:
                if self.close_on_eof:
                    conn.close()
                break
            with self.lock:
                self.received[index] += data
            if self.echo:
                conn.sendall(data)

    def data(self, index=0) -> bytes:
        with self.lock:
            if index >= len(self.received):
                return b""
            return bytes(self.received[index])

    @property
    def connection_count(self) -> int:
        with self.lock:
            return len(self.connections)

    def stop(self):
        self.stopped.set()
        self.server.close()
        with self.lock:
            for conn in self.connections:
                with contextlib.suppress(OSError):
                    conn.close()
        self.thread.join(2)


@pytest.fixture
def backend():
    server = CaptureBackend()
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def echo_backend():
    server = CaptureBackend(echo=True)
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def tcp_pair():
    """Factory for connected loopback TCP socket pairs, closed at teardown."""
    created = []

    def make():
        with socket.create_server(("127.0.0.1", 0)) as listener:
            a = socket.create_connection(listener.getsockname(), timeout=5)
            b, _ = listener.accept()
        created.extend([a, b])
        return a, b

    yield make
    for sock in created:
        with contextlib.suppress(OSError):
            sock.close()


@pytest.fixture
def make_config():
    """Build a loopback-only ProxyConfig with ephemeral ports and a fast poll interval."""

    def make(forward_addr=None, **overrides):
        values = dict(
            forward_addr=forward_addr or Address("127.0.0.1", free_port()),
            data_addr=Address("127.0.0.1", 0),
            discovery_host="127.0.0.1",
            discovery_port=0,
            poll_interval=FAST_POLL,
            dial_timeout=2.0,
        )
        values.update(overrides)
        return ProxyConfig(**values)

    return make
