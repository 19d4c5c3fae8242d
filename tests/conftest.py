"""
Shared fixtures: throwaway game servers on 127.0.0.1.

UDPResponder and TCPResponder run a handler on a background thread and
record every request they receive, so tests can assert on what was
actually put on the wire.
"""
from __future__ import annotations

import socket
import threading
from typing import Callable, List, Optional, Tuple

import pytest

from gamequery.config import Settings


class UDPResponder:
    """UDP server answering each datagram with handler(data) -> list of datagrams."""

    def __init__(self, handler: Callable[[bytes], List[bytes]]):
        self.handler = handler
        self.received: List[bytes] = []
        self.peers: List[Tuple[str, int]] = []
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.socket.bind(("127.0.0.1", 0))
        self.socket.settimeout(0.05)
        self.port = self.socket.getsockname()[1]
        self.running = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "UDPResponder":
        self.running = True
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self.running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self.socket.close()

    def _loop(self) -> None:
        while self.running:
            try:
                data, addr = self.socket.recvfrom(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            self.received.append(data)
            self.peers.append(addr)
            for reply in self.handler(data):
                self.socket.sendto(reply, addr)


class TCPResponder:
    """TCP server reading one request per connection, replying and closing."""

    def __init__(self, handler: Callable[[bytes], bytes]):
        self.handler = handler
        self.received: List[bytes] = []
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.socket.bind(("127.0.0.1", 0))
        self.socket.listen(5)
        self.socket.settimeout(0.05)
        self.port = self.socket.getsockname()[1]
        self.running = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "TCPResponder":
        self.running = True
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self.running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self.socket.close()

    def _loop(self) -> None:
        while self.running:
            try:
                conn, _ = self.socket.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            with conn:
                conn.settimeout(1.0)
                try:
                    data = conn.recv(4096)
                except OSError:
                    continue
                self.received.append(data)
                conn.sendall(self.handler(data))


def unused_port(kind: int = socket.SOCK_STREAM) -> int:
    """A local port nothing is listening on."""
    scratch = socket.socket(socket.AF_INET, kind)
    scratch.bind(("127.0.0.1", 0))
    port = scratch.getsockname()[1]
    scratch.close()
    return port


@pytest.fixture
def closed_tcp_port() -> int:
    return unused_port(socket.SOCK_STREAM)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        timeout=0.3,
        connect_timeout=1.0,
        challenge_send_interval=0,
        query_send_interval=0,
        poll_interval=0.01,
        allow_private_addresses=True,  # responders listen on loopback
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def udp_server():
    servers: List[UDPResponder] = []

    def factory(handler: Callable[[bytes], List[bytes]]) -> UDPResponder:
        server = UDPResponder(handler).start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


@pytest.fixture
def tcp_server():
    servers: List[TCPResponder] = []

    def factory(handler: Callable[[bytes], bytes]) -> TCPResponder:
        server = TCPResponder(handler).start()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()
