"""
Socket Multiplexer - fan-out over non-blocking sockets without threads

Provides:
- open(): TCP/UDP client sockets connected to a protocol instance's address
- A per-phase socket table mapping monotonic handle ids to
  (server id, packet type, socket)
- listen(): one bounded-time selector loop collecting raw chunks from
  every pending socket at once
- close(): idempotent teardown of tracked sockets

listen() is the only timeout mechanism for multiplexed exchanges: sockets
that stay silent for the whole budget are simply missing from the result.
"""
from __future__ import annotations

import ipaddress
import itertools
import selectors
import socket
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import structlog

from gamequery.config import Settings, settings as default_settings
from gamequery.exceptions import TransportError
from gamequery.models import Transport
from gamequery.protocols.core import Protocol

logger = structlog.get_logger()


@dataclass
class SocketHandle:
    """Binds one socket to exactly one (server, packet type) pair."""

    handle_id: int
    server_id: str
    packet_type: str
    sock: socket.socket


class SocketMultiplexer:
    """
    Opens, tracks, polls and closes the sockets of one request phase.

    Not thread safe; one orchestrator owns one multiplexer.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self._handles: Dict[int, SocketHandle] = {}
        self._counter = itertools.count(1)

    @property
    def handles(self) -> Dict[int, SocketHandle]:
        return dict(self._handles)

    def open(self, instance: Protocol, blocking: bool = False) -> socket.socket:
        """
        Open a socket of the instance's transport to its address.

        Args:
            instance: Protocol instance providing ip, port, transport and the
                ``timeout`` option used as the read timeout
            blocking: Leave the socket in blocking mode (with the read
                timeout) instead of switching it to non-blocking

        Raises:
            TransportError: If the port is unknown or the socket cannot be
                created or connected
        """
        if instance.port is None:
            raise TransportError(
                f"No port known for {instance.ip} ({instance.name})",
                details={"address": instance.ip, "protocol": instance.name},
            )

        address = (instance.ip, int(instance.port))
        try:
            family = socket.AF_INET6 if ipaddress.ip_address(instance.ip).version == 6 else socket.AF_INET
        except ValueError:
            family = socket.AF_INET
        kind = socket.SOCK_STREAM if instance.transport == Transport.TCP else socket.SOCK_DGRAM

        sock: Optional[socket.socket] = None
        try:
            sock = socket.socket(family, kind)
            sock.settimeout(self.settings.connect_timeout)
            sock.connect(address)
        except OSError as e:
            if sock is not None:
                sock.close()
            logger.warning(
                "socket_open_failed",
                address=instance.ip,
                port=instance.port,
                transport=instance.transport.value,
                error=str(e),
            )
            raise TransportError(
                f"Unable to connect to {instance.ip}:{instance.port} over {instance.transport.value}",
                details={"error": str(e), "errno": getattr(e, "errno", None)},
            )

        if blocking:
            sock.settimeout(instance.options.timeout)
        else:
            sock.setblocking(False)
        return sock

    def register(self, sock: socket.socket, server_id: str, packet_type: str) -> int:
        """Track ``sock`` for this phase and return its handle id."""
        handle_id = next(self._counter)
        self._handles[handle_id] = SocketHandle(
            handle_id=handle_id,
            server_id=server_id,
            packet_type=str(packet_type),
            sock=sock,
        )
        return handle_id

    def lookup(self, handle_id: int) -> SocketHandle:
        return self._handles[handle_id]

    def listen(
        self,
        timeout: float,
        handle_ids: Optional[Iterable[int]] = None,
    ) -> Dict[int, List[bytes]]:
        """
        Collect responses from pending sockets until the budget runs out.

        Args:
            timeout: Budget in seconds for the whole loop
            handle_ids: Restrict listening to these handles (default: all
                tracked handles)

        Returns:
            Mapping of handle id to every chunk read from it, in arrival
            order. Handles that never became readable are absent.
        """
        if handle_ids is None:
            watched = list(self._handles.values())
        else:
            watched = [self._handles[handle_id] for handle_id in handle_ids if handle_id in self._handles]

        responses: Dict[int, List[bytes]] = {}
        start = time.monotonic()

        with selectors.DefaultSelector() as selector:
            for handle in watched:
                try:
                    selector.register(handle.sock, selectors.EVENT_READ, data=handle)
                except (OSError, ValueError) as e:
                    logger.warning(
                        "socket_watch_failed",
                        server_id=handle.server_id,
                        packet_type=handle.packet_type,
                        error=str(e),
                    )

            while selector.get_map():
                remaining = timeout - (time.monotonic() - start)
                if remaining <= 0:
                    break

                try:
                    events = selector.select(remaining)
                except (OSError, ValueError) as e:
                    logger.warning("socket_poll_failed", error=str(e), pending=len(selector.get_map()))
                    break

                if not events:
                    break

                for key, _ in events:
                    handle = key.data
                    try:
                        chunk = handle.sock.recv(self.settings.read_size)
                    except BlockingIOError:
                        continue
                    except OSError as e:
                        # ICMP port unreachable and friends: nobody is answering
                        logger.debug(
                            "socket_read_failed",
                            server_id=handle.server_id,
                            packet_type=handle.packet_type,
                            error=str(e),
                        )
                        selector.unregister(handle.sock)
                        continue

                    if not chunk:
                        # Stream closed by peer
                        selector.unregister(handle.sock)
                        continue

                    responses.setdefault(handle.handle_id, []).append(chunk)

                time.sleep(self.settings.poll_interval)

        logger.debug(
            "listen_complete",
            watched=len(watched),
            responded=len(responses),
            elapsed=round(time.monotonic() - start, 3),
        )
        return responses

    def close(self, handle_ids: Optional[Iterable[int]] = None) -> None:
        """Close and forget tracked sockets (all of them by default)."""
        targets = list(self._handles) if handle_ids is None else list(handle_ids)
        for handle_id in targets:
            handle = self._handles.pop(handle_id, None)
            if handle is None:
                continue
            try:
                handle.sock.close()
            except OSError as e:
                logger.warning(
                    "socket_close_failed",
                    server_id=handle.server_id,
                    packet_type=handle.packet_type,
                    error=str(e),
                )
