"""
Query orchestrator - coordinates one batch of server queries

Owns the server registry, global options and the filter pipeline, and
drives the three request phases in order:

1. multi challenge phase: every multi-mode server needing a challenge gets
   one socket; all challenges share a single listen budget
2. multi query phase: one socket per query packet of every multi-mode
   server; all packets share a single listen budget
3. linear phase: linear-mode servers, strictly one at a time

Phases never overlap. An orchestrator is not reentrant; use one instance
per concurrent batch.
"""
from __future__ import annotations

import ipaddress
import socket
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type, Union

import structlog
from pydantic import ValidationError

from gamequery.config import Settings, settings as default_settings
from gamequery.engine.multiplexer import SocketMultiplexer
from gamequery.exceptions import ConfigurationError, TransportError
from gamequery.filters import FILTERS, get_filter_class
from gamequery.filters.core import Filter
from gamequery.models import PacketMode, PacketType, QueryOptions, ServerEntry, ServerSpec, Transport
from gamequery.protocols import PROTOCOLS, get_protocol_class
from gamequery.protocols.core import Protocol

logger = structlog.get_logger()


def parse_host(host: str) -> Tuple[str, Optional[int]]:
    """
    Split ``address[:port]`` into address and optional port.

    IPv6 literals need brackets to carry a port (``[::1]:27015``).

    Raises:
        ConfigurationError: If the port is not a valid port number
    """
    host = host.strip()
    if host.startswith("["):
        address, _, rest = host[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif host.count(":") == 1:
        address, _, port_text = host.partition(":")
    else:
        address, port_text = host, ""

    if not port_text:
        return address, None

    try:
        port = int(port_text)
    except ValueError:
        port = -1
    if not 0 < port < 65536:
        raise ConfigurationError(
            f"Invalid port in host '{host}'",
            details={"host": host, "port": port_text},
        )
    return address, port


class QueryOrchestrator:
    """
    Queries registered game servers and returns their result records.

    Example:
        orchestrator = QueryOrchestrator()
        orchestrator.add_server({"type": "cs16", "host": "203.0.113.7:27015"})
        orchestrator.set_filter("normalise")
        results = orchestrator.request_data()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        multiplexer: Optional[SocketMultiplexer] = None,
        protocols: Optional[Mapping[str, Type[Protocol]]] = None,
        filters: Optional[Mapping[str, Type[Filter]]] = None,
    ):
        self.settings = settings or default_settings
        self.multiplexer = multiplexer or SocketMultiplexer(self.settings)
        self.protocols: Dict[str, Type[Protocol]] = dict(PROTOCOLS if protocols is None else protocols)
        self.filter_registry: Dict[str, Type[Filter]] = dict(FILTERS if filters is None else filters)

        self._options: Dict[str, Any] = {
            "debug": self.settings.debug,
            "raw": self.settings.raw,
            "timeout": self.settings.timeout,
        }
        self._servers: Dict[str, ServerEntry] = {}
        self._filters: Dict[str, Filter] = {}

    # Options and filters

    def set_option(self, name: str, value: Any) -> "QueryOrchestrator":
        self._options[name] = value
        return self

    def get_option(self, name: str) -> Any:
        return self._options.get(name)

    def set_filter(self, name: str, params: Optional[Mapping[str, Any]] = None) -> "QueryOrchestrator":
        """Register a filter; filters run in the order they were first set."""
        filter_class = get_filter_class(name, self.filter_registry)
        self._filters[name] = filter_class(params)
        return self

    def remove_filter(self, name: str) -> "QueryOrchestrator":
        self._filters.pop(name, None)
        return self

    # Server registry

    @property
    def servers(self) -> Dict[str, ServerEntry]:
        return dict(self._servers)

    def add_server(self, server_info: Union[ServerSpec, Mapping[str, Any]]) -> "QueryOrchestrator":
        """
        Register a server to query.

        Args:
            server_info: ServerSpec or mapping with ``type`` and ``host``
                (required), ``id`` (defaults to host) and ``options``
                (overrides merged over the global options)

        Raises:
            ConfigurationError: On missing keys, invalid options, an
                unresolvable host or an unknown protocol type
        """
        try:
            spec = server_info if isinstance(server_info, ServerSpec) else ServerSpec.model_validate(server_info)
        except ValidationError as e:
            missing = [".".join(str(part) for part in error["loc"]) for error in e.errors()]
            raise ConfigurationError(
                f"Invalid server info, check keys: {', '.join(missing) or 'server_info'}",
                details={"errors": e.errors(include_url=False)},
            )

        server_id = spec.id or spec.host
        try:
            options = QueryOptions.model_validate({**self._options, **spec.options})
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid options for server '{server_id}'",
                details={"errors": e.errors(include_url=False)},
            )

        address, port = parse_host(spec.host)
        ip = self._resolve(address)
        protocol_class = get_protocol_class(spec.type, self.protocols)

        self._servers[server_id] = ServerEntry(
            id=server_id,
            type=spec.type,
            ip=ip,
            port=port,
            options=options,
            protocol=protocol_class(ip, port, options),
        )
        logger.debug("server_added", server_id=server_id, type=spec.type, address=ip, port=port)
        return self

    def add_servers(self, servers: Iterable[Union[ServerSpec, Mapping[str, Any]]]) -> "QueryOrchestrator":
        for server_info in servers:
            self.add_server(server_info)
        return self

    def clear_servers(self) -> "QueryOrchestrator":
        self._servers.clear()
        self.multiplexer.close()
        return self

    def _resolve(self, address: str) -> str:
        """
        Validate an address literal or resolve a hostname to an IPv4 address.

        Private and loopback literals are not valid addresses: they go through
        hostname resolution and fail there, unless ``allow_private_addresses``
        is on.
        """
        try:
            literal = ipaddress.ip_address(address)
        except ValueError:
            literal = None

        if literal is not None:
            if self.settings.allow_private_addresses or not (literal.is_private or literal.is_loopback):
                return str(literal)

        try:
            ip = socket.gethostbyname(address)
        except (OSError, UnicodeError) as e:
            raise ConfigurationError(
                f"Unable to lookup ip for hostname '{address}'",
                details={"host": address, "error": str(e)},
            )

        # A lookup that hands the input back did not resolve anything
        if ip == address:
            raise ConfigurationError(
                f"Unable to lookup ip for hostname '{address}'",
                details={"host": address},
            )
        return ip

    # Batch

    def request_data(self) -> Dict[str, Dict[str, Any]]:
        """
        Query every registered server and return records keyed by server id.

        Returns an empty mapping when no servers are registered.
        """
        challenges: Dict[str, Protocol] = {}
        multi: Dict[str, Protocol] = {}
        linear: Dict[str, Protocol] = {}

        for server_id, entry in self._servers.items():
            # Protocol instances live for one batch
            entry.protocol = type(entry.protocol)(entry.ip, entry.port, entry.options)
            instance = entry.protocol
            if instance.packet_mode == PacketMode.LINEAR:
                linear[server_id] = instance
                continue
            if instance.has_challenge():
                challenges[server_id] = instance
            multi[server_id] = instance

        started = time.monotonic()
        logger.info(
            "query_batch_started",
            servers=len(self._servers),
            multi=len(multi),
            challenges=len(challenges),
            linear=len(linear),
        )

        if multi:
            self._request_multi(challenges, multi)
        if linear:
            self._request_linear(linear)

        data: Dict[str, Dict[str, Any]] = {}
        for server_id, entry in self._servers.items():
            data[server_id] = self._filter_response(entry.protocol.process_response(), entry.protocol)

        logger.info(
            "query_batch_complete",
            servers=len(data),
            online=sum(1 for record in data.values() if record.get("online")),
            elapsed=round(time.monotonic() - started, 3),
        )
        return data

    def _filter_response(self, record: Dict[str, Any], instance: Protocol) -> Dict[str, Any]:
        for filter_instance in self._filters.values():
            record = filter_instance.filter(record, instance)
        return record

    def _request_multi(self, challenges: Dict[str, Protocol], servers: Dict[str, Protocol]) -> None:
        if challenges:
            self._challenge(challenges)
            for instance in challenges.values():
                instance.challenge_verify_and_parse()

        self._query_server_info(servers)

    def _challenge(self, instances: Dict[str, Protocol]) -> None:
        """Send every challenge packet, then listen once for all replies."""
        try:
            for server_id, instance in instances.items():
                packet = instance.get_packet(PacketType.CHALLENGE)
                if not self._open_and_send(server_id, instance, PacketType.CHALLENGE.value, packet):
                    continue
                instance.mark_challenge_sent()
                self._pace(self.settings.challenge_send_interval)

            responses = self.multiplexer.listen(self._budget())
            for handle_id, chunks in responses.items():
                handle = self.multiplexer.lookup(handle_id)
                instance = instances[handle.server_id]
                self._log_received(handle.server_id, instance, handle.packet_type, chunks)
                instance.challenge_response = chunks
        finally:
            self.multiplexer.close()

    def _query_server_info(self, instances: Dict[str, Protocol]) -> None:
        """Send every query packet on its own socket, then listen once for all replies."""
        try:
            for server_id, instance in instances.items():
                instance.before_send()
                packets = instance.query_packets()
                if not packets:
                    logger.debug("no_query_packets", server_id=server_id)
                    continue

                for packet_type, packet in packets.items():
                    if self._open_and_send(server_id, instance, packet_type, packet):
                        self._pace(self.settings.query_send_interval)

            responses = self.multiplexer.listen(self._budget())
            for handle_id, chunks in responses.items():
                handle = self.multiplexer.lookup(handle_id)
                instance = instances[handle.server_id]
                self._log_received(handle.server_id, instance, handle.packet_type, chunks)
                instance.add_packet_response(handle.packet_type, chunks)
        finally:
            self.multiplexer.close()

    def _request_linear(self, instances: Dict[str, Protocol]) -> None:
        """Query linear servers one after another; a failing server does not stop the rest."""
        for server_id, instance in instances.items():
            try:
                self._query_linear(server_id, instance)
            except TransportError as e:
                logger.warning(
                    "linear_query_failed",
                    server_id=server_id,
                    address=instance.ip,
                    port=instance.port,
                    error=e.message,
                )

    def _query_linear(self, server_id: str, instance: Protocol) -> None:
        instance.before_send()
        sock = self.multiplexer.open(instance, blocking=True)
        handle_id = self.multiplexer.register(sock, server_id, PacketType.CHALLENGE.value)
        handle = self.multiplexer.lookup(handle_id)

        try:
            if instance.has_challenge():
                if self._send(sock, server_id, instance, PacketType.CHALLENGE.value, instance.get_packet(PacketType.CHALLENGE)):
                    instance.mark_challenge_sent()
                    try:
                        chunk = sock.recv(self.settings.linear_read_size)
                    except OSError as e:
                        logger.debug("challenge_read_failed", server_id=server_id, error=str(e))
                        chunk = b""
                    self._log_received(server_id, instance, PacketType.CHALLENGE.value, [chunk])
                    instance.challenge_response = [chunk]
                instance.challenge_verify_and_parse()

            for packet_type, packet in instance.query_packets().items():
                handle.packet_type = packet_type
                if not self._send(sock, server_id, instance, packet_type, packet):
                    continue

                if instance.transport == Transport.TCP:
                    chunks = [self._read_stream(sock, server_id)]
                else:
                    sock.setblocking(False)
                    chunks = self.multiplexer.listen(self._budget(), [handle_id]).get(handle_id, [])

                self._log_received(server_id, instance, packet_type, chunks)
                instance.add_packet_response(packet_type, chunks)
        finally:
            self.multiplexer.close([handle_id])

    # Socket helpers

    def _open_and_send(self, server_id: str, instance: Protocol, packet_type: str, packet: bytes) -> bool:
        """Open a non-blocking socket, send ``packet`` and track the socket for listen()."""
        try:
            sock = self.multiplexer.open(instance)
        except TransportError as e:
            logger.warning(
                "packet_skipped",
                server_id=server_id,
                packet_type=packet_type,
                error=e.message,
            )
            return False

        if not self._send(sock, server_id, instance, packet_type, packet):
            sock.close()
            return False

        self.multiplexer.register(sock, server_id, packet_type)
        return True

    def _send(self, sock: socket.socket, server_id: str, instance: Protocol, packet_type: str, packet: bytes) -> bool:
        try:
            sock.sendall(packet)
        except OSError as e:
            logger.warning(
                "packet_send_failed",
                server_id=server_id,
                packet_type=packet_type,
                error=str(e),
            )
            return False

        if instance.options.debug:
            logger.info(
                "packet_sent",
                server_id=server_id,
                packet_type=packet_type,
                size=len(packet),
                preview=packet[:32].hex(),
            )
        return True

    def _read_stream(self, sock: socket.socket, server_id: str) -> bytes:
        """Read a TCP response until the peer closes, the size cap or the read timeout."""
        chunks: List[bytes] = []
        total = 0
        max_bytes = self.settings.max_response_bytes

        while total < max_bytes:
            try:
                chunk = sock.recv(min(self.settings.read_size, max_bytes - total))
            except socket.timeout:
                logger.debug("stream_read_timeout", server_id=server_id, received=total)
                break
            except OSError as e:
                logger.warning("stream_read_failed", server_id=server_id, received=total, error=str(e))
                break

            if not chunk:
                break
            chunks.append(chunk)
            total += len(chunk)

        return b"".join(chunks)

    def _log_received(self, server_id: str, instance: Protocol, packet_type: str, chunks: List[bytes]) -> None:
        if not instance.options.debug:
            return
        for chunk in chunks:
            logger.info(
                "packet_received",
                server_id=server_id,
                packet_type=packet_type,
                size=len(chunk),
                preview=chunk[:32].hex(),
            )

    def _budget(self) -> float:
        return float(self._options.get("timeout") or 0)

    @staticmethod
    def _pace(interval: float) -> None:
        if interval > 0:
            time.sleep(interval)
