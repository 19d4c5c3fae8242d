"""
Protocol Contract - base class for every game protocol definition

A protocol declares its packet templates, transport, packet mode and the
ordered list of extraction methods that turn accumulated raw responses
into a result record. The orchestrator only ever talks to protocols
through the public methods defined here.

Challenge handshake:
    Protocols that need a challenge declare a ``challenge`` packet. Any other
    template may carry one ``%s`` placeholder; once the challenge response has
    been verified and decoded, the token is substituted into every template
    that carries it. Until then those templates are withheld from
    ``query_packets()``.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import structlog

from gamequery.exceptions import ChallengeError, ProtocolError
from gamequery.models import ChallengeState, PacketMode, PacketType, QueryOptions, Transport
from gamequery.protocols.buffer import Buffer

logger = structlog.get_logger()

CHALLENGE_PLACEHOLDER = b"%s"

# get_packet() selector for "every packet except the challenge"
ALL_BUT_CHALLENGE = "!challenge"

PacketSelector = Union[None, str, Iterable[str]]


def packet_key(packet_type: Union[str, PacketType]) -> str:
    """Normalize a packet type (enum member or plain string) to its string key."""
    if isinstance(packet_type, Enum):
        return str(packet_type.value)
    return str(packet_type)


class Protocol:
    """
    Base class for game server protocols.

    Subclasses override the upper-case class attributes and implement the
    extraction methods named in PROCESS_METHODS. Each extraction method takes
    no arguments and returns a dict of fields; an empty dict means "nothing
    usable was received".
    """

    name = "unnamed"
    name_long = "unnamed"
    protocol = "unknown"

    TRANSPORT: Transport = Transport.UDP
    PACKET_MODE: PacketMode = PacketMode.MULTI
    DEFAULT_PORT: Optional[int] = None
    PACKETS: Mapping[str, bytes] = {}
    PROCESS_METHODS: Tuple[str, ...] = ()

    # result key names used by the normalise filter
    NORMALIZE: Mapping[str, str] = {}

    def __init__(
        self,
        ip: str,
        port: Optional[int] = None,
        options: Union[QueryOptions, Mapping[str, Any], None] = None,
    ):
        self._ip = ip
        self._port = port if port is not None else self.DEFAULT_PORT
        self._transport = self.TRANSPORT
        if isinstance(options, QueryOptions):
            self._options = options
        else:
            self._options = QueryOptions.model_validate(dict(options or {}))

        # Templates are copied so challenge substitution never leaks across instances
        self.packets: Dict[str, bytes] = {
            packet_key(packet_type): bytes(template)
            for packet_type, template in self.PACKETS.items()
        }
        self.packets_response: Dict[str, List[bytes]] = {}

        self._challenge_response: List[bytes] = []
        self._challenge_token: Optional[bytes] = None
        self._challenge_error: Optional[ChallengeError] = None
        self._challenge_state = (
            ChallengeState.NEED_CHALLENGE if self.has_challenge() else ChallengeState.NONE
        )

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._ip}:{self._port} ({self._transport.value})>"

    # Accessors

    @property
    def ip(self) -> str:
        return self._ip

    @property
    def port(self) -> Optional[int]:
        return self._port

    @port.setter
    def port(self, value: Optional[int]) -> None:
        self._port = value

    @property
    def transport(self) -> Transport:
        return self._transport

    @transport.setter
    def transport(self, value: Transport) -> None:
        self._transport = Transport(value)

    @property
    def options(self) -> QueryOptions:
        return self._options

    @property
    def packet_mode(self) -> PacketMode:
        return self.PACKET_MODE

    # Packets

    def has_challenge(self) -> bool:
        """Whether this protocol needs a challenge round before querying."""
        return bool(self.packets.get(PacketType.CHALLENGE.value))

    def get_packet(self, selector: PacketSelector = None) -> Union[bytes, Dict[str, bytes]]:
        """
        Return packet template(s).

        Args:
            selector: None for every template, ALL_BUT_CHALLENGE for every
                template except the challenge one, a single packet type for
                that template (bytes), or an iterable of packet types for the
                matching subset.

        Raises:
            ProtocolError: If a single packet type is requested that this
                protocol does not define
        """
        if selector is None:
            return dict(self.packets)

        if isinstance(selector, str) and selector == ALL_BUT_CHALLENGE:
            return {
                packet_type: template
                for packet_type, template in self.packets.items()
                if packet_type != PacketType.CHALLENGE.value
            }

        if isinstance(selector, str):
            key = packet_key(selector)
            try:
                return self.packets[key]
            except KeyError:
                raise ProtocolError(
                    f"Protocol '{self.name}' has no '{key}' packet",
                    details={"protocol": self.name, "packet_type": key},
                )

        wanted = {packet_key(packet_type) for packet_type in selector}
        return {
            packet_type: template
            for packet_type, template in self.packets.items()
            if packet_type in wanted
        }

    def query_packets(self) -> Dict[str, bytes]:
        """
        Templates to send in the query phase.

        Everything except the challenge packet; templates still waiting for a
        challenge token are left out unless the challenge verified.
        """
        packets = self.get_packet(ALL_BUT_CHALLENGE)
        if self._challenge_state in (ChallengeState.NONE, ChallengeState.VERIFIED):
            return packets

        skipped = [key for key, template in packets.items() if CHALLENGE_PLACEHOLDER in template]
        if skipped:
            logger.debug(
                "challenge_packets_skipped",
                protocol=self.name,
                address=self._ip,
                packet_types=skipped,
                challenge_state=self._challenge_state.value,
            )
        return {key: template for key, template in packets.items() if key not in skipped}

    def before_send(self) -> None:
        """Hook called right before the query packets are sent."""
        return None

    # Challenge handling

    @property
    def challenge_state(self) -> ChallengeState:
        return self._challenge_state

    @property
    def challenge_error(self) -> Optional[ChallengeError]:
        return self._challenge_error

    @property
    def challenge_token(self) -> Optional[bytes]:
        return self._challenge_token

    @property
    def challenge_response(self) -> List[bytes]:
        return list(self._challenge_response)

    @challenge_response.setter
    def challenge_response(self, chunks: Iterable[bytes]) -> None:
        chunks = [bytes(chunk) for chunk in chunks if chunk]
        if not chunks:
            return
        self._challenge_response = chunks
        self._challenge_state = ChallengeState.RECEIVED

    def mark_challenge_sent(self) -> None:
        if self._challenge_state == ChallengeState.NEED_CHALLENGE:
            self._challenge_state = ChallengeState.SENT

    def challenge_ok(self) -> bool:
        return self._challenge_state == ChallengeState.VERIFIED

    def challenge_verify_and_parse(self) -> bool:
        """
        Decode the challenge response and apply the token to the templates.

        Returns:
            True when the token was decoded and applied. False (with the
            reason recorded in ``challenge_error``) when nothing arrived or
            the response could not be decoded.
        """
        if not self._challenge_response:
            return self._challenge_failed("Challenge Response Empty")

        try:
            applied = self.parse_challenge_and_apply(Buffer(self._challenge_response[0]))
        except ProtocolError as e:
            return self._challenge_failed(f"Challenge response malformed: {e.message}")

        if not applied:
            return self._challenge_failed("Challenge response rejected")

        self._challenge_state = ChallengeState.VERIFIED
        return True

    def parse_challenge_and_apply(self, buffer: Buffer) -> bool:
        """Decode the token from ``buffer`` and call challenge_apply(). No-op by default."""
        return True

    def challenge_apply(self, token: Union[bytes, str]) -> bool:
        """Substitute ``token`` into every template carrying the placeholder."""
        if self._challenge_token is not None:
            return False
        if isinstance(token, str):
            token = token.encode("utf-8")

        for packet_type, template in self.packets.items():
            if packet_type == PacketType.CHALLENGE.value:
                continue
            if CHALLENGE_PLACEHOLDER in template:
                self.packets[packet_type] = template.replace(CHALLENGE_PLACEHOLDER, token, 1)

        self._challenge_token = token
        return True

    def _challenge_failed(self, reason: str) -> bool:
        self._challenge_error = ChallengeError(
            reason,
            details={"protocol": self.name, "address": self._ip, "port": self._port},
        )
        self._challenge_state = ChallengeState.FAILED
        logger.warning(
            "challenge_failed",
            protocol=self.name,
            address=self._ip,
            port=self._port,
            reason=reason,
        )
        return False

    # Responses

    def add_packet_response(
        self, packet_type: Union[str, PacketType], chunks: Union[bytes, Iterable[bytes]]
    ) -> None:
        """Append raw chunk(s) received for ``packet_type``; earlier chunks are kept."""
        if isinstance(chunks, (bytes, bytearray)):
            chunks = [chunks]
        received = [bytes(chunk) for chunk in chunks if chunk]
        if not received:
            return
        self.packets_response.setdefault(packet_key(packet_type), []).extend(received)

    def get_packet_response(self, packet_type: Union[str, PacketType]) -> List[bytes]:
        return list(self.packets_response.get(packet_key(packet_type), []))

    def has_valid_response(self, packet_type: Union[str, PacketType]) -> bool:
        chunks = self.packets_response.get(packet_key(packet_type))
        return bool(chunks and chunks[0])

    def process_response(self) -> Dict[str, Any]:
        """
        Run the extraction chain and build the result record.

        Always adds online, address, port, protocol, type and transport.
        A missing response simply yields online=False.

        Raises:
            ProtocolError: If PROCESS_METHODS names a method this class lacks
        """
        if self._options.raw:
            results: Dict[str, Any] = {"raw": {
                packet_type: list(chunks) for packet_type, chunks in self.packets_response.items()
            }}
            online = any(results["raw"].values())
        else:
            results = {}
            for method_name in self.PROCESS_METHODS:
                method = getattr(self, method_name, None)
                if not callable(method):
                    raise ProtocolError(
                        f"Unable to load method {type(self).__name__}.{method_name}",
                        details={"protocol": self.name, "method": method_name},
                    )
                try:
                    results.update(method())
                except (ProtocolError, ValueError) as e:
                    # Malformed server data drops this method's fields only
                    logger.warning(
                        "response_extraction_failed",
                        protocol=self.name,
                        address=self._ip,
                        port=self._port,
                        method=method_name,
                        error=getattr(e, "message", str(e)),
                    )
            online = len(results) > 0

        results.update({
            "online": online,
            "address": self._ip,
            "port": self._port,
            "protocol": self.protocol,
            "type": self.name,
            "transport": self._transport.value,
        })
        return results
