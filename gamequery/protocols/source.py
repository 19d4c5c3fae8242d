"""
Valve Source engine query protocol (A2S).

- Transport: UDP, multi packet mode.
- Challenge: A2S_RULES with a -1 token; the S2C_CHALLENGE reply carries the
  4 byte token appended to the players and rules requests.
- Responses: single packets (-1 header) or split packets (-2 header),
  optionally bzip2 compressed.
- Details replies are parsed in both the Source ('I') and the legacy
  GoldSource ('m') layouts.
"""
from __future__ import annotations

import bz2
import zlib
from typing import Any, Dict, List

import structlog

from gamequery.exceptions import ProtocolError
from gamequery.models import PacketMode, PacketType, Transport
from gamequery.protocols.buffer import Buffer
from gamequery.protocols.core import Protocol

logger = structlog.get_logger()

SINGLE_PACKET = -1
SPLIT_PACKET = -2
COMPRESSED_FLAG = 0x80000000
SPLIT_HEADER_SIZE = 12  # header, request id, total, number, max split size

S2C_CHALLENGE = b"A"
S2A_INFO_SOURCE = b"I"
S2A_INFO_GOLDSRC = b"m"
S2A_PLAYER = b"D"
S2A_RULES = b"E"


class Source(Protocol):
    """Source engine servers (and anything answering A2S queries)."""

    name = "source"
    name_long = "Source Server"
    protocol = "source"

    TRANSPORT = Transport.UDP
    PACKET_MODE = PacketMode.MULTI
    DEFAULT_PORT = 27015

    PACKETS = {
        PacketType.CHALLENGE: b"\xFF\xFF\xFF\xFF\x56\xFF\xFF\xFF\xFF",
        PacketType.DETAILS: b"\xFF\xFF\xFF\xFFTSource Engine Query\x00",
        PacketType.PLAYERS: b"\xFF\xFF\xFF\xFF\x55%s",
        PacketType.RULES: b"\xFF\xFF\xFF\xFF\x56%s",
    }

    PROCESS_METHODS = ("process_details", "process_players", "process_rules")

    NORMALIZE = {
        "hostname": "hostname",
        "mapname": "mapname",
        "numplayers": "num_players",
        "maxplayers": "max_players",
        "password": "password",
    }

    def parse_challenge_and_apply(self, buffer: Buffer) -> bool:
        if buffer.read_int32() != SINGLE_PACKET:
            return False
        if buffer.read(1) != S2C_CHALLENGE:
            return False
        return self.challenge_apply(buffer.read(4))

    # Extraction

    def process_details(self) -> Dict[str, Any]:
        buffer = self._first_payload(PacketType.DETAILS)
        if buffer is None:
            return {}

        kind = buffer.read(1)
        if kind == S2A_INFO_SOURCE:
            return self._parse_source_details(buffer)
        if kind == S2A_INFO_GOLDSRC:
            return self._parse_goldsrc_details(buffer)

        logger.debug("unexpected_details_reply", address=self.ip, reply_type=kind.hex())
        return {}

    def process_players(self) -> Dict[str, Any]:
        buffer = self._first_payload(PacketType.PLAYERS)
        if buffer is None or buffer.read(1) != S2A_PLAYER:
            return {}

        buffer.skip(1)  # player count, not reliable on busy servers
        players: List[Dict[str, Any]] = []
        while buffer.get_length():
            buffer.skip(1)  # index, always 0 on modern servers
            players.append({
                "name": buffer.read_string(),
                "score": buffer.read_int32(),
                "time": buffer.read_float32(),
            })
        return {"players": players}

    def process_rules(self) -> Dict[str, Any]:
        buffer = self._first_payload(PacketType.RULES)
        if buffer is None or buffer.read(1) != S2A_RULES:
            return {}

        count = buffer.read_uint16()
        rules: Dict[str, str] = {}
        for _ in range(count):
            if not buffer.get_length():
                break
            rule = buffer.read_string()
            rules[rule] = buffer.read_string()
        return {"rules": rules}

    # Packet assembly

    def _first_payload(self, packet_type: PacketType):
        if not self.has_valid_response(packet_type):
            return None
        payloads = self._assemble(self.get_packet_response(packet_type))
        if not payloads:
            return None
        return Buffer(payloads[0])

    def _assemble(self, chunks: List[bytes]) -> List[bytes]:
        """
        Turn raw datagrams into complete payloads (header stripped).

        Split datagrams are grouped by request id and joined in packet
        number order once every part has arrived.
        """
        payloads: List[bytes] = []
        splits: Dict[int, Dict[int, bytes]] = {}
        totals: Dict[int, int] = {}

        for chunk in chunks:
            buffer = Buffer(chunk)
            if len(buffer.lookahead(4)) < 4:
                logger.debug("short_packet_ignored", address=self.ip, size=len(chunk))
                continue
            header = buffer.read_int32()

            if header == SINGLE_PACKET:
                payloads.append(buffer.get_data())
                continue

            if header != SPLIT_PACKET:
                logger.debug("unknown_packet_header", address=self.ip, header=header)
                continue

            if buffer.get_length() < SPLIT_HEADER_SIZE - 4:
                logger.debug("short_split_packet_ignored", address=self.ip, size=len(chunk))
                continue
            request_id = buffer.read_uint32()
            totals[request_id] = buffer.read_uint8()
            number = buffer.read_uint8()
            buffer.skip(2)  # max split size
            splits.setdefault(request_id, {})[number] = buffer.get_data()

        for request_id, parts in splits.items():
            if len(parts) != totals[request_id]:
                logger.debug(
                    "split_packet_incomplete",
                    address=self.ip,
                    request_id=request_id,
                    received=len(parts),
                    expected=totals[request_id],
                )
                continue
            payload = b"".join(parts[number] for number in sorted(parts))
            if request_id & COMPRESSED_FLAG:
                payload = self._decompress(payload)
            joined = Buffer(payload)
            if len(joined.lookahead(4)) == 4 and joined.read_int32() == SINGLE_PACKET:
                payloads.append(joined.get_data())

        return payloads

    @staticmethod
    def _decompress(payload: bytes) -> bytes:
        buffer = Buffer(payload)
        size = buffer.read_uint32()
        checksum = buffer.read_uint32()
        try:
            data = bz2.decompress(buffer.get_data())
        except (OSError, ValueError) as e:
            raise ProtocolError(f"Unable to decompress split packet: {e}")
        if len(data) != size or zlib.crc32(data) & 0xFFFFFFFF != checksum:
            raise ProtocolError(
                "Decompressed split packet failed verification",
                details={"expected_size": size, "size": len(data)},
            )
        return data

    # Details layouts

    @staticmethod
    def _parse_source_details(buffer: Buffer) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "protocol_version": buffer.read_uint8(),
            "hostname": buffer.read_string(),
            "mapname": buffer.read_string(),
            "game_dir": buffer.read_string(),
            "game_descr": buffer.read_string(),
            "steamappid": buffer.read_uint16(),
            "num_players": buffer.read_uint8(),
            "max_players": buffer.read_uint8(),
            "num_bots": buffer.read_uint8(),
            "dedicated": buffer.read(1).decode("ascii", errors="replace"),
            "os": buffer.read(1).decode("ascii", errors="replace"),
            "password": bool(buffer.read_uint8()),
            "secure": bool(buffer.read_uint8()),
            "version": buffer.read_string(),
        }

        if not buffer.get_length():
            return result

        # Extra data flags
        edf = buffer.read_uint8()
        if edf & 0x80:
            result["game_port"] = buffer.read_uint16()
        if edf & 0x10:
            result["steam_id"] = buffer.read_uint64()
        if edf & 0x40:
            result["spectator_port"] = buffer.read_uint16()
            result["spectator_name"] = buffer.read_string()
        if edf & 0x20:
            result["keywords"] = buffer.read_string()
        if edf & 0x01:
            result["game_id"] = buffer.read_uint64()
        return result

    @staticmethod
    def _parse_goldsrc_details(buffer: Buffer) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "game_address": buffer.read_string(),
            "hostname": buffer.read_string(),
            "mapname": buffer.read_string(),
            "game_dir": buffer.read_string(),
            "game_descr": buffer.read_string(),
            "num_players": buffer.read_uint8(),
            "max_players": buffer.read_uint8(),
            "protocol_version": buffer.read_uint8(),
            "dedicated": buffer.read(1).decode("ascii", errors="replace"),
            "os": buffer.read(1).decode("ascii", errors="replace"),
            "password": bool(buffer.read_uint8()),
            "ismod": bool(buffer.read_uint8()),
        }
        if result["ismod"]:
            result["mod_link"] = buffer.read_string()
            result["mod_download"] = buffer.read_string()
            buffer.skip(1)
            result["mod_version"] = buffer.read_int32()
            result["mod_size"] = buffer.read_int32()
            result["mod_type"] = buffer.read_uint8()
            result["mod_dll"] = buffer.read_uint8()
        result["secure"] = bool(buffer.read_uint8())
        result["num_bots"] = buffer.read_uint8()
        return result
