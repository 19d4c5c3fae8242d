"""
Tests for the Source (A2S) protocol.

Tests cover:
- Challenge decoding and token substitution
- Details parsing (Source and GoldSource layouts)
- Players and rules parsing
- Split and compressed packet reassembly
"""
import bz2
import struct
import zlib

import pytest

from gamequery.models import ChallengeState, PacketType
from gamequery.protocols import PROTOCOLS, get_protocol_class
from gamequery.protocols.cs16 import Cs16
from gamequery.protocols.source import Source
from gamequery.exceptions import ConfigurationError

HEADER = b"\xFF\xFF\xFF\xFF"


def source_details(edf: bytes = b"") -> bytes:
    return (
        HEADER + b"I"
        + bytes([17])
        + b"My ^1Server\x00de_dust2\x00cstrike\x00Counter-Strike\x00"
        + struct.pack("<H", 10)
        + bytes([5, 32, 1])
        + b"dl"
        + bytes([1, 1])
        + b"1.0.0.34\x00"
        + edf
    )


def players_reply() -> bytes:
    return (
        HEADER + b"D" + bytes([2])
        + b"\x00alice\x00" + struct.pack("<if", 12, 61.5)
        + b"\x00bob\x00" + struct.pack("<if", -1, 3.0)
    )


def split_packets(request_id: int, payload: bytes, size: int) -> list:
    parts = [payload[i:i + size] for i in range(0, len(payload), size)]
    return [
        struct.pack("<iIBBH", -2, request_id, len(parts), number, 1248) + part
        for number, part in enumerate(parts)
    ]


class TestRegistry:

    def test_registered_protocols(self):
        assert PROTOCOLS["source"] is Source
        assert get_protocol_class("CS16") is Cs16

    def test_unknown_protocol(self):
        with pytest.raises(ConfigurationError):
            get_protocol_class("doom3")


class TestSourceChallenge:

    def test_challenge_applies_token_to_players_and_rules(self):
        protocol = Source("203.0.113.5")
        protocol.challenge_response = [HEADER + b"A" + b"\x01\x02\x03\x04"]

        assert protocol.challenge_verify_and_parse() is True
        assert protocol.get_packet(PacketType.PLAYERS) == HEADER + b"\x55\x01\x02\x03\x04"
        assert protocol.get_packet(PacketType.RULES) == HEADER + b"\x56\x01\x02\x03\x04"
        assert protocol.get_packet(PacketType.DETAILS) == HEADER + b"TSource Engine Query\x00"

    def test_wrong_reply_type_fails(self):
        protocol = Source("203.0.113.5")
        protocol.challenge_response = [HEADER + b"E\x00\x00"]
        assert protocol.challenge_verify_and_parse() is False
        assert protocol.challenge_state == ChallengeState.FAILED

    def test_truncated_token_fails(self):
        protocol = Source("203.0.113.5")
        protocol.challenge_response = [HEADER + b"A\x01\x02"]
        assert protocol.challenge_verify_and_parse() is False
        assert "malformed" in protocol.challenge_error.message


class TestSourceDetails:

    def test_source_layout(self):
        protocol = Source("203.0.113.5", 27015)
        protocol.add_packet_response(PacketType.DETAILS, [source_details()])
        record = protocol.process_response()

        assert record["online"] is True
        assert record["hostname"] == "My ^1Server"
        assert record["mapname"] == "de_dust2"
        assert record["game_dir"] == "cstrike"
        assert record["steamappid"] == 10
        assert record["num_players"] == 5
        assert record["max_players"] == 32
        assert record["num_bots"] == 1
        assert record["dedicated"] == "d"
        assert record["os"] == "l"
        assert record["password"] is True
        assert record["version"] == "1.0.0.34"
        assert record["protocol"] == "source"
        assert record["port"] == 27015

    def test_extra_data_flags(self):
        edf = bytes([0x80 | 0x20]) + struct.pack("<H", 27016) + b"secure,vac\x00"
        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.DETAILS, [source_details(edf)])
        record = protocol.process_response()
        assert record["game_port"] == 27016
        assert record["keywords"] == "secure,vac"

    def test_goldsrc_layout(self):
        reply = (
            HEADER + b"m"
            + b"203.0.113.5:27015\x00Old School\x00de_aztec\x00cstrike\x00Counter-Strike\x00"
            + bytes([3, 16, 47]) + b"dw" + bytes([0, 0]) + bytes([1, 2])
        )
        protocol = Cs16("203.0.113.5")
        protocol.add_packet_response(PacketType.DETAILS, [reply])
        record = protocol.process_response()
        assert record["hostname"] == "Old School"
        assert record["num_players"] == 3
        assert record["max_players"] == 16
        assert record["secure"] is True
        assert record["num_bots"] == 2
        assert record["type"] == "cs16"

    def test_truncated_details_reported_offline(self):
        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.DETAILS, [source_details()[:12]])
        assert protocol.process_response()["online"] is False

    def test_no_response_offline(self):
        assert Source("203.0.113.5").process_response()["online"] is False


class TestSourcePlayersAndRules:

    def test_players(self):
        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.PLAYERS, [players_reply()])
        players = protocol.process_response()["players"]
        assert [player["name"] for player in players] == ["alice", "bob"]
        assert players[0]["score"] == 12
        assert players[0]["time"] == pytest.approx(61.5)

    def test_rules(self):
        reply = HEADER + b"E" + struct.pack("<H", 2) + b"mp_friendlyfire\x001\x00sv_gravity\x00800\x00"
        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.RULES, [reply])
        assert protocol.process_response()["rules"] == {
            "mp_friendlyfire": "1",
            "sv_gravity": "800",
        }

    def test_challenge_reply_to_players_is_ignored(self):
        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.PLAYERS, [HEADER + b"A\x01\x02\x03\x04"])
        assert "players" not in protocol.process_response()


class TestSplitPackets:

    def test_split_reply_reassembled_out_of_order(self):
        packets = split_packets(7, players_reply(), 10)
        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.PLAYERS, list(reversed(packets)))
        players = protocol.process_response()["players"]
        assert [player["name"] for player in players] == ["alice", "bob"]

    def test_incomplete_split_reply_dropped(self):
        packets = split_packets(7, players_reply(), 10)
        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.PLAYERS, packets[:-1])
        assert "players" not in protocol.process_response()

    def test_compressed_split_reply(self):
        payload = players_reply()
        compressed = struct.pack("<II", len(payload), zlib.crc32(payload) & 0xFFFFFFFF) + bz2.compress(payload)
        packets = split_packets(0x80000001, compressed, 64)

        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.PLAYERS, packets)
        players = protocol.process_response()["players"]
        assert [player["name"] for player in players] == ["alice", "bob"]

    def test_stray_short_datagram_ignored(self):
        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.DETAILS, [b"\xFF\xFF", source_details(), b"\xFF"])
        record = protocol.process_response()
        assert record["online"] is True
        assert record["hostname"] == "My ^1Server"

    def test_truncated_split_header_ignored(self):
        packets = split_packets(7, players_reply(), 10)
        protocol = Source("203.0.113.5")
        protocol.add_packet_response(PacketType.PLAYERS, packets + [struct.pack("<i", -2) + b"\x07\x00"])
        players = protocol.process_response()["players"]
        assert [player["name"] for player in players] == ["alice", "bob"]
