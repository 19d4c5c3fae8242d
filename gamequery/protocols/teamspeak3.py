"""
TeamSpeak 3 ServerQuery protocol plugin.

- Transport: TCP, linear packet mode.
- The registered host:port is the virtual server's voice port. The query
  itself goes to the ServerQuery port (option ``query_port``, default
  10011); before_send() writes the voice port into the request and
  switches the connection port.
- One request selects the virtual server, asks for server info, clients
  and channels, then quits so the server closes the stream.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import structlog

from gamequery.models import PacketMode, PacketType, Transport
from gamequery.protocols.core import Protocol

logger = structlog.get_logger()

VOICE_PORT_MARKER = b"{voice_port}"
DEFAULT_QUERY_PORT = 10011

COMMANDS = ("use", "serverinfo", "clientlist", "channellist", "quit")

_ESCAPES = {
    "\\": "\\", "/": "/", "s": " ", "p": "|",
    "a": "\a", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t", "v": "\v",
}
_ESCAPE_RE = re.compile(r"\\(.)")


def unescape(value: str) -> str:
    return _ESCAPE_RE.sub(lambda match: _ESCAPES.get(match.group(1), match.group(1)), value)


def _coerce(value: str) -> Any:
    """Numeric ASCII values become ints, everything else stays a string."""
    digits = value[1:] if value.startswith("-") else value
    if digits.isascii() and digits.isdigit():
        return int(value)
    return value


def parse_items(line: str) -> List[Dict[str, Any]]:
    """Parse a ``key=value key=value|key=value`` reply line."""
    items = []
    for raw_item in line.split("|"):
        item: Dict[str, Any] = {}
        for pair in raw_item.split(" "):
            if not pair:
                continue
            key, _, value = pair.partition("=")
            item[key] = _coerce(unescape(value))
        items.append(item)
    return items


class Teamspeak3(Protocol):
    name = "teamspeak3"
    name_long = "Teamspeak 3"
    protocol = "teamspeak3"

    TRANSPORT = Transport.TCP
    PACKET_MODE = PacketMode.LINEAR
    DEFAULT_PORT = 9987

    PACKETS = {
        PacketType.ALL: (
            b"use port=" + VOICE_PORT_MARKER + b"\x0A"
            b"serverinfo\x0A"
            b"clientlist\x0A"
            b"channellist\x0A"
            b"quit\x0A"
        ),
    }

    PROCESS_METHODS = ("process_details", "process_players", "process_channels")

    NORMALIZE = {
        "hostname": "name",
        "numplayers": "clientsonline",
        "maxplayers": "maxclients",
        "password": "flag_password",
    }

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._replies: Optional[Dict[str, str]] = None

    def before_send(self) -> None:
        voice_port = str(self.port).encode("ascii")
        for packet_type, template in self.packets.items():
            self.packets[packet_type] = template.replace(VOICE_PORT_MARKER, voice_port)

        query_port = getattr(self.options, "query_port", None) or DEFAULT_QUERY_PORT
        self.port = int(query_port)

    def process_details(self) -> Dict[str, Any]:
        line = self._reply("serverinfo")
        if not line:
            return {}
        details = parse_items(line)[0]
        return {
            key[len("virtualserver_"):] if key.startswith("virtualserver_") else key: value
            for key, value in details.items()
        }

    def process_players(self) -> Dict[str, Any]:
        line = self._reply("clientlist")
        if not line:
            return {}
        # client_type 1 is a ServerQuery connection, not a player
        players = [item for item in parse_items(line) if item.get("client_type", 0) == 0]
        return {"players": players}

    def process_channels(self) -> Dict[str, Any]:
        line = self._reply("channellist")
        if not line:
            return {}
        return {"channels": parse_items(line)}

    def _reply(self, command: str) -> Optional[str]:
        if self._replies is None:
            self._replies = self._split_replies()
        return self._replies.get(command)

    def _split_replies(self) -> Dict[str, str]:
        """
        Map each command to its data line.

        Every command answers with at most one data line followed by an
        ``error id=N msg=...`` status line; commands that failed keep no
        data line.
        """
        if not self.has_valid_response(PacketType.ALL):
            return {}

        text = b"".join(self.get_packet_response(PacketType.ALL)).decode("utf-8", errors="replace")
        lines = [line.strip() for line in re.split(r"\n\r?|\r\n", text) if line.strip()]
        if not lines or lines[0] != "TS3":
            logger.debug("teamspeak3_bad_banner", address=self.ip)
            return {}

        replies: Dict[str, str] = {}
        commands = iter(COMMANDS)
        pending: Optional[str] = None
        for line in lines[1:]:
            if line.startswith("Welcome to the TeamSpeak"):
                continue
            if line.startswith("error "):
                command = next(commands, None)
                if command is None:
                    break
                status = parse_items(line)[0]
                if pending is not None and status.get("id") == 0:
                    replies[command] = pending
                pending = None
                continue
            pending = line
        return replies
