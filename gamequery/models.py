"""
Core data models
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from gamequery.protocols.core import Protocol


class Transport(str, Enum):
    """Socket transport used by a protocol"""

    UDP = "udp"
    TCP = "tcp"


class PacketMode(str, Enum):
    """How a protocol's packets may be dispatched"""

    LINEAR = "linear"  # one packet at a time, direct reads
    MULTI = "multi"  # all packets at once over multiplexed sockets


class PacketType(str, Enum):
    """Well-known packet template keys"""

    ALL = "all"  # some protocols return everything in one call
    BASIC = "basic"
    CHALLENGE = "challenge"
    CHANNELS = "channels"  # voice servers
    DETAILS = "details"
    INFO = "info"
    PLAYERS = "players"
    STATUS = "status"
    RULES = "rules"
    VERSION = "version"


class ChallengeState(str, Enum):
    """Challenge handshake progress for one protocol instance"""

    NONE = "none"
    NEED_CHALLENGE = "need_challenge"
    SENT = "sent"
    RECEIVED = "received"
    VERIFIED = "verified"
    FAILED = "failed"


class QueryOptions(BaseModel):
    """Per-server query options; protocol specific extras pass through"""

    model_config = ConfigDict(extra="allow")

    debug: bool = False
    raw: bool = False
    timeout: float = Field(default=3, ge=0)


class ServerSpec(BaseModel):
    """Server registration request"""

    type: str
    host: str
    id: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", "host")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("options", mode="before")
    @classmethod
    def _options_or_empty(cls, value: Any) -> Any:
        # Anything that is not a mapping is treated as "no overrides"
        return value if isinstance(value, dict) else {}


@dataclass
class ServerEntry:
    """A registered server and the protocol instance that queries it"""

    id: str
    type: str
    ip: str
    port: Optional[int]
    options: QueryOptions
    protocol: "Protocol"
