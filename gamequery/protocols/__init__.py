"""
Game Protocols Package

core.py
    The Protocol base class every game protocol implements.

buffer.py
    Binary reader used by protocol extraction methods.

source.py, cs16.py, teamspeak3.py
    Protocol definitions shipped with the library.

PROTOCOLS maps the ``type`` key used when registering a server to its
protocol class. Pass an extended mapping to QueryOrchestrator to add your
own protocols.
"""
from typing import Dict, Mapping, Optional, Type

from gamequery.exceptions import ConfigurationError
from gamequery.protocols.core import Protocol
from gamequery.protocols.cs16 import Cs16
from gamequery.protocols.source import Source
from gamequery.protocols.teamspeak3 import Teamspeak3

PROTOCOLS: Dict[str, Type[Protocol]] = {
    protocol_class.name: protocol_class
    for protocol_class in (Source, Cs16, Teamspeak3)
}


def get_protocol_class(
    key: str, registry: Optional[Mapping[str, Type[Protocol]]] = None
) -> Type[Protocol]:
    """Look up a protocol class by its registration key (case-insensitive)."""
    registry = PROTOCOLS if registry is None else registry
    protocol_class = registry.get(key) or registry.get(key.lower())
    if protocol_class is None:
        raise ConfigurationError(
            f"Unknown protocol type '{key}'",
            details={"type": key, "available": sorted(registry)},
        )
    return protocol_class
