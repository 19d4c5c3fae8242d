"""Adds protocol independent key names to a result record."""
from typing import Any, Dict

from gamequery.filters.core import Filter
from gamequery.protocols.core import Protocol

NORMALIZED_KEYS = ("hostname", "mapname", "numplayers", "maxplayers", "password")


class Normalise(Filter):
    """
    Copy well-known values under common names.

    The result lands in ``record["normalized"]``; keys the protocol does not
    map, or that the server did not report, are None.
    """

    def filter(self, record: Dict[str, Any], protocol: Protocol) -> Dict[str, Any]:
        mapping = protocol.NORMALIZE
        normalized = {}
        for key in NORMALIZED_KEYS:
            source_key = mapping.get(key)
            normalized[key] = record.get(source_key) if source_key else None

        if normalized["password"] is not None:
            normalized["password"] = bool(normalized["password"])

        record["normalized"] = normalized
        return record
