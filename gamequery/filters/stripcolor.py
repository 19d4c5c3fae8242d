"""Strips in-game colour codes from result strings."""
import re
from typing import Any, Dict

from gamequery.filters.core import Filter
from gamequery.protocols.core import Protocol

# ^1 style (Quake family) and \x1b + 3 byte RGB (Unreal family)
_COLOR_CODES = re.compile(r"\^[0-9a-zA-Z]|\x1b...", re.DOTALL)


def strip_codes(value: Any) -> Any:
    if isinstance(value, str):
        return _COLOR_CODES.sub("", value)
    if isinstance(value, dict):
        return {key: strip_codes(item) for key, item in value.items()}
    if isinstance(value, list):
        return [strip_codes(item) for item in value]
    return value


class StripColor(Filter):
    """
    Remove colour codes from every string value, recursively.

    Params:
        protocols: optional list of protocol identifiers to apply to;
            every protocol when omitted
    """

    def filter(self, record: Dict[str, Any], protocol: Protocol) -> Dict[str, Any]:
        protocols = self.params.get("protocols")
        if protocols and protocol.protocol not in protocols:
            return record
        return strip_codes(record)
