"""
Result Filters Package

core.py
    The Filter base class.

normalise.py
    Adds a ``normalized`` section with protocol independent key names.

stripcolor.py
    Removes in-game colour codes from string values.

FILTERS maps the name used with QueryOrchestrator.set_filter() to the
filter class.
"""
from typing import Dict, Mapping, Optional, Type

from gamequery.exceptions import ConfigurationError
from gamequery.filters.core import Filter
from gamequery.filters.normalise import Normalise
from gamequery.filters.stripcolor import StripColor

FILTERS: Dict[str, Type[Filter]] = {
    "normalise": Normalise,
    "stripcolor": StripColor,
}


def get_filter_class(
    name: str, registry: Optional[Mapping[str, Type[Filter]]] = None
) -> Type[Filter]:
    registry = FILTERS if registry is None else registry
    try:
        return registry[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown filter '{name}'",
            details={"filter": name, "available": sorted(registry)},
        )
