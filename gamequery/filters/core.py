"""
Filter contract

Filters post-process every server's result record. They are registered on
the orchestrator by name together with their constructor parameters and
run in registration order, each receiving the previous filter's output.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from gamequery.protocols.core import Protocol


class Filter(ABC):
    """Base class for result filters."""

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        self.params: Dict[str, Any] = dict(params or {})

    @abstractmethod
    def filter(self, record: Dict[str, Any], protocol: Protocol) -> Dict[str, Any]:
        """
        Transform a result record.

        Args:
            record: Result record produced by protocol.process_response()
                (or by the previous filter)
            protocol: The protocol instance the record came from

        Returns:
            The transformed record
        """
        pass
