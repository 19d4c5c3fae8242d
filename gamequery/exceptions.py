"""
Custom Exception Hierarchy for the query engine

All custom exceptions inherit from GameQueryError so callers can catch
every library error with a single except clause.
"""
from typing import Optional


class GameQueryError(Exception):
    """
    Base exception for all query engine errors.

    Carries a human readable message plus a details dict with the
    context (server id, address, packet type...) that caused it.
    """
    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# Configuration and Registration Errors

class ConfigurationError(GameQueryError):
    """
    Invalid server registration or settings.

    Raised when a server spec misses a required key, its host cannot be
    resolved, or it names an unknown protocol or filter.
    """
    pass


# Protocol Errors

class ProtocolError(GameQueryError):
    """
    Protocol definition or decoding errors.

    Base class for errors raised by protocol implementations.
    """
    pass


class BufferUnderflowError(ProtocolError):
    """Attempted to read past the end of a response buffer."""
    pass


class ChallengeError(ProtocolError):
    """
    Challenge response missing or malformed.

    Recorded on the protocol instance, never raised out of a query batch.
    Packets that depend on the challenge token are skipped.
    """
    pass


# Network and Transport Errors

class TransportError(GameQueryError):
    """
    Network transport failures.

    Raised when a socket cannot be opened or connected. Fatal only for the
    affected server's current phase.
    """
    pass
