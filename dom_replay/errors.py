"""
Exceptions for DOM Replay.

None of these are fatal to the engine: transport errors become a connection
status, fetch errors become the replay ERROR state.
"""


class DomReplayError(Exception):
    """Base class for all package errors."""


class TransportError(DomReplayError):
    """Live feed disconnected or sent something unparseable."""


class FetchError(DomReplayError):
    """Historical range query failed or timed out."""
