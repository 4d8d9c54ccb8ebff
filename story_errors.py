"""Error types raised by the generation core.

Decode and frame anomalies are absorbed where they happen and never show up
here. Everything below ends the operation it was raised in.
"""


class AIBookError(Exception):
    """Base class for all core errors."""


class StreamError(AIBookError):
    """The relay sent an ``error`` event, or the stream produced no usable chapter."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NetworkFailure(AIBookError):
    """Transport-level failure talking to the relay."""

    kind = "network"


class NetworkTimeout(NetworkFailure):
    kind = "timeout"


class NetworkConnectionError(NetworkFailure):
    kind = "connection"

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SummarizationFailure(AIBookError):
    """A summarization round-trip failed; the ledger must stay as it was."""


class GenerationInProgress(AIBookError):
    """A second generation was requested while one is still streaming."""
