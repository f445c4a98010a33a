"""
Error taxonomy shared by the signaling client and the session orchestrator.
"""

from __future__ import annotations

from typing import Optional


class DreamlinkError(RuntimeError):
    """Base class for streaming client errors."""


class TransportError(DreamlinkError):
    """Raised when a network request fails or the backend answers with an HTTP error."""


class ProtocolError(DreamlinkError):
    """Raised when a response cannot be parsed into the expected shape."""


class ChannelNotReady(DreamlinkError):
    """A control message was attempted while the data channel was not open."""


class RemoteStreamStopped(DreamlinkError):
    """The backend halted the stream and notified us over the data channel."""

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(reason or "Unknown error")


class PipelineLoadError(DreamlinkError):
    """The backend reported an ``error`` status while loading the pipeline."""


class PollExhausted(DreamlinkError):
    """The bounded status poll ended without observing a loaded pipeline."""


__all__ = [
    "ChannelNotReady",
    "DreamlinkError",
    "PipelineLoadError",
    "PollExhausted",
    "ProtocolError",
    "RemoteStreamStopped",
    "TransportError",
]
