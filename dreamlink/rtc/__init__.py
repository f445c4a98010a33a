"""
WebRTC helpers.
"""

from __future__ import annotations

from .candidates import IceCandidateQueue
from .relay import FrameRelay, FrameSink
from .transport import AiortcTransport, FrameSource, Transport, create_transport
from .webrtc import ICECandidate, IceServer, NegotiationRecord, SessionDescription

__all__ = [
    "AiortcTransport",
    "FrameRelay",
    "FrameSink",
    "FrameSource",
    "ICECandidate",
    "IceCandidateQueue",
    "IceServer",
    "NegotiationRecord",
    "SessionDescription",
    "Transport",
    "create_transport",
]
