"""
Minimal in-memory WebRTC negotiation artefacts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

FALLBACK_STUN_URL = "stun:stun.l.google.com:19302"


@dataclass
class ICECandidate:
    """Serialisable ICE candidate container."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": int(self.sdp_mline_index or 0),
        }


@dataclass
class IceServer:
    """STUN/TURN server descriptor as returned by the backend."""

    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None

    @classmethod
    def fallback(cls, url: str = FALLBACK_STUN_URL) -> "IceServer":
        return cls(urls=[url])


@dataclass
class SessionDescription:
    sdp: str
    type: str


@dataclass
class NegotiationRecord:
    """
    Tracks the negotiate artefacts exchanged with the backend.

    Nothing here drives the negotiation; the record only keeps the latest
    offer/answer/candidates so the control API can expose them for debugging.
    """

    offer: Optional[str] = None
    answer: Optional[str] = None
    ice_servers: List[IceServer] = field(default_factory=list)
    ice_candidates: List[ICECandidate] = field(default_factory=list)

    def set_offer(self, offer_sdp: str) -> None:
        self.offer = offer_sdp

    def set_answer(self, answer_sdp: str) -> None:
        self.answer = answer_sdp

    def add_candidates(self, candidates: List[ICECandidate]) -> None:
        self.ice_candidates.extend(candidates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offer": self.offer,
            "answer": self.answer,
            "iceServers": [
                {"urls": list(server.urls), "username": server.username}
                for server in self.ice_servers
            ],
            "candidates": [candidate.to_dict() for candidate in self.ice_candidates],
        }


__all__ = ["ICECandidate", "IceServer", "NegotiationRecord", "SessionDescription"]
