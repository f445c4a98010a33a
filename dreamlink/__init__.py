"""
Dreamlink streaming client package.

Connects to a remote generative-video backend over WebRTC: loads the remote
pipeline, negotiates a peer connection, relays frames both ways and keeps a
data channel open for live parameter updates.
"""

from __future__ import annotations

__version__ = "0.1.0"

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping

from .params import ParameterSet, PipelineConfig
from .rtc.webrtc import FALLBACK_STUN_URL

__all__ = [
    "ClientConfig",
    "__version__",
]


@dataclass
class ClientConfig:
    """Top level client configuration."""

    base_url: str = "http://127.0.0.1:8000"
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    parameters: ParameterSet = field(default_factory=ParameterSet)
    poll_interval: float = 2.0
    poll_attempts: int = 60
    strict_pipeline_load: bool = False
    cache_restore_delay: float = 0.1
    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    relay_fps: float = 30.0
    fallback_ice_server: str = FALLBACK_STUN_URL
    profile: str = "default"

    def __post_init__(self) -> None:
        self.base_url = (self.base_url or "").rstrip("/")

    def set_base_url(self, url: str) -> None:
        candidate = (url or "").strip().rstrip("/")
        if not candidate:
            raise ValueError("base url must not be empty")
        self.base_url = candidate

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, profile: str = "default") -> "ClientConfig":
        known = {item.name for item in fields(cls)}
        kwargs: Dict[str, Any] = {key: value for key, value in data.items() if key in known}
        if isinstance(kwargs.get("pipeline"), Mapping):
            kwargs["pipeline"] = PipelineConfig(**kwargs["pipeline"])
        if isinstance(kwargs.get("parameters"), Mapping):
            kwargs["parameters"] = ParameterSet.model_validate(kwargs["parameters"])
        kwargs["profile"] = profile
        return cls(**kwargs)
