from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Tuple

import httpx
import pytest

from dreamlink import ClientConfig
from dreamlink.session import StreamingSession
from dreamlink.signaling import SignalingClient

from fakes import BASE_URL, FakeBackend, TransportRecorder


@pytest.fixture
def session_factory() -> Callable[..., Tuple[StreamingSession, FakeBackend, TransportRecorder]]:
    def build(
        *,
        backend: Optional[FakeBackend] = None,
        transport_options: Optional[Dict[str, Any]] = None,
        session_options: Optional[Dict[str, Any]] = None,
        **config_overrides: Any,
    ) -> Tuple[StreamingSession, FakeBackend, TransportRecorder]:
        backend = backend or FakeBackend()
        recorder = TransportRecorder(**(transport_options or {}))
        settings: Dict[str, Any] = {
            "base_url": BASE_URL,
            "poll_interval": 0.0,
            "poll_attempts": 5,
            "cache_restore_delay": 0.01,
        }
        settings.update(config_overrides)
        config = ClientConfig(**settings)
        signaling = SignalingClient(config.base_url, transport=httpx.MockTransport(backend.handler))
        session = StreamingSession(config, signaling=signaling, transport_factory=recorder, **(session_options or {}))
        return session, backend, recorder

    return build
