"""
REST signaling against the generative-video backend.

Every call is a single request/response; the client keeps no state besides
the base endpoint and its HTTP connection pool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, Field, field_validator

from . import __version__
from .errors import ProtocolError, TransportError
from .params import ParameterSet, PipelineConfig, encode_parameters
from .rtc.webrtc import ICECandidate, IceServer, SessionDescription

LOG = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=10.0)

ModelT = TypeVar("ModelT", bound=BaseModel)


class PipelineState(str, Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class LoadParamsModel(BaseModel):
    height: int
    width: int
    seed: Optional[int] = None


class PipelineStatusResponse(BaseModel):
    status: PipelineState
    pipeline_id: Optional[str] = None
    load_params: Optional[LoadParamsModel] = None
    error: Optional[str] = None

    @property
    def is_loaded(self) -> bool:
        return self.status is PipelineState.LOADED

    def matches(self, config: PipelineConfig) -> bool:
        params = self.load_params.model_dump() if self.load_params is not None else None
        return self.is_loaded and config.matches(self.pipeline_id, params)


class PipelineLoadRequest(BaseModel):
    pipeline_id: str
    load_params: LoadParamsModel


class IceServerModel(BaseModel):
    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None

    @field_validator("urls", mode="before")
    @classmethod
    def _coerce_urls(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value


class IceServersResponse(BaseModel):
    iceServers: List[IceServerModel]


class OfferRequest(BaseModel):
    sdp: str
    type: str
    initialParameters: Dict[str, Any]


class OfferResponse(BaseModel):
    sdp: str
    type: str = "answer"
    sessionId: str = Field(min_length=1)


class CandidateModel(BaseModel):
    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: int = 0


class CandidateRequest(BaseModel):
    candidates: List[CandidateModel]


@dataclass(frozen=True)
class OfferAnswer:
    answer: SessionDescription
    session_id: str


class SignalingClient:
    """
    Stateless request/response helper for pipeline and WebRTC signaling.

    ``transport`` lets tests substitute :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: Optional[httpx.Timeout] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = ""
        self.set_base_url(base_url)
        self._client = httpx.AsyncClient(
            timeout=timeout or DEFAULT_TIMEOUT,
            transport=transport,
            headers={"User-Agent": f"dreamlink/{__version__}"},
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def set_base_url(self, url: str) -> None:
        candidate = (url or "").strip().rstrip("/")
        if not candidate:
            raise ValueError("base url must not be empty")
        self._base_url = candidate
        LOG.info("Signaling base URL set to %s", candidate)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SignalingClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------ public API

    async def probe_pipeline(self) -> PipelineStatusResponse:
        response = await self._request("GET", "/pipeline/status")
        status = self._parse(PipelineStatusResponse, response)
        LOG.debug("Pipeline status: %s (%s)", status.status.value, status.pipeline_id)
        return status

    async def load_pipeline(self, config: PipelineConfig) -> None:
        request = PipelineLoadRequest(
            pipeline_id=config.pipeline_id,
            load_params=LoadParamsModel(**config.load_params()),
        )
        body = request.model_dump()
        body.update(config.flags)
        LOG.info("Requesting pipeline load: %s", body)
        await self._request("POST", "/pipeline/load", json=body)

    async def fetch_ice_servers(self) -> List[IceServer]:
        response = await self._request("GET", "/webrtc/ice-servers")
        parsed = self._parse(IceServersResponse, response)
        if not parsed.iceServers:
            raise ProtocolError("ICE server list is empty")
        return [
            IceServer(urls=list(entry.urls), username=entry.username, credential=entry.credential)
            for entry in parsed.iceServers
        ]

    async def submit_offer(
        self, offer: SessionDescription, initial_parameters: ParameterSet
    ) -> OfferAnswer:
        request = OfferRequest(
            sdp=offer.sdp,
            type=offer.type,
            initialParameters=encode_parameters(initial_parameters),
        )
        response = await self._request("POST", "/webrtc/offer", json=request.model_dump())
        parsed = self._parse(OfferResponse, response)
        return OfferAnswer(
            answer=SessionDescription(sdp=parsed.sdp, type=parsed.type),
            session_id=parsed.sessionId,
        )

    async def submit_candidates(self, session_id: str, candidates: List[ICECandidate]) -> None:
        request = CandidateRequest(
            candidates=[CandidateModel(**candidate.to_dict()) for candidate in candidates]
        )
        await self._request("PATCH", f"/webrtc/offer/{session_id}", json=request.model_dump())
        LOG.debug("Sent %d ICE candidate(s) for session %s", len(candidates), session_id)

    # ------------------------------------------------------------------ helpers

    def _url(self, path: str) -> str:
        return f"{self._base_url}{API_PREFIX}{path}"

    async def _request(
        self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, self._url(path), json=json)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        return response

    @staticmethod
    def _parse(model: Type[ModelT], response: httpx.Response) -> ModelT:
        try:
            return model.model_validate(response.json())
        except ValueError as exc:
            raise ProtocolError(f"Malformed {model.__name__}: {exc}") from exc


__all__ = [
    "OfferAnswer",
    "PipelineState",
    "PipelineStatusResponse",
    "SignalingClient",
]
