import asyncio
import json

import httpx
import pytest

from dreamlink.errors import ProtocolError, TransportError
from dreamlink.params import ParameterSet, PipelineConfig
from dreamlink.rtc.webrtc import ICECandidate, SessionDescription
from dreamlink.signaling import PipelineState, SignalingClient


def _client(handler) -> SignalingClient:
    return SignalingClient("http://backend.test/", transport=httpx.MockTransport(handler))


def _run(client: SignalingClient, call):
    async def scenario():
        try:
            return await call(client)
        finally:
            await client.aclose()

    return asyncio.run(scenario())


def test_base_url_is_normalised() -> None:
    client = SignalingClient("https://pod-8000.proxy.example.net///")

    assert client.base_url == "https://pod-8000.proxy.example.net"
    with pytest.raises(ValueError):
        client.set_base_url("   ")
    asyncio.run(client.aclose())


def test_probe_pipeline_parses_status() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url)))
        return httpx.Response(
            200,
            json={"status": "loaded", "pipeline_id": "longlive", "load_params": {"height": 320, "width": 576, "seed": 42}},
        )

    status = _run(_client(handler), lambda client: client.probe_pipeline())

    assert seen == [("GET", "http://backend.test/api/v1/pipeline/status")]
    assert status.status is PipelineState.LOADED
    assert status.matches(PipelineConfig())
    assert not status.matches(PipelineConfig(seed=7))


def test_load_pipeline_body() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"message": "ok"})

    _run(_client(handler), lambda client: client.load_pipeline(PipelineConfig(flags={"vace_enabled": False})))

    assert bodies == [
        {
            "pipeline_id": "longlive",
            "load_params": {"height": 320, "width": 576, "seed": 42},
            "vace_enabled": False,
        }
    ]


def test_fetch_ice_servers_accepts_string_urls() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"iceServers": [{"urls": "stun:stun.example.com:3478"}, {"urls": ["turn:t.example.com"], "username": "a", "credential": "b"}]},
        )

    servers = _run(_client(handler), lambda client: client.fetch_ice_servers())

    assert [server.urls for server in servers] == [["stun:stun.example.com:3478"], ["turn:t.example.com"]]
    assert servers[1].username == "a"
    assert servers[1].credential == "b"


@pytest.mark.parametrize("body", [{"iceServers": []}, {"servers": []}])
def test_fetch_ice_servers_rejects_bad_bodies(body) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    with pytest.raises(ProtocolError):
        _run(_client(handler), lambda client: client.fetch_ice_servers())


def test_submit_offer_round_trip() -> None:
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"sdp": "v=0 answer", "type": "answer", "sessionId": "abc"})

    result = _run(
        _client(handler),
        lambda client: client.submit_offer(SessionDescription(sdp="v=0 offer", type="offer"), ParameterSet()),
    )

    assert result.session_id == "abc"
    assert result.answer == SessionDescription(sdp="v=0 answer", type="answer")
    assert bodies[0]["sdp"] == "v=0 offer"
    assert bodies[0]["type"] == "offer"
    assert bodies[0]["initialParameters"]["denoising_step_list"] == [1000, 750, 500, 250]


def test_submit_offer_without_session_id_is_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"sdp": "v=0 answer", "type": "answer"})

    with pytest.raises(ProtocolError):
        _run(
            _client(handler),
            lambda client: client.submit_offer(SessionDescription(sdp="v=0", type="offer"), ParameterSet()),
        )


def test_submit_candidates_patch_body() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, json.loads(request.content)))
        return httpx.Response(204)

    candidates = [
        ICECandidate(candidate="candidate:1 1 udp 1 10.0.0.1 5000 typ host", sdp_mid="0", sdp_mline_index=0),
        ICECandidate(candidate="candidate:2 1 udp 1 10.0.0.2 5000 typ host", sdp_mid=None, sdp_mline_index=None),
    ]
    _run(_client(handler), lambda client: client.submit_candidates("abc", candidates))

    assert seen == [
        (
            "PATCH",
            "/api/v1/webrtc/offer/abc",
            {
                "candidates": [
                    {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
                    {"candidate": "candidate:2 1 udp 1 10.0.0.2 5000 typ host", "sdpMid": None, "sdpMLineIndex": 0},
                ]
            },
        )
    ]


def test_http_errors_map_to_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"detail": "warming up"})

    with pytest.raises(TransportError):
        _run(_client(handler), lambda client: client.probe_pipeline())


def test_network_errors_map_to_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError):
        _run(_client(handler), lambda client: client.probe_pipeline())


def test_malformed_json_maps_to_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>proxy error</html>")

    with pytest.raises(ProtocolError):
        _run(_client(handler), lambda client: client.probe_pipeline())
