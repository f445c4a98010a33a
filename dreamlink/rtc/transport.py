"""
Transport primitives: one peer connection, one data channel, optional media.

The session owns exactly one :class:`Transport` per negotiation attempt and
disposes of everything through :meth:`Transport.close`.  No policy lives
here; events are forwarded to a :class:`TransportListener`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Protocol, Tuple, Union

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
    VideoStreamTrack,
)
from av import VideoFrame

from .webrtc import ICECandidate, IceServer, SessionDescription

LOG = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "parameters"


class FrameSource(Protocol):
    """Externally owned producer of outbound frames."""

    def read(self) -> Optional[VideoFrame]:
        ...


class TransportListener(Protocol):
    def on_ice_candidate(self, candidate: ICECandidate) -> None:
        ...

    def on_remote_track(self, track: Any) -> None:
        ...

    def on_connection_state(self, state: str) -> None:
        ...

    def on_channel_open(self) -> None:
        ...

    def on_channel_message(self, message: Union[str, bytes]) -> None:
        ...


class Transport:
    """
    Base class for peer transports.
    """

    def __init__(self, ice_servers: List[IceServer], listener: TransportListener) -> None:
        self.ice_servers = list(ice_servers)
        self._listener = listener
        self._close_task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._close_task is not None and self._close_task.done()

    @property
    def channel_open(self) -> bool:
        raise NotImplementedError

    def open_data_channel(self, label: str = DATA_CHANNEL_LABEL) -> None:
        raise NotImplementedError

    def add_local_track(self, source: FrameSource, width: int, height: int) -> None:
        raise NotImplementedError

    async def create_offer(self) -> SessionDescription:
        """Create an offer, apply it locally and return the local description."""

        raise NotImplementedError

    async def apply_answer(self, answer: SessionDescription) -> None:
        raise NotImplementedError

    def send(self, payload: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        """
        Release every owned resource.  Safe to call more than once.

        Teardown runs in a single task shared by every caller, so cancelling
        a caller never interrupts it and later calls wait for the same task.
        """

        if self._close_task is None:
            self._close_task = asyncio.get_running_loop().create_task(self._teardown())
        await asyncio.shield(self._close_task)

    async def _teardown(self) -> None:
        """
        Release backing resources.  Subclasses should override when required.
        """


class LocalFrameTrack(VideoStreamTrack):
    """
    Outbound video track fed from an external frame source.

    Repeats the last frame (or a blank one) while the source has nothing new.
    """

    def __init__(self, source: FrameSource, width: int, height: int) -> None:
        super().__init__()
        self._source = source
        self._width = int(width)
        self._height = int(height)
        self._last: Optional[VideoFrame] = None

    def _blank(self) -> VideoFrame:
        frame = VideoFrame(width=self._width, height=self._height)
        for plane in frame.planes:
            plane.update(bytes(plane.buffer_size))
        return frame

    async def recv(self) -> VideoFrame:  # type: ignore[override]
        pts, time_base = await self.next_timestamp()
        frame = self._source.read()
        if frame is None:
            frame = self._last if self._last is not None else self._blank()
        self._last = frame
        frame.pts = pts
        frame.time_base = time_base
        return frame


def iter_sdp_candidates(sdp: str) -> List[ICECandidate]:
    """
    Extract ``a=candidate`` lines from an SDP blob, tagged with mid and index.
    """

    candidates: List[ICECandidate] = []
    section: List[Tuple[str, int]] = []
    mid: Optional[str] = None
    index = -1

    def _close_section() -> None:
        for line, line_index in section:
            candidates.append(ICECandidate(candidate=line, sdp_mid=mid, sdp_mline_index=line_index))
        section.clear()

    for raw_line in sdp.splitlines():
        line = raw_line.strip()
        if line.startswith("m="):
            _close_section()
            index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:") and index >= 0:
            section.append((line[len("a="):], index))
    _close_section()
    return candidates


class AiortcTransport(Transport):
    """
    Realise the transport primitives with aiortc.

    aiortc gathers all candidates while the local description is applied and
    never emits trickle events, so candidates are lifted out of the local SDP
    and handed to the listener one at a time.
    """

    def __init__(self, ice_servers: List[IceServer], listener: TransportListener) -> None:
        super().__init__(ice_servers, listener)
        configuration = RTCConfiguration(
            iceServers=[
                RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
                for server in self.ice_servers
            ]
        )
        self._pc = RTCPeerConnection(configuration=configuration)
        self._channel: Optional[RTCDataChannel] = None
        self._local_track: Optional[LocalFrameTrack] = None

        @self._pc.on("connectionstatechange")
        def _on_connection_state() -> None:
            state = self._pc.connectionState
            LOG.info("Peer connection state: %s", state)
            self._listener.on_connection_state(state)

        @self._pc.on("iceconnectionstatechange")
        def _on_ice_state() -> None:
            LOG.info("ICE connection state: %s", self._pc.iceConnectionState)

        @self._pc.on("track")
        def _on_track(track) -> None:
            if track.kind != "video":
                LOG.debug("Ignoring remote %s track", track.kind)
                return
            LOG.info("Received remote video track")
            self._listener.on_remote_track(track)

    @property
    def channel_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    def open_data_channel(self, label: str = DATA_CHANNEL_LABEL) -> None:
        # No maxRetransmits / maxPacketLifeTime: reliable delivery.
        channel = self._pc.createDataChannel(label, ordered=True)

        @channel.on("open")
        def _on_open() -> None:
            LOG.info("Data channel '%s' open", label)
            self._listener.on_channel_open()

        @channel.on("message")
        def _on_message(message) -> None:
            self._listener.on_channel_message(message)

        self._channel = channel

    def add_local_track(self, source: FrameSource, width: int, height: int) -> None:
        self._local_track = LocalFrameTrack(source, width, height)
        self._pc.addTrack(self._local_track)

    async def create_offer(self) -> SessionDescription:
        if self._local_track is None:
            self._pc.addTransceiver("video", direction="recvonly")
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        local = self._pc.localDescription
        for candidate in iter_sdp_candidates(local.sdp):
            self._listener.on_ice_candidate(candidate)
        return SessionDescription(sdp=local.sdp, type=local.type)

    async def apply_answer(self, answer: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=answer.sdp, type=answer.type))

    def send(self, payload: str) -> None:
        if self._channel is None:
            raise RuntimeError("data channel has not been created")
        self._channel.send(payload)

    async def _teardown(self) -> None:
        if self._local_track is not None:
            self._local_track.stop()
            self._local_track = None
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        await self._pc.close()


TransportFactory = Callable[[List[IceServer], TransportListener], Transport]


def create_transport(ice_servers: List[IceServer], listener: TransportListener) -> Transport:
    return AiortcTransport(ice_servers, listener)


__all__ = [
    "AiortcTransport",
    "FrameSource",
    "LocalFrameTrack",
    "Transport",
    "TransportFactory",
    "TransportListener",
    "create_transport",
    "iter_sdp_candidates",
]
