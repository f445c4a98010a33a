import asyncio

from aiortc.mediastreams import MediaStreamError

from dreamlink.rtc.relay import FrameRelay


class ListSink:
    def __init__(self) -> None:
        self.frames = []

    def write(self, frame) -> None:
        self.frames.append(frame)


class ScriptedTrack:
    """Yields the scripted frames, then ends like a closed remote track."""

    def __init__(self, frames, linger: float = 0.03) -> None:
        self._frames = list(frames)
        self._linger = linger
        self.reads = 0

    async def recv(self):
        await asyncio.sleep(0)
        self.reads += 1
        if not self._frames:
            await asyncio.sleep(self._linger)
            raise MediaStreamError
        return self._frames.pop(0)


class StalledTrack:
    async def recv(self):
        await asyncio.Event().wait()


def test_tick_without_frame_is_noop() -> None:
    sink = ListSink()
    relay = FrameRelay(StalledTrack(), sink)

    assert relay.tick() is False
    assert sink.frames == []


def test_relay_copies_latest_frame_and_stops_at_track_end() -> None:
    sink = ListSink()
    track = ScriptedTrack(["frame-1", "frame-2"])

    async def scenario():
        relay = FrameRelay(track, sink, fps=200)
        relay.start()
        await asyncio.sleep(0.1)
        assert relay.frames_received == 2
        assert relay.running is False
        await relay.stop()
        return relay

    relay = asyncio.run(scenario())

    assert sink.frames
    assert sink.frames[-1] == "frame-2"
    assert relay.frames_relayed == len(sink.frames)


def test_stop_cancels_loops() -> None:
    sink = ListSink()

    async def scenario():
        relay = FrameRelay(StalledTrack(), sink, fps=100)
        relay.start()
        await asyncio.sleep(0.02)
        assert relay.running
        await relay.stop()
        assert relay.running is False

    asyncio.run(scenario())

    assert sink.frames == []
