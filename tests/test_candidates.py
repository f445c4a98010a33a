import asyncio

from dreamlink.errors import TransportError
from dreamlink.rtc.candidates import IceCandidateQueue
from dreamlink.rtc.webrtc import ICECandidate


def _candidate(index: int) -> ICECandidate:
    return ICECandidate(candidate=f"candidate:{index} 1 udp 1 10.0.0.{index} 5000 typ host", sdp_mid="0", sdp_mline_index=0)


class RecordingSubmitter:
    def __init__(self, fail_first: bool = False) -> None:
        self.calls = []
        self.fail_first = fail_first

    async def __call__(self, session_id, candidates) -> None:
        await asyncio.sleep(0)
        if self.fail_first and not self.calls:
            self.calls.append((session_id, None))
            raise TransportError("backend unavailable")
        self.calls.append((session_id, [item.candidate for item in candidates]))


def test_candidates_buffer_until_session_id_and_flush_once_in_order() -> None:
    submitter = RecordingSubmitter()

    async def scenario():
        queue = IceCandidateQueue(submitter)
        for index in range(1, 4):
            queue.enqueue(_candidate(index))
        assert len(queue.pending) == 3
        assert submitter.calls == []

        flushed = await queue.flush("abc")
        assert flushed == 3
        assert queue.pending == []
        assert await queue.flush("abc") == 0
        await queue.close()

    asyncio.run(scenario())

    assert submitter.calls == [("abc", [_candidate(index).candidate for index in range(1, 4)])]


def test_late_candidates_are_not_buffered() -> None:
    submitter = RecordingSubmitter()

    async def scenario():
        queue = IceCandidateQueue(submitter)
        queue.enqueue(_candidate(1))
        await queue.flush("abc")

        queue.enqueue(_candidate(2))
        queue.enqueue(_candidate(3))
        assert queue.pending == []
        await asyncio.sleep(0.01)
        await queue.close()

    asyncio.run(scenario())

    assert [batch for _, batch in submitter.calls] == [
        [_candidate(1).candidate],
        [_candidate(2).candidate],
        [_candidate(3).candidate],
    ]


def test_submit_errors_are_logged_not_raised() -> None:
    submitter = RecordingSubmitter(fail_first=True)

    async def scenario():
        queue = IceCandidateQueue(submitter)
        queue.enqueue(_candidate(1))
        assert await queue.flush("abc") == 1
        queue.enqueue(_candidate(2))
        await asyncio.sleep(0.01)
        await queue.close()

    asyncio.run(scenario())

    assert submitter.calls == [("abc", None), ("abc", [_candidate(2).candidate])]


def test_closed_queue_drops_candidates() -> None:
    submitter = RecordingSubmitter()

    async def scenario():
        queue = IceCandidateQueue(submitter)
        queue.enqueue(_candidate(1))
        await queue.close()
        queue.enqueue(_candidate(2))
        assert await queue.flush("abc") == 0
        assert queue.closed

    asyncio.run(scenario())

    assert submitter.calls == []
