"""
Buffering for locally gathered ICE candidates.

Candidates appear as soon as the local description is set, which is before
the backend has assigned a session id.  They are held here until
:meth:`IceCandidateQueue.flush` learns the id, submitted as one batch, and
every later candidate is submitted on its own.  All submissions go through a
single outbox drained by one worker task, so delivery order always matches
generation order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from ..errors import DreamlinkError
from .webrtc import ICECandidate

LOG = logging.getLogger(__name__)

SubmitCallable = Callable[[str, List[ICECandidate]], Awaitable[None]]
_OutboxItem = Tuple[List[ICECandidate], Optional["asyncio.Future[None]"]]


class IceCandidateQueue:
    def __init__(self, submit: SubmitCallable) -> None:
        self._submit = submit
        self._pending: List[ICECandidate] = []
        self._session_id: Optional[str] = None
        self._outbox: "asyncio.Queue[_OutboxItem]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def pending(self) -> List[ICECandidate]:
        return list(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(self, candidate: ICECandidate) -> None:
        """
        Accept a freshly gathered candidate.

        Buffered while the session id is unknown, posted immediately after.
        """

        if self._closed:
            LOG.debug("Dropping ICE candidate after close: %s", candidate.candidate)
            return
        if self._session_id is None:
            self._pending.append(candidate)
            LOG.debug("Queued ICE candidate (%d pending)", len(self._pending))
            return
        self._post([candidate])

    async def flush(self, session_id: str) -> int:
        """
        Bind the session id and submit everything buffered so far.

        Returns the number of candidates in the flushed batch.  Waits until
        that batch has been handed to the signaling client.
        """

        if self._closed:
            return 0
        if self._session_id is not None and self._session_id != session_id:
            LOG.warning(
                "Rebinding candidate queue from session %s to %s", self._session_id, session_id
            )
        self._session_id = session_id
        batch, self._pending = self._pending, []
        if not batch:
            return 0

        done: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._post(batch, done)
        await done
        return len(batch)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pending.clear()

        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

        while not self._outbox.empty():
            _, done = self._outbox.get_nowait()
            if done is not None and not done.done():
                done.cancel()

    # ------------------------------------------------------------------ helpers

    def _post(self, batch: List[ICECandidate], done: Optional["asyncio.Future[None]"] = None) -> None:
        self._outbox.put_nowait((batch, done))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            batch, done = await self._outbox.get()
            try:
                session_id = self._session_id
                if session_id is None:  # pragma: no cover - posting requires a session id
                    continue
                await self._submit(session_id, batch)
            except DreamlinkError as exc:
                LOG.error("Failed to send %d ICE candidate(s): %s", len(batch), exc)
            finally:
                if done is not None and not done.done():
                    done.set_result(None)
                self._outbox.task_done()


__all__ = ["IceCandidateQueue"]
