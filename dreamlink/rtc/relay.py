"""
Relay decoded remote frames into an externally owned sink.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional, Protocol

from aiortc.mediastreams import MediaStreamError

LOG = logging.getLogger(__name__)


class FrameSink(Protocol):
    """Externally owned consumer of decoded frames."""

    def write(self, frame: Any) -> None:
        ...


class FrameRelay:
    """
    Copy the most recent inbound frame into ``sink`` once per display tick.

    Receiving and relaying run as separate tasks so a slow network never
    stalls the tick loop; a tick with no decoded frame yet does nothing.
    """

    def __init__(self, track: Any, sink: FrameSink, *, fps: float = 30.0) -> None:
        self._track = track
        self._sink = sink
        self._interval = 1.0 / max(1.0, float(fps))
        self._latest: Optional[Any] = None
        self._frames_received = 0
        self._frames_relayed = 0
        self._receive_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    @property
    def frames_received(self) -> int:
        return self._frames_received

    @property
    def frames_relayed(self) -> int:
        return self._frames_relayed

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._receive_task = loop.create_task(self._receive_loop())
        self._tick_task = loop.create_task(self._tick_loop())

    async def stop(self) -> None:
        tasks = [task for task in (self._receive_task, self._tick_task) if task is not None]
        self._receive_task = None
        self._tick_task = None
        current = asyncio.current_task()
        for task in tasks:
            if task is current:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def tick(self) -> bool:
        frame = self._latest
        if frame is None:
            return False
        try:
            self._sink.write(frame)
        except Exception:  # pragma: no cover - sink failures should not kill the relay
            LOG.exception("Frame sink rejected a frame.")
            return False
        self._frames_relayed += 1
        return True

    # ------------------------------------------------------------------ helpers

    async def _receive_loop(self) -> None:
        while True:
            try:
                frame = await self._track.recv()
            except MediaStreamError:
                LOG.info("Remote video track ended after %d frame(s)", self._frames_received)
                break
            self._latest = frame
            self._frames_received += 1

        tick_task = self._tick_task
        if tick_task is not None:
            tick_task.cancel()

    async def _tick_loop(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self._interval)


__all__ = ["FrameRelay", "FrameSink"]
