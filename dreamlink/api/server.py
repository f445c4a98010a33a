"""
FastAPI control surface for a dreamlink streaming session.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .. import ClientConfig
from ..params import ParameterSet
from ..session import SessionSnapshot, StreamingSession
from ..utils.profiles import read_profiles
from . import schemas

LOG = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 32

_subscriber_ids = itertools.count(1)


class SnapshotFeed:
    """Relay session snapshots to one WebSocket client."""

    def __init__(self, session: StreamingSession, websocket: WebSocket, *, queue_size: int) -> None:
        self.session = session
        self.websocket = websocket
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.logger = LOG.getChild(f"events.{next(_subscriber_ids)}")

    def push(self, snapshot: SessionSnapshot) -> None:
        if self.queue.full():
            # Slow consumer: keep the newest state.
            with contextlib.suppress(asyncio.QueueEmpty):
                self.queue.get_nowait()
        self.queue.put_nowait(snapshot.to_dict())

    async def run(self) -> None:
        await self.websocket.accept()
        token = self.session.subscribe(self.push)
        self.logger.info("Event subscriber connected")
        receiver = asyncio.ensure_future(self.websocket.receive_text())
        try:
            while True:
                getter = asyncio.ensure_future(self.queue.get())
                done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if receiver in done:
                    getter.cancel()
                    if receiver.exception() is not None:
                        break
                    # Inbound text is ignored; keep listening for disconnects.
                    receiver = asyncio.ensure_future(self.websocket.receive_text())
                    continue
                await self.websocket.send_json(getter.result())
        except WebSocketDisconnect:
            pass
        finally:
            self.session.unsubscribe(token)
            if not receiver.done():
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                    await receiver
            self.logger.info("Event subscriber disconnected")


def create_app(
    *,
    session: StreamingSession,
    config: Optional[ClientConfig] = None,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    client_config = config or session.config

    app = FastAPI(title="Dreamlink Control API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def result(sent: bool) -> schemas.ControlResult:
        return schemas.ControlResult(sent=sent, session=session.snapshot().to_dict())

    @app.get("/healthz")
    async def healthz() -> dict:
        return {
            "status": "ok",
            "profile": client_config.profile,
            "state": session.state.value,
        }

    @app.get("/profiles")
    async def list_profiles() -> dict:
        try:
            profiles = read_profiles()
        except ValueError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"profiles": profiles, "active": client_config.profile}

    @app.get("/session")
    async def get_session() -> dict:
        return session.snapshot().to_dict()

    @app.post("/session/start", status_code=202)
    async def start_session() -> dict:
        task = session.start()
        return {"accepted": task is not None, "session": session.snapshot().to_dict()}

    @app.post("/session/stop")
    async def stop_session() -> dict:
        await session.stop()
        return session.snapshot().to_dict()

    @app.put("/session/endpoint")
    async def set_endpoint(payload: schemas.EndpointRequest) -> dict:
        try:
            session.set_base_url(payload.url)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"baseUrl": client_config.base_url}

    @app.put("/session/parameters")
    async def replace_parameters(payload: ParameterSet) -> dict:
        session.set_initial_parameters(payload)
        return session.snapshot().to_dict()

    @app.patch("/session/parameters", response_model=schemas.ControlResult)
    async def patch_parameters(payload: schemas.ParameterUpdateRequest) -> schemas.ControlResult:
        try:
            update = payload.to_update()
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        if update.is_empty:
            raise HTTPException(status_code=400, detail="No parameters supplied")
        try:
            sent = session.update_parameters(update)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return result(sent)

    @app.post("/session/cache/reset", response_model=schemas.ControlResult)
    async def reset_cache() -> schemas.ControlResult:
        return result(session.reset_cache())

    @app.put("/session/cache/manage", response_model=schemas.ControlResult)
    async def manage_cache(payload: schemas.ManageCacheRequest) -> schemas.ControlResult:
        return result(session.set_manage_cache(payload.enabled))

    @app.get("/session/negotiation")
    async def get_negotiation() -> dict:
        return session.negotiation.to_dict()

    @app.websocket("/session/events")
    async def session_events(websocket: WebSocket) -> None:
        await SnapshotFeed(session, websocket, queue_size=EVENT_QUEUE_SIZE).run()

    return app


__all__ = ["SnapshotFeed", "create_app"]
