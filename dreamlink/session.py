"""
Streaming session orchestrator.

A :class:`StreamingSession` drives one workflow at a time through
``loading_pipeline -> fetching_ice_servers -> negotiating -> streaming``,
owns the transport primitives of the current attempt and exposes the live
control operations (parameter updates, cache resets) to the host.

Everything runs on one asyncio loop.  Transport callbacks are routed through
a per-attempt listener so events from a transport that has already been torn
down never reach the session.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

import httpx

from . import ClientConfig
from .errors import (
    ChannelNotReady,
    DreamlinkError,
    PipelineLoadError,
    PollExhausted,
    ProtocolError,
    RemoteStreamStopped,
    TransportError,
)
from .params import (
    CacheDirective,
    ParameterSet,
    ParameterUpdate,
    StreamStopped,
    decode_message,
    dumps,
    encode_cache_directive,
    encode_update,
)
from .rtc.candidates import IceCandidateQueue
from .rtc.relay import FrameRelay, FrameSink
from .rtc.transport import FrameSource, Transport, TransportFactory, create_transport
from .rtc.webrtc import ICECandidate, IceServer, NegotiationRecord
from .signaling import PipelineState, SignalingClient

LOG = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING_PIPELINE = "loading_pipeline"
    FETCHING_ICE_SERVERS = "fetching_ice_servers"
    NEGOTIATING = "negotiating"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    STOPPED = "stopped"


ACTIVE_STATES = frozenset(
    {
        SessionState.LOADING_PIPELINE,
        SessionState.FETCHING_ICE_SERVERS,
        SessionState.NEGOTIATING,
        SessionState.STREAMING,
    }
)
CONNECTED_STATES = frozenset({SessionState.NEGOTIATING, SessionState.STREAMING})


class LoadOutcome(str, Enum):
    """How the pipeline loading step ended."""

    ALREADY_LOADED = "already_loaded"
    LOADED = "loaded"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class SessionSnapshot:
    """
    Immutable view of the session delivered to observers.
    """

    state: SessionState
    status: str
    session_id: Optional[str]
    created_at: Optional[float]
    last_error: Optional[str]
    channel_open: bool
    load_outcome: Optional[LoadOutcome]
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_streaming(self) -> bool:
        return self.state is SessionState.STREAMING

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "status": self.status,
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "lastError": self.last_error,
            "channelOpen": bool(self.channel_open),
            "isStreaming": self.is_streaming,
            "loadOutcome": self.load_outcome.value if self.load_outcome else None,
            "parameters": dict(self.parameters),
        }


class _TransportEvents:
    """Forward transport callbacks for one attempt only."""

    def __init__(self, session: "StreamingSession", generation: int) -> None:
        self._session = session
        self._generation = generation

    def _current(self) -> bool:
        return self._generation == self._session._generation

    def on_ice_candidate(self, candidate: ICECandidate) -> None:
        if self._current():
            self._session._on_ice_candidate(candidate)

    def on_remote_track(self, track: Any) -> None:
        if self._current():
            self._session._on_remote_track(track)

    def on_connection_state(self, state: str) -> None:
        if self._current():
            self._session._on_connection_state(state)

    def on_channel_open(self) -> None:
        if self._current():
            self._session._on_channel_open()

    def on_channel_message(self, message: Union[str, bytes]) -> None:
        if self._current():
            self._session._on_channel_message(message)


class StreamingSession:
    """
    Own one streaming session against the backend.

    Parameters
    ----------
    config:
        Client configuration (endpoint, pipeline, initial parameters, timings).
    signaling:
        Optional pre-built signaling client; one is created from ``config``
        otherwise and closed by :meth:`aclose`.
    transport_factory:
        Builds the transport primitives for each attempt.
    frame_source, frame_sink:
        Externally owned frame producer/consumer.  The outbound track is only
        attached when a source is given; inbound frames are only relayed when
        a sink is given.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        signaling: Optional[SignalingClient] = None,
        transport_factory: TransportFactory = create_transport,
        frame_source: Optional[FrameSource] = None,
        frame_sink: Optional[FrameSink] = None,
    ) -> None:
        self.config = config or ClientConfig()
        self._owns_signaling = signaling is None
        self._signaling = signaling or SignalingClient(
            self.config.base_url,
            timeout=httpx.Timeout(self.config.request_timeout, connect=self.config.connect_timeout),
        )
        self._transport_factory = transport_factory
        self._frame_source = frame_source
        self._frame_sink = frame_sink

        self._parameters: ParameterSet = self.config.parameters.model_copy(deep=True)
        self._state = SessionState.IDLE
        self._status = "Not connected"
        self._session_id: Optional[str] = None
        self._created_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._load_outcome: Optional[LoadOutcome] = None
        self.negotiation = NegotiationRecord()

        self._generation = 0
        self._transport: Optional[Transport] = None
        self._candidates: Optional[IceCandidateQueue] = None
        self._relay: Optional[FrameRelay] = None
        self._workflow: Optional[asyncio.Task] = None
        self._restore_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._abort_task: Optional[asyncio.Task] = None
        self._retiring: List[Transport] = []
        self._stopping = False

        self._observer_counter = 0
        self._observers: Dict[int, Callable[[SessionSnapshot], None]] = {}

    # ------------------------------------------------------------------ properties

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> str:
        return self._status

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def is_streaming(self) -> bool:
        return self._state is SessionState.STREAMING

    @property
    def channel_open(self) -> bool:
        return self._transport is not None and self._transport.channel_open

    @property
    def parameters(self) -> ParameterSet:
        return self._parameters.model_copy(deep=True)

    @property
    def workflow(self) -> Optional[asyncio.Task]:
        return self._workflow

    @property
    def signaling(self) -> SignalingClient:
        return self._signaling

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            status=self._status,
            session_id=self._session_id,
            created_at=self._created_at,
            last_error=self._last_error,
            channel_open=self.channel_open,
            load_outcome=self._load_outcome,
            parameters=self._parameters.model_dump(mode="json"),
        )

    # ------------------------------------------------------------------ observers

    def subscribe(self, callback: Callable[[SessionSnapshot], None]) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        try:
            callback(self.snapshot())
        except Exception:  # pragma: no cover - defensive
            LOG.exception("Session observer %s failed during initial snapshot.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _notify(self) -> None:
        if not self._observers:
            return
        snapshot = self.snapshot()
        for token, callback in list(self._observers.items()):
            try:
                callback(snapshot)
            except Exception:  # pragma: no cover - observer failures should not kill the session
                LOG.exception("Session observer %s failed.", token)

    def _transition(self, state: SessionState, status: str) -> None:
        if state is not self._state:
            LOG.info("Session state %s -> %s (%s)", self._state.value, state.value, status)
        else:
            LOG.info("%s", status)
        self._state = state
        self._status = status
        self._notify()

    def _set_status(self, status: str) -> None:
        LOG.info("%s", status)
        self._status = status
        self._notify()

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> Optional[asyncio.Task]:
        """
        Begin a new streaming attempt and return its workflow task.

        A no-op (returning the running task) while an attempt is in progress
        or the session is streaming.
        """

        if self._state in ACTIVE_STATES:
            LOG.info("Session already %s; ignoring start request.", self._state.value)
            return self._workflow
        if self._stopping:
            LOG.warning("Session is stopping; ignoring start request.")
            return None

        loop = asyncio.get_running_loop()
        self._transition(SessionState.LOADING_PIPELINE, "Checking pipeline status...")
        self._workflow = loop.create_task(self._run())
        return self._workflow

    async def stop(self) -> None:
        """
        Tear the session down.  Idempotent and safe from any state.
        """

        if self._stopping:
            return
        if (
            self._state is SessionState.STOPPED
            and self._transport is None
            and self._workflow is None
            and not self._tasks
            and not self._retiring
        ):
            return

        self._stopping = True
        try:
            LOG.info("Stopping stream...")
            self._generation += 1

            restore, self._restore_task = self._restore_task, None
            await self._cancel(restore)

            # An abort already owns the teardown; let it finish.
            abort, self._abort_task = self._abort_task, None
            if abort is not None and abort is not asyncio.current_task():
                await asyncio.wait({abort})

            workflow, self._workflow = self._workflow, None
            await self._cancel(workflow)

            tasks = list(self._tasks)
            self._tasks.clear()
            for task in tasks:
                await self._cancel(task)

            await self._release_transport()
            self._session_id = None
            self._transition(SessionState.STOPPED, "Stopped")
        finally:
            self._stopping = False

    async def aclose(self) -> None:
        await self.stop()
        if self._owns_signaling:
            await self._signaling.aclose()

    def set_base_url(self, url: str) -> None:
        """Point the session at a different backend.  Applies to the next start."""

        self.config.set_base_url(url)
        self._signaling.set_base_url(url)

    # ------------------------------------------------------------------ control API

    def set_initial_parameters(self, parameters: ParameterSet) -> None:
        """Replace the complete parameter set embedded in the next offer."""

        self._parameters = parameters.model_copy(deep=True)
        LOG.info(
            "Initial parameters queued: prompt=%r noise_scale=%s steps=%s",
            self._parameters.prompt,
            self._parameters.noise_scale,
            self._parameters.denoising_step_list,
        )
        self._notify()

    def update_parameters(self, update: Optional[ParameterUpdate] = None, **fields: Any) -> bool:
        """
        Send a sparse parameter update over the data channel.

        The locally held parameters always absorb the update; the wire message
        is dropped (and ``False`` returned) when the channel is not open.
        """

        if update is None:
            update = ParameterUpdate(**fields)
        if update.is_empty:
            return False
        self._parameters = self._parameters.merged(update)
        sent = self._send(encode_update(update), "parameter update")
        self._notify()
        return sent

    def update_prompt(self, text: str, weight: float = 1.0) -> bool:
        if not text or not text.strip():
            LOG.warning("Cannot update to empty prompt.")
            return False
        return self.update_parameters(ParameterUpdate.for_prompt(text, weight))

    def set_noise_scale(self, value: float) -> bool:
        return self.update_parameters(ParameterUpdate(noise_scale=value))

    def set_denoising_steps(self, steps: Sequence[int]) -> bool:
        if not steps:
            LOG.warning("Cannot set an empty denoising schedule.")
            return False
        return self.update_parameters(ParameterUpdate(denoising_step_list=list(steps)))

    def set_manage_cache(self, enabled: bool) -> bool:
        restore, self._restore_task = self._restore_task, None
        if restore is not None:
            restore.cancel()
        return self.update_parameters(ParameterUpdate(manage_cache=bool(enabled)))

    def reset_cache(self) -> bool:
        """
        Ask the backend to drop its temporal cache.

        When automatic cache management is enabled, it is switched back on
        after ``cache_restore_delay``.
        """

        if not self._send(encode_cache_directive(CacheDirective.reset()), "cache reset"):
            return False
        if self._parameters.manage_cache:
            self._schedule_restore()
        return True

    # ------------------------------------------------------------------ workflow

    async def _run(self) -> None:
        try:
            self._reset_attempt()
            await self._release_transport()
            await self._load_pipeline()

            self._transition(SessionState.FETCHING_ICE_SERVERS, "Fetching ICE servers...")
            ice_servers = await self._fetch_ice_servers()

            self._transition(SessionState.NEGOTIATING, "Setting up WebRTC...")
            await self._negotiate(ice_servers)

            if self._state is SessionState.NEGOTIATING:
                self._transition(SessionState.STREAMING, "Streaming!")
        except asyncio.CancelledError:
            raise
        except DreamlinkError as exc:
            LOG.error("Streaming attempt aborted: %s", exc)
            await self._fail(str(exc))
        except Exception as exc:
            LOG.exception("Streaming attempt failed unexpectedly.")
            await self._fail(f"{type(exc).__name__}: {exc}")
        finally:
            if self._workflow is asyncio.current_task():
                self._workflow = None

    def _reset_attempt(self) -> None:
        self._generation += 1
        self._session_id = None
        self._created_at = None
        self._last_error = None
        self._load_outcome = None
        self.negotiation = NegotiationRecord()

    async def _load_pipeline(self) -> None:
        pipeline = self.config.pipeline
        try:
            status = await self._signaling.probe_pipeline()
        except (TransportError, ProtocolError) as exc:
            LOG.warning("Status check failed: %s", exc)
            status = None

        if status is not None and status.matches(pipeline):
            LOG.info(
                "Pipeline already loaded with matching configuration (%dx%d).",
                pipeline.width,
                pipeline.height,
            )
            self._load_outcome = LoadOutcome.ALREADY_LOADED
            return
        if status is not None and status.is_loaded:
            current = status.load_params
            LOG.info(
                "Pipeline loaded but configuration differs. Current: %s %s, required: %s %s. Reloading...",
                status.pipeline_id,
                current.model_dump() if current else None,
                pipeline.pipeline_id,
                pipeline.load_params(),
            )

        self._set_status("Loading pipeline...")
        await self._signaling.load_pipeline(pipeline)

        attempts = max(0, int(self.config.poll_attempts))
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(self.config.poll_interval)
            try:
                poll = await self._signaling.probe_pipeline()
            except (TransportError, ProtocolError) as exc:
                LOG.warning("Pipeline status poll %d/%d failed: %s", attempt, attempts, exc)
                continue
            LOG.info("Pipeline status: %s (poll %d/%d)", poll.status.value, attempt, attempts)
            if poll.is_loaded:
                self._load_outcome = LoadOutcome.LOADED
                return
            if poll.status is PipelineState.ERROR:
                raise PipelineLoadError(f"Pipeline error: {poll.error or 'unknown'}")

        self._load_outcome = LoadOutcome.EXHAUSTED
        if self.config.strict_pipeline_load:
            raise PollExhausted(f"Pipeline not loaded after {attempts} status polls")
        LOG.warning("Pipeline not reported loaded after %d polls; continuing anyway.", attempts)

    async def _fetch_ice_servers(self) -> List[IceServer]:
        try:
            servers = await self._signaling.fetch_ice_servers()
        except (TransportError, ProtocolError) as exc:
            LOG.warning(
                "Failed to get ICE servers (%s); falling back to %s",
                exc,
                self.config.fallback_ice_server,
            )
            servers = [IceServer.fallback(self.config.fallback_ice_server)]
        self.negotiation.ice_servers = list(servers)
        return servers

    async def _negotiate(self, ice_servers: List[IceServer]) -> None:
        events = _TransportEvents(self, self._generation)
        transport = self._transport_factory(ice_servers, events)
        self._transport = transport
        self._candidates = IceCandidateQueue(self._submit_candidates)

        transport.open_data_channel()
        if self._frame_source is not None:
            pipeline = self.config.pipeline
            transport.add_local_track(self._frame_source, pipeline.width, pipeline.height)

        self._set_status("Creating offer...")
        offer = await transport.create_offer()
        self.negotiation.set_offer(offer.sdp)

        self._set_status("Sending offer...")
        result = await self._signaling.submit_offer(offer, self._parameters)
        self._session_id = result.session_id
        self._created_at = time.time()
        self.negotiation.set_answer(result.answer.sdp)
        LOG.info("Received answer. Session ID: %s", result.session_id)

        await transport.apply_answer(result.answer)
        flushed = await self._candidates.flush(result.session_id)
        if flushed:
            LOG.info("Flushed %d queued ICE candidate(s).", flushed)

    async def _submit_candidates(self, session_id: str, candidates: List[ICECandidate]) -> None:
        self.negotiation.add_candidates(candidates)
        await self._signaling.submit_candidates(session_id, candidates)

    async def _fail(self, message: str) -> None:
        self._last_error = message
        self._generation += 1
        await self._release_transport()
        self._session_id = None
        self._transition(SessionState.FAILED, f"Error: {message}")

    async def _release_transport(self) -> None:
        restore, self._restore_task = self._restore_task, None
        if restore is not None and restore is not asyncio.current_task():
            restore.cancel()

        relay, self._relay = self._relay, None
        if relay is not None:
            await relay.stop()

        candidates, self._candidates = self._candidates, None
        if candidates is not None:
            await candidates.close()

        transport, self._transport = self._transport, None
        if transport is not None:
            self._retiring.append(transport)

        # Transports stay listed until their close completes, so a release
        # interrupted by cancellation is finished by the next one.
        for retiring in list(self._retiring):
            try:
                await retiring.close()
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to close transport cleanly.")
            if retiring in self._retiring:
                self._retiring.remove(retiring)

    # ------------------------------------------------------------------ control helpers

    def _ensure_channel(self) -> Transport:
        transport = self._transport
        if transport is None or not transport.channel_open:
            raise ChannelNotReady("data channel not open")
        return transport

    def _send(self, payload: Dict[str, Any], what: str) -> bool:
        try:
            transport = self._ensure_channel()
        except ChannelNotReady:
            LOG.warning("Data channel not open, dropping %s.", what)
            return False
        message = dumps(payload)
        LOG.debug("Sending %s: %s", what, message)
        transport.send(message)
        return True

    def _schedule_restore(self) -> None:
        previous = self._restore_task
        if previous is not None:
            previous.cancel()
        self._restore_task = asyncio.get_running_loop().create_task(
            self._restore_manage_cache(self.config.cache_restore_delay)
        )

    async def _restore_manage_cache(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._restore_task is asyncio.current_task():
            self._restore_task = None
        self._send(encode_cache_directive(CacheDirective.restore()), "manage_cache restore")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ------------------------------------------------------------------ transport events

    def _on_ice_candidate(self, candidate: ICECandidate) -> None:
        if self._candidates is not None:
            self._candidates.enqueue(candidate)

    def _on_remote_track(self, track: Any) -> None:
        if self._frame_sink is None:
            LOG.info("No frame sink configured; remote video will not be relayed.")
            return
        if self._relay is not None:
            self._spawn(self._relay.stop())
        LOG.info("Starting video relay loop")
        self._relay = FrameRelay(track, self._frame_sink, fps=self.config.relay_fps)
        self._relay.start()

    def _on_connection_state(self, state: str) -> None:
        if self._state not in CONNECTED_STATES:
            return
        if state == "failed":
            if self._abort_task is None or self._abort_task.done():
                self._abort_task = self._spawn(self._abort("Peer connection failed"))
        elif state in {"disconnected", "closed"}:
            self._transition(SessionState.DISCONNECTED, "Disconnected")

    def _on_channel_open(self) -> None:
        LOG.info("Data channel open; initial parameters were sent with the offer.")
        self._notify()

    def _on_channel_message(self, message: Union[str, bytes]) -> None:
        LOG.debug("Data channel message: %s", message)
        notification = decode_message(message)
        if isinstance(notification, StreamStopped):
            self._on_stream_stopped(notification)

    def _on_stream_stopped(self, notification: StreamStopped) -> None:
        error = RemoteStreamStopped(notification.error_message)
        LOG.warning("Stream stopped by server: %s", error)
        self._last_error = str(error)
        if self._state in CONNECTED_STATES:
            self._transition(SessionState.DISCONNECTED, f"Stream stopped: {error}")
        else:
            self._notify()

    async def _abort(self, message: str) -> None:
        workflow, self._workflow = self._workflow, None
        await self._cancel(workflow)
        await self._fail(message)


__all__ = [
    "LoadOutcome",
    "SessionSnapshot",
    "SessionState",
    "StreamingSession",
]
