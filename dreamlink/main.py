"""
Client process entrypoint.

Resolves a profile, initialises logging, creates the streaming session and
serves the local control API next to it.  The session itself is driven
through that API (or started immediately with ``--autostart``).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from . import ClientConfig
from .api.server import create_app
from .session import StreamingSession
from .utils.logging import configure_logging
from .utils.profiles import load_config

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(session: StreamingSession, *, autostart: bool = False) -> AsyncIterator[None]:
    """
    Async lifespan used by the FastAPI application.

    The session is always torn down on the way out so the remote backend sees
    the peer connection close.
    """

    LOG.info("Client lifespan starting (profile=%s, backend=%s)", session.config.profile, session.config.base_url)
    if autostart:
        session.start()
    try:
        yield
    finally:
        LOG.info("Client lifespan shutting down")
        try:
            await session.aclose()
        except Exception:  # pragma: no cover - defensive
            LOG.exception("Failed to close streaming session cleanly.")


async def serve(
    config: ClientConfig,
    host: str = "127.0.0.1",
    port: int = 8090,
    *,
    autostart: bool = False,
    log_level: str = "info",
) -> None:
    """
    Serve the control API for one streaming session until a signal arrives.

    ``autostart`` begins streaming as soon as the server is up instead of
    waiting for ``POST /session/start``.
    """

    import uvicorn

    session = StreamingSession(config)

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        async with lifespan(session, autostart=autostart):
            yield

    app = create_app(session=session, config=config, lifespan=app_lifespan)
    # log_config=None keeps uvicorn on the handlers installed by configure_logging.
    server = uvicorn.Server(
        uvicorn.Config(app=app, host=host, port=port, log_config=None, log_level=log_level.lower())
    )

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Signal %s received; stopping control API.", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dreamlink streaming client")
    parser.add_argument("--profile", default="default", help="client profile to load")
    parser.add_argument("--base-url", default=None, help="backend endpoint, overrides the profile")
    parser.add_argument("--host", default="127.0.0.1", help="bind host for the control API")
    parser.add_argument("--port", type=int, default=8090, help="bind port for the control API")
    parser.add_argument("--autostart", action="store_true", help="start streaming immediately")
    parser.add_argument("--log-level", default="INFO", help="root log level")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    config = load_config(args.profile)
    if args.base_url:
        config.set_base_url(args.base_url)

    server = serve(
        config=config,
        host=args.host,
        port=args.port,
        autostart=args.autostart,
        log_level=args.log_level,
    )
    try:
        asyncio.run(server)
    except KeyboardInterrupt:
        LOG.info("Client interrupted by user.")


if __name__ == "__main__":
    run()
