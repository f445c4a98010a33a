"""
Root logging setup for the ``dreamlink`` command.

``main.run`` calls :func:`configure_logging` with the ``--log-level`` string
before the control API starts.  uvicorn is then created with
``log_config=None`` so its access and error logs go through the same
stdout handler as every ``dreamlink.*`` logger.  Embedding
applications that already configured the root logger are left alone.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> None:
    """
    Install a stdout handler at ``level`` unless the root logger has one.

    ``level`` may be a name such as ``"debug"``; unknown names fall back to INFO.
    """

    if logging.getLogger().handlers:
        # Host application owns logging.
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
