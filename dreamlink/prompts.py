"""
Prompt composition on top of a streaming session.

Prompts are assembled from a prefix, an action and a suffix.  Scene triggers
and character controllers change one part at a time; the composer rebuilds the
full prompt and pushes prompt and noise scale together in a single update.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .params import ParameterUpdate, clamp01
from .session import StreamingSession

LOG = logging.getLogger(__name__)


class PromptComposer:
    def __init__(
        self,
        session: StreamingSession,
        *,
        prefix: str = "A 3D animated scene with",
        action: str = "person standing",
        suffix: str = "",
        weight: float = 1.0,
        noise_scale: float = 0.2,
        auto_update: bool = True,
        cooldown: float = 0.5,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._session = session
        self.prefix = prefix
        self.action = action
        self.suffix = suffix
        self.weight = float(weight)
        self.noise_scale = clamp01(noise_scale)
        self.auto_update = auto_update
        self.cooldown = max(0.0, float(cooldown))
        self._clock = clock or time.monotonic
        self._default_prefix = prefix
        self._default_suffix = suffix
        self._noise_override: Optional[float] = None
        self._last_push: Optional[float] = None
        self._pending = False

    @property
    def prompt(self) -> str:
        parts = (self.prefix, self.action, self.suffix)
        return " ".join(part.strip() for part in parts if part and part.strip())

    @property
    def effective_noise_scale(self) -> float:
        if self._noise_override is not None:
            return self._noise_override
        return self.noise_scale

    @property
    def has_noise_override(self) -> bool:
        return self._noise_override is not None

    @property
    def pending(self) -> bool:
        return self._pending

    # ------------------------------------------------------------------ prompt parts

    def set_prefix(self, prefix: str) -> bool:
        self.prefix = prefix
        return self._changed()

    def set_suffix(self, suffix: str) -> bool:
        self.suffix = suffix
        return self._changed()

    def set_action(self, action: str) -> bool:
        """Set the action text and push immediately, regardless of ``auto_update``."""

        self.action = action
        return self.push(force=True)

    def reset_defaults(self) -> bool:
        self.prefix = self._default_prefix
        self.suffix = self._default_suffix
        return self._changed()

    # ------------------------------------------------------------------ noise

    def set_noise_scale(self, value: float) -> bool:
        self.noise_scale = clamp01(value)
        return self._session.set_noise_scale(self.effective_noise_scale)

    def set_noise_override(self, value: float) -> bool:
        """Override the noise scale until :meth:`clear_noise_override` is called."""

        self._noise_override = clamp01(value)
        LOG.info("External noise scale override set to %s", self._noise_override)
        return self._session.set_noise_scale(self._noise_override)

    def clear_noise_override(self) -> bool:
        if self._noise_override is None:
            return False
        self._noise_override = None
        LOG.info("Noise scale override cleared, returning to %s", self.noise_scale)
        return self._session.set_noise_scale(self.noise_scale)

    # ------------------------------------------------------------------ delivery

    def push(self, *, force: bool = False) -> bool:
        """
        Send the composed prompt with the effective noise scale.

        Non-forced pushes inside the cooldown window are deferred; call
        :meth:`flush_pending` from the host's update loop to deliver them.
        """

        prompt = self.prompt
        if not prompt:
            LOG.warning("Prompt text is empty; nothing to send.")
            return False

        now = self._clock()
        if not force and self._last_push is not None and now - self._last_push < self.cooldown:
            self._pending = True
            return False

        self._last_push = now
        self._pending = False
        LOG.info("Updating prompt: %s (noise scale %s)", prompt, self.effective_noise_scale)
        update = ParameterUpdate.for_prompt(prompt, self.weight, noise_scale=self.effective_noise_scale)
        return self._session.update_parameters(update)

    def flush_pending(self) -> bool:
        if not self._pending:
            return False
        return self.push()

    def reset_cache(self) -> bool:
        LOG.info("Resetting cache...")
        return self._session.reset_cache()

    def _changed(self) -> bool:
        if not self.auto_update:
            return False
        return self.push()


__all__ = ["PromptComposer"]
