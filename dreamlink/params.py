"""
Generation parameters and the data-channel control protocol.

The backend accepts JSON objects over the ``parameters`` data channel.  The
very first parameter set travels inside the WebRTC offer and is always
complete; everything sent afterwards is sparse and only carries the fields
the caller changed, so server-held values are never overwritten with
defaults.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

LOG = logging.getLogger(__name__)

DEFAULT_PIPELINE_ID = "longlive"
DEFAULT_PROMPT = "A beautiful cyberpunk cityscape at night"
DEFAULT_DENOISING_STEPS = (1000, 750, 500, 250)
DEFAULT_NOISE_SCALE = 0.2

STREAM_STOPPED = "stream_stopped"


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def _check_steps(value: List[int]) -> List[int]:
    steps = [int(step) for step in value]
    if not steps:
        raise ValueError("denoising_step_list must not be empty")
    for previous, current in zip(steps, steps[1:]):
        if current >= previous:
            raise ValueError("denoising_step_list must be strictly descending")
    return steps


def _check_prompts(value: List["PromptEntry"]) -> List["PromptEntry"]:
    if not value:
        raise ValueError("at least one prompt is required")
    return value


class InterpolationMethod(str, Enum):
    """How the backend blends between weighted prompts."""

    LINEAR = "linear"
    SLERP = "slerp"


class PromptEntry(BaseModel):
    text: str
    weight: float = 1.0


class ParameterSet(BaseModel):
    """
    Complete set of generation parameters.

    Used for the ``initialParameters`` object embedded in the offer and as the
    locally held copy of the caller's intent while a session runs.
    """

    prompts: List[PromptEntry] = Field(default_factory=lambda: [PromptEntry(text=DEFAULT_PROMPT)])
    prompt_interpolation_method: InterpolationMethod = InterpolationMethod.SLERP
    denoising_step_list: List[int] = Field(default_factory=lambda: list(DEFAULT_DENOISING_STEPS))
    noise_scale: float = DEFAULT_NOISE_SCALE
    manage_cache: bool = True
    input_mode: str = "video"

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("noise_scale", mode="before")
    @classmethod
    def _clamp_noise_scale(cls, value: float) -> float:
        return clamp01(value)

    @field_validator("denoising_step_list")
    @classmethod
    def _validate_steps(cls, value: List[int]) -> List[int]:
        return _check_steps(value)

    @field_validator("prompts")
    @classmethod
    def _validate_prompts(cls, value: List[PromptEntry]) -> List[PromptEntry]:
        return _check_prompts(value)

    @property
    def prompt(self) -> str:
        return self.prompts[0].text

    def merged(self, update: "ParameterUpdate") -> "ParameterSet":
        """Return a copy with the fields carried by ``update`` applied."""

        payload = self.model_dump()
        payload.update(update.changes())
        return ParameterSet.model_validate(payload)


class ParameterUpdate(BaseModel):
    """
    Sparse parameter update.

    Only fields explicitly passed by the caller are serialised.  Unknown field
    names are rejected rather than silently producing an empty update.
    """

    prompts: Optional[List[PromptEntry]] = None
    prompt_interpolation_method: Optional[InterpolationMethod] = None
    denoising_step_list: Optional[List[int]] = None
    noise_scale: Optional[float] = None
    manage_cache: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("noise_scale", mode="before")
    @classmethod
    def _clamp_noise_scale(cls, value: Optional[float]) -> Optional[float]:
        if value is None:
            return None
        return clamp01(value)

    @field_validator("denoising_step_list")
    @classmethod
    def _validate_steps(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value is None:
            return None
        return _check_steps(value)

    @field_validator("prompts")
    @classmethod
    def _validate_prompts(cls, value: Optional[List[PromptEntry]]) -> Optional[List[PromptEntry]]:
        if value is None:
            return None
        return _check_prompts(value)

    @classmethod
    def for_prompt(cls, text: str, weight: float = 1.0, **extra: Any) -> "ParameterUpdate":
        return cls(prompts=[PromptEntry(text=text, weight=weight)], **extra)

    def changes(self, *, mode: str = "python") -> Dict[str, Any]:
        """Fields the caller supplied.  Nested values are always dumped whole."""

        fields = set(self.model_fields_set)
        if not fields:
            return {}
        return self.model_dump(mode=mode, include=fields, exclude_none=True)

    @property
    def is_empty(self) -> bool:
        return not self.changes()


@dataclass(frozen=True)
class CacheDirective:
    """
    Remote cache instruction.

    The backend only honours ``reset_cache`` when ``manage_cache`` is false in
    the same message, so that combination is rejected up front.
    """

    manage_cache: bool
    reset_cache: bool = False

    def __post_init__(self) -> None:
        if self.reset_cache and self.manage_cache:
            raise ValueError("reset_cache requires manage_cache to be false in the same message")

    @classmethod
    def reset(cls) -> "CacheDirective":
        return cls(manage_cache=False, reset_cache=True)

    @classmethod
    def restore(cls) -> "CacheDirective":
        return cls(manage_cache=True)


@dataclass(frozen=True)
class PipelineConfig:
    """Remote pipeline load parameters.  Immutable once a load is requested."""

    pipeline_id: str = DEFAULT_PIPELINE_ID
    width: int = 576
    height: int = 320
    seed: int = 42
    flags: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise ValueError("width and height must be positive")
        if int(self.seed) < 0:
            raise ValueError("seed must be non-negative")
        if not self.pipeline_id:
            raise ValueError("pipeline_id is required")

    def load_params(self) -> Dict[str, int]:
        return {"height": int(self.height), "width": int(self.width), "seed": int(self.seed)}

    def matches(self, pipeline_id: Optional[str], load_params: Optional[Mapping[str, Any]]) -> bool:
        if pipeline_id != self.pipeline_id or not load_params:
            return False
        return all(load_params.get(key) == value for key, value in self.load_params().items())


@dataclass(frozen=True)
class StreamStopped:
    """Inbound notification: the backend halted generation."""

    error_message: Optional[str] = None

    @property
    def reason(self) -> str:
        return self.error_message or "Unknown error"


ControlNotification = StreamStopped


# ---------------------------------------------------------------------- codec


def encode_parameters(params: ParameterSet) -> Dict[str, Any]:
    return params.model_dump(mode="json")


def encode_update(update: ParameterUpdate) -> Dict[str, Any]:
    return update.changes(mode="json")


def encode_cache_directive(directive: CacheDirective) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"manage_cache": bool(directive.manage_cache)}
    if directive.reset_cache:
        payload["reset_cache"] = True
    return payload


def dumps(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"))


def decode_message(raw: Union[str, bytes]) -> Optional[ControlNotification]:
    """
    Parse an inbound data-channel message.

    Unknown or malformed messages are logged and ``None`` is returned.
    """

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            LOG.warning("Ignoring non UTF-8 data channel message (%d bytes)", len(raw))
            return None

    try:
        data = json.loads(raw)
    except ValueError as exc:
        LOG.warning("Failed to parse data channel message: %s", exc)
        return None

    if not isinstance(data, dict):
        LOG.debug("Ignoring data channel message of type %s", type(data).__name__)
        return None

    kind = data.get("type")
    if kind == STREAM_STOPPED:
        message = data.get("error_message")
        return StreamStopped(error_message=str(message) if message else None)

    LOG.debug("Ignoring unrecognised data channel message: %s", raw)
    return None


__all__ = [
    "CacheDirective",
    "ControlNotification",
    "InterpolationMethod",
    "ParameterSet",
    "ParameterUpdate",
    "PipelineConfig",
    "PromptEntry",
    "StreamStopped",
    "clamp01",
    "decode_message",
    "dumps",
    "encode_cache_directive",
    "encode_parameters",
    "encode_update",
]
