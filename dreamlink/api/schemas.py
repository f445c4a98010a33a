"""
Pydantic schemas for the local control API.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..params import InterpolationMethod, ParameterUpdate, PromptEntry


class PromptModel(BaseModel):
    text: str
    weight: float = 1.0

    @field_validator("text")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt text must not be empty")
        return value


class ParameterUpdateRequest(BaseModel):
    """
    Sparse update body.  Fields left out are not sent to the backend.
    """

    prompts: Optional[List[PromptModel]] = None
    prompt: Optional[str] = None
    interpolation: Optional[InterpolationMethod] = Field(
        default=None,
        validation_alias=AliasChoices("interpolation", "prompt_interpolation_method", "promptInterpolationMethod"),
    )
    denoising_steps: Optional[List[int]] = Field(
        default=None,
        validation_alias=AliasChoices("denoising_steps", "denoising_step_list", "denoisingSteps"),
    )
    noise_scale: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("noise_scale", "noiseScale"),
    )
    manage_cache: Optional[bool] = Field(
        default=None,
        validation_alias=AliasChoices("manage_cache", "manageCache"),
    )

    model_config = ConfigDict(populate_by_name=True)

    def to_update(self) -> ParameterUpdate:
        fields = {}
        if self.prompts is not None:
            fields["prompts"] = [PromptEntry(text=item.text, weight=item.weight) for item in self.prompts]
        elif self.prompt is not None:
            fields["prompts"] = [PromptEntry(text=self.prompt)]
        if self.interpolation is not None:
            fields["prompt_interpolation_method"] = self.interpolation
        if self.denoising_steps is not None:
            fields["denoising_step_list"] = self.denoising_steps
        if self.noise_scale is not None:
            fields["noise_scale"] = self.noise_scale
        if self.manage_cache is not None:
            fields["manage_cache"] = self.manage_cache
        return ParameterUpdate(**fields)


class ManageCacheRequest(BaseModel):
    enabled: bool


class EndpointRequest(BaseModel):
    url: str

    @field_validator("url", mode="before")
    @classmethod
    def _normalise_url(cls, value: object) -> str:
        result = str(value or "").strip().rstrip("/")
        if not result:
            raise ValueError("url is required")
        return result


class ControlResult(BaseModel):
    sent: bool
    session: dict
