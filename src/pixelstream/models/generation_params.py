"""Generation parameter templates shared by every item of a batch job.

The template is a closed tagged union: ``ImageParams`` or ``VideoParams``,
discriminated by ``kind``. It is stored as JSON on the batch job and parsed
back through ``generation_params_adapter``.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from pixelstream.services.generation.prompt_validator import validate_prompt

# Upstream API only accepts seeds up to int32 max
SEED_MAX = 2_147_483_647

DEFAULT_MODEL = "flux"
DEFAULT_DIMENSION = 1024


class _BaseParams(BaseModel):
    """Fields common to image and video generation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    prompt: str
    negative_prompt: Optional[str] = None
    model: Optional[str] = Field(default=None, max_length=100)
    width: Optional[int] = Field(default=None, gt=0, le=8192)
    height: Optional[int] = Field(default=None, gt=0, le=8192)
    seed: Optional[int] = Field(default=None, ge=0)
    enhance: bool = False
    private: bool = False
    safe: bool = False
    image: Optional[str] = None

    @field_validator("prompt")
    @classmethod
    def check_prompt(cls, v: str) -> str:
        return validate_prompt(v)


class ImageParams(_BaseParams):
    """Template for still image generation."""

    kind: Literal["image"] = "image"


class VideoParams(_BaseParams):
    """Template for video generation."""

    kind: Literal["video"] = "video"
    duration: Optional[int] = Field(default=None, gt=0, le=60)
    audio: bool = False
    aspect_ratio: Optional[str] = Field(default=None, max_length=16)
    last_frame_image: Optional[str] = None


GenerationParams = Annotated[Union[ImageParams, VideoParams], Field(discriminator="kind")]

generation_params_adapter: TypeAdapter[ImageParams | VideoParams] = TypeAdapter(GenerationParams)
