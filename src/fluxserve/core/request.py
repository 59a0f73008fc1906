"""The generation request and its normalised views.

:class:`GenerationRequest` is the immutable input of a job.  It stores the
values exactly as the caller sent them; every value the pipeline actually
uses is derived on read through the ``final_*`` properties, so the stored
request can be echoed back verbatim while generation always sees clamped,
64-aligned values.

JSON payloads use camelCase keys (``initImageStrength``, ``loraPath``),
Python code uses the snake_case attribute names; both are accepted when
constructing a request.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_PROMPT = "default prompt"
DEFAULT_DIMENSION = 512
DEFAULT_STEPS = 4
DEFAULT_GUIDANCE = 3.5
DEFAULT_IMAGE_STRENGTH = 0.3
DEFAULT_MODEL = "schnell"

MIN_STEPS, MAX_STEPS = 1, 50
MIN_GUIDANCE, MAX_GUIDANCE = 0.0, 10.0

DIMENSION_ALIGNMENT = 64


def normalize_dimension(value: int) -> int:
    """Floor ``value`` to the nearest lower multiple of 64."""
    return value - (value % DIMENSION_ALIGNMENT)


def clamp(value, lower, upper):
    """Clamp ``value`` into ``[lower, upper]``."""
    return min(max(value, lower), upper)


class GenerationRequest(BaseModel):
    """Request body for ``POST /generate`` and input of a generation job.

    Attributes:
        prompt: Text prompt.  ``None`` falls back to ``"default prompt"``.
        width: Requested width in pixels (floored to a multiple of 64).
        height: Requested height in pixels (floored to a multiple of 64).
        steps: Denoising steps (clamped to 1-50).
        guidance: Guidance scale (clamped to 0-10).
        seed: Random seed.  ``None`` lets the engine pick one.
        model: ``"schnell"`` (fast) or ``"dev"`` (high quality).
        quantize: Load the transformer with 8-bit weights.
        float16: Run in half precision (default ``True``).
        hf_token: HuggingFace token for gated repositories.
        lora_path: Local LoRA weights file or HuggingFace repo id.
        init_image_path: Source image for image-to-image generation.
        init_image_base64: Source image as base64 (optionally a data URI).
        init_image_strength: How far the source image is noised (0-1).
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    prompt: str | None = Field(default=None, description="Text prompt.")
    width: int | None = Field(default=None, ge=0, description="Width in pixels.")
    height: int | None = Field(default=None, ge=0, description="Height in pixels.")
    steps: int | None = Field(default=None, description="Number of denoising steps.")
    guidance: float | None = Field(default=None, allow_inf_nan=False, description="Guidance scale.")
    seed: int | None = Field(default=None, ge=0, description="Random seed.")
    model: str | None = Field(default=None, description="Model variant: 'schnell' or 'dev'.")
    quantize: bool | None = Field(default=None, description="Quantize transformer weights.")
    float16: bool | None = Field(default=None, description="Use half precision.")
    hf_token: str | None = Field(default=None, description="HuggingFace access token.")
    lora_path: str | None = Field(default=None, description="LoRA weights path or repo id.")
    init_image_path: str | None = Field(default=None, description="Source image path.")
    init_image_base64: str | None = Field(
        default=None,
        description="Source image encoded as base64, optionally with a data URI prefix.",
    )
    init_image_strength: float | None = Field(
        default=None,
        allow_inf_nan=False,
        description="Source image strength (0.0-1.0).",
    )

    # -- Normalised views ---------------------------------------------------

    @property
    def final_prompt(self) -> str:
        return self.prompt if self.prompt is not None else DEFAULT_PROMPT

    @property
    def final_width(self) -> int:
        return normalize_dimension(self.width if self.width is not None else DEFAULT_DIMENSION)

    @property
    def final_height(self) -> int:
        return normalize_dimension(self.height if self.height is not None else DEFAULT_DIMENSION)

    @property
    def final_steps(self) -> int:
        steps = self.steps if self.steps is not None else DEFAULT_STEPS
        return clamp(steps, MIN_STEPS, MAX_STEPS)

    @property
    def final_guidance(self) -> float:
        guidance = self.guidance if self.guidance is not None else DEFAULT_GUIDANCE
        return clamp(guidance, MIN_GUIDANCE, MAX_GUIDANCE)

    @property
    def final_image_strength(self) -> float:
        strength = (
            self.init_image_strength
            if self.init_image_strength is not None
            else DEFAULT_IMAGE_STRENGTH
        )
        return clamp(strength, 0.0, 1.0)

    @property
    def final_model(self) -> str:
        return self.model.lower() if self.model else DEFAULT_MODEL

    @property
    def final_float16(self) -> bool:
        return self.float16 if self.float16 is not None else True

    @property
    def final_quantize(self) -> bool:
        return self.quantize if self.quantize is not None else False
