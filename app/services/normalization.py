"""
Generation Parameter Normalization - Pure functions, no I/O.

Turns the caller's payload into provider-ready parameters:
- validates the raw body into a GenerationRequest
- resolves the credit cost of the target model
- selects the single base model and scales LoRA overlays
- clamps dimensions to the provider maximum, preserving aspect ratio,
  and floors each side to a multiple of 8
"""

from typing import Any

from pydantic import ValidationError

from app.exceptions import InvalidModelSelectionError, InvalidRequestError
from app.models.api import GenerateImageRequest, ModelKind
from app.models.domain import (
    GenerationRequest,
    ModelDescriptor,
    NormalizedGenerationParams,
    OverlayParams,
)

# Credits charged per generation. Unlisted models cost DEFAULT_MODEL_COST.
MODEL_CREDIT_COSTS: dict[str, int] = {
    "flux-dev": 1,
    "lora-normal": 1,
    "lora-context": 1,
    "nano-banana": 1,
    "nano-banana-pro": 2,
    "gemini-flash": 1,
}
DEFAULT_MODEL_COST = 1

DIMENSION_STEP = 8


def get_model_cost(model_name: str) -> int:
    """Credit cost of one generation with the given model. Never fails."""
    return MODEL_CREDIT_COSTS.get(model_name, DEFAULT_MODEL_COST)


def _format_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    if location:
        return f"{location}: {first['msg']}"
    return str(first["msg"])


def parse_generation_request(raw: Any, default_model: str) -> GenerationRequest:
    """
    Validate a decoded JSON body into a GenerationRequest.

    Raises:
        InvalidRequestError: body is not an object, or a field is missing
            or has the wrong shape
    """
    if not isinstance(raw, dict):
        raise InvalidRequestError("Request body must be a JSON object")

    try:
        payload = GenerateImageRequest.model_validate(raw)
    except ValidationError as e:
        raise InvalidRequestError(_format_validation_error(e)) from e

    return GenerationRequest(
        prompt=payload.prompt,
        models=tuple(
            ModelDescriptor(model_ref=m.model, kind=m.type, weight=m.weight)
            for m in payload.models
        ),
        width=payload.width,
        height=payload.height,
        target_model=payload.ai_model or default_model,
        lora_scale=payload.lora_scale,
        dpi=payload.dpi,
    )


def _floor_to_step(value: float) -> int:
    return max(DIMENSION_STEP, int(value) // DIMENSION_STEP * DIMENSION_STEP)


def clamp_dimensions(width: int, height: int, max_dimension: int) -> tuple[int, int]:
    """
    Fit (width, height) within max_dimension on both sides.

    The longer side is scaled down to max_dimension and the shorter one by
    the same factor; both are then floored to a multiple of 8 (minimum 8).
    """
    longest = max(width, height)
    if longest > max_dimension:
        scaled_width: float = width * max_dimension / longest
        scaled_height: float = height * max_dimension / longest
    else:
        scaled_width, scaled_height = width, height

    return (
        min(_floor_to_step(scaled_width), max_dimension // DIMENSION_STEP * DIMENSION_STEP),
        min(_floor_to_step(scaled_height), max_dimension // DIMENSION_STEP * DIMENSION_STEP),
    )


def normalize_generation_params(
    request: GenerationRequest, max_dimension: int
) -> NormalizedGenerationParams:
    """
    Derive provider parameters from a validated request.

    Raises:
        InvalidModelSelectionError: the descriptors do not contain exactly
            one base model
    """
    bases = [m for m in request.models if m.kind == ModelKind.BASE]
    if len(bases) != 1:
        raise InvalidModelSelectionError(len(bases))

    lora_scale = 1.0 if request.lora_scale is None else request.lora_scale
    overlays = tuple(
        OverlayParams(model_ref=m.model_ref, scale=m.weight * lora_scale)
        for m in request.models
        if m.kind == ModelKind.LORA
    )

    width, height = clamp_dimensions(request.width, request.height, max_dimension)

    return NormalizedGenerationParams(
        base_model=bases[0].model_ref,
        overlays=overlays,
        width=width,
        height=height,
    )
