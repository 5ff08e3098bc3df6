"""
Tests for generation parameter normalization.

Unit tests for cost resolution, payload parsing and model selection, plus
Hypothesis properties for dimension clamping.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from app.exceptions import InvalidModelSelectionError, InvalidRequestError
from app.models.api import ModelKind
from app.models.domain import GenerationRequest, ModelDescriptor
from app.services.normalization import (
    DEFAULT_MODEL_COST,
    clamp_dimensions,
    get_model_cost,
    normalize_generation_params,
    parse_generation_request,
)

BASE = ModelDescriptor("black-forest-labs/FLUX.1-dev", ModelKind.BASE)


def _request(*models: ModelDescriptor, width: int = 1024, height: int = 1024, **kwargs):
    return GenerationRequest(
        prompt="a cat in sunglasses",
        models=models,
        width=width,
        height=height,
        target_model="flux-dev",
        **kwargs,
    )


# ============================================================================
# Cost Resolution
# ============================================================================


class TestGetModelCost:
    """Tests for the static cost table."""

    @pytest.mark.parametrize(
        "model,cost",
        [("flux-dev", 1), ("lora-normal", 1), ("nano-banana-pro", 2), ("gemini-flash", 1)],
    )
    def test_known_models(self, model, cost):
        assert get_model_cost(model) == cost

    def test_unknown_model_costs_default(self):
        assert get_model_cost("some-future-model") == DEFAULT_MODEL_COST == 1


# ============================================================================
# Payload Parsing
# ============================================================================


class TestParseGenerationRequest:
    """Tests for raw payload validation."""

    def test_valid_payload(self):
        request = parse_generation_request(
            {
                "prompt": "a cat",
                "models": [
                    {"model": "base-model", "type": "base"},
                    {"model": "retro-lora", "type": "lora", "weight": 0.5},
                ],
                "loraScale": 0.8,
                "width": 2000,
                "height": 1000,
                "dpi": 300,
                "aiModel": "lora-normal",
            },
            default_model="flux-dev",
        )

        assert request.prompt == "a cat"
        assert request.models == (
            ModelDescriptor("base-model", ModelKind.BASE, 1.0),
            ModelDescriptor("retro-lora", ModelKind.LORA, 0.5),
        )
        assert request.lora_scale == 0.8
        assert (request.width, request.height) == (2000, 1000)
        assert request.dpi == 300
        assert request.target_model == "lora-normal"

    def test_defaults(self):
        request = parse_generation_request(
            {"prompt": "a cat", "models": [{"model": "base-model", "type": "base"}]},
            default_model="flux-dev",
        )
        assert request.target_model == "flux-dev"
        assert (request.width, request.height) == (1024, 1024)
        assert request.lora_scale is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"models": [{"model": "m", "type": "base"}]},
            {"prompt": "", "models": [{"model": "m", "type": "base"}]},
            {"prompt": "   ", "models": [{"model": "m", "type": "base"}]},
            {"prompt": "cat"},
            {"prompt": "cat", "models": []},
            {"prompt": "cat", "models": [{"model": "m", "type": "controlnet"}]},
            {"prompt": "cat", "models": [{"model": "m", "type": "base"}], "width": 0},
            {"prompt": "cat", "models": [{"model": "m", "type": "base"}], "height": -64},
            {"prompt": "cat", "models": [{"model": "m", "type": "base"}], "width": "wide"},
        ],
    )
    def test_invalid_payloads(self, payload):
        with pytest.raises(InvalidRequestError):
            parse_generation_request(payload, default_model="flux-dev")

    @pytest.mark.parametrize("payload", [None, [], "prompt", 42])
    def test_non_object_body(self, payload):
        with pytest.raises(InvalidRequestError, match="JSON object"):
            parse_generation_request(payload, default_model="flux-dev")

    def test_error_names_the_field(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_generation_request({"models": [{"model": "m", "type": "base"}]}, "flux-dev")
        assert exc_info.value.message.startswith("prompt")


# ============================================================================
# Model Selection
# ============================================================================


class TestNormalizeGenerationParams:
    """Tests for base/overlay selection."""

    def test_single_base_no_overlays(self):
        params = normalize_generation_params(_request(BASE), max_dimension=1024)
        assert params.base_model == BASE.model_ref
        assert params.overlays == ()

    def test_overlay_weight_scaled_by_lora_scale(self):
        params = normalize_generation_params(
            _request(
                BASE,
                ModelDescriptor("retro", ModelKind.LORA, weight=0.5),
                ModelDescriptor("grain", ModelKind.LORA, weight=1.0),
                lora_scale=0.8,
            ),
            max_dimension=1024,
        )
        assert [(o.model_ref, o.scale) for o in params.overlays] == [
            ("retro", pytest.approx(0.4)),
            ("grain", pytest.approx(0.8)),
        ]

    def test_overlay_weight_unscaled_without_lora_scale(self):
        params = normalize_generation_params(
            _request(BASE, ModelDescriptor("retro", ModelKind.LORA, weight=0.7)),
            max_dimension=1024,
        )
        assert params.overlays[0].scale == pytest.approx(0.7)

    def test_overlays_only_rejected(self):
        with pytest.raises(InvalidModelSelectionError) as exc_info:
            normalize_generation_params(
                _request(ModelDescriptor("retro", ModelKind.LORA)), max_dimension=1024
            )
        assert exc_info.value.base_count == 0

    def test_two_bases_rejected(self):
        with pytest.raises(InvalidModelSelectionError) as exc_info:
            normalize_generation_params(
                _request(BASE, ModelDescriptor("other-base", ModelKind.BASE)),
                max_dimension=1024,
            )
        assert exc_info.value.base_count == 2


# ============================================================================
# Dimension Clamping
# ============================================================================


class TestClampDimensions:
    """Examples for dimension clamping."""

    def test_landscape_over_limit(self):
        assert clamp_dimensions(2000, 1000, 1024) == (1024, 512)

    def test_portrait_over_limit(self):
        assert clamp_dimensions(1000, 2000, 1024) == (512, 1024)

    def test_within_limit_floors_to_multiple_of_8(self):
        assert clamp_dimensions(1000, 770, 1024) == (1000, 768)

    def test_exact_multiples_untouched(self):
        assert clamp_dimensions(768, 512, 1024) == (768, 512)

    def test_tiny_dimensions_floor_to_minimum(self):
        assert clamp_dimensions(3, 5, 1024) == (8, 8)

    def test_normalized_params_use_clamped_size(self):
        params = normalize_generation_params(
            _request(BASE, width=2000, height=1000), max_dimension=1024
        )
        assert (params.width, params.height) == (1024, 512)


dimensions = st.integers(min_value=1, max_value=8192)
max_dimensions = st.sampled_from([512, 768, 1024, 1440, 2048])


class TestClampDimensionsProperties:
    """Property-based tests for dimension clamping."""

    @given(width=dimensions, height=dimensions, max_dimension=max_dimensions)
    @settings(max_examples=300)
    def test_within_limit_and_multiple_of_8(self, width, height, max_dimension):
        new_width, new_height = clamp_dimensions(width, height, max_dimension)

        for value in (new_width, new_height):
            assert 8 <= value <= max_dimension
            assert value % 8 == 0

    @given(width=dimensions, height=dimensions, max_dimension=max_dimensions)
    @settings(max_examples=300)
    def test_aspect_ratio_preserved_within_rounding(self, width, height, max_dimension):
        factor = min(1.0, max_dimension / max(width, height))
        # Sides pushed up to the 8px minimum are not proportional
        if min(width, height) * factor < 8:
            return

        new_width, new_height = clamp_dimensions(width, height, max_dimension)

        # Each side loses less than 8px to flooring
        assert abs(new_width * height - new_height * width) < 8 * max(width, height)

    @given(width=dimensions, height=dimensions, max_dimension=max_dimensions)
    @settings(max_examples=300)
    def test_never_enlarges_beyond_rounding_minimum(self, width, height, max_dimension):
        new_width, new_height = clamp_dimensions(width, height, max_dimension)
        assert new_width <= max(width, 8)
        assert new_height <= max(height, 8)

    @given(
        width=st.integers(min_value=1, max_value=128).map(lambda n: n * 8),
        height=st.integers(min_value=1, max_value=128).map(lambda n: n * 8),
    )
    def test_valid_sizes_pass_through(self, width, height):
        assert clamp_dimensions(width, height, 1024) == (width, height)
