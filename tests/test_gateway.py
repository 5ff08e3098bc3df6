"""
Tests for the metered generation gateway.

Covers the full pipeline with mocked collaborators:
- validation and model selection rejections
- entitlement gate for authenticated and guest callers
- provider failures (never charged, always recorded)
- settlement and its failure modes after a successful generation
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.exceptions import EmptyResultError, ProviderError, SettlementWriteError
from app.models.api import GenerationStatus
from app.models.domain import (
    CreditCheckResult,
    DeductionResult,
    GeneratedImage,
    GuestQuotaCheck,
    ProviderImageRequest,
    SettlementRecord,
)
from tests.factories import generation_body


def _recorded(mock_generation_log: AsyncMock) -> SettlementRecord:
    mock_generation_log.record_generation.assert_awaited_once()
    return mock_generation_log.record_generation.await_args.args[0]


# ============================================================================
# Validation
# ============================================================================


class TestValidation:
    """Invalid payloads are rejected before any entitlement work."""

    @pytest.mark.parametrize(
        "body",
        [
            generation_body(models=[]),
            {"models": [{"model": "base", "type": "base"}]},
            generation_body(width=0),
            None,
            ["not", "an", "object"],
        ],
    )
    async def test_invalid_payload_returns_400(
        self, gateway, authenticated_caller, mock_ledger, mock_provider, body
    ):
        result = await gateway.handle_generation_request(body, authenticated_caller)

        assert result.status_code == 400
        assert result.content()["error"] == "Invalid request"
        mock_ledger.check_balance.assert_not_awaited()
        mock_provider.generate.assert_not_awaited()

    async def test_invalid_payload_skips_guest_quota(
        self, gateway, guest_caller, mock_guest_quota, mock_generation_log
    ):
        result = await gateway.handle_generation_request(
            generation_body(prompt=""), guest_caller
        )

        assert result.status_code == 400
        mock_guest_quota.check_limit.assert_not_awaited()
        mock_generation_log.record_generation.assert_not_awaited()

    async def test_overlay_only_selection_rejected_after_gate(
        self, gateway, authenticated_caller, mock_ledger, mock_provider, mock_generation_log
    ):
        body = generation_body(models=[{"model": "promptly/lora-retro", "type": "lora"}])

        result = await gateway.handle_generation_request(body, authenticated_caller)

        assert result.status_code == 400
        assert result.content()["error"] == "Invalid model selection"
        mock_ledger.check_balance.assert_awaited_once()
        mock_provider.generate.assert_not_awaited()
        mock_ledger.deduct.assert_not_awaited()
        mock_generation_log.record_generation.assert_not_awaited()

    async def test_two_base_models_rejected(self, gateway, guest_caller, mock_provider):
        body = generation_body(
            models=[
                {"model": "base-a", "type": "base"},
                {"model": "base-b", "type": "base"},
            ]
        )

        result = await gateway.handle_generation_request(body, guest_caller)

        assert result.status_code == 400
        mock_provider.generate.assert_not_awaited()


# ============================================================================
# Authenticated Callers
# ============================================================================


class TestAuthenticatedGeneration:
    """Credit-metered generations."""

    async def test_success_deducts_and_reports_remaining(
        self, gateway, authenticated_caller, mock_ledger, mock_generation_log
    ):
        result = await gateway.handle_generation_request(generation_body(), authenticated_caller)

        assert result.status_code == 200
        assert result.content() == {
            "data": [{"url": "https://images.example.com/img-1.png"}],
            "credits": {"used": 1, "remaining": 4},
        }
        mock_ledger.check_balance.assert_awaited_once_with("user_123", "flux-dev")
        mock_ledger.deduct.assert_awaited_once()
        assert mock_ledger.deduct.await_args.args[:2] == ("user_123", "flux-dev")

        record = _recorded(mock_generation_log)
        assert record.status == GenerationStatus.COMPLETED
        assert record.units_charged == 1
        assert record.image_url == "https://images.example.com/img-1.png"
        assert record.caller == authenticated_caller

    async def test_target_model_cost_passed_through(
        self, gateway, authenticated_caller, mock_ledger
    ):
        mock_ledger.check_balance.return_value = CreditCheckResult(
            allowed=True, required_units=2, current_balance=10
        )
        mock_ledger.deduct.return_value = DeductionResult(success=True, deducted=2, new_balance=8)

        result = await gateway.handle_generation_request(
            generation_body(aiModel="nano-banana-pro"), authenticated_caller
        )

        assert result.content()["credits"] == {"used": 2, "remaining": 8}
        mock_ledger.check_balance.assert_awaited_once_with("user_123", "nano-banana-pro")

    async def test_insufficient_credits_returns_402(
        self, gateway, authenticated_caller, mock_ledger, mock_provider, mock_generation_log
    ):
        mock_ledger.check_balance.return_value = CreditCheckResult(
            allowed=False, required_units=1, current_balance=0
        )

        result = await gateway.handle_generation_request(generation_body(), authenticated_caller)

        assert result.status_code == 402
        assert result.content() == {
            "error": "Insufficient credits",
            "details": "You need 1 credits but only have 0",
            "creditsNeeded": 1,
            "currentBalance": 0,
        }
        mock_provider.generate.assert_not_awaited()
        mock_ledger.deduct.assert_not_awaited()
        mock_generation_log.record_generation.assert_not_awaited()

    async def test_provider_receives_normalized_params(
        self, gateway, authenticated_caller, mock_provider
    ):
        body = generation_body(
            models=[
                {"model": "black-forest-labs/FLUX.1-dev", "type": "base"},
                {"model": "promptly/lora-retro", "type": "lora", "weight": 0.5},
            ],
            loraScale=0.8,
            width=2000,
            height=1000,
        )

        await gateway.handle_generation_request(body, authenticated_caller)

        mock_provider.generate.assert_awaited_once()
        sent: ProviderImageRequest = mock_provider.generate.await_args.args[0]
        assert sent.n == 1
        assert sent.steps == 28
        assert sent.params.base_model == "black-forest-labs/FLUX.1-dev"
        assert (sent.params.width, sent.params.height) == (1024, 512)
        assert sent.params.overlays[0].model_ref == "promptly/lora-retro"
        assert sent.params.overlays[0].scale == pytest.approx(0.4)

    async def test_entitlement_lookup_failure_propagates(
        self, gateway, authenticated_caller, mock_ledger, mock_provider
    ):
        """Lookup failures reach the route, which answers with a 500 envelope."""
        mock_ledger.check_balance.side_effect = SettlementWriteError("create_account", "db down")

        with pytest.raises(SettlementWriteError):
            await gateway.handle_generation_request(generation_body(), authenticated_caller)

        mock_provider.generate.assert_not_awaited()


# ============================================================================
# Provider Failures
# ============================================================================


class TestProviderFailure:
    """Failed generations are recorded with zero charge."""

    async def test_provider_error_recorded_uncharged(
        self, gateway, authenticated_caller, mock_provider, mock_ledger, mock_generation_log
    ):
        mock_provider.generate.side_effect = ProviderError("model overloaded")

        result = await gateway.handle_generation_request(generation_body(), authenticated_caller)

        assert result.status_code == 500
        assert result.content() == {
            "error": "Failed to generate image",
            "details": "model overloaded",
        }
        mock_ledger.deduct.assert_not_awaited()

        record = _recorded(mock_generation_log)
        assert record.status == GenerationStatus.FAILED
        assert record.units_charged == 0
        assert record.error_message == "model overloaded"
        assert record.image_url is None

    async def test_provider_error_marks_span(self, gateway, authenticated_caller, mock_provider):
        error = ProviderError("model overloaded")
        mock_provider.generate.side_effect = error

        with patch("app.services.gateway.set_span_error") as set_span_error:
            await gateway.handle_generation_request(generation_body(), authenticated_caller)

        set_span_error.assert_called_once()
        assert set_span_error.call_args.args[1] is error

    async def test_success_leaves_span_unmarked(self, gateway, authenticated_caller):
        with patch("app.services.gateway.set_span_error") as set_span_error:
            result = await gateway.handle_generation_request(
                generation_body(), authenticated_caller
            )

        assert result.status_code == 200
        set_span_error.assert_not_called()

    async def test_empty_result(self, gateway, guest_caller, mock_provider, mock_guest_quota):
        mock_provider.generate.side_effect = EmptyResultError()

        result = await gateway.handle_generation_request(generation_body(), guest_caller)

        assert result.status_code == 500
        assert result.content()["details"] == "No image generated"
        mock_guest_quota.record_usage.assert_not_awaited()

    async def test_provider_called_exactly_once(self, gateway, guest_caller, mock_provider):
        mock_provider.generate.side_effect = httpx.ConnectError("connection refused")

        result = await gateway.handle_generation_request(generation_body(), guest_caller)

        assert result.status_code == 500
        assert result.content()["details"] == "connection refused"
        assert mock_provider.generate.await_count == 1

    async def test_failed_record_write_still_returns_500(
        self, gateway, guest_caller, mock_provider, mock_generation_log
    ):
        mock_provider.generate.side_effect = ProviderError("bad prompt")
        mock_generation_log.record_generation.side_effect = SettlementWriteError(
            "record_generation", "db down"
        )

        result = await gateway.handle_generation_request(generation_body(), guest_caller)

        assert result.status_code == 500
        assert result.content()["details"] == "bad prompt"


# ============================================================================
# Settlement Failures
# ============================================================================


class TestSettlementFailure:
    """Once an image exists the caller receives it."""

    async def test_deduction_error_returns_image_uncharged(
        self, gateway, authenticated_caller, mock_ledger, mock_generation_log
    ):
        mock_ledger.deduct.side_effect = SettlementWriteError("deduct", "deadlock")

        result = await gateway.handle_generation_request(generation_body(), authenticated_caller)

        assert result.status_code == 200
        assert result.content()["credits"] == {"used": 0, "remaining": 5}
        record = _recorded(mock_generation_log)
        assert record.status == GenerationStatus.COMPLETED
        assert record.units_charged == 0

    async def test_deduction_refused_after_generation(
        self, gateway, authenticated_caller, mock_ledger
    ):
        mock_ledger.deduct.return_value = DeductionResult(success=False, deducted=0, new_balance=0)

        result = await gateway.handle_generation_request(generation_body(), authenticated_caller)

        assert result.status_code == 200
        assert result.content()["credits"] == {"used": 0, "remaining": 0}

    async def test_record_write_failure_still_returns_image(
        self, gateway, authenticated_caller, mock_generation_log
    ):
        mock_generation_log.record_generation.side_effect = SettlementWriteError(
            "record_generation", "db down"
        )

        result = await gateway.handle_generation_request(generation_body(), authenticated_caller)

        assert result.status_code == 200
        assert result.content()["data"][0]["url"] == "https://images.example.com/img-1.png"

    async def test_guest_usage_write_failure_still_returns_image(
        self, gateway, guest_caller, mock_guest_quota, mock_generation_log
    ):
        mock_guest_quota.record_usage.side_effect = SettlementWriteError(
            "record_guest_usage", "db down"
        )

        result = await gateway.handle_generation_request(generation_body(), guest_caller)

        assert result.status_code == 200
        mock_generation_log.record_generation.assert_awaited_once()


# ============================================================================
# Guest Callers
# ============================================================================


class TestGuestGeneration:
    """Quota-metered generations."""

    async def test_success_records_usage(
        self, gateway, guest_caller, mock_guest_quota, mock_ledger, mock_generation_log
    ):
        result = await gateway.handle_generation_request(generation_body(), guest_caller)

        assert result.status_code == 200
        assert result.content() == {
            "data": [{"url": "https://images.example.com/img-1.png"}],
            "guestInfo": {"remaining": 2, "total": 3},
        }
        mock_guest_quota.check_limit.assert_awaited_once_with("guest_session_1", "203.0.113.7")
        mock_guest_quota.record_usage.assert_awaited_once_with("guest_session_1", "203.0.113.7")
        mock_ledger.check_balance.assert_not_awaited()
        mock_ledger.deduct.assert_not_awaited()

        record = _recorded(mock_generation_log)
        assert record.units_charged == 0
        assert record.caller == guest_caller

    @pytest.mark.parametrize("remaining", [1, 0])
    async def test_signup_offer_when_almost_out(
        self, gateway, guest_caller, mock_guest_quota, remaining
    ):
        mock_guest_quota.check_limit.return_value = GuestQuotaCheck(
            allowed=True, remaining=remaining, resets_at=datetime.now(UTC) + timedelta(hours=5)
        )

        result = await gateway.handle_generation_request(generation_body(), guest_caller)

        guest_info = result.content()["guestInfo"]
        assert guest_info["remaining"] == remaining
        assert guest_info["signupOffer"] == {
            "credits": 50,
            "message": "Sign up to get 50 credits per month!",
        }

    async def test_quota_exhausted_returns_429(
        self, gateway, guest_caller, mock_guest_quota, mock_provider, mock_generation_log
    ):
        resets_at = datetime.now(UTC) + timedelta(hours=5, minutes=30)
        mock_guest_quota.check_limit.return_value = GuestQuotaCheck(
            allowed=False, remaining=0, resets_at=resets_at
        )

        result = await gateway.handle_generation_request(generation_body(), guest_caller)

        assert result.status_code == 429
        body = result.content()
        assert body["error"] == "No credits remaining"
        assert body["details"] == (
            "You've used all 3 free credits. Sign up to get 50 credits per month!"
        )
        assert body["remaining"] == 0
        assert body["total"] == 3
        assert body["resetsIn"] == 6
        assert body["resetsAt"] == resets_at.isoformat()
        assert body["signupOffer"]["credits"] == 50
        mock_provider.generate.assert_not_awaited()
        mock_guest_quota.record_usage.assert_not_awaited()
        mock_generation_log.record_generation.assert_not_awaited()

    async def test_inline_image_payload_returned(self, gateway, guest_caller, mock_provider):
        mock_provider.generate.return_value = GeneratedImage(b64_json="aGVsbG8=")

        result = await gateway.handle_generation_request(generation_body(), guest_caller)

        assert result.content()["data"] == [{"b64_json": "aGVsbG8="}]
