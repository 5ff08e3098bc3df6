"""
Metered Generation Gateway - Credit-gated image generation pipeline.

Per request:
1. Validate the payload
2. Resolve the credit cost of the target model
3. Entitlement gate (credit balance or guest quota)
4. Normalize parameters (single base model, scaled overlays, clamped size)
5. Call the image provider once
6. Settle: charge credits or count the guest generation, then persist
   the settlement record

Failed generations are recorded but never charged. Once an image exists
the caller receives it even when a settlement write fails.
"""

import math
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel
from structlog import get_logger

from app.config import settings
from app.exceptions import InvalidModelSelectionError, InvalidRequestError
from app.models.api import (
    CreditsInfo,
    ErrorResponse,
    GenerateImageResponse,
    GenerationStatus,
    GuestInfo,
    GuestLimitResponse,
    ImageData,
    InsufficientCreditsResponse,
    SignupOffer,
)
from app.models.domain import (
    AuthenticatedCaller,
    CallerContext,
    CreditCheckResult,
    GenerationFailure,
    GenerationOutcome,
    GenerationRequest,
    GenerationSuccess,
    GuestCaller,
    GuestQuotaCheck,
    NormalizedGenerationParams,
    ProviderImageRequest,
    SettlementRecord,
)
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.observability.tracing import add_span_attributes, get_tracer, set_span_error
from app.services.credits import CreditLedgerService
from app.services.generation_log import GenerationLogService
from app.services.guest_quota import GuestQuotaService
from app.services.image_provider import ImageProvider, extract_provider_error_message
from app.services.normalization import (
    get_model_cost,
    normalize_generation_params,
    parse_generation_request,
)

logger = get_logger(__name__)
tracer = get_tracer(__name__)

GENERATION_FAILED_ERROR = "Failed to generate image"


@dataclass(frozen=True)
class GatewayResponse:
    """HTTP status plus typed body for one gateway outcome."""

    status_code: int
    body: BaseModel

    def content(self) -> dict[str, Any]:
        """JSON-ready body using the storefront's camelCase keys."""
        return self.body.model_dump(mode="json", by_alias=True, exclude_none=True)


def _caller_kind(caller: CallerContext) -> str:
    return "authenticated" if isinstance(caller, AuthenticatedCaller) else "guest"


def _hours_until(resets_at: datetime | None, now: datetime) -> int:
    if resets_at is None:
        return 0
    return max(0, math.ceil((resets_at - now).total_seconds() / 3600))


class MeteredGenerationGateway:
    """Runs one generation request through entitlement, provider and settlement."""

    def __init__(
        self,
        provider: ImageProvider,
        ledger: CreditLedgerService,
        guest_quota: GuestQuotaService,
        generation_log: GenerationLogService,
        max_dimension: int = settings.max_image_dimension,
        inference_steps: int = settings.inference_steps,
        default_model: str = settings.default_ai_model,
        signup_offer_credits: int = settings.signup_offer_credits,
    ) -> None:
        self.provider = provider
        self.ledger = ledger
        self.guest_quota = guest_quota
        self.generation_log = generation_log
        self.max_dimension = max_dimension
        self.inference_steps = inference_steps
        self.default_model = default_model
        self.signup_offer_credits = signup_offer_credits

    async def handle_generation_request(
        self, raw_input: Any, caller: CallerContext
    ) -> GatewayResponse:
        """
        Process one generation request end to end.

        Entitlement collaborator failures propagate to the caller (the
        request fails closed). Provider and settlement failures are
        converted into responses here.
        """
        accepted_at = time.monotonic()
        caller_kind = _caller_kind(caller)

        try:
            request = parse_generation_request(raw_input, self.default_model)
        except InvalidRequestError as e:
            logger.info("generation_request_invalid", caller=caller_kind, error=e.message)
            return GatewayResponse(400, ErrorResponse(error="Invalid request", details=e.message))

        credit_check: CreditCheckResult | None = None
        quota_check: GuestQuotaCheck | None = None

        with log_context(caller=caller_kind, model=request.target_model):
            # Entitlement gate
            if isinstance(caller, AuthenticatedCaller):
                credit_check = await self.ledger.check_balance(
                    caller.user_id, request.target_model
                )
                if not credit_check.allowed:
                    return self._insufficient_credits(caller, credit_check)
            else:
                quota_check = await self.guest_quota.check_limit(
                    caller.session_id, caller.ip_address
                )
                if not quota_check.allowed:
                    return self._guest_limit_reached(caller, quota_check)

            try:
                params = normalize_generation_params(request, self.max_dimension)
            except InvalidModelSelectionError as e:
                logger.info("generation_model_selection_invalid", base_count=e.base_count)
                return GatewayResponse(
                    400, ErrorResponse(error="Invalid model selection", details=str(e))
                )

            outcome = await self._invoke_provider(request, params, caller_kind, accepted_at)

            if isinstance(outcome, GenerationFailure):
                await self._persist(
                    SettlementRecord(
                        caller=caller,
                        prompt=request.prompt,
                        target_model=request.target_model,
                        units_charged=0,
                        status=GenerationStatus.FAILED,
                        generation_time_ms=outcome.generation_time_ms,
                        normalized_params=params,
                        error_message=outcome.error_message,
                    )
                )
                return GatewayResponse(
                    500,
                    ErrorResponse(error=GENERATION_FAILED_ERROR, details=outcome.error_message),
                )

            if isinstance(caller, AuthenticatedCaller):
                assert credit_check is not None
                return await self._settle_authenticated(
                    caller, request, params, outcome, credit_check
                )

            assert quota_check is not None
            return await self._settle_guest(caller, request, params, outcome, quota_check)

    # ========================================================================
    # Rejections
    # ========================================================================

    def _insufficient_credits(
        self, caller: AuthenticatedCaller, check: CreditCheckResult
    ) -> GatewayResponse:
        logger.info(
            "generation_rejected_insufficient_credits",
            user_id=caller.user_id,
            balance=check.current_balance,
            required=check.required_units,
        )
        metrics.record_entitlement_denial("authenticated", "insufficient_credits")
        return GatewayResponse(
            402,
            InsufficientCreditsResponse(
                error="Insufficient credits",
                details=(
                    f"You need {check.required_units} credits "
                    f"but only have {check.current_balance}"
                ),
                credits_needed=check.required_units,
                current_balance=check.current_balance,
            ),
        )

    def _guest_limit_reached(self, caller: GuestCaller, check: GuestQuotaCheck) -> GatewayResponse:
        limit = self.guest_quota.limit
        logger.info(
            "generation_rejected_guest_limit",
            session_id=caller.session_id,
            ip_address=caller.ip_address,
        )
        metrics.record_entitlement_denial("guest", "guest_quota_exhausted")
        return GatewayResponse(
            429,
            GuestLimitResponse(
                error="No credits remaining",
                details=(
                    f"You've used all {limit} free credits. "
                    f"Sign up to get {self.signup_offer_credits} credits per month!"
                ),
                remaining=0,
                total=limit,
                resets_in=_hours_until(check.resets_at, datetime.now(UTC)),
                resets_at=check.resets_at.isoformat() if check.resets_at else None,
                signup_offer=SignupOffer(
                    credits=self.signup_offer_credits,
                    message=(
                        f"Create a free account to get {self.signup_offer_credits} "
                        "credits instantly"
                    ),
                ),
            ),
        )

    # ========================================================================
    # Provider
    # ========================================================================

    async def _invoke_provider(
        self,
        request: GenerationRequest,
        params: NormalizedGenerationParams,
        caller_kind: str,
        accepted_at: float,
    ) -> GenerationOutcome:
        provider_request = ProviderImageRequest(
            prompt=request.prompt,
            params=params,
            steps=self.inference_steps,
        )
        started_at = time.monotonic()

        with tracer.start_as_current_span("image_provider_generate") as span:
            add_span_attributes(
                span,
                base_model=params.base_model,
                width=params.width,
                height=params.height,
                overlays=len(params.overlays),
            )
            try:
                image = await self.provider.generate(provider_request)
            except Exception as e:
                set_span_error(span, e)
                elapsed_ms = int((time.monotonic() - accepted_at) * 1000)
                message = extract_provider_error_message(e)
                logger.error(
                    "generation_provider_failed",
                    error=message,
                    error_type=type(e).__name__,
                    generation_time_ms=elapsed_ms,
                )
                metrics.record_generation(
                    caller_kind, request.target_model, "failed", time.monotonic() - started_at
                )
                metrics.record_error(type(e).__name__, "image_provider")
                return GenerationFailure(error_message=message, generation_time_ms=elapsed_ms)

        elapsed_ms = int((time.monotonic() - accepted_at) * 1000)
        metrics.record_generation(
            caller_kind, request.target_model, "completed", time.monotonic() - started_at
        )
        logger.info("generation_provider_completed", generation_time_ms=elapsed_ms)
        return GenerationSuccess(image=image, generation_time_ms=elapsed_ms)

    # ========================================================================
    # Settlement
    # ========================================================================

    async def _settle_authenticated(
        self,
        caller: AuthenticatedCaller,
        request: GenerationRequest,
        params: NormalizedGenerationParams,
        outcome: GenerationSuccess,
        credit_check: CreditCheckResult,
    ) -> GatewayResponse:
        used = 0
        remaining = credit_check.current_balance

        try:
            deduction = await self.ledger.deduct(
                caller.user_id,
                request.target_model,
                f"Image generation with {request.target_model}",
                {"prompt": request.prompt[:100], "base_model": params.base_model},
            )
        except Exception as e:
            logger.error("credit_deduction_failed", user_id=caller.user_id, error=str(e))
            metrics.record_settlement_failure("deduct")
        else:
            remaining = deduction.new_balance
            if deduction.success:
                used = deduction.deducted
                metrics.record_credits_deducted(request.target_model, used)
            else:
                logger.error(
                    "credit_deduction_refused_after_generation",
                    user_id=caller.user_id,
                    balance=deduction.new_balance,
                    required=get_model_cost(request.target_model),
                )
                metrics.record_settlement_failure("deduct")

        await self._persist(
            SettlementRecord(
                caller=caller,
                prompt=request.prompt,
                target_model=request.target_model,
                units_charged=used,
                status=GenerationStatus.COMPLETED,
                generation_time_ms=outcome.generation_time_ms,
                normalized_params=params,
                image_url=outcome.image_ref,
            )
        )

        return GatewayResponse(
            200,
            GenerateImageResponse(
                data=[ImageData(url=outcome.image.url, b64_json=outcome.image.b64_json)],
                credits=CreditsInfo(used=used, remaining=remaining),
            ),
        )

    async def _settle_guest(
        self,
        caller: GuestCaller,
        request: GenerationRequest,
        params: NormalizedGenerationParams,
        outcome: GenerationSuccess,
        quota_check: GuestQuotaCheck,
    ) -> GatewayResponse:
        try:
            await self.guest_quota.record_usage(caller.session_id, caller.ip_address)
        except Exception as e:
            logger.error("guest_usage_record_failed", session_id=caller.session_id, error=str(e))
            metrics.record_settlement_failure("record_guest_usage")

        await self._persist(
            SettlementRecord(
                caller=caller,
                prompt=request.prompt,
                target_model=request.target_model,
                units_charged=0,
                status=GenerationStatus.COMPLETED,
                generation_time_ms=outcome.generation_time_ms,
                normalized_params=params,
                image_url=outcome.image_ref,
            )
        )

        signup_offer = None
        if quota_check.remaining <= 1:
            signup_offer = SignupOffer(
                credits=self.signup_offer_credits,
                message=f"Sign up to get {self.signup_offer_credits} credits per month!",
            )

        return GatewayResponse(
            200,
            GenerateImageResponse(
                data=[ImageData(url=outcome.image.url, b64_json=outcome.image.b64_json)],
                guest_info=GuestInfo(
                    remaining=quota_check.remaining,
                    total=self.guest_quota.limit,
                    signup_offer=signup_offer,
                ),
            ),
        )

    async def _persist(self, record: SettlementRecord) -> None:
        try:
            await self.generation_log.record_generation(record)
        except Exception as e:
            logger.error(
                "generation_record_failed",
                status=record.status.value,
                units_charged=record.units_charged,
                error=str(e),
            )
            metrics.record_settlement_failure("record_generation")
