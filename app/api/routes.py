"""
API Routes - FastAPI endpoints for image generation and credits.

NO DICTIONARIES - All responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    get_credit_ledger,
    get_gateway,
    get_guest_quota,
    require_authenticated_caller,
    resolve_caller,
)
from app.config import settings
from app.db.session import get_read_db
from app.exceptions import SettlementWriteError, UserCreditsNotFoundError
from app.models.api import (
    AuthenticatedCreditsResponse,
    BonusInfoResponse,
    CreditBalanceInfo,
    GrantBonusRequest,
    GrantBonusResponse,
    GuestAllowance,
    ErrorResponse,
    GuestCreditsResponse,
    HealthResponse,
    SignupOffer,
    TransactionItem,
    UsageInfo,
)
from app.models.domain import AuthenticatedCaller, CallerContext
from app.observability.metrics import metrics
from app.services.credits import CreditLedgerService
from app.services.gateway import MeteredGenerationGateway
from app.services.guest_quota import GuestQuotaService

logger = get_logger(__name__)

router = APIRouter()


# ============================================================================
# Image Generation
# ============================================================================


@router.post("/api/generate-image")
async def generate_image(
    request: Request,
    caller: CallerContext = Depends(resolve_caller),
    gateway: MeteredGenerationGateway = Depends(get_gateway),
) -> JSONResponse:
    """
    Generate one image, gated by credits (signed in) or the guest quota.

    Status codes:
        200 image generated
        400 malformed payload or model selection
        402 not enough credits
        429 guest quota exhausted
        500 image provider or entitlement lookup failed
    """
    try:
        raw_input = await request.json()
    except ValueError:
        raw_input = None

    try:
        result = await gateway.handle_generation_request(raw_input, caller)
    except Exception as e:
        logger.error(
            "generation_request_failed",
            caller_type="authenticated" if isinstance(caller, AuthenticatedCaller) else "guest",
            error=str(e),
            exc_info=True,
        )
        metrics.record_error(type(e).__name__, "generate_image")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal server error",
                details="An unexpected error occurred while generating the image",
            ).model_dump(),
        )

    return JSONResponse(status_code=result.status_code, content=result.content())


# ============================================================================
# Credits
# ============================================================================


@router.get(
    "/api/credits",
    response_model=AuthenticatedCreditsResponse | GuestCreditsResponse,
    response_model_by_alias=True,
)
async def get_credits(
    caller: CallerContext = Depends(resolve_caller),
    ledger: CreditLedgerService = Depends(get_credit_ledger),
    guest_quota: GuestQuotaService = Depends(get_guest_quota),
) -> AuthenticatedCreditsResponse | GuestCreditsResponse:
    """Credit balance for signed-in users, free allowance for guests."""
    if isinstance(caller, AuthenticatedCaller):
        stats = await ledger.get_credit_stats(caller.user_id)
        return AuthenticatedCreditsResponse(
            credits=CreditBalanceInfo(
                balance=stats.balance,
                welcome_credits_remaining=stats.welcome_credits_remaining,
                lifetime_credits=stats.lifetime_credits,
                lifetime_spent=stats.lifetime_spent,
            ),
            usage=UsageInfo(total_generations=stats.total_generations),
            recent_transactions=[
                TransactionItem(
                    transaction_id=str(tx.transaction_id),
                    amount=tx.amount,
                    balance=tx.balance,
                    type=tx.transaction_type,
                    reason=tx.reason,
                    created_at=tx.created_at.isoformat(),
                )
                for tx in stats.recent_transactions
            ],
        )

    guest_status = await guest_quota.get_status(caller.session_id)
    return GuestCreditsResponse(
        guest=GuestAllowance(remaining=guest_status.remaining, total=guest_status.total),
        signup_offer=SignupOffer(
            credits=settings.signup_offer_credits,
            message=(
                f"Sign up for a free account to get {settings.signup_offer_credits} "
                "credits per month!"
            ),
        ),
    )


@router.post(
    "/api/credits/grant-tshirt-bonus",
    response_model=GrantBonusResponse,
    response_model_by_alias=True,
)
async def grant_tshirt_bonus(
    bonus_request: GrantBonusRequest,
    caller: AuthenticatedCaller = Depends(require_authenticated_caller),
    ledger: CreditLedgerService = Depends(get_credit_ledger),
) -> GrantBonusResponse:
    """Grant bonus credits for a T-shirt order."""
    if not bonus_request.order_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="orderId is required",
        )

    try:
        result = await ledger.grant_purchase_bonus(
            caller.user_id, bonus_request.order_id, bonus_request.tshirt_count
        )
    except (SettlementWriteError, UserCreditsNotFoundError) as exc:
        logger.error("tshirt_bonus_grant_failed", user_id=caller.user_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to grant T-shirt bonus",
        ) from exc

    plural = "s" if bonus_request.tshirt_count > 1 else ""
    return GrantBonusResponse(
        success=result.success,
        credits_granted=result.credits_granted,
        new_balance=result.new_balance,
        message=(
            f"Granted {result.credits_granted} bonus credits for "
            f"{bonus_request.tshirt_count} T-shirt{plural}!"
        ),
    )


@router.get(
    "/api/credits/grant-tshirt-bonus",
    response_model=BonusInfoResponse,
    response_model_by_alias=True,
)
async def tshirt_bonus_info() -> BonusInfoResponse:
    """Describe the T-shirt purchase bonus."""
    bonus = settings.tshirt_purchase_bonus
    return BonusInfoResponse(
        message="T-shirt Purchase Bonus System",
        bonus_per_tshirt=bonus,
        description=f"Get {bonus} bonus credits for each T-shirt you purchase!",
        granted_automatically=True,
        when_granted="Immediately after successful payment completion",
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
