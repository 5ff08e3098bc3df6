"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Field aliases match the storefront's camelCase JSON contract.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ModelKind(str, Enum):
    """Role of a model descriptor in a generation request."""

    BASE = "base"
    LORA = "lora"


class GenerationStatus(str, Enum):
    """Outcome of a generation attempt."""

    COMPLETED = "completed"
    FAILED = "failed"


class TransactionType(str, Enum):
    """Credit transaction type enumeration."""

    MONTHLY_RESET = "monthly_reset"
    GENERATION_USED = "generation_used"
    PURCHASE = "purchase"
    TSHIRT_BONUS = "tshirt_bonus"
    GRANT = "grant"
    REFUND = "refund"


class CamelModel(BaseModel):
    """Base model accepting both field names and camelCase aliases."""

    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Generation Models
# ============================================================================


class ModelDescriptorInput(CamelModel):
    """Single entry of the `models` array."""

    model: str = Field(..., min_length=1, max_length=255)
    type: ModelKind
    weight: float = Field(default=1.0, ge=0)


class GenerateImageRequest(CamelModel):
    """POST /api/generate-image request body."""

    prompt: str = Field(..., min_length=1)
    models: list[ModelDescriptorInput] = Field(..., min_length=1)
    lora_scale: float | None = Field(None, alias="loraScale", ge=0)
    width: int = Field(default=1024, gt=0)
    height: int = Field(default=1024, gt=0)
    dpi: int | None = Field(None, gt=0, description="Print resolution; not used for generation")
    ai_model: str | None = Field(None, alias="aiModel", max_length=100)

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        """Reject whitespace-only prompts."""
        if not v.strip():
            raise ValueError("prompt cannot be blank")
        return v


class ImageData(BaseModel):
    """Generated image reference."""

    url: str | None = None
    b64_json: str | None = None


class CreditsInfo(BaseModel):
    """Credit usage after an authenticated generation."""

    used: int
    remaining: int


class SignupOffer(BaseModel):
    """Upsell shown to guests."""

    credits: int
    message: str


class GuestInfo(CamelModel):
    """Guest allowance after a generation."""

    remaining: int
    total: int
    signup_offer: SignupOffer | None = Field(None, alias="signupOffer")


class GenerateImageResponse(CamelModel):
    """Successful generation response."""

    data: list[ImageData]
    credits: CreditsInfo | None = None
    guest_info: GuestInfo | None = Field(None, alias="guestInfo")


class ErrorResponse(CamelModel):
    """Generic error envelope."""

    error: str
    details: str


class InsufficientCreditsResponse(ErrorResponse):
    """402 response for authenticated callers."""

    credits_needed: int = Field(..., alias="creditsNeeded")
    current_balance: int = Field(..., alias="currentBalance")


class GuestLimitResponse(ErrorResponse):
    """429 response for guests who used their free generations."""

    remaining: int = 0
    total: int
    resets_in: int = Field(..., alias="resetsIn", description="Hours until reset")
    resets_at: str | None = Field(None, alias="resetsAt", description="ISO 8601 timestamp")
    signup_offer: SignupOffer | None = Field(None, alias="signupOffer")


# ============================================================================
# Credit Models
# ============================================================================


class CreditBalanceInfo(CamelModel):
    """Balance summary for an authenticated user."""

    balance: int
    welcome_credits_remaining: int = Field(..., alias="welcomeCreditsRemaining")
    lifetime_credits: int = Field(..., alias="lifetimeCredits")
    lifetime_spent: int = Field(..., alias="lifetimeSpent")


class UsageInfo(CamelModel):
    """Generation usage summary."""

    total_generations: int = Field(..., alias="totalGenerations")


class TransactionItem(CamelModel):
    """Single credit transaction."""

    transaction_id: str = Field(..., alias="id")
    amount: int
    balance: int
    type: TransactionType
    reason: str | None = None
    created_at: str = Field(..., alias="createdAt")  # ISO 8601 timestamp


class AuthenticatedCreditsResponse(CamelModel):
    """GET /api/credits for authenticated users."""

    authenticated: bool = True
    credits: CreditBalanceInfo
    usage: UsageInfo
    recent_transactions: list[TransactionItem] = Field(..., alias="recentTransactions")


class GuestAllowance(BaseModel):
    """Guest allowance summary."""

    remaining: int
    total: int


class GuestCreditsResponse(CamelModel):
    """GET /api/credits for guests."""

    authenticated: bool = False
    guest: GuestAllowance
    signup_offer: SignupOffer = Field(..., alias="signupOffer")


class GrantBonusRequest(CamelModel):
    """POST /api/credits/grant-tshirt-bonus request body."""

    order_id: int | None = Field(None, alias="orderId")
    tshirt_count: int = Field(default=1, alias="tshirtCount", ge=1, le=100)


class GrantBonusResponse(CamelModel):
    """POST /api/credits/grant-tshirt-bonus response."""

    success: bool
    credits_granted: int = Field(..., alias="creditsGranted")
    new_balance: int = Field(..., alias="newBalance")
    message: str


class BonusInfoResponse(CamelModel):
    """GET /api/credits/grant-tshirt-bonus response."""

    message: str
    bonus_per_tshirt: int = Field(..., alias="bonusPerTshirt")
    description: str
    granted_automatically: bool = Field(..., alias="grantedAutomatically")
    when_granted: str = Field(..., alias="whenGranted")


# ============================================================================
# Health Check Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str  # ISO 8601 timestamp
