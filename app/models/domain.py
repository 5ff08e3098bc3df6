"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from app.models.api import GenerationStatus, ModelKind, TransactionType


# ============================================================================
# Caller Context
# ============================================================================


@dataclass(frozen=True)
class AuthenticatedCaller:
    """Caller with a storefront account."""

    user_id: str

    def __post_init__(self) -> None:
        """Validate user id."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")


@dataclass(frozen=True)
class GuestCaller:
    """Anonymous caller identified by session token plus IP."""

    session_id: str
    ip_address: str | None = None

    def __post_init__(self) -> None:
        """Validate guest identity."""
        if not self.session_id:
            raise ValueError("session_id cannot be empty")


CallerContext = AuthenticatedCaller | GuestCaller


# ============================================================================
# Entitlements
# ============================================================================


@dataclass(frozen=True)
class CreditCheckResult:
    """Entitlement check for an authenticated caller."""

    allowed: bool
    required_units: int
    current_balance: int


@dataclass(frozen=True)
class GuestQuotaCheck:
    """Entitlement check for a guest caller."""

    allowed: bool
    remaining: int
    resets_at: datetime | None


@dataclass(frozen=True)
class GuestQuotaStatus:
    """Current guest allowance, without counting a pending generation."""

    remaining: int
    total: int
    resets_at: datetime | None


@dataclass(frozen=True)
class DeductionResult:
    """Result of deducting credits after a generation."""

    success: bool
    deducted: int
    new_balance: int


@dataclass(frozen=True)
class CreditGrantResult:
    """Result of granting bonus credits."""

    success: bool
    credits_granted: int
    new_balance: int


@dataclass(frozen=True)
class CreditTransactionData:
    """Immutable credit ledger entry."""

    transaction_id: UUID
    amount: int
    balance: int
    transaction_type: TransactionType
    reason: str | None
    created_at: datetime


@dataclass(frozen=True)
class CreditStats:
    """Balance and usage summary for an account."""

    balance: int
    welcome_credits_remaining: int
    lifetime_credits: int
    lifetime_spent: int
    total_generations: int
    recent_transactions: list[CreditTransactionData]


# ============================================================================
# Generation
# ============================================================================


@dataclass(frozen=True)
class ModelDescriptor:
    """One entry of the caller's model selection."""

    model_ref: str
    kind: ModelKind
    weight: float = 1.0


@dataclass(frozen=True)
class GenerationRequest:
    """Validated generation parameters as supplied by the caller."""

    prompt: str
    models: tuple[ModelDescriptor, ...]
    width: int
    height: int
    target_model: str
    lora_scale: float | None = None
    dpi: int | None = None

    def __post_init__(self) -> None:
        """Validate request constraints."""
        if not self.prompt.strip():
            raise ValueError("prompt cannot be empty")
        if not self.models:
            raise ValueError("models cannot be empty")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Dimensions must be positive: {self.width}x{self.height}")


@dataclass(frozen=True)
class OverlayParams:
    """LoRA overlay as sent to the provider."""

    model_ref: str
    scale: float


@dataclass(frozen=True)
class NormalizedGenerationParams:
    """Provider-ready parameters derived from a GenerationRequest."""

    base_model: str
    overlays: tuple[OverlayParams, ...]
    width: int
    height: int

    def __post_init__(self) -> None:
        """Dimensions must be positive multiples of 8."""
        for name, value in (("width", self.width), ("height", self.height)):
            if value <= 0 or value % 8 != 0:
                raise ValueError(f"{name} must be a positive multiple of 8, got: {value}")

    def to_metadata(self) -> dict[str, object]:
        """Serializable snapshot for the audit trail."""
        return {
            "base_model": self.base_model,
            "overlays": [{"model": o.model_ref, "scale": o.scale} for o in self.overlays],
            "width": self.width,
            "height": self.height,
        }


@dataclass(frozen=True)
class ProviderImageRequest:
    """Single image generation call to the external provider."""

    prompt: str
    params: NormalizedGenerationParams
    steps: int
    n: int = 1


@dataclass(frozen=True)
class GeneratedImage:
    """First image returned by the provider."""

    url: str | None = None
    b64_json: str | None = None

    @property
    def image_ref(self) -> str:
        """URL if present, otherwise the inline payload."""
        return self.url or self.b64_json or ""


@dataclass(frozen=True)
class GenerationSuccess:
    """Provider returned a usable image."""

    image: GeneratedImage
    generation_time_ms: int

    @property
    def image_ref(self) -> str:
        return self.image.image_ref


@dataclass(frozen=True)
class GenerationFailure:
    """Provider call failed or returned nothing usable."""

    error_message: str
    generation_time_ms: int


GenerationOutcome = GenerationSuccess | GenerationFailure


@dataclass(frozen=True)
class SettlementRecord:
    """Append-only audit entry, one per request that reached the provider."""

    caller: CallerContext
    prompt: str
    target_model: str
    units_charged: int
    status: GenerationStatus
    generation_time_ms: int
    normalized_params: NormalizedGenerationParams
    image_url: str | None = None
    error_message: str | None = None
    metadata: dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Failures are never charged."""
        if self.status == GenerationStatus.FAILED and self.units_charged != 0:
            raise ValueError("Failed generations cannot be charged")
        if self.units_charged < 0:
            raise ValueError(f"units_charged cannot be negative: {self.units_charged}")
