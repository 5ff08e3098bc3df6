"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
JSONB is used only for free-form audit metadata.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import GenerationStatus, TransactionType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UserCredits(Base):
    """
    ORM model for user_credits table.

    One row per storefront user holding the spendable credit balance
    and the monthly allocation bookkeeping.
    """

    __tablename__ = "user_credits"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Storefront user id (issued by the auth provider)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Spendable balance
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Monthly allocation
    monthly_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_monthly_reset: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Welcome bonus
    welcome_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    welcome_credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lifetime counters
    lifetime_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    lifetime_spent: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_user_credits_non_negative"),
        CheckConstraint("monthly_credits_used >= 0", name="ck_monthly_used_non_negative"),
        CheckConstraint("lifetime_spent >= 0", name="ck_lifetime_spent_non_negative"),
        Index("idx_user_credits_last_monthly_reset", "last_monthly_reset"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<UserCredits(user_id={self.user_id}, credits={self.credits})>"


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Immutable ledger of every balance change (signed amount).
    """

    __tablename__ = "credit_transactions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Signed amount and balance snapshot after the change
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance: Mapped[int] = mapped_column(Integer, nullable=False)

    # Transaction type
    transaction_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(
            TransactionType,
            name="credit_transaction_type",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    reason: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONB, nullable=True
    )

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_credit_transaction_amount_non_zero"),
        CheckConstraint("balance >= 0", name="ck_credit_transaction_balance_non_negative"),
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
        Index("idx_credit_transactions_type", "transaction_type"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, type={self.transaction_type})>"
        )


class GuestGeneration(Base):
    """
    ORM model for guest_generations table.

    Rolling-window counter of free generations per guest session.
    """

    __tablename__ = "guest_generations"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)

    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_generation_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("count >= 0", name="ck_guest_generation_count_non_negative"),
        UniqueConstraint("session_id", name="uq_guest_generations_session"),
        Index("idx_guest_generations_last_generation_at", "last_generation_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<GuestGeneration(session_id={self.session_id}, count={self.count})>"


class ImageGeneration(Base):
    """
    ORM model for image_generations table.

    Append-only settlement record, one per generation attempt that
    reached the image provider. Failed attempts are never charged.
    """

    __tablename__ = "image_generations"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Caller (exactly one of user_id / session_id)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(INET, nullable=True)

    # Request
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    ai_model: Mapped[str] = mapped_column(String(100), nullable=False)

    # Settlement
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[GenerationStatus] = mapped_column(
        SQLEnum(
            GenerationStatus,
            name="generation_status",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    generation_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)

    # Normalized provider parameters and request extras
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONB, nullable=True
    )

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_used >= 0", name="ck_image_generation_credits_non_negative"),
        CheckConstraint(
            "status = 'completed' OR credits_used = 0",
            name="ck_image_generation_failed_uncharged",
        ),
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_image_generation_single_caller",
        ),
        Index(
            "idx_image_generations_user_id",
            "user_id",
            postgresql_where=text("user_id IS NOT NULL"),
        ),
        Index(
            "idx_image_generations_session_id",
            "session_id",
            postgresql_where=text("session_id IS NOT NULL"),
        ),
        Index("idx_image_generations_created_at", "created_at"),
        Index("idx_image_generations_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ImageGeneration(id={self.id}, model={self.ai_model}, "
            f"status={self.status}, credits={self.credits_used})>"
        )
