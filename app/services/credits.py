"""
Credit Ledger Service - Per-user credit balance with write verification.

NO DICTIONARIES - Results are returned as typed domain models; JSONB
metadata on ledger entries is the only free-form data.

Every balance change is paired with an immutable credit_transactions row.
Deductions lock the user_credits row (SELECT FOR UPDATE) so concurrent
generations cannot overdraw the balance.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import CreditTransaction, ImageGeneration, UserCredits
from app.exceptions import SettlementWriteError, UserCreditsNotFoundError
from app.models.api import GenerationStatus, TransactionType
from app.models.domain import (
    CreditCheckResult,
    CreditGrantResult,
    CreditStats,
    CreditTransactionData,
    DeductionResult,
)
from app.services.normalization import get_model_cost

logger = get_logger(__name__)

RECENT_TRANSACTIONS_LIMIT = 10


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _start_of_month(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1, tzinfo=UTC)


def needs_monthly_reset(last_reset: datetime, now: datetime) -> bool:
    """True when last_reset falls in an earlier calendar month (UTC) than now."""
    if last_reset.tzinfo is None:
        last_reset = last_reset.replace(tzinfo=UTC)
    last_reset = last_reset.astimezone(UTC)
    return (last_reset.year, last_reset.month) != (now.year, now.month)


class CreditLedgerService:
    """
    Credit ledger with write verification.

    Write operations follow the pattern:
    1. Lock the balance row
    2. Write the balance change and its ledger entry
    3. Flush, read back and verify
    4. Commit
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger with database session."""
        self.session = session
        self.monthly_credits = settings.monthly_credits
        self.welcome_credits = settings.welcome_credits
        self.tshirt_bonus = settings.tshirt_purchase_bonus

    # ========================================================================
    # Account lifecycle
    # ========================================================================

    async def get_or_create_user_credits(self, user_id: str) -> UserCredits:
        """
        Load the user's credits row, creating it on first access.

        New rows start with the monthly allocation. Existing rows get the
        monthly reset applied when the calendar month has changed.
        """
        record = await self._find(user_id)

        if record is None:
            record = await self._create(user_id)
        elif needs_monthly_reset(record.last_monthly_reset, _utc_now()):
            record = await self._reset_monthly(user_id)

        return record

    async def _create(self, user_id: str) -> UserCredits:
        now = _utc_now()
        record = UserCredits(
            user_id=user_id,
            credits=self.monthly_credits,
            monthly_credits=self.monthly_credits,
            monthly_credits_used=0,
            last_monthly_reset=now,
            welcome_credits=self.welcome_credits,
            welcome_credits_used=0,
            lifetime_credits=self.monthly_credits,
            lifetime_spent=0,
        )
        self.session.add(record)
        self.session.add(
            CreditTransaction(
                user_id=user_id,
                amount=self.monthly_credits,
                balance=self.monthly_credits,
                transaction_type=TransactionType.MONTHLY_RESET,
                reason="Initial monthly credit allocation",
            )
        )

        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            # Created concurrently by another request
            logger.warning("user_credits_creation_conflict", user_id=user_id, error=str(e))
            await self.session.rollback()
            existing = await self._find(user_id)
            if existing is None:
                raise SettlementWriteError("create_user_credits", str(e)) from e
            return existing

        logger.info("user_credits_created", user_id=user_id, credits=record.credits)
        return record

    async def _reset_monthly(self, user_id: str) -> UserCredits:
        record = await self._lock_for_update(user_id)
        if record is None:
            raise UserCreditsNotFoundError(user_id)

        now = _utc_now()
        # Re-check under the lock; a concurrent request may have reset already
        if needs_monthly_reset(record.last_monthly_reset, now):
            self._apply_monthly_reset(record, now)
            await self.session.flush()
            await self.session.commit()
            logger.info("monthly_credits_reset", user_id=user_id, credits=record.credits)

        return record

    def _apply_monthly_reset(self, record: UserCredits, now: datetime) -> None:
        record.credits = self.monthly_credits
        record.monthly_credits = self.monthly_credits
        record.monthly_credits_used = 0
        record.last_monthly_reset = now
        record.lifetime_credits = record.lifetime_credits + self.monthly_credits
        self.session.add(
            CreditTransaction(
                user_id=record.user_id,
                amount=self.monthly_credits,
                balance=record.credits,
                transaction_type=TransactionType.MONTHLY_RESET,
                reason=f"Monthly credit reset for {now.strftime('%B %Y')}",
            )
        )

    async def reset_stale_monthly_credits(self) -> int:
        """
        Reset every account whose last reset is before the current month.

        Returns the number of accounts reset.
        """
        now = _utc_now()
        stmt = (
            select(UserCredits)
            .where(UserCredits.last_monthly_reset < _start_of_month(now))
            .with_for_update(skip_locked=True)
        )
        result = await self.session.execute(stmt)
        records = list(result.scalars().all())

        for record in records:
            self._apply_monthly_reset(record, now)

        await self.session.flush()
        await self.session.commit()

        logger.info("monthly_credits_batch_reset", accounts_reset=len(records))
        return len(records)

    # ========================================================================
    # Entitlement
    # ========================================================================

    async def check_balance(self, user_id: str, model_name: str) -> CreditCheckResult:
        """Whether the user can pay for one generation with model_name."""
        record = await self.get_or_create_user_credits(user_id)
        required = get_model_cost(model_name)

        return CreditCheckResult(
            allowed=record.credits >= required,
            required_units=required,
            current_balance=record.credits,
        )

    async def deduct(
        self,
        user_id: str,
        model_name: str,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> DeductionResult:
        """
        Charge one generation with model_name.

        Returns success=False (nothing deducted) when the balance no longer
        covers the cost.

        Raises:
            UserCreditsNotFoundError: no credits row for the user
            SettlementWriteError: read-back after the write disagrees
        """
        # Applies the monthly reset and creates the row when missing
        await self.get_or_create_user_credits(user_id)

        record = await self._lock_for_update(user_id)
        if record is None:
            raise UserCreditsNotFoundError(user_id)

        amount = get_model_cost(model_name)
        if record.credits < amount:
            logger.warning(
                "credit_deduction_refused",
                user_id=user_id,
                balance=record.credits,
                required=amount,
            )
            return DeductionResult(success=False, deducted=0, new_balance=record.credits)

        credits_after = record.credits - amount
        record.credits = credits_after
        record.monthly_credits_used = record.monthly_credits_used + amount
        record.lifetime_spent = record.lifetime_spent + amount

        self.session.add(
            CreditTransaction(
                user_id=user_id,
                amount=-amount,
                balance=credits_after,
                transaction_type=TransactionType.GENERATION_USED,
                reason=reason,
                metadata_json=metadata,
            )
        )
        try:
            await self.session.flush()

            # Verify balance was written
            verified = await self.session.get(UserCredits, record.id)
            if verified is None:
                raise SettlementWriteError("deduct", f"User credits {record.id} disappeared")
            if verified.credits != credits_after:
                raise SettlementWriteError(
                    "deduct",
                    f"Balance mismatch: expected {credits_after}, got {verified.credits}",
                )

            await self.session.commit()
        except SettlementWriteError:
            await self.session.rollback()
            raise
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise SettlementWriteError("deduct", str(e)) from e

        logger.info(
            "credits_deducted",
            user_id=user_id,
            model=model_name,
            deducted=amount,
            new_balance=credits_after,
        )
        return DeductionResult(success=True, deducted=amount, new_balance=credits_after)

    # ========================================================================
    # Grants
    # ========================================================================

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """
        Add credits to the user's balance (purchase, bonus, grant, refund).

        Returns the new balance.
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got: {amount}")

        await self.get_or_create_user_credits(user_id)
        record = await self._lock_for_update(user_id)
        if record is None:
            raise UserCreditsNotFoundError(user_id)

        credits_after = record.credits + amount
        record.credits = credits_after
        record.lifetime_credits = record.lifetime_credits + amount

        self.session.add(
            CreditTransaction(
                user_id=user_id,
                amount=amount,
                balance=credits_after,
                transaction_type=transaction_type,
                reason=reason,
                metadata_json=metadata,
            )
        )
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "credits_added",
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type.value,
            new_balance=credits_after,
        )
        return credits_after

    async def grant_purchase_bonus(
        self, user_id: str, order_id: int, tshirt_count: int = 1
    ) -> CreditGrantResult:
        """Grant the per-T-shirt bonus for a completed order."""
        credits_to_grant = self.tshirt_bonus * tshirt_count
        plural = "s" if tshirt_count > 1 else ""

        new_balance = await self.add_credits(
            user_id,
            credits_to_grant,
            TransactionType.TSHIRT_BONUS,
            f"Bonus credits for purchasing {tshirt_count} T-shirt{plural}",
            {
                "order_id": order_id,
                "tshirt_count": tshirt_count,
                "credits_per_tshirt": self.tshirt_bonus,
            },
        )

        return CreditGrantResult(
            success=True,
            credits_granted=credits_to_grant,
            new_balance=new_balance,
        )

    # ========================================================================
    # Reporting
    # ========================================================================

    async def get_credit_stats(self, user_id: str) -> CreditStats:
        """Balance, lifetime counters and the most recent ledger entries."""
        record = await self.get_or_create_user_credits(user_id)

        tx_result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(RECENT_TRANSACTIONS_LIMIT)
        )
        transactions = [
            CreditTransactionData(
                transaction_id=tx.id,
                amount=tx.amount,
                balance=tx.balance,
                transaction_type=tx.transaction_type,
                reason=tx.reason,
                created_at=tx.created_at,
            )
            for tx in tx_result.scalars().all()
        ]

        count_result = await self.session.execute(
            select(func.count())
            .select_from(ImageGeneration)
            .where(
                ImageGeneration.user_id == user_id,
                ImageGeneration.status == GenerationStatus.COMPLETED,
            )
        )
        total_generations = count_result.scalar_one()

        return CreditStats(
            balance=record.credits,
            welcome_credits_remaining=record.welcome_credits - record.welcome_credits_used,
            lifetime_credits=record.lifetime_credits,
            lifetime_spent=record.lifetime_spent,
            total_generations=total_generations,
            recent_transactions=transactions,
        )

    # ========================================================================
    # Queries
    # ========================================================================

    async def _find(self, user_id: str) -> UserCredits | None:
        result = await self.session.execute(
            select(UserCredits).where(UserCredits.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def _lock_for_update(self, user_id: str) -> UserCredits | None:
        result = await self.session.execute(
            select(UserCredits).where(UserCredits.user_id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()
