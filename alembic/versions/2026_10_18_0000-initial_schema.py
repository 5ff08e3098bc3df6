"""initial schema

Revision ID: 2026_10_18_0000
Revises:
Create Date: 2026-10-18 09:00:00.000000

Creates the credit ledger, guest quota and generation audit tables.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import INET, JSONB, UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_18_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # user_credits
    # ========================================================================
    op.create_table(
        "user_credits",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "last_monthly_reset",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("welcome_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("welcome_credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_credits", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_spent", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.CheckConstraint("credits >= 0", name="ck_user_credits_non_negative"),
        sa.CheckConstraint("monthly_credits_used >= 0", name="ck_monthly_used_non_negative"),
        sa.CheckConstraint("lifetime_spent >= 0", name="ck_lifetime_spent_non_negative"),
        sa.UniqueConstraint("user_id", name="uq_user_credits_user_id"),
    )
    op.create_index(
        "idx_user_credits_last_monthly_reset", "user_credits", ["last_monthly_reset"]
    )

    # ========================================================================
    # credit_transactions
    # ========================================================================
    op.create_table(
        "credit_transactions",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.CheckConstraint("amount <> 0", name="ck_credit_transaction_amount_non_zero"),
        sa.CheckConstraint("balance >= 0", name="ck_credit_transaction_balance_non_negative"),
        sa.CheckConstraint(
            "transaction_type IN ('monthly_reset', 'generation_used', 'purchase', "
            "'tshirt_bonus', 'grant', 'refund')",
            name="ck_credit_transaction_type",
        ),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])
    op.create_index(
        "idx_credit_transactions_user_created", "credit_transactions", ["user_id", "created_at"]
    )
    op.create_index("idx_credit_transactions_type", "credit_transactions", ["transaction_type"])

    # ========================================================================
    # guest_generations
    # ========================================================================
    op.create_table(
        "guest_generations",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("session_id", sa.String(255), nullable=False),
        sa.Column("ip_address", INET(), nullable=True),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "last_generation_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.CheckConstraint("count >= 0", name="ck_guest_generation_count_non_negative"),
        sa.UniqueConstraint("session_id", name="uq_guest_generations_session"),
    )
    op.create_index(
        "idx_guest_generations_last_generation_at", "guest_generations", ["last_generation_at"]
    )

    # ========================================================================
    # image_generations
    # ========================================================================
    op.create_table(
        "image_generations",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("ip_address", INET(), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("ai_model", sa.String(100), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("generation_time_ms", sa.Integer(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")
        ),
        sa.CheckConstraint("credits_used >= 0", name="ck_image_generation_credits_non_negative"),
        sa.CheckConstraint(
            "status = 'completed' OR credits_used = 0",
            name="ck_image_generation_failed_uncharged",
        ),
        sa.CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_image_generation_single_caller",
        ),
        sa.CheckConstraint(
            "status IN ('completed', 'failed')", name="ck_image_generation_status"
        ),
    )
    op.create_index(
        "idx_image_generations_user_id",
        "image_generations",
        ["user_id"],
        postgresql_where=sa.text("user_id IS NOT NULL"),
    )
    op.create_index(
        "idx_image_generations_session_id",
        "image_generations",
        ["session_id"],
        postgresql_where=sa.text("session_id IS NOT NULL"),
    )
    op.create_index("idx_image_generations_created_at", "image_generations", ["created_at"])
    op.create_index("idx_image_generations_status", "image_generations", ["status"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("image_generations")
    op.drop_table("guest_generations")
    op.drop_table("credit_transactions")
    op.drop_table("user_credits")
