"""
Test data factories shared across test modules.

Mock rows, query results, request bodies and signed tokens.
"""

import os
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock
from uuid import UUID, uuid4

import jwt

from app.db.models import GuestGeneration, UserCredits


def make_result(
    scalar: Any | None = None, rows: list | None = None, scalar_one: Any | None = None
) -> MagicMock:
    """Mock of an AsyncSession.execute() result."""
    result = MagicMock()
    result.scalar_one_or_none = MagicMock(return_value=scalar)
    result.scalar_one = MagicMock(return_value=scalar_one)
    result.scalars = MagicMock(return_value=MagicMock(all=MagicMock(return_value=rows or [])))
    return result


def create_mock_user_credits(
    user_id: str = "user_123",
    credits: int = 50,
    monthly_credits: int = 50,
    monthly_credits_used: int = 0,
    last_monthly_reset: datetime | None = None,
    welcome_credits: int = 50,
    welcome_credits_used: int = 0,
    lifetime_credits: int = 50,
    lifetime_spent: int = 0,
    record_id: UUID | None = None,
) -> MagicMock:
    """Factory function to create mock UserCredits rows."""
    record = MagicMock(spec=UserCredits)
    record.id = record_id or uuid4()
    record.user_id = user_id
    record.credits = credits
    record.monthly_credits = monthly_credits
    record.monthly_credits_used = monthly_credits_used
    record.last_monthly_reset = last_monthly_reset or datetime.now(UTC)
    record.welcome_credits = welcome_credits
    record.welcome_credits_used = welcome_credits_used
    record.lifetime_credits = lifetime_credits
    record.lifetime_spent = lifetime_spent
    record.created_at = datetime.now(UTC)
    record.updated_at = datetime.now(UTC)
    return record


def create_mock_guest_generation(
    session_id: str = "guest_session_1",
    count: int = 1,
    last_generation_at: datetime | None = None,
    ip_address: str | None = "203.0.113.7",
) -> MagicMock:
    """Factory function to create mock GuestGeneration rows."""
    record = MagicMock(spec=GuestGeneration)
    record.id = uuid4()
    record.session_id = session_id
    record.count = count
    record.last_generation_at = last_generation_at or datetime.now(UTC) - timedelta(hours=1)
    record.ip_address = ip_address
    record.created_at = datetime.now(UTC)
    return record


def make_token(
    user_id: str | None = "user_123",
    expires_in: timedelta = timedelta(hours=1),
    secret: str | None = None,
) -> str:
    """Storefront session JWT signed with the test secret."""
    now = datetime.now(UTC)
    claims: dict[str, Any] = {"iat": now, "exp": now + expires_in}
    if user_id is not None:
        claims["sub"] = user_id
    return jwt.encode(claims, secret or os.environ["AUTH_JWT_SECRET"], algorithm="HS256")


def generation_body(**overrides: Any) -> dict[str, Any]:
    """Valid POST /api/generate-image body."""
    body: dict[str, Any] = {
        "prompt": "a retro sunset over mountains, t-shirt print",
        "models": [{"model": "black-forest-labs/FLUX.1-dev", "type": "base", "weight": 1.0}],
        "width": 1024,
        "height": 1024,
    }
    body.update(overrides)
    return body
