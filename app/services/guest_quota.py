"""
Guest Quota Service - Free generations for anonymous sessions.

Rolling window per session: a guest may generate `limit` images within
`window_hours` of their last generation. The window restarts once the last
generation is older than the window.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import GuestGeneration
from app.exceptions import SettlementWriteError
from app.models.domain import GuestQuotaCheck, GuestQuotaStatus

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class GuestQuotaService:
    """Per-session generation counter backed by guest_generations."""

    def __init__(self, session: AsyncSession, limit: int, window_hours: int) -> None:
        self.session = session
        self.limit = limit
        self.window = timedelta(hours=window_hours)

    async def _find(self, session_id: str, for_update: bool = False) -> GuestGeneration | None:
        stmt = select(GuestGeneration).where(GuestGeneration.session_id == session_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _window_expired(self, record: GuestGeneration, now: datetime) -> bool:
        return _as_utc(record.last_generation_at) < now - self.window

    async def check_limit(self, session_id: str, ip_address: str | None = None) -> GuestQuotaCheck:
        """
        Whether the guest may generate now.

        `remaining` counts what is left after the pending generation.
        """
        now = _utc_now()
        record = await self._find(session_id)

        if record is None or self._window_expired(record, now):
            return GuestQuotaCheck(
                allowed=True,
                remaining=self.limit - 1,
                resets_at=now + self.window,
            )

        resets_at = _as_utc(record.last_generation_at) + self.window

        if record.count >= self.limit:
            logger.info(
                "guest_quota_exhausted",
                session_id=session_id,
                ip_address=ip_address,
                count=record.count,
                resets_at=resets_at.isoformat(),
            )
            return GuestQuotaCheck(allowed=False, remaining=0, resets_at=resets_at)

        return GuestQuotaCheck(
            allowed=True,
            remaining=self.limit - record.count - 1,
            resets_at=resets_at,
        )

    async def record_usage(self, session_id: str, ip_address: str | None = None) -> None:
        """Count one generation for the guest and commit."""
        now = _utc_now()
        record = await self._find(session_id, for_update=True)

        if record is None:
            record = GuestGeneration(
                session_id=session_id,
                ip_address=ip_address,
                count=1,
                last_generation_at=now,
            )
            self.session.add(record)
        elif self._window_expired(record, now):
            record.count = 1
            record.last_generation_at = now
            record.ip_address = ip_address
        else:
            record.count = record.count + 1
            record.last_generation_at = now
            record.ip_address = ip_address

        try:
            await self.session.flush()
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise SettlementWriteError("record_guest_usage", str(e)) from e

        logger.info("guest_usage_recorded", session_id=session_id, count=record.count)

    async def get_status(self, session_id: str) -> GuestQuotaStatus:
        """Remaining free generations right now."""
        now = _utc_now()
        record = await self._find(session_id)

        if record is None or self._window_expired(record, now):
            return GuestQuotaStatus(remaining=self.limit, total=self.limit, resets_at=None)

        return GuestQuotaStatus(
            remaining=max(0, self.limit - record.count),
            total=self.limit,
            resets_at=_as_utc(record.last_generation_at) + self.window,
        )
