"""
Generation Log Service - Append-only settlement records.

One image_generations row per request that reached the image provider,
successful or not.
"""

from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import ImageGeneration
from app.exceptions import SettlementWriteError
from app.models.domain import AuthenticatedCaller, SettlementRecord


class GenerationLogService:
    """Persists SettlementRecords."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record_generation(self, record: SettlementRecord) -> UUID:
        """
        Insert the settlement record and commit.

        Raises:
            SettlementWriteError: the row could not be written
        """
        if isinstance(record.caller, AuthenticatedCaller):
            user_id, session_id, ip_address = record.caller.user_id, None, None
        else:
            user_id = None
            session_id = record.caller.session_id
            ip_address = record.caller.ip_address or None

        row = ImageGeneration(
            user_id=user_id,
            session_id=session_id,
            ip_address=ip_address,
            prompt=record.prompt,
            ai_model=record.target_model,
            credits_used=record.units_charged,
            status=record.status,
            image_url=record.image_url,
            error_message=record.error_message,
            generation_time_ms=record.generation_time_ms,
            metadata_json={
                **record.metadata,
                "params": record.normalized_params.to_metadata(),
            },
        )
        self.session.add(row)
        try:
            await self.session.flush()

            # Verify row was written
            verified = await self.session.get(ImageGeneration, row.id)
            if verified is None:
                raise SettlementWriteError(
                    "record_generation", f"Generation {row.id} not found after insert"
                )

            await self.session.commit()
        except SettlementWriteError:
            await self.session.rollback()
            raise
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise SettlementWriteError("record_generation", str(e)) from e

        return row.id
