from datetime import datetime, timedelta
from typing import List, Optional, Set
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from scheduling_intel.core.exceptions import RecordStoreError
from scheduling_intel.models.writeback import InsightSuppression, SuppressionKindEnum
from scheduling_intel.utils.datetime_utils import ensure_utc, utcnow

logger = structlog.get_logger(__name__)


def snooze_expires_at(suppression: InsightSuppression) -> Optional[datetime]:
    if suppression.kind != SuppressionKindEnum.SNOOZED.value or suppression.snoozed_at is None:
        return None
    return ensure_utc(suppression.snoozed_at) + timedelta(minutes=suppression.snooze_minutes or 0)


def is_active(suppression: InsightSuppression, now: Optional[datetime] = None) -> bool:
    """Dismissals never lapse; snoozes lapse after their duration"""
    if suppression.kind == SuppressionKindEnum.DISMISSED.value:
        return True
    expires_at = snooze_expires_at(suppression)
    return expires_at is not None and expires_at > (now or utcnow())


class InsightSuppressionStore:
    """Per-user dismissed and snoozed insight ids"""

    def __init__(self, session: AsyncSession, user_id: UUID):
        self.session = session
        self.user_id = user_id

    async def _get(self, insight_id: str) -> Optional[InsightSuppression]:
        result = await self.session.execute(
            select(InsightSuppression).where(
                InsightSuppression.user_id == self.user_id,
                InsightSuppression.insight_id == insight_id
            )
        )
        return result.scalar_one_or_none()

    async def _upsert(
        self,
        insight_id: str,
        kind: SuppressionKindEnum,
        appointment_id: Optional[UUID],
        snooze_minutes: Optional[int] = None
    ) -> InsightSuppression:
        try:
            row = await self._get(insight_id)
            if row is None:
                row = InsightSuppression(user_id=self.user_id, insight_id=insight_id)
                self.session.add(row)

            # A dismissal outranks any snooze
            if row.kind == SuppressionKindEnum.DISMISSED.value and kind == SuppressionKindEnum.SNOOZED:
                return row

            row.kind = kind.value
            row.appointment_id = appointment_id or row.appointment_id
            row.snoozed_at = utcnow() if kind == SuppressionKindEnum.SNOOZED else None
            row.snooze_minutes = snooze_minutes
            await self.session.flush()
            return row
        except SQLAlchemyError as e:
            logger.error("Error saving insight suppression", insight_id=insight_id, kind=kind.value, error=str(e))
            raise RecordStoreError("Suppression write failed", {"insight_id": insight_id}) from e

    async def dismiss(self, insight_id: str, appointment_id: Optional[UUID] = None) -> InsightSuppression:
        row = await self._upsert(insight_id, SuppressionKindEnum.DISMISSED, appointment_id)
        logger.info("Insight dismissed", insight_id=insight_id, user_id=str(self.user_id))
        return row

    async def snooze(
        self,
        insight_id: str,
        minutes: int,
        appointment_id: Optional[UUID] = None
    ) -> InsightSuppression:
        if minutes <= 0:
            raise ValueError("Snooze duration must be positive")
        row = await self._upsert(insight_id, SuppressionKindEnum.SNOOZED, appointment_id, minutes)
        logger.info("Insight snoozed", insight_id=insight_id, minutes=minutes, user_id=str(self.user_id))
        return row

    async def clear(self, insight_id: str) -> bool:
        """Restore an insight; False when it was not suppressed"""
        try:
            row = await self._get(insight_id)
            if row is None:
                return False
            await self.session.delete(row)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Error clearing insight suppression", insight_id=insight_id, error=str(e))
            raise RecordStoreError("Suppression delete failed", {"insight_id": insight_id}) from e
        logger.info("Insight suppression cleared", insight_id=insight_id, user_id=str(self.user_id))
        return True

    async def list_entries(self) -> List[InsightSuppression]:
        try:
            result = await self.session.execute(
                select(InsightSuppression).where(InsightSuppression.user_id == self.user_id)
            )
        except SQLAlchemyError as e:
            logger.error("Error fetching insight suppressions", user_id=str(self.user_id), error=str(e))
            raise RecordStoreError("Suppression fetch failed", {"user_id": str(self.user_id)}) from e
        return list(result.scalars().all())

    async def get_suppressed_ids(self, now: Optional[datetime] = None) -> Set[str]:
        """Dismissed ids plus snoozed ids whose snooze has not lapsed"""
        now = now or utcnow()
        return {row.insight_id for row in await self.list_entries() if is_active(row, now)}

    async def is_suppressed(self, insight_id: str, now: Optional[datetime] = None) -> bool:
        row = await self._get(insight_id)
        return row is not None and is_active(row, now)


__all__ = [
    "snooze_expires_at",
    "is_active",
    "InsightSuppressionStore"
]
