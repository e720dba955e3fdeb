from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from scheduling_intel.core.config import get_settings
from scheduling_intel.core.exceptions import RecordStoreError
from scheduling_intel.models.writeback import AuditEventTypeEnum, SchedulerAuditLog
from scheduling_intel.schemas.writeback import AuditEntry

logger = structlog.get_logger(__name__)


class AuditLog:
    """Append-only audit trail. Exposes no update or delete"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        event_type: AuditEventTypeEnum,
        clinic_id: UUID,
        description: str,
        actor_id: Optional[UUID] = None,
        actor_role: Optional[str] = None,
        recommendation_id: Optional[UUID] = None,
        approval_id: Optional[UUID] = None,
        execution_id: Optional[UUID] = None,
        ai_confidence: Optional[float] = None,
        outcome: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """Append one lifecycle event within the caller's transaction"""
        entry = SchedulerAuditLog(
            clinic_id=clinic_id,
            event_type=AuditEventTypeEnum(event_type).value,
            recommendation_id=recommendation_id,
            approval_id=approval_id,
            execution_id=execution_id,
            actor_id=actor_id,
            actor_role=actor_role,
            action_description=description,
            ai_confidence=ai_confidence,
            outcome=outcome or {},
        )

        try:
            self.session.add(entry)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Error recording audit event",
                event_type=AuditEventTypeEnum(event_type).value,
                recommendation_id=str(recommendation_id) if recommendation_id else None,
                error=str(e),
                exc_info=True
            )
            raise RecordStoreError("Audit write failed", {"event_type": AuditEventTypeEnum(event_type).value}) from e

        logger.info("Audit event recorded", event_type=entry.event_type, audit_id=str(entry.id))
        return AuditEntry.model_validate(entry)

    async def get_history(self, clinic_id: UUID, limit: Optional[int] = None) -> List[AuditEntry]:
        """Clinic audit trail, newest first"""
        limit = limit or get_settings().writeback.HISTORY_DEFAULT_LIMIT
        query = (
            select(SchedulerAuditLog)
            .where(SchedulerAuditLog.clinic_id == clinic_id)
            .order_by(SchedulerAuditLog.recorded_at.desc())
            .limit(limit)
        )
        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            logger.error("Error fetching approval history", clinic_id=str(clinic_id), error=str(e))
            raise RecordStoreError("Audit history fetch failed", {"clinic_id": str(clinic_id)}) from e

        return [AuditEntry.model_validate(row) for row in result.scalars().all()]

    async def get_for_recommendation(self, recommendation_id: UUID) -> List[AuditEntry]:
        """Lifecycle of one recommendation, oldest first"""
        query = (
            select(SchedulerAuditLog)
            .where(SchedulerAuditLog.recommendation_id == recommendation_id)
            .order_by(SchedulerAuditLog.recorded_at.asc())
        )
        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            logger.error("Error fetching recommendation audit trail", recommendation_id=str(recommendation_id), error=str(e))
            raise RecordStoreError("Audit trail fetch failed", {"recommendation_id": str(recommendation_id)}) from e

        return [AuditEntry.model_validate(row) for row in result.scalars().all()]


__all__ = ["AuditLog"]
