from typing import Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from scheduling_intel.models.scheduling import UserProfile
from scheduling_intel.models.writeback import RecommendationTypeEnum, WriteBackPermission

logger = structlog.get_logger(__name__)


# One permission column per action type
PERMISSION_COLUMNS: Dict[RecommendationTypeEnum, str] = {
    RecommendationTypeEnum.STATUS_UPDATE: "can_approve_status_update",
    RecommendationTypeEnum.WAITLIST_FILL: "can_approve_waitlist_fill",
    RecommendationTypeEnum.OVERBOOK_SUGGESTION: "can_approve_overbook",
    RecommendationTypeEnum.RESCHEDULE: "can_approve_reschedule",
    RecommendationTypeEnum.BLOCK_INSERTION: "can_approve_block_insertion",
}


class AuthorizationChecker:
    """Per-clinic, per-role approval rights. Fails closed"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_user_role(self, user_id: UUID) -> Optional[str]:
        """Role from the user's profile, or None when the profile is missing"""
        try:
            result = await self.session.execute(
                select(UserProfile.role).where(UserProfile.id == user_id)
            )
        except SQLAlchemyError as e:
            logger.error("Error fetching user profile", user_id=str(user_id), error=str(e))
            return None
        return result.scalar_one_or_none()

    async def get_permission(self, clinic_id: UUID, role_name: str) -> Optional[WriteBackPermission]:
        try:
            result = await self.session.execute(
                select(WriteBackPermission).where(
                    WriteBackPermission.clinic_id == clinic_id,
                    WriteBackPermission.role_name == role_name
                )
            )
        except SQLAlchemyError as e:
            logger.error("Error fetching permissions", clinic_id=str(clinic_id), role=role_name, error=str(e))
            return None
        return result.scalar_one_or_none()

    async def can_approve(
        self,
        user_id: UUID,
        clinic_id: UUID,
        recommendation_type: RecommendationTypeEnum
    ) -> bool:
        """True only when the user's role row grants this action type"""
        role = await self.get_user_role(user_id)
        if role is None:
            logger.warning("No user profile, denying approval rights", user_id=str(user_id))
            return False

        permission = await self.get_permission(clinic_id, role)
        if permission is None:
            logger.warning("No permissions found for role", role=role, clinic_id=str(clinic_id))
            return False

        column = PERMISSION_COLUMNS[RecommendationTypeEnum(recommendation_type)]
        allowed = getattr(permission, column)
        if allowed is None:
            logger.warning("Permission flag not configured", role=role, permission=column)
            return False

        return bool(allowed)


__all__ = [
    "PERMISSION_COLUMNS",
    "AuthorizationChecker"
]
