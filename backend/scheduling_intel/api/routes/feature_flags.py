from fastapi import APIRouter, Depends, HTTPException, status
import structlog

from scheduling_intel.api.dependencies import Actor, get_current_actor, get_feature_flags
from scheduling_intel.core.feature_flags import DEFAULT_FLAGS, FeatureFlags
from scheduling_intel.schemas.feature_flags import FeatureFlagUpdate, FeatureFlagsResponse

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/feature-flags")


def _known_flag(flag: str, flags: FeatureFlags) -> str:
    if flag not in DEFAULT_FLAGS and flag not in flags.snapshot():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Unknown feature flag", "flag": flag}
        )
    return flag


@router.get("", response_model=FeatureFlagsResponse, summary="Feature Flags")
async def list_feature_flags(flags: FeatureFlags = Depends(get_feature_flags)) -> FeatureFlagsResponse:
    return FeatureFlagsResponse(flags=flags.snapshot())


@router.put("/{flag}", response_model=FeatureFlagsResponse, summary="Override Feature Flag")
async def set_feature_flag(
    flag: str,
    request: FeatureFlagUpdate,
    actor: Actor = Depends(get_current_actor),
    flags: FeatureFlags = Depends(get_feature_flags)
) -> FeatureFlagsResponse:
    flags.set_override(_known_flag(flag, flags), request.enabled)
    logger.info(
        "Feature flag changed",
        flag=flag,
        enabled=request.enabled,
        actor_id=str(actor.user_id) if actor.user_id else None
    )
    return FeatureFlagsResponse(flags=flags.snapshot())


@router.delete("/{flag}", response_model=FeatureFlagsResponse, summary="Clear Feature Flag Override")
async def clear_feature_flag(
    flag: str,
    flags: FeatureFlags = Depends(get_feature_flags)
) -> FeatureFlagsResponse:
    flags.clear_override(_known_flag(flag, flags))
    return FeatureFlagsResponse(flags=flags.snapshot())
