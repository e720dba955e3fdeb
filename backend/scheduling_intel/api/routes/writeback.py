from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
import structlog

from scheduling_intel.api.dependencies import (
    Actor,
    get_correlation_id,
    get_current_actor,
    get_scheduler_service,
    get_writeback_service,
    require_actor,
    require_writeback_enabled,
    schedule_date_param
)
from scheduling_intel.core.exceptions import SchedulingIntelError
from scheduling_intel.models.writeback import RecommendationTypeEnum
from scheduling_intel.schemas.writeback import (
    AuditEntry,
    DecisionRequest,
    ExecutionFailureRequest,
    ExecutionRequest,
    ExecutionResult,
    GenerateRecommendationsResponse,
    OutcomeRequest,
    PermissionCheckResponse,
    WriteBackApproval,
    WriteBackRecommendation
)
from scheduling_intel.services.insight_engine import derive_insights
from scheduling_intel.services.scheduler_service import SchedulerService
from scheduling_intel.services.writeback_service import WriteBackService

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/writeback", dependencies=[Depends(require_writeback_enabled)])


@router.post(
    "/{clinic_id}/recommendations/generate",
    response_model=GenerateRecommendationsResponse,
    summary="Generate Write-Back Recommendations",
    description="Promote a clinic day's eligible insights to pending recommendations"
)
async def generate_recommendations(
    clinic_id: UUID,
    schedule_date: date = Depends(schedule_date_param),
    actor: Actor = Depends(get_current_actor),
    scheduler: SchedulerService = Depends(get_scheduler_service),
    service: WriteBackService = Depends(get_writeback_service),
    correlation_id: str = Depends(get_correlation_id)
) -> GenerateRecommendationsResponse:
    """
    Derive the day's insights and save a recommendation for each one whose
    type has a write-back action and whose confidence meets that action's
    threshold. Each saved recommendation gets a `recommendation_generated`
    audit entry in the same transaction.

    **Returns:**
    - **insights_evaluated**: Number of derived insights considered
    - **recommendations**: Newly saved pending recommendations
    """
    try:
        logger.info(
            "Recommendation generation requested",
            correlation_id=correlation_id,
            clinic_id=str(clinic_id),
            schedule_date=str(schedule_date)
        )

        appointments, providers = await scheduler.load_day(clinic_id, schedule_date)
        insights = derive_insights(appointments, providers)
        recommendations = await service.generate_recommendations(
            clinic_id,
            appointments,
            insights,
            actor_id=actor.user_id
        )

        return GenerateRecommendationsResponse(
            clinic_id=clinic_id,
            schedule_date=schedule_date,
            insights_evaluated=len(insights),
            recommendations=recommendations,
        )

    except (HTTPException, SchedulingIntelError):
        raise
    except Exception as e:
        logger.error(
            "Recommendation generation failed",
            correlation_id=correlation_id,
            error=str(e),
            exc_info=True
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "error": "Recommendation generation failed",
                "correlation_id": correlation_id
            }
        )


@router.get(
    "/{clinic_id}/recommendations/pending",
    response_model=List[WriteBackRecommendation],
    summary="Pending Recommendations"
)
async def list_pending_recommendations(
    clinic_id: UUID,
    service: WriteBackService = Depends(get_writeback_service)
) -> List[WriteBackRecommendation]:
    """Undecided, unexpired recommendations, newest first"""
    return await service.get_pending(clinic_id)


@router.get(
    "/recommendations/{recommendation_id}",
    response_model=WriteBackRecommendation,
    summary="Get Recommendation"
)
async def get_recommendation(
    recommendation_id: UUID,
    service: WriteBackService = Depends(get_writeback_service)
) -> WriteBackRecommendation:
    return await service.get_recommendation(recommendation_id)


@router.post(
    "/recommendations/{recommendation_id}/request-approval",
    response_model=AuditEntry,
    summary="Request Approval"
)
async def request_approval(
    recommendation_id: UUID,
    actor: Actor = Depends(require_actor),
    service: WriteBackService = Depends(get_writeback_service)
) -> AuditEntry:
    return await service.request_approval(recommendation_id, actor.user_id, actor.role)


@router.post(
    "/recommendations/{recommendation_id}/decision",
    response_model=WriteBackApproval,
    summary="Approve or Reject",
    description="Record a decision with its role, confidence and freshness checks"
)
async def decide_recommendation(
    recommendation_id: UUID,
    request: DecisionRequest,
    actor: Actor = Depends(require_actor),
    service: WriteBackService = Depends(get_writeback_service),
    correlation_id: str = Depends(get_correlation_id)
) -> WriteBackApproval:
    """
    Decide a pending recommendation. Exactly one decision wins; a second
    decision gets 409.

    The recorded checks never block the decision unless server-side blocking
    is enabled, in which case an approve with a failed check gets 422.
    """
    approval = await service.decide(recommendation_id, actor.user_id, request.decision, request.note)
    logger.info(
        "Decision recorded",
        correlation_id=correlation_id,
        recommendation_id=str(recommendation_id),
        decision=approval.decision.value,
        all_checks_passed=approval.all_checks_passed
    )
    return approval


@router.post(
    "/approvals/{approval_id}/execute",
    response_model=ExecutionResult,
    summary="Execute Approved Recommendation"
)
async def execute_approval(
    approval_id: UUID,
    request: Optional[ExecutionRequest] = None,
    actor: Actor = Depends(require_actor),
    service: WriteBackService = Depends(get_writeback_service)
) -> ExecutionResult:
    """Record the push of an approved recommendation to the practice system"""
    request = request or ExecutionRequest()
    return await service.execute_approved(
        approval_id,
        executed_by=actor.user_id,
        external_action_id=request.external_action_id,
        external_response=request.external_response
    )


@router.post(
    "/recommendations/{recommendation_id}/execution-failure",
    response_model=ExecutionResult,
    summary="Record Failed Execution"
)
async def record_execution_failure(
    recommendation_id: UUID,
    request: ExecutionFailureRequest,
    actor: Actor = Depends(require_actor),
    service: WriteBackService = Depends(get_writeback_service)
) -> ExecutionResult:
    return await service.record_execution_failure(
        recommendation_id,
        request.approval_id,
        request.error_message,
        executed_by=actor.user_id,
        execution_status=request.execution_status,
        external_action_id=request.external_action_id,
        external_response=request.external_response
    )


@router.post(
    "/recommendations/{recommendation_id}/outcome",
    response_model=AuditEntry,
    summary="Record Outcome"
)
async def record_outcome(
    recommendation_id: UUID,
    request: OutcomeRequest,
    actor: Actor = Depends(require_actor),
    service: WriteBackService = Depends(get_writeback_service)
) -> AuditEntry:
    return await service.record_outcome(
        recommendation_id,
        request.outcome,
        actor_id=actor.user_id,
        actor_role=actor.role,
        description=request.description
    )


@router.get(
    "/{clinic_id}/audit",
    response_model=List[AuditEntry],
    summary="Approval History",
    description="Clinic audit trail, newest first"
)
async def get_audit_history(
    clinic_id: UUID,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    service: WriteBackService = Depends(get_writeback_service)
) -> List[AuditEntry]:
    return await service.get_history(clinic_id, limit)


@router.get(
    "/{clinic_id}/permissions/check",
    response_model=PermissionCheckResponse,
    summary="Check Approval Rights"
)
async def check_permission(
    clinic_id: UUID,
    recommendation_type: RecommendationTypeEnum = Query(...),
    actor: Actor = Depends(require_actor),
    service: WriteBackService = Depends(get_writeback_service)
) -> PermissionCheckResponse:
    return PermissionCheckResponse(
        user_id=actor.user_id,
        clinic_id=clinic_id,
        recommendation_type=recommendation_type,
        can_approve=await service.can_approve(actor.user_id, clinic_id, recommendation_type),
    )
