"""Write-back recommendation lifecycle.

A recommendation is saved pending, decided exactly once by a human, and
executed only after approval. Every state change is written together with
its audit entry in one transaction.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
import inspect
import secrets
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Set,
    Tuple
)
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from scheduling_intel.core.config import Settings, get_settings
from scheduling_intel.core.exceptions import (
    ApprovalBlockedError,
    ApprovalNotFoundError,
    DecisionConflictError,
    ExecutionPreconditionError,
    RecommendationNotFoundError,
    RecordStoreError,
    SchedulingIntelError
)
from scheduling_intel.models.scheduling import AppointmentStatusEnum, InsightTypeEnum
from scheduling_intel.models.writeback import (
    ApprovalDecisionEnum,
    AuditEventTypeEnum,
    ExecutionStatusEnum,
    RecommendationTypeEnum,
    SchedulerApproval,
    SchedulerExecutionLog,
    SchedulerRecommendation
)
from scheduling_intel.schemas.scheduling import ScheduleIntelligence, SchedulerAppointment
from scheduling_intel.schemas.writeback import (
    AuditEntry,
    ExecutionResult,
    WriteBackApproval,
    WriteBackRecommendation
)
from scheduling_intel.services.audit_service import AuditLog
from scheduling_intel.services.authorization_service import AuthorizationChecker
from scheduling_intel.services.policy import ConfidencePolicy, default_policy
from scheduling_intel.services.recommendation_builder import RecommendationBuilder
from scheduling_intel.utils.datetime_utils import ensure_utc, utcnow

logger = structlog.get_logger(__name__)

# Prometheus metrics
RECOMMENDATIONS_GENERATED = Counter(
    'scheduler_recommendations_generated_total',
    'Write-back recommendations saved',
    ['recommendation_type']
)
POLICY_MISSES = Counter(
    'scheduler_policy_misses_total',
    'Insights that stayed informational',
    ['reason']
)
APPROVAL_DECISIONS = Counter(
    'scheduler_approval_decisions_total',
    'Recorded approval decisions',
    ['decision']
)
EXECUTIONS = Counter(
    'scheduler_executions_total',
    'Recorded write-back executions',
    ['execution_status']
)

FreshnessRule = Callable[[SchedulerRecommendation, datetime], bool]
InsertListener = Callable[[WriteBackRecommendation], Any]


def always_fresh(recommendation: SchedulerRecommendation, now: datetime) -> bool:
    return True


def not_expired(recommendation: SchedulerRecommendation, now: datetime) -> bool:
    return ensure_utc(recommendation.expires_at) > now


def freshness_rule_from_settings(settings: Optional[Settings] = None) -> FreshnessRule:
    settings = settings or get_settings()
    return not_expired if settings.writeback.ENFORCE_EXPIRY_FRESHNESS else always_fresh


class RecommendationStore:
    """Persistence for recommendations. Only the decision and execution flags mutate"""

    def __init__(self, session: AsyncSession, ttl_hours: Optional[int] = None):
        self.session = session
        self.ttl = timedelta(hours=ttl_hours or get_settings().writeback.RECOMMENDATION_TTL_HOURS)

    async def save(self, recommendation: WriteBackRecommendation) -> WriteBackRecommendation:
        """Insert a built recommendation; returns it with id and timestamps"""
        if recommendation.id is not None:
            raise ValueError("Recommendation is already saved")

        created_at = recommendation.created_at or utcnow()
        row = SchedulerRecommendation(
            clinic_id=recommendation.clinic_id,
            appointment_id=recommendation.appointment_id,
            insight_id=recommendation.insight_id,
            recommendation_type=recommendation.recommendation_type.value,
            confidence_score=recommendation.confidence_score,
            required_threshold=recommendation.required_threshold,
            title=recommendation.title,
            description=recommendation.description,
            rationale=recommendation.rationale,
            expected_impact=recommendation.expected_impact,
            proposed_action=recommendation.proposed_action.model_dump(mode="json"),
            created_by=recommendation.created_by,
            created_at=created_at,
            expires_at=recommendation.expires_at or created_at + self.ttl,
        )

        try:
            self.session.add(row)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Error saving recommendation",
                insight_id=recommendation.insight_id,
                error=str(e),
                exc_info=True
            )
            raise RecordStoreError("Recommendation save failed", {"insight_id": recommendation.insight_id}) from e

        logger.info(
            "Recommendation saved",
            recommendation_id=str(row.id),
            recommendation_type=row.recommendation_type
        )
        return WriteBackRecommendation.model_validate(row)

    async def get_row(self, recommendation_id: UUID) -> SchedulerRecommendation:
        try:
            result = await self.session.execute(
                select(SchedulerRecommendation).where(SchedulerRecommendation.id == recommendation_id)
            )
        except SQLAlchemyError as e:
            logger.error("Error fetching recommendation", recommendation_id=str(recommendation_id), error=str(e))
            raise RecordStoreError("Recommendation fetch failed", {"recommendation_id": str(recommendation_id)}) from e

        row = result.scalar_one_or_none()
        if row is None:
            raise RecommendationNotFoundError(recommendation_id)
        return row

    async def get(self, recommendation_id: UUID) -> WriteBackRecommendation:
        return WriteBackRecommendation.model_validate(await self.get_row(recommendation_id))

    async def get_pending(self, clinic_id: UUID, now: Optional[datetime] = None) -> List[WriteBackRecommendation]:
        """Undecided, unexpired recommendations for a clinic, newest first"""
        query = (
            select(SchedulerRecommendation)
            .where(
                SchedulerRecommendation.clinic_id == clinic_id,
                SchedulerRecommendation.is_approved.is_(None),
                SchedulerRecommendation.expires_at > (now or utcnow())
            )
            .order_by(SchedulerRecommendation.created_at.desc())
        )
        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            logger.error("Error fetching pending recommendations", clinic_id=str(clinic_id), error=str(e))
            raise RecordStoreError("Pending recommendations fetch failed", {"clinic_id": str(clinic_id)}) from e

        return [WriteBackRecommendation.model_validate(row) for row in result.scalars().all()]

    async def get_pending_keys(
        self,
        clinic_id: UUID,
        now: Optional[datetime] = None
    ) -> Set[Tuple[str, UUID]]:
        """(insight id, subject appointment id) of every pending recommendation.

        Overbooking and underutilization insight ids carry no date, so the
        appointment is what tells one day's pending proposal from another's.
        """
        return {
            (rec.insight_id, rec.appointment_id)
            for rec in await self.get_pending(clinic_id, now)
            if rec.insight_id
        }

    async def mark_executed(self, recommendation_id: UUID) -> None:
        try:
            result = await self.session.execute(
                update(SchedulerRecommendation)
                .where(
                    SchedulerRecommendation.id == recommendation_id,
                    SchedulerRecommendation.is_approved.is_(True)
                )
                .values(is_executed=True)
                .execution_options(synchronize_session="evaluate")
            )
        except SQLAlchemyError as e:
            logger.error("Error marking recommendation executed", recommendation_id=str(recommendation_id), error=str(e))
            raise RecordStoreError("Recommendation update failed", {"recommendation_id": str(recommendation_id)}) from e

        if result.rowcount == 0:
            raise ExecutionPreconditionError(
                "Only approved recommendations can be executed",
                {"recommendation_id": str(recommendation_id)}
            )


class ApprovalWorkflow:
    """pending -> approved | rejected, decided exactly once"""

    def __init__(
        self,
        session: AsyncSession,
        store: RecommendationStore,
        authorizer: AuthorizationChecker,
        audit: AuditLog,
        freshness_rule: Optional[FreshnessRule] = None,
        block_failed_checks: Optional[bool] = None
    ):
        settings = get_settings()
        self.session = session
        self.store = store
        self.authorizer = authorizer
        self.audit = audit
        self.freshness_rule = freshness_rule or freshness_rule_from_settings(settings)
        self.block_failed_checks = (
            settings.writeback.BLOCK_FAILED_CHECK_APPROVALS
            if block_failed_checks is None else block_failed_checks
        )

    async def decide(
        self,
        recommendation_id: UUID,
        approver_id: UUID,
        decision: ApprovalDecisionEnum,
        note: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> WriteBackApproval:
        """Record a decision with its checks and its audit entry.

        The checks are recorded whatever their outcome. The recommendation's
        stored confidence and threshold are authoritative; nothing is
        re-derived from a live insight.

        Raises:
            RecommendationNotFoundError: unknown recommendation
            DecisionConflictError: already decided, or decided concurrently
            ApprovalBlockedError: blocking is enabled and an approve has a failed check
        """
        decision = ApprovalDecisionEnum(decision)
        now = now or utcnow()

        recommendation = await self.store.get_row(recommendation_id)
        if recommendation.is_approved is not None:
            raise DecisionConflictError(
                "Recommendation has already been decided",
                {"recommendation_id": str(recommendation_id), "is_approved": recommendation.is_approved}
            )
        expected_version = recommendation.version
        recommendation_type = RecommendationTypeEnum(recommendation.recommendation_type)

        approver_role = await self.authorizer.get_user_role(approver_id)
        role_authorized = await self.authorizer.can_approve(approver_id, recommendation.clinic_id, recommendation_type)
        confidence_check_passed = recommendation.confidence_score >= recommendation.required_threshold
        data_freshness_check = bool(self.freshness_rule(recommendation, now))

        checks_passed = role_authorized and confidence_check_passed and data_freshness_check
        if self.block_failed_checks and decision == ApprovalDecisionEnum.APPROVED and not checks_passed:
            logger.warning(
                "Approval blocked by failed checks",
                recommendation_id=str(recommendation_id),
                role_authorized=role_authorized,
                confidence_check_passed=confidence_check_passed,
                data_freshness_check=data_freshness_check
            )
            raise ApprovalBlockedError(
                "Approval requires all decision-time checks to pass",
                {
                    "recommendation_id": str(recommendation_id),
                    "role_authorized": role_authorized,
                    "confidence_check_passed": confidence_check_passed,
                    "data_freshness_check": data_freshness_check,
                }
            )

        is_approved = decision == ApprovalDecisionEnum.APPROVED

        # Compare-and-swap: exactly one decision wins
        try:
            result = await self.session.execute(
                update(SchedulerRecommendation)
                .where(
                    SchedulerRecommendation.id == recommendation_id,
                    SchedulerRecommendation.is_approved.is_(None),
                    SchedulerRecommendation.version == expected_version
                )
                .values(is_approved=is_approved, version=expected_version + 1)
                .execution_options(synchronize_session="evaluate")
            )
        except SQLAlchemyError as e:
            logger.error("Error updating recommendation decision", recommendation_id=str(recommendation_id), error=str(e))
            raise RecordStoreError("Decision update failed", {"recommendation_id": str(recommendation_id)}) from e

        if result.rowcount == 0:
            logger.warning("Lost decision race", recommendation_id=str(recommendation_id), version=expected_version)
            raise DecisionConflictError(
                "Recommendation was decided concurrently",
                {"recommendation_id": str(recommendation_id), "version": expected_version}
            )

        approval = SchedulerApproval(
            recommendation_id=recommendation_id,
            clinic_id=recommendation.clinic_id,
            approver_id=approver_id,
            approver_role=approver_role or "unknown",
            decision=decision.value,
            approval_note=note,
            confidence_check_passed=confidence_check_passed,
            role_authorized=role_authorized,
            data_freshness_check=data_freshness_check,
            approved_at=now,
        )
        try:
            self.session.add(approval)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Error saving approval", recommendation_id=str(recommendation_id), error=str(e), exc_info=True)
            raise RecordStoreError("Approval save failed", {"recommendation_id": str(recommendation_id)}) from e

        await self.audit.record(
            AuditEventTypeEnum.APPROVAL_GRANTED if is_approved else AuditEventTypeEnum.APPROVAL_DENIED,
            clinic_id=recommendation.clinic_id,
            description=f"{recommendation.title} {decision.value}" + (f": {note}" if note else ""),
            actor_id=approver_id,
            actor_role=approver_role,
            recommendation_id=recommendation_id,
            approval_id=approval.id,
            ai_confidence=recommendation.confidence_score,
            outcome={
                "decision": decision.value,
                "confidence_check_passed": confidence_check_passed,
                "role_authorized": role_authorized,
                "data_freshness_check": data_freshness_check,
            },
        )

        logger.info(
            "Recommendation decided",
            recommendation_id=str(recommendation_id),
            decision=decision.value,
            checks_passed=checks_passed
        )
        return WriteBackApproval.model_validate(approval)


class ExecutionRecorder:
    """Logs pushes of approved recommendations to the system of record"""

    def __init__(self, session: AsyncSession, store: RecommendationStore, audit: AuditLog):
        self.session = session
        self.store = store
        self.audit = audit

    async def _insert(self, **values: Any) -> SchedulerExecutionLog:
        entry = SchedulerExecutionLog(**values)
        try:
            self.session.add(entry)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Error saving execution log", recommendation_id=str(values.get("recommendation_id")), error=str(e))
            raise RecordStoreError("Execution log save failed", {"recommendation_id": str(values.get("recommendation_id"))}) from e
        return entry

    async def execute(
        self,
        approval_id: UUID,
        recommendation_id: UUID,
        clinic_id: UUID,
        executed_by: Optional[UUID],
        external_action_id: Optional[str],
        external_response: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        """Record a successful push. Caller must hold an approved decision"""
        entry = await self._insert(
            approval_id=approval_id,
            recommendation_id=recommendation_id,
            clinic_id=clinic_id,
            external_action_id=external_action_id,
            execution_status=ExecutionStatusEnum.SUCCESS.value,
            external_response=external_response or {},
            executed_by=executed_by,
        )
        await self.store.mark_executed(recommendation_id)

        await self.audit.record(
            AuditEventTypeEnum.EXECUTION_COMPLETED,
            clinic_id=clinic_id,
            description=f"Write-back executed as {external_action_id}",
            actor_id=executed_by,
            recommendation_id=recommendation_id,
            approval_id=approval_id,
            execution_id=entry.id,
            outcome={"external_action_id": external_action_id},
        )

        logger.info(
            "Write-back executed",
            recommendation_id=str(recommendation_id),
            external_action_id=external_action_id
        )
        return ExecutionResult(
            success=True,
            execution_id=entry.id,
            recommendation_id=recommendation_id,
            approval_id=approval_id,
            execution_status=ExecutionStatusEnum.SUCCESS,
            external_action_id=external_action_id,
            executed_at=entry.executed_at,
        )

    async def record_failure(
        self,
        approval_id: UUID,
        recommendation_id: UUID,
        clinic_id: UUID,
        executed_by: Optional[UUID],
        error_message: str,
        execution_status: ExecutionStatusEnum = ExecutionStatusEnum.FAILED,
        external_action_id: Optional[str] = None,
        external_response: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        """Record a failed or rolled-back push. Nothing is retried"""
        execution_status = ExecutionStatusEnum(execution_status)
        if execution_status == ExecutionStatusEnum.SUCCESS:
            raise ValueError("Use execute() to record a successful push")

        entry = await self._insert(
            approval_id=approval_id,
            recommendation_id=recommendation_id,
            clinic_id=clinic_id,
            external_action_id=external_action_id,
            execution_status=execution_status.value,
            external_response=external_response or {},
            error_message=error_message,
            executed_by=executed_by,
        )

        await self.audit.record(
            AuditEventTypeEnum.EXECUTION_FAILED,
            clinic_id=clinic_id,
            description=f"Write-back {execution_status.value}: {error_message}",
            actor_id=executed_by,
            recommendation_id=recommendation_id,
            approval_id=approval_id,
            execution_id=entry.id,
            outcome={"execution_status": execution_status.value, "error_message": error_message},
        )

        logger.warning(
            "Write-back failed",
            recommendation_id=str(recommendation_id),
            execution_status=execution_status.value,
            error=error_message
        )
        return ExecutionResult(
            success=False,
            execution_id=entry.id,
            recommendation_id=recommendation_id,
            approval_id=approval_id,
            execution_status=execution_status,
            external_action_id=external_action_id,
            error_message=error_message,
            executed_at=entry.executed_at,
        )


class RecommendationNotifier:
    """In-process insert notifications keyed by clinic"""

    def __init__(self):
        self._listeners: Dict[UUID, List[InsertListener]] = {}

    def subscribe(self, clinic_id: UUID, on_insert: InsertListener) -> Callable[[], None]:
        self._listeners.setdefault(clinic_id, []).append(on_insert)

        def unsubscribe() -> None:
            listeners = self._listeners.get(clinic_id, [])
            if on_insert in listeners:
                listeners.remove(on_insert)
            if not listeners:
                self._listeners.pop(clinic_id, None)

        return unsubscribe

    def listener_count(self, clinic_id: UUID) -> int:
        return len(self._listeners.get(clinic_id, []))

    async def publish(self, recommendation: WriteBackRecommendation) -> None:
        for listener in list(self._listeners.get(recommendation.clinic_id, [])):
            try:
                result = listener(recommendation)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # A listener failure never undoes a committed insert
                logger.error(
                    "Recommendation listener failed",
                    recommendation_id=str(recommendation.id),
                    error=str(e),
                    exc_info=True
                )


recommendation_notifier = RecommendationNotifier()


class WriteBackService:
    """Facade over the write-back lifecycle; one instance per unit of work"""

    def __init__(
        self,
        session: AsyncSession,
        policy: Optional[ConfidencePolicy] = None,
        settings: Optional[Settings] = None,
        freshness_rule: Optional[FreshnessRule] = None,
        notifier: Optional[RecommendationNotifier] = None
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.policy = policy or default_policy
        self.builder = RecommendationBuilder(self.policy)
        self.store = RecommendationStore(session, self.settings.writeback.RECOMMENDATION_TTL_HOURS)
        self.audit = AuditLog(session)
        self.authorizer = AuthorizationChecker(session)
        self.workflow = ApprovalWorkflow(
            session,
            self.store,
            self.authorizer,
            self.audit,
            freshness_rule=freshness_rule or freshness_rule_from_settings(self.settings),
            block_failed_checks=self.settings.writeback.BLOCK_FAILED_CHECK_APPROVALS
        )
        self.recorder = ExecutionRecorder(session, self.store, self.audit)
        self.notifier = notifier or recommendation_notifier

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[None]:
        """Commit the step with its audit entries, or roll all of it back"""
        try:
            yield
            await self.session.commit()
        except (SchedulingIntelError, SQLAlchemyError):
            await self.session.rollback()
            raise

    @staticmethod
    def _subject_appointment(
        insight: ScheduleIntelligence,
        by_id: Dict[UUID, SchedulerAppointment],
        appointments: Sequence[SchedulerAppointment]
    ) -> Optional[SchedulerAppointment]:
        """Appointment a proposed action targets"""
        if insight.appointment_id is not None:
            return by_id.get(insight.appointment_id)

        if insight.type == InsightTypeEnum.OVERBOOKING:
            for appointment_id in insight.metadata.get("affected_appointment_ids", []):
                appointment = by_id.get(UUID(str(appointment_id)))
                if appointment is not None:
                    return appointment
            return None

        if insight.type == InsightTypeEnum.CAPACITY_GAP:
            start_id = insight.metadata.get("start_appointment_id")
            return by_id.get(UUID(str(start_id))) if start_id else None

        if insight.provider_id is not None:
            booked = sorted(
                (a for a in appointments if a.provider_id == insight.provider_id),
                key=lambda a: a.start_time
            )
            return booked[0] if booked else None

        return None

    def _miss_reason(self, insight: ScheduleIntelligence) -> str:
        if self.policy.map_insight_to_action_type(insight.type) is None:
            return "no_mapping"
        return "below_threshold"

    async def _save_with_audit(
        self,
        recommendation: WriteBackRecommendation,
        actor_id: Optional[UUID]
    ) -> WriteBackRecommendation:
        saved = await self.store.save(recommendation)
        await self.audit.record(
            AuditEventTypeEnum.RECOMMENDATION_GENERATED,
            clinic_id=saved.clinic_id,
            description=f"{saved.title}: {saved.proposed_action.instruction}",
            actor_id=actor_id,
            recommendation_id=saved.id,
            ai_confidence=saved.confidence_score,
            outcome={
                "recommendation_type": saved.recommendation_type.value,
                "required_threshold": saved.required_threshold,
                "insight_id": saved.insight_id,
            },
        )
        RECOMMENDATIONS_GENERATED.labels(recommendation_type=saved.recommendation_type.value).inc()
        return saved

    async def generate_recommendations(
        self,
        clinic_id: UUID,
        appointments: Sequence[SchedulerAppointment],
        insights: Sequence[ScheduleIntelligence],
        actor_id: Optional[UUID] = None
    ) -> List[WriteBackRecommendation]:
        """Save a recommendation for every promotable insight.

        Insights that already have a pending recommendation for the same
        subject appointment are skipped, so regenerating for the same day
        does not queue duplicates.
        """
        clinic_appointments = [a for a in appointments if a.clinic_id == clinic_id]
        by_id = {a.id: a for a in clinic_appointments}
        saved: List[WriteBackRecommendation] = []

        async with self._unit_of_work():
            already_pending = await self.store.get_pending_keys(clinic_id)

            for insight in insights:
                subject = self._subject_appointment(insight, by_id, clinic_appointments)
                if subject is None:
                    POLICY_MISSES.labels(reason="no_subject_appointment").inc()
                    logger.debug("No subject appointment for insight", insight_id=insight.id)
                    continue

                if (insight.id, subject.id) in already_pending:
                    logger.debug(
                        "Insight already has a pending recommendation",
                        insight_id=insight.id,
                        appointment_id=str(subject.id)
                    )
                    continue

                recommendation = self.builder.build(insight, subject, actor_id)
                if recommendation is None:
                    POLICY_MISSES.labels(reason=self._miss_reason(insight)).inc()
                    continue

                saved.append(await self._save_with_audit(recommendation, actor_id))

        for recommendation in saved:
            await self.notifier.publish(recommendation)

        logger.info(
            "Recommendations generated",
            clinic_id=str(clinic_id),
            insights_evaluated=len(insights),
            recommendations=len(saved)
        )
        return saved

    async def save_recommendation(
        self,
        recommendation: WriteBackRecommendation,
        actor_id: Optional[UUID] = None
    ) -> WriteBackRecommendation:
        """Save one built recommendation with its generated audit entry"""
        async with self._unit_of_work():
            saved = await self._save_with_audit(recommendation, actor_id)
        await self.notifier.publish(saved)
        return saved

    async def propose_status_update(
        self,
        appointment: SchedulerAppointment,
        target_status: AppointmentStatusEnum,
        confidence: float,
        actor_id: Optional[UUID] = None
    ) -> Optional[WriteBackRecommendation]:
        recommendation = self.builder.build_status_update(appointment, target_status, confidence, actor_id)
        if recommendation is None:
            POLICY_MISSES.labels(reason="below_threshold").inc()
            return None
        return await self.save_recommendation(recommendation, actor_id)

    async def get_pending(self, clinic_id: UUID) -> List[WriteBackRecommendation]:
        return await self.store.get_pending(clinic_id)

    async def get_recommendation(self, recommendation_id: UUID) -> WriteBackRecommendation:
        return await self.store.get(recommendation_id)

    async def request_approval(
        self,
        recommendation_id: UUID,
        actor_id: Optional[UUID] = None,
        actor_role: Optional[str] = None
    ) -> AuditEntry:
        async with self._unit_of_work():
            recommendation = await self.store.get_row(recommendation_id)
            if recommendation.is_approved is not None:
                raise DecisionConflictError(
                    "Recommendation has already been decided",
                    {"recommendation_id": str(recommendation_id)}
                )
            entry = await self.audit.record(
                AuditEventTypeEnum.APPROVAL_REQUESTED,
                clinic_id=recommendation.clinic_id,
                description=f"Approval requested for {recommendation.title}",
                actor_id=actor_id,
                actor_role=actor_role,
                recommendation_id=recommendation_id,
                ai_confidence=recommendation.confidence_score,
            )
        return entry

    async def decide(
        self,
        recommendation_id: UUID,
        approver_id: UUID,
        decision: ApprovalDecisionEnum,
        note: Optional[str] = None
    ) -> WriteBackApproval:
        async with self._unit_of_work():
            approval = await self.workflow.decide(recommendation_id, approver_id, decision, note)
        APPROVAL_DECISIONS.labels(decision=approval.decision.value).inc()
        return approval

    async def _get_approval(self, approval_id: UUID) -> SchedulerApproval:
        try:
            result = await self.session.execute(
                select(SchedulerApproval).where(SchedulerApproval.id == approval_id)
            )
        except SQLAlchemyError as e:
            logger.error("Error fetching approval", approval_id=str(approval_id), error=str(e))
            raise RecordStoreError("Approval fetch failed", {"approval_id": str(approval_id)}) from e

        approval = result.scalar_one_or_none()
        if approval is None:
            raise ApprovalNotFoundError(approval_id)
        return approval

    def new_external_action_id(self) -> str:
        """Synthetic id standing in for the practice system's action reference"""
        return f"{self.settings.writeback.EXTERNAL_ACTION_PREFIX}_{secrets.token_hex(8)}"

    async def execute_approved(
        self,
        approval_id: UUID,
        executed_by: Optional[UUID] = None,
        external_action_id: Optional[str] = None,
        external_response: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        """Execute a recommendation under an approved decision"""
        async with self._unit_of_work():
            approval = await self._get_approval(approval_id)
            if approval.decision != ApprovalDecisionEnum.APPROVED.value:
                raise ExecutionPreconditionError(
                    "Approval decision is not approved",
                    {"approval_id": str(approval_id), "decision": approval.decision}
                )

            recommendation = await self.store.get_row(approval.recommendation_id)
            if recommendation.is_executed:
                raise ExecutionPreconditionError(
                    "Recommendation has already been executed",
                    {"recommendation_id": str(recommendation.id)}
                )

            result = await self.recorder.execute(
                approval_id=approval.id,
                recommendation_id=recommendation.id,
                clinic_id=recommendation.clinic_id,
                executed_by=executed_by,
                external_action_id=external_action_id or self.new_external_action_id(),
                external_response=external_response,
            )

        EXECUTIONS.labels(execution_status=result.execution_status.value).inc()
        return result

    async def record_execution_failure(
        self,
        recommendation_id: UUID,
        approval_id: UUID,
        error_message: str,
        executed_by: Optional[UUID] = None,
        execution_status: ExecutionStatusEnum = ExecutionStatusEnum.FAILED,
        external_action_id: Optional[str] = None,
        external_response: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        async with self._unit_of_work():
            approval = await self._get_approval(approval_id)
            if approval.recommendation_id != recommendation_id:
                raise ExecutionPreconditionError(
                    "Approval does not belong to this recommendation",
                    {"approval_id": str(approval_id), "recommendation_id": str(recommendation_id)}
                )
            if approval.decision != ApprovalDecisionEnum.APPROVED.value:
                raise ExecutionPreconditionError(
                    "Approval decision is not approved",
                    {"approval_id": str(approval_id), "decision": approval.decision}
                )

            result = await self.recorder.record_failure(
                approval_id=approval_id,
                recommendation_id=recommendation_id,
                clinic_id=approval.clinic_id,
                executed_by=executed_by,
                error_message=error_message,
                execution_status=execution_status,
                external_action_id=external_action_id,
                external_response=external_response,
            )

        EXECUTIONS.labels(execution_status=result.execution_status.value).inc()
        return result

    async def record_outcome(
        self,
        recommendation_id: UUID,
        outcome: Dict[str, Any],
        actor_id: Optional[UUID] = None,
        actor_role: Optional[str] = None,
        description: Optional[str] = None
    ) -> AuditEntry:
        async with self._unit_of_work():
            recommendation = await self.store.get_row(recommendation_id)
            entry = await self.audit.record(
                AuditEventTypeEnum.OUTCOME_RECORDED,
                clinic_id=recommendation.clinic_id,
                description=description or f"Outcome recorded for {recommendation.title}",
                actor_id=actor_id,
                actor_role=actor_role,
                recommendation_id=recommendation_id,
                ai_confidence=recommendation.confidence_score,
                outcome=outcome,
            )
        return entry

    async def get_history(self, clinic_id: UUID, limit: Optional[int] = None) -> List[AuditEntry]:
        return await self.audit.get_history(clinic_id, limit)

    async def can_approve(
        self,
        user_id: UUID,
        clinic_id: UUID,
        recommendation_type: RecommendationTypeEnum
    ) -> bool:
        return await self.authorizer.can_approve(user_id, clinic_id, recommendation_type)

    def subscribe(self, clinic_id: UUID, on_insert: InsertListener) -> Callable[[], None]:
        """Listen for newly saved recommendations; returns an unsubscribe callable"""
        return self.notifier.subscribe(clinic_id, on_insert)


__all__ = [
    "always_fresh",
    "not_expired",
    "freshness_rule_from_settings",
    "RecommendationStore",
    "ApprovalWorkflow",
    "ExecutionRecorder",
    "RecommendationNotifier",
    "recommendation_notifier",
    "WriteBackService"
]
