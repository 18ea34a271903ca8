# ==== ESCALATION ACTION EXECUTOR ==== #

"""
Escalation action executor for casewatch.

Records escalations and SLA warnings for a case stage occurrence, performs
the rule's auto-actions and fans out notifications.

A raise is one unit of work: re-check, append the ``escalated`` timeline
event, run auto-actions, insert the escalation row. Each auto-action runs in
its own SAVEPOINT so a failing reassignment or priority change is rolled back
alone while the escalation itself still commits. Notifications are enqueued
only after the commit.

Concurrent evaluators are kept apart by the database: a partial unique index
allows one unresolved escalation per (case, stage occurrence, level) and the
timeline's (case, sequence) constraint serialises appends. A constraint
violation triggers a retry whose re-check finds the other writer's work and
turns the raise into a no-op.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from casewatch.business.errors import (
    AutoActionFailure,
    DuplicateEscalationConflict,
    EscalationAlreadyResolvedError,
    EscalationEngineError,
    EscalationNotFoundError,
    NotificationEnqueueFailure,
)
from casewatch.business.lifecycle import (
    LEVEL_LABELS,
    PRIORITY_RANK,
    Actor,
    EventType,
    format_minutes,
)
from casewatch.observability.logging import get_logger, log_business_event
from casewatch.observability.metrics import (
    auto_action_failures_total,
    escalation_duplicates_suppressed_total,
    escalations_raised_total,
    escalations_resolved_total,
    notification_enqueue_failures_total,
    sla_warnings_total,
)
from casewatch.observability.tracing import get_tracer
from casewatch.services.business_clock import BusinessCalendar, as_naive_utc
from casewatch.services.notifications import (
    NotificationQueue,
    NotificationTarget,
    OutboxNotificationQueue,
    escalation_payload,
    resolve_recipients,
)
from casewatch.services.rule_catalog import EscalationRuleCatalog
from casewatch.services.timeline_ledger import TimelineLedger
from casewatch.settings import settings
from casewatch.storage.db import SessionScope, get_session
from casewatch.storage.models import (
    CaseRecord,
    CaseUser,
    Escalation,
    EscalationRule,
    TimelineEvent,
    new_id,
    utcnow,
)


tracer = get_tracer(__name__)
logger = get_logger(__name__)

T = TypeVar("T")


class StageChanged(EscalationEngineError):
    """The case left the rule's stage between evaluation and execution."""


@dataclass
class RaiseResult:
    """Outcome of one escalation raise."""

    escalation: Optional[Escalation] = None
    duplicate: bool = False
    stage_changed: bool = False
    notification_ids: List[str] = field(default_factory=list)
    auto_action_errors: List[AutoActionFailure] = field(default_factory=list)
    notification_errors: List[NotificationEnqueueFailure] = field(default_factory=list)

    @property
    def raised(self) -> bool:
        return self.escalation is not None


@dataclass
class _RecordedEscalation:
    escalation: Escalation
    case: CaseRecord
    recipients: List[NotificationTarget]
    auto_action_errors: List[AutoActionFailure]


# ==== EXECUTOR ==== #


class EscalationActionExecutor:
    """
    Sole writer of escalation records.

    Args:
        session_factory: Transactional session scope, one per unit of work
        notification_queue: Where notification requests are enqueued
        channel: Notification channel, defaults to settings
        max_attempts: Retries after a constraint violation
    """

    def __init__(
        self,
        session_factory: SessionScope = get_session,
        notification_queue: Optional[NotificationQueue] = None,
        channel: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.notification_queue = notification_queue or OutboxNotificationQueue(session_factory)
        self.channel = channel or settings.NOTIFICATION_CHANNEL
        self.max_attempts = max_attempts or settings.ESCALATION_RAISE_MAX_ATTEMPTS

    async def _run_unit(self, work: Callable[[AsyncSession], Awaitable[T]], operation: str) -> T:
        """Run ``work`` in a fresh transaction, retrying on constraint violations."""
        def before_retry(retry_state: RetryCallState) -> None:
            logger.info(
                "Concurrent write detected, re-checking",
                operation=operation,
                attempt=retry_state.attempt_number,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(IntegrityError),
            before_sleep=before_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                async with self._session_factory() as db:
                    result = await work(db)
        return result

    # --► RAISE

    async def raise_escalation(
        self,
        case: CaseRecord,
        rule: EscalationRule,
        level: int,
        overdue_minutes: int,
        reason: str,
        now: datetime,
        elapsed_minutes: Optional[int] = None,
    ) -> RaiseResult:
        """
        Record an escalation for the case's current stage occurrence.

        Args:
            case: Case to escalate
            rule: Governing rule
            level: Escalation level 1-3
            overdue_minutes: Minutes past the crossed threshold
            reason: Human readable reason
            now: Evaluation time
            elapsed_minutes: Business minutes in stage, recorded in metadata

        Returns:
            RaiseResult: Escalation, or the reason it was not raised, plus any
            auto-action and notification failures
        """
        level = int(level)
        if level not in (1, 2, 3):
            raise ValueError(f"Escalation level must be between 1 and 3, got {level}")
        now = as_naive_utc(now)

        with tracer.start_as_current_span("escalation.raise") as span:
            span.set_attribute("case_id", case.id)
            span.set_attribute("escalation_level", level)
            span.set_attribute("stage", rule.stage)

            async def work(db: AsyncSession) -> _RecordedEscalation:
                return await self._record_escalation(
                    db, case.id, rule, level, overdue_minutes, reason, now, elapsed_minutes
                )

            try:
                recorded = await self._run_unit(work, "raise_escalation")
            except DuplicateEscalationConflict:
                escalation_duplicates_suppressed_total.labels(stage=rule.stage).inc()
                logger.info(
                    "Escalation already recorded, skipping",
                    case_id=case.id,
                    escalation_level=level,
                    stage=rule.stage,
                )
                span.set_attribute("duplicate", True)
                return RaiseResult(duplicate=True)
            except StageChanged:
                logger.info("Case left stage before escalation", case_id=case.id, stage=rule.stage)
                return RaiseResult(stage_changed=True)

            escalation = recorded.escalation
            escalations_raised_total.labels(level=str(level), stage=escalation.stage).inc()
            span.set_attribute("escalation_id", escalation.id)

            for failure in recorded.auto_action_errors:
                auto_action_failures_total.labels(action=failure.action).inc()
                logger.error(
                    "Escalation auto-action failed",
                    case_id=case.id,
                    escalation_id=escalation.id,
                    action=failure.action,
                    error=failure.message,
                )

            log_business_event(
                "case_escalated",
                recorded.case.company_id,
                case_id=case.id,
                escalation_id=escalation.id,
                escalation_level=level,
                stage=escalation.stage,
                overdue=format_minutes(overdue_minutes),
            )

            result = RaiseResult(
                escalation=escalation,
                auto_action_errors=recorded.auto_action_errors,
            )
            await self._notify(recorded, rule, result)
            return result

    async def _record_escalation(
        self,
        db: AsyncSession,
        case_id: str,
        rule: EscalationRule,
        level: int,
        overdue_minutes: int,
        reason: str,
        now: datetime,
        elapsed_minutes: Optional[int],
    ) -> _RecordedEscalation:
        ledger = TimelineLedger(db)

        case = await db.get(CaseRecord, case_id)
        if case is None:
            raise EscalationEngineError(f"Case {case_id} not found", {"case_id": case_id})

        entry = await ledger.latest_stage_entry(case_id)
        if entry is not None:
            if entry.stage != rule.stage:
                raise StageChanged(f"Case {case_id} is in {entry.stage}, not {rule.stage}")
            existing = await ledger.occurrence_escalation_level(case_id, entry.occurrence_id)
            if existing >= level:
                raise DuplicateEscalationConflict(
                    f"Level {existing} already open for case {case_id}",
                    {"case_id": case_id, "existing_level": existing, "level": level},
                )

        calendar = await EscalationRuleCatalog(db).calendar_for(rule, case.company_id)
        recipients = await resolve_recipients(db, case, rule)
        notified_users = [t.user_id for t in recipients if t.user_id]
        notified_emails = [t.email for t in recipients if t.email]

        event = await ledger.append(
            case,
            EventType.ESCALATED,
            rule.stage,
            Actor.scheduler(),
            now,
            extra={
                "title": f"Escalated to {LEVEL_LABELS[level]}",
                "description": reason,
                "escalated_to": rule.escalation_to_user_id,
                "is_escalation": True,
                "escalation_level": level,
                "is_internal": True,
                "is_visible_to_reporter": False,
                "metadata": {
                    "rule_id": rule.id,
                    "rule_name": rule.name,
                    "threshold_minutes": _threshold_for(rule, level),
                    "overdue_minutes": overdue_minutes,
                    "elapsed_minutes": elapsed_minutes,
                    "notified_users": notified_users,
                    "notified_emails": notified_emails,
                },
            },
            calendar=calendar,
            rule=rule,
        )

        escalation = Escalation(
            id=new_id(),
            case_id=case.id,
            rule_id=rule.id,
            timeline_event_id=event.id,
            stage=event.stage,
            stage_occurrence_id=event.stage_occurrence_id,
            escalation_level=level,
            reason=reason,
            overdue_minutes=overdue_minutes,
            escalated_to=rule.escalation_to_user_id,
            notified_users=notified_users,
            notified_emails=notified_emails,
            created_at=now,
        )

        errors: List[AutoActionFailure] = []
        if rule.auto_reassign:
            await self._run_auto_action(
                db, case, errors, "reassign",
                self._reassign(db, ledger, case, rule, escalation, now, calendar),
            )
        if rule.auto_change_priority:
            await self._run_auto_action(
                db, case, errors, "change_priority",
                self._change_priority(db, ledger, case, rule, escalation, now, calendar),
            )

        db.add(escalation)
        await db.flush()

        return _RecordedEscalation(
            escalation=escalation,
            case=case,
            recipients=recipients,
            auto_action_errors=errors,
        )

    # --► AUTO-ACTIONS

    async def _run_auto_action(
        self,
        db: AsyncSession,
        case: CaseRecord,
        errors: List[AutoActionFailure],
        action: str,
        operation: Awaitable[None],
    ) -> None:
        """Run one auto-action inside a SAVEPOINT, collecting its failure."""
        try:
            async with db.begin_nested():
                await operation
        except AutoActionFailure as e:
            errors.append(e)
        except SQLAlchemyError as e:
            errors.append(AutoActionFailure(action, f"{type(e).__name__}: {e}"))
        else:
            return

        # Values changed inside the rolled back savepoint are stale
        await db.refresh(case)

    async def _reassign(
        self,
        db: AsyncSession,
        ledger: TimelineLedger,
        case: CaseRecord,
        rule: EscalationRule,
        escalation: Escalation,
        now: datetime,
        calendar: BusinessCalendar,
    ) -> None:
        target_id = rule.reassign_to_user_id
        if not target_id:
            raise AutoActionFailure("reassign", "Rule has no reassignment target")

        target = await db.get(CaseUser, target_id)
        if target is None or not target.is_active:
            raise AutoActionFailure(
                "reassign",
                f"Reassignment target {target_id} is missing or inactive",
                {"user_id": target_id},
            )

        previous = case.assigned_to
        if previous == target_id:
            return

        case.assigned_to = target_id
        await ledger.append(
            case,
            EventType.REASSIGNED,
            rule.stage,
            Actor.scheduler(),
            now,
            extra={
                "title": "Case reassigned by escalation",
                "assigned_to": target_id,
                "is_internal": True,
                "changes": {"assigned_to": {"from": previous, "to": target_id}},
                "metadata": {"escalation_id": escalation.id, "rule_id": rule.id},
            },
            calendar=calendar,
        )

        escalation.was_reassigned = True
        escalation.reassigned_to = target_id

    async def _change_priority(
        self,
        db: AsyncSession,
        ledger: TimelineLedger,
        case: CaseRecord,
        rule: EscalationRule,
        escalation: Escalation,
        now: datetime,
        calendar: BusinessCalendar,
    ) -> None:
        new_priority = rule.new_priority
        if new_priority not in PRIORITY_RANK:
            raise AutoActionFailure(
                "change_priority",
                f"Unknown priority {new_priority!r}",
                {"new_priority": new_priority},
            )

        old_priority = case.priority
        if old_priority == new_priority:
            return

        case.priority = new_priority
        await ledger.append(
            case,
            EventType.PRIORITY_CHANGED,
            rule.stage,
            Actor.scheduler(),
            now,
            extra={
                "title": f"Priority changed to {new_priority}",
                "is_internal": True,
                "changes": {"priority": {"from": old_priority, "to": new_priority}},
                "metadata": {"escalation_id": escalation.id, "rule_id": rule.id},
            },
            calendar=calendar,
        )

        escalation.priority_changed = True
        escalation.old_priority = old_priority
        escalation.new_priority = new_priority

    # --► NOTIFICATIONS

    async def _notify(self, recorded: _RecordedEscalation, rule: EscalationRule, result: RaiseResult) -> None:
        escalation = recorded.escalation
        payload = escalation_payload(
            escalation.id,
            recorded.case,
            escalation.escalation_level,
            escalation.stage,
            escalation.reason,
            escalation.overdue_minutes,
            rule.name,
        )

        for target in recorded.recipients:
            try:
                notification_id = await self.notification_queue.enqueue(target, self.channel, payload)
            except Exception as e:
                failure = NotificationEnqueueFailure(
                    f"Could not enqueue notification: {e}",
                    {"user_id": target.user_id, "email": target.email},
                )
                result.notification_errors.append(failure)
                notification_enqueue_failures_total.labels(channel=self.channel).inc()
                logger.warning(
                    "Notification enqueue failed",
                    escalation_id=escalation.id,
                    user_id=target.user_id,
                    email=target.email,
                    error=str(e),
                )
            else:
                result.notification_ids.append(notification_id)

    # --► WARNINGS

    async def emit_warning(
        self,
        case: CaseRecord,
        rule: EscalationRule,
        now: datetime,
        elapsed_minutes: int,
    ) -> Optional[TimelineEvent]:
        """
        Append the ``sla_warning`` event for the current stage occurrence.

        Returns:
            Optional[TimelineEvent]: The event, or None when this occurrence
            was already warned, escalated or left
        """
        now = as_naive_utc(now)

        async def work(db: AsyncSession) -> Optional[TimelineEvent]:
            ledger = TimelineLedger(db)
            current = await db.get(CaseRecord, case.id)
            if current is None:
                raise EscalationEngineError(f"Case {case.id} not found", {"case_id": case.id})

            entry = await ledger.latest_stage_entry(case.id)
            if entry is not None:
                if entry.stage != rule.stage:
                    return None
                if await ledger.warning_emitted(case.id, entry.occurrence_id):
                    return None
                if await ledger.occurrence_escalation_level(case.id, entry.occurrence_id) > 0:
                    return None

            return await ledger.append(
                current,
                EventType.SLA_WARNING,
                rule.stage,
                Actor.scheduler(),
                now,
                extra={
                    "title": "SLA warning",
                    "description": (
                        f"Case in {rule.stage} stage for {elapsed_minutes} minutes. "
                        f"Warning threshold: {rule.warning_threshold} minutes."
                    ),
                    "is_internal": True,
                    "is_visible_to_reporter": False,
                    "metadata": {
                        "rule_id": rule.id,
                        "rule_name": rule.name,
                        "threshold_minutes": rule.warning_threshold,
                        "elapsed_minutes": elapsed_minutes,
                    },
                },
                rule=rule,
            )

        with tracer.start_as_current_span("escalation.warn") as span:
            span.set_attribute("case_id", case.id)
            event = await self._run_unit(work, "emit_warning")

        if event is not None:
            sla_warnings_total.labels(stage=rule.stage).inc()
            log_business_event(
                "sla_warning",
                case.company_id,
                case_id=case.id,
                stage=rule.stage,
                elapsed_minutes=elapsed_minutes,
            )
        return event

    # --► RESOLUTION

    async def resolve(
        self,
        escalation_id: str,
        resolved_by: str,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
        company_id: Optional[str] = None,
    ) -> Escalation:
        """
        Mark an escalation resolved. The case timeline is left untouched.

        Args:
            escalation_id: Escalation to resolve
            resolved_by: Resolving user id
            note: Optional resolution note
            now: Resolution time, defaults to the current time
            company_id: When given, escalations of other companies are not found

        Raises:
            EscalationNotFoundError: Unknown escalation id, or owned by another company
            EscalationAlreadyResolvedError: Escalation was resolved before
        """
        resolved_at = as_naive_utc(now) if now else utcnow()

        async with self._session_factory() as db:
            escalation = await db.get(Escalation, escalation_id)
            if escalation is None or (
                company_id is not None and not await _owned_by(db, escalation, company_id)
            ):
                raise EscalationNotFoundError(
                    f"Escalation {escalation_id} not found", {"escalation_id": escalation_id}
                )
            if escalation.is_resolved:
                raise EscalationAlreadyResolvedError(
                    f"Escalation {escalation_id} is already resolved",
                    {"escalation_id": escalation_id},
                )

            result = await db.execute(
                update(Escalation)
                .where(Escalation.id == escalation_id, Escalation.is_resolved.is_(False))
                .values(
                    is_resolved=True,
                    resolved_at=resolved_at,
                    resolved_by=resolved_by,
                    resolution_note=note,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise EscalationAlreadyResolvedError(
                    f"Escalation {escalation_id} is already resolved",
                    {"escalation_id": escalation_id},
                )
            await db.refresh(escalation)

        escalations_resolved_total.labels(resolver="operator").inc()
        logger.info(
            "Escalation resolved",
            escalation_id=escalation_id,
            case_id=escalation.case_id,
            resolved_by=resolved_by,
        )
        return escalation


async def _owned_by(db: AsyncSession, escalation: Escalation, company_id: str) -> bool:
    case = await db.get(CaseRecord, escalation.case_id)
    return case is not None and case.company_id == company_id


def _threshold_for(rule: EscalationRule, level: int) -> Any:
    if level == 3 and rule.critical_threshold is not None:
        return rule.critical_threshold
    return rule.escalation_threshold


# ==== GLOBAL EXECUTOR INSTANCE ==== #

_executor: Optional[EscalationActionExecutor] = None


def get_escalation_executor() -> EscalationActionExecutor:
    """Get the process-wide executor bound to the default session scope."""
    global _executor
    if _executor is None:
        _executor = EscalationActionExecutor()
    return _executor
