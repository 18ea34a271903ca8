# ==== TIMELINE LEDGER ==== #

"""
Append-only lifecycle ledger for cases.

Every case state change becomes one TimelineEvent carrying three derived
durations (since the previous event, within the current stage occurrence and
since the case was created) and the stage bookkeeping the evaluator reads
back: when the current stage occurrence started and which escalations are
still open in it.

Appends are ordered by a per-case ``sequence`` column that is unique together
with the case id. Two writers racing on the same case cannot both claim the
same sequence number; the loser gets an IntegrityError and the caller
retries the whole unit of work.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from casewatch.business.errors import TimelineOrderError
from casewatch.business.lifecycle import Actor, EventType, Stage, stage_for_status
from casewatch.observability.logging import get_logger
from casewatch.observability.metrics import escalations_resolved_total
from casewatch.observability.tracing import get_tracer
from casewatch.services.business_clock import (
    BusinessCalendar,
    add_business_minutes,
    as_naive_utc,
    elapsed_minutes,
)
from casewatch.services.rule_catalog import EscalationRuleCatalog
from casewatch.storage.models import (
    CaseRecord,
    Escalation,
    EscalationRule,
    TimelineEvent,
    new_id,
)


tracer = get_tracer(__name__)
logger = get_logger(__name__)

SYSTEM_RESOLVER = "system"

EXTRA_FIELDS = frozenset({
    "title",
    "description",
    "assigned_to",
    "escalated_to",
    "is_escalation",
    "escalation_level",
    "is_internal",
    "is_visible_to_reporter",
    "sla_breached",
    "metadata",
    "changes",
})


@dataclass(frozen=True)
class StageEntry:
    """Current stage occurrence of a case."""

    stage: str
    entered_at: datetime
    occurrence_id: str


@dataclass
class DurationSummary:
    case_id: str
    current_stage: Optional[str]
    total_minutes: int
    current_stage_minutes: int
    stage_minutes: Dict[str, int] = field(default_factory=dict)
    stage_occurrences: Dict[str, int] = field(default_factory=dict)
    event_count: int = 0
    escalation_count: int = 0
    unresolved_escalation_count: int = 0
    highest_escalation_level: int = 0


def _opened_at(case: CaseRecord, first_event_at: datetime) -> datetime:
    """Start of the case clock: creation, or the first event when that is earlier."""
    if case.created_at is None:
        return first_event_at
    return min(as_naive_utc(case.created_at), first_event_at)


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


# ==== LEDGER SERVICE ==== #


class TimelineLedger:
    """
    Case timeline reads and appends, bound to a session.

    The caller owns the transaction, so an append and the escalation it
    documents commit or roll back together.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # --► READS

    async def latest_event(self, case_id: str) -> Optional[TimelineEvent]:
        query = (
            select(TimelineEvent)
            .where(TimelineEvent.case_id == case_id)
            .order_by(TimelineEvent.sequence.desc())
            .limit(1)
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def first_event(self, case_id: str) -> Optional[TimelineEvent]:
        query = (
            select(TimelineEvent)
            .where(TimelineEvent.case_id == case_id)
            .order_by(TimelineEvent.sequence.asc())
            .limit(1)
        )
        result = await self.db.execute(query)
        return result.scalars().first()

    async def latest_stage_entry(self, case_id: str) -> Optional[StageEntry]:
        """
        Stage the case is in and when that stage occurrence began.

        Returns:
            Optional[StageEntry]: None when the case has no timeline yet
        """
        latest = await self.latest_event(case_id)
        if latest is None:
            return None
        return StageEntry(
            stage=latest.stage,
            entered_at=latest.stage_entered_at,
            occurrence_id=latest.stage_occurrence_id,
        )

    async def unresolved_escalation_level(self, case_id: str, stage: Any) -> int:
        """
        Highest unresolved escalation level in the current occurrence of ``stage``.

        Returns:
            int: Level 1-3, or 0 when nothing is open or the case has moved on
        """
        entry = await self.latest_stage_entry(case_id)
        if entry is None or entry.stage != _value(stage):
            return 0
        return await self.occurrence_escalation_level(case_id, entry.occurrence_id)

    async def occurrence_escalation_level(self, case_id: str, occurrence_id: str) -> int:
        query = select(func.max(Escalation.escalation_level)).where(
            Escalation.case_id == case_id,
            Escalation.stage_occurrence_id == occurrence_id,
            Escalation.is_resolved.is_(False),
        )
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def warning_emitted(self, case_id: str, occurrence_id: str) -> bool:
        query = select(func.count(TimelineEvent.id)).where(
            TimelineEvent.case_id == case_id,
            TimelineEvent.stage_occurrence_id == occurrence_id,
            TimelineEvent.event_type == EventType.SLA_WARNING.value,
        )
        result = await self.db.execute(query)
        return (result.scalar() or 0) > 0

    async def get_timeline(self, case_id: str, include_internal: bool = True) -> List[TimelineEvent]:
        """
        Events of a case in ledger order.

        Args:
            case_id: Case identifier
            include_internal: False hides internal events (reporter-facing views)
        """
        query = select(TimelineEvent).where(TimelineEvent.case_id == case_id)
        if not include_internal:
            query = query.where(TimelineEvent.is_internal.is_(False))
        query = query.order_by(TimelineEvent.sequence.asc())

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def escalations_for_case(self, case_id: str, unresolved_only: bool = False) -> List[Escalation]:
        query = select(Escalation).where(Escalation.case_id == case_id)
        if unresolved_only:
            query = query.where(Escalation.is_resolved.is_(False))
        query = query.order_by(Escalation.created_at.asc(), Escalation.escalation_level.asc())

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def duration_summary(self, case_id: str) -> DurationSummary:
        """
        Minutes spent per stage, summed over stage occurrences.

        Each occurrence contributes the ``duration_in_stage`` of its last
        recorded event.
        """
        events = await self.get_timeline(case_id)
        escalations = await self.escalations_for_case(case_id)

        occurrence_minutes: Dict[str, int] = {}
        occurrence_stage: Dict[str, str] = {}
        for event in events:
            occurrence_minutes[event.stage_occurrence_id] = event.duration_in_stage
            occurrence_stage[event.stage_occurrence_id] = event.stage

        stage_minutes: Dict[str, int] = {}
        stage_occurrences: Dict[str, int] = {}
        for occurrence_id, minutes in occurrence_minutes.items():
            stage = occurrence_stage[occurrence_id]
            stage_minutes[stage] = stage_minutes.get(stage, 0) + minutes
            stage_occurrences[stage] = stage_occurrences.get(stage, 0) + 1

        unresolved = [e for e in escalations if not e.is_resolved]
        last = events[-1] if events else None

        return DurationSummary(
            case_id=case_id,
            current_stage=last.stage if last else None,
            total_minutes=last.total_case_duration if last else 0,
            current_stage_minutes=last.duration_in_stage if last else 0,
            stage_minutes=stage_minutes,
            stage_occurrences=stage_occurrences,
            event_count=len(events),
            escalation_count=len(escalations),
            unresolved_escalation_count=len(unresolved),
            highest_escalation_level=max((e.escalation_level for e in unresolved), default=0),
        )

    # --► APPEND

    async def append(
        self,
        case: CaseRecord,
        event_type: Any,
        stage: Any,
        actor: Actor,
        at: datetime,
        extra: Optional[Mapping[str, Any]] = None,
        calendar: Optional[BusinessCalendar] = None,
        rule: Optional[EscalationRule] = None,
    ) -> TimelineEvent:
        """
        Append one event to a case timeline.

        Derives the event's durations from the previous event, opens a new
        stage occurrence when ``stage`` differs from the previous stage and
        resolves the escalations still open in the occurrence being left.

        Args:
            case: Case the event belongs to
            event_type: EventType or its value
            stage: Stage the case is in after this event
            actor: Who caused the event
            at: When it happened
            extra: Optional event fields (title, assigned_to, metadata, ...)
            calendar: Calendar for durations, defaults to the rule's calendar
                or wall-clock time
            rule: Governing rule, when known, for SLA deadline stamping

        Returns:
            TimelineEvent: The flushed event

        Raises:
            TimelineOrderError: When ``at`` precedes the latest event
            ValueError: On unknown event types, stages or extra fields
        """
        extra = dict(extra or {})
        unknown = set(extra) - EXTRA_FIELDS
        if unknown:
            raise ValueError(f"Unknown timeline event fields: {sorted(unknown)}")

        event_type_value = EventType(_value(event_type)).value
        stage_value = Stage(_value(stage)).value
        at = as_naive_utc(at)

        with tracer.start_as_current_span("timeline.append") as span:
            span.set_attribute("case_id", case.id)
            span.set_attribute("event_type", event_type_value)
            span.set_attribute("stage", stage_value)

            previous = await self.latest_event(case.id)
            if previous is not None and at < previous.event_at:
                raise TimelineOrderError(
                    f"Event at {at.isoformat()} precedes latest event of case {case.id}",
                    {"case_id": case.id, "latest_event_at": previous.event_at.isoformat()},
                )

            if calendar is None:
                if rule is not None:
                    calendar = await EscalationRuleCatalog(self.db).calendar_for(rule, case.company_id)
                else:
                    calendar = BusinessCalendar.always_open()

            event_id = new_id()
            previous_stage: Optional[str] = None

            if previous is None:
                sequence = 1
                opened_at = _opened_at(case, at)
                # Before its first event a case sits in its status stage since creation
                if stage_value == stage_for_status(case.status).value:
                    stage_entered_at = opened_at
                else:
                    stage_entered_at = at
                occurrence_id = event_id
                from_previous: Optional[int] = None
                in_stage = elapsed_minutes(stage_entered_at, at, calendar)
                total = elapsed_minutes(opened_at, at, calendar)
            else:
                sequence = previous.sequence + 1
                from_previous = elapsed_minutes(previous.event_at, at, calendar)

                first = await self.first_event(case.id)
                # The calendar may differ between appends, never let totals go backwards
                total = max(
                    elapsed_minutes(_opened_at(case, first.event_at), at, calendar),
                    previous.total_case_duration,
                )

                if previous.stage != stage_value:
                    previous_stage = previous.stage
                    stage_entered_at = at
                    occurrence_id = event_id
                    in_stage = 0
                else:
                    stage_entered_at = previous.stage_entered_at
                    occurrence_id = previous.stage_occurrence_id
                    in_stage = max(
                        elapsed_minutes(stage_entered_at, at, calendar),
                        previous.duration_in_stage,
                    )

            sla_fields: Dict[str, Any] = {}
            if rule is not None:
                sla_fields = {
                    "sla_deadline": add_business_minutes(
                        stage_entered_at, rule.escalation_threshold, calendar
                    ),
                    "sla_remaining_minutes": rule.escalation_threshold - in_stage,
                    "sla_breached": in_stage >= rule.escalation_threshold,
                }
            if "sla_breached" in extra:
                sla_fields["sla_breached"] = bool(extra.pop("sla_breached"))

            event = TimelineEvent(
                id=event_id,
                case_id=case.id,
                company_id=case.company_id,
                branch_id=case.branch_id,
                sequence=sequence,
                event_type=event_type_value,
                title=extra.get("title"),
                description=extra.get("description"),
                stage=stage_value,
                previous_stage=previous_stage,
                stage_entered_at=stage_entered_at,
                stage_occurrence_id=occurrence_id,
                actor_type=actor.type.value,
                actor_id=actor.id,
                assigned_to=extra.get("assigned_to"),
                escalated_to=extra.get("escalated_to"),
                event_at=at,
                duration_from_previous=from_previous,
                duration_in_stage=in_stage,
                total_case_duration=total,
                is_escalation=bool(extra.get("is_escalation", False)),
                escalation_level=int(extra.get("escalation_level", 0)),
                event_metadata=extra.get("metadata"),
                changes=extra.get("changes"),
                is_internal=bool(extra.get("is_internal", False)),
                is_visible_to_reporter=bool(extra.get("is_visible_to_reporter", True)),
                created_at=at,
                **sla_fields,
            )
            self.db.add(event)
            await self.db.flush()

            if previous_stage is not None:
                await self._close_stage_occurrence(
                    case, previous.stage_occurrence_id, at,
                    note=f"Case advanced from {previous_stage} to {stage_value}",
                )

            logger.debug(
                "Timeline event appended",
                case_id=case.id,
                event_type=event_type_value,
                stage=stage_value,
                sequence=sequence,
                duration_in_stage=in_stage,
            )
            return event

    async def _close_stage_occurrence(
        self,
        case: CaseRecord,
        occurrence_id: str,
        at: datetime,
        note: str,
    ) -> int:
        """Resolve every escalation still open in a stage occurrence being left."""
        result = await self.db.execute(
            update(Escalation)
            .where(
                Escalation.case_id == case.id,
                Escalation.stage_occurrence_id == occurrence_id,
                Escalation.is_resolved.is_(False),
            )
            .values(
                is_resolved=True,
                resolved_at=at,
                resolved_by=SYSTEM_RESOLVER,
                resolution_note=note,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount:
            escalations_resolved_total.labels(resolver=SYSTEM_RESOLVER).inc(result.rowcount)
            logger.info(
                "Escalations resolved on stage exit",
                case_id=case.id,
                company_id=case.company_id,
                resolved=result.rowcount,
            )
        return result.rowcount
