# ==== ESCALATION STATISTICS ==== #

"""
Read-only escalation queries for dashboards and the API.

Every query is scoped to one company. Nothing here writes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from casewatch.business.lifecycle import ESCALATABLE_STATUSES
from casewatch.observability.tracing import get_tracer
from casewatch.storage.models import CaseRecord, Escalation, TimelineEvent


tracer = get_tracer(__name__)


@dataclass
class DashboardStats:
    company_id: str
    unresolved_total: int = 0
    unresolved_by_level: Dict[int, int] = field(default_factory=dict)
    sla_breached_cases: int = 0
    average_stage_minutes: Dict[str, float] = field(default_factory=dict)
    resolved_since: int = 0


@dataclass
class OverdueCase:
    case_id: str
    status: str
    priority: str
    assigned_to: Optional[str]
    stage: str
    escalation_level: int
    overdue_minutes: int
    escalated_at: datetime


async def unresolved_escalations(
    db: AsyncSession,
    company_id: str,
    level: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Escalation]:
    """Open escalations for a company, newest first."""
    query = (
        select(Escalation)
        .join(CaseRecord, CaseRecord.id == Escalation.case_id)
        .where(
            CaseRecord.company_id == company_id,
            Escalation.is_resolved.is_(False),
        )
    )
    if level is not None:
        query = query.where(Escalation.escalation_level == level)
    query = query.order_by(Escalation.created_at.desc(), Escalation.id).offset(offset).limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())


async def dashboard_stats(
    db: AsyncSession,
    company_id: str,
    since: Optional[datetime] = None,
) -> DashboardStats:
    """
    Aggregate escalation figures for one company.

    Args:
        db: Database session
        company_id: Company to report on
        since: Count resolutions from this time, optional

    Returns:
        DashboardStats: Unresolved counts per level, cases whose latest
        event breached its SLA, and mean minutes per stage
    """
    with tracer.start_as_current_span("escalation_stats.dashboard") as span:
        span.set_attribute("company_id", company_id)
        stats = DashboardStats(company_id=company_id)

        # --► UNRESOLVED BY LEVEL
        level_query = (
            select(Escalation.escalation_level, func.count(Escalation.id))
            .join(CaseRecord, CaseRecord.id == Escalation.case_id)
            .where(
                CaseRecord.company_id == company_id,
                Escalation.is_resolved.is_(False),
            )
            .group_by(Escalation.escalation_level)
        )
        for level, count in (await db.execute(level_query)).all():
            stats.unresolved_by_level[int(level)] = count
        stats.unresolved_total = sum(stats.unresolved_by_level.values())

        # --► RESOLVED SINCE
        if since is not None:
            resolved_query = (
                select(func.count(Escalation.id))
                .join(CaseRecord, CaseRecord.id == Escalation.case_id)
                .where(
                    CaseRecord.company_id == company_id,
                    Escalation.is_resolved.is_(True),
                    Escalation.resolved_at >= since,
                )
            )
            stats.resolved_since = (await db.execute(resolved_query)).scalar() or 0

        # --► LATEST EVENT PER CASE
        latest_sequence = (
            select(
                TimelineEvent.case_id,
                func.max(TimelineEvent.sequence).label("sequence"),
            )
            .where(TimelineEvent.company_id == company_id)
            .group_by(TimelineEvent.case_id)
            .subquery()
        )
        latest_events = (
            select(TimelineEvent)
            .join(
                latest_sequence,
                and_(
                    TimelineEvent.case_id == latest_sequence.c.case_id,
                    TimelineEvent.sequence == latest_sequence.c.sequence,
                ),
            )
            .join(CaseRecord, CaseRecord.id == TimelineEvent.case_id)
            .where(CaseRecord.status.in_(sorted(ESCALATABLE_STATUSES)))
        )
        events = list((await db.execute(latest_events)).scalars().all())

        stats.sla_breached_cases = sum(1 for event in events if event.sla_breached)

        per_stage: Dict[str, List[int]] = {}
        for event in events:
            per_stage.setdefault(event.stage, []).append(event.duration_in_stage)
        stats.average_stage_minutes = {
            stage: round(sum(values) / len(values), 1)
            for stage, values in per_stage.items()
        }

        span.set_attribute("unresolved_total", stats.unresolved_total)
        return stats


async def overdue_cases(db: AsyncSession, company_id: str, limit: int = 50) -> List[OverdueCase]:
    """Open cases with unresolved escalations, most severe first."""
    query = (
        select(Escalation, CaseRecord)
        .join(CaseRecord, CaseRecord.id == Escalation.case_id)
        .where(
            CaseRecord.company_id == company_id,
            CaseRecord.status.in_(sorted(ESCALATABLE_STATUSES)),
            Escalation.is_resolved.is_(False),
        )
        .order_by(
            Escalation.escalation_level.desc(),
            Escalation.overdue_minutes.desc(),
            Escalation.created_at.asc(),
        )
    )
    result = await db.execute(query)

    overdue: Dict[str, OverdueCase] = {}
    for escalation, case in result.all():
        # Rows arrive most severe first; keep one row per case
        if case.id in overdue:
            continue
        overdue[case.id] = OverdueCase(
            case_id=case.id,
            status=case.status,
            priority=case.priority,
            assigned_to=case.assigned_to,
            stage=escalation.stage,
            escalation_level=escalation.escalation_level,
            overdue_minutes=escalation.overdue_minutes,
            escalated_at=escalation.created_at,
        )
        if len(overdue) >= limit:
            break
    return list(overdue.values())
