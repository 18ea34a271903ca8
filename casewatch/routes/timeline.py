# ==== CASE TIMELINE ROUTES ==== #

"""
Read-only case timeline endpoints.

Reporter-facing clients pass ``include_internal=false`` to hide escalation
bookkeeping and other internal events.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from casewatch.business.lifecycle import format_minutes
from casewatch.middleware.company_scope import get_company_id
from casewatch.observability.tracing import get_tracer
from casewatch.schemas.escalation import EscalationResponse
from casewatch.schemas.timeline import DurationSummaryResponse, TimelineEventResponse
from casewatch.services.timeline_ledger import TimelineLedger
from casewatch.storage.db import get_db_session
from casewatch.storage.models import CaseRecord


router = APIRouter()
tracer = get_tracer(__name__)


async def get_company_case(db: AsyncSession, case_id: str, company_id: str) -> CaseRecord:
    """Load a case of the calling company or answer 404."""
    case = await db.get(CaseRecord, case_id)
    if case is None or case.company_id != company_id:
        raise HTTPException(status_code=404, detail="Case not found")
    return case


@router.get("/{case_id}/timeline", response_model=List[TimelineEventResponse])
async def get_case_timeline(
    case_id: str,
    request: Request,
    include_internal: bool = Query(True, description="Include internal events"),
    db: AsyncSession = Depends(get_db_session),
) -> List[TimelineEventResponse]:
    """
    Timeline of a case in ledger order.

    Args:
        case_id (str): Case identifier
        request (Request): HTTP request carrying the company scope
        include_internal (bool): False returns only public events
        db (AsyncSession): Database session dependency

    Returns:
        List[TimelineEventResponse]: Events ordered by sequence
    """
    company_id = get_company_id(request)

    with tracer.start_as_current_span("get_case_timeline") as span:
        span.set_attribute("company_id", company_id)
        span.set_attribute("case_id", case_id)

        await get_company_case(db, case_id, company_id)
        events = await TimelineLedger(db).get_timeline(case_id, include_internal=include_internal)

        span.set_attribute("event_count", len(events))
        return [TimelineEventResponse.model_validate(event) for event in events]


@router.get("/{case_id}/duration-summary", response_model=DurationSummaryResponse)
async def get_duration_summary(
    case_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
) -> DurationSummaryResponse:
    """Minutes per stage summed across stage occurrences."""
    company_id = get_company_id(request)
    await get_company_case(db, case_id, company_id)

    summary = await TimelineLedger(db).duration_summary(case_id)
    return DurationSummaryResponse(
        case_id=summary.case_id,
        current_stage=summary.current_stage,
        total_minutes=summary.total_minutes,
        total_display=format_minutes(summary.total_minutes),
        current_stage_minutes=summary.current_stage_minutes,
        stage_minutes=summary.stage_minutes,
        stage_occurrences=summary.stage_occurrences,
        event_count=summary.event_count,
        escalation_count=summary.escalation_count,
        unresolved_escalation_count=summary.unresolved_escalation_count,
        highest_escalation_level=summary.highest_escalation_level,
    )


@router.get("/{case_id}/escalations", response_model=List[EscalationResponse])
async def get_case_escalations(
    case_id: str,
    request: Request,
    unresolved_only: bool = Query(False),
    db: AsyncSession = Depends(get_db_session),
) -> List[EscalationResponse]:
    company_id = get_company_id(request)
    await get_company_case(db, case_id, company_id)

    escalations = await TimelineLedger(db).escalations_for_case(case_id, unresolved_only=unresolved_only)
    return [EscalationResponse.model_validate(e) for e in escalations]
