# ==== ESCALATION ROUTES ==== #

"""
Escalation listing, dashboard statistics and manual resolution.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from casewatch.business.errors import EscalationAlreadyResolvedError, EscalationNotFoundError
from casewatch.middleware.company_scope import get_company_id
from casewatch.observability.tracing import get_tracer
from casewatch.schemas.escalation import (
    DashboardStatsResponse,
    EscalationListResponse,
    EscalationResponse,
    OverdueCaseResponse,
    ResolveEscalationRequest,
)
from casewatch.services.escalation_executor import EscalationActionExecutor
from casewatch.services.escalation_stats import dashboard_stats, overdue_cases, unresolved_escalations
from casewatch.storage.db import SessionScope, get_db_session, get_session_scope
from casewatch.storage.models import CaseRecord, Escalation


router = APIRouter()
tracer = get_tracer(__name__)


def get_executor(session_scope: SessionScope = Depends(get_session_scope)) -> EscalationActionExecutor:
    return EscalationActionExecutor(session_scope)


@router.get("", response_model=EscalationListResponse)
async def list_unresolved_escalations(
    request: Request,
    level: Optional[int] = Query(None, ge=1, le=3, description="Filter by escalation level"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db_session),
) -> EscalationListResponse:
    """
    Unresolved escalations of the calling company, newest first.

    Args:
        request (Request): HTTP request carrying the company scope
        level (Optional[int]): Only this level
        limit (int): Page size
        offset (int): Page offset
        db (AsyncSession): Database session dependency

    Returns:
        EscalationListResponse: One page of escalations and the total count
    """
    company_id = get_company_id(request)

    with tracer.start_as_current_span("list_unresolved_escalations") as span:
        span.set_attribute("company_id", company_id)

        count_query = (
            select(func.count(Escalation.id))
            .join(CaseRecord, CaseRecord.id == Escalation.case_id)
            .where(CaseRecord.company_id == company_id, Escalation.is_resolved.is_(False))
        )
        if level is not None:
            count_query = count_query.where(Escalation.escalation_level == level)
        total = (await db.execute(count_query)).scalar() or 0

        escalations = await unresolved_escalations(db, company_id, level=level, limit=limit, offset=offset)
        span.set_attribute("total", total)

        return EscalationListResponse(
            items=[EscalationResponse.model_validate(e) for e in escalations],
            total=total,
            limit=limit,
            offset=offset,
        )


@router.get("/stats", response_model=DashboardStatsResponse)
async def get_escalation_stats(
    request: Request,
    since: Optional[datetime] = Query(None, description="Count resolutions from this time"),
    overdue_limit: int = Query(10, ge=0, le=100),
    db: AsyncSession = Depends(get_db_session),
) -> DashboardStatsResponse:
    """Dashboard figures: open escalations by level, breaches, stage averages."""
    company_id = get_company_id(request)

    stats = await dashboard_stats(db, company_id, since=since)
    overdue = await overdue_cases(db, company_id, limit=overdue_limit) if overdue_limit else []

    return DashboardStatsResponse(
        company_id=stats.company_id,
        unresolved_total=stats.unresolved_total,
        unresolved_by_level=stats.unresolved_by_level,
        sla_breached_cases=stats.sla_breached_cases,
        average_stage_minutes=stats.average_stage_minutes,
        resolved_since=stats.resolved_since,
        overdue_cases=[OverdueCaseResponse.model_validate(o) for o in overdue],
    )


@router.post("/{escalation_id}/resolve", response_model=EscalationResponse)
async def resolve_escalation(
    escalation_id: str,
    body: ResolveEscalationRequest,
    request: Request,
    executor: EscalationActionExecutor = Depends(get_executor),
) -> EscalationResponse:
    """
    Resolve an escalation by hand.

    Raises:
        HTTPException: 404 for unknown escalations, 409 when already resolved
    """
    company_id = get_company_id(request)

    with tracer.start_as_current_span("resolve_escalation") as span:
        span.set_attribute("company_id", company_id)
        span.set_attribute("escalation_id", escalation_id)

        try:
            escalation = await executor.resolve(
                escalation_id,
                body.resolved_by,
                note=body.note,
                company_id=company_id,
            )
        except EscalationNotFoundError as e:
            raise HTTPException(status_code=404, detail=e.message)
        except EscalationAlreadyResolvedError as e:
            raise HTTPException(status_code=409, detail=e.message)

        return EscalationResponse.model_validate(escalation)
