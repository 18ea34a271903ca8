# ==== ESCALATION RULE ROUTES ==== #

"""
Administration of escalation rules.

Rules are created in the calling company's scope. Global rules are visible
to every company and are read-only through company-scoped requests.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from casewatch.business.errors import ConfigurationError, RuleNotFoundError
from casewatch.middleware.company_scope import get_company_id
from casewatch.observability.tracing import get_tracer
from casewatch.schemas.rule import RuleCreate, RuleResponse, RuleUpdate
from casewatch.services.rule_catalog import EscalationRuleCatalog
from casewatch.storage.db import get_db_session
from casewatch.storage.models import EscalationRule


router = APIRouter()
tracer = get_tracer(__name__)


async def _company_rule(catalog: EscalationRuleCatalog, rule_id: str, company_id: str) -> EscalationRule:
    try:
        rule = await catalog.get_rule(rule_id)
    except RuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    if rule.company_id != company_id and not rule.is_global:
        raise HTTPException(status_code=404, detail=f"Escalation rule {rule_id} not found")
    return rule


def _ensure_editable(rule: EscalationRule, company_id: str) -> None:
    if rule.company_id != company_id:
        raise HTTPException(status_code=403, detail="Global rules cannot be changed from a company scope")


@router.get("", response_model=List[RuleResponse])
async def list_rules(
    request: Request,
    stage: Optional[str] = Query(None),
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db_session),
) -> List[RuleResponse]:
    """Rules visible to the company in evaluation order."""
    company_id = get_company_id(request)
    rules = await EscalationRuleCatalog(db).list_rules(
        company_id, stage=stage, include_inactive=include_inactive
    )
    return [RuleResponse.model_validate(rule) for rule in rules]


@router.post("", response_model=RuleResponse, status_code=201)
async def create_rule(
    body: RuleCreate,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db_session),
) -> RuleResponse:
    """
    Create a rule for the calling company.

    Args:
        body (RuleCreate): Rule definition
        request (Request): HTTP request carrying the company scope
        x_user_id (Optional[str]): Acting administrator, recorded as creator
        db (AsyncSession): Database session dependency

    Returns:
        RuleResponse: Stored rule

    Raises:
        HTTPException: 422 when the definition is malformed
    """
    company_id = get_company_id(request)

    with tracer.start_as_current_span("create_escalation_rule") as span:
        span.set_attribute("company_id", company_id)

        values = body.model_dump(exclude_none=True)
        values["company_id"] = company_id
        try:
            rule = await EscalationRuleCatalog(db).create_rule(values, created_by=x_user_id)
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=e.message)

        span.set_attribute("rule_id", rule.id)
        return RuleResponse.model_validate(rule)


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(
    rule_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
) -> RuleResponse:
    company_id = get_company_id(request)
    rule = await _company_rule(EscalationRuleCatalog(db), rule_id, company_id)
    return RuleResponse.model_validate(rule)


@router.patch("/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: str,
    body: RuleUpdate,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db_session),
) -> RuleResponse:
    """Partial update. Omitted fields keep their value; the merged rule is revalidated."""
    company_id = get_company_id(request)
    catalog = EscalationRuleCatalog(db)
    rule = await _company_rule(catalog, rule_id, company_id)
    _ensure_editable(rule, company_id)

    try:
        rule = await catalog.update_rule(rule_id, body.model_dump(exclude_unset=True), updated_by=x_user_id)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=e.message)
    return RuleResponse.model_validate(rule)


@router.post("/{rule_id}/toggle", response_model=RuleResponse)
async def toggle_rule(
    rule_id: str,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db_session),
) -> RuleResponse:
    company_id = get_company_id(request)
    catalog = EscalationRuleCatalog(db)
    rule = await _company_rule(catalog, rule_id, company_id)
    _ensure_editable(rule, company_id)

    rule = await catalog.toggle_active(rule_id, updated_by=x_user_id)
    return RuleResponse.model_validate(rule)


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(
    rule_id: str,
    request: Request,
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db_session),
) -> None:
    """Soft delete. Escalations raised under the rule keep their reference."""
    company_id = get_company_id(request)
    catalog = EscalationRuleCatalog(db)
    rule = await _company_rule(catalog, rule_id, company_id)
    _ensure_editable(rule, company_id)

    await catalog.deactivate_rule(rule_id, deleted_by=x_user_id)
