"""Pydantic schemas for escalations and dashboard statistics."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EscalationResponse(BaseModel):
    """Response schema for an escalation record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    case_id: str
    rule_id: Optional[str] = None
    timeline_event_id: Optional[str] = None
    stage: str
    escalation_level: int
    reason: str
    overdue_minutes: int
    escalated_to: Optional[str] = None
    notified_users: Optional[List[str]] = None
    notified_emails: Optional[List[str]] = None

    # Resolution
    is_resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None

    # Actions taken
    was_reassigned: bool = False
    reassigned_to: Optional[str] = None
    priority_changed: bool = False
    old_priority: Optional[str] = None
    new_priority: Optional[str] = None

    created_at: datetime


class EscalationListResponse(BaseModel):
    items: List[EscalationResponse]
    total: int
    limit: int
    offset: int


class ResolveEscalationRequest(BaseModel):
    """Request body for resolving an escalation."""

    resolved_by: str = Field(..., min_length=1, max_length=36)
    note: Optional[str] = Field(None, max_length=2000)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "resolved_by": "user-123",
                "note": "Investigator assigned, case back on track",
            }
        }
    )


class OverdueCaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    case_id: str
    status: str
    priority: str
    assigned_to: Optional[str] = None
    stage: str
    escalation_level: int
    overdue_minutes: int
    escalated_at: datetime


class DashboardStatsResponse(BaseModel):
    """Escalation figures for one company."""

    model_config = ConfigDict(from_attributes=True)

    company_id: str
    unresolved_total: int
    unresolved_by_level: Dict[int, int] = Field(default_factory=dict)
    sla_breached_cases: int
    average_stage_minutes: Dict[str, float] = Field(default_factory=dict)
    resolved_since: int = 0
    overdue_cases: List[OverdueCaseResponse] = Field(default_factory=list)
