"""Pydantic schemas for escalation rule administration.

Field-level checks here are shape only. Cross-field rules (threshold order,
scope, auto-action targets) are enforced by the rule catalog so the API and
direct service callers share one validation path.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RuleBase(BaseModel):
    description: Optional[str] = None
    branch_id: Optional[str] = None
    applies_to: Optional[str] = None
    priority: Optional[int] = Field(None, ge=0, le=100)

    warning_threshold: Optional[int] = Field(None, ge=1)
    critical_threshold: Optional[int] = Field(None, ge=1)

    use_business_hours: Optional[bool] = None
    exclude_weekends: Optional[bool] = None
    exclude_holidays: Optional[bool] = None
    business_hours: Optional[Dict[str, Optional[Dict[str, str]]]] = None
    timezone: Optional[str] = None

    escalation_level: Optional[int] = Field(None, ge=1, le=3)
    escalation_to_user_id: Optional[str] = None

    notify_current_assignee: Optional[bool] = None
    notify_branch_admin: Optional[bool] = None
    notify_company_admin: Optional[bool] = None
    notify_super_admin: Optional[bool] = None
    notify_emails: Optional[List[str]] = None

    auto_reassign: Optional[bool] = None
    reassign_to_user_id: Optional[str] = None
    auto_change_priority: Optional[bool] = None
    new_priority: Optional[str] = None

    conditions: Optional[Dict[str, List[Any]]] = None


class RuleCreate(RuleBase):
    """Request body for creating a rule. The company comes from the request scope."""

    name: str = Field(..., min_length=1, max_length=255)
    stage: str
    escalation_threshold: int = Field(..., ge=1)
    is_global: bool = False

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Triage within 4 business hours",
                "stage": "triage",
                "applies_to": "incident",
                "priority": 10,
                "warning_threshold": 120,
                "escalation_threshold": 240,
                "critical_threshold": 480,
                "notify_branch_admin": True,
            }
        }
    )


class RuleUpdate(RuleBase):
    """Partial update; omitted fields are left unchanged."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    stage: Optional[str] = None
    escalation_threshold: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None


class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: Optional[str] = None
    branch_id: Optional[str] = None
    is_global: bool
    name: str
    description: Optional[str] = None
    stage: str
    applies_to: str
    priority: int

    warning_threshold: Optional[int] = None
    escalation_threshold: int
    critical_threshold: Optional[int] = None

    use_business_hours: bool
    exclude_weekends: bool
    exclude_holidays: bool
    business_hours: Optional[Dict[str, Optional[Dict[str, str]]]] = None
    timezone: Optional[str] = None

    escalation_level: int
    escalation_to_user_id: Optional[str] = None
    notify_current_assignee: bool
    notify_branch_admin: bool
    notify_company_admin: bool
    notify_super_admin: bool
    notify_emails: Optional[List[str]] = None

    auto_reassign: bool
    reassign_to_user_id: Optional[str] = None
    auto_change_priority: bool
    new_priority: Optional[str] = None
    conditions: Optional[Dict[str, List[Any]]] = None

    is_active: bool
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
