"""Pydantic schemas for case timelines."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class TimelineEventResponse(BaseModel):
    """One ledger event as returned by the API."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    case_id: str
    sequence: int
    event_type: str
    title: Optional[str] = None
    description: Optional[str] = None

    stage: str
    previous_stage: Optional[str] = None
    stage_entered_at: datetime

    actor_type: str
    actor_id: Optional[str] = None
    assigned_to: Optional[str] = None
    escalated_to: Optional[str] = None
    event_at: datetime

    # Durations in minutes
    duration_from_previous: Optional[int] = None
    duration_in_stage: int
    total_case_duration: int

    is_escalation: bool = False
    escalation_level: int = 0
    sla_breached: bool = False
    sla_deadline: Optional[datetime] = None
    sla_remaining_minutes: Optional[int] = None

    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="event_metadata")
    changes: Optional[Dict[str, Any]] = None

    is_internal: bool = False
    is_visible_to_reporter: bool = True


class DurationSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    case_id: str
    current_stage: Optional[str] = None
    total_minutes: int
    total_display: str
    current_stage_minutes: int
    stage_minutes: Dict[str, int] = Field(default_factory=dict)
    stage_occurrences: Dict[str, int] = Field(default_factory=dict)
    event_count: int = 0
    escalation_count: int = 0
    unresolved_escalation_count: int = 0
    highest_escalation_level: int = 0
