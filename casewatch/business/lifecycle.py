# ==== CASE LIFECYCLE VOCABULARY ==== #

"""
Case lifecycle vocabulary for casewatch.

Stages, statuses, timeline event types, actors, priorities and escalation
levels shared by the ledger, the rule catalog, the evaluator and the API.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Optional, Union


# ==== ENUMERATION DEFINITIONS ==== #


class Stage(str, Enum):
    """
    Coarse lifecycle phase of a case.

    Progression: SUBMISSION → TRIAGE → ASSIGNMENT → INVESTIGATION →
    RESOLUTION → CLOSED. Re-entering a stage later opens a new stage
    occurrence.
    """

    SUBMISSION = "submission"
    TRIAGE = "triage"
    ASSIGNMENT = "assignment"
    INVESTIGATION = "investigation"
    RESOLUTION = "resolution"
    CLOSED = "closed"


class CaseStatus(str, Enum):
    """Case status as maintained by the case aggregate."""

    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    PENDING_CLOSURE = "pending_closure"
    RESOLVED = "resolved"
    CLOSED = "closed"


class CaseType(str, Enum):
    INCIDENT = "incident"
    FEEDBACK = "feedback"


class EventType(str, Enum):
    """Timeline event types. Every case state change appends one of these."""

    SUBMITTED = "submitted"
    ACKNOWLEDGED = "acknowledged"
    ASSIGNED = "assigned"
    REASSIGNED = "reassigned"
    UNASSIGNED = "unassigned"
    INVESTIGATION_STARTED = "investigation_started"
    INVESTIGATION_UPDATED = "investigation_updated"
    EVIDENCE_ADDED = "evidence_added"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    INTERVIEW_COMPLETED = "interview_completed"
    ESCALATED = "escalated"
    PRIORITY_CHANGED = "priority_changed"
    STATUS_CHANGED = "status_changed"
    RESOLVED = "resolved"
    CLOSED = "closed"
    REOPENED = "reopened"
    COMMENT_ADDED = "comment_added"
    SLA_WARNING = "sla_warning"
    SLA_BREACHED = "sla_breached"


class ActorType(str, Enum):
    USER = "user"
    SYSTEM = "system"
    SCHEDULER = "scheduler"
    REPORTER = "reporter"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class EscalationLevel(IntEnum):
    """
    Escalation severity tiers.

    WARNING never creates an escalation record; it only appends an
    ``sla_warning`` timeline event.
    """

    WARNING = 0
    LEVEL_1 = 1  # Branch admin
    LEVEL_2 = 2  # Company admin
    LEVEL_3 = 3  # System admin


class UserRole(str, Enum):
    STAFF = "staff"
    BRANCH_ADMIN = "branch_admin"
    COMPANY_ADMIN = "company_admin"
    SUPER_ADMIN = "super_admin"


# ==== ACTOR REFERENCE ==== #


@dataclass(frozen=True)
class Actor:
    """
    Who caused a timeline event.

    A tagged reference: ``type`` selects the kind of actor and ``id`` points
    at the user or reporter. System and scheduler actors carry no id.
    """

    type: ActorType
    id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type in (ActorType.USER, ActorType.REPORTER) and not self.id:
            raise ValueError(f"{self.type.value} actor requires an id")
        if self.type in (ActorType.SYSTEM, ActorType.SCHEDULER) and self.id:
            raise ValueError(f"{self.type.value} actor cannot carry an id")

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        return cls(ActorType.USER, user_id)

    @classmethod
    def reporter(cls, reporter_id: str) -> "Actor":
        return cls(ActorType.REPORTER, reporter_id)

    @classmethod
    def system(cls) -> "Actor":
        return cls(ActorType.SYSTEM)

    @classmethod
    def scheduler(cls) -> "Actor":
        return cls(ActorType.SCHEDULER)


# ==== BUSINESS RULES CONFIGURATION ==== #


STATUS_STAGE_MAP: Dict[CaseStatus, Stage] = {
    CaseStatus.OPEN: Stage.TRIAGE,
    CaseStatus.ASSIGNED: Stage.ASSIGNMENT,
    CaseStatus.IN_PROGRESS: Stage.INVESTIGATION,
    CaseStatus.PENDING_CLOSURE: Stage.RESOLUTION,
    CaseStatus.RESOLVED: Stage.RESOLUTION,
    CaseStatus.CLOSED: Stage.CLOSED,
}

ESCALATABLE_STATUSES: FrozenSet[str] = frozenset({
    CaseStatus.OPEN.value,
    CaseStatus.ASSIGNED.value,
    CaseStatus.IN_PROGRESS.value,
})

RULE_CASE_TYPES: FrozenSet[str] = frozenset({"all", CaseType.INCIDENT.value, CaseType.FEEDBACK.value})

PRIORITY_RANK: Dict[str, int] = {
    Priority.LOW.value: 1,
    Priority.MEDIUM.value: 2,
    Priority.HIGH.value: 3,
    Priority.URGENT.value: 4,
}

LEVEL_LABELS: Dict[int, str] = {
    EscalationLevel.WARNING: "Warning",
    EscalationLevel.LEVEL_1: "Level 1 (Branch Admin)",
    EscalationLevel.LEVEL_2: "Level 2 (Company Admin)",
    EscalationLevel.LEVEL_3: "Level 3 (System Admin)",
}


# ==== UTILITY FUNCTIONS ==== #


def stage_for_status(status: Optional[str]) -> Stage:
    """
    Derive the lifecycle stage implied by a case status.

    Args:
        status: Case status value, unknown values map to SUBMISSION

    Returns:
        Stage: Stage the status belongs to
    """
    try:
        return STATUS_STAGE_MAP[CaseStatus(status)]
    except (ValueError, KeyError):
        return Stage.SUBMISSION


def parse_level(value: Union[int, str]) -> int:
    """
    Parse an escalation level from ``2`` or ``"level_2"``.

    Raises:
        ValueError: If the value is not a level between 1 and 3
    """
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw.startswith("level_"):
            raw = raw[len("level_"):]
        try:
            value = int(raw)
        except ValueError:
            raise ValueError(f"Invalid escalation level: {value!r}") from None

    if value not in (1, 2, 3):
        raise ValueError(f"Escalation level must be between 1 and 3, got {value}")
    return int(value)


def format_minutes(minutes: Optional[int]) -> str:
    """
    Human readable duration.

    Examples: ``45 min``, ``2h``, ``2h 5m``, ``1d``, ``1d 3h 5m``.
    """
    if minutes is None:
        return "-"
    minutes = max(int(minutes), 0)

    if minutes < 60:
        return f"{minutes} min"

    if minutes < 1440:
        hours, mins = divmod(minutes, 60)
        return f"{hours}h {mins}m" if mins else f"{hours}h"

    days, rest = divmod(minutes, 1440)
    hours, mins = divmod(rest, 60)
    parts = [f"{days}d"]
    if hours:
        parts.append(f"{hours}h")
    if mins:
        parts.append(f"{mins}m")
    return " ".join(parts)
