"""SQLAlchemy models for the casewatch escalation engine."""

import datetime as dt
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint, text
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from casewatch.business.lifecycle import Actor, ActorType
from casewatch.storage.db import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> dt.datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class CaseRecord(Base):
    """Read model of a case, owned by the case management application.

    The engine only writes ``assigned_to`` and ``priority`` through
    escalation auto-actions.
    """

    __tablename__ = "cases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    branch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    case_type: Mapped[str] = mapped_column(String(16), nullable=False, default="incident")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open", index=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    assigned_to: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reporter_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    attributes: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    # Relationships
    timeline_events = relationship(
        "TimelineEvent", back_populates="case", cascade="all, delete-orphan",
        passive_deletes=True, lazy="raise"
    )
    escalations = relationship(
        "Escalation", back_populates="case", cascade="all, delete-orphan",
        passive_deletes=True, lazy="raise"
    )

    def context(self) -> Dict[str, Any]:
        """Field values rule conditions are matched against."""
        values: Dict[str, Any] = dict(self.attributes or {})
        values.update(
            company_id=self.company_id,
            branch_id=self.branch_id,
            case_type=self.case_type,
            status=self.status,
            priority=self.priority,
            assigned_to=self.assigned_to,
        )
        return values


class TimelineEvent(Base):
    """Immutable fact in a case's lifecycle ledger."""

    __tablename__ = "case_timeline_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    case_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False
    )
    company_id: Mapped[str] = mapped_column(String(64), nullable=False)
    branch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Stage bookkeeping
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    stage_entered_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    stage_occurrence_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Actor (tagged reference)
    actor_type: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    assigned_to: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    escalated_to: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    event_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)

    # Durations in minutes
    duration_from_previous: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    duration_in_stage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_case_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Escalation and SLA flags
    is_escalation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sla_breached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sla_deadline: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    sla_remaining_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    event_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    changes: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    is_internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_visible_to_reporter: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    case = relationship("CaseRecord", back_populates="timeline_events", lazy="raise")

    __table_args__ = (
        UniqueConstraint("case_id", "sequence", name="uq_timeline_case_sequence"),
        Index("ix_timeline_case_event_at", "case_id", "event_at"),
        Index("ix_timeline_company_event_type", "company_id", "event_type"),
        Index(
            "uq_timeline_sla_warning_once",
            "case_id",
            "stage_occurrence_id",
            unique=True,
            postgresql_where=text("event_type = 'sla_warning'"),
            sqlite_where=text("event_type = 'sla_warning'"),
        ),
    )

    @property
    def actor(self) -> Actor:
        return Actor(ActorType(self.actor_type), self.actor_id)


class EscalationRule(Base):
    """SLA escalation rule configured by administrators.

    Scope narrows from global (no company) to company to branch. Rules are
    soft-deleted via ``deleted_at`` so escalations keep their reference.
    """

    __tablename__ = "escalation_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    branch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_global: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    applies_to: Mapped[str] = mapped_column(String(16), nullable=False, default="all")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Thresholds in minutes
    warning_threshold: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    escalation_threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    critical_threshold: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Calendar participation
    use_business_hours: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    exclude_weekends: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    exclude_holidays: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    business_hours: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Escalation target
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    escalation_to_user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # Notification targets
    notify_current_assignee: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_branch_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_company_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notify_super_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notify_emails: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)

    # Auto-actions
    auto_reassign: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reassign_to_user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    auto_change_priority: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    new_priority: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    conditions: Mapped[Optional[Dict[str, List[Any]]]] = mapped_column(JSON, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    __table_args__ = (
        Index("ix_rules_company_stage_active", "company_id", "stage", "is_active"),
        Index("ix_rules_branch_stage", "branch_id", "stage"),
    )


class Escalation(Base):
    """Escalation raised for a case stage occurrence.

    Inserted once by the action executor; resolution is the only later change.
    """

    __tablename__ = "case_escalations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    case_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("cases.id", ondelete="CASCADE"), nullable=False
    )
    rule_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("escalation_rules.id", ondelete="SET NULL"), nullable=True
    )
    timeline_event_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("case_timeline_events.id", ondelete="SET NULL"), nullable=True
    )

    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    stage_occurrence_id: Mapped[str] = mapped_column(String(36), nullable=False)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    overdue_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalated_to: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    notified_users: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    notified_emails: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)

    # Resolution
    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Actions taken
    was_reassigned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reassigned_to: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    priority_changed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    old_priority: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    new_priority: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    case = relationship("CaseRecord", back_populates="escalations", lazy="raise")

    __table_args__ = (
        Index("ix_escalations_case_stage_level", "case_id", "stage", "escalation_level"),
        Index("ix_escalations_resolved_created", "is_resolved", "created_at"),
        Index(
            "uq_escalation_open_level",
            "case_id",
            "stage_occurrence_id",
            "escalation_level",
            unique=True,
            postgresql_where=text("is_resolved = false"),
            sqlite_where=text("is_resolved = 0"),
        ),
    )


class BusinessHoliday(Base):
    """Holiday excluded from business-minute counting."""

    __tablename__ = "business_holidays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    holiday_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)

    __table_args__ = (
        UniqueConstraint("company_id", "holiday_date", name="uq_holiday_company_date"),
    )


class CaseUser(Base):
    """Read model of the user directory, used to resolve escalation recipients."""

    __tablename__ = "case_users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    branch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="staff")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class NotificationRequest(Base):
    """Queued notification handed to the delivery service."""

    __tablename__ = "notification_outbox"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    target_user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    target_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    sent_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
