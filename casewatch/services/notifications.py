# ==== NOTIFICATION COLLABORATOR ==== #

"""
Notification fan-out for escalations.

Resolves who must hear about an escalation and hands one request per
recipient to a notification queue. Delivery (email, SMS, push) belongs to the
service draining the queue; the engine only enqueues.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from casewatch.business.lifecycle import UserRole
from casewatch.observability.logging import get_logger
from casewatch.observability.metrics import notifications_enqueued_total
from casewatch.observability.tracing import get_tracer
from casewatch.storage.db import SessionScope, get_session
from casewatch.storage.models import CaseRecord, CaseUser, EscalationRule, NotificationRequest


tracer = get_tracer(__name__)
logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationTarget:
    """One recipient. ``reason`` records why they are notified."""

    user_id: Optional[str] = None
    email: Optional[str] = None
    reason: str = "email"


class NotificationQueue(Protocol):
    async def enqueue(
        self,
        target: NotificationTarget,
        channel: str,
        payload: Mapping[str, Any],
    ) -> str:
        ...


# ==== RECIPIENT RESOLUTION ==== #


async def _users_with_role(
    db: AsyncSession,
    role: UserRole,
    company_id: Optional[str] = None,
    branch_id: Optional[str] = None,
) -> List[CaseUser]:
    query = select(CaseUser).where(
        CaseUser.role == role.value,
        CaseUser.is_active.is_(True),
    )
    if company_id is not None:
        query = query.where(CaseUser.company_id == company_id)
    if branch_id is not None:
        query = query.where(CaseUser.branch_id == branch_id)

    result = await db.execute(query.order_by(CaseUser.id))
    return list(result.scalars().all())


async def resolve_recipients(
    db: AsyncSession,
    case: CaseRecord,
    rule: EscalationRule,
) -> List[NotificationTarget]:
    """
    Notification targets for an escalation, deduplicated.

    Order: current assignee, branch admins, company admins, super admins,
    the rule's escalation user, then the rule's extra email addresses.
    A person reachable through several roles is notified once.

    Args:
        db: Session used for directory lookups
        case: Escalated case
        rule: Rule that triggered the escalation

    Returns:
        List[NotificationTarget]: Recipients in notification order
    """
    targets: List[NotificationTarget] = []
    seen_users: Set[str] = set()
    seen_emails: Set[str] = set()

    def add(user_id: Optional[str], email: Optional[str], reason: str) -> None:
        normalised = email.strip().lower() if email else None
        if user_id and user_id in seen_users:
            return
        if normalised and normalised in seen_emails:
            return
        if user_id:
            seen_users.add(user_id)
        if normalised:
            seen_emails.add(normalised)
        targets.append(NotificationTarget(user_id=user_id, email=email, reason=reason))

    async def add_user(user_id: str, reason: str) -> None:
        user = await db.get(CaseUser, user_id)
        if user is not None and not user.is_active:
            return
        add(user_id, user.email if user else None, reason)

    if rule.notify_current_assignee and case.assigned_to:
        await add_user(case.assigned_to, "assignee")

    if rule.notify_branch_admin and case.branch_id:
        for user in await _users_with_role(db, UserRole.BRANCH_ADMIN, case.company_id, case.branch_id):
            add(user.id, user.email, UserRole.BRANCH_ADMIN.value)

    if rule.notify_company_admin:
        for user in await _users_with_role(db, UserRole.COMPANY_ADMIN, case.company_id):
            add(user.id, user.email, UserRole.COMPANY_ADMIN.value)

    if rule.notify_super_admin:
        for user in await _users_with_role(db, UserRole.SUPER_ADMIN):
            add(user.id, user.email, UserRole.SUPER_ADMIN.value)

    if rule.escalation_to_user_id:
        await add_user(rule.escalation_to_user_id, "escalation_target")

    for email in rule.notify_emails or []:
        add(None, email, "email")

    return targets


# ==== OUTBOX QUEUE ==== #


class OutboxNotificationQueue:
    """
    Notification queue backed by the ``notification_outbox`` table.

    Each enqueue commits in its own session, separate from the escalation
    transaction.
    """

    def __init__(self, session_factory: SessionScope = get_session):
        self._session_factory = session_factory

    async def enqueue(
        self,
        target: NotificationTarget,
        channel: str,
        payload: Mapping[str, Any],
    ) -> str:
        """
        Persist one notification request.

        Returns:
            str: Notification request id
        """
        with tracer.start_as_current_span("notifications.enqueue") as span:
            span.set_attribute("channel", channel)

            async with self._session_factory() as db:
                request = NotificationRequest(
                    target_user_id=target.user_id,
                    target_email=target.email,
                    channel=channel,
                    payload=dict(payload),
                    status="pending",
                )
                db.add(request)
                await db.flush()
                request_id = request.id

            notifications_enqueued_total.labels(channel=channel).inc()
            span.set_attribute("notification_id", request_id)
            return request_id


def escalation_payload(
    escalation_id: str,
    case: CaseRecord,
    level: int,
    stage: str,
    reason: str,
    overdue_minutes: int,
    rule_name: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "type": "case_escalated",
        "escalation_id": escalation_id,
        "case_id": case.id,
        "company_id": case.company_id,
        "branch_id": case.branch_id,
        "escalation_level": level,
        "stage": stage,
        "reason": reason,
        "overdue_minutes": overdue_minutes,
        "rule_name": rule_name,
    }
