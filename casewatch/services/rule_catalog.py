# ==== ESCALATION RULE CATALOG ==== #

"""
Escalation rule catalog for casewatch.

Stores administrator-defined SLA rules and answers "which rules apply to this
case right now". Matching and ordering are plain functions over rule objects;
the catalog class adds persistence, validation at save time and calendar
construction.

Ordering policy: explicit ``priority`` descending, then specificity (branch
scoped, then company scoped, then global), then creation time. The evaluator
only ever acts on the first rule of that order.
"""

import datetime as dt
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from casewatch.business.errors import ConfigurationError, RuleNotFoundError
from casewatch.business.lifecycle import (
    PRIORITY_RANK,
    RULE_CASE_TYPES,
    Stage,
    parse_level,
)
from casewatch.observability.logging import get_logger
from casewatch.observability.tracing import get_tracer
from casewatch.services.business_clock import BusinessCalendar, as_naive_utc, parse_business_hours
from casewatch.services.policy_loader import get_default_business_hours, get_rule_defaults
from casewatch.settings import settings
from casewatch.storage.models import BusinessHoliday, EscalationRule, utcnow


tracer = get_tracer(__name__)
logger = get_logger(__name__)

MIN_PRIORITY = 0
MAX_PRIORITY = 100

# Columns administrators may set through create/update
EDITABLE_FIELDS: FrozenSet[str] = frozenset({
    "company_id", "branch_id", "is_global", "name", "description", "stage",
    "applies_to", "priority", "warning_threshold", "escalation_threshold",
    "critical_threshold", "use_business_hours", "exclude_weekends",
    "exclude_holidays", "business_hours", "timezone", "escalation_level",
    "escalation_to_user_id", "notify_current_assignee", "notify_branch_admin",
    "notify_company_admin", "notify_super_admin", "notify_emails",
    "auto_reassign", "reassign_to_user_id", "auto_change_priority",
    "new_priority", "conditions", "is_active",
})


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


# ==== MATCHING AND ORDERING ==== #


def rule_matches(
    rule: EscalationRule,
    company_id: Optional[str],
    branch_id: Optional[str],
    case_type: Optional[str],
    stage: Any,
    context: Optional[Mapping[str, Any]] = None,
) -> bool:
    """
    Check whether a rule governs a case in the given stage.

    Args:
        rule: Candidate rule
        company_id: Company of the case
        branch_id: Branch of the case, may be None
        case_type: ``incident`` or ``feedback``
        stage: Current stage of the case
        context: Case field values for ``conditions`` matching

    Returns:
        bool: True when every matching criterion holds
    """
    if not rule.is_active or rule.deleted_at is not None:
        return False
    if rule.stage != _value(stage):
        return False
    if rule.applies_to != "all" and rule.applies_to != _value(case_type):
        return False
    if not rule.is_global and rule.company_id is not None and rule.company_id != company_id:
        return False
    if rule.branch_id is not None and rule.branch_id != branch_id:
        return False

    context = context or {}
    for key, allowed in (rule.conditions or {}).items():
        if key not in context:
            return False
        allowed_values = allowed if isinstance(allowed, (list, tuple, set, frozenset)) else [allowed]
        if context[key] not in allowed_values:
            return False

    return True


def rule_specificity(rule: EscalationRule) -> int:
    """2 for branch scoped, 1 for company scoped, 0 for global rules."""
    if rule.branch_id is not None:
        return 2
    if rule.company_id is not None and not rule.is_global:
        return 1
    return 0


def rule_sort_key(rule: EscalationRule) -> tuple:
    return (
        -(rule.priority or 0),
        -rule_specificity(rule),
        rule.created_at or dt.datetime.min,
        rule.id or "",
    )


def order_rules(rules: Iterable[EscalationRule]) -> List[EscalationRule]:
    return sorted(rules, key=rule_sort_key)


def select_rule(rules: Iterable[EscalationRule]) -> Optional[EscalationRule]:
    """
    First-match-wins: the single rule that governs a case.

    Args:
        rules: Applicable rules in any order

    Returns:
        Optional[EscalationRule]: Highest priority, most specific rule
    """
    ordered = order_rules(rules)
    return ordered[0] if ordered else None


# ==== CALENDARS ==== #


def calendar_for_rule(
    rule: EscalationRule,
    holidays: Iterable[dt.date] = (),
) -> BusinessCalendar:
    """
    Business calendar a rule measures elapsed time with.

    Rules without their own weekly template use the packaged default.
    """
    if not rule.use_business_hours:
        return BusinessCalendar.always_open()

    hours = rule.business_hours if rule.business_hours is not None else get_default_business_hours()
    return BusinessCalendar(
        weekly_hours=parse_business_hours(hours),
        use_business_hours=True,
        exclude_weekends=rule.exclude_weekends,
        exclude_holidays=rule.exclude_holidays,
        holidays=frozenset(holidays),
        timezone=rule.timezone or settings.DEFAULT_CALENDAR_TIMEZONE,
    )


# ==== VALIDATION ==== #


def validate_thresholds(
    warning: Optional[int],
    escalation: Optional[int],
    critical: Optional[int],
) -> None:
    """
    Enforce threshold presence and ordering.

    Raises:
        ConfigurationError: When escalation is missing, a threshold is below
            one minute, warning is not below escalation, or critical is not
            above escalation
    """
    if escalation is None:
        raise ConfigurationError("escalation_threshold is required")

    for name, value in (("warning_threshold", warning),
                        ("escalation_threshold", escalation),
                        ("critical_threshold", critical)):
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
            raise ConfigurationError(
                f"{name} must be a whole number of minutes of at least 1",
                {"field": name, "value": value},
            )

    if warning is not None and warning >= escalation:
        raise ConfigurationError(
            "warning_threshold must be lower than escalation_threshold",
            {"warning_threshold": warning, "escalation_threshold": escalation},
        )
    if critical is not None and critical <= escalation:
        raise ConfigurationError(
            "critical_threshold must be greater than escalation_threshold",
            {"critical_threshold": critical, "escalation_threshold": escalation},
        )


def validate_rule_definition(values: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate a complete rule definition and normalise enum-like fields.

    Args:
        values: Full set of rule column values

    Returns:
        Dict[str, Any]: Normalised values ready to assign to the model

    Raises:
        ConfigurationError: On any malformed field
    """
    data = {key: _value(value) for key, value in values.items()}

    if not data.get("name"):
        raise ConfigurationError("name is required")

    try:
        Stage(data.get("stage"))
    except ValueError:
        raise ConfigurationError(f"Unknown stage {data.get('stage')!r}") from None

    if data.get("applies_to", "all") not in RULE_CASE_TYPES:
        raise ConfigurationError(f"applies_to must be one of {sorted(RULE_CASE_TYPES)}")

    priority = data.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ConfigurationError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")

    validate_thresholds(
        data.get("warning_threshold"),
        data.get("escalation_threshold"),
        data.get("critical_threshold"),
    )

    try:
        data["escalation_level"] = parse_level(data.get("escalation_level", 1))
    except ValueError as e:
        raise ConfigurationError(str(e)) from None

    if not data.get("is_global") and not data.get("company_id"):
        raise ConfigurationError("company_id is required unless the rule is global")
    if data.get("branch_id") and not data.get("company_id"):
        raise ConfigurationError("branch scoped rules need a company_id")

    if data.get("business_hours") is not None:
        try:
            parse_business_hours(data["business_hours"])
        except ValueError as e:
            raise ConfigurationError(f"Invalid business_hours: {e}") from None

    if data.get("timezone"):
        try:
            ZoneInfo(data["timezone"])
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"Unknown timezone {data['timezone']!r}") from None

    emails = data.get("notify_emails") or []
    if not isinstance(emails, list) or any(not isinstance(e, str) or "@" not in e for e in emails):
        raise ConfigurationError("notify_emails must be a list of email addresses")

    if data.get("auto_reassign") and not data.get("reassign_to_user_id"):
        raise ConfigurationError("auto_reassign needs reassign_to_user_id")
    if data.get("auto_change_priority") and data.get("new_priority") not in PRIORITY_RANK:
        raise ConfigurationError(f"new_priority must be one of {list(PRIORITY_RANK)}")
    if data.get("new_priority") is not None and data["new_priority"] not in PRIORITY_RANK:
        raise ConfigurationError(f"new_priority must be one of {list(PRIORITY_RANK)}")

    conditions = data.get("conditions")
    if conditions is not None:
        if not isinstance(conditions, Mapping) or any(
            not isinstance(allowed, list) or not allowed for allowed in conditions.values()
        ):
            raise ConfigurationError("conditions must map field names to non-empty value lists")

    return data


# ==== CATALOG SERVICE ==== #


class EscalationRuleCatalog:
    """
    Persistence and lookup of escalation rules.

    Bound to a session; the caller owns the transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def matching_rules(
        self,
        company_id: Optional[str],
        branch_id: Optional[str],
        case_type: Optional[str],
        stage: Any,
        context: Optional[Mapping[str, Any]] = None,
    ) -> List[EscalationRule]:
        """
        Active rules applicable to a case, in evaluation order.

        Args:
            company_id: Company of the case
            branch_id: Branch of the case
            case_type: Case type
            stage: Current stage
            context: Case field values for ``conditions``

        Returns:
            List[EscalationRule]: Ordered candidates, first one wins
        """
        with tracer.start_as_current_span("rule_catalog.matching_rules") as span:
            span.set_attribute("company_id", company_id or "")
            span.set_attribute("stage", str(_value(stage)))

            query = select(EscalationRule).where(
                EscalationRule.is_active.is_(True),
                EscalationRule.deleted_at.is_(None),
                EscalationRule.stage == _value(stage),
                or_(
                    EscalationRule.company_id == company_id,
                    EscalationRule.company_id.is_(None),
                    EscalationRule.is_global.is_(True),
                ),
                or_(
                    EscalationRule.branch_id.is_(None),
                    EscalationRule.branch_id == branch_id,
                ),
            )
            result = await self.db.execute(query)
            candidates = [
                rule for rule in result.scalars().all()
                if rule_matches(rule, company_id, branch_id, case_type, stage, context)
            ]

            span.set_attribute("matches", len(candidates))
            return order_rules(candidates)

    async def holidays_for(self, company_id: Optional[str]) -> FrozenSet[dt.date]:
        """Holiday dates for a company, including holidays shared by all companies."""
        query = select(BusinessHoliday.holiday_date).where(
            or_(
                BusinessHoliday.company_id.is_(None),
                BusinessHoliday.company_id == company_id,
            )
        )
        result = await self.db.execute(query)
        return frozenset(result.scalars().all())

    async def calendar_for(self, rule: EscalationRule, company_id: Optional[str]) -> BusinessCalendar:
        holidays: FrozenSet[dt.date] = frozenset()
        if rule.use_business_hours and rule.exclude_holidays:
            holidays = await self.holidays_for(company_id)
        return calendar_for_rule(rule, holidays)

    # --► RULE CRUD

    async def get_rule(self, rule_id: str, include_deleted: bool = False) -> EscalationRule:
        """
        Load a rule by id.

        Raises:
            RuleNotFoundError: When the rule does not exist or is soft-deleted
        """
        rule = await self.db.get(EscalationRule, rule_id)
        if rule is None or (rule.deleted_at is not None and not include_deleted):
            raise RuleNotFoundError(f"Escalation rule {rule_id} not found", {"rule_id": rule_id})
        return rule

    async def list_rules(
        self,
        company_id: Optional[str] = None,
        stage: Any = None,
        include_inactive: bool = False,
    ) -> List[EscalationRule]:
        query = select(EscalationRule).where(EscalationRule.deleted_at.is_(None))
        if company_id is not None:
            query = query.where(or_(
                EscalationRule.company_id == company_id,
                EscalationRule.is_global.is_(True),
            ))
        if stage is not None:
            query = query.where(EscalationRule.stage == _value(stage))
        if not include_inactive:
            query = query.where(EscalationRule.is_active.is_(True))

        result = await self.db.execute(query)
        return order_rules(result.scalars().all())

    async def create_rule(
        self,
        values: Mapping[str, Any],
        created_by: Optional[str] = None,
    ) -> EscalationRule:
        """
        Validate and store a new rule.

        Raises:
            ConfigurationError: When the definition is malformed
        """
        unknown = set(values) - EDITABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown rule fields: {sorted(unknown)}")

        data = {**get_rule_defaults(), **{k: v for k, v in values.items() if v is not None}}
        data = validate_rule_definition(data)

        rule = EscalationRule(**data, created_by=created_by, updated_by=created_by)
        self.db.add(rule)
        await self.db.flush()

        logger.info(
            "Escalation rule created",
            rule_id=rule.id,
            company_id=rule.company_id,
            stage=rule.stage,
            priority=rule.priority,
        )
        return rule

    async def update_rule(
        self,
        rule_id: str,
        changes: Mapping[str, Any],
        updated_by: Optional[str] = None,
    ) -> EscalationRule:
        """
        Apply a partial update; the merged rule is validated as a whole.

        Raises:
            RuleNotFoundError: When the rule does not exist
            ConfigurationError: When the merged definition is malformed
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown rule fields: {sorted(unknown)}")

        rule = await self.get_rule(rule_id)
        current = {field: getattr(rule, field) for field in EDITABLE_FIELDS}
        data = validate_rule_definition({**current, **changes})

        for field in changes:
            setattr(rule, field, data[field])
        rule.updated_by = updated_by
        await self.db.flush()

        logger.info("Escalation rule updated", rule_id=rule.id, fields=sorted(changes))
        return rule

    async def set_active(self, rule_id: str, active: bool, updated_by: Optional[str] = None) -> EscalationRule:
        rule = await self.get_rule(rule_id)
        rule.is_active = active
        rule.updated_by = updated_by
        await self.db.flush()
        return rule

    async def toggle_active(self, rule_id: str, updated_by: Optional[str] = None) -> EscalationRule:
        rule = await self.get_rule(rule_id)
        return await self.set_active(rule_id, not rule.is_active, updated_by)

    async def deactivate_rule(
        self,
        rule_id: str,
        deleted_by: Optional[str] = None,
        now: Optional[dt.datetime] = None,
    ) -> EscalationRule:
        """Soft delete: the row stays so escalations keep their rule reference."""
        rule = await self.get_rule(rule_id)
        rule.is_active = False
        rule.deleted_at = as_naive_utc(now) if now else utcnow()
        rule.updated_by = deleted_by
        await self.db.flush()

        logger.info("Escalation rule deactivated", rule_id=rule.id, deleted_by=deleted_by)
        return rule
