"""Unit tests for escalation rule matching, ordering and administration."""

import pytest
from datetime import date, datetime

from casewatch.business.errors import ConfigurationError, RuleNotFoundError
from casewatch.services.rule_catalog import (
    EscalationRuleCatalog,
    calendar_for_rule,
    order_rules,
    rule_matches,
    select_rule,
    validate_rule_definition,
    validate_thresholds,
)
from casewatch.storage.models import BusinessHoliday


def matches(rule, company_id="acme", branch_id="north", case_type="incident", stage="triage", context=None):
    return rule_matches(rule, company_id, branch_id, case_type, stage, context)


@pytest.mark.unit
class TestRuleMatching:
    """Pure applicability checks."""

    def test_company_rule_matches_own_cases(self, make_rule):
        rule = make_rule()

        assert matches(rule)
        assert not matches(rule, company_id="globex")

    def test_stage_must_match(self, make_rule):
        assert not matches(make_rule(stage="investigation"))

    def test_inactive_and_deleted_rules_never_match(self, make_rule):
        assert not matches(make_rule(is_active=False))
        assert not matches(make_rule(deleted_at=datetime(2024, 1, 2)))

    def test_applies_to_filters_case_type(self, make_rule):
        rule = make_rule(applies_to="feedback")

        assert matches(rule, case_type="feedback")
        assert not matches(rule, case_type="incident")

    def test_branch_scope(self, make_rule):
        rule = make_rule(branch_id="north")

        assert matches(rule, branch_id="north")
        assert not matches(rule, branch_id="south")
        assert not matches(rule, branch_id=None)

    def test_global_rule_matches_every_company(self, make_rule):
        rule = make_rule(company_id=None, is_global=True)

        assert matches(rule, company_id="acme")
        assert matches(rule, company_id="globex")

    def test_conditions_match_case_fields(self, make_rule):
        rule = make_rule(conditions={"priority": ["high", "urgent"]})

        assert matches(rule, context={"priority": "urgent"})
        assert not matches(rule, context={"priority": "low"})
        assert not matches(rule, context={})


@pytest.mark.unit
class TestRuleOrdering:
    """First-match-wins ordering."""

    def test_higher_priority_wins(self, make_rule):
        low = make_rule(name="low", priority=1)
        high = make_rule(name="high", priority=50)

        assert select_rule([low, high]) is high

    def test_specificity_breaks_priority_ties(self, make_rule):
        global_rule = make_rule(name="global", company_id=None, is_global=True)
        company_rule = make_rule(name="company")
        branch_rule = make_rule(name="branch", branch_id="north")

        ordered = order_rules([global_rule, company_rule, branch_rule])

        assert [r.name for r in ordered] == ["branch", "company", "global"]

    def test_older_rule_wins_final_tie(self, make_rule):
        older = make_rule(name="older", created_at=datetime(2023, 1, 1))
        newer = make_rule(name="newer", created_at=datetime(2024, 1, 1))

        assert select_rule([newer, older]) is older

    def test_no_rules(self):
        assert select_rule([]) is None


@pytest.mark.unit
class TestRuleValidation:
    """Threshold ordering and field validation."""

    def test_valid_thresholds(self):
        validate_thresholds(30, 60, 120)
        validate_thresholds(None, 60, None)

    @pytest.mark.parametrize("warning,escalation,critical", [
        (None, None, None),
        (60, 60, None),
        (90, 60, None),
        (None, 60, 60),
        (None, 60, 30),
        (None, 0, None),
        (-5, 60, None),
    ])
    def test_invalid_thresholds(self, warning, escalation, critical):
        with pytest.raises(ConfigurationError):
            validate_thresholds(warning, escalation, critical)

    def base_definition(self, **overrides):
        values = {
            "name": "Triage SLA",
            "company_id": "acme",
            "stage": "triage",
            "applies_to": "all",
            "priority": 0,
            "escalation_threshold": 120,
            "escalation_level": "level_2",
        }
        values.update(overrides)
        return values

    def test_level_is_normalised(self):
        assert validate_rule_definition(self.base_definition())["escalation_level"] == 2

    @pytest.mark.parametrize("overrides", [
        {"stage": "limbo"},
        {"applies_to": "complaint"},
        {"priority": 101},
        {"escalation_level": 4},
        {"company_id": None},
        {"company_id": None, "is_global": True, "branch_id": "north"},
        {"business_hours": {"monday": {"start": "9am", "end": "5pm"}}},
        {"timezone": "Mars/Olympus_Mons"},
        {"notify_emails": ["not-an-email"]},
        {"auto_reassign": True},
        {"auto_change_priority": True, "new_priority": "critical"},
        {"conditions": {"priority": []}},
    ])
    def test_rejects_malformed_definitions(self, overrides):
        with pytest.raises(ConfigurationError):
            validate_rule_definition(self.base_definition(**overrides))

    def test_global_rule_needs_no_company(self):
        data = validate_rule_definition(self.base_definition(company_id=None, is_global=True))

        assert data["is_global"] is True


@pytest.mark.unit
class TestRuleCalendars:
    def test_rule_without_business_hours_is_wall_clock(self, make_rule):
        calendar = calendar_for_rule(make_rule(use_business_hours=False))

        assert calendar.use_business_hours is False

    def test_default_template_applies(self, make_rule):
        calendar = calendar_for_rule(make_rule(use_business_hours=True))

        assert calendar.window_for(date(2024, 3, 4)).open_minute == 9 * 60
        assert calendar.window_for(date(2024, 3, 9)) is None
        assert calendar.timezone == "UTC"

    def test_rule_template_and_timezone(self, make_rule):
        rule = make_rule(
            use_business_hours=True,
            business_hours={"monday": {"start": "07:00", "end": "15:00"}},
            timezone="Europe/Berlin",
        )
        calendar = calendar_for_rule(rule, holidays=[date(2024, 12, 25)])

        assert calendar.window_for(date(2024, 3, 4)).open_minute == 7 * 60
        assert calendar.window_for(date(2024, 3, 5)) is None
        assert calendar.timezone == "Europe/Berlin"
        assert date(2024, 12, 25) in calendar.holidays


@pytest.mark.unit
class TestEscalationRuleCatalog:
    """Catalog queries and CRUD against the database."""

    @pytest.mark.asyncio
    async def test_create_rule_applies_defaults(self, session_factory):
        async with session_factory() as db:
            rule = await EscalationRuleCatalog(db).create_rule(
                {"name": "Triage SLA", "company_id": "acme", "stage": "triage", "escalation_threshold": 240},
                created_by="admin-1",
            )

        assert rule.id
        assert rule.applies_to == "all"
        assert rule.escalation_level == 1
        assert rule.use_business_hours is True
        assert rule.is_active is True
        assert rule.created_by == "admin-1"

    @pytest.mark.asyncio
    async def test_create_rule_rejects_unknown_fields(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(ConfigurationError, match="Unknown rule fields"):
                await EscalationRuleCatalog(db).create_rule(
                    {"name": "x", "company_id": "acme", "stage": "triage",
                     "escalation_threshold": 60, "colour": "red"}
                )

    @pytest.mark.asyncio
    async def test_update_revalidates_merged_rule(self, session_factory, persist, make_rule):
        rule = await persist(make_rule(warning_threshold=60, escalation_threshold=120, critical_threshold=None))

        async with session_factory() as db:
            with pytest.raises(ConfigurationError):
                await EscalationRuleCatalog(db).update_rule(rule.id, {"escalation_threshold": 30})

        async with session_factory() as db:
            updated = await EscalationRuleCatalog(db).update_rule(
                rule.id, {"escalation_threshold": 90}, updated_by="admin-2"
            )

        assert updated.escalation_threshold == 90
        assert updated.updated_by == "admin-2"

    @pytest.mark.asyncio
    async def test_matching_rules_in_evaluation_order(self, session_factory, persist, make_rule):
        await persist(
            make_rule(name="company"),
            make_rule(name="branch", branch_id="north"),
            make_rule(name="global", company_id=None, is_global=True),
            make_rule(name="other company", company_id="globex"),
            make_rule(name="other stage", stage="investigation"),
            make_rule(name="boosted", priority=10),
        )

        async with session_factory() as db:
            rules = await EscalationRuleCatalog(db).matching_rules("acme", "north", "incident", "triage")

        assert [r.name for r in rules] == ["boosted", "branch", "company", "global"]

    @pytest.mark.asyncio
    async def test_soft_deleted_rule_is_hidden(self, session_factory, persist, make_rule):
        rule = await persist(make_rule())

        async with session_factory() as db:
            await EscalationRuleCatalog(db).deactivate_rule(rule.id, deleted_by="admin-1")

        async with session_factory() as db:
            catalog = EscalationRuleCatalog(db)
            assert await catalog.matching_rules("acme", "north", "incident", "triage") == []
            with pytest.raises(RuleNotFoundError):
                await catalog.get_rule(rule.id)
            kept = await catalog.get_rule(rule.id, include_deleted=True)

        assert kept.deleted_at is not None
        assert kept.is_active is False

    @pytest.mark.asyncio
    async def test_toggle_active(self, session_factory, persist, make_rule):
        rule = await persist(make_rule())

        async with session_factory() as db:
            toggled = await EscalationRuleCatalog(db).toggle_active(rule.id)
        assert toggled.is_active is False

        async with session_factory() as db:
            catalog = EscalationRuleCatalog(db)
            assert await catalog.list_rules("acme") == []
            assert len(await catalog.list_rules("acme", include_inactive=True)) == 1

    @pytest.mark.asyncio
    async def test_calendar_includes_company_and_shared_holidays(self, session_factory, persist, make_rule):
        rule = await persist(make_rule(use_business_hours=True))
        await persist(
            BusinessHoliday(company_id=None, holiday_date=date(2024, 1, 1), name="New Year"),
            BusinessHoliday(company_id="acme", holiday_date=date(2024, 3, 11), name="Founders Day"),
            BusinessHoliday(company_id="globex", holiday_date=date(2024, 3, 12), name="Other"),
        )

        async with session_factory() as db:
            calendar = await EscalationRuleCatalog(db).calendar_for(rule, "acme")

        assert calendar.holidays == frozenset({date(2024, 1, 1), date(2024, 3, 11)})
