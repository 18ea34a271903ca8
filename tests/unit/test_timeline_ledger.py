"""Unit tests for the case timeline ledger."""

import pytest
from datetime import timedelta

from sqlalchemy import select

from casewatch.business.errors import TimelineOrderError
from casewatch.business.lifecycle import Actor
from casewatch.services.business_clock import BusinessCalendar, parse_business_hours
from casewatch.services.timeline_ledger import SYSTEM_RESOLVER, TimelineLedger
from casewatch.storage.models import Escalation


def minutes(n):
    return timedelta(minutes=n)


@pytest.mark.unit
class TestAppend:
    """Sequencing and derived durations."""

    @pytest.mark.asyncio
    async def test_sequence_and_durations(self, persist, append_event, make_case, base_time):
        case = await persist(make_case())

        first = await append_event(case, "submitted", "submission", base_time, Actor.reporter("reporter-1"))
        second = await append_event(case, "acknowledged", "triage", base_time + minutes(30))
        third = await append_event(case, "comment_added", "triage", base_time + minutes(90), Actor.user("agent-7"))

        assert [first.sequence, second.sequence, third.sequence] == [1, 2, 3]

        assert first.duration_from_previous is None
        assert first.duration_in_stage == 0
        assert first.total_case_duration == 0
        assert first.stage_occurrence_id == first.id
        assert first.actor_type == "reporter"

        assert second.previous_stage == "submission"
        assert second.duration_from_previous == 30
        assert second.duration_in_stage == 0
        assert second.total_case_duration == 30
        assert second.stage_entered_at == base_time + minutes(30)

        assert third.previous_stage is None
        assert third.stage_occurrence_id == second.stage_occurrence_id
        assert third.duration_from_previous == 60
        assert third.duration_in_stage == 60
        assert third.total_case_duration == 90
        assert (third.actor_type, third.actor_id) == ("user", "agent-7")

    @pytest.mark.asyncio
    async def test_first_event_in_status_stage_continues_from_creation(
        self, persist, append_event, make_case, base_time
    ):
        case = await persist(make_case(status="open"))

        first = await append_event(case, "escalated", "triage", base_time + minutes(130))

        assert first.stage_entered_at == base_time
        assert first.duration_in_stage == 130
        assert first.total_case_duration == 130

    @pytest.mark.asyncio
    async def test_first_event_in_other_stage_opens_it_now(
        self, persist, append_event, make_case, base_time
    ):
        case = await persist(make_case(status="open"))

        first = await append_event(case, "assigned", "assignment", base_time + minutes(40))
        later = await append_event(case, "comment_added", "assignment", base_time + minutes(60))

        assert first.stage_entered_at == base_time + minutes(40)
        assert first.duration_in_stage == 0
        assert first.total_case_duration == 40
        assert later.duration_in_stage == 20
        assert later.total_case_duration == 60

    @pytest.mark.asyncio
    async def test_same_instant_is_allowed(self, persist, append_event, make_case, base_time):
        case = await persist(make_case())

        await append_event(case, "submitted", "submission", base_time)
        second = await append_event(case, "comment_added", "submission", base_time)

        assert second.sequence == 2
        assert second.duration_from_previous == 0

    @pytest.mark.asyncio
    async def test_rejects_out_of_order_event(self, persist, append_event, make_case, base_time):
        case = await persist(make_case())
        await append_event(case, "submitted", "submission", base_time)

        with pytest.raises(TimelineOrderError):
            await append_event(case, "acknowledged", "triage", base_time - minutes(1))

    @pytest.mark.asyncio
    async def test_rejects_unknown_fields_and_stages(self, persist, append_event, make_case, base_time):
        case = await persist(make_case())

        with pytest.raises(ValueError):
            await append_event(case, "submitted", "submission", base_time, colour="red")
        with pytest.raises(ValueError):
            await append_event(case, "submitted", "limbo", base_time)
        with pytest.raises(ValueError):
            await append_event(case, "teleported", "triage", base_time)

    @pytest.mark.asyncio
    async def test_business_calendar_durations(self, session_factory, persist, make_case, base_time):
        friday = base_time.replace(day=8, hour=16)
        case = await persist(make_case(created_at=friday))
        calendar = BusinessCalendar(weekly_hours=parse_business_hours({
            "monday": {"start": "09:00", "end": "17:00"},
            "friday": {"start": "09:00", "end": "17:00"},
        }))

        monday = friday + timedelta(days=3, hours=-6)

        async with session_factory() as db:
            ledger = TimelineLedger(db)
            await ledger.append(case, "acknowledged", "triage", Actor.system(), friday, calendar=calendar)
            event = await ledger.append(case, "comment_added", "triage", Actor.system(), monday, calendar=calendar)

        # Friday 16:00 to Monday 10:00 is one business hour on each side
        assert event.duration_in_stage == 120
        assert event.total_case_duration == 120


@pytest.mark.unit
class TestStageOccurrences:
    """Re-entering a stage starts a fresh occurrence."""

    @pytest.mark.asyncio
    async def test_reentry_resets_stage_clock(self, persist, append_event, make_case, base_time):
        case = await persist(make_case())

        first = await append_event(case, "submitted", "submission", base_time)
        await append_event(case, "comment_added", "submission", base_time + minutes(10))
        await append_event(case, "acknowledged", "triage", base_time + minutes(20))
        reentered = await append_event(case, "reopened", "submission", base_time + minutes(50))
        last = await append_event(case, "comment_added", "submission", base_time + minutes(80))

        assert reentered.stage_occurrence_id != first.stage_occurrence_id
        assert reentered.previous_stage == "triage"
        assert reentered.duration_in_stage == 0
        assert last.duration_in_stage == 30
        assert last.total_case_duration == 80

    @pytest.mark.asyncio
    async def test_duration_summary_sums_occurrences(
        self, session_factory, persist, append_event, make_case, base_time
    ):
        case = await persist(make_case())

        await append_event(case, "submitted", "submission", base_time)
        await append_event(case, "comment_added", "submission", base_time + minutes(10))
        await append_event(case, "acknowledged", "triage", base_time + minutes(20))
        await append_event(case, "reopened", "submission", base_time + minutes(50))
        await append_event(case, "comment_added", "submission", base_time + minutes(80))

        async with session_factory() as db:
            summary = await TimelineLedger(db).duration_summary(case.id)

        assert summary.current_stage == "submission"
        assert summary.total_minutes == 80
        assert summary.current_stage_minutes == 30
        assert summary.stage_minutes == {"submission": 40, "triage": 0}
        assert summary.stage_occurrences == {"submission": 2, "triage": 1}
        assert summary.event_count == 5
        assert summary.escalation_count == 0

    @pytest.mark.asyncio
    async def test_empty_timeline_summary(self, session_factory, persist, make_case):
        case = await persist(make_case())

        async with session_factory() as db:
            ledger = TimelineLedger(db)
            summary = await ledger.duration_summary(case.id)
            entry = await ledger.latest_stage_entry(case.id)

        assert summary.current_stage is None
        assert summary.total_minutes == 0
        assert entry is None

    @pytest.mark.asyncio
    async def test_stage_exit_resolves_open_escalations(
        self, session_factory, persist, append_event, make_case, base_time
    ):
        case = await persist(make_case())
        entered = await append_event(case, "acknowledged", "triage", base_time)
        escalation = await persist(Escalation(
            case_id=case.id,
            stage="triage",
            stage_occurrence_id=entered.stage_occurrence_id,
            escalation_level=1,
            reason="Case in triage for 2h (threshold 2h)",
            created_at=base_time + minutes(120),
        ))

        async with session_factory() as db:
            ledger = TimelineLedger(db)
            assert await ledger.unresolved_escalation_level(case.id, "triage") == 1
            assert await ledger.unresolved_escalation_level(case.id, "assignment") == 0

        await append_event(case, "assigned", "assignment", base_time + minutes(150), assigned_to="agent-7")

        async with session_factory() as db:
            stored = (await db.execute(select(Escalation).where(Escalation.id == escalation.id))).scalar_one()
            level = await TimelineLedger(db).unresolved_escalation_level(case.id, "assignment")

        assert stored.is_resolved is True
        assert stored.resolved_by == SYSTEM_RESOLVER
        assert stored.resolved_at == base_time + minutes(150)
        assert "triage" in stored.resolution_note
        assert level == 0

    @pytest.mark.asyncio
    async def test_same_stage_event_keeps_escalations_open(
        self, session_factory, persist, append_event, make_case, base_time
    ):
        case = await persist(make_case())
        entered = await append_event(case, "acknowledged", "triage", base_time)
        await persist(Escalation(
            case_id=case.id,
            stage="triage",
            stage_occurrence_id=entered.stage_occurrence_id,
            escalation_level=2,
            reason="overdue",
        ))

        await append_event(case, "comment_added", "triage", base_time + minutes(200))

        async with session_factory() as db:
            assert await TimelineLedger(db).unresolved_escalation_level(case.id, "triage") == 2


@pytest.mark.unit
class TestReads:
    @pytest.mark.asyncio
    async def test_internal_events_hidden_from_public_view(
        self, session_factory, persist, append_event, make_case, base_time
    ):
        case = await persist(make_case())
        await append_event(case, "submitted", "submission", base_time)
        await append_event(case, "comment_added", "submission", base_time + minutes(5), is_internal=True)

        async with session_factory() as db:
            ledger = TimelineLedger(db)
            everything = await ledger.get_timeline(case.id)
            public = await ledger.get_timeline(case.id, include_internal=False)

        assert [e.sequence for e in everything] == [1, 2]
        assert [e.sequence for e in public] == [1]

    @pytest.mark.asyncio
    async def test_warning_emitted(self, session_factory, persist, append_event, make_case, base_time):
        case = await persist(make_case())
        entered = await append_event(case, "acknowledged", "triage", base_time)

        async with session_factory() as db:
            assert not await TimelineLedger(db).warning_emitted(case.id, entered.stage_occurrence_id)

        await append_event(case, "sla_warning", "triage", base_time + minutes(60), is_internal=True)

        async with session_factory() as db:
            assert await TimelineLedger(db).warning_emitted(case.id, entered.stage_occurrence_id)


@pytest.mark.unit
class TestSlaStamping:
    """Deadline fields derived from the governing rule."""

    @pytest.mark.asyncio
    async def test_sla_fields_from_rule(self, session_factory, persist, make_case, make_rule, base_time):
        case = await persist(make_case())
        rule = make_rule(escalation_threshold=120, use_business_hours=False)

        async with session_factory() as db:
            ledger = TimelineLedger(db)
            entered = await ledger.append(case, "acknowledged", "triage", Actor.system(), base_time, rule=rule)
            late = await ledger.append(
                case, "comment_added", "triage", Actor.system(), base_time + minutes(150), rule=rule
            )

        assert entered.sla_deadline == base_time + minutes(120)
        assert entered.sla_remaining_minutes == 120
        assert entered.sla_breached is False

        assert late.sla_deadline == base_time + minutes(120)
        assert late.sla_remaining_minutes == -30
        assert late.sla_breached is True

    @pytest.mark.asyncio
    async def test_events_without_rule_carry_no_deadline(self, persist, append_event, make_case, base_time):
        case = await persist(make_case())

        event = await append_event(case, "submitted", "submission", base_time)

        assert event.sla_deadline is None
        assert event.sla_remaining_minutes is None
        assert event.sla_breached is False
