# ==== ESCALATION EVALUATOR ==== #

"""
SLA escalation evaluator for casewatch.

For every open case: find the stage occurrence it is in, pick the governing
rule, measure business minutes in stage and decide whether a warning or a
new escalation level is due. Decisions are handed to the action executor,
which is the only component that writes escalations.

Evaluation passes are safe to run from several workers at once and to
overlap with each other. Duplicate suppression lives in the database, not in
this process.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, select

from casewatch.business.lifecycle import ESCALATABLE_STATUSES, stage_for_status
from casewatch.observability.logging import get_logger, log_performance
from casewatch.observability.metrics import (
    cases_evaluated_total,
    evaluation_failures_total,
    evaluation_pass_duration_seconds,
    open_escalations,
)
from casewatch.observability.tracing import get_tracer
from casewatch.services.business_clock import as_naive_utc, elapsed_minutes
from casewatch.services.escalation_executor import (
    EscalationActionExecutor,
    get_escalation_executor,
)
from casewatch.services.rule_catalog import EscalationRuleCatalog, select_rule
from casewatch.services.timeline_ledger import TimelineLedger
from casewatch.settings import settings
from casewatch.storage.db import SessionScope, get_session
from casewatch.storage.models import CaseRecord, Escalation


tracer = get_tracer(__name__)
logger = get_logger(__name__)


# --► EVALUATION OUTCOMES
SKIPPED_STATUS = "skipped_status"
NO_RULE = "no_rule"
NO_ACTION = "no_action"
WOULD_WARN = "would_warn"
WOULD_ESCALATE = "would_escalate"
WARNED = "warned"
WARNING_SUPPRESSED = "warning_suppressed"
ESCALATED = "escalated"
DUPLICATE = "duplicate"
STAGE_CHANGED = "stage_changed"


# ==== LEVEL SELECTION ==== #


@dataclass(frozen=True)
class LevelDecision:
    """Level to act on and the threshold that was crossed to reach it."""

    level: int
    threshold: int

    @property
    def is_warning(self) -> bool:
        return self.level == 0


def select_level(
    elapsed: int,
    escalation_threshold: int,
    escalation_level: int = 1,
    warning_threshold: Optional[int] = None,
    critical_threshold: Optional[int] = None,
    current_level: int = 0,
    warning_emitted: bool = False,
) -> Optional[LevelDecision]:
    """
    Highest-threshold-crossed wins.

    Only the single highest crossed threshold is considered. A case idle past
    the critical threshold goes straight to level 3 without passing through
    the rule's regular escalation level first.

    Args:
        elapsed: Business minutes in the current stage occurrence
        escalation_threshold: Minutes before the rule's escalation level fires
        escalation_level: Level raised at ``escalation_threshold``
        warning_threshold: Minutes before a warning, optional
        critical_threshold: Minutes before level 3, optional
        current_level: Highest unresolved level in this occurrence
        warning_emitted: Whether this occurrence was already warned

    Returns:
        Optional[LevelDecision]: Level 0 for a warning, 1-3 for an
        escalation, None when nothing new is due
    """
    if critical_threshold is not None and elapsed >= critical_threshold:
        decision = LevelDecision(3, critical_threshold)
    elif elapsed >= escalation_threshold:
        decision = LevelDecision(escalation_level, escalation_threshold)
    elif warning_threshold is not None and elapsed >= warning_threshold:
        decision = LevelDecision(0, warning_threshold)
    else:
        return None

    if decision.is_warning:
        if current_level > 0 or warning_emitted:
            return None
        return decision

    return decision if decision.level > current_level else None


def build_reason(stage: str, threshold: int, overdue: int) -> str:
    return (
        f"Case overdue in {stage} stage. "
        f"Threshold: {threshold} minutes. Overdue by: {overdue} minutes."
    )


# ==== EVALUATION RESULTS ==== #


@dataclass
class CaseEvaluation:
    case_id: str
    outcome: str
    stage: Optional[str] = None
    rule_id: Optional[str] = None
    rule_name: Optional[str] = None
    elapsed_minutes: Optional[int] = None
    current_level: int = 0
    decision: Optional[LevelDecision] = None
    escalation_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class EvaluationReport:
    """Result of one evaluation pass over many cases."""

    evaluated_at: datetime
    dry_run: bool = False
    evaluations: List[CaseEvaluation] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def counts(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for evaluation in self.evaluations:
            totals[evaluation.outcome] = totals.get(evaluation.outcome, 0) + 1
        return totals

    @property
    def escalated(self) -> List[CaseEvaluation]:
        return [e for e in self.evaluations if e.outcome == ESCALATED]

    @property
    def warned(self) -> List[CaseEvaluation]:
        return [e for e in self.evaluations if e.outcome == WARNED]


# ==== EVALUATOR ==== #


class EscalationEvaluator:
    """
    Periodic SLA evaluation over open cases.

    Args:
        session_factory: Transactional session scope for reads
        executor: Writer for warnings and escalations
        concurrency: Cases evaluated at the same time
    """

    def __init__(
        self,
        session_factory: SessionScope = get_session,
        executor: Optional[EscalationActionExecutor] = None,
        concurrency: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.executor = executor or EscalationActionExecutor(session_factory)
        self.concurrency = max(1, concurrency or settings.ESCALATION_WORKER_CONCURRENCY)

    async def evaluate_case(
        self,
        case: CaseRecord,
        now: datetime,
        dry_run: bool = False,
    ) -> CaseEvaluation:
        """
        Evaluate one case and act on the decision.

        Args:
            case: Case to evaluate
            now: Evaluation time
            dry_run: Report the decision without writing anything

        Returns:
            CaseEvaluation: What was decided and done
        """
        now = as_naive_utc(now)

        if case.status not in ESCALATABLE_STATUSES:
            return CaseEvaluation(case.id, SKIPPED_STATUS)

        with tracer.start_as_current_span("evaluator.evaluate_case") as span:
            span.set_attribute("case_id", case.id)
            span.set_attribute("company_id", case.company_id)

            async with self._session_factory() as db:
                ledger = TimelineLedger(db)
                catalog = EscalationRuleCatalog(db)

                entry = await ledger.latest_stage_entry(case.id)
                if entry is not None:
                    stage, entered_at, occurrence_id = entry.stage, entry.entered_at, entry.occurrence_id
                else:
                    # No timeline yet: the case has sat in its status stage since creation
                    stage, entered_at, occurrence_id = stage_for_status(case.status).value, case.created_at, None

                rule = select_rule(await catalog.matching_rules(
                    case.company_id, case.branch_id, case.case_type, stage, case.context()
                ))
                if rule is None:
                    return CaseEvaluation(case.id, NO_RULE, stage=stage)

                calendar = await catalog.calendar_for(rule, case.company_id)
                elapsed = elapsed_minutes(entered_at, now, calendar)
                current_level = await ledger.unresolved_escalation_level(case.id, stage)
                warned = (
                    await ledger.warning_emitted(case.id, occurrence_id)
                    if occurrence_id else False
                )

            evaluation = CaseEvaluation(
                case.id,
                NO_ACTION,
                stage=stage,
                rule_id=rule.id,
                rule_name=rule.name,
                elapsed_minutes=elapsed,
                current_level=current_level,
            )
            span.set_attribute("elapsed_minutes", elapsed)
            span.set_attribute("current_level", current_level)

            decision = select_level(
                elapsed,
                rule.escalation_threshold,
                escalation_level=rule.escalation_level,
                warning_threshold=rule.warning_threshold,
                critical_threshold=rule.critical_threshold,
                current_level=current_level,
                warning_emitted=warned,
            )
            evaluation.decision = decision
            if decision is None:
                return evaluation

            if dry_run:
                evaluation.outcome = WOULD_WARN if decision.is_warning else WOULD_ESCALATE
                return evaluation

            if decision.is_warning:
                event = await self.executor.emit_warning(case, rule, now, elapsed)
                evaluation.outcome = WARNED if event is not None else WARNING_SUPPRESSED
                return evaluation

            overdue = max(elapsed - decision.threshold, 0)
            result = await self.executor.raise_escalation(
                case,
                rule,
                decision.level,
                overdue,
                build_reason(stage, decision.threshold, overdue),
                now,
                elapsed_minutes=elapsed,
            )

            if result.raised:
                evaluation.outcome = ESCALATED
                evaluation.escalation_id = result.escalation.id
            elif result.stage_changed:
                evaluation.outcome = STAGE_CHANGED
            else:
                evaluation.outcome = DUPLICATE

            evaluation.errors.extend(e.message for e in result.auto_action_errors)
            evaluation.errors.extend(e.message for e in result.notification_errors)
            return evaluation

    async def load_open_cases(self, company_id: Optional[str] = None, limit: Optional[int] = None) -> List[CaseRecord]:
        query = select(CaseRecord).where(CaseRecord.status.in_(sorted(ESCALATABLE_STATUSES)))
        if company_id is not None:
            query = query.where(CaseRecord.company_id == company_id)
        query = query.order_by(CaseRecord.created_at.asc()).limit(limit or settings.ESCALATION_BATCH_LIMIT)

        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def run(
        self,
        now: datetime,
        company_id: Optional[str] = None,
        dry_run: bool = False,
        limit: Optional[int] = None,
    ) -> EvaluationReport:
        """
        Evaluate every open case once.

        Cases are processed on a bounded worker pool. A case that fails is
        logged, counted and listed in ``report.failed``; the rest of the
        pass carries on.

        Args:
            now: Evaluation time shared by the whole pass
            company_id: Restrict the pass to one company
            dry_run: Report decisions without writing
            limit: Maximum number of cases to load

        Returns:
            EvaluationReport: Per-case outcomes and failures
        """
        started = time.perf_counter()
        report = EvaluationReport(evaluated_at=as_naive_utc(now), dry_run=dry_run)

        with tracer.start_as_current_span("evaluator.run") as span:
            span.set_attribute("company_id", company_id or "all")
            span.set_attribute("dry_run", dry_run)

            cases = await self.load_open_cases(company_id, limit)
            span.set_attribute("cases", len(cases))
            semaphore = asyncio.Semaphore(self.concurrency)

            async def evaluate_isolated(case: CaseRecord) -> Optional[CaseEvaluation]:
                async with semaphore:
                    try:
                        return await self.evaluate_case(case, now, dry_run=dry_run)
                    except Exception as e:
                        evaluation_failures_total.labels(error_type=type(e).__name__).inc()
                        logger.exception(
                            "Case evaluation failed",
                            case_id=case.id,
                            company_id=case.company_id,
                            error=str(e),
                        )
                        report.failed[case.id] = f"{type(e).__name__}: {e}"
                        return None

            results = await asyncio.gather(*(evaluate_isolated(case) for case in cases))
            report.evaluations = [r for r in results if r is not None]

            for evaluation in report.evaluations:
                cases_evaluated_total.labels(outcome=evaluation.outcome).inc()
            span.set_attribute("escalated", len(report.escalated))
            span.set_attribute("failed", len(report.failed))

        if not dry_run:
            await self._record_open_escalations(company_id)

        report.duration_seconds = time.perf_counter() - started
        evaluation_pass_duration_seconds.labels(company=company_id or "all").observe(report.duration_seconds)
        log_performance(
            "escalation_evaluation_pass",
            report.duration_seconds,
            cases=len(cases),
            escalated=len(report.escalated),
            warned=len(report.warned),
            failed=len(report.failed),
            dry_run=dry_run,
        )
        return report

    async def _record_open_escalations(self, company_id: Optional[str]) -> None:
        query = select(func.count(Escalation.id)).where(Escalation.is_resolved.is_(False))
        if company_id is not None:
            query = query.join(CaseRecord, CaseRecord.id == Escalation.case_id).where(
                CaseRecord.company_id == company_id
            )
        async with self._session_factory() as db:
            result = await db.execute(query)
            open_escalations.labels(company=company_id or "all").set(result.scalar() or 0)


# ==== GLOBAL EVALUATOR INSTANCE ==== #

_evaluator: Optional[EscalationEvaluator] = None


def get_escalation_evaluator() -> EscalationEvaluator:
    """Get the process-wide evaluator bound to the default session scope."""
    global _evaluator
    if _evaluator is None:
        _evaluator = EscalationEvaluator(executor=get_escalation_executor())
    return _evaluator


async def run_escalation_pass(
    now: datetime,
    company_id: Optional[str] = None,
    dry_run: bool = False,
) -> EvaluationReport:
    """Convenience entry point for schedulers and the CLI."""
    return await get_escalation_evaluator().run(now, company_id=company_id, dry_run=dry_run)
