# ==== ESCALATION CHECK FLOW ==== #

"""
Scheduled SLA escalation check for casewatch.

Runs one evaluator pass over every open case. Overlapping runs are safe:
duplicate escalations and warnings are suppressed by database constraints.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from prefect import flow, get_run_logger, task

from casewatch.observability.logging import init_logging
from casewatch.services.escalation_evaluator import EvaluationReport, run_escalation_pass
from casewatch.settings import settings
from casewatch.storage.db import init_database
from casewatch.storage.models import utcnow


def summarize_report(report: EvaluationReport) -> Dict[str, Any]:
    return {
        "evaluated_at": report.evaluated_at.isoformat(),
        "dry_run": report.dry_run,
        "cases_evaluated": len(report.evaluations),
        "outcomes": report.counts(),
        "escalated_cases": [e.case_id for e in report.escalated],
        "failed_cases": dict(report.failed),
        "duration_seconds": round(report.duration_seconds, 3),
    }


@task(retries=2, retry_delay_seconds=30)
async def evaluate_open_cases(
    company_id: Optional[str] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Evaluate open cases once and summarise the outcome.

    Without an explicit ``now`` the clock is read when the attempt starts, so
    a retried attempt measures SLAs at its own start time.

    Args:
        company_id: Restrict to one company
        dry_run: Report decisions without writing
        now: Evaluation time shared by the pass, defaults to the current time

    Returns:
        Dict[str, Any]: Outcome counts, escalated and failed case ids
    """
    now = now or utcnow()
    logger = get_run_logger()
    logger.info(f"Evaluating open cases (company={company_id or 'all'}, dry_run={dry_run})")

    report = await run_escalation_pass(now, company_id=company_id, dry_run=dry_run)
    summary = summarize_report(report)

    if report.failed:
        logger.warning(f"{len(report.failed)} case(s) failed evaluation: {sorted(report.failed)}")
    logger.info(f"Evaluation outcomes: {summary['outcomes']}")
    return summary


@flow(name="check-case-escalations", log_prints=True)
async def escalation_check_flow(
    company_id: Optional[str] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """
    Periodic SLA escalation check.

    Args:
        company_id: Restrict the pass to one company
        dry_run: Report decisions without writing

    Returns:
        Dict[str, Any]: Pass summary
    """
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    init_database()

    return await evaluate_open_cases(company_id=company_id, dry_run=dry_run)


if __name__ == "__main__":
    escalation_check_flow.serve(
        name=settings.PREFECT_DEPLOYMENT_NAME,
        interval=settings.ESCALATION_CHECK_INTERVAL_SECONDS,
    )
