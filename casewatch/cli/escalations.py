"""CLI commands for SLA escalation checks and case timelines."""

import asyncio
from typing import Optional

import click
from tabulate import tabulate

from casewatch.business.errors import EscalationAlreadyResolvedError, EscalationNotFoundError
from casewatch.business.lifecycle import LEVEL_LABELS, format_minutes
from casewatch.observability.logging import init_logging
from casewatch.services.escalation_evaluator import EscalationEvaluator
from casewatch.services.escalation_executor import EscalationActionExecutor
from casewatch.services.timeline_ledger import TimelineLedger
from casewatch.storage.db import close_database, get_session, init_database
from casewatch.storage.models import utcnow


def _run(coro):
    async def wrapper():
        init_database()
        try:
            return await coro
        finally:
            await close_database()

    return asyncio.run(wrapper())


@click.group()
@click.option('--log-level', default=None, help='Log level, WARNING by default')
def cli(log_level: Optional[str]):
    """casewatch escalation commands."""
    init_logging(log_level or "WARNING", log_dir=None)


@cli.command('check-escalations')
@click.option('--company', 'company_id', default=None, help='Only evaluate this company')
@click.option('--dry-run', is_flag=True, help='Show decisions without writing')
def check_escalations(company_id: Optional[str], dry_run: bool):
    """Run one SLA evaluation pass over open cases."""
    evaluator = EscalationEvaluator(get_session)
    report = _run(evaluator.run(utcnow(), company_id=company_id, dry_run=dry_run))

    rows = []
    for evaluation in report.evaluations:
        if evaluation.decision is None:
            continue
        rows.append([
            evaluation.case_id,
            evaluation.stage,
            evaluation.rule_name,
            format_minutes(evaluation.elapsed_minutes),
            LEVEL_LABELS.get(evaluation.decision.level, evaluation.decision.level),
            evaluation.outcome,
        ])

    if rows:
        headers = ["Case", "Stage", "Rule", "In stage", "Level", "Outcome"]
        click.echo(tabulate(rows, headers=headers, tablefmt="grid"))

    counts = ", ".join(f"{k}={v}" for k, v in sorted(report.counts().items())) or "no open cases"
    prefix = "🔍 Dry run" if dry_run else "✅ Evaluated"
    click.echo(f"{prefix} {len(report.evaluations)} case(s): {counts}")

    for case_id, error in sorted(report.failed.items()):
        click.echo(f"❌ {case_id}: {error}")
    if report.failed:
        raise SystemExit(1)


@cli.command('timeline')
@click.argument('case_id')
@click.option('--include-internal/--public-only', default=True, help='Show internal events')
def timeline(case_id: str, include_internal: bool):
    """Print the timeline of a case."""

    async def load():
        async with get_session() as db:
            return await TimelineLedger(db).get_timeline(case_id, include_internal=include_internal)

    events = _run(load())
    if not events:
        click.echo(f"No timeline events for case {case_id}")
        return

    table_data = []
    for event in events:
        table_data.append([
            event.sequence,
            event.event_at.strftime("%Y-%m-%d %H:%M"),
            event.event_type,
            event.stage,
            f"{event.actor_type}:{event.actor_id}" if event.actor_id else event.actor_type,
            format_minutes(event.duration_in_stage),
            format_minutes(event.total_case_duration),
            "⚠️" if event.sla_breached else "",
        ])

    headers = ["#", "At", "Event", "Stage", "Actor", "In stage", "Total", "SLA"]
    click.echo(tabulate(table_data, headers=headers, tablefmt="grid"))


@cli.command('resolve-escalation')
@click.argument('escalation_id')
@click.option('--by', 'resolved_by', required=True, help='Resolving user id')
@click.option('--note', default=None, help='Resolution note')
def resolve_escalation(escalation_id: str, resolved_by: str, note: Optional[str]):
    """Mark an escalation resolved."""
    executor = EscalationActionExecutor(get_session)
    try:
        escalation = _run(executor.resolve(escalation_id, resolved_by, note=note))
    except (EscalationNotFoundError, EscalationAlreadyResolvedError) as e:
        click.echo(f"❌ {e.message}")
        raise SystemExit(1)

    click.echo(
        f"✅ Resolved level {escalation.escalation_level} escalation on case "
        f"{escalation.case_id} ({escalation.stage})"
    )


if __name__ == '__main__':
    cli()
