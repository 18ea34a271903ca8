"""Unit tests for the scheduled escalation check flow."""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

from casewatch.services.escalation_evaluator import (
    ESCALATED,
    NO_ACTION,
    CaseEvaluation,
    EvaluationReport,
)
from flows.escalation_check_flow import evaluate_open_cases, summarize_report


def sample_report():
    report = EvaluationReport(evaluated_at=datetime(2024, 3, 4, 12, 0), duration_seconds=0.12345)
    report.evaluations = [
        CaseEvaluation("case-1", ESCALATED),
        CaseEvaluation("case-2", NO_ACTION),
    ]
    report.failed = {"case-3": "RuntimeError: boom"}
    return report


@pytest.mark.unit
class TestEscalationCheckFlow:
    def test_summarize_report(self):
        summary = summarize_report(sample_report())

        assert summary == {
            "evaluated_at": "2024-03-04T12:00:00",
            "dry_run": False,
            "cases_evaluated": 2,
            "outcomes": {ESCALATED: 1, NO_ACTION: 1},
            "escalated_cases": ["case-1"],
            "failed_cases": {"case-3": "RuntimeError: boom"},
            "duration_seconds": 0.123,
        }

    @pytest.mark.asyncio
    async def test_evaluate_open_cases_task(self):
        now = datetime(2024, 3, 4, 12, 0)

        with patch("flows.escalation_check_flow.get_run_logger", return_value=MagicMock()) as mock_logger, \
             patch("flows.escalation_check_flow.run_escalation_pass", new_callable=AsyncMock) as mock_pass:
            mock_pass.return_value = sample_report()

            summary = await evaluate_open_cases.fn(company_id="acme", dry_run=True, now=now)

        mock_pass.assert_awaited_once_with(now, company_id="acme", dry_run=True)
        assert summary["escalated_cases"] == ["case-1"]
        mock_logger.return_value.warning.assert_called_once()

    @pytest.mark.asyncio
    async def test_each_attempt_reads_the_clock(self, frozen_time, base_time):
        with patch("flows.escalation_check_flow.get_run_logger", return_value=MagicMock()), \
             patch("flows.escalation_check_flow.run_escalation_pass", new_callable=AsyncMock) as mock_pass:
            mock_pass.return_value = sample_report()

            await evaluate_open_cases.fn()
            frozen_time.tick(timedelta(seconds=30))
            await evaluate_open_cases.fn()

        assert [c.args[0] for c in mock_pass.await_args_list] == [
            base_time,
            base_time + timedelta(seconds=30),
        ]
