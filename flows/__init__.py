# ==== PREFECT FLOWS PACKAGE ==== #

"""
Prefect flows for casewatch.

- escalation_check_flow: periodic SLA evaluation over open cases
"""

from .escalation_check_flow import escalation_check_flow

__all__ = [
    "escalation_check_flow"
]
