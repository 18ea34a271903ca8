# ==== CASEWATCH PACKAGE ==== #

"""
Case lifecycle timeline and SLA escalation engine.

Records every state transition of a case, measures in-stage time under
business-hours calendars and raises at-most-once escalations when
configured thresholds are crossed.
"""

__version__ = "0.1.0"
