# ==== ESCALATION ENGINE ERRORS ==== #

"""
Error taxonomy for the escalation engine.

Configuration problems are rejected when a rule is saved. Race outcomes and
side-effect failures during escalation are reported to the caller and logged;
they never undo a recorded escalation.
"""

from typing import Any, Dict, Optional


class EscalationEngineError(Exception):
    """Base class for escalation engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(EscalationEngineError):
    """A rule definition is malformed (thresholds out of order, bad window)."""


class TimelineOrderError(EscalationEngineError):
    """A timeline event would be appended before the latest event of the case."""


class DuplicateEscalationConflict(EscalationEngineError):
    """Another evaluator already recorded this escalation level."""


class AutoActionFailure(EscalationEngineError):
    """Reassignment or priority change failed after the escalation was recorded."""

    def __init__(self, action: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.action = action


class NotificationEnqueueFailure(EscalationEngineError):
    """A notification request could not be handed to the notification queue."""


class EscalationNotFoundError(EscalationEngineError):
    pass


class EscalationAlreadyResolvedError(EscalationEngineError):
    pass


class RuleNotFoundError(EscalationEngineError):
    pass
