# ==== POLICY LOADER SERVICE ==== #

"""
Policy loader for calendar and rule defaults.

Reads the packaged YAML policy once per process and falls back to built-in
defaults when the policy file is missing.
"""

import functools
import os
from typing import Any, Dict

import yaml

from casewatch.observability.tracing import get_tracer


tracer = get_tracer(__name__)

POLICY_PATH = os.path.join(
    os.path.dirname(__file__),
    "..",
    "business",
    "policies",
    "default_calendar.yaml"
)

_WEEKDAY_HOURS = {"start": "09:00", "end": "17:00"}

FALLBACK_CALENDAR_POLICY: Dict[str, Any] = {
    "business_hours": {
        "monday": dict(_WEEKDAY_HOURS),
        "tuesday": dict(_WEEKDAY_HOURS),
        "wednesday": dict(_WEEKDAY_HOURS),
        "thursday": dict(_WEEKDAY_HOURS),
        "friday": dict(_WEEKDAY_HOURS),
        "saturday": None,
        "sunday": None,
    },
    "rule_defaults": {
        "priority": 0,
        "applies_to": "all",
        "escalation_level": 1,
        "use_business_hours": True,
        "exclude_weekends": True,
        "exclude_holidays": True,
    },
}


# ==== CALENDAR POLICY LOADING ==== #


@functools.lru_cache(maxsize=1)
def get_calendar_policy() -> Dict[str, Any]:
    """
    Load the default calendar policy.

    Returns:
        Dict[str, Any]: Policy with ``business_hours`` and
        ``rule_defaults`` keys
    """
    with tracer.start_as_current_span("load_calendar_policy") as span:
        try:
            with open(POLICY_PATH, "r") as f:
                config = yaml.safe_load(f) or {}
            span.set_attribute("config_loaded", True)
        except FileNotFoundError:
            span.set_attribute("config_loaded", False)
            span.set_attribute("fallback_used", True)
            return FALLBACK_CALENDAR_POLICY

        # Missing sections fall back individually
        return {
            key: config.get(key, default)
            for key, default in FALLBACK_CALENDAR_POLICY.items()
        }


def get_default_business_hours() -> Dict[str, Any]:
    """Weekly template applied to rules without their own business hours."""
    return get_calendar_policy()["business_hours"]


def get_rule_defaults() -> Dict[str, Any]:
    return get_calendar_policy()["rule_defaults"]
