"""
Rule Evaluator - Trigger and Condition Predicates
=================================================
Pure functions: given a rule, the wall-clock time, the variable values and
the status cache, decide whether the rule fired and whether its conditions
hold. No side effects, safe to call from overlapping evaluation passes.

Triggers OR-combine (first match wins). Conditions are only checked once a
trigger fired and combine per the rule's conditionMode; an empty list is
satisfied.

Malformed elements (missing deviceId, unknown type...) evaluate to False.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional

from .automation_models import (
    AutomationRule,
    DeviceTrigger,
    DEVICE_WATCH_TYPES,
    ScheduleTrigger,
    SensorTrigger,
    TimeRangeCondition,
    VariableTrigger,
)
from .status_cache import StatusCache


@dataclass
class Evaluation:
    triggered: bool = False
    satisfied: bool = False
    trigger: Optional[Any] = None

    @property
    def should_fire(self) -> bool:
        return self.triggered and self.satisfied


def hhmm(now: datetime) -> str:
    return now.strftime("%H:%M")


def weekday(now: datetime) -> int:
    """Day of week with Sunday=0."""
    return now.isoweekday() % 7


def day_allowed(days: Optional[List[int]], now: datetime) -> bool:
    return not days or weekday(now) in days


# ============================================================================
# PREDICATES
# ============================================================================

def schedule_matches(trigger: ScheduleTrigger, now: datetime) -> bool:
    if not trigger.time:
        return False
    return trigger.hhmm == hhmm(now) and day_allowed(trigger.days, now)


def sensor_matches(check: SensorTrigger, statuses: StatusCache) -> bool:
    status = statuses.get(check.device_id)
    if not status:
        return False
    value = status.get(check.attribute)
    # bool is an int subclass but never a sensor reading
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    # A missing threshold compares against 0
    threshold = check.threshold or 0
    if check.operator == ">":
        return value >= threshold
    if check.operator == "<":
        return value <= threshold
    return False


def device_matches(check: DeviceTrigger, statuses: StatusCache) -> bool:
    status = statuses.get(check.device_id)
    if not status or check.state is None:
        return False
    return check.state == status.get("power")


def variable_matches(check: VariableTrigger, variables: Mapping[str, bool]) -> bool:
    if not check.variable_id or check.variable_id not in variables:
        return False
    return variables[check.variable_id] == check.variable_value


def time_range_matches(cond: TimeRangeCondition, now: datetime) -> bool:
    current = hhmm(now)
    if cond.start_time and cond.end_time:
        if current < cond.start_time[:5] or current > cond.end_time[:5]:
            return False
    return day_allowed(cond.days, now)


def trigger_matches(trigger, now: datetime, variables: Mapping[str, bool],
                    statuses: StatusCache) -> bool:
    if isinstance(trigger, ScheduleTrigger):
        return schedule_matches(trigger, now)
    if isinstance(trigger, SensorTrigger):
        return sensor_matches(trigger, statuses)
    if isinstance(trigger, DeviceTrigger):
        return device_matches(trigger, statuses)
    if isinstance(trigger, VariableTrigger):
        return variable_matches(trigger, variables)
    return False


def condition_matches(cond, now: datetime, variables: Mapping[str, bool],
                      statuses: StatusCache) -> bool:
    if isinstance(cond, TimeRangeCondition):
        return time_range_matches(cond, now)
    # Sensor/device/variable conditions share the trigger predicates
    if isinstance(cond, (SensorTrigger, DeviceTrigger, VariableTrigger)):
        return trigger_matches(cond, now, variables, statuses)
    return False


# ============================================================================
# RULE EVALUATION
# ============================================================================

def find_trigger(rule: AutomationRule, now: datetime, variables: Mapping[str, bool],
                 statuses: StatusCache):
    """First trigger of the rule that matches, or None."""
    for trigger in rule.triggers:
        if trigger_matches(trigger, now, variables, statuses):
            return trigger
    return None


def conditions_met(rule: AutomationRule, now: datetime, variables: Mapping[str, bool],
                   statuses: StatusCache) -> bool:
    if not rule.conditions:
        return True
    results = (condition_matches(c, now, variables, statuses) for c in rule.conditions)
    if rule.condition_mode == "OR":
        return any(results)
    return all(results)


def evaluate(rule: AutomationRule, now: datetime, variables: Mapping[str, bool],
             statuses: StatusCache) -> Evaluation:
    trigger = find_trigger(rule, now, variables, statuses)
    if trigger is None:
        return Evaluation()
    return Evaluation(
        triggered=True,
        satisfied=conditions_met(rule, now, variables, statuses),
        trigger=trigger,
    )


def watched_device_ids(rules: Iterable[AutomationRule]) -> List[str]:
    """Device ids referenced by sensor/device triggers and conditions of enabled rules."""
    seen = {}
    for rule in rules:
        if not rule.enabled:
            continue
        for element in list(rule.triggers) + list(rule.conditions):
            if isinstance(element, DEVICE_WATCH_TYPES) and element.device_id:
                seen.setdefault(element.device_id, None)
    return list(seen)
