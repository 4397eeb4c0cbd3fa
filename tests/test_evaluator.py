"""Tests for trigger/condition predicates and rule evaluation."""

from datetime import datetime

import pytest

from modules.automation_models import AutomationRule
from modules.evaluator import evaluate, watched_device_ids, weekday
from modules.status_cache import StatusCache

MONDAY_0700 = datetime(2026, 10, 19, 7, 0, 0)
SUNDAY_0700 = datetime(2026, 10, 18, 7, 0, 0)


def make_rule(triggers, conditions=None, mode="AND", **extra):
    return AutomationRule.model_validate({
        "id": "r1", "name": "Test", "triggers": triggers,
        "conditions": conditions or [], "conditionMode": mode, **extra,
    })


def cache(**devices):
    statuses = StatusCache()
    for device_id, status in devices.items():
        statuses.update(device_id, status)
    return statuses


class TestSchedule:

    def test_weekday_sunday_is_zero(self):
        assert weekday(SUNDAY_0700) == 0
        assert weekday(MONDAY_0700) == 1

    def test_exact_minute_matches(self):
        rule = make_rule([{"type": "schedule", "time": "07:00"}])
        assert evaluate(rule, MONDAY_0700, {}, cache()).should_fire
        assert evaluate(rule, MONDAY_0700.replace(second=59), {}, cache()).should_fire

    def test_other_minute_does_not_match(self):
        rule = make_rule([{"type": "schedule", "time": "07:00"}])
        assert not evaluate(rule, MONDAY_0700.replace(minute=1), {}, cache()).triggered

    def test_days_filter(self):
        rule = make_rule([{"type": "schedule", "time": "07:00", "days": [1, 2, 3, 4, 5]}])
        assert evaluate(rule, MONDAY_0700, {}, cache()).triggered
        assert not evaluate(rule, SUNDAY_0700, {}, cache()).triggered

    def test_missing_time_never_matches(self):
        rule = make_rule([{"type": "schedule"}])
        assert not evaluate(rule, MONDAY_0700, {}, cache()).triggered


class TestSensor:

    @pytest.mark.parametrize("operator,value,expected", [
        (">", 25.0, True),
        (">", 25.1, True),
        (">", 24.9, False),
        ("<", 25.0, True),
        ("<", 24.0, True),
        ("<", 25.5, False),
    ])
    def test_thresholds_are_inclusive(self, operator, value, expected):
        rule = make_rule([{"type": "sensor", "deviceId": "m", "operator": operator, "threshold": 25}])
        result = evaluate(rule, MONDAY_0700, {}, cache(m={"temperature": value}))
        assert result.triggered is expected

    @pytest.mark.parametrize("value", [True, "26", None])
    def test_non_numeric_values_never_match(self, value):
        rule = make_rule([{"type": "sensor", "deviceId": "m", "operator": ">", "threshold": 0}])
        assert not evaluate(rule, MONDAY_0700, {}, cache(m={"temperature": value})).triggered

    def test_unknown_device_never_matches(self):
        rule = make_rule([{"type": "sensor", "deviceId": "m", "operator": ">", "threshold": 0}])
        assert not evaluate(rule, MONDAY_0700, {}, cache()).triggered

    def test_missing_threshold_compares_against_zero(self):
        rule = make_rule([{"type": "sensor", "deviceId": "m", "operator": ">"}])
        assert evaluate(rule, MONDAY_0700, {}, cache(m={"temperature": 0})).triggered
        assert not evaluate(rule, MONDAY_0700, {}, cache(m={"temperature": -0.5})).triggered

    def test_missing_operator_never_matches(self):
        rule = make_rule([{"type": "sensor", "deviceId": "m", "threshold": 0}])
        assert not evaluate(rule, MONDAY_0700, {}, cache(m={"temperature": 10})).triggered


class TestDeviceAndVariable:

    def test_device_power_state(self):
        rule = make_rule([{"type": "device", "deviceId": "plug", "state": "on"}])
        assert evaluate(rule, MONDAY_0700, {}, cache(plug={"power": "on"})).triggered
        assert not evaluate(rule, MONDAY_0700, {}, cache(plug={"power": "off"})).triggered

    def test_variable_value(self):
        rule = make_rule([{"type": "variable", "variableId": "away", "variableValue": True}])
        assert evaluate(rule, MONDAY_0700, {"away": True}, cache()).triggered
        assert not evaluate(rule, MONDAY_0700, {"away": False}, cache()).triggered

    def test_unknown_variable_never_matches(self):
        rule = make_rule([{"type": "variable", "variableId": "ghost", "variableValue": False}])
        assert not evaluate(rule, MONDAY_0700, {}, cache()).triggered

    def test_first_matching_trigger_reported(self):
        rule = make_rule([
            {"type": "schedule", "time": "08:00"},
            {"type": "variable", "variableId": "away", "variableValue": True},
            {"type": "schedule", "time": "07:00"},
        ])
        result = evaluate(rule, MONDAY_0700, {"away": True}, cache())
        assert result.trigger.type == "variable"


class TestConditions:

    TRIGGER = [{"type": "schedule", "time": "07:00"}]

    def test_empty_conditions_satisfied(self):
        assert evaluate(make_rule(self.TRIGGER), MONDAY_0700, {}, cache()).satisfied

    def test_not_triggered_is_not_satisfied(self):
        rule = make_rule([{"type": "schedule", "time": "09:00"}])
        result = evaluate(rule, MONDAY_0700, {}, cache())
        assert not result.triggered and not result.satisfied

    @pytest.mark.parametrize("start,end,expected", [
        ("07:00", "08:00", True),
        ("06:00", "07:00", True),
        ("07:01", "08:00", False),
        ("05:00", "06:59", False),
    ])
    def test_time_range_inclusive(self, start, end, expected):
        rule = make_rule(self.TRIGGER, [{"type": "timeRange", "startTime": start, "endTime": end}])
        assert evaluate(rule, MONDAY_0700, {}, cache()).satisfied is expected

    def test_time_range_without_end_checks_days_only(self):
        rule = make_rule(self.TRIGGER, [{"type": "timeRange", "startTime": "22:00", "days": [0]}])
        assert not evaluate(rule, MONDAY_0700, {}, cache()).satisfied
        assert evaluate(rule, SUNDAY_0700, {}, cache()).satisfied

    def test_and_mode_requires_all(self):
        conditions = [
            {"type": "variable", "variableId": "a", "variableValue": True},
            {"type": "variable", "variableId": "b", "variableValue": True},
        ]
        rule = make_rule(self.TRIGGER, conditions, mode="AND")
        assert not evaluate(rule, MONDAY_0700, {"a": True, "b": False}, cache()).satisfied
        assert evaluate(rule, MONDAY_0700, {"a": True, "b": True}, cache()).satisfied

    def test_or_mode_requires_any(self):
        conditions = [
            {"type": "variable", "variableId": "a", "variableValue": True},
            {"type": "variable", "variableId": "b", "variableValue": True},
        ]
        rule = make_rule(self.TRIGGER, conditions, mode="OR")
        assert evaluate(rule, MONDAY_0700, {"a": False, "b": True}, cache()).satisfied
        assert not evaluate(rule, MONDAY_0700, {"a": False, "b": False}, cache()).satisfied

    def test_sensor_and_device_conditions(self):
        conditions = [
            {"type": "sensor", "deviceId": "m", "property": "humidity", "operator": "<", "threshold": 40},
            {"type": "device", "deviceId": "plug", "state": "off"},
        ]
        rule = make_rule(self.TRIGGER, conditions)
        statuses = cache(m={"humidity": 35}, plug={"power": "off"})
        assert evaluate(rule, MONDAY_0700, {}, statuses).satisfied

    def test_malformed_condition_is_false(self):
        rule = make_rule(self.TRIGGER, [{"type": "weather"}], mode="OR")
        assert not evaluate(rule, MONDAY_0700, {}, cache()).satisfied


class TestWatchedDevices:

    def test_dedupes_and_ignores_disabled(self):
        rules = [
            make_rule([{"type": "sensor", "deviceId": "m1"}],
                      [{"type": "device", "deviceId": "plug"}]),
            AutomationRule.model_validate({
                "id": "r2", "triggers": [{"type": "device", "deviceId": "m1"},
                                         {"type": "device", "deviceId": "lamp"}],
            }),
            AutomationRule.model_validate({
                "id": "r3", "enabled": False,
                "triggers": [{"type": "device", "deviceId": "hidden"}],
            }),
        ]
        assert watched_device_ids(rules) == ["m1", "plug", "lamp"]

    def test_schedule_only_rules_watch_nothing(self):
        assert watched_device_ids([make_rule([{"type": "schedule", "time": "07:00"}])]) == []
