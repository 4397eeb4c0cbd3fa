"""
Automation Models - Rules, Triggers, Conditions, Actions
=========================================================
Typed views over the rule/variable/history JSON kept by the stores.

Stored documents use camelCase keys (deviceId, conditionMode, timerValue...);
the models accept camelCase or snake_case and dump back to camelCase.

Each trigger / condition / action is a tagged variant on ``type``. An element
that fails validation (unknown type, wrong field types) is kept as an
InvalidElement so the rest of the rule still loads; evaluators treat it as
non-matching and the executor skips it.
"""

import logging
import math
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger("modules.automation")

TIMER_UNIT_MS = {
    "seconds": 1000,
    "minutes": 60 * 1000,
    "hours": 60 * 60 * 1000,
}

HISTORY_TYPES = ("sensor", "device", "automation", "variable")


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class InvalidElement(BaseModel):
    """Placeholder for a trigger/condition/action that could not be parsed."""

    type: Literal["invalid"] = "invalid"
    raw: Any = None
    reason: str = ""


# ============================================================================
# TRIGGERS / CONDITIONS
# ============================================================================

class ScheduleTrigger(_Model):
    type: Literal["schedule"]
    id: Optional[str] = None
    time: Optional[str] = None
    days: Optional[List[int]] = None

    @property
    def hhmm(self) -> str:
        return (self.time or "")[:5]


class SensorTrigger(_Model):
    type: Literal["sensor"]
    id: Optional[str] = None
    device_id: Optional[str] = None
    attribute: str = Field("temperature", alias="property")
    operator: Optional[Literal[">", "<"]] = None
    threshold: Optional[float] = None
    # Hysteresis band; stored but not applied by the evaluator.
    differential: Optional[float] = None

    @field_validator("attribute", mode="before")
    @classmethod
    def _default_property(cls, v):
        return v or "temperature"


class DeviceTrigger(_Model):
    type: Literal["device"]
    id: Optional[str] = None
    device_id: Optional[str] = None
    device_type: Optional[str] = None
    state: Optional[str] = None


class VariableTrigger(_Model):
    type: Literal["variable"]
    id: Optional[str] = None
    variable_id: Optional[str] = None
    variable_value: Optional[bool] = None


class TimeRangeCondition(_Model):
    type: Literal["timeRange"]
    id: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    days: Optional[List[int]] = None


# Conditions share the sensor/device/variable shapes with triggers
SensorCondition = SensorTrigger
DeviceCondition = DeviceTrigger
VariableCondition = VariableTrigger

Trigger = Union[ScheduleTrigger, SensorTrigger, DeviceTrigger, VariableTrigger]
Condition = Union[TimeRangeCondition, SensorTrigger, DeviceTrigger, VariableTrigger]

DEVICE_WATCH_TYPES = (SensorTrigger, DeviceTrigger)


# ============================================================================
# ACTIONS
# ============================================================================

class DeviceAction(_Model):
    type: Literal["device"] = "device"
    id: Optional[str] = None
    device_id: Optional[str] = None
    command: Optional[str] = None
    payload: Optional[str] = None

    @property
    def parameter(self) -> str:
        return self.payload or "default"


class VariableAction(_Model):
    type: Literal["variable"]
    id: Optional[str] = None
    variable_id: Optional[str] = None
    variable_value: bool = False

    @field_validator("variable_value", mode="before")
    @classmethod
    def _truthy(cls, v):
        return bool(v)


class AutomationAction(_Model):
    type: Literal["automation"]
    id: Optional[str] = None
    automation_id: Optional[str] = None
    automation_enabled: bool = False

    @field_validator("automation_enabled", mode="before")
    @classmethod
    def _truthy(cls, v):
        return bool(v)


class TimerAction(_Model):
    type: Literal["timer"]
    id: Optional[str] = None
    timer_value: Optional[float] = None
    timer_unit: Literal["seconds", "minutes", "hours"] = "minutes"

    @field_validator("timer_unit", mode="before")
    @classmethod
    def _default_unit(cls, v):
        return v or "minutes"

    @property
    def delay_ms(self) -> int:
        """Resolved delay in whole milliseconds (0 when unset)."""
        if not self.timer_value:
            return 0
        return max(0, math.floor(self.timer_value * TIMER_UNIT_MS[self.timer_unit]))


Action = Union[DeviceAction, VariableAction, AutomationAction, TimerAction]


_trigger_adapter = TypeAdapter(Annotated[Trigger, Field(discriminator="type")])
_condition_adapter = TypeAdapter(Annotated[Condition, Field(discriminator="type")])
_action_adapter = TypeAdapter(Annotated[Action, Field(discriminator="type")])


def _parse_element(adapter: TypeAdapter, data: Any, kind: str):
    if isinstance(data, BaseModel):
        return data
    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        reason = "; ".join(err["msg"] for err in e.errors())
        logger.warning(f"Ignoring malformed {kind}: {reason} - {data!r}")
        return InvalidElement(raw=data, reason=reason)


def parse_trigger(data: Any) -> Union[Trigger, InvalidElement]:
    return _parse_element(_trigger_adapter, data, "trigger")


def parse_condition(data: Any) -> Union[Condition, InvalidElement]:
    return _parse_element(_condition_adapter, data, "condition")


def parse_action(data: Any) -> Union[Action, InvalidElement]:
    # Untyped actions are device commands
    if isinstance(data, dict) and not data.get("type"):
        data = {**data, "type": "device"}
    return _parse_element(_action_adapter, data, "action")


# ============================================================================
# RULES / VARIABLES / HISTORY
# ============================================================================

class AutomationRule(_Model):
    id: str
    name: str = ""
    enabled: bool = True
    triggers: List[Union[Trigger, InvalidElement]] = Field(default_factory=list)
    conditions: List[Union[Condition, InvalidElement]] = Field(default_factory=list)
    condition_mode: Literal["AND", "OR"] = "AND"
    actions: List[Union[Action, InvalidElement]] = Field(default_factory=list)
    last_run: Optional[float] = None

    @field_validator("name", mode="before")
    @classmethod
    def _name(cls, v):
        return v or ""

    @field_validator("triggers", mode="before")
    @classmethod
    def _triggers(cls, v):
        return [parse_trigger(t) for t in (v or [])]

    @field_validator("conditions", mode="before")
    @classmethod
    def _conditions(cls, v):
        return [parse_condition(c) for c in (v or [])]

    @field_validator("actions", mode="before")
    @classmethod
    def _actions(cls, v):
        return [parse_action(a) for a in (v or [])]

    @field_validator("condition_mode", mode="before")
    @classmethod
    def _mode(cls, v):
        return "OR" if str(v or "").upper() == "OR" else "AND"

    @model_validator(mode="after")
    def _resolve_self_references(self):
        # An automation action without a target toggles its own rule
        for action in self.actions:
            if isinstance(action, AutomationAction) and not action.automation_id:
                action.automation_id = self.id
        return self

    @property
    def label(self) -> str:
        return self.name or self.id


class UserVariable(_Model):
    id: str
    name: str = ""
    value: bool = False


class HistoryItem(_Model):
    id: Optional[str] = None
    timestamp: Optional[str] = None
    type: Literal["sensor", "device", "automation", "variable"]
    message: str = Field(min_length=1)
    details: Optional[Dict[str, Any]] = None


def parse_rules(raw_rules: List[Dict[str, Any]]) -> List[AutomationRule]:
    """Parse stored rule documents, dropping any that lack an id."""
    rules = []
    for raw in raw_rules or []:
        try:
            rules.append(AutomationRule.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Skipping unreadable rule {raw.get('id', '?') if isinstance(raw, dict) else raw!r}: "
                           f"{e.error_count()} error(s)")
    return rules


def parse_variables(raw_variables: List[Dict[str, Any]]) -> List[UserVariable]:
    variables = []
    for raw in raw_variables or []:
        try:
            variables.append(UserVariable.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Skipping unreadable variable {raw!r}: {e.error_count()} error(s)")
    return variables
