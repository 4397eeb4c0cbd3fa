"""
In-memory state owned by one AutomationScheduler.

Rules and variables mirror the stores as of the last fast-loop tick (plus
any changes the executor made since). Statuses come from the slow loop.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .automation_models import AutomationRule, UserVariable
from .cooldown import CooldownTracker
from .status_cache import StatusCache


@dataclass
class EngineState:
    rules: List[AutomationRule] = field(default_factory=list)
    variables: Dict[str, bool] = field(default_factory=dict)
    variable_names: Dict[str, str] = field(default_factory=dict)
    statuses: StatusCache = field(default_factory=StatusCache)
    cooldowns: CooldownTracker = field(default_factory=CooldownTracker)
    device_names: Dict[str, str] = field(default_factory=dict)

    def find_rule(self, rule_id: str) -> Optional[AutomationRule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    def enabled_rules(self) -> List[AutomationRule]:
        return [r for r in self.rules if r.enabled]

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        rule = self.find_rule(rule_id)
        if rule is None:
            return False
        rule.enabled = enabled
        return True

    def load_variables(self, variables: List[UserVariable]):
        for var in variables:
            self.variables[var.id] = var.value
            self.variable_names[var.id] = var.name

    def set_variable(self, variable_id: str, value: bool):
        self.variables[variable_id] = value

    def device_name(self, device_id: str) -> str:
        return self.device_names.get(device_id, device_id)
