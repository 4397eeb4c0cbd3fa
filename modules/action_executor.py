"""
Action Executor - Sequential Action Chains
==========================================
Runs a rule's actions strictly in list order. Each step is isolated: a
failing step is traced and the chain moves on to the next one.

Action types:
  device      - gateway.send_command(deviceId, command, payload or "default")
  variable    - read-modify-write of the variable collection, then the
                in-memory value is updated so later rules see it at once
  automation  - read-modify-write of the rule collection flipping one
                rule's enabled flag (defaults to the executing rule)
  timer       - sleep; pauses only this chain

Chains are spawned as asyncio tasks by the scheduler, so a long timer never
holds up evaluation of other rules.
"""

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from error_handler import GatewayError

from .automation_models import (
    AutomationAction,
    AutomationRule,
    DeviceAction,
    InvalidElement,
    TimerAction,
    VariableAction,
)
from .engine_state import EngineState
from .storage import HistoryLog, JsonCollectionStore, StoreError, VariableStore

logger = logging.getLogger("modules.automation")

SOURCE = "Automation"

OK = "ok"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class ExecutionResult:
    rule_id: str
    steps: List[str] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return self.steps.count(OK)

    @property
    def failed(self) -> int:
        return self.steps.count(FAILED)

    @property
    def skipped(self) -> int:
        return self.steps.count(SKIPPED)


class ActionExecutor:

    def __init__(self, gateway, rule_store: JsonCollectionStore,
                 variable_store: VariableStore, history: HistoryLog,
                 state: EngineState,
                 sleep: Callable[[float], Any] = asyncio.sleep,
                 tracer: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.gateway = gateway
        self.rule_store = rule_store
        self.variable_store = variable_store
        self.history = history
        self.state = state
        self._sleep = sleep
        self._tracer = tracer

        self._stats = {
            "chains": 0, "steps": 0,
            "step_successes": 0, "step_failures": 0, "steps_skipped": 0,
        }

    def _add_trace(self, trace: Dict[str, Any]):
        if self._tracer:
            self._tracer(trace)
            return
        level = trace.get("level", "DEBUG")
        logger.log(logging.getLevelName(level), f"[AUTO {trace.get('rule_id', '?')}] {trace.get('message', '')}")

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)

    # =========================================================================
    # CHAIN
    # =========================================================================

    async def execute(self, rule: AutomationRule, actions: Optional[List] = None,
                      trigger: Any = None) -> ExecutionResult:
        """Run the rule's actions (or the given subset) in order."""
        actions = rule.actions if actions is None else actions
        result = ExecutionResult(rule.id)
        total = len(actions)
        self._stats["chains"] += 1

        self._add_trace({
            "rule_id": rule.id, "level": "INFO",
            "phase": "sequence", "result": "START",
            "message": f"🚀 Executing {total} action(s) for: {rule.label}",
        })
        await self._record_execution(rule, trigger)

        for num, action in enumerate(actions, start=1):
            path = f"[{num}/{total}]"
            try:
                outcome = await self._run_step(rule, action, path)
            except (GatewayError, StoreError) as e:
                outcome = FAILED
                self._add_trace({
                    "rule_id": rule.id, "level": "ERROR",
                    "phase": "step", "result": "STEP_FAILED",
                    "message": f"{path} ❌ {getattr(action, 'type', '?')} action failed: {e}",
                    "error": str(e),
                })
            except Exception as e:
                outcome = FAILED
                self._add_trace({
                    "rule_id": rule.id, "level": "ERROR",
                    "phase": "step", "result": "EXCEPTION",
                    "message": f"{path} 💥 {getattr(action, 'type', '?')} action crashed: {e}",
                    "error": str(e), "traceback": traceback.format_exc(),
                })

            result.steps.append(outcome)
            self._stats["steps"] += 1
            if outcome == OK:
                self._stats["step_successes"] += 1
            elif outcome == FAILED:
                self._stats["step_failures"] += 1
            else:
                self._stats["steps_skipped"] += 1

        self._add_trace({
            "rule_id": rule.id, "level": "INFO",
            "phase": "sequence", "result": "COMPLETE",
            "message": f"✅ Sequence complete - {rule.label} "
                       f"({result.completed} ok, {result.failed} failed, {result.skipped} skipped)",
        })
        return result

    async def _record_execution(self, rule: AutomationRule, trigger: Any):
        details = {"ruleId": rule.id, "source": SOURCE}
        if trigger is not None and hasattr(trigger, "model_dump"):
            details["trigger"] = trigger.model_dump(by_alias=True, exclude_none=True)
            device_id = getattr(trigger, "device_id", None)
            if device_id:
                details["deviceId"] = device_id
                details["deviceName"] = self.state.device_name(device_id)
        try:
            await self.history.record("automation", f"Automation \"{rule.label}\" executed", details)
        except StoreError as e:
            logger.error(f"History write failed for rule {rule.id}: {e}")

    async def _run_step(self, rule: AutomationRule, action, path: str) -> str:
        if isinstance(action, TimerAction):
            return await self._step_timer(rule, action, path)
        if isinstance(action, VariableAction):
            return await self._step_variable(rule, action, path)
        if isinstance(action, AutomationAction):
            return await self._step_automation(rule, action, path)
        if isinstance(action, DeviceAction):
            return await self._step_device(rule, action, path)

        reason = action.reason if isinstance(action, InvalidElement) else type(action).__name__
        self._add_trace({
            "rule_id": rule.id, "level": "WARNING",
            "phase": "step", "result": "INVALID",
            "message": f"{path} Skipping malformed action: {reason}",
        })
        return SKIPPED

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _step_timer(self, rule, action: TimerAction, path) -> str:
        ms = action.delay_ms
        if ms <= 0:
            return SKIPPED
        self._add_trace({
            "rule_id": rule.id, "level": "INFO",
            "phase": "step", "result": "DELAY",
            "message": f"{path} ⏳ Waiting {action.timer_value:g} {action.timer_unit} ({ms}ms)",
        })
        started = time.monotonic()
        await self._sleep(ms / 1000)
        self._add_trace({
            "rule_id": rule.id, "level": "DEBUG",
            "phase": "step", "result": "DELAY_DONE",
            "message": f"{path} ⏰ Wait finished after {time.monotonic() - started:.1f}s",
        })
        return OK

    async def _step_variable(self, rule, action: VariableAction, path) -> str:
        if not action.variable_id:
            return SKIPPED

        items = await self.variable_store.read_all()
        target = next((v for v in items if isinstance(v, dict) and v.get("id") == action.variable_id), None)
        if target is None:
            self._add_trace({
                "rule_id": rule.id, "level": "WARNING",
                "phase": "step", "result": "VARIABLE_MISSING",
                "message": f"{path} Variable {action.variable_id} not found",
            })
            return SKIPPED

        target["value"] = action.variable_value
        await self.variable_store.replace_all(items, source=SOURCE)
        self.state.set_variable(action.variable_id, action.variable_value)

        self._add_trace({
            "rule_id": rule.id, "level": "INFO",
            "phase": "step", "result": "SUCCESS",
            "message": f"{path} 🔹 Variable updated: {target.get('name', action.variable_id)} -> {action.variable_value}",
        })
        return OK

    async def _step_automation(self, rule, action: AutomationAction, path) -> str:
        target_id = action.automation_id or rule.id
        items = await self.rule_store.read_all()
        target = next((r for r in items if isinstance(r, dict) and r.get("id") == target_id), None)
        if target is None:
            self._add_trace({
                "rule_id": rule.id, "level": "WARNING",
                "phase": "step", "result": "RULE_MISSING",
                "message": f"{path} Automation {target_id} not found",
            })
            return SKIPPED

        enabled = action.automation_enabled
        target["enabled"] = enabled
        await self.rule_store.replace_all(items)
        self.state.set_rule_enabled(target_id, enabled)

        name = target.get("name") or target_id
        self._add_trace({
            "rule_id": rule.id, "level": "INFO",
            "phase": "step", "result": "SUCCESS",
            "message": f"{path} 🔹 Automation updated: {name} -> {enabled}",
        })
        try:
            await self.history.record(
                "automation",
                f"Automation {'enabled' if enabled else 'disabled'} \"{name}\" by automation",
                {"ruleId": target_id, "enabled": enabled, "source": SOURCE},
            )
        except StoreError as e:
            logger.error(f"History write failed for rule {target_id}: {e}")
        return OK

    async def _step_device(self, rule, action: DeviceAction, path) -> str:
        if not action.device_id or not action.command:
            self._add_trace({
                "rule_id": rule.id, "level": "WARNING",
                "phase": "step", "result": "INVALID",
                "message": f"{path} Device action without deviceId/command skipped",
            })
            return SKIPPED

        name = self.state.device_name(action.device_id)
        self._add_trace({
            "rule_id": rule.id, "level": "INFO",
            "phase": "step", "result": "SENDING",
            "message": f"{path} → {name} {action.command} ({action.parameter})",
        })

        success = await self.gateway.send_command(action.device_id, action.command, action.parameter)
        if success is False:
            self._add_trace({
                "rule_id": rule.id, "level": "ERROR",
                "phase": "step", "result": "COMMAND_FAILED",
                "message": f"{path} ❌ {name} {action.command} rejected",
            })
            return FAILED

        self._add_trace({
            "rule_id": rule.id, "level": "INFO",
            "phase": "step", "result": "SUCCESS",
            "message": f"{path} ✅ Device command sent: {name} ({action.device_id}) -> {action.command}",
        })
        try:
            await self.history.record_command(
                action.device_id, name, action.command, action.parameter, SOURCE)
        except StoreError as e:
            logger.error(f"History write failed for {action.device_id}: {e}")
        return OK
