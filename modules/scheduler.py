"""
Automation Scheduler - Fast and Slow Polling Loops
==================================================
Owns the engine state and drives evaluation from two independent loops:

  fast loop (5s)   re-read rules + variables, log user edits, evaluate
                   against the last known device statuses
  slow loop (30s)  fetch status for devices referenced by enabled rules,
                   record transitions, evaluate

Evaluation pass:
  for each enabled rule (store order):
      evaluate -> triggered & conditions met -> cooldown gate -> spawn chain

The pass never suspends, so the cooldown check-then-mark cannot interleave
with another pass. Action chains run as separate tasks and may outlive the
tick that spawned them; they are only cancelled by stop().
"""

import asyncio
import logging
import time
import traceback
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from error_handler import GatewayError

from .action_executor import ActionExecutor
from .automation_models import AutomationRule, parse_rules, parse_variables
from .change_detector import ChangeDetector
from .engine_state import EngineState
from .evaluator import evaluate, watched_device_ids
from .storage import HistoryLog, JsonCollectionStore, StoreError, VariableStore

logger = logging.getLogger("modules.automation")

FAST_INTERVAL = 5
SLOW_INTERVAL = 30
MAX_TRACE_ENTRIES = 200


class AutomationScheduler:

    def __init__(self, rule_store: JsonCollectionStore, variable_store: VariableStore,
                 history: HistoryLog, gateway,
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Callable[[float], Any] = asyncio.sleep,
                 fast_interval: float = FAST_INTERVAL,
                 slow_interval: float = SLOW_INTERVAL,
                 state: Optional[EngineState] = None):
        self.rule_store = rule_store
        self.variable_store = variable_store
        self.history = history
        self.gateway = gateway
        self._clock = clock
        self.fast_interval = fast_interval
        self.slow_interval = slow_interval

        self.state = state or EngineState()
        self.detector = ChangeDetector(history)
        self.executor = ActionExecutor(
            gateway, rule_store, variable_store, history, self.state,
            sleep=sleep, tracer=self._add_trace,
        )

        self._loaded = False
        self._running = False
        self._loop_tasks: List[asyncio.Task] = []
        self._chains: Set[asyncio.Task] = set()

        self._trace_log: List[Dict[str, Any]] = []
        self._max_trace_entries = MAX_TRACE_ENTRIES

        self._stats = {
            "fast_ticks": 0, "slow_ticks": 0,
            "evaluations": 0, "matches": 0, "executions": 0,
            "cooldown_skips": 0, "status_fetches": 0, "status_failures": 0,
            "store_errors": 0, "errors": 0,
        }

    # =========================================================================
    # TRACING
    # =========================================================================

    def _add_trace(self, trace: Dict[str, Any]):
        trace["timestamp"] = time.time()
        self._trace_log.append(trace)
        if len(self._trace_log) > self._max_trace_entries:
            self._trace_log = self._trace_log[-self._max_trace_entries:]

        level = trace.get("level", "DEBUG")
        msg = trace.get("message", "")
        rule_id = trace.get("rule_id", "?")
        log_msg = f"[AUTO {rule_id}] {msg}"

        if level == "ERROR": logger.error(log_msg)
        elif level == "WARNING": logger.warning(log_msg)
        elif level == "INFO": logger.info(log_msg)
        else: logger.debug(log_msg)

    def get_trace_log(self, rule_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if rule_id:
            return [t for t in self._trace_log if t.get("rule_id") == rule_id]
        return list(self._trace_log)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            **self.executor.get_stats(),
            "total_rules": len(self.state.rules),
            "enabled_rules": len(self.state.enabled_rules()),
            "variables": len(self.state.variables),
            "watched_devices": len(watched_device_ids(self.state.rules)),
            "cached_statuses": len(self.state.statuses),
            "cooldowns": len(self.state.cooldowns),
            "trace_entries": len(self._trace_log),
            "running_chains": sum(1 for t in self._chains if not t.done()),
            "running": self._running,
        }

    # =========================================================================
    # FAST LOOP
    # =========================================================================

    async def fast_tick(self) -> List[asyncio.Task]:
        """Refresh rules and variables from the stores, then evaluate."""
        self._stats["fast_ticks"] += 1
        try:
            raw_rules = await self.rule_store.read_all()
            raw_variables = await self.variable_store.read_all()
        except StoreError as e:
            self._stats["store_errors"] += 1
            logger.error(f"Fast tick skipped: {e}")
            return []

        rules = parse_rules(raw_rules)
        variables = parse_variables(raw_variables)

        if self._loaded:
            self._audit(rules, variables)

        self.state.rules = rules
        self.state.variables = {}
        self.state.variable_names = {}
        self.state.load_variables(variables)
        self._loaded = True

        return self.run_evaluation()

    def _audit(self, rules: List[AutomationRule], variables):
        """Log edits made outside the engine since the previous tick."""
        old_rules = {r.id: r for r in self.state.rules}
        for rule in rules:
            old = old_rules.get(rule.id)
            if old is None:
                logger.info(f"📝 [User Action] Automation added: {rule.label}")
            elif old.enabled != rule.enabled:
                state = "enabled" if rule.enabled else "disabled"
                logger.info(f"📝 [User Action] Automation {state}: {rule.label}")
        removed = set(old_rules) - {r.id for r in rules}
        for rule_id in removed:
            logger.info(f"📝 [User Action] Automation removed: {old_rules[rule_id].label}")
            self.state.cooldowns.forget(rule_id)

        for var in variables:
            old = self.state.variables.get(var.id)
            if old is not None and old != var.value:
                logger.info(f"📝 [User Action] Variable changed: {var.name or var.id} -> "
                            f"{'ON' if var.value else 'OFF'}")

    # =========================================================================
    # SLOW LOOP
    # =========================================================================

    async def slow_tick(self) -> List[asyncio.Task]:
        """Poll watched devices, record transitions, then evaluate."""
        self._stats["slow_ticks"] += 1
        device_ids = watched_device_ids(self.state.rules)
        if not device_ids:
            return []

        statuses = await asyncio.gather(*(self._fetch_status(d) for d in device_ids))

        for device_id, status in zip(device_ids, statuses):
            if status is None:
                continue
            self.state.statuses.update(device_id, status)
            previous, current = self.state.statuses.pair(device_id)
            await self.detector.record(device_id, self.state.device_name(device_id), previous, current)

        return self.run_evaluation()

    async def _fetch_status(self, device_id: str) -> Optional[Dict[str, Any]]:
        self._stats["status_fetches"] += 1
        try:
            return await self.gateway.get_status(device_id)
        except GatewayError as e:
            self._stats["status_failures"] += 1
            logger.warning(f"Status fetch failed for {self.state.device_name(device_id)} ({e.kind}): {e}")
        except Exception as e:
            self._stats["status_failures"] += 1
            logger.error(f"Status fetch error for {device_id}: {e}")
        return None

    async def load_device_names(self):
        """Cache deviceId -> deviceName for log and history messages."""
        try:
            body = await self.gateway.get_devices()
        except GatewayError as e:
            logger.warning(f"Could not load device list: {e}")
            return
        for device in (body.get("deviceList") or []) + (body.get("infraredRemoteList") or []):
            device_id = device.get("deviceId")
            if device_id:
                self.state.device_names[device_id] = device.get("deviceName") or device_id
        logger.info(f"Loaded {len(self.state.device_names)} device name(s)")

    # =========================================================================
    # EVALUATION PASS
    # =========================================================================

    def run_evaluation(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """
        Evaluate every enabled rule once and spawn chains for those that fire.

        Synchronous on purpose: nothing here awaits, so the cooldown gate is
        checked and marked without another pass running in between.
        Must be called from within a running event loop.
        """
        now = now or self._clock()
        spawned = []

        for rule in self.state.enabled_rules():
            try:
                self._stats["evaluations"] += 1
                result = evaluate(rule, now, self.state.variables, self.state.statuses)
                if not result.triggered:
                    continue

                self._stats["matches"] += 1
                if not result.satisfied:
                    self._add_trace({
                        "rule_id": rule.id, "level": "DEBUG",
                        "phase": "conditions", "result": "NOT_MET",
                        "message": f"Triggered by {result.trigger.type} but conditions not met - {rule.label}",
                    })
                    continue

                if not self.state.cooldowns.try_acquire(rule.id, now):
                    self._stats["cooldown_skips"] += 1
                    self._add_trace({
                        "rule_id": rule.id, "level": "DEBUG",
                        "phase": "cooldown", "result": "COOLDOWN",
                        "message": f"In cooldown ({self.state.cooldowns.remaining(rule.id, now):.0f}s left) - {rule.label}",
                    })
                    continue

                self._stats["executions"] += 1
                self._add_trace({
                    "rule_id": rule.id, "level": "INFO",
                    "phase": "trigger", "result": "FIRED",
                    "message": f"✅ Rule \"{rule.label}\" triggered by {result.trigger.type}",
                })
                spawned.append(self._spawn_chain(rule, result.trigger))

            except Exception as e:
                self._stats["errors"] += 1
                self._add_trace({
                    "rule_id": rule.id, "level": "ERROR",
                    "phase": "evaluate", "result": "EXCEPTION",
                    "message": f"💥 Evaluation failed: {e}",
                    "error": str(e), "traceback": traceback.format_exc(),
                })

        return spawned

    def _spawn_chain(self, rule: AutomationRule, trigger) -> asyncio.Task:
        task = asyncio.create_task(self._run_chain(rule, trigger), name=f"automation-{rule.id}")
        self._chains.add(task)
        task.add_done_callback(self._chains.discard)
        return task

    async def _run_chain(self, rule: AutomationRule, trigger):
        try:
            return await self.executor.execute(rule, trigger=trigger)
        except asyncio.CancelledError:
            self._add_trace({
                "rule_id": rule.id, "level": "INFO",
                "phase": "sequence", "result": "CANCELLED",
                "message": f"Sequence cancelled - {rule.label}",
            })
            raise
        except Exception as e:
            self._stats["errors"] += 1
            self._add_trace({
                "rule_id": rule.id, "level": "ERROR",
                "phase": "sequence", "result": "EXCEPTION",
                "message": f"💥 Sequence failed: {e}",
                "error": str(e), "traceback": traceback.format_exc(),
            })

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def _loop(self, name: str, interval: float, tick: Callable):
        logger.info(f"🤖 {name} loop started (every {interval}s)")
        while self._running:
            try:
                await tick()
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(f"{name} loop error: {e}\n{traceback.format_exc()}")
            await asyncio.sleep(interval)

    async def start(self):
        if self._running:
            return
        self._running = True
        await self.load_device_names()
        # Populate rule cache before the first device poll
        await self.fast_tick()
        self._loop_tasks = [
            asyncio.create_task(self._loop("Fast", self.fast_interval, self.fast_tick), name="automation-fast"),
            asyncio.create_task(self._loop("Slow", self.slow_interval, self.slow_tick), name="automation-slow"),
        ]
        logger.info(f"Automation scheduler started with {len(self.state.rules)} rule(s)")

    async def stop(self):
        self._running = False
        tasks = self._loop_tasks + list(self._chains)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_tasks = []
        self._chains.clear()
        logger.info("Automation scheduler stopped")
