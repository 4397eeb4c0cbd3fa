"""
Per-rule cooldown gate.

A rule that executed at t0 may execute again only once more than
COOLDOWN_SECONDS have passed. Entries live for the process lifetime.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

logger = logging.getLogger("modules.automation")

COOLDOWN_SECONDS = 65


class CooldownTracker:

    def __init__(self, window: float = COOLDOWN_SECONDS):
        self.window = window
        self._last_run: Dict[str, float] = {}

    def should_execute(self, rule_id: str, now: datetime) -> bool:
        last = self._last_run.get(rule_id)
        if last is None:
            return True
        return now.timestamp() - last > self.window

    def mark_executed(self, rule_id: str, now: datetime):
        ts = now.timestamp()
        # Never move backwards (clock adjustments)
        self._last_run[rule_id] = max(ts, self._last_run.get(rule_id, ts))

    def try_acquire(self, rule_id: str, now: datetime) -> bool:
        """Check and mark in one step. Returns False while cooling down."""
        if not self.should_execute(rule_id, now):
            return False
        self.mark_executed(rule_id, now)
        return True

    def last_executed(self, rule_id: str) -> Optional[float]:
        return self._last_run.get(rule_id)

    def remaining(self, rule_id: str, now: datetime) -> float:
        last = self._last_run.get(rule_id)
        if last is None:
            return 0.0
        return max(0.0, self.window - (now.timestamp() - last))

    def forget(self, rule_id: str):
        self._last_run.pop(rule_id, None)

    def clear(self):
        self._last_run.clear()

    def __len__(self) -> int:
        return len(self._last_run)
