"""
Status Change Detection
=======================
Compares a device's previous and current status snapshots and turns a
transition into one human-readable history entry.

Checked in order, a later match replaces an earlier one:
  motion     moveDetected (falls back to isMoving)   -> sensor
  lock       lockState                               -> device
  open/close openState (falls back to doorState)     -> sensor
  power      power                                   -> device

The first observation of a device has no previous snapshot and never emits.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .storage import HistoryLog, StoreError

logger = logging.getLogger("modules.automation")


@dataclass
class Change:
    type: str
    message: str


def _first_present(status: Dict[str, Any], *keys: str):
    for key in keys:
        value = status.get(key)
        if value is not None:
            return value
    return None


def detect(previous: Optional[Dict[str, Any]],
           current: Optional[Dict[str, Any]]) -> Optional[Change]:
    if not previous or not current:
        return None

    change = None

    moving = _first_present(current, "moveDetected", "isMoving")
    was_moving = _first_present(previous, "moveDetected", "isMoving")
    if moving is not None and moving != was_moving:
        change = Change("sensor", "Motion detected" if moving else "Motion stopped")

    lock = current.get("lockState")
    if lock is not None and lock != previous.get("lockState"):
        change = Change("device", "Door locked" if lock == "locked" else "Door unlocked")

    opened = _first_present(current, "openState", "doorState")
    was_opened = _first_present(previous, "openState", "doorState")
    if opened is not None and opened != was_opened:
        is_open = str(opened).lower() in ("open", "opened")
        change = Change("sensor", "Door opened" if is_open else "Door closed")

    power = current.get("power")
    if power is not None and power != previous.get("power"):
        change = Change("device", "Turned ON" if str(power).lower() == "on" else "Turned OFF")

    return change


class ChangeDetector:
    """Writes detected transitions to the history log."""

    def __init__(self, history: HistoryLog):
        self.history = history

    async def record(self, device_id: str, name: str,
                     previous: Optional[Dict[str, Any]],
                     current: Optional[Dict[str, Any]]) -> Optional[Change]:
        change = detect(previous, current)
        if change is None:
            return None

        label = name or device_id
        logger.info(f"🔔 [Status Change] {label}: {change.message}")
        try:
            await self.history.record(
                change.type,
                f"{label} : {change.message}",
                {"deviceId": device_id, "status": current},
            )
        except StoreError as e:
            logger.error(f"Failed to record status change for {device_id}: {e}")
        return change
