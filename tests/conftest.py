"""
Shared fixtures: fake gateway, controllable clock and JSON stores on tmp_path.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest

from switchbot import DeviceGateway
from modules.scheduler import AutomationScheduler
from modules.storage import build_stores

# 2026-10-19 is a Monday
MONDAY_0700 = datetime(2026, 10, 19, 7, 0, 0)


class FakeGateway(DeviceGateway):
    """In-memory gateway recording every call."""

    def __init__(self):
        self.statuses: Dict[str, Dict[str, Any]] = {}
        self.failures: Dict[str, Exception] = {}
        self.devices: List[Dict[str, Any]] = []
        self.commands: List[tuple] = []
        self.status_calls: List[str] = []
        self.scenes: List[str] = []

    async def get_status(self, device_id):
        self.status_calls.append(device_id)
        if device_id in self.failures:
            raise self.failures[device_id]
        return dict(self.statuses.get(device_id, {}))

    async def send_command(self, device_id, command, parameter="default", command_type="command"):
        if device_id in self.failures:
            raise self.failures[device_id]
        self.commands.append((device_id, command, parameter))
        return True

    async def get_devices(self):
        return {"deviceList": list(self.devices), "infraredRemoteList": []}

    async def execute_scene(self, scene_id):
        self.scenes.append(scene_id)
        return {"statusCode": 100, "body": {}, "message": "success"}

    def quota_remaining(self):
        return 9876


class FakeClock:

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Stands in for asyncio.sleep; records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FakeClock(MONDAY_0700)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def stores(tmp_path):
    """(rules, variables, history) backed by files in tmp_path."""
    return build_stores(str(tmp_path / "data"), history_limit=1000)


@pytest.fixture
def scheduler(stores, gateway, clock, sleep):
    rules, variables, history = stores
    return AutomationScheduler(rules, variables, history, gateway, clock=clock, sleep=sleep)


def schedule_rule(rule_id="r1", time="07:00", days=None, actions=None, **extra):
    """Rule document with a single schedule trigger."""
    rule = {
        "id": rule_id,
        "name": f"Rule {rule_id}",
        "enabled": True,
        "triggers": [{"type": "schedule", "time": time, "days": days or []}],
        "conditions": [],
        "actions": actions if actions is not None else [
            {"type": "device", "deviceId": "X", "command": "turnOn"},
        ],
    }
    rule.update(extra)
    return rule
