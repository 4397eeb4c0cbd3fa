"""Tests for the polling loops and evaluation pass."""

import asyncio

import pytest

from conftest import schedule_rule
from error_handler import DeviceNotFoundError
from modules import scheduler as scheduler_module
from modules.scheduler import AutomationScheduler
from modules.storage import StoreError


async def run(tasks):
    return await asyncio.gather(*tasks)


class TestMondayMorning:

    @pytest.mark.asyncio
    async def test_fires_once_per_minute(self, scheduler, stores, gateway, clock):
        rules, _, _ = stores
        await rules.replace_all([schedule_rule(days=[1, 2, 3, 4, 5])])

        await run(await scheduler.fast_tick())
        assert gateway.commands == [("X", "turnOn", "default")]

        clock.advance(30)
        assert await scheduler.fast_tick() == []
        assert gateway.commands == [("X", "turnOn", "default")]

    @pytest.mark.asyncio
    async def test_weekend_does_not_fire(self, scheduler, stores, gateway, clock):
        rules, _, _ = stores
        await rules.replace_all([schedule_rule(days=[1, 2, 3, 4, 5])])
        clock.advance(-24 * 3600)  # Sunday

        assert await scheduler.fast_tick() == []
        assert gateway.commands == []

    @pytest.mark.asyncio
    async def test_disabled_rule_ignored(self, scheduler, stores, gateway):
        rules, _, _ = stores
        await rules.replace_all([schedule_rule(enabled=False)])
        assert await scheduler.fast_tick() == []


class TestFastLoop:

    @pytest.mark.asyncio
    async def test_store_error_skips_tick(self, scheduler, stores, gateway, monkeypatch):
        rules, _, _ = stores

        async def broken():
            raise StoreError("disk gone")

        monkeypatch.setattr(rules, "read_all", broken)
        assert await scheduler.fast_tick() == []
        assert scheduler.get_stats()["store_errors"] == 1

    @pytest.mark.asyncio
    async def test_variable_cache_refreshed(self, scheduler, stores):
        _, variables, _ = stores
        await variables.replace_all([{"id": "v1", "name": "Away", "value": True}])
        await scheduler.fast_tick()
        assert scheduler.state.variables == {"v1": True}
        assert scheduler.state.variable_names == {"v1": "Away"}

    @pytest.mark.asyncio
    async def test_variable_change_visible_within_same_cycle(self, scheduler, stores, gateway):
        rules, variables, _ = stores
        await variables.replace_all([{"id": "v1", "name": "Away", "value": False}])
        await rules.replace_all([
            schedule_rule("setter", actions=[{"type": "variable", "variableId": "v1", "variableValue": True}]),
            {
                "id": "follower", "name": "Follower",
                "triggers": [{"type": "variable", "variableId": "v1", "variableValue": True}],
                "actions": [{"type": "device", "deviceId": "Y", "command": "turnOn"}],
            },
        ])

        await run(await scheduler.fast_tick())
        assert scheduler.state.variables["v1"] is True
        assert gateway.commands == []

        await run(scheduler.run_evaluation())
        assert gateway.commands == [("Y", "turnOn", "default")]


class TestSlowLoop:

    @pytest.mark.asyncio
    async def test_no_watched_devices_no_calls(self, scheduler, stores, gateway):
        rules, _, _ = stores
        await rules.replace_all([schedule_rule()])
        await scheduler.fast_tick()
        assert await scheduler.slow_tick() == []
        assert gateway.status_calls == []

    @pytest.mark.asyncio
    async def test_polls_only_watched_devices(self, scheduler, stores, gateway, clock):
        rules, _, _ = stores
        clock.advance(3600)
        await rules.replace_all([{
            "id": "heat", "name": "Heat",
            "triggers": [{"type": "sensor", "deviceId": "meter", "operator": "<", "threshold": 18}],
            "conditions": [{"type": "device", "deviceId": "heater", "state": "off"}],
            "actions": [{"type": "device", "deviceId": "heater", "command": "turnOn"}],
        }])
        gateway.statuses["meter"] = {"temperature": 17.5}
        gateway.statuses["heater"] = {"power": "off"}
        gateway.statuses["unrelated"] = {"power": "on"}

        await scheduler.fast_tick()
        await run(await scheduler.slow_tick())

        assert sorted(gateway.status_calls) == ["heater", "meter"]
        assert gateway.commands == [("heater", "turnOn", "default")]

    @pytest.mark.asyncio
    async def test_one_failing_device_does_not_block_others(self, scheduler, stores, gateway, clock):
        rules, _, _ = stores
        clock.advance(3600)
        await rules.replace_all([{
            "id": "r1",
            "triggers": [{"type": "device", "deviceId": "broken", "state": "on"},
                         {"type": "device", "deviceId": "plug", "state": "on"}],
            "actions": [{"type": "device", "deviceId": "lamp", "command": "turnOn"}],
        }])
        gateway.failures["broken"] = DeviceNotFoundError("gone")
        gateway.statuses["plug"] = {"power": "on"}

        await scheduler.fast_tick()
        await run(await scheduler.slow_tick())

        assert "broken" not in scheduler.state.statuses
        assert scheduler.state.statuses.get("plug") == {"power": "on"}
        assert gateway.commands == [("lamp", "turnOn", "default")]

    @pytest.mark.asyncio
    async def test_transition_recorded_between_polls(self, scheduler, stores, gateway, clock):
        rules, _, history = stores
        clock.advance(3600)
        await rules.replace_all([{
            "id": "r1",
            "triggers": [{"type": "device", "deviceId": "plug", "state": "never"}],
        }])
        gateway.devices = [{"deviceId": "plug", "deviceName": "Desk Lamp"}]
        await scheduler.load_device_names()
        await scheduler.fast_tick()

        gateway.statuses["plug"] = {"power": "off"}
        await scheduler.slow_tick()
        assert await history.read_all() == []

        gateway.statuses["plug"] = {"power": "on"}
        await scheduler.slow_tick()
        entries = await history.read_all()
        assert [e["message"] for e in entries] == ["Desk Lamp : Turned ON"]


class TestIsolation:

    @pytest.mark.asyncio
    async def test_timer_pauses_only_its_own_chain(self, stores, gateway, clock):
        rules, variables, history = stores
        await rules.replace_all([
            schedule_rule("slow", actions=[
                {"type": "timer", "timerValue": 10, "timerUnit": "seconds"},
                {"type": "device", "deviceId": "Z", "command": "turnOff"},
            ]),
            schedule_rule("quick"),
            schedule_rule("later", time="07:01",
                          actions=[{"type": "device", "deviceId": "Y", "command": "turnOn"}]),
        ])
        scheduler = AutomationScheduler(rules, variables, history, gateway,
                                        clock=clock, sleep=asyncio.sleep)

        slow, quick = await scheduler.fast_tick()
        await quick
        assert gateway.commands == [("X", "turnOn", "default")]
        assert not slow.done()

        clock.advance(60)
        await run(await scheduler.fast_tick())
        assert gateway.commands[-1] == ("Y", "turnOn", "default")
        assert not slow.done()

        await scheduler.stop()
        assert slow.cancelled()
        assert ("Z", "turnOff", "default") not in gateway.commands

    @pytest.mark.asyncio
    async def test_evaluation_error_does_not_abort_pass(self, scheduler, stores, gateway, monkeypatch):
        rules, _, _ = stores
        await rules.replace_all([
            schedule_rule("broken", actions=[{"type": "device", "deviceId": "W", "command": "turnOn"}]),
            schedule_rule("healthy"),
        ])
        real_evaluate = scheduler_module.evaluate

        def evaluate(rule, *args):
            if rule.id == "broken":
                raise RuntimeError("bad rule")
            return real_evaluate(rule, *args)

        monkeypatch.setattr(scheduler_module, "evaluate", evaluate)
        await run(await scheduler.fast_tick())

        assert gateway.commands == [("X", "turnOn", "default")]
        assert scheduler.get_stats()["errors"] == 1
        errors = [t for t in scheduler.get_trace_log(rule_id="broken") if t["result"] == "EXCEPTION"]
        assert errors[0]["error"] == "bad rule"


class TestTracing:

    @pytest.mark.asyncio
    async def test_trace_and_stats(self, scheduler, stores):
        rules, _, _ = stores
        await rules.replace_all([schedule_rule("r1"), schedule_rule("r2", time="09:00")])
        await run(await scheduler.fast_tick())

        traces = scheduler.get_trace_log(rule_id="r1")
        assert any(t["result"] == "FIRED" for t in traces)
        assert scheduler.get_trace_log(rule_id="r2") == []

        stats = scheduler.get_stats()
        assert stats["total_rules"] == 2
        assert stats["executions"] == 1

    @pytest.mark.asyncio
    async def test_cooldown_traced(self, scheduler, stores, clock):
        rules, _, _ = stores
        await rules.replace_all([schedule_rule()])
        await run(await scheduler.fast_tick())
        clock.advance(5)
        await scheduler.fast_tick()
        assert scheduler.get_stats()["cooldown_skips"] == 1

    @pytest.mark.asyncio
    async def test_trace_buffer_bounded(self, scheduler):
        for i in range(250):
            scheduler._add_trace({"rule_id": "x", "level": "DEBUG", "message": str(i)})
        log = scheduler.get_trace_log()
        assert len(log) == 200
        assert log[-1]["message"] == "249"


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, stores, gateway, clock, sleep):
        rules, variables, history = stores
        await rules.replace_all([schedule_rule()])
        scheduler = AutomationScheduler(rules, variables, history, gateway, clock=clock, sleep=sleep,
                                        fast_interval=0.01, slow_interval=0.01)
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert gateway.commands == [("X", "turnOn", "default")]
        assert scheduler.get_stats()["running"] is False
