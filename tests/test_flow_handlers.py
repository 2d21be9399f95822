"""Tests for the delay, error-trigger and trigger handlers."""

from datetime import timedelta

import pytest

from services.execution.errors import NodeExecutionError
from services.execution.steps import LocalStepHandle, StepJournal
from services.handlers.flow import delay_seconds, handle_delay_wait, handle_error_trigger
from services.handlers.triggers import handle_manual_trigger, handle_schedule_trigger


class FakeSleeper:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


async def run(handler, parameters, context, publish, step, node_id="node-1", **kwargs):
    return await handler(node_id, parameters, context, caller_id="tester",
                         step=step, publish=publish, **kwargs)


class TestDelay:
    async def test_sleeps_for_converted_duration(self, publish, clock):
        sleeper = FakeSleeper()
        step = LocalStepHandle(clock=clock, sleeper=sleeper)
        out = await run(handle_delay_wait, {"amount": "2", "unit": "minutes"}, {"a": 1}, publish, step)

        assert sleeper.calls == [120.0]
        assert out["delay"]["durationMs"] == 120000
        assert out["a"] == 1
        assert publish.statuses("node-1") == ["loading", "success"]

    async def test_templated_amount(self, publish, clock):
        sleeper = FakeSleeper()
        step = LocalStepHandle(clock=clock, sleeper=sleeper)
        await run(handle_delay_wait, {"amount": "{{wait}}", "unit": "seconds"}, {"wait": 5}, publish, step)
        assert sleeper.calls == [5.0]

    async def test_replay_does_not_sleep_again(self, publish, clock):
        sleeper = FakeSleeper()
        journal = StepJournal()
        params = {"amount": 3, "unit": "seconds"}
        await run(handle_delay_wait, params, {}, publish, LocalStepHandle(journal, clock=clock, sleeper=sleeper))
        await run(handle_delay_wait, params, {}, publish, LocalStepHandle(journal, clock=clock, sleeper=sleeper))
        assert sleeper.calls == [3.0]

    async def test_interrupted_sleep_waits_only_the_remainder(self, publish, clock):
        sleeper = FakeSleeper()
        journal = StepJournal(wake_at={"delay-wait-node-1": (clock.now + timedelta(seconds=30)).isoformat()})
        step = LocalStepHandle(journal, clock=clock, sleeper=sleeper)
        await run(handle_delay_wait, {"amount": 1, "unit": "hours"}, {}, publish, step)
        assert sleeper.calls == [30.0]

    @pytest.mark.parametrize("amount", [0, -5, "abc", ""])
    async def test_invalid_amount(self, publish, step, amount):
        with pytest.raises(NodeExecutionError) as exc_info:
            await run(handle_delay_wait, {"amount": amount}, {}, publish, step)
        assert exc_info.value.error.error_code == "INVALID_DELAY"
        assert publish.statuses("node-1") == ["loading", "error"]

    async def test_longer_than_cap(self, publish, step):
        with pytest.raises(NodeExecutionError):
            await run(handle_delay_wait, {"amount": 2, "unit": "minutes"}, {}, publish, step,
                      max_delay_seconds=60)

    def test_units(self):
        assert delay_seconds(1.5, "hours") == 5400
        assert delay_seconds(2, "days") == 172800


class TestErrorTrigger:
    async def test_consumes_carried_error(self, publish, step):
        context = {"x": 1, "__error": {"nodeId": "http", "message": "Network Connection Error"}}
        out = await run(handle_error_trigger, {}, context, publish, step)

        assert out["error"]["hasError"] is True
        assert out["error"]["message"] == "Network Connection Error"
        assert out["error"]["error"]["nodeId"] == "http"
        assert "__error" not in out
        assert out["__errorHandled"] is True
        assert out["x"] == 1

    async def test_falls_back_to_last_error(self, publish, step):
        out = await run(handle_error_trigger, {"variableName": "failure"},
                        {"__lastError": "boom"}, publish, step)
        assert out["failure"]["message"] == "boom"

    async def test_passes_through_without_error(self, publish, step):
        out = await run(handle_error_trigger, {}, {"x": 1}, publish, step)
        assert out["error"]["hasError"] is False
        assert "__errorHandled" not in out


class TestTriggers:
    async def test_manual_trigger_passes_context(self, publish, step):
        assert await run(handle_manual_trigger, {}, {"a": 1}, publish, step) == {"a": 1}

    async def test_schedule_trigger_copies_carrier(self, publish, step):
        carrier = {"scheduleId": 7, "nodeId": "node-1", "scheduledAt": "2024-01-01T09:00:00+00:00",
                   "triggeredAt": "2024-01-01T09:00:01+00:00", "scheduleType": "DAILY"}
        out = await run(handle_schedule_trigger, {}, {"scheduleTrigger": carrier}, publish, step)
        assert out["schedule"] == carrier
        assert publish.messages[-1][1]["triggeredAt"] == carrier["triggeredAt"]

    async def test_schedule_trigger_run_by_hand(self, publish, step):
        out = await run(handle_schedule_trigger, {"variableName": "tick"}, {}, publish, step)
        assert out["tick"]["manual"] is True
        assert out["tick"]["scheduledAt"] is None
