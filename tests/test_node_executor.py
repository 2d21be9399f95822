"""Tests for node dispatch and the Temporal activity boundary."""

from datetime import timedelta

import pytest
from temporalio.exceptions import ApplicationError
from temporalio.testing import ActivityEnvironment

from core.config import Settings
from services.execution.errors import ExecutorNotFoundError
from services.execution.steps import LocalStepHandle
from services.node_executor import LocalInvoker, NodeExecutor, NodeInvocation
from services.temporal.activities import NODE_EXECUTION_ERROR, NodeExecutionActivities
from services.temporal.client import TemporalClientWrapper
from services.temporal.workflow import activity_timeout


def invocation(node_type, parameters=None, context=None, **kwargs):
    return NodeInvocation(run_id="run-1", node_id="n1", node_type=node_type,
                          parameters=parameters or {}, context=context or {}, **kwargs)


class TestNodeExecutor:
    def test_registry_covers_every_node_type(self):
        assert NodeExecutor().node_types == sorted([
            "conditional", "delayWait", "errorTrigger", "filter", "httpRequest", "loop",
            "manualTrigger", "merge", "scheduleTrigger", "set", "split", "switch",
        ])

    def test_unknown_type(self):
        with pytest.raises(ExecutorNotFoundError) as exc_info:
            NodeExecutor().get_executor("teleport")
        assert exc_info.value.node_type == "teleport"

    async def test_settings_cap_loop_items(self, publish):
        settings = Settings(database_url="sqlite+aiosqlite:///:memory:", loop_hard_cap=2)
        out = await NodeExecutor(settings).execute(
            invocation("loop", {"mode": "times", "iterations": 5}), LocalStepHandle(), publish)
        assert out["loop"]["items"] == [0, 1]

    async def test_conditional_is_a_filter(self, publish):
        out = await NodeExecutor().execute(
            invocation("conditional", {"conditions": [{"field": "x", "operator": "equals", "value": "1"}]},
                       {"x": 1}),
            LocalStepHandle(), publish)
        assert out["filterResult"]["passed"] is True

    async def test_local_invoker_scopes_steps(self, publish):
        invoker = LocalInvoker(NodeExecutor(), publish)
        await invoker(invocation("set", {"fields": [{"name": "a", "value": "1"}]}, step_prefix="loop:3:"))
        assert invoker.journal.has("loop:3:set-fields-n1")

    def test_invocation_round_trip(self):
        original = invocation("set", {"fields": []}, {"a": 1}, caller_id="u1")
        assert NodeInvocation.from_dict(original.to_dict()) == original


class TestActivity:
    async def test_executes_node(self, publish):
        activities = NodeExecutionActivities(NodeExecutor(), publish)
        payload = invocation("set", {"fields": [{"name": "greeting", "value": "hi {{name}}"}]},
                             {"name": "Ada"}).to_dict()

        result = await ActivityEnvironment().run(activities.execute_node_activity, payload)

        assert result == {"name": "Ada", "greeting": "hi Ada"}
        assert publish.statuses("n1") == ["loading", "success"]

    async def test_classified_failure_is_non_retryable(self, publish):
        activities = NodeExecutionActivities(NodeExecutor(), publish)
        payload = invocation("delayWait", {"amount": 0}).to_dict()

        with pytest.raises(ApplicationError) as exc_info:
            await ActivityEnvironment().run(activities.execute_node_activity, payload)

        assert exc_info.value.type == NODE_EXECUTION_ERROR
        assert exc_info.value.non_retryable is True
        assert exc_info.value.details[0]["errorCode"] == "INVALID_DELAY"

    async def test_completed_steps_are_heartbeated(self, publish):
        heartbeats = []
        env = ActivityEnvironment()
        env.on_heartbeat = lambda *details: heartbeats.append(details)
        activities = NodeExecutionActivities(NodeExecutor(), publish)

        await env.run(activities.execute_node_activity,
                      invocation("set", {"fields": [{"name": "a", "value": "1"}]}).to_dict())

        assert "set-fields-n1" in heartbeats[-1][0]["results"]


class TestActivityTimeout:
    def test_regular_node(self):
        assert activity_timeout(invocation("set"), 600) == timedelta(seconds=600)

    def test_delay_extends_timeout(self):
        delay = invocation("delayWait", {"amount": 2, "unit": "minutes"})
        assert activity_timeout(delay, 600) == timedelta(seconds=720)

    def test_templated_delay_uses_the_cap(self):
        delay = invocation("delayWait", {"amount": "{{wait}}"})
        assert activity_timeout(delay, 600, max_delay_seconds=3600) == timedelta(seconds=4200)


def test_client_wrapper_from_settings():
    settings = Settings(database_url="sqlite+aiosqlite:///:memory:",
                        temporal_server_address="temporal:7233", temporal_namespace="flows")
    wrapper = TemporalClientWrapper.from_settings(settings)
    assert (wrapper.server_address, wrapper.namespace) == ("temporal:7233", "flows")
    assert not wrapper.is_connected
