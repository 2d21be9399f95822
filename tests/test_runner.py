"""Graph runner tests: ordering, routing, loops and error recovery."""

import pytest

from models.workflow import WorkflowDefinition
from services.execution.errors import ExecutorNotFoundError, NodeExecutionError, WorkflowCycleError
from services.execution.graph import start_nodes, topological_order
from services.execution.runner import WorkflowRunner
from services.node_executor import LocalInvoker, NodeExecutor
from services.status_broadcaster import StatusBroadcaster
from services.workflow import WorkflowNotFoundError, WorkflowRegistry, WorkflowService


def workflow(nodes, edges, workflow_id="wf-1"):
    return WorkflowDefinition.model_validate({
        "id": workflow_id,
        "nodes": [{"id": n[0], "type": n[1], "data": n[2] if len(n) > 2 else {}} for n in nodes],
        "edges": [
            {"source": e[0], "target": e[1], "sourceHandle": e[2] if len(e) > 2 else None}
            for e in edges
        ],
    })


def set_node(node_id, name, value, field_type="string"):
    return (node_id, "set", {"fields": [{"name": name, "type": field_type, "value": value}]})


@pytest.fixture
def invoker(publish):
    return LocalInvoker(NodeExecutor(), publish)


@pytest.fixture
def runner(invoker):
    return WorkflowRunner(invoker, caller_id="tester")


class TestGraph:
    def test_order_is_stable_by_declaration(self):
        definition = workflow(
            [("c", "set"), ("a", "manualTrigger"), ("b", "set")],
            [("a", "b"), ("a", "c")],
        )
        assert topological_order(definition) == ["a", "c", "b"]

    def test_cycle_detected(self):
        definition = workflow([("a", "set"), ("b", "set"), ("c", "set")],
                              [("a", "b"), ("b", "c"), ("c", "b")])
        with pytest.raises(WorkflowCycleError) as exc_info:
            topological_order(definition)
        assert exc_info.value.node_ids == ["b", "c"]

    def test_start_nodes(self):
        definition = workflow(
            [("m", "manualTrigger"), ("s", "scheduleTrigger"), ("x", "set")],
            [("m", "x"), ("s", "x")],
        )
        assert start_nodes(definition, {}) == {"m", "s"}
        assert start_nodes(definition, {"scheduleTrigger": {"nodeId": "s"}}) == {"s"}

    def test_start_nodes_without_triggers(self):
        definition = workflow([("a", "set"), ("b", "set")], [("a", "b")])
        assert start_nodes(definition, {}) == {"a"}

    def test_edge_aliases(self):
        definition = WorkflowDefinition.model_validate({
            "nodes": [{"id": "a", "type": "filter", "parameters": {}}],
            "connections": [{"source": "a", "target": "b", "from_output": "true"}],
        })
        assert definition.nodes[0].data == {}
        assert definition.connections[0].from_output == "true"
        assert definition.connections[0].to_input == "main"


class TestRouting:
    async def test_filter_routes_one_branch(self, runner, publish):
        definition = workflow(
            [
                ("start", "manualTrigger"),
                ("check", "filter", {"conditions": [
                    {"field": "amount", "operator": "greater_than", "value": "100"}]}),
                set_node("big", "label", "big"),
                set_node("small", "label", "small"),
            ],
            [("start", "check"), ("check", "big", "true"), ("check", "small", "false")],
        )
        result = await runner.run(definition, {"amount": 500})

        assert result.success
        assert result.context["label"] == "big"
        assert result.executed == ["start", "check", "big"]
        assert result.skipped == ["small"]
        assert "__filterResult" not in result.context
        assert publish.statuses("small") == []

    async def test_switch_routes_by_output_index(self, runner):
        definition = workflow(
            [
                ("start", "manualTrigger"),
                ("route", "switch", {"variableName": "route", "mode": "expression",
                                     "expression": "{{priority}}"}),
                set_node("low", "lane", "low"),
                set_node("high", "lane", "high"),
            ],
            [("start", "route"), ("route", "low", "output-0"), ("route", "high", "output-1")],
        )
        result = await runner.run(definition, {"priority": 1})

        assert result.context["lane"] == "high"
        assert "low" in result.skipped

    async def test_join_after_branches(self, runner):
        definition = workflow(
            [
                ("start", "manualTrigger"),
                ("check", "filter", {"conditions": [{"field": "ok", "operator": "is_true"}]}),
                set_node("yes", "answer", "yes"),
                set_node("no", "answer", "no"),
                ("done", "merge", {"variableName": "merged", "mode": "chooseBranch",
                                   "inputs": "answer"}),
            ],
            [("start", "check"), ("check", "yes", "true"), ("check", "no", "false"),
             ("yes", "done"), ("no", "done")],
        )
        result = await runner.run(definition, {"ok": False})

        assert result.context["merged"] == "no"
        assert result.executed == ["start", "check", "no", "done"]


class TestLoop:
    async def test_body_runs_per_item(self, runner, invoker):
        definition = workflow(
            [
                ("start", "manualTrigger"),
                ("each", "loop", {"sourceArray": "{{items}}"}),
                set_node("double", "doubled", "{{loop.currentItem}} * 2", "expression"),
                set_node("after", "finished", "true", "boolean"),
            ],
            [("start", "each"), ("each", "double", "loop"), ("each", "after", "done")],
        )
        result = await runner.run(definition, {"items": [1, 2, 3]})

        assert result.context["loop"]["results"] == [{"doubled": 2}, {"doubled": 4}, {"doubled": 6}]
        assert result.context["finished"] is True
        assert "doubled" not in result.context
        assert result.executed == ["start", "each", "double", "after"]
        assert invoker.journal.has("each:2:set-fields-double")

    async def test_empty_loop_skips_body(self, runner):
        definition = workflow(
            [("start", "manualTrigger"), ("each", "loop", {"sourceArray": "{{items}}"}),
             set_node("body", "x", "1")],
            [("start", "each"), ("each", "body", "loop")],
        )
        result = await runner.run(definition, {"items": []})

        assert result.context["loop"]["results"] == []
        assert "body" in result.skipped


class TestFailures:
    def failing_workflow(self, with_handler):
        nodes = [
            ("start", "manualTrigger"),
            ("wait", "delayWait", {"amount": 0}),
            set_node("next", "reached", "yes"),
        ]
        edges = [("start", "wait"), ("wait", "next")]
        if with_handler:
            nodes.append(("recover", "errorTrigger"))
            edges.append(("wait", "recover"))
        return workflow(nodes, edges)

    async def test_error_trigger_recovers(self, runner):
        result = await runner.run(self.failing_workflow(with_handler=True))

        assert result.success
        assert result.context["error"]["hasError"] is True
        assert result.context["error"]["error"]["nodeId"] == "wait"
        assert result.context["error"]["error"]["errorCode"] == "INVALID_DELAY"
        assert "reached" not in result.context
        assert "next" in result.skipped

    async def test_unhandled_failure_ends_run(self, runner, publish):
        with pytest.raises(NodeExecutionError) as exc_info:
            await runner.run(self.failing_workflow(with_handler=False))

        run_result = exc_info.value.run_result
        assert run_result.status == "failed"
        assert run_result.failed_node == "wait"
        assert run_result.error["errorCode"] == "INVALID_DELAY"
        assert run_result.executed == ["start", "wait"]
        assert publish.statuses("wait") == ["loading", "error"]

    async def test_unknown_node_type(self, runner):
        definition = workflow([("start", "manualTrigger"), ("x", "teleport")], [("start", "x")])
        with pytest.raises(ExecutorNotFoundError):
            await runner.run(definition)

    async def test_cycle_fails_before_any_node(self, runner, publish):
        definition = workflow([("a", "manualTrigger"), ("b", "set"), ("c", "set")],
                              [("a", "b"), ("b", "c"), ("c", "b")])
        with pytest.raises(WorkflowCycleError):
            await runner.run(definition)
        assert publish.messages == []


class TestWorkflowService:
    @pytest.fixture
    def service(self, memory_settings):
        return WorkflowService(memory_settings, WorkflowRegistry(), StatusBroadcaster())

    async def test_failed_run_is_returned(self, service):
        definition = workflow([("start", "manualTrigger"), ("wait", "delayWait", {"amount": 0})],
                              [("start", "wait")])
        result = await service.execute_workflow(definition)

        assert result.status == "failed"
        assert result.failed_node == "wait"

    async def test_registered_workflow(self, service):
        service.registry.register(workflow([("start", "manualTrigger"), set_node("s", "greeting", "hi {{name}}")],
                                           [("start", "s")], workflow_id="greet"))
        result = await service.execute_registered("greet", {"name": "Ada"}, caller_id="u1")

        assert result.context["greeting"] == "hi Ada"
        assert service.broadcaster.get_node_status("workflow-status:u1", "s")["status"] == "success"

    async def test_unknown_workflow(self, service):
        with pytest.raises(WorkflowNotFoundError):
            await service.execute_registered("missing")

    async def test_launch_runs_in_background(self, service):
        service.registry.register(workflow([("start", "scheduleTrigger")], [], workflow_id="tick"))
        run_id = await service.launch("tick", {"scheduleTrigger": {"nodeId": "start"}}, "u1")
        await service.drain()

        assert run_id
        assert service.broadcaster.get_node_status("workflow-status:u1", "start") is not None
