"""Interpreter behaviour: routing, fork/join, loops, failures and sweeps."""

from datetime import timedelta

import pytest

from nodeflow.actions import Action, default_action_registry
from nodeflow.config import EngineConfig, NodeflowConfig
from nodeflow.engine import WorkflowEngine
from nodeflow.models import utcnow
from nodeflow.persistence import InMemoryWorkflowStore


def _engine(max_depth=200, actions=None):
    config = NodeflowConfig(engine=EngineConfig(max_execution_depth=max_depth, retry_base_delay=0))
    return WorkflowEngine(store=InMemoryWorkflowStore(), config=config, actions=actions)


async def _publish(engine, slug, nodes, entity_type=None):
    created = await engine.versions.create_definition(slug, entity_type=entity_type)
    draft = await engine.versions.create_draft(created.data["definitionId"], {"nodes": nodes})
    published = await engine.versions.publish(draft.data["versionId"])
    assert published.success, published.reason
    return draft.data["versionId"]


def _set(key, value, outputs):
    return {
        "type": "action",
        "config": {"action": "set_context", "params": {"key": key, "value": value}},
        "outputs": outputs,
    }


class FlakyAction(Action):
    name = "flaky"

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    async def execute(self, params, ctx):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return self.ok(calls=self.calls)


@pytest.mark.asyncio
async def test_linear_workflow_completes():
    engine = _engine()
    await _publish(
        engine,
        "greet",
        {
            "start": {"type": "trigger", "outputs": ["hello"]},
            "hello": _set("greeting", "Hello {{trigger.name}}", ["done"]),
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("greet", {"name": "Ada"}, started_by="7")
    assert result.success
    assert result.data["status"] == "completed"

    state = await engine.get_instance_state(result.data["instanceId"])
    assert state["context"]["greeting"] == "Hello Ada"
    assert state["context"]["triggeredBy"] == "7"
    assert state["context"]["nodes"]["hello"]["result"]["value"] == "Hello Ada"
    assert [log["node_id"] for log in state["execution_logs"]] == ["start", "hello", "done"]
    assert state["completed_at"] is not None


@pytest.mark.asyncio
async def test_start_unknown_slug():
    result = await _engine().start_workflow("missing")
    assert not result.success
    assert result.reason == "No active workflow found for slug 'missing'."


@pytest.mark.asyncio
async def test_condition_routes_by_port():
    engine = _engine()
    await _publish(
        engine,
        "route",
        {
            "start": {"type": "trigger", "outputs": ["check"]},
            "check": {
                "type": "condition",
                "config": {"expression": "trigger.amount > 100"},
                "outputs": [
                    {"port": "true", "target": "big"},
                    {"port": "false", "target": "small"},
                ],
            },
            "big": _set("size", "big", ["done"]),
            "small": _set("size", "small", ["done"]),
            "done": {"type": "end"},
        },
    )
    big = await engine.start_workflow("route", {"amount": "250"})
    state = await engine.get_instance_state(big.data["instanceId"])
    assert state["context"]["size"] == "big"
    assert state["context"]["nodes"]["check"] == {"result": True, "port": "true"}

    small = await engine.start_workflow("route", {"amount": 5})
    state = await engine.get_instance_state(small.data["instanceId"])
    assert state["context"]["size"] == "small"


@pytest.mark.asyncio
async def test_condition_with_structured_spec():
    engine = _engine()
    await _publish(
        engine,
        "structured",
        {
            "start": {"type": "trigger", "outputs": ["check"]},
            "check": {
                "type": "condition",
                "config": {
                    "condition": {
                        "all": [
                            {"field": "trigger.kind", "operator": "in", "value": ["a", "b"]},
                            {"not": {"field": "trigger.blocked", "operator": "is_set"}},
                        ]
                    }
                },
                "outputs": [
                    {"port": "true", "target": "done"},
                    {"port": "false", "target": "never"},
                ],
            },
            "never": _set("reached", True, ["done"]),
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("structured", {"kind": "b"})
    state = await engine.get_instance_state(result.data["instanceId"])
    assert "reached" not in state["context"]


@pytest.mark.asyncio
async def test_fork_branches_run_in_declared_order_and_share_context():
    engine = _engine()
    await _publish(
        engine,
        "fork",
        {
            "start": {"type": "trigger", "outputs": ["split"]},
            "split": {"type": "fork", "outputs": ["a", "b"]},
            "a": _set("first", "from-a", ["end_a"]),
            "b": _set("seen", "{{first}}", ["end_b"]),
            "end_a": {"type": "end"},
            "end_b": {"type": "end"},
        },
    )
    result = await engine.start_workflow("fork")
    assert result.data["status"] == "completed"

    state = await engine.get_instance_state(result.data["instanceId"])
    assert state["context"]["seen"] == "from-a"
    logs = {log["node_id"]: log["id"] for log in state["execution_logs"]}
    assert logs["a"] < logs["end_a"] < logs["b"] < logs["end_b"]


@pytest.mark.asyncio
async def test_fork_runs_each_branch_to_its_end_before_the_next():
    engine = _engine()
    await _publish(
        engine,
        "uneven",
        {
            "start": {"type": "trigger", "outputs": ["split"]},
            "split": {"type": "fork", "outputs": ["a1", "b1"]},
            "a1": _set("step", "a1", ["a2"]),
            "a2": _set("first", "from-a2", ["end_a"]),
            "b1": _set("seen", "{{first}}", ["end_b"]),
            "end_a": {"type": "end"},
            "end_b": {"type": "end"},
        },
    )
    result = await engine.start_workflow("uneven")
    assert result.data["status"] == "completed"

    state = await engine.get_instance_state(result.data["instanceId"])
    assert state["context"]["seen"] == "from-a2"
    assert [log["node_id"] for log in state["execution_logs"]] == [
        "start",
        "split",
        "a1",
        "a2",
        "end_a",
        "b1",
        "end_b",
    ]


@pytest.mark.asyncio
async def test_fork_join_collects_every_branch():
    engine = _engine()
    await _publish(
        engine,
        "join",
        {
            "start": {"type": "trigger", "outputs": ["split"]},
            "split": {"type": "fork", "outputs": ["a", "b", "c"]},
            "a": _set("a", 1, ["merge"]),
            "b": _set("b", 2, ["merge"]),
            "c": _set("c", 3, ["merge"]),
            "merge": {"type": "join", "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("join")
    assert result.data["status"] == "completed"

    state = await engine.get_instance_state(result.data["instanceId"])
    join_state = state["context"]["_internal"]["joinState"]["merge"]
    assert join_state["completedInputs"] == ["a:default", "b:default", "c:default"]
    merge_logs = [log for log in state["execution_logs"] if log["node_id"] == "merge"]
    assert [log["status"] for log in merge_logs] == ["waiting", "waiting", "completed"]
    assert state["active_nodes"] == []


@pytest.mark.asyncio
async def test_join_with_fewer_edges_than_branches():
    engine = _engine()
    await _publish(
        engine,
        "partial-join",
        {
            "start": {"type": "trigger", "outputs": ["split"]},
            "split": {"type": "fork", "outputs": ["solo", "a", "b"]},
            "solo": _set("solo", True, ["solo_end"]),
            "a": _set("a", 1, ["merge"]),
            "b": _set("b", 2, ["merge"]),
            "merge": {"type": "join", "outputs": ["done"]},
            "solo_end": {"type": "end"},
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("partial-join")
    assert result.data["status"] == "completed"
    state = await engine.get_instance_state(result.data["instanceId"])
    assert len(state["context"]["_internal"]["joinState"]["merge"]["completedInputs"]) == 2


@pytest.mark.asyncio
async def test_join_completes_when_branches_finish_in_the_same_instant(monkeypatch):
    frozen = utcnow()
    monkeypatch.setattr("nodeflow.engine.utcnow", lambda: frozen)
    engine = _engine()
    await _publish(
        engine,
        "same-second",
        {
            "start": {"type": "trigger", "outputs": ["split"]},
            "split": {"type": "fork", "outputs": ["a", "b"]},
            "a": _set("a", 1, ["a_more"]),
            "a_more": _set("a_more", 1, ["merge"]),
            "b": _set("b", 2, ["merge"]),
            "merge": {"type": "join", "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("same-second")
    assert result.data["status"] == "completed"

    state = await engine.get_instance_state(result.data["instanceId"])
    finished = [log for log in state["execution_logs"] if log["status"] == "completed"]
    assert {log["completed_at"] for log in finished} == {frozen}
    join_state = state["context"]["_internal"]["joinState"]["merge"]
    assert join_state["completedInputs"] == ["a_more:default", "b:default"]


@pytest.mark.asyncio
async def test_blocked_join_cannot_be_resumed_directly():
    engine = _engine()
    await _publish(
        engine,
        "gated-join",
        {
            "start": {"type": "trigger", "outputs": ["split"]},
            "split": {"type": "fork", "outputs": ["a", "approve"]},
            "a": _set("a", 1, ["merge"]),
            "approve": {
                "type": "approval",
                "config": {"memberIds": ["1"]},
                "outputs": [
                    {"port": "approved", "target": "merge"},
                    {"port": "rejected", "target": "merge"},
                ],
            },
            "merge": {"type": "join", "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    started = await engine.start_workflow("gated-join")
    instance_id = started.data["instanceId"]
    state = await engine.get_instance_state(instance_id)
    assert state["active_nodes"] == ["merge", "approve"]

    forced = await engine.resume_workflow(instance_id, "merge")
    assert not forced.success
    assert forced.reason == "Join node 'merge' cannot be resumed; it waits for its inputs."
    state = await engine.get_instance_state(instance_id)
    assert state["status"] == "waiting"
    assert "done" not in [log["node_id"] for log in state["execution_logs"]]


@pytest.mark.asyncio
async def test_completion_requires_an_end_in_the_current_drain():
    engine = _engine()
    await _publish(
        engine,
        "dead-end",
        {
            "start": {"type": "trigger", "outputs": ["split"]},
            "split": {"type": "fork", "outputs": ["finish", "wait"]},
            "finish": {"type": "end"},
            "wait": {"type": "delay", "config": {"waitEvent": "papers.filed"}, "outputs": ["file"]},
            "file": {
                "type": "action",
                "config": {"action": "set_context", "params": {"key": "filed", "value": True}},
            },
        },
    )
    started = await engine.start_workflow("dead-end")
    assert started.data["status"] == "waiting"

    resumed = await engine.resume_workflow(started.data["instanceId"], "wait")
    assert resumed.success
    assert resumed.data["status"] == "running"
    state = await engine.get_instance_state(started.data["instanceId"])
    assert state["context"]["filed"] is True
    assert state["completed_at"] is None


@pytest.mark.asyncio
async def test_loop_repeats_body_until_max_iterations():
    engine = _engine()
    await _publish(
        engine,
        "loop",
        {
            "start": {"type": "trigger", "outputs": ["repeat"]},
            "repeat": {
                "type": "loop",
                "config": {"maxIterations": 3},
                "outputs": [
                    {"port": "continue", "target": "body"},
                    {"port": "exit", "target": "done"},
                ],
            },
            "body": _set("counter", "{{increment}}", ["repeat"]),
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("loop")
    assert result.data["status"] == "completed"
    state = await engine.get_instance_state(result.data["instanceId"])
    assert state["context"]["counter"] == 2
    assert state["context"]["_internal"]["loopState"]["repeat"]["iteration"] == 3


@pytest.mark.asyncio
async def test_loop_exit_condition():
    engine = _engine()
    await _publish(
        engine,
        "loop-exit",
        {
            "start": {"type": "trigger", "outputs": ["repeat"]},
            "repeat": {
                "type": "loop",
                "config": {"maxIterations": 10, "exitCondition": "counter >= 1"},
                "outputs": [
                    {"port": "continue", "target": "body"},
                    {"port": "exit", "target": "done"},
                ],
            },
            "body": _set("counter", "{{increment}}", ["repeat"]),
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("loop-exit")
    state = await engine.get_instance_state(result.data["instanceId"])
    assert state["context"]["counter"] == 1


@pytest.mark.asyncio
async def test_cycle_marks_instance_failed():
    engine = _engine()
    await _publish(
        engine,
        "cycle",
        {
            "start": {"type": "trigger", "outputs": ["a", "done"]},
            "a": _set("a", 1, ["b"]),
            "b": _set("b", 1, ["a"]),
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("cycle")
    assert not result.success
    assert result.data["status"] == "failed"
    assert "Cycle detected: node 'a'" in result.reason

    state = await engine.get_instance_state(result.data["instanceId"])
    assert state["error_info"]["failed_node"] == "a"


@pytest.mark.asyncio
async def test_max_depth_guard():
    engine = _engine(max_depth=3)
    await _publish(
        engine,
        "deep",
        {
            "start": {"type": "trigger", "outputs": ["a"]},
            "a": _set("a", 1, ["b"]),
            "b": _set("b", 1, ["c"]),
            "c": _set("c", 1, ["d"]),
            "d": _set("d", 1, ["done"]),
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("deep")
    assert result.data["status"] == "failed"
    assert "exceeded max depth (3)" in result.reason


@pytest.mark.asyncio
async def test_unknown_node_type_is_logged_and_stops_branch():
    engine = _engine()
    await _publish(
        engine,
        "odd",
        {
            "start": {"type": "trigger", "outputs": ["weird"]},
            "weird": {"type": "teleport", "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("odd")
    assert result.success
    assert result.data["status"] == "running"
    state = await engine.get_instance_state(result.data["instanceId"])
    weird = [log for log in state["execution_logs"] if log["node_id"] == "weird"]
    assert weird[0]["status"] == "failed"
    assert weird[0]["error_message"] == "Unknown node type: teleport"


@pytest.mark.asyncio
async def test_action_failure_fails_instance_but_keeps_prior_effects():
    engine = _engine()
    await _publish(
        engine,
        "broken",
        {
            "start": {"type": "trigger", "outputs": ["work"]},
            "work": {
                "type": "action",
                "config": {
                    "actions": [
                        {"type": "set_context", "key": "written", "value": True},
                        {"type": "set_context"},
                    ]
                },
                "outputs": ["done"],
            },
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("broken")
    assert not result.success
    assert result.reason.startswith("Node 'work' failed:")
    state = await engine.get_instance_state(result.data["instanceId"])
    assert state["status"] == "failed"
    assert state["context"]["written"] is True


@pytest.mark.asyncio
async def test_unregistered_action_fails_node():
    engine = _engine()
    await _publish(
        engine,
        "unregistered",
        {
            "start": {"type": "trigger", "outputs": ["work"]},
            "work": {"type": "action", "config": {"action": "launch_rocket"}, "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("unregistered")
    assert "Action 'launch_rocket' not found in registry." in result.reason


@pytest.mark.asyncio
async def test_retries_log_every_attempt():
    registry = default_action_registry()
    flaky = FlakyAction(failures=2)
    registry.register(flaky)
    engine = _engine(actions=registry)
    await _publish(
        engine,
        "retry",
        {
            "start": {"type": "trigger", "outputs": ["work"]},
            "work": {"type": "action", "config": {"action": "flaky", "maxRetries": 2}, "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("retry")
    assert result.data["status"] == "completed"

    logs = await engine.store.list_logs(result.data["instanceId"], node_id="work")
    assert [(log.attempt_number, log.status) for log in logs] == [
        (1, "failed"),
        (2, "failed"),
        (3, "completed"),
    ]


@pytest.mark.asyncio
async def test_exhausted_retries_record_attempts():
    registry = default_action_registry()
    registry.register(FlakyAction(failures=5))
    engine = _engine(actions=registry)
    await _publish(
        engine,
        "retry-fail",
        {
            "start": {"type": "trigger", "outputs": ["work"]},
            "work": {"type": "action", "config": {"action": "flaky", "retryCount": 1}, "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    result = await engine.start_workflow("retry-fail")
    assert not result.success
    state = await engine.get_instance_state(result.data["instanceId"])
    assert state["error_info"]["failed_node"] == "work"
    assert state["error_info"]["attempts"] == 2
    assert "transient failure 2" in state["error_info"]["error"]


@pytest.mark.asyncio
async def test_duplicate_instances_prevented_per_entity():
    engine = _engine()
    await _publish(
        engine,
        "review",
        {
            "start": {"type": "trigger", "outputs": ["approve"]},
            "approve": {
                "type": "approval",
                "config": {"memberIds": ["1"]},
                "outputs": [
                    {"port": "approved", "target": "done"},
                    {"port": "rejected", "target": "done"},
                ],
            },
            "done": {"type": "end"},
        },
        entity_type="Warrants",
    )
    first = await engine.start_workflow("review", entity_id=5)
    assert first.data["status"] == "waiting"

    second = await engine.start_workflow("review", entity_id="5")
    assert not second.success
    assert "already has an active instance" in second.reason
    assert second.data["existingInstanceId"] == first.data["instanceId"]

    other = await engine.start_workflow("review", entity_id=6)
    assert other.success

    await engine.cancel_workflow(first.data["instanceId"])
    again = await engine.start_workflow("review", entity_id=5)
    assert again.success


@pytest.mark.asyncio
async def test_resume_guards():
    engine = _engine()
    await _publish(
        engine,
        "pause",
        {
            "start": {"type": "trigger", "outputs": ["wait"]},
            "wait": {"type": "delay", "config": {"waitEvent": "documents.received"}, "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    started = await engine.start_workflow("pause")
    instance_id = started.data["instanceId"]
    assert started.data["status"] == "waiting"

    wrong_node = await engine.resume_workflow(instance_id, "done")
    assert wrong_node.reason == "Node 'done' is not awaiting resumption."
    assert not (await engine.resume_workflow(999, "wait")).success

    resumed = await engine.resume_workflow(instance_id, "wait", data={"by": "clerk"})
    assert resumed.data["status"] == "completed"
    state = await engine.get_instance_state(instance_id)
    assert state["context"]["resumeData"] == {"by": "clerk"}
    assert state["context"]["nodes"]["wait"]["by"] == "clerk"
    wait_log = [log for log in state["execution_logs"] if log["node_id"] == "wait"][0]
    assert wait_log["status"] == "completed"

    terminal = await engine.resume_workflow(instance_id, "wait")
    assert terminal.reason == f"Instance {instance_id} is not in waiting state."


@pytest.mark.asyncio
async def test_cancel_workflow():
    engine = _engine()
    await _publish(
        engine,
        "cancel-me",
        {
            "start": {"type": "trigger", "outputs": ["approve"]},
            "approve": {
                "type": "approval",
                "config": {"memberIds": ["1", "2"], "issueTokens": True},
                "outputs": [
                    {"port": "approved", "target": "done"},
                    {"port": "rejected", "target": "done"},
                ],
            },
            "done": {"type": "end"},
        },
    )
    started = await engine.start_workflow("cancel-me")
    instance_id = started.data["instanceId"]

    cancelled = await engine.cancel_workflow(instance_id, reason="withdrawn")
    assert cancelled.data == {"instanceId": instance_id, "status": "cancelled", "cancelledGates": 1}
    state = await engine.get_instance_state(instance_id)
    assert state["error_info"] == {"cancellation_reason": "withdrawn"}
    assert {a["status"] for a in state["approvals"]} == {"cancelled"}

    again = await engine.cancel_workflow(instance_id)
    assert again.reason == f"Instance {instance_id} is already in a terminal state 'cancelled'."


@pytest.mark.asyncio
async def test_delay_sweep():
    engine = _engine()
    await _publish(
        engine,
        "cooldown",
        {
            "start": {"type": "trigger", "outputs": ["wait"]},
            "wait": {"type": "delay", "config": {"duration": "1h"}, "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    started = await engine.start_workflow("cooldown")
    instance_id = started.data["instanceId"]

    now = await engine.process_scheduled_transitions()
    assert now.data["delays"] == 0

    later = utcnow() + timedelta(hours=2)
    preview = await engine.process_scheduled_transitions(now=later, dry_run=True)
    assert preview.data["delays"] == 1
    assert preview.data["resumed"] == [(instance_id, "wait")]
    assert (await engine.get_instance_state(instance_id))["status"] == "waiting"

    swept = await engine.process_scheduled_transitions(now=later)
    assert swept.data["resumed"] == [(instance_id, "wait")]
    state = await engine.get_instance_state(instance_id)
    assert state["status"] == "completed"
    assert "wait" not in state["context"]["_internal"]["delays"]


@pytest.mark.asyncio
async def test_dispatch_trigger_starts_listening_workflows():
    engine = _engine()
    await _publish(
        engine,
        "on-request",
        {
            "start": {
                "type": "trigger",
                "config": {
                    "event": "warrant.requested",
                    "entityType": "Warrants",
                    "entityIdField": "warrant_id",
                },
                "outputs": ["done"],
            },
            "done": {"type": "end"},
        },
    )
    await _publish(
        engine,
        "other",
        {
            "start": {"type": "trigger", "config": {"event": "member.joined"}, "outputs": ["done"]},
            "done": {"type": "end"},
        },
    )
    results = await engine.dispatch_trigger("warrant.requested", {"warrant_id": 9}, "4")
    assert len(results) == 1
    state = await engine.get_instance_state(results[0].data["instanceId"])
    assert state["entity_type"] == "Warrants"
    assert state["entity_id"] == "9"
    assert await engine.dispatch_trigger("nothing.happened") == []
