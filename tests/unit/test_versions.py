import pytest

from nodeflow.models import WorkflowInstance
from nodeflow.persistence import InMemoryWorkflowStore
from nodeflow.versions import VersionManager, compare_definitions, validate_definition


def _linear(extra=None):
    nodes = {
        "start": {"type": "trigger", "outputs": ["notify"]},
        "notify": {"type": "action", "config": {"actions": []}, "outputs": ["done"]},
        "done": {"type": "end"},
    }
    nodes.update(extra or {})
    return {"nodes": nodes}


def test_valid_definition():
    report = validate_definition(_linear())
    assert report == {"valid": True, "errors": [], "warnings": []}


def test_validation_errors():
    definition = {
        "nodes": {
            "t1": {"type": "trigger", "outputs": ["loop"]},
            "t2": {"type": "trigger", "outputs": ["missing"]},
            "loop": {"type": "loop", "config": {}, "outputs": ["orphan_end"]},
            "orphan": {"type": "action", "outputs": []},
        }
    }
    errors = validate_definition(definition)["errors"]
    assert "Definition must contain exactly one trigger node (found 2)." in errors
    assert "Definition must contain at least one end node." in errors
    assert "Node 't2' references non-existent target 'missing'." in errors
    assert "Loop node 'loop' must have maxIterations set." in errors


def test_unreachable_node_and_warnings():
    definition = _linear(
        {
            "stray": {"type": "teleport", "outputs": ["done"]},
            "gate": {"type": "approval", "outputs": [{"port": "approved", "target": "done"}]},
        }
    )
    definition["nodes"]["notify"]["outputs"] = ["done", "gate"]
    report = validate_definition(definition)
    assert report["errors"] == ["Node 'stray' is not reachable from the trigger node."]
    assert "Node 'stray' has unknown type 'teleport'." in report["warnings"]
    assert (
        "Approval node 'gate' should have both approved and rejected outputs."
        in report["warnings"]
    )


def test_empty_definition():
    report = validate_definition({"nodes": {}})
    assert not report["valid"]


def test_malformed_node_shapes_are_reported():
    definition = {
        "nodes": {
            "start": {"type": "trigger", "config": "oops", "outputs": ["done"]},
            "route": {"type": "condition", "outputs": [{"port": 1, "target": "done"}, 42.5]},
            "fanout": {"type": "fork", "outputs": "done"},
            "bad": "not-a-node",
            "done": {"type": "end"},
        }
    }
    report = validate_definition(definition)
    assert not report["valid"]
    errors = report["errors"]
    assert "Node 'start' config must be an object." in errors
    assert "Node 'route' has an output with a non-string port 1." in errors
    assert "Node 'route' has an output that is neither a target id nor an object." in errors
    assert "Node 'fanout' outputs must be a list." in errors
    assert "Node 'bad' must be an object." in errors


@pytest.mark.asyncio
async def test_publish_reports_malformed_config_instead_of_raising():
    manager = VersionManager(InMemoryWorkflowStore())
    definition_id = (await manager.create_definition("shapes")).data["definitionId"]
    draft = await manager.create_draft(
        definition_id,
        {"nodes": {"t": {"type": "trigger", "config": "oops", "outputs": ["e"]}, "e": {"type": "end"}}},
    )
    result = await manager.publish(draft.data["versionId"])
    assert not result.success
    assert result.data["errors"] == ["Node 't' config must be an object."]


def test_compare_definitions():
    old = _linear()
    new = _linear({"extra": {"type": "end"}})
    new["nodes"]["notify"] = {"type": "action", "config": {"actions": [{"type": "x"}]}}
    del new["nodes"]["done"]
    diff = compare_definitions(old, new)
    assert diff["added"] == ["extra"]
    assert diff["removed"] == ["done"]
    assert list(diff["modified"]) == ["notify"]


@pytest.mark.asyncio
async def test_publish_lifecycle():
    manager = VersionManager(InMemoryWorkflowStore())
    created = await manager.create_definition("roster", name="Roster")
    definition_id = created.data["definitionId"]
    duplicate = await manager.create_definition("roster")
    assert not duplicate.success

    v1 = (await manager.create_draft(definition_id, _linear())).data["versionId"]
    v2 = (await manager.create_draft(definition_id, _linear(), change_notes="second")).data
    assert v2["versionNumber"] == 2

    assert (await manager.publish(v1, published_by="7")).success
    assert not (await manager.update_draft(v1, definition=_linear())).success
    assert not (await manager.publish(v1)).success

    assert (await manager.publish(v2["versionId"])).success
    current = await manager.get_current_version(definition_id)
    assert current.id == v2["versionId"]
    history = await manager.get_version_history(definition_id)
    assert [v.version_number for v in history] == [2, 1]
    assert [v.status for v in history] == ["published", "archived"]

    assert (await manager.archive(v2["versionId"])).success
    assert await manager.get_current_version(definition_id) is None


@pytest.mark.asyncio
async def test_publish_rejects_invalid_draft():
    manager = VersionManager(InMemoryWorkflowStore())
    definition_id = (await manager.create_definition("broken")).data["definitionId"]
    draft = await manager.create_draft(definition_id, {"nodes": {"x": {"type": "end"}}})
    result = await manager.publish(draft.data["versionId"])
    assert not result.success
    assert result.reason.startswith("Definition validation failed")
    assert await manager.get_current_version(definition_id) is None


@pytest.mark.asyncio
async def test_update_draft_and_compare():
    manager = VersionManager(InMemoryWorkflowStore())
    definition_id = (await manager.create_definition("wf")).data["definitionId"]
    a = (await manager.create_draft(definition_id, _linear())).data["versionId"]
    b = (await manager.create_draft(definition_id, _linear())).data["versionId"]
    await manager.update_draft(b, definition=_linear({"extra": {"type": "end"}}))
    diff = await manager.compare_versions(a, b)
    assert diff.data["added"] == ["extra"]
    assert not (await manager.compare_versions(a, 999)).success


@pytest.mark.asyncio
async def test_migrate_instance():
    store = InMemoryWorkflowStore()
    manager = VersionManager(store)
    definition_id = (await manager.create_definition("wf")).data["definitionId"]
    v1 = (await manager.create_draft(definition_id, _linear())).data["versionId"]
    await manager.publish(v1)

    renamed = _linear()
    renamed["nodes"]["notify2"] = renamed["nodes"].pop("notify")
    renamed["nodes"]["start"]["outputs"] = ["notify2"]
    v2 = (await manager.create_draft(definition_id, renamed)).data["versionId"]
    await manager.publish(v2)

    instance = await store.save_instance(
        WorkflowInstance(
            definition_id=definition_id,
            version_id=v1,
            status="waiting",
            active_nodes=["notify"],
        )
    )
    assert not (await manager.migrate_instance(instance.id, v2)).success

    result = await manager.migrate_instance(
        instance.id, v2, migrated_by="7", node_mapping={"notify": "notify2"}
    )
    assert result.success
    migrated = await store.get_instance(instance.id)
    assert migrated.version_id == v2
    assert migrated.active_nodes == ["notify2"]
    migrations = await store.list_migrations(instance.id)
    assert migrations[0].node_mapping == {"notify": "notify2"}

    # archived targets are refused
    assert not (await manager.migrate_instance(instance.id, v1)).success


@pytest.mark.asyncio
async def test_migrate_instances_reports_failures():
    store = InMemoryWorkflowStore()
    manager = VersionManager(store)
    definition_id = (await manager.create_definition("wf")).data["definitionId"]
    v1 = (await manager.create_draft(definition_id, _linear())).data["versionId"]
    await manager.publish(v1)
    v2 = (await manager.create_draft(definition_id, _linear())).data["versionId"]
    await manager.publish(v2)

    for active in (["notify"], ["vanished"]):
        await store.save_instance(
            WorkflowInstance(
                definition_id=definition_id, version_id=v1, status="waiting", active_nodes=active
            )
        )
    await store.save_instance(
        WorkflowInstance(definition_id=definition_id, version_id=v1, status="completed")
    )

    result = await manager.migrate_instances(v2)
    assert result.data["migrated"] == 1
    assert len(result.data["failed"]) == 1
