import pytest
import pytest_asyncio

from nodeflow import persistence
from nodeflow.errors import StoreError
from nodeflow.models import (
    Approval,
    ApprovalGate,
    WorkflowDefinition,
    WorkflowExecutionLog,
    WorkflowInstance,
    WorkflowVersion,
)
from nodeflow.persistence import InMemoryWorkflowStore, SQLWorkflowStore, get_store


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryWorkflowStore()
        return
    sql_store = SQLWorkflowStore(f"sqlite+aiosqlite:///{tmp_path}/wf.db")
    yield sql_store
    await sql_store.close()


async def _seed(store):
    definition = await store.save_definition(WorkflowDefinition(slug="warrant-roster"))
    version = await store.save_version(
        WorkflowVersion(definition_id=definition.id, version_number=1, definition={"nodes": {}})
    )
    instance = await store.save_instance(
        WorkflowInstance(
            definition_id=definition.id,
            version_id=version.id,
            entity_type="WarrantRosters",
            entity_id="12",
        )
    )
    return definition, version, instance


@pytest.mark.asyncio
async def test_store_crud(store):
    definition, version, instance = await _seed(store)
    assert definition.id == 1
    assert version.id == 1

    fetched = await store.get_definition_by_slug("warrant-roster")
    assert fetched.id == definition.id
    assert await store.get_definition_by_slug("nope") is None

    instance.status = "running"
    instance.context = {"trigger": {"a": 1}}
    instance.active_nodes = ["approve"]
    await store.save_instance(instance)

    reloaded = await store.get_instance(instance.id)
    assert reloaded.status == "running"
    assert reloaded.context == {"trigger": {"a": 1}}
    assert reloaded.active_nodes == ["approve"]
    assert reloaded.started_at is not None

    matches = await store.list_instances(statuses=["running", "waiting"], entity_id=12)
    assert [i.id for i in matches] == [instance.id]
    assert await store.list_instances(statuses=["completed"]) == []


@pytest.mark.asyncio
async def test_records_are_copies(store):
    _, _, instance = await _seed(store)
    loaded = await store.get_instance(instance.id)
    loaded.context["mutated"] = True
    again = await store.get_instance(instance.id)
    assert "mutated" not in again.context


@pytest.mark.asyncio
async def test_logs_keep_sequence_order(store):
    _, _, instance = await _seed(store)
    for node_id in ("trigger", "a", "b", "a"):
        await store.save_log(
            WorkflowExecutionLog(instance_id=instance.id, node_id=node_id, node_type="action")
        )
    logs = await store.list_logs(instance.id)
    assert [log.node_id for log in logs] == ["trigger", "a", "b", "a"]
    assert [log.id for log in logs] == sorted(log.id for log in logs)
    assert len(await store.list_logs(instance.id, node_id="a")) == 2


@pytest.mark.asyncio
async def test_gates_and_tokens(store):
    _, _, instance = await _seed(store)
    gate = await store.save_gate(ApprovalGate(instance_id=instance.id, node_id="approve"))
    approval = await store.save_approval(
        Approval(gate_id=gate.id, instance_id=instance.id, approver_id="7", token="abc")
    )
    assert (await store.get_approval_by_token("abc")).id == approval.id
    assert await store.get_approval_by_token("zzz") is None
    assert await store.get_approval_by_token("") is None
    assert [g.id for g in await store.list_gates(status="pending")] == [gate.id]
    assert len(await store.list_approvals(gate_id=gate.id, approver_id="7")) == 1


@pytest.mark.asyncio
async def test_transaction_rolls_back(store):
    definition, _, _ = await _seed(store)
    with pytest.raises(RuntimeError):
        async with store.transaction():
            definition.name = "changed"
            await store.save_definition(definition)
            await store.save_definition(WorkflowDefinition(slug="other"))
            raise RuntimeError("abort")

    assert (await store.get_definition(definition.id)).name == ""
    assert await store.get_definition_by_slug("other") is None


@pytest.mark.asyncio
async def test_nested_transactions_join(store):
    async with store.transaction():
        async with store.transaction():
            await store.save_definition(WorkflowDefinition(slug="inner"))
        await store.save_definition(WorkflowDefinition(slug="outer"))
    assert [d.slug for d in await store.list_definitions()] == ["inner", "outer"]


@pytest.mark.asyncio
async def test_update_of_unknown_record_fails(store):
    with pytest.raises(StoreError):
        await store.save_definition(WorkflowDefinition(id=99, slug="ghost"))


def test_get_store_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_store_instance", None)
    monkeypatch.setenv("NODEFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("NODEFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    store = get_store()
    assert isinstance(store, InMemoryWorkflowStore)
    assert get_store() is store

    sql_store = get_store(f"sqlite+aiosqlite:///{tmp_path}/wf.db")
    assert isinstance(sql_store, SQLWorkflowStore)

    with pytest.raises(ValueError):
        get_store("mongodb://localhost")
