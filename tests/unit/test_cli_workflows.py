import asyncio

import yaml
from typer.testing import CliRunner

import nodeflow.persistence as persistence
from nodeflow.cli import app
from nodeflow.persistence import InMemoryWorkflowStore

DEFINITION = {
    "nodes": {
        "start": {"type": "trigger", "outputs": ["approve"]},
        "approve": {
            "type": "approval",
            "config": {"memberIds": ["7"], "issueTokens": True},
            "outputs": [
                {"port": "approved", "target": "done"},
                {"port": "rejected", "target": "done"},
            ],
        },
        "done": {"type": "end"},
    }
}


def _setup_store(monkeypatch, tmp_path) -> InMemoryWorkflowStore:
    store = InMemoryWorkflowStore()
    monkeypatch.setattr(persistence, "_store_instance", store)
    monkeypatch.setenv("NODEFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    return store


def _write_definition(tmp_path, definition=DEFINITION):
    path = tmp_path / "workflow.yaml"
    path.write_text(yaml.safe_dump(definition))
    return path


def test_definition_validate(tmp_path, monkeypatch):
    _setup_store(monkeypatch, tmp_path)
    runner = CliRunner()

    result = runner.invoke(app, ["definition", "validate", str(_write_definition(tmp_path))])
    assert result.exit_code == 0, result.output
    assert "Definition is valid." in result.output

    broken = tmp_path / "broken.json"
    broken.write_text('{"nodes": {"done": {"type": "end"}}}')
    result = runner.invoke(app, ["definition", "validate", str(broken)])
    assert result.exit_code == 1
    assert "exactly one trigger node (found 0)" in result.output

    missing = runner.invoke(app, ["definition", "validate", str(tmp_path / "nope.yaml")])
    assert missing.exit_code == 1
    assert "Specified path does not exist" in missing.output


def test_import_list_and_versions(tmp_path, monkeypatch):
    _setup_store(monkeypatch, tmp_path)
    runner = CliRunner()
    path = str(_write_definition(tmp_path))

    result = runner.invoke(app, ["definition", "list"])
    assert "No definitions found" in result.output

    result = runner.invoke(
        app, ["definition", "import", path, "--slug", "roster", "--notes", "first", "--publish"]
    )
    assert result.exit_code == 0, result.output
    assert "Imported roster v1 (version #1)" in result.output
    assert "Published roster v1" in result.output

    result = runner.invoke(app, ["definition", "import", path, "--slug", "roster"])
    assert "Imported roster v2 (version #2)" in result.output

    result = runner.invoke(app, ["definition", "list"])
    assert "roster\tactive\tversion #1" in result.output

    result = runner.invoke(app, ["definition", "versions", "roster"])
    lines = result.output.strip().splitlines()
    assert lines == ["v2\t#2\tdraft", "v1\t#1\tpublished - first"]


def test_workflow_lifecycle_and_approval(tmp_path, monkeypatch):
    store = _setup_store(monkeypatch, tmp_path)
    runner = CliRunner()
    runner.invoke(
        app,
        ["definition", "import", str(_write_definition(tmp_path)), "--slug", "roster", "--publish"],
    )

    result = runner.invoke(app, ["workflow", "list"])
    assert "No workflow instances found" in result.output

    result = runner.invoke(
        app, ["workflow", "start", "roster", "--data", '{"roster_id": 3}', "--entity-id", "3"]
    )
    assert result.exit_code == 0, result.output
    assert "Instance #1: waiting" in result.output

    result = runner.invoke(app, ["workflow", "list", "--status", "waiting"])
    assert "1\troster\twaiting\tapprove" in result.output

    result = runner.invoke(app, ["approval", "pending", "7"])
    assert "Gate #1\tinstance #1\tapprove\t0/1" in result.output
    result = runner.invoke(app, ["approval", "pending", "8"])
    assert "No pending approvals" in result.output

    token = asyncio.run(store.list_approvals(instance_id=1))[0].token
    result = runner.invoke(app, ["approval", "respond", token, "approve", "--comment", "ok"])
    assert result.exit_code == 0, result.output
    assert "Gate #1: approved (1/1)" in result.output

    result = runner.invoke(app, ["workflow", "show", "1"])
    assert "Instance #1: completed" in result.output
    assert "- approve (approval): completed" in result.output
    assert "Gate #1 on approve: approved (1/1)" in result.output

    again = runner.invoke(app, ["approval", "respond", token, "approve"])
    assert again.exit_code == 1
    assert "already been used" in again.output


def test_workflow_show_missing(tmp_path, monkeypatch):
    _setup_store(monkeypatch, tmp_path)
    result = CliRunner().invoke(app, ["workflow", "show", "42"])
    assert result.exit_code == 1
    assert "Instance not found" in result.output


def test_workflow_resume_cancel_and_process(tmp_path, monkeypatch):
    _setup_store(monkeypatch, tmp_path)
    runner = CliRunner()
    definition = {
        "nodes": {
            "start": {"type": "trigger", "outputs": ["wait"]},
            "wait": {"type": "delay", "config": {"waitEvent": "signed"}, "outputs": ["done"]},
            "done": {"type": "end"},
        }
    }
    path = str(_write_definition(tmp_path, definition))
    runner.invoke(app, ["definition", "import", path, "--slug", "signing", "--publish"])

    runner.invoke(app, ["workflow", "start", "signing", "--entity-id", "1"])
    runner.invoke(app, ["workflow", "start", "signing", "--entity-id", "2"])

    result = runner.invoke(app, ["workflow", "process", "--dry-run"])
    assert "Due delays: 0" in result.output
    assert "Overdue gates: 0" in result.output

    result = runner.invoke(app, ["workflow", "resume", "1", "wait", "--data", '{"by": "clerk"}'])
    assert result.exit_code == 0, result.output
    assert "Instance #1: completed" in result.output

    result = runner.invoke(app, ["workflow", "resume", "1", "wait"])
    assert result.exit_code == 1
    assert "not in waiting state" in result.output

    result = runner.invoke(app, ["workflow", "cancel", "2", "--reason", "withdrawn"])
    assert "Instance #2 cancelled" in result.output

    result = runner.invoke(app, ["workflow", "start", "signing", "--data", "[1]"])
    assert result.exit_code == 1
    assert "--data must be a JSON object" in result.output
