"""Walk a warrant roster through a two-person approval gate."""

import asyncio
from pathlib import Path

import yaml

from nodeflow import Collaborators, WorkflowEngine
from nodeflow.collaborators import StaticDirectory, StaticSettings
from nodeflow.persistence import InMemoryWorkflowStore


async def main():
    directory = StaticDirectory(
        {
            "7": {"permissions": ["warrants.approve"]},
            "8": {"permissions": ["warrants.approve"]},
        }
    )
    settings = StaticSettings({"Warrant.RosterApprovalsRequired": 2})
    engine = WorkflowEngine(
        store=InMemoryWorkflowStore(),
        collaborators=Collaborators(settings=settings, directory=directory),
    )

    definition = yaml.safe_load((Path(__file__).parent / "warrant_roster.yaml").read_text())
    created = await engine.versions.create_definition("warrant-roster", "Warrant roster")
    draft = await engine.versions.create_draft(created.data["definitionId"], definition)
    await engine.versions.publish(draft.data["versionId"])

    results = await engine.dispatch_trigger(
        "warrant_roster.submitted",
        {"roster_id": 12, "roster_name": "Spring Crown", "requester_email": "clerk@example.org"},
        triggered_by="3",
    )
    instance_id = results[0].data["instanceId"]
    print(f"Instance #{instance_id}: {results[0].data['status']}")

    approvals = await engine.store.list_approvals(instance_id=instance_id)
    for approval in approvals:
        response = await engine.approvals.resolve_approval_by_token(approval.token, "approve")
        gate = response.data["gate_status"]
        print(f"{approval.approver_id} approved: {gate['approved_count']}/{gate['required_count']}")

    state = await engine.get_instance_state(instance_id)
    print(f"Final status: {state['status']}, approvals counted: {state['context']['approvals']}")


if __name__ == "__main__":
    asyncio.run(main())
