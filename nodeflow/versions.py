"""Definition validation and the draft -> published -> archived lifecycle."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .graph import NODE_TYPES, WorkflowGraph, node_shape_errors, raw_nodes
from .models import (
    STATUS_RUNNING,
    STATUS_WAITING,
    VERSION_ARCHIVED,
    VERSION_DRAFT,
    VERSION_PUBLISHED,
    InstanceMigration,
    WorkflowDefinition,
    WorkflowVersion,
    utcnow,
)
from .persistence import WorkflowStore
from .result import ServiceResult

logger = logging.getLogger(__name__)


def validate_definition(definition: dict[str, Any]) -> dict[str, Any]:
    """Structural validation of a node graph.

    Returns ``{"valid": bool, "errors": [...], "warnings": [...]}``. Errors
    block publishing; warnings are advisory.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if not raw_nodes(definition):
        errors.append('Definition must contain a non-empty "nodes" array.')
        return {"valid": False, "errors": errors, "warnings": warnings}

    # malformed entries are reported and skipped by the graph parser
    errors.extend(node_shape_errors(definition))
    graph = WorkflowGraph(definition)

    triggers = graph.nodes_of_type("trigger")
    if not triggers:
        errors.append("Definition must contain exactly one trigger node (found 0).")
    elif len(triggers) > 1:
        errors.append(f"Definition must contain exactly one trigger node (found {len(triggers)}).")
    if not graph.nodes_of_type("end"):
        errors.append("Definition must contain at least one end node.")

    for edge in graph.dangling():
        errors.append(f"Node '{edge.source}' references non-existent target '{edge.target}'.")

    if len(triggers) == 1:
        reachable = graph.reachable_from(triggers[0].id)
        for node_id, node in graph.nodes.items():
            if node.type != "trigger" and node_id not in reachable:
                errors.append(f"Node '{node_id}' is not reachable from the trigger node.")

    for node_id, node in graph.nodes.items():
        if node.type == "loop":
            max_iterations = node.config.get("maxIterations")
            if (
                isinstance(max_iterations, bool)
                or not isinstance(max_iterations, int)
                or max_iterations < 1
            ):
                errors.append(f"Loop node '{node_id}' must have maxIterations set.")

        if node.type not in NODE_TYPES:
            warnings.append(f"Node '{node_id}' has unknown type '{node.type}'.")
        if node.type != "end" and not node.outputs:
            warnings.append(f"Node '{node_id}' has no outputs.")
        if node.type == "subworkflow" and not node.config.get("workflowSlug"):
            warnings.append(f"Subworkflow node '{node_id}' has no workflowSlug configured.")
        if node.type == "approval":
            ports = graph.ports(node_id)
            if "approved" not in ports or "rejected" not in ports:
                warnings.append(
                    f"Approval node '{node_id}' should have both approved and rejected outputs."
                )

    return {"valid": not errors, "errors": errors, "warnings": warnings}


def compare_definitions(old: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    old_nodes = raw_nodes(old)
    new_nodes = raw_nodes(new)
    return {
        "added": [node_id for node_id in new_nodes if node_id not in old_nodes],
        "removed": [node_id for node_id in old_nodes if node_id not in new_nodes],
        "modified": {
            node_id: {"old": old_nodes[node_id], "new": new_nodes[node_id]}
            for node_id in old_nodes
            if node_id in new_nodes and old_nodes[node_id] != new_nodes[node_id]
        },
    }


class VersionManager:
    """Owns workflow definitions and their versions."""

    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Definitions
    async def create_definition(
        self,
        slug: str,
        name: str = "",
        description: Optional[str] = None,
        entity_type: Optional[str] = None,
    ) -> ServiceResult:
        async with self.store.transaction():
            if await self.store.get_definition_by_slug(slug) is not None:
                return ServiceResult.fail(f"A workflow definition with slug '{slug}' already exists.")
            definition = await self.store.save_definition(
                WorkflowDefinition(
                    slug=slug,
                    name=name or slug,
                    description=description,
                    entity_type=entity_type,
                )
            )
            return ServiceResult.ok(definitionId=definition.id, slug=definition.slug)

    # ------------------------------------------------------------------
    # Drafts
    async def create_draft(
        self,
        definition_id: int,
        definition: dict[str, Any],
        canvas_layout: Optional[dict[str, Any]] = None,
        change_notes: Optional[str] = None,
    ) -> ServiceResult:
        async with self.store.transaction():
            if await self.store.get_definition(definition_id) is None:
                return ServiceResult.fail("Workflow definition not found.")
            versions = await self.store.list_versions(definition_id)
            number = max((v.version_number for v in versions), default=0) + 1
            version = await self.store.save_version(
                WorkflowVersion(
                    definition_id=definition_id,
                    version_number=number,
                    definition=definition,
                    canvas_layout=canvas_layout,
                    change_notes=change_notes,
                )
            )
            return ServiceResult.ok(versionId=version.id, versionNumber=version.version_number)

    async def update_draft(
        self,
        version_id: int,
        definition: Optional[dict[str, Any]] = None,
        canvas_layout: Optional[dict[str, Any]] = None,
        change_notes: Optional[str] = None,
    ) -> ServiceResult:
        async with self.store.transaction():
            version = await self.store.get_version(version_id)
            if version is None:
                return ServiceResult.fail("Workflow version not found.")
            if version.status != VERSION_DRAFT:
                return ServiceResult.fail("Only draft versions can be updated.")
            if definition is not None:
                version.definition = definition
            if canvas_layout is not None:
                version.canvas_layout = canvas_layout
            if change_notes is not None:
                version.change_notes = change_notes
            await self.store.save_version(version)
            return ServiceResult.ok(versionId=version.id)

    # ------------------------------------------------------------------
    # Lifecycle
    async def publish(self, version_id: int, published_by: Optional[str] = None) -> ServiceResult:
        """Validate and publish a draft, archiving the previously published version."""
        async with self.store.transaction():
            version = await self.store.get_version(version_id)
            if version is None:
                return ServiceResult.fail("Workflow version not found.")
            if version.status != VERSION_DRAFT:
                return ServiceResult.fail("Only draft versions can be published.")
            report = validate_definition(version.definition)
            if not report["valid"]:
                return ServiceResult.fail(
                    "Definition validation failed: " + "; ".join(report["errors"]),
                    errors=report["errors"],
                )

            for previous in await self.store.list_versions(
                version.definition_id, status=VERSION_PUBLISHED
            ):
                previous.status = VERSION_ARCHIVED
                await self.store.save_version(previous)

            version.status = VERSION_PUBLISHED
            version.published_by = published_by
            version.published_at = utcnow()
            await self.store.save_version(version)

            definition = await self.store.get_definition(version.definition_id)
            definition.current_version_id = version.id
            definition.is_active = True
            await self.store.save_definition(definition)

            logger.info(
                f"Published {definition.slug} v{version.version_number} (version #{version.id})"
            )
            return ServiceResult.ok(
                versionId=version.id,
                versionNumber=version.version_number,
                warnings=report["warnings"],
            )

    async def archive(self, version_id: int) -> ServiceResult:
        async with self.store.transaction():
            version = await self.store.get_version(version_id)
            if version is None:
                return ServiceResult.fail("Workflow version not found.")
            if version.status == VERSION_ARCHIVED:
                return ServiceResult.fail("Version is already archived.")
            version.status = VERSION_ARCHIVED
            await self.store.save_version(version)

            definition = await self.store.get_definition(version.definition_id)
            if definition is not None and definition.current_version_id == version.id:
                definition.current_version_id = None
                definition.is_active = False
                await self.store.save_definition(definition)
            return ServiceResult.ok(versionId=version.id)

    # ------------------------------------------------------------------
    # Queries
    async def get_current_version(self, definition_id: int) -> Optional[WorkflowVersion]:
        definition = await self.store.get_definition(definition_id)
        if definition is None or definition.current_version_id is None:
            return None
        return await self.store.get_version(definition.current_version_id)

    async def get_version_history(self, definition_id: int) -> list[WorkflowVersion]:
        versions = await self.store.list_versions(definition_id)
        return sorted(versions, key=lambda v: v.version_number, reverse=True)

    async def compare_versions(self, version_a_id: int, version_b_id: int) -> ServiceResult:
        version_a = await self.store.get_version(version_a_id)
        version_b = await self.store.get_version(version_b_id)
        if version_a is None or version_b is None:
            return ServiceResult.fail("Workflow version not found.")
        return ServiceResult.ok(**compare_definitions(version_a.definition, version_b.definition))

    def validate_definition(self, definition: dict[str, Any]) -> dict[str, Any]:
        return validate_definition(definition)

    # ------------------------------------------------------------------
    # Migration
    async def migrate_instance(
        self,
        instance_id: int,
        target_version_id: int,
        migrated_by: Optional[str] = None,
        node_mapping: Optional[dict[str, str]] = None,
    ) -> ServiceResult:
        """Re-point a live instance at another published version.

        Active nodes are mapped through ``node_mapping`` first and otherwise
        kept by identical id; an active node that exists in neither form
        aborts the migration.
        """
        async with self.store.transaction():
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                return ServiceResult.fail(f"Instance {instance_id} not found.")
            if instance.is_terminal:
                return ServiceResult.fail("Cannot migrate a terminal instance.")
            target = await self.store.get_version(target_version_id)
            if target is None or target.status != VERSION_PUBLISHED:
                return ServiceResult.fail("Target version must be published.")
            if target.definition_id != instance.definition_id:
                return ServiceResult.fail("Target version belongs to another workflow definition.")

            target_nodes = raw_nodes(target.definition)
            mapping = dict(node_mapping or {})
            applied: dict[str, str] = {}
            for node_id in instance.active_nodes:
                mapped = mapping.get(node_id, node_id)
                if mapped not in target_nodes:
                    return ServiceResult.fail(
                        f"Active node '{node_id}' cannot be mapped to the target version."
                    )
                applied[node_id] = mapped

            from_version_id = instance.version_id
            instance.version_id = target.id
            instance.active_nodes = [applied[n] for n in instance.active_nodes]
            await self.store.save_instance(instance)
            migration = await self.store.save_migration(
                InstanceMigration(
                    instance_id=instance.id,
                    from_version_id=from_version_id,
                    to_version_id=target.id,
                    migrated_by=migrated_by,
                    node_mapping=applied,
                )
            )
            logger.info(
                f"Migrated instance #{instance.id} from version #{from_version_id} "
                f"to #{target.id}"
            )
            return ServiceResult.ok(instanceId=instance.id, migrationId=migration.id)

    async def migrate_instances(
        self,
        target_version_id: int,
        migrated_by: Optional[str] = None,
        node_mapping: Optional[dict[str, str]] = None,
    ) -> ServiceResult:
        """Migrate every running/waiting instance of the target's definition."""
        target = await self.store.get_version(target_version_id)
        if target is None or target.status != VERSION_PUBLISHED:
            return ServiceResult.fail("Target version must be published.")
        migrated = 0
        failures: list[dict[str, Any]] = []
        instances = await self.store.list_instances(
            definition_id=target.definition_id, statuses=[STATUS_RUNNING, STATUS_WAITING]
        )
        for instance in instances:
            if instance.version_id == target.id:
                continue
            result = await self.migrate_instance(
                instance.id, target.id, migrated_by, node_mapping
            )
            if result.success:
                migrated += 1
            else:
                failures.append({"instanceId": instance.id, "reason": result.reason})
        return ServiceResult.ok(migrated=migrated, failed=failures)
