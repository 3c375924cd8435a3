"""Graph interpreter for workflow instances.

The interpreter drains a queue of work units ``(node, port, source)``
against one instance, depth-first: a node's successors are queued ahead of
everything already waiting. Fork branches therefore run one at a time in
declared-output order, each to its end or to a blocking node before the
next starts, and share the instance's single context document, so later
branches see what earlier branches wrote.

An instance is ``waiting`` when at least one node is blocked (approval,
delay, subworkflow or an incomplete join) after the queue drains, and
``completed`` once nothing is blocked and the drain reached an ``end`` node.
Every public operation runs in one store transaction and returns a
``ServiceResult``; node failures are committed as a ``failed`` instance.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from .actions import ActionContext, ActionExecutor, ActionRegistry
from .approvals import ApprovalGateManager, gate_status
from .collaborators import Collaborators, StaticSettings
from .conditions import ConditionEvaluator, ConditionRegistry
from .config import NodeflowConfig
from .errors import NodeExecutionError, StoreError
from .expressions import ContextResolver, evaluate_expression, parse_deadline
from .graph import DEFAULT_PORT, Node, WorkflowGraph, normalize_port, raw_nodes
from .models import (
    ACTIVE_STATUSES,
    LOG_COMPLETED,
    LOG_FAILED,
    LOG_WAITING,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_WAITING,
    WorkflowExecutionLog,
    WorkflowInstance,
    utcnow,
)
from .persistence import WorkflowStore, get_store
from .result import ServiceResult
from .utils.retry import schedule_retry
from .versions import VersionManager

logger = logging.getLogger(__name__)

# node types that may legitimately be visited more than once per drain
REVISITABLE_TYPES = ("join", "loop", "end")
DEFAULT_MAX_ITERATIONS = 10
ON_EACH_APPROVAL = "on_each_approval"


class WorkUnit(NamedTuple):
    node_id: str
    port: str = DEFAULT_PORT
    source: Optional[str] = None

    @property
    def edge_key(self) -> str:
        return f"{self.source}:{normalize_port(self.port)}"


class _Run:
    """Mutable state of one drain over an instance."""

    def __init__(
        self,
        instance: WorkflowInstance,
        graph: WorkflowGraph,
        notify_parent: bool = True,
        intermediate: bool = False,
    ) -> None:
        self.instance = instance
        self.graph = graph
        self.notify_parent = notify_parent
        # intermediate runs report node failures without failing the instance
        self.intermediate = intermediate
        self.queue: deque[WorkUnit] = deque()
        self.visited: set[str] = set()
        self.visits = 0
        self.end_reached = False
        self.error: Optional[str] = None

    @property
    def context(self) -> dict[str, Any]:
        return self.instance.context

    @property
    def internal(self) -> dict[str, Any]:
        return self.instance.context.setdefault("_internal", {})

    def node_output(self, node_id: str) -> dict[str, Any]:
        nodes = self.instance.context.setdefault("nodes", {})
        current = nodes.get(node_id)
        if not isinstance(current, dict):
            current = {}
            nodes[node_id] = current
        return current

    def block(self, node_id: str) -> None:
        if node_id not in self.instance.active_nodes:
            self.instance.active_nodes.append(node_id)

    def unblock(self, node_id: str) -> None:
        self.instance.active_nodes = [n for n in self.instance.active_nodes if n != node_id]


NodeHandler = Callable[[_Run, Node, WorkUnit, WorkflowExecutionLog], Awaitable[None]]


class WorkflowEngine:
    """Interprets published workflow graphs against persisted instances."""

    def __init__(
        self,
        store: Optional[WorkflowStore] = None,
        config: Optional[NodeflowConfig] = None,
        conditions: Optional[ConditionRegistry] = None,
        actions: Optional[ActionRegistry] = None,
        collaborators: Optional[Collaborators] = None,
    ) -> None:
        self.config = config or NodeflowConfig()
        self.store = store or get_store()
        self.collaborators = collaborators or Collaborators(
            settings=StaticSettings(self.config.settings)
        )
        self.evaluator = ConditionEvaluator(conditions, self.collaborators.directory)
        self.executor = ActionExecutor(actions)
        self.resolver = ContextResolver(self.collaborators.settings)
        self.approvals = ApprovalGateManager(self.store, self.collaborators, listener=self)
        self.versions = VersionManager(self.store)
        self._handlers: dict[str, NodeHandler] = {
            "trigger": self._run_trigger,
            "action": self._run_action,
            "condition": self._run_condition,
            "fork": self._run_fork,
            "join": self._run_join,
            "loop": self._run_loop,
            "delay": self._run_delay,
            "subworkflow": self._run_subworkflow,
            "approval": self._run_approval,
            "end": self._run_end,
        }

    # ------------------------------------------------------------------
    # Public lifecycle
    async def start_workflow(
        self,
        slug: str,
        trigger_data: Optional[dict[str, Any]] = None,
        started_by: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> ServiceResult:
        """Create an instance of the active version of ``slug`` and run it."""
        return await self._start(slug, trigger_data, started_by, entity_type, entity_id)

    async def _start(
        self,
        slug: str,
        trigger_data: Optional[dict[str, Any]],
        started_by: Optional[str],
        entity_type: Optional[str],
        entity_id: Optional[str],
        parent: Optional[tuple[int, str]] = None,
    ) -> ServiceResult:
        trigger_data = trigger_data or {}
        async with self.store.transaction():
            definition = await self.store.get_definition_by_slug(slug)
            if definition is None or not definition.is_active or definition.current_version_id is None:
                return ServiceResult.fail(f"No active workflow found for slug '{slug}'.")
            version = await self.store.get_version(definition.current_version_id)
            if version is None or not raw_nodes(version.definition):
                return ServiceResult.fail("Workflow definition has no nodes.")

            entity_type = entity_type or definition.entity_type
            entity_id = str(entity_id) if entity_id is not None else None
            existing = await self.store.list_instances(
                definition_id=definition.id,
                statuses=ACTIVE_STATUSES,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            if existing:
                current = existing[0]
                logger.warning(
                    f"Duplicate instance prevented for '{slug}' entity_type={entity_type} "
                    f"entity_id={entity_id}: instance #{current.id} is '{current.status}'"
                )
                return ServiceResult.fail(
                    f"A workflow instance is already active (#{current.id}) for this entity; "
                    "workflow already has an active instance.",
                    existingInstanceId=current.id,
                )

            internal: dict[str, Any] = {}
            if parent is not None:
                internal["parentInstanceId"], internal["parentNodeId"] = parent
            instance = await self.store.save_instance(
                WorkflowInstance(
                    definition_id=definition.id,
                    version_id=version.id,
                    status=STATUS_RUNNING,
                    context={
                        "trigger": trigger_data,
                        "triggeredBy": started_by,
                        "nodes": {},
                        "_internal": internal,
                    },
                    entity_type=entity_type,
                    entity_id=entity_id,
                    started_by=started_by,
                )
            )
            logger.info(f"Started workflow '{slug}' as instance #{instance.id}")

            run = _Run(instance, WorkflowGraph(version.definition), notify_parent=parent is None)
            for trigger in run.graph.nodes_of_type("trigger"):
                now = utcnow()
                await self.store.save_log(
                    WorkflowExecutionLog(
                        instance_id=instance.id,
                        node_id=trigger.id,
                        node_type="trigger",
                        input_data=trigger_data,
                        output_data=trigger_data,
                        started_at=now,
                        completed_at=now,
                    )
                )
                run.node_output(trigger.id)["result"] = trigger_data
                run.visited.add(trigger.id)
                self._advance(run, trigger.id, DEFAULT_PORT)
            await self._drain(run)
            return await self._finish(run)

    async def resume_workflow(
        self,
        instance_id: int,
        node_id: str,
        port: str = DEFAULT_PORT,
        data: Optional[dict[str, Any]] = None,
    ) -> ServiceResult:
        """Unblock ``node_id`` of a waiting instance and follow ``port``."""
        return await self._resume(instance_id, node_id, port, data)

    async def _resume(
        self,
        instance_id: int,
        node_id: str,
        port: str,
        data: Optional[dict[str, Any]],
        jump_to: Optional[str] = None,
    ) -> ServiceResult:
        data = dict(data or {})
        async with self.store.transaction():
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                return ServiceResult.fail(f"Instance {instance_id} not found.")
            if instance.status != STATUS_WAITING:
                return ServiceResult.fail(f"Instance {instance_id} is not in waiting state.")
            if node_id not in instance.active_nodes:
                return ServiceResult.fail(f"Node '{node_id}' is not awaiting resumption.")
            version = await self.store.get_version(instance.version_id)
            run = _Run(instance, WorkflowGraph(version.definition))
            node = run.graph.node(node_id)
            if node is not None and node.type == "join":
                return ServiceResult.fail(
                    f"Join node '{node_id}' cannot be resumed; it waits for its inputs."
                )

            if data:
                run.context["resumeData"] = data
            run.node_output(node_id).update({"status": port, **data})
            run.internal.get("delays", {}).pop(node_id, None)
            await self._complete_waiting_log(instance.id, node_id, data)
            run.unblock(node_id)
            instance.status = STATUS_RUNNING
            logger.info(f"Resuming instance #{instance.id} at node '{node_id}' via '{port}'")

            if jump_to:
                run.queue.append(WorkUnit(jump_to, DEFAULT_PORT, node_id))
            else:
                self._advance(run, node_id, port)
            await self._drain(run)
            return await self._finish(run)

    async def cancel_workflow(self, instance_id: int, reason: Optional[str] = None) -> ServiceResult:
        """Cancel a non-terminal instance and its pending approvals.

        Child subworkflow instances are left running.
        """
        async with self.store.transaction():
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                return ServiceResult.fail(f"Instance {instance_id} not found.")
            if instance.is_terminal:
                return ServiceResult.fail(
                    f"Instance {instance_id} is already in a terminal state '{instance.status}'."
                )
            instance.status = STATUS_CANCELLED
            instance.completed_at = utcnow()
            if reason:
                instance.error_info = {**(instance.error_info or {}), "cancellation_reason": reason}
            await self.store.save_instance(instance)
            cancelled = await self.approvals.cancel_gates_for_instance(instance.id)
            logger.info(f"Cancelled instance #{instance.id} ({cancelled} pending gate(s) cancelled)")
            return ServiceResult.ok(
                instanceId=instance.id, status=instance.status, cancelledGates=cancelled
            )

    async def get_instance_state(self, instance_id: int) -> Optional[dict[str, Any]]:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            return None
        definition = await self.store.get_definition(instance.definition_id)
        version = await self.store.get_version(instance.version_id)
        logs = await self.store.list_logs(instance.id)
        gates = await self.store.list_gates(instance_id=instance.id)
        approvals = await self.store.list_approvals(instance_id=instance.id)
        return {
            "id": instance.id,
            "status": instance.status,
            "context": instance.context,
            "active_nodes": list(instance.active_nodes),
            "error_info": instance.error_info,
            "entity_type": instance.entity_type,
            "entity_id": instance.entity_id,
            "started_at": instance.started_at,
            "completed_at": instance.completed_at,
            "definition_name": definition.name if definition else None,
            "version_number": version.version_number if version else None,
            "execution_logs": [
                {
                    "id": log.id,
                    "node_id": log.node_id,
                    "node_type": log.node_type,
                    "attempt_number": log.attempt_number,
                    "status": log.status,
                    "started_at": log.started_at,
                    "completed_at": log.completed_at,
                    "error_message": log.error_message,
                }
                for log in logs
            ],
            "gates": [gate_status(gate) for gate in gates],
            "approvals": [
                {
                    "id": approval.id,
                    "gate_id": approval.gate_id,
                    "approver_id": approval.approver_id,
                    "status": approval.status,
                    "decision": approval.decision,
                    "order": approval.order,
                }
                for approval in approvals
            ],
        }

    async def dispatch_trigger(
        self,
        event_name: str,
        event_data: Optional[dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
    ) -> list[ServiceResult]:
        """Start every active workflow whose trigger listens for ``event_name``."""
        event_data = event_data or {}
        results: list[ServiceResult] = []
        for definition in await self.store.list_definitions():
            if not definition.is_active or definition.current_version_id is None:
                continue
            version = await self.store.get_version(definition.current_version_id)
            if version is None:
                continue
            graph = WorkflowGraph(version.definition)
            for trigger in graph.nodes_of_type("trigger"):
                event = trigger.config.get("event") or trigger.config.get("eventName")
                if event != event_name:
                    continue
                id_field = trigger.config.get("entityIdField")
                entity_id = event_data.get(id_field) if id_field else None
                results.append(
                    await self.start_workflow(
                        definition.slug,
                        event_data,
                        triggered_by,
                        trigger.config.get("entityType"),
                        entity_id,
                    )
                )
                break
        return results

    async def fire_intermediate_approval_actions(
        self, instance_id: int, node_id: str, approval_data: dict[str, Any]
    ) -> ServiceResult:
        """Interpret the ``on_each_approval`` targets of an approval node.

        The approval node stays blocked, so the instance remains waiting. A
        failing target is logged and reported in the result; the instance
        status and ``error_info`` are left as they were.
        """
        async with self.store.transaction():
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                return ServiceResult.fail(f"Instance {instance_id} not found.")
            version = await self.store.get_version(instance.version_id)
            run = _Run(
                instance, WorkflowGraph(version.definition), notify_parent=False, intermediate=True
            )
            edges = run.graph.outgoing(node_id, ON_EACH_APPROVAL)
            if not edges:
                return ServiceResult.ok(instanceId=instance.id, fired=0, status=instance.status)

            run.node_output(node_id).update(approval_data)
            for edge in edges:
                run.queue.append(WorkUnit(edge.target, edge.port, node_id))
            logger.info(
                f"Firing {len(edges)} intermediate approval target(s) for instance "
                f"#{instance.id} node '{node_id}'"
            )
            await self._drain(run)
            result = await self._finish(run)
            if result.success:
                result.data["fired"] = len(edges)
            return result

    async def process_scheduled_transitions(
        self, now: Optional[datetime] = None, dry_run: bool = False
    ) -> ServiceResult:
        """Resume due delays on ``default`` and expired gates on ``expired``."""
        now = now or utcnow()
        due: list[tuple[int, str]] = []
        for instance in await self.store.list_instances(statuses=[STATUS_WAITING]):
            delays = (instance.context.get("_internal") or {}).get("delays") or {}
            for node_id, info in delays.items():
                if node_id not in instance.active_nodes:
                    continue
                wake_at = parse_deadline((info or {}).get("wakeAt"))
                if wake_at is not None and wake_at <= now:
                    due.append((instance.id, node_id))

        expired = await self.approvals.expire_overdue_gates(now, dry_run=dry_run)
        expired_pairs = [(gate.instance_id, gate.node_id) for gate in expired]
        if dry_run:
            return ServiceResult.ok(
                delays=len(due),
                gates=len(expired),
                resumed=due,
                expired=expired_pairs,
                dry_run=True,
            )

        resumed: list[tuple[int, str]] = []
        for instance_id, node_id in due:
            result = await self._resume(
                instance_id, node_id, DEFAULT_PORT, {"wokeAt": now.isoformat()}
            )
            if result.success:
                resumed.append((instance_id, node_id))
            else:
                logger.warning(f"Skipped delay {instance_id}/{node_id}: {result.reason}")
        for gate in expired:
            result = await self._resume(
                gate.instance_id, gate.node_id, "expired", {"gateId": gate.id}
            )
            if not result.success:
                logger.warning(f"Skipped expired gate #{gate.id}: {result.reason}")
        return ServiceResult.ok(
            delays=len(resumed),
            gates=len(expired),
            resumed=resumed,
            expired=expired_pairs,
            dry_run=False,
        )

    # ------------------------------------------------------------------
    # Approval gate listener
    async def gate_progressed(self, gate, approval_data: dict[str, Any]) -> ServiceResult:
        return await self.fire_intermediate_approval_actions(
            gate.instance_id, gate.node_id, approval_data
        )

    async def gate_resolved(self, gate, port: str, approval_data: dict[str, Any]) -> ServiceResult:
        transition = (
            gate.on_satisfied_transition if port == "approved" else gate.on_denied_transition
        )
        return await self._resume(
            gate.instance_id, gate.node_id, port, approval_data, jump_to=transition
        )

    # ------------------------------------------------------------------
    # Interpreter loop
    def _advance(self, run: _Run, node_id: str, port: Optional[str]) -> None:
        units = [
            WorkUnit(edge.target, edge.port, node_id) for edge in run.graph.outgoing(node_id, port)
        ]
        run.queue.extendleft(reversed(units))

    async def _drain(self, run: _Run) -> None:
        while run.queue:
            unit = run.queue.popleft()
            try:
                await self._visit(run, unit)
            except NodeExecutionError as exc:
                run.error = f"Node '{exc.node_id}' failed: {exc}"
                run.queue.clear()
                if run.intermediate:
                    logger.warning(
                        f"Intermediate approval target failed on instance #{run.instance.id}: "
                        f"{run.error}"
                    )
                else:
                    self._mark_failed(run.instance, exc.node_id, str(exc), exc.attempts)

    async def _visit(self, run: _Run, unit: WorkUnit) -> None:
        node = run.graph.node(unit.node_id)
        if node is None:
            logger.error(f"Node '{unit.node_id}' not found in definition")
            return

        run.visits += 1
        max_depth = self.config.engine.max_execution_depth
        if run.visits > max_depth:
            raise NodeExecutionError(
                node.id,
                f"Workflow execution exceeded max depth ({max_depth}) at node '{node.id}'. "
                "Possible cycle in workflow graph.",
            )
        if node.type not in REVISITABLE_TYPES:
            if node.id in run.visited:
                raise NodeExecutionError(
                    node.id,
                    f"Cycle detected: node '{node.id}' was already visited in this execution path.",
                )
            run.visited.add(node.id)

        handler = self._handlers.get(node.type)
        if handler is None:
            logger.warning(f"Unknown node type '{node.type}' at node '{node.id}'")
            await self.store.save_log(
                WorkflowExecutionLog(
                    instance_id=run.instance.id,
                    node_id=node.id,
                    node_type=node.type,
                    status=LOG_FAILED,
                    error_message=f"Unknown node type: {node.type}",
                    completed_at=utcnow(),
                )
            )
            return

        retries = node.config.get("maxRetries", node.config.get("retryCount", 0))
        attempts = max(int(retries or 0), 0) + 1
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            log = WorkflowExecutionLog(
                instance_id=run.instance.id,
                node_id=node.id,
                node_type=node.type,
                attempt_number=attempt,
                input_data=self._input_data(run, node),
            )
            try:
                await handler(run, node, unit, log)
            except StoreError:
                raise
            except Exception as exc:
                last_error = exc
                log.status = LOG_FAILED
                log.error_message = str(exc)
                log.completed_at = utcnow()
                await self.store.save_log(log)
                if attempt < attempts:
                    logger.warning(
                        f"Node '{node.id}' attempt {attempt}/{attempts} failed, retrying: {exc}"
                    )
                    await schedule_retry(attempt, base_delay=self.config.engine.retry_base_delay)
                continue
            await self.store.save_log(log)
            return

        logger.error(f"Node '{node.id}' failed after {attempts} attempt(s): {last_error}")
        raise NodeExecutionError(node.id, str(last_error), attempts=attempts)

    def _input_data(self, run: _Run, node: Node) -> Optional[dict[str, Any]]:
        mappings = node.config.get("inputMappings")
        if not isinstance(mappings, dict):
            return None
        return {key: self.resolver.resolve_value(path, run.context) for key, path in mappings.items()}

    @staticmethod
    def _mark_failed(
        instance: WorkflowInstance, node_id: str, error: str, attempts: Optional[int] = None
    ) -> None:
        if instance.status == STATUS_FAILED:
            return
        instance.status = STATUS_FAILED
        instance.completed_at = utcnow()
        instance.error_info = {"failed_node": node_id, "error": error}
        if attempts is not None:
            instance.error_info["attempts"] = attempts

    async def _finish(self, run: _Run) -> ServiceResult:
        instance = run.instance
        if not instance.is_terminal:
            if instance.active_nodes:
                instance.status = STATUS_WAITING
            elif run.end_reached:
                instance.status = STATUS_COMPLETED
                instance.completed_at = utcnow()
            else:
                instance.status = STATUS_RUNNING
        instance = await self.store.save_instance(instance)

        data = {"instanceId": instance.id, "status": instance.status}
        if run.error:
            return ServiceResult.fail(run.error, **data)
        if instance.status == STATUS_WAITING:
            logger.info(f"Instance #{instance.id} waiting on {instance.active_nodes}")
        elif instance.status == STATUS_COMPLETED:
            logger.info(f"Instance #{instance.id} completed")
            if run.notify_parent:
                await self._notify_parent(instance)
        return ServiceResult.ok(**data)

    async def _notify_parent(self, child: WorkflowInstance) -> None:
        internal = child.context.get("_internal") or {}
        parent_id = internal.get("parentInstanceId")
        parent_node = internal.get("parentNodeId")
        if parent_id is None or parent_node is None:
            return
        logger.info(
            f"Child instance #{child.id} completed, resuming parent #{parent_id} at '{parent_node}'"
        )
        result = await self._resume(
            int(parent_id),
            parent_node,
            DEFAULT_PORT,
            {"childResult": child.context.get("nodes", {}), "childInstanceId": child.id},
        )
        if not result.success:
            logger.warning(f"Parent instance #{parent_id} not resumed: {result.reason}")

    async def _complete_waiting_log(
        self, instance_id: int, node_id: str, data: dict[str, Any]
    ) -> None:
        waiting = await self.store.list_logs(instance_id, node_id=node_id, status=LOG_WAITING)
        if not waiting:
            return
        log = waiting[-1]
        log.status = LOG_COMPLETED
        log.completed_at = utcnow()
        log.output_data = data
        await self.store.save_log(log)

    # ------------------------------------------------------------------
    # Scope helpers
    def _action_context(self, run: _Run) -> ActionContext:
        instance = run.instance
        return ActionContext(
            context=instance.context,
            instance_id=instance.id,
            entity_type=instance.entity_type,
            entity_id=instance.entity_id,
            started_by=instance.started_by,
            collaborators=self.collaborators,
            approvals=self.approvals,
            webhook_timeout=self.config.engine.webhook_timeout,
        )

    async def _scope(self, run: _Run) -> dict[str, Any]:
        """Evaluation scope: the context plus entity, instance, user and gates."""
        scope = await self._action_context(run).scope()
        scope.setdefault("user_id", run.instance.started_by)
        scope.setdefault("state_entered_at", run.instance.started_at)
        gates = await self.store.list_gates(instance_id=run.instance.id)
        scope.setdefault(
            "approval_gates",
            {
                gate.node_id: {
                    "status": gate.status,
                    "is_met": gate.is_met,
                    "approved_count": gate.approved_count,
                    "required_count": gate.required_count,
                }
                for gate in gates
            },
        )
        return scope

    def _test(self, spec: Any, scope: dict[str, Any]) -> bool:
        if isinstance(spec, str):
            return evaluate_expression(spec, scope)
        return self.evaluator.evaluate(spec, scope)

    # ------------------------------------------------------------------
    # Node handlers
    async def _run_trigger(self, run, node, unit, log) -> None:
        log.completed_at = utcnow()
        self._advance(run, node.id, DEFAULT_PORT)

    async def _run_action(self, run, node, unit, log) -> None:
        specs = self._action_specs(node)
        if not specs:
            raise NodeExecutionError(node.id, f"Action node '{node.id}' has no action configured.")
        for spec in specs:
            kind = spec.get("type")
            if kind and kind not in self.executor.registry and not spec.get("optional"):
                raise NodeExecutionError(node.id, f"Action '{kind}' not found in registry.")

        chain = await self.executor.execute(specs, self._action_context(run))
        if not chain.success:
            raise NodeExecutionError(node.id, chain.reason or "Action failed")

        if len(specs) == 1 and chain.results:
            result: Any = chain.results[0].data
        else:
            result = [r.model_dump() for r in chain.results]
        run.node_output(node.id)["result"] = result
        log.output_data = {"result": result}
        log.completed_at = utcnow()
        self._advance(run, node.id, DEFAULT_PORT)

    @staticmethod
    def _action_specs(node: Node) -> list[dict[str, Any]]:
        config = node.config
        if isinstance(config.get("actions"), list):
            return [spec for spec in config["actions"] if isinstance(spec, dict)]
        name = config.get("action")
        if not name:
            return []
        params = config.get("params") if isinstance(config.get("params"), dict) else {}
        return [{"type": name, "params": params, "optional": bool(config.get("optional", False))}]

    async def _run_condition(self, run, node, unit, log) -> None:
        config = node.config
        scope = await self._scope(run)
        condition = config.get("condition")
        name = config.get("evaluator") or (condition if isinstance(condition, str) else None)

        if config.get("expression") is not None:
            result = evaluate_expression(str(config["expression"]), scope)
        elif isinstance(condition, dict):
            result = self.evaluator.evaluate(condition, scope)
        elif name:
            if name not in self.evaluator.registry:
                raise NodeExecutionError(node.id, f"Condition '{name}' not found in registry.")
            params = self.resolver.resolve_params(config.get("params") or {}, scope)
            result = self.evaluator.evaluate({**params, "type": name}, scope)
        else:
            result = False

        port = "true" if result else "false"
        output = run.node_output(node.id)
        output.update({"result": result, "port": port})
        log.output_data = {"result": result, "port": port}
        log.completed_at = utcnow()
        self._advance(run, node.id, port)

    async def _run_fork(self, run, node, unit, log) -> None:
        log.output_data = {"branches": run.graph.targets(node.id)}
        log.completed_at = utcnow()
        self._advance(run, node.id, None)

    async def _run_join(self, run, node, unit, log) -> None:
        states = run.internal.setdefault("joinState", {})
        state = states.setdefault(node.id, {"completedInputs": []})
        completed = state.setdefault("completedInputs", [])

        expected: list[str] = []
        for edge in run.graph.incoming(node.id):
            if edge.key not in expected:
                expected.append(edge.key)
        # the arriving edge comes from the work unit, not from the most recent
        # completed execution-log row, so same-second branches stay distinct
        arrival = unit.edge_key if unit.source else (expected[0] if expected else "unknown")
        if arrival not in completed:
            completed.append(arrival)

        log.output_data = {"completedInputs": list(completed), "expectedInputs": expected}
        if all(key in completed for key in expected):
            log.completed_at = utcnow()
            run.unblock(node.id)
            self._advance(run, node.id, DEFAULT_PORT)
        else:
            log.status = LOG_WAITING
            run.block(node.id)

    async def _run_loop(self, run, node, unit, log) -> None:
        config = node.config
        states = run.internal.setdefault("loopState", {})
        state = states.setdefault(node.id, {"iteration": 0})
        state["iteration"] = int(state.get("iteration", 0)) + 1
        iteration = state["iteration"]
        max_iterations = int(config.get("maxIterations") or DEFAULT_MAX_ITERATIONS)

        should_exit = iteration >= max_iterations
        if not should_exit and config.get("exitCondition"):
            should_exit = self._test(config["exitCondition"], await self._scope(run))

        port = "exit" if should_exit else "continue"
        log.output_data = {"iteration": iteration, "maxIterations": max_iterations, "port": port}
        log.completed_at = utcnow()
        if not should_exit:
            # the body is legitimately re-entered on every iteration
            for target in run.graph.targets(node.id, "continue"):
                run.visited -= run.graph.reachable_from(target)
        self._advance(run, node.id, port)

    async def _run_delay(self, run, node, unit, log) -> None:
        config = node.config
        event = config.get("waitEvent") or config.get("event")
        duration = config.get("duration") or config.get("until")
        wake_at = parse_deadline(duration) if duration else None
        if duration and wake_at is None:
            logger.warning(f"Delay node '{node.id}' has unparseable duration {duration!r}")
            wake_at = utcnow()
        elif wake_at is None and not event:
            wake_at = utcnow()

        info = {"wakeAt": wake_at.isoformat() if wake_at else None, "event": event}
        run.internal.setdefault("delays", {})[node.id] = info
        log.status = LOG_WAITING
        log.output_data = info
        run.block(node.id)

    async def _run_subworkflow(self, run, node, unit, log) -> None:
        slug = node.config.get("workflowSlug")
        if not slug:
            raise NodeExecutionError(
                node.id, f"Subworkflow node '{node.id}' has no workflowSlug configured."
            )
        instance = run.instance
        child = await self._start(
            slug,
            instance.context.get("trigger") or {},
            instance.started_by,
            instance.entity_type,
            instance.entity_id,
            parent=(instance.id, node.id),
        )
        child_id = child.data.get("instanceId")
        output = run.node_output(node.id)
        output.update({"result": child.data, "childInstanceId": child_id})
        log.output_data = {"result": child.data, "childInstanceId": child_id}
        if not child.success:
            logger.warning(f"Subworkflow '{slug}' for node '{node.id}' did not start: {child.reason}")

        if child.data.get("status") == STATUS_COMPLETED:
            child_instance = await self.store.get_instance(child_id)
            output["childResult"] = child_instance.context.get("nodes", {}) if child_instance else {}
            log.completed_at = utcnow()
            self._advance(run, node.id, DEFAULT_PORT)
            return
        log.status = LOG_WAITING
        run.block(node.id)

    async def _run_approval(self, run, node, unit, log) -> None:
        gate = await self.approvals.open_gate(run.instance, node.id, node.config, await self._scope(run))
        output = run.node_output(node.id)
        output.update({"gateId": gate.id, "status": "pending", "requiredCount": gate.required_count})
        log.status = LOG_WAITING
        log.output_data = {"gateId": gate.id, "requiredCount": gate.required_count}
        run.block(node.id)

    async def _run_end(self, run, node, unit, log) -> None:
        log.completed_at = utcnow()
        run.end_reached = True
        run.unblock(node.id)
