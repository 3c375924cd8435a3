"""Approval gate subsystem.

A gate is opened each time the interpreter reaches an ``approval`` node.
It carries the resolved threshold, the approver rule and the running
counts; individual approvers' tokens and decisions are ``Approval`` rows.

Gate types:

* ``threshold`` - met once ``approved_count >= required_count``.
* ``unanimous`` - every expected approver must approve; one reject denies.
* ``any_one`` - the first approve satisfies the gate.
* ``chain`` - approvers decide one at a time in order (or each approver
  picks the next one when ``serial_pick_next`` is set).

Decisions that do not resolve the gate are reported to the listener as
progress (the interpreter fires ``on_each_approval`` targets for them);
the resolving decision is reported as resolution only.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Any, Optional, Protocol

from .collaborators import Collaborators
from .expressions import ContextResolver, parse_deadline, resolve_path
from .models import (
    APPROVAL_ABSTAINED,
    APPROVAL_APPROVED,
    APPROVAL_CANCELLED,
    APPROVAL_DELEGATED,
    APPROVAL_EXPIRED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    GATE_APPROVED,
    GATE_CANCELLED,
    GATE_EXPIRED,
    GATE_PENDING,
    GATE_REJECTED,
    Approval,
    ApprovalGate,
    WorkflowInstance,
    utcnow,
)
from .persistence import WorkflowStore
from .result import ServiceResult

logger = logging.getLogger(__name__)

APPROVAL_TYPES = ("threshold", "unanimous", "any_one", "chain")

APPROVE = "approve"
REJECT = "reject"
ABSTAIN = "abstain"

DECISION_ALIASES = {
    "approve": APPROVE,
    "approved": APPROVE,
    "reject": REJECT,
    "rejected": REJECT,
    "deny": REJECT,
    "denied": REJECT,
    "abstain": ABSTAIN,
    "abstained": ABSTAIN,
}

_DECIDED = (APPROVAL_APPROVED, APPROVAL_REJECTED, APPROVAL_ABSTAINED)
_DECISION_STATUS = {
    APPROVE: APPROVAL_APPROVED,
    REJECT: APPROVAL_REJECTED,
    ABSTAIN: APPROVAL_ABSTAINED,
}
# approver rule types whose pool is an explicit id list
_LISTED_RULES = ("member_ids", "entity_field", "dynamic")

TOKEN_BYTES = 32


def normalize_decision(decision: Any) -> Optional[str]:
    if not isinstance(decision, str):
        return None
    return DECISION_ALIASES.get(decision.strip().lower())


def gate_status(gate: ApprovalGate) -> dict[str, Any]:
    return {
        "gate_id": gate.id,
        "instance_id": gate.instance_id,
        "node_id": gate.node_id,
        "approval_type": gate.approval_type,
        "status": gate.status,
        "approved_count": gate.approved_count,
        "rejected_count": gate.rejected_count,
        "abstained_count": gate.abstained_count,
        "required_count": gate.required_count,
        "is_met": gate.is_met,
        "is_denied": gate.status == GATE_REJECTED,
        "current_approver_id": gate.current_approver_id,
        "approval_chain": list(gate.approval_chain),
        "deadline": gate.deadline.isoformat() if gate.deadline else None,
    }


class GateListener(Protocol):
    """Receives gate progress; implemented by the workflow engine."""

    async def gate_progressed(
        self, gate: ApprovalGate, approval_data: dict[str, Any]
    ) -> Optional[ServiceResult]:
        """A decision was recorded that did not resolve the gate."""

    async def gate_resolved(
        self, gate: ApprovalGate, port: str, approval_data: dict[str, Any]
    ) -> Optional[ServiceResult]:
        """The gate was satisfied (``approved``) or denied (``rejected``)."""


class ApprovalGateManager:
    """Opens gates, records decisions and manages approval tokens."""

    def __init__(
        self,
        store: WorkflowStore,
        collaborators: Optional[Collaborators] = None,
        listener: Optional[GateListener] = None,
    ) -> None:
        self.store = store
        self.collaborators = collaborators or Collaborators()
        self.listener = listener
        self.resolver = ContextResolver(self.collaborators.settings)

    # ------------------------------------------------------------------
    # Gate configuration
    def resolve_threshold(self, threshold: Any, scope: dict[str, Any], default: int = 1) -> int:
        """Resolve a ``fixed``/``app_setting``/``entity_field`` threshold (min 1)."""
        if threshold is None:
            return default
        if isinstance(threshold, dict) and "type" not in threshold and "value" in threshold:
            threshold = {"type": "fixed", **threshold}
        value = self.resolver.resolve_value(threshold, scope, default)
        try:
            count = int(value)
        except (TypeError, ValueError):
            logger.warning(f"Unusable approval threshold {threshold!r}; using {default}")
            count = default
        return max(count, 1)

    @staticmethod
    def approver_rule(config: dict[str, Any]) -> dict[str, Any]:
        """Build an approver rule from ``approval`` node config."""
        rule = config.get("approverRule") or config.get("approver_rule")
        if isinstance(rule, dict):
            return dict(rule)

        kind = config.get("approverType") or config.get("approver_type")
        if kind is None:
            if config.get("memberIds") or config.get("memberId"):
                kind = "member_ids"
            elif config.get("approverField"):
                kind = "entity_field"
            elif config.get("role"):
                kind = "role"
            elif config.get("permission"):
                kind = "permission"
            else:
                return {}

        if kind == "permission":
            return {"type": "permission", "permission": config.get("permission")}
        if kind == "role":
            return {"type": "role", "role": config.get("role")}
        if kind in ("member", "member_ids"):
            ids = config.get("memberIds")
            if ids is None and config.get("memberId") is not None:
                ids = [config["memberId"]]
            return {"type": "member_ids", "ids": list(ids or [])}
        if kind == "entity_field":
            return {"type": "entity_field", "field": config.get("approverField") or config.get("field")}
        if kind == "dynamic":
            return {"type": "dynamic", "path": config.get("approverPath")}
        return {}

    def resolve_approvers(
        self, rule: dict[str, Any], scope: dict[str, Any]
    ) -> Optional[list[str]]:
        """Member ids designated by ``rule``; ``None`` when the rule is open."""
        kind = rule.get("type")
        directory = self.collaborators.directory
        if kind == "member_ids":
            return _ids(rule.get("ids"))
        if kind == "role":
            role = rule.get("role")
            return list(directory.members_with_role(role)) if role else []
        if kind == "permission":
            permission = rule.get("permission")
            return list(directory.members_with_permission(permission)) if permission else []
        if kind == "entity_field":
            field = rule.get("field")
            entity = scope.get("entity")
            if not field or not isinstance(entity, dict):
                return []
            return _ids(resolve_path(entity, str(field)))
        if kind == "dynamic":
            path = rule.get("path")
            return _ids(resolve_path(scope, str(path))) if path else []
        return None

    def build_gate(
        self,
        instance: WorkflowInstance,
        node_id: str,
        config: dict[str, Any],
        scope: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> ApprovalGate:
        serial = bool(config.get("serialPickNext", False))
        approval_type = config.get("approvalType") or config.get("approval_type")
        if approval_type not in APPROVAL_TYPES:
            approval_type = "chain" if serial else "threshold"

        threshold_config = config.get("threshold") or config.get("threshold_config")
        explicit = threshold_config if threshold_config is not None else config.get("requiredCount")
        threshold = self.resolve_threshold(explicit, scope)

        rule = self.approver_rule(config)
        pool = self.resolve_approvers(rule, scope) if rule else None

        if approval_type == "any_one":
            required = 1
        elif approval_type == "unanimous":
            required = len(pool) if pool else threshold
        elif approval_type == "chain" and pool and not serial and explicit is None:
            required = len(pool)
        else:
            required = threshold

        gate = ApprovalGate(
            instance_id=instance.id,
            node_id=node_id,
            approval_type=approval_type,
            threshold_config=threshold_config if isinstance(threshold_config, dict) else None,
            approver_rule=rule,
            required_count=required,
            expected_approvers=pool,
            allow_delegation=bool(config.get("allowDelegation", config.get("allow_delegation", False))),
            allow_parallel=bool(config.get("allowParallel", True)),
            serial_pick_next=serial,
            on_satisfied_transition=config.get("onSatisfiedTransition")
            or config.get("on_satisfied_transition"),
            on_denied_transition=config.get("onDeniedTransition")
            or config.get("on_denied_transition"),
            deadline=parse_deadline(config.get("deadline"), now) if config.get("deadline") else None,
        )
        if approval_type == "chain":
            if pool and not serial:
                gate.current_approver_id = pool[0]
            elif config.get("firstApproverId") is not None:
                gate.current_approver_id = str(config["firstApproverId"])
        return gate

    async def open_gate(
        self,
        instance: WorkflowInstance,
        node_id: str,
        config: dict[str, Any],
        scope: dict[str, Any],
    ) -> ApprovalGate:
        """Create and persist the gate for an ``approval`` node visit."""
        gate = await self.store.save_gate(self.build_gate(instance, node_id, config, scope))
        logger.info(
            f"Approval gate #{gate.id} opened for instance #{instance.id} node '{node_id}' "
            f"({gate.approval_type}, requires {gate.required_count})"
        )
        if config.get("issueTokens"):
            result = await self.request_tokens(instance.id, gate.id, scope)
            if not result.success:
                logger.warning(f"Gate #{gate.id}: {result.reason}")
        return gate

    # ------------------------------------------------------------------
    # Eligibility
    async def _decided(self, gate_id: int, approver_id: str) -> bool:
        approvals = await self.store.list_approvals(gate_id=gate_id, approver_id=approver_id)
        return any(a.status in _DECIDED for a in approvals)

    async def _has_delegated(self, gate_id: int, approver_id: str) -> bool:
        approvals = await self.store.list_approvals(
            gate_id=gate_id, approver_id=approver_id, status=APPROVAL_DELEGATED
        )
        return bool(approvals)

    async def _pending_approval(self, gate_id: int, approver_id: str) -> Optional[Approval]:
        approvals = await self.store.list_approvals(
            gate_id=gate_id, approver_id=approver_id, status=APPROVAL_PENDING
        )
        return approvals[-1] if approvals else None

    def _rule_allows(self, gate: ApprovalGate, approver_id: str) -> bool:
        rule = gate.approver_rule or {}
        kind = rule.get("type")
        directory = self.collaborators.directory
        if kind in _LISTED_RULES:
            return approver_id in (gate.expected_approvers or [])
        if kind == "role":
            return bool(rule.get("role")) and directory.has_role(approver_id, rule["role"])
        if kind == "permission":
            return bool(rule.get("permission")) and directory.has_permission(
                approver_id, rule["permission"]
            )
        return True

    async def is_eligible(self, gate: ApprovalGate, approver_id: str) -> bool:
        approver_id = str(approver_id)
        if approver_id in gate.exclude_member_ids:
            return False
        if await self._has_delegated(gate.id, approver_id):
            return False
        if await self._pending_approval(gate.id, approver_id) is not None:
            return True
        if gate.approval_type == "chain" and gate.current_approver_id is not None:
            return approver_id == gate.current_approver_id
        return self._rule_allows(gate, approver_id)

    # ------------------------------------------------------------------
    # Decisions
    async def record_approval(
        self,
        instance_id: int,
        gate_id: int,
        approver_id: str,
        decision: str,
        comment: Optional[str] = None,
        next_approver_id: Optional[str] = None,
    ) -> ServiceResult:
        """Record one approver's decision and advance the gate."""
        async with self.store.transaction():
            gate = await self.store.get_gate(gate_id)
            if gate is None or gate.instance_id != instance_id:
                return ServiceResult.fail("Approval gate not found.")
            normalized = normalize_decision(decision)
            if normalized is None:
                return ServiceResult.fail(f"Invalid decision '{decision}'.")
            if not gate.is_pending:
                return ServiceResult.fail("Approval gate is no longer pending.")
            approver_id = str(approver_id)
            if await self._decided(gate.id, approver_id):
                return ServiceResult.fail("Decision already recorded for this approver.")
            if not await self.is_eligible(gate, approver_id):
                return ServiceResult.fail(
                    f"Member {approver_id} is not eligible to respond to this approval."
                )

            now = utcnow()
            approval = await self._pending_approval(gate.id, approver_id)
            if approval is None:
                approval = Approval(
                    gate_id=gate.id,
                    instance_id=gate.instance_id,
                    approver_id=approver_id,
                    order=gate.current_order,
                )
            approval.status = _DECISION_STATUS[normalized]
            approval.decision = normalized
            approval.comment = comment
            approval.next_approver_id = str(next_approver_id) if next_approver_id is not None else None
            approval.responded_at = now
            approval = await self.store.save_approval(approval)

            port = self._apply_decision(gate, approval, now)
            if port is not None:
                gate.status = GATE_APPROVED if port == "approved" else GATE_REJECTED
                gate.resolved_at = now
                await self._close_pending(gate.id, APPROVAL_CANCELLED)
            gate = await self.store.save_gate(gate)

            approval_data = {
                "gateId": gate.id,
                "approvedCount": gate.approved_count,
                "requiredCount": gate.required_count,
                "approverId": approver_id,
                "decision": normalized,
                "comment": comment,
                "nextApproverId": gate.current_approver_id,
                "approvalChain": list(gate.approval_chain),
            }
            if normalized == REJECT:
                approval_data["rejectionComment"] = comment

            follow_up: Optional[ServiceResult] = None
            if port is not None:
                logger.info(f"Approval gate #{gate.id} resolved: {gate.status}")
                if self.listener is not None:
                    follow_up = await self.listener.gate_resolved(gate, port, approval_data)
            elif normalized == APPROVE and self.listener is not None:
                follow_up = await self.listener.gate_progressed(gate, approval_data)

            data: dict[str, Any] = {
                "approval_id": approval.id,
                "gate_status": gate_status(gate),
                "resolved": port is not None,
            }
            if follow_up is not None:
                data["instance"] = follow_up.data
                if not follow_up.success:
                    data["instance_error"] = follow_up.reason
            return ServiceResult.ok(**data)

    def _apply_decision(self, gate: ApprovalGate, approval: Approval, now: datetime) -> Optional[str]:
        """Update counts/chain state; return the resolving port, if any."""
        decision = approval.decision
        if decision == ABSTAIN:
            gate.abstained_count += 1
            if gate.approval_type == "chain":
                self._advance_chain(gate, approval)
            return None

        if decision == REJECT:
            gate.rejected_count += 1
            if gate.approval_type == "any_one" and gate.expected_approvers:
                if gate.rejected_count >= len(gate.expected_approvers):
                    return "rejected"
                return None
            return "rejected"

        gate.approved_count += 1
        if gate.approval_type in ("chain",) or gate.serial_pick_next:
            gate.approval_chain.append(
                {
                    "approver_id": approval.approver_id,
                    "responded_at": now.isoformat(),
                    "next_picked": approval.next_approver_id,
                }
            )
        if gate.approved_count >= gate.required_count:
            return "approved"
        if gate.approval_type == "chain":
            self._advance_chain(gate, approval)
        return None

    @staticmethod
    def _advance_chain(gate: ApprovalGate, approval: Approval) -> None:
        gate.current_order += 1
        if gate.serial_pick_next or not gate.expected_approvers:
            if approval.approver_id not in gate.exclude_member_ids:
                gate.exclude_member_ids.append(approval.approver_id)
            gate.current_approver_id = approval.next_approver_id
            return
        pool = gate.expected_approvers
        index = gate.current_order - 1
        gate.current_approver_id = pool[index] if index < len(pool) else None

    async def _close_pending(self, gate_id: int, status: str) -> int:
        closed = 0
        for approval in await self.store.list_approvals(gate_id=gate_id, status=APPROVAL_PENDING):
            approval.status = status
            await self.store.save_approval(approval)
            closed += 1
        return closed

    # ------------------------------------------------------------------
    # Tokens
    async def generate_approval_token(
        self,
        instance_id: int,
        gate_id: int,
        approver_id: str,
        order: Optional[int] = None,
    ) -> ServiceResult:
        """Issue (or return the existing) approval token for an approver."""
        async with self.store.transaction():
            gate = await self.store.get_gate(gate_id)
            if gate is None or gate.instance_id != instance_id:
                return ServiceResult.fail("Approval gate not found.")
            if not gate.is_pending:
                return ServiceResult.fail("Approval gate is no longer pending.")
            approver_id = str(approver_id)
            existing = await self._pending_approval(gate.id, approver_id)
            if existing is not None and existing.token:
                return ServiceResult.ok(
                    token=existing.token,
                    approval_id=existing.id,
                    approver_id=approver_id,
                    order=existing.order,
                )
            if await self._decided(gate.id, approver_id):
                return ServiceResult.fail("Decision already recorded for this approver.")
            if gate.approval_type == "chain":
                if order is not None and order != gate.current_order:
                    return ServiceResult.fail("Only the current chain approver may receive a token.")
                if gate.current_approver_id is not None and approver_id != gate.current_approver_id:
                    return ServiceResult.fail("Only the current chain approver may receive a token.")
            if not await self.is_eligible(gate, approver_id):
                return ServiceResult.fail(
                    f"Member {approver_id} is not eligible to respond to this approval."
                )
            approval = await self.store.save_approval(
                Approval(
                    gate_id=gate.id,
                    instance_id=gate.instance_id,
                    approver_id=approver_id,
                    order=order or gate.current_order,
                    token=secrets.token_hex(TOKEN_BYTES),
                )
            )
            return ServiceResult.ok(
                token=approval.token,
                approval_id=approval.id,
                approver_id=approver_id,
                order=approval.order,
            )

    async def resolve_approval_by_token(
        self,
        token: str,
        decision: str,
        comment: Optional[str] = None,
        next_approver_id: Optional[str] = None,
    ) -> ServiceResult:
        async with self.store.transaction():
            approval = await self.store.get_approval_by_token(token)
            if approval is None:
                return ServiceResult.fail("Invalid approval token.")
            if approval.status != APPROVAL_PENDING:
                return ServiceResult.fail("Approval token has already been used.")
            return await self.record_approval(
                approval.instance_id,
                approval.gate_id,
                approval.approver_id,
                decision,
                comment,
                next_approver_id,
            )

    async def delegate_approval(self, approval_id: int, new_approver_id: str) -> ServiceResult:
        """Hand a pending approval to another member under a fresh token."""
        async with self.store.transaction():
            approval = await self.store.get_approval(approval_id)
            if approval is None:
                return ServiceResult.fail("Approval not found.")
            gate = await self.store.get_gate(approval.gate_id)
            if gate is None:
                return ServiceResult.fail("Approval gate not found.")
            if not gate.allow_delegation:
                return ServiceResult.fail("Gate does not allow delegation.")
            if approval.status != APPROVAL_PENDING:
                return ServiceResult.fail("Approval token has already been used.")
            if not gate.is_pending:
                return ServiceResult.fail("Approval gate is no longer pending.")
            new_approver_id = str(new_approver_id)
            if await self._decided(gate.id, new_approver_id):
                return ServiceResult.fail("Decision already recorded for this approver.")

            approval.status = APPROVAL_DELEGATED
            await self.store.save_approval(approval)
            delegated = await self.store.save_approval(
                Approval(
                    gate_id=gate.id,
                    instance_id=gate.instance_id,
                    approver_id=new_approver_id,
                    order=approval.order,
                    token=secrets.token_hex(TOKEN_BYTES),
                    delegated_from=approval.approver_id,
                )
            )
            # the delegate takes over the delegator's seat in a listed pool
            rule_type = (gate.approver_rule or {}).get("type")
            pool = list(gate.expected_approvers or [])
            if rule_type in _LISTED_RULES and new_approver_id not in pool:
                if approval.approver_id in pool:
                    pool[pool.index(approval.approver_id)] = new_approver_id
                else:
                    pool.append(new_approver_id)
                gate.expected_approvers = pool
            if gate.current_approver_id == approval.approver_id:
                gate.current_approver_id = new_approver_id
            await self.store.save_gate(gate)
            logger.info(
                f"Approval #{approval.id} delegated from {approval.approver_id} to {new_approver_id}"
            )
            return ServiceResult.ok(
                token=delegated.token,
                approval_id=delegated.id,
                delegated_from=approval.approver_id,
            )

    async def request_tokens(
        self, instance_id: int, gate_id: int, scope: dict[str, Any]
    ) -> ServiceResult:
        """Issue tokens to the approvers designated by the gate's rule.

        Chain gates only receive a token for the approver whose turn it is.
        """
        gate = await self.store.get_gate(gate_id)
        if gate is None or gate.instance_id != instance_id:
            return ServiceResult.fail("Approval gate not found.")
        approvers = self.resolve_approvers(gate.approver_rule or {}, scope)
        if not approvers:
            return ServiceResult.fail("No approvers resolved from gate rule.")

        if gate.approval_type == "chain":
            current = gate.current_approver_id or approvers[0]
            targets = [(current, gate.current_order)]
        else:
            targets = [(approver, None) for approver in approvers]

        tokens = []
        for approver_id, order in targets:
            result = await self.generate_approval_token(instance_id, gate.id, approver_id, order)
            if result.success:
                tokens.append(
                    {"approver_id": approver_id, "token": result.data["token"], "order": order}
                )
            else:
                logger.info(f"No token for {approver_id} on gate #{gate.id}: {result.reason}")
        return ServiceResult.ok(
            tokens_generated=len(tokens), tokens=tokens, total_approvers=len(approvers)
        )

    # ------------------------------------------------------------------
    # Queries
    async def get_gate_status(self, gate_id: int) -> ServiceResult:
        gate = await self.store.get_gate(gate_id)
        if gate is None:
            return ServiceResult.fail("Approval gate not found.")
        return ServiceResult.ok(gate_status=gate_status(gate))

    async def get_eligible_approvers(self, gate_id: int) -> ServiceResult:
        gate = await self.store.get_gate(gate_id)
        if gate is None:
            return ServiceResult.fail("Approval gate not found.")
        rule = gate.approver_rule or {}
        if rule.get("type") in _LISTED_RULES:
            pool: Optional[list[str]] = list(gate.expected_approvers or [])
        else:
            pool = self.resolve_approvers(rule, {})
        if pool is None:
            return ServiceResult.ok(approvers=None)
        decided = {
            a.approver_id
            for a in await self.store.list_approvals(gate_id=gate.id)
            if a.status in _DECIDED
        }
        eligible = [
            member
            for member in pool
            if member not in decided and await self.is_eligible(gate, member)
        ]
        return ServiceResult.ok(approvers=eligible)

    async def get_pending_approvals_for_member(self, member_id: str) -> list[ApprovalGate]:
        """Pending gates this member may still decide on."""
        member_id = str(member_id)
        pending = []
        for gate in await self.store.list_gates(status=GATE_PENDING):
            if await self._decided(gate.id, member_id):
                continue
            if await self.is_eligible(gate, member_id):
                pending.append(gate)
        return pending

    # ------------------------------------------------------------------
    # Bulk transitions
    async def cancel_gates_for_instance(self, instance_id: int) -> int:
        cancelled = 0
        for gate in await self.store.list_gates(instance_id=instance_id, status=GATE_PENDING):
            gate.status = GATE_CANCELLED
            gate.resolved_at = utcnow()
            await self.store.save_gate(gate)
            await self._close_pending(gate.id, APPROVAL_CANCELLED)
            cancelled += 1
        return cancelled

    async def expire_overdue_gates(
        self, now: Optional[datetime] = None, dry_run: bool = False
    ) -> list[ApprovalGate]:
        """Pending gates whose deadline has passed; expired unless ``dry_run``."""
        now = now or utcnow()
        overdue = [
            gate
            for gate in await self.store.list_gates(status=GATE_PENDING)
            if gate.deadline is not None and gate.deadline <= now
        ]
        if dry_run:
            return overdue
        for gate in overdue:
            gate.status = GATE_EXPIRED
            gate.resolved_at = now
            await self.store.save_gate(gate)
            await self._close_pending(gate.id, APPROVAL_EXPIRED)
            logger.info(f"Approval gate #{gate.id} expired")
        return overdue


def _ids(value: Any) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v is not None]
    return [str(value)]
