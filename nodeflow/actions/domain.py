"""Domain actions operating on the bound entity or the approval subsystem."""

from __future__ import annotations

import logging
from typing import Any

from ..expressions import parse_deadline
from ..models import utcnow
from .base import Action, ActionContext, ActionResult

logger = logging.getLogger(__name__)


class ActivateWarrantAction(Action):
    name = "activate_warrant"
    description = "Activates a warrant: status Current, approval date, start date snapped to now"

    async def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        entity = await ctx.load_entity()
        if entity is None:
            return self.fail("A bound entity is required for activate_warrant action")
        now = utcnow()
        values: dict[str, Any] = {"status": "Current", "approved_date": now.isoformat()}
        start_on = parse_deadline(entity.get("start_on"))
        if start_on is None or start_on < now:
            values["start_on"] = now.isoformat()
        updated = await ctx.update_entity(values)
        if updated is None:
            return self.fail("Failed to activate warrant")
        logger.info(f"Warrant #{ctx.entity_id} activated")
        return self.ok(warrant_id=ctx.entity_id, status="Current", start_on=updated.get("start_on"))


class CancelWarrantAction(Action):
    name = "cancel_warrant"
    description = "Cancels a warrant with a recorded reason"

    async def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        entity = await ctx.load_entity()
        if entity is None:
            return self.fail("A bound entity is required for cancel_warrant action")
        reason = params.get("reason") or "Cancelled via workflow"
        revoker_id = ctx.context.get("triggeredBy")
        values: dict[str, Any] = {"revoked_reason": reason}
        if revoker_id is not None:
            values["revoker_id"] = revoker_id
        now = utcnow()
        expires_on = parse_deadline(entity.get("expires_on"))
        if expires_on is not None and expires_on > now:
            values["expires_on"] = now.isoformat()
        if await ctx.update_entity(values) is None:
            return self.fail("Failed to cancel warrant")
        logger.info(f"Warrant #{ctx.entity_id} cancelled: {reason}")
        return self.ok(warrant_id=ctx.entity_id, reason=reason, revoker_id=revoker_id)


class RequestApprovalAction(Action):
    name = "request_approval"
    description = "Issues approval tokens to the approvers resolved from a gate's rule"

    async def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        gate_id = params.get("gate_id")
        if not gate_id:
            return self.fail("request_approval requires gate_id")
        if ctx.instance_id is None:
            return self.fail("No workflow instance in context.")
        if ctx.approvals is None:
            return self.fail("Approval subsystem is not available")
        result = await ctx.approvals.request_tokens(
            ctx.instance_id, int(gate_id), await ctx.scope()
        )
        if not result.success:
            return self.fail(result.reason or "Approval request failed")
        return self.ok(**result.data)
