"""Ordered execution of action chains."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from .base import ActionChainResult, ActionContext, ActionResult
from .builtin import SendEmailAction, SetContextAction, SetFieldAction, WebhookAction
from .domain import ActivateWarrantAction, CancelWarrantAction, RequestApprovalAction
from .registry import ActionRegistry

logger = logging.getLogger(__name__)

_RESERVED_KEYS = ("type", "optional", "params")


def default_action_registry() -> ActionRegistry:
    registry = ActionRegistry()
    for action in (
        SetFieldAction(),
        SetContextAction(),
        SendEmailAction(),
        WebhookAction(),
        ActivateWarrantAction(),
        CancelWarrantAction(),
        RequestApprovalAction(),
    ):
        registry.register(action)
    return registry


def action_params(spec: dict[str, Any]) -> dict[str, Any]:
    """Parameters of an action spec: ``params`` or the non-reserved keys."""
    if isinstance(spec.get("params"), dict):
        return dict(spec["params"])
    return {k: v for k, v in spec.items() if k not in _RESERVED_KEYS}


class ActionExecutor:
    """Run action specs strictly in order against a registry.

    A missing or unregistered ``type`` is recorded as a failed sub-result
    and the chain continues. A failing non-optional action stops the chain
    and fails the whole call; earlier side effects are left in place.
    """

    def __init__(self, registry: Optional[ActionRegistry] = None) -> None:
        self.registry = registry or default_action_registry()

    async def execute(
        self, actions: Iterable[dict[str, Any]], ctx: ActionContext
    ) -> ActionChainResult:
        results: list[ActionResult] = []
        for spec in actions:
            spec = spec if isinstance(spec, dict) else {}
            optional = bool(spec.get("optional", False))
            kind = spec.get("type")
            if not kind:
                results.append(
                    ActionResult(
                        type="unknown",
                        success=False,
                        reason="No action type specified",
                        optional=optional,
                    )
                )
                continue
            action = self.registry.get(kind)
            if action is None:
                results.append(
                    ActionResult(
                        type=kind,
                        success=False,
                        reason=f"Unknown action type: {kind}",
                        optional=optional,
                    )
                )
                continue

            scope = await ctx.scope()
            params = ctx.resolver.resolve_params(action_params(spec), scope)
            try:
                result = await action.execute(params, ctx)
            except Exception as exc:
                logger.exception(f"Action '{kind}' raised")
                result = ActionResult(type=kind, success=False, reason=str(exc))
            result.optional = optional
            results.append(result)

            if not result.success:
                if optional:
                    logger.info(f"Optional action '{kind}' failed: {result.reason}")
                    continue
                return ActionChainResult(
                    success=False,
                    reason=f"Action '{kind}' failed: {result.reason}",
                    results=results,
                )
        return ActionChainResult(success=True, results=results)
