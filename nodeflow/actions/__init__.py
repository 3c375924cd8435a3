"""Action execution: executor, registry and built-in actions."""

from .base import Action, ActionChainResult, ActionContext, ActionResult
from .builtin import SendEmailAction, SetContextAction, SetFieldAction, WebhookAction
from .domain import ActivateWarrantAction, CancelWarrantAction, RequestApprovalAction
from .executor import ActionExecutor, action_params, default_action_registry
from .registry import ActionRegistry

__all__ = [
    "Action",
    "ActionChainResult",
    "ActionContext",
    "ActionExecutor",
    "ActionRegistry",
    "ActionResult",
    "ActivateWarrantAction",
    "CancelWarrantAction",
    "RequestApprovalAction",
    "SendEmailAction",
    "SetContextAction",
    "SetFieldAction",
    "WebhookAction",
    "action_params",
    "default_action_registry",
]
