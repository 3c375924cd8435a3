"""Core built-in actions: context/entity mutation, email and webhooks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import requests

from ..expressions import is_numeric, resolve_path, set_path, to_number
from ..models import utcnow
from .base import Action, ActionContext, ActionResult

logger = logging.getLogger(__name__)

INCREMENT = "{{increment}}"
NOW = "{{now}}"
WEBHOOK_METHODS = ("GET", "POST", "PUT")


class SetContextAction(Action):
    name = "set_context"
    description = "Writes a value into the workflow instance context"

    async def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        key = params.get("key")
        if not key:
            return self.fail("set_context requires a key")
        value = params.get("value")
        if value == NOW:
            value = utcnow().isoformat()
        elif value == INCREMENT:
            current = resolve_path(ctx.context, str(key), 0)
            base = to_number(current) if is_numeric(current) else 0
            value = int(base) + 1 if float(base).is_integer() else base + 1
        set_path(ctx.context, str(key), value)
        return self.ok(key=key, value=value, context_updates={key: value})


class SetFieldAction(Action):
    name = "set_field"
    description = "Sets a field on the bound entity, or defers when none is bound"

    async def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        field = params.get("field")
        if not field:
            return self.fail("set_field requires a field")
        value = params.get("value")
        if not ctx.has_entity:
            return self.ok(field=field, value=value, deferred=True)
        updated = await ctx.update_entity({field: value})
        if updated is None:
            return self.fail(f"Entity {ctx.entity_type}#{ctx.entity_id} not found")
        return self.ok(field=field, value=value, deferred=False)


class SendEmailAction(Action):
    name = "send_email"
    description = "Hands an email notification to the notification sink"

    async def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        mailer = params.get("mailer")
        method = params.get("method")
        if not mailer or not method:
            return self.fail("Mailer and method are required for send_email action")
        to = params.get("to")
        variables = params.get("vars") or {}
        delivered = True
        try:
            await ctx.collaborators.notifier.send(mailer, method, to, variables)
        except Exception as exc:
            # notification delivery never fails the workflow
            logger.warning(f"send_email {mailer}.{method} to {to} failed: {exc}")
            delivered = False
        return self.ok(mailer=mailer, method=method, to=to, vars=variables, delivered=delivered)


class WebhookAction(Action):
    name = "webhook"
    description = "Fires an HTTP request to an external URL"

    async def execute(self, params: dict[str, Any], ctx: ActionContext) -> ActionResult:
        url = params.get("url")
        if not url:
            return self.fail("Webhook action requires a url")
        method = str(params.get("method", "POST")).upper()
        if method not in WEBHOOK_METHODS:
            return self.fail(f"Unsupported webhook method: {method}")
        payload = params.get("payload") or {}
        headers = params.get("headers") or {}
        timeout = float(params.get("timeout") or ctx.webhook_timeout)

        kwargs: dict[str, Any] = {"headers": headers, "timeout": timeout}
        if method == "GET":
            kwargs["params"] = payload
        else:
            kwargs["json"] = payload

        try:
            response = await asyncio.to_thread(requests.request, method, url, **kwargs)
        except requests.RequestException as exc:
            logger.warning(f"Webhook {method} {url} failed: {exc}")
            return self.fail(f"Webhook failed: {exc}", url=url)

        if not 200 <= response.status_code < 300:
            return self.fail(
                f"Webhook returned HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
            )
        return self.ok(url=url, method=method, status_code=response.status_code, body=response.text)
