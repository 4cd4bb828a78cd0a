"""Webhook executor: outbound HTTP calls with a bounded timeout."""

import json
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import requests

from ..core.exceptions import ConfigurationError, PermanentExecutionError, TransientExecutionError
from ..core.templating import render_template
from ..models.nodes import AuthType, WebhookConfig
from .base import ExecutionContext, NodeOutcome

# Status codes worth retrying
RETRYABLE_STATUS_CODES = frozenset([408, 425, 429])


def _build_request(config: WebhookConfig, ctx: ExecutionContext) -> Dict[str, Any]:
    scope = ctx.scope()
    url = render_template(config.url, scope).strip()
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ctx.policy.webhook_allowed_schemes or not parsed.netloc:
        raise ConfigurationError(f"Webhook URL '{url}' is not allowed", config_key="url", node_id=ctx.node.id)

    headers = {name: render_template(value, scope) for name, value in config.headers.items()}
    request_kwargs: Dict[str, Any] = {
        "method": config.method,
        "url": url,
        "headers": headers,
        "timeout": ctx.call_timeout,
    }

    if config.auth_type == AuthType.BEARER:
        headers["Authorization"] = f"Bearer {config.auth_token}"
    elif config.auth_type == AuthType.BASIC:
        request_kwargs["auth"] = (config.auth_username, config.auth_password)
    elif config.auth_type == AuthType.API_KEY:
        headers[config.api_key_header] = config.api_key

    if config.body and config.method != "GET":
        body = render_template(config.body, scope)
        try:
            request_kwargs["json"] = json.loads(body)
        except ValueError:
            request_kwargs["data"] = body.encode("utf-8")

    return request_kwargs


def _parse_body(response: requests.Response) -> Optional[Any]:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _send(session: requests.Session, request_kwargs: Dict[str, Any]) -> requests.Response:
    # Read the body inside the bounded call
    response = session.request(**request_kwargs)
    response.content
    return response


def execute_webhook(config: WebhookConfig, ctx: ExecutionContext) -> NodeOutcome:
    """
    Call the configured endpoint and store the parsed response in context.

    The whole exchange, including reading the response body, is bounded by
    the external call timeout. The ``timeout=`` handed to requests only caps
    individual socket operations.

    Raises:
        TransientExecutionError: On timeouts, connection failures, 5xx, 408 and 429
        PermanentExecutionError: On 401/403 and any other 4xx
    """
    request_kwargs = _build_request(config, ctx)
    host = urlparse(request_kwargs["url"]).netloc
    description = f"Webhook {config.method} {host}"

    try:
        response = ctx.runner.call(_send, ctx.call_timeout, description, ctx.http, request_kwargs)
    except TransientExecutionError as e:
        raise TransientExecutionError(e.message, **ctx.error_context())
    except requests.Timeout:
        raise TransientExecutionError(f"{description} timed out after {ctx.call_timeout:g}s", **ctx.error_context())
    except requests.ConnectionError as e:
        raise TransientExecutionError(f"{description} connection failed: {type(e).__name__}", **ctx.error_context())
    except requests.RequestException as e:
        raise PermanentExecutionError(f"{description} could not be sent: {type(e).__name__}", **ctx.error_context())

    status = response.status_code
    if status in (401, 403):
        raise PermanentExecutionError(f"{description} was unauthorized ({status})", **ctx.error_context())
    if status >= 500 or status in RETRYABLE_STATUS_CODES:
        raise TransientExecutionError(f"{description} returned {status}", **ctx.error_context())
    if status >= 400:
        raise PermanentExecutionError(f"{description} was rejected ({status})", **ctx.error_context())

    updates: Dict[str, Any] = {}
    if config.save_response:
        variable = config.response_variable or f"webhook_{ctx.node.id}"
        updates[variable] = {"status_code": status, "body": _parse_body(response)}

    return NodeOutcome(context_updates=updates, detail=f"{description} returned {status}")
