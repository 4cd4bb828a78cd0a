"""WaitUntil executor: suspends the enrollment until an event, a date or a timeout."""

from typing import Optional

from ..core.templating import format_value
from ..models.core import TIMEOUT_HANDLE, WaitCondition
from ..models.nodes import WaitEventType, WaitUntilConfig
from .base import ExecutionContext, NodeOutcome
from .delay import delay_delta


def _already_satisfied(config: WaitUntilConfig, ctx: ExecutionContext) -> Optional[str]:
    """Reason the awaited state already holds on arrival, if it does."""
    if config.event_type == WaitEventType.SPECIFIC_DATE:
        if config.date <= ctx.now:
            return "date already reached"
    elif config.event_type == WaitEventType.TAG_APPLIED:
        if config.tag in ctx.contact().tags:
            return f"tag '{config.tag}' already applied"
    elif config.event_type == WaitEventType.FIELD_CHANGED and config.field_value is not None:
        current = ctx.contact().custom_fields.get(config.field_name)
        if current is not None and format_value(current) == format_value(config.field_value):
            return f"field '{config.field_name}' already set"
    return None


def execute_wait_until(config: WaitUntilConfig, ctx: ExecutionContext) -> NodeOutcome:
    """
    Suspend on first arrival and decide the exit edge when re-dispatched.

    Re-dispatch happens when the awaited event woke the enrollment (default
    edge), when the specific date was reached (default edge) or when the
    timeout elapsed first (timeout edge).
    """
    node_id = ctx.node.id
    condition = ctx.enrollment.wait_condition

    if condition is not None and condition.node_id == node_id:
        if condition.matched:
            return NodeOutcome(
                context_updates={f"wait_{node_id}": "matched"},
                detail=f"{condition.event_type} received"
            )
        if condition.wake_at is not None and ctx.now >= condition.wake_at:
            return NodeOutcome(
                context_updates={f"wait_{node_id}": "date_reached"},
                detail="date reached"
            )
        if condition.timeout_at is not None and ctx.now >= condition.timeout_at:
            return NodeOutcome(
                handle=TIMEOUT_HANDLE,
                context_updates={f"wait_{node_id}": "timeout"},
                detail=f"timed out waiting for {condition.event_type}"
            )
        return NodeOutcome(wait_condition=condition, detail=f"still waiting for {condition.event_type}")

    reason = _already_satisfied(config, ctx)
    if reason:
        return NodeOutcome(context_updates={f"wait_{node_id}": "matched"}, detail=reason)

    timeout_at = None
    if config.timeout_enabled:
        timeout_at = ctx.now + delay_delta(config.timeout_amount, config.timeout_unit)

    condition = WaitCondition(
        event_type=config.event_type.value,
        node_id=node_id,
        tag=config.tag,
        field_name=config.field_name,
        field_value=config.field_value,
        webhook_key=config.webhook_key,
        wake_at=config.date if config.event_type == WaitEventType.SPECIFIC_DATE else None,
        timeout_at=timeout_at,
    )
    detail = f"waiting for {config.event_type.value}"
    if timeout_at is not None:
        detail += f" until {timeout_at.isoformat()}"
    return NodeOutcome(wait_condition=condition, detail=detail)
