"""Delay executor: a pure scheduling step."""

from datetime import timedelta

from ..core.business_hours import roll_forward
from ..models.nodes import DelayConfig, DelayUnit
from .base import ExecutionContext, NodeOutcome

UNIT_DELTAS = {
    DelayUnit.MINUTES: timedelta(minutes=1),
    DelayUnit.HOURS: timedelta(hours=1),
    DelayUnit.DAYS: timedelta(days=1),
    DelayUnit.WEEKS: timedelta(weeks=1),
}


def delay_delta(amount: int, unit: DelayUnit) -> timedelta:
    return UNIT_DELTAS[unit] * amount


def execute_delay(config: DelayConfig, ctx: ExecutionContext) -> NodeOutcome:
    """Make the next node due after the configured delay, rolled into business time if asked."""
    due = ctx.now + delay_delta(config.amount, config.unit)
    due = roll_forward(
        due,
        ctx.policy.business_hours,
        business_hours_only=config.business_hours_only,
        skip_weekends=config.skip_weekends
    )
    return NodeOutcome(delay_until=due, detail=f"next step due at {due.isoformat()}")
