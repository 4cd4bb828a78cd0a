"""Goal executor."""

from ..models.nodes import GoalConfig
from .base import ExecutionContext, NodeOutcome


def execute_goal(config: GoalConfig, ctx: ExecutionContext) -> NodeOutcome:
    """Mark the goal as reached; the engine stores the conversion once the pointer moves."""
    conversion = None
    if config.track_in_analytics:
        conversion = {
            "goal_name": config.goal_name,
            "goal_type": config.goal_type.value,
            "revenue_amount": config.revenue_amount,
            "currency": config.currency if config.revenue_amount is not None else None,
        }

    return NodeOutcome(
        context_updates={
            f"goal_{ctx.node.id}": {
                "goal_name": config.goal_name,
                "achieved_at": ctx.now.isoformat(),
            }
        },
        conversion=conversion,
        detail=f"goal '{config.goal_name}' reached"
    )
