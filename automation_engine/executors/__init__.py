"""Node executors, one strategy per node variant."""

from typing import Callable, Dict

from ..core.exceptions import ConfigurationError
from ..models.core import NodeType
from .action import execute_action
from .ai import execute_ai
from .base import ExecutionContext, NodeOutcome
from .condition import execute_condition
from .delay import execute_delay
from .goal import execute_goal
from .message import execute_message
from .split import execute_split
from .trigger import execute_trigger
from .wait_until import execute_wait_until
from .webhook import execute_webhook

EXECUTORS: Dict[NodeType, Callable] = {
    NodeType.TRIGGER: execute_trigger,
    NodeType.MESSAGE: execute_message,
    NodeType.DELAY: execute_delay,
    NodeType.CONDITION: execute_condition,
    NodeType.ACTION: execute_action,
    NodeType.WAIT_UNTIL: execute_wait_until,
    NodeType.SPLIT: execute_split,
    NodeType.WEBHOOK: execute_webhook,
    NodeType.AI: execute_ai,
    NodeType.GOAL: execute_goal,
}


def get_executor(node_type: NodeType) -> Callable:
    """Executor for a node variant."""
    executor = EXECUTORS.get(node_type)
    if executor is None:
        raise ConfigurationError(f"No executor registered for node type '{node_type}'")
    return executor


__all__ = [
    "EXECUTORS",
    "ExecutionContext",
    "NodeOutcome",
    "get_executor",
]
