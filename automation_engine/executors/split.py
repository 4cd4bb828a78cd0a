"""Split executor: deterministic branch assignment."""

import hashlib
from decimal import Decimal

from ..core.conditions import resolve_field
from ..core.exceptions import ConfigurationError, PermanentExecutionError
from ..core.templating import MISSING, format_value
from ..models.nodes import SplitBranch, SplitConfig
from .base import ExecutionContext, NodeOutcome


def split_bucket(workflow_id: str, node_id: str, contact_id: str) -> int:
    """Stable bucket in [0, 100) for a contact at a split node."""
    digest = hashlib.sha256(f"{workflow_id}:{node_id}:{contact_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


def choose_percentage_branch(config: SplitConfig, bucket: int) -> SplitBranch:
    cumulative = Decimal(0)
    for branch in config.branches:
        cumulative += Decimal(str(branch.percentage or 0))
        if Decimal(bucket) < cumulative:
            return branch
    raise ConfigurationError(f"Split percentages do not cover bucket {bucket}")


def _normalize(value) -> str:
    return format_value(value).strip().lower()


def choose_field_branch(config: SplitConfig, value) -> SplitBranch:
    if value is not MISSING:
        wanted = _normalize(value)
        for branch in config.branches:
            if branch.value is not None and _normalize(branch.value) == wanted:
                return branch

    if config.default_branch:
        for branch in config.branches:
            if branch.id == config.default_branch:
                return branch
    raise PermanentExecutionError(f"No split branch matches value '{format_value(value)}'")


def execute_split(config: SplitConfig, ctx: ExecutionContext) -> NodeOutcome:
    """Leave through the handle named after the chosen branch id."""
    if config.split_type == "percentage":
        bucket = split_bucket(ctx.workflow.id, ctx.node.id, ctx.enrollment.contact_id)
        branch = choose_percentage_branch(config, bucket)
        detail = f"bucket {bucket} assigned to branch {branch.id}"
    else:
        if not config.field:
            raise ConfigurationError("Field split has no field", node_id=ctx.node.id)
        value = resolve_field(config.field, ctx.scope())
        branch = choose_field_branch(config, value)
        detail = f"field {config.field} routed to branch {branch.id}"

    return NodeOutcome(
        handle=branch.id,
        context_updates={f"split_{ctx.node.id}": branch.id},
        detail=detail
    )
