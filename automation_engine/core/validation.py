"""Static validation of workflow graphs."""

from collections import deque
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Sequence, Set
from urllib.parse import urlparse
from pydantic import ValidationError

from ..models.core import (
    ERROR_HANDLE,
    FALSE_HANDLE,
    TIMEOUT_HANDLE,
    TRUE_HANDLE,
    NodeDefinition,
    NodeType,
    Severity,
    ValidationIssue,
    ValidationResult,
    WorkflowDefinition,
)
from ..models.graph import WorkflowGraph
from ..models.nodes import (
    AIConfig,
    AuthType,
    ConditionConfig,
    SplitConfig,
    WaitUntilConfig,
    WebhookConfig,
    parse_node_config,
)
from .conditions import expression_depth, iter_groups, unknown_operators
from .logging import get_logger

logger = get_logger(__name__)

# Nodes that may end a journey without an outgoing edge
TERMINAL_TYPES = (NodeType.GOAL, NodeType.MESSAGE)


def strongly_connected_components(graph: WorkflowGraph) -> List[List[str]]:
    """
    Cyclic strongly connected components over non-suspending edges (Tarjan).

    Single nodes are included only when they loop onto themselves. Members of
    each component, and the components themselves, follow definition order.
    """
    order = {node_id: position for position, node_id in enumerate(graph.node_ids)}
    index: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack = set()
    stack: List[str] = []
    components: List[List[str]] = []

    def connect(node_id: str):
        index[node_id] = lowlink[node_id] = len(index)
        stack.append(node_id)
        on_stack.add(node_id)

        for target in graph.successors(node_id):
            if target not in index:
                connect(target)
                lowlink[node_id] = min(lowlink[node_id], lowlink[target])
            elif target in on_stack:
                lowlink[node_id] = min(lowlink[node_id], index[target])

        if lowlink[node_id] == index[node_id]:
            members = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                members.append(member)
                if member == node_id:
                    break
            if len(members) > 1 or node_id in graph.successors(node_id):
                components.append(sorted(members, key=order.__getitem__))

    for node_id in graph.node_ids:
        if node_id not in index:
            connect(node_id)

    return sorted(components, key=lambda members: order[members[0]])


def _shortest_path(graph: WorkflowGraph, source: str, targets: Set[str], within: Set[str]) -> List[str]:
    """Breadth-first path from ``source`` to the nearest of ``targets``, staying inside ``within``."""
    parents: Dict[str, Optional[str]] = {source: None}
    queue = deque([source])
    while queue:
        current = queue.popleft()
        for target in graph.successors(current):
            if target not in within or target in parents:
                continue
            parents[target] = current
            if target in targets:
                path = [target]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])
                return list(reversed(path))
            queue.append(target)
    return [source]


def cycle_walk(graph: WorkflowGraph, component: List[str]) -> List[str]:
    """Closed walk through a strongly connected component that visits every member."""
    members = set(component)
    start = component[0]
    walk = [start]
    unvisited = members - {start}

    while unvisited:
        leg = _shortest_path(graph, walk[-1], unvisited, members)
        walk.extend(leg[1:])
        unvisited -= set(leg)

    if len(walk) == 1:
        # Self-loop
        walk.append(start)
    else:
        walk.extend(_shortest_path(graph, walk[-1], {start}, members)[1:])
    return walk


def _format_pydantic_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = item.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


class ValidationEngine:
    """Pure, side-effect-free checks run on every edit and before publish."""

    def __init__(
        self,
        allowed_ai_models: Sequence[str],
        allowed_webhook_schemes: Sequence[str] = ("https", "http"),
        max_condition_depth: int = 5
    ):
        self.allowed_ai_models = list(allowed_ai_models)
        self.allowed_webhook_schemes = [scheme.lower() for scheme in allowed_webhook_schemes]
        self.max_condition_depth = max_condition_depth

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """
        Validate a candidate workflow graph.

        Args:
            definition: The workflow definition to check

        Returns:
            ValidationResult: Ordered issues; ``is_valid`` is False if any is an error
        """
        issues: List[ValidationIssue] = []
        graph = WorkflowGraph(definition)

        self._validate_trigger(graph, issues)
        self._validate_references(graph, issues)
        self._validate_cycles(graph, issues)
        self._validate_connectivity(graph, issues)

        for node in graph.nodes():
            self._validate_node(graph, node, issues)

        result = ValidationResult(
            is_valid=not any(issue.severity == Severity.ERROR for issue in issues),
            issues=issues
        )
        logger.debug(
            f"Validated workflow '{definition.name}': valid={result.is_valid}, "
            f"errors={len(result.errors)}, warnings={len(result.warnings)}"
        )
        return result

    @staticmethod
    def _error(issues: List[ValidationIssue], message: str, node_id: Optional[str] = None, **kwargs):
        issues.append(ValidationIssue(severity=Severity.ERROR, node_id=node_id, message=message, **kwargs))

    @staticmethod
    def _warning(issues: List[ValidationIssue], message: str, node_id: Optional[str] = None, **kwargs):
        issues.append(ValidationIssue(severity=Severity.WARNING, node_id=node_id, message=message, **kwargs))

    def _validate_trigger(self, graph: WorkflowGraph, issues: List[ValidationIssue]):
        triggers = graph.nodes_of_type(NodeType.TRIGGER)
        if not triggers:
            self._error(issues, "Workflow must contain exactly one trigger node; none found")
        elif len(triggers) > 1:
            for trigger in triggers[1:]:
                self._error(
                    issues,
                    f"Workflow must contain exactly one trigger node; found {len(triggers)}",
                    node_id=trigger.id
                )

        for trigger in triggers:
            if graph.incoming(trigger.id):
                self._error(issues, "Trigger node cannot have incoming edges", node_id=trigger.id)

    def _validate_references(self, graph: WorkflowGraph, issues: List[ValidationIssue]):
        for edge in graph.dangling_edges:
            missing = edge.source if edge.source not in graph else edge.target
            self._error(
                issues,
                f"Edge {edge.source} -> {edge.target} references non-existent node '{missing}'",
                edge_id=edge.id
            )

    def _validate_cycles(self, graph: WorkflowGraph, issues: List[ValidationIssue]):
        """Report every cycle over non-suspending edges, naming all of its nodes."""
        for component in strongly_connected_components(graph):
            path = cycle_walk(graph, component)
            self._error(
                issues,
                f"Cycle detected: {' -> '.join(path)}",
                node_id=path[0],
                path=path
            )

    def _validate_connectivity(self, graph: WorkflowGraph, issues: List[ValidationIssue]):
        for node in graph.nodes():
            if not graph.successors(node.id) and node.type not in TERMINAL_TYPES:
                self._error(
                    issues,
                    f"{node.type.value} node '{node.id}' has no outgoing edge",
                    node_id=node.id
                )
            incoming = [edge for edge in graph.incoming(node.id) if not graph.is_wait_self_loop(edge)]
            if node.type != NodeType.TRIGGER and not incoming:
                self._warning(issues, f"Node '{node.id}' is an orphan with no incoming edges", node_id=node.id)

    def _validate_node(self, graph: WorkflowGraph, node: NodeDefinition, issues: List[ValidationIssue]):
        try:
            config = parse_node_config(node)
        except ValidationError as e:
            self._error(
                issues,
                f"Invalid {node.type.value} configuration: {_format_pydantic_error(e)}",
                node_id=node.id
            )
            return

        if isinstance(config, ConditionConfig):
            self._validate_condition(graph, node, config, issues)
        elif isinstance(config, SplitConfig):
            self._validate_split(graph, node, config, issues)
        elif isinstance(config, WebhookConfig):
            self._validate_webhook(node, config, issues)
        elif isinstance(config, AIConfig):
            self._validate_ai(node, config, issues)
        elif isinstance(config, WaitUntilConfig):
            self._validate_wait_until(graph, node, config, issues)

        self._validate_handles(graph, node, config, issues)

    def _validate_condition(self, graph: WorkflowGraph, node: NodeDefinition,
                            config: ConditionConfig, issues: List[ValidationIssue]):
        for group in iter_groups(config.expression):
            if not group.conditions:
                self._error(issues, "Condition groups cannot be empty", node_id=node.id)
                break

        bad_operators = unknown_operators(config.expression)
        if bad_operators:
            self._error(
                issues,
                f"Condition uses unsupported operator(s): {', '.join(bad_operators)}",
                node_id=node.id
            )

        depth = expression_depth(config.expression)
        if depth > self.max_condition_depth:
            self._error(
                issues,
                f"Condition nesting depth {depth} exceeds the maximum of {self.max_condition_depth}",
                node_id=node.id
            )

        handles = graph.handles(node.id)
        for required in (TRUE_HANDLE, FALSE_HANDLE):
            if required not in handles:
                self._error(issues, f"Condition node is missing its '{required}' edge", node_id=node.id)

    def _validate_split(self, graph: WorkflowGraph, node: NodeDefinition,
                        config: SplitConfig, issues: List[ValidationIssue]):
        if config.split_type == "percentage":
            total = Decimal(0)
            for branch in config.branches:
                if branch.percentage is None:
                    self._error(issues, f"Split branch '{branch.id}' has no percentage", node_id=node.id)
                    continue
                if branch.percentage < 0:
                    self._error(issues, f"Split branch '{branch.id}' has a negative percentage", node_id=node.id)
                try:
                    total += Decimal(str(branch.percentage))
                except InvalidOperation:
                    self._error(issues, f"Split branch '{branch.id}' has an invalid percentage", node_id=node.id)
            if total != Decimal(100):
                self._error(
                    issues,
                    f"Split percentages must sum to exactly 100, got {total.normalize():f}",
                    node_id=node.id
                )
        else:
            if not config.field or not config.field.strip():
                self._error(issues, "Field split requires a field name", node_id=node.id)
            branch_ids = {branch.id for branch in config.branches}
            if config.default_branch and config.default_branch not in branch_ids:
                self._error(
                    issues,
                    f"Default branch '{config.default_branch}' is not a declared branch",
                    node_id=node.id
                )

        handles = graph.handles(node.id)
        for branch in config.branches:
            if branch.id not in handles:
                self._error(issues, f"Split branch '{branch.id}' has no outgoing edge", node_id=node.id)

    def _validate_webhook(self, node: NodeDefinition, config: WebhookConfig, issues: List[ValidationIssue]):
        parsed = urlparse(config.url.strip())
        if parsed.scheme.lower() not in self.allowed_webhook_schemes:
            self._error(
                issues,
                f"Webhook URL scheme '{parsed.scheme}' is not allowed; "
                f"use one of {', '.join(self.allowed_webhook_schemes)}",
                node_id=node.id
            )
        elif not parsed.netloc:
            self._error(issues, "Webhook URL is not well-formed", node_id=node.id)

        if config.auth_type == AuthType.BEARER and not config.auth_token:
            self._error(issues, "Bearer auth requires auth_token", node_id=node.id)
        elif config.auth_type == AuthType.BASIC and not (config.auth_username and config.auth_password):
            self._error(issues, "Basic auth requires auth_username and auth_password", node_id=node.id)
        elif config.auth_type == AuthType.API_KEY and not (config.api_key and config.api_key_header):
            self._error(issues, "API key auth requires api_key and api_key_header", node_id=node.id)

    def _validate_ai(self, node: NodeDefinition, config: AIConfig, issues: List[ValidationIssue]):
        if not config.prompt or not config.prompt.strip():
            self._error(issues, "AI node requires a non-empty prompt", node_id=node.id)
        if config.model not in self.allowed_ai_models:
            self._error(
                issues,
                f"AI model '{config.model}' is not allowed; use one of {', '.join(self.allowed_ai_models)}",
                node_id=node.id
            )
        if config.action.value == "categorize" and not config.categories:
            self._error(issues, "Categorize action requires at least one category", node_id=node.id)
        if config.action.value == "translate" and not config.target_language:
            self._error(issues, "Translate action requires a target_language", node_id=node.id)

    def _validate_wait_until(self, graph: WorkflowGraph, node: NodeDefinition,
                             config: WaitUntilConfig, issues: List[ValidationIssue]):
        handles = graph.handles(node.id)
        if config.timeout_enabled and TIMEOUT_HANDLE not in handles:
            self._error(issues, "Wait with a timeout requires a 'timeout' edge", node_id=node.id)
        if not config.timeout_enabled and TIMEOUT_HANDLE in handles:
            self._warning(issues, "Wait has a 'timeout' edge but no timeout configured", node_id=node.id)

    def _validate_handles(self, graph: WorkflowGraph, node: NodeDefinition, config, issues: List[ValidationIssue]):
        """Warn about edges leaving through handles the node never produces."""
        if isinstance(config, ConditionConfig):
            produced = {TRUE_HANDLE, FALSE_HANDLE}
        elif isinstance(config, SplitConfig):
            produced = {branch.id for branch in config.branches}
        elif isinstance(config, WaitUntilConfig):
            produced = {"default", TIMEOUT_HANDLE}
        else:
            produced = {"default"}
        produced.add(ERROR_HANDLE)

        for edge in graph.outgoing(node.id):
            if graph.is_wait_self_loop(edge):
                continue
            if edge.source_handle not in produced:
                self._warning(
                    issues,
                    f"Edge {edge.source} -> {edge.target} uses handle '{edge.source_handle}' "
                    f"that a {node.type.value} node never produces",
                    node_id=node.id,
                    edge_id=edge.id
                )
