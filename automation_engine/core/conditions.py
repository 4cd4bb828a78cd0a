"""Evaluation of Condition node expression trees."""

from typing import Any, Dict, Iterator, List, Optional

from ..integrations.base import Contact
from ..models.nodes import ALLOWED_OPERATORS, ConditionGroup, ConditionRule
from .exceptions import ConfigurationError
from .templating import MISSING, build_scope, resolve_path


def resolve_field(field: str, scope: Dict[str, Any]) -> Any:
    """Look up a field reference.

    Qualified references (``context.x``, ``contact.x``, ``custom.x``) resolve
    directly. A bare name is looked up on the contact, then its custom fields,
    then the enrollment context.
    """
    field = field.strip()
    head = field.split(".", 1)[0]
    if head in ("context", "contact", "custom", "custom_fields"):
        return resolve_path(scope, field)

    for source in (scope, scope.get("custom", {}), scope.get("context", {})):
        value = resolve_path(source, field)
        if value is not MISSING:
            return value
    return MISSING


def _normalize(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _equals(actual: Any, expected: Any) -> bool:
    if actual is MISSING:
        return expected is None
    left, right = _to_number(actual), _to_number(expected)
    if left is not None and right is not None:
        return left == right
    return _normalize(actual) == _normalize(expected)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is MISSING or actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return any(_equals(item, expected) for item in actual)
    if isinstance(actual, dict):
        return expected in actual
    return str(_normalize(expected)) in str(_normalize(actual))


def _is_empty(actual: Any) -> bool:
    if actual is MISSING or actual is None:
        return True
    if isinstance(actual, str):
        return not actual.strip()
    if isinstance(actual, (list, tuple, set, dict)):
        return len(actual) == 0
    return False


def _compare(actual: Any, expected: Any, greater: bool) -> bool:
    left, right = _to_number(actual), _to_number(expected)
    if left is None or right is None:
        return False
    return left > right if greater else left < right


def evaluate_rule(rule: ConditionRule, scope: Dict[str, Any]) -> bool:
    actual = resolve_field(rule.field, scope)
    operator = rule.operator

    if operator == "equals":
        return _equals(actual, rule.value)
    if operator == "not_equals":
        return not _equals(actual, rule.value)
    if operator == "contains":
        return _contains(actual, rule.value)
    if operator == "not_contains":
        return not _contains(actual, rule.value)
    if operator == "greater_than":
        return _compare(actual, rule.value, greater=True)
    if operator == "less_than":
        return _compare(actual, rule.value, greater=False)
    if operator == "is_empty":
        return _is_empty(actual)
    if operator == "is_not_empty":
        return not _is_empty(actual)

    # Unknown operators are rejected by validation before publish
    raise ConfigurationError(f"Unsupported condition operator '{operator}'", config_key="operator")


def evaluate_group(group: ConditionGroup, scope: Dict[str, Any]) -> bool:
    results = (
        evaluate_group(child, scope) if isinstance(child, ConditionGroup) else evaluate_rule(child, scope)
        for child in group.conditions
    )
    if group.combinator == "or":
        return any(results)
    return all(results)


def evaluate_condition(
    expression: ConditionGroup,
    contact: Optional[Contact],
    context: Dict[str, Any]
) -> bool:
    """Evaluate ``expression`` against a contact snapshot and enrollment context."""
    return evaluate_group(expression, build_scope(contact, context))


def expression_depth(group: ConditionGroup) -> int:
    """Nesting depth of groups; a flat group has depth 1."""
    child_depths = [
        expression_depth(child) for child in group.conditions if isinstance(child, ConditionGroup)
    ]
    return 1 + (max(child_depths) if child_depths else 0)


def iter_rules(group: ConditionGroup) -> Iterator[ConditionRule]:
    for child in group.conditions:
        if isinstance(child, ConditionGroup):
            yield from iter_rules(child)
        else:
            yield child


def iter_groups(group: ConditionGroup) -> Iterator[ConditionGroup]:
    yield group
    for child in group.conditions:
        if isinstance(child, ConditionGroup):
            yield from iter_groups(child)


def unknown_operators(group: ConditionGroup) -> List[str]:
    return sorted({rule.operator for rule in iter_rules(group) if rule.operator not in ALLOWED_OPERATORS})

