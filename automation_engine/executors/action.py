"""Action executor: idempotent contact mutations."""

from typing import Any

from ..core.templating import render_template
from ..models.nodes import ActionConfig, ActionType
from .base import ExecutionContext, NodeOutcome


def _field_value(config: ActionConfig, ctx: ExecutionContext) -> Any:
    if isinstance(config.field_value, str):
        return render_template(config.field_value, ctx.scope())
    return config.field_value


def execute_action(config: ActionConfig, ctx: ExecutionContext) -> NodeOutcome:
    """
    Apply one contact mutation.

    The current contact state is checked before writing, so replaying the same
    visit after a crash writes nothing.
    """
    contact = ctx.contact()
    store = ctx.contact_store
    action = config.action_type
    applied = False

    if action == ActionType.ADD_TAG:
        if config.tag not in contact.tags:
            ctx.call_external(store.add_tag, "Contact store add_tag", contact.id, config.tag)
            applied = True
        target = config.tag
    elif action == ActionType.REMOVE_TAG:
        if config.tag in contact.tags:
            ctx.call_external(store.remove_tag, "Contact store remove_tag", contact.id, config.tag)
            applied = True
        target = config.tag
    elif action == ActionType.SET_FIELD:
        value = _field_value(config, ctx)
        if config.field_name not in contact.custom_fields or contact.custom_fields[config.field_name] != value:
            ctx.call_external(store.set_field, "Contact store set_field", contact.id, config.field_name, value)
            applied = True
        target = config.field_name
    elif action == ActionType.CLEAR_FIELD:
        if config.field_name in contact.custom_fields:
            ctx.call_external(store.clear_field, "Contact store clear_field", contact.id, config.field_name)
            applied = True
        target = config.field_name
    elif action == ActionType.ADD_TO_LIST:
        if config.list_id not in contact.lists:
            ctx.call_external(store.add_to_list, "Contact store add_to_list", contact.id, config.list_id)
            applied = True
        target = config.list_id
    else:
        if config.list_id in contact.lists:
            ctx.call_external(store.remove_from_list, "Contact store remove_from_list", contact.id, config.list_id)
            applied = True
        target = config.list_id

    return NodeOutcome(
        context_updates={f"action_{ctx.node.id}": {"action": action.value, "applied": applied}},
        detail=f"{action.value} '{target}'" + ("" if applied else " already in place")
    )
