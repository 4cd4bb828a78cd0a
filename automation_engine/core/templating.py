"""Placeholder rendering for message bodies, webhook payloads and AI prompts.

Placeholders look like ``{{first_name}}``, ``{{contact.email}}``,
``{{custom.plan}}`` or ``{{context.webhook_lookup.body.score}}`` and may carry
a fallback: ``{{first_name | there}}``.
"""

import json
import re
from typing import Any, Dict, Optional

from ..integrations.base import Contact

PLACEHOLDER_PATTERN = re.compile(r'\{\{\s*([\w.\-]+)\s*(?:\|\s*([^}]*?))?\s*\}\}')


class _Missing:
    def __repr__(self):
        return "MISSING"


MISSING = _Missing()


def build_scope(contact: Optional[Contact], context: Dict[str, Any]) -> Dict[str, Any]:
    """Variables visible to templates and conditions."""
    attributes = contact.attributes() if contact is not None else {}
    custom_fields = attributes.get("custom_fields", {})
    scope = dict(attributes)
    scope["contact"] = attributes
    scope["custom"] = custom_fields
    scope["custom_fields"] = custom_fields
    scope["context"] = context or {}
    return scope


def resolve_path(data: Any, path: str) -> Any:
    """Walk a dotted path through nested dicts and lists; MISSING if absent."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def format_value(value: Any) -> str:
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def render_template(template: Optional[str], scope: Dict[str, Any]) -> str:
    """Substitute every placeholder in ``template`` from ``scope``."""
    if not template:
        return ""

    def substitute(match: re.Match) -> str:
        value = resolve_path(scope, match.group(1))
        if value is MISSING or value is None or value == "":
            fallback = match.group(2)
            return fallback.strip() if fallback is not None else ""
        return format_value(value)

    return PLACEHOLDER_PATTERN.sub(substitute, template)
