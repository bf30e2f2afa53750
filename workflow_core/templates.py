"""
``{{variable}}`` template resolution for block configuration.
"""
import json
import re
from typing import Any, Dict

from shared.logger import get_logger

logger = get_logger("workflow_core.templates")

_TEMPLATE_RE = re.compile(r"\{\{\s*([\w-]+(?:\.[\w-]+)*)\s*\}\}")
_MISSING = object()


def lookup_variable(var_name: str, variable_map: Dict[str, Any]) -> Any:
    """
    Resolve a dotted variable name against the variable map.

    Supports:
    - Simple names: {{email}}
    - Block outputs: {{block_id.field}}
    - Deep paths: {{block_id.structured_output.field}} or list indexes {{block.items.0}}

    Returns the module-level sentinel when the name cannot be resolved.
    """
    if var_name in variable_map:
        return variable_map[var_name]

    parts = var_name.split(".")
    current_value = variable_map.get(parts[0], _MISSING)
    if current_value is _MISSING:
        return _MISSING

    for key in parts[1:]:
        # JSON strings produced by upstream blocks can be traversed as well
        if isinstance(current_value, str):
            try:
                current_value = json.loads(current_value)
            except ValueError:
                return _MISSING
        if isinstance(current_value, dict) and key in current_value:
            current_value = current_value[key]
        elif isinstance(current_value, (list, tuple)):
            try:
                current_value = current_value[int(key)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING

    return current_value


def resolve_template_variables(text: str, variable_map: Dict[str, Any]) -> Any:
    """
    Resolve {{variable_name}} template variables in text.

    A string made of a single template resolves to the raw value (so lists
    and numbers keep their type). Otherwise each template is replaced by its
    string form; dicts and lists are JSON encoded and unknown names become an
    empty string.
    """
    if not text or "{{" not in text:
        return text

    whole = _TEMPLATE_RE.fullmatch(text.strip())
    if whole is not None:
        value = lookup_variable(whole.group(1), variable_map)
        if value is _MISSING:
            logger.debug(f"Unresolved template variable: {whole.group(1)}")
            return ""
        return value

    def replace_template_var(match):
        var_name = match.group(1)
        value = lookup_variable(var_name, variable_map)
        if value is _MISSING or value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    return _TEMPLATE_RE.sub(replace_template_var, text)


def resolve_template_payload(payload: Any, variable_map: Dict[str, Any]) -> Any:
    """
    Resolve template variables within arbitrary payloads.

    Supports nested lists/dicts so parameters like ["{{node.handle}}"]
    are resolved just like plain strings.
    """
    if isinstance(payload, str):
        if "{{" in payload:
            return resolve_template_variables(payload, variable_map)
        return payload
    if isinstance(payload, list):
        return [resolve_template_payload(item, variable_map) for item in payload]
    if isinstance(payload, dict):
        return {
            key: resolve_template_payload(value, variable_map)
            for key, value in payload.items()
        }
    return payload


__all__ = [
    "lookup_variable",
    "resolve_template_payload",
    "resolve_template_variables",
]
