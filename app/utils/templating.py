"""Placeholder substitution for notification templates.

Tokens look like ``{{user.name}}``. Each dotted segment walks one level into the
context; a token that cannot be resolved (missing key, ``None`` value, or a path
through a non-mapping) is left in the output verbatim.
"""
import json
import re
from typing import Any, Dict, Mapping, Optional

PLACEHOLDER = re.compile(r"\{\{(\w+(?:\.\w+)*)\}\}")

_MISSING = object()


def _resolve(path: str, context: Mapping[str, Any]) -> Any:
    value: Any = context
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return _MISSING
    return _MISSING if value is None else value


def lookup(path: str, context: Mapping[str, Any]) -> Any:
    """Value at a dotted path, or None when the path does not resolve."""
    value = _resolve(path, context)
    return None if value is _MISSING else value


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def render(template: Optional[str], context: Mapping[str, Any]) -> Optional[str]:
    if not template:
        return template

    def substitute(match: re.Match) -> str:
        value = _resolve(match.group(1), context)
        if value is _MISSING:
            return match.group(0)
        return _stringify(value)

    return PLACEHOLDER.sub(substitute, template)


def _render_value(value: Any, context: Mapping[str, Any], keep_types: bool = False) -> Any:
    if isinstance(value, str):
        if keep_types:
            # A leaf that is exactly one placeholder takes the value itself, not its text
            match = PLACEHOLDER.fullmatch(value)
            if match:
                resolved = _resolve(match.group(1), context)
                if resolved is not _MISSING:
                    return resolved
        return render(value, context)
    if isinstance(value, dict):
        return {key: _render_value(item, context, keep_types) for key, item in value.items()}
    if isinstance(value, list):
        return [_render_value(item, context, keep_types) for item in value]
    return value


def render_json(template: str, context: Mapping[str, Any]) -> Any:
    """
    Render a JSON document template leaf by leaf.

    Values are substituted into the parsed document, so quotes and newlines in
    the context can never break the JSON. Raises ``ValueError`` when ``template``
    is not valid JSON.
    """
    return _render_value(json.loads(template), context, keep_types=True)


def render_content(content: str, context: Mapping[str, Any]) -> str:
    """Render message content; JSON documents (chat payloads) stay valid JSON."""
    if content.lstrip().startswith(("{", "[")):
        try:
            document = render_json(content, context)
        except ValueError:
            return render(content, context)
        return json.dumps(document, ensure_ascii=False, default=str)
    return render(content, context)


def render_notification(template: Dict[str, Any], context: Mapping[str, Any]) -> Dict[str, Any]:
    """Render ``subject``, ``content`` and every string nested in ``metadata``."""
    return {
        "subject": render(template.get("subject"), context),
        "content": render_content(template.get("content") or "", context),
        "metadata": _render_value(template.get("metadata"), context) if template.get("metadata") else None,
    }
