"""Convert client tool definitions into the Responses tool schema.

Accepted shapes:

- plain strings: ``"shell"`` / ``"apply_patch"`` become native tools,
  anything else a parameterless function tool
- typed dicts: ``{"type": "function", "function": {...}}`` (chat style) or
  ``{"type": "function", "name": ...}`` (responses style), ``custom``,
  ``local_shell``, ``web_search``
- named dicts without a type
- a ``{name: {...} | True}`` map, where ``enabled``/``use``/``allow``
  false-y values drop the entry
"""

from __future__ import annotations

from typing import Any

from ..types import RequestBody

NATIVE_TOOLS = frozenset({"shell", "apply_patch"})
PASSTHROUGH_TYPES = frozenset({"local_shell", "web_search"})

# Backend models that reject parallel tool calls.
_SERIAL_TOOL_MODELS = ("gpt-5-codex", "gpt-5.1-codex")

DEFAULT_FUNCTION_PARAMETERS = {
    "type": "object",
    "properties": {},
    "additionalProperties": True,
}

DEFAULT_FREEFORM_FORMAT = {
    "type": "json_schema/v1",
    "syntax": "json",
    "definition": "{}",
}


def _non_blank(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def make_function_tool(
    name: Any,
    description: Any = None,
    parameters: Any = None,
    strict: Any = None,
) -> dict[str, Any] | None:
    if not _non_blank(name):
        return None
    tool: dict[str, Any] = {
        "type": "function",
        "name": name,
        "strict": strict if isinstance(strict, bool) else False,
        "parameters": parameters if isinstance(parameters, dict) else dict(DEFAULT_FUNCTION_PARAMETERS),
    }
    if _non_blank(description):
        tool["description"] = description
    return tool


def make_freeform_tool(name: Any, description: Any = None, fmt: Any = None) -> dict[str, Any] | None:
    if not _non_blank(name):
        return None
    tool: dict[str, Any] = {
        "type": "custom",
        "name": name,
        "format": fmt if isinstance(fmt, dict) else dict(DEFAULT_FREEFORM_FORMAT),
    }
    if _non_blank(description):
        tool["description"] = description
    return tool


def _convert_dict_tool(obj: dict[str, Any]) -> dict[str, Any] | None:
    nested = obj.get("function") if isinstance(obj.get("function"), dict) else {}

    def pick(key: str) -> Any:
        value = nested.get(key)
        return value if value is not None else obj.get(key)

    tool_type = obj.get("type")
    if isinstance(tool_type, str):
        if tool_type in NATIVE_TOOLS or tool_type in PASSTHROUGH_TYPES:
            return {"type": tool_type}
        if tool_type == "function":
            converted = make_function_tool(pick("name"), pick("description"), pick("parameters"), pick("strict"))
            if converted:
                return converted
        elif tool_type == "custom":
            converted = make_freeform_tool(pick("name"), pick("description"), pick("format"))
            if converted:
                return converted

    name = obj.get("name")
    if isinstance(name, str):
        if name in NATIVE_TOOLS:
            return {"type": name}
        return make_function_tool(name, obj.get("description"), obj.get("parameters"), obj.get("strict"))

    if nested.get("name"):
        return make_function_tool(
            nested.get("name"), nested.get("description"), nested.get("parameters"), nested.get("strict"),
        )
    return None


def convert_tool(candidate: Any) -> dict[str, Any] | None:
    if isinstance(candidate, str):
        trimmed = candidate.strip()
        if not trimmed:
            return None
        if trimmed in NATIVE_TOOLS:
            return {"type": trimmed}
        return make_function_tool(trimmed)
    if isinstance(candidate, dict):
        return _convert_dict_tool(candidate)
    return None


def _convert_tool_map(tools: dict[str, Any]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for name, value in tools.items():
        tool = None
        if isinstance(value, dict):
            enabled = value.get("enabled", value.get("use", value.get("allow", True)))
            if not enabled:
                continue
            if value.get("type") == "custom":
                tool = make_freeform_tool(name, value.get("description"), value.get("format"))
            else:
                tool = make_function_tool(
                    name, value.get("description"), value.get("parameters"), value.get("strict"),
                )
        elif value is True:
            tool = make_function_tool(name)
        if tool:
            converted.append(tool)
    return converted


def normalize_tools_for_responses(tools: Any) -> list[dict[str, Any]] | None:
    """Return the converted tool list, or ``None`` when there is nothing to convert."""
    if not tools:
        return None
    if isinstance(tools, list):
        return [tool for tool in (convert_tool(t) for t in tools) if tool]
    if isinstance(tools, dict):
        return _convert_tool_map(tools)
    return None


def normalize_tools_for_body(body: RequestBody, normalized_model: str) -> bool:
    """Rewrite ``tools`` on *body* in place; returns whether tools remain.

    An empty conversion removes ``tools`` and ``tool_choice`` entirely.
    """
    if not body.get("tools"):
        body.pop("tools", None)
        return False

    converted = normalize_tools_for_responses(body["tools"])
    if not converted:
        body.pop("tools", None)
        body.pop("tool_choice", None)
        body.pop("parallel_tool_calls", None)
        return False

    body["tools"] = converted
    body["tool_choice"] = "auto"
    body["parallel_tool_calls"] = not normalized_model.startswith(_SERIAL_TOOL_MODELS)
    return True
