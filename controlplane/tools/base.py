"""
Base classes for tool operations.

Tools are simple, self-contained actions invoked by name with a JSON
object as input. Each tool validates its input, performs the requested
action and returns a JSON-serialisable result, raising a `ToolError`
subclass on failure. Tools are registered in a `ToolRegistry` for
lookup by name.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from controlplane.errors import ValidationError


@dataclass
class Tool:
    """
    Represents an operation exposed at the request/response boundary.

    Each tool has a name and a human-readable description. The `run`
    method must be implemented by subclasses to execute the tool with
    the given input.
    """

    name: str
    description: str

    def run(self, tool_input: Dict[str, Any]) -> Any:
        raise NotImplementedError


class ToolRegistry:
    """
    Registers and retrieves tools by name.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register_tool(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def list_tools(self) -> List[Tool]:
        return list(self._tools.values())


def require_str(tool_input: Dict[str, Any], key: str) -> str:
    value = tool_input.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{key}' is required and must be a non-empty string.")
    return value


def optional_str(tool_input: Dict[str, Any], key: str) -> Optional[str]:
    value = tool_input.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"'{key}' must be a string.")
    return value


def require_int(tool_input: Dict[str, Any], key: str) -> int:
    value = optional_int(tool_input, key)
    if value is None:
        raise ValidationError(f"'{key}' is required and must be an integer.")
    return value


def optional_int(tool_input: Dict[str, Any], key: str) -> Optional[int]:
    value = tool_input.get(key)
    if value is None:
        return None
    # bool is an int subclass; true/false are never valid numbers here.
    if isinstance(value, bool):
        raise ValidationError(f"'{key}' must be an integer.")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must be an integer.") from None


def optional_bool(tool_input: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = tool_input.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in {"true", "false"}:
        return value.lower() == "true"
    raise ValidationError(f"'{key}' must be a boolean.")
