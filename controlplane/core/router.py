"""
Tool routing logic.

The router resolves a tool by name and runs it. It is the operation
boundary: every failure is turned into a structured error result here,
so nothing a tool does can take down the request loop.
"""

import logging
from typing import Any, Dict, Optional

from controlplane.errors import NotFoundError, ToolError, ValidationError
from controlplane.tools.base import ToolRegistry

logger = logging.getLogger(__name__)


class ToolRouter:
    """
    ToolRouter dispatches tool invocations to the registered tools and
    normalizes their outcome into a JSON-serialisable dict.
    """

    def __init__(self, tools: ToolRegistry) -> None:
        self.tools = tools

    def invoke(self, tool_name: str, tool_input: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Invoke a tool and wrap its outcome.

        Args:
            tool_name: The registered tool name.
            tool_input: The tool's input object.

        Returns:
            `{"ok": True, "tool": ..., "result": ...}` on success, or
            `{"ok": False, "tool": ..., "error": {"kind": ..., "message": ...}}`.
        """
        try:
            tool = self.tools.get_tool(tool_name)
            if tool is None:
                raise NotFoundError(f"Tool '{tool_name}' is not available.")
            if tool_input is None:
                tool_input = {}
            if not isinstance(tool_input, dict):
                raise ValidationError("'tool_input' must be an object.")
            result = tool.run(tool_input)
        except ToolError as exc:
            logger.info("Tool %s failed: %s: %s", tool_name, exc.kind, exc.message)
            return {"ok": False, "tool": tool_name, "error": exc.to_dict()}
        except Exception as exc:
            logger.exception("Tool %s raised an unexpected error", tool_name)
            return {
                "ok": False,
                "tool": tool_name,
                "error": {"kind": "InternalError", "message": str(exc)},
            }
        return {"ok": True, "tool": tool_name, "result": result}
