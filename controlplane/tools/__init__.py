"""
Tool implementations.

Tools implement the operations exposed at the request/response
boundary: executing shell commands behind a blacklist, tracking
detached command sessions, and listing or killing OS processes. Tools
are registered via the `ToolRegistry` and invoked by name.
"""

__all__ = [
    "base",
    "blacklist",
    "processes",
    "sessions",
    "shell",
]
