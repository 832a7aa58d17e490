"""
Control plane package root.

This package provides configuration loading utilities, the error
taxonomy shared by every tool, command execution tools (blacklist,
runner, detached sessions, process inspection), sidecar supervision and
proxying, and the core orchestrator that owns all of them.
"""

__version__ = "1.0.0"

__all__ = [
    "config",
    "core",
    "errors",
    "sidecar",
    "tools",
]
