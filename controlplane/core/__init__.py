"""
Core logic for the control plane.

This subpackage provides the router, which turns tool invocations into
structured results, and the orchestrator that owns every component and
drives startup and shutdown.
"""

__all__ = [
    "router",
    "orchestrator",
]
