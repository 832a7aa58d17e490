"""
Sidecar supervision.

The sidecar is an external tool server started and watched by the
`SidecarSupervisor`. Once it is ready, the `ProxyGateway` forwards
prefix-mounted requests to it. `tools` exposes both as tool operations.
"""

__all__ = [
    "proxy",
    "supervisor",
    "tools",
]
