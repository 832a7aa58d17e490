"""
Tools exposing sidecar control and proxying.
"""

from typing import Any, Dict

from controlplane.errors import ValidationError
from controlplane.sidecar.proxy import ProxyGateway, ProxyRequest
from controlplane.sidecar.supervisor import SidecarSupervisor
from controlplane.tools.base import Tool, optional_str, require_str


class SidecarStartTool(Tool):
    def __init__(self, supervisor: SidecarSupervisor) -> None:
        super().__init__(
            name="sidecar.start",
            description="Start the sidecar tool server. Input: {}.",
        )
        self.supervisor = supervisor

    def run(self, tool_input: Dict[str, Any]) -> Any:
        return self.supervisor.start()


class SidecarStatusTool(Tool):
    def __init__(self, supervisor: SidecarSupervisor) -> None:
        super().__init__(
            name="sidecar.status",
            description="Report the sidecar state, exit code and recent output. Input: {}.",
        )
        self.supervisor = supervisor

    def run(self, tool_input: Dict[str, Any]) -> Any:
        return self.supervisor.status()


class SidecarRestartTool(Tool):
    def __init__(self, supervisor: SidecarSupervisor) -> None:
        super().__init__(
            name="sidecar.restart",
            description="Spawn the sidecar again after it has exited or been stopped. Input: {}.",
        )
        self.supervisor = supervisor

    def run(self, tool_input: Dict[str, Any]) -> Any:
        return self.supervisor.restart()


class SidecarStopTool(Tool):
    def __init__(self, supervisor: SidecarSupervisor) -> None:
        super().__init__(
            name="sidecar.stop",
            description="Terminate the sidecar. Input: {}.",
        )
        self.supervisor = supervisor

    def run(self, tool_input: Dict[str, Any]) -> Any:
        return self.supervisor.terminate()


class ProxyRequestTool(Tool):
    """
    Forward an HTTP request to the sidecar through the gateway.

    Tool input schema:
    {
        "method": "POST",
        "path": "/graphlit/mcp",
        "headers": {"Content-Type": "application/json"},
        "body": "...",
        "query": {"key": "value"}
    }
    """

    def __init__(self, gateway: ProxyGateway) -> None:
        super().__init__(
            name="proxy_request",
            description=(
                f"Forward an HTTP request to the sidecar under '{gateway.prefix}'. "
                "Input: {\"method\": str, \"path\": str, \"headers\": dict, "
                "\"body\": str, \"query\": dict}."
            ),
        )
        self.gateway = gateway

    def run(self, tool_input: Dict[str, Any]) -> Any:
        headers = tool_input.get("headers") or {}
        query = tool_input.get("query") or {}
        if not isinstance(headers, dict) or not isinstance(query, dict):
            raise ValidationError("'headers' and 'query' must be objects.")
        body = optional_str(tool_input, "body") or ""
        response = self.gateway.forward(
            ProxyRequest(
                method=optional_str(tool_input, "method") or "GET",
                path=require_str(tool_input, "path"),
                headers={str(k): str(v) for k, v in headers.items()},
                body=body.encode("utf-8"),
                query=query,
            )
        )
        return {
            "status": response.status,
            "headers": response.headers,
            "body": response.body.decode("utf-8", errors="replace"),
        }
