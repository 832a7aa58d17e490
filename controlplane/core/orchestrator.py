"""
The control plane orchestrator.

A single `Orchestrator` owns every piece of mutable state in the
process: the command blacklist, the session registry, the sidecar
supervisor and the proxy gateway. Tools receive these objects by
reference, so there are no module-level singletons. The orchestrator is
built once at startup and torn down with `shutdown()`.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional

from controlplane import __version__
from controlplane.config import section
from controlplane.core.router import ToolRouter
from controlplane.errors import ToolError
from controlplane.sidecar.proxy import ProxyGateway
from controlplane.sidecar.supervisor import SidecarSupervisor
from controlplane.sidecar.tools import (
    ProxyRequestTool,
    SidecarRestartTool,
    SidecarStartTool,
    SidecarStatusTool,
    SidecarStopTool,
)
from controlplane.tools.base import Tool, ToolRegistry
from controlplane.tools.blacklist import CommandFilter
from controlplane.tools.processes import KillProcessTool, ListProcessesTool
from controlplane.tools.sessions import SessionRegistry
from controlplane.tools.shell import (
    BlockCommandTool,
    CommandRunner,
    ExecuteCommandTool,
    KillSessionTool,
    ListBlockedCommandsTool,
    ReadSessionTool,
    UnblockCommandTool,
)

logger = logging.getLogger(__name__)


class ListToolsTool(Tool):
    def __init__(self, tools: ToolRegistry) -> None:
        super().__init__(name="list_tools", description="List available tools. Input: {}.")
        self.tools = tools

    def run(self, tool_input: Dict[str, Any]) -> Any:
        return [{"name": t.name, "description": t.description} for t in self.tools.list_tools()]


class HealthTool(Tool):
    def __init__(self, orchestrator: "Orchestrator") -> None:
        super().__init__(name="health", description="Report control plane health. Input: {}.")
        self.orchestrator = orchestrator

    def run(self, tool_input: Dict[str, Any]) -> Any:
        return {
            "status": "ok",
            "version": __version__,
            "uptime": round(time.time() - self.orchestrator.started_at, 3),
            "sidecar": self.orchestrator.supervisor.state.value,
        }


class Orchestrator:
    """
    Owns the control plane components and their lifecycle.
    """

    def __init__(
        self,
        command_filter: CommandFilter,
        sessions: SessionRegistry,
        runner: CommandRunner,
        supervisor: SidecarSupervisor,
        gateway: ProxyGateway,
        sidecar_enabled: bool = True,
        grace_seconds: float = 5.0,
    ) -> None:
        self.command_filter = command_filter
        self.sessions = sessions
        self.runner = runner
        self.supervisor = supervisor
        self.gateway = gateway
        self.sidecar_enabled = sidecar_enabled
        self.grace_seconds = grace_seconds
        self.started_at = time.time()
        self.tools = self._build_tool_registry()
        self.router = ToolRouter(self.tools)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "Orchestrator":
        """
        Build every component from the raw config dict.
        """
        command_filter = CommandFilter.from_config(cfg)
        sessions = SessionRegistry.from_config(cfg)
        runner = CommandRunner.from_config(cfg, command_filter, sessions)
        supervisor = SidecarSupervisor.from_config(cfg)
        gateway = ProxyGateway.from_config(cfg, supervisor)
        return cls(
            command_filter=command_filter,
            sessions=sessions,
            runner=runner,
            supervisor=supervisor,
            gateway=gateway,
            sidecar_enabled=bool(section(cfg, "sidecar").get("enabled", True)),
            grace_seconds=float(section(cfg, "shutdown").get("grace_seconds", 5)),
        )

    def _build_tool_registry(self) -> ToolRegistry:
        registry = ToolRegistry()
        for tool in (
            ExecuteCommandTool(self.runner),
            BlockCommandTool(self.command_filter),
            UnblockCommandTool(self.command_filter),
            ListBlockedCommandsTool(self.command_filter),
            ReadSessionTool(self.sessions),
            KillSessionTool(self.sessions),
            ListProcessesTool(),
            KillProcessTool(),
            SidecarStartTool(self.supervisor),
            SidecarStatusTool(self.supervisor),
            SidecarRestartTool(self.supervisor),
            SidecarStopTool(self.supervisor),
            ProxyRequestTool(self.gateway),
            ListToolsTool(registry),
            HealthTool(self),
        ):
            registry.register_tool(tool)
        return registry

    def invoke(self, tool_name: str, tool_input: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.router.invoke(tool_name, tool_input)

    def startup(self) -> None:
        """
        Start the sidecar if it can be started.

        A sidecar that cannot start is reported once; the other tools
        keep working and the sidecar stays absent.
        """
        if not self.sidecar_enabled:
            logger.info("Sidecar disabled by configuration")
            return
        try:
            self.supervisor.start()
        except ToolError as exc:
            logger.warning("Sidecar unavailable: %s", exc.message)

    def _drain(self, session_grace: float, sidecar_grace: float) -> None:
        killed = self.sessions.kill_all(grace_seconds=session_grace)
        if killed:
            logger.info("Terminated %d running session(s)", killed)
        try:
            self.supervisor.terminate(grace_seconds=sidecar_grace)
        except Exception as exc:
            logger.warning("Failed to terminate sidecar: %s", exc)

    def shutdown(self, grace_seconds: Optional[float] = None) -> bool:
        """
        Kill running sessions and stop the sidecar.

        The drain runs on a worker thread bounded by the grace period.

        Returns:
            True if teardown finished in time, False if the caller should
            force the process to exit.
        """
        deadline = self.grace_seconds if grace_seconds is None else grace_seconds
        # sessions and sidecar each escalate to SIGKILL within their share
        worker = threading.Thread(
            target=self._drain,
            args=(deadline / 4, deadline / 2),
            name="shutdown-drain",
            daemon=True,
        )
        worker.start()
        worker.join(deadline)
        if worker.is_alive():
            logger.error("Shutdown did not complete within %.1f seconds", deadline)
            return False
        logger.info("Shutdown complete")
        return True
