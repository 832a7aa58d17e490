"""
Process inspection tools backed by `psutil`.
"""

import logging
import time
from typing import Any, Dict, List

import psutil

from controlplane.errors import AccessDeniedError, NotFoundError, ValidationError
from controlplane.tools.base import Tool, optional_str, require_int

logger = logging.getLogger(__name__)

MAX_PROCESS_ENTRIES = 100
# pids below this are system daemons on every platform we care about
RESERVED_PID_CEILING = 100
KILL_GRACE_SECONDS = 3.0
CPU_SAMPLE_SECONDS = 0.1


def _cpu_percent(proc: psutil.Process) -> float:
    try:
        return proc.cpu_percent(interval=None) or 0.0
    except psutil.Error:
        return 0.0


class ListProcessesTool(Tool):
    """
    List running processes, optionally filtered by name or command line.

    Tool input schema:
    {
        "filter": "python"
    }
    """

    def __init__(self) -> None:
        super().__init__(
            name="list_processes",
            description=(
                "List running processes (at most 100). Input: {\"filter\": str} "
                "matched case-insensitively against name and command line."
            ),
        )

    def run(self, tool_input: Dict[str, Any]) -> List[Dict[str, Any]]:
        needle = (optional_str(tool_input, "filter") or "").lower()
        matched = []
        for proc in psutil.process_iter(["pid", "name", "cmdline", "memory_info"]):
            info = proc.info
            cmdline = " ".join(info.get("cmdline") or [])
            name = info.get("name") or ""
            if needle and needle not in name.lower() and needle not in cmdline.lower():
                continue
            matched.append((proc, name, cmdline))
            if len(matched) >= MAX_PROCESS_ENTRIES:
                break

        # the first cpu_percent() call on a Process only starts the measurement
        for proc, _, _ in matched:
            _cpu_percent(proc)
        time.sleep(CPU_SAMPLE_SECONDS)

        entries: List[Dict[str, Any]] = []
        for proc, name, cmdline in matched:
            memory = proc.info.get("memory_info")
            entries.append(
                {
                    "pid": proc.info.get("pid"),
                    "name": name,
                    "command": cmdline,
                    "cpu_percent": _cpu_percent(proc),
                    "memory_mb": round(memory.rss / (1024 * 1024), 1) if memory else 0.0,
                }
            )
        return entries


class KillProcessTool(Tool):
    """
    Terminate a process by pid.

    Tool input schema:
    {
        "pid": 12345
    }
    """

    def __init__(self) -> None:
        super().__init__(
            name="kill_process",
            description=(
                "Terminate a process by pid. Input: {\"pid\": int}. "
                "Pids below 100 are reserved and refused."
            ),
        )

    def run(self, tool_input: Dict[str, Any]) -> str:
        pid = require_int(tool_input, "pid")
        if pid <= 0:
            raise ValidationError(f"Invalid pid {pid}.")
        if pid < RESERVED_PID_CEILING:
            raise ValidationError(f"Pid {pid} is in the reserved range (< {RESERVED_PID_CEILING}).")

        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=KILL_GRACE_SECONDS)
            except psutil.TimeoutExpired:
                proc.kill()
        except psutil.NoSuchProcess:
            raise NotFoundError(f"No process with pid {pid}.") from None
        except psutil.AccessDenied:
            raise AccessDeniedError(f"Not permitted to terminate pid {pid}.") from None
        logger.info("Terminated process %d", pid)
        return f"Process {pid} terminated."
