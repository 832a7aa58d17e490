"""
Shell command tools.

Executes arbitrary shell commands behind a substring blacklist. A
command either runs to completion (bounded by a timeout and an output
cap) or is started detached and tracked as a session in the
`SessionRegistry`. Every child is started in its own process group so
a timeout or kill takes the shell's children down with it.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from controlplane.config import env_or, section
from controlplane.errors import (
    BlockedCommandError,
    CommandFailedError,
    CommandTimeoutError,
    ValidationError,
)
from controlplane.tools.base import (
    Tool,
    optional_bool,
    optional_int,
    optional_str,
    require_int,
    require_str,
)
from controlplane.tools.blacklist import CommandFilter
from controlplane.tools.sessions import SessionRegistry, stop_process

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 1_000_000
TRUNCATION_MARKER = "\n... [output truncated]"
DEFAULT_TIMEOUT_MS = 30_000
# bound on reading leftover output once the process group is killed
DRAIN_TIMEOUT_SECONDS = 1.0


def truncate_output(data: bytes, limit: int = MAX_OUTPUT_BYTES) -> str:
    """
    Decode captured output, capping it at `limit` bytes.

    A multi-byte character split by the cap is dropped rather than
    replaced, so the decoded text never exceeds `limit` characters plus
    the marker.
    """
    if len(data) <= limit:
        return data.decode("utf-8", errors="replace")
    return data[:limit].decode("utf-8", errors="ignore") + TRUNCATION_MARKER


@dataclass
class CommandResult:
    output: str
    exit_code: Optional[int] = None
    session_id: Optional[int] = None


class CommandRunner:
    """
    Runs shell commands once they pass the `CommandFilter`.
    """

    def __init__(
        self,
        command_filter: CommandFilter,
        sessions: SessionRegistry,
        root_dir: Optional[str] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.command_filter = command_filter
        self.sessions = sessions
        self.root_dir = os.path.abspath(root_dir or os.getcwd())
        self.timeout_ms = timeout_ms
        os.makedirs(self.root_dir, exist_ok=True)

    @classmethod
    def from_config(
        cls,
        cfg: Dict[str, Any],
        command_filter: CommandFilter,
        sessions: SessionRegistry,
    ) -> "CommandRunner":
        commands_cfg = section(cfg, "commands")
        root_dir = env_or(commands_cfg, "root_dir", "CONTROL_PLANE_ROOT", None)
        timeout_ms = env_or(commands_cfg, "timeout_ms", "COMMAND_TIMEOUT_MS", DEFAULT_TIMEOUT_MS)
        return cls(
            command_filter=command_filter,
            sessions=sessions,
            root_dir=root_dir,
            timeout_ms=int(timeout_ms),
        )

    def _resolve_cwd(self, cwd: Optional[str]) -> str:
        if not cwd:
            return self.root_dir
        path = os.path.abspath(os.path.join(self.root_dir, cwd))
        if not os.path.isdir(path):
            raise ValidationError(f"Working directory '{cwd}' does not exist.")
        return path

    def run(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        detached: bool = False,
    ) -> CommandResult:
        """
        Run `command` through the shell.

        Args:
            command: Shell command line.
            cwd: Working directory, relative paths resolve against the
                runner's root directory.
            timeout_ms: Timeout for non-detached runs.
            detached: Start the command in the background and return a
                session id instead of waiting.

        Raises:
            ValidationError: Empty command, bad directory or timeout.
            BlockedCommandError: The command matches the blacklist.
            CommandTimeoutError: The command outlived its timeout.
            CommandFailedError: The command exited with a non-zero code.
        """
        if not command or not command.strip():
            raise ValidationError("'command' is required.")
        pattern = self.command_filter.match(command)
        if pattern is not None:
            logger.warning("Refused blocked command %r (pattern %r)", command, pattern)
            raise BlockedCommandError(command, pattern)

        workdir = self._resolve_cwd(cwd)
        if detached:
            return self._start_detached(command, workdir)

        timeout_ms = self.timeout_ms if timeout_ms is None else timeout_ms
        if timeout_ms <= 0:
            raise ValidationError("'timeoutMs' must be a positive integer.")
        return self._run_to_completion(command, workdir, timeout_ms)

    def _run_to_completion(self, command: str, workdir: str, timeout_ms: int) -> CommandResult:
        logger.debug("Running %r in %s (timeout %d ms)", command, workdir, timeout_ms)
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=workdir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        try:
            stdout, stderr = process.communicate(timeout=timeout_ms / 1000)
        except subprocess.TimeoutExpired:
            stop_process(process, force=True)
            stdout, stderr = self._drain_after_kill(process)
            raise CommandTimeoutError(
                f"Command timed out after {timeout_ms} ms and was terminated.",
                timeout_ms=timeout_ms,
                output=truncate_output(stdout + stderr),
            ) from None

        if process.returncode != 0:
            raise CommandFailedError(
                f"Command exited with code {process.returncode}.",
                exit_code=process.returncode,
                stderr=truncate_output(stderr),
                output=truncate_output(stdout),
            )
        return CommandResult(output=truncate_output(stdout + stderr), exit_code=0)

    @staticmethod
    def _drain_after_kill(process: subprocess.Popen) -> Tuple[bytes, bytes]:
        """
        Collect what is left in the pipes of a killed command.

        A descendant that moved to its own session (`setsid`) survives the
        group kill and may keep the pipes open, so the read is bounded and
        the pipes are closed on expiry.
        """
        try:
            return process.communicate(timeout=DRAIN_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired as exc:
            logger.warning("Output pipes still held after kill (pid %d), closing them", process.pid)
            for stream in (process.stdout, process.stderr):
                if stream is not None:
                    stream.close()
            process.wait()
            return exc.output or b"", exc.stderr or b""

    def _start_detached(self, command: str, workdir: str) -> CommandResult:
        process = subprocess.Popen(
            command,
            shell=True,
            cwd=workdir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
        session = self.sessions.register(process, command, workdir)
        threading.Thread(
            target=self.sessions.follow,
            args=(session,),
            name=f"session-{session.id}",
            daemon=True,
        ).start()
        return CommandResult(
            output=f"Started session {session.id} (pid {process.pid}).",
            session_id=session.id,
        )


class ExecuteCommandTool(Tool):
    """
    Execute a shell command.

    Tool input schema:
    {
        "command": "ls -la",
        "cwd": "relative/or/absolute/dir",
        "timeoutMs": 30000,
        "detached": false
    }
    """

    def __init__(self, runner: CommandRunner) -> None:
        super().__init__(
            name="execute_command",
            description=(
                "Execute a shell command. Input: {\"command\": str, \"cwd\": str, "
                "\"timeoutMs\": int, \"detached\": bool}. Returns stdout followed by stderr. "
                "Detached commands return a session id and interleave both streams."
            ),
        )
        self.runner = runner

    def run(self, tool_input: Dict[str, Any]) -> Any:
        result = self.runner.run(
            command=require_str(tool_input, "command"),
            cwd=optional_str(tool_input, "cwd"),
            timeout_ms=optional_int(tool_input, "timeoutMs"),
            detached=optional_bool(tool_input, "detached"),
        )
        if result.session_id is not None:
            return {"session_id": result.session_id, "message": result.output}
        return result.output


class BlockCommandTool(Tool):
    def __init__(self, command_filter: CommandFilter) -> None:
        super().__init__(
            name="block_command",
            description="Add a pattern to the command blacklist. Input: {\"pattern\": str}.",
        )
        self.command_filter = command_filter

    def run(self, tool_input: Dict[str, Any]) -> Any:
        pattern = tool_input.get("pattern")
        if not isinstance(pattern, str):
            pattern = ""
        if self.command_filter.add_pattern(pattern):
            return f"Pattern '{pattern}' added to the blacklist."
        return f"Pattern '{pattern}' is already present in the blacklist."


class UnblockCommandTool(Tool):
    def __init__(self, command_filter: CommandFilter) -> None:
        super().__init__(
            name="unblock_command",
            description="Remove a pattern from the command blacklist. Input: {\"pattern\": str}.",
        )
        self.command_filter = command_filter

    def run(self, tool_input: Dict[str, Any]) -> Any:
        pattern = require_str(tool_input, "pattern")
        self.command_filter.remove_pattern(pattern)
        return f"Pattern '{pattern}' removed from the blacklist."


class ListBlockedCommandsTool(Tool):
    def __init__(self, command_filter: CommandFilter) -> None:
        super().__init__(
            name="list_blocked_commands",
            description="List the current command blacklist. Input: {}.",
        )
        self.command_filter = command_filter

    def run(self, tool_input: Dict[str, Any]) -> Any:
        return self.command_filter.patterns()


class ReadSessionTool(Tool):
    def __init__(self, sessions: SessionRegistry) -> None:
        super().__init__(
            name="read_session",
            description=(
                "Show status and recent output of a detached command. "
                "Input: {\"session_id\": int}."
            ),
        )
        self.sessions = sessions

    def run(self, tool_input: Dict[str, Any]) -> Any:
        return self.sessions.snapshot(require_int(tool_input, "session_id"))


class KillSessionTool(Tool):
    def __init__(self, sessions: SessionRegistry) -> None:
        super().__init__(
            name="kill_session",
            description="Terminate a detached command. Input: {\"session_id\": int}.",
        )
        self.sessions = sessions

    def run(self, tool_input: Dict[str, Any]) -> Any:
        session = self.sessions.kill(require_int(tool_input, "session_id"))
        return f"Session {session.id} is {session.status.value}."
