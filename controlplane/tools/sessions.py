"""
Detached command sessions.

A session is created for every command started with `detached=True`.
The registry hands out strictly increasing identifiers (never reused
for the lifetime of the process), records output as it arrives and
tracks the exit status.

Each session keeps only the most recent `max_output_lines` lines of
output, and finished sessions are dropped `retention_seconds` after
they exit. Running sessions are never reaped.
"""

from __future__ import annotations

import itertools
import logging
import os
import signal
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from controlplane.config import section
from controlplane.errors import NotFoundError

logger = logging.getLogger(__name__)


def stop_process(process: Any, force: bool = False) -> None:
    """
    Terminate `process` together with its process group.

    Children are spawned with `start_new_session=True`, so on POSIX the
    child's pid is also its process group id and the shell's own
    children are signalled as well. Elsewhere, or for handles without a
    real pid, the handle's own terminate/kill is used.
    """
    pid = getattr(process, "pid", None)
    if os.name == "posix" and isinstance(pid, int):
        try:
            os.killpg(pid, signal.SIGKILL if force else signal.SIGTERM)
        except ProcessLookupError:
            pass
        return
    if force:
        process.kill()
    else:
        process.terminate()


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


@dataclass
class CommandSession:
    """
    State of one detached command.
    """

    id: int
    command: str
    cwd: str
    process: Any
    started_at: float
    output: Deque[str]
    status: SessionStatus = SessionStatus.RUNNING
    exit_code: Optional[int] = None
    finished_at: Optional[float] = None
    dropped_lines: int = 0
    kill_requested: bool = field(default=False, repr=False)
    exited: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def pid(self) -> Optional[int]:
        pid = getattr(self.process, "pid", None)
        return pid if isinstance(pid, int) else None


class SessionRegistry:
    """
    Tracks detached command sessions by identifier.

    All mutations go through the registry lock; follower threads and
    tool calls may touch the same session concurrently.
    """

    def __init__(
        self,
        max_output_lines: int = 2000,
        retention_seconds: float = 3600.0,
        kill_grace_seconds: float = 3.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_output_lines = max_output_lines
        self.retention_seconds = retention_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._sessions: Dict[int, CommandSession] = {}

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "SessionRegistry":
        sessions_cfg = section(cfg, "sessions")
        return cls(
            max_output_lines=int(sessions_cfg.get("max_output_lines", 2000)),
            retention_seconds=float(sessions_cfg.get("retention_seconds", 3600)),
            kill_grace_seconds=float(sessions_cfg.get("kill_grace_seconds", 3)),
        )

    def register(self, process: Any, command: str, cwd: str) -> CommandSession:
        self.reap()
        with self._lock:
            session = CommandSession(
                id=next(self._ids),
                command=command,
                cwd=cwd,
                process=process,
                started_at=self._clock(),
                output=deque(maxlen=self.max_output_lines),
            )
            self._sessions[session.id] = session
        logger.info("Session %d started: %s", session.id, command)
        return session

    def get(self, session_id: int) -> CommandSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} does not exist.")
        return session

    def list(self) -> List[CommandSession]:
        with self._lock:
            return list(self._sessions.values())

    def append_output(self, session: CommandSession, line: str) -> None:
        with self._lock:
            if len(session.output) == session.output.maxlen:
                session.dropped_lines += 1
            session.output.append(line)

    def mark_exited(self, session: CommandSession, exit_code: int) -> None:
        with self._lock:
            session.exit_code = exit_code
            session.finished_at = self._clock()
            if session.kill_requested:
                session.status = SessionStatus.KILLED
            elif exit_code == 0:
                session.status = SessionStatus.COMPLETED
            else:
                session.status = SessionStatus.FAILED
        session.exited.set()
        logger.info("Session %d exited with code %s (%s)", session.id, exit_code, session.status.value)

    def follow(self, session: CommandSession) -> None:
        """
        Consume the session's output stream until the process exits.

        Runs on a dedicated thread per session.
        """
        stream = session.process.stdout
        for raw in iter(stream.readline, b""):
            self.append_output(session, raw.decode("utf-8", errors="replace").rstrip("\n"))
        stream.close()
        self.mark_exited(session, session.process.wait())

    def snapshot(self, session_id: int) -> Dict[str, Any]:
        session = self.get(session_id)
        with self._lock:
            return {
                "session_id": session.id,
                "command": session.command,
                "cwd": session.cwd,
                "pid": session.pid,
                "status": session.status.value,
                "exit_code": session.exit_code,
                "started_at": session.started_at,
                "finished_at": session.finished_at,
                "output": "\n".join(session.output),
                "dropped_lines": session.dropped_lines,
            }

    def _request_kill(self, session: CommandSession) -> bool:
        with self._lock:
            if session.status is not SessionStatus.RUNNING:
                return False
            session.kill_requested = True
        try:
            stop_process(session.process)
        except Exception:
            with self._lock:
                session.kill_requested = False
            raise
        return True

    def _force_kill(self, session: CommandSession) -> None:
        logger.warning("Session %d still running after SIGTERM, sending SIGKILL", session.id)
        try:
            stop_process(session.process, force=True)
        except Exception as exc:
            logger.warning("Failed to kill session %d: %s", session.id, exc)

    def kill(self, session_id: int, grace_seconds: Optional[float] = None) -> CommandSession:
        """
        Terminate a running session and wait for it to exit.

        The session stays `running` until its exit is observed; a process
        group still alive after `grace_seconds` is sent SIGKILL.
        """
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        session = self.get(session_id)
        if not self._request_kill(session):
            return session
        if not session.exited.wait(grace):
            self._force_kill(session)
            if not session.exited.wait(grace):
                logger.warning("Session %d has not exited after SIGKILL", session.id)
                return session
        logger.info("Session %d killed", session.id)
        return session

    def kill_all(self, grace_seconds: Optional[float] = None) -> int:
        """
        Terminate every running session.

        All sessions are signalled first and share one grace period before
        stragglers are sent SIGKILL. A failure to signal one session is
        logged and does not stop the remaining ones.

        Returns:
            The number of sessions that were signalled successfully.
        """
        grace = self.kill_grace_seconds if grace_seconds is None else grace_seconds
        signalled: List[CommandSession] = []
        for session in self.list():
            try:
                if self._request_kill(session):
                    signalled.append(session)
            except Exception as exc:
                logger.warning("Failed to terminate session %d: %s", session.id, exc)

        deadline = time.monotonic() + grace
        for session in signalled:
            if not session.exited.wait(max(0.0, deadline - time.monotonic())):
                self._force_kill(session)
        return len(signalled)

    def reap(self, now: Optional[float] = None) -> int:
        """
        Drop finished sessions older than the retention period.

        Returns:
            The number of sessions removed.
        """
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                sid
                for sid, s in self._sessions.items()
                if s.status is not SessionStatus.RUNNING
                and s.finished_at is not None
                and now - s.finished_at >= self.retention_seconds
            ]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.debug("Reaped sessions: %s", expired)
        return len(expired)
