"""
Sidecar process supervision.

The sidecar is an independently-versioned tool server (by default the
Graphlit MCP server) started as a child process. The supervisor owns
its whole lifecycle:

    absent -> spawning -> ready -> exited
              spawning ---------> exited

It only spawns when all three Graphlit credentials are present and the
companion module can be resolved. Credentials are handed to the child
through its environment, never through generated code. Readiness comes
from an HTTP health probe against the sidecar's port; when no health
path is configured the first output line containing `ready_pattern`
counts instead. The sidecar is never respawned automatically.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import requests

from controlplane.config import env_or, section
from controlplane.errors import (
    AlreadyRunningError,
    PrerequisitesMissingError,
    SidecarSpawnError,
)
from controlplane.tools.sessions import stop_process

logger = logging.getLogger(__name__)

CREDENTIAL_ENV_VARS = (
    "GRAPHLIT_ORGANIZATION_ID",
    "GRAPHLIT_ENVIRONMENT_ID",
    "GRAPHLIT_JWT_SECRET",
)
DEFAULT_MODULE = os.path.join("node_modules", "graphlit-mcp-server", "dist", "index.js")
DEFAULT_INSTALL_COMMAND = [
    "npm",
    "install",
    "--no-save",
    "--production",
    "graphlit-mcp-server@latest",
]


class SidecarState(str, Enum):
    ABSENT = "absent"
    SPAWNING = "spawning"
    READY = "ready"
    EXITED = "exited"


class SidecarSupervisor:
    """
    Spawns, watches and terminates the single sidecar process.

    Output and probe threads carry the generation number of the spawn
    they belong to; callbacks from an older generation are ignored.
    """

    def __init__(
        self,
        executable: str = "node",
        module: Optional[str] = DEFAULT_MODULE,
        args: Optional[List[str]] = None,
        credentials: Optional[Dict[str, str]] = None,
        host: str = "127.0.0.1",
        port: int = 8090,
        health_path: Optional[str] = "/health",
        ready_pattern: str = "running",
        probe_interval: float = 0.5,
        probe_timeout: float = 2.0,
        log_lines: int = 500,
        install_command: Optional[List[str]] = None,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.executable = executable
        self.module = module
        self.args = list(args or [])
        self.credentials = dict(credentials or {})
        self.host = host
        self.port = port
        self.health_path = health_path
        self.ready_pattern = ready_pattern
        self.probe_interval = probe_interval
        self.probe_timeout = probe_timeout
        self.install_command = list(install_command or DEFAULT_INSTALL_COMMAND)
        self.http = http or requests.Session()

        self._lock = threading.Lock()
        self._state = SidecarState.ABSENT
        self._process: Optional[subprocess.Popen] = None
        self._generation = 0
        self._ready = False
        self._exit_code: Optional[int] = None
        self._started_at: Optional[float] = None
        self._logs: Deque[str] = deque(maxlen=log_lines)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "SidecarSupervisor":
        sidecar_cfg = section(cfg, "sidecar")
        credentials = {
            name: os.environ[name] for name in CREDENTIAL_ENV_VARS if os.getenv(name)
        }
        return cls(
            executable=sidecar_cfg.get("executable", "node"),
            module=sidecar_cfg.get("module", DEFAULT_MODULE),
            args=sidecar_cfg.get("args") or [],
            credentials=credentials,
            host=sidecar_cfg.get("host", "127.0.0.1"),
            port=int(env_or(sidecar_cfg, "port", "SIDECAR_PORT", 8090)),
            health_path=sidecar_cfg.get("health_path", "/health"),
            ready_pattern=sidecar_cfg.get("ready_pattern", "running"),
            probe_interval=float(sidecar_cfg.get("probe_interval", 0.5)),
            probe_timeout=float(sidecar_cfg.get("probe_timeout", 2.0)),
            log_lines=int(sidecar_cfg.get("log_lines", 500)),
            install_command=sidecar_cfg.get("install_command"),
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> SidecarState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def argv(self) -> List[str]:
        argv = [self.executable]
        if self.module:
            argv.append(self.module)
        argv.extend(self.args)
        return argv

    def missing_credentials(self) -> List[str]:
        return [name for name in CREDENTIAL_ENV_VARS if not self.credentials.get(name)]

    def missing_prerequisites(self) -> List[str]:
        missing = self.missing_credentials()
        if shutil.which(self.executable) is None:
            missing.append(f"executable '{self.executable}' not found")
        if self.module and not os.path.exists(self.module):
            missing.append(f"module '{self.module}' not found")
        return missing

    def status(self) -> Dict[str, Any]:
        missing = self.missing_prerequisites()
        with self._lock:
            return {
                "state": self._state.value,
                "ready": self._ready,
                "pid": self._process.pid if self._process is not None else None,
                "exit_code": self._exit_code,
                "started_at": self._started_at,
                "available": not missing,
                "missing": missing,
                "url": self.base_url,
                "logs": list(self._logs)[-20:],
            }

    def logs(self) -> List[str]:
        with self._lock:
            return list(self._logs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> Dict[str, Any]:
        """
        Spawn the sidecar.

        Raises:
            AlreadyRunningError: The sidecar is spawning or ready.
            PrerequisitesMissingError: Credentials or module are missing.
            SidecarSpawnError: The process could not be created.
        """
        with self._lock:
            if self._state in (SidecarState.SPAWNING, SidecarState.READY):
                raise AlreadyRunningError(
                    f"Sidecar is already {self._state.value}; terminate it first.",
                    state=self._state.value,
                )
            missing = self.missing_prerequisites()
            if missing:
                raise PrerequisitesMissingError(
                    "Sidecar prerequisites are missing: " + ", ".join(missing),
                    missing=missing,
                )

            env = os.environ.copy()
            env.update(self.credentials)
            env["PORT"] = str(self.port)
            self._generation += 1
            generation = self._generation
            self._ready = False
            self._exit_code = None
            self._logs.clear()
            try:
                process = subprocess.Popen(
                    self.argv(),
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                self._state = SidecarState.EXITED
                raise SidecarSpawnError(f"Failed to spawn sidecar: {exc}") from exc
            self._process = process
            self._state = SidecarState.SPAWNING
            self._started_at = time.time()

        logger.info("Sidecar spawned (pid %d): %s", process.pid, " ".join(self.argv()))
        threading.Thread(
            target=self._watch_output,
            args=(process, generation),
            name="sidecar-output",
            daemon=True,
        ).start()
        if self.health_path:
            threading.Thread(
                target=self._probe_health,
                args=(generation,),
                name="sidecar-probe",
                daemon=True,
            ).start()
        return self.status()

    def restart(self) -> Dict[str, Any]:
        if self._state in (SidecarState.SPAWNING, SidecarState.READY):
            raise AlreadyRunningError(
                f"Sidecar is {self._state.value}; terminate it before restarting.",
                state=self._state.value,
            )
        return self.start()

    def terminate(self, grace_seconds: float = 5.0) -> Dict[str, Any]:
        """
        Stop the sidecar, escalating to SIGKILL after `grace_seconds`.
        """
        with self._lock:
            process = self._process
            generation = self._generation
        if process is None:
            return self.status()

        logger.info("Terminating sidecar (pid %d)", process.pid)
        stop_process(process)
        try:
            exit_code = process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Sidecar ignored SIGTERM, killing it")
            stop_process(process, force=True)
            exit_code = process.wait()
        self._mark_exited(generation, exit_code)
        return self.status()

    def install(self, timeout: float = 120.0) -> bool:
        """
        Install the sidecar package.

        Skipped when the credentials are absent. Failures are logged and
        reported as False so a deployment can carry on without the
        sidecar.
        """
        missing = self.missing_credentials()
        if missing:
            logger.info("Sidecar credentials not found (%s), skipping installation", ", ".join(missing))
            return False
        logger.info("Installing sidecar: %s", " ".join(self.install_command))
        try:
            subprocess.run(self.install_command, check=True, timeout=timeout)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.error("Failed to install sidecar: %s", exc)
            return False
        logger.info("Sidecar installed")
        return True

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _watch_output(self, process: subprocess.Popen, generation: int) -> None:
        for raw in iter(process.stdout.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            logger.info("sidecar: %s", line)
            with self._lock:
                if generation != self._generation:
                    continue
                self._logs.append(line)
            if not self.health_path and self.ready_pattern and self.ready_pattern in line:
                self._mark_ready(generation, "output")
        process.stdout.close()
        self._mark_exited(generation, process.wait())

    def _probe_health(self, generation: int) -> None:
        url = self.base_url + self.health_path
        while True:
            with self._lock:
                if generation != self._generation or self._state is not SidecarState.SPAWNING:
                    return
            try:
                resp = self.http.get(url, timeout=self.probe_timeout)
            except requests.RequestException:
                pass
            else:
                if resp.ok:
                    self._mark_ready(generation, "health probe")
                    return
            time.sleep(self.probe_interval)

    def _mark_ready(self, generation: int, source: str) -> None:
        with self._lock:
            if generation != self._generation or self._state is not SidecarState.SPAWNING:
                return
            self._state = SidecarState.READY
            self._ready = True
        logger.info("Sidecar ready (%s)", source)

    def _mark_exited(self, generation: int, exit_code: int) -> None:
        with self._lock:
            if generation != self._generation or self._state is SidecarState.EXITED:
                return
            self._state = SidecarState.EXITED
            self._exit_code = exit_code
            self._process = None
        logger.info("Sidecar exited with code %s", exit_code)
