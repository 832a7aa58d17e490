"""
Error taxonomy for tool operations.

Every failure a tool can report derives from `ToolError`. The `kind`
attribute is the stable name surfaced in structured results and the
`status` attribute is an HTTP-like code so a front end can tell
"not ready yet" (503) from "ready but failing" (502). Extra keyword
arguments become `details` and are merged into the error payload.
"""

from __future__ import annotations

from typing import Any, Dict


class ToolError(Exception):
    """Base class for failures reported back to the caller."""

    kind = "ToolError"
    status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(ToolError):
    """Raised when tool input is malformed."""

    kind = "ValidationError"
    status = 400


class BlockedCommandError(ToolError):
    """Raised when a command matches the blacklist."""

    kind = "BlockedCommandError"
    status = 403

    def __init__(self, command: str, pattern: str) -> None:
        super().__init__(
            f"Command blocked by security policy (matched '{pattern}').",
            command=command,
            pattern=pattern,
            hint=(
                "Rewrite the command without the blocked pattern, or remove the "
                "pattern with unblock_command if it is safe in this context."
            ),
        )


class CommandTimeoutError(ToolError):
    """Raised when a command is killed for exceeding its timeout."""

    kind = "TimeoutError"
    status = 504


class CommandFailedError(ToolError):
    """Raised when a command exits with a non-zero status."""

    kind = "CommandFailedError"
    status = 500


class NotFoundError(ToolError):
    kind = "NotFoundError"
    status = 404


class AccessDeniedError(ToolError):
    kind = "AccessDeniedError"
    status = 403


class AlreadyRunningError(ToolError):
    kind = "AlreadyRunningError"
    status = 409


class PrerequisitesMissingError(ToolError):
    """Raised when the sidecar cannot be started in this environment."""

    kind = "PrerequisitesMissingError"
    status = 412


class SidecarSpawnError(ToolError):
    kind = "SidecarSpawnError"
    status = 500


class ServiceUnavailableError(ToolError):
    """Raised by the proxy while the sidecar is not ready."""

    kind = "ServiceUnavailableError"
    status = 503


class UpstreamTransportError(ToolError):
    """Raised by the proxy when the sidecar cannot be reached."""

    kind = "UpstreamTransportError"
    status = 502

