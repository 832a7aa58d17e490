"""
Command blacklist.

The filter is deliberately blunt: a command is refused when any
blacklist pattern appears in it as a literal, case-sensitive substring.
There is no glob or regex matching, so the default list errs towards
false positives (for example any mention of `curl` is refused, not just
`curl ... | sh`).
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

from controlplane.config import section
from controlplane.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


DEFAULT_BLACKLIST: List[str] = [
    # recursive delete
    "rm -rf",
    "rm -fr",
    "rm -r ",
    "rm --recursive",
    # raw device writes
    "dd if=",
    "of=/dev/",
    "> /dev/sd",
    "> /dev/nvme",
    # filesystem formatting
    "mkfs",
    "mke2fs",
    "fdisk",
    "wipefs",
    # fork bomb
    ":(){",
    ":|:&",
    # download and pipe to shell
    "curl",
    "wget",
    "| sh",
    "| bash",
    # privilege escalation and power state
    "sudo",
    "chmod -R 777 /",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
]


class CommandFilter:
    """
    Mutable substring deny-list. The pattern set is guarded by a lock.
    """

    def __init__(self, patterns: Optional[Iterable[str]] = None) -> None:
        self._lock = threading.Lock()
        self._patterns = set(DEFAULT_BLACKLIST if patterns is None else patterns)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "CommandFilter":
        commands_cfg = section(cfg, "commands")
        patterns = list(DEFAULT_BLACKLIST)
        patterns.extend(commands_cfg.get("blacklist_extra") or [])
        return cls(patterns)

    def match(self, command: str) -> Optional[str]:
        """Return the first blacklist pattern found in `command`, if any."""
        with self._lock:
            candidates = sorted(self._patterns)
        for pattern in candidates:
            if pattern in command:
                return pattern
        return None

    def is_blocked(self, command: str) -> bool:
        return self.match(command) is not None

    def add_pattern(self, pattern: str) -> bool:
        """
        Add a pattern to the blacklist.

        Returns:
            False if the pattern was already present, True otherwise.
        """
        if not pattern or not pattern.strip():
            raise ValidationError("Blacklist pattern must not be empty.")
        with self._lock:
            if pattern in self._patterns:
                return False
            self._patterns.add(pattern)
        logger.info("Blocked command pattern added: %r", pattern)
        return True

    def remove_pattern(self, pattern: str) -> None:
        with self._lock:
            if pattern not in self._patterns:
                raise NotFoundError(f"Pattern '{pattern}' is not in the blacklist.")
            self._patterns.remove(pattern)
        logger.info("Blocked command pattern removed: %r", pattern)

    def patterns(self) -> List[str]:
        with self._lock:
            return sorted(self._patterns)
