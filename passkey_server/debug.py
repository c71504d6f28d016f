"""Per-ceremony structured debug log."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .encoding import make_json_safe

__all__ = [
    "CeremonyLog",
    "DebugLogEntry",
    "SEVERITIES",
    "redact_challenge",
    "redact_secret",
]

LOGGER = logging.getLogger("passkey_server.debug")

SEVERITIES = ("info", "success", "warning", "error")

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_CHALLENGE_PREFIX_LENGTH = 8


def redact_challenge(value: Any) -> Optional[str]:
    """Return a truncated form of a challenge safe to place in diagnostics."""

    if value is None:
        return None
    text = str(value)
    if len(text) <= _CHALLENGE_PREFIX_LENGTH:
        return "…"
    return text[:_CHALLENGE_PREFIX_LENGTH] + "…"


def redact_secret(value: Any) -> Optional[str]:
    """Describe key material or signatures by size only."""

    if value is None:
        return None
    try:
        length = len(value)
    except TypeError:
        return "<redacted>"
    return f"<redacted {length} bytes>"


@dataclass
class DebugLogEntry:
    timestamp: str
    step: str
    severity: str
    message: str
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "step": self.step,
            "type": self.severity,
            "message": self.message,
        }
        if self.data is not None:
            entry["data"] = self.data
        return entry


@dataclass
class CeremonyLog:
    """Append-only trace owned by a single ceremony invocation.

    A fresh instance is created for every ``generate*``/``verify*`` call so
    concurrent ceremonies never interleave entries.
    """

    ceremony: str = "ceremony"
    entries: List[DebugLogEntry] = field(default_factory=list)

    def log(
        self,
        step: str,
        severity: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> DebugLogEntry:
        if severity not in SEVERITIES:
            raise ValueError(f"unknown severity {severity!r}")

        entry = DebugLogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            step=step,
            severity=severity,
            message=message,
            data=make_json_safe(data) if data is not None else None,
        )
        self.entries.append(entry)
        LOGGER.log(_LOG_LEVELS[severity], "[%s] %s: %s", self.ceremony, step, message)
        return entry

    def info(self, step: str, message: str, data: Optional[Dict[str, Any]] = None) -> DebugLogEntry:
        return self.log(step, "info", message, data)

    def success(self, step: str, message: str, data: Optional[Dict[str, Any]] = None) -> DebugLogEntry:
        return self.log(step, "success", message, data)

    def warning(self, step: str, message: str, data: Optional[Dict[str, Any]] = None) -> DebugLogEntry:
        return self.log(step, "warning", message, data)

    def error(self, step: str, message: str, data: Optional[Dict[str, Any]] = None) -> DebugLogEntry:
        return self.log(step, "error", message, data)

    def last_error(self) -> Optional[DebugLogEntry]:
        for entry in reversed(self.entries):
            if entry.severity == "error":
                return entry
        return None

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)
