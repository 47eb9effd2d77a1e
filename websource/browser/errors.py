"""Error taxonomy for sessions, the control channel and the browser capability.

Session-level errors are recoverable and carry a remediation hint.
Capability errors carry the offending target (URL, selector or code).
"""

from __future__ import annotations

from typing import Any


class CdpError(Exception):
    """Raw CDP transport failure (websocket, HTTP discovery, protocol error)."""


class WebSourceError(Exception):
    """Structured error with an optional session name and remediation hint."""

    default_suggestion = ""

    def __init__(self, reason: str, *, session: str | None = None, suggestion: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.session = session
        self.suggestion = self.default_suggestion if suggestion is None else suggestion

    def __str__(self) -> str:
        if self.suggestion:
            return f"{self.reason}. {self.suggestion}"
        return self.reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "kind": type(self).__name__,
            "session": self.session,
            "reason": self.reason,
            "suggestion": self.suggestion,
        }


class SessionNotFoundError(WebSourceError):
    default_suggestion = "Use --start to create a session first"


class SessionStaleError(WebSourceError):
    default_suggestion = "Use --start to create a new session"


class SessionAlreadyActiveError(WebSourceError):
    default_suggestion = "Use the existing session or stop it with --stop"


class SessionStartTimeoutError(WebSourceError):
    default_suggestion = "Check the daemon log for launch errors and retry"


class ControlChannelError(WebSourceError):
    """The daemon's control listener could not be reached or answered badly."""


class ControlTimeoutError(ControlChannelError):
    pass


class PersistenceError(WebSourceError):
    pass


class CapabilityError(WebSourceError):
    """Browser automation failure; never changes session state."""

    def __init__(self, reason: str, *, target: str | None = None, session: str | None = None) -> None:
        super().__init__(reason, session=session, suggestion="")
        self.target = target

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["target"] = self.target
        return data


class NavigationTimeoutError(CapabilityError):
    pass


class EvaluationError(CapabilityError):
    def __init__(
        self,
        reason: str,
        *,
        target: str | None = None,
        session: str | None = None,
        stack: str | None = None,
    ) -> None:
        super().__init__(reason, target=target, session=session)
        self.stack = stack

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["stack"] = self.stack
        return data


class ElementNotFoundError(CapabilityError):
    pass


class CaptureError(CapabilityError):
    pass


__all__ = [
    "CapabilityError",
    "CaptureError",
    "CdpError",
    "ControlChannelError",
    "ControlTimeoutError",
    "ElementNotFoundError",
    "EvaluationError",
    "NavigationTimeoutError",
    "PersistenceError",
    "SessionAlreadyActiveError",
    "SessionNotFoundError",
    "SessionStaleError",
    "SessionStartTimeoutError",
    "WebSourceError",
]
