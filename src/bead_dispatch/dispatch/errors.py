"""Error codes and exception hierarchy for dispatch operations."""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable failure codes reported in result envelopes."""

    PANE_NOT_FOUND = "PANE_NOT_FOUND"
    NOT_AGENT_PANE = "NOT_AGENT_PANE"
    PANE_BUSY = "PANE_BUSY"
    TARGET_BUSY = "TARGET_BUSY"
    BLOCKED = "BLOCKED"
    NO_IDLE_AGENT = "NO_IDLE_AGENT"
    ALREADY_ASSIGNED = "ALREADY_ASSIGNED"
    NOT_ASSIGNED = "NOT_ASSIGNED"
    INVALID_ARGS = "INVALID_ARGS"
    SEND_ERROR = "SEND_ERROR"
    TMUX_ERROR = "TMUX_ERROR"
    DUPLICATE = "DUPLICATE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    STORE_CONFLICT = "STORE_CONFLICT"
    STORE_ERROR = "STORE_ERROR"
    BEAD_NOT_FOUND = "BEAD_NOT_FOUND"
    TRACKER_ERROR = "TRACKER_ERROR"


class DispatchError(RuntimeError):
    """Dispatch failure carrying an error code and a retryability hint."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        transient: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.transient = transient
        self.details = details or {}


class AdmissionError(DispatchError):
    """Admission policy rejected a bead/pane pair."""


class StoreError(DispatchError):
    """Assignment store failure."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.STORE_ERROR) -> None:
        super().__init__(code, message, transient=code is ErrorCode.STORE_CONFLICT)


class TmuxError(DispatchError):
    """Multiplexer could not be queried or addressed."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.TMUX_ERROR, message, transient=True)


class SendError(DispatchError):
    """Prompt text could not be delivered to a pane."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.SEND_ERROR, message, transient=True)


class TrackerError(DispatchError):
    """Bead tracker lookup failure."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.TRACKER_ERROR) -> None:
        super().__init__(code, message, transient=code is ErrorCode.TRACKER_ERROR)
