"""Interfaces of the external systems the dispatcher talks to."""

from __future__ import annotations

from typing import Protocol

from bead_dispatch.dispatch.models import Bead, Pane


class PaneEnumerator(Protocol):
    """Lists the panes of a multiplexer session."""

    def list_panes(self, session: str) -> list[Pane]:
        """Return panes ordered by index. Raises TmuxError when unreachable."""


class OutputCapturer(Protocol):
    """Reads the visible tail of a pane."""

    def capture(self, pane_id: str, lines: int, *, timeout_seconds: float) -> str:
        """Return the last ``lines`` lines of pane output. Raises TmuxError."""


class PromptDelivery(Protocol):
    """Types text into a pane and submits it."""

    def send(self, pane_id: str, text: str, *, timeout_seconds: float) -> None:
        """Deliver text followed by Enter. Raises SendError or TmuxError."""


class DependencySource(Protocol):
    """Resolves bead metadata and unresolved blockers."""

    def fetch_bead(self, bead_id: str) -> Bead:
        """Return the bead with its unresolved blockers. Raises TrackerError."""


class ReadyBeadSource(Protocol):
    """Lists beads that are ready to be worked on, in queue order."""

    def ready_beads(self, limit: int = 0) -> list[Bead]:
        """Return ready beads. ``limit`` of 0 means no limit."""


class Multiplexer(PaneEnumerator, OutputCapturer, PromptDelivery, Protocol):
    """Everything the dispatcher needs from the terminal multiplexer."""


class BeadTracker(DependencySource, ReadyBeadSource, Protocol):
    """Everything the dispatcher needs from the bead tracker."""
