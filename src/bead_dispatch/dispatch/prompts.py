"""Prompt templates sent to agent panes."""

from __future__ import annotations

import re
from collections.abc import Sequence

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")

DEFAULT_ASSIGN_TEMPLATE = (
    "Work on bead {bead_id}: {bead_title}\n"
    "Type: {bead_type}. Blocked by: {bead_deps}.\n"
    "Run `br show {bead_id}` for the full description, mark it in_progress when you "
    "start and close it when the work is committed."
)

DEFAULT_CONTINUATION_TEMPLATE = (
    "Continue bead {bead_id}: {bead_title}\n"
    "It was previously assigned to pane {previous_pane}. Review what was already done "
    "(git log, open files, `br show {bead_id}`) before resuming, then finish the work."
)


def render_prompt(  # noqa: PLR0913
    template: str,
    *,
    bead_id: str,
    bead_title: str,
    session: str,
    pane: int,
    bead_type: str = "",
    blocked_by: Sequence[str] = (),
    previous_pane: int | None = None,
) -> str:
    """Substitute ``{placeholder}`` tokens. Unknown braces are left untouched."""

    values = {
        "bead_id": bead_id,
        "bead_title": bead_title or bead_id,
        "bead_type": bead_type or "task",
        "bead_deps": ", ".join(blocked_by) if blocked_by else "none",
        "session": session,
        "pane": str(pane),
        "previous_pane": str(previous_pane) if previous_pane is not None else "unknown",
    }
    return _PLACEHOLDER_RE.sub(lambda match: values.get(match.group(1), match.group(0)), template)
