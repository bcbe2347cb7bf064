"""Subprocess-backed tmux client: enumerate panes, capture output, send prompts."""

from __future__ import annotations

import logging
import re
import subprocess

from bead_dispatch.dispatch.errors import SendError, TmuxError
from bead_dispatch.dispatch.models import AgentType, Pane, parse_agent_type

logger = logging.getLogger(__name__)

_FIELD_SEPARATOR = "|#|"
_PANE_FORMAT = _FIELD_SEPARATOR.join(
    (
        "#{pane_id}",
        "#{pane_index}",
        "#{pane_title}",
        "#{pane_current_command}",
    ),
)
# {session}__{type}_{n}[_{variant}][[tag,tag]]
_PANE_TITLE_RE = re.compile(r"^.+__(\w+?)_\d+(?:_([A-Za-z0-9._/@:+-]+))?(?:\[([^\]]*)\])?$")
_SERVER_FAULT_MARKERS: tuple[str, ...] = (
    "no server running",
    "can't find session",
    "can't find pane",
    "can't find window",
    "error connecting to",
    "session not found",
)
_AGENT_COMMANDS = {
    "claude": AgentType.CLAUDE,
    "codex": AgentType.CODEX,
    "gemini": AgentType.GEMINI,
    "cursor-agent": AgentType.CURSOR,
    "windsurf": AgentType.WINDSURF,
    "aider": AgentType.AIDER,
}


def parse_pane_title(title: str) -> tuple[AgentType, str, tuple[str, ...]]:
    """Agent type, model variant and tags encoded in a pane title.

    Titles that do not follow the naming scheme belong to plain user panes.
    """

    match = _PANE_TITLE_RE.match(title.strip())
    if match is None:
        return AgentType.USER, "", ()
    agent_type = parse_agent_type(match.group(1))
    variant = match.group(2) or ""
    tags = tuple(tag.strip() for tag in (match.group(3) or "").split(",") if tag.strip())
    return agent_type, variant, tags


class TmuxClient:
    """Pane enumerator, output capturer and prompt delivery over the tmux CLI."""

    def __init__(self, binary: str = "tmux", *, list_timeout_seconds: float = 5.0) -> None:
        self.binary = binary
        self.list_timeout_seconds = list_timeout_seconds

    def list_panes(self, session: str) -> list[Pane]:
        output = self._run(
            ["list-panes", "-s", "-t", session, "-F", _PANE_FORMAT],
            timeout_seconds=self.list_timeout_seconds,
        )
        panes: list[Pane] = []
        for line in output.splitlines():
            parts = line.split(_FIELD_SEPARATOR)
            if len(parts) < 4:
                continue
            try:
                index = int(parts[1])
            except ValueError:
                logger.warning("Skipping pane with non-numeric index: %r", line)
                continue
            agent_type, variant, tags = parse_pane_title(parts[2])
            if agent_type is AgentType.USER:
                agent_type = _AGENT_COMMANDS.get(parts[3].strip().lower(), AgentType.USER)
            panes.append(
                Pane(
                    index=index,
                    agent_type=agent_type,
                    pane_id=parts[0],
                    title=parts[2],
                    variant=variant,
                    tags=tags,
                ),
            )
        return sorted(panes, key=lambda pane: pane.index)

    def capture(self, pane_id: str, lines: int, *, timeout_seconds: float) -> str:
        return self._run(
            ["capture-pane", "-t", pane_id, "-p", "-S", f"-{max(1, lines)}"],
            timeout_seconds=timeout_seconds,
        )

    def send(self, pane_id: str, text: str, *, timeout_seconds: float) -> None:
        self._run(
            ["send-keys", "-t", pane_id, "-l", "--", text],
            timeout_seconds=timeout_seconds,
            failure=SendError,
        )
        self._run(
            ["send-keys", "-t", pane_id, "C-m"],
            timeout_seconds=timeout_seconds,
            failure=SendError,
        )

    def _run(
        self,
        args: list[str],
        *,
        timeout_seconds: float,
        failure: type[TmuxError] | type[SendError] = TmuxError,
    ) -> str:
        verb = args[0]
        try:
            completed = subprocess.run(
                [self.binary, *args],
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise TmuxError(f"tmux binary not found: {self.binary}") from error
        except subprocess.TimeoutExpired as error:
            raise failure(f"tmux {verb} timed out after {timeout_seconds:g}s") from error
        except OSError as error:
            raise failure(f"tmux {verb} failed to start: {error}") from error

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            lowered = stderr.lower()
            if any(marker in lowered for marker in _SERVER_FAULT_MARKERS):
                raise TmuxError(f"tmux {verb} failed: {stderr}")
            raise failure(
                f"tmux {verb} exited with code {completed.returncode}: {stderr or 'no output'}",
            )
        return completed.stdout
