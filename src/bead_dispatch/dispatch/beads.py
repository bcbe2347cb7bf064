"""Bead tracker client backed by the ``br`` command line tool."""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from bead_dispatch.dispatch.errors import ErrorCode, TrackerError
from bead_dispatch.dispatch.models import Bead

logger = logging.getLogger(__name__)

_BLOCKING_DEP_TYPE = "blocks"
_RESOLVED_STATUSES = frozenset({"closed", "done", "tombstone"})


class BrBeadTracker:
    """Dependency source and ready queue over ``br show`` / ``br ready``."""

    def __init__(
        self,
        binary: str = "br",
        *,
        workdir: Path | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.binary = binary
        self.workdir = workdir
        self.timeout_seconds = timeout_seconds

    def fetch_bead(self, bead_id: str) -> Bead:
        payload = self._run_json(["show", bead_id, "--json"])
        issues = payload if isinstance(payload, list) else [payload]
        candidates = [item for item in issues if isinstance(item, dict)]
        issue = next(
            (item for item in candidates if str(item.get("id") or "") == bead_id),
            candidates[0] if candidates else None,
        )
        if issue is None:
            raise TrackerError(f"Bead {bead_id} not found", code=ErrorCode.BEAD_NOT_FOUND)
        return _to_bead(issue, fallback_id=bead_id)

    def ready_beads(self, limit: int = 0) -> list[Bead]:
        args = ["ready", "--json"]
        if limit > 0:
            args.extend(["--limit", str(limit)])
        payload = self._run_json(args)
        if isinstance(payload, dict):
            payload = payload.get("issues", [])
        if not isinstance(payload, list):
            raise TrackerError(f"Unexpected br ready payload: {type(payload).__name__}")
        beads = [
            _to_bead(item, fallback_id="")
            for item in payload
            if isinstance(item, dict) and item.get("id")
        ]
        return beads[:limit] if limit > 0 else beads

    def _run_json(self, args: list[str]) -> Any:
        command = [self.binary, *args]
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                cwd=self.workdir,
                check=False,
            )
        except FileNotFoundError as error:
            raise TrackerError(f"Bead tracker command not found: {self.binary}") from error
        except subprocess.TimeoutExpired as error:
            raise TrackerError(
                f"br {args[0]} timed out after {self.timeout_seconds:g}s",
            ) from error

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            if args[0] == "show" and "not found" in stderr.lower():
                raise TrackerError(f"Bead {args[1]} not found", code=ErrorCode.BEAD_NOT_FOUND)
            raise TrackerError(
                f"br {args[0]} exited with code {completed.returncode}: {stderr or 'no output'}",
            )
        try:
            return json.loads(completed.stdout or "null")
        except json.JSONDecodeError as error:
            raise TrackerError(f"Could not parse br {args[0]} output: {error}") from error


def _to_bead(issue: dict[str, Any], *, fallback_id: str) -> Bead:
    blockers: set[str] = set()
    for dependency in issue.get("dependencies") or []:
        if not isinstance(dependency, dict):
            continue
        if dependency.get("dep_type", _BLOCKING_DEP_TYPE) != _BLOCKING_DEP_TYPE:
            continue
        if str(dependency.get("status", "")).lower() in _RESOLVED_STATUSES:
            continue
        dependency_id = str(dependency.get("id") or "").strip()
        if dependency_id:
            blockers.add(dependency_id)

    try:
        priority = int(issue.get("priority", 2))
    except (TypeError, ValueError):
        logger.debug("Non-numeric priority for bead %s: %r", issue.get("id"), issue.get("priority"))
        priority = 2

    return Bead(
        id=str(issue.get("id") or fallback_id),
        title=str(issue.get("title") or ""),
        blocked_by_ids=tuple(sorted(blockers)),
        priority=priority,
        labels=tuple(str(label) for label in issue.get("labels") or ()),
        issue_type=str(issue.get("issue_type") or ""),
    )
