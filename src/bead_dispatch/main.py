"""CLI entrypoint for bead-dispatch."""

import logging
import sys
from pathlib import Path

import rich_click as click

from bead_dispatch import __version__
from bead_dispatch.dispatch.controllers import (
    ActivityCommand,
    AssignCommand,
    DispatchCliController,
    ListAssignmentsCommand,
    MutateAssignmentCommand,
    PlanCommand,
    ReassignCommand,
    RetryCommand,
    RetryFailedCommand,
)
from bead_dispatch.dispatch.envelope import ResultEnvelope

click.rich_click.USE_MARKDOWN = True
DISPATCH_CONTROLLER = DispatchCliController()

_STRATEGIES = ["balanced", "speed", "quality", "dependency", "round-robin"]
_STATUSES = ["assigned", "working", "done", "failed"]


def _state_dir_option(func):
    return click.option(
        "--state-dir",
        type=click.Path(path_type=Path, file_okay=False),
        default=None,
        help="Directory holding per-session assignment stores.",
    )(func)


def _session_option(func):
    return click.option(
        "--session",
        "-s",
        required=True,
        help="tmux session name.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="bead-dispatch")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug output to stderr.")
def bead_dispatch(verbose: bool) -> None:
    """Assign beads to AI coding agents running in tmux panes.

    Every command prints a JSON result envelope on stdout.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@bead_dispatch.command("activity")
@_session_option
@_state_dir_option
@click.option(
    "--type",
    "agent_type",
    default=None,
    help="Only report panes running this agent type, for example claude.",
)
@click.option(
    "--lines",
    type=click.IntRange(min=1, max=2000),
    default=None,
    help="Number of trailing pane lines to classify.",
)
@click.option(
    "--interval",
    type=click.FloatRange(min=0.0, max=60.0),
    default=0.0,
    show_default=True,
    help="Seconds between two captures; enables output velocity.",
)
def activity(
    session: str,
    state_dir: Path | None,
    agent_type: str | None,
    lines: int | None,
    interval: float,
) -> None:
    """Classify what every pane in the session is doing."""

    _emit_envelope(
        DISPATCH_CONTROLLER.activity(
            ActivityCommand(
                session=session,
                state_dir=state_dir,
                agent_type=agent_type,
                lines=lines,
                interval_seconds=interval,
            ),
        ),
    )


@bead_dispatch.command("assign")
@_session_option
@_state_dir_option
@click.option("--pane", "-p", type=click.IntRange(min=0), required=True, help="Target pane index.")
@click.option("--force", is_flag=True, default=False, help="Assign even if the pane is busy.")
@click.option(
    "--ignore-deps",
    is_flag=True,
    default=False,
    help="Assign even if the bead has unresolved blockers.",
)
@click.option("--prompt", default="", help="Prompt text to send instead of the default template.")
@click.argument("bead_ids", nargs=-1)
def assign(  # noqa: PLR0913
    session: str,
    state_dir: Path | None,
    pane: int,
    force: bool,
    ignore_deps: bool,
    prompt: str,
    bead_ids: tuple[str, ...],
) -> None:
    """Assign one bead to a specific pane."""

    _emit_envelope(
        DISPATCH_CONTROLLER.assign(
            AssignCommand(
                session=session,
                bead_ids=bead_ids,
                pane=pane,
                state_dir=state_dir,
                force=force,
                ignore_deps=ignore_deps,
                prompt=prompt,
            ),
        ),
    )


@bead_dispatch.command("reassign")
@_session_option
@_state_dir_option
@click.option("--to-pane", type=click.IntRange(min=0), default=None, help="Target pane index.")
@click.option("--to-type", default=None, help="Move to the first idle pane of this agent type.")
@click.option("--force", is_flag=True, default=False, help="Reassign even if the target is busy.")
@click.option("--prompt", default="", help="Prompt text to send instead of the default template.")
@click.argument("bead_id")
def reassign(  # noqa: PLR0913
    session: str,
    state_dir: Path | None,
    to_pane: int | None,
    to_type: str | None,
    force: bool,
    prompt: str,
    bead_id: str,
) -> None:
    """Move a live assignment to another pane."""

    _emit_envelope(
        DISPATCH_CONTROLLER.reassign(
            ReassignCommand(
                session=session,
                bead_id=bead_id,
                state_dir=state_dir,
                to_pane=to_pane,
                to_type=to_type,
                force=force,
                prompt=prompt,
            ),
        ),
    )


@bead_dispatch.command("plan")
@_session_option
@_state_dir_option
@click.option(
    "--strategy",
    type=click.Choice(_STRATEGIES, case_sensitive=False),
    default=None,
    help="Pane selection strategy. Defaults to BEAD_DISPATCH_DEFAULT_STRATEGY.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Maximum assignments in this batch, 0 for no limit.",
)
@click.option("--ignore-deps", is_flag=True, default=False, help="Ignore unresolved blockers.")
@click.option("--dry-run", is_flag=True, default=False, help="Show the plan without assigning.")
@click.argument("bead_ids", nargs=-1)
def plan(  # noqa: PLR0913
    session: str,
    state_dir: Path | None,
    strategy: str | None,
    limit: int,
    ignore_deps: bool,
    dry_run: bool,
    bead_ids: tuple[str, ...],
) -> None:
    """Assign a batch of beads to idle agent panes.

    Without bead ids, the tracker's ready queue is used.
    """

    _emit_envelope(
        DISPATCH_CONTROLLER.plan(
            PlanCommand(
                session=session,
                bead_ids=bead_ids,
                state_dir=state_dir,
                strategy=strategy,
                limit=limit,
                ignore_deps=ignore_deps,
                dry_run=dry_run,
            ),
        ),
    )


@bead_dispatch.group()
def assignments() -> None:
    """Assignment store commands."""


@assignments.command("list")
@_session_option
@_state_dir_option
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice(_STATUSES, case_sensitive=False),
    help="Status filter. Can be repeated.",
)
@click.option("--pane", type=click.IntRange(min=0), default=None, help="Pane index filter.")
@click.option("--active", "active_only", is_flag=True, default=False, help="Only live assignments.")
def assignments_list(
    session: str,
    state_dir: Path | None,
    statuses: tuple[str, ...],
    pane: int | None,
    active_only: bool,
) -> None:
    """List assignments in assignment order."""

    _emit_envelope(
        DISPATCH_CONTROLLER.list_assignments(
            ListAssignmentsCommand(
                session=session,
                state_dir=state_dir,
                statuses=statuses,
                pane=pane,
                active_only=active_only,
            ),
        ),
    )


@assignments.command("mark-working")
@_session_option
@_state_dir_option
@click.argument("bead_id")
def assignments_mark_working(session: str, state_dir: Path | None, bead_id: str) -> None:
    """Record that the agent started working on a bead."""

    _emit_envelope(
        DISPATCH_CONTROLLER.mark_working(
            MutateAssignmentCommand(session=session, bead_id=bead_id, state_dir=state_dir),
        ),
    )


@assignments.command("mark-done")
@_session_option
@_state_dir_option
@click.argument("bead_id")
def assignments_mark_done(session: str, state_dir: Path | None, bead_id: str) -> None:
    """Record that a bead is finished."""

    _emit_envelope(
        DISPATCH_CONTROLLER.mark_done(
            MutateAssignmentCommand(session=session, bead_id=bead_id, state_dir=state_dir),
        ),
    )


@assignments.command("mark-failed")
@_session_option
@_state_dir_option
@click.option("--reason", default="", help="Failure reason stored with the assignment.")
@click.argument("bead_id")
def assignments_mark_failed(
    session: str,
    state_dir: Path | None,
    reason: str,
    bead_id: str,
) -> None:
    """Record that work on a bead failed."""

    _emit_envelope(
        DISPATCH_CONTROLLER.mark_failed(
            MutateAssignmentCommand(
                session=session,
                bead_id=bead_id,
                state_dir=state_dir,
                reason=reason,
            ),
        ),
    )


@assignments.command("cancel")
@_session_option
@_state_dir_option
@click.argument("bead_id")
def assignments_cancel(session: str, state_dir: Path | None, bead_id: str) -> None:
    """Drop a live assignment so the bead can be assigned again."""

    _emit_envelope(
        DISPATCH_CONTROLLER.cancel(
            MutateAssignmentCommand(session=session, bead_id=bead_id, state_dir=state_dir),
        ),
    )


@assignments.command("redeliver")
@_session_option
@_state_dir_option
@click.argument("bead_id")
def assignments_redeliver(session: str, state_dir: Path | None, bead_id: str) -> None:
    """Send the stored prompt of a live assignment again."""

    _emit_envelope(
        DISPATCH_CONTROLLER.redeliver(
            MutateAssignmentCommand(session=session, bead_id=bead_id, state_dir=state_dir),
        ),
    )


@assignments.command("retry")
@_session_option
@_state_dir_option
@click.option(
    "--pane",
    type=click.IntRange(min=0),
    default=None,
    help="Target pane index. Defaults to the first idle agent pane.",
)
@click.option("--force", is_flag=True, default=False, help="Retry even if the target is busy.")
@click.option("--prompt", default="", help="Prompt text to send instead of the stored one.")
@click.argument("bead_id")
def assignments_retry(  # noqa: PLR0913
    session: str,
    state_dir: Path | None,
    pane: int | None,
    force: bool,
    prompt: str,
    bead_id: str,
) -> None:
    """Give a failed assignment another attempt.

    Without `--pane`, a pane other than the one that failed is preferred.
    """

    _emit_envelope(
        DISPATCH_CONTROLLER.retry(
            RetryCommand(
                session=session,
                bead_id=bead_id,
                state_dir=state_dir,
                pane=pane,
                force=force,
                prompt=prompt,
            ),
        ),
    )


@assignments.command("retry-failed")
@_session_option
@_state_dir_option
@click.option(
    "--type",
    "agent_type",
    default=None,
    help="Only retry beads that failed on this agent type.",
)
@click.option(
    "--strategy",
    type=click.Choice(_STRATEGIES, case_sensitive=False),
    default=None,
    help="Pane selection strategy. Defaults to BEAD_DISPATCH_DEFAULT_STRATEGY.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Maximum retries in this batch, 0 for no limit.",
)
def assignments_retry_failed(
    session: str,
    state_dir: Path | None,
    agent_type: str | None,
    strategy: str | None,
    limit: int,
) -> None:
    """Retry every failed assignment through the batch planner."""

    _emit_envelope(
        DISPATCH_CONTROLLER.retry_failed(
            RetryFailedCommand(
                session=session,
                state_dir=state_dir,
                agent_type=agent_type,
                strategy=strategy,
                limit=limit,
            ),
        ),
    )


@assignments.command("history")
@_session_option
@_state_dir_option
@click.argument("bead_id")
def assignments_history(session: str, state_dir: Path | None, bead_id: str) -> None:
    """Show the event history of a bead."""

    _emit_envelope(
        DISPATCH_CONTROLLER.history(
            MutateAssignmentCommand(session=session, bead_id=bead_id, state_dir=state_dir),
        ),
    )


def _emit_envelope(envelope: ResultEnvelope) -> None:
    click.echo(envelope.to_json())
    if not envelope.success:
        raise SystemExit(1)


if __name__ == "__main__":  # pragma: no cover
    bead_dispatch()
