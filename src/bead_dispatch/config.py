"""Runtime configuration for the dispatcher."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from bead_dispatch.dispatch.activity import ClassifierConfig
from bead_dispatch.dispatch.models import AgentType, parse_agent_type
from bead_dispatch.dispatch.policy import (
    PlannerPolicy,
    Strategy,
    TaskType,
    parse_strategy,
    parse_task_type,
)


@dataclass(slots=True)
class StoreSettings:
    """Assignment store settings."""

    state_dir: Path = Path(".bead_dispatch")
    busy_timeout_ms: int = 5_000
    max_attempts: int = 5


@dataclass(slots=True)
class TmuxSettings:
    """Multiplexer client settings."""

    binary: str = "tmux"
    capture_lines: int = 50
    capture_timeout_seconds: float = 5.0
    send_timeout_seconds: float = 5.0


@dataclass(slots=True)
class ClassifierSettings:
    """Activity classifier settings."""

    stall_threshold_seconds: float | None = None
    min_generating_velocity: float = 1.0

    def to_config(self) -> ClassifierConfig:
        return ClassifierConfig(
            stall_threshold_seconds=self.stall_threshold_seconds,
            min_generating_velocity=self.min_generating_velocity,
        )


@dataclass(slots=True)
class PlannerSettings:
    """Batch planner settings."""

    default_strategy: Strategy = Strategy.BALANCED
    speed_ranking: tuple[AgentType, ...] = ()
    capability_overrides: dict[tuple[AgentType, TaskType], float] = field(default_factory=dict)

    def to_policy(self) -> PlannerPolicy:
        return PlannerPolicy.with_overrides(
            default_strategy=self.default_strategy,
            speed_ranking=self.speed_ranking,
            capability_overrides=self.capability_overrides,
        )


@dataclass(slots=True)
class TrackerSettings:
    """Bead tracker client settings."""

    binary: str = "br"
    timeout_seconds: float = 10.0
    workdir: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    store: StoreSettings = field(default_factory=StoreSettings)
    tmux: TmuxSettings = field(default_factory=TmuxSettings)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)
    planner: PlannerSettings = field(default_factory=PlannerSettings)
    tracker: TrackerSettings = field(default_factory=TrackerSettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        workdir_raw = os.getenv("BEAD_DISPATCH_TRACKER_WORKDIR", "").strip()
        return cls(
            store=StoreSettings(
                state_dir=state_dir or _default_state_dir(),
                busy_timeout_ms=int(os.getenv("BEAD_DISPATCH_BUSY_TIMEOUT_MS", "5000")),
                max_attempts=int(os.getenv("BEAD_DISPATCH_STORE_MAX_ATTEMPTS", "5")),
            ),
            tmux=TmuxSettings(
                binary=os.getenv("BEAD_DISPATCH_TMUX_BINARY", "tmux"),
                capture_lines=int(os.getenv("BEAD_DISPATCH_CAPTURE_LINES", "50")),
                capture_timeout_seconds=float(
                    os.getenv("BEAD_DISPATCH_CAPTURE_TIMEOUT_SECONDS", "5.0"),
                ),
                send_timeout_seconds=float(
                    os.getenv("BEAD_DISPATCH_SEND_TIMEOUT_SECONDS", "5.0"),
                ),
            ),
            classifier=ClassifierSettings(
                stall_threshold_seconds=_env_optional_float(
                    "BEAD_DISPATCH_STALL_THRESHOLD_SECONDS",
                ),
                min_generating_velocity=float(
                    os.getenv("BEAD_DISPATCH_MIN_GENERATING_VELOCITY", "1.0"),
                ),
            ),
            planner=PlannerSettings(
                default_strategy=parse_strategy(
                    os.getenv("BEAD_DISPATCH_DEFAULT_STRATEGY", Strategy.BALANCED.value),
                ),
                speed_ranking=_collect_speed_ranking(),
                capability_overrides=_collect_capability_overrides(),
            ),
            tracker=TrackerSettings(
                binary=os.getenv("BEAD_DISPATCH_BR_BINARY", "br"),
                timeout_seconds=float(os.getenv("BEAD_DISPATCH_TRACKER_TIMEOUT_SECONDS", "10.0")),
                workdir=Path(workdir_raw) if workdir_raw else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.store.busy_timeout_ms <= 0:
            raise ValueError("BEAD_DISPATCH_BUSY_TIMEOUT_MS must be > 0.")
        if self.store.max_attempts <= 0:
            raise ValueError("BEAD_DISPATCH_STORE_MAX_ATTEMPTS must be > 0.")
        if self.tmux.capture_lines <= 0:
            raise ValueError("BEAD_DISPATCH_CAPTURE_LINES must be > 0.")
        if self.tmux.capture_timeout_seconds <= 0:
            raise ValueError("BEAD_DISPATCH_CAPTURE_TIMEOUT_SECONDS must be > 0.")
        if self.tmux.send_timeout_seconds <= 0:
            raise ValueError("BEAD_DISPATCH_SEND_TIMEOUT_SECONDS must be > 0.")
        threshold = self.classifier.stall_threshold_seconds
        if threshold is not None and threshold <= 0:
            raise ValueError("BEAD_DISPATCH_STALL_THRESHOLD_SECONDS must be > 0 when set.")
        if self.classifier.min_generating_velocity < 0:
            raise ValueError("BEAD_DISPATCH_MIN_GENERATING_VELOCITY must be >= 0.")
        if self.tracker.timeout_seconds <= 0:
            raise ValueError("BEAD_DISPATCH_TRACKER_TIMEOUT_SECONDS must be > 0.")


def _default_state_dir() -> Path:
    explicit = os.getenv("BEAD_DISPATCH_STATE_DIR", "").strip()
    if explicit:
        return Path(explicit).expanduser()
    data_home = os.getenv("XDG_DATA_HOME", "").strip()
    base = Path(data_home).expanduser() if data_home else Path.home() / ".local" / "share"
    return base / "bead-dispatch"


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {raw!r}") from error


def _collect_speed_ranking() -> tuple[AgentType, ...]:
    raw = os.getenv("BEAD_DISPATCH_SPEED_RANKING", "").strip()
    if not raw:
        return ()

    ranking: list[AgentType] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        agent_type = parse_agent_type(token)
        if not agent_type.is_agent:
            raise ValueError(f"Invalid BEAD_DISPATCH_SPEED_RANKING entry: {token!r}")
        if agent_type not in ranking:
            ranking.append(agent_type)
    return tuple(ranking)


def _collect_capability_overrides() -> dict[tuple[AgentType, TaskType], float]:
    raw = os.getenv("BEAD_DISPATCH_CAPABILITY_OVERRIDES", "").strip()
    if not raw:
        return {}

    overrides: dict[tuple[AgentType, TaskType], float] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token or "=" not in token:
            raise ValueError(
                "Invalid BEAD_DISPATCH_CAPABILITY_OVERRIDES entry: "
                f"{token!r}. Expected format '<agent>:<task_type>=<score>'.",
            )
        key, score_raw = token.rsplit("=", 1)
        agent_raw, task_raw = key.split(":", 1)
        agent_type = parse_agent_type(agent_raw)
        task_type = parse_task_type(task_raw)
        if not agent_type.is_agent or task_type is None:
            raise ValueError(
                f"Invalid BEAD_DISPATCH_CAPABILITY_OVERRIDES key: {key.strip()!r}",
            )
        try:
            score = float(score_raw.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid BEAD_DISPATCH_CAPABILITY_OVERRIDES score for {key.strip()!r}: "
                f"{score_raw.strip()!r}",
            ) from error
        if not 0.0 <= score <= 1.0:
            raise ValueError(
                f"Invalid BEAD_DISPATCH_CAPABILITY_OVERRIDES score for {key.strip()!r}: "
                f"{score!r} (must be within 0..1)",
            )
        overrides[(agent_type, task_type)] = score
    return overrides
