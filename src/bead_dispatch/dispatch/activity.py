"""Pane activity classification from captured terminal text.

Rules are evaluated top to bottom and the first match wins. Agent-specific
markers come first, then generic prompt detection, output velocity, thinking
indicators, error signatures and finally stall detection. A working marker
that stays frozen past the stall threshold is reported as STALLED ahead of
every other rule.
"""

from __future__ import annotations

import difflib
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from bead_dispatch.dispatch.collaborators import OutputCapturer
from bead_dispatch.dispatch.models import (
    ActivitySample,
    ActivityState,
    AgentType,
    Pane,
    PaneActivity,
)
from bead_dispatch.storage.common import utc_now

logger = logging.getLogger(__name__)

PROMPT_WINDOW_LINES = 3
SIGNAL_WINDOW_LINES = 10

_ANSI_ESCAPE_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\][^\a\x1b]*(?:\a|\x1b\\)")
_NON_AGENT_TYPES = frozenset({AgentType.USER, AgentType.UNKNOWN})


@dataclass(slots=True, frozen=True)
class ClassifierConfig:
    """Tunables for the classifier. Stall detection is off without a threshold."""

    stall_threshold_seconds: float | None = None
    min_generating_velocity: float = 1.0


@dataclass(slots=True, frozen=True)
class PaneObservation:
    """Normalized view of one capture that rules match against."""

    agent_type: AgentType
    text: str
    prompt_window: tuple[str, ...]
    signal_window: tuple[str, ...]
    velocity: float | None
    unchanged_seconds: float | None
    config: ClassifierConfig

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


Matcher = Callable[[PaneObservation], str | None]


@dataclass(slots=True, frozen=True)
class ActivityRule:
    """One classification rule. The matcher returns the matched pattern or None."""

    name: str
    state: ActivityState
    match_type: str
    matcher: Matcher
    confidence: float
    agent_types: frozenset[AgentType] | None = None
    description: str = ""

    def applies_to(self, agent_type: AgentType) -> bool:
        return self.agent_types is None or agent_type in self.agent_types


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from captured output."""

    return _ANSI_ESCAPE_RE.sub("", text)


def _lines_matcher(patterns: tuple[str, ...], *, window: str) -> Matcher:
    compiled = tuple(re.compile(pattern) for pattern in patterns)

    def matcher(observation: PaneObservation) -> str | None:
        lines = observation.prompt_window if window == "prompt" else observation.signal_window
        for regex in compiled:
            for line in lines:
                if regex.search(line):
                    return regex.pattern
        return None

    return matcher


def _empty_buffer(observation: PaneObservation) -> str | None:
    return "<empty>" if observation.is_empty else None


def _velocity_at_or_above_minimum(observation: PaneObservation) -> str | None:
    velocity = observation.velocity
    minimum = observation.config.min_generating_velocity
    if velocity is None or velocity <= 0 or velocity < minimum:
        return None
    return f"velocity>={minimum:g}"


def _unchanged_past_threshold(observation: PaneObservation) -> str | None:
    threshold = observation.config.stall_threshold_seconds
    unchanged = observation.unchanged_seconds
    if threshold is None or unchanged is None or unchanged < threshold:
        return None
    return f"unchanged>={threshold:g}s"


def _agents(*agent_types: AgentType) -> frozenset[AgentType]:
    return frozenset(agent_types)


def _frozen_working_marker(patterns: tuple[str, ...]) -> Matcher:
    marker = _lines_matcher(patterns, window="signal")

    def matcher(observation: PaneObservation) -> str | None:
        stalled = _unchanged_past_threshold(observation)
        if stalled is None:
            return None
        pattern = marker(observation)
        return f"{pattern} {stalled}" if pattern is not None else None

    return matcher


_ERROR_SIGNATURES: tuple[str, ...] = (
    r"^Traceback \(most recent call last\):",
    r"^\s*(?:[\w.]+\.)?\w*(?:Error|Exception):\s",
    r"^panic:",
    r"^goroutine \d+ \[running\]:",
    r"(?i)^fatal(?: error)?:",
    r"^thread '.+' panicked at",
    r"^error(?:\[E\d+\])?:",
    r"^FATAL\b",
    r"(?i)segmentation fault",
)

DEFAULT_RULES: tuple[ActivityRule, ...] = (
    ActivityRule(
        name="stalled_working_marker",
        state=ActivityState.STALLED,
        match_type="stall",
        matcher=_frozen_working_marker((r"(?i)\besc to (?:interrupt|cancel)\b",)),
        confidence=0.7,
        agent_types=_agents(AgentType.CLAUDE, AgentType.CODEX, AgentType.GEMINI),
    ),
    ActivityRule(
        name="interrupt_thinking",
        state=ActivityState.THINKING,
        match_type="working_marker",
        matcher=_lines_matcher(
            (
                r"(?i)\b(?:thinking|pondering|reasoning|ruminating|cogitating|contemplating)\b"
                r".*\besc to interrupt\b",
            ),
            window="signal",
        ),
        confidence=0.9,
        agent_types=_agents(AgentType.CLAUDE, AgentType.CODEX),
    ),
    ActivityRule(
        name="interrupt_hint",
        state=ActivityState.GENERATING,
        match_type="working_marker",
        matcher=_lines_matcher((r"(?i)\besc to interrupt\b",), window="signal"),
        confidence=0.9,
        agent_types=_agents(AgentType.CLAUDE, AgentType.CODEX),
    ),
    ActivityRule(
        name="gemini_thinking",
        state=ActivityState.THINKING,
        match_type="working_marker",
        matcher=_lines_matcher(
            (r"(?i)\b(?:thinking|reasoning)\b.*\besc to cancel\b",),
            window="signal",
        ),
        confidence=0.9,
        agent_types=_agents(AgentType.GEMINI),
    ),
    ActivityRule(
        name="cancel_hint",
        state=ActivityState.GENERATING,
        match_type="working_marker",
        matcher=_lines_matcher((r"(?i)\besc to cancel\b",), window="signal"),
        confidence=0.9,
        agent_types=_agents(AgentType.GEMINI),
    ),
    ActivityRule(
        name="claude_prompt",
        state=ActivityState.WAITING,
        match_type="prompt",
        matcher=_lines_matcher(
            (
                r"(?i)^claude>?\s*$",
                r"^[│┃|]\s*>\s*(?:[│┃|]\s*)?$",
                r"^\s*\d+\s*>\s*$",
                r"(?i)\?\s*for shortcuts",
            ),
            window="prompt",
        ),
        confidence=0.9,
        agent_types=_agents(AgentType.CLAUDE),
    ),
    ActivityRule(
        name="codex_prompt",
        state=ActivityState.WAITING,
        match_type="prompt",
        matcher=_lines_matcher(
            (
                r"(?i)^codex>?\s*$",
                r"(?i)\?\s*for shortcuts",
                r"(?i)\bcontext left\b",
                r"^›(?:\s.*)?$",
            ),
            window="prompt",
        ),
        confidence=0.9,
        agent_types=_agents(AgentType.CODEX),
    ),
    ActivityRule(
        name="gemini_prompt",
        state=ActivityState.WAITING,
        match_type="prompt",
        matcher=_lines_matcher(
            (r"(?i)^gemini>?\s*$", r"(?i)type your message"),
            window="prompt",
        ),
        confidence=0.9,
        agent_types=_agents(AgentType.GEMINI),
    ),
    ActivityRule(
        name="cursor_prompt",
        state=ActivityState.WAITING,
        match_type="prompt",
        matcher=_lines_matcher((r"(?i)^cursor>?\s*$",), window="prompt"),
        confidence=0.9,
        agent_types=_agents(AgentType.CURSOR),
    ),
    ActivityRule(
        name="windsurf_prompt",
        state=ActivityState.WAITING,
        match_type="prompt",
        matcher=_lines_matcher((r"(?i)^windsurf>?\s*$",), window="prompt"),
        confidence=0.9,
        agent_types=_agents(AgentType.WINDSURF),
    ),
    ActivityRule(
        name="aider_prompt",
        state=ActivityState.WAITING,
        match_type="prompt",
        matcher=_lines_matcher((r"(?i)^(?:aider|architect|ask|code)>\s*$",), window="prompt"),
        confidence=0.9,
        agent_types=_agents(AgentType.AIDER),
    ),
    ActivityRule(
        name="generic_prompt",
        state=ActivityState.WAITING,
        match_type="prompt",
        matcher=_lines_matcher((r"^\s*(?:[\w.-]+\s*)?[>❯›]\s*$",), window="prompt"),
        confidence=0.7,
    ),
    ActivityRule(
        name="shell_prompt",
        state=ActivityState.WAITING,
        match_type="prompt",
        matcher=_lines_matcher(
            (r"^(?:[\w@:.~\-/\[\]()]+\s*)?[$%#❯]\s*$",),
            window="prompt",
        ),
        confidence=0.7,
        agent_types=_NON_AGENT_TYPES,
    ),
    ActivityRule(
        name="empty_buffer",
        state=ActivityState.WAITING,
        match_type="prompt",
        matcher=_empty_buffer,
        confidence=0.6,
        agent_types=_NON_AGENT_TYPES,
    ),
    ActivityRule(
        name="output_velocity",
        state=ActivityState.GENERATING,
        match_type="velocity",
        matcher=_velocity_at_or_above_minimum,
        confidence=0.8,
    ),
    ActivityRule(
        name="spinner_glyph",
        state=ActivityState.THINKING,
        match_type="thinking",
        matcher=_lines_matcher((r"^\s*[\u2800-\u28ff✻✽✶✳✢◐◓◑◒]\s+\S",), window="signal"),
        confidence=0.6,
    ),
    ActivityRule(
        name="thinking_token",
        state=ActivityState.THINKING,
        match_type="thinking",
        matcher=_lines_matcher(
            (
                r"(?i)\b(?:thinking|pondering|reasoning|ruminating|cogitating|contemplating)\b"
                r"\s*(?:\.{3}|…)",
            ),
            window="signal",
        ),
        confidence=0.6,
    ),
    ActivityRule(
        name="error_signature",
        state=ActivityState.ERROR,
        match_type="signature",
        matcher=_lines_matcher(_ERROR_SIGNATURES, window="signal"),
        confidence=0.8,
    ),
    ActivityRule(
        name="stalled_output",
        state=ActivityState.STALLED,
        match_type="stall",
        matcher=_unchanged_past_threshold,
        confidence=0.7,
    ),
)


class ActivityClassifier:
    """Ordered rule battery turning pane text into an activity state."""

    def __init__(
        self,
        config: ClassifierConfig | None = None,
        *,
        rules: tuple[ActivityRule, ...] = DEFAULT_RULES,
    ) -> None:
        self.config = config or ClassifierConfig()
        self._rules = list(rules)

    @property
    def rules(self) -> tuple[ActivityRule, ...]:
        return tuple(self._rules)

    def register_prompt_pattern(
        self,
        agent_type: AgentType,
        pattern: str,
        description: str = "",
        *,
        confidence: float = 0.9,
    ) -> ActivityRule:
        """Add a prompt-ready pattern for one agent type.

        The rule is placed after the built-in agent-specific rules and ahead of
        the generic fallbacks, so it wins over velocity and error heuristics.
        """

        rule = ActivityRule(
            name=f"{agent_type.value}_custom_prompt_{len(self._rules)}",
            state=ActivityState.WAITING,
            match_type="prompt",
            matcher=_lines_matcher((pattern,), window="prompt"),
            confidence=confidence,
            agent_types=_agents(agent_type),
            description=description,
        )
        position = next(
            (index for index, existing in enumerate(self._rules) if existing.agent_types is None),
            len(self._rules),
        )
        self._rules.insert(position, rule)
        return rule

    def classify(
        self,
        text: str,
        agent_type: AgentType,
        *,
        now: datetime | None = None,
        previous: ActivitySample | None = None,
    ) -> PaneActivity:
        """Classify one capture. Never raises; internal faults yield UNKNOWN."""

        now = now or utc_now()
        try:
            return self._classify(text, agent_type, now=now, previous=previous)
        except Exception:  # noqa: BLE001
            logger.exception("Activity classification failed for %s pane", agent_type.value)
            return PaneActivity(
                state=ActivityState.UNKNOWN,
                confidence=0.0,
                velocity=None,
                state_since=now,
                matched_rule=None,
                matched_pattern=None,
                sample=ActivitySample(
                    text=text if isinstance(text, str) else "",
                    captured_at=now,
                    output_changed_at=now,
                    state=ActivityState.UNKNOWN,
                    state_since=now,
                ),
            )

    def _classify(
        self,
        text: str,
        agent_type: AgentType,
        *,
        now: datetime,
        previous: ActivitySample | None,
    ) -> PaneActivity:
        normalized = normalize_capture(text)
        lines = [line for line in normalized.splitlines() if line.strip()]
        velocity = _output_velocity(previous, normalized, now)
        unchanged_seconds = None
        output_changed_at = now
        if previous is not None and previous.text == normalized:
            output_changed_at = previous.output_changed_at
            unchanged_seconds = (now - previous.output_changed_at).total_seconds()
        elif previous is not None:
            unchanged_seconds = 0.0

        observation = PaneObservation(
            agent_type=agent_type,
            text=normalized,
            prompt_window=tuple(lines[-PROMPT_WINDOW_LINES:]),
            signal_window=tuple(lines[-SIGNAL_WINDOW_LINES:]),
            velocity=velocity,
            unchanged_seconds=unchanged_seconds,
            config=self.config,
        )

        state = ActivityState.UNKNOWN
        confidence = 0.0
        matched_rule: str | None = None
        matched_pattern: str | None = None
        for rule in self._rules:
            if not rule.applies_to(agent_type):
                continue
            pattern = rule.matcher(observation)
            if pattern is None:
                continue
            state = rule.state
            confidence = rule.confidence
            matched_rule = rule.name
            matched_pattern = pattern
            break

        state_since = now
        if previous is not None and previous.state == state:
            state_since = previous.state_since

        logger.debug(
            "Classified %s pane as %s (rule=%s, velocity=%s)",
            agent_type.value,
            state.value,
            matched_rule,
            velocity,
        )
        return PaneActivity(
            state=state,
            confidence=confidence,
            velocity=velocity,
            state_since=state_since,
            matched_rule=matched_rule,
            matched_pattern=matched_pattern,
            sample=ActivitySample(
                text=normalized,
                captured_at=now,
                output_changed_at=output_changed_at,
                state=state,
                state_since=state_since,
            ),
        )


_DEFAULT_CLASSIFIER = ActivityClassifier()


def classify_activity(
    text: str,
    agent_type: AgentType,
    *,
    now: datetime | None = None,
    previous: ActivitySample | None = None,
    config: ClassifierConfig | None = None,
) -> PaneActivity:
    """Classify one capture with the built-in rule battery."""

    classifier = _DEFAULT_CLASSIFIER if config is None else ActivityClassifier(config)
    return classifier.classify(text, agent_type, now=now, previous=previous)


def normalize_capture(text: str) -> str:
    """Strip escapes and trailing whitespace so redraws compare equal."""

    lines = [line.rstrip() for line in strip_ansi(text).splitlines()]
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def _output_velocity(
    previous: ActivitySample | None,
    text: str,
    now: datetime,
) -> float | None:
    if previous is None:
        return None
    elapsed = (now - previous.captured_at).total_seconds()
    if elapsed <= 0:
        return None
    return _changed_chars(previous.text, text) / elapsed


def _changed_chars(before: str, after: str) -> int:
    before_lines = before.splitlines()
    after_lines = after.splitlines()
    matcher = difflib.SequenceMatcher(a=before_lines, b=after_lines, autojunk=False)
    total = 0
    for tag, _, _, start, end in matcher.get_opcodes():
        if tag in {"insert", "replace"}:
            total += sum(len(line) for line in after_lines[start:end])
    return total


class ActivityProbe:
    """Capture a pane through the output capturer and classify the text."""

    def __init__(
        self,
        capturer: OutputCapturer,
        classifier: ActivityClassifier | None = None,
        *,
        capture_lines: int = 50,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.capturer = capturer
        self.classifier = classifier or ActivityClassifier()
        self.capture_lines = capture_lines
        self.timeout_seconds = timeout_seconds

    def probe(self, pane: Pane, previous: ActivitySample | None = None) -> PaneActivity:
        """Classify a pane now. Capture failures propagate as TmuxError."""

        text = self.capturer.capture(
            pane.pane_id,
            self.capture_lines,
            timeout_seconds=self.timeout_seconds,
        )
        activity = self.classifier.classify(text, pane.agent_type, previous=previous)
        logger.debug(
            "Pane %d (%s) is %s, confidence %.2f",
            pane.index,
            pane.agent_type.value,
            activity.state.value,
            activity.confidence,
        )
        return activity
