import allure

from bead_dispatch.dispatch.prompts import (
    DEFAULT_ASSIGN_TEMPLATE,
    DEFAULT_CONTINUATION_TEMPLATE,
    render_prompt,
)

pytestmark = [
    allure.epic("Assignment Scheduling"),
    allure.feature("Prompt Templates"),
]


def test_assign_template_mentions_bead_and_blockers() -> None:
    text = render_prompt(
        DEFAULT_ASSIGN_TEMPLATE,
        bead_id="bd-7",
        bead_title="Add retry to uploader",
        bead_type="feature",
        blocked_by=("bd-1", "bd-2"),
        session="dev",
        pane=2,
    )

    assert text.startswith("Work on bead bd-7: Add retry to uploader")
    assert "Type: feature. Blocked by: bd-1, bd-2." in text
    assert "br show bd-7" in text


def test_defaults_fill_missing_values() -> None:
    text = render_prompt(
        "{bead_title} / {bead_type} / {bead_deps}",
        bead_id="bd-7",
        bead_title="",
        session="dev",
        pane=2,
    )

    assert text == "bd-7 / task / none"


def test_continuation_template_names_previous_pane() -> None:
    text = render_prompt(
        DEFAULT_CONTINUATION_TEMPLATE,
        bead_id="bd-7",
        bead_title="Add retry",
        session="dev",
        pane=4,
        previous_pane=1,
    )

    assert "previously assigned to pane 1" in text


def test_unknown_placeholders_and_injected_braces_are_left_alone() -> None:
    text = render_prompt(
        "{bead_title} in {session}:{pane} {unknown}",
        bead_id="bd-7",
        bead_title="Handle {pane} literal",
        session="dev",
        pane=3,
    )

    assert text == "Handle {pane} literal in dev:3 {unknown}"
