from __future__ import annotations

from pathlib import Path

import pytest

from runledger.ledger import (
    append_record,
    last_logged_index,
    load_ledger,
    parse_ledger,
    parse_target,
    render_initial_ledger,
    sync_target,
)
from runledger.models import StateError


def _initial_text(target: int = 3) -> str:
    return render_initial_ledger(
        session_started="2026-10-18T10:00:00+00:00",
        target=target,
        report_path=Path("/runs/demo/report.txt"),
        task_summary="Refactor the importer",
    )


def test_initial_ledger_layout_and_parse() -> None:
    text = _initial_text()

    assert text.splitlines() == [
        "# Progress",
        "",
        "- Session started: 2026-10-18T10:00:00+00:00",
        "- Target iterations: 3",
        "- Report file: /runs/demo/report.txt",
        "- Task summary: Refactor the importer",
        "",
        "## Iteration Log",
        "- [0] Session initialized.",
    ]
    state = parse_ledger(text)
    assert state.target == 3
    assert state.session_started == "2026-10-18T10:00:00+00:00"
    assert state.report_path == "/runs/demo/report.txt"
    assert state.task_summary == "Refactor the importer"
    assert state.last_logged_index == 0
    assert state.render() == text


def test_task_summary_is_collapsed_to_one_line() -> None:
    text = render_initial_ledger(
        session_started="now",
        target=1,
        report_path=Path("report.txt"),
        task_summary="first line\nsecond line",
    )

    assert "- Task summary: first line second line" in text.splitlines()


def test_metadata_lookalikes_in_body_do_not_change_target() -> None:
    text = _initial_text(3) + "- [1] Target iterations: 99\n- Target iterations: 42\n"

    state = parse_ledger(text)

    assert state.target == 3
    assert [record.index for record in state.records] == [0, 1]
    assert state.records[1].note == "Target iterations: 99"


def test_missing_heading_splits_at_first_record() -> None:
    text = "# Progress\n- Target iterations: 4\n- [0] start\n- [2] later\n"

    assert parse_target(text) == 4
    assert last_logged_index(text) == 2


@pytest.mark.parametrize(
    "text",
    [
        "# Progress\n\n## Iteration Log\n- [0] start\n",
        "- Target iterations: abc\n## Iteration Log\n",
        "- Target iterations: 0\n## Iteration Log\n",
        "- Target iterations:\n",
        "- Target iterations: \u00b2\n## Iteration Log\n- [0] Session initialized.\n",
    ],
)
def test_parse_target_returns_none_when_absent_or_malformed(text: str) -> None:
    assert parse_target(text) is None


def test_last_logged_index_uses_maximum_not_last_line() -> None:
    text = "## Iteration Log\n- [0] a\n- [3] c\n- [1] b\n"

    assert last_logged_index(text) == 3
    assert last_logged_index("") == 0


def test_with_target_replaces_malformed_line_in_place() -> None:
    text = "# Progress\n- Session started: x\n- Target iterations: soon\n\n## Iteration Log\n- [0] a\n"

    updated = parse_ledger(text).with_target(7)

    assert updated.render() == text.replace("- Target iterations: soon", "- Target iterations: 7")
    assert updated.target == 7


def test_with_target_inserts_after_session_started() -> None:
    text = "# Progress\n\n- Session started: x\n- Report file: r\n\n## Iteration Log\n- [0] a\n"

    updated = parse_ledger(text).with_target(5).render()

    assert updated.splitlines()[2:4] == ["- Session started: x", "- Target iterations: 5"]


def test_with_target_appends_to_header_before_trailing_blank_lines() -> None:
    text = "# Progress\n\n- Report file: r\n\n## Iteration Log\n- [0] a\n"

    updated = parse_ledger(text).with_target(5).render()

    assert updated == "# Progress\n\n- Report file: r\n- Target iterations: 5\n\n## Iteration Log\n- [0] a\n"


def test_sync_target_rewrites_only_the_target_line(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    original = _initial_text(2) + "- [1] first pass\n"
    path.write_text(original, encoding="utf-8")

    sync_target(path, 4)

    assert path.read_text(encoding="utf-8") == original.replace(
        "- Target iterations: 2", "- Target iterations: 4"
    )
    assert sorted(entry.name for entry in tmp_path.iterdir()) == ["progress.txt"]


def test_append_record_adds_missing_newline(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    path.write_text("## Iteration Log\n- [0] a", encoding="utf-8")

    append_record(path, 1, "done\nwith details")

    assert path.read_text(encoding="utf-8") == "## Iteration Log\n- [0] a\n- [1] done with details\n"


def test_load_ledger_missing_file_raises_state_error(tmp_path: Path) -> None:
    with pytest.raises(StateError, match="ledger not found"):
        load_ledger(tmp_path / "progress.txt")
