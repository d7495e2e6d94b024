import pytest

from pipelines.lib.query_signals import (
    DURATION_OVER_RE,
    NAME_STARTS_WITH_RE,
    SKILL_MENTION_RE,
    detect_target_sheet,
    row_handle_for,
)


@pytest.mark.parametrize(
    "text, sheet",
    [
        ("clients with priority 5", "clients"),
        ("show groups", "clients"),
        ("workers who know SQL", "workers"),
        ("anyone with python skill", "workers"),
        ("tasks in phase 2", "tasks"),
        ("longest duration", "tasks"),
        ("something else entirely", "tasks"),
    ],
)
def test_detect_target_sheet(text: str, sheet: str) -> None:
    assert detect_target_sheet(text) == sheet


def test_row_handle_is_singular_sheet_name() -> None:
    assert row_handle_for("workers") == "worker"
    assert row_handle_for("tasks") == "task"
    assert row_handle_for(None) == "row"
    assert row_handle_for("my sheet") == "row"


def test_instruction_patterns_capture_values() -> None:
    assert NAME_STARTS_WITH_RE.search("Name begins with the letter 'B'").group("value") == "B"
    assert SKILL_MENTION_RE.search("workers with C++ skills").group("value") == "C++"
    assert DURATION_OVER_RE.search("tasks with duration over 3.5 phases").group("value") == "3.5"
