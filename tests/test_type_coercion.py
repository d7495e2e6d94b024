import math

import numpy as np

from pipelines.lib.type_coercion import (
    cell_text,
    coerce_row,
    coerce_value,
    is_blank,
    parse_float_prefix,
    parse_int_prefix,
)


def test_duration_uses_numeric_prefix_and_defaults_to_zero() -> None:
    assert coerce_value("12h", "Duration") == 12
    assert coerce_value("2.5", "duration") == 2.5
    assert coerce_value("soon", "Duration") == 0


def test_preferred_phases_forms() -> None:
    assert coerce_value("1-4", "PreferredPhases") == [1, 2, 3, 4]
    assert coerce_value("[2, 5]", "PreferredPhases") == [2, 5]
    assert coerce_value("1, x, 3", "PreferredPhases") == [1, 3]
    assert coerce_value("3", "PreferredPhases") == [3]
    assert coerce_value("none", "PreferredPhases") == []


def test_slot_and_skill_columns_become_tag_lists() -> None:
    assert coerce_value("python, sql ,", "Skills") == ["python", "sql"]
    assert coerce_value('["a","b"]', "RequiredSkills") == ["a", "b"]
    assert coerce_value(" java ", "Skills") == ["java"]
    assert coerce_value("[1,2,3]", "AvailableSlots") == [1, 2, 3]


def test_rule_order_duration_wins_over_numeric_cue() -> None:
    # "MaxDuration" carries both cues; duration is checked first.
    assert coerce_value("abc", "MaxDuration") == 0


def test_task_id_columns_split_on_commas() -> None:
    assert coerce_value("T1,T2, T3", "RequestedTaskIDs") == ["T1", "T2", "T3"]
    assert coerce_value("T7", "TaskID") == ["T7"]


def test_numeric_cues_keep_original_text_when_unparsable() -> None:
    assert coerce_value("4", "PriorityLevel") == 4
    assert coerce_value("high", "PriorityLevel") == "high"
    assert coerce_value("3", "MaxConcurrent") == 3


def test_default_is_string_and_blanks_pass_through() -> None:
    assert coerce_value(5, "ClientName") == "5"
    assert coerce_value("", "Duration") == ""
    assert coerce_value(None, "Skills") is None


def test_numpy_scalars_are_unwrapped() -> None:
    assert coerce_value(np.int64(3), "PriorityLevel") == 3
    assert cell_text(np.float64(2.0)) == "2"


def test_prefix_parsers_follow_leading_number_semantics() -> None:
    assert parse_float_prefix("  7.5kg") == 7.5
    assert parse_float_prefix("kg7") is None
    assert parse_int_prefix("42abc") == 42
    assert parse_int_prefix("-3") == -3
    assert parse_int_prefix("") is None


def test_is_blank_handles_nan() -> None:
    assert is_blank(float("nan"))
    assert is_blank("")
    assert not is_blank("0")
    assert not is_blank([])


def test_cell_text_display_conventions() -> None:
    assert cell_text(True) == "true"
    assert cell_text(4.0) == "4"
    assert cell_text(["a", 1]) == "a,1"
    assert cell_text({"k": 1}) == '{"k": 1}'
    assert cell_text(None) == ""


def test_coerce_row_covers_every_header() -> None:
    row = {"TaskID": "T1", "Duration": "3", "PreferredPhases": "2-3"}
    coerced = coerce_row(row, ["TaskID", "Duration", "PreferredPhases", "Category"])
    assert coerced == {"TaskID": ["T1"], "Duration": 3, "PreferredPhases": [2, 3], "Category": None}
    assert not math.isnan(coerced["Duration"])
