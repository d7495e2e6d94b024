import logging

import pytest

from pipelines.lib.engine_errors import ExpressionCompileError
from pipelines.lib.expression_compiler import (
    ExpressionCompiler,
    extract_expression,
    filter_payload,
    run_filter,
)
from pipelines.lib.table_models import Dataset
from pipelines.lib.type_coercion import coerce_row


WORKERS = Dataset.from_records(
    ["WorkerID", "WorkerName", "Skills", "QualificationLevel"],
    [
        {"WorkerID": "W1", "WorkerName": "Alice", "Skills": "python, sql", "QualificationLevel": "4"},
        {"WorkerID": "W2", "WorkerName": "bob", "Skills": "java", "QualificationLevel": "2"},
        {"WorkerID": "W3", "WorkerName": "Anna", "Skills": "Python,go", "QualificationLevel": ""},
    ],
)

TASKS = Dataset.from_records(
    ["TaskID", "TaskName", "Duration", "PreferredPhases"],
    [
        {"TaskID": "T1", "TaskName": "Build", "Duration": "1", "PreferredPhases": "1-3"},
        {"TaskID": "T2", "TaskName": "Test", "Duration": "4", "PreferredPhases": "[2,4]"},
        {"TaskID": "T3", "TaskName": "Ship", "Duration": "3", "PreferredPhases": "5"},
    ],
)


def _compile(text: str, handle: str = "worker", dataset: Dataset = WORKERS):
    sample = coerce_row(dataset.rows[0], dataset.headers)
    return ExpressionCompiler().compile(text, handle=handle, sample_row=sample)


def _matches(text: str, handle: str = "worker", dataset: Dataset = WORKERS):
    predicate = _compile(text, handle, dataset)
    return [i for i, row in enumerate(dataset.rows) if predicate(coerce_row(row, dataset.headers))]


def test_name_prefix_expression() -> None:
    assert _matches("String(worker.WorkerName || '').toLowerCase().startsWith('a')") == [0, 2]


def test_array_callbacks_over_coerced_lists() -> None:
    expr = "worker.Skills.some(s => String(s).toLowerCase().includes('python'))"
    assert _matches(expr) == [0, 2]
    assert _matches("worker.Skills.every(s => s.length > 2)") == [0, 1]


def test_numeric_comparison_and_membership_on_tasks() -> None:
    assert _matches("task.Duration > 2", handle="task", dataset=TASKS) == [1, 2]
    assert _matches("task.PreferredPhases.includes(2)", handle="task", dataset=TASKS) == [0, 1]
    assert _matches("task.Duration >= 3 && !task.PreferredPhases.includes(5)", handle="task", dataset=TASKS) == [1]


def test_loose_and_strict_equality() -> None:
    assert _matches("worker.QualificationLevel == '4'") == [0]
    assert _matches("worker.QualificationLevel === 4") == [0]
    assert _matches("worker.QualificationLevel === '4'") == []


def test_optional_chaining_and_nullish_default() -> None:
    assert _matches("(worker.Missing?.length ?? 0) === 0") == [0, 1, 2]
    assert _matches("Array.isArray(worker.Skills) && worker.Skills.length === 1") == [1]


def test_extraction_strips_fences_prose_and_wrappers() -> None:
    raw = (
        "<think>pick a filter</think>\n"
        "Here is the expression:\n"
        "```javascript\n"
        "// workers named A\n"
        "return String(worker.WorkerName).startsWith('A');\n"
        "```"
    )
    assert extract_expression(raw, "worker") == "String(worker.WorkerName).startsWith('A')"
    assert extract_expression("worker => worker.Skills.length > 1", "worker") == "worker.Skills.length > 1"
    assert extract_expression("function (task) { return task.Duration > 2; }", "task") == "task.Duration > 2"
    assert extract_expression('"task.Duration > 2"', "task") == "task.Duration > 2"


@pytest.mark.parametrize(
    "text, code",
    [
        ("process.exit(1)", "unknown_name:process"),
        ("worker.constructor.constructor('x')", "forbidden_method:constructor"),
        ("worker.WorkerName.toString.call(1)", "forbidden_method:call"),
        ("worker.__proto__", "forbidden_dunder_attr"),
        ("eval('1')", "forbidden_call:eval"),
        ("worker.WorkerName = 'x'", "unsupported_char:="),
        ("worker.WorkerName; 1", "unsupported_char:;"),
        ("worker.QualificationLevel >", "unexpected_token:end"),
        ("worker.WorkerName worker", "unexpected_token:worker"),
        ("s => true", "forbidden_arrow_position"),
        ("String", "bare_builtin:String"),
        ("worker.Skills.map(s => s)", "forbidden_method:map"),
        ("", "empty_expression"),
    ],
)
def test_guard_rejects_outside_whitelist(text: str, code: str) -> None:
    with pytest.raises(ExpressionCompileError, match=code):
        _compile(text)


def test_throwing_test_invocation_rejects_candidate() -> None:
    with pytest.raises(ExpressionCompileError, match="test_invocation_failed"):
        _compile("worker.Missing.toLowerCase() === 'x'")


def test_non_boolean_result_is_only_a_warning(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        predicate = _compile("worker.WorkerName")
    assert "filter_expression_non_boolean" in caplog.text
    assert predicate(coerce_row(WORKERS.rows[0], WORKERS.headers)) is True


def test_build_filter_uses_name_fallback_when_expression_throws() -> None:
    outcome = ExpressionCompiler().build_filter(
        "worker.Nope.startsWith('a')",
        "show workers whose name starts with a",
        WORKERS,
        sheet="workers",
    )
    assert outcome.source == "fallback"
    assert outcome.fallback_pattern == "name_starts_with"
    assert "WorkerName" in outcome.expression
    assert run_filter(WORKERS, outcome).indices == [0, 2]


def test_build_filter_returns_match_nothing_with_diagnostic() -> None:
    outcome = ExpressionCompiler().build_filter("this is not code(", "something vague", WORKERS, sheet="workers")
    assert outcome.source == "none"
    assert outcome.matches_nothing
    assert "no_fallback_match" in (outcome.reason or "")
    assert outcome.expression.startswith("return false; // Error:")
    result = run_filter(WORKERS, outcome)
    assert result.indices == []
    assert result.total_rows == 3


def test_build_filter_other_fallback_patterns() -> None:
    compiler = ExpressionCompiler()
    skills = compiler.build_filter(None, "workers with Python skills", WORKERS, sheet="workers")
    assert skills.fallback_pattern == "skill_mention"
    assert run_filter(WORKERS, skills).indices == [0, 2]

    longer = compiler.build_filter("", "tasks longer than 2", TASKS, sheet="tasks")
    assert longer.fallback_pattern == "duration_over"
    assert run_filter(TASKS, longer).indices == [1, 2]

    phase = compiler.build_filter("", "tasks that prefer phase 4", TASKS, sheet="tasks")
    assert phase.fallback_pattern == "preferred_phase"
    assert run_filter(TASKS, phase).indices == [1]


def test_build_filter_skips_test_invocation_on_empty_dataset() -> None:
    empty = Dataset.from_records(["TaskID", "Duration"], [])
    outcome = ExpressionCompiler().build_filter("task.Duration > 1", "q", empty, sheet="tasks")
    assert outcome.source == "expression"
    assert run_filter(empty, outcome).indices == []


def test_run_filter_treats_throwing_rows_as_non_matching(caplog) -> None:
    ds = Dataset.from_records(
        ["WorkerName", "Nick"],
        [{"WorkerName": "A", "Nick": "x"}, {"WorkerName": "B", "Nick": None}, {"WorkerName": "C", "Nick": "xy"}],
    )
    outcome = ExpressionCompiler().build_filter("worker.Nick.startsWith('x')", "q", ds, sheet="workers")
    assert outcome.source == "expression"
    with caplog.at_level(logging.WARNING):
        result = run_filter(ds, outcome)
    assert result.indices == [0, 2]
    assert result.failed_rows == 1
    assert "filter_row_error" in caplog.text


def test_filter_payload_shape() -> None:
    outcome = ExpressionCompiler().build_filter("task.Duration > 3", "q", TASKS, sheet="tasks")
    payload = filter_payload("q", "tasks", outcome, run_filter(TASKS, outcome))
    assert payload["matchedIndices"] == [1]
    assert payload["filteredRows"][0]["TaskID"] == "T2"
    assert payload["totalRows"] == 3
    assert payload["filterFunction"] == "task.Duration > 3"
    assert payload["source"] == "expression"
