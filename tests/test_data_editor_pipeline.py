import json

from pipelines.data_editor_pipeline import Pipeline


CLIENTS = {
    "headers": ["ClientID", "ClientName", "PriorityLevel", "GroupTag"],
    "rows": [
        {"ClientID": "C1", "ClientName": "Acme", "PriorityLevel": "2", "GroupTag": "enterprise"},
        {"ClientID": "C2", "ClientName": "Beta", "PriorityLevel": "5", "GroupTag": "smb"},
        {"ClientID": "C3", "ClientName": "Gamma", "PriorityLevel": "3", "GroupTag": "Enterprise"},
    ],
}

TASKS = {
    "headers": ["TaskID", "TaskName", "Duration"],
    "rows": [
        {"TaskID": "T1", "TaskName": "Build", "Duration": "1"},
        {"TaskID": "T2", "TaskName": "Test", "Duration": "4"},
    ],
}


def test_modify_plans_descriptor_from_model() -> None:
    pipeline = Pipeline()
    seen = {}

    def fake_llm_json(system: str, user: str) -> dict:
        seen["user"] = user
        return {
            "operation": "update",
            "column": "PriorityLevel",
            "conditions": [{"column": "GroupTag", "operator": "equals", "value": "enterprise"}],
            "newValue": "1",
            "summary": "Raise enterprise priority",
        }

    pipeline._llm_json = fake_llm_json  # type: ignore[method-assign]
    out = pipeline.modify("set enterprise clients to priority 1", CLIENTS, table_name="clients")

    assert "ClientID, ClientName, PriorityLevel, GroupTag" in seen["user"]
    assert out["success"] is True
    assert out["updates"]["summary"] == "Raise enterprise priority"
    # equals is case-sensitive, so "Enterprise" on C3 is left alone
    assert [m["rowIndex"] for m in out["updates"]["modifications"]] == [0]
    assert "debug" not in out


def test_modify_reports_parse_error_when_model_returns_nothing() -> None:
    pipeline = Pipeline()
    pipeline._llm_json = lambda _s, _u: {}  # type: ignore[method-assign]
    out = pipeline.modify("delete everything", CLIENTS)
    assert out["success"] is False
    assert out["error"]["code"] == "llm_parse_error"

    assert pipeline.modify("  ", CLIENTS)["error"]["code"] == "missing_instruction"


def test_modify_debug_payload() -> None:
    pipeline = Pipeline()
    pipeline.valves.debug = True
    pipeline._llm_json = lambda _s, _u: {"operation": "delete", "conditions": []}  # type: ignore[method-assign]
    out = pipeline.modify("remove all rows", CLIENTS)
    assert out["debug"]["totalRows"] == 3
    assert out["debug"]["modificationsGenerated"] == 3


def test_query_compiles_model_expression() -> None:
    pipeline = Pipeline()
    pipeline._llm_text = lambda _s, _u: "```javascript\nreturn task.Duration > 2;\n```"  # type: ignore[method-assign]
    out = pipeline.query("tasks with long duration", {"tasks": TASKS})
    assert out["sheet"] == "tasks"
    assert out["source"] == "expression"
    assert out["filterFunction"] == "task.Duration > 2"
    assert out["matchedIndices"] == [1]


def test_query_falls_back_when_model_fails_open() -> None:
    pipeline = Pipeline()
    pipeline._llm_text = lambda _s, _u: ""  # type: ignore[method-assign]
    out = pipeline.query("tasks with duration over 3", {"tasks": TASKS})
    assert out["source"] == "fallback"
    assert out["matchedIndices"] == [1]

    missing = pipeline.query("workers with python skills", {"tasks": TASKS})
    assert missing["reason"] == "missing_sheet"
    assert missing["filteredRows"] == []


def test_map_columns_uses_model_candidates_or_local_synthesis() -> None:
    pipeline = Pipeline()
    pipeline._llm_json = lambda _s, _u: {  # type: ignore[method-assign]
        "mappings": [{"originalHeader": "cid", "suggestedHeader": "ClientID", "confidence": 0.9}]
    }
    out = pipeline.map_columns("clients", ["cid"])
    assert out["fallback"] is False
    assert out["mappings"][0]["suggestedHeader"] == "ClientID"

    pipeline._llm_json = lambda _s, _u: {}  # type: ignore[method-assign]
    local = pipeline.map_columns("clients", ["client_id", "Name"])
    assert local["fallback"] is True
    assert {m["suggestedHeader"] for m in local["mappings"]} == {"ClientID", "ClientName"}

    assert pipeline.map_columns("projects", ["a"])["error"]["code"] == "invalid_file_type"


def test_pipe_dispatches_by_mode_and_returns_json() -> None:
    pipeline = Pipeline()
    pipeline._llm_json = lambda _s, _u: {}  # type: ignore[method-assign]
    pipeline._llm_text = lambda _s, _u: "task.TaskName === 'Build'"  # type: ignore[method-assign]

    raw = pipeline.pipe("which tasks", "model", [], {"mode": "query", "datasets": {"tasks": TASKS}})
    assert json.loads(raw)["matchedIndices"] == [0]

    mapped = json.loads(
        pipeline.pipe("", "model", [], {"mode": "map_columns", "fileType": "tasks", "columns": ["task_id"]})
    )
    assert mapped["mappings"][0]["suggestedHeader"] == "TaskID"

    modified = json.loads(pipeline.pipe("drop C1", "model", [], {"data": CLIENTS}))
    assert modified["error"]["code"] == "llm_parse_error"
