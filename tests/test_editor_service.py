import base64

from fastapi.testclient import TestClient

from editor_service import main as editor_main


client = TestClient(editor_main.app)

CLIENTS = {
    "headers": ["ClientID", "ClientName", "PriorityLevel"],
    "rows": [
        {"ClientID": "C1", "ClientName": "Acme", "PriorityLevel": "2"},
        {"ClientID": "C2", "ClientName": "Beta", "PriorityLevel": "5"},
    ],
}

WORKERS = {
    "headers": ["WorkerID", "WorkerName", "Skills"],
    "rows": [
        {"WorkerID": "W1", "WorkerName": "Bob", "Skills": "python"},
        {"WorkerID": "W2", "WorkerName": "Alice", "Skills": "java"},
        {"WorkerID": "W3", "WorkerName": "Bea", "Skills": "go"},
    ],
}


def setup_function() -> None:
    editor_main.EDITOR_API_KEY = ""
    editor_main.MAX_PREVIEW_ROWS = 500


def test_health_sets_request_id_header() -> None:
    resp = client.get("/health", headers={"x-request-id": "req-42"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["x-request-id"] == "req-42"


def test_auth_required_when_key_configured() -> None:
    editor_main.EDITOR_API_KEY = "secret"
    body = {"data": CLIENTS, "descriptor": {"operation": "delete", "conditions": []}}
    assert client.post("/v1/modify/plan", json=body).status_code == 401
    ok = client.post("/v1/modify/plan", json=body, headers={"Authorization": "Bearer secret"})
    assert ok.status_code == 200


def test_plan_returns_modifications_and_preview() -> None:
    body = {
        "data": CLIENTS,
        "tableName": "clients",
        "descriptor": {
            "operation": "update",
            "column": "PriorityLevel",
            "conditions": [{"column": "PriorityLevel", "operator": "not_equals", "value": "5"}],
            "newValue": "4",
        },
    }
    resp = client.post("/v1/modify/plan", json=body)
    assert resp.status_code == 200
    out = resp.json()
    assert out["success"] is True
    assert out["updates"]["target"] == "clients"
    assert out["updates"]["modifications"] == [{"operation": "update", "rowIndex": 0, "data": {"PriorityLevel": "4"}}]
    assert "PriorityLevel: 2 → 4" in out["preview"]


def test_plan_rejects_malformed_descriptor() -> None:
    resp = client.post("/v1/modify/plan", json={"data": CLIENTS, "descriptor": {"operation": "rename"}})
    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["success"] is False
    assert detail["error"]["code"] == "malformed_descriptor"


def test_plan_rejects_duplicate_headers() -> None:
    data = {"headers": ["A", "A"], "rows": []}
    resp = client.post("/v1/modify/plan", json={"data": data, "descriptor": {"operation": "delete"}})
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("invalid_dataset:duplicate_header")


def test_apply_returns_new_dataset() -> None:
    body = {
        "data": CLIENTS,
        "modifications": [
            {"operation": "update", "rowIndex": 0, "data": {"PriorityLevel": "4"}},
            {"operation": "delete", "rowIndex": 1},
        ],
    }
    resp = client.post("/v1/modify/apply", json=body)
    assert resp.status_code == 200
    out = resp.json()
    assert out["success"] is True
    assert out["affectedRows"] == 2
    assert out["data"]["rows"] == [{"ClientID": "C1", "ClientName": "Acme", "PriorityLevel": "4"}]


def test_apply_rejects_out_of_bounds_and_malformed() -> None:
    body = {"data": CLIENTS, "modifications": [{"operation": "delete", "rowIndex": 9}, {"operation": "add"}]}
    resp = client.post("/v1/modify/apply", json=body)
    assert resp.status_code == 400
    codes = [e["code"] for e in resp.json()["detail"]["errors"]]
    assert codes == ["out_of_bounds_row_index", "malformed_modification"]

    bad = client.post("/v1/modify/apply", json={"data": CLIENTS, "modifications": [{"operation": "delete", "rowIndex": "x"}]})
    assert bad.status_code == 400
    assert bad.json()["detail"]["errors"][0]["code"] == "malformed_modification"


def test_filter_with_expression() -> None:
    body = {"data": WORKERS, "query": "workers", "sheet": "workers", "expression": "worker.WorkerName.startsWith('A')"}
    out = client.post("/v1/query/filter", json=body).json()
    assert out["source"] == "expression"
    assert out["matchedIndices"] == [1]
    assert out["totalRows"] == 3


def test_filter_falls_back_to_instruction_pattern() -> None:
    body = {"data": WORKERS, "query": "workers whose name begins with the letter 'B'", "expression": "nope("}
    out = client.post("/v1/query/filter", json=body).json()
    assert out["sheet"] == "workers"
    assert out["source"] == "fallback"
    assert out["matchedIndices"] == [0, 2]
    assert [r["WorkerID"] for r in out["filteredRows"]] == ["W1", "W3"]


def test_filter_truncates_preview_rows() -> None:
    editor_main.MAX_PREVIEW_ROWS = 1
    body = {"data": WORKERS, "query": "all", "sheet": "workers", "expression": "true"}
    out = client.post("/v1/query/filter", json=body).json()
    assert out["matchedIndices"] == [0, 1, 2]
    assert len(out["filteredRows"]) == 1
    assert out["truncated"] is True


def test_columns_map_local_and_candidates() -> None:
    local = client.post("/v1/columns/map", json={"fileType": "clients", "headers": ["client_id", "Priority"]}).json()
    assert local["fallback"] is True
    assert {(m["originalHeader"], m["suggestedHeader"]) for m in local["mappings"]} == {
        ("client_id", "ClientID"),
        ("Priority", "PriorityLevel"),
    }
    assert "ClientName" in local["missingColumns"]

    body = {
        "fileType": "clients",
        "headers": ["cid"],
        "mappings": [{"originalHeader": "cid", "suggestedHeader": "ClientID", "confidence": 0.9}],
    }
    given = client.post("/v1/columns/map", json=body).json()
    assert given["fallback"] is False
    assert given["mappings"][0]["suggestedHeader"] == "ClientID"


def test_columns_map_rejects_unknown_file_type() -> None:
    resp = client.post("/v1/columns/map", json={"fileType": "projects", "headers": ["a"]})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "invalid_file_type"


def test_dataset_load_from_base64_csv() -> None:
    raw = base64.b64encode(b"TaskID,Duration\nT1, 3\n").decode("ascii")
    resp = client.post("/v1/dataset/load", json={"filename": "tasks.csv", "data_b64": raw})
    assert resp.status_code == 200
    assert resp.json() == {"headers": ["TaskID", "Duration"], "rows": [{"TaskID": "T1", "Duration": "3"}]}

    bad = client.post("/v1/dataset/load", json={"filename": "tasks.csv", "data_b64": "***"})
    assert bad.status_code == 400
    assert bad.json()["detail"] == "invalid_base64"


def test_apply_rejects_repeated_delete_index() -> None:
    repeated = [{"operation": "delete", "rowIndex": 1}, {"operation": "delete", "rowIndex": 1}]
    body = {"data": CLIENTS, "modifications": repeated}
    resp = client.post("/v1/modify/apply", json=body)
    assert resp.status_code == 400
    errors = resp.json()["detail"]["errors"]
    assert [e["code"] for e in errors] == ["malformed_modification"]
    assert errors[0]["details"]["rowIndex"] == 1


def test_dataset_validate_reports_issues() -> None:
    data = {
        "headers": ["ClientID", "ClientName", "PriorityLevel"],
        "rows": [
            {"ClientID": "C1", "ClientName": "Acme", "PriorityLevel": "2"},
            {"ClientID": "C1", "ClientName": "Beta", "PriorityLevel": "8"},
        ],
    }
    resp = client.post("/v1/dataset/validate", json={"data": data, "sheet": "clients"})
    assert resp.status_code == 200
    out = resp.json()
    assert out["isValid"] is False
    assert [i["category"] for i in out["issues"]] == ["missing_columns", "duplicate_ids", "out_of_range"]
    assert out["issues"][0]["missingColumns"] == ["RequestedTaskIDs", "GroupTag", "AttributesJSON"]
    assert out["issues"][1]["rowIndex"] == 1

    bad = client.post("/v1/dataset/validate", json={"data": data, "sheet": "projects"})
    assert bad.status_code == 400
    assert bad.json()["detail"] == "invalid_file_type"
