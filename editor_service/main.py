import base64
import binascii
import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from pipelines.lib.dataset_io import load_dataset
from pipelines.lib.dataset_validation import validate_dataset
from pipelines.lib.engine_config import EngineConfig
from pipelines.lib.engine_errors import EngineError
from pipelines.lib.expression_compiler import ExpressionCompiler, filter_payload, run_filter
from pipelines.lib.mutation_planner import MutationPlanner, apply_modifications, parse_modifications, validate_modifications
from pipelines.lib.query_signals import detect_target_sheet
from pipelines.lib.request_logging import REQUEST_ID_CTX, extract_request_id, install_request_id_filter
from pipelines.lib.schema_reconciler import SchemaReconciler
from pipelines.lib.table_models import Dataset


app = FastAPI()

EDITOR_API_KEY = os.getenv("EDITOR_API_KEY", "")
MAX_PREVIEW_ROWS = int(os.getenv("MAX_PREVIEW_ROWS", "500"))
MAX_UPLOAD_ROWS = int(os.getenv("MAX_UPLOAD_ROWS", "200000"))

CONFIG = EngineConfig.from_env()
PLANNER = MutationPlanner(CONFIG)
COMPILER = ExpressionCompiler(CONFIG)
RECONCILER = SchemaReconciler(CONFIG)

logging.basicConfig(level=logging.INFO)
install_request_id_filter()


class DatasetPayload(BaseModel):
    headers: Optional[List[str]] = None
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class LoadRequest(BaseModel):
    filename: Optional[str] = None
    content_type: Optional[str] = None
    data_b64: str


class PlanRequest(BaseModel):
    data: DatasetPayload
    descriptor: Dict[str, Any]
    tableName: Optional[str] = None


class ApplyRequest(BaseModel):
    data: DatasetPayload
    modifications: List[Any]


class FilterRequest(BaseModel):
    data: DatasetPayload
    query: str = ""
    expression: Optional[str] = None
    sheet: Optional[str] = None


class ValidateRequest(BaseModel):
    data: DatasetPayload
    sheet: str


class ColumnMapRequest(BaseModel):
    fileType: str
    headers: List[str]
    sampleData: Optional[Dict[str, Any]] = None
    mappings: Optional[List[Any]] = None


def _require_auth(request: Request) -> None:
    if not EDITOR_API_KEY:
        return
    auth = request.headers.get("authorization", "")
    if auth != f"Bearer {EDITOR_API_KEY}":
        raise HTTPException(status_code=401, detail="unauthorized")


def _dataset(payload: DatasetPayload) -> Dataset:
    try:
        return Dataset.from_records(payload.headers, payload.rows)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid_dataset:{exc}")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = extract_request_id(dict(request.headers))
    token = REQUEST_ID_CTX.set(request_id)
    try:
        response = await call_next(request)
    finally:
        REQUEST_ID_CTX.reset(token)
    response.headers["x-request-id"] = request_id
    return response


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/v1/dataset/load")
def dataset_load(req: LoadRequest, request: Request) -> dict:
    _require_auth(request)
    try:
        data = base64.b64decode(req.data_b64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="invalid_base64")
    try:
        dataset = load_dataset(data, req.filename or "", req.content_type or "", MAX_UPLOAD_ROWS)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"read_error:{exc}")
    return dataset.to_payload()


@app.post("/v1/dataset/validate")
def dataset_validate(req: ValidateRequest, request: Request) -> dict:
    _require_auth(request)
    dataset = _dataset(req.data)
    try:
        report = validate_dataset(req.sheet, dataset, CONFIG)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_file_type")
    return report.to_dict()


@app.post("/v1/modify/plan")
def modify_plan(req: PlanRequest, request: Request) -> dict:
    _require_auth(request)
    dataset = _dataset(req.data)
    result = PLANNER.plan(req.descriptor, dataset)
    out = result.to_dict(target=req.tableName)
    if not result.ok:
        raise HTTPException(status_code=400, detail=out)
    return out


@app.post("/v1/modify/apply")
def modify_apply(req: ApplyRequest, request: Request) -> dict:
    _require_auth(request)
    dataset = _dataset(req.data)
    try:
        modifications = parse_modifications(req.modifications)
    except EngineError as exc:
        raise HTTPException(status_code=400, detail={"success": False, "errors": [exc.to_dict()]})
    errors = validate_modifications(modifications, dataset)
    if errors:
        logging.warning("event=apply_rejected errors=%s", len(errors))
        raise HTTPException(status_code=400, detail={"success": False, "errors": [e.to_dict() for e in errors]})
    return apply_modifications(dataset, modifications).to_dict()


@app.post("/v1/query/filter")
def query_filter(req: FilterRequest, request: Request) -> dict:
    _require_auth(request)
    dataset = _dataset(req.data)
    sheet = (req.sheet or "").strip().lower() or detect_target_sheet(req.query)
    outcome = COMPILER.build_filter(req.expression, req.query, dataset, sheet=sheet)
    result = run_filter(dataset, outcome)
    out = filter_payload(req.query, sheet, outcome, result)
    if len(out["filteredRows"]) > MAX_PREVIEW_ROWS:
        out["filteredRows"] = out["filteredRows"][:MAX_PREVIEW_ROWS]
        out["truncated"] = True
    return out


@app.post("/v1/columns/map")
def columns_map(req: ColumnMapRequest, request: Request) -> dict:
    _require_auth(request)
    try:
        result = RECONCILER.reconcile_file_type(req.fileType, req.headers, req.mappings)
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid_file_type")
    result.fallback = req.mappings is None
    return result.to_dict()
