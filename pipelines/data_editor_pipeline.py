import json
import logging
import os
import time
from typing import Any, ClassVar, Dict, List, Mapping, Optional

from openai import OpenAI
from pydantic import BaseModel, Field

from pipelines.lib.engine_config import EngineConfig
from pipelines.lib.expression_compiler import ExpressionCompiler, filter_payload, run_filter
from pipelines.lib.llm_parsing import parse_json_dict_from_llm, safe_trunc, strip_llm_reasoning_sections
from pipelines.lib.mutation_planner import MutationPlanner
from pipelines.lib.pipeline_prompts import (
    DEFAULT_COLUMN_MAPPING_SYSTEM,
    DEFAULT_FILTER_SYSTEM,
    DEFAULT_MODIFY_SYSTEM,
    JSON_ONLY_GUARD,
    JSON_RETRY_GUARD,
    build_column_mapping_user_prompt,
    build_filter_user_prompt,
    build_modify_user_prompt,
)
from pipelines.lib.query_signals import detect_target_sheet, row_handle_for
from pipelines.lib.request_logging import REQUEST_ID_CTX, extract_request_id, install_request_id_filter
from pipelines.lib.schema_reconciler import SchemaReconciler
from pipelines.lib.table_models import Dataset
from pipelines.lib.type_coercion import coerce_row


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _error(code: str, message: str, **details: Any) -> Dict[str, Any]:
    return {"success": False, "error": {"code": code, "message": message, "details": details}}


class Pipeline(object):
    class Valves(BaseModel):
        id: str = Field(default=os.getenv("PIPELINE_ID", "table-editor"))
        name: str = Field(default=os.getenv("PIPELINE_NAME", "Table Editor"))
        description: str = Field(
            default=os.getenv(
                "PIPELINE_DESCRIPTION", "Edit, filter and map clients/workers/tasks tables with natural language."
            )
        )
        debug: bool = Field(default=os.getenv("PIPELINE_DEBUG", "").lower() in ("1", "true", "yes", "on"))

        base_llm_base_url: str = Field(default=os.getenv("BASE_LLM_BASE_URL", "http://localhost:8000/v1"))
        base_llm_api_key: str = Field(default=os.getenv("BASE_LLM_API_KEY", ""))
        base_llm_model: str = Field(default=os.getenv("BASE_LLM_MODEL", "gpt-4o-mini"))
        base_llm_timeout_s: int = Field(default=_env_int("BASE_LLM_TIMEOUT_S", 45), ge=1)
        base_llm_max_retries: int = Field(default=_env_int("BASE_LLM_MAX_RETRIES", 1), ge=0)
        llm_json_max_tokens: int = Field(default=_env_int("LLM_JSON_MAX_TOKENS", 512), ge=64)
        llm_text_max_tokens: int = Field(default=_env_int("LLM_TEXT_MAX_TOKENS", 256), ge=32)

    api_version: ClassVar[str] = "v1"

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.valves = self.Valves()
        logging.basicConfig(level=logging.INFO)
        install_request_id_filter()
        self.config = config or EngineConfig.from_env()
        self.planner = MutationPlanner(self.config)
        self.compiler = ExpressionCompiler(self.config)
        self.reconciler = SchemaReconciler(self.config)
        self._llm = OpenAI(
            base_url=self.valves.base_llm_base_url,
            api_key=self.valves.base_llm_api_key or "DUMMY_KEY",
            timeout=float(self.valves.base_llm_timeout_s),
            max_retries=int(self.valves.base_llm_max_retries),
        )

    def pipelines(self) -> List[dict]:
        return [{"id": self.valves.id, "name": self.valves.name}]

    def _chat_completion(self, messages: List[Dict[str, str]], max_tokens: int, force_json_mode: bool = False):
        kwargs: Dict[str, Any] = {
            "model": self.valves.base_llm_model,
            "messages": messages,
            "temperature": 0,
            "max_tokens": int(max_tokens),
        }
        if force_json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            return self._llm.chat.completions.create(**kwargs)
        except Exception as exc:
            if not force_json_mode:
                raise
            err = str(exc).lower()
            if not any(token in err for token in ("response_format", "json_object", "unsupported")):
                raise
            logging.info(
                "event=llm_json_response_format_fallback reason=unsupported_json_mode model=%s",
                self.valves.base_llm_model,
            )
            kwargs.pop("response_format", None)
            return self._llm.chat.completions.create(**kwargs)

    def _llm_json(self, system: str, user: str) -> dict:
        """One JSON object from the model, with a single stricter retry. Fails open to ``{}``."""
        guarded_system = f"{JSON_ONLY_GUARD}\n\n{system or ''}".strip()
        logging.info("event=llm_json_request user_preview=%s", safe_trunc(user, 1200))
        raw_text = ""
        started = time.monotonic()
        try:
            resp = self._chat_completion(
                [{"role": "system", "content": guarded_system}, {"role": "user", "content": user}],
                max_tokens=int(self.valves.llm_json_max_tokens),
                force_json_mode=True,
            )
            raw_text = (resp.choices[0].message.content or "").strip()
            try:
                parsed = parse_json_dict_from_llm(raw_text)
            except ValueError as first_parse_exc:
                logging.warning(
                    "event=llm_json_parse_retry reason=first_parse_failed error=%s raw_preview=%s",
                    str(first_parse_exc),
                    safe_trunc(raw_text, 800),
                )
                resp = self._chat_completion(
                    [
                        {"role": "system", "content": f"{JSON_RETRY_GUARD}\n\n{guarded_system}"},
                        {"role": "user", "content": user},
                    ],
                    max_tokens=max(int(self.valves.llm_json_max_tokens), 384),
                    force_json_mode=True,
                )
                raw_text = (resp.choices[0].message.content or "").strip()
                parsed = parse_json_dict_from_llm(raw_text)
            logging.info(
                "event=llm_json_response latency_ms=%s preview=%s",
                round((time.monotonic() - started) * 1000.0, 3),
                safe_trunc(parsed, 1200),
            )
            return parsed
        except Exception as exc:
            if raw_text:
                logging.warning("event=llm_json_non_json_response preview=%s", safe_trunc(raw_text, 1200))
            logging.warning("event=llm_json_fail_open error_type=%s error=%s", type(exc).__name__, str(exc))
            return {}

    def _llm_text(self, system: str, user: str) -> str:
        try:
            resp = self._chat_completion(
                [{"role": "system", "content": system}, {"role": "user", "content": user}],
                max_tokens=int(self.valves.llm_text_max_tokens),
            )
            raw_text = strip_llm_reasoning_sections(resp.choices[0].message.content or "")
        except Exception as exc:
            logging.warning("event=llm_text_fail_open error_type=%s error=%s", type(exc).__name__, str(exc))
            return ""
        logging.info("event=llm_text_response preview=%s", safe_trunc(raw_text, 800))
        return raw_text

    def modify(self, instruction: str, data: Mapping[str, Any], table_name: Optional[str] = None) -> Dict[str, Any]:
        if not str(instruction or "").strip():
            return _error("missing_instruction", "instruction is required")
        dataset = Dataset.from_payload(data)
        descriptor = self._llm_json(
            DEFAULT_MODIFY_SYSTEM, build_modify_user_prompt(dataset.headers, len(dataset.rows), instruction)
        )
        if not descriptor:
            return _error("llm_parse_error", "model did not return a JSON descriptor")

        result = self.planner.plan(descriptor, dataset)
        out = result.to_dict(target=table_name)
        if self.valves.debug:
            out["debug"] = {
                "parsedResponse": descriptor,
                "totalRows": len(dataset.rows),
                "modificationsGenerated": len(result.modifications),
            }
        return out

    def query(
        self,
        query: str,
        datasets: Mapping[str, Mapping[str, Any]],
        sheet: Optional[str] = None,
    ) -> Dict[str, Any]:
        sheet = sheet or detect_target_sheet(query)
        payload = (datasets or {}).get(sheet)
        if payload is None:
            logging.warning("event=query_missing_sheet sheet=%s", sheet)
            return {
                "query": query,
                "sheet": sheet,
                "filteredRows": [],
                "matchedIndices": [],
                "totalRows": 0,
                "filterFunction": "",
                "source": "none",
                "reason": "missing_sheet",
            }
        dataset = Dataset.from_payload(payload)
        handle = row_handle_for(sheet)
        sample = coerce_row(dataset.rows[0], dataset.headers) if dataset.rows else None
        raw_expression = self._llm_text(
            DEFAULT_FILTER_SYSTEM, build_filter_user_prompt(sheet, handle, dataset.headers, sample, query)
        )
        outcome = self.compiler.build_filter(raw_expression, query, dataset, sheet=sheet)
        return filter_payload(query, sheet, outcome, run_filter(dataset, outcome))

    def map_columns(
        self,
        file_type: str,
        headers: List[str],
        sample_data: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        required = self.config.required_headers(file_type)
        if required is None:
            return _error("invalid_file_type", "fileType must be clients, workers, or tasks", fileType=file_type)
        parsed = self._llm_json(
            DEFAULT_COLUMN_MAPPING_SYSTEM,
            build_column_mapping_user_prompt(file_type, headers, required, sample_data),
        )
        candidates = parsed.get("mappings")
        if not isinstance(candidates, list):
            logging.info("event=column_mapping_fallback reason=no_model_mappings file_type=%s", file_type)
            result = self.reconciler.reconcile(headers, required)
            result.fallback = True
        else:
            result = self.reconciler.reconcile(headers, required, candidates)
        return result.to_dict()

    def pipe(self, user_message: str, model_id: str, messages: List[dict], body: dict) -> str:
        body = body or {}
        token = REQUEST_ID_CTX.set(extract_request_id(body.get("headers"), body))
        try:
            mode = str(body.get("mode") or "modify").strip().lower()
            try:
                if mode == "query":
                    out = self.query(user_message, body.get("datasets") or {}, sheet=body.get("sheet"))
                elif mode == "map_columns":
                    out = self.map_columns(
                        str(body.get("fileType") or ""), list(body.get("columns") or []), body.get("sampleData")
                    )
                else:
                    out = self.modify(user_message, body.get("data") or {}, body.get("tableName"))
            except ValueError as exc:
                logging.warning("event=pipe_rejected mode=%s error=%s", mode, exc)
                out = _error("invalid_request", str(exc))
            return json.dumps(out, ensure_ascii=False, default=str)
        finally:
            REQUEST_ID_CTX.reset(token)
