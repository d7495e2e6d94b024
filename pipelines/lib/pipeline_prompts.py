import json
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pipelines.lib.type_coercion import cell_text

JSON_ONLY_GUARD = (
    "STRICT JSON MODE.\n"
    "You must output exactly one JSON object and nothing else.\n"
    "The first character must be {.\n"
    "The last character must be }.\n"
    "Forbidden: explanations, reasoning, markdown, code fences, comments, prefix or suffix text.\n"
    "Never ask questions. Never refuse. Never echo the user instruction."
)

JSON_RETRY_GUARD = (
    "STRICT JSON RETRY MODE. "
    "Output exactly one minified JSON object. "
    "No prose, no markdown, no explanations, no <think>, no extra keys, no prefix/suffix."
)

DEFAULT_MODIFY_SYSTEM = (
    "You are a data modification assistant. Analyze the user's request and return a simple JSON response.\n"
    "\n"
    "Available operations:\n"
    '- "update": modify existing rows\n'
    '- "delete": remove rows\n'
    '- "add": insert one new row\n'
    "\n"
    "Response format (REQUIRED):\n"
    "{\n"
    '  "operation": "update",\n'
    '  "column": "FieldName",\n'
    '  "conditions": [\n'
    '    {"column": "ColumnName", "operator": "equals", "value": "value_to_compare"}\n'
    "  ],\n"
    '  "newValue": "new_value_for_updates",\n'
    '  "newRow": {"Column": "value"},\n'
    '  "summary": "Brief description"\n'
    "}\n"
    "\n"
    "Allowed operators: equals, not_equals, contains, not_contains, starts_with, ends_with, "
    "greater_than, less_than, in, not_in. Use a list value only with in / not_in.\n"
    "All conditions are combined with AND. An empty conditions list means every row.\n"
    "newRow is only used with add; column and newValue are only used with update.\n"
    "\n"
    "Examples:\n"
    '"Set all PriorityLevel to 5" -> '
    '{"operation": "update", "column": "PriorityLevel", "conditions": [], "newValue": "5", '
    '"summary": "Set all PriorityLevel to 5"}\n'
    '"Set PriorityLevel to 4 for all clients except those already at 5" -> '
    '{"operation": "update", "column": "PriorityLevel", '
    '"conditions": [{"column": "PriorityLevel", "operator": "not_equals", "value": "5"}], '
    '"newValue": "4", "summary": "Set PriorityLevel to 4 except those at 5"}\n'
    '"Update QualificationLevel to Senior for Backend and QA workers only" -> '
    '{"operation": "update", "column": "QualificationLevel", '
    '"conditions": [{"column": "WorkerGroup", "operator": "in", "value": ["Backend", "QA"]}], '
    '"newValue": "Senior", "summary": "Update Backend and QA workers to Senior"}\n'
    '"Delete inactive clients" -> '
    '{"operation": "delete", "conditions": [{"column": "Status", "operator": "equals", "value": "inactive"}], '
    '"summary": "Delete inactive clients"}\n'
    '"Tasks that include phase 1 but not phase 3 get phase 5" -> '
    '{"operation": "update", "column": "PreferredPhases", "conditions": ['
    '{"column": "PreferredPhases", "operator": "contains", "value": "1"}, '
    '{"column": "PreferredPhases", "operator": "not_contains", "value": "3"}], '
    '"newValue": "5", "summary": "Assign phase 5 to tasks with phase 1 but not phase 3"}\n'
    "\n"
    "Key patterns to recognize:\n"
    '- "enterprise clients" = filter by GroupTag=enterprise\n'
    '- "Frontend workers" = filter by WorkerGroup=Frontend\n'
    '- "Development tasks" = filter by Category=Development\n'
    "Only use column names from the available columns list."
)

DEFAULT_FILTER_SYSTEM = (
    "You are a JavaScript expression generator. Convert the user's natural language query into one boolean "
    "JavaScript expression that filters rows of a table.\n"
    "CRITICAL: Return ONLY the expression. No 'return' keyword, no function wrapper, no markdown, no comments.\n"
    "Allowed building blocks: field access on the row object, string/number/boolean literals, "
    "=== !== == != > < >= <= && || ! ??, arrays, "
    "String(), Number(), Boolean(), parseInt(), parseFloat(), Array.isArray(), "
    ".toLowerCase() .toUpperCase() .trim() .startsWith() .endsWith() .includes() .indexOf() .join() .length, "
    "and .some(x => ...) / .every(x => ...) on arrays.\n"
    "Use String(field || '').toLowerCase() for case-insensitive comparisons."
)

DEFAULT_COLUMN_MAPPING_SYSTEM = (
    "You are an expert data analyst specializing in column mapping for business data files. "
    "Map misnamed or rearranged uploaded columns to their required schema names.\n"
    "Guidelines:\n"
    "- IDs (C001, W123, T-45, client_1) map to ClientID, WorkerID, TaskID.\n"
    "- Names (John Doe, Acme Corp, Data Analysis) map to ClientName, WorkerName, TaskName.\n"
    "- Numbers 1-5 map to PriorityLevel; skill lists map to Skills or RequiredSkills.\n"
    "- Time values map to Duration or AvailableSlots; JSON-like text maps to AttributesJSON.\n"
    "- Groups and categories map to WorkerGroup, Category, GroupTag; levels map to QualificationLevel.\n"
    "Rules:\n"
    "- Only suggest mappings with confidence >= 0.7.\n"
    "- Each original column maps to at most one target and each target is used at most once.\n"
    "- Include short reasoning for each mapping.\n"
    'Response format: {"mappings": [{"originalHeader": "client_id", "suggestedHeader": "ClientID", '
    '"confidence": 0.95, "reasoning": "..."}], "unmappedColumns": [], "missingColumns": [], "confidence": 0.9}'
)


def build_modify_user_prompt(headers: Sequence[str], row_count: int, instruction: str) -> str:
    return (
        f"Available columns: {', '.join(str(h) for h in headers)}\n"
        f"Total rows: {int(row_count)}\n\n"
        f"User instruction: {instruction}\n\n"
        "Analyze this instruction and respond with the exact JSON format specified."
    )


def _type_label(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, (list, tuple)):
        return "array"
    if value is None:
        return "empty"
    return "string"


def build_filter_user_prompt(
    sheet: str,
    handle: str,
    headers: Sequence[str],
    sample_row: Optional[Mapping[str, Any]],
    query: str,
) -> str:
    sample_row = sample_row or {}
    schema_lines = [
        f"{h}: {_type_label(sample_row.get(h))} (example: \"{cell_text(sample_row.get(h))}\")" for h in headers
    ]
    examples = (
        f"- \"workers whose name starts with A\" -> String({handle}.WorkerName || '').toLowerCase().startsWith('a')\n"
        f"- \"tasks longer than 2 phases\" -> {handle}.Duration > 2\n"
        f"- \"workers with JavaScript skills\" -> ({handle}.Skills || []).some(s => "
        "String(s).toLowerCase().includes('javascript'))\n"
        f"- \"tasks that prefer phase 3\" -> ({handle}.PreferredPhases || []).includes(3)"
    )
    return (
        f"Data schema for {sheet}:\n"
        + "\n".join(schema_lines)
        + f"\n\nUser query: \"{query}\"\n\n"
        f"The row object is named '{handle}'. Skills, AvailableSlots, RequiredSkills and PreferredPhases are arrays; "
        "Duration, PriorityLevel and MaxConcurrent are numbers.\n"
        f"Examples:\n{examples}\n\n"
        "Return ONLY the JavaScript expression:"
    )


def format_sample_data(sample_data: Optional[Mapping[str, Any]]) -> str:
    if not sample_data:
        return "No sample data available"
    lines: List[str] = []
    for column, values in sample_data.items():
        seq = values if isinstance(values, (list, tuple)) else [values]
        shown = ", ".join(json.dumps(v, ensure_ascii=False) if isinstance(v, str) else cell_text(v) for v in seq[:3])
        lines.append(f"{column}: [{shown}]")
    return "\n".join(lines)


def build_column_mapping_user_prompt(
    file_type: str,
    headers: Sequence[str],
    required_headers: Sequence[str],
    sample_data: Optional[Mapping[str, Any]] = None,
) -> str:
    payload: Dict[str, Any] = {
        "file_type": file_type,
        "current_headers": list(headers),
        "required_schema": list(required_headers),
    }
    return (
        json.dumps(payload, ensure_ascii=False)
        + "\n\nSample data (first 3 values per column):\n"
        + format_sample_data(sample_data)
    )
