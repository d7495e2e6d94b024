"""Single-table checks run over an uploaded clients/workers/tasks sheet.

Each check returns a list of issues and never mutates the dataset. Row numbers
on issues are zero-based snapshot indices, the same ones modifications use;
messages quote the one-based row a spreadsheet user sees.
"""

import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from pipelines.lib.engine_config import DEFAULT_CONFIG, EngineConfig
from pipelines.lib.table_models import Dataset
from pipelines.lib.type_coercion import cell_text, is_blank, parse_float_prefix, unwrap_scalar

ERROR = "error"
WARNING = "warning"

ID_COLUMNS: Mapping[str, str] = MappingProxyType({"clients": "ClientID", "workers": "WorkerID", "tasks": "TaskID"})

TEXT_LIST_COLUMNS: Mapping[str, Tuple[str, ...]] = MappingProxyType(
    {"clients": ("RequestedTaskIDs",), "workers": ("Skills",), "tasks": ("RequiredSkills",)}
)

NUMERIC_LIST_COLUMNS: Mapping[str, Tuple[str, ...]] = MappingProxyType({"workers": ("AvailableSlots",)})

# column -> (min, max); None leaves that side open.
VALUE_RANGES: Mapping[str, Mapping[str, Tuple[Optional[float], Optional[float]]]] = MappingProxyType(
    {
        "clients": {"PriorityLevel": (1, 5)},
        "workers": {"QualificationLevel": (1, 10)},
        "tasks": {"Duration": (0.1, None), "MaxConcurrent": (1, None)},
    }
)

JSON_COLUMNS: Mapping[str, Tuple[str, ...]] = MappingProxyType({"clients": ("AttributesJSON",)})


@dataclass
class ValidationIssue:
    category: str
    message: str
    sheet: str
    severity: str = ERROR
    row_index: Optional[int] = None
    column: Optional[str] = None
    value: Any = None
    suggestion: str = ""
    fixable: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.severity,
            "category": self.category,
            "message": self.message,
            "sheet": self.sheet,
            "suggestion": self.suggestion,
            "fixable": self.fixable,
        }
        if self.row_index is not None:
            out["rowIndex"] = self.row_index
        if self.column is not None:
            out["column"] = self.column
            out["value"] = unwrap_scalar(self.value)
        out.update(self.extra)
        return out


@dataclass
class ValidationReport:
    sheet: str
    issues: List[ValidationIssue] = field(default_factory=list)

    def count(self, severity: str) -> int:
        return sum(1 for issue in self.issues if issue.severity == severity)

    @property
    def is_valid(self) -> bool:
        return self.count(ERROR) == 0

    def to_dict(self) -> Dict[str, Any]:
        issues = []
        for n, issue in enumerate(self.issues):
            item = issue.to_dict()
            item["id"] = f"issue_{n}"
            issues.append(item)
        return {
            "sheet": self.sheet,
            "isValid": self.is_valid,
            "issues": issues,
            "summary": {
                "total": len(self.issues),
                "errors": self.count(ERROR),
                "warnings": self.count(WARNING),
                "info": self.count("info"),
            },
        }


Check = Callable[[str, Dataset, EngineConfig], List[ValidationIssue]]


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def check_missing_columns(sheet: str, dataset: Dataset, config: EngineConfig = DEFAULT_CONFIG) -> List[ValidationIssue]:
    required = config.required_headers(sheet) or ()
    missing = [c for c in required if c not in dataset.headers]
    unexpected = [h for h in dataset.headers if h not in required]
    if not missing and not unexpected:
        return []
    if missing and unexpected:
        message = (
            f"Header issues in sheet '{sheet}': missing {_plural(len(missing), 'required column')}, "
            f"{_plural(len(unexpected), 'unexpected column')}"
        )
    elif missing:
        message = f"Missing {_plural(len(missing), 'required column')} in sheet '{sheet}': {', '.join(missing)}"
    else:
        message = f"{_plural(len(unexpected), 'unexpected column')} in sheet '{sheet}': {', '.join(unexpected)}"
    return [
        ValidationIssue(
            category="missing_columns",
            message=message,
            sheet=sheet,
            suggestion=f"Fix header issues in {sheet} sheet",
            extra={"missingColumns": missing, "unexpectedColumns": unexpected},
        )
    ]


def check_duplicate_ids(sheet: str, dataset: Dataset, config: EngineConfig = DEFAULT_CONFIG) -> List[ValidationIssue]:
    column = ID_COLUMNS.get(sheet)
    if column is None or column not in dataset.headers:
        return []
    issues: List[ValidationIssue] = []
    seen: Dict[str, int] = {}
    for i, row in enumerate(dataset.rows):
        value = cell_text(row.get(column)).strip()
        if not value:
            issues.append(
                ValidationIssue(
                    category="duplicate_ids",
                    message=f"Empty {column} in row {i + 1}",
                    sheet=sheet,
                    row_index=i,
                    column=column,
                    value=row.get(column),
                    suggestion=f"Provide a unique {column}",
                )
            )
            continue
        if value in seen:
            issues.append(
                ValidationIssue(
                    category="duplicate_ids",
                    message=f"Duplicate {column} '{value}' found in row {i + 1}",
                    sheet=sheet,
                    row_index=i,
                    column=column,
                    value=value,
                    suggestion=f"Change '{value}' to a unique identifier",
                    extra={"firstRowIndex": seen[value]},
                )
            )
        else:
            seen[value] = i
    return issues


def _numeric_list_error(value: Any) -> Optional[str]:
    value = unwrap_scalar(value)
    if isinstance(value, bool):
        return "Value must be a list of numbers"
    if isinstance(value, (int, float)):
        return None
    if isinstance(value, (list, tuple)):
        items = list(value)
    else:
        text = str(value).strip()
        if text.startswith("[") and text.endswith("]"):
            try:
                items = json.loads(text)
            except ValueError as exc:
                return f"Invalid JSON array: {exc}"
            if not isinstance(items, list):
                return "Not an array"
        else:
            items = [part.strip() for part in text.split(",") if part.strip()]
    for item in items:
        if isinstance(item, bool) or parse_float_prefix(item) is None:
            return f"Invalid number: {cell_text(item)}"
    return None


def check_malformed_lists(sheet: str, dataset: Dataset, config: EngineConfig = DEFAULT_CONFIG) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    for column in NUMERIC_LIST_COLUMNS.get(sheet, ()):
        if column not in dataset.headers:
            continue
        for i, row in enumerate(dataset.rows):
            value = row.get(column)
            if is_blank(value):
                continue
            error = _numeric_list_error(value)
            if error:
                issues.append(
                    ValidationIssue(
                        category="malformed_lists",
                        message=f"Invalid numeric list in {column} at row {i + 1}: {error}",
                        sheet=sheet,
                        row_index=i,
                        column=column,
                        value=value,
                        suggestion='Use comma-separated numbers (e.g., "1,2,3")',
                    )
                )
    for column in TEXT_LIST_COLUMNS.get(sheet, ()):
        if column not in dataset.headers:
            continue
        for i, row in enumerate(dataset.rows):
            value = row.get(column)
            if not isinstance(value, str) or not value:
                continue
            if not [part for part in value.split(",") if part.strip()]:
                issues.append(
                    ValidationIssue(
                        category="malformed_lists",
                        message=f"Empty list in {column} at row {i + 1}",
                        sheet=sheet,
                        severity=WARNING,
                        row_index=i,
                        column=column,
                        value=value,
                        suggestion="Provide at least one item or leave cell empty",
                    )
                )
    return issues


def _range_text(low: Optional[float], high: Optional[float]) -> str:
    if low is not None and high is not None:
        return f"between {cell_text(low)} and {cell_text(high)}"
    if low is not None:
        return f">= {cell_text(low)}"
    if high is not None:
        return f"<= {cell_text(high)}"
    return ""


def check_out_of_range(sheet: str, dataset: Dataset, config: EngineConfig = DEFAULT_CONFIG) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    for column, (low, high) in VALUE_RANGES.get(sheet, {}).items():
        if column not in dataset.headers:
            continue
        for i, row in enumerate(dataset.rows):
            value = row.get(column)
            if is_blank(value):
                continue
            num = None if isinstance(unwrap_scalar(value), bool) else parse_float_prefix(value)
            if num is None:
                issues.append(
                    ValidationIssue(
                        category="out_of_range",
                        message=f"Invalid number '{cell_text(value)}' in {column} at row {i + 1}",
                        sheet=sheet,
                        row_index=i,
                        column=column,
                        value=value,
                        suggestion="Enter a valid number",
                    )
                )
                continue
            if (low is not None and num < low) or (high is not None and num > high):
                bounds = _range_text(low, high)
                issues.append(
                    ValidationIssue(
                        category="out_of_range",
                        message=f"Value {cell_text(num)} in {column} at row {i + 1} is out of range {bounds}",
                        sheet=sheet,
                        row_index=i,
                        column=column,
                        value=value,
                        suggestion=f"Enter a value {bounds}",
                    )
                )
    return issues


def _json_object_error(value: Any) -> Optional[str]:
    value = unwrap_scalar(value)
    if isinstance(value, dict):
        return None
    if not isinstance(value, str):
        return "Value is not a string"
    try:
        parsed = json.loads(value.strip())
    except ValueError as exc:
        return str(exc)
    if parsed is None:
        return "Parsed value is null (expected JSON object)"
    if isinstance(parsed, list):
        return "Parsed value is an array (expected JSON object)"
    if not isinstance(parsed, dict):
        return "Parsed value is not a JSON object"
    return None


def check_json_fields(sheet: str, dataset: Dataset, config: EngineConfig = DEFAULT_CONFIG) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    for column in JSON_COLUMNS.get(sheet, ()):
        if column not in dataset.headers:
            continue
        for i, row in enumerate(dataset.rows):
            value = row.get(column)
            if is_blank(value) or (isinstance(value, str) and not value.strip()):
                continue
            error = _json_object_error(value)
            if error:
                issues.append(
                    ValidationIssue(
                        category="json_fields",
                        message=f"Invalid JSON in {column} at row {i + 1}: {error}",
                        sheet=sheet,
                        row_index=i,
                        column=column,
                        value=value,
                        suggestion="Ensure the JSON is properly formatted with quotes around keys and string values",
                    )
                )
    return issues


CHECKS: Tuple[Check, ...] = (
    check_missing_columns,
    check_duplicate_ids,
    check_malformed_lists,
    check_out_of_range,
    check_json_fields,
)


def validate_dataset(sheet: str, dataset: Dataset, config: EngineConfig = DEFAULT_CONFIG) -> ValidationReport:
    """Run every single-table check for ``sheet`` and collect the issues in check order."""
    name = str(sheet or "").strip().lower()
    if config.required_headers(name) is None:
        raise ValueError(f"invalid_file_type:{sheet}")
    report = ValidationReport(sheet=name)
    for check in CHECKS:
        report.issues.extend(check(name, dataset, config))
    logging.info(
        "event=dataset_validated sheet=%s rows=%s errors=%s warnings=%s",
        name,
        len(dataset),
        report.count(ERROR),
        report.count(WARNING),
    )
    return report
