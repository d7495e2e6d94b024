import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pipelines.lib.diff_preview import DiffPreviewer
from pipelines.lib.engine_config import DEFAULT_CONFIG, EngineConfig
from pipelines.lib.engine_errors import (
    EngineError,
    MalformedDescriptorError,
    MalformedModificationError,
    OutOfBoundsRowIndexError,
)
from pipelines.lib.predicates import matching_indices
from pipelines.lib.table_models import (
    OPERATION_KINDS,
    Dataset,
    Modification,
    OperationDescriptor,
    OperationKind,
    modifications_to_payload,
)
from pipelines.lib.type_coercion import cell_text, unwrap_scalar

_DECIMAL_TEXT_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")


def plan_modifications(descriptor: OperationDescriptor, dataset: Dataset) -> List[Modification]:
    """Expand a validated descriptor into row-level modifications in row order."""
    if descriptor.operation == OperationKind.ADD.value:
        return [Modification(operation=OperationKind.ADD.value, new_row=dict(descriptor.new_row or {}))]

    if descriptor.operation == OperationKind.UPDATE.value and descriptor.column not in dataset.headers:
        logging.warning("event=update_unknown_column column=%s", descriptor.column)

    out: List[Modification] = []
    for i in matching_indices(dataset, descriptor.conditions):
        if descriptor.operation == OperationKind.UPDATE.value:
            out.append(
                Modification(
                    operation=OperationKind.UPDATE.value,
                    row_index=i,
                    data={str(descriptor.column): descriptor.new_value},
                )
            )
        else:
            out.append(Modification(operation=OperationKind.DELETE.value, row_index=i))
    return out


def parse_modifications(payload: Any) -> List[Modification]:
    if not isinstance(payload, (list, tuple)):
        raise MalformedModificationError("modifications must be a list", received=type(payload).__name__)
    return [Modification.from_payload(item) for item in payload]


def validate_modifications(modifications: Sequence[Modification], dataset: Dataset) -> List[EngineError]:
    """Collect every structural problem instead of stopping at the first."""
    errors: List[EngineError] = []
    row_count = len(dataset.rows)
    deleted: Dict[int, int] = {}
    for position, mod in enumerate(modifications):
        if mod.operation not in OPERATION_KINDS:
            errors.append(
                MalformedModificationError(f"unknown operation: {mod.operation}", position=position)
            )
            continue
        if mod.operation == OperationKind.ADD.value:
            if mod.new_row is None:
                errors.append(MalformedModificationError("add operation requires newRow", position=position))
            continue
        if mod.row_index is None:
            errors.append(
                MalformedModificationError(f"{mod.operation} operation requires rowIndex", position=position)
            )
        elif not 0 <= mod.row_index < row_count:
            errors.append(
                OutOfBoundsRowIndexError(
                    f"rowIndex {mod.row_index} outside [0, {row_count})",
                    position=position,
                    rowIndex=mod.row_index,
                    rowCount=row_count,
                )
            )
        elif mod.operation == OperationKind.DELETE.value:
            # A snapshot row is deleted at most once.
            if mod.row_index in deleted:
                errors.append(
                    MalformedModificationError(
                        f"rowIndex {mod.row_index} is deleted more than once",
                        position=position,
                        rowIndex=mod.row_index,
                        firstPosition=deleted[mod.row_index],
                    )
                )
            else:
                deleted[mod.row_index] = position
        if mod.operation == OperationKind.UPDATE.value and not mod.data:
            errors.append(MalformedModificationError("update operation requires data", position=position))
    return errors


def _js_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    return "object"


def preserve_data_type(original: Any, new_value: Any) -> Any:
    """Convert ``new_value`` toward the type already stored in the cell."""
    original = unwrap_scalar(original)
    new_value = unwrap_scalar(new_value)
    if original is None:
        return new_value
    kind = _js_type(original)
    if kind == _js_type(new_value):
        return new_value

    if kind == "number":
        text = cell_text(new_value).strip()
        if not _DECIMAL_TEXT_RE.match(text):
            return new_value
        num = float(text)
        if not math.isfinite(num):
            return new_value
        if isinstance(original, int) and num.is_integer():
            return int(num)
        return num
    if kind == "boolean":
        if isinstance(new_value, str):
            return new_value.strip().lower() == "true"
        return bool(new_value)
    if kind == "string":
        return cell_text(new_value)
    if kind == "array":
        if isinstance(new_value, str):
            try:
                parsed = json.loads(new_value)
            except ValueError:
                return [part.strip() for part in new_value.split(",")]
            return parsed if isinstance(parsed, list) else [new_value]
        return list(new_value) if isinstance(new_value, (list, tuple)) else [new_value]
    return new_value


@dataclass
class ApplyResult:
    dataset: Dataset
    affected_rows: int

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "data": self.dataset.to_payload(), "affectedRows": self.affected_rows}


def _apply_order(mod: Modification) -> tuple:
    # Non-deletes first in ascending index, then deletes from the bottom up.
    if mod.operation == OperationKind.DELETE.value:
        return (1, -(mod.row_index or 0))
    return (0, mod.row_index or 0)


def apply_modifications(dataset: Dataset, modifications: Sequence[Modification]) -> ApplyResult:
    """Return a new dataset with the modifications applied; the input is untouched.

    Raises the first validation error when the list is not applicable.
    """
    errors = validate_modifications(modifications, dataset)
    if errors:
        raise errors[0]

    rows: List[Dict[str, Any]] = [dict(r) for r in dataset.rows]
    affected = 0
    for mod in sorted(modifications, key=_apply_order):
        if mod.operation == OperationKind.UPDATE.value:
            original = dataset.rows[mod.row_index]
            updated = dict(rows[mod.row_index])
            for key, value in (mod.data or {}).items():
                updated[key] = preserve_data_type(original.get(key), value)
            rows[mod.row_index] = updated
            affected += 1
        elif mod.operation == OperationKind.DELETE.value:
            del rows[mod.row_index]
            affected += 1
        else:
            new_row = mod.new_row or {}
            complete = {}
            for header in dataset.headers:
                value = new_row.get(header)
                complete[header] = "" if value is None else value
            rows.append(complete)
            affected += 1

    logging.info("event=modifications_applied affected_rows=%s rows_after=%s", affected, len(rows))
    return ApplyResult(dataset=Dataset(headers=dataset.headers, rows=tuple(rows)), affected_rows=affected)


@dataclass
class PlanResult:
    ok: bool
    operation: str = ""
    modifications: List[Modification] = field(default_factory=list)
    preview: str = ""
    summary: str = ""
    error: Optional[Dict[str, Any]] = None

    def to_dict(self, target: Optional[str] = None) -> Dict[str, Any]:
        if not self.ok:
            return {"success": False, "error": dict(self.error or {})}
        return {
            "success": True,
            "updates": {
                "target": target,
                "modifications": modifications_to_payload(self.modifications),
                "summary": self.summary,
            },
            "preview": self.preview,
        }


class MutationPlanner:
    def __init__(self, config: EngineConfig = DEFAULT_CONFIG) -> None:
        self.config = config
        self.previewer = DiffPreviewer(config)

    def plan(self, payload: Mapping[str, Any], dataset: Dataset) -> PlanResult:
        """Validate a descriptor payload and plan it. Failures come back as data, never raised."""
        try:
            descriptor = OperationDescriptor.from_payload(payload)
        except MalformedDescriptorError as exc:
            logging.warning("event=descriptor_rejected error=%s", exc)
            return PlanResult(ok=False, error=exc.to_dict())

        modifications = plan_modifications(descriptor, dataset)
        errors = validate_modifications(modifications, dataset)
        if errors:
            first = errors[0].to_dict()
            first["errors"] = [e.to_dict() for e in errors]
            logging.warning("event=plan_invalid errors=%s", len(errors))
            return PlanResult(ok=False, operation=descriptor.operation, error=first)

        summary = descriptor.summary or f"Applied {len(modifications)} modifications"
        logging.info(
            "event=plan_built operation=%s conditions=%s modifications=%s rows=%s",
            descriptor.operation,
            len(descriptor.conditions),
            len(modifications),
            len(dataset.rows),
        )
        return PlanResult(
            ok=True,
            operation=descriptor.operation,
            modifications=modifications,
            preview=self.previewer.preview_text(modifications, dataset),
            summary=summary,
        )
