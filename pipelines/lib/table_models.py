from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from pipelines.lib.engine_errors import MalformedDescriptorError, MalformedModificationError
from pipelines.lib.type_coercion import cell_text, is_blank, unwrap_scalar


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"


class OperationKind(str, Enum):
    UPDATE = "update"
    DELETE = "delete"
    ADD = "add"


OPERATION_KINDS = tuple(kind.value for kind in OperationKind)


@dataclass(frozen=True)
class Dataset:
    headers: Tuple[str, ...]
    rows: Tuple[Dict[str, Any], ...]

    def __post_init__(self) -> None:
        seen = set()
        for header in self.headers:
            if header in seen:
                raise ValueError(f"duplicate_header:{header}")
            seen.add(header)

    def __len__(self) -> int:
        return len(self.rows)

    @classmethod
    def from_records(cls, headers: Optional[Iterable[Any]], rows: Iterable[Mapping[str, Any]]) -> "Dataset":
        row_list = [dict(r) for r in rows or []]
        if headers is None:
            ordered: List[str] = []
            for r in row_list:
                for key in r.keys():
                    if str(key) not in ordered:
                        ordered.append(str(key))
            header_list = ordered
        else:
            header_list = [str(h) for h in headers]
        return cls(headers=tuple(header_list), rows=tuple(row_list))

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Dataset":
        payload = payload or {}
        return cls.from_records(payload.get("headers"), payload.get("rows") or [])

    @classmethod
    def from_frame(cls, df: pd.DataFrame) -> "Dataset":
        headers = [str(c) for c in df.columns]
        frame = df.astype(object).where(pd.notna(df), None)
        frame.columns = headers
        rows = [{k: unwrap_scalar(v) for k, v in rec.items()} for rec in frame.to_dict(orient="records")]
        return cls(headers=tuple(headers), rows=tuple(rows))

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([dict(r) for r in self.rows], columns=list(self.headers))

    def to_payload(self) -> Dict[str, Any]:
        return {"headers": list(self.headers), "rows": [dict(r) for r in self.rows]}


@dataclass(frozen=True)
class ConditionValue:
    """Tagged comparison operand: a single ``scalar`` or a ``list`` of strings."""

    kind: str
    items: Tuple[str, ...]

    @classmethod
    def of(cls, raw: Any) -> "ConditionValue":
        raw = unwrap_scalar(raw)
        if isinstance(raw, (list, tuple)):
            return cls(kind="list", items=tuple(cell_text(v) for v in raw))
        return cls(kind="scalar", items=(cell_text(raw),))

    @property
    def is_list(self) -> bool:
        return self.kind == "list"

    @property
    def text(self) -> str:
        if self.is_list:
            return ",".join(self.items)
        return self.items[0] if self.items else ""


@dataclass(frozen=True)
class Condition:
    column: str
    operator: str
    value: ConditionValue

    @classmethod
    def from_payload(cls, payload: Any) -> "Condition":
        if not isinstance(payload, Mapping):
            raise MalformedDescriptorError("condition must be an object", condition=payload)
        column = str(payload.get("column") or "").strip()
        if not column:
            raise MalformedDescriptorError("condition is missing column", condition=dict(payload))
        operator = str(payload.get("operator") or "").strip().lower()
        return cls(column=column, operator=operator, value=ConditionValue.of(payload.get("value")))


@dataclass(frozen=True)
class OperationDescriptor:
    operation: str
    conditions: Tuple[Condition, ...] = ()
    column: Optional[str] = None
    new_value: Any = None
    new_row: Optional[Dict[str, Any]] = None
    summary: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "OperationDescriptor":
        if not isinstance(payload, Mapping):
            raise MalformedDescriptorError("descriptor must be a JSON object", received=type(payload).__name__)
        raw_op = payload.get("operation")
        if raw_op is None or not str(raw_op).strip():
            raise MalformedDescriptorError("missing required field: operation")
        operation = str(raw_op).strip().lower()
        if operation not in OPERATION_KINDS:
            raise MalformedDescriptorError(f"unsupported operation: {raw_op}", operation=raw_op)

        raw_conditions = payload.get("conditions")
        if raw_conditions is None:
            raw_conditions = []
        if not isinstance(raw_conditions, (list, tuple)):
            raise MalformedDescriptorError("conditions must be a list", conditions=raw_conditions)
        conditions = tuple(Condition.from_payload(c) for c in raw_conditions)

        column = payload.get("column")
        column = str(column).strip() if column is not None and str(column).strip() else None
        new_row = payload.get("newRow")
        if new_row is not None and not isinstance(new_row, Mapping):
            raise MalformedDescriptorError("newRow must be an object", newRow=new_row)

        if operation == OperationKind.UPDATE.value and not column:
            raise MalformedDescriptorError("update requires column")
        if operation == OperationKind.ADD.value and not new_row:
            raise MalformedDescriptorError("add requires newRow")

        return cls(
            operation=operation,
            conditions=conditions,
            column=column,
            new_value=unwrap_scalar(payload.get("newValue")),
            new_row=dict(new_row) if new_row is not None else None,
            summary=str(payload.get("summary") or ""),
        )


@dataclass(frozen=True)
class Modification:
    operation: str
    row_index: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    new_row: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"operation": self.operation}
        if self.row_index is not None:
            out["rowIndex"] = self.row_index
        if self.data is not None:
            out["data"] = dict(self.data)
        if self.new_row is not None:
            out["newRow"] = dict(self.new_row)
        return out

    @classmethod
    def from_payload(cls, payload: Any) -> "Modification":
        if not isinstance(payload, Mapping):
            raise MalformedModificationError("modification must be an object", received=type(payload).__name__)
        operation = str(payload.get("operation") or "").strip().lower()
        raw_index = unwrap_scalar(payload.get("rowIndex"))
        row_index: Optional[int] = None
        if raw_index is not None:
            if (
                isinstance(raw_index, bool)
                or not isinstance(raw_index, (int, float))
                or (isinstance(raw_index, float) and not raw_index.is_integer())
            ):
                raise MalformedModificationError("rowIndex must be an integer", rowIndex=raw_index)
            row_index = int(raw_index)
        data = payload.get("data")
        new_row = payload.get("newRow")
        return cls(
            operation=operation,
            row_index=row_index,
            data=dict(data) if isinstance(data, Mapping) else None,
            new_row=dict(new_row) if isinstance(new_row, Mapping) else None,
        )


@dataclass(frozen=True)
class ColumnMapping:
    original_header: str
    suggested_header: str
    confidence: float
    reasoning: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["ColumnMapping"]:
        if isinstance(payload, ColumnMapping):
            return payload
        if not isinstance(payload, Mapping):
            return None
        original = payload.get("originalHeader")
        suggested = payload.get("suggestedHeader")
        if is_blank(original) or is_blank(suggested):
            return None
        try:
            confidence = float(payload.get("confidence"))
        except (TypeError, ValueError):
            return None
        return cls(
            original_header=str(original),
            suggested_header=str(suggested),
            confidence=confidence,
            reasoning=str(payload.get("reasoning") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "originalHeader": self.original_header,
            "suggestedHeader": self.suggested_header,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


@dataclass
class MappingResult:
    mappings: List[ColumnMapping] = field(default_factory=list)
    unmapped_columns: List[str] = field(default_factory=list)
    missing_columns: List[str] = field(default_factory=list)
    confidence: float = 0.0
    fallback: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mappings": [m.to_dict() for m in self.mappings],
            "unmappedColumns": list(self.unmapped_columns),
            "missingColumns": list(self.missing_columns),
            "confidence": self.confidence,
            "fallback": self.fallback,
        }


def modifications_to_payload(modifications: Sequence[Modification]) -> List[Dict[str, Any]]:
    return [m.to_dict() for m in modifications]
