import logging
import math
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pipelines.lib.engine_errors import UNKNOWN_OPERATOR
from pipelines.lib.table_models import Condition, ConditionValue, Dataset, Operator
from pipelines.lib.type_coercion import cell_text, parse_float_prefix, unwrap_scalar


def row_text(row: Mapping[str, Any], column: str) -> str:
    # Conditions compare literal cell text, never coerced values.
    value = unwrap_scalar(row.get(column))
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return ""
    return cell_text(value)


def _equals(cell: str, operand: ConditionValue) -> bool:
    return cell == operand.text


def _contains(cell: str, operand: ConditionValue) -> bool:
    return operand.text.lower() in cell.lower()


def _starts_with(cell: str, operand: ConditionValue) -> bool:
    return cell.lower().startswith(operand.text.lower())


def _ends_with(cell: str, operand: ConditionValue) -> bool:
    return cell.lower().endswith(operand.text.lower())


def _numeric_pair(cell: str, operand: ConditionValue) -> Optional[tuple]:
    left = parse_float_prefix(cell)
    right = parse_float_prefix(operand.text)
    if left is None or right is None:
        return None
    return left, right


def _greater_than(cell: str, operand: ConditionValue) -> bool:
    pair = _numeric_pair(cell, operand)
    return pair is not None and pair[0] > pair[1]


def _less_than(cell: str, operand: ConditionValue) -> bool:
    pair = _numeric_pair(cell, operand)
    return pair is not None and pair[0] < pair[1]


def _member_of(cell: str, operand: ConditionValue) -> bool:
    if operand.kind == "list":
        return any(cell == item for item in operand.items)
    return _equals(cell, operand)


OPERATOR_TABLE: Dict[Operator, Callable[[str, ConditionValue], bool]] = {
    Operator.EQUALS: _equals,
    Operator.NOT_EQUALS: lambda cell, operand: not _equals(cell, operand),
    Operator.CONTAINS: _contains,
    Operator.NOT_CONTAINS: lambda cell, operand: not _contains(cell, operand),
    Operator.STARTS_WITH: _starts_with,
    Operator.ENDS_WITH: _ends_with,
    Operator.GREATER_THAN: _greater_than,
    Operator.LESS_THAN: _less_than,
    Operator.IN: _member_of,
    Operator.NOT_IN: lambda cell, operand: not _member_of(cell, operand),
}


def resolve_operator(name: str) -> Optional[Operator]:
    try:
        return Operator(str(name or "").strip().lower())
    except ValueError:
        return None


def evaluate(row: Mapping[str, Any], condition: Condition) -> bool:
    op = resolve_operator(condition.operator)
    if op is None:
        return False
    return OPERATOR_TABLE[op](row_text(row, condition.column), condition.value)


def evaluate_all(row: Mapping[str, Any], conditions: Sequence[Condition]) -> bool:
    for condition in conditions:
        if not evaluate(row, condition):
            return False
    return True


def unknown_operators(conditions: Sequence[Condition]) -> List[str]:
    return [c.operator for c in conditions if resolve_operator(c.operator) is None]


def matching_indices(dataset: Dataset, conditions: Sequence[Condition]) -> List[int]:
    unknown = unknown_operators(conditions)
    if unknown:
        logging.warning(
            "event=%s operators=%s action=condition_never_satisfied",
            UNKNOWN_OPERATOR,
            ",".join(sorted(set(unknown))),
        )
    return [i for i, row in enumerate(dataset.rows) if evaluate_all(row, conditions)]
