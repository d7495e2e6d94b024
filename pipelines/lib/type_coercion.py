"""Column-aware coercion of raw cell values.

Cells arrive as raw strings (or whatever the upload parser produced) and are
converted into the semantic type implied by the column name. Rules are checked
in a fixed order and the first matching rule wins.
"""

import json
import math
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

CoercedValue = Union[float, int, str, List[str], List[int], List[Any], None]

_FLOAT_PREFIX_RE = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_INT_PREFIX_RE = re.compile(r"^\s*([+-]?\d+)")
_NUMERIC_NAME_CUES = ("priority", "level", "load", "concurrent", "max")


def unwrap_scalar(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    return value


def is_blank(value: Any) -> bool:
    value = unwrap_scalar(value)
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, float):
        return math.isnan(value)
    if isinstance(value, (list, tuple, dict)):
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def parse_float_prefix(text: Any) -> Optional[float]:
    """Leading-numeric-prefix float parse: ``"12h"`` -> 12.0, ``"abc"`` -> None."""
    value = unwrap_scalar(text)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else float(value)
    m = _FLOAT_PREFIX_RE.match(str(value if value is not None else ""))
    if not m:
        return None
    return float(m.group(1))


def parse_int_prefix(text: Any) -> Optional[int]:
    value = unwrap_scalar(text)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) else int(value)
    m = _INT_PREFIX_RE.match(str(value if value is not None else ""))
    if not m:
        return None
    return int(m.group(1))


def _number_text(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def cell_text(value: Any) -> str:
    """String form of a cell as the editing UI displays it (``None`` -> ``''``)."""
    value = unwrap_scalar(value)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return _number_text(value)
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple)):
        return ",".join(cell_text(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _as_number(text: str) -> Optional[Union[int, float]]:
    num = parse_float_prefix(text)
    if num is None:
        return None
    return int(num) if num.is_integer() else num


def parse_phase_set(text: str) -> List[Any]:
    s = text.strip()
    if "-" in s:
        parts = s.split("-")
        start, end = parse_int_prefix(parts[0]), parse_int_prefix(parts[1])
        if start is not None and end is not None:
            return list(range(start, end + 1))
    if s.startswith("[") and s.endswith("]"):
        try:
            parsed = json.loads(s)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    if "," in s:
        out: List[int] = []
        for part in s.split(","):
            num = parse_int_prefix(part.strip())
            if num is not None:
                out.append(num)
        return out
    num = parse_int_prefix(s)
    return [] if num is None else [num]


def parse_tag_list(text: str) -> List[Any]:
    s = text
    if s.startswith("[") and s.endswith("]"):
        try:
            parsed = json.loads(s)
        except ValueError:
            return [s]
        return parsed if isinstance(parsed, list) else [s]
    if "," in s:
        return [part.strip() for part in s.split(",") if part.strip()]
    return [s.strip()]


def parse_id_list(text: str) -> List[str]:
    if "," in text:
        return [part.strip() for part in text.split(",") if part.strip()]
    return [text.strip()]


def coerce_value(value: Any, column: str) -> CoercedValue:
    value = unwrap_scalar(value)
    if is_blank(value):
        return value
    text = cell_text(value)
    name = str(column or "").lower()

    if "duration" in name:
        num = _as_number(text)
        return 0 if num is None else num
    if "preferred" in name and "phase" in name:
        if isinstance(value, list):
            return list(value)
        return parse_phase_set(text)
    if "slot" in name or "skill" in name:
        if isinstance(value, list):
            return list(value)
        return parse_tag_list(text)
    if "task" in name and "id" in name:
        if isinstance(value, list):
            return [cell_text(v) for v in value]
        return parse_id_list(text)
    if any(cue in name for cue in _NUMERIC_NAME_CUES):
        num = _as_number(text)
        return text if num is None else num
    return text


def coerce_row(row: Mapping[str, Any], headers: Optional[Iterable[str]] = None) -> Dict[str, CoercedValue]:
    columns = list(headers) if headers is not None else list(row.keys())
    return {col: coerce_value(row.get(col), col) for col in columns}
