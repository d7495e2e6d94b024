import json
from dataclasses import dataclass, field
from typing import Any, List, Sequence

from pipelines.lib.engine_config import DEFAULT_CONFIG, EngineConfig
from pipelines.lib.table_models import Dataset, Modification, OperationKind
from pipelines.lib.type_coercion import cell_text, unwrap_scalar


def format_value(value: Any) -> str:
    value = unwrap_scalar(value)
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(format_value(v) for v in value) + "]"
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return cell_text(value)


@dataclass
class PreviewBlock:
    operation: str
    row_index: int
    lines: List[str] = field(default_factory=list)


class DiffPreviewer:
    """Renders planned modifications as before/after text. Performs no validation."""

    def __init__(self, config: EngineConfig = DEFAULT_CONFIG) -> None:
        self.config = config

    def _update_block(self, mod: Modification, dataset: Dataset) -> PreviewBlock:
        row = dataset.rows[mod.row_index] if mod.row_index is not None else {}
        fields = list((mod.data or {}).keys())
        lines = [f"Row {(mod.row_index or 0) + 1} - Fields changed: {', '.join(fields)}"]
        for name in fields:
            lines.append(f"  {name}: {format_value(row.get(name))} → {format_value(mod.data[name])}")
        return PreviewBlock(operation=mod.operation, row_index=mod.row_index or 0, lines=lines)

    def _delete_block(self, mod: Modification, dataset: Dataset) -> PreviewBlock:
        row = dataset.rows[mod.row_index] if mod.row_index is not None else {}
        lines = [f"Delete row {(mod.row_index or 0) + 1}"]
        shown = list(dataset.headers[: self.config.delete_preview_fields])
        for name in shown:
            lines.append(f"  {name}: {format_value(row.get(name))}")
        hidden = len(dataset.headers) - len(shown)
        if hidden > 0:
            lines.append(f"  ...and {hidden} more fields")
        return PreviewBlock(operation=mod.operation, row_index=mod.row_index or 0, lines=lines)

    def _add_block(self, mod: Modification, dataset: Dataset) -> PreviewBlock:
        pairs = ", ".join(f"{k}: {format_value(v)}" for k, v in (mod.new_row or {}).items())
        return PreviewBlock(operation=mod.operation, row_index=len(dataset.rows), lines=[f"Add new row: {pairs}"])

    def render(self, modifications: Sequence[Modification], dataset: Dataset) -> List[PreviewBlock]:
        blocks: List[PreviewBlock] = []
        for mod in modifications:
            if mod.operation == OperationKind.UPDATE.value:
                blocks.append(self._update_block(mod, dataset))
            elif mod.operation == OperationKind.DELETE.value:
                blocks.append(self._delete_block(mod, dataset))
            elif mod.operation == OperationKind.ADD.value:
                blocks.append(self._add_block(mod, dataset))
        return blocks

    def preview_lines(self, modifications: Sequence[Modification], dataset: Dataset) -> List[str]:
        return [line for block in self.render(modifications, dataset) for line in block.lines]

    def preview_text(self, modifications: Sequence[Modification], dataset: Dataset) -> str:
        return "\n".join(self.preview_lines(modifications, dataset))
