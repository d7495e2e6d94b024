from typing import Any, Dict


class EngineError(ValueError):
    """Structured engine failure: a short machine code plus free-form details."""

    code = "engine_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(f"{self.code}:{message}")
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class MalformedDescriptorError(EngineError):
    code = "malformed_descriptor"


class OutOfBoundsRowIndexError(EngineError):
    code = "out_of_bounds_row_index"


class MalformedModificationError(EngineError):
    code = "malformed_modification"


class ExpressionCompileError(EngineError):
    code = "expression_compile_error"


UNKNOWN_OPERATOR = "unknown_operator"
NO_FALLBACK_MATCH = "no_fallback_match"
