"""Restricted interpreter for boolean filter expressions.

Filter expressions come from a text generator and are written in a small
JavaScript-flavoured dialect, e.g.::

    String(worker.WorkerName || '').toLowerCase().startsWith('a')
    task.Duration > 2 && task.PreferredPhases.includes(3)
    worker.Skills.some(s => String(s).toLowerCase().includes('python'))

Nothing is ever executed as host code. The text is parsed with a lark grammar into a
tiny AST, checked against a whitelist of names and methods, and evaluated
directly over one coerced row.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from lark import Lark, Transformer
from lark.exceptions import LarkError, UnexpectedCharacters, UnexpectedEOF, UnexpectedToken, VisitError

from pipelines.lib.engine_config import DEFAULT_CONFIG, EngineConfig, FallbackPattern
from pipelines.lib.engine_errors import NO_FALLBACK_MATCH, ExpressionCompileError
from pipelines.lib.llm_parsing import find_code_blocks, safe_trunc, strip_llm_reasoning_sections
from pipelines.lib.query_signals import row_handle_for
from pipelines.lib.table_models import Dataset
from pipelines.lib.type_coercion import coerce_row, parse_float_prefix, parse_int_prefix, unwrap_scalar


class _Undefined:
    _instance = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()

GLOBAL_FUNCTIONS = ("String", "Number", "Boolean", "parseInt", "parseFloat")
STRING_METHODS = ("toLowerCase", "toUpperCase", "trim", "startsWith", "endsWith", "includes", "indexOf", "toString")
LIST_METHODS = ("includes", "some", "every", "indexOf", "join", "toString")
ALLOWED_METHODS = frozenset(STRING_METHODS + LIST_METHODS)
CALLBACK_METHODS = frozenset(("some", "every"))
KEYWORD_LITERALS = {"true": True, "false": False, "null": None, "undefined": UNDEFINED}
MAX_AST_DEPTH = 40

_PROSE_PREFIXES = ("Return", "Examples", "Example", "JavaScript", "Here", "Note", "Expression", "Answer")
_NUMBER_LITERAL_RE = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\s*$")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "b": "\b", "f": "\f", "v": "\v"}


# -- AST -----------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    id: str


@dataclass(frozen=True)
class Member:
    obj: Any
    prop: str
    optional: bool = False


@dataclass(frozen=True)
class Index:
    obj: Any
    index: Any
    optional: bool = False


@dataclass(frozen=True)
class Call:
    callee: Any
    args: Tuple[Any, ...]


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Logical:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Arrow:
    params: Tuple[str, ...]
    body: Any


@dataclass(frozen=True)
class ArrayLit:
    items: Tuple[Any, ...]


# -- grammar / parser ----------------------------------------------------------

_GRAMMAR = r"""
?start: expr
      | arrow

?expr: or_expr

?or_expr: and_expr
        | or_expr "||" and_expr         -> or_
        | or_expr "??" and_expr         -> nullish

?and_expr: eq_expr
         | and_expr "&&" eq_expr        -> and_

?eq_expr: rel_expr
        | eq_expr "===" rel_expr        -> strict_eq
        | eq_expr "!==" rel_expr        -> strict_ne
        | eq_expr "==" rel_expr         -> loose_eq
        | eq_expr "!=" rel_expr         -> loose_ne

?rel_expr: add_expr
         | rel_expr "<" add_expr        -> lt
         | rel_expr ">" add_expr        -> gt
         | rel_expr "<=" add_expr       -> le
         | rel_expr ">=" add_expr       -> ge

?add_expr: mul_expr
         | add_expr "+" mul_expr        -> add
         | add_expr "-" mul_expr        -> sub

?mul_expr: unary
         | mul_expr "*" unary           -> mul
         | mul_expr "/" unary           -> div
         | mul_expr "%" unary           -> mod

?unary: postfix
      | "!" unary                       -> not_
      | "-" unary                       -> neg
      | "+" unary                       -> pos

?postfix: atom
        | postfix "." NAME              -> member
        | postfix "?." NAME             -> optional_member
        | postfix "?." "[" expr "]"     -> optional_index
        | postfix "[" expr "]"          -> index
        | postfix "(" ")"               -> call
        | postfix "(" _arg ("," _arg)* ")" -> call

_arg: expr
    | arrow

arrow: NAME "=>" expr
     | "(" ")" "=>" expr
     | "(" NAME ("," NAME)* ")" "=>" expr

?atom: NUMBER                           -> number
     | STRING                           -> string
     | NAME                             -> name
     | "(" expr ")"
     | "[" "]"                          -> array
     | "[" expr ("," expr)* "]"         -> array

NAME: /[A-Za-z_$][A-Za-z0-9_$]*/
NUMBER: /(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?/
STRING: /'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*"/

%ignore /\s+/
"""


def _unescape(body: str) -> str:
    out: List[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _binary(op: str) -> Callable:
    def build(self, children):
        left, right = children
        return Binary(op, left, right)

    return build


def _logical(op: str) -> Callable:
    def build(self, children):
        left, right = children
        return Logical(op, left, right)

    return build


def _unary(op: str) -> Callable:
    def build(self, children):
        return Unary(op, children[0])

    return build


class _ExpressionTransformer(Transformer):
    """Turns the lark parse tree into the AST nodes above."""

    or_ = _logical("||")
    nullish = _logical("??")
    and_ = _logical("&&")
    strict_eq = _binary("===")
    strict_ne = _binary("!==")
    loose_eq = _binary("==")
    loose_ne = _binary("!=")
    lt = _binary("<")
    gt = _binary(">")
    le = _binary("<=")
    ge = _binary(">=")
    add = _binary("+")
    sub = _binary("-")
    mul = _binary("*")
    div = _binary("/")
    mod = _binary("%")
    not_ = _unary("!")
    neg = _unary("-")
    pos = _unary("+")

    def number(self, children):
        return Literal(float(children[0]))

    def string(self, children):
        return Literal(_unescape(str(children[0])[1:-1]))

    def name(self, children):
        ident = str(children[0])
        if ident in KEYWORD_LITERALS:
            return Literal(KEYWORD_LITERALS[ident])
        return Name(ident)

    def array(self, children):
        return ArrayLit(tuple(children))

    def member(self, children):
        obj, prop = children
        return Member(obj, str(prop))

    def optional_member(self, children):
        obj, prop = children
        return Member(obj, str(prop), optional=True)

    def index(self, children):
        obj, key = children
        return Index(obj, key)

    def optional_index(self, children):
        obj, key = children
        return Index(obj, key, optional=True)

    def call(self, children):
        return Call(children[0], tuple(children[1:]))

    def arrow(self, children):
        *params, body = children
        return Arrow(tuple(str(p) for p in params), body)


_PARSER = Lark(_GRAMMAR, start="start", parser="earley", lexer="basic")
_TRANSFORMER = _ExpressionTransformer()


def parse_expression(text: str) -> Any:
    try:
        tree = _PARSER.parse(text)
    except UnexpectedCharacters as exc:
        raise ExpressionCompileError(f"unsupported_char:{exc.char}", position=exc.pos_in_stream) from exc
    except UnexpectedEOF as exc:
        raise ExpressionCompileError("unexpected_token:end", position=len(text)) from exc
    except UnexpectedToken as exc:
        token = exc.token
        raise ExpressionCompileError(
            f"unexpected_token:{token or 'end'}", position=getattr(token, "start_pos", None)
        ) from exc
    except LarkError as exc:
        raise ExpressionCompileError(f"parse_error:{exc}") from exc
    try:
        return _TRANSFORMER.transform(tree)
    except VisitError as exc:
        if isinstance(exc.orig_exc, RecursionError):
            raise exc.orig_exc
        raise ExpressionCompileError(f"parse_error:{exc.orig_exc}") from exc


# -- static guard --------------------------------------------------------------


def _guard(node: Any, scope: frozenset, handle: str, depth: int = 0, callback_arg: bool = False) -> None:
    if depth > MAX_AST_DEPTH:
        raise ExpressionCompileError("expression_too_deep")
    nxt = depth + 1
    if isinstance(node, Literal):
        return
    if isinstance(node, Name):
        if node.id.startswith("__"):
            raise ExpressionCompileError("forbidden_dunder_name")
        if node.id not in scope:
            raise ExpressionCompileError(f"unknown_name:{node.id}")
        if node.id in GLOBAL_FUNCTIONS or node.id == "Array":
            raise ExpressionCompileError(f"bare_builtin:{node.id}")
        return
    if isinstance(node, Member):
        if node.prop.startswith("__"):
            raise ExpressionCompileError("forbidden_dunder_attr")
        if isinstance(node.obj, Name) and node.obj.id == "Array":
            raise ExpressionCompileError("forbidden_member:Array")
        _guard(node.obj, scope, handle, nxt)
        return
    if isinstance(node, Index):
        _guard(node.obj, scope, handle, nxt)
        _guard(node.index, scope, handle, nxt)
        return
    if isinstance(node, Call):
        callee = node.callee
        if isinstance(callee, Name):
            if callee.id not in GLOBAL_FUNCTIONS:
                raise ExpressionCompileError(f"forbidden_call:{callee.id}")
        elif isinstance(callee, Member):
            if isinstance(callee.obj, Name) and callee.obj.id == "Array":
                if callee.prop != "isArray":
                    raise ExpressionCompileError(f"forbidden_call:Array.{callee.prop}")
            else:
                _guard(callee.obj, scope, handle, nxt)
                if callee.prop not in ALLOWED_METHODS:
                    raise ExpressionCompileError(f"forbidden_method:{callee.prop}")
        else:
            raise ExpressionCompileError("forbidden_call_target")
        takes_callback = isinstance(callee, Member) and callee.prop in CALLBACK_METHODS
        for arg in node.args:
            _guard(arg, scope, handle, nxt, callback_arg=takes_callback)
        return
    if isinstance(node, Arrow):
        if not callback_arg:
            raise ExpressionCompileError("forbidden_arrow_position")
        for p in node.params:
            if p == handle or p in GLOBAL_FUNCTIONS or p in KEYWORD_LITERALS:
                raise ExpressionCompileError(f"forbidden_param:{p}")
        _guard(node.body, scope | frozenset(node.params), handle, nxt)
        return
    if isinstance(node, (Unary,)):
        _guard(node.operand, scope, handle, nxt)
        return
    if isinstance(node, (Binary, Logical)):
        _guard(node.left, scope, handle, nxt)
        _guard(node.right, scope, handle, nxt)
        return
    if isinstance(node, ArrayLit):
        for item in node.items:
            _guard(item, scope, handle, nxt)
        return
    raise ExpressionCompileError(f"forbidden_node:{type(node).__name__}")


# -- value semantics -----------------------------------------------------------


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _number_text(v: float) -> str:
    if math.isnan(v):
        return "NaN"
    if math.isinf(v):
        return "Infinity" if v > 0 else "-Infinity"
    if float(v).is_integer() and abs(v) < 1e21:
        return str(int(v))
    return repr(float(v))


def js_string(v: Any) -> str:
    if v is UNDEFINED:
        return "undefined"
    if v is None:
        return "null"
    if isinstance(v, bool):
        return "true" if v else "false"
    if _is_number(v):
        return _number_text(float(v))
    if isinstance(v, (list, tuple)):
        return ",".join("" if (x is None or x is UNDEFINED) else js_string(x) for x in v)
    if isinstance(v, dict):
        return "[object Object]"
    return str(v)


def js_number(v: Any) -> float:
    if v is UNDEFINED:
        return math.nan
    if v is None:
        return 0.0
    if isinstance(v, bool):
        return 1.0 if v else 0.0
    if _is_number(v):
        return float(v)
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return 0.0
        if _NUMBER_LITERAL_RE.match(s):
            return float(s)
        if s in ("Infinity", "+Infinity"):
            return math.inf
        if s == "-Infinity":
            return -math.inf
        return math.nan
    if isinstance(v, (list, tuple)):
        return js_number(js_string(v))
    return math.nan


def js_truthy(v: Any) -> bool:
    if v is None or v is UNDEFINED:
        return False
    if isinstance(v, bool):
        return v
    if _is_number(v):
        return not (v == 0 or (isinstance(v, float) and math.isnan(v)))
    if isinstance(v, str):
        return v != ""
    return True


def _to_primitive(v: Any) -> Any:
    if isinstance(v, (list, tuple, dict)):
        return js_string(v)
    return v


def strict_equals(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b):
        return float(a) == float(b)
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if a is None or a is UNDEFINED or b is None or b is UNDEFINED:
        return a is b
    return a is b


def loose_equals(a: Any, b: Any) -> bool:
    a_nullish = a is None or a is UNDEFINED
    b_nullish = b is None or b is UNDEFINED
    if a_nullish or b_nullish:
        return a_nullish and b_nullish
    if isinstance(a, (list, tuple, dict)) and isinstance(b, (list, tuple, dict)):
        return a is b
    a, b = _to_primitive(a), _to_primitive(b)
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if isinstance(a, (str, bool)) or isinstance(b, (str, bool)) or (_is_number(a) and _is_number(b)):
        return js_number(a) == js_number(b)
    return strict_equals(a, b)


def _same_value_zero(a: Any, b: Any) -> bool:
    if _is_number(a) and _is_number(b) and math.isnan(float(a)) and math.isnan(float(b)):
        return True
    return strict_equals(a, b)


def _compare(op: str, a: Any, b: Any) -> bool:
    a, b = _to_primitive(a), _to_primitive(b)
    if isinstance(a, str) and isinstance(b, str):
        left: Any = a
        right: Any = b
    else:
        left, right = js_number(a), js_number(b)
        if math.isnan(left) or math.isnan(right):
            return False
    if op == "<":
        return left < right
    if op == ">":
        return left > right
    if op == "<=":
        return left <= right
    return left >= right


def _arith(op: str, a: Any, b: Any) -> Any:
    if op == "+":
        a, b = _to_primitive(a), _to_primitive(b)
        if isinstance(a, str) or isinstance(b, str):
            return js_string(a) + js_string(b)
        return js_number(a) + js_number(b)
    x, y = js_number(a), js_number(b)
    if op == "-":
        return x - y
    if op == "*":
        return x * y
    if op == "/":
        if y == 0:
            if x == 0 or math.isnan(x):
                return math.nan
            return math.copysign(math.inf, x) * math.copysign(1.0, y)
        return x / y
    if y == 0 or math.isinf(x) or math.isnan(x) or math.isnan(y):
        return math.nan
    return math.fmod(x, y)


def _nullish(v: Any) -> bool:
    return v is None or v is UNDEFINED


class ExpressionRuntimeError(TypeError):
    pass


# -- evaluator -----------------------------------------------------------------


class _Evaluator:
    def __init__(self, handle: str) -> None:
        self.handle = handle

    def eval(self, node: Any, env: Dict[str, Any]) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Name):
            return env.get(node.id, UNDEFINED)
        if isinstance(node, Member):
            obj = self.eval(node.obj, env)
            return self._member(obj, node.prop, node.optional)
        if isinstance(node, Index):
            obj = self.eval(node.obj, env)
            if _nullish(obj):
                if node.optional:
                    return UNDEFINED
                raise ExpressionRuntimeError("cannot index null or undefined")
            return self._index(obj, self.eval(node.index, env))
        if isinstance(node, Call):
            return self._call(node, env)
        if isinstance(node, Unary):
            v = self.eval(node.operand, env)
            if node.op == "!":
                return not js_truthy(v)
            if node.op == "-":
                return -js_number(v)
            return js_number(v)
        if isinstance(node, Logical):
            left = self.eval(node.left, env)
            if node.op == "&&":
                return self.eval(node.right, env) if js_truthy(left) else left
            if node.op == "||":
                return left if js_truthy(left) else self.eval(node.right, env)
            return self.eval(node.right, env) if _nullish(left) else left
        if isinstance(node, Binary):
            left = self.eval(node.left, env)
            right = self.eval(node.right, env)
            if node.op == "===":
                return strict_equals(left, right)
            if node.op == "!==":
                return not strict_equals(left, right)
            if node.op == "==":
                return loose_equals(left, right)
            if node.op == "!=":
                return not loose_equals(left, right)
            if node.op in ("<", ">", "<=", ">="):
                return _compare(node.op, left, right)
            return _arith(node.op, left, right)
        if isinstance(node, ArrayLit):
            return [self.eval(item, env) for item in node.items]
        if isinstance(node, Arrow):
            raise ExpressionRuntimeError("arrow function outside callback position")
        raise ExpressionRuntimeError(f"unsupported node {type(node).__name__}")

    def _member(self, obj: Any, prop: str, optional: bool) -> Any:
        if _nullish(obj):
            if optional:
                return UNDEFINED
            raise ExpressionRuntimeError(f"cannot read property '{prop}' of {js_string(obj)}")
        if prop == "length" and isinstance(obj, (str, list, tuple)):
            return len(obj)
        if isinstance(obj, Mapping):
            return unwrap_scalar(obj.get(prop, UNDEFINED))
        return UNDEFINED

    def _index(self, obj: Any, key: Any) -> Any:
        if isinstance(obj, Mapping):
            return unwrap_scalar(obj.get(js_string(key), UNDEFINED))
        if isinstance(obj, (str, list, tuple)):
            if js_string(key) == "length":
                return len(obj)
            num = js_number(key)
            if math.isnan(num) or not float(num).is_integer():
                return UNDEFINED
            i = int(num)
            if 0 <= i < len(obj):
                return obj[i]
        return UNDEFINED

    def _call(self, node: Call, env: Dict[str, Any]) -> Any:
        callee = node.callee
        if isinstance(callee, Name):
            args = [self.eval(a, env) for a in node.args]
            return self._global(callee.id, args)
        if isinstance(callee.obj, Name) and callee.obj.id == "Array":
            args = [self.eval(a, env) for a in node.args]
            return bool(args) and isinstance(args[0], (list, tuple))
        receiver = self.eval(callee.obj, env)
        if _nullish(receiver):
            if callee.optional:
                return UNDEFINED
            raise ExpressionRuntimeError(f"cannot call '{callee.prop}' on {js_string(receiver)}")
        if callee.prop in CALLBACK_METHODS:
            return self._callback_method(receiver, callee.prop, node.args, env)
        args = [self.eval(a, env) for a in node.args]
        if isinstance(receiver, str):
            return self._string_method(receiver, callee.prop, args)
        if isinstance(receiver, (list, tuple)):
            return self._list_method(list(receiver), callee.prop, args)
        if callee.prop == "toString":
            return js_string(receiver)
        raise ExpressionRuntimeError(f"{callee.prop} is not a function on {type(receiver).__name__}")

    def _global(self, name: str, args: List[Any]) -> Any:
        first = args[0] if args else UNDEFINED
        if name == "String":
            return "" if not args else js_string(first)
        if name == "Number":
            return 0.0 if not args else js_number(first)
        if name == "Boolean":
            return js_truthy(first)
        if name == "parseInt":
            num = parse_int_prefix(js_string(first))
            return math.nan if num is None else float(num)
        num_f = parse_float_prefix(js_string(first))
        return math.nan if num_f is None else num_f

    def _string_method(self, s: str, method: str, args: List[Any]) -> Any:
        arg = js_string(args[0]) if args else "undefined"
        if method == "toLowerCase":
            return s.lower()
        if method == "toUpperCase":
            return s.upper()
        if method == "trim":
            return s.strip()
        if method == "toString":
            return s
        if method == "startsWith":
            return s.startswith(arg)
        if method == "endsWith":
            return s.endswith(arg)
        if method == "includes":
            return arg in s
        if method == "indexOf":
            return float(s.find(arg))
        raise ExpressionRuntimeError(f"{method} is not a function on string")

    def _list_method(self, items: List[Any], method: str, args: List[Any]) -> Any:
        if method == "includes":
            target = args[0] if args else UNDEFINED
            return any(_same_value_zero(unwrap_scalar(x), target) for x in items)
        if method == "indexOf":
            target = args[0] if args else UNDEFINED
            for i, x in enumerate(items):
                if strict_equals(unwrap_scalar(x), target):
                    return float(i)
            return -1.0
        if method == "join":
            sep = "," if not args or args[0] is UNDEFINED else js_string(args[0])
            return sep.join("" if _nullish(x) else js_string(x) for x in items)
        if method == "toString":
            return js_string(items)
        raise ExpressionRuntimeError(f"{method} is not a function on array")

    def _callback_method(self, receiver: Any, method: str, arg_nodes: Sequence[Any], env: Dict[str, Any]) -> bool:
        if not isinstance(receiver, (list, tuple)):
            raise ExpressionRuntimeError(f"{method} is not a function on {type(receiver).__name__}")
        if not arg_nodes or not isinstance(arg_nodes[0], Arrow):
            raise ExpressionRuntimeError(f"{method} expects an arrow function")
        fn: Arrow = arg_nodes[0]
        for i, item in enumerate(receiver):
            scope = dict(env)
            if fn.params:
                scope[fn.params[0]] = unwrap_scalar(item)
            if len(fn.params) > 1:
                scope[fn.params[1]] = float(i)
            hit = js_truthy(self.eval(fn.body, scope))
            if method == "some" and hit:
                return True
            if method == "every" and not hit:
                return False
        return method == "every"


# -- compiled predicate --------------------------------------------------------


@dataclass(frozen=True)
class CompiledExpression:
    source: str
    handle: str
    tree: Any

    def evaluate(self, row: Mapping[str, Any]) -> Any:
        return _Evaluator(self.handle).eval(self.tree, {self.handle: row})

    def __call__(self, row: Mapping[str, Any]) -> bool:
        return js_truthy(self.evaluate(row))


def _match_nothing(_row: Mapping[str, Any]) -> bool:
    return False


@dataclass(frozen=True)
class FilterOutcome:
    predicate: Callable[[Mapping[str, Any]], bool]
    expression: str
    source: str
    handle: str
    reason: Optional[str] = None
    fallback_pattern: Optional[str] = None

    @property
    def matches_nothing(self) -> bool:
        return self.source == "none"


@dataclass
class FilterResult:
    indices: List[int]
    rows: List[Dict[str, Any]]
    total_rows: int
    failed_rows: int = 0


def _looks_like_prose(line: str) -> bool:
    if line.startswith(("//", "*", "/*", "#")):
        return True
    if line.startswith(_PROSE_PREFIXES):
        return True
    if "**" in line or "\U0001f4a1" in line:
        return True
    return line.endswith(":")


def extract_expression(raw_text: str, handle: str = "row") -> str:
    """Reduce free-form generator output to the single expression line it carries."""
    s = strip_llm_reasoning_sections(str(raw_text or ""))
    blocks = find_code_blocks(s)
    if blocks:
        s = blocks[0]
    s = re.sub(r"^```[a-zA-Z0-9_-]*\s*", "", s.strip())
    s = re.sub(r"```\s*$", "", s).strip()
    if re.match(r"^function\b", s):
        s = re.sub(r"^function[^{]*\{", "", s, count=1)
        s = re.sub(r"\}\s*$", "", s).strip()

    line = ""
    for candidate in s.splitlines():
        stripped = candidate.strip()
        if stripped and not _looks_like_prose(stripped):
            line = stripped
            break

    line = re.sub(r"^return\s+", "", line)
    wrapper = re.match(r"^\(?\s*" + re.escape(handle) + r"\s*\)?\s*=>\s*(.+)$", line)
    if wrapper:
        line = wrapper.group(1).strip()
    line = line.rstrip(";").strip()
    if len(line) >= 2 and line[0] == line[-1] and line[0] in "\"`" and line[0] not in line[1:-1]:
        line = line[1:-1].strip()
    return line


def _js_quote(text: str) -> str:
    return "'" + text.replace("\\", "\\\\").replace("'", "\\'") + "'"


class ExpressionCompiler:
    def __init__(self, config: EngineConfig = DEFAULT_CONFIG) -> None:
        self.config = config

    def compile(
        self,
        raw_text: str,
        handle: str = "row",
        sample_row: Optional[Mapping[str, Any]] = None,
    ) -> CompiledExpression:
        """Parse, guard and test-invoke one expression.

        Raises ``ExpressionCompileError`` when the text is empty, does not parse,
        uses anything outside the whitelist, or throws on the sample row.
        """
        source = extract_expression(raw_text, handle)
        if not source:
            raise ExpressionCompileError("empty_expression")
        if len(source) > self.config.max_expression_chars:
            raise ExpressionCompileError("expression_too_long", chars=len(source))
        try:
            tree = parse_expression(source)
        except RecursionError as exc:
            raise ExpressionCompileError("expression_too_deep") from exc
        _guard(tree, frozenset((handle, "Array") + GLOBAL_FUNCTIONS), handle)
        compiled = CompiledExpression(source=source, handle=handle, tree=tree)

        if sample_row is not None:
            try:
                first_result = compiled.evaluate(sample_row)
            except (ExpressionRuntimeError, TypeError, ValueError, OverflowError) as exc:
                raise ExpressionCompileError(f"test_invocation_failed:{exc}", expression=source) from exc
            if not isinstance(first_result, bool):
                logging.warning(
                    "event=filter_expression_non_boolean type=%s expression=%s",
                    type(first_result).__name__,
                    safe_trunc(source, 300),
                )
        return compiled

    def _fallback_column(self, pattern: FallbackPattern, headers: Sequence[str], sheet: Optional[str]) -> Optional[str]:
        if pattern.role == "name" and sheet:
            preferred = self.config.name_columns.get(sheet)
            if preferred and preferred in headers:
                return preferred
        for header in headers:
            lower = header.lower()
            if all(hint in lower for hint in pattern.column_hints):
                if pattern.role == "name" and not lower.endswith("name"):
                    continue
                return header
        return None

    def fallback(
        self,
        instruction: str,
        dataset: Dataset,
        sheet: Optional[str] = None,
        handle: Optional[str] = None,
    ) -> Optional[Tuple[CompiledExpression, str]]:
        handle = handle or row_handle_for(sheet)
        sample = coerce_row(dataset.rows[0], dataset.headers) if dataset.rows else None
        for pattern in self.config.fallback_patterns:
            m = pattern.pattern.search(instruction or "")
            if not m:
                continue
            column = self._fallback_column(pattern, dataset.headers, sheet)
            if column is None or not re.fullmatch(r"[A-Za-z_$][A-Za-z0-9_$]*", column):
                continue
            raw_value = m.group("value")
            value = raw_value if pattern.numeric else _js_quote(raw_value.lower())
            text = pattern.template.format(handle=handle, column=column, value=value)
            try:
                compiled = self.compile(text, handle=handle, sample_row=sample)
            except ExpressionCompileError as exc:
                logging.warning("event=filter_fallback_rejected pattern=%s error=%s", pattern.name, exc)
                continue
            return compiled, pattern.name
        return None

    def build_filter(
        self,
        raw_text: Optional[str],
        instruction: str,
        dataset: Dataset,
        sheet: Optional[str] = None,
    ) -> FilterOutcome:
        """Compile ``raw_text`` or fall back to instruction patterns. Never raises."""
        handle = row_handle_for(sheet)
        sample = coerce_row(dataset.rows[0], dataset.headers) if dataset.rows else None
        reason = "no_expression"
        if raw_text and str(raw_text).strip():
            try:
                compiled = self.compile(raw_text, handle=handle, sample_row=sample)
            except ExpressionCompileError as exc:
                reason = str(exc)
                logging.warning(
                    "event=filter_expression_rejected error=%s raw_preview=%s",
                    exc,
                    safe_trunc(raw_text, 400),
                )
            else:
                logging.info("event=filter_expression_compiled expression=%s", safe_trunc(compiled.source, 400))
                return FilterOutcome(predicate=compiled, expression=compiled.source, source="expression", handle=handle)

        found = self.fallback(instruction, dataset, sheet=sheet, handle=handle)
        if found is not None:
            compiled, pattern_name = found
            logging.info("event=filter_fallback_applied pattern=%s expression=%s", pattern_name, compiled.source)
            return FilterOutcome(
                predicate=compiled,
                expression=compiled.source,
                source="fallback",
                handle=handle,
                reason=reason,
                fallback_pattern=pattern_name,
            )

        diagnostic = f"{NO_FALLBACK_MATCH}: {reason}"
        logging.warning("event=filter_match_nothing reason=%s", safe_trunc(diagnostic, 400))
        return FilterOutcome(
            predicate=_match_nothing,
            expression=f"return false; // Error: {diagnostic}",
            source="none",
            handle=handle,
            reason=diagnostic,
        )


def run_filter(dataset: Dataset, outcome: FilterOutcome) -> FilterResult:
    indices: List[int] = []
    failed = 0
    for i, row in enumerate(dataset.rows):
        coerced = coerce_row(row, dataset.headers)
        try:
            hit = bool(outcome.predicate(coerced))
        except (ExpressionRuntimeError, TypeError, ValueError, OverflowError) as exc:
            failed += 1
            logging.warning("event=filter_row_error row_index=%s error=%s", i, exc)
            continue
        if hit:
            indices.append(i)
    logging.info(
        "event=filter_applied source=%s matched=%s total=%s failed_rows=%s",
        outcome.source,
        len(indices),
        len(dataset.rows),
        failed,
    )
    return FilterResult(
        indices=indices,
        rows=[dict(dataset.rows[i]) for i in indices],
        total_rows=len(dataset.rows),
        failed_rows=failed,
    )


def filter_payload(query: str, sheet: str, outcome: FilterOutcome, result: FilterResult) -> Dict[str, Any]:
    return {
        "query": query,
        "sheet": sheet,
        "filteredRows": result.rows,
        "matchedIndices": result.indices,
        "totalRows": result.total_rows,
        "filterFunction": outcome.expression,
        "source": outcome.source,
        "reason": outcome.reason,
    }
