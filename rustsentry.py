#!/usr/bin/env python3
"""
rustsentry - Vulnerability pattern detection for Rust smart contracts

High-level goals:
- Adapt a parsed syntax tree (tree-sitter-rust, or any host parser) into a
  uniform node model
- Extract function and statement facts, and per-function flow graphs
- Run independent detectors for the common Rust contract bug classes
  (overflow, reentrancy, missing access control, unchecked external calls,
  unbounded loops, storage growth, float precision, stale state, bad
  initialization)
- Aggregate findings into a deterministic Report

Rendering the Report is left to the host.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
)
import functools
import re
import sys
import threading

import tree_sitter
import tree_sitter_rust
import yaml


# ============================================================
# ==================== SOURCE LOCATIONS ======================
# ============================================================

@dataclass(frozen=True, order=True)
class Span:
    """Byte offsets into the unit text, plus 1-based line/column for humans."""
    start: int
    end: int
    line_start: int = 0
    col_start: int = 0
    line_end: int = 0
    col_end: int = 0

    def contains(self, other: "Span") -> bool:
        return self.start <= other.start and other.end <= self.end


def _span_from_offsets(source: str, start: int, end: int) -> Span:
    line_start = source.count("\n", 0, start) + 1
    col_start = start - (source.rfind("\n", 0, start) + 1) + 1
    line_end = source.count("\n", 0, end) + 1
    col_end = end - (source.rfind("\n", 0, end) + 1) + 1
    return Span(start, end, line_start, col_start, line_end, col_end)


# ============================================================
# ================== ERRORS & DIAGNOSTICS ====================
# ============================================================

class AnalysisError(Exception):
    """Base class for every error raised by the analysis core."""


class UnsupportedConstruct(AnalysisError):
    """Raised by the adapter when a syntax node cannot be mapped."""

    def __init__(self, kind: str, span: Optional[Span] = None) -> None:
        super().__init__(f"cannot map syntax node of kind '{kind}'")
        self.kind = kind
        self.span = span


class MalformedFunction(AnalysisError):
    """Raised when a function body cannot be linearized into statement facts."""

    def __init__(self, name: str, reason: str, span: Optional[Span] = None) -> None:
        super().__init__(f"function '{name}' could not be analyzed: {reason}")
        self.name = name
        self.reason = reason
        self.span = span


class DetectorFailure(AnalysisError):
    """A detector raised unexpectedly; its findings are discarded."""

    def __init__(self, rule_id: str, reason: str) -> None:
        super().__init__(f"detector '{rule_id}' failed: {reason}")
        self.rule_id = rule_id
        self.reason = reason


class ConfigError(AnalysisError):
    """Raised for configuration documents that cannot be interpreted at all."""


@dataclass(frozen=True)
class AnalysisWarning:
    """
    Non-fatal diagnostic attached to a Report.
    kind is one of "unsupported-construct", "malformed-function",
    "detector-failure".
    """
    kind: str
    message: str
    span: Optional[Span] = None


# ============================================================
# ==================== SYNTAX MODEL ==========================
# ============================================================

class NodeKind(Enum):
    SOURCE_FILE = "SourceFile"
    FUNCTION_DEF = "FunctionDef"
    IMPL_BLOCK = "ImplBlock"
    MODULE = "Module"
    STRUCT_DEF = "StructDef"
    FIELD_DECL = "FieldDecl"
    PARAMS = "Params"
    PARAM = "Param"
    SELF_PARAM = "SelfParam"
    VISIBILITY = "Visibility"
    ATTRIBUTE = "Attribute"
    BLOCK = "Block"
    LET_DECL = "LetDecl"
    EXPR_STMT = "ExprStmt"
    CALL_EXPR = "CallExpr"
    ARGUMENTS = "Arguments"
    MACRO_CALL = "MacroCall"
    TOKEN_TREE = "TokenTree"
    BINARY_EXPR = "BinaryExpr"
    COMPOUND_ASSIGN = "CompoundAssign"
    ASSIGNMENT = "Assignment"
    FIELD_ACCESS = "FieldAccess"
    INDEX_EXPR = "IndexExpr"
    LOOP = "Loop"
    IF = "If"
    ELSE = "Else"
    MATCH = "Match"
    MATCH_ARM = "MatchArm"
    LET_CONDITION = "LetCondition"
    RETURN = "Return"
    CLOSURE = "Closure"
    LITERAL = "Literal"
    IDENTIFIER = "Identifier"
    PATH = "Path"
    TYPE = "Type"
    CAST = "Cast"
    TRY = "Try"
    AWAIT = "Await"
    STRUCT_LITERAL = "StructLiteral"
    FIELD_INIT = "FieldInit"
    BASE_INIT = "BaseInit"
    RANGE = "Range"
    UNARY = "Unary"
    REFERENCE = "Reference"
    PAREN = "Paren"
    CONST = "Const"
    COMMENT = "Comment"
    OTHER = "Other"


@dataclass(frozen=True, eq=False)
class Node:
    """
    One syntax construct of the uniform model.

    role is the field name the node occupies in its parent ("function",
    "left", "body", ...); tag carries a small classifier such as the
    operator of a binary expression, the loop flavour or the literal flavour.
    degraded is set when some descendant had to be skipped.
    """
    kind: NodeKind
    span: Span
    children: Tuple["Node", ...] = ()
    text: str = ""
    role: Optional[str] = None
    tag: Optional[str] = None
    degraded: bool = False

    def child(self, role: str) -> Optional["Node"]:
        for node in self.children:
            if node.role == role:
                return node
        return None

    def children_of(self, *kinds: NodeKind) -> List["Node"]:
        return [node for node in self.children if node.kind in kinds]

    def first_of(self, *kinds: NodeKind) -> Optional["Node"]:
        for node in self.children:
            if node.kind in kinds:
                return node
        return None

    def walk(self) -> Iterator["Node"]:
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass(frozen=True)
class SourceUnit:
    """One module of contract code. root is None when nothing could be adapted."""
    identifier: str
    text: str
    root: Optional[Node]
    warnings: Tuple[AnalysisWarning, ...] = ()


# ============================================================
# ================= SYNTAX MODEL ADAPTER =====================
# ============================================================

_TREE_SITTER_KINDS: Dict[str, NodeKind] = {
    "source_file": NodeKind.SOURCE_FILE,
    "function_item": NodeKind.FUNCTION_DEF,
    "impl_item": NodeKind.IMPL_BLOCK,
    "mod_item": NodeKind.MODULE,
    "trait_item": NodeKind.MODULE,
    "declaration_list": NodeKind.MODULE,
    "struct_item": NodeKind.STRUCT_DEF,
    "field_declaration": NodeKind.FIELD_DECL,
    "parameters": NodeKind.PARAMS,
    "parameter": NodeKind.PARAM,
    "self_parameter": NodeKind.SELF_PARAM,
    "visibility_modifier": NodeKind.VISIBILITY,
    "attribute_item": NodeKind.ATTRIBUTE,
    "inner_attribute_item": NodeKind.ATTRIBUTE,
    "block": NodeKind.BLOCK,
    "unsafe_block": NodeKind.BLOCK,
    "let_declaration": NodeKind.LET_DECL,
    "expression_statement": NodeKind.EXPR_STMT,
    "call_expression": NodeKind.CALL_EXPR,
    "arguments": NodeKind.ARGUMENTS,
    "macro_invocation": NodeKind.MACRO_CALL,
    "token_tree": NodeKind.TOKEN_TREE,
    "binary_expression": NodeKind.BINARY_EXPR,
    "compound_assignment_expr": NodeKind.COMPOUND_ASSIGN,
    "assignment_expression": NodeKind.ASSIGNMENT,
    "field_expression": NodeKind.FIELD_ACCESS,
    "index_expression": NodeKind.INDEX_EXPR,
    "for_expression": NodeKind.LOOP,
    "while_expression": NodeKind.LOOP,
    "loop_expression": NodeKind.LOOP,
    "if_expression": NodeKind.IF,
    "else_clause": NodeKind.ELSE,
    "match_expression": NodeKind.MATCH,
    "match_arm": NodeKind.MATCH_ARM,
    "let_condition": NodeKind.LET_CONDITION,
    "return_expression": NodeKind.RETURN,
    "closure_expression": NodeKind.CLOSURE,
    "integer_literal": NodeKind.LITERAL,
    "float_literal": NodeKind.LITERAL,
    "string_literal": NodeKind.LITERAL,
    "raw_string_literal": NodeKind.LITERAL,
    "char_literal": NodeKind.LITERAL,
    "boolean_literal": NodeKind.LITERAL,
    "identifier": NodeKind.IDENTIFIER,
    "field_identifier": NodeKind.IDENTIFIER,
    "type_identifier": NodeKind.IDENTIFIER,
    "shorthand_field_identifier": NodeKind.IDENTIFIER,
    "self": NodeKind.IDENTIFIER,
    "scoped_identifier": NodeKind.PATH,
    "scoped_type_identifier": NodeKind.PATH,
    "primitive_type": NodeKind.TYPE,
    "generic_type": NodeKind.TYPE,
    "reference_type": NodeKind.TYPE,
    "array_type": NodeKind.TYPE,
    "tuple_type": NodeKind.TYPE,
    "type_cast_expression": NodeKind.CAST,
    "try_expression": NodeKind.TRY,
    "await_expression": NodeKind.AWAIT,
    "struct_expression": NodeKind.STRUCT_LITERAL,
    "field_initializer": NodeKind.FIELD_INIT,
    "shorthand_field_initializer": NodeKind.FIELD_INIT,
    "base_field_initializer": NodeKind.BASE_INIT,
    "range_expression": NodeKind.RANGE,
    "unary_expression": NodeKind.UNARY,
    "reference_expression": NodeKind.REFERENCE,
    "parenthesized_expression": NodeKind.PAREN,
    "const_item": NodeKind.CONST,
    "static_item": NodeKind.CONST,
    "line_comment": NodeKind.COMMENT,
    "block_comment": NodeKind.COMMENT,
}

_TREE_SITTER_TAGS: Dict[str, str] = {
    "for_expression": "for",
    "while_expression": "while",
    "loop_expression": "loop",
    "integer_literal": "integer",
    "float_literal": "float",
    "string_literal": "string",
    "raw_string_literal": "string",
    "char_literal": "char",
    "boolean_literal": "boolean",
    "shorthand_field_initializer": "shorthand",
}

# Anonymous tokens that become the tag of their parent when no field names them.
_TAG_FROM_TOKEN_KINDS = {NodeKind.UNARY, NodeKind.RANGE}


def adapt(
    raw_tree: Any,
    source: Optional[str] = None,
    warnings: Optional[List[AnalysisWarning]] = None,
) -> Node:
    """
    Wrap an externally produced syntax tree into the uniform Node model.

    Accepts a tree-sitter Tree/Node or a plain mapping tree of the form
    {"kind": "<NodeKind value>", "span": [start, end], "text": ..., "role": ...,
    "tag": ..., "children": [...]}. Unmappable subtrees below the root are
    skipped and reported through `warnings`; an unmappable root raises
    UnsupportedConstruct.
    """
    if warnings is None:
        warnings = []
    if isinstance(raw_tree, Mapping):
        return _adapt_mapping(raw_tree, source or "", warnings, None)
    if isinstance(raw_tree, tree_sitter.Tree):
        raw_tree = raw_tree.root_node
    if isinstance(raw_tree, tree_sitter.Node):
        data = source.encode("utf-8") if source is not None else None
        return _adapt_tree_sitter(raw_tree, data, warnings, None)
    raise UnsupportedConstruct(type(raw_tree).__name__)


def _ts_span(ts_node: "tree_sitter.Node") -> Span:
    start_point = ts_node.start_point
    end_point = ts_node.end_point
    return Span(
        ts_node.start_byte,
        ts_node.end_byte,
        start_point[0] + 1,
        start_point[1] + 1,
        end_point[0] + 1,
        end_point[1] + 1,
    )


def _ts_text(ts_node: "tree_sitter.Node", data: Optional[bytes]) -> str:
    if data is not None:
        raw = data[ts_node.start_byte:ts_node.end_byte]
    else:
        raw = ts_node.text or b""
    return raw.decode("utf-8", errors="replace")


def _record_skip(warnings: List[AnalysisWarning], exc: UnsupportedConstruct) -> None:
    warnings.append(
        AnalysisWarning(
            kind="unsupported-construct",
            message=f"{exc}; subtree skipped",
            span=exc.span,
        )
    )


def _adapt_tree_sitter(
    ts_node: "tree_sitter.Node",
    data: Optional[bytes],
    warnings: List[AnalysisWarning],
    role: Optional[str],
) -> Node:
    span = _ts_span(ts_node)
    if ts_node.type == "ERROR" or ts_node.is_missing:
        raise UnsupportedConstruct(ts_node.type, span)

    kind = _TREE_SITTER_KINDS.get(ts_node.type, NodeKind.OTHER)
    tag = _TREE_SITTER_TAGS.get(ts_node.type)
    children: List[Node] = []
    degraded = False

    cursor = ts_node.walk()
    if cursor.goto_first_child():
        while True:
            child = cursor.node
            child_role = cursor.field_name
            if child.type == "ERROR" or child.is_missing:
                _record_skip(warnings, UnsupportedConstruct(child.type, _ts_span(child)))
                degraded = True
            elif child.is_named:
                try:
                    children.append(_adapt_tree_sitter(child, data, warnings, child_role))
                except UnsupportedConstruct as exc:
                    _record_skip(warnings, exc)
                    degraded = True
            elif child_role == "operator":
                tag = child.type
            elif kind in _TAG_FROM_TOKEN_KINDS and tag is None:
                tag = child.type
            if not cursor.goto_next_sibling():
                break

    degraded = degraded or any(node.degraded for node in children)
    return Node(
        kind=kind,
        span=span,
        children=tuple(children),
        text=_ts_text(ts_node, data),
        role=role,
        tag=tag,
        degraded=degraded,
    )


def _adapt_mapping(
    raw: Mapping[str, Any],
    source: str,
    warnings: List[AnalysisWarning],
    role: Optional[str],
) -> Node:
    raw_span = raw.get("span") or (0, 0)
    start, end = int(raw_span[0]), int(raw_span[1])
    span = _span_from_offsets(source, start, end) if source else Span(start, end)

    kind_name = raw.get("kind")
    try:
        kind = NodeKind(kind_name)
    except ValueError:
        raise UnsupportedConstruct(str(kind_name), span) from None

    children: List[Node] = []
    degraded = False
    for raw_child in raw.get("children") or []:
        if not isinstance(raw_child, Mapping):
            _record_skip(warnings, UnsupportedConstruct(type(raw_child).__name__, span))
            degraded = True
            continue
        try:
            children.append(_adapt_mapping(raw_child, source, warnings, raw_child.get("role")))
        except UnsupportedConstruct as exc:
            _record_skip(warnings, exc)
            degraded = True

    text = raw.get("text")
    if text is None:
        text = source[start:end] if source else ""
    degraded = degraded or any(node.degraded for node in children)
    return Node(
        kind=kind,
        span=span,
        children=tuple(children),
        text=str(text),
        role=role if role is not None else raw.get("role"),
        tag=raw.get("tag"),
        degraded=degraded,
    )


@functools.lru_cache(maxsize=None)
def _rust_language() -> "tree_sitter.Language":
    return tree_sitter.Language(tree_sitter_rust.language())


def parse_rust(text: str) -> "tree_sitter.Tree":
    """
    Default host-side parser. A Parser is created per call since tree-sitter
    parsers must not be shared between threads.
    """
    parser = tree_sitter.Parser(_rust_language())
    return parser.parse(text.encode("utf-8"))


def source_unit_from_tree(identifier: str, raw_tree: Any, text: str = "") -> SourceUnit:
    warnings: List[AnalysisWarning] = []
    try:
        root: Optional[Node] = adapt(raw_tree, text, warnings)
    except UnsupportedConstruct as exc:
        warnings.append(
            AnalysisWarning(
                kind="unsupported-construct",
                message=f"{exc}; unit '{identifier}' skipped",
                span=exc.span,
            )
        )
        root = None
    return SourceUnit(identifier=identifier, text=text, root=root, warnings=tuple(warnings))


def load_source_unit(
    identifier: str,
    text: str,
    parser: Optional[Callable[[str], Any]] = None,
) -> SourceUnit:
    """Parse raw Rust text (with tree-sitter-rust unless the host supplies a parser)."""
    raw_tree = (parser or parse_rust)(text)
    return source_unit_from_tree(identifier, raw_tree, text)


# ============================================================
# ======================= FACT MODEL =========================
# ============================================================

class StatementKind(Enum):
    ARITHMETIC = "ArithmeticOp"
    EXTERNAL_CALL = "ExternalCall"
    STATE_WRITE = "StateWrite"
    STATE_READ = "StateRead"
    LOOP = "LoopConstruct"
    STORAGE_APPEND = "StorageAppend"
    FLOAT = "FloatUsage"
    ASSERTION = "Assertion"
    BRANCH = "Branch"
    EXIT = "Exit"
    INTERNAL_CALL = "InternalCall"
    STRUCT_INIT = "StructInit"


class BoundKind(Enum):
    FIXED = "fixed"
    COLLECTION = "collection-derived"
    UNBOUNDED = "unbounded"


@dataclass
class StatementFact:
    """
    One statement-level event inside a function.

    Only the attributes relevant to `kind` are populated. parent is the index
    of the enclosing Branch/LoopConstruct fact and arm the arm of that parent
    (0 for loop bodies and `then` blocks, 1 for `else`, k for match arms).
    """
    index: int
    kind: StatementKind
    span: Span
    text: str = ""
    parent: Optional[int] = None
    arm: Optional[int] = None

    # ArithmeticOp
    op: Optional[str] = None
    operand_spans: List[Span] = field(default_factory=list)
    width: Optional[str] = None
    provenance: Set[str] = field(default_factory=set)  # "caller" / "external"

    # ArithmeticOp (checked family) / ExternalCall (result consumed)
    checked: bool = False

    # ExternalCall / InternalCall
    callee: Optional[str] = None
    is_async: bool = False

    # StateWrite / StateRead
    field_name: Optional[str] = None
    binding: Optional[str] = None           # local that captured a StateRead
    value_source: Optional[Literal["parameter", "default", "expression"]] = None
    value_text: Optional[str] = None

    # LoopConstruct
    bound_kind: Optional[BoundKind] = None
    body_size: int = 0

    # StorageAppend
    container: Optional[str] = None
    has_bound_check: bool = False

    # Assertion / Branch
    condition: Optional[str] = None
    is_access_check: bool = False
    len_comparisons: List[Tuple[str, str, str]] = field(default_factory=list)
    arm_count: int = 0
    has_default_arm: bool = False

    # StructInit
    initialized_fields: List[str] = field(default_factory=list)
    has_base_default: bool = False


@dataclass
class ParamFact:
    name: str
    type_text: str
    span: Span


@dataclass
class FieldFact:
    name: str
    type_text: str
    span: Span


@dataclass
class StructFact:
    name: str
    span: Span
    fields: List[FieldFact] = field(default_factory=list)
    attributes: List[str] = field(default_factory=list)

    def field_type(self, name: str) -> Optional[str]:
        for fld in self.fields:
            if fld.name == name:
                return fld.type_text
        return None


@dataclass
class FunctionFact:
    name: str
    visibility: Literal["public", "private"]
    span: Span
    params: List[ParamFact] = field(default_factory=list)
    body: Optional[Node] = field(default=None, repr=False)
    receiver: Optional[str] = None          # "&mut self", "&self", "self"
    owner: Optional[str] = None             # impl target type
    attributes: List[str] = field(default_factory=list)
    modifiers: Set[str] = field(default_factory=set)
    statements: List[StatementFact] = field(default_factory=list)
    calls: List[str] = field(default_factory=list)
    flow_graph: Optional["FlowGraph"] = field(default=None, repr=False, compare=False)

    @property
    def is_public(self) -> bool:
        return self.visibility == "public"

    @property
    def is_guarded(self) -> bool:
        return "guarded" in self.modifiers

    @property
    def is_constructor(self) -> bool:
        return "constructor" in self.modifiers

    @property
    def param_names(self) -> Set[str]:
        return {param.name for param in self.params}

    def facts_of(self, *kinds: StatementKind) -> List[StatementFact]:
        return [fact for fact in self.statements if fact.kind in kinds]

    def descendants(self, index: int) -> List[StatementFact]:
        """Facts nested (at any depth) under the Branch/Loop fact at `index`."""
        nested: List[StatementFact] = []
        for fact in self.statements[index + 1:]:
            parent = fact.parent
            while parent is not None and parent != index:
                parent = self.statements[parent].parent
            if parent == index:
                nested.append(fact)
        return nested


@dataclass
class UnitFacts:
    """Fact base for one SourceUnit."""
    functions: List[FunctionFact] = field(default_factory=list)
    structs: List[StructFact] = field(default_factory=list)
    constants: Dict[str, Optional[int]] = field(default_factory=dict)
    call_graph: Dict[str, Set[str]] = field(default_factory=dict)
    warnings: List[AnalysisWarning] = field(default_factory=list)

    def struct(self, name: Optional[str]) -> Optional[StructFact]:
        for struct in self.structs:
            if struct.name == name:
                return struct
        return None

    def call_path_exists(self, caller: str, callee: str, max_depth: int = 64) -> bool:
        if caller == callee:
            return True
        visited = {caller}
        queue: deque[Tuple[str, int]] = deque([(caller, 0)])
        while queue:
            symbol, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for neighbor in sorted(self.call_graph.get(symbol, set())):
                if neighbor == callee:
                    return True
                if neighbor not in visited:
                    visited.add(neighbor)
                    queue.append((neighbor, depth + 1))
        return False

    def reachable_from_public(self, name: str) -> bool:
        for fn in self.functions:
            if fn.is_public and self.call_path_exists(fn.name, name):
                return True
        return False


# ============================================================
# ================= CLASSIFICATION TABLES ====================
# ============================================================

_INTEGER_TYPES = frozenset(
    {"u8", "u16", "u32", "u64", "u128", "usize", "i8", "i16", "i32", "i64", "i128", "isize"}
)
_FLOAT_TYPES = frozenset({"f32", "f64"})
_TYPE_ALIASES = {
    "Balance": "u128",
    "Timestamp": "u64",
    "Gas": "u64",
    "BlockHeight": "u64",
    "EpochHeight": "u64",
    "Nonce": "u64",
}
_KNOWN_RETURN_TYPES = {
    "attached_deposit": "u128",
    "account_balance": "u128",
    "transferred_value": "u128",
    "block_timestamp": "u64",
    "block_height": "u64",
    "block_number": "u32",
}

_CHECKED_ARITH_RE = re.compile(
    r"^(checked|saturating|wrapping|overflowing)_(add|sub|mul|div|rem|pow|neg|shl|shr|abs)$"
)
_UNCHECKED_BINARY_OPS = frozenset({"+", "-", "*"})
_UNCHECKED_COMPOUND_OPS = frozenset({"+=", "-=", "*="})
_UNCHECKED_ARITH_METHODS = frozenset({"pow"})
_NUMERIC_SUFFIX_RE = re.compile(r"(u8|u16|u32|u64|u128|usize|i8|i16|i32|i64|i128|isize|f32|f64)$")

_EXTERNAL_CALLEES = frozenset(
    {
        "transfer",
        "send",
        "call",
        "invoke",
        "invoke_signed",
        "function_call",
        "delegate_call",
        "cross_contract_call",
        "transfer_from",
    }
)
_EXTERNAL_PREFIXES = ("ext_",)
_RESULT_CONSUMERS = frozenset(
    {
        "expect",
        "expect_err",
        "unwrap",
        "unwrap_err",
        "unwrap_or",
        "unwrap_or_else",
        "unwrap_or_default",
        "map_err",
        "is_ok",
        "is_err",
        "ok",
        "ok_or",
        "ok_or_else",
        "then",
        "and_then",
    }
)
_ASSERT_MACROS = frozenset(
    {"assert", "assert_eq", "assert_ne", "require", "ensure", "ensure_eq", "debug_assert", "debug_assert_eq"}
)
_EQUALITY_ASSERT_MACROS = frozenset({"assert_eq", "ensure_eq", "debug_assert_eq"})
_EXIT_MACROS = frozenset({"panic", "unreachable", "unimplemented", "todo"})
_EXIT_CALLS = frozenset({"panic_str", "panic", "abort"})
_APPEND_METHODS = frozenset({"push", "push_back", "push_front", "insert", "extend", "append"})
_MUTATING_METHODS = _APPEND_METHODS | frozenset(
    {"remove", "set", "clear", "pop", "truncate", "retain", "swap_remove", "replace", "drain"}
)
_READ_THROUGH_METHODS = frozenset(
    {"clone", "get", "unwrap", "unwrap_or", "unwrap_or_default", "expect", "len", "to_owned", "copied", "cloned"}
)
_ITERATOR_ADAPTERS = frozenset(
    {"iter", "iter_mut", "into_iter", "enumerate", "keys", "values", "rev", "cloned", "copied", "skip", "map", "filter", "zip"}
)

_CALLER_IDENTITY_RE = re.compile(
    r"\b(predecessor_account_id|signer_account_id|caller|sender|msg_sender|is_signer|signer)\b"
)
_EXTERNAL_READ_RE = re.compile(
    r"\b(attached_deposit|transferred_value|account_balance|balance_of|get_balance|query_balance|get_price|oracle_price|block_timestamp|funds)\b"
)
_DEPOSIT_READ_RE = re.compile(r"\b(attached_deposit|transferred_value)\b")
_FREE_IDENTIFIER_RE = re.compile(r"(?<![\w.:])([A-Za-z_]\w*)")
_MEMBER_RE = re.compile(r"\.\s*([A-Za-z_]\w*)")
_LEN_COMPARISON_RES = (
    re.compile(
        r"(?P<container>[A-Za-z_][\w.]*)\.len\(\)\s*(?P<op><=|>=|<|>|==)\s*(?P<bound>[A-Za-z0-9_][\w:]*)"
    ),
    re.compile(
        r"(?P<bound>[A-Za-z0-9_][\w:]*)\s*(?P<op><=|>=|<|>)\s*(?P<container>[A-Za-z_][\w.]*)\.len\(\)"
    ),
)
_CALL_IN_TOKENS_RE = re.compile(r"([A-Za-z_][\w:.]*)\s*\(")
_FLOAT_LITERAL_RE = re.compile(r"(?<![\w.])\d[\d_]*\.\d[\d_]*(?:f32|f64)?\b|\b\d[\d_]*f(?:32|64)\b")
_CONSTANT_NAME_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")
_GUARD_HELPER_RE = re.compile(
    r"^(assert|require|ensure|only|check)_(is_)?(owner|admin|authority|governance|operator|auth|authorized|caller|guardian)"
)
_GUARD_ATTRIBUTE_RE = re.compile(r"^(private|only_owner|access_control|only_admin)\b")
_TAKE_LIMIT_RE = re.compile(r"\.take\(\s*([\w:]+)\s*\)")
_ZERO_VALUE_PATTERNS = (
    re.compile(r"^(?:[\w<>]+::)*default\(\)$"),
    re.compile(r"^(?:String|Vec|AccountId|Address)::new\(\)$"),
    re.compile(r"^(?:[\w<>]+::)*zero(?:ed)?\(\)$"),
    re.compile(r"^0[\d_]*(?:u8|u16|u32|u64|u128|usize|i8|i16|i32|i64|i128|isize)?$"),
    re.compile(r'^""(?:\.(?:to_string|to_owned|into)\(\))?$'),
    re.compile(r"^None$"),
    re.compile(r"^\[\s*0(?:u8)?\s*;\s*\d+\s*\]$"),
    re.compile(r"^(?:[\w<>]+::)*(?:new_from_array|from)\(\s*\[\s*0(?:u8)?\s*;\s*\d+\s*\]\s*\)$"),
)
_VALUE_ADAPTER_SUFFIX_RE = re.compile(r"(?:\.(?:into|clone|to_owned)\(\))+$")

DEFAULT_SENSITIVE_FIELDS: Tuple[str, ...] = (
    "owner",
    "admin",
    "authority",
    "governance",
    "guardian",
    "operator",
    "manager",
    "minter",
    "pauser",
    "paused",
    "treasury",
    "fee_recipient",
)
DEFAULT_BALANCE_FIELDS: Tuple[str, ...] = (
    "balance",
    "deposit",
    "share",
    "supply",
    "credit",
    "stake",
    "reserve",
    "debt",
    "escrow",
    "locked",
)
DEFAULT_FINANCIAL_TERMS: Tuple[str, ...] = ("amount", "balance", "price", "fee")
DEFAULT_CONSTRUCTOR_NAMES: Tuple[str, ...] = ("new", "init", "initialize")
DEFAULT_MAX_CONTAINER_SIZE = 100


def _name_matches(name: Optional[str], terms: Iterable[str]) -> bool:
    if not name:
        return False
    lowered = name.lower()
    return any(term.lower() in lowered for term in terms)


def _last_segment(path_text: str) -> str:
    cleaned = re.sub(r"::<[^>]*>", "", path_text)
    parts = [part.strip() for part in re.split(r"::|\.", cleaned) if part.strip()]
    return parts[-1] if parts else cleaned.strip()


def _free_identifiers(text: str) -> Set[str]:
    return set(_FREE_IDENTIFIER_RE.findall(text or ""))


def _resolve_type(type_text: Optional[str]) -> Optional[str]:
    if not type_text:
        return None
    cleaned = type_text.strip().lstrip("&").strip()
    cleaned = re.sub(r"^mut\s+", "", cleaned)
    cleaned = _TYPE_ALIASES.get(cleaned, cleaned)
    if cleaned in _INTEGER_TYPES or cleaned in _FLOAT_TYPES:
        return cleaned
    return None


def _split_generic_args(text: str) -> List[str]:
    args: List[str] = []
    depth = 0
    current: List[str] = []
    for char in text:
        if char in "<([":
            depth += 1
        elif char in ">)]":
            depth -= 1
        if char == "," and depth == 0:
            args.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if "".join(current).strip():
        args.append("".join(current).strip())
    return args


def _element_type(container_type: Optional[str]) -> Optional[str]:
    """Value type of a collection type: last generic argument, or the array element."""
    if not container_type:
        return None
    match = re.search(r"<(.*)>\s*$", container_type.strip())
    if match:
        args = _split_generic_args(match.group(1))
        return _resolve_type(args[-1]) if args else None
    array = re.match(r"^\[\s*([^;\]]+)\s*;", container_type.strip())
    if array:
        return _resolve_type(array.group(1))
    return None


def _is_float_type(type_text: Optional[str]) -> bool:
    return _resolve_type(type_text) in _FLOAT_TYPES


def _integer_value(text: str) -> Optional[int]:
    cleaned = _NUMERIC_SUFFIX_RE.sub("", text.strip()).replace("_", "")
    if re.fullmatch(r"\d+", cleaned):
        return int(cleaned)
    if re.fullmatch(r"0x[0-9a-fA-F]+", cleaned):
        return int(cleaned, 16)
    return None


_MIRRORED_OPS = {"<": ">", ">": "<", "<=": ">=", ">=": "<=", "==": "=="}
_UPPER_BOUND_OPS = ("<", "<=")
_LOWER_BOUND_OPS = (">", ">=")


def _len_comparisons(text: str) -> List[Tuple[str, str, str]]:
    """(container, op, bound) triples, with op always read as `container.len() op bound`."""
    found: List[Tuple[str, str, str]] = []
    for position, pattern in enumerate(_LEN_COMPARISON_RES):
        for match in pattern.finditer(text or ""):
            op = match.group("op")
            if position == 1:
                op = _MIRRORED_OPS[op]
            found.append((match.group("container"), op, match.group("bound")))
    return found


def _arm_under(fn: FunctionFact, fact: StatementFact, header: int) -> Optional[int]:
    """Arm of the Branch/Loop fact `header` that contains `fact`, or None when it is outside."""
    current = fact
    while current.parent is not None:
        if current.parent == header:
            return current.arm
        current = fn.statements[current.parent]
    return None


def _unwrap(node: Node) -> Node:
    while node.kind in (NodeKind.PAREN, NodeKind.REFERENCE) or (
        node.kind == NodeKind.UNARY and node.tag in ("*", "-")
    ):
        inner = [child for child in node.children if child.kind != NodeKind.OTHER or child.text != "mut"]
        if not inner:
            break
        node = inner[-1]
    return node


def _binding_names(pattern: Optional[Node]) -> List[str]:
    if pattern is None:
        return []
    if pattern.kind == NodeKind.IDENTIFIER:
        return [pattern.text]
    return [node.text for node in pattern.walk() if node.kind == NodeKind.IDENTIFIER and node.text != "_"]


def _attribute_text(node: Node) -> str:
    text = node.text.strip()
    text = re.sub(r"^#!?\[", "", text)
    return text[:-1].strip() if text.endswith("]") else text


# ============================================================
# ===================== FACT EXTRACTOR =======================
# ============================================================

_ITEM_KINDS = frozenset(
    {
        NodeKind.FUNCTION_DEF,
        NodeKind.STRUCT_DEF,
        NodeKind.IMPL_BLOCK,
        NodeKind.MODULE,
        NodeKind.CONST,
        NodeKind.ATTRIBUTE,
        NodeKind.COMMENT,
    }
)


@dataclass
class _FunctionSite:
    node: Node
    owner: Optional[str]
    trait_impl: bool
    attributes: List[str]


class FactExtractor:
    """
    Walks the syntax model once and produces the unit's fact base.

    Pass 1 collects items (functions, structs, constants); pass 2 linearizes
    each function body into StatementFacts; pass 3 stitches unit-wide facts
    (call graph, guard helpers, storage bound checks).
    """

    def __init__(self, config: Optional["AnalysisConfig"] = None) -> None:
        self.config = config or AnalysisConfig()
        access = self.config.settings_for("missing-access-control")
        self.sensitive_fields = tuple(access.threshold("sensitive_fields", DEFAULT_SENSITIVE_FIELDS))
        init = self.config.settings_for("improper-initialization")
        self.constructor_names = tuple(init.threshold("constructor_names", DEFAULT_CONSTRUCTOR_NAMES))
        dos = self.config.settings_for("storage-dos")
        self.max_container_size = int(dos.threshold("max_container_size", DEFAULT_MAX_CONTAINER_SIZE))

    def extract(self, root: Optional[Node]) -> UnitFacts:
        unit = UnitFacts()
        if root is None:
            return unit

        sites: List[_FunctionSite] = []
        self._collect_items(root, None, False, sites, unit)
        function_names = {_function_name(site.node) for site in sites}

        for site in sites:
            try:
                walker = _FunctionWalker(self, unit, site, function_names)
                unit.functions.append(walker.build())
            except MalformedFunction as exc:
                unit.warnings.append(
                    AnalysisWarning(kind="malformed-function", message=str(exc), span=exc.span)
                )

        self._stitch_call_graph(unit)
        self._mark_guards(unit)
        self._mark_bound_checks(unit)
        return unit

    # ---------------- pass 1: items ----------------

    def _collect_items(
        self,
        node: Node,
        owner: Optional[str],
        trait_impl: bool,
        sites: List[_FunctionSite],
        unit: UnitFacts,
    ) -> None:
        pending_attributes: List[str] = []
        for child in node.children:
            if child.kind == NodeKind.ATTRIBUTE:
                pending_attributes.append(_attribute_text(child))
                continue
            if child.kind == NodeKind.COMMENT:
                continue

            if child.kind == NodeKind.FUNCTION_DEF:
                sites.append(_FunctionSite(child, owner, trait_impl, pending_attributes))
                body = child.child("body")
                if body is not None:
                    self._collect_items(body, None, False, sites, unit)
            elif child.kind == NodeKind.STRUCT_DEF:
                unit.structs.append(_struct_fact(child, pending_attributes))
            elif child.kind == NodeKind.CONST:
                name_node = child.child("name")
                value_node = child.child("value")
                if name_node is not None:
                    value = _integer_value(value_node.text) if value_node is not None else None
                    unit.constants[name_node.text] = value
            elif child.kind == NodeKind.IMPL_BLOCK:
                type_node = child.child("type")
                impl_owner = re.split(r"[<\s]", type_node.text.strip())[0] if type_node else None
                body = child.child("body")
                if body is not None:
                    self._collect_items(body, impl_owner, child.child("trait") is not None, sites, unit)
            elif child.kind not in (NodeKind.IDENTIFIER, NodeKind.LITERAL, NodeKind.TYPE):
                self._collect_items(child, owner, trait_impl, sites, unit)
            pending_attributes = []

    # ---------------- pass 3: unit-wide facts ----------------

    def _stitch_call_graph(self, unit: UnitFacts) -> None:
        for fn in unit.functions:
            callees = unit.call_graph.setdefault(fn.name, set())
            callees.update(fn.calls)

    def _mark_guards(self, unit: UnitFacts) -> None:
        helpers = {
            fn.name
            for fn in unit.functions
            if any(fact.is_access_check for fact in fn.facts_of(StatementKind.ASSERTION, StatementKind.BRANCH))
        }
        for fn in unit.functions:
            if any(_GUARD_ATTRIBUTE_RE.match(attr) for attr in fn.attributes):
                fn.modifiers.add("guarded")
                continue
            writes = fn.facts_of(StatementKind.STATE_WRITE)
            first_write = writes[0].index if writes else len(fn.statements)
            for fact in fn.statements[:first_write]:
                if fact.parent is not None:
                    continue
                if fact.is_access_check and fact.kind in (StatementKind.ASSERTION, StatementKind.BRANCH):
                    fn.modifiers.add("guarded")
                    break
                if fact.kind == StatementKind.INTERNAL_CALL and fact.callee != fn.name and (
                    fact.callee in helpers or _GUARD_HELPER_RE.match(fact.callee or "")
                ):
                    fn.modifiers.add("guarded")
                    break

    def _mark_bound_checks(self, unit: UnitFacts) -> None:
        for fn in unit.functions:
            appends = fn.facts_of(StatementKind.STORAGE_APPEND)
            if not appends:
                continue
            graph = get_flow_graph(fn)
            checks = [
                fact
                for fact in fn.facts_of(StatementKind.ASSERTION, StatementKind.BRANCH)
                if fact.len_comparisons
            ]
            for append in appends:
                append.has_bound_check = any(
                    graph.dominates(check.index, append.index)
                    and any(
                        _last_segment(container) == append.container
                        and op in self._capping_ops(fn, check, append)
                        and self._is_bounding(bound, unit)
                        for container, op, bound in check.len_comparisons
                    )
                    for check in checks
                )

    @staticmethod
    def _capping_ops(fn: FunctionFact, check: StatementFact, append: StatementFact) -> Tuple[str, ...]:
        """Comparison operators under which `check` keeps the container below its bound at `append`."""
        if check.kind == StatementKind.ASSERTION:
            return _UPPER_BOUND_OPS
        arm = _arm_under(fn, append, check.index)
        if arm == 0:
            return _UPPER_BOUND_OPS
        if arm == 1:
            return _LOWER_BOUND_OPS
        exits_early = any(
            fact.kind == StatementKind.EXIT and _arm_under(fn, fact, check.index) == 0
            for fact in fn.descendants(check.index)
        )
        return _LOWER_BOUND_OPS if exits_early else ()

    def _is_bounding(self, bound_text: str, unit: UnitFacts) -> bool:
        name = _last_segment(bound_text)
        value = _integer_value(name)
        if value is None:
            if name in unit.constants:
                value = unit.constants[name]
            elif not _CONSTANT_NAME_RE.match(name):
                return False
        if value is None:
            return True
        return value <= self.max_container_size


def _function_name(node: Node) -> str:
    name_node = node.child("name")
    return name_node.text if name_node is not None else "<anonymous>"


def _struct_fact(node: Node, attributes: List[str]) -> StructFact:
    name_node = node.child("name")
    struct = StructFact(
        name=name_node.text if name_node is not None else "<anonymous>",
        span=node.span,
        attributes=list(attributes),
    )
    body = node.child("body")
    if body is not None:
        for decl in body.children_of(NodeKind.FIELD_DECL):
            field_name = decl.child("name")
            field_type = decl.child("type")
            if field_name is None:
                continue
            struct.fields.append(
                FieldFact(
                    name=field_name.text,
                    type_text=field_type.text if field_type is not None else "",
                    span=decl.span,
                )
            )
    return struct


class _FunctionWalker:
    """Linearizes one function body into StatementFacts in evaluation order."""

    def __init__(
        self,
        extractor: FactExtractor,
        unit: UnitFacts,
        site: _FunctionSite,
        function_names: Set[str],
    ) -> None:
        self.extractor = extractor
        self.unit = unit
        self.site = site
        self.function_names = function_names
        self.locals: Dict[str, Optional[str]] = {}
        self.origins: Dict[str, Set[str]] = {}
        self.storage_aliases: Set[str] = set()
        self._parent: Optional[int] = None
        self._arm: Optional[int] = None
        self.fn = self._function_header(site)
        self.owner_struct = unit.struct(self.fn.owner)

    # ---------------- header ----------------

    def _function_header(self, site: _FunctionSite) -> FunctionFact:
        node = site.node
        name = _function_name(node)
        visibility_node = node.first_of(NodeKind.VISIBILITY)
        is_pub = visibility_node is not None and visibility_node.text.strip() == "pub"
        if site.trait_impl or any(re.match(r"ink\s*\(\s*(message|constructor)", a) for a in site.attributes):
            is_pub = True

        fn = FunctionFact(
            name=name,
            visibility="public" if is_pub else "private",
            span=node.span,
            body=node.child("body"),
            owner=site.owner,
            attributes=list(site.attributes),
        )

        params_node = node.child("parameters")
        if params_node is not None:
            for param in params_node.children:
                if param.kind == NodeKind.SELF_PARAM:
                    fn.receiver = " ".join(param.text.split())
                elif param.kind == NodeKind.PARAM:
                    names = _binding_names(param.child("pattern"))
                    type_node = param.child("type")
                    if not names:
                        continue
                    fn.params.append(
                        ParamFact(
                            name=names[-1],
                            type_text=type_node.text if type_node is not None else "",
                            span=param.span,
                        )
                    )

        qualifiers = " ".join(child.text for child in node.children if child.kind == NodeKind.OTHER and child.role is None)
        if re.search(r"\basync\b", qualifiers):
            fn.modifiers.add("async")
        if any(attr.startswith("payable") for attr in fn.attributes):
            fn.modifiers.add("payable")
        if name in self.extractor.constructor_names or any(
            attr == "init" or re.match(r"ink\s*\(\s*constructor", attr) for attr in fn.attributes
        ):
            fn.modifiers.add("constructor")
        return fn

    # ---------------- driver ----------------

    def build(self) -> FunctionFact:
        fn = self.fn
        if fn.body is None:
            raise MalformedFunction(fn.name, "function has no body", fn.span)
        if fn.body.degraded or fn.body.kind != NodeKind.BLOCK:
            raise MalformedFunction(fn.name, "body contains unparseable code", fn.span)

        for param in fn.params:
            self.locals[param.name] = param.type_text
            self.origins[param.name] = {"caller"}
            if _is_float_type(param.type_text):
                self._emit(StatementKind.FLOAT, param.span, param.type_text)
        return_type = self.site.node.child("return_type")
        if return_type is not None and _is_float_type(return_type.text):
            self._emit(StatementKind.FLOAT, return_type.span, return_type.text)

        self._walk_block(fn.body, tail_consumed=True)
        return fn

    def _emit(self, kind: StatementKind, span: Span, text: str, **attrs: Any) -> StatementFact:
        fact = StatementFact(
            index=len(self.fn.statements),
            kind=kind,
            span=span,
            text=text,
            parent=self._parent,
            arm=self._arm,
            **attrs,
        )
        self.fn.statements.append(fact)
        return fact

    @contextmanager
    def _region(self, parent: int, arm: int):
        saved = (self._parent, self._arm)
        self._parent, self._arm = parent, arm
        try:
            yield
        finally:
            self._parent, self._arm = saved

    # ---------------- provenance & storage ----------------

    def _origins_of(self, text: str) -> Set[str]:
        origins: Set[str] = set()
        for name in _free_identifiers(text):
            origins |= self.origins.get(name, set())
        if _EXTERNAL_READ_RE.search(text or ""):
            origins.add("external")
        if "payable" in self.fn.modifiers and _DEPOSIT_READ_RE.search(text or ""):
            origins.add("caller")
        return origins

    def _member_chain(self, node: Node) -> List[str]:
        node = _unwrap(node)
        if node.kind == NodeKind.FIELD_ACCESS:
            value = node.child("value")
            member = node.child("field")
            if value is None or member is None:
                return []
            base = self._member_chain(value)
            return base + [member.text] if base else []
        if node.kind == NodeKind.INDEX_EXPR and node.children:
            return self._member_chain(node.children[0])
        if node.kind == NodeKind.IDENTIFIER:
            return [node.text]
        return []

    def _storage_field(self, node: Node, bare_receiver: bool = False) -> Optional[str]:
        chain = self._member_chain(node)
        if not chain:
            return None
        root = chain[0]
        if root == "self" and len(chain) >= 2:
            return chain[1]
        if root in self.storage_aliases and len(chain) >= 2:
            return chain[1]
        if root == "ctx" and len(chain) >= 4 and chain[1] == "accounts":
            return chain[3]
        if (
            bare_receiver
            and len(chain) == 1
            and root not in self.locals
            and root not in self.unit.constants
            and root != "self"
        ):
            return root
        return None

    def _container_type(self, node: Node) -> Optional[str]:
        node = _unwrap(node)
        if node.kind == NodeKind.IDENTIFIER:
            return self.locals.get(node.text)
        chain = self._member_chain(node)
        if len(chain) == 2 and chain[0] == "self" and self.owner_struct is not None:
            return self.owner_struct.field_type(chain[1])
        return None

    def _numeric_type(self, node: Optional[Node]) -> Optional[str]:
        if node is None:
            return None
        node = _unwrap(node)
        kind = node.kind
        if kind == NodeKind.LITERAL:
            if node.tag not in ("integer", "float"):
                return None
            suffix = _NUMERIC_SUFFIX_RE.search(node.text)
            if suffix:
                return suffix.group(1)
            return "f64" if node.tag == "float" else None
        if kind == NodeKind.CAST:
            type_node = node.child("type")
            return _resolve_type(type_node.text) if type_node is not None else None
        if kind in (NodeKind.IDENTIFIER, NodeKind.FIELD_ACCESS):
            return _resolve_type(self._container_type(node))
        if kind == NodeKind.INDEX_EXPR and node.children:
            return _element_type(self._container_type(node.children[0]))
        if kind == NodeKind.BINARY_EXPR:
            return self._numeric_type(node.child("left")) or self._numeric_type(node.child("right"))
        if kind == NodeKind.CALL_EXPR:
            function = node.child("function")
            if function is None:
                return None
            if function.kind == NodeKind.FIELD_ACCESS:
                method = function.child("field")
                receiver = function.child("value")
                method_name = method.text if method is not None else ""
                if receiver is not None and method_name == "get":
                    return _element_type(self._container_type(receiver))
                if receiver is not None and (
                    method_name in _READ_THROUGH_METHODS
                    or method_name in _UNCHECKED_ARITH_METHODS
                    or _CHECKED_ARITH_RE.match(method_name)
                    or method_name in ("min", "max", "abs")
                ):
                    return self._numeric_type(receiver)
                return _KNOWN_RETURN_TYPES.get(method_name)
            return _KNOWN_RETURN_TYPES.get(_last_segment(function.text))
        return None

    def _value_source(self, value: Optional[Node]) -> Literal["parameter", "default", "expression"]:
        if value is None:
            return "expression"
        text = " ".join(value.text.split())
        core = text if text.startswith('""') else _VALUE_ADAPTER_SUFFIX_RE.sub("", text)
        core = core.lstrip("&").strip()
        if core in self.fn.param_names:
            return "parameter"
        if any(pattern.match(core) for pattern in _ZERO_VALUE_PATTERNS):
            return "default"
        return "expression"

    def _is_access_condition(self, text: str, equality: bool) -> bool:
        if not any(self._is_caller_identity(match, text) for match in _CALLER_IDENTITY_RE.finditer(text or "")):
            return False
        if not any(_name_matches(member, self.extractor.sensitive_fields) for member in _MEMBER_RE.findall(text)):
            return False
        return equality or "==" in text

    def _is_caller_identity(self, match: "re.Match[str]", text: str) -> bool:
        # Only environment reads identify the caller; a bare name the caller passed in does not.
        if text[match.end():].lstrip().startswith("("):
            return True
        before = text[:match.start()].rstrip()
        if before.endswith("::"):
            return True
        if before.endswith("."):
            receiver = re.search(r"([A-Za-z_]\w*)[\w.]*\.$", before)
            return receiver is None or receiver.group(1) != "self"
        name = match.group(1)
        return name not in self.fn.param_names and "caller" not in self.origins.get(name, set())

    def _is_constant(self, node: Node) -> bool:
        node = _unwrap(node)
        if node.kind == NodeKind.LITERAL and node.tag == "integer":
            return True
        if node.kind in (NodeKind.IDENTIFIER, NodeKind.PATH):
            name = _last_segment(node.text)
            return name in self.unit.constants or bool(_CONSTANT_NAME_RE.match(name))
        return False

    # ---------------- statements ----------------

    def _walk_block(self, block: Node, tail_consumed: bool) -> None:
        statements = [child for child in block.children if child.kind not in _ITEM_KINDS]
        pending: Optional[Tuple[str, List[StatementFact]]] = None
        for position, stmt in enumerate(statements):
            if pending is not None:
                name, calls = pending
                if _consumes_binding(stmt.text, name):
                    for call in calls:
                        call.checked = True
                pending = None

            if stmt.kind == NodeKind.LET_DECL:
                pending = self._walk_let(stmt)
            elif stmt.kind == NodeKind.EXPR_STMT:
                for expr in stmt.children:
                    self._walk_expr(expr, consumed=False)
            else:
                is_tail = position == len(statements) - 1
                self._walk_expr(stmt, consumed=is_tail and tail_consumed)

    def _walk_let(self, stmt: Node) -> Optional[Tuple[str, List[StatementFact]]]:
        names = _binding_names(stmt.child("pattern"))
        type_node = stmt.child("type")
        value = stmt.child("value")
        name = names[0] if len(names) == 1 else None
        start = len(self.fn.statements)

        captured = self._captured_field(value) if value is not None and name else None
        if captured is not None:
            self._emit(
                StatementKind.STATE_READ,
                value.span,
                value.text,
                field_name=captured,
                binding=name,
            )
        elif value is not None:
            self._walk_expr(value, consumed=False)

        if type_node is not None and _is_float_type(type_node.text):
            self._emit(StatementKind.FLOAT, type_node.span, type_node.text)

        for bound in names:
            if type_node is not None:
                self.locals[bound] = type_node.text
            else:
                inferred = self._numeric_type(value)
                self.locals[bound] = inferred
            origins = self._origins_of(value.text) if value is not None else set()
            new_facts = self.fn.statements[start:]
            if any(fact.kind == StatementKind.EXTERNAL_CALL for fact in new_facts):
                origins.add("external")
            self.origins[bound] = origins

        if name and value is not None:
            inner = _unwrap(value)
            is_mut_ref = value.kind == NodeKind.REFERENCE and any(
                child.kind == NodeKind.OTHER and child.text == "mut" for child in value.children
            )
            if is_mut_ref:
                if self._storage_field(inner) is not None or "accounts" in inner.text:
                    self.storage_aliases.add(name)

        unchecked = [
            fact
            for fact in self.fn.statements[start:]
            if fact.kind == StatementKind.EXTERNAL_CALL and not fact.checked
        ]
        if name and unchecked:
            return name, unchecked
        return None

    def _captured_field(self, value: Node) -> Optional[str]:
        node = _unwrap(value)
        while node.kind == NodeKind.CALL_EXPR:
            function = node.child("function")
            if function is None or function.kind != NodeKind.FIELD_ACCESS:
                return None
            method = function.child("field")
            receiver = function.child("value")
            if method is None or receiver is None or method.text not in _READ_THROUGH_METHODS:
                return None
            node = _unwrap(receiver)
        if node.kind not in (NodeKind.FIELD_ACCESS, NodeKind.INDEX_EXPR):
            return None
        return self._storage_field(node)

    # ---------------- expressions ----------------

    def _walk_expr(self, node: Node, consumed: bool, awaited: bool = False) -> None:
        kind = node.kind
        if kind == NodeKind.CALL_EXPR:
            self._walk_call(node, consumed, awaited)
        elif kind == NodeKind.MACRO_CALL:
            self._walk_macro(node)
        elif kind == NodeKind.BINARY_EXPR:
            left, right = node.child("left"), node.child("right")
            for operand in (left, right):
                if operand is not None:
                    self._walk_expr(operand, consumed=False)
            if node.tag in _UNCHECKED_BINARY_OPS:
                self._emit_arithmetic(node, node.tag, [left, right])
        elif kind in (NodeKind.COMPOUND_ASSIGN, NodeKind.ASSIGNMENT):
            self._walk_assignment(node)
        elif kind == NodeKind.FIELD_ACCESS:
            field_name = self._storage_field(node)
            if field_name is not None:
                self._emit(StatementKind.STATE_READ, node.span, node.text, field_name=field_name)
            else:
                value = node.child("value")
                if value is not None:
                    self._walk_expr(value, consumed=False)
        elif kind == NodeKind.IF:
            self._walk_if(node, consumed)
        elif kind == NodeKind.MATCH:
            self._walk_match(node, consumed)
        elif kind == NodeKind.LOOP:
            self._walk_loop(node)
        elif kind == NodeKind.RETURN:
            for child in node.children:
                self._walk_expr(child, consumed=True)
            self._emit(StatementKind.EXIT, node.span, node.text)
        elif kind == NodeKind.TRY:
            for child in node.children:
                self._walk_expr(child, consumed=True)
        elif kind == NodeKind.AWAIT:
            for child in node.children:
                self._walk_expr(child, consumed=consumed, awaited=True)
        elif kind == NodeKind.BLOCK:
            self._walk_block(node, tail_consumed=consumed)
        elif kind == NodeKind.CLOSURE:
            for name in _binding_names(node.child("parameters")):
                self.locals.setdefault(name, None)
            body = node.child("body")
            if body is not None:
                self._walk_expr(body, consumed=False)
        elif kind == NodeKind.LITERAL:
            if node.tag == "float":
                self._emit(StatementKind.FLOAT, node.span, node.text)
        elif kind == NodeKind.CAST:
            value = node.child("value")
            if value is not None:
                self._walk_expr(value, consumed=False)
            type_node = node.child("type")
            if type_node is not None and _is_float_type(type_node.text):
                self._emit(StatementKind.FLOAT, node.span, node.text)
        elif kind == NodeKind.STRUCT_LITERAL:
            self._walk_struct_literal(node)
        elif kind == NodeKind.LET_CONDITION:
            for name in _binding_names(node.child("pattern")):
                self.locals.setdefault(name, None)
            value = node.child("value")
            if value is not None:
                self._walk_expr(value, consumed=True)
        elif kind in (NodeKind.IDENTIFIER, NodeKind.PATH, NodeKind.TYPE) or kind in _ITEM_KINDS:
            return
        else:
            for child in node.children:
                self._walk_expr(child, consumed=consumed and kind == NodeKind.PAREN)

    def _emit_arithmetic(
        self,
        node: Node,
        op: str,
        operands: Sequence[Optional[Node]],
        checked: bool = False,
    ) -> None:
        present = [operand for operand in operands if operand is not None]
        width = None
        for operand in present:
            width = self._numeric_type(operand)
            if width is not None:
                break
        provenance: Set[str] = set()
        for operand in present:
            provenance |= self._origins_of(operand.text)
        self._emit(
            StatementKind.ARITHMETIC,
            node.span,
            node.text,
            op=op,
            operand_spans=[operand.span for operand in present],
            width=width,
            checked=checked,
            provenance=provenance,
        )

    def _walk_assignment(self, node: Node) -> None:
        left, right = node.child("left"), node.child("right")
        if right is not None:
            self._walk_expr(right, consumed=False)
        if left is None:
            return
        if left.kind == NodeKind.INDEX_EXPR:
            for index_expr in left.children[1:]:
                self._walk_expr(index_expr, consumed=False)

        if node.kind == NodeKind.COMPOUND_ASSIGN and node.tag in _UNCHECKED_COMPOUND_OPS:
            self._emit_arithmetic(node, node.tag, [left, right])

        field_name = self._storage_field(left, bare_receiver=True)
        if field_name is not None:
            self._emit(
                StatementKind.STATE_WRITE,
                node.span,
                node.text,
                field_name=field_name,
                value_source=self._value_source(right),
                value_text=right.text if right is not None else None,
            )
            return
        target = _unwrap(left)
        if target.kind == NodeKind.IDENTIFIER and right is not None:
            origins = self._origins_of(right.text)
            if node.kind == NodeKind.COMPOUND_ASSIGN:
                origins |= self.origins.get(target.text, set())
            self.origins[target.text] = origins

    def _is_external(self, short_name: str, callee_text: str) -> bool:
        if short_name in _EXTERNAL_CALLEES:
            return True
        if short_name.startswith(_EXTERNAL_PREFIXES) or callee_text.startswith(_EXTERNAL_PREFIXES):
            return True
        return "::ext(" in callee_text

    def _walk_call(self, node: Node, consumed: bool, awaited: bool) -> None:
        function = node.child("function")
        arguments = node.child("arguments")
        if function is None:
            return
        callee = " ".join(function.text.split())
        receiver: Optional[Node] = None
        method: Optional[str] = None
        if function.kind == NodeKind.FIELD_ACCESS:
            receiver = function.child("value")
            member = function.child("field")
            method = member.text if member is not None else None
        short_name = method or _last_segment(callee)

        storage_target = None
        if receiver is not None and method in _MUTATING_METHODS:
            storage_target = self._storage_field(receiver, bare_receiver=True)

        if receiver is not None and storage_target is None:
            self._walk_expr(receiver, consumed=method in _RESULT_CONSUMERS)
        if arguments is not None:
            for argument in arguments.children:
                self._walk_expr(argument, consumed=False)

        operands: List[Optional[Node]] = [receiver]
        if arguments is not None:
            operands.extend(arguments.children)

        if method is not None and _CHECKED_ARITH_RE.match(method):
            self._emit_arithmetic(node, method, operands, checked=True)
        elif method in _UNCHECKED_ARITH_METHODS:
            self._emit_arithmetic(node, method, operands)
        elif storage_target is not None:
            if method in _APPEND_METHODS:
                self._emit(
                    StatementKind.STORAGE_APPEND,
                    node.span,
                    node.text,
                    container=storage_target,
                    callee=method,
                )
            self._emit(
                StatementKind.STATE_WRITE,
                node.span,
                node.text,
                field_name=storage_target,
                callee=method,
                value_source="expression",
            )
        elif receiver is not None and _unwrap(receiver).text == "self":
            if short_name in self.function_names or _GUARD_HELPER_RE.match(short_name):
                self.fn.calls.append(short_name)
                self._emit(StatementKind.INTERNAL_CALL, node.span, node.text, callee=short_name)
            elif awaited:
                self._emit(
                    StatementKind.EXTERNAL_CALL,
                    node.span,
                    node.text,
                    callee=callee,
                    checked=consumed,
                    is_async=True,
                )
        elif self._is_external(short_name, callee) or awaited:
            self._emit(
                StatementKind.EXTERNAL_CALL,
                node.span,
                node.text,
                callee=callee,
                checked=consumed,
                is_async=awaited,
            )
        elif short_name in _EXIT_CALLS:
            self._emit(StatementKind.EXIT, node.span, node.text, callee=callee)
        elif receiver is None and (short_name in self.function_names or _GUARD_HELPER_RE.match(short_name)):
            self.fn.calls.append(short_name)
            self._emit(StatementKind.INTERNAL_CALL, node.span, node.text, callee=short_name)

    def _walk_macro(self, node: Node) -> None:
        macro_node = node.child("macro")
        name = _last_segment(macro_node.text) if macro_node is not None else ""
        tokens = node.first_of(NodeKind.TOKEN_TREE)
        body_text = tokens.text if tokens is not None else ""
        if name in _ASSERT_MACROS:
            for match in _CALL_IN_TOKENS_RE.finditer(body_text):
                callee = match.group(1)
                if self._is_external(_last_segment(callee), callee):
                    self._emit(
                        StatementKind.EXTERNAL_CALL,
                        node.span,
                        node.text,
                        callee=callee,
                        checked=True,
                    )
            self._emit(
                StatementKind.ASSERTION,
                node.span,
                node.text,
                callee=name,
                condition=body_text,
                is_access_check=self._is_access_condition(body_text, name in _EQUALITY_ASSERT_MACROS),
                len_comparisons=_len_comparisons(body_text),
            )
        elif name in _EXIT_MACROS:
            self._emit(StatementKind.EXIT, node.span, node.text, callee=name)
        elif _FLOAT_LITERAL_RE.search(body_text):
            self._emit(StatementKind.FLOAT, node.span, node.text)

    def _walk_if(self, node: Node, consumed: bool) -> None:
        condition = node.child("condition")
        consequence = node.child("consequence")
        alternative = node.child("alternative")
        if condition is not None:
            self._walk_expr(condition, consumed=False)
        condition_text = condition.text if condition is not None else ""
        header = self._emit(
            StatementKind.BRANCH,
            condition.span if condition is not None else node.span,
            condition_text,
            condition=condition_text,
            arm_count=2 if alternative is not None else 1,
            has_default_arm=alternative is not None,
            len_comparisons=_len_comparisons(condition_text),
        )
        if consequence is not None:
            with self._region(header.index, 0):
                self._walk_block(consequence, tail_consumed=consumed)
        if alternative is not None:
            with self._region(header.index, 1):
                for child in alternative.children:
                    self._walk_expr(child, consumed=consumed)

        exits_early = any(
            fact.kind == StatementKind.EXIT and fact.parent == header.index and fact.arm == 0
            for fact in self.fn.statements[header.index + 1:]
        )
        header.is_access_check = (
            exits_early and "!=" in condition_text and self._is_access_condition(condition_text, True)
        )

    def _walk_match(self, node: Node, consumed: bool) -> None:
        value = node.child("value")
        if value is not None:
            self._walk_expr(value, consumed=True)
        body = node.child("body")
        arms = body.children_of(NodeKind.MATCH_ARM) if body is not None else []
        header = self._emit(
            StatementKind.BRANCH,
            value.span if value is not None else node.span,
            value.text if value is not None else "",
            condition=value.text if value is not None else "",
            arm_count=len(arms),
            has_default_arm=True,
        )
        for arm_index, arm in enumerate(arms):
            with self._region(header.index, arm_index):
                for name in _binding_names(arm.child("pattern")):
                    self.locals.setdefault(name, None)
                arm_value = arm.child("value")
                if arm_value is not None:
                    self._walk_expr(arm_value, consumed=consumed)

    def _walk_loop(self, node: Node) -> None:
        flavour = node.tag or "loop"
        bound = BoundKind.UNBOUNDED
        if flavour == "for":
            value = node.child("value")
            if value is not None:
                self._walk_expr(value, consumed=False)
                bound = self._classify_iteration(value)
                element_type = _element_type(self._container_type(self._iteration_core(value)))
                origins = self._origins_of(value.text)
            else:
                element_type, origins = None, set()
            for name in _binding_names(node.child("pattern")):
                self.locals[name] = element_type
                self.origins[name] = origins
        elif flavour == "while":
            condition = node.child("condition")
            if condition is not None:
                self._walk_expr(condition, consumed=False)
                bound = self._classify_while(condition)

        header = self._emit(StatementKind.LOOP, node.span, node.text, bound_kind=bound)
        body = node.child("body")
        if body is not None:
            with self._region(header.index, 0):
                self._walk_block(body, tail_consumed=False)
        header.body_size = len(self.fn.statements) - header.index - 1

    def _iteration_core(self, value: Node) -> Node:
        node = _unwrap(value)
        while node.kind == NodeKind.CALL_EXPR:
            function = node.child("function")
            if function is None or function.kind != NodeKind.FIELD_ACCESS:
                break
            method = function.child("field")
            receiver = function.child("value")
            if method is None or receiver is None or method.text not in _ITERATOR_ADAPTERS | {"take"}:
                break
            node = _unwrap(receiver)
        return node

    def _classify_iteration(self, value: Node) -> BoundKind:
        limit = _TAKE_LIMIT_RE.search(value.text)
        if limit and (
            _integer_value(limit.group(1)) is not None
            or _last_segment(limit.group(1)) in self.unit.constants
            or _CONSTANT_NAME_RE.match(_last_segment(limit.group(1)))
        ):
            return BoundKind.FIXED
        core = self._iteration_core(value)
        if core.kind == NodeKind.RANGE:
            ends = [child for child in core.children]
            if ends and all(self._is_constant(end) for end in ends):
                return BoundKind.FIXED
            if any(".len()" in end.text and self._iterates_collection(end.text) for end in ends):
                return BoundKind.COLLECTION
            return BoundKind.UNBOUNDED
        if core.kind == NodeKind.OTHER and core.text.lstrip().startswith("["):
            return BoundKind.FIXED
        if self._iterates_collection(core.text):
            return BoundKind.COLLECTION
        return BoundKind.UNBOUNDED

    def _iterates_collection(self, text: str) -> bool:
        stripped = text.strip()
        if stripped.startswith("self.") or "accounts" in stripped:
            return True
        root = re.match(r"&?\s*(?:mut\s+)?([A-Za-z_]\w*)", stripped)
        if root is None:
            return False
        name = root.group(1)
        return name in self.fn.param_names or "caller" in self.origins.get(name, set()) or name in self.storage_aliases

    def _classify_while(self, condition: Node) -> BoundKind:
        node = _unwrap(condition)
        if node.kind == NodeKind.BINARY_EXPR and node.tag in ("<", "<=", ">", ">="):
            left, right = node.child("left"), node.child("right")
            if (left is not None and self._is_constant(left)) or (right is not None and self._is_constant(right)):
                return BoundKind.FIXED
        return BoundKind.UNBOUNDED

    def _walk_struct_literal(self, node: Node) -> None:
        name_node = node.child("name")
        struct_name = _last_segment(name_node.text) if name_node is not None else ""
        is_state_init = self.fn.is_constructor and struct_name in ("Self", self.fn.owner)
        body = node.child("body")
        initialized: List[str] = []
        has_base_default = False
        if body is None:
            return
        for init in body.children:
            if init.kind == NodeKind.FIELD_INIT:
                if init.tag == "shorthand":
                    field_name, value = init.text.strip(), init.first_of(NodeKind.IDENTIFIER)
                else:
                    field_node, value = init.child("field"), init.child("value")
                    field_name = field_node.text if field_node is not None else ""
                if value is not None and init.tag != "shorthand":
                    self._walk_expr(value, consumed=False)
                if is_state_init and field_name:
                    initialized.append(field_name)
                    self._emit(
                        StatementKind.STATE_WRITE,
                        init.span,
                        init.text,
                        field_name=field_name,
                        value_source=self._value_source(value),
                        value_text=value.text if value is not None else field_name,
                    )
            elif init.kind == NodeKind.BASE_INIT:
                for child in init.children:
                    self._walk_expr(child, consumed=False)
                has_base_default = "default" in init.text
        if is_state_init:
            self._emit(
                StatementKind.STRUCT_INIT,
                node.span,
                node.text,
                callee=struct_name,
                initialized_fields=initialized,
                has_base_default=has_base_default,
            )


def _consumes_binding(text: str, name: str) -> bool:
    escaped = re.escape(name)
    patterns = (
        rf"(?<![\w.]){escaped}\s*\?",
        rf"(?<![\w.]){escaped}\s*\.\s*(?:{'|'.join(sorted(_RESULT_CONSUMERS))})\b",
        rf"\bmatch\s+&?{escaped}\b",
        rf"\bif\s+let\b[^=]*=\s*&?{escaped}\b",
        rf"\breturn\s+{escaped}\b",
        rf"\b(?:{'|'.join(sorted(_ASSERT_MACROS))})!\s*\(.*(?<![\w.]){escaped}\b",
    )
    return any(re.search(pattern, text, re.S) for pattern in patterns)


def extract(root: Optional[Node], config: Optional["AnalysisConfig"] = None) -> UnitFacts:
    return FactExtractor(config).extract(root)


def extract_facts(
    root: Optional[Node],
    config: Optional["AnalysisConfig"] = None,
) -> Tuple[List[FunctionFact], List[StructFact]]:
    unit = extract(root, config)
    return unit.functions, unit.structs


# ============================================================
# ===================== FLOW GRAPH ===========================
# ============================================================

class EdgeKind(Enum):
    SEQUENTIAL = "sequential"
    BRANCH = "branch"
    LOOP_BACK = "loop-back"


@dataclass
class FlowGraph:
    """
    Per-function control flow over StatementFact indices.

    Branch facts fan out to the first fact of each arm; an arm-less
    fallthrough (if without else) is a second branch edge to whatever follows.
    Loop headers have a taken edge into the body and a not-taken edge past
    it; body ends get a loop-back edge to the header. Exit facts have no
    successors.
    """
    function: FunctionFact = field(repr=False)
    nodes: List[int] = field(default_factory=list)
    successors: Dict[int, List[int]] = field(default_factory=dict)
    predecessors: Dict[int, List[int]] = field(default_factory=dict)
    edge_kinds: Dict[Tuple[int, int], EdgeKind] = field(default_factory=dict)
    entry: Optional[int] = None
    exits: List[int] = field(default_factory=list)
    _dominators: Optional[Dict[int, Set[int]]] = field(default=None, repr=False)

    def fact(self, index: int) -> StatementFact:
        return self.function.statements[index]

    def add_edge(self, src: int, dst: int, kind: EdgeKind) -> None:
        if dst in self.successors.setdefault(src, []):
            return
        self.successors[src].append(dst)
        self.predecessors.setdefault(dst, []).append(src)
        self.edge_kinds[(src, dst)] = kind

    def reachable_from(self, start: int) -> Set[int]:
        """Nodes reachable through at least one edge (start itself only via a cycle)."""
        seen: Set[int] = set()
        queue = deque(self.successors.get(start, []))
        while queue:
            node = queue.popleft()
            if node in seen:
                continue
            seen.add(node)
            queue.extend(self.successors.get(node, []))
        return seen

    def path_exists(self, src: int, dst: int) -> bool:
        return dst in self.reachable_from(src)

    def any_path_reaches(self, start: int, matcher: Callable[[StatementFact], bool]) -> bool:
        return any(matcher(self.fact(node)) for node in self.reachable_from(start))

    def has_path_without(self, matcher: Callable[[StatementFact], bool]) -> bool:
        """True if some entry-to-exit path never visits a fact satisfying matcher."""
        if self.entry is None:
            return True
        if matcher(self.fact(self.entry)):
            return False
        exits = set(self.exits)
        seen = {self.entry}
        queue = deque([self.entry])
        while queue:
            node = queue.popleft()
            if node in exits:
                return True
            for succ in self.successors.get(node, []):
                if succ in seen or matcher(self.fact(succ)):
                    continue
                seen.add(succ)
                queue.append(succ)
        return False

    def paths_between(self, src: int, dst: int, limit: int = 64) -> List[List[int]]:
        """Simple paths from src to dst, at most `limit` of them."""
        paths: List[List[int]] = []
        stack: List[Tuple[int, List[int]]] = [(src, [src])]
        while stack and len(paths) < limit:
            node, path = stack.pop()
            for succ in reversed(self.successors.get(node, [])):
                if succ == dst:
                    paths.append(path + [succ])
                elif succ not in path:
                    stack.append((succ, path + [succ]))
        return paths

    def dominators(self) -> Dict[int, Set[int]]:
        if self._dominators is not None:
            return self._dominators
        if self.entry is None:
            self._dominators = {}
            return self._dominators
        reachable = self.reachable_from(self.entry) | {self.entry}
        order = [node for node in self.nodes if node in reachable]
        dom: Dict[int, Set[int]] = {node: set(reachable) for node in order}
        dom[self.entry] = {self.entry}
        changed = True
        while changed:
            changed = False
            for node in order:
                if node == self.entry:
                    continue
                preds = [p for p in self.predecessors.get(node, []) if p in reachable]
                new = set.intersection(*(dom[p] for p in preds)) if preds else set()
                new.add(node)
                if new != dom[node]:
                    dom[node] = new
                    changed = True
        self._dominators = dom
        return dom

    def dominates(self, a: int, b: int) -> bool:
        return a in self.dominators().get(b, set())


class _FlowGraphBuilder:
    def __init__(self, fn: FunctionFact) -> None:
        self.graph = FlowGraph(function=fn, nodes=[fact.index for fact in fn.statements])
        self.groups: Dict[Tuple[Optional[int], Optional[int]], List[StatementFact]] = {}
        for fact in fn.statements:
            self.groups.setdefault((fact.parent, fact.arm), []).append(fact)

    def build(self) -> FlowGraph:
        graph = self.graph
        top_level = self.groups.get((None, None), [])
        if top_level:
            graph.entry = top_level[0].index
        for node, _ in self._link_sequence(top_level, []):
            if node not in graph.exits:
                graph.exits.append(node)
        return graph

    def _link_sequence(
        self,
        facts: List[StatementFact],
        incoming: List[Tuple[int, EdgeKind]],
    ) -> List[Tuple[int, EdgeKind]]:
        for fact in facts:
            for node, kind in incoming:
                self.graph.add_edge(node, fact.index, kind)
            incoming = self._link_fact(fact)
        return incoming

    def _link_fact(self, fact: StatementFact) -> List[Tuple[int, EdgeKind]]:
        graph = self.graph
        if fact.kind == StatementKind.EXIT:
            graph.exits.append(fact.index)
            return []

        if fact.kind == StatementKind.BRANCH:
            outgoing: List[Tuple[int, EdgeKind]] = []
            for arm in range(fact.arm_count):
                arm_facts = self.groups.get((fact.index, arm), [])
                outgoing.extend(self._link_sequence(arm_facts, [(fact.index, EdgeKind.BRANCH)]))
            if not fact.has_default_arm or fact.arm_count == 0:
                outgoing.append((fact.index, EdgeKind.BRANCH))
            return _unique_edges(outgoing)

        if fact.kind == StatementKind.LOOP:
            body = self.groups.get((fact.index, 0), [])
            for node, _ in self._link_sequence(body, [(fact.index, EdgeKind.BRANCH)]):
                if node != fact.index:
                    graph.add_edge(node, fact.index, EdgeKind.LOOP_BACK)
            return [(fact.index, EdgeKind.BRANCH)]

        return [(fact.index, EdgeKind.SEQUENTIAL)]


def _unique_edges(edges: List[Tuple[int, EdgeKind]]) -> List[Tuple[int, EdgeKind]]:
    seen: Set[int] = set()
    unique = []
    for node, kind in edges:
        if node not in seen:
            seen.add(node)
            unique.append((node, kind))
    return unique


def build_flow_graph(fn: FunctionFact) -> FlowGraph:
    return _FlowGraphBuilder(fn).build()


def get_flow_graph(fn: FunctionFact) -> FlowGraph:
    """Build on first use and keep the graph on the FunctionFact."""
    if fn.flow_graph is None:
        fn.flow_graph = build_flow_graph(fn)
    return fn.flow_graph


# ============================================================
# ==================== FINDINGS & RULES ======================
# ============================================================

class Severity(Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}


@dataclass(frozen=True)
class Finding:
    """Immutable detector output. function is the enclosing function name."""
    rule_id: str
    severity: Severity
    span: Span
    message: str
    suggested_fix: Optional[str] = None
    function: Optional[str] = None


class Detector(ABC):
    """
    Shared detector contract. Detectors are stateless: everything they need
    arrives through detect(), so one instance may serve any number of units.
    """
    rule_id: str = ""
    default_severity: Severity = Severity.MEDIUM
    needs_flow_graph: bool = False
    suggested_fix: Optional[str] = None

    @abstractmethod
    def detect(
        self,
        function: FunctionFact,
        flow_graph: Optional[FlowGraph],
        unit: UnitFacts,
        settings: "RuleSettings",
    ) -> List[Finding]:
        raise NotImplementedError

    def _finding(self, function: FunctionFact, span: Span, message: str, settings: "RuleSettings") -> Finding:
        return Finding(
            rule_id=self.rule_id,
            severity=settings.severity or self.default_severity,
            span=span,
            message=message,
            suggested_fix=self.suggested_fix,
            function=function.name,
        )


class OverflowUnderflowDetector(Detector):
    rule_id = "overflow-underflow"
    default_severity = Severity.HIGH
    suggested_fix = "Use checked_*/saturating_* arithmetic and handle the overflow case explicitly."

    def detect(self, function, flow_graph, unit, settings):
        findings = []
        for fact in function.facts_of(StatementKind.ARITHMETIC):
            if fact.checked or fact.width not in _INTEGER_TYPES or not fact.provenance:
                continue
            origin = " and ".join(sorted(fact.provenance))
            findings.append(
                self._finding(
                    function,
                    fact.span,
                    f"Unchecked '{fact.op}' on {fact.width} in '{function.name}' uses {origin}-controlled operands",
                    settings,
                )
            )
        return findings


class ReentrancyDetector(Detector):
    rule_id = "reentrancy"
    default_severity = Severity.HIGH
    needs_flow_graph = True
    suggested_fix = "Update balances before making the external call (checks-effects-interactions)."

    def detect(self, function, flow_graph, unit, settings):
        balance_fields = settings.threshold("balance_fields", DEFAULT_BALANCE_FIELDS)
        calls = function.facts_of(StatementKind.EXTERNAL_CALL)
        if not calls:
            return []
        findings = []
        for write in function.facts_of(StatementKind.STATE_WRITE):
            if not _name_matches(write.field_name, balance_fields):
                continue
            call = next((c for c in calls if flow_graph.path_exists(c.index, write.index)), None)
            if call is None:
                continue
            findings.append(
                self._finding(
                    function,
                    write.span,
                    f"'{write.field_name}' is written after external call '{call.callee}' in '{function.name}'",
                    settings,
                )
            )
        return findings


class MissingAccessControlDetector(Detector):
    rule_id = "missing-access-control"
    default_severity = Severity.HIGH
    suggested_fix = "Assert that the caller is the stored owner/admin before mutating privileged state."

    def detect(self, function, flow_graph, unit, settings):
        if not function.is_public or function.is_constructor or function.is_guarded:
            return []
        sensitive = settings.threshold("sensitive_fields", DEFAULT_SENSITIVE_FIELDS)
        for write in function.facts_of(StatementKind.STATE_WRITE):
            if _name_matches(write.field_name, sensitive):
                return [
                    self._finding(
                        function,
                        write.span,
                        f"Public function '{function.name}' modifies '{write.field_name}' without a caller check",
                        settings,
                    )
                ]
        return []


class UncheckedExternalCallDetector(Detector):
    rule_id = "unchecked-external-call"
    default_severity = Severity.MEDIUM
    suggested_fix = "Propagate the call result with '?' or assert on it."

    def detect(self, function, flow_graph, unit, settings):
        return [
            self._finding(
                function,
                call.span,
                f"Result of external call '{call.callee}' in '{function.name}' is ignored",
                settings,
            )
            for call in function.facts_of(StatementKind.EXTERNAL_CALL)
            if not call.checked
        ]


class UnboundedLoopDetector(Detector):
    rule_id = "unbounded-loop"
    default_severity = Severity.MEDIUM
    suggested_fix = "Bound the iteration (take(N) or paging) or move the work off-chain."

    def detect(self, function, flow_graph, unit, settings):
        findings = []
        for loop in function.facts_of(StatementKind.LOOP):
            if loop.bound_kind == BoundKind.FIXED:
                continue
            mutates = any(
                fact.kind in (StatementKind.STATE_WRITE, StatementKind.STORAGE_APPEND)
                for fact in function.descendants(loop.index)
            )
            if mutates:
                findings.append(
                    self._finding(
                        function,
                        loop.span,
                        f"{loop.bound_kind.value} loop in '{function.name}' mutates contract state on every iteration",
                        settings,
                    )
                )
        return findings


class StorageDosDetector(Detector):
    rule_id = "storage-dos"
    default_severity = Severity.MEDIUM
    suggested_fix = "Check the container length against a fixed maximum before appending."

    def detect(self, function, flow_graph, unit, settings):
        appends = [
            fact for fact in function.facts_of(StatementKind.STORAGE_APPEND) if not fact.has_bound_check
        ]
        if not appends:
            return []
        if not (function.is_public or unit.reachable_from_public(function.name)):
            return []
        limit = settings.threshold("max_container_size", DEFAULT_MAX_CONTAINER_SIZE)
        return [
            self._finding(
                function,
                fact.span,
                f"'{fact.container}' grows without a size check (limit {limit}) in '{function.name}'",
                settings,
            )
            for fact in appends
        ]


class FloatPrecisionDetector(Detector):
    rule_id = "float-precision"
    default_severity = Severity.LOW
    suggested_fix = "Represent monetary values as fixed-point integers in the smallest unit."

    def detect(self, function, flow_graph, unit, settings):
        floats = function.facts_of(StatementKind.FLOAT)
        if not floats:
            return []
        terms = settings.threshold("financial_terms", DEFAULT_FINANCIAL_TERMS)
        names = [function.name] + sorted(function.param_names)
        owner = unit.struct(function.owner)
        if owner is not None:
            names.append(owner.name)
            names.extend(fld.name for fld in owner.fields)
        if not any(_name_matches(name, terms) for name in names):
            return []
        return [
            self._finding(
                function,
                fact.span,
                f"Floating-point value '{fact.text}' used in financial logic of '{function.name}'",
                settings,
            )
            for fact in floats
        ]


class StaleStateAfterAsyncDetector(Detector):
    rule_id = "stale-state-after-async"
    default_severity = Severity.HIGH
    needs_flow_graph = True
    suggested_fix = "Re-read the state after the external call, or finish the checks before awaiting."

    def detect(self, function, flow_graph, unit, settings):
        calls = function.facts_of(StatementKind.EXTERNAL_CALL)
        if not calls:
            return []
        captures = [fact for fact in function.facts_of(StatementKind.STATE_READ) if fact.binding]
        comparisons = function.facts_of(StatementKind.ASSERTION, StatementKind.BRANCH)
        findings = []
        reported: Set[int] = set()
        for capture in captures:
            for check in comparisons:
                if check.index in reported:
                    continue
                condition = check.condition or ""
                if capture.binding not in _free_identifiers(condition):
                    continue
                if capture.field_name not in _MEMBER_RE.findall(condition):
                    continue
                call = next(
                    (
                        c
                        for c in calls
                        if flow_graph.path_exists(capture.index, c.index)
                        and flow_graph.path_exists(c.index, check.index)
                    ),
                    None,
                )
                if call is None:
                    continue
                reported.add(check.index)
                findings.append(
                    self._finding(
                        function,
                        check.span,
                        f"'{capture.binding}' captured from '{capture.field_name}' is compared after "
                        f"external call '{call.callee}' in '{function.name}'",
                        settings,
                    )
                )
        return findings


class ImproperInitializationDetector(Detector):
    rule_id = "improper-initialization"
    default_severity = Severity.MEDIUM
    needs_flow_graph = True
    suggested_fix = "Take privileged fields as constructor parameters and assign them explicitly."

    def detect(self, function, flow_graph, unit, settings):
        if not function.is_constructor:
            return []
        sensitive = settings.threshold("sensitive_fields", DEFAULT_SENSITIVE_FIELDS)
        findings = []
        for write in function.facts_of(StatementKind.STATE_WRITE):
            if write.value_source == "default" and _name_matches(write.field_name, sensitive):
                findings.append(
                    self._finding(
                        function,
                        write.span,
                        f"Constructor '{function.name}' sets '{write.field_name}' to a default value "
                        f"('{write.value_text}') instead of a parameter",
                        settings,
                    )
                )

        owner = unit.struct(function.owner)
        if owner is None:
            return findings
        owner_sensitive = [fld.name for fld in owner.fields if _name_matches(fld.name, sensitive)]
        inits = function.facts_of(StatementKind.STRUCT_INIT)
        for init in inits:
            missing = [name for name in owner_sensitive if name not in init.initialized_fields]
            if init.has_base_default and missing:
                findings.append(
                    self._finding(
                        function,
                        init.span,
                        f"Constructor '{function.name}' leaves {', '.join(missing)} to Default::default()",
                        settings,
                    )
                )

        if not inits and function.receiver and "mut" in function.receiver:
            skipped = [
                name
                for name in owner_sensitive
                if flow_graph.has_path_without(
                    lambda fact, name=name: fact.kind == StatementKind.STATE_WRITE and fact.field_name == name
                )
            ]
            if skipped:
                findings.append(
                    self._finding(
                        function,
                        function.span,
                        f"Initializer '{function.name}' can return without setting {', '.join(skipped)}",
                        settings,
                    )
                )
        return findings


DETECTORS: Tuple[Detector, ...] = (
    OverflowUnderflowDetector(),
    ReentrancyDetector(),
    MissingAccessControlDetector(),
    UncheckedExternalCallDetector(),
    UnboundedLoopDetector(),
    StorageDosDetector(),
    FloatPrecisionDetector(),
    StaleStateAfterAsyncDetector(),
    ImproperInitializationDetector(),
)
RULE_IDS: Tuple[str, ...] = tuple(detector.rule_id for detector in DETECTORS)


# ============================================================
# ====================== RULE ENGINE =========================
# ============================================================

@dataclass(frozen=True)
class DetectorResult:
    """Outcome of one detector over one unit: findings, or the failure that voided them."""
    rule_id: str
    findings: Tuple[Finding, ...] = ()
    error: Optional[DetectorFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RuleEngine:
    """
    Runs every enabled detector over every function of a unit.

    Each detector runs inside its own isolation boundary: an exception voids
    that detector's findings for the unit and is returned as a DetectorFailure,
    the remaining detectors are unaffected. Flow graphs are built only for
    detectors that declare needs_flow_graph, and only once per function.
    """

    def __init__(
        self,
        config: Optional["AnalysisConfig"] = None,
        detectors: Optional[Sequence[Detector]] = None,
    ) -> None:
        self.config = config or AnalysisConfig()
        self.detectors: Tuple[Detector, ...] = tuple(detectors) if detectors is not None else DETECTORS

    def run(self, unit: UnitFacts) -> List[DetectorResult]:
        results: List[DetectorResult] = []
        for detector in self.detectors:
            settings = self.config.settings_for(detector.rule_id)
            if not settings.enabled:
                continue
            results.append(self._run_detector(detector, unit, settings))
        return results

    def _run_detector(self, detector: Detector, unit: UnitFacts, settings: "RuleSettings") -> DetectorResult:
        findings: List[Finding] = []
        try:
            for function in unit.functions:
                graph = get_flow_graph(function) if detector.needs_flow_graph else None
                findings.extend(detector.detect(function, graph, unit, settings))
        except Exception as exc:  # any detector bug stays inside its own result
            reason = f"{type(exc).__name__}: {exc}"
            return DetectorResult(detector.rule_id, (), DetectorFailure(detector.rule_id, reason))
        return DetectorResult(detector.rule_id, tuple(findings))


# ============================================================
# =================== FINDING AGGREGATOR =====================
# ============================================================

@dataclass(frozen=True)
class Report:
    unit_id: str
    findings: Tuple[Finding, ...] = ()
    counts: Mapping[Severity, int] = field(default_factory=lambda: MappingProxyType({}))
    warnings: Tuple[AnalysisWarning, ...] = ()

    @property
    def total(self) -> int:
        return len(self.findings)

    def findings_for(self, rule_id: str) -> List[Finding]:
        return [finding for finding in self.findings if finding.rule_id == rule_id]


def _finding_sort_key(finding: Finding) -> Tuple[Any, ...]:
    return (
        finding.severity.rank,
        finding.span.start,
        finding.span.end,
        finding.rule_id,
        finding.message,
    )


def aggregate(
    findings: Iterable[Finding],
    warnings: Iterable[AnalysisWarning] = (),
    unit_id: str = "",
) -> Report:
    """
    Deduplicate identical (rule_id, span) findings, keeping the first, then
    order by severity (High first) and source position. Counts always carry
    every severity.
    """
    seen: Set[Tuple[str, Span]] = set()
    unique: List[Finding] = []
    for finding in findings:
        key = (finding.rule_id, finding.span)
        if key in seen:
            continue
        seen.add(key)
        unique.append(finding)
    unique.sort(key=_finding_sort_key)

    counts = {severity: 0 for severity in Severity}
    for finding in unique:
        counts[finding.severity] += 1
    return Report(
        unit_id=unit_id,
        findings=tuple(unique),
        counts=MappingProxyType(counts),
        warnings=tuple(warnings),
    )


# ============================================================
# ===================== CONFIGURATION ========================
# ============================================================

@dataclass(frozen=True)
class RuleSettings:
    enabled: bool = True
    severity: Optional[Severity] = None
    thresholds: Mapping[str, Any] = field(default_factory=dict)

    def threshold(self, name: str, default: Any = None) -> Any:
        return self.thresholds.get(name, default)


_DEFAULT_SETTINGS = RuleSettings()


@dataclass
class AnalysisConfig:
    """Per-rule settings keyed by rule id; absent rules run with defaults."""
    rules: Dict[str, RuleSettings] = field(default_factory=dict)

    def settings_for(self, rule_id: str) -> RuleSettings:
        return self.rules.get(rule_id, _DEFAULT_SETTINGS)


def _parse_severity(value: Any) -> Optional[Severity]:
    if isinstance(value, Severity):
        return value
    text = str(value).strip().lower()
    for severity in Severity:
        if severity.value.lower() == text:
            return severity
    return None


def _freeze_threshold(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


def config_from_mapping(doc: Any, origin: str = "<mapping>") -> AnalysisConfig:
    """
    Build an AnalysisConfig from a plain document of the form

        rules:
          storage-dos: {enabled: true, severity: High, max_container_size: 50}
          float-precision: false

    Unknown rule ids and unusable entries are reported on stderr and skipped.
    Raises ConfigError when the document is not a mapping at all.
    """
    if doc is None:
        return AnalysisConfig()
    if not isinstance(doc, Mapping):
        raise ConfigError(f"{origin}: configuration must be a mapping, got {type(doc).__name__}")
    raw_rules = doc.get("rules", {})
    if raw_rules is None:
        return AnalysisConfig()
    if not isinstance(raw_rules, Mapping):
        raise ConfigError(f"{origin}: 'rules' must be a mapping of rule id to settings")

    rules: Dict[str, RuleSettings] = {}
    for rule_id, raw in raw_rules.items():
        if rule_id not in RULE_IDS:
            sys.stderr.write(f"[rustsentry] Ignoring unknown rule '{rule_id}' in {origin}.\n")
            continue
        if raw is None:
            raw = {}
        elif isinstance(raw, bool):
            raw = {"enabled": raw}
        elif not isinstance(raw, Mapping):
            sys.stderr.write(f"[rustsentry] Skipping settings for '{rule_id}' in {origin}: expected a mapping.\n")
            continue

        severity = None
        if raw.get("severity") is not None:
            severity = _parse_severity(raw["severity"])
            if severity is None:
                sys.stderr.write(
                    f"[rustsentry] Ignoring invalid severity '{raw['severity']}' for '{rule_id}' in {origin}.\n"
                )

        thresholds: Dict[str, Any] = {}
        nested = raw.get("thresholds")
        if isinstance(nested, Mapping):
            thresholds.update({str(k): _freeze_threshold(v) for k, v in nested.items()})
        for key, value in raw.items():
            if key not in ("enabled", "severity", "thresholds"):
                thresholds[str(key)] = _freeze_threshold(value)

        rules[rule_id] = RuleSettings(
            enabled=bool(raw.get("enabled", True)),
            severity=severity,
            thresholds=thresholds,
        )
    return AnalysisConfig(rules=rules)


def load_config_from_yaml(path: str) -> AnalysisConfig:
    """
    Load rule settings from a YAML file. A missing or unreadable file yields
    the default configuration after a notice on stderr.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            doc = yaml.safe_load(handle)
    except FileNotFoundError:
        sys.stderr.write(f"[rustsentry] Config file not found: {path}\n")
        return AnalysisConfig()
    except OSError as exc:
        sys.stderr.write(f"[rustsentry] Could not read config file {path}: {exc}\n")
        return AnalysisConfig()
    except yaml.YAMLError as exc:
        sys.stderr.write(f"[rustsentry] Could not parse config file {path}: {exc}\n")
        return AnalysisConfig()

    try:
        return config_from_mapping(doc, path)
    except ConfigError as exc:
        sys.stderr.write(f"[rustsentry] {exc}\n")
        return AnalysisConfig()


# ============================================================
# ======================== PIPELINE ==========================
# ============================================================

def analyze_source_unit(unit: SourceUnit, config: Optional[AnalysisConfig] = None) -> Report:
    """adapt (already done by the loader) -> extract -> detect -> aggregate, for one unit."""
    config = config or AnalysisConfig()
    warnings: List[AnalysisWarning] = list(unit.warnings)
    if unit.root is None:
        return aggregate([], warnings, unit.identifier)

    facts = extract(unit.root, config)
    warnings.extend(facts.warnings)

    findings: List[Finding] = []
    for result in RuleEngine(config).run(facts):
        if result.error is not None:
            warnings.append(AnalysisWarning(kind="detector-failure", message=str(result.error)))
            continue
        findings.extend(result.findings)
    return aggregate(findings, warnings, unit.identifier)


def analyze_source(
    identifier: str,
    text: str,
    config: Optional[AnalysisConfig] = None,
    parser: Optional[Callable[[str], Any]] = None,
) -> Report:
    return analyze_source_unit(load_source_unit(identifier, text, parser), config)


def analyze_units(
    units: Iterable[SourceUnit],
    config: Optional[AnalysisConfig] = None,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[Report]:
    """
    Analyze independent units in parallel, one worker per unit.

    Cancellation is cooperative: a unit that observes cancel_event before or
    after its run is dropped rather than merged. Reports come back in input
    order.
    """
    units = list(units)
    config = config or AnalysisConfig()

    def _work(position: int, unit: SourceUnit) -> Tuple[int, Optional[Report]]:
        if cancel_event is not None and cancel_event.is_set():
            return position, None
        report = analyze_source_unit(unit, config)
        if cancel_event is not None and cancel_event.is_set():
            return position, None
        return position, report

    reports: Dict[int, Report] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [pool.submit(_work, position, unit) for position, unit in enumerate(units)]
        for future in as_completed(futures):
            position, report = future.result()
            if report is None:
                sys.stderr.write(
                    f"[rustsentry] Analysis of '{units[position].identifier}' cancelled; results discarded.\n"
                )
                continue
            reports[position] = report
    return [reports[position] for position in sorted(reports)]
