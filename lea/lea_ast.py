"""
Abstract syntax tree consumed by the Lea evaluator.

Parsing is done elsewhere; the engine only needs these immutable node
classes. `program_from_data` rebuilds a Program from a plain JSON/YAML
document so external parsers can hand programs over as data.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Tuple, Union

TypeAnnotation = Union[str, Dict[str, Any]]


def _loc_field():
    return field(default=None, compare=False, repr=False, kw_only=True)


# =================================================================
# Supporting records
# =================================================================

@dataclass(frozen=True)
class Param:
    name: str
    default: Optional['Expr'] = None
    type_annotation: Optional[TypeAnnotation] = None


@dataclass(frozen=True)
class Decorator:
    name: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class TypeSignature:
    param_types: Tuple[TypeAnnotation, ...] = ()
    return_type: Optional[TypeAnnotation] = None


@dataclass(frozen=True)
class RecordField:
    key: str
    value: 'Expr'


@dataclass(frozen=True)
class MatchCase:
    body: 'Expr'
    pattern: Optional['Expr'] = None
    guard: Optional['Expr'] = None


@dataclass(frozen=True)
class PipelineStage:
    expr: 'Expr'


@dataclass(frozen=True)
class ParallelStage:
    branches: Tuple['Expr', ...]


@dataclass(frozen=True)
class SpreadStage:
    expr: 'Expr'


AnyStage = Union[PipelineStage, ParallelStage, SpreadStage]


# =================================================================
# Expressions
# =================================================================

class Expr:
    """Base class for expression nodes."""
    pass


@dataclass(frozen=True)
class NumberLiteral(Expr):
    value: Union[int, float]
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class StringLiteral(Expr):
    value: str
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class TemplateStringExpr(Expr):
    # Plain strings are literal text; anything else is an expression.
    parts: Tuple[Any, ...]
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class BooleanLiteral(Expr):
    value: bool
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class NullLiteral(Expr):
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class Identifier(Expr):
    name: str
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class PlaceholderExpr(Expr):
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class ListExpr(Expr):
    elements: Tuple[Expr, ...] = ()
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class IndexExpr(Expr):
    object: Expr
    index: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class UnaryExpr(Expr):
    operator: str
    operand: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class BinaryExpr(Expr):
    operator: str
    left: Expr
    right: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class PipeExpr(Expr):
    left: Expr
    right: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class SpreadPipeExpr(Expr):
    left: Expr
    right: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class ParallelPipeExpr(Expr):
    input: Expr
    branches: Tuple[Expr, ...]
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class ReversePipeExpr(Expr):
    left: Expr
    right: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class CallExpr(Expr):
    callee: Expr
    args: Tuple[Expr, ...] = ()
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class BlockBody:
    statements: Tuple['Stmt', ...]
    result: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class FunctionExpr(Expr):
    params: Tuple[Param, ...]
    body: Union[Expr, BlockBody]
    attachments: Tuple[str, ...] = ()
    decorators: Tuple[Decorator, ...] = ()
    type_signature: Optional[TypeSignature] = None
    is_reverse: bool = False
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class AwaitExpr(Expr):
    operand: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class RecordExpr(Expr):
    fields: Tuple[RecordField, ...] = ()
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class MemberExpr(Expr):
    object: Expr
    member: str
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class TernaryExpr(Expr):
    condition: Expr
    then_branch: Expr
    else_branch: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class ReturnExpr(Expr):
    value: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class TupleExpr(Expr):
    elements: Tuple[Expr, ...] = ()
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class PipelineLiteral(Expr):
    stages: Tuple[AnyStage, ...] = ()
    decorators: Tuple[Decorator, ...] = ()
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class BidirectionalPipelineLiteral(Expr):
    stages: Tuple[AnyStage, ...] = ()
    decorators: Tuple[Decorator, ...] = ()
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class MatchExpr(Expr):
    value: Expr
    cases: Tuple[MatchCase, ...]
    loc: Optional[dict] = _loc_field()


# =================================================================
# Statements
# =================================================================

class Stmt:
    """Base class for statement nodes."""
    pass


@dataclass(frozen=True)
class RecordPattern:
    fields: Tuple[str, ...]


@dataclass(frozen=True)
class TuplePattern:
    names: Tuple[str, ...]


@dataclass(frozen=True)
class LetStmt(Stmt):
    name: Optional[str]
    value: Expr
    mutable: bool = False
    pattern: Optional[Union[RecordPattern, TuplePattern]] = None
    decorators: Tuple[Decorator, ...] = ()
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class AndStmt(Stmt):
    name: str
    value: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class AssignStmt(Stmt):
    name: str
    value: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class ExprStmt(Stmt):
    expression: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class ContextDefStmt(Stmt):
    name: str
    default_value: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class ProvideStmt(Stmt):
    context_name: str
    value: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class DecoratorDefStmt(Stmt):
    name: str
    transformer: Expr
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class CodeblockStmt(Stmt):
    statements: Tuple[Stmt, ...]
    label: Optional[str] = None
    loc: Optional[dict] = _loc_field()


@dataclass(frozen=True)
class Program:
    statements: Tuple[Stmt, ...] = ()


# =================================================================
# Loading programs from plain data
# =================================================================

NODE_TYPES: Dict[str, type] = {
    cls.__name__: cls for cls in (
        Param, Decorator, TypeSignature, RecordField, MatchCase,
        PipelineStage, ParallelStage, SpreadStage,
        NumberLiteral, StringLiteral, TemplateStringExpr, BooleanLiteral,
        NullLiteral, Identifier, PlaceholderExpr, ListExpr, IndexExpr,
        UnaryExpr, BinaryExpr, PipeExpr, SpreadPipeExpr, ParallelPipeExpr,
        ReversePipeExpr, CallExpr, BlockBody, FunctionExpr, AwaitExpr,
        RecordExpr, MemberExpr, TernaryExpr, ReturnExpr, TupleExpr,
        PipelineLiteral, BidirectionalPipelineLiteral, MatchExpr,
        RecordPattern, TuplePattern, LetStmt, AndStmt, AssignStmt, ExprStmt,
        ContextDefStmt, ProvideStmt, DecoratorDefStmt, CodeblockStmt, Program,
    )
}

# Fields holding type annotations stay plain data even when they are mappings.
_ANNOTATION_FIELDS = {"type_annotation", "param_types", "return_type"}


def _camel_to_snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append('_')
            out.append(ch.lower())
        else:
            out.append(ch)
    return ''.join(out)


def node_from_data(data: Any) -> Any:
    """Builds AST nodes from nested dicts tagged with a `kind` key.

    Keys may be snake_case or camelCase (`thenBranch`, `typeSignature`).
    Lists become tuples so the resulting tree is immutable.
    """
    if isinstance(data, list):
        return tuple(node_from_data(item) for item in data)
    if not isinstance(data, dict):
        return data
    kind = data.get('kind')
    if kind is None:
        return {k: node_from_data(v) for k, v in data.items()}
    cls = NODE_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown AST node kind: {kind!r}")
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in data.items():
        if key == 'kind':
            continue
        name = _camel_to_snake(key)
        if name not in known:
            raise ValueError(f"Unknown field {key!r} for {kind}")
        if name in _ANNOTATION_FIELDS:
            kwargs[name] = _annotation_from_data(value)
        elif name == 'args' and cls is Decorator:
            kwargs[name] = tuple(value or ())
        else:
            kwargs[name] = node_from_data(value)
    return cls(**kwargs)


def _annotation_from_data(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(_annotation_from_data(v) for v in value)
    return value


def program_from_data(data: Any) -> Program:
    """Accepts a Program document or a bare list of statements."""
    if isinstance(data, dict) and data.get('kind', 'Program') == 'Program' and 'statements' in data:
        return Program(tuple(node_from_data(s) for s in data['statements']))
    if isinstance(data, list):
        return Program(tuple(node_from_data(s) for s in data))
    node = node_from_data(data)
    if isinstance(node, Program):
        return node
    if isinstance(node, Stmt):
        return Program((node,))
    if isinstance(node, Expr):
        return Program((ExprStmt(node),))
    raise ValueError("Program document must be a list of statements or a Program node")
