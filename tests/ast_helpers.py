"""Small constructors for building Lea programs by hand in tests."""
from lea.lea_ast import (
    NumberLiteral, StringLiteral, BooleanLiteral, NullLiteral, Identifier,
    PlaceholderExpr, ListExpr, RecordExpr, RecordField, BinaryExpr, PipeExpr,
    CallExpr, MemberExpr, FunctionExpr, Param, Decorator, TypeSignature,
    PipelineLiteral, BidirectionalPipelineLiteral, PipelineStage, ParallelStage,
    SpreadStage, LetStmt, ExprStmt, Program, BlockBody,
)


def num(value):
    return NumberLiteral(value)


def s(value):
    return StringLiteral(value)


def true():
    return BooleanLiteral(True)


def null():
    return NullLiteral()


def ident(name):
    return Identifier(name)


def hole():
    return PlaceholderExpr()


def lst(*items):
    return ListExpr(tuple(items))


def rec(**fields):
    return RecordExpr(tuple(RecordField(k, v) for k, v in fields.items()))


def op(operator, left, right):
    return BinaryExpr(operator, left, right)


def call(callee, *args):
    if isinstance(callee, str):
        callee = Identifier(callee)
    return CallExpr(callee, tuple(args))


def member(obj, name):
    if isinstance(obj, str):
        obj = Identifier(obj)
    return MemberExpr(obj, name)


def method(obj, name, *args):
    return CallExpr(member(obj, name), tuple(args))


def pipe(first, *rest):
    expr = first
    for right in rest:
        expr = PipeExpr(expr, right)
    return expr


def dec(name, *args):
    return Decorator(name, tuple(args))


def fn(params, body, *decorators, sig=None, attachments=(), reverse=False):
    params = tuple(Param(p) if isinstance(p, str) else p for p in params)
    if sig is not None:
        sig = TypeSignature(tuple(sig[0]), sig[1])
    return FunctionExpr(params, body, tuple(attachments), tuple(decorators), sig, reverse)


def block(statements, result):
    return BlockBody(tuple(statements), result)


def _stage(item):
    if isinstance(item, (PipelineStage, ParallelStage, SpreadStage)):
        return item
    if isinstance(item, str):
        item = Identifier(item)
    return PipelineStage(item)


def pipeline(*stages, decorators=()):
    return PipelineLiteral(tuple(_stage(x) for x in stages), tuple(decorators))


def bidi(*stages, decorators=()):
    return BidirectionalPipelineLiteral(tuple(_stage(x) for x in stages), tuple(decorators))


def let(name, value, mutable=False, **kwargs):
    return LetStmt(name, value, mutable, **kwargs)


def stmt(expression):
    return ExprStmt(expression)


def program(*statements):
    return Program(tuple(statements))


# A few reusable definitions.
DOUBLE = let("double", fn(["x"], op("*", ident("x"), num(2))))
ADD_ONE = let("addOne", fn(["x"], op("+", ident("x"), num(1))))


def stdout(side_effects):
    return [e['message'] for e in side_effects if e['topics'] == ['stdout']]


def warnings(side_effects):
    return [e['message'] for e in side_effects if 'warning' in e['topics']]
