import pytest

from lea.lea_ast import Param, TypeSignature, NumberLiteral
from lea.lea_datatypes import Scope, LeaFunction, LeaTuple, Record
from lea.lea_errors import NoMatchingOverload, AmbiguousOverload
from lea.lea_overloads import (
    matches_type, format_type, format_signature, score_overload, resolve_overload,
)

from ast_helpers import (
    program, let, stmt, fn, call, op, ident, num, s, null,
)


def typed(param_types, return_type="Int", defaults=()):
    params = [Param(f"p{i}") for i in range(len(param_types))]
    params += [Param(f"d{i}", default=NumberLiteral(0)) for i in range(len(defaults))]
    return LeaFunction(
        params=params,
        body=NumberLiteral(0),
        closure=Scope(),
        type_signature=TypeSignature(tuple(param_types) + tuple(defaults), return_type),
    )


def untyped(*names):
    return LeaFunction(params=[Param(n) for n in names], body=NumberLiteral(0), closure=Scope())


@pytest.mark.parametrize("value,expected,ok", [
    (1, "Int", True),
    (1.5, "Int", True),
    ("a", "String", True),
    ("a", "Int", False),
    (None, "?String", True),
    (None, "String", False),
    (True, "Bool", True),
    ([1, 2], {"list": "Int"}, True),
    ([1, "x"], {"list": "Int"}, False),
    (LeaTuple([1, "a"]), {"tuple": ["Int", "String"]}, True),
    (LeaTuple([1]), {"tuple": ["Int", "String"]}, False),
    (None, {"list": "Int", "optional": True}, True),
    (Record({"a": 1}), "Record", True),
])
def test_matches_type(value, expected, ok):
    assert matches_type(value, expected) is ok


def test_format_type_and_signature():
    assert format_type({"list": "Int"}) == "[Int]"
    assert format_type({"tuple": ["Int", "String"], "optional": True}) == "?(Int, String)"
    assert format_signature(typed(["Int", "Int"])) == "(Int, Int) :> Int"
    assert format_signature(untyped("a", "b")) == "(a, b)"


def test_score_overload():
    assert score_overload(typed(["Int", "Int"]), [1, 2]) == 21
    assert score_overload(typed(["Int", "Int"]), [1, "b"]) == -1
    assert score_overload(typed(["Int"]), [1, 2]) == -1
    assert score_overload(untyped("a"), [1]) == 0


def test_arity_window_counts_defaults():
    candidate = typed(["Int"], defaults=["Int"])
    assert score_overload(candidate, [1]) == 11
    assert score_overload(candidate, [1, 2]) == 21
    assert score_overload(candidate, []) == -1


def test_resolve_prefers_typed_over_fallback():
    fallback = untyped("a")
    ints = typed(["Int"])
    assert resolve_overload([fallback, ints], [1]) is ints
    assert resolve_overload([fallback, ints], ["x"]) is fallback


def test_resolve_no_match_lists_signatures():
    with pytest.raises(NoMatchingOverload) as exc:
        resolve_overload([typed(["Int", "Int"]), typed(["String", "String"], "String")], [1, "b"])
    message = exc.value.message
    assert "(int, string)" in message
    assert "  (Int, Int) :> Int" in message
    assert "  (String, String) :> String" in message


def test_resolve_tie_is_ambiguous():
    with pytest.raises(AmbiguousOverload) as exc:
        resolve_overload([typed(["Int"]), typed(["Int"], "String")], [1])
    assert "Available overloads" in exc.value.message


def overloaded_add():
    return [
        let("add", fn(["a", "b"], op("+", ident("a"), ident("b")), sig=(["Int", "Int"], "Int"))),
        let("add", fn(["a", "b"], op("++", ident("a"), ident("b")), sig=(["String", "String"], "String"))),
    ]


def test_let_with_signature_extends_overload_set(runner):
    assert runner.evaluate(program(*overloaded_add(), stmt(call("add", num(1), num(2))))) == 3
    assert runner.evaluate(program(stmt(call("add", s("a"), s("b"))))) == "ab"
    with pytest.raises(NoMatchingOverload):
        runner.evaluate(program(stmt(call("add", num(1), s("b")))))


def test_overload_resolution_on_pipe(runner):
    from ast_helpers import pipe
    result = runner.evaluate(program(*overloaded_add(), stmt(pipe(s("x"), call("add", s("y"))))))
    assert result == "xy"


def test_and_statement_adds_overload(runner):
    from lea.lea_ast import AndStmt
    result = runner.evaluate(program(
        let("describe", fn(["v"], s("number"), sig=(["Int"], "String"))),
        AndStmt("describe", fn(["v"], s("text"), sig=(["String"], "String"))),
        stmt(call("describe", s("hello"))),
    ))
    assert result == "text"


def test_optional_overload_accepts_null(runner):
    result = runner.evaluate(program(
        let("show", fn(["v"], s("maybe"), sig=(["?String"], "String"))),
        let("show", fn(["v"], s("int"), sig=(["Int"], "String"))),
        stmt(call("show", null())),
    ))
    assert result == "maybe"


def test_single_typed_definition_checks_arguments(runner):
    from lea.lea_datatypes import OverloadSet
    runner.evaluate(program(let("f", fn(["a"], ident("a"), sig=(["Int"], "Int")))))
    assert isinstance(runner.root_scope.get("f"), OverloadSet)
    assert runner.evaluate_expression(call("f", num(3))) == 3
    with pytest.raises(NoMatchingOverload):
        runner.evaluate_expression(call("f", s("oops")))


def test_typed_definition_replacing_a_value_starts_a_set(runner):
    from lea.lea_datatypes import OverloadSet
    runner.evaluate(program(
        let("f", num(1)),
        let("f", fn(["a"], ident("a"), sig=(["Int"], "Int"))),
    ))
    assert isinstance(runner.root_scope.get("f"), OverloadSet)
    with pytest.raises(NoMatchingOverload):
        runner.evaluate_expression(call("f", null()))


def test_typed_function_takes_a_reverse(runner):
    from lea.lea_ast import ReversePipeExpr
    from lea.lea_datatypes import ReversibleFunction
    runner.evaluate(program(
        let("twice", fn(["x"], op("*", ident("x"), num(2)), sig=(["Int"], "Int"))),
        let("twice", fn(["x"], op("/", ident("x"), num(2)), reverse=True)),
    ))
    assert isinstance(runner.root_scope.get("twice"), ReversibleFunction)
    assert runner.evaluate_expression(ReversePipeExpr(num(8), ident("twice"))) == 4


def test_mutable_typed_definition_can_be_reassigned(runner):
    from lea.lea_ast import AssignStmt
    runner.evaluate(program(
        let("g", fn(["a"], ident("a"), sig=(["Int"], "Int")), mutable=True),
        AssignStmt("g", num(0)),
    ))
    assert runner.root_scope.get("g") == 0
