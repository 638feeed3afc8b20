import asyncio

import pytest

from lea.lea_datatypes import (
    Scope, Record, LeaTuple, ParallelResult, LeaFunction, Builtin, OverloadSet,
    ReversibleFunction, Pipeline, BidirectionalPipeline, Deferred,
    values_equal, lea_type_name, is_truthy,
)
from lea.lea_errors import (
    UndefinedVariable, ImmutableReassignment, TypeMismatch, NotReversible, InvalidReturn,
    ReturnSignal,
)
from lea.lea_ast import Param, NumberLiteral


def make_fn(*names):
    return LeaFunction(params=[Param(n) for n in names], body=NumberLiteral(0), closure=Scope())


# --- Scope ---

def test_define_and_get_walks_outward():
    outer = Scope()
    outer.define("x", 1)
    inner = Scope(parent=outer)
    assert inner.get("x") == 1
    assert inner.find_owner("x") is outer
    assert inner.has("x") and not inner.has_local("x")
    assert "x" in inner


def test_get_missing_raises():
    with pytest.raises(UndefinedVariable) as exc:
        Scope().get("nope")
    assert exc.value.name == "nope"
    # Also catchable as the builtin exception.
    with pytest.raises(NameError):
        Scope().get("nope")


def test_define_shadows_in_same_scope():
    scope = Scope()
    scope.define("x", 1)
    scope.define("x", 2)
    assert scope.get("x") == 2


def test_assign_immutable_raises():
    scope = Scope()
    scope.define("x", 1)
    with pytest.raises(ImmutableReassignment):
        scope.assign("x", 2)


def test_assign_mutable_updates_owner():
    outer = Scope()
    outer.define("x", 1, mutable=True)
    inner = Scope(parent=outer)
    inner.assign("x", 5)
    assert outer.get("x") == 5
    assert not inner.has_local("x")


def test_assign_missing_raises():
    with pytest.raises(UndefinedVariable):
        Scope().assign("x", 1)


def test_add_overload_builds_sets():
    scope = Scope()
    a, b, c = make_fn("x"), make_fn("x"), make_fn("x")
    scope.add_overload("f", a)
    assert isinstance(scope.get("f"), OverloadSet)
    assert scope.get("f").overloads == [a]

    scope.define("g", a)
    scope.add_overload("g", b)
    scope.add_overload("g", c)
    assert scope.get("g").overloads == [a, b, c]


def test_add_overload_rejects_non_function():
    scope = Scope()
    scope.define("n", 3)
    with pytest.raises(TypeMismatch):
        scope.add_overload("n", make_fn("x"))


def test_add_reverse():
    scope = Scope()
    forward, back, back2 = make_fn("x"), make_fn("x"), make_fn("x")
    scope.define("f", forward)
    scope.add_reverse("f", back)
    value = scope.get("f")
    assert isinstance(value, ReversibleFunction)
    assert value.forward is forward and value.reverse is back

    scope.add_reverse("f", back2)
    assert scope.get("f").reverse is back2
    assert scope.get("f").forward is forward


def test_add_reverse_errors():
    scope = Scope()
    with pytest.raises(UndefinedVariable):
        scope.add_reverse("f", make_fn("x"))
    scope.define("n", 1)
    with pytest.raises(NotReversible):
        scope.add_reverse("n", make_fn("x"))


def test_add_reverse_unwraps_single_overload():
    scope = Scope()
    forward, back = make_fn("x"), make_fn("x")
    scope.add_overload("f", forward)
    scope.add_reverse("f", back)
    assert isinstance(scope.get("f"), ReversibleFunction)
    assert scope.get("f").forward is forward

    scope.add_overload("g", make_fn("x"))
    scope.add_overload("g", make_fn("y"))
    with pytest.raises(NotReversible):
        scope.add_reverse("g", back)


def test_has_decorator_across_callables():
    from lea.lea_ast import Decorator
    exported = LeaFunction(params=[], body=NumberLiteral(0), closure=Scope(),
                           decorators=[Decorator("export")])
    plain = make_fn("x")
    assert OverloadSet([plain, exported]).has_decorator("export")
    assert not OverloadSet([plain]).has_decorator("export")
    assert ReversibleFunction(exported, plain).has_decorator("export")
    assert not ReversibleFunction(plain, exported).has_decorator("export")
    assert not Builtin(print).has_decorator("export")


# --- Equality, type names, truthiness ---

def test_values_equal_is_structural_for_data():
    assert values_equal([1, [2, 3]], [1, [2, 3]])
    assert values_equal(LeaTuple([1, "a"]), LeaTuple([1, "a"]))
    assert values_equal(Record({"a": [1]}), Record({"a": [1]}))
    assert not values_equal(Record({"a": 1}), Record({"b": 1}))
    assert values_equal(ParallelResult([1, 2]), ParallelResult([1, 2]))
    assert not values_equal(1, True)
    assert values_equal(None, None)
    assert not values_equal(None, 0)


def test_values_equal_is_identity_for_callables():
    f = make_fn("x")
    assert values_equal(f, f)
    assert not values_equal(f, make_fn("x"))
    p = Pipeline([], Scope())
    assert not values_equal(p, Pipeline([], Scope()))


@pytest.mark.parametrize("value,expected", [
    (None, "null"),
    (True, "bool"),
    (3, "int"),
    (2.5, "int"),
    ("s", "string"),
    ([], "list"),
    (Record(), "record"),
    (LeaTuple([]), "tuple"),
    (Builtin(len), "function"),
    (Pipeline([], Scope()), "pipeline"),
    (BidirectionalPipeline([], Scope()), "pipeline"),
    (Deferred.resolved(1), "promise"),
])
def test_lea_type_name(value, expected):
    assert lea_type_name(value) == expected


def test_truthiness():
    for falsy in (None, False, 0, 0.0, ""):
        assert not is_truthy(falsy)
    for truthy in (1, "a", [], Record(), True):
        assert is_truthy(truthy)


# --- Builtins ---

def test_builtin_name_and_flags():
    def _head(items):
        return items[0]

    async def _fetchish(url):
        return url

    async def _mapish(items, fn, *, evaluator):
        return items

    assert Builtin(_head).name == "head"
    assert not Builtin(_head).deferred
    assert Builtin(_fetchish).deferred
    assert not Builtin(_mapish).deferred
    assert Builtin(_mapish).wants_evaluator


def test_pipeline_derive_drops_decorators():
    from lea.lea_ast import Decorator
    p = BidirectionalPipeline(["a", "b"], Scope(), [Decorator("log")])
    derived = p.derive(["a"])
    assert isinstance(derived, BidirectionalPipeline)
    assert derived.decorators == ()
    assert len(derived) == 1
    assert p.kind == "bidirectional_pipeline"


# --- Deferred ---

@pytest.mark.asyncio
async def test_deferred_then_flattens():
    d = Deferred.resolved(3).then(lambda v: Deferred.resolved(v + 1))
    assert await d == 4
    assert d.done() and d.result() == 4


@pytest.mark.asyncio
async def test_deferred_starts_eagerly_on_running_loop():
    seen = []

    async def work():
        seen.append("ran")
        return 1

    d = Deferred(work())
    await asyncio.sleep(0)
    assert seen == ["ran"]
    assert await d == 1


@pytest.mark.asyncio
async def test_deferred_failure_propagates():
    async def boom():
        raise TypeMismatch("bad")

    d = Deferred(boom())
    with pytest.raises(TypeMismatch):
        await d
    with pytest.raises(TypeMismatch):
        d.result()


@pytest.mark.asyncio
async def test_deferred_return_signal_becomes_invalid_return():
    async def returns():
        raise ReturnSignal(1)

    with pytest.raises(InvalidReturn):
        await Deferred(returns())


def test_settled_deferred_await_does_not_suspend():
    async def read():
        return await Deferred.resolved(9)

    coro = read()
    with pytest.raises(StopIteration) as stop:
        coro.send(None)
    assert stop.value.value == 9
