"""
Defines the core data types for the Lea language runtime.

This module provides the runtime value classes the evaluator works with
(records, tuples, closures, deferred values, pipelines and friends) and the
lexical Scope chain that binds names to them.
"""

import asyncio
import inspect
import math
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Callable, Iterable, TYPE_CHECKING

from lea.lea_errors import (
    UndefinedVariable, ImmutableReassignment, TypeMismatch, NotReversible,
    InvalidReturn, ReturnSignal,
)

if TYPE_CHECKING:
    from lea.lea_ast import Param, Decorator, TypeSignature, Expr


# =================================================================
# Scope chain
# =================================================================

@dataclass
class Binding:
    value: Any
    mutable: bool = False


class Scope:
    """Represents a Lea lexical scope.

    Each scope owns its local bindings and borrows its parent for lookup.
    Closures hold on to the scope they were created in; a call scope is a
    child of the callee's closure and is never referenced by its parent, so
    the chain only ever points outward.
    """
    def __init__(self, parent: Optional['Scope'] = None):
        self.bindings: Dict[str, Binding] = {}
        self.parent = parent

    def define(self, name: str, value: Any, mutable: bool = False):
        """Binds `name` in this scope, replacing any local binding of the same name."""
        self.bindings[name] = Binding(value, mutable)

    def find_owner(self, name: str) -> Optional['Scope']:
        """Finds the Scope in the lookup chain that owns `name`."""
        scope = self
        while scope is not None:
            if name in scope.bindings:
                return scope
            scope = scope.parent
        return None

    def get(self, name: str) -> Any:
        owner = self.find_owner(name)
        if owner is None:
            raise UndefinedVariable(name)
        return owner.bindings[name].value

    def assign(self, name: str, value: Any):
        owner = self.find_owner(name)
        if owner is None:
            raise UndefinedVariable(name)
        binding = owner.bindings[name]
        if not binding.mutable:
            raise ImmutableReassignment(name)
        binding.value = value

    def has(self, name: str) -> bool:
        return self.find_owner(name) is not None

    def has_local(self, name: str) -> bool:
        return name in self.bindings

    def local_names(self) -> List[str]:
        return list(self.bindings.keys())

    def add_overload(self, name: str, fn: 'LeaFunction'):
        """Adds `fn` to the overload set bound to `name` in this scope."""
        binding = self.bindings.get(name)
        if binding is None:
            self.define(name, OverloadSet([fn]))
            return
        match binding.value:
            case OverloadSet() as existing:
                binding.value = OverloadSet(existing.overloads + [fn])
            case LeaFunction() as existing:
                binding.value = OverloadSet([existing, fn])
            case other:
                raise TypeMismatch(
                    f"Cannot add overload to '{name}': existing value is {lea_type_name(other)}, not a function")

    def add_reverse(self, name: str, fn: 'LeaFunction'):
        """Attaches `fn` as the reverse half of the function bound to `name`."""
        binding = self.bindings.get(name)
        if binding is None:
            raise UndefinedVariable(name)
        match binding.value:
            case ReversibleFunction() as existing:
                binding.value = ReversibleFunction(existing.forward, fn)
            case LeaFunction() as forward:
                binding.value = ReversibleFunction(forward, fn)
            case OverloadSet(overloads=[forward]):
                binding.value = ReversibleFunction(forward, fn)
            case _:
                raise NotReversible(f"Cannot add reverse to '{name}': it is not a function")

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __repr__(self) -> str:
        return f"<Scope {list(self.bindings.keys())}>"


# =================================================================
# Data values
# =================================================================

class Record:
    """A Lea record: a mapping of field names to values."""
    def __init__(self, fields: Optional[Dict[str, Any]] = None):
        self.fields: Dict[str, Any] = dict(fields or {})

    def __eq__(self, other):
        return isinstance(other, Record) and values_equal(self, other)

    __hash__ = None

    def __repr__(self):
        return f"Record({self.fields!r})"


class LeaTuple:
    """A fixed-length heterogeneous sequence."""
    def __init__(self, elements: Iterable[Any]):
        self.elements = tuple(elements)

    def __len__(self):
        return len(self.elements)

    def __eq__(self, other):
        return isinstance(other, LeaTuple) and values_equal(self, other)

    __hash__ = None

    def __repr__(self):
        return f"LeaTuple({list(self.elements)!r})"


class ParallelResult:
    """Ordered fan-out results; spread into the next stage's arguments."""
    def __init__(self, values: Iterable[Any]):
        self.values = list(values)

    def __eq__(self, other):
        return isinstance(other, ParallelResult) and values_equal(self, other)

    __hash__ = None

    def __repr__(self):
        return f"ParallelResult({self.values!r})"


# =================================================================
# Callables
# =================================================================

class LeaCallable:
    """Base class for values that take part in call dispatch."""

    def has_decorator(self, name: str) -> bool:
        return False


@dataclass(eq=False)
class LeaFunction(LeaCallable):
    """A closure created by evaluating a function literal."""
    params: List['Param']
    body: Any
    closure: Scope
    attachments: List[str] = field(default_factory=list)
    decorators: List['Decorator'] = field(default_factory=list)
    type_signature: Optional['TypeSignature'] = None
    is_reverse: bool = False
    # Source literal; set on functions built from a FunctionExpr.
    node: Any = None

    def has_decorator(self, name: str) -> bool:
        return any(d.name == name for d in self.decorators)

    @property
    def required_params(self) -> int:
        return sum(1 for p in self.params if p.default is None)

    def __repr__(self):
        names = ", ".join(p.name for p in self.params)
        return f"<function ({names})>"


def _accepts_evaluator(fn: Callable) -> bool:
    try:
        return 'evaluator' in inspect.signature(fn).parameters
    except (TypeError, ValueError):
        return False


class Builtin(LeaCallable):
    """A host-implemented function.

    `fn` takes positional Lea values. Callables declaring an `evaluator`
    keyword receive the evaluator of the calling strategy. A deferred builtin
    is a coroutine function whose every call produces a Deferred value;
    coroutine functions that do not take an evaluator are deferred too.
    """
    def __init__(self, fn: Callable, name: Optional[str] = None, deferred: bool = False):
        self.fn = fn
        self.name = name or getattr(fn, '__name__', '<builtin>').lstrip('_')
        self.wants_evaluator = _accepts_evaluator(fn)
        self.deferred = (
            deferred
            or getattr(fn, '_lea_deferred', False)
            or (inspect.iscoroutinefunction(fn) and not self.wants_evaluator)
        )

    def __repr__(self):
        return f"<builtin {self.name}>"


class OverloadSet(LeaCallable):
    """Same-named, type-signed function variants resolved per call."""
    def __init__(self, overloads: List[LeaFunction]):
        self.overloads = list(overloads)

    def has_decorator(self, name: str) -> bool:
        return any(fn.has_decorator(name) for fn in self.overloads)

    def __repr__(self):
        return f"<overloads x{len(self.overloads)}>"


class ReversibleFunction(LeaCallable):
    """A forward function paired with its reverse."""
    def __init__(self, forward: LeaFunction, reverse: LeaFunction):
        self.forward = forward
        self.reverse = reverse

    def has_decorator(self, name: str) -> bool:
        return self.forward.has_decorator(name)

    def __repr__(self):
        return "<reversible_function>"


class Pipeline(LeaCallable):
    """An ordered list of stages closed over the scope they were written in.

    Pipelines are immutable values; algebra operations build new ones.
    """
    kind = "pipeline"

    def __init__(self, stages: Iterable[Any], closure: Scope, decorators: Iterable['Decorator'] = ()):
        self.stages = tuple(stages)
        self.closure = closure
        self.decorators = tuple(decorators)
        self.memo_cache: Optional[Dict[str, Any]] = None

    def has_decorator(self, name: str) -> bool:
        return any(d.name == name for d in self.decorators)

    def derive(self, stages: Iterable[Any]) -> 'Pipeline':
        """A new undecorated pipeline of the same kind over `stages`."""
        return type(self)(stages, self.closure)

    def __len__(self):
        return len(self.stages)

    def __repr__(self):
        return f"<{self.kind}[{len(self.stages)}]>"


class BidirectionalPipeline(Pipeline):
    """A pipeline that can also be applied in reverse."""
    kind = "bidirectional_pipeline"


# =================================================================
# Deferred values
# =================================================================

class Deferred:
    """A pending or settled asynchronous Lea value.

    The wrapped awaitable is scheduled on the running event loop as soon as
    one exists; otherwise it starts on first await. Awaiting a settled
    Deferred returns without suspending.
    """
    _UNSET = object()

    def __init__(self, awaitable: Any = None):
        self._awaitable = awaitable
        self._future: Optional[asyncio.Future] = None
        self._value: Any = Deferred._UNSET
        self._error: Optional[BaseException] = None
        if awaitable is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                return
            self._start()

    @classmethod
    def resolved(cls, value: Any) -> 'Deferred':
        d = cls()
        d._value = value
        return d

    def _start(self) -> asyncio.Future:
        if self._future is None:
            self._future = asyncio.ensure_future(self._run())
        return self._future

    async def _run(self) -> Any:
        try:
            value = await self._awaitable
            while isinstance(value, Deferred):
                value = await value
        except ReturnSignal:
            self._error = InvalidReturn("'return' used outside of a function body")
            raise self._error
        except Exception as e:
            self._error = e
            raise
        self._value = value
        return value

    def done(self) -> bool:
        return self._value is not Deferred._UNSET or self._error is not None

    def result(self) -> Any:
        if self._error is not None:
            raise self._error
        if self._value is Deferred._UNSET:
            raise asyncio.InvalidStateError("Deferred value is not resolved yet")
        return self._value

    def start(self) -> asyncio.Future:
        """Schedules the underlying work (requires a running loop) and returns its future."""
        if self.done():
            future = asyncio.get_running_loop().create_future()
            if self._error is not None:
                future.set_exception(self._error)
            else:
                future.set_result(self._value)
            return future
        return self._start()

    def __await__(self):
        if self.done():
            return self.result()
        return (yield from self._start().__await__())

    def then(self, fn: Callable[[Any], Any]) -> 'Deferred':
        """Chains `fn` after resolution; awaitable and Deferred results are flattened."""
        async def chained():
            value = await self
            out = fn(value)
            if inspect.isawaitable(out) and not isinstance(out, Deferred):
                out = await out
            while isinstance(out, Deferred):
                out = await out
            return out
        return Deferred(chained())

    def __repr__(self):
        if self._error is not None:
            return "<promise rejected>"
        if self._value is not Deferred._UNSET:
            return f"<promise {self._value!r}>"
        return "<promise pending>"


# =================================================================
# Context registry entry
# =================================================================

@dataclass
class ContextEntry:
    default: Any
    current: Any


# =================================================================
# Value helpers
# =================================================================

def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def lea_type_name(value: Any) -> str:
    """The Lea type name used by overload resolution and validation."""
    match value:
        case None:
            return "null"
        case bool():
            return "bool"
        case int() | float():
            return "int"
        case str():
            return "string"
        case list():
            return "list"
        case Record():
            return "record"
        case LeaTuple():
            return "tuple"
        case LeaFunction() | Builtin() | ReversibleFunction() | OverloadSet():
            return "function"
        case Pipeline():
            return "pipeline"
        case Deferred():
            return "promise"
        case _:
            return "unknown"


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality for data values, identity for callables."""
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if is_number(a) and is_number(b):
        return a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if isinstance(a, LeaTuple) and isinstance(b, LeaTuple):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a.elements, b.elements))
    if isinstance(a, ParallelResult) and isinstance(b, ParallelResult):
        return values_equal(a.values, b.values)
    if isinstance(a, Record) and isinstance(b, Record):
        if a.fields.keys() != b.fields.keys():
            return False
        return all(values_equal(v, b.fields[k]) for k, v in a.fields.items())
    return a is b


def is_truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if is_number(value):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True

