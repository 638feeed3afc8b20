"""
The core Lea interpreter: evaluation strategies, the Evaluator and the
engine state they share.

One `async def` tree walker serves both strategies. The synchronous strategy
never suspends, so `run_sync` can drive it to completion with a single step;
the asynchronous strategy awaits Deferred values as they are produced.
"""
import asyncio
import contextvars
import math
import os
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

from lea.lea_ast import (
    NumberLiteral, StringLiteral, TemplateStringExpr, BooleanLiteral, NullLiteral,
    Identifier, PlaceholderExpr, ListExpr, IndexExpr, UnaryExpr, BinaryExpr,
    PipeExpr, SpreadPipeExpr, ParallelPipeExpr, ReversePipeExpr, CallExpr,
    BlockBody, FunctionExpr, AwaitExpr, RecordExpr, MemberExpr, TernaryExpr,
    ReturnExpr, TupleExpr, PipelineLiteral, BidirectionalPipelineLiteral, MatchExpr,
    PipelineStage, ParallelStage, SpreadStage, RecordPattern, TuplePattern,
    LetStmt, AndStmt, AssignStmt, ExprStmt, ContextDefStmt, ProvideStmt,
    DecoratorDefStmt, CodeblockStmt,
)
from lea.lea_datatypes import (
    Scope, Record, LeaTuple, ParallelResult, LeaFunction, Builtin, OverloadSet,
    ReversibleFunction, Pipeline, BidirectionalPipeline, Deferred, ContextEntry,
    is_number, lea_type_name, values_equal, is_truthy,
)
from lea.lea_decorators import wrap_function, wrap_pipeline
from lea.lea_errors import (
    LeaError, ReturnSignal, UndefinedVariable, TypeMismatch, DivisionByZero,
    InvalidIndexOperation, PlaceholderOutsidePipe, RecordFieldMissing,
    PipeTargetNotCallable, UndefinedContext, NotReversible, AwaitOutsideAsync,
    NoMatchingCase,
)
from lea.lea_overloads import resolve_overload
from lea.lea_pipelines import pipeline_member
from lea.lea_printer import stringify

_NOT_PIPED = object()


def run_sync(coro):
    """Drives a coroutine of the synchronous strategy to completion.

    The coroutine must finish without suspending; if it would wait on
    pending work it is closed and AwaitOutsideAsync is raised.
    """
    try:
        coro.send(None)
    except StopIteration as stop:
        return stop.value
    coro.close()
    raise AwaitOutsideAsync(
        "Synchronous evaluation reached pending asynchronous work; "
        "use evaluate_async or an #async function")


# =================================================================
# Strategies
# =================================================================

class SyncStrategy:
    """Deferred values flow through as values; pipes chain onto them."""
    is_async = False

    async def produce(self, value):
        return value

    async def continue_after(self, value, continuation: Callable[[Any], Awaitable[Any]]):
        if isinstance(value, Deferred):
            if value.done():
                return await continuation(value.result())
            return value.then(continuation)
        return await continuation(value)

    async def await_value(self, value):
        if isinstance(value, Deferred):
            if value.done():
                return value.result()
            raise AwaitOutsideAsync("Cannot await a pending value outside of an #async function")
        return value

    async def gather(self, thunks):
        results = [await thunk() for thunk in thunks]
        if any(isinstance(r, Deferred) and not r.done() for r in results):
            async def settle_all():
                out = []
                for r in results:
                    while isinstance(r, Deferred):
                        r = await r
                    out.append(r)
                return out
            return Deferred(settle_all())
        return [r.result() if isinstance(r, Deferred) else r for r in results]


class AsyncStrategy:
    """Deferred values are awaited as soon as they are produced."""
    is_async = True

    async def produce(self, value):
        while isinstance(value, Deferred):
            value = await value
        return value

    async def continue_after(self, value, continuation):
        return await continuation(await self.produce(value))

    async def await_value(self, value):
        return await self.produce(value)

    async def gather(self, thunks):
        async def run(thunk):
            return await self.produce(await thunk())
        return list(await asyncio.gather(*(run(t) for t in thunks)))


# =================================================================
# Engine state
# =================================================================

class EngineState:
    """Registries shared by both evaluators of one engine."""

    def __init__(self):
        self.globals = Scope()
        self.memo_cache: Dict[str, Dict[str, Any]] = {}
        self.contexts: Dict[str, ContextEntry] = {}
        self.custom_decorators: Dict[str, LeaFunction] = {}
        self._trace_depth = contextvars.ContextVar(f"lea_trace_depth_{id(self):x}", default=0)
        self.side_effects: List[Dict[str, Any]] = []
        self.print_count = 0
        self.sync_evaluator = Evaluator(self, SyncStrategy())
        self.async_evaluator = Evaluator(self, AsyncStrategy())

    def emit(self, topic: str, message: str):
        self.side_effects.append({'topics': [topic], 'message': message})

    def warn(self, message: str):
        self.side_effects.append({'topics': ['stderr', 'warning'], 'message': message})

    @property
    def trace_depth(self) -> int:
        """Nesting of #trace calls in the current task."""
        return self._trace_depth.get()

    @trace_depth.setter
    def trace_depth(self, depth: int):
        self._trace_depth.set(depth)


# =================================================================
# Evaluator
# =================================================================

class Evaluator:
    """The Lea execution engine for one evaluation strategy."""

    def __init__(self, state: EngineState, strategy):
        self.state = state
        self.strategy = strategy
        # Concurrent branches each see the frames of the task that started them.
        self._frames = contextvars.ContextVar(f"lea_call_stack_{id(self):x}", default=())

    def _dbg(self, *parts):
        if os.environ.get("LEA_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    @property
    def call_stack(self) -> List[Dict[str, Any]]:
        return list(self._frames.get())

    def _push_frame(self, name, func, args, call_site_node) -> tuple:
        """Pushes a frame and returns the stack to restore afterwards."""
        saved = self._frames.get()
        self._frames.set(saved + ({
            'name': name,
            'func': func,
            'args': args,
            'call_site': getattr(call_site_node, 'loc', None),
        },))
        return saved

    # ---------------------------------------------------------------
    # Statements
    # ---------------------------------------------------------------

    async def exec_stmt(self, stmt, scope: Scope) -> Any:
        """Executes one statement; returns the value it produced, if any."""
        try:
            return await self._exec_stmt(stmt, scope)
        except LeaError as e:
            if e.node is None:
                e.node = stmt
            raise

    async def _exec_stmt(self, stmt, scope: Scope) -> Any:
        match stmt:
            case LetStmt(pattern=pattern) if pattern is not None:
                value = await self.eval(stmt.value, scope)
                self._destructure(pattern, value, scope, stmt.mutable)
                return value

            case LetStmt(name=name):
                value = await self.eval(stmt.value, scope)
                if isinstance(value, LeaFunction):
                    existing = scope.bindings[name].value if scope.has_local(name) else None
                    reversible = (LeaFunction, ReversibleFunction, OverloadSet)
                    if value.is_reverse and isinstance(existing, reversible):
                        scope.add_reverse(name, value)
                        return scope.get(name)
                    if value.type_signature is not None:
                        if isinstance(existing, (LeaFunction, OverloadSet)):
                            scope.add_overload(name, value)
                        else:
                            # A first typed definition starts a one-element set.
                            scope.define(name, OverloadSet([value]), stmt.mutable)
                        return scope.get(name)
                scope.define(name, value, stmt.mutable)
                return value

            case AndStmt(name=name):
                if not scope.has_local(name):
                    raise UndefinedVariable(name)
                value = await self.eval(stmt.value, scope)
                if not isinstance(value, LeaFunction):
                    raise TypeMismatch(f"'and {name}' requires a function value, got {lea_type_name(value)}")
                if value.is_reverse:
                    scope.add_reverse(name, value)
                else:
                    scope.add_overload(name, value)
                return scope.get(name)

            case AssignStmt(name=name):
                value = await self.eval(stmt.value, scope)
                scope.assign(name, value)
                return value

            case ExprStmt(expression=expression):
                return await self.eval(expression, scope)

            case ContextDefStmt(name=name):
                default = await self.eval(stmt.default_value, scope)
                self.state.contexts[name] = ContextEntry(default, default)
                self._dbg("context defined:", name)
                return None

            case ProvideStmt(context_name=name):
                entry = self.state.contexts.get(name)
                if entry is None:
                    raise UndefinedContext(name)
                entry.current = await self.eval(stmt.value, scope)
                return None

            case DecoratorDefStmt(name=name):
                transformer = await self.eval(stmt.transformer, scope)
                if not isinstance(transformer, LeaFunction):
                    raise TypeMismatch(f"Decorator '{name}' must be defined with a function")
                self.state.custom_decorators[name] = transformer
                return None

            case CodeblockStmt(statements=statements):
                result = None
                for inner in statements:
                    result = await self.exec_stmt(inner, scope)
                return result

            case _:
                raise LeaError(f"Unknown statement kind: {type(stmt).__name__}", stmt)

    def _destructure(self, pattern, value, scope: Scope, mutable: bool):
        match pattern:
            case RecordPattern(fields=names):
                if not isinstance(value, Record):
                    raise TypeMismatch(f"Cannot destructure {lea_type_name(value)} as a record")
                for name in names:
                    if name not in value.fields:
                        raise RecordFieldMissing(name)
                    scope.define(name, value.fields[name], mutable)
            case TuplePattern(names=names):
                match value:
                    case LeaTuple():
                        elements = value.elements
                    case list():
                        elements = value
                    case _:
                        raise TypeMismatch(f"Cannot destructure {lea_type_name(value)} as a tuple")
                for i, name in enumerate(names):
                    if name == "_":
                        continue
                    scope.define(name, elements[i] if i < len(elements) else None, mutable)

    # ---------------------------------------------------------------
    # Expressions
    # ---------------------------------------------------------------

    async def eval(self, node: Any, scope: Scope) -> Any:
        """Public entry point for evaluation; errors are tagged with the failing node."""
        try:
            return await self._eval(node, scope)
        except LeaError as e:
            if e.node is None:
                e.node = node
            raise

    async def _eval(self, node: Any, scope: Scope) -> Any:
        """Recursive dispatcher for evaluating any expression node."""
        match node:
            case NumberLiteral(value=value) | StringLiteral(value=value) | BooleanLiteral(value=value):
                return value

            case NullLiteral():
                return None

            case TemplateStringExpr(parts=parts):
                out = []
                for part in parts:
                    if isinstance(part, str):
                        out.append(part)
                    else:
                        out.append(stringify(await self.eval(part, scope)))
                return "".join(out)

            case Identifier(name=name):
                return scope.get(name)

            case PlaceholderExpr():
                if scope.has("_"):
                    return scope.get("_")
                raise PlaceholderOutsidePipe("Placeholder '_' used outside of pipe context")

            case ListExpr(elements=elements):
                return [await self.eval(e, scope) for e in elements]

            case TupleExpr(elements=elements):
                return LeaTuple([await self.eval(e, scope) for e in elements])

            case RecordExpr(fields=fields):
                values = {}
                for f in fields:
                    values[f.key] = await self.eval(f.value, scope)
                return Record(values)

            case IndexExpr():
                target = await self.eval(node.object, scope)
                index = await self.eval(node.index, scope)
                return self._index(target, index)

            case MemberExpr(member=member):
                target = await self.eval(node.object, scope)
                match target:
                    case Record():
                        if member not in target.fields:
                            raise RecordFieldMissing(member)
                        return target.fields[member]
                    case Pipeline():
                        return await pipeline_member(self, target, member)
                    case _:
                        raise TypeMismatch(f"Cannot access member '{member}' of {lea_type_name(target)}")

            case UnaryExpr(operator=op):
                operand = await self.eval(node.operand, scope)
                match op:
                    case "-":
                        return -self._number(operand, op)
                    case "!":
                        return not is_truthy(operand)
                raise LeaError(f"Unknown unary operator: {op}")

            case BinaryExpr(operator="&&"):
                left = await self.eval(node.left, scope)
                if not is_truthy(left):
                    return left
                return await self.eval(node.right, scope)

            case BinaryExpr(operator="||"):
                left = await self.eval(node.left, scope)
                if is_truthy(left):
                    return left
                return await self.eval(node.right, scope)

            case BinaryExpr(operator=op):
                left = await self.eval(node.left, scope)
                right = await self.eval(node.right, scope)
                return self._binary(op, left, right)

            case TernaryExpr():
                if is_truthy(await self.eval(node.condition, scope)):
                    return await self.eval(node.then_branch, scope)
                return await self.eval(node.else_branch, scope)

            case PipeExpr(left=left, right=right):
                value = await self.eval(left, scope)
                return await self.strategy.continue_after(
                    value, lambda v: self.pipe_value(v, right, scope))

            case SpreadPipeExpr(left=left, right=right):
                value = await self.eval(left, scope)
                return await self.strategy.continue_after(
                    value, lambda v: self.spread_value(v, right, scope))

            case ParallelPipeExpr(branches=branches):
                value = await self.eval(node.input, scope)
                return await self.strategy.continue_after(
                    value, lambda v: self.fan_out(v, branches, scope))

            case ReversePipeExpr(left=left, right=right):
                value = await self.eval(left, scope)
                target = await self.eval(right, scope)
                return await self.strategy.continue_after(
                    value, lambda v: self.apply_reverse(target, v))

            case CallExpr():
                return await self._call_expr(node, scope)

            case FunctionExpr():
                return self.make_function(node, scope)

            case AwaitExpr(operand=operand):
                return await self.strategy.await_value(await self.eval(operand, scope))

            case ReturnExpr(value=value):
                raise ReturnSignal(await self.eval(value, scope))

            case BidirectionalPipelineLiteral(stages=stages, decorators=decorators):
                return BidirectionalPipeline(stages, scope, decorators)

            case PipelineLiteral(stages=stages, decorators=decorators):
                return Pipeline(stages, scope, decorators)

            case MatchExpr(cases=cases):
                value = await self.eval(node.value, scope)
                return await self._match(value, cases, scope)

            case BlockBody():
                return await self._run_block(node, Scope(parent=scope))

        raise LeaError(f"Unknown expression kind: {type(node).__name__}")

    def _index(self, target, index):
        match target:
            case list() | str():
                items = target
            case LeaTuple():
                items = target.elements
            case _:
                raise InvalidIndexOperation(
                    f"Cannot index {lea_type_name(target)} with {lea_type_name(index)}")
        if not is_number(index):
            raise InvalidIndexOperation(
                f"Cannot index {lea_type_name(target)} with {lea_type_name(index)}")
        if index != int(index) or index < 0 or index >= len(items):
            return None
        return items[int(index)]

    def _number(self, value, op):
        if not is_number(value):
            raise TypeMismatch(f"Operator '{op}' expects numbers, got {lea_type_name(value)}")
        return value

    def _binary(self, op, left, right):
        match op:
            case "++":
                return stringify(left) + stringify(right)
            case "==":
                return values_equal(left, right)
            case "!=":
                return not values_equal(left, right)

        a = self._number(left, op)
        b = self._number(right, op)
        match op:
            case "+":
                return a + b
            case "-":
                return a - b
            case "*":
                return a * b
            case "/":
                if b == 0:
                    raise DivisionByZero("Division by zero")
                return _whole(a / b)
            case "%":
                if b == 0:
                    raise DivisionByZero("Modulo by zero")
                # Sign follows the dividend.
                if isinstance(a, int) and isinstance(b, int):
                    r = abs(a) % abs(b)
                    return -r if a < 0 else r
                return _whole(math.fmod(a, b))
            case "<":
                return a < b
            case ">":
                return a > b
            case "<=":
                return a <= b
            case ">=":
                return a >= b
        raise LeaError(f"Unknown binary operator: {op}")

    async def _match(self, value, cases, scope: Scope):
        for case in cases:
            if case.guard is not None:
                guard_scope = Scope(parent=scope)
                guard_scope.define("_", value)
                if is_truthy(await self.eval(case.guard, guard_scope)):
                    return await self.eval(case.body, guard_scope)
            elif case.pattern is not None:
                if values_equal(value, await self.eval(case.pattern, scope)):
                    return await self.eval(case.body, scope)
            else:
                return await self.eval(case.body, scope)
        raise NoMatchingCase(f"No case matched {stringify(value)}")

    # ---------------------------------------------------------------
    # Pipes
    # ---------------------------------------------------------------

    async def pipe_value(self, value, right, scope: Scope) -> Any:
        """Feeds an already evaluated `value` into the pipe target `right`."""
        if isinstance(value, ParallelResult):
            return await self._pipe_parallel_result(value, right, scope)

        match right:
            case Identifier() | MemberExpr():
                target = await self.eval(right, scope)
                return await self.call(target, [value], node=right)
            case CallExpr():
                return await self._call_expr(right, scope, piped=value)
            case FunctionExpr():
                return await self.call(self.make_function(right, scope), [value], node=right)
            case PipeExpr():
                intermediate = await self.pipe_value(value, right.left, scope)
                return await self.strategy.continue_after(
                    intermediate, lambda v: self.pipe_value(v, right.right, scope))
            case PipelineLiteral() | BidirectionalPipelineLiteral():
                return await self.call(await self.eval(right, scope), [value], node=right)
        raise PipeTargetNotCallable("Right side of pipe must be a function or call", right)

    async def _pipe_parallel_result(self, value: ParallelResult, right, scope: Scope):
        """Spreads fan-out results into the arguments of the next stage."""
        match right:
            case FunctionExpr():
                return await self.call(self.make_function(right, scope), list(value.values), node=right)
            case Identifier() | MemberExpr():
                target = await self.eval(right, scope)
                if isinstance(target, Pipeline):
                    return await self.call(target, [value], node=right)
                return await self.call(target, list(value.values), node=right)
            case CallExpr():
                return await self._call_expr(right, scope, piped=value)
            case PipelineLiteral() | BidirectionalPipelineLiteral():
                return await self.call(await self.eval(right, scope), [value], node=right)
            case PipeExpr():
                intermediate = await self._pipe_parallel_result(value, right.left, scope)
                return await self.strategy.continue_after(
                    intermediate, lambda v: self.pipe_value(v, right.right, scope))
        raise PipeTargetNotCallable("Right side of pipe must be a function or call", right)

    async def spread_value(self, value, right, scope: Scope) -> Any:
        """Maps each element of a list (or fan-out result) through `right`."""
        match value:
            case list():
                elements = value
            case ParallelResult():
                elements = value.values
            case _:
                raise TypeMismatch(
                    f"Spread pipe requires a list or parallel result, got {lea_type_name(value)}")
        return await self.strategy.gather(
            [lambda e=e: self.pipe_value(e, right, scope) for e in elements])

    async def fan_out(self, value, branches, scope: Scope) -> Any:
        """Sends `value` down every branch; results keep branch order."""
        results = await self.strategy.gather(
            [lambda b=b: self.pipe_value(value, b, scope) for b in branches])
        if isinstance(results, Deferred):
            return results.then(ParallelResult)
        return ParallelResult(results)

    # ---------------------------------------------------------------
    # Calls
    # ---------------------------------------------------------------

    async def _call_expr(self, node: CallExpr, scope: Scope, piped=_NOT_PIPED) -> Any:
        callee = await self.eval(node.callee, scope)
        has_placeholder = any(isinstance(a, PlaceholderExpr) for a in node.args)

        if piped is _NOT_PIPED:
            args = [await self.eval(a, scope) for a in node.args]
        elif isinstance(piped, ParallelResult):
            explicit = [await self.eval(a, scope) for a in node.args if not isinstance(a, PlaceholderExpr)]
            args = list(piped.values) + explicit
        elif has_placeholder:
            args = []
            for a in node.args:
                args.append(piped if isinstance(a, PlaceholderExpr) else await self.eval(a, scope))
        else:
            args = [piped] + [await self.eval(a, scope) for a in node.args]

        return await self.call(callee, args, node=node)

    async def call(self, callee, args: List[Any], node=None) -> Any:
        """Invokes any callable Lea value with already evaluated arguments."""
        name = _call_name(node)
        saved = self._push_frame(name, callee, args, node)
        try:
            match callee:
                case Pipeline():
                    result = await self.apply_pipeline(callee, args)
                case ReversibleFunction():
                    result = await self.call_function(callee.forward, args)
                case LeaFunction():
                    result = await self.call_function(callee, args)
                case OverloadSet():
                    result = await self.call_function(resolve_overload(callee.overloads, args), args)
                case Builtin():
                    result = await self._call_builtin(callee, args)
                case _:
                    raise PipeTargetNotCallable(f"Cannot call a value of type {lea_type_name(callee)}", node)
        except Exception as e:
            if getattr(e, 'lea_stack', None) is None:
                e.lea_stack = [frame['name'] for frame in self._frames.get()]
            raise
        finally:
            self._frames.set(saved)
        return await self.strategy.produce(result)

    async def _call_builtin(self, builtin: Builtin, args: List[Any]) -> Any:
        if builtin.deferred:
            # Deferred work runs on the loop, so it calls back asynchronously.
            kwargs = {'evaluator': self.state.async_evaluator} if builtin.wants_evaluator else {}
            return Deferred(builtin.fn(*args, **kwargs))
        kwargs = {'evaluator': self} if builtin.wants_evaluator else {}
        result = builtin.fn(*args, **kwargs)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def make_function(self, node: FunctionExpr, scope: Scope) -> LeaFunction:
        return LeaFunction(
            params=list(node.params),
            body=node.body,
            closure=scope,
            attachments=list(node.attachments),
            decorators=list(node.decorators),
            type_signature=node.type_signature,
            is_reverse=node.is_reverse,
            node=node,
        )

    async def call_function(self, fn: LeaFunction, args: List[Any]) -> Any:
        """Runs `fn` through its decorator stack."""
        executor = self._base_executor(fn)
        for decorator in fn.decorators:
            executor = wrap_function(self, decorator, executor, fn)
        return await executor(list(args))

    def _base_executor(self, fn: LeaFunction):
        async def execute(args):
            call_scope = await self._bind_arguments(fn, args)
            if fn.has_decorator("async"):
                return Deferred(self.state.async_evaluator.run_body(fn.body, call_scope))
            return await self.run_body(fn.body, call_scope)
        return execute

    async def _bind_arguments(self, fn: LeaFunction, args: List[Any]) -> Scope:
        call_scope = Scope(parent=fn.closure)
        for i, param in enumerate(fn.params):
            value = args[i] if i < len(args) else None
            if value is None and param.default is not None:
                value = await self.eval(param.default, fn.closure)
            if param.name == "_":
                continue
            call_scope.define(param.name, value)
        for name in fn.attachments:
            entry = self.state.contexts.get(name)
            if entry is None:
                raise UndefinedContext(name)
            call_scope.define(name, entry.current)
        return call_scope

    async def run_body(self, body, scope: Scope) -> Any:
        """Evaluates a function body; `return` stops here."""
        try:
            if isinstance(body, BlockBody):
                return await self._run_block(body, scope)
            return await self.eval(body, scope)
        except ReturnSignal as signal:
            return signal.value

    async def _run_block(self, block: BlockBody, scope: Scope) -> Any:
        for stmt in block.statements:
            await self.exec_stmt(stmt, scope)
        return await self.eval(block.result, scope)

    # ---------------------------------------------------------------
    # Pipelines
    # ---------------------------------------------------------------

    async def apply_pipeline(self, pipeline: Pipeline, args: List[Any]) -> Any:
        """Applies a pipeline (or a bidirectional one, forwards) to its first argument."""
        async def execute(pipe_args):
            return await self.run_stages(pipeline, pipe_args[0] if pipe_args else None)

        executor = execute
        for decorator in pipeline.decorators:
            executor = wrap_pipeline(self, decorator, executor, pipeline)
        return await executor(list(args))

    async def run_stages(self, pipeline: Pipeline, value, start: int = 0, stop: Optional[int] = None) -> Any:
        """Threads `value` through `pipeline.stages[start:stop]`."""
        stop = len(pipeline.stages) if stop is None else stop
        for index in range(start, stop):
            if isinstance(value, Deferred):
                return await self.strategy.continue_after(
                    value, lambda v, i=index: self.run_stages(pipeline, v, i, stop))
            value = await self._run_stage(pipeline.stages[index], value, pipeline.closure)
        return value

    async def _run_stage(self, stage, value, closure: Scope) -> Any:
        match stage:
            case ParallelStage(branches=branches):
                return await self.fan_out(value, branches, closure)
            case SpreadStage(expr=expr):
                return await self.spread_value(value, expr, closure)
            case PipelineStage(expr=expr):
                return await self.pipe_value(value, expr, closure)
        raise LeaError(f"Unknown pipeline stage: {type(stage).__name__}")

    async def apply_reverse(self, target, value) -> Any:
        """Runs `target` backwards on `value`."""
        match target:
            case ReversibleFunction():
                return await self.call(target.reverse, [value])
            case Pipeline():
                return await self._reverse_stages(target, value, len(target.stages))
            case LeaFunction():
                raise NotReversible(
                    "Cannot apply reverse to a function without a reverse definition")
        raise NotReversible(f"Cannot apply reverse to a value of type {lea_type_name(target)}")

    async def _reverse_stages(self, pipeline: Pipeline, value, remaining: int) -> Any:
        while remaining > 0:
            if isinstance(value, Deferred):
                return await self.strategy.continue_after(
                    value, lambda v, r=remaining: self._reverse_stages(pipeline, v, r))
            remaining -= 1
            value = await self._reverse_stage(pipeline.stages[remaining], value, pipeline.closure)
        return value

    async def _reverse_stage(self, stage, value, closure: Scope) -> Any:
        match stage:
            case ParallelStage():
                raise NotReversible("Cannot reverse a pipeline with parallel stages")
            case SpreadStage():
                raise NotReversible("Cannot reverse a pipeline with spread stages")
            case PipelineStage(expr=Identifier(name=name) as ident):
                target = await self.eval(ident, closure)
                if isinstance(target, (ReversibleFunction, Pipeline)):
                    return await self.apply_reverse(target, value)
                raise NotReversible(f"Cannot reverse stage '{name}': it has no reverse", ident)
        raise NotReversible("Cannot reverse an inline stage", getattr(stage, 'expr', None))


def _whole(value):
    if isinstance(value, float) and value.is_integer() and abs(value) < 2 ** 53:
        return int(value)
    return value


def _call_name(node) -> str:
    match node:
        case Identifier(name=name):
            return name
        case CallExpr(callee=Identifier(name=name)):
            return name
        case MemberExpr(member=member):
            return member
        case FunctionExpr():
            return "λ"
        case _:
            return "<call>"
