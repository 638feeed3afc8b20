"""
Decorator middleware for Lea functions and pipelines.

A decorator turns an executor (`async (args) -> value`) into a new executor.
`wrap_function` and `wrap_pipeline` are applied once per decorator, in list
order, so the last decorator written ends up outermost.
"""
import asyncio
import json
import re
import time
from typing import Any, Awaitable, Callable, List, Optional

from lea.lea_ast import ParallelStage, SpreadStage
from lea.lea_datatypes import (
    LeaFunction, Builtin, Record, LeaTuple, ParallelResult, Deferred, lea_type_name, is_number,
)
from lea.lea_errors import TimeoutExceeded, TypeMismatch, ValidationError
from lea.lea_overloads import matches_type, is_optional_type, format_type
from lea.lea_pipelines import describe_any_stage, stage_descriptions
from lea.lea_printer import stringify
from lea.lea_serialize import to_lea

Executor = Callable[[List[Any]], Awaitable[Any]]


# =================================================================
# Helpers
# =================================================================

def _arg(decorator, index: int, default: Any = None) -> Any:
    args = decorator.args
    return args[index] if index < len(args) and args[index] is not None else default


def _join(args) -> str:
    return ", ".join(stringify(a) for a in args)


def _json_default(value):
    match value:
        case Record():
            return value.fields
        case LeaTuple():
            return list(value.elements)
        case _:
            return f"<{lea_type_name(value)}@{id(value):x}>"


def cache_key(value: Any) -> str:
    return json.dumps(value, default=_json_default)


async def settle(value: Any) -> Any:
    while isinstance(value, Deferred):
        value = await value
    return value


def _discard_outcome(future: asyncio.Future):
    if not future.cancelled():
        future.exception()


async def run_bounded(items: List[Any], worker: Callable[[Any, int], Awaitable[Any]],
                      limit: Optional[int] = None, running: Optional[set] = None) -> List[Any]:
    """Runs `worker(item, index)` for every item, at most `limit` at a time.

    `running` is the set of in-flight tasks; pass one in to observe it.
    Results keep input order. The first failure propagates once every
    started task has been waited on; nothing is cancelled and no further
    items are started after it.
    """
    results: List[Any] = [None] * len(items)
    running = set() if running is None else running
    failure: Optional[BaseException] = None

    async def run_one(index, item):
        results[index] = await settle(await worker(item, index))

    try:
        for index, item in enumerate(items):
            while failure is None and limit is not None and len(running) >= limit:
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                running.difference_update(done)
                for task in done:
                    if failure is None and task.exception() is not None:
                        failure = task.exception()
            if failure is not None:
                break
            running.add(asyncio.ensure_future(run_one(index, item)))
        outcomes = await asyncio.gather(*running, return_exceptions=True)
    finally:
        running.clear()
    if failure is None:
        failure = next((o for o in outcomes if isinstance(o, BaseException)), None)
    if failure is not None:
        raise failure
    return results


# =================================================================
# Type coercion for #coerce / #tease
# =================================================================

def coerce_to_type(value: Any, target: str) -> Any:
    """Strict conversion; raises TypeMismatch when it is not possible."""
    match target:
        case "int" | "number":
            if is_number(value):
                return value
            if isinstance(value, bool):
                return 1 if value else 0
            if isinstance(value, str):
                number = _parse_number(value)
                if number is not None:
                    return number
                raise TypeMismatch(f'[coerce] Cannot coerce string "{value}" to Int')
            raise TypeMismatch(f"[coerce] Cannot coerce {lea_type_name(value)} to Int")
        case "string":
            return stringify(value)
        case "bool" | "boolean":
            if isinstance(value, bool):
                return value
            if is_number(value):
                return value != 0
            if isinstance(value, str):
                lower = value.lower()
                if lower in ("true", "1", "yes"):
                    return True
                if lower in ("false", "0", "no", ""):
                    return False
                raise TypeMismatch(f'[coerce] Cannot coerce string "{value}" to Bool')
            if value is None:
                return False
            raise TypeMismatch(f"[coerce] Cannot coerce {lea_type_name(value)} to Bool")
        case "list":
            return _to_list(value)
        case _:
            raise TypeMismatch(f"[coerce] Unknown target type: {target}")


def tease_to_type(value: Any, target: str) -> Any:
    """Best-effort conversion; falls back to a neutral value instead of failing."""
    match target:
        case "int" | "number":
            if is_number(value):
                return value
            if isinstance(value, bool):
                return 1 if value else 0
            if isinstance(value, str):
                text = value.strip()
                number = _parse_number(text)
                if number is not None:
                    return number
                found = re.search(r"-?\d+\.?\d*", text)
                if found:
                    return _parse_number(found.group(0).rstrip("."))
                if text.lower() in ("true", "yes"):
                    return 1
                return 0
            if isinstance(value, list):
                return len(value)
            if isinstance(value, LeaTuple):
                return len(value.elements)
            return 0
        case "string":
            return stringify(value)
        case "bool" | "boolean":
            if isinstance(value, str):
                lower = value.lower().strip()
                if lower in ("true", "1", "yes"):
                    return True
                if lower in ("false", "0", "no", ""):
                    return False
                return True
            if isinstance(value, (list, LeaTuple)):
                return len(value) > 0
            if is_number(value):
                return value != 0
            return value is not None and value is not False
        case "list":
            return _to_list(value)
        case _:
            return value


def _parse_number(text: str):
    text = text.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def _to_list(value):
    if isinstance(value, list):
        return value
    if isinstance(value, LeaTuple):
        return list(value.elements)
    if isinstance(value, str):
        return list(value)
    return [value]


def _parse_arg(value):
    if not isinstance(value, str):
        return value
    number = _parse_number(value)
    if number is not None:
        return number
    try:
        return to_lea(json.loads(value))
    except json.JSONDecodeError:
        return value


def _target_type(decorator, default: str) -> str:
    return str(_arg(decorator, 0, default)).lower()


async def _tap(evaluator, closure, name, value, label=None):
    """Hands `value` to the named function, or reports it when no name is given."""
    if not name:
        prefix = f"{label} " if label else ""
        evaluator.state.emit('stdout', f"{prefix}{stringify(value)}")
        return
    if not closure.has(name):
        evaluator._dbg("tap target not found:", name)
        return
    target = closure.get(name)
    if isinstance(target, (LeaFunction, Builtin)):
        await evaluator.call(target, [value])


# =================================================================
# Function decorators
# =================================================================

def wrap_function(evaluator, decorator, executor: Executor, fn: LeaFunction) -> Executor:
    """Wraps the executor of `fn` with the behaviour named by `decorator`."""
    state = evaluator.state
    emit = state.emit

    match decorator.name:
        case "log":
            async def logged(args):
                emit('stdout', f"[log] Called with: {_join(args)}")
                result = await executor(args)
                emit('stdout', f"[log] Returned: {stringify(result)}")
                return result
            return logged

        case "log_verbose":
            async def logged_verbose(args):
                emit('stdout', "[log_verbose] Function called")
                for i, param in enumerate(fn.params):
                    declared = _declared_param_type(fn, i)
                    type_text = f" :: {format_type(declared)}" if declared is not None else ""
                    arg = args[i] if i < len(args) else None
                    emit('stdout', f"[log_verbose]   {param.name}{type_text} = {stringify(arg)}")
                start = time.perf_counter()
                result = await executor(args)
                elapsed = (time.perf_counter() - start) * 1000
                emit('stdout', f"[log_verbose] Returned: {stringify(result)}")
                emit('stdout', f"[log_verbose] Execution time: {elapsed:.3f}ms")
                return result
            return logged_verbose

        case "memo":
            # Shared by every function with the same parameter names.
            fn_key = json.dumps([p.name for p in fn.params])
            cache = state.memo_cache.setdefault(fn_key, {})

            async def memoized(args):
                key = cache_key(args)
                if key in cache:
                    return cache[key]
                result = await executor(args)
                cache[key] = result
                return result
            return memoized

        case "time":
            async def timed(args):
                start = time.perf_counter()
                result = await executor(args)
                elapsed = (time.perf_counter() - start) * 1000
                emit('stdout', f"[time] Execution took {elapsed:.3f}ms")
                return result
            return timed

        case "retry":
            max_retries = int(_arg(decorator, 0, 3))

            async def retrying(args):
                last_error = None
                for attempt in range(max_retries + 1):
                    try:
                        return await executor(args)
                    except Exception as e:
                        last_error = e
                        if attempt < max_retries:
                            emit('stdout', f"[retry] Attempt {attempt + 1} failed, retrying...")
                raise last_error
            return retrying

        case "validate":
            async def validated(args):
                for i, param in enumerate(fn.params):
                    arg = args[i] if i < len(args) else None
                    expected = _declared_param_type(fn, i)
                    if arg is None:
                        if param.default is not None or is_optional_type(expected):
                            continue
                        raise ValidationError(f"[validate] Argument '{param.name}' is null")
                    if expected is not None and not matches_type(arg, expected):
                        raise ValidationError(
                            f"[validate] Argument '{param.name}' expected {format_type(expected)}, "
                            f"got {lea_type_name(arg)}")

                result = await executor(args)
                expected_return = fn.type_signature.return_type if fn.type_signature else None
                if expected_return is None:
                    return result

                def check_return(value):
                    if value is None and not is_optional_type(expected_return):
                        raise ValidationError("[validate] Return value is null")
                    if not matches_type(value, expected_return):
                        raise ValidationError(
                            f"[validate] Expected return type {format_type(expected_return)}, "
                            f"got {lea_type_name(value)}")
                    return value

                if isinstance(result, Deferred):
                    return result.then(check_return)
                return check_return(result)
            return validated

        case "pure":
            async def pure(args):
                before = state.print_count
                result = await executor(args)
                if state.print_count != before:
                    state.warn("[pure] Warning: Side effect detected (print was called)")
                return result
            return pure

        case "trace":
            async def traced(args):
                prefix = "  " * state.trace_depth
                emit('stdout', f"{prefix}[trace] → Called with: {_join(args)}")
                state.trace_depth += 1
                try:
                    result = await executor(args)
                finally:
                    state.trace_depth -= 1
                emit('stdout', f"{prefix}[trace] ← Returned: {stringify(result)}")
                return result
            return traced

        case "timeout":
            timeout_ms = _arg(decorator, 0, 1000)

            async def race(future: asyncio.Future):
                # The underlying work keeps running after the deadline.
                done, _ = await asyncio.wait({future}, timeout=timeout_ms / 1000)
                if not done:
                    future.add_done_callback(_discard_outcome)
                    raise TimeoutExceeded(f"[timeout] Function exceeded {timeout_ms}ms")
                return future.result()

            async def run_settled(args):
                return await settle(await executor(args))

            async def timed_out(args):
                if evaluator.strategy.is_async:
                    # Inner calls settle as they go, so the body itself is raced.
                    return await race(asyncio.ensure_future(run_settled(args)))
                result = await executor(args)
                if isinstance(result, Deferred) and not result.done():
                    return Deferred(race(result.start()))
                return result
            return timed_out

        case "async":
            async def asynchronous(args):
                result = await executor(args)
                return result if isinstance(result, Deferred) else Deferred.resolved(result)
            return asynchronous

        case "coerce":
            target = _target_type(decorator, "string")

            async def coerced(args):
                return await executor([coerce_to_type(a, target) for a in args])
            return coerced

        case "parse":
            async def parsed(args):
                return await executor([_parse_arg(a) for a in args])
            return parsed

        case "stringify":
            async def stringified(args):
                return stringify(await executor(args))
            return stringified

        case "tease":
            target = _target_type(decorator, "int")

            async def teased(args):
                return tease_to_type(await executor(args), target)
            return teased

        case "profile":
            async def profiled(args):
                start = time.perf_counter()
                result = await executor(args)
                elapsed = (time.perf_counter() - start) * 1000
                emit('stdout', f"[profile] Function executed in {elapsed:.3f}ms")
                return result
            return profiled

        case "debug":
            async def debugged(args):
                emit('stdout', f"[debug] Input: {_join(args)}")
                start = time.perf_counter()
                result = await executor(args)
                elapsed = (time.perf_counter() - start) * 1000
                emit('stdout', f"[debug] Output: {stringify(result)}")
                emit('stdout', f"[debug] Time: {elapsed:.3f}ms")
                return result
            return debugged

        case "tap":
            tap_name = _arg(decorator, 0)

            async def tapped(args):
                result = await executor(args)
                await _tap(evaluator, fn.closure, tap_name, result)
                return result
            return tapped

        case "export":
            return executor

    custom = state.custom_decorators.get(decorator.name)
    if custom is not None:
        async def custom_decorated(args):
            plain = LeaFunction(
                params=fn.params, body=fn.body, closure=fn.closure,
                type_signature=fn.type_signature, is_reverse=fn.is_reverse, node=fn.node,
            )
            replacement = await evaluator.call(custom, [plain])
            if isinstance(replacement, LeaFunction):
                return await evaluator.call(replacement, args)
            return await executor(args)
        return custom_decorated

    state.warn(f"Unknown decorator: #{decorator.name}")
    return executor


def _declared_param_type(fn: LeaFunction, index: int):
    sig = fn.type_signature
    if sig is not None and index < len(sig.param_types):
        return sig.param_types[index]
    return fn.params[index].type_annotation


# =================================================================
# Pipeline decorators
# =================================================================

def wrap_pipeline(evaluator, decorator, executor: Executor, pipeline) -> Executor:
    """Wraps a pipeline executor with the behaviour named by `decorator`."""
    state = evaluator.state
    emit = state.emit
    stages = pipeline.stages

    match decorator.name:
        case "log":
            async def logged(args):
                emit('stdout', f"[log] Pipeline called with: {_join(args)}")
                result = await executor(args)
                emit('stdout', f"[log] Pipeline returned: {stringify(result)}")
                return result
            return logged

        case "log_verbose":
            async def logged_verbose(args):
                total_start = time.perf_counter()
                emit('stdout', "[log_verbose] Pipeline execution started")
                emit('stdout', f"[log_verbose] Stages: {len(stages)}")
                emit('stdout', f"[log_verbose] Input: {_join(args)}")
                current = args[0] if args else None
                for i, stage in enumerate(stages):
                    start = time.perf_counter()
                    emit('stdout', f"[log_verbose] Stage {i + 1}/{len(stages)}: {describe_any_stage(stage)}")
                    emit('stdout', f"[log_verbose]   Input: {stringify(current)}")
                    match stage:
                        case ParallelStage(branches=branches):
                            emit('stdout', f"[log_verbose]   Parallel branches: {len(branches)}")
                        case SpreadStage():
                            count = len(current) if isinstance(current, list) else "non-list"
                            emit('stdout', f"[log_verbose]   Spread stage: mapping over {count} elements")
                    current = await evaluator.run_stages(pipeline, current, start=i, stop=i + 1)
                    if isinstance(current, ParallelResult):
                        for k, value in enumerate(current.values, 1):
                            emit('stdout', f"[log_verbose]     Branch {k}: {stringify(value)}")
                    elapsed = (time.perf_counter() - start) * 1000
                    emit('stdout', f"[log_verbose]   Output: {stringify(current)}")
                    emit('stdout', f"[log_verbose]   Time: {elapsed:.3f}ms")
                total = (time.perf_counter() - total_start) * 1000
                emit('stdout', f"[log_verbose] Final output: {stringify(current)}")
                emit('stdout', f"[log_verbose] Total time: {total:.3f}ms")
                return current
            return logged_verbose

        case "memo":
            if pipeline.memo_cache is None:
                pipeline.memo_cache = {}
            cache = pipeline.memo_cache

            async def memoized(args):
                key = cache_key(args)
                if key in cache:
                    return cache[key]
                result = await executor(args)
                cache[key] = result
                return result
            return memoized

        case "time":
            async def timed(args):
                start = time.perf_counter()
                result = await executor(args)
                elapsed = (time.perf_counter() - start) * 1000
                emit('stdout', f"[time] Pipeline execution took {elapsed:.3f}ms")
                return result
            return timed

        case "tap":
            tap_name = _arg(decorator, 0)

            async def tapped(args):
                result = await executor(args)
                await _tap(evaluator, pipeline.closure, tap_name, result, label="[tap]")
                return result
            return tapped

        case "debug":
            async def debugged(args):
                emit('stdout', f"[debug] Pipeline input: {_join(args)}")
                emit('stdout', f"[debug] Stages: {' /> '.join(stage_descriptions(pipeline))}")
                current = args[0] if args else None
                for i, stage in enumerate(stages):
                    current = await evaluator.run_stages(pipeline, current, start=i, stop=i + 1)
                    emit('stdout', f"[debug]   {describe_any_stage(stage)}: {stringify(current)}")
                emit('stdout', f"[debug] Pipeline output: {stringify(current)}")
                return current
            return debugged

        case "profile":
            async def profiled(args):
                total_start = time.perf_counter()
                timings = []
                current = args[0] if args else None
                for i, stage in enumerate(stages):
                    start = time.perf_counter()
                    current = await evaluator.run_stages(pipeline, current, start=i, stop=i + 1)
                    timings.append((describe_any_stage(stage), (time.perf_counter() - start) * 1000))
                total = (time.perf_counter() - total_start) * 1000
                emit('stdout', "[profile] Pipeline execution profile:")
                for name, elapsed in timings:
                    percent = (elapsed / total * 100) if total else 0.0
                    emit('stdout', f"[profile]   {name}: {elapsed:.3f}ms ({percent:.1f}%)")
                emit('stdout', f"[profile] Total: {total:.3f}ms")
                return current
            return profiled

        case "trace":
            async def traced(args):
                prefix = "  " * state.trace_depth
                emit('stdout', f"{prefix}[trace] → Pipeline called with: {_join(args)}")
                state.trace_depth += 1
                try:
                    result = await executor(args)
                finally:
                    state.trace_depth -= 1
                emit('stdout', f"{prefix}[trace] ← Pipeline returned: {stringify(result)}")
                return result
            return traced

        case "export":
            return executor

        case "parallel":
            limit = _arg(decorator, 0)
            limit = int(limit) if limit is not None else None

            async def parallel(args):
                items = args[0] if args else None
                if not isinstance(items, list):
                    return await executor(args)
                emit('stdout', f"[parallel] Processing {len(items)} elements with concurrency "
                               f"{'unlimited' if limit is None else limit}")
                return Deferred(run_bounded(items, lambda item, _i: executor([item]), limit))
            return parallel

        case "autoparallel":
            limit = int(_arg(decorator, 0, 10))

            async def autoparallel(args):
                items = args[0] if args else None
                # Short lists are not worth reporting.
                if isinstance(items, list) and len(items) > 3:
                    emit('stdout', f"[autoparallel] Processing list of {len(items)} elements "
                                   f"with concurrency {limit}")
                return await executor(args)
            return autoparallel

        case "prefetch":
            ahead = max(int(_arg(decorator, 0, 2)), 1)

            async def prefetched(args):
                items = args[0] if args else None
                if not isinstance(items, list):
                    return await executor(args)
                emit('stdout', f"[prefetch] Prefetching {ahead} ahead for {len(items)} elements")
                return Deferred(run_bounded(items, lambda item, _i: executor([item]), ahead))
            return prefetched

        case "batch":
            batches = int(_arg(decorator, 0, 4))

            async def batched(args):
                items = args[0] if args else None
                if not isinstance(items, list) or len(items) <= batches:
                    return await executor(args)
                size = -(-len(items) // batches)
                chunks = [items[i:i + size] for i in range(0, len(items), size)]
                emit('stdout', f"[batch] Splitting {len(items)} elements into {len(chunks)} "
                               f"batches of ~{size} each")

                async def run_chunk(chunk):
                    return await settle(await executor([chunk]))

                async def run_all():
                    results = await asyncio.gather(*(run_chunk(c) for c in chunks))
                    flat = []
                    for result in results:
                        flat.extend(result if isinstance(result, list) else [result])
                    return flat
                return Deferred(run_all())
            return batched

    state.warn(f"Unknown pipeline decorator: #{decorator.name}")
    return executor
