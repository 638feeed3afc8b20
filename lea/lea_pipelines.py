"""
Pipeline algebra: stage descriptions, member access and the `Pipeline` global.

Derived pipelines share the closure of the pipeline they come from and never
carry decorators. Set operations compare stages by description, so two
lambdas (or two calls to the same function) count as the same stage.
"""
import uuid
from typing import Any, List

from lea.lea_ast import (
    Identifier, CallExpr, FunctionExpr, PipelineLiteral, BidirectionalPipelineLiteral,
    PipelineStage, ParallelStage, SpreadStage,
)
from lea.lea_datatypes import Scope, Record, Builtin, Pipeline, is_number
from lea.lea_errors import TypeMismatch, LeaError


# Stage names that usually wait on I/O.
_ASYNC_STAGES = ("fetch", "readFile", "writeFile", "delay")

_SUGGESTIONS = {
    "already_parallel": "Already using parallel stages",
    "use_parallel_for_map": "Use #parallel for a concurrent map",
    "fuse_maps": "Fuse multiple maps into a single map",
    "use_prefetch_for_async": "Use #prefetch for I/O-bound stages",
    "use_batch": "Use #batch to process the input in parallel chunks",
    "filter_before_map": "Filter before map to reduce work",
}


def describe_stage(expr) -> str:
    match expr:
        case Identifier(name=name):
            return name
        case CallExpr(callee=Identifier(name=name)):
            return name
        case CallExpr():
            return "call"
        case FunctionExpr():
            return "λ"
        case PipelineLiteral(stages=stages) | BidirectionalPipelineLiteral(stages=stages):
            return f"pipe[{len(stages)}]"
        case _:
            return "expr"


def describe_any_stage(stage) -> str:
    match stage:
        case ParallelStage(branches=branches):
            return f"parallel[{len(branches)}]"
        case SpreadStage(expr=expr):
            return f"spread({describe_stage(expr)})"
        case _:
            return describe_stage(stage.expr)


def stage_kind(stage) -> str:
    match stage:
        case ParallelStage():
            return "parallel"
        case SpreadStage():
            return "spread"
        case _:
            return "stage"


def stage_descriptions(pipeline: Pipeline) -> List[str]:
    return [describe_any_stage(s) for s in pipeline.stages]


def pipelines_equal(a: Pipeline, b: Pipeline) -> bool:
    return stage_descriptions(a) == stage_descriptions(b)


async def stage_to_value(evaluator, stage, closure: Scope) -> Any:
    """Evaluates a plain stage to the callable it names."""
    match stage:
        case ParallelStage():
            raise TypeMismatch("Cannot convert parallel stage to function")
        case SpreadStage():
            raise TypeMismatch("Cannot convert spread stage to function")
    return await evaluator.eval(stage.expr, closure)


def function_to_stage(closure: Scope, fn: Any) -> PipelineStage:
    """Binds `fn` under a fresh synthetic name and returns a stage calling it."""
    name = f"__dynamic_stage_{uuid.uuid4().hex}__"
    closure.define(name, fn)
    return PipelineStage(Identifier(name))


def _require_pipeline(value, operation: str) -> Pipeline:
    if not isinstance(value, Pipeline):
        raise TypeMismatch(f"{operation} requires a pipeline argument")
    return value


def _require_index(value, operation: str) -> int:
    if not is_number(value):
        raise TypeMismatch(f"{operation} requires a number")
    return int(value)


async def pipeline_member(evaluator, pipeline: Pipeline, name: str) -> Any:
    """Resolves `pipeline.name`: a property value or a bound builtin."""
    stages = pipeline.stages

    match name:
        case "length":
            return len(stages)
        case "stages":
            return stage_descriptions(pipeline)
        case "first":
            if not stages:
                return None
            return await stage_to_value(evaluator, stages[0], pipeline.closure)
        case "last":
            if not stages:
                return None
            return await stage_to_value(evaluator, stages[-1], pipeline.closure)

    def is_empty():
        return len(stages) == 0

    def equals(other):
        return isinstance(other, Pipeline) and pipelines_equal(pipeline, other)

    async def at(index, evaluator):
        i = _require_index(index, "at")
        if i < 0 or i >= len(stages):
            return None
        return await stage_to_value(evaluator, stages[i], pipeline.closure)

    def prepend(fn):
        return pipeline.derive((function_to_stage(pipeline.closure, fn),) + stages)

    def append(fn):
        return pipeline.derive(stages + (function_to_stage(pipeline.closure, fn),))

    def reverse():
        return pipeline.derive(tuple(reversed(stages)))

    def slice_(start, end=None):
        lo = _require_index(start, "slice")
        hi = len(stages) if end is None else _require_index(end, "slice")
        return pipeline.derive(stages[lo:hi])

    def without(other):
        names = set(stage_descriptions(_require_pipeline(other, "without")))
        return pipeline.derive(s for s in stages if describe_any_stage(s) not in names)

    def intersection(other):
        names = set(stage_descriptions(_require_pipeline(other, "intersection")))
        return pipeline.derive(s for s in stages if describe_any_stage(s) in names)

    def union(other):
        seen = set()
        combined = []
        for stage in stages + _require_pipeline(other, "union").stages:
            description = describe_any_stage(stage)
            if description not in seen:
                seen.add(description)
                combined.append(stage)
        return pipeline.derive(combined)

    def concat(other):
        return pipeline.derive(stages + _require_pipeline(other, "concat").stages)

    def describe():
        return [
            Record({"index": i, "description": describe_any_stage(s), "kind": stage_kind(s)})
            for i, s in enumerate(stages)
        ]

    def analyze():
        names = [describe_any_stage(s) for s in stages if not isinstance(s, ParallelStage)]
        has_parallel = any(isinstance(s, ParallelStage) for s in stages)
        map_count = names.count("map")
        has_async = any(n in _ASYNC_STAGES for n in names)

        found = []
        if has_parallel:
            found.append("already_parallel")
        if map_count and not has_parallel:
            found.append("use_parallel_for_map")
        if map_count > 1:
            found.append("fuse_maps")
        if has_async:
            found.append("use_prefetch_for_async")
        if len(stages) > 3 and not has_parallel:
            found.append("use_batch")
        if map_count and "filter" in names:
            found.append("filter_before_map")

        emit = evaluator.state.emit
        emit('stdout', f"[analyze] Stages: {' /> '.join(stage_descriptions(pipeline))}")
        for key in found:
            emit('stdout', f"[analyze] {_SUGGESTIONS[key]}")
        if not found:
            emit('stdout', "[analyze] No obvious parallelization opportunities found")
        return Record({
            "suggestions": found,
            "stageCount": len(stages),
            "hasParallelStages": has_parallel,
            "hasAsyncOps": has_async,
            "mapCount": map_count,
        })

    members = {
        "isEmpty": is_empty,
        "equals": equals,
        "at": at,
        "prepend": prepend,
        "append": append,
        "reverse": reverse,
        "slice": slice_,
        "without": without,
        "difference": without,
        "intersection": intersection,
        "union": union,
        "concat": concat,
        "describe": describe,
        "analyze": analyze,
    }
    fn = members.get(name)
    if fn is None:
        raise LeaError(f"Unknown pipeline member: {name}")
    return Builtin(fn, name=f"pipeline.{name}")


def make_pipeline_global(scope: Scope) -> Record:
    """Builds the `Pipeline` record bound in the root scope."""

    def from_list(functions):
        if not isinstance(functions, list):
            raise TypeMismatch("Pipeline.from requires a list of functions")
        return Pipeline([function_to_stage(scope, fn) for fn in functions], scope)

    return Record({
        "identity": Pipeline([PipelineStage(Identifier("__identity__"))], scope),
        "empty": Pipeline([], scope),
        "from": Builtin(from_list, name="Pipeline.from"),
    })
