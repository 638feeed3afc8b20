"""
The Lea runtime: the standard library of builtins and the ProgramRunner that
owns one engine and exposes its synchronous and asynchronous entry points.
"""
import asyncio
import inspect
import json
import math
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import yaml

from lea.lea_ast import (
    LetStmt, CodeblockStmt, FunctionExpr, PipelineLiteral, BidirectionalPipelineLiteral,
)
from lea.lea_datatypes import (
    Scope, Record, LeaTuple, LeaFunction, Builtin, OverloadSet, ReversibleFunction,
    LeaCallable, Deferred, is_number, lea_type_name, is_truthy, values_equal,
)
from lea.lea_decorators import run_bounded, settle
from lea.lea_errors import LeaError, TypeMismatch, DivisionByZero, InvalidReturn, ReturnSignal
from lea.lea_http import http_fetch
from lea.lea_interpreter import EngineState, run_sync
from lea.lea_pipelines import make_pipeline_global, stage_descriptions
from lea.lea_printer import stringify, pformat_source
from lea.lea_serialize import serialize, deserialize, to_lea

__all__ = [
    "StdLib", "ProgramRunner", "ExecutionResult", "ModuleResult",
    "deferred_builtin", "stage_descriptions",
]


def deferred_builtin(func):
    """Marks a coroutine builtin whose every call produces a Deferred value."""
    func._lea_deferred = True
    return func


def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.capitalize() for part in rest)


# Builtins whose Lea name does not follow the camelCase rule.
_RENAMED = {
    'identity': '__identity__',
    'pi': 'PI',
    'e': 'E',
    'tau': 'TAU',
    'infinity': 'INFINITY',
}


def fit_callback_args(fn: Any, values: List[Any]) -> List[Any]:
    """Trims `[item, index, ...]` to what a callback can take."""
    match fn:
        case LeaFunction():
            return values[:max(len(fn.params), 1)]
        case ReversibleFunction():
            return values[:max(len(fn.forward.params), 1)]
        case OverloadSet():
            widest = max((o.required_params for o in fn.overloads), default=1)
            return values[:max(widest, 1)]
        case _:
            return values[:1]


def _num(value, fn_name: str):
    if not is_number(value):
        raise TypeMismatch(f"{fn_name} expects a number, got {lea_type_name(value)}")
    return value


def _seq(value, fn_name: str) -> list:
    if not isinstance(value, list):
        raise TypeMismatch(f"{fn_name} expects a list, got {lea_type_name(value)}")
    return value


def _whole(value):
    if isinstance(value, float) and value.is_integer() and abs(value) < 2 ** 53:
        return int(value)
    return value


def _str(value, fn_name: str) -> str:
    if not isinstance(value, str):
        raise TypeMismatch(f"{fn_name} requires a string, got {lea_type_name(value)}")
    return value


def _real(fn, *args):
    """Applies a math function, answering NaN outside its domain like the host numbers do."""
    try:
        return fn(*args)
    except ValueError:
        if fn in (math.log, math.log10, math.log2) and args[0] == 0:
            return -math.inf
        return math.nan
    except OverflowError:
        return math.inf


def _padding(text: str, width, fill: str) -> str:
    missing = int(width) - len(text)
    if missing <= 0 or not fill:
        return ""
    return (fill * (missing // len(fill) + 1))[:missing]


# Longer inputs are refused before any pattern runs over them.
MAX_REGEX_INPUT = 100_000

_REGEX_FLAGS = {'i': re.IGNORECASE, 'm': re.MULTILINE, 's': re.DOTALL}


def _regex(fn_name: str, text, pattern, flags=None) -> re.Pattern:
    _str(text, fn_name)
    _str(pattern, fn_name)
    if len(text) > MAX_REGEX_INPUT:
        raise LeaError(f"{fn_name}: input string too long ({len(text)} chars, max {MAX_REGEX_INPUT})")
    bits = 0
    for flag in str(flags or ""):
        bits |= _REGEX_FLAGS.get(flag, 0)
    # Named groups are written (?<name>...) in Lea patterns.
    pattern = re.sub(r"\(\?<(?![=!])", "(?P<", pattern)
    try:
        return re.compile(pattern, bits)
    except re.error:
        raise LeaError(f"Invalid regex pattern: {pattern}")


def _match_record(match: re.Match) -> Record:
    return Record({"match": match.group(0), "index": match.start(), "groups": list(match.groups())})


def _expand(template: str, match: re.Match) -> str:
    """Fills `$1`, `$&` and `$$` in a replacement from `match`."""
    def piece(token):
        key = token.group(1)
        if key == "$":
            return "$"
        if key == "&":
            return match.group(0)
        if int(key) <= len(match.groups()):
            return match.group(int(key)) or ""
        return token.group(0)
    return re.sub(r"\$(\$|&|\d{1,2})", piece, template)


def _split_words(text: str, sep: str, seps: str) -> str:
    return re.sub(seps, sep, re.sub(r"([a-z])([A-Z])", rf"\1{sep}\2", text))


class StdLib:
    """Contains Python implementations for the Lea builtins.

    Every `_snake_name` method is registered under its camelCase name.
    """
    def __init__(self, state: EngineState, http_timeout: float = 5.0):
        self.state = state
        self.http_timeout = http_timeout
        # Tasks of the most recent `parallel` call still in flight.
        self.in_flight = set()

    def builtins(self) -> Dict[str, Builtin]:
        table = {}
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                plain = name[1:]
                lea_name = _RENAMED.get(plain, _camel(plain))
                table[lea_name] = Builtin(member, name=lea_name)
        return table

    # --- Core ---
    def _print(self, *args):
        self.state.print_count += 1
        self.state.emit('stdout', " ".join(stringify(a) for a in args))
        return args[0] if args else None

    def _identity(self, value=None):
        return value

    def _to_string(self, value):
        return stringify(value)

    def _type_of(self, value):
        return lea_type_name(value)

    # --- Math ---
    def _sqrt(self, x): return math.sqrt(_num(x, "sqrt"))
    def _abs(self, x): return abs(_num(x, "abs"))
    def _floor(self, x): return math.floor(_num(x, "floor"))
    def _ceil(self, x): return math.ceil(_num(x, "ceil"))

    def _round(self, x):
        # Halves round up, not to even.
        return math.floor(_num(x, "round") + 0.5)

    def _min(self, *args):
        return min(_num(a, "min") for a in args)

    def _max(self, *args):
        return max(_num(a, "max") for a in args)

    def _pow(self, base, exponent):
        return _num(base, "pow") ** _num(exponent, "pow")

    def _sum(self, items):
        return sum(_num(x, "sum") for x in _seq(items, "sum"))

    def _mean(self, items):
        items = _seq(items, "mean")
        if not items:
            return 0
        return _whole(self._sum(items) / len(items))

    def _product(self, items):
        return math.prod(_num(x, "product") for x in _seq(items, "product"))

    def _median(self, items):
        ordered = sorted(_num(x, "median") for x in _seq(items, "median"))
        if not ordered:
            raise LeaError("median requires a non-empty list")
        mid = len(ordered) // 2
        if len(ordered) % 2 == 0:
            return _whole((ordered[mid - 1] + ordered[mid]) / 2)
        return ordered[mid]

    def _variance(self, items):
        values = [_num(x, "variance") for x in _seq(items, "variance")]
        if not values:
            raise LeaError("variance requires a non-empty list")
        centre = sum(values) / len(values)
        return _whole(sum((v - centre) ** 2 for v in values) / len(values))

    def _std_dev(self, items):
        if not _seq(items, "stdDev"):
            raise LeaError("stdDev requires a non-empty list")
        return math.sqrt(self._variance(items))

    def _log(self, x, base=None):
        value = _real(math.log, _num(x, "log"))
        if base is None:
            return value
        divisor = _real(math.log, _num(base, "log"))
        return value / divisor if divisor else math.nan

    def _log10(self, x): return _real(math.log10, _num(x, "log10"))
    def _log2(self, x): return _real(math.log2, _num(x, "log2"))
    def _exp(self, x): return _real(math.exp, _num(x, "exp"))
    def _sin(self, x): return math.sin(_num(x, "sin"))
    def _cos(self, x): return math.cos(_num(x, "cos"))
    def _tan(self, x): return math.tan(_num(x, "tan"))
    def _asin(self, x): return _real(math.asin, _num(x, "asin"))
    def _acos(self, x): return _real(math.acos, _num(x, "acos"))
    def _atan(self, x): return math.atan(_num(x, "atan"))
    def _atan2(self, y, x): return math.atan2(_num(y, "atan2"), _num(x, "atan2"))
    def _sinh(self, x): return _real(math.sinh, _num(x, "sinh"))
    def _cosh(self, x): return _real(math.cosh, _num(x, "cosh"))
    def _tanh(self, x): return math.tanh(_num(x, "tanh"))

    def _sign(self, x):
        x = _num(x, "sign")
        return (x > 0) - (x < 0)

    def _trunc(self, x):
        x = _num(x, "trunc")
        return x if math.isinf(x) or math.isnan(x) else math.trunc(x)

    def _clamp(self, value, low, high):
        return min(max(_num(value, "clamp"), _num(low, "clamp")), _num(high, "clamp"))

    def _lerp(self, a, b, t):
        a, b, t = _num(a, "lerp"), _num(b, "lerp"), _num(t, "lerp")
        return _whole(a + (b - a) * t)

    def _pi(self): return math.pi
    def _e(self): return math.e
    def _tau(self): return math.tau
    def _infinity(self): return math.inf

    # --- Number theory ---
    def _gcd(self, a, b):
        a, b = abs(_num(a, "gcd")), abs(_num(b, "gcd"))
        while b:
            a, b = b, a % b
        return _whole(a)

    def _lcm(self, a, b):
        a, b = abs(_num(a, "lcm")), abs(_num(b, "lcm"))
        if a == 0 or b == 0:
            return 0
        return _whole(a * b / self._gcd(a, b))

    def _is_prime(self, n):
        n = _num(n, "isPrime")
        if n < 2 or n != int(n):
            return False
        n = int(n)
        if n % 2 == 0:
            return n == 2
        return all(n % i for i in range(3, math.isqrt(n) + 1, 2))

    def _factorial(self, n):
        n = _num(n, "factorial")
        if n < 0:
            raise LeaError("factorial requires a non-negative integer")
        return math.factorial(int(n))

    def _fibonacci(self, n):
        n = _num(n, "fibonacci")
        if n < 0:
            raise LeaError("fibonacci requires a non-negative integer")
        a, b = 0, 1
        for _ in range(int(n)):
            a, b = b, a + b
        return a

    def _is_even(self, n):
        return _num(n, "isEven") % 2 == 0

    def _is_odd(self, n):
        return _num(n, "isOdd") % 2 != 0

    def _mod(self, a, b):
        # Result takes the sign of the divisor.
        a, b = _num(a, "mod"), _num(b, "mod")
        if b == 0:
            raise DivisionByZero("Modulo by zero")
        return a % b

    def _div_int(self, a, b):
        a, b = _num(a, "divInt"), _num(b, "divInt")
        if b == 0:
            raise DivisionByZero("Division by zero")
        if isinstance(a, int) and isinstance(b, int):
            q = abs(a) // abs(b)
            return q if (a < 0) == (b < 0) else -q
        return math.trunc(a / b)

    # --- Lists ---
    def _length(self, value):
        if isinstance(value, (list, str)):
            return len(value)
        raise TypeMismatch("length requires a list or string")

    def _head(self, items):
        items = _seq(items, "head")
        if not items:
            raise LeaError("head of empty list")
        return items[0]

    def _tail(self, items):
        return _seq(items, "tail")[1:]

    def _last(self, items):
        items = _seq(items, "last")
        return items[-1] if items else None

    def _push(self, items, value):
        return _seq(items, "push") + [value]

    def _concat(self, a, b):
        return _seq(a, "concat") + _seq(b, "concat")

    def _reverse(self, items):
        if isinstance(items, str):
            return items[::-1]
        return list(reversed(_seq(items, "reverse")))

    def _is_empty(self, value):
        if isinstance(value, (list, str)):
            return len(value) == 0
        return value is None

    def _range(self, start, end=None):
        if end is None:
            start, end = 0, start
        return list(range(int(_num(start, "range")), math.ceil(_num(end, "range"))))

    def _take(self, items, n):
        return _seq(items, "take")[:max(int(_num(n, "take")), 0)]

    def _drop(self, items, n):
        return _seq(items, "drop")[max(int(_num(n, "drop")), 0):]

    def _zip(self, lists):
        lists = [_seq(l, "zip") for l in _seq(lists, "zip")]
        return [list(row) for row in zip(*lists)]

    def _fst(self, value):
        match value:
            case LeaTuple():
                return value.elements[0] if value.elements else None
            case list():
                return value[0] if value else None
        raise TypeMismatch("fst expects a tuple or list")

    def _snd(self, value):
        match value:
            case LeaTuple():
                return value.elements[1] if len(value.elements) > 1 else None
            case list():
                return value[1] if len(value) > 1 else None
        raise TypeMismatch("snd expects a tuple or list")

    def _at(self, items, index):
        items = _seq(items, "at")
        i = _num(index, "at")
        if i < 0 or i >= len(items):
            raise LeaError(f"Index {stringify(i)} out of bounds for list of length {len(items)}")
        return items[int(i)]

    def _flatten(self, items, depth=1):
        def flat(seq, levels):
            if levels <= 0:
                return list(seq)
            out = []
            for item in seq:
                if isinstance(item, list):
                    out.extend(flat(item, levels - 1))
                else:
                    out.append(item)
            return out
        return flat(_seq(items, "flatten"), _num(depth, "flatten"))

    def _intersperse(self, items, separator):
        out = []
        for i, item in enumerate(_seq(items, "intersperse")):
            if i:
                out.append(separator)
            out.append(item)
        return out

    def _enumerate(self, items, start=0):
        start = _num(start, "enumerate")
        return [[start + i, item] for i, item in enumerate(_seq(items, "enumerate"))]

    def _transpose(self, rows):
        rows = [_seq(r, "transpose") for r in _seq(rows, "transpose")]
        width = max((len(r) for r in rows), default=0)
        return [[r[c] if c < len(r) else None for r in rows] for c in range(width)]

    async def _sort(self, items, comparator=None, *, evaluator):
        items = list(_seq(items, "sort"))
        if comparator is None:
            return sorted(items, key=lambda v: (0, v, "") if is_number(v) else (1, 0, stringify(v)))

        async def compare(a, b):
            result = await evaluator.call(comparator, [a, b])
            if not is_number(result):
                raise TypeMismatch("sort comparator must return a number")
            return result

        # Merge sort, so the comparator can be awaited.
        async def merge_sort(seq):
            if len(seq) <= 1:
                return seq
            mid = len(seq) // 2
            left = await merge_sort(seq[:mid])
            right = await merge_sort(seq[mid:])
            out = []
            i = j = 0
            while i < len(left) and j < len(right):
                if await compare(right[j], left[i]) < 0:
                    out.append(right[j])
                    j += 1
                else:
                    out.append(left[i])
                    i += 1
            return out + left[i:] + right[j:]

        return await merge_sort(items)

    # --- Higher-order ---
    async def _map(self, items, fn, *, evaluator):
        return [await evaluator.call(fn, fit_callback_args(fn, [item, i]))
                for i, item in enumerate(_seq(items, "map"))]

    async def _filter(self, items, fn, *, evaluator):
        kept = []
        for i, item in enumerate(_seq(items, "filter")):
            if is_truthy(await evaluator.call(fn, fit_callback_args(fn, [item, i]))):
                kept.append(item)
        return kept

    async def _reduce(self, items, initial, fn, *, evaluator):
        acc = initial
        for i, item in enumerate(_seq(items, "reduce")):
            acc = await evaluator.call(fn, fit_callback_args(fn, [acc, item, i]))
        return acc

    async def _find(self, items, fn, *, evaluator):
        for i, item in enumerate(_seq(items, "find")):
            if is_truthy(await evaluator.call(fn, fit_callback_args(fn, [item, i]))):
                return item
        return None

    async def _some(self, items, fn, *, evaluator):
        return await self._find_index(items, fn, evaluator=evaluator) is not None

    async def _every(self, items, fn, *, evaluator):
        for i, item in enumerate(_seq(items, "every")):
            if not is_truthy(await evaluator.call(fn, fit_callback_args(fn, [item, i]))):
                return False
        return True

    async def _find_index(self, items, fn, *, evaluator):
        for i, item in enumerate(_seq(items, "findIndex")):
            if is_truthy(await evaluator.call(fn, fit_callback_args(fn, [item, i]))):
                return i
        return None

    async def _partition(self, items, fn, *, evaluator):
        kept, rest = [], []
        for item in _seq(items, "partition"):
            if is_truthy(await evaluator.call(fn, [item])):
                kept.append(item)
            else:
                rest.append(item)
        return [kept, rest]

    async def _group_by(self, items, fn, *, evaluator):
        groups: Dict[str, list] = {}
        for i, item in enumerate(_seq(items, "groupBy")):
            key = stringify(await evaluator.call(fn, fit_callback_args(fn, [item, i])))
            groups.setdefault(key, []).append(item)
        return Record(groups)

    async def _flat_map(self, items, fn, *, evaluator):
        out = []
        for i, item in enumerate(_seq(items, "flatMap")):
            mapped = await evaluator.call(fn, fit_callback_args(fn, [item, i]))
            if isinstance(mapped, list):
                out.extend(mapped)
            else:
                out.append(mapped)
        return out

    async def _take_while(self, items, fn, *, evaluator):
        items = _seq(items, "takeWhile")
        for i, item in enumerate(items):
            if not is_truthy(await evaluator.call(fn, fit_callback_args(fn, [item, i]))):
                return items[:i]
        return list(items)

    async def _drop_while(self, items, fn, *, evaluator):
        items = _seq(items, "dropWhile")
        for i, item in enumerate(items):
            if not is_truthy(await evaluator.call(fn, fit_callback_args(fn, [item, i]))):
                return items[i:]
        return []

    async def _count(self, items, fn=None, *, evaluator):
        items = _seq(items, "count")
        if fn is None:
            return len(items)
        total = 0
        for i, item in enumerate(items):
            if is_truthy(await evaluator.call(fn, fit_callback_args(fn, [item, i]))):
                total += 1
        return total

    # --- Strings ---
    def _split(self, text, separator=""):
        if not isinstance(text, str):
            raise TypeMismatch("split requires a string as first argument")
        if separator == "":
            return list(text)
        return text.split(separator)

    def _join(self, items, separator=""):
        return separator.join(stringify(v) for v in _seq(items, "join"))

    def _trim(self, text):
        return str(text).strip()

    def _to_upper_case(self, text):
        return str(text).upper()

    def _to_lower_case(self, text):
        return str(text).lower()

    def _includes(self, container, item):
        if isinstance(container, str):
            return isinstance(item, str) and item in container
        return any(values_equal(v, item) for v in _seq(container, "includes"))

    def _lines(self, text):
        return _str(text, "lines").split("\n")

    def _chars(self, text):
        return list(_str(text, "chars"))

    def _char_at(self, text, index):
        text, i = _str(text, "charAt"), _num(index, "charAt")
        return text[int(i)] if 0 <= i < len(text) else ""

    def _index_of(self, text, search):
        return _str(text, "indexOf").find(_str(search, "indexOf"))

    def _slice(self, value, start, end=None):
        if not isinstance(value, (str, list)):
            raise TypeMismatch("slice requires a string or list")
        lo = int(_num(start, "slice"))
        hi = None if end is None else int(_num(end, "slice"))
        return value[lo:hi]

    def _repeat(self, text, times):
        return _str(text, "repeat") * max(int(_num(times, "repeat")), 0)

    def _pad_start(self, text, width, fill=" "):
        text = _str(text, "padStart")
        return _padding(text, _num(width, "padStart"), str(fill)) + text

    def _pad_end(self, text, width, fill=" "):
        text = _str(text, "padEnd")
        return text + _padding(text, _num(width, "padEnd"), str(fill))

    def _trim_start(self, text):
        return _str(text, "trimStart").lstrip()

    def _trim_end(self, text):
        return _str(text, "trimEnd").rstrip()

    def _replace(self, text, search, replacement):
        return _str(text, "replace").replace(_str(search, "replace"), _str(replacement, "replace"))

    def _replace_first(self, text, search, replacement):
        return _str(text, "replaceFirst").replace(
            _str(search, "replaceFirst"), _str(replacement, "replaceFirst"), 1)

    def _starts_with(self, text, prefix):
        return _str(text, "startsWith").startswith(_str(prefix, "startsWith"))

    def _ends_with(self, text, suffix):
        return _str(text, "endsWith").endswith(_str(suffix, "endsWith"))

    def _regex_test(self, text, pattern, flags=None):
        return _regex("regexTest", text, pattern, flags).search(text) is not None

    def _regex_match(self, text, pattern, flags=None):
        found = _regex("regexMatch", text, pattern, flags).search(text)
        return _match_record(found) if found else None

    def _regex_match_all(self, text, pattern, flags=None):
        return [_match_record(m) for m in _regex("regexMatchAll", text, pattern, flags).finditer(text)]

    def _regex_replace(self, text, pattern, replacement, flags="g"):
        regex = _regex("regexReplace", text, pattern, flags)
        _str(replacement, "regexReplace")
        count = 0 if "g" in str(flags or "") else 1
        return regex.sub(lambda m: _expand(replacement, m), text, count=count)

    def _regex_split(self, text, pattern, flags=None):
        return _regex("regexSplit", text, pattern, flags).split(text)

    def _to_camel_case(self, text):
        joined = re.sub(r"[-_\s]+(.)?", lambda m: (m.group(1) or "").upper(), _str(text, "toCamelCase"))
        return joined[:1].lower() + joined[1:] if joined[:1].isupper() else joined

    def _to_pascal_case(self, text):
        joined = re.sub(r"[-_\s]+(.)?", lambda m: (m.group(1) or "").upper(), _str(text, "toPascalCase"))
        return joined[:1].upper() + joined[1:]

    def _to_snake_case(self, text):
        return _split_words(_str(text, "toSnakeCase"), "_", r"[-\s]+").lower()

    def _to_kebab_case(self, text):
        return _split_words(_str(text, "toKebabCase"), "-", r"[_\s]+").lower()

    def _to_constant_case(self, text):
        return _split_words(_str(text, "toConstantCase"), "_", r"[-\s]+").upper()

    def _capitalize(self, text):
        text = _str(text, "capitalize")
        return text[:1].upper() + text[1:]

    def _title_case(self, text):
        return re.sub(r"\b\w", lambda m: m.group(0).upper(), _str(text, "titleCase"), flags=re.ASCII)

    # --- Environment ---
    def _now(self):
        return int(time.time() * 1000)

    def _get_env(self, name):
        return os.environ.get(_str(name, "getEnv"))

    # --- Serialisation ---
    def _to_json(self, value):
        return serialize(value, fmt='json', pretty=False)

    def _pretty_json(self, value):
        return serialize(value, fmt='json', pretty=True)

    def _parse_json(self, text):
        try:
            return to_lea(json.loads(text))
        except (json.JSONDecodeError, TypeError) as e:
            raise LeaError(f"parseJson: invalid JSON: {e}")

    def _to_yaml(self, value):
        return serialize(value, fmt='yaml')

    def _parse_yaml(self, text):
        try:
            return to_lea(yaml.safe_load(text))
        except yaml.YAMLError as e:
            raise LeaError(f"parseYaml: invalid YAML: {e}")

    # --- Concurrency ---
    @deferred_builtin
    async def _delay(self, ms, value=None):
        await asyncio.sleep(_num(ms, "delay") / 1000)
        return value

    @deferred_builtin
    async def _parallel(self, items, fn, options=None, *, evaluator):
        """Maps `fn` over `items` concurrently, with at most `limit` calls in flight."""
        limit = None
        if isinstance(options, Record) and options.fields.get('limit') is not None:
            limit = int(_num(options.fields['limit'], "parallel"))
        self.in_flight = set()

        async def worker(item, index):
            return await evaluator.call(fn, fit_callback_args(fn, [item, index]))

        return await run_bounded(_seq(items, "parallel"), worker, limit, running=self.in_flight)

    @deferred_builtin
    async def _race(self, thunks, *, evaluator):
        async def run(thunk):
            return await settle(await evaluator.call(thunk, []))

        tasks = [asyncio.ensure_future(run(t)) for t in _seq(thunks, "race")]
        if not tasks:
            raise LeaError("race requires at least one function")
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        return next(iter(done)).result()

    async def _then(self, value, fn, *, evaluator):
        if isinstance(value, Deferred):
            async_evaluator = self.state.async_evaluator
            return value.then(lambda v: async_evaluator.call(fn, [v]))
        return await evaluator.call(fn, [value])

    # --- IO ---
    @deferred_builtin
    async def _fetch(self, url, options=None):
        return await http_fetch(url, config={'timeout': self.http_timeout}, options=options)


# ===================================================================
# Program execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a program execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and 'line' in self.error_token:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


@dataclass
class ModuleResult:
    """What running a program as a module left behind."""
    scope: Scope
    bound: List[str]
    exports: Dict[str, Any]


async def _top_level(coro):
    try:
        return await coro
    except ReturnSignal:
        raise InvalidReturn("'return' used outside of a function body")


def _has_export(decorators) -> bool:
    return any(d.name == "export" for d in decorators or ())


class ProgramRunner:
    """Executes Lea programs against one independent engine."""

    def __init__(self, load_stdlib: bool = True, http_timeout: Optional[float] = None):
        self.load_stdlib = load_stdlib
        if http_timeout is None:
            http_timeout = float(os.environ.get("LEA_HTTP_TIMEOUT", 5.0))
        self.http_timeout = http_timeout
        self.reset()

    def reset(self):
        """Discards every binding, registry and cache."""
        self.state = EngineState()
        self.root_scope = self.state.globals
        self.stdlib = StdLib(self.state, http_timeout=self.http_timeout)
        table = self.stdlib.builtins()
        if self.load_stdlib:
            for name, builtin in table.items():
                self.root_scope.define(name, builtin)
        else:
            # Pipeline.identity refers to it by name.
            self.root_scope.define('__identity__', table['__identity__'])
        self.root_scope.define('Pipeline', make_pipeline_global(self.root_scope))

    @property
    def side_effects(self) -> List[Dict]:
        return self.state.side_effects

    def _scope(self, scope: Optional[Scope]) -> Scope:
        return self.root_scope if scope is None else scope

    # --- Synchronous entry points ---
    def evaluate(self, program) -> Any:
        result = None
        for stmt in program.statements:
            result = self.evaluate_statement(stmt)
        return result

    def evaluate_statement(self, stmt, scope: Optional[Scope] = None) -> Any:
        evaluator = self.state.sync_evaluator
        return run_sync(_top_level(evaluator.exec_stmt(stmt, self._scope(scope))))

    def evaluate_expression(self, expr, scope: Optional[Scope] = None) -> Any:
        evaluator = self.state.sync_evaluator
        return run_sync(_top_level(evaluator.eval(expr, self._scope(scope))))

    # --- Asynchronous entry points ---
    async def evaluate_async(self, program) -> Any:
        result = None
        for stmt in program.statements:
            result = await self.evaluate_statement_async(stmt)
        return result

    async def evaluate_statement_async(self, stmt, scope: Optional[Scope] = None) -> Any:
        evaluator = self.state.async_evaluator
        value = await _top_level(evaluator.exec_stmt(stmt, self._scope(scope)))
        return await settle(value)

    async def evaluate_expression_async(self, expr, scope: Optional[Scope] = None) -> Any:
        evaluator = self.state.async_evaluator
        value = await _top_level(evaluator.eval(expr, self._scope(scope)))
        return await settle(value)

    # --- Modules ---
    def exported_names(self, program) -> List[str]:
        """Names a program exports, found without running it."""
        names = []

        def visit(statements):
            for stmt in statements:
                match stmt:
                    case CodeblockStmt(statements=inner):
                        visit(inner)
                    case LetStmt(name=name, value=value) if name is not None:
                        marked = _has_export(stmt.decorators)
                        if isinstance(value, (FunctionExpr, PipelineLiteral, BidirectionalPipelineLiteral)):
                            marked = marked or _has_export(value.decorators)
                        if marked and name not in names:
                            names.append(name)

        visit(program.statements)
        return names

    def _collect_module(self, program, scope: Scope) -> ModuleResult:
        bound = scope.local_names()
        exports = {}
        for name in self.exported_names(program):
            if scope.has_local(name):
                exports[name] = scope.get(name)
        for name in bound:
            value = scope.get(name)
            if isinstance(value, LeaCallable) and value.has_decorator("export"):
                exports.setdefault(name, value)
        return ModuleResult(scope=scope, bound=bound, exports=exports)

    def run_module(self, program, scope: Optional[Scope] = None) -> ModuleResult:
        """Runs `program` in its own scope and reports what it bound and exported."""
        module_scope = Scope(parent=self.root_scope) if scope is None else scope
        for stmt in program.statements:
            self.evaluate_statement(stmt, module_scope)
        return self._collect_module(program, module_scope)

    async def run_module_async(self, program, scope: Optional[Scope] = None) -> ModuleResult:
        module_scope = Scope(parent=self.root_scope) if scope is None else scope
        for stmt in program.statements:
            await self.evaluate_statement_async(stmt, module_scope)
        return self._collect_module(program, module_scope)

    # --- Script-style runner ---
    def _format_runtime_error(self, e) -> tuple[str, Optional[dict]]:
        match e:
            case LeaError():
                msg = f"{type(e).__name__}: {e.message}"
            case TypeError():
                stack = getattr(e, 'lea_stack', None) or []
                name = stack[-1] if stack else None
                msg = "TypeError: invalid-args" + (f" in ({name})" if name else "")
                msg = f"{msg}\n{e}"
            case _:
                msg = f"InternalError: {e}"

        token = None
        loc = getattr(e, 'loc', None)
        if loc and isinstance(loc, dict):
            line = loc.get('line')
            col = loc.get('col')
            token = {'line': line, 'col': col}
            if line is not None and col is not None:
                msg = f"{msg}\n(line {line}, col {col})"
            offender = getattr(e, 'node', None)
            if offender is not None:
                msg = f"{msg}\nAt node {type(offender).__name__}"

        stack = getattr(e, 'lea_stack', None)
        if stack:
            msg = f"{msg}\nLea stacktrace: " + " ".join(f"({name})" for name in stack)
        return msg, token

    async def handle_program(self, program) -> ExecutionResult:
        """The main entry point to execute a program and collect its output."""
        self.state.side_effects.clear()
        try:
            value = await self.evaluate_async(program)
        except Exception as e:
            msg, token = self._format_runtime_error(e)
            self.state.emit('stderr', msg)
            return ExecutionResult(
                status='error',
                error_message=msg,
                error_token=token,
                side_effects=list(self.state.side_effects),
            )
        return ExecutionResult(status='success', value=value, side_effects=list(self.state.side_effects))

    def describe(self, value) -> str:
        return pformat_source(value)
