"""
Overload resolution: runtime type matching and candidate scoring.
"""
from typing import Any, List, Sequence

from lea.lea_datatypes import LeaFunction, LeaTuple, lea_type_name
from lea.lea_errors import NoMatchingOverload, AmbiguousOverload


def is_optional_type(expected: Any) -> bool:
    if isinstance(expected, str):
        return expected.startswith("?")
    if isinstance(expected, dict):
        return bool(expected.get("optional"))
    return False


def matches_type(value: Any, expected: Any) -> bool:
    """True if `value` satisfies the declared type `expected`.

    `expected` is a type name (`"Int"`, `"?String"`), a tuple type
    `{"tuple": [...]}` or a list type `{"list": T}`; a leading `?` or an
    `optional` flag admits null.
    """
    if value is None and is_optional_type(expected):
        return True
    if isinstance(expected, str) and expected.startswith("?"):
        expected = expected[1:]

    if isinstance(expected, dict):
        if "tuple" in expected:
            if not isinstance(value, LeaTuple):
                return False
            types = list(expected["tuple"])
            if len(value.elements) != len(types):
                return False
            return all(matches_type(v, t) for v, t in zip(value.elements, types))
        if "list" in expected:
            if not isinstance(value, list):
                return False
            return all(matches_type(v, expected["list"]) for v in value)
        return False

    return lea_type_name(value) == str(expected).lower()


def format_type(expected: Any) -> str:
    if isinstance(expected, str):
        return expected
    if isinstance(expected, dict):
        prefix = "?" if expected.get("optional") else ""
        if "list" in expected:
            return f"{prefix}[{format_type(expected['list'])}]"
        if "tuple" in expected:
            inner = ", ".join(format_type(t) for t in expected["tuple"])
            return f"{prefix}({inner})"
    return str(expected)


def format_signature(fn: LeaFunction) -> str:
    sig = fn.type_signature
    if sig is not None:
        params = ", ".join(format_type(t) for t in sig.param_types)
        ret = format_type(sig.return_type) if sig.return_type is not None else "?"
        return f"({params}) :> {ret}"
    return "(" + ", ".join(p.name for p in fn.params) + ")"


def score_overload(fn: LeaFunction, args: Sequence[Any]) -> int:
    """Scores `fn` against `args`; -1 means the candidate is excluded."""
    if len(args) < fn.required_params or len(args) > len(fn.params):
        return -1
    sig = fn.type_signature
    if sig is None or not sig.param_types:
        return 0

    score = 1
    for i, arg in enumerate(args):
        if i >= len(sig.param_types):
            continue
        if not matches_type(arg, sig.param_types[i]):
            return -1
        score += 10
    return score


def _describe_args(args: Sequence[Any]) -> str:
    return ", ".join(lea_type_name(a) for a in args)


def _describe_overloads(overloads: List[LeaFunction]) -> str:
    return "\n".join(f"  {format_signature(fn)}" for fn in overloads)


def resolve_overload(overloads: List[LeaFunction], args: Sequence[Any]) -> LeaFunction:
    """Selects the best-scoring overload for `args`."""
    scored = []
    for fn in overloads:
        score = score_overload(fn, args)
        if score >= 0:
            scored.append((score, fn))

    if not scored:
        raise NoMatchingOverload(
            f"No matching overload for arguments ({_describe_args(args)}).\n"
            f"Available overloads:\n{_describe_overloads(overloads)}")

    # Stable sort keeps definition order among equal scores.
    scored.sort(key=lambda t: t[0], reverse=True)
    if len(scored) > 1 and scored[0][0] == scored[1][0]:
        raise AmbiguousOverload(
            f"Ambiguous overload call for arguments ({_describe_args(args)}): "
            f"multiple overloads match equally well.\n"
            f"Available overloads:\n{_describe_overloads(overloads)}")
    return scored[0][1]
