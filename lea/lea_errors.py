"""
Error taxonomy for the Lea evaluator.

Every runtime failure raised by the engine derives from LeaError. Where a
Python builtin exception describes the same failure, the Lea error also
derives from it so host code can catch either.
"""
from typing import Any, Optional


class LeaError(Exception):
    """Base class for all errors raised by the Lea engine."""
    def __init__(self, message: str, node: Any = None):
        super().__init__(message)
        self.message = message
        self.node = node

    @property
    def loc(self) -> Optional[dict]:
        return getattr(self.node, 'loc', None) if self.node is not None else None

    def __str__(self) -> str:
        return self.message


class UndefinedVariable(LeaError, NameError):
    def __init__(self, name: str, node: Any = None):
        super().__init__(f"Undefined variable: {name}", node)
        self.name = name


class ImmutableReassignment(LeaError):
    def __init__(self, name: str, node: Any = None):
        super().__init__(f"Cannot reassign immutable variable: {name}", node)
        self.name = name


class TypeMismatch(LeaError, TypeError):
    pass


class DivisionByZero(LeaError, ZeroDivisionError):
    pass


class InvalidIndexOperation(LeaError, IndexError):
    pass


class PlaceholderOutsidePipe(LeaError):
    pass


class RecordFieldMissing(LeaError, KeyError):
    def __init__(self, field: str, node: Any = None):
        super().__init__(f"Record has no field '{field}'", node)
        self.field = field

    # KeyError quotes its argument; keep the plain message.
    def __str__(self) -> str:
        return self.message


class PipeTargetNotCallable(LeaError, TypeError):
    pass


class UndefinedContext(LeaError, NameError):
    def __init__(self, name: str, node: Any = None):
        super().__init__(f"Context '{name}' is not defined", node)
        self.name = name


class NotReversible(LeaError):
    pass


class NoMatchingOverload(LeaError, TypeError):
    pass


class AmbiguousOverload(LeaError, TypeError):
    pass


class TimeoutExceeded(LeaError, TimeoutError):
    pass


class InvalidReturn(LeaError):
    pass


class AwaitOutsideAsync(LeaError):
    pass


class NoMatchingCase(LeaError):
    pass


class ValidationError(TypeMismatch):
    pass


class ReturnSignal(BaseException):
    """Control signal for `return`; caught only at a function-invocation boundary."""
    def __init__(self, value: Any):
        super().__init__("return")
        self.value = value


__all__ = [
    "LeaError", "UndefinedVariable", "ImmutableReassignment", "TypeMismatch",
    "DivisionByZero", "InvalidIndexOperation", "PlaceholderOutsidePipe",
    "RecordFieldMissing", "PipeTargetNotCallable", "UndefinedContext",
    "NotReversible", "NoMatchingOverload", "AmbiguousOverload",
    "TimeoutExceeded", "InvalidReturn", "AwaitOutsideAsync", "NoMatchingCase",
    "ValidationError", "ReturnSignal",
]
