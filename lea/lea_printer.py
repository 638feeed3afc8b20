"""
Renders Lea values as text.

`Printer.pformat` is what `print`, `++`, template strings and the CLI use;
`pformat_source` quotes strings so the result reads as Lea source.
"""
import math

from lea.lea_datatypes import (
    Record, LeaTuple, ParallelResult, LeaFunction, Builtin, OverloadSet,
    ReversibleFunction, Pipeline, BidirectionalPipeline, Deferred,
)


def format_number(value) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
    return str(value)


class Printer:
    """Formats Lea runtime values."""

    def __init__(self, quote_strings=False):
        self.quote_strings = quote_strings
        self._handlers = self._create_handlers()

    def pformat(self, obj) -> str:
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        # Subclasses of the value types
        for cls, handler in self._handlers.items():
            if isinstance(obj, cls) and cls not in (int, bool):
                return handler
        return lambda o: repr(o)

    def _create_handlers(self):
        return {
            type(None): self._pformat_none,
            bool: self._pformat_bool,
            int: self._pformat_number,
            float: self._pformat_number,
            str: self._pformat_str,
            list: self._pformat_list,
            ParallelResult: self._pformat_parallel,
            LeaTuple: self._pformat_tuple,
            Record: self._pformat_record,
            Pipeline: self._pformat_pipeline,
            BidirectionalPipeline: self._pformat_pipeline,
            Deferred: self._pformat_deferred,
            ReversibleFunction: self._pformat_reversible,
            LeaFunction: self._pformat_function,
            Builtin: self._pformat_function,
            OverloadSet: self._pformat_function,
        }

    def _pformat_none(self, obj):
        return "null"

    def _pformat_bool(self, obj):
        return "true" if obj else "false"

    def _pformat_number(self, obj):
        return format_number(obj)

    def _pformat_str(self, obj):
        if self.quote_strings:
            escaped = obj.replace("\\", "\\\\").replace('"', '\\"')
            return f'"{escaped}"'
        return obj

    def _pformat_list(self, obj):
        return "[" + ", ".join(self.pformat(v) for v in obj) + "]"

    def _pformat_parallel(self, obj):
        return self._pformat_list(obj.values)

    def _pformat_tuple(self, obj):
        return "(" + ", ".join(self.pformat(v) for v in obj.elements) + ")"

    def _pformat_record(self, obj):
        entries = ", ".join(f"{k}: {self.pformat(v)}" for k, v in obj.fields.items())
        return "{ " + entries + " }"

    def _pformat_pipeline(self, obj):
        return f"<{obj.kind}[{len(obj.stages)}]>"

    def _pformat_deferred(self, obj):
        return "<promise>"

    def _pformat_reversible(self, obj):
        return "<reversible_function>"

    def _pformat_function(self, obj):
        return "<function>"


_printer = Printer()
_source_printer = Printer(quote_strings=True)


def stringify(value) -> str:
    """Renders a value the way `++` and `print` do."""
    return _printer.pformat(value)


def pformat_source(value) -> str:
    return _source_printer.pformat(value)
