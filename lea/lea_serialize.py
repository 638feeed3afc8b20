"""
JSON and YAML conversion between wire data and Lea values.

Used by the serialisation builtins, by `fetch` when decoding response bodies,
and by the CLI when loading program documents.
"""
import collections.abc
import json
import re
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from lea.lea_datatypes import Record, LeaTuple, ParallelResult, lea_type_name
from lea.lea_errors import TypeMismatch

FORMATS = ('json', 'yaml')

_CHARSET = re.compile(r'charset\s*=\s*["\']?([\w.:-]+)', re.IGNORECASE)


def _charset(content_type: Optional[str]) -> Optional[str]:
    found = _CHARSET.search(content_type or "")
    return found.group(1) if found else None


def _as_text(data: Union[bytes, bytearray, str], charset: Optional[str]) -> str:
    if isinstance(data, str):
        return data
    if not isinstance(data, (bytes, bytearray)):
        return str(data)
    try:
        return bytes(data).decode(charset or 'utf-8', errors='replace')
    except LookupError:
        # Unknown charset label
        return bytes(data).decode('utf-8', errors='replace')


def to_lea(obj: Any) -> Any:
    """Converts parsed JSON/YAML data into Lea values (mappings become records)."""
    if isinstance(obj, list):
        return [to_lea(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return Record({str(k): to_lea(v) for k, v in obj.items()})
    return obj


def from_lea(value: Any) -> Any:
    """Converts a Lea value into plain data for JSON/YAML output."""
    match value:
        case None | bool() | int() | float() | str():
            return value
        case list():
            return [from_lea(v) for v in value]
        case ParallelResult():
            return [from_lea(v) for v in value.values]
        case LeaTuple():
            return [from_lea(v) for v in value.elements]
        case Record():
            return {k: from_lea(v) for k, v in value.fields.items()}
        case _:
            raise TypeMismatch(f"Cannot serialize a value of type {lea_type_name(value)}")


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """Returns 'json', 'yaml' or None.

    The media type decides when it names a format; otherwise a body that
    opens with a bracket or brace is taken to be JSON.
    """
    media = (content_type or "").lower()
    for name in FORMATS:
        if name in media:
            return name
    if data_hint is not None and data_hint.lstrip()[:1] in ('{', '['):
        return 'json'
    return None


def _load_yaml(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def deserialize(data: Union[bytes, bytearray, str], *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Decodes wire data into plain Python structures.

    `fmt` wins over `content_type`, which wins over sniffing the text. Text
    that matches no format, or fails to parse, comes back unchanged.
    """
    text = _as_text(data, _charset(content_type))
    chosen = fmt or detect_format(content_type, text)
    if chosen == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # Mislabelled YAML still loads
            return _load_yaml(text)
    if chosen == 'yaml':
        return _load_yaml(text)
    return text


def serialize(value: Any, *, fmt: str, pretty: bool = True) -> str:
    """Renders a Lea value as JSON or YAML text."""
    plain = from_lea(value)
    match (fmt or '').lower():
        case 'json' if pretty:
            return json.dumps(plain, ensure_ascii=False, indent=2)
        case 'json':
            return json.dumps(plain, ensure_ascii=False, separators=(',', ':'))
        case 'yaml':
            return yaml.safe_dump(plain, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def load_document(path: Union[str, Path]) -> Any:
    """Reads a JSON or YAML file, choosing the format from its extension."""
    p = Path(path)
    fmt = 'yaml' if p.suffix.lower() in ('.yaml', '.yml') else 'json'
    return deserialize(p.read_text(encoding='utf-8'), fmt=fmt)


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "to_lea",
    "from_lea",
    "load_document",
]
