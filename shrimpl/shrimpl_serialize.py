from __future__ import annotations

import json
import re
import tomllib
from typing import Any, Optional
import collections.abc

import yaml

from shrimpl.shrimpl_datatypes import Json


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        try:
            return data.decode(encoding or 'utf-8', errors='replace')
        except LookupError:
            # Unknown charset name in a Content-Type header.
            return data.decode('utf-8', errors='replace')
    return str(data)


def _encoding_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = re.search(r'charset\s*=\s*([^\s;]+)', content_type, re.IGNORECASE)
    if m:
        return m.group(1).strip('"').strip("'")
    return None


def _to_builtin(obj: Any) -> Any:
    # Unwrap Json values and read-only mappings into plain containers
    data = obj.data if isinstance(obj, Json) else obj
    if isinstance(data, (list, tuple)):
        return [_to_builtin(x) for x in data]
    if isinstance(data, collections.abc.Mapping):
        return {str(k): _to_builtin(v) for k, v in data.items()}
    return data


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None,
                  filename: Optional[str] = None) -> Optional[str]:
    """
    Returns a canonical format name among: 'json', 'yaml', 'toml'.
    Uses the file extension or Content-Type first; falls back to simple data sniffing.
    """
    if filename:
        lower = filename.lower()
        if lower.endswith('.json'):
            return 'json'
        if lower.endswith(('.yaml', '.yml')):
            return 'yaml'
        if lower.endswith('.toml'):
            return 'toml'
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'
    if 'toml' in ct:
        return 'toml'

    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
    return None


# --------------------------
# Public API
# --------------------------

class SerializationError(ValueError):
    """Raised when strict deserialization fails."""
    pass


def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None,
                strict: bool = False) -> Any:
    """
    Convert wire or file data (bytes/string) to plain Python structures.
    Supported fmt: 'json', 'yaml', 'toml'. If fmt is None, uses content_type,
    then sniffing. Unparseable or unknown input returns the raw text, unless
    `strict` is set, in which case SerializationError is raised.
    """
    text = _norm_text(data, encoding=_encoding_from_content_type(content_type))
    f = (fmt or detect_format(content_type, text))
    try:
        if f == 'json':
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                if strict:
                    raise
                # Declared JSON but YAML-like content
                return yaml.safe_load(text)
        if f == 'yaml':
            return yaml.safe_load(text)
        if f == 'toml':
            return tomllib.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        if strict:
            raise SerializationError(f"invalid {f} document: {e}") from e
        return text

    if strict:
        raise SerializationError(f"unsupported format: {f!r}")
    return text


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True) -> str:
    """
    Convert a value (plain data or Json) into text.
    - fmt: 'json'. YAML and TOML are read-only here.
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "SerializationError",
]
