from __future__ import annotations

import dataclasses
import datetime as _dt
import decimal
import enum
import json
import math
import types
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

CIRCULAR_MARKER = "[Circular]"
MAX_SAFE_INTEGER = 2**53 - 1
_PREVIEW_FALLBACK_CHARS = 2_000

_FUNCTION_TYPES = (
    types.FunctionType,
    types.BuiltinFunctionType,
    types.MethodType,
    types.BuiltinMethodType,
    types.MethodWrapperType,
    types.WrapperDescriptorType,
)


@dataclass(frozen=True, slots=True)
class EncodedResult:
    """JSON-compatible rendition of a script return value.

    Example:
        ```python
        encoded = encode_result({"a": 1}, max_chars=50_000)
        assert encoded.value == {"a": 1} and not encoded.truncated
        ```
    """

    value: Any
    truncated: bool = False


def _key_of(key: Any) -> str:
    if isinstance(key, str):
        return key
    if key is None or isinstance(key, (bool, int, float)):
        return json.dumps(key)
    return str(key)


def _tag(kind: str, detail: str) -> str:
    return f"[{kind}: {detail}]"


def _callable_name(value: Any) -> str:
    return getattr(value, "__qualname__", None) or getattr(value, "__name__", None) or "anonymous"


def _encode(value: Any, seen: set[int]) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int) and not isinstance(value, enum.Enum):
        if abs(value) > MAX_SAFE_INTEGER:
            return _tag("BigInt", str(value))
        return int(value)
    if isinstance(value, float):
        if math.isfinite(value):
            return value
        return _tag("Float", repr(value))
    if isinstance(value, enum.Enum):
        return _encode(value.value, seen)
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, (decimal.Decimal, uuid.UUID)):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return _tag("Bytes", f"{len(value)} bytes")
    if isinstance(value, type):
        return _tag("Class", _callable_name(value))
    if isinstance(value, _FUNCTION_TYPES):
        return _tag("Function", _callable_name(value))
    if isinstance(value, types.CoroutineType):
        return _tag("Coroutine", _callable_name(value))
    if isinstance(value, (types.GeneratorType, types.AsyncGeneratorType)):
        return _tag("Generator", _callable_name(value))
    if value is Ellipsis or value is NotImplemented:
        return _tag("Sentinel", repr(value))

    marker = id(value)
    if marker in seen:
        return CIRCULAR_MARKER
    seen.add(marker)

    if isinstance(value, (tuple, frozenset)):
        # CPython shares equal immutable constants (and always ``()``), so only
        # an enclosing occurrence of the same object counts as a reference loop.
        try:
            return [_encode(item, seen) for item in value]
        finally:
            seen.discard(marker)
    if isinstance(value, Mapping):
        return {_key_of(key): _encode(item, seen) for key, item in value.items()}
    if isinstance(value, (list, set)):
        return [_encode(item, seen) for item in value]
    if dataclasses.is_dataclass(value):
        return {
            item.name: _encode(getattr(value, item.name), seen)
            for item in dataclasses.fields(value)
        }
    if isinstance(value, types.SimpleNamespace):
        return {_key_of(key): _encode(item, seen) for key, item in vars(value).items()}
    if callable(value):
        return _tag("Function", _callable_name(value))
    return _tag(type(value).__name__, repr(value)[:200])


def to_jsonable(value: Any) -> Any:
    """Convert a value into a JSON-compatible structure without recursing forever.

    Repeated references to a mutable object render as ``"[Circular]"``;
    tuples and frozensets do so only inside themselves. Values JSON cannot
    carry render as tagged placeholders. Raises when the structure itself
    cannot be walked (for example a hostile ``__iter__`` or excessive nesting).

    Example:
        ```python
        a = {"name": "a"}
        a["self"] = a
        assert to_jsonable(a) == {"name": "a", "self": "[Circular]"}
        ```
    """
    return _encode(value, set())


def safe_serialize(value: Any) -> str:
    """Serialize a value to JSON text using ``to_jsonable``.

    Example:
        ```python
        text = safe_serialize({"n": 2**64})
        ```
    """
    return json.dumps(to_jsonable(value), ensure_ascii=False, allow_nan=False)


def best_effort_preview(value: Any, limit: int = _PREVIEW_FALLBACK_CHARS) -> str:
    """Return a string preview of any value, never raising.

    Example:
        ```python
        preview = best_effort_preview(object())
        ```
    """
    for render in (repr, str, object.__repr__):
        try:
            return render(value)[:limit]
        except Exception:
            continue
    return f"<unprintable {type(value).__name__}>"


def encode_result(value: Any, *, max_chars: int) -> EncodedResult:
    """Encode a script return value, applying the size cap.

    Unwalkable values become an ``_unserializable`` marker and oversized
    values become a truncation wrapper; neither fails the call.

    Example:
        ```python
        encoded = encode_result("x" * 100, max_chars=10)
        assert encoded.truncated and encoded.value["_truncated"] is True
        ```
    """
    try:
        jsonable = to_jsonable(value)
        text = json.dumps(jsonable, ensure_ascii=False, allow_nan=False)
    except Exception:
        return EncodedResult(
            value={"_unserializable": True, "preview": best_effort_preview(value, max_chars)},
        )

    if len(text) <= max_chars:
        return EncodedResult(value=jsonable)
    return EncodedResult(
        value={
            "_truncated": True,
            "originalSize": len(text),
            "preview": text[:max_chars],
            "message": (
                f"Result truncated: serialized size {len(text)} exceeds "
                f"the {max_chars} character limit"
            ),
        },
        truncated=True,
    )
