"""General Utility Functions."""

from __future__ import annotations

import math
from datetime import date, datetime
from typing import Dict, List, Protocol, Union, runtime_checkable

__all__ = ["convert_to_json_safe"]


JsonSafeType = Union[
    None,
    str,
    int,
    bool,
    float,
    Dict[str, "JsonSafeType"],
    List["JsonSafeType"],
]
"""The set of types that are natively representable in JSON."""


@runtime_checkable
class PydanticLike(Protocol):
    """Protocol for objects that expose a Pydantic-style ``model_dump`` method."""

    def model_dump(self) -> Dict[str, object]: ...  # noqa: E704


def convert_to_json_safe(data: object) -> JsonSafeType:
    """Recursively convert a feature-cache payload to JSON-safe types.

    Handles:
    - ``datetime`` / ``date`` objects -> ISO-format strings
    - ``float`` NaN / Inf -> ``None``
    - Nested dicts, lists and tuples
    - Pydantic models (via ``.model_dump()``)
    """
    if data is None or isinstance(data, (str, int, bool)):
        return data

    if isinstance(data, float):
        return None if math.isnan(data) or math.isinf(data) else data

    # datetime MUST be checked before date because datetime is a subclass of date.
    if isinstance(data, (datetime, date)):
        return data.isoformat()

    if isinstance(data, dict):
        return {str(key): convert_to_json_safe(value) for key, value in data.items()}

    if isinstance(data, (list, tuple)):
        return [convert_to_json_safe(item) for item in data]

    if isinstance(data, PydanticLike):
        return convert_to_json_safe(data.model_dump())

    return str(data)
