"""
Value model for card data rows.

A row maps field names to one of: text, number, boolean, image path or
the MISSING marker. Rows are immutable so a single row can be handed to
the resolver and to scripts without defensive copies.
"""

import math
from collections.abc import Mapping
from typing import Any, Iterator, Optional


class _Missing:
    """Marker for an absent field value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"

    def __reduce__(self):
        return (_Missing, ())


MISSING = _Missing()


class ImagePath(str):
    """A text value naming an image asset, relative to the asset root."""

    def __repr__(self) -> str:
        return f"ImagePath({str.__repr__(self)})"


def normalize_value(value: Any) -> Any:
    """Normalise a raw reader value into the row Value set."""
    if value is None or value is MISSING:
        return MISSING
    if isinstance(value, (bool, ImagePath)):
        return value
    if isinstance(value, (int, float, str)):
        return value
    raise TypeError(f"Unsupported row value type: {type(value).__name__}")


def is_missing(value: Any) -> bool:
    return value is MISSING or value is None


def value_kind(value: Any) -> str:
    """Name of the Value variant a python value belongs to."""
    if is_missing(value):
        return "missing"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, ImagePath):
        return "image"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "text"
    return type(value).__name__


def format_value(value: Any) -> str:
    """
    Stringify a value with a fixed, locale-independent canonical format.

    Booleans become ``true``/``false``, integral numbers have no decimal
    part, floats use the shortest round-tripping digits and never use
    exponent notation below 1e16.
    """
    if is_missing(value):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer() and abs(value) < 1e16:
            return str(int(value))
        text = repr(value)
        if "e" in text and abs(value) < 1e16:
            # repr switches to exponent for small magnitudes
            text = format(value, ".17f").rstrip("0").rstrip(".")
        return text
    return str(value)


class DataRow(Mapping):
    """Ordered, immutable mapping of field name to Value."""

    __slots__ = ("_fields",)

    def __init__(self, fields: Optional[Any] = None, **kwargs):
        items = dict(fields or {})
        items.update(kwargs)
        object.__setattr__(self, "_fields", {str(k): normalize_value(v) for k, v in items.items()})

    def __getitem__(self, key: str) -> Any:
        return self._fields[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __setattr__(self, name, value):
        raise TypeError("DataRow is immutable")

    def __delattr__(self, name):
        raise TypeError("DataRow is immutable")

    def __hash__(self) -> int:
        return hash(tuple(self._fields.items()))

    def __repr__(self) -> str:
        return f"DataRow({self._fields!r})"

    def lookup(self, field: str) -> Any:
        """Return the field value, MISSING when absent."""
        return self._fields.get(field, MISSING)
