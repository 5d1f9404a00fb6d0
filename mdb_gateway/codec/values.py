"""
Document value model.

A Document is an insertion-ordered ``dict[str, DocumentValue]`` whose values
belong to a closed set of kinds. Code outside the wire codec branches on
``ValueKind`` rather than on wire tag strings.
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from bson import ObjectId

from ..exceptions import CodecError


class ValueKind(str, Enum):
    """Kinds of values a Document may hold."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    NULL = "null"
    DOCUMENT = "document"
    ARRAY = "array"
    OBJECT_ID = "objectId"
    DATETIME = "datetime"

    @property
    def is_extended(self) -> bool:
        """True for kinds the flat wire format cannot carry natively."""
        return self in _EXTENDED_KINDS


_EXTENDED_KINDS = frozenset(
    {ValueKind.DOCUMENT, ValueKind.ARRAY, ValueKind.OBJECT_ID, ValueKind.DATETIME}
)


def kind_of(value: Any, field: str | None = None) -> ValueKind:
    """
    Classify a Document value.

    Args:
        value: Value to classify
        field: Field name, used only for error context

    Returns:
        The value's ValueKind

    Raises:
        CodecError: If the value is outside the modeled set
    """
    # bool is a subclass of int, so it must be tested first
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, int):
        return ValueKind.INTEGER
    if isinstance(value, float):
        return ValueKind.FLOAT
    if isinstance(value, str):
        return ValueKind.STRING
    if value is None:
        return ValueKind.NULL
    if isinstance(value, ObjectId):
        return ValueKind.OBJECT_ID
    if isinstance(value, datetime):
        return ValueKind.DATETIME
    if isinstance(value, Mapping):
        return ValueKind.DOCUMENT
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    raise CodecError(f"Unsupported value type: {type(value).__name__}", field=field)


def check_value(value: Any, field: str | None = None) -> ValueKind:
    """
    Classify a value and every value nested inside it.

    Raises:
        CodecError: If any nested value is outside the modeled set, or a
            nested document has a non-string key
    """
    kind = kind_of(value, field)
    if kind is ValueKind.DOCUMENT:
        for key, item in value.items():
            if not isinstance(key, str):
                raise CodecError("Document keys must be strings", field=field)
            check_value(item, f"{field}.{key}" if field else key)
    elif kind is ValueKind.ARRAY:
        for index, item in enumerate(value):
            check_value(item, f"{field}[{index}]" if field else f"[{index}]")
    return kind


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive datetimes are read as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
