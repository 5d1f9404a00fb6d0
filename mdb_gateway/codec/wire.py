"""
Wire record codec.

Converts between Documents and the flat wire records exchanged with the
constrained client. A wire record only carries strings, integers and null;
every field holding another kind gets a sidecar ``<field>__type`` entry
naming its type tag, and its primary value holds a serialized form:

    ObjectId  -> 24 character hex string       (tag "ObjectId")
    datetime  -> integer seconds since epoch   (tag "Date")
    dict      -> relaxed Extended JSON string  (tag "Document")
    list      -> relaxed Extended JSON string  (tag "Array")

Untagged values are sniffed when decoding, so the encoder also tags strings
that would sniff back as something else (tag "String"). The sidecar
convention is confined to this module.
"""

import calendar
import json
import logging
import math
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from bson import ObjectId
from bson import json_util
from bson.errors import InvalidId
from bson.json_util import JSONMode, JSONOptions

from ..constants import (
    MAX_WIRE_DEPTH,
    TAG_ALIASES,
    TAG_ARRAY,
    TAG_DATETIME,
    TAG_DOCUMENT,
    TAG_OBJECT_ID,
    TAG_STRING,
    TYPE_TAG_SUFFIX,
)
from ..exceptions import CodecError
from .values import ValueKind, as_utc, check_value

logger = logging.getLogger(__name__)

WireRecord = dict[str, Any]

JSON_OPTIONS = JSONOptions(json_mode=JSONMode.RELAXED, tz_aware=True, tzinfo=timezone.utc)

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")
_DECIMAL_RE = re.compile(r"[+-]?(?:[0-9]+\.[0-9]*|\.[0-9]+)")

# Extended JSON wrappers revived when parsing serialized documents. Other
# "$"-keys (e.g. "$regex" inside a filter) stay plain dicts.
_REVIVED_WRAPPERS = frozenset({"$oid", "$date"})


def tag_key(field: str) -> str:
    """Return the sidecar key holding ``field``'s type tag."""
    return f"{field}{TYPE_TAG_SUFFIX}"


def is_tag_key(key: str) -> bool:
    return key.endswith(TYPE_TAG_SUFFIX)


# ============================================================================
# SCALAR HELPERS
# ============================================================================


def sniff(raw: str) -> Any:
    """
    Best-effort typing of an untagged wire string.

    "true"/"false" become booleans, integer strings become ints, decimal
    strings become floats, anything else stays a string. Lossy for values
    such as zero-padded codes ("000123" -> 123).
    """
    if raw == "true":
        return True
    if raw == "false":
        return False
    if _INTEGER_RE.fullmatch(raw):
        return int(raw)
    if _DECIMAL_RE.fullmatch(raw):
        return float(raw)
    return raw


def format_float(value: float, field: str | None = None) -> str:
    """
    Render a float as a plain decimal string that always contains a '.'.

    Exponent notation is expanded so the result matches the decimal grammar
    ``sniff`` recognizes.
    """
    if not math.isfinite(value):
        raise CodecError(f"Cannot encode non-finite float {value!r}", field=field)
    text = format(Decimal(repr(value)), "f")
    if "." not in text:
        text += ".0"
    return text


def datetime_to_epoch(value: datetime) -> int:
    """Seconds since epoch, sub-second precision truncated."""
    return calendar.timegm(as_utc(value).utctimetuple())


def epoch_to_datetime(seconds: int, field: str | None = None) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise CodecError(f"Epoch value {seconds} is out of range", field=field) from e


def dumps_extended(value: Any) -> str:
    """Serialize a nested document or array as compact relaxed Extended JSON."""
    return json_util.dumps(value, json_options=JSON_OPTIONS, separators=(",", ":"))


def _revive_pairs(pairs: list[tuple[str, Any]]) -> Any:
    if len(pairs) == 1 and pairs[0][0] in _REVIVED_WRAPPERS:
        return json_util.object_pairs_hook(pairs, JSON_OPTIONS)
    return dict(pairs)


def loads_extended(text: str, field: str | None = None) -> Any:
    """Parse Extended JSON, reviving only ``$oid`` and ``$date`` wrappers."""
    try:
        return json.loads(text, object_pairs_hook=_revive_pairs)
    except (ValueError, RecursionError, TypeError, KeyError, OverflowError, InvalidId) as e:
        raise CodecError(f"Malformed serialized value: {e}", field=field) from e


# ============================================================================
# ENCODE
# ============================================================================


def encode_value(field: str, value: Any) -> tuple[Any, str | None]:
    """
    Encode one Document value.

    Returns:
        Tuple of (wire value, type tag or None)

    Raises:
        CodecError: If the value cannot be represented
    """
    kind = check_value(value, field)

    if kind is ValueKind.STRING:
        if not isinstance(sniff(value), str):
            return value, TAG_STRING
        return value, None
    if kind is ValueKind.INTEGER:
        return int(value), None
    if kind is ValueKind.BOOLEAN:
        return ("true" if value else "false"), None
    if kind is ValueKind.FLOAT:
        return format_float(value, field), None
    if kind is ValueKind.NULL:
        return None, None
    if kind is ValueKind.OBJECT_ID:
        return str(value), TAG_OBJECT_ID
    if kind is ValueKind.DATETIME:
        return datetime_to_epoch(value), TAG_DATETIME
    if kind is ValueKind.DOCUMENT:
        return dumps_extended(dict(value)), TAG_DOCUMENT
    return dumps_extended(list(value)), TAG_ARRAY


def encode(document: Mapping[str, Any]) -> WireRecord:
    """
    Encode a Document into a flat wire record.

    Args:
        document: Document to encode

    Returns:
        Wire record with a sidecar tag for every extended value

    Raises:
        CodecError: If a field name collides with the tag convention or a
            value is outside the modeled set
    """
    if not isinstance(document, Mapping):
        raise CodecError(f"Expected a document, got {type(document).__name__}")

    record: WireRecord = {}
    for field, value in document.items():
        if not isinstance(field, str):
            raise CodecError("Document keys must be strings", field=str(field))
        if is_tag_key(field):
            raise CodecError(
                f"Field names may not end with '{TYPE_TAG_SUFFIX}'", field=field
            )
        wire_value, tag = encode_value(field, value)
        record[field] = wire_value
        if tag is not None:
            record[tag_key(field)] = tag
    return record


def encode_many(documents: list[Mapping[str, Any]]) -> list[WireRecord]:
    return [encode(document) for document in documents]


# ============================================================================
# DECODE
# ============================================================================


def _decode_tagged(field: str, raw: Any, tag: Any) -> Any:
    if not isinstance(tag, str):
        raise CodecError("Type tag must be a string", field=field)
    tag = TAG_ALIASES.get(tag, tag)

    if tag == TAG_OBJECT_ID:
        if not isinstance(raw, str) or not ObjectId.is_valid(raw):
            raise CodecError("Invalid ObjectId value", field=field)
        return ObjectId(raw)

    if tag == TAG_DATETIME:
        if isinstance(raw, bool):
            raise CodecError("Invalid Date value", field=field)
        if isinstance(raw, int):
            return epoch_to_datetime(raw, field)
        if isinstance(raw, str) and _INTEGER_RE.fullmatch(raw):
            return epoch_to_datetime(int(raw), field)
        raise CodecError("Invalid Date value", field=field)

    if tag in (TAG_DOCUMENT, TAG_ARRAY):
        if not isinstance(raw, str):
            raise CodecError(f"{tag} value must be a serialized string", field=field)
        parsed = loads_extended(raw, field)
        expected = dict if tag == TAG_DOCUMENT else list
        if not isinstance(parsed, expected):
            raise CodecError(f"Serialized value is not a {tag}", field=field)
        return parsed

    if tag == TAG_STRING:
        if not isinstance(raw, str):
            raise CodecError("String value must be a string", field=field)
        return raw

    raise CodecError(f"Unknown type tag {tag!r}", field=field)


def _decode_untagged(field: str, raw: Any, depth: int, max_depth: int) -> Any:
    if isinstance(raw, str):
        return sniff(raw)
    if raw is None or isinstance(raw, (bool, int, float)):
        return raw
    if isinstance(raw, Mapping):
        return _decode_record(raw, depth + 1, max_depth)
    if isinstance(raw, list):
        if depth + 1 > max_depth:
            raise CodecError(f"Record exceeds maximum nesting depth of {max_depth}", field=field)
        return [
            _decode_record(item, depth + 2, max_depth) if isinstance(item, Mapping) else item
            for item in raw
        ]
    raise CodecError(f"Unsupported wire value type: {type(raw).__name__}", field=field)


def _decode_record(record: Mapping[str, Any], depth: int, max_depth: int) -> dict[str, Any]:
    if not isinstance(record, Mapping):
        raise CodecError(f"Expected an object, got {type(record).__name__}")
    if depth > max_depth:
        raise CodecError(f"Record exceeds maximum nesting depth of {max_depth}")

    document: dict[str, Any] = {}
    for field, raw in record.items():
        if not isinstance(field, str):
            raise CodecError("Record keys must be strings", field=str(field))
        if is_tag_key(field):
            continue
        tag = record.get(tag_key(field))
        if tag is not None:
            document[field] = _decode_tagged(field, raw, tag)
        else:
            document[field] = _decode_untagged(field, raw, depth, max_depth)
    return document


def decode(record: Mapping[str, Any], max_depth: int = MAX_WIRE_DEPTH) -> dict[str, Any]:
    """
    Decode a wire record into a Document.

    A field's sidecar tag always takes precedence over sniffing. Tag entries
    themselves never become fields; a tag without its field is ignored.
    Nesting is counted as the validator counts it: the record itself is
    depth 0 and every nested object or array adds one.

    Raises:
        CodecError: If a tagged value is malformed, the tag is unknown or
            the record nests deeper than ``max_depth``
    """
    return _decode_record(record, 0, max_depth)


def decode_many(records: Any, field: str = "documents") -> list[dict[str, Any]]:
    """Decode a list of wire records."""
    if not isinstance(records, list):
        raise CodecError("Expected a list of objects", field=field)
    return [decode(record) for record in records]


def decode_document_or_list(raw: Any, field: str) -> Any:
    """
    Decode a body value that may be a single wire record or a list of them
    (update pipelines, aggregation pipelines).
    """
    if isinstance(raw, list):
        if not all(isinstance(item, Mapping) for item in raw):
            raise CodecError("Expected a list of objects", field=field)
        return [decode(item) for item in raw]
    if isinstance(raw, Mapping):
        return decode(raw)
    raise CodecError("Expected an object or a list of objects", field=field)


__all__ = [
    "JSON_OPTIONS",
    "WireRecord",
    "decode",
    "decode_document_or_list",
    "decode_many",
    "dumps_extended",
    "encode",
    "encode_many",
    "encode_value",
    "format_float",
    "is_tag_key",
    "loads_extended",
    "sniff",
    "tag_key",
]
