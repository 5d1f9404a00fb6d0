"""
Document codec.

Converts between Documents (typed, nested) and flat wire records.
"""

from .values import ValueKind, check_value, kind_of
from .wire import (
    WireRecord,
    decode,
    decode_document_or_list,
    decode_many,
    encode,
    encode_many,
    encode_value,
    sniff,
)

__all__ = [
    "ValueKind",
    "kind_of",
    "check_value",
    "WireRecord",
    "encode",
    "encode_many",
    "encode_value",
    "decode",
    "decode_many",
    "decode_document_or_list",
    "sniff",
]
