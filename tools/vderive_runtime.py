"""vderive runtime support.

Generated modules import this as ``_vd``. It provides the Variant backend
primitives over plain Python values (None, bool, int/float, str, list, dict
with str keys), the encoder/decoder combinators used for field types, and
``DecodeError``.
"""

from __future__ import annotations

import copy
import enum
from typing import Any, Callable, Dict, List, Sequence, Tuple

Variant = Any
Encoder = Callable[[Any], Variant]
Decoder = Callable[[Variant], Any]


class ErrorKind(enum.Enum):
    SHAPE_MISMATCH = "shape mismatch"
    MISSING_FIELD = "missing field"
    FIELD_DECODE_FAILED = "field decode failed"
    UNKNOWN_VARIANT = "unknown variant"


class DecodeError(ValueError):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        field: str | int | None = None,
        tag: str | None = None,
        cause: "DecodeError | None" = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.field = field
        self.tag = tag
        self.cause = cause

    @classmethod
    def shape_mismatch(cls, expected: str, variant: Variant, what: str) -> "DecodeError":
        return cls(
            ErrorKind.SHAPE_MISMATCH,
            f"{what}: expected {expected}, got {kind_name(variant)}",
        )

    @classmethod
    def missing_field(cls, field: str | int, what: str) -> "DecodeError":
        return cls(ErrorKind.MISSING_FIELD, f"{what}: missing field {field!r}", field=field)

    @classmethod
    def field_failed(cls, field: str | int, cause: "DecodeError", what: str) -> "DecodeError":
        return cls(
            ErrorKind.FIELD_DECODE_FAILED,
            f"{what}: field {field!r}: {cause}",
            field=field,
            cause=cause,
        )

    @classmethod
    def unknown_variant(cls, tag: Any, what: str) -> "DecodeError":
        return cls(ErrorKind.UNKNOWN_VARIANT, f"{what}: unknown variant {tag!r}", tag=tag)


def kind_name(variant: Variant) -> str:
    if variant is None:
        return "null"
    if isinstance(variant, bool):
        return "bool"
    if isinstance(variant, (int, float)):
        return "number"
    if isinstance(variant, str):
        return "string"
    if isinstance(variant, list):
        return "sequence"
    if isinstance(variant, dict):
        return "map"
    return type(variant).__name__


# Construction primitives.


def make_null() -> Variant:
    return None


def make_bool(b: bool) -> Variant:
    return bool(b)


def make_number(n: int | float) -> Variant:
    if isinstance(n, bool):
        return int(n)
    return n


def make_string(s: str) -> Variant:
    return str(s)


def make_sequence(values: Sequence[Variant]) -> Variant:
    return list(values)


def make_map(pairs: Sequence[Tuple[str, Variant]]) -> Variant:
    entries: Dict[str, Variant] = {}
    for key, value in pairs:
        if key in entries:
            raise ValueError(f"duplicate map key {key!r}")
        entries[key] = value
    return entries


# Inspection primitives. Each returns None when the variant has another kind.


def as_bool(variant: Variant) -> bool | None:
    return variant if isinstance(variant, bool) else None


def as_number(variant: Variant) -> int | float | None:
    if isinstance(variant, bool) or not isinstance(variant, (int, float)):
        return None
    return variant


def as_string(variant: Variant) -> str | None:
    return variant if isinstance(variant, str) else None


def as_sequence(variant: Variant) -> List[Variant] | None:
    return variant if isinstance(variant, list) else None


def as_map(variant: Variant) -> Dict[str, Variant] | None:
    return variant if isinstance(variant, dict) else None


# Encoders.


def copy_variant(variant: Variant) -> Variant:
    return copy.deepcopy(variant)


def move_variant(variant: Variant) -> Variant:
    return variant


def encode_sequence(item: Encoder) -> Encoder:
    def encode(values: Sequence[Any]) -> Variant:
        return make_sequence([item(value) for value in values])

    return encode


def encode_map(item: Encoder) -> Encoder:
    def encode(values: Dict[str, Any]) -> Variant:
        return make_map([(key, item(value)) for key, value in values.items()])

    return encode


def encode_optional(item: Encoder) -> Encoder:
    def encode(value: Any) -> Variant:
        if value is None:
            return make_null()
        return item(value)

    return encode


def map_entries(variant: Variant) -> List[Tuple[str, Variant]]:
    entries = as_map(variant)
    if entries is None:
        raise TypeError(f"flattened value must encode to a map, got {kind_name(variant)}")
    return list(entries.items())


# Decoders.


def decode_bool(variant: Variant) -> bool:
    value = as_bool(variant)
    if value is None:
        raise DecodeError.shape_mismatch("bool", variant, "bool")
    return value


def decode_int(variant: Variant) -> int:
    value = as_number(variant)
    if value is None:
        raise DecodeError.shape_mismatch("integer", variant, "int")
    if isinstance(value, float):
        if not value.is_integer():
            raise DecodeError(ErrorKind.SHAPE_MISMATCH, f"int: expected integer, got {value!r}")
        return int(value)
    return value


def decode_float(variant: Variant) -> float:
    value = as_number(variant)
    if value is None:
        raise DecodeError.shape_mismatch("number", variant, "float")
    try:
        return float(value)
    except OverflowError:
        raise DecodeError(ErrorKind.SHAPE_MISMATCH, "float: integer out of range") from None


def decode_str(variant: Variant) -> str:
    value = as_string(variant)
    if value is None:
        raise DecodeError.shape_mismatch("string", variant, "str")
    return value


def decode_variant(variant: Variant) -> Variant:
    return copy.deepcopy(variant)


def decode_sequence(item: Decoder) -> Decoder:
    def decode(variant: Variant) -> List[Any]:
        items = expect_sequence(variant, "list")
        return [positional_field(items, index, item, what="list") for index in range(len(items))]

    return decode


def decode_map(item: Decoder) -> Decoder:
    def decode(variant: Variant) -> Dict[str, Any]:
        entries = expect_map(variant, "dict")
        return {key: named_field(entries, key, item, what="dict") for key in entries}

    return decode


def decode_optional(item: Decoder) -> Decoder:
    def decode(variant: Variant) -> Any:
        if variant is None:
            return None
        return item(variant)

    return decode


# Shape checks used by generated from_variant bodies.


def expect_null(variant: Variant, what: str) -> None:
    if variant is not None:
        raise DecodeError.shape_mismatch("null", variant, what)


def expect_sequence(variant: Variant, what: str) -> List[Variant]:
    items = as_sequence(variant)
    if items is None:
        raise DecodeError.shape_mismatch("sequence", variant, what)
    return items


def expect_map(variant: Variant, what: str) -> Dict[str, Variant]:
    entries = as_map(variant)
    if entries is None:
        raise DecodeError.shape_mismatch("map", variant, what)
    return entries


def expect_single_entry(variant: Variant, what: str) -> Tuple[Any, Variant]:
    entries = as_map(variant)
    if entries is None:
        raise DecodeError.shape_mismatch("single-entry map", variant, what)
    if len(entries) != 1:
        raise DecodeError(
            ErrorKind.SHAPE_MISMATCH,
            f"{what}: expected single-entry map, got {len(entries)} entries",
        )
    (tag, value), = entries.items()
    return tag, value


def fold_tag(tag: Any) -> Any:
    return tag.casefold() if isinstance(tag, str) else tag


def named_field(
    entries: Dict[str, Variant],
    key: str,
    decode: Decoder,
    default: Callable[[], Any] | None = None,
    what: str = "map",
) -> Any:
    if key not in entries:
        if default is None:
            raise DecodeError.missing_field(key, what)
        return default()
    try:
        return decode(entries[key])
    except DecodeError as e:
        raise DecodeError.field_failed(key, e, what) from e


def positional_field(
    items: List[Variant],
    index: int,
    decode: Decoder,
    default: Callable[[], Any] | None = None,
    what: str = "sequence",
) -> Any:
    if index >= len(items):
        if default is None:
            raise DecodeError.missing_field(index, what)
        return default()
    try:
        return decode(items[index])
    except DecodeError as e:
        raise DecodeError.field_failed(index, e, what) from e


def flattened_field(variant: Variant, name: str, decode: Decoder, what: str = "map") -> Any:
    try:
        return decode(variant)
    except DecodeError as e:
        raise DecodeError.field_failed(name, e, what) from e
