#!/usr/bin/env python3
"""vderive Variant conversion generator.

Input:  Python source containing @derive(...) struct/enum declaration blocks.
Output: transformed Python source with generated classes and to_variant /
        owned_to_variant / from_variant procedures replacing tagged blocks.
"""

from __future__ import annotations

import argparse
import ast
import dataclasses
import hashlib
import json
import keyword
import pathlib
import re
import sys
from typing import Dict, Iterator, List, Sequence, Tuple

GENERATOR_VERSION = "0.2.0"
FORMAT_VERSION = "1"
ATTRIBUTE_TOKEN = "@derive("
DIRECTIVE_TOKEN = "@variant("
DIGEST_PATTERN = re.compile(r"^# digest: ([0-9a-f]{64})$", re.MULTILINE)
FIELD_PATTERN = re.compile(r"^(?P<name>[A-Za-z_]\w*)\s*:\s*(?P<type>\S.*)$", re.DOTALL)
DIRECTIVE_ARG_PATTERN = re.compile(r"^(?P<key>[A-Za-z_]\w*)\s*(?:=\s*(?P<value>\S.*))?$", re.DOTALL)
TYPE_PATTERN = re.compile(r"^(?P<name>[A-Za-z_]\w*)\s*(?P<rest>.*)$", re.DOTALL)

HEADER_IMPORTS = (
    "import dataclasses",
    "import functools",
    "import typing",
    "",
    "import vderive_runtime as _vd",
)

# derive name -> (direction, flavor)
DERIVES: Dict[str, Tuple[str, str]] = {
    "ToVariant": ("to", "borrowing"),
    "OwnedToVariant": ("to", "consuming"),
    "FromVariant": ("from", ""),
}
METHOD_NAMES = {
    "ToVariant": "to_variant",
    "OwnedToVariant": "owned_to_variant",
    "FromVariant": "from_variant",
}
RESERVED_NAMES = set(METHOD_NAMES.values()) | {"__variant_bounds__"}
# module-level names the generated header imports
HEADER_NAMES = {"dataclasses", "functools", "typing", "_vd"}

# builtin type -> (arity, annotation, zero value)
BUILTIN_TYPES: Dict[str, Tuple[int, str, str]] = {
    "bool": (0, "bool", "False"),
    "int": (0, "int", "0"),
    "float": (0, "float", "0.0"),
    "str": (0, "str", '""'),
    "Variant": (0, "typing.Any", "None"),
    "list": (1, "list", "[]"),
    "dict": (2, "dict", "{}"),
    "Optional": (1, "typing.Optional", "None"),
}
SCALAR_ENCODERS = {
    "bool": "_vd.make_bool",
    "int": "_vd.make_number",
    "float": "_vd.make_number",
    "str": "_vd.make_string",
}
SCALAR_DECODERS = {
    "bool": "_vd.decode_bool",
    "int": "_vd.decode_int",
    "float": "_vd.decode_float",
    "str": "_vd.decode_str",
    "Variant": "_vd.decode_variant",
}
FIELD_DIRECTIVES = {"rename", "skip", "default", "flatten"}
CASE_DIRECTIVES = {"rename"}
TYPE_DIRECTIVES = {"tag_match"}
TAG_MATCH_POLICIES = ("exact", "ignore_case")


class ParseError(RuntimeError):
    def __init__(self, message: str, index: int) -> None:
        super().__init__(message)
        self.index = index


class DeriveError(ParseError):
    """Classification, directive resolution or bound extension failure."""


@dataclasses.dataclass
class TypeRef:
    name: str
    args: List["TypeRef"] = dataclasses.field(default_factory=list)
    index: int = 0

    def __str__(self) -> str:
        if not self.args:
            return self.name
        return f"{self.name}[{', '.join(str(a) for a in self.args)}]"


@dataclasses.dataclass
class DefaultSource:
    expr: str | None = None  # None: the field type's zero value


@dataclasses.dataclass
class FieldSpec:
    name: str
    type_ref: TypeRef
    index: int
    skip: bool = False
    default: DefaultSource | None = None
    rename: str | None = None
    flatten: bool = False

    @property
    def wire_name(self) -> str:
        return self.rename if self.rename is not None else self.name


@dataclasses.dataclass
class FieldsRepr:
    kind: str  # unit | tuple | named
    fields: List[FieldSpec] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class Case:
    name: str
    fields: FieldsRepr
    index: int
    rename: str | None = None

    @property
    def wire_name(self) -> str:
        return self.rename if self.rename is not None else self.name


@dataclasses.dataclass
class Representation:
    kind: str  # record | union
    fields: FieldsRepr | None = None
    cases: List[Case] = dataclasses.field(default_factory=list)


@dataclasses.dataclass(frozen=True)
class GenericParam:
    name: str
    bounds: Tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class DeriveData:
    ident: str
    repr: Representation
    generics: Tuple[GenericParam, ...]
    derives: Tuple[str, ...]
    tag_match: str = "exact"
    index: int = 0


@dataclasses.dataclass
class Directive:
    args: Dict[str, str | None]
    index: int
    case: str | None = None
    field: str | None = None


@dataclasses.dataclass
class RawField:
    name: str | None
    type_text: str
    type_index: int
    index: int


@dataclasses.dataclass
class RawCase:
    name: str
    fields: List[RawField]
    index: int


@dataclasses.dataclass
class DeclBlock:
    kind: str  # struct | enum | union
    name: str
    start: int
    end: int
    derives: List[str] = dataclasses.field(default_factory=list)
    generics: List[GenericParam] = dataclasses.field(default_factory=list)
    fields: List[RawField] = dataclasses.field(default_factory=list)
    cases: List[RawCase] = dataclasses.field(default_factory=list)
    directives: List[Directive] = dataclasses.field(default_factory=list)


def line_col(text: str, index: int) -> Tuple[int, int]:
    line = text.count("\n", 0, index) + 1
    line_start = text.rfind("\n", 0, index)
    if line_start < 0:
        line_start = -1
    col = index - line_start
    return line, col


def fail(path: pathlib.Path, text: str, error: ParseError) -> None:
    line, col = line_col(text, error.index)
    print(f"{path}:{line}:{col}: error: {error}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Front end: scanning and parsing of tagged declaration blocks


def skip_string(text: str, i: int, origin: int = 0) -> int:
    quote = text[i : i + 3] if text.startswith(text[i] * 3, i) else text[i]
    j = i + len(quote)
    n = len(text)
    while j < n:
        if text[j] == "\\":
            j += 2
            continue
        if text.startswith(quote, j):
            return j + len(quote)
        if len(quote) == 1 and text[j] == "\n":
            break
        j += 1
    raise ParseError("unterminated string literal", origin + i)


def code_positions(text: str, i: int = 0, origin: int = 0) -> Iterator[int]:
    """Yield the indices of characters outside comments and string literals."""
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "#":
            j = text.find("\n", i + 1)
            if j == -1:
                return
            i = j + 1
            continue
        if ch in "\"'":
            i = skip_string(text, i, origin)
            continue
        yield i
        i += 1


def blank_comments(text: str) -> str:
    chars = list(text)
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "#":
            j = text.find("\n", i)
            if j == -1:
                j = n
            chars[i:j] = " " * (j - i)
            i = j
            continue
        if ch in "\"'":
            i = skip_string(text, i)
            continue
        i += 1
    return "".join(chars)


def skip_ws_comments(text: str, i: int) -> int:
    n = len(text)
    while i < n:
        if text[i].isspace():
            i += 1
            continue
        if text[i] == "#":
            j = text.find("\n", i + 1)
            if j == -1:
                return n
            i = j + 1
            continue
        return i
    return i


def parse_identifier(text: str, i: int, origin: int = 0) -> Tuple[str, int]:
    m = re.match(r"[A-Za-z_]\w*", text[i:])
    if not m:
        raise ParseError("expected identifier", origin + i)
    ident = m.group(0)
    return ident, i + len(ident)


def find_attribute_positions(text: str) -> List[int]:
    return [i for i in code_positions(text) if text.startswith(ATTRIBUTE_TOKEN, i)]


BRACKETS = {"{": "}", "(": ")", "[": "]"}


def find_matching(text: str, open_index: int, origin: int = 0) -> int:
    if open_index >= len(text) or text[open_index] not in BRACKETS:
        raise ParseError("internal error: expected opening bracket", origin + open_index)

    expected: List[str] = []
    for i in code_positions(text, open_index, origin):
        ch = text[i]
        if ch in BRACKETS:
            expected.append(BRACKETS[ch])
        elif ch in ")]}":
            if not expected or expected.pop() != ch:
                raise ParseError(f"unexpected '{ch}'", origin + i)
            if not expected:
                return i

    raise ParseError(f"unbalanced '{text[open_index]}'", origin + open_index)


def split_top_level(body: str, origin: int) -> List[Tuple[str, int]]:
    """Split on top-level commas; returns stripped pieces with their offsets."""
    bounds: List[Tuple[int, int]] = []
    start = 0
    depth = 0

    for i in code_positions(body, 0, origin):
        ch = body[i]
        if ch in BRACKETS:
            depth += 1
        elif ch in ")]}":
            depth -= 1
            if depth < 0:
                raise ParseError(f"unexpected '{ch}'", origin + i)
        elif ch == "," and depth == 0:
            bounds.append((start, i))
            start = i + 1
    bounds.append((start, len(body)))

    pieces: List[Tuple[str, int]] = []
    for n, (lo, hi) in enumerate(bounds):
        raw = body[lo:hi]
        piece = raw.strip()
        if not piece:
            # a single trailing comma is allowed
            if n == len(bounds) - 1:
                continue
            raise ParseError("empty declaration between commas", origin + hi)
        pieces.append((piece, origin + lo + (len(raw) - len(raw.lstrip()))))
    return pieces


def parse_directive(text: str, i: int, origin: int = 0) -> Tuple[Directive, int]:
    open_paren = i + len(DIRECTIVE_TOKEN) - 1
    close = find_matching(text, open_paren, origin)
    inner = blank_comments(text[open_paren + 1 : close])

    args: Dict[str, str | None] = {}
    for piece, at in split_top_level(inner, origin + open_paren + 1):
        m = DIRECTIVE_ARG_PATTERN.match(piece)
        if not m:
            raise ParseError("expected 'key' or 'key=\"value\"' in @variant(...)", at)
        key = m.group("key")
        value = None
        if m.group("value") is not None:
            try:
                value = ast.literal_eval(m.group("value").strip())
            except (ValueError, SyntaxError):
                raise ParseError(f"invalid value for directive argument '{key}'", at) from None
            if not isinstance(value, str):
                raise ParseError(f"directive argument '{key}' must be a string literal", at)
        if key in args:
            raise ParseError(f"duplicate directive argument '{key}'", at)
        args[key] = value

    directive = Directive(args=args, index=origin + i)
    for target in ("case", "field"):
        if target in args:
            value = args.pop(target)
            if value is None:
                raise ParseError(f"directive argument '{target}' requires a value", origin + i)
            setattr(directive, target, value)
    return directive, close + 1


def strip_directives(piece: str, at: int) -> Tuple[List[Directive], str, int]:
    directives: List[Directive] = []
    i = 0
    while piece.startswith(DIRECTIVE_TOKEN, i):
        directive, i = parse_directive(piece, i, at)
        if directive.case is not None or directive.field is not None:
            raise ParseError("'case' and 'field' targets are only allowed on type-level directives", directive.index)
        directives.append(directive)
        while i < len(piece) and piece[i].isspace():
            i += 1
    return directives, piece[i:].strip(), at + i


def parse_field_list(
    body: str, origin: int, directives: List[Directive], case: str | None = None
) -> List[RawField]:
    fields: List[RawField] = []
    for pos, (piece, at) in enumerate(split_top_level(body, origin)):
        inline, rest, rest_at = strip_directives(piece, at)
        if not rest:
            raise ParseError("expected field declaration after @variant(...)", rest_at)
        m = FIELD_PATTERN.match(rest)
        if m:
            field = RawField(
                name=m.group("name"),
                type_text=m.group("type").strip(),
                type_index=rest_at + m.start("type"),
                index=rest_at,
            )
        else:
            field = RawField(name=None, type_text=rest, type_index=rest_at, index=rest_at)

        key = field.name if field.name is not None else str(pos)
        for directive in inline:
            directive.case = case
            directive.field = key
            directives.append(directive)
        fields.append(field)
    return fields


def parse_case_list(body: str, origin: int, directives: List[Directive]) -> List[RawCase]:
    cases: List[RawCase] = []
    for piece, at in split_top_level(body, origin):
        inline, rest, rest_at = strip_directives(piece, at)
        name, j = parse_identifier(rest, 0, rest_at)
        tail_start = j
        while tail_start < len(rest) and rest[tail_start].isspace():
            tail_start += 1

        fields: List[RawField] = []
        if tail_start < len(rest):
            if rest[tail_start] not in "{(":
                raise ParseError(f"expected '{{', '(' or ',' after case '{name}'", rest_at + tail_start)
            close = find_matching(rest, tail_start, rest_at)
            if rest[close + 1 :].strip():
                raise ParseError(f"unexpected tokens after case '{name}'", rest_at + close + 1)
            fields = parse_field_list(rest[tail_start + 1 : close], rest_at + tail_start + 1, directives, case=name)

        for directive in inline:
            directive.case = name
            directives.append(directive)
        cases.append(RawCase(name=name, fields=fields, index=rest_at))
    return cases


def parse_derive_list(inner: str, origin: int) -> List[str]:
    derives: List[str] = []
    for piece, at in split_top_level(blank_comments(inner), origin):
        if piece not in DERIVES:
            raise ParseError(f"unknown derive '{piece}'; expected one of {', '.join(DERIVES)}", at)
        if piece in derives:
            raise ParseError(f"duplicate derive '{piece}'", at)
        derives.append(piece)
    if not derives:
        raise ParseError("@derive(...) must name at least one conversion", origin)
    return derives


def parse_generics(inner: str, origin: int) -> List[GenericParam]:
    params: List[GenericParam] = []
    for piece, at in split_top_level(blank_comments(inner), origin):
        name, j = parse_identifier(piece, 0, at)
        rest = piece[j:].strip()
        bounds: Tuple[str, ...] = ()
        if rest:
            if not rest.startswith(":"):
                raise ParseError(f"expected ':' or ',' after generic parameter '{name}'", at + j)
            bounds = tuple(b.strip() for b in rest[1:].split("+"))
            if not all(re.match(r"^[A-Za-z_][\w.]*$", b) for b in bounds):
                raise ParseError(f"invalid bound list for generic parameter '{name}'", at + j)
        if any(p.name == name for p in params):
            raise ParseError(f"duplicate generic parameter '{name}'", at)
        params.append(GenericParam(name=name, bounds=bounds))
    if not params:
        raise ParseError("empty generic parameter list", origin)
    return params


def parse_tagged_decl(text: str, attr_index: int) -> DeclBlock:
    open_paren = attr_index + len(ATTRIBUTE_TOKEN) - 1
    close = find_matching(text, open_paren)
    derives = parse_derive_list(text[open_paren + 1 : close], open_paren + 1)

    i = skip_ws_comments(text, close + 1)
    type_directives: List[Directive] = []
    while text.startswith(DIRECTIVE_TOKEN, i):
        directive, i = parse_directive(text, i)
        type_directives.append(directive)
        i = skip_ws_comments(text, i)

    kind, j = parse_identifier(text, i)
    if kind not in ("struct", "enum", "union"):
        raise ParseError("expected 'struct', 'enum' or 'union' after @derive(...)", i)

    i = skip_ws_comments(text, j)
    name, i = parse_identifier(text, i)
    block = DeclBlock(kind=kind, name=name, start=attr_index, end=attr_index, derives=derives)
    block.directives.extend(type_directives)

    i = skip_ws_comments(text, i)
    if i < len(text) and text[i] == "[":
        close = find_matching(text, i)
        block.generics = parse_generics(text[i + 1 : close], i + 1)
        i = skip_ws_comments(text, close + 1)

    if i < len(text) and text[i] in "{(":
        if kind == "enum" and text[i] != "{":
            raise ParseError("expected '{' to open enum body", i)
        close = find_matching(text, i)
        body = blank_comments(text[i + 1 : close])
        if kind == "enum":
            block.cases = parse_case_list(body, i + 1, block.directives)
        else:
            block.fields = parse_field_list(body, i + 1, block.directives)
        end = close + 1
        j = skip_ws_comments(text, end)
        if j < len(text) and text[j] == ";":
            end = j + 1
    elif kind == "enum":
        raise ParseError(f"expected '{{' to open body of enum '{name}'", i)
    elif i < len(text) and text[i] == ";":
        end = i + 1
    else:
        raise ParseError(f"expected '{{', '(' or ';' after '{name}'", i)

    block.end = end
    return block


def parse_all_decls(text: str) -> List[DeclBlock]:
    positions = find_attribute_positions(text)
    blocks: List[DeclBlock] = []
    consumed_until = -1

    for pos in positions:
        if pos < consumed_until:
            continue
        block = parse_tagged_decl(text, pos)
        blocks.append(block)
        consumed_until = block.end

    return blocks


def parse_type_ref(text: str, origin: int) -> TypeRef:
    m = TYPE_PATTERN.match(text.strip())
    if not m:
        raise ParseError(f"expected type, got '{text.strip()}'", origin)
    ref = TypeRef(name=m.group("name"), index=origin)
    rest = m.group("rest").strip()
    if not rest:
        return ref
    if not rest.startswith("["):
        raise ParseError(f"unexpected tokens after type name '{ref.name}'", origin)
    rest_at = origin + text.index(rest)
    close = find_matching(rest, 0, rest_at)
    if rest[close + 1 :].strip():
        raise ParseError(f"unexpected tokens after type '{ref.name}[...]'", rest_at + close + 1)
    pieces = split_top_level(rest[1:close], rest_at + 1)
    if not pieces:
        raise ParseError(f"empty type argument list for '{ref.name}'", rest_at)
    ref.args = [parse_type_ref(piece, at) for piece, at in pieces]
    return ref


# ---------------------------------------------------------------------------
# Field classification, directive resolution and representation building


def check_name(name: str, what: str, index: int) -> None:
    if keyword.iskeyword(name):
        raise DeriveError(f"{what} '{name}' is a Python keyword", index)
    if name in RESERVED_NAMES:
        raise DeriveError(f"{what} '{name}' collides with a generated member", index)
    if name.startswith("__") and name.endswith("__"):
        raise DeriveError(f"{what} '{name}' must not be a dunder name", index)
    # case names become class attributes of the enum base
    if what == "case" and hasattr(type, name):
        raise DeriveError(f"case '{name}' collides with a class attribute", index)
    # type names and generic parameters are bound at module level
    if what in ("type", "generic parameter") and name in HEADER_NAMES:
        raise DeriveError(f"{what} '{name}' collides with a generated module import", index)


def classify_fields(raw_fields: Sequence[RawField], owner: str) -> FieldsRepr:
    if not raw_fields:
        return FieldsRepr(kind="unit")

    named = [f.name is not None for f in raw_fields]
    if all(named):
        kind = "named"
    elif not any(named):
        kind = "tuple"
    else:
        culprit = raw_fields[named.index(not named[0])]
        raise DeriveError(f"'{owner}' mixes named and positional fields", culprit.index)

    specs: List[FieldSpec] = []
    seen: set[str] = set()
    for pos, raw in enumerate(raw_fields):
        name = raw.name if raw.name is not None else f"_{pos}"
        check_name(name, "field", raw.index)
        if name in seen:
            raise DeriveError(f"duplicate field '{name}' in '{owner}'", raw.index)
        seen.add(name)
        specs.append(FieldSpec(name=name, type_ref=parse_type_ref(raw.type_text, raw.type_index), index=raw.index))
    return FieldsRepr(kind=kind, fields=specs)


def build_representation(block: DeclBlock) -> Representation:
    if block.kind == "union":
        raise DeriveError(
            f"'{block.name}': unions of overlapping fields are not supported; use 'enum' for tagged unions",
            block.start,
        )
    if block.kind == "struct":
        return Representation(kind="record", fields=classify_fields(block.fields, block.name))

    if not block.cases:
        raise DeriveError(f"enum '{block.name}' must contain at least one case", block.start)
    cases: List[Case] = []
    for raw in block.cases:
        check_name(raw.name, "case", raw.index)
        if any(c.name == raw.name for c in cases):
            raise DeriveError(f"duplicate case '{raw.name}' in enum '{block.name}'", raw.index)
        cases.append(Case(name=raw.name, fields=classify_fields(raw.fields, f"{block.name}.{raw.name}"), index=raw.index))
    return Representation(kind="union", cases=cases)


def zero_value(ref: TypeRef) -> str | None:
    builtin = BUILTIN_TYPES.get(ref.name)
    return builtin[2] if builtin else None


def lookup_field(fields: FieldsRepr, key: str) -> FieldSpec | None:
    for pos, spec in enumerate(fields.fields):
        if spec.name == key or (fields.kind == "tuple" and key == str(pos)):
            return spec
    return None


def apply_field_directive(spec: FieldSpec, fields: FieldsRepr, directive: Directive) -> None:
    for key, value in directive.args.items():
        if key not in FIELD_DIRECTIVES:
            raise DeriveError(f"unknown field directive '{key}'", directive.index)
        if key == "rename":
            if value is None:
                raise DeriveError("'rename' requires a value", directive.index)
            # positional fields have no wire key
            if fields.kind == "named":
                spec.rename = value
        elif key == "skip":
            if value is not None:
                raise DeriveError("'skip' takes no value", directive.index)
            spec.skip = True
        elif key == "default":
            spec.default = DefaultSource(expr=value)
        elif key == "flatten":
            if value is not None:
                raise DeriveError("'flatten' takes no value", directive.index)
            if fields.kind != "named":
                raise DeriveError(f"'flatten' is only allowed on named fields (field '{spec.name}')", directive.index)
            spec.flatten = True


def resolve_field_defaults(fields: FieldsRepr, owner: str) -> None:
    for spec in fields.fields:
        if spec.flatten and (spec.skip or spec.rename is not None or spec.default is not None):
            raise DeriveError(
                f"field '{spec.name}' of '{owner}': 'flatten' cannot be combined with skip, rename or default",
                spec.index,
            )
        if spec.skip and spec.default is None:
            spec.default = DefaultSource()
        if spec.default is None:
            continue
        if spec.default.expr is None:
            spec.default.expr = zero_value(spec.type_ref)
            if spec.default.expr is None:
                raise DeriveError(
                    f"field '{spec.name}' of '{owner}' has no default value for type '{spec.type_ref}'; "
                    f"use default=\"<expression>\"",
                    spec.index,
                )
        else:
            try:
                ast.parse(spec.default.expr.strip(), mode="eval")
            except SyntaxError:
                raise DeriveError(
                    f"default for field '{spec.name}' of '{owner}' is not a valid expression: {spec.default.expr!r}",
                    spec.index,
                ) from None
            spec.default.expr = spec.default.expr.strip()


def resolve_directives(block: DeclBlock, repr: Representation) -> str:
    """Fold the block's directives into ``repr``; returns the tag match policy."""
    tag_match = "exact"

    for directive in block.directives:
        if directive.case is None and directive.field is None:
            for key, value in directive.args.items():
                if key not in TYPE_DIRECTIVES:
                    raise DeriveError(f"unknown type directive '{key}'", directive.index)
                if repr.kind != "union":
                    raise DeriveError(f"'tag_match' only applies to enums, not '{block.name}'", directive.index)
                if value not in TAG_MATCH_POLICIES:
                    raise DeriveError(
                        f"'tag_match' must be one of {', '.join(TAG_MATCH_POLICIES)}", directive.index
                    )
                tag_match = value
            continue

        if directive.case is not None:
            if repr.kind != "union":
                raise DeriveError(f"'{block.name}' has no case '{directive.case}'", directive.index)
            case = next((c for c in repr.cases if c.name == directive.case), None)
            if case is None:
                raise DeriveError(f"enum '{block.name}' has no case '{directive.case}'", directive.index)
            if directive.field is None:
                for key, value in directive.args.items():
                    if key not in CASE_DIRECTIVES:
                        raise DeriveError(f"unknown case directive '{key}'", directive.index)
                    if value is None:
                        raise DeriveError("'rename' requires a value", directive.index)
                    case.rename = value
                continue
            fields, owner = case.fields, f"{block.name}.{case.name}"
        else:
            if repr.kind != "record":
                raise DeriveError(
                    f"field directive on enum '{block.name}' must name a case", directive.index
                )
            fields, owner = repr.fields, block.name

        spec = lookup_field(fields, directive.field)
        if spec is None:
            raise DeriveError(f"'{owner}' has no field '{directive.field}'", directive.index)
        apply_field_directive(spec, fields, directive)

    if repr.kind == "record":
        resolve_field_defaults(repr.fields, block.name)
    else:
        tags: Dict[str, str] = {}
        for case in repr.cases:
            resolve_field_defaults(case.fields, f"{block.name}.{case.name}")
            tag = case.wire_name.casefold() if tag_match == "ignore_case" else case.wire_name
            if tag in tags:
                raise DeriveError(
                    f"cases '{tags[tag]}' and '{case.name}' of enum '{block.name}' share the tag '{case.wire_name}'",
                    case.index,
                )
            tags[tag] = case.name
    return tag_match


def build_derive_data(block: DeclBlock) -> DeriveData:
    for param in block.generics:
        check_name(param.name, "generic parameter", block.start)
    repr = build_representation(block)
    tag_match = resolve_directives(block, repr)
    return DeriveData(
        ident=block.name,
        repr=repr,
        generics=tuple(block.generics),
        derives=tuple(block.derives),
        tag_match=tag_match,
        index=block.start,
    )


def iter_shapes(repr: Representation) -> Iterator[Tuple[str, FieldsRepr]]:
    if repr.kind == "record":
        yield "", repr.fields
        return
    for case in repr.cases:
        yield case.name, case.fields


def iter_field_specs(repr: Representation) -> Iterator[FieldSpec]:
    for _, shape in iter_shapes(repr):
        yield from shape.fields


def type_names(ref: TypeRef) -> Iterator[str]:
    yield ref.name
    for arg in ref.args:
        yield from type_names(arg)


def nested_method(derive: str, target: DeriveData) -> Tuple[str, str] | None:
    """Return (method derive, method name) a field of type ``target`` is converted with."""
    if derive == "OwnedToVariant":
        for candidate in ("OwnedToVariant", "ToVariant"):
            if candidate in target.derives:
                return candidate, METHOD_NAMES[candidate]
        return None
    if derive in target.derives:
        return derive, METHOD_NAMES[derive]
    return None


def check_type_ref(ref: TypeRef, data: DeriveData, registry: Dict[str, DeriveData], owner: str, spec: FieldSpec) -> None:
    params = {p.name for p in data.generics}
    if ref.name in params:
        if ref.args:
            raise DeriveError(f"generic parameter '{ref.name}' takes no type arguments", ref.index)
    elif ref.name in BUILTIN_TYPES:
        arity = BUILTIN_TYPES[ref.name][0]
        if len(ref.args) != arity:
            raise DeriveError(f"type '{ref.name}' expects {arity} type argument(s), got {len(ref.args)}", ref.index)
        if ref.name == "dict" and (ref.args[0].name != "str" or ref.args[0].args):
            raise DeriveError("dict keys must be 'str'", ref.args[0].index)
    elif ref.name in registry:
        target = registry[ref.name]
        if len(ref.args) != len(target.generics):
            raise DeriveError(
                f"type '{ref.name}' expects {len(target.generics)} type argument(s), got {len(ref.args)}",
                ref.index,
            )
        if not spec.skip:
            for derive in data.derives:
                if nested_method(derive, target) is None:
                    raise DeriveError(
                        f"field '{spec.name}' of '{owner}' uses '{ref.name}', which does not derive {derive}",
                        ref.index,
                    )
    else:
        raise DeriveError(f"unknown type '{ref.name}' in field '{spec.name}' of '{owner}'", ref.index)

    for arg in ref.args:
        check_type_ref(arg, data, registry, owner, spec)


def wire_keys(shape: FieldsRepr, registry: Dict[str, DeriveData], owner: str, active: Tuple[str, ...]) -> List[Tuple[str, FieldSpec]]:
    keys: List[Tuple[str, FieldSpec]] = []
    for spec in shape.fields:
        if spec.skip:
            continue
        if not spec.flatten:
            keys.append((spec.wire_name, spec))
            continue
        target = registry.get(spec.type_ref.name)
        if target is None or target.repr.kind != "record" or target.repr.fields.kind != "named":
            raise DeriveError(
                f"flattened field '{spec.name}' of '{owner}' must have a declared struct type with named fields",
                spec.index,
            )
        if target.ident in active:
            raise DeriveError(f"flattened field '{spec.name}' of '{owner}' is recursive", spec.index)
        keys.extend((key, spec) for key, _ in wire_keys(target.repr.fields, registry, target.ident, active + (target.ident,)))
    return keys


def module_classes(data: DeriveData) -> List[str]:
    """Names of the classes a declaration binds at module level."""
    names = [data.ident]
    if data.repr.kind == "union":
        names.extend(case_class_name(data, case) for case in data.repr.cases)
    return names


def check_module_names(registry: Dict[str, DeriveData]) -> None:
    owners: Dict[str, str] = {}
    for data in registry.values():
        for name in module_classes(data):
            if name in owners:
                raise DeriveError(
                    f"'{data.ident}' defines class '{name}', which is already defined by '{owners[name]}'",
                    data.index,
                )
            owners[name] = data.ident

    for data in registry.values():
        for param in data.generics:
            if param.name in owners or param.name in BUILTIN_TYPES:
                raise DeriveError(f"generic parameter '{param.name}' of '{data.ident}' shadows a type name", data.index)


def check_declaration(data: DeriveData, registry: Dict[str, DeriveData]) -> None:
    for case_name, shape in iter_shapes(data.repr):
        owner = f"{data.ident}.{case_name}" if case_name else data.ident
        for spec in shape.fields:
            check_type_ref(spec.type_ref, data, registry, owner, spec)
        if shape.kind != "named":
            continue
        seen: Dict[str, FieldSpec] = {}
        for key, spec in wire_keys(shape, registry, owner, (data.ident,)):
            if key in seen:
                raise DeriveError(f"duplicate wire key '{key}' in '{owner}'", spec.index)
            seen[key] = spec


def build_registry(blocks: Sequence[DeclBlock]) -> Dict[str, DeriveData]:
    registry: Dict[str, DeriveData] = {}
    for block in blocks:
        if block.name in BUILTIN_TYPES:
            raise DeriveError(f"'{block.name}' shadows a builtin type", block.start)
        if block.name in registry:
            raise DeriveError(f"duplicate declaration of '{block.name}'", block.start)
        check_name(block.name, "type", block.start)
        registry[block.name] = build_derive_data(block)

    check_module_names(registry)
    for data in registry.values():
        check_declaration(data, registry)
    return registry


# ---------------------------------------------------------------------------
# Bound extension


def extend_bounds(generics: Sequence[GenericParam], repr: Representation, capability: str) -> Tuple[GenericParam, ...]:
    """Add ``capability`` to every generic parameter that occurs in a field type.

    Occurrence is checked over all fields, including skipped ones. Bounds the
    author declared are kept in front.
    """
    used = {name for spec in iter_field_specs(repr) for name in type_names(spec.type_ref)}
    extended: List[GenericParam] = []
    for param in generics:
        if param.name in used and capability not in param.bounds:
            param = GenericParam(name=param.name, bounds=param.bounds + (capability,))
        extended.append(param)
    return tuple(extended)


def parse_derive_input(base: DeriveData, derive: str) -> DeriveData:
    return dataclasses.replace(base, generics=extend_bounds(base.generics, base.repr, derive))


def capability_params(data: DeriveData, derive: str) -> List[str]:
    return [p.name for p in data.generics if derive in p.bounds]


def verify_bounds(data: DeriveData, derive: str) -> None:
    params = {p.name: p for p in data.generics}
    for case_name, shape in iter_shapes(data.repr):
        owner = f"{data.ident}.{case_name}" if case_name else data.ident
        for spec in shape.fields:
            if spec.skip:
                continue
            for name in type_names(spec.type_ref):
                if name in params and derive not in params[name].bounds:
                    raise DeriveError(
                        f"generic parameter '{name}' is used by field '{spec.name}' of '{owner}' "
                        f"but is not bound by {derive}",
                        spec.index,
                    )


# ---------------------------------------------------------------------------
# Code generation


def py_str(value: str) -> str:
    return json.dumps(value)


def annotation(ref: TypeRef) -> str:
    base = BUILTIN_TYPES[ref.name][1] if ref.name in BUILTIN_TYPES else ref.name
    if not ref.args:
        return base
    return f"{base}[{', '.join(annotation(a) for a in ref.args)}]"


def nested_kwargs(ref: TypeRef, derive: str, data: DeriveData, registry: Dict[str, DeriveData]) -> Tuple[str, str]:
    target = registry[ref.name]
    method_derive, method = nested_method(derive, target)
    bounded = set(capability_params(parse_derive_input(target, method_derive), method_derive))
    prefix = "from_" if DERIVES[derive][0] == "from" else "to_"
    kwargs: List[str] = []
    for param, arg in zip(target.generics, ref.args):
        if param.name not in bounded:
            continue
        if prefix == "from_":
            kwargs.append(f"from_{param.name}={decoder_expr(arg, data, registry)}")
        else:
            kwargs.append(f"to_{param.name}={encoder_expr(arg, derive, data, registry)}")
    return method, ", ".join(kwargs)


def encoder_expr(ref: TypeRef, derive: str, data: DeriveData, registry: Dict[str, DeriveData]) -> str:
    if ref.name in {p.name for p in data.generics}:
        return f"to_{ref.name}"
    if ref.name in SCALAR_ENCODERS:
        return SCALAR_ENCODERS[ref.name]
    if ref.name == "Variant":
        return "_vd.copy_variant" if derive == "ToVariant" else "_vd.move_variant"
    if ref.name == "list":
        return f"_vd.encode_sequence({encoder_expr(ref.args[0], derive, data, registry)})"
    if ref.name == "dict":
        return f"_vd.encode_map({encoder_expr(ref.args[1], derive, data, registry)})"
    if ref.name == "Optional":
        return f"_vd.encode_optional({encoder_expr(ref.args[0], derive, data, registry)})"
    method, kwargs = nested_kwargs(ref, derive, data, registry)
    if kwargs:
        return f"functools.partial({ref.name}.{method}, {kwargs})"
    return f"{ref.name}.{method}"


def encode_value(ref: TypeRef, value: str, derive: str, data: DeriveData, registry: Dict[str, DeriveData]) -> str:
    if ref.name in registry and ref.name not in {p.name for p in data.generics}:
        method, kwargs = nested_kwargs(ref, derive, data, registry)
        return f"{value}.{method}({kwargs})"
    return f"{encoder_expr(ref, derive, data, registry)}({value})"


def decoder_expr(ref: TypeRef, data: DeriveData, registry: Dict[str, DeriveData]) -> str:
    if ref.name in {p.name for p in data.generics}:
        return f"from_{ref.name}"
    if ref.name in SCALAR_DECODERS:
        return SCALAR_DECODERS[ref.name]
    if ref.name == "list":
        return f"_vd.decode_sequence({decoder_expr(ref.args[0], data, registry)})"
    if ref.name == "dict":
        return f"_vd.decode_map({decoder_expr(ref.args[1], data, registry)})"
    if ref.name == "Optional":
        return f"_vd.decode_optional({decoder_expr(ref.args[0], data, registry)})"
    method, kwargs = nested_kwargs(ref, "FromVariant", data, registry)
    if kwargs:
        return f"functools.partial({ref.name}.{method}, {kwargs})"
    return f"{ref.name}.{method}"


def render_shape_encoding(
    shape: FieldsRepr, derive: str, data: DeriveData, registry: Dict[str, DeriveData], lead: str, indent: str
) -> List[str]:
    if shape.kind == "unit":
        return [f"{indent}{lead}_vd.make_null()"]

    entries: List[str] = []
    for spec in shape.fields:
        if spec.skip:
            continue
        value = encode_value(spec.type_ref, f"self.{spec.name}", derive, data, registry)
        if shape.kind == "tuple":
            entries.append(value)
        elif spec.flatten:
            entries.append(f"*_vd.map_entries({value})")
        else:
            entries.append(f"({py_str(spec.wire_name)}, {value})")

    opener = "_vd.make_sequence([" if shape.kind == "tuple" else "_vd.make_map(["
    if not entries:
        return [f"{indent}{lead}{opener}])"]
    lines = [f"{indent}{lead}{opener}"]
    lines.extend(f"{indent}    {entry}," for entry in entries)
    lines.append(f"{indent}])")
    return lines


def render_shape_decoding(
    shape: FieldsRepr, data: DeriveData, registry: Dict[str, DeriveData], source: str, ctor: str, what: str, indent: str
) -> List[str]:
    label = py_str(what)
    if shape.kind == "unit":
        return [f"{indent}_vd.expect_null({source}, {label})", f"{indent}return {ctor}()"]

    lines: List[str] = []
    if shape.kind == "tuple":
        lines.append(f"{indent}items = _vd.expect_sequence({source}, {label})")
    else:
        lines.append(f"{indent}entries = _vd.expect_map({source}, {label})")

    args: List[str] = []
    position = 0
    for spec in shape.fields:
        if spec.skip:
            args.append(f"{spec.name}=({spec.default.expr})")
            continue
        decoder = decoder_expr(spec.type_ref, data, registry)
        default = f", default=lambda: ({spec.default.expr})" if spec.default is not None else ""
        if shape.kind == "tuple":
            args.append(f"{spec.name}=_vd.positional_field(items, {position}, {decoder}{default}, what={label})")
            position += 1
        elif spec.flatten:
            args.append(f"{spec.name}=_vd.flattened_field({source}, {py_str(spec.name)}, {decoder}, what={label})")
        else:
            args.append(
                f"{spec.name}=_vd.named_field(entries, {py_str(spec.wire_name)}, {decoder}{default}, what={label})"
            )

    lines.append(f"{indent}return {ctor}(")
    lines.extend(f"{indent}    {arg}," for arg in args)
    lines.append(f"{indent})")
    return lines


def case_class_name(data: DeriveData, case: Case) -> str:
    return f"{data.ident}__{case.name}"


def render_to_method(data: DeriveData, registry: Dict[str, DeriveData], derive: str) -> List[str]:
    verify_bounds(data, derive)
    params = capability_params(data, derive)
    kw = "".join(f", to_{p}" for p in params)
    if kw:
        kw = ", *" + kw

    lines = [f"    def {METHOD_NAMES[derive]}(self{kw}) -> typing.Any:"]
    if data.repr.kind == "record":
        lines.extend(render_shape_encoding(data.repr.fields, derive, data, registry, "return ", "        "))
        return lines

    for case in data.repr.cases:
        lines.append(f"        if isinstance(self, {case_class_name(data, case)}):")
        if case.fields.kind == "unit":
            lines.append(f"            return _vd.make_map([({py_str(case.wire_name)}, _vd.make_null())])")
            continue
        lines.extend(render_shape_encoding(case.fields, derive, data, registry, "payload = ", "            "))
        lines.append(f"            return _vd.make_map([({py_str(case.wire_name)}, payload)])")
    lines.append(f'        raise TypeError(f"{{type(self).__name__}} is not a case of {data.ident}")')
    return lines


def render_from_method(data: DeriveData, registry: Dict[str, DeriveData]) -> List[str]:
    verify_bounds(data, "FromVariant")
    params = capability_params(data, "FromVariant")
    kw = "".join(f", from_{p}" for p in params)
    if kw:
        kw = ", *" + kw

    lines = [
        "    @classmethod",
        f"    def from_variant(cls, variant: typing.Any{kw}) -> {py_str(data.ident)}:",
    ]
    if data.repr.kind == "record":
        lines.extend(render_shape_decoding(data.repr.fields, data, registry, "variant", "cls", data.ident, "        "))
        return lines

    lines.append(f"        tag, value = _vd.expect_single_entry(variant, {py_str(data.ident)})")
    ignore_case = data.tag_match == "ignore_case"
    if ignore_case:
        lines.append("        folded = _vd.fold_tag(tag)")
    for case in data.repr.cases:
        if ignore_case:
            lines.append(f"        if folded == {py_str(case.wire_name.casefold())}:")
        else:
            lines.append(f"        if tag == {py_str(case.wire_name)}:")
        lines.extend(
            render_shape_decoding(
                case.fields,
                data,
                registry,
                "value",
                case_class_name(data, case),
                f"{data.ident}.{case.name}",
                "            ",
            )
        )
    lines.append(f"        raise _vd.DecodeError.unknown_variant(tag, {py_str(data.ident)})")
    return lines


def render_field_annotations(shape: FieldsRepr) -> List[str]:
    return [f"    {spec.name}: {py_str(annotation(spec.type_ref))}" for spec in shape.fields]


def py_tuple(items: Sequence[str]) -> str:
    if len(items) == 1:
        return f"({items[0]},)"
    return f"({', '.join(items)})"


def render_bounds(passes: Sequence[Tuple[str, DeriveData]]) -> str:
    merged: Dict[str, List[str]] = {}
    for _, data in passes:
        for param in data.generics:
            bounds = merged.setdefault(param.name, [])
            bounds.extend(b for b in param.bounds if b not in bounds)
    items = ", ".join(f"{py_str(name)}: {py_tuple([py_str(b) for b in bounds])}" for name, bounds in merged.items())
    return f"    __variant_bounds__ = {{{items}}}"


def render_methods(passes: Sequence[Tuple[str, DeriveData]], registry: Dict[str, DeriveData]) -> List[str]:
    lines: List[str] = []
    for derive, data in passes:
        lines.append("")
        if derive == "FromVariant":
            lines.extend(render_from_method(data, registry))
        else:
            lines.extend(render_to_method(data, registry, derive))
    return lines


def render_declaration(base: DeriveData, registry: Dict[str, DeriveData]) -> str:
    # each requested derive runs over its own bound-extended copy
    passes = [(derive, parse_derive_input(base, derive)) for derive in base.derives]

    lines: List[str] = []
    generic_base = ""
    if base.generics:
        for param in base.generics:
            lines.append(f"{param.name} = typing.TypeVar({py_str(param.name)})")
        lines.append("")
        lines.append("")
        generic_base = f"(typing.Generic[{', '.join(p.name for p in base.generics)}])"

    if base.repr.kind == "record":
        lines.append("@dataclasses.dataclass")
        lines.append(f"class {base.ident}{generic_base}:")
        body = render_field_annotations(base.repr.fields)
        if base.generics:
            if body:
                body.append("")
            body.append(render_bounds(passes))
        methods = render_methods(passes, registry)
        if not body:
            methods = methods[1:]
        lines.extend(body + methods)
        return "\n".join(lines)

    lines.append(f"class {base.ident}{generic_base}:")
    body = [render_bounds(passes)] if base.generics else []
    methods = render_methods(passes, registry)
    if not body:
        methods = methods[1:]
    lines.extend(body + methods)

    case_base = base.ident
    if base.generics:
        case_base = f"{base.ident}[{', '.join(p.name for p in base.generics)}]"
    for case in base.repr.cases:
        lines.append("")
        lines.append("")
        lines.append("@dataclasses.dataclass")
        lines.append(f"class {case_class_name(base, case)}({case_base}):")
        fields = render_field_annotations(case.fields)
        lines.extend(fields if fields else ["    pass"])

    lines.append("")
    lines.append("")
    for case in base.repr.cases:
        lines.append(f"{base.ident}.{case.name} = {case_class_name(base, case)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# File rendering and CLI


def missing_header_lines(source: str) -> List[str]:
    lines: List[str] = []
    for line in HEADER_IMPORTS:
        if not line:
            lines.append(line)
            continue
        if not re.search(rf"^\s*{re.escape(line)}\s*$", source, re.MULTILINE):
            lines.append(line)
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return lines


def apply_substitutions(source: str, blocks: Sequence[DeclBlock], rendered: Dict[str, str]) -> str:
    pieces: List[str] = []
    cursor = 0
    header = missing_header_lines(source)
    injected_header = False

    for block in blocks:
        pieces.append(source[cursor : block.start])
        replacement = rendered[block.name]
        if header and not injected_header:
            replacement = "\n".join(header) + "\n\n\n" + replacement
            injected_header = True
        pieces.append(replacement)
        cursor = block.end

    pieces.append(source[cursor:])
    return "".join(pieces)


def compute_file_digest(source_bytes: bytes) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(FORMAT_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(source_bytes)
    return h.hexdigest()


def generate_source(source_text: str) -> str:
    blocks = parse_all_decls(source_text)
    registry = build_registry(blocks)
    rendered = {name: render_declaration(data, registry) for name, data in registry.items()}
    return apply_substitutions(source_text, blocks, rendered)


def render_file(source_path: pathlib.Path, source_text: str, source_bytes: bytes) -> str:
    transformed = generate_source(source_text)
    digest = compute_file_digest(source_bytes)
    source_label = str(source_path)
    try:
        source_label = str(source_path.resolve().relative_to(pathlib.Path.cwd().resolve()))
    except ValueError:
        source_label = str(source_path.resolve())

    meta = (
        "# vderive-generated\n"
        f"# source: {source_label}\n"
        f"# generator_version: {GENERATOR_VERSION}\n"
        f"# format_version: {FORMAT_VERSION}\n"
        f"# digest: {digest}\n\n"
    )
    return meta + transformed


def extract_existing_digest(text: str) -> str | None:
    m = DIGEST_PATTERN.search(text)
    if not m:
        return None
    return m.group(1)


def run(args: argparse.Namespace) -> int:
    in_path = pathlib.Path(args.input)
    out_path = pathlib.Path(args.output)

    if not in_path.exists():
        print(f"error: input file does not exist: {in_path}", file=sys.stderr)
        return 1

    source_bytes = in_path.read_bytes()
    source_text = source_bytes.decode("utf-8")

    try:
        rendered = render_file(in_path, source_text, source_bytes)
    except ParseError as e:
        fail(in_path, source_text, e)
        return 1

    if args.check:
        if not out_path.exists():
            print(f"{out_path} is missing (run generator)", file=sys.stderr)
            return 1
        existing = out_path.read_text(encoding="utf-8")
        if existing != rendered:
            print(f"{out_path} is out of date (run generator)", file=sys.stderr)
            return 1
        print(f"up-to-date: {out_path}")
        return 0

    if out_path.exists():
        existing = out_path.read_text(encoding="utf-8")
        old_digest = extract_existing_digest(existing)
        new_digest = extract_existing_digest(rendered)
        if old_digest and new_digest and old_digest == new_digest:
            print(f"unchanged: {out_path}")
            return 0
        if existing == rendered:
            print(f"unchanged: {out_path}")
            return 0

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(rendered, encoding="utf-8")
    print(f"generated: {out_path}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate Variant conversions from .py.vd sources")
    parser.add_argument("--in", dest="input", required=True, help="Input .py.vd file")
    parser.add_argument("--out", dest="output", required=True, help="Output generated module")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    return run(build_arg_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())
