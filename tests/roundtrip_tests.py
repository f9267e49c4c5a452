#!/usr/bin/env python3

from __future__ import annotations

import importlib.util
import inspect
import itertools
import pathlib
import sys
import tempfile
import textwrap
import unittest

import vderive_gen
import vderive_runtime as vd
from vderive_runtime import DecodeError, ErrorKind

SOURCE = textwrap.dedent(
    """
    # Fixture types exercised by the round-trip tests.

    DEFAULT_TAGS = ["core"]


    def default_origin():
        return Point(x=0, y=0)


    @derive(ToVariant, OwnedToVariant, FromVariant)
    struct Point {
        x: int,
        y: int,
    }


    @derive(ToVariant, FromVariant)
    struct Pair(int, @variant(default) str);


    @derive(ToVariant, FromVariant)
    struct Span(int, @variant(skip) int, int);


    @derive(ToVariant, FromVariant)
    struct Marker;


    @derive(ToVariant, FromVariant)
    enum Shape {
        Circle { r: float },
        Segment(float, float),
        @variant(rename="nothing")
        Empty,
    }


    @derive(ToVariant, FromVariant)
    @variant(field="cache", skip, default="{}")
    struct Config {
        @variant(rename="display-name")
        name: str,
        @variant(default="list(DEFAULT_TAGS)")
        tags: list[str],
        origin: Optional[Point],
        cache: dict[str, int],
        @variant(skip, default="default_origin()")
        anchor: Point,
    }


    @derive(ToVariant, OwnedToVariant, FromVariant)
    struct Box[T, M] {
        value: T,
        label: str,
    }


    @derive(ToVariant, OwnedToVariant, FromVariant)
    struct Crate {
        boxes: list[Box[int, str]],
        extra: Variant,
        lookup: dict[str, Shape],
    }


    @derive(ToVariant, FromVariant)
    struct Meta {
        author: str,
        version: int,
    }


    @derive(ToVariant, FromVariant)
    struct Document {
        title: str,
        @variant(flatten)
        meta: Meta,
    }


    @derive(ToVariant, FromVariant)
    @variant(tag_match="ignore_case")
    enum Level {
        Low,
        High,
    }


    @derive(ToVariant, FromVariant)
    enum Maybe[T] {
        Just(T),
        Nothing,
    }
    """
).strip() + "\n"

_counter = itertools.count()


def load_generated(source: str, tmp: pathlib.Path):
    name = f"vderive_fixture_{next(_counter)}"
    out_path = tmp / f"{name}.py"
    out_path.write_text(vderive_gen.generate_source(source), encoding="utf-8")
    spec = importlib.util.spec_from_file_location(name, out_path)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    return module


class RoundTripTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls._tmp = tempfile.TemporaryDirectory()
        cls.m = load_generated(SOURCE, pathlib.Path(cls._tmp.name))

    @classmethod
    def tearDownClass(cls) -> None:
        sys.modules.pop(cls.m.__name__, None)
        cls._tmp.cleanup()

    def assertDecodeError(self, kind: ErrorKind, fn, *args, **kwargs) -> DecodeError:
        with self.assertRaises(DecodeError) as ctx:
            fn(*args, **kwargs)
        self.assertEqual(ctx.exception.kind, kind, msg=str(ctx.exception))
        return ctx.exception

    def test_named_record_encodes_to_map(self) -> None:
        self.assertEqual(self.m.Point(x=3, y=4).to_variant(), {"x": 3, "y": 4})

    def test_named_record_decodes_with_reordered_keys(self) -> None:
        self.assertEqual(self.m.Point.from_variant({"y": 4, "x": 3}), self.m.Point(x=3, y=4))

    def test_named_record_ignores_unknown_keys(self) -> None:
        self.assertEqual(self.m.Point.from_variant({"x": 1, "y": 2, "z": 3}), self.m.Point(x=1, y=2))

    def test_named_record_missing_key(self) -> None:
        err = self.assertDecodeError(ErrorKind.MISSING_FIELD, self.m.Point.from_variant, {"x": 1})
        self.assertEqual(err.field, "y")

    def test_named_record_field_failure_wraps_cause(self) -> None:
        err = self.assertDecodeError(ErrorKind.FIELD_DECODE_FAILED, self.m.Point.from_variant, {"x": "a", "y": 1})
        self.assertEqual(err.field, "x")
        self.assertEqual(err.cause.kind, ErrorKind.SHAPE_MISMATCH)
        self.assertIs(err.__cause__, err.cause)

    def test_named_record_rejects_non_map(self) -> None:
        self.assertDecodeError(ErrorKind.SHAPE_MISMATCH, self.m.Point.from_variant, [3, 4])

    def test_owned_flavor_produces_same_shape(self) -> None:
        point = self.m.Point(x=1, y=2)
        self.assertEqual(point.owned_to_variant(), point.to_variant())

    def test_tuple_record_positional(self) -> None:
        self.assertEqual(self.m.Pair(1, "a").to_variant(), [1, "a"])
        self.assertEqual(self.m.Pair.from_variant([1, "a"]), self.m.Pair(1, "a"))

    def test_tuple_record_trailing_default_and_extra_entries(self) -> None:
        self.assertEqual(self.m.Pair.from_variant([7]), self.m.Pair(7, ""))
        self.assertEqual(self.m.Pair.from_variant([7, "b", True, None]), self.m.Pair(7, "b"))

    def test_tuple_record_too_short(self) -> None:
        err = self.assertDecodeError(ErrorKind.MISSING_FIELD, self.m.Pair.from_variant, [])
        self.assertEqual(err.field, 0)

    def test_tuple_record_rejects_map(self) -> None:
        self.assertDecodeError(ErrorKind.SHAPE_MISMATCH, self.m.Pair.from_variant, {"0": 1})

    def test_tuple_record_position_failure(self) -> None:
        err = self.assertDecodeError(ErrorKind.FIELD_DECODE_FAILED, self.m.Pair.from_variant, [1, 2])
        self.assertEqual(err.field, 1)

    def test_tuple_skip_is_not_emitted(self) -> None:
        self.assertEqual(self.m.Span(1, 99, 3).to_variant(), [1, 3])
        self.assertEqual(self.m.Span.from_variant([1, 3]), self.m.Span(1, 0, 3))

    def test_unit_record(self) -> None:
        self.assertIsNone(self.m.Marker().to_variant())
        self.assertEqual(self.m.Marker.from_variant(None), self.m.Marker())

    def test_unit_record_requires_null(self) -> None:
        self.assertDecodeError(ErrorKind.SHAPE_MISMATCH, self.m.Marker.from_variant, {})
        self.assertDecodeError(ErrorKind.SHAPE_MISMATCH, self.m.Marker.from_variant, 0)

    def test_union_external_tagging(self) -> None:
        Shape = self.m.Shape
        self.assertEqual(Shape.Circle(r=2.0).to_variant(), {"Circle": {"r": 2.0}})
        self.assertEqual(Shape.Segment(1.0, 2.5).to_variant(), {"Segment": [1.0, 2.5]})
        self.assertEqual(Shape.Empty().to_variant(), {"nothing": None})

    def test_union_round_trip(self) -> None:
        Shape = self.m.Shape
        for value in (Shape.Circle(r=2.0), Shape.Segment(0.5, 1.5), Shape.Empty()):
            encoded = value.to_variant()
            self.assertEqual(len(encoded), 1)
            self.assertEqual(Shape.from_variant(encoded), value)

    def test_union_decodes_integer_as_float(self) -> None:
        decoded = self.m.Shape.from_variant({"Circle": {"r": 2}})
        self.assertEqual(decoded, self.m.Shape.Circle(r=2.0))
        self.assertIsInstance(decoded.r, float)

    def test_union_unknown_tag(self) -> None:
        err = self.assertDecodeError(ErrorKind.UNKNOWN_VARIANT, self.m.Shape.from_variant, {"Square": None})
        self.assertEqual(err.tag, "Square")

    def test_union_tag_match_is_exact_by_default(self) -> None:
        self.assertDecodeError(ErrorKind.UNKNOWN_VARIANT, self.m.Shape.from_variant, {"circle": {"r": 1.0}})
        self.assertDecodeError(ErrorKind.UNKNOWN_VARIANT, self.m.Shape.from_variant, {"Empty": None})

    def test_union_requires_single_entry(self) -> None:
        Shape = self.m.Shape
        self.assertDecodeError(ErrorKind.SHAPE_MISMATCH, Shape.from_variant, {})
        self.assertDecodeError(ErrorKind.SHAPE_MISMATCH, Shape.from_variant, {"Circle": {"r": 1.0}, "nothing": None})
        self.assertDecodeError(ErrorKind.SHAPE_MISMATCH, Shape.from_variant, "Circle")

    def test_union_unit_case_requires_null(self) -> None:
        self.assertDecodeError(ErrorKind.SHAPE_MISMATCH, self.m.Shape.from_variant, {"nothing": {}})

    def test_union_ignore_case_opt_in(self) -> None:
        Level = self.m.Level
        self.assertEqual(Level.High().to_variant(), {"High": None})
        self.assertEqual(Level.from_variant({"HIGH": None}), Level.High())
        self.assertEqual(Level.from_variant({"low": None}), Level.Low())

    def test_skip_and_default(self) -> None:
        Config, Point = self.m.Config, self.m.Point
        config = Config(name="n", tags=["a"], origin=Point(x=1, y=2), cache={"k": 1}, anchor=Point(x=5, y=5))
        encoded = config.to_variant()
        self.assertEqual(encoded, {"display-name": "n", "tags": ["a"], "origin": {"x": 1, "y": 2}})

        decoded = Config.from_variant(encoded)
        self.assertEqual(decoded.cache, {})
        self.assertEqual(decoded.anchor, Point(x=0, y=0))

        defaulted = Config.from_variant({"display-name": "m", "origin": None})
        self.assertEqual(defaulted.tags, ["core"])
        self.assertIsNone(defaulted.origin)
        self.assertEqual(defaulted.anchor, Point(x=0, y=0))

    def test_skipped_field_never_read(self) -> None:
        decoded = self.m.Config.from_variant({"display-name": "n", "origin": None, "cache": {"k": 2}})
        self.assertEqual(decoded.cache, {})

    def test_round_trip_with_default_values(self) -> None:
        Config, Point = self.m.Config, self.m.Point
        config = Config(name="n", tags=[], origin=None, cache={}, anchor=Point(x=0, y=0))
        self.assertEqual(Config.from_variant(config.to_variant()), config)

    def test_renamed_key_is_required_under_new_name(self) -> None:
        err = self.assertDecodeError(
            ErrorKind.MISSING_FIELD, self.m.Config.from_variant, {"name": "n", "origin": None}
        )
        self.assertEqual(err.field, "display-name")

    def test_generic_capabilities(self) -> None:
        Box = self.m.Box
        box = Box(value=5, label="l")
        self.assertEqual(box.to_variant(to_T=vd.make_number), {"value": 5, "label": "l"})
        self.assertEqual(Box.from_variant({"value": 5, "label": "l"}, from_T=vd.decode_int), box)
        with self.assertRaises(TypeError):
            box.to_variant()

    def test_generic_bounds_skip_phantom_parameters(self) -> None:
        Box = self.m.Box
        self.assertEqual(
            Box.__variant_bounds__,
            {"T": ("ToVariant", "OwnedToVariant", "FromVariant"), "M": ()},
        )
        self.assertIn("to_T", inspect.signature(Box.to_variant).parameters)
        self.assertNotIn("to_M", inspect.signature(Box.to_variant).parameters)
        self.assertNotIn("from_M", inspect.signature(Box.from_variant).parameters)

    def test_nested_generic_and_passthrough_variant(self) -> None:
        Crate, Box, Shape = self.m.Crate, self.m.Box, self.m.Shape
        extra = {"payload": [1, 2, {"deep": True}]}
        crate = Crate(boxes=[Box(value=1, label="a")], extra=extra, lookup={"c": Shape.Circle(r=1.0)})

        borrowed = crate.to_variant()
        self.assertEqual(
            borrowed,
            {"boxes": [{"value": 1, "label": "a"}], "extra": extra, "lookup": {"c": {"Circle": {"r": 1.0}}}},
        )
        self.assertIsNot(borrowed["extra"], extra)

        owned = crate.owned_to_variant()
        self.assertEqual(owned, borrowed)
        self.assertIs(owned["extra"], extra)

        self.assertEqual(Crate.from_variant(borrowed), crate)

    def test_nested_element_failure_path(self) -> None:
        err = self.assertDecodeError(
            ErrorKind.FIELD_DECODE_FAILED,
            self.m.Crate.from_variant,
            {"boxes": [{"value": "x", "label": "l"}], "extra": None, "lookup": {}},
        )
        self.assertEqual(err.field, "boxes")
        self.assertEqual(err.cause.field, 0)
        self.assertEqual(err.cause.cause.field, "value")

    def test_flatten(self) -> None:
        Document, Meta = self.m.Document, self.m.Meta
        doc = Document(title="t", meta=Meta(author="a", version=2))
        self.assertEqual(doc.to_variant(), {"title": "t", "author": "a", "version": 2})
        self.assertEqual(Document.from_variant({"version": 2, "author": "a", "title": "t"}), doc)

    def test_flatten_missing_nested_key(self) -> None:
        err = self.assertDecodeError(
            ErrorKind.FIELD_DECODE_FAILED, self.m.Document.from_variant, {"title": "t", "version": 1}
        )
        self.assertEqual(err.field, "meta")
        self.assertEqual(err.cause.kind, ErrorKind.MISSING_FIELD)
        self.assertEqual(err.cause.field, "author")

    def test_generic_union(self) -> None:
        Maybe = self.m.Maybe
        self.assertEqual(Maybe.Just(5).to_variant(to_T=vd.make_number), {"Just": [5]})
        self.assertEqual(Maybe.Nothing().to_variant(to_T=vd.make_number), {"Nothing": None})
        self.assertEqual(Maybe.from_variant({"Just": [5]}, from_T=vd.decode_int), Maybe.Just(5))
        self.assertEqual(Maybe.from_variant({"Nothing": None}, from_T=vd.decode_int), Maybe.Nothing())

    def test_case_aliases(self) -> None:
        self.assertIs(self.m.Shape.Circle, self.m.Shape__Circle)
        self.assertTrue(issubclass(self.m.Shape.Empty, self.m.Shape))


if __name__ == "__main__":
    unittest.main()
