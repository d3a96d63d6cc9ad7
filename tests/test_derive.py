import dataclasses
import logging
import typing

import pytest

from hypothesis import given
from hypothesis.strategies import text

from shapeparse import (
    AnyElement,
    Box,
    Character,
    Either,
    ElementError,
    EndOfInput,
    Field,
    Left,
    NonEmpty,
    Not,
    Opt,
    ParseError,
    Parser,
    ProductSchema,
    Right,
    SchemaError,
    Seq,
    Sum,
    SumSchema,
    TextCursor,
    UnexpectedElement,
    UnexpectedMatch,
    derive,
    parse,
    parser_for,
    schema_of,
    try_parse,
)
from shapeparse.cursor import EOF


class Reads:
    def __init__(self):
        self.positions: list[int] = []
        self.snapshots = 0


class CountingCursor(TextCursor):
    def __init__(self, text: str, position: int = 0, reads: Reads | None = None):
        super().__init__(text, position)
        self.reads = reads if reads is not None else Reads()

    def next(self):
        position = self.position
        item = super().next()
        if item is not EOF:
            self.reads.positions.append(position)
        return item

    def snapshot(self):
        self.reads.snapshots += 1
        return CountingCursor(self.text, self.position, self.reads)


class Recorder(Parser):
    """Logs (name, position) every time it's asked to parse."""

    def __init__(self, name: str, events: list, parser: Parser):
        self.name = name
        self.events = events
        self.parser = parser

    @property
    def error_type(self):
        return self.parser.error_type

    def try_parse(self, cursor):
        self.events.append((self.name, cursor.position))
        return self.parser.try_parse(cursor)

    def parse(self, cursor):
        self.events.append((self.name, cursor.position))
        return self.parser.parse(cursor)


def char(c: str) -> Parser:
    return parser_for(Character[c])


def outcome(result):
    if isinstance(result, ParseError):
        return ("error", result)
    if result is None:
        return ("miss",)
    cursor, value = result
    return ("ok", cursor.position, value)


type AnyChar = str
type Parens = tuple[Character["("], Box[Parens] | None, Character[")"]]
type Bad = tuple[Character["a"], Bad | None]


@derive
class XY(Sum):
    class X:
        char: Character["x"]

    class Y:
        char: Character["y"]


@derive
class Triple:
    a: Character["a"]
    b: Character["b"]
    c: Character["c"]


@derive
class Pair(Sum):
    class AB:
        a: Character["a"]
        b: Character["b"]

    class AC:
        a: Character["a"]
        c: Character["c"]

    class A:
        a: Character["a"]


@derive
class Sign(Sum):
    class Plus:
        char: Character["+"]

    class Minus:
        char: Character["-"]

    class Nothing:
        pass


@derive
class Empty:
    pass


@derive
class Nested:
    open: Character["("]
    inner: Box["Nested"] | None
    close: Character[")"]


@derive
class LeftLoop:
    again: Box["LeftLoop"]
    char: Character["a"]


@derive
class GuardedFirst(Sum):
    class NotA:
        guard: Not[Character["a"]]
        char: AnyChar

    class A:
        char: Character["a"]


@derive
class GuardedLast(Sum):
    class A:
        char: Character["a"]

    class NotA:
        guard: Not[Character["a"]]
        char: AnyChar


###############################################################################
# Products
###############################################################################
def test_product_parses_fields_in_order():
    cursor, value = parse(Triple, "abcd")
    assert value == Triple(Character["a"](), Character["b"](), Character["c"]())
    assert cursor.remaining() == "d"


def test_product_stops_at_first_failing_field():
    cursor = CountingCursor("axc")
    result = parser_for(Triple).parse(cursor)
    assert result == UnexpectedElement(expected="b", actual="x")
    assert cursor.reads.positions == [0, 1]
    assert try_parse(Triple, "axc") is None


def test_product_never_snapshots():
    cursor = CountingCursor("abc")
    parser_for(Triple).parse(cursor)
    assert cursor.reads.snapshots == 0

    plan = parser_for(Triple).plan
    assert plan.kind == "product"
    assert not plan.requires_snapshot
    assert plan.error_type is ElementError


def test_empty_product_is_a_no_op():
    cursor = TextCursor("abc")
    result = parser_for(Empty).parse(cursor)
    assert result == (cursor, Empty())
    assert cursor.position == 0
    assert parser_for(Empty).error_type is None


def test_field_names_do_not_matter():
    @derive
    class Awkward:
        parse: Character["p"]
        field1: Character["f"]
        target0: Character["t"]
        input: Character["i"]

    cursor, value = parse(Awkward, "pfti")
    assert value.parse == Character["p"]()
    assert value.input == Character["i"]()
    assert cursor.remaining() == ""


###############################################################################
# Sums
###############################################################################
def test_sum_picks_the_variant_that_matches():
    _, value = parse(XY, "x")
    assert value == XY.X(Character["x"]())
    _, value = parse(XY, "y")
    assert value == XY.Y(Character["y"]())
    assert isinstance(value, XY.Y)


def test_sum_fails_with_the_last_variants_error():
    assert parse(XY, "z") == UnexpectedElement(expected="y", actual="z")
    assert parse(XY, "") == EndOfInput(expected="y")
    assert try_parse(XY, "z") is None


def test_variants_are_tried_in_declaration_order():
    events: list = []

    @derive
    class Order(Sum):
        class First:
            char: typing.Annotated[Character["x"], Recorder("first", events, char("x"))]

        class Second:
            char: typing.Annotated[Character["y"], Recorder("second", events, char("y"))]

    _, value = parse(Order, "y")
    assert isinstance(value, Order.Second)
    assert events == [("first", 0), ("second", 0)]

    events.clear()
    _, value = parse(Order, "x")
    assert isinstance(value, Order.First)
    assert events == [("first", 0)]


def test_first_match_wins():
    _, value = parse(Pair, "abc")
    assert isinstance(value, Pair.AB)


def test_failed_variant_does_not_move_the_cursor():
    cursor, value = parse(Pair, "ac")
    assert value == Pair.AC(Character["a"](), Character["c"]())
    assert cursor.remaining() == ""

    cursor, value = parse(Pair, "ax")
    assert value == Pair.A(Character["a"]())
    assert cursor.remaining() == "x"


def test_last_variant_is_never_snapshotted():
    plan = parser_for(Pair).plan
    assert [attempt.snapshot for attempt in plan.attempts] == [True, True, False]

    cursor = CountingCursor("a")
    parser_for(Pair).parse(cursor)
    assert cursor.reads.snapshots == 2

    cursor = CountingCursor("y")
    parser_for(XY).parse(cursor)
    assert cursor.reads.snapshots == 1


def test_single_variant_sum_does_not_snapshot():
    @derive
    class Only(Sum):
        class One:
            char: Character["1"]

    assert not parser_for(Only).plan.requires_snapshot
    assert parse(Only, "2") == UnexpectedElement(expected="1", actual="2")


def test_unit_variant_makes_the_sum_infallible():
    assert parser_for(Sign).error_type is None

    cursor = TextCursor("x")
    result = parser_for(Sign).parse(cursor)
    assert result == (cursor, Sign.Nothing())
    assert cursor.position == 0

    _, value = parse(Sign, "-")
    assert value == Sign.Minus(Character["-"]())


def test_unit_variant_shadows_later_variants(caplog):
    @derive
    class Shadowed(Sum):
        class A:
            char: Character["a"]

        class Always:
            pass

        class B:
            char: Character["b"]

    with caplog.at_level(logging.WARNING, logger="shapeparse.derive"):
        plan = parser_for(Shadowed).plan

    assert [attempt.name for attempt in plan.attempts] == ["A", "Always"]
    assert [attempt.snapshot for attempt in plan.attempts] == [True, False]
    assert "Always always matches, so B can never match" in caplog.text

    cursor, value = parse(Shadowed, "b")
    assert value == Shadowed.Always()
    assert cursor.position == 0


def test_sum_error_type_is_the_last_variants():
    assert parser_for(GuardedFirst).error_type is ElementError
    assert parser_for(GuardedLast).error_type is UnexpectedMatch

    assert parse(GuardedFirst, "") == EndOfInput(expected="a")
    assert parse(GuardedLast, "b")[1] == GuardedLast.NotA(None, "b")


###############################################################################
# Annotations
###############################################################################
def test_generic_annotations():
    cursor, value = try_parse(list[Character["a"]], "aab")
    assert value == [Character["a"](), Character["a"]()]
    assert cursor.remaining() == "b"

    _, value = parse(NonEmpty[Character["a"]], "aab")
    assert isinstance(value, NonEmpty)

    assert parse(NonEmpty[Character["a"]], "b") == UnexpectedElement(expected="a", actual="b")

    _, value = parse(Character["a"] | None, "b")
    assert value is None

    _, value = parse(tuple[Character["a"], str], "ab")
    assert value == (Character["a"](), "b")

    _, value = parse(tuple[()], "ab")
    assert value == ()

    _, value = parse(Either[Character["a"], Character["b"]], "b")
    assert value == Right(Character["b"]())

    _, value = parse(Either[Character["a"], Character["b"]], "a")
    assert value == Left(Character["a"]())

    assert parse(str, "") == EndOfInput(expected="any element")


def test_annotated_parser_overrides_the_type():
    digit = parser_for(str).map(int)
    _, value = parse(typing.Annotated[int, digit], "7")
    assert value == 7

    _, value = parse(typing.Annotated[Character["a"], "not a parser"], "a")
    assert value == Character["a"]()


def test_parsers_are_used_as_is():
    parser = Seq(char("a"), char("b"))
    assert parser_for(parser) is parser


def test_recursion_through_box():
    cursor, value = parse(Nested, "(())x")
    assert value == Nested(
        Character["("](),
        Nested(Character["("](), None, Character[")"]()),
        Character[")"](),
    )
    assert cursor.remaining() == "x"

    assert parse(Nested, "(()") == EndOfInput(expected=")")


def test_recursion_through_type_alias():
    cursor, value = parse(Parens, "(())")
    open, close = Character["("](), Character[")"]()
    assert value == (open, (open, None, close), close)
    assert cursor.remaining() == ""


def test_recursive_alias_without_box():
    with pytest.raises(SchemaError, match="contains itself"):
        parser_for(Bad)


def test_left_recursion_is_an_error():
    with pytest.raises(SchemaError, match="left-recursive"):
        parse(LeftLoop, "aaa")


###############################################################################
# Schemas and schema errors
###############################################################################
def test_schema_of_product():
    schema = schema_of(Triple)
    assert schema == ProductSchema(
        target=Triple,
        fields=(
            Field("a", Character["a"]),
            Field("b", Character["b"]),
            Field("c", Character["c"]),
        ),
    )


def test_schema_of_sum():
    schema = schema_of(Sign)
    assert isinstance(schema, SumSchema)
    assert [variant.name for variant in schema.variants] == ["Plus", "Minus", "Nothing"]
    assert [variant.is_unit for variant in schema.variants] == [False, False, True]
    assert schema.variants[0].target is Sign.Plus


def test_sum_needs_variants():
    with pytest.raises(SchemaError, match="no variants"):

        @derive
        class Nothing(Sum):
            pass


def test_derive_makes_dataclasses():
    assert dataclasses.is_dataclass(Triple)
    assert dataclasses.is_dataclass(XY.X)
    assert not dataclasses.is_dataclass(XY)


def test_unknown_field_type():
    @derive
    class Counted:
        n: int

    with pytest.raises(SchemaError, match="Field n of"):
        parse(Counted, "1")


def test_unordered_union():
    @derive
    class Choice:
        choice: Character["a"] | Character["b"]

    with pytest.raises(SchemaError, match="ordered alternative"):
        parse(Choice, "a")


def test_variable_length_tuple():
    @derive
    class Many:
        items: tuple[Character["a"], ...]

    with pytest.raises(SchemaError, match="no fixed length"):
        parse(Many, "a")


def test_keyword_only_fields():
    @derive
    @dataclasses.dataclass(kw_only=True)
    class Keywords:
        a: Character["a"]

    with pytest.raises(SchemaError, match="keyword-only"):
        parse(Keywords, "a")


def test_init_only_fields():
    @derive
    @dataclasses.dataclass
    class WithInitVar:
        a: Character["a"]
        b: dataclasses.InitVar[Character["b"]]
        c: Character["c"]

        def __post_init__(self, b):
            pass

    with pytest.raises(SchemaError, match="takes b in its constructor"):
        parse(WithInitVar, "abc")


def test_unresolvable_forward_reference():
    @derive
    class Dangling:
        inner: "Missing"  # noqa: F821

    with pytest.raises(SchemaError, match="Cannot resolve"):
        parse(Dangling, "a")


def test_plain_class_with_fields():
    class Plain:
        a: Character["a"]

    with pytest.raises(SchemaError, match="not a dataclass"):
        schema_of(Plain)


###############################################################################
# Logging
###############################################################################
def test_derivation_is_logged(caplog):
    @derive
    class Logged:
        a: Character["a"]

    with caplog.at_level(logging.INFO, logger="shapeparse.derive"):
        parse(Logged, "a")
    assert "derived product" in caplog.text
    assert "no snapshots" in caplog.text


def test_backtracking_is_logged(caplog):
    with caplog.at_level(logging.DEBUG, logger="shapeparse.backtrack"):
        parse(XY, "y")
    assert "XY.X missed at 0; backtracking" in caplog.text


###############################################################################
# Derived parsers behave like the hand-written equivalent
###############################################################################
def unwrap(tagged):
    while isinstance(tagged, (Left, Right)):
        tagged = tagged.value
    return tagged


TRIPLE_BY_HAND = Seq(char("a"), char("b"), char("c")).map(lambda values: Triple(*values))

PAIR_BY_HAND = Either(
    Seq(char("a"), char("b")).map(lambda values: Pair.AB(*values)),
    Either(
        Seq(char("a"), char("c")).map(lambda values: Pair.AC(*values)),
        Seq(char("a")).map(lambda values: Pair.A(*values)),
    ),
).map(unwrap)

SIGN_BY_HAND = Either(
    Seq(char("+")).map(lambda values: Sign.Plus(*values)),
    Either(
        Seq(char("-")).map(lambda values: Sign.Minus(*values)),
        Seq().map(lambda _: Sign.Nothing()),
    ),
).map(unwrap)

NESTED_BY_HAND: Parser
NESTED_BY_HAND = Seq(
    char("("),
    Opt(Box(lambda: NESTED_BY_HAND)),
    char(")"),
).map(lambda values: Nested(*values))

GUARDED_BY_HAND = Either(
    Seq(char("a")).map(lambda values: GuardedLast.A(*values)),
    Seq(Not(char("a")), AnyElement()).map(lambda values: GuardedLast.NotA(*values)),
).map(unwrap)


@pytest.mark.parametrize(
    "shape,by_hand",
    [
        (Triple, TRIPLE_BY_HAND),
        (Pair, PAIR_BY_HAND),
        (Sign, SIGN_BY_HAND),
        (Nested, NESTED_BY_HAND),
        (GuardedLast, GUARDED_BY_HAND),
    ],
)
@given(text(alphabet="abcx+-()", max_size=8))
def test_derived_matches_hand_written(shape, by_hand, s):
    derived = parser_for(shape)
    assert outcome(derived.parse(TextCursor(s))) == outcome(by_hand.parse(TextCursor(s)))
    assert outcome(derived.try_parse(TextCursor(s))) == outcome(by_hand.try_parse(TextCursor(s)))
    assert derived.error_type is by_hand.error_type


def test_hand_written_sign_reaches_the_unit_variant():
    cursor, value = SIGN_BY_HAND.parse(TextCursor("x"))
    assert value == Sign.Nothing()
    assert cursor.position == 0
