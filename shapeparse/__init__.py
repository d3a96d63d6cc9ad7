"""Parser combinators, and parsers derived from the shape of your types.

There are two ways to build a parser with this library.

## Composing parsers by hand

Start from leaves that match single elements, and put them together:

    digit = Satisfy(str.isdigit, "a digit")
    number = OneOrMore(digit)
    signed = Opt(Element("-")) + number

Every parser has a fallible entry point, `try_parse`, which returns
`(cursor, value)` or None, and a total one, `parse`, which returns
`(cursor, value)` or a `ParseError` saying what went wrong. Cursors come from
`TextCursor` (or `SequenceCursor` for anything else that can be indexed).

    result = signed.parse(TextCursor("-12"))

## Deriving parsers from types

Or describe what you want to parse as classes, and let `@derive` work out the
parser from the field types:

    @derive
    class Digit(Sum):
        class Zero:
            char: Character["0"]

        class One:
            char: Character["1"]

    @derive
    class Binary:
        digits: NonEmpty[Digit]

    remaining, value = parse(Binary, "0110")

Fields are parsed in the order they're declared, variants are tried in the
order they're declared, and the first variant that matches wins. See
`shapeparse.derive` for the details, and `shapeparse.codegen` to turn derived
parsers into Python source.

## Why classes?

Much like writing a grammar as Python functions instead of in a DSL, writing
the shape as Python classes means your editor and type checker already know
about it: the parsed values *are* instances of the classes you declared, with
the fields you declared, so there's no separate AST to keep in sync with the
grammar.
"""

from .combinators import (
    Box,
    Either,
    ElementError,
    EndOfInput,
    Left,
    Map,
    NoMatch,
    NonEmpty,
    Not,
    OneOrMore,
    Opt,
    ParseError,
    Parser,
    Right,
    SchemaError,
    Seq,
    UnexpectedElement,
    UnexpectedMatch,
    ZeroOrMore,
    ZeroWidthRepetition,
)
from .cursor import EOF, Cursor, SequenceCursor, TextCursor, as_cursor
from .derive import (
    Attempt,
    DerivedParser,
    Field,
    Plan,
    ProductSchema,
    Sum,
    SumSchema,
    Variant,
    compile_schema,
    derive,
    parse,
    parser_for,
    plan_schema,
    schema_of,
    try_parse,
)
from .leaves import AnyElement, Character, Element, Satisfy
