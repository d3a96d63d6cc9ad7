"""The combinator algebra.

Every parser has two entry points:

- `try_parse(cursor)` is the *fallible* form. It returns `(cursor, value)` if
  the parser matches, and `None` if it doesn't. A miss is not an error; it
  just means "not here", and the caller is expected to try something else.

- `parse(cursor)` is the *total* form. It returns `(cursor, value)` or a
  `ParseError` describing why the parse failed. Errors are returned, not
  raised. A parser whose `error_type` is None is infallible: its `parse` never
  returns an error.

The cursor you hand to a parser belongs to the parser from then on; it may
advance it whether or not it succeeds. If you want to try something else after
a miss, snapshot the cursor first and hand over the snapshot. All of the
combinators here follow that discipline: anything that can fall back takes a
snapshot, and anything that can't doesn't bother.
"""

import contextlib
import dataclasses
import functools
import logging
import threading
import typing

from .cursor import Cursor


backtrack_log = logging.getLogger("shapeparse.backtrack")


###############################################################################
# Errors
###############################################################################
@dataclasses.dataclass(frozen=True)
class ParseError:
    """The base of all structural parse failures.

    These are values, returned from `Parser.parse`. Subclass it (as a frozen
    dataclass) to describe failures of your own leaf parsers.
    """


@dataclasses.dataclass(frozen=True)
class ElementError(ParseError):
    """A leaf parser could not match the next element."""

    expected: typing.Any


@dataclasses.dataclass(frozen=True)
class EndOfInput(ElementError):
    def __str__(self) -> str:
        return f"expected {self.expected}, found end of input"


@dataclasses.dataclass(frozen=True)
class UnexpectedElement(ElementError):
    actual: typing.Any

    def __str__(self) -> str:
        return f"expected {self.expected}, found {self.actual!r}"


@dataclasses.dataclass(frozen=True)
class NoMatch(ParseError):
    """A parser that only knows how to miss was asked for an error."""

    description: str

    def __str__(self) -> str:
        return f"expected {self.description}"


@dataclasses.dataclass(frozen=True)
class UnexpectedMatch(ParseError):
    """A negative lookahead saw the thing it was looking out for."""

    description: str

    def __str__(self) -> str:
        return f"did not expect {self.description}"


class SchemaError(Exception):
    """Raised when a parser cannot be built from a declaration.

    This is a mistake in the grammar, not in the input, so it is raised rather
    than returned.
    """


class ZeroWidthRepetition(Exception):
    """Raised when the body of a repetition matched without consuming input.

    Left alone, that repetition would loop forever.
    """


_guard_state = threading.local()


@contextlib.contextmanager
def recursion_guard(key: typing.Any, describe: typing.Callable[[list], str]):
    """Detect re-entering `key` before a previous entry has finished.

    Resolving an error type walks down the first field of every sequence. If
    that walk comes back to where it started, the grammar is left-recursive,
    and we'd rather say so than overflow the stack. `describe` gets the chain
    of keys that led here.
    """
    stack = getattr(_guard_state, "stack", None)
    if stack is None:
        stack = _guard_state.stack = []

    if any(k is key for k in stack):
        raise SchemaError(describe(stack + [key]))

    stack.append(key)
    try:
        yield
    finally:
        stack.pop()


def sequence_error_type(parsers: typing.Iterable["Parser"]) -> type[ParseError] | None:
    """The error type of a sequence is the error type of its first part.

    We don't distinguish errors from later parts at this level; they come back
    unchanged, whatever they are. If the first part can't fail we move on to
    the next, so that a sequence is only called infallible when none of its
    parts can fail.
    """
    for parser in parsers:
        error_type = parser.error_type
        if error_type is not None:
            return error_type
    return None


###############################################################################
# The parser base class
###############################################################################
type Success[V] = tuple[Cursor, V]


class Parser[V]:
    """A parser that produces values of type V.

    Subclasses override `try_parse`, `parse`, or both. Each is defined in
    terms of the other here, so that a parser which naturally misses only has
    to say how it misses, and a parser which naturally fails with an error only
    has to say how it fails.
    """

    # The kind of error `parse` can return, or None if it never does.
    error_type: type[ParseError] | None = NoMatch

    def try_parse(self, cursor: Cursor) -> Success[V] | None:
        if type(self).parse is Parser.parse:
            raise NotImplementedError(f"{type(self).__name__} must implement parse or try_parse")

        result = self.parse(cursor)
        if isinstance(result, ParseError):
            return None
        return result

    def parse(self, cursor: Cursor) -> Success[V] | ParseError:
        if type(self).try_parse is Parser.try_parse:
            raise NotImplementedError(f"{type(self).__name__} must implement parse or try_parse")

        result = self.try_parse(cursor)
        if result is None:
            return NoMatch(self.describe())
        return result

    def try_parse_value(self, cursor: Cursor) -> V | None:
        result = self.try_parse(cursor)
        if result is None:
            return None
        return result[1]

    def parse_value(self, cursor: Cursor) -> V | ParseError:
        result = self.parse(cursor)
        if isinstance(result, ParseError):
            return result
        return result[1]

    @property
    def infallible(self) -> bool:
        return self.error_type is None

    def describe(self) -> str:
        """A short human-readable description, for errors and logs."""
        return type(self).__name__

    def map[U](self, fn: typing.Callable[[V], U]) -> "Map[V, U]":
        return Map(self, fn)

    def __add__(self, other: "Parser") -> "Seq":
        # a + b + c is one flat three-part sequence, not nested pairs.
        if isinstance(self, Seq):
            return Seq(*self.parsers, other)
        return Seq(self, other)

    def __or__(self, other: "Parser") -> "Either":
        return Either(self, other)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.describe()}>"


###############################################################################
# Sequencing
###############################################################################
class Seq(Parser[tuple]):
    """Parse each of the parsers in order, producing a tuple of their values.

    Fails as soon as any part fails; no partial tuple is ever produced.
    `Seq()` always succeeds with `()` and consumes nothing.
    """

    parsers: tuple[Parser, ...]

    def __init__(self, *parsers: Parser):
        self.parsers = parsers

    @functools.cached_property
    def error_type(self) -> type[ParseError] | None:
        return sequence_error_type(self.parsers)

    def try_parse(self, cursor: Cursor) -> Success[tuple] | None:
        values = []
        for parser in self.parsers:
            result = parser.try_parse(cursor)
            if result is None:
                return None
            cursor, value = result
            values.append(value)
        return cursor, tuple(values)

    def parse(self, cursor: Cursor) -> Success[tuple] | ParseError:
        values = []
        for parser in self.parsers:
            result = parser.parse(cursor)
            if isinstance(result, ParseError):
                return result
            cursor, value = result
            values.append(value)
        return cursor, tuple(values)

    def describe(self) -> str:
        if len(self.parsers) == 0:
            return "nothing"
        return " ".join(p.describe() for p in self.parsers)


###############################################################################
# Optional and repetition
###############################################################################
class Opt[V](Parser[V | None]):
    """Try the parser once; produce None (and consume nothing) if it misses."""

    error_type = None

    def __init__(self, parser: Parser[V]):
        self.parser = parser

    def parse(self, cursor: Cursor) -> Success[V | None]:
        result = self.parser.try_parse(cursor.snapshot())
        if result is None:
            return cursor, None
        return result

    def describe(self) -> str:
        return f"optional {self.parser.describe()}"


class NonEmpty[V](list[V]):
    """A list with at least one element in it. Produced by `OneOrMore`, and
    used as an annotation (`NonEmpty[X]`) to ask for one.
    """

    def __init__(self, iterable: typing.Iterable[V] = ()):
        super().__init__(iterable)
        if len(self) == 0:
            raise ValueError("NonEmpty requires at least one element")

    @property
    def first(self) -> V:
        return self[0]


def _repeat[V](
    parser: Parser[V],
    cursor: Cursor,
    values: list[V],
    check_progress: bool,
) -> Cursor:
    """Collect matches of `parser` into `values` until it misses, and return
    the cursor as of the last match.
    """
    while True:
        result = parser.try_parse(cursor.snapshot())
        if result is None:
            return cursor

        advanced, value = result
        if check_progress:
            _check_progress(parser, cursor.position, advanced)
        cursor = advanced
        values.append(value)


def _check_progress(parser: Parser, start: int, cursor: Cursor):
    if cursor.position <= start:
        raise ZeroWidthRepetition(
            f"{parser.describe()} matched at position {start} without consuming any input; "
            "repeating it would never terminate"
        )


class ZeroOrMore[V](Parser[list[V]]):
    """Match the parser as many times as it will, producing a list.

    Always succeeds, possibly with an empty list. The body must consume input
    each time it matches; with `check_progress` (the default) a body that
    doesn't raises `ZeroWidthRepetition`, otherwise it loops forever.
    """

    error_type = None

    def __init__(self, parser: Parser[V], *, check_progress: bool = True):
        self.parser = parser
        self.check_progress = check_progress

    def parse(self, cursor: Cursor) -> Success[list[V]]:
        values: list[V] = []
        cursor = _repeat(self.parser, cursor, values, self.check_progress)
        return cursor, values

    def describe(self) -> str:
        return f"zero or more {self.parser.describe()}"


class OneOrMore[V](Parser[NonEmpty[V]]):
    """Like `ZeroOrMore`, but the first attempt has to match."""

    def __init__(self, parser: Parser[V], *, check_progress: bool = True):
        self.parser = parser
        self.check_progress = check_progress

    @property
    def error_type(self) -> type[ParseError] | None:
        return self.parser.error_type

    def try_parse(self, cursor: Cursor) -> Success[NonEmpty[V]] | None:
        # The first attempt has nothing to fall back to, so it gets the live
        # cursor; the caller holds the snapshot if it wants one.
        start = cursor.position if self.check_progress else None
        result = self.parser.try_parse(cursor)
        if result is None:
            return None
        return self._rest(start, *result)

    def parse(self, cursor: Cursor) -> Success[NonEmpty[V]] | ParseError:
        start = cursor.position if self.check_progress else None
        result = self.parser.parse(cursor)
        if isinstance(result, ParseError):
            return result
        return self._rest(start, *result)

    def _rest(self, start: int | None, cursor: Cursor, first: V) -> Success[NonEmpty[V]]:
        if start is not None:
            _check_progress(self.parser, start, cursor)
        values = [first]
        cursor = _repeat(self.parser, cursor, values, self.check_progress)
        return cursor, NonEmpty(values)

    def describe(self) -> str:
        return f"one or more {self.parser.describe()}"


###############################################################################
# Alternation
###############################################################################
@dataclasses.dataclass(frozen=True)
class Left[V]:
    value: V


@dataclasses.dataclass(frozen=True)
class Right[V]:
    value: V


class Either[L, R](Parser[Left[L] | Right[R]]):
    """Try `left`; if it misses, try `right` from the same starting point.

    The value says which one matched: `Left(value)` or `Right(value)`. In the
    total form only the right arm gets to report an error, since by the time
    it runs there is nothing left to fall back to.
    """

    def __init__(self, left: Parser[L], right: Parser[R]):
        self.left = left
        self.right = right

    @property
    def error_type(self) -> type[ParseError] | None:
        return self.right.error_type

    def _try_left(self, cursor: Cursor) -> Success[Left[L]] | None:
        result = self.left.try_parse(cursor.snapshot())
        if result is None:
            if backtrack_log.isEnabledFor(logging.DEBUG):
                backtrack_log.debug(
                    "%s missed at %d; backtracking to %s",
                    self.left.describe(),
                    cursor.position,
                    self.right.describe(),
                )
            return None
        cursor, value = result
        return cursor, Left(value)

    def try_parse(self, cursor: Cursor) -> Success[Left[L] | Right[R]] | None:
        found = self._try_left(cursor)
        if found is not None:
            return found

        result = self.right.try_parse(cursor)
        if result is None:
            return None
        cursor, value = result
        return cursor, Right(value)

    def parse(self, cursor: Cursor) -> Success[Left[L] | Right[R]] | ParseError:
        found = self._try_left(cursor)
        if found is not None:
            return found

        result = self.right.parse(cursor)
        if isinstance(result, ParseError):
            return result
        cursor, value = result
        return cursor, Right(value)

    def describe(self) -> str:
        return f"{self.left.describe()} or {self.right.describe()}"


###############################################################################
# Lookahead
###############################################################################
class Not[V](Parser[None]):
    """Succeed, consuming nothing, only where `parser` does *not* match.

    This is a zero-width assertion: the cursor comes back exactly where it
    went in, whichever way it goes. The value is always None.
    """

    error_type = UnexpectedMatch

    def __init__(self, parser: Parser[V]):
        self.parser = parser

    def try_parse(self, cursor: Cursor) -> Success[None] | None:
        if self.parser.try_parse(cursor.snapshot()) is None:
            return cursor, None
        return None

    def parse(self, cursor: Cursor) -> Success[None] | ParseError:
        if self.parser.try_parse(cursor.snapshot()) is None:
            return cursor, None
        return UnexpectedMatch(self.parser.describe())

    def describe(self) -> str:
        return f"not {self.parser.describe()}"


###############################################################################
# Indirection and transformation
###############################################################################
class Box[V](Parser[V]):
    """A parser that finds out what it is the first time it's used.

    This is how a definition refers to itself (or to something defined after
    it) without expanding forever while it's being built. The value is just the
    inner parser's value; Python values are already references.
    """

    _parser: Parser[V] | None
    _resolve: typing.Callable[[], Parser[V]]

    def __init__(self, resolve: "typing.Callable[[], Parser[V]] | Parser[V]"):
        if isinstance(resolve, Parser):
            self._parser = resolve
            self._resolve = lambda: typing.cast(Parser[V], resolve)
        else:
            self._parser = None
            self._resolve = resolve

    @property
    def parser(self) -> Parser[V]:
        if self._parser is None:
            self._parser = self._resolve()
        return self._parser

    @functools.cached_property
    def error_type(self) -> type[ParseError] | None:
        def describe(chain: list) -> str:
            return (
                "Left recursion through Box: the error type of a boxed parser "
                "depends on itself before any input is consumed"
            )

        with recursion_guard(self, describe):
            return self.parser.error_type

    def try_parse(self, cursor: Cursor) -> Success[V] | None:
        return self.parser.try_parse(cursor)

    def parse(self, cursor: Cursor) -> Success[V] | ParseError:
        return self.parser.parse(cursor)

    def describe(self) -> str:
        if self._parser is None:
            return "<unresolved>"
        return self._parser.describe()


class Map[V, U](Parser[U]):
    """Transform the value of a successful parse."""

    def __init__(self, parser: Parser[V], fn: typing.Callable[[V], U]):
        self.parser = parser
        self.fn = fn

    @property
    def error_type(self) -> type[ParseError] | None:
        return self.parser.error_type

    def try_parse(self, cursor: Cursor) -> Success[U] | None:
        result = self.parser.try_parse(cursor)
        if result is None:
            return None
        cursor, value = result
        return cursor, self.fn(value)

    def parse(self, cursor: Cursor) -> Success[U] | ParseError:
        result = self.parser.parse(cursor)
        if isinstance(result, ParseError):
            return result
        cursor, value = result
        return cursor, self.fn(value)

    def describe(self) -> str:
        return self.parser.describe()
