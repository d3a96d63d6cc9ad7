"""Leaf parsers: the ones that actually look at elements.

Everything else in the library is built out of these. Each one reads at most
one element.
"""

import functools
import typing

from .combinators import (
    ElementError,
    EndOfInput,
    Parser,
    Success,
    UnexpectedElement,
)
from .cursor import EOF, Cursor


class Element[E](Parser[E]):
    """Match exactly one element equal to `expected`."""

    error_type = ElementError

    def __init__(self, expected: E):
        self.expected = expected

    def parse(self, cursor: Cursor) -> Success[E] | ElementError:
        item = cursor.next()
        if item is EOF:
            return EndOfInput(expected=self.expected)
        if item != self.expected:
            return UnexpectedElement(expected=self.expected, actual=item)
        return cursor, typing.cast(E, item)

    def describe(self) -> str:
        return repr(self.expected)


class AnyElement(Parser[typing.Any]):
    """Match any single element; only fails at the end of the input."""

    error_type = ElementError

    def parse(self, cursor: Cursor) -> Success[typing.Any] | ElementError:
        item = cursor.next()
        if item is EOF:
            return EndOfInput(expected=self.describe())
        return cursor, item

    def describe(self) -> str:
        return "any element"


class Satisfy[E](Parser[E]):
    """Match one element for which `predicate` is true.

    `description` names the kind of element in errors, e.g. "a digit".
    """

    error_type = ElementError

    def __init__(self, predicate: typing.Callable[[E], bool], description: str):
        self.predicate = predicate
        self.description = description

    def parse(self, cursor: Cursor) -> Success[E] | ElementError:
        item = cursor.next()
        if item is EOF:
            return EndOfInput(expected=self.description)
        if not self.predicate(typing.cast(E, item)):
            return UnexpectedElement(expected=self.description, actual=item)
        return cursor, typing.cast(E, item)

    def describe(self) -> str:
        return self.description


class Character:
    """A single fixed character, as a type.

    `Character["+"]` is a class whose parser matches exactly "+", and whose
    parsed value is an instance of that class. Use it as a field annotation in
    derived types:

        @derive
        class Plus:
            plus: Character["+"]

    Every `Character["+"]` is the same class, so instances compare equal.
    """

    char: typing.ClassVar[str]
    __parser__: typing.ClassVar[Parser]

    def __class_getitem__(cls, char: str) -> "type[Character]":
        return _character_type(char)

    def __str__(self) -> str:
        return self.char

    def __repr__(self) -> str:
        return f"Character[{self.char!r}]()"

    def __eq__(self, other) -> bool:
        return type(other) is type(self)

    def __hash__(self) -> int:
        return hash((Character, self.char))


@functools.cache
def _character_type(char: str) -> type[Character]:
    if not isinstance(char, str) or len(char) != 1:
        raise TypeError(f"Character[...] takes exactly one character, not {char!r}")

    cls = typing.cast(type[Character], type(f"Character[{char!r}]", (Character,), {"char": char}))
    cls.__parser__ = Element(char).map(lambda _: cls())
    return cls
