"""Cursors: the positions that parsers consume input through.

A parser never sees "the input", only a cursor over it. A cursor can hand out
the next element (advancing itself) and can be duplicated cheaply, so that a
parser that wants to try something speculatively can do it on a snapshot and
still have the original to fall back to.

Cursors here are mutable. Whoever holds a cursor owns it: passing a cursor to a
parser hands that parser the right to advance it. If you want to keep your
position, snapshot first.
"""

import collections.abc
import enum
import typing


class _Eof(enum.Enum):
    EOF = "end of input"

    def __repr__(self) -> str:
        return "EOF"


# Returned by `Cursor.next` when there is nothing left. It's a distinct object
# (rather than None) so that sequences of arbitrary values, None included, can
# still be parsed.
EOF = _Eof.EOF


class Cursor[E](typing.Protocol):
    """The input contract.

    Anything that implements these three members can be parsed.
    """

    @property
    def position(self) -> int:
        """An offset that only ever grows as the cursor advances. Only
        meaningful when compared against positions of snapshots of the same
        cursor.
        """
        ...

    def next(self) -> "E | typing.Literal[_Eof.EOF]":
        """Read the next element and advance past it, or return EOF (without
        advancing) if the input is exhausted.
        """
        ...

    def snapshot(self) -> "Cursor[E]":
        """Duplicate the current position. The original must be unaffected by
        anything done to the copy, and vice-versa.
        """
        ...


class SequenceCursor[E]:
    """A cursor over any fully materialized sequence.

    The sequence itself is shared between all snapshots, so a snapshot costs
    one small object no matter how long the input is.
    """

    items: typing.Sequence[E]
    _position: int

    def __init__(self, items: typing.Sequence[E], position: int = 0):
        if position < 0 or position > len(items):
            raise ValueError(f"Position {position} is outside of the input (length {len(items)})")
        self.items = items
        self._position = position

    @property
    def position(self) -> int:
        return self._position

    @property
    def at_end(self) -> bool:
        return self._position >= len(self.items)

    def next(self) -> E | typing.Literal[_Eof.EOF]:
        if self._position >= len(self.items):
            return EOF
        item = self.items[self._position]
        self._position += 1
        return item

    def peek(self) -> E | typing.Literal[_Eof.EOF]:
        """The element that `next` would return, without advancing."""
        if self._position >= len(self.items):
            return EOF
        return self.items[self._position]

    def snapshot(self) -> "SequenceCursor[E]":
        return type(self)(self.items, self._position)

    def remaining(self) -> typing.Sequence[E]:
        return self.items[self._position :]

    def __eq__(self, other) -> bool:
        # Two cursors are the same if they are at the same place in the same
        # input. Identity first, because comparing long inputs is slow.
        if not isinstance(other, SequenceCursor):
            return NotImplemented
        return self._position == other._position and (
            self.items is other.items or self.items == other.items
        )

    def __hash__(self) -> int:
        return hash(self._position)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(position={self._position}, remaining={self.remaining()!r})"


class TextCursor(SequenceCursor[str]):
    """A cursor over the characters of a string."""

    def __init__(self, text: str, position: int = 0):
        super().__init__(text, position)

    @property
    def text(self) -> str:
        return typing.cast(str, self.items)

    def remaining(self) -> str:
        return self.text[self._position :]


def as_cursor(input: "str | typing.Sequence | Cursor") -> Cursor:
    """Coerce the convenient forms of input into a cursor.

    Strings become a `TextCursor`, other sequences a `SequenceCursor`; anything
    that already looks like a cursor is passed through untouched.
    """
    if isinstance(input, str):
        return TextCursor(input)
    if hasattr(input, "snapshot") and hasattr(input, "next"):
        return typing.cast(Cursor, input)
    if isinstance(input, collections.abc.Sequence):
        return SequenceCursor(input)
    raise TypeError(f"Cannot parse from {type(input).__name__}; need a str, a sequence or a cursor")
