"""Deriving parsers from the shape of a type.

Declare the shape of what you want to parse as a class, and let `@derive`
work out the parser. There are two kinds of shape:

A *product* is a class with fields, parsed one field after another, in the
order they are declared. Any class works; if it isn't a dataclass already it
becomes one.

    @derive
    class Assignment:
        name: Identifier
        equals: Character["="]
        value: Expression

A *sum* is a class that subclasses `Sum`, whose nested classes are its
variants. Variants are tried in the order they are declared and the first one
that matches wins. A variant with no fields always matches, so it should go
last.

    @derive
    class Sign(Sum):
        class Plus:
            char: Character["+"]

        class Minus:
            char: Character["-"]

        class Nothing:
            pass

Field annotations say how each field is parsed. A class with a derived parser
parses as itself, and the usual generic types mean what you'd expect:
`list[X]` is zero or more X, `X | None` is an optional X, `tuple[X, Y]` is X
followed by Y. See `parser_for` for the whole list.

Nothing is resolved until the first time a type is parsed (or its plan is
asked for), so types can refer to types defined later in the module, and to
themselves.

## The derivation

The derivation is done in two steps:

1. `schema_of` reflects the class into a `ProductSchema` or `SumSchema`: an
   ordered list of fields, or an ordered list of variants and their fields.

2. `plan_schema` turns a schema into a `Plan`: one `Attempt` per variant (or
   one for the product) with the resolved field parsers, whether the attempt
   needs a snapshot of the cursor, and the error type of the whole thing.

`compile_schema` runs a plan directly; `shapeparse.codegen` can instead turn
the same plan into Python source.

### Snapshots

A product never snapshots the cursor: it has nothing to fall back to. A sum
snapshots the cursor before every variant except the last, because if the
variant fails halfway through, the next variant needs to start from where this
one did. The last variant runs directly on the cursor it was given.

### Error types

A product's error type is its first field's. (Errors from later fields come
back as-is; we just don't promise anything more specific about them.)

A sum's error type is the error type of its *last* variant, since that's the
one whose failure escapes, once every variant before it has missed. If any
variant has no fields, the sum can't fail at all, and its error type is None.
"""

import dataclasses
import inspect
import logging
import types
import typing

from .combinators import (
    Box,
    Either,
    Not,
    NonEmpty,
    OneOrMore,
    Opt,
    ParseError,
    Parser,
    SchemaError,
    Seq,
    Success,
    ZeroOrMore,
    backtrack_log,
    recursion_guard,
    sequence_error_type,
)
from .cursor import Cursor, as_cursor
from .leaves import AnyElement


derive_log = logging.getLogger("shapeparse.derive")


class _SumMeta(type):
    # A variant is an instance (and a subclass) of the sum it's nested in.
    def __instancecheck__(cls, instance) -> bool:
        if super().__instancecheck__(instance):
            return True
        return any(isinstance(instance, variant) for _, variant in variant_classes(cls))

    def __subclasscheck__(cls, subclass) -> bool:
        if super().__subclasscheck__(subclass):
            return True
        return any(issubclass(subclass, variant) for _, variant in variant_classes(cls))


class Sum(metaclass=_SumMeta):
    """Base class marking a derived type as a sum of its nested classes.

    Values parsed from a sum are instances of one of its variants, and
    `isinstance(value, TheSum)` is true for every one of them.
    """


###############################################################################
# Schemas
###############################################################################
@dataclasses.dataclass(frozen=True)
class Field:
    name: str
    annotation: typing.Any


@dataclasses.dataclass(frozen=True)
class Variant:
    name: str
    target: type
    fields: tuple[Field, ...]

    @property
    def is_unit(self) -> bool:
        return len(self.fields) == 0


@dataclasses.dataclass(frozen=True)
class ProductSchema:
    target: type
    fields: tuple[Field, ...]


@dataclasses.dataclass(frozen=True)
class SumSchema:
    target: type
    variants: tuple[Variant, ...]


type Schema = ProductSchema | SumSchema


def _definition_location(cls: type) -> str:
    parser = vars(cls).get("__parser__")
    if isinstance(parser, DerivedParser):
        return parser.definition_location

    try:
        filename = inspect.getsourcefile(cls)
        _, lineno = inspect.getsourcelines(cls)
    except (OSError, TypeError):
        return cls.__module__
    return f"{filename}:{lineno}"


def variant_classes(cls: type) -> list[tuple[str, type]]:
    """The variants of a sum, in declaration order."""
    return [
        (name, value)
        for name, value in vars(cls).items()
        if isinstance(value, type) and not name.startswith("_")
    ]


def _fields(cls: type, location: str) -> tuple[Field, ...]:
    if not dataclasses.is_dataclass(cls):
        if inspect.get_annotations(cls):
            raise SchemaError(
                f"{cls.__qualname__} has fields but is not a dataclass; "
                f"decorate it with @derive or @dataclass ({location})"
            )
        return ()

    try:
        hints = typing.get_type_hints(cls, include_extras=True)
    except NameError as e:
        raise SchemaError(f"Cannot resolve the fields of {cls.__qualname__} ({location}): {e}") from e

    fields = []
    for field in dataclasses.fields(cls):
        if not field.init:
            continue
        if field.kw_only:
            raise SchemaError(
                f"Field {field.name} of {cls.__qualname__} is keyword-only, but derived "
                f"types are constructed positionally ({location})"
            )
        fields.append(Field(name=field.name, annotation=hints[field.name]))

    # InitVar pseudo-fields are constructor parameters that `dataclasses.fields`
    # doesn't report; positional construction would put values in their place.
    names = {field.name for field in fields}
    extra = [name for name in inspect.signature(cls).parameters if name not in names]
    if extra:
        raise SchemaError(
            f"{cls.__qualname__} takes {', '.join(extra)} in its constructor, but "
            f"derived types are constructed from their fields alone (is it an InitVar?) ({location})"
        )
    return tuple(fields)


def schema_of(cls: type) -> Schema:
    """Reflect a class into the schema the derivation works from."""
    location = _definition_location(cls)
    if issubclass(cls, Sum):
        variants = tuple(
            Variant(name=name, target=variant, fields=_fields(variant, location))
            for name, variant in variant_classes(cls)
        )
        if len(variants) == 0:
            raise SchemaError(f"{cls.__qualname__} is a Sum with no variants ({location})")
        return SumSchema(target=cls, variants=variants)

    return ProductSchema(target=cls, fields=_fields(cls, location))


###############################################################################
# Resolving annotations into parsers
###############################################################################
_alias_parsers: dict[typing.TypeAliasType, Parser] = {}


def parser_for(annotation: typing.Any) -> Parser:
    """Find the parser for a field annotation.

    - A `Parser` is used as-is.
    - A class with a derived parser (or a `Character[...]`) parses as itself.
    - `Annotated[T, parser]` uses the first parser in its metadata, or T's.
    - `tuple[A, B, ...]` is a sequence; `tuple[()]` matches nothing.
    - `list[A]` is zero or more A; `NonEmpty[A]` is one or more.
    - `A | None` (or `Optional[A]`) is an optional A.
    - `Either[A, B]`, `Not[A]` and `Box[A]` are what they say.
    - `str` is any single element.
    - A `type` alias is its value.
    """
    return _resolve(annotation, [])


def _resolve(annotation: typing.Any, expanding: list[typing.TypeAliasType]) -> Parser:
    if isinstance(annotation, Parser):
        return annotation

    if isinstance(annotation, type):
        parser = vars(annotation).get("__parser__")
        if isinstance(parser, Parser):
            return parser

    if isinstance(annotation, typing.TypeAliasType):
        cached = _alias_parsers.get(annotation)
        if cached is not None:
            return cached
        if annotation in expanding:
            chain = " -> ".join(a.__name__ for a in expanding + [annotation])
            raise SchemaError(
                f"The type alias {annotation.__name__} contains itself ({chain}); "
                "wrap the recursive reference in Box[...]"
            )
        expanding.append(annotation)
        try:
            parser = _resolve(annotation.__value__, expanding)
        finally:
            expanding.pop()
        _alias_parsers[annotation] = parser
        return parser

    if annotation is str:
        return AnyElement()

    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)

    if origin is typing.Annotated:
        for metadata in args[1:]:
            if isinstance(metadata, Parser):
                return metadata
        return _resolve(args[0], expanding)

    if origin is tuple:
        if len(args) == 2 and args[1] is Ellipsis:
            raise SchemaError(f"{annotation!r} has no fixed length; use list[...] for repetition")
        return Seq(*(_resolve(arg, expanding) for arg in args))

    if origin is list:
        return ZeroOrMore(_resolve(args[0], expanding))

    if origin is NonEmpty:
        return OneOrMore(_resolve(args[0], expanding))

    if origin is typing.Union or origin is types.UnionType:
        members = [arg for arg in args if arg is not types.NoneType]
        if len(members) == 1 and len(args) == 2:
            return Opt(_resolve(members[0], expanding))
        raise SchemaError(
            f"{annotation!r} is not an ordered alternative; "
            "use Either[A, B] or a Sum type to choose between parsers"
        )

    if origin is Either:
        left, right = args
        return Either(_resolve(left, expanding), _resolve(right, expanding))

    if origin is Not:
        return Not(_resolve(args[0], expanding))

    if origin is Box:
        (inner,) = args
        # Resolved on first use, from scratch: by then whatever it refers to
        # has been defined.
        return Box(lambda: parser_for(inner))

    if isinstance(annotation, type):
        raise SchemaError(
            f"{annotation.__qualname__} has no parser; decorate it with @derive "
            "or annotate the field with Annotated[..., parser]"
        )
    raise SchemaError(f"Don't know how to parse a field of type {annotation!r}")


###############################################################################
# Plans
###############################################################################
@dataclasses.dataclass(frozen=True)
class Attempt:
    """One try at building a value: parse these fields, construct that.

    `snapshot` says whether the attempt runs on a snapshot of the cursor
    (because there is something to fall back to if it fails) or directly on
    the live cursor.
    """

    name: str
    target: type
    parsers: tuple[Parser, ...]
    snapshot: bool

    @property
    def is_unit(self) -> bool:
        return len(self.parsers) == 0

    @property
    def error_type(self) -> type[ParseError] | None:
        return sequence_error_type(self.parsers)


@dataclasses.dataclass(frozen=True)
class Plan:
    target: type
    kind: typing.Literal["product", "sum"]
    attempts: tuple[Attempt, ...]
    error_type: type[ParseError] | None

    @property
    def requires_snapshot(self) -> bool:
        """Whether parsing this shape ever needs to duplicate the cursor."""
        return any(attempt.snapshot for attempt in self.attempts)


def _field_parsers(owner: type, fields: tuple[Field, ...]) -> tuple[Parser, ...]:
    parsers = []
    for field in fields:
        try:
            parsers.append(parser_for(field.annotation))
        except SchemaError as e:
            raise SchemaError(
                f"Field {field.name} of {owner.__qualname__} ({_definition_location(owner)}): {e}"
            ) from e
    return tuple(parsers)


def plan_schema(schema: Schema) -> Plan:
    """Decide how to parse a schema."""
    match schema:
        case ProductSchema(target=target, fields=fields):
            attempt = Attempt(
                name=target.__name__,
                target=target,
                parsers=_field_parsers(target, fields),
                snapshot=False,
            )
            return Plan(
                target=target,
                kind="product",
                attempts=(attempt,),
                error_type=attempt.error_type,
            )

        case SumSchema(target=target, variants=variants):
            # A unit variant always matches, so nothing after it ever runs.
            reachable = list(variants)
            for index, variant in enumerate(variants):
                if variant.is_unit:
                    reachable = list(variants[: index + 1])
                    if index + 1 < len(variants):
                        derive_log.warning(
                            "%s: variant %s always matches, so %s can never match",
                            target.__qualname__,
                            variant.name,
                            ", ".join(v.name for v in variants[index + 1 :]),
                        )
                    break

            last = len(reachable) - 1
            attempts = tuple(
                Attempt(
                    name=variant.name,
                    target=variant.target,
                    parsers=_field_parsers(variant.target, variant.fields),
                    snapshot=index != last and not variant.is_unit,
                )
                for index, variant in enumerate(reachable)
            )

            if any(variant.is_unit for variant in variants):
                error_type = None
            else:
                error_type = attempts[-1].error_type

            return Plan(target=target, kind="sum", attempts=attempts, error_type=error_type)

        case _:
            typing.assert_never(schema)


###############################################################################
# Running plans
###############################################################################
def _attempt_fallible(attempt: Attempt, cursor: Cursor) -> Success | None:
    values = []
    for parser in attempt.parsers:
        result = parser.try_parse(cursor)
        if result is None:
            return None
        cursor, value = result
        values.append(value)
    return cursor, attempt.target(*values)


def _attempt_total(attempt: Attempt, cursor: Cursor) -> Success | ParseError:
    values = []
    for parser in attempt.parsers:
        result = parser.parse(cursor)
        if isinstance(result, ParseError):
            return result
        cursor, value = result
        values.append(value)
    return cursor, attempt.target(*values)


class PlannedParser(Parser):
    """Runs a `Plan`: the attempts in order, each on a snapshot if it has a
    fallback, the last on the live cursor.
    """

    def __init__(self, plan: Plan):
        self.plan = plan

    @property
    def error_type(self) -> type[ParseError] | None:
        return self.plan.error_type

    def _backtrack(self, attempt: Attempt, cursor: Cursor):
        if backtrack_log.isEnabledFor(logging.DEBUG):
            backtrack_log.debug(
                "%s.%s missed at %d; backtracking",
                self.plan.target.__qualname__,
                attempt.name,
                cursor.position,
            )

    def try_parse(self, cursor: Cursor) -> Success | None:
        for attempt in self.plan.attempts:
            if attempt.is_unit:
                return cursor, attempt.target()
            if not attempt.snapshot:
                return _attempt_fallible(attempt, cursor)

            found = _attempt_fallible(attempt, cursor.snapshot())
            if found is not None:
                return found
            self._backtrack(attempt, cursor)

        raise AssertionError("the last attempt of a plan never takes a snapshot")

    def parse(self, cursor: Cursor) -> Success | ParseError:
        for attempt in self.plan.attempts:
            if attempt.is_unit:
                return cursor, attempt.target()
            if not attempt.snapshot:
                return _attempt_total(attempt, cursor)

            found = _attempt_fallible(attempt, cursor.snapshot())
            if found is not None:
                return found
            self._backtrack(attempt, cursor)

        raise AssertionError("the last attempt of a plan never takes a snapshot")

    def describe(self) -> str:
        return self.plan.target.__qualname__


def compile_schema(schema: Schema) -> Parser:
    """The derivation generator: from a schema to a parser."""
    return PlannedParser(plan_schema(schema))


###############################################################################
# The decorator
###############################################################################
class DerivedParser(Parser):
    """The parser `@derive` attaches to a class, as `__parser__`.

    It doesn't do anything until it's first used, at which point it reflects
    the class, plans it, and from then on runs the plan.
    """

    target: type
    definition_location: str
    _compiled: PlannedParser | None

    def __init__(self, target: type, definition_location: str):
        self.target = target
        self.definition_location = definition_location
        self._compiled = None

    @property
    def compiled(self) -> PlannedParser:
        if self._compiled is None:

            def describe(chain: list) -> str:
                names = " -> ".join(
                    p.target.__qualname__ for p in chain if isinstance(p, DerivedParser)
                )
                return (
                    f"{self.target.__qualname__} ({self.definition_location}) is left-recursive: "
                    f"{names}. It would be parsed again before consuming any input."
                )

            with recursion_guard(self, describe):
                plan = plan_schema(schema_of(self.target))

            derive_log.info(
                "derived %s %s: %d attempt(s), error type %s, %s",
                plan.kind,
                self.target.__qualname__,
                len(plan.attempts),
                "none" if plan.error_type is None else plan.error_type.__name__,
                "snapshots" if plan.requires_snapshot else "no snapshots",
            )
            self._compiled = PlannedParser(plan)
        return self._compiled

    @property
    def plan(self) -> Plan:
        return self.compiled.plan

    @property
    def error_type(self) -> type[ParseError] | None:
        return self.compiled.error_type

    def try_parse(self, cursor: Cursor) -> Success | None:
        return self.compiled.try_parse(cursor)

    def parse(self, cursor: Cursor) -> Success | ParseError:
        return self.compiled.parse(cursor)

    def describe(self) -> str:
        return self.target.__qualname__


def _as_dataclass(cls: type):
    if not dataclasses.is_dataclass(cls):
        dataclasses.dataclass(cls)


def derive[T: type](cls: T) -> T:
    """Give a class a parser derived from its shape.

    The class is returned unchanged except that it (and, for a `Sum`, each
    variant) is made a dataclass if it isn't one, and it gains a `__parser__`
    attribute. Use `parser_for`, `parse` or `try_parse` to get at it.
    """
    caller = inspect.stack()[1]
    location = f"{caller.filename}:{caller.lineno}"

    if issubclass(cls, Sum):
        variants = variant_classes(cls)
        if len(variants) == 0:
            raise SchemaError(f"{cls.__qualname__} is a Sum with no variants ({location})")
        for _, variant in variants:
            _as_dataclass(variant)
    else:
        _as_dataclass(cls)

    cls.__parser__ = DerivedParser(cls, location)
    return cls


###############################################################################
# Conveniences
###############################################################################
def try_parse(shape: typing.Any, input: typing.Any) -> Success | None:
    """Parse `input` (a string, a sequence or a cursor) as `shape` (a derived
    type, a parser or any annotation `parser_for` understands), or None.
    """
    return parser_for(shape).try_parse(as_cursor(input))


def parse(shape: typing.Any, input: typing.Any) -> Success | ParseError:
    """Parse `input` as `shape`, returning the remaining cursor and the value,
    or the error.
    """
    return parser_for(shape).parse(as_cursor(input))
