"""Emit derived parsers as Python source.

`shapeparse.derive` runs a `Plan` by interpreting it. This module writes the
same plan out as straight-line Python instead: one function per attempt,
positional names for everything (`field0`, `parser1_0`, `target2`), a
`snapshot()` call in front of every attempt that has something to fall back
to, and none in front of the last one. The result behaves exactly like the
interpreted parser; it's just easier to read, and a little faster.

Generated source never contains the names of user fields or variants, so
nothing a user calls their fields can collide with it.

The source is a factory:

    def build_parser(targets, parsers):
        ...
        return parse, try_parse

where `targets` are the classes to construct (one per attempt) and `parsers`
are the field parsers of each attempt. `bind` calls the factory and wraps the
result in a `Parser`.

`write_module` puts the factories for several shapes in one module, along
with a fingerprint of each plan, and `load_module` imports it again and checks
that every shape still has the plan its factory was generated from.
"""

import hashlib
import importlib.util
import pathlib
import typing

from .combinators import ParseError, Parser, Success
from .cursor import Cursor
from .derive import DerivedParser, Plan, ProductSchema, SumSchema, parser_for, plan_schema

type Factory = typing.Callable[
    [tuple[type, ...], tuple[tuple[Parser, ...], ...]],
    tuple[typing.Callable, typing.Callable],
]


def qualified_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


def plan_of(shape: typing.Any) -> Plan:
    """Get a plan from a plan, a schema, or a derived class."""
    if isinstance(shape, Plan):
        return shape
    if isinstance(shape, (ProductSchema, SumSchema)):
        return plan_schema(shape)

    parser = parser_for(shape)
    if not isinstance(parser, DerivedParser):
        raise TypeError(f"{shape!r} is not a derived type; only derived types can be generated")
    return parser.plan


def _fields(count: int) -> str:
    return ", ".join(f"field{j}" for j in range(count))


def factory_lines(plan: Plan, name: str) -> list[str]:
    lines: list[str] = []
    emit = lines.append

    emit(f"def {name}(targets, parsers):")
    emit(f"    # {plan.kind} {qualified_name(plan.target)}")
    targets = ", ".join(f"target{i}" for i in range(len(plan.attempts)))
    emit(f"    ({targets},) = targets")
    for i, attempt in enumerate(plan.attempts):
        if not attempt.is_unit:
            names = ", ".join(f"parser{i}_{j}" for j in range(len(attempt.parsers)))
            emit(f"    ({names},) = parsers[{i}]")

    for i, attempt in enumerate(plan.attempts):
        if attempt.is_unit:
            continue
        emit("")
        emit(f"    def attempt{i}(input):")
        for j in range(len(attempt.parsers)):
            emit(f"        result = parser{i}_{j}.try_parse(input)")
            emit("        if result is None:")
            emit("            return None")
            emit(f"        input, field{j} = result")
        emit(f"        return input, target{i}({_fields(len(attempt.parsers))})")

    emit("")
    emit("    def try_parse(input):")
    for i, attempt in enumerate(plan.attempts):
        if attempt.is_unit:
            emit(f"        return input, target{i}()")
        elif attempt.snapshot:
            emit(f"        found = attempt{i}(input.snapshot())")
            emit("        if found is not None:")
            emit("            return found")
        else:
            emit(f"        return attempt{i}(input)")

    emit("")
    emit("    def parse(input):")
    for i, attempt in enumerate(plan.attempts):
        if attempt.is_unit:
            emit(f"        return input, target{i}()")
        elif attempt.snapshot:
            emit(f"        found = attempt{i}(input.snapshot())")
            emit("        if found is not None:")
            emit("            return found")
        else:
            # The last attempt: its error is the one that escapes.
            for j in range(len(attempt.parsers)):
                emit(f"        result = parser{i}_{j}.parse(input)")
                emit("        if isinstance(result, ParseError):")
                emit("            return result")
                emit(f"        input, field{j} = result")
            emit(f"        return input, target{i}({_fields(len(attempt.parsers))})")

    emit("")
    emit("    return parse, try_parse")
    return lines


def generate(shape: typing.Any, name: str = "build_parser") -> str:
    """The source of a factory function for the given shape."""
    return "\n".join(factory_lines(plan_of(shape), name)) + "\n"


class GeneratedParser(Parser):
    """A parser made by a generated factory."""

    def __init__(
        self,
        plan: Plan,
        parse: typing.Callable[[Cursor], Success | ParseError],
        try_parse: typing.Callable[[Cursor], Success | None],
    ):
        self.plan = plan
        self._parse = parse
        self._try_parse = try_parse

    @property
    def error_type(self) -> type[ParseError] | None:
        return self.plan.error_type

    def try_parse(self, cursor: Cursor) -> Success | None:
        return self._try_parse(cursor)

    def parse(self, cursor: Cursor) -> Success | ParseError:
        return self._parse(cursor)

    def describe(self) -> str:
        return self.plan.target.__qualname__


def bind(plan: Plan, factory: Factory) -> GeneratedParser:
    """Hand a plan's targets and field parsers to a generated factory."""
    targets = tuple(attempt.target for attempt in plan.attempts)
    parsers = tuple(attempt.parsers for attempt in plan.attempts)
    parse, try_parse = factory(targets, parsers)
    return GeneratedParser(plan, parse, try_parse)


def compile_generated(shape: typing.Any) -> GeneratedParser:
    """Generate the source for a shape, compile it in memory, and bind it.

    This runs the generated source with `exec`. To keep generated parsers on
    disk instead, see `write_module` and `load_module`.
    """
    plan = plan_of(shape)
    source = generate(plan)
    namespace: dict[str, typing.Any] = {"ParseError": ParseError}
    exec(compile(source, f"<generated parser for {qualified_name(plan.target)}>", "exec"), namespace)
    return bind(plan, namespace["build_parser"])


###############################################################################
# Whole modules
###############################################################################
_HEADER = "# Parser factories derived by shapeparse. Regenerate this file instead of editing it."


class StaleModuleError(ValueError):
    """A generated module no longer matches the shapes it was generated from."""


def fingerprint(plan: Plan) -> str:
    """A digest of the factory source for a plan.

    Two plans with the same fingerprint can share a factory: same attempts,
    same number of fields in each, same snapshots. Changing the field types
    doesn't change it, since field parsers are handed to the factory when it
    is bound.
    """
    return hashlib.sha256(generate(plan).encode("utf-8")).hexdigest()


def render_module(shapes: typing.Iterable[typing.Any]) -> str:
    """Render a module of factories, one per shape.

    The module's `FACTORIES` maps each shape's qualified class name to its
    factory and the fingerprint of the plan it was generated from.
    """
    plans = [plan_of(shape) for shape in shapes]

    lines = [
        _HEADER,
        "from shapeparse.combinators import ParseError",
    ]
    for index, plan in enumerate(plans):
        lines.append("")
        lines.append("")
        lines.extend(factory_lines(plan, f"build_parser_{index}"))

    lines.append("")
    lines.append("")
    lines.append("FACTORIES = {")
    for index, plan in enumerate(plans):
        lines.append(f"    {qualified_name(plan.target)!r}: (build_parser_{index}, {fingerprint(plan)!r}),")
    lines.append("}")
    return "\n".join(lines) + "\n"


def write_module(path: pathlib.Path | str, shapes: typing.Iterable[typing.Any]) -> str:
    """Write (or rewrite) a module of generated factories.

    An existing file is only overwritten if it is itself a generated module;
    anything else raises ValueError and is left alone.
    """
    path = pathlib.Path(path)
    if path.exists():
        with open(path, "r", encoding="utf-8") as file:
            first = file.readline().rstrip("\n")
        if first != _HEADER:
            raise ValueError(f"{path} is not a module generated by shapeparse; not overwriting it")

    source = render_module(shapes)
    path.write_text(source, encoding="utf-8")
    return source


def load_module(path: pathlib.Path | str, shapes: typing.Iterable[typing.Any]) -> dict[type, GeneratedParser]:
    """Import a module written by `write_module` and bind its factories to the
    current plans of `shapes`.

    Raises StaleModuleError if the module is missing a shape, or was generated
    from a plan that no longer matches.
    """
    path = pathlib.Path(path)
    spec = importlib.util.spec_from_file_location(f"_shapeparse_generated_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ValueError(f"Cannot load {path} as a Python module")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    factories = getattr(module, "FACTORIES", None)
    if not isinstance(factories, dict):
        raise ValueError(f"{path} has no FACTORIES; was it written by write_module?")

    parsers = {}
    for shape in shapes:
        plan = plan_of(shape)
        name = qualified_name(plan.target)
        entry = factories.get(name)
        if entry is None:
            raise StaleModuleError(f"{path} has no factory for {name}; regenerate it")

        factory, generated_from = entry
        if generated_from != fingerprint(plan):
            raise StaleModuleError(
                f"{path} was generated from a different shape of {name}; regenerate it"
            )
        parsers[plan.target] = bind(plan, factory)
    return parsers
