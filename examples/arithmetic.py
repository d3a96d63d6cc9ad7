# Example grammars: digits, numbers, arithmetic tokens and expressions.

from shapeparse import Box, Character, NonEmpty, Sum, derive


@derive
class MathToken(Sum):
    class Plus:
        char: Character["+"]

    class Sub:
        char: Character["-"]

    class Times:
        char: Character["*"]

    class Divide:
        char: Character["/"]


@derive
class Digit(Sum):
    class D0:
        char: Character["0"]

    class D1:
        char: Character["1"]

    class D2:
        char: Character["2"]

    class D3:
        char: Character["3"]

    class D4:
        char: Character["4"]

    class D5:
        char: Character["5"]

    class D6:
        char: Character["6"]

    class D7:
        char: Character["7"]

    class D8:
        char: Character["8"]

    class D9:
        char: Character["9"]


def digit_value(digit: Digit) -> int:
    return int(str(digit.char))


@derive
class Number:
    digits: NonEmpty[Digit]

    @property
    def value(self) -> int:
        result = 0
        for digit in self.digits:
            result = result * 10 + digit_value(digit)
        return result


@derive
class Atom(Sum):
    class Group:
        open: Character["("]
        inner: Box["Expression"]
        close: Character[")"]

    class Literal:
        number: Number


@derive
class Expression:
    """A flat chain of operators, evaluated with the usual precedence."""

    head: Atom
    tail: list[tuple[MathToken, Atom]]

    def evaluate(self) -> float:
        # Fold the multiplicative operators first, then the additive ones.
        terms = [evaluate_atom(self.head)]
        operators: list[MathToken] = []
        for operator, atom in self.tail:
            value = evaluate_atom(atom)
            if isinstance(operator, MathToken.Times):
                terms[-1] = terms[-1] * value
            elif isinstance(operator, MathToken.Divide):
                terms[-1] = terms[-1] / value
            else:
                operators.append(operator)
                terms.append(value)

        result = terms[0]
        for operator, value in zip(operators, terms[1:]):
            if isinstance(operator, MathToken.Plus):
                result += value
            else:
                result -= value
        return result


def evaluate_atom(atom: Atom) -> float:
    if isinstance(atom, Atom.Group):
        return atom.inner.evaluate()
    return atom.number.value
