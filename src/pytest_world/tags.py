"""Tag names and boolean tag expressions.

Tags classify scenarios (for example `@smoke` or `@api`). Hooks may carry
a tag filter: a boolean expression over tags evaluated against the tag set
of each scenario before the hook is allowed to run.

Supported grammar (case-sensitive tags, case-insensitive keywords)::

    expr   := term ( 'or' term )*
    term   := factor ( 'and' factor )*
    factor := 'not' factor | '(' expr ')' | TAG

Tags may be written with or without a leading `@`.
"""

from collections.abc import Callable, Iterable
from re import ASCII
from re import compile as regexp
from typing import Annotated

from pydantic import Field

from pytest_world.errors import ConfigurationError

#: Base pattern for tag names.
_TAG_PATTERN = r'[\w][\w.:-]*'

#: Compiled pattern for a single (optionally `@`-prefixed) tag.
TAG_PATTERN = regexp(rf'^@?(?P<name>{_TAG_PATTERN})$', flags=ASCII)

#: Tokenizer for tag expressions.
TOKEN_PATTERN = regexp(rf'\s*(?:(?P<paren>[()])|@?(?P<word>{_TAG_PATTERN}))', flags=ASCII)

KEYWORDS = frozenset({'and', 'or', 'not'})

Tag = Annotated[
    str, Field(
        pattern=rf'^@?{_TAG_PATTERN}$',
        title='Tag name',
        description=(
            'Name of a scenario tag. A leading `@` is accepted '
            'and stripped during normalization.'
        ),
        examples=[
            '@smoke',
            'api',
        ],
    ),
]

type Predicate = Callable[[frozenset[str]], bool]


def normalize_tag(value: str) -> str:
    """Strip the optional `@` prefix from a tag name.

    Args:
        value: Raw tag name.

    Returns:
        Tag name without the prefix.

    Raises:
        ConfigurationError: If the value is not a valid tag.
    """
    if not (match := TAG_PATTERN.match(value.strip())):
        raise ConfigurationError(f'Invalid tag {value!r}')

    return match.group('name')


def normalize_tags(values: Iterable[str]) -> frozenset[str]:
    """Normalize a collection of tag names into a frozen set."""
    return frozenset(normalize_tag(value) for value in values)


class TagExpression:
    """Compiled boolean expression over scenario tags.

    Instances are immutable and may be shared between threads.
    """

    def __init__(self, source: str, predicate: Predicate) -> None:
        self.source = source
        self._predicate = predicate

    def __repr__(self) -> str:
        return f'TagExpression({self.source!r})'

    def __call__(self, tags: Iterable[str]) -> bool:
        return self.evaluate(tags)

    def evaluate(self, tags: Iterable[str]) -> bool:
        """Evaluate the expression against a tag set.

        Args:
            tags: Tags of a scenario, with or without the `@` prefix.

        Returns:
            True if the expression matches the tags.
        """
        return self._predicate(normalize_tags(tags))

    @classmethod
    def parse(cls, source: str) -> 'TagExpression':
        """Compile a tag expression.

        Args:
            source: Expression text, for example `@smoke and not @wip`.

        Returns:
            Compiled expression. An empty source matches every scenario.

        Raises:
            ConfigurationError: If the expression is malformed.
        """
        tokens = cls._tokenize(source)
        if not tokens:
            return cls(source, lambda tags: True)  # noqa: ARG005

        parser = _ExpressionParser(source, tokens)
        predicate = parser.parse_expression()
        if parser.position != len(tokens):
            raise ConfigurationError(
                f'Unexpected token {tokens[parser.position]!r} in tag expression {source!r}',
            )

        return cls(source, predicate)

    @staticmethod
    def _tokenize(source: str) -> list[str]:
        """Split an expression into parentheses, keywords and tags."""
        tokens: list[str] = []
        position = 0

        while position < len(source):
            if not source[position:].strip():
                break

            match = TOKEN_PATTERN.match(source, position)
            if not match:
                raise ConfigurationError(
                    f'Invalid tag expression {source!r} at position {position}',
                )

            if paren := match.group('paren'):
                tokens.append(paren)
            else:
                word = match.group('word')
                raw = match.group(0).strip()
                if not raw.startswith('@') and word.lower() in KEYWORDS:
                    tokens.append(word.lower())
                else:
                    tokens.append(f'@{word}')

            position = match.end()

        return tokens


class _ExpressionParser:
    """Recursive descent parser producing predicate closures."""

    def __init__(self, source: str, tokens: list[str]) -> None:
        self.source = source
        self.tokens = tokens
        self.position = 0

    def peek(self) -> str | None:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None

    def take(self) -> str:
        if (token := self.peek()) is None:
            raise ConfigurationError(f'Unexpected end of tag expression {self.source!r}')

        self.position += 1
        return token

    def parse_expression(self) -> Predicate:
        operands = [self.parse_term()]
        while self.peek() == 'or':
            self.take()
            operands.append(self.parse_term())

        if len(operands) == 1:
            return operands[0]

        return lambda tags: any(operand(tags) for operand in operands)

    def parse_term(self) -> Predicate:
        operands = [self.parse_factor()]
        while self.peek() == 'and':
            self.take()
            operands.append(self.parse_factor())

        if len(operands) == 1:
            return operands[0]

        return lambda tags: all(operand(tags) for operand in operands)

    def parse_factor(self) -> Predicate:
        token = self.take()

        if token == 'not':
            operand = self.parse_factor()
            return lambda tags: not operand(tags)

        if token == '(':
            inner = self.parse_expression()
            if self.take() != ')':
                raise ConfigurationError(f'Unbalanced parentheses in tag expression {self.source!r}')
            return inner

        if token.startswith('@'):
            name = token[1:]
            return lambda tags: name in tags

        raise ConfigurationError(f'Unexpected token {token!r} in tag expression {self.source!r}')
