"""Step definitions and their binding to step texts.

The external scenario runner supplies step texts; a `StepRegistry` binds
each text to a step function and its arguments. Patterns use `{name}`
placeholders with an optional converter (`{count:int}`, `{ratio:float}`,
`{word:word}`); any other text is matched literally.
"""

from collections.abc import Callable
from re import escape
from re import compile as regexp
from threading import Lock
from typing import TYPE_CHECKING, Any
from warnings import warn

from pydantic import Field

from pytest_world.errors import AmbiguousStepError, ConfigurationError, UndefinedStepError, WorldWarning
from pytest_world.models import SchemaModel

if TYPE_CHECKING:
    from re import Pattern

#: Step function: receives the scenario context and keyword arguments.
type StepFunction = Callable[..., Any]

PLACEHOLDER = regexp(r'\{(?P<name>[a-zA-Z_]\w*)(?::(?P<kind>\w+))?\}')

CONVERTERS: dict[str, tuple[str, Callable[[str], Any]]] = {
    'str': (r'"(?:[^"\\]|\\.)*"|\S+', lambda value: value[1:-1] if value[:1] == value[-1:] == '"' else value),
    'word': (r'\w+', str),
    'int': (r'[-+]?\d+', int),
    'float': (r'[-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?', float),
    'any': (r'.*?', str),
}


class StepInvocation(SchemaModel):
    """Step text bound to its implementation and arguments."""

    text: str = Field(
        title='Step text',
    )
    func: StepFunction | None = Field(
        default=None,
        title='Step function',
        description='Implementation; `None` for undefined (pending) steps.',
    )
    arguments: dict[str, Any] = Field(
        default_factory=dict,
        title='Bound arguments',
    )

    @property
    def pending(self) -> bool:
        """Whether the step has no implementation."""
        return self.func is None

    def __call__(self, world: Any) -> Any:  # noqa: ANN401
        """Run the step against a scenario context.

        Raises:
            UndefinedStepError: If the step has no implementation.
        """
        if self.func is None:
            raise UndefinedStepError(self.text)

        return self.func(world, **self.arguments)


class StepDefinition:
    """Compiled step pattern."""

    def __init__(self, pattern: str, func: StepFunction) -> None:
        self.pattern = pattern
        self.func = func
        self.converters: dict[str, Callable[[str], Any]] = {}
        self.regex = self._compile(pattern)

    def __repr__(self) -> str:
        return f'StepDefinition({self.pattern!r})'

    def _compile(self, pattern: str) -> 'Pattern[str]':
        """Translate placeholders into named regular expression groups."""
        parts: list[str] = []
        position = 0

        for match in PLACEHOLDER.finditer(pattern):
            name = match.group('name')
            kind = match.group('kind') or 'str'
            if kind not in CONVERTERS:
                raise ConfigurationError(f'Unknown placeholder type {kind!r} in step {pattern!r}')
            if name in self.converters:
                raise ConfigurationError(f'Duplicate placeholder {name!r} in step {pattern!r}')

            expression, converter = CONVERTERS[kind]
            self.converters[name] = converter

            parts.append(escape(pattern[position:match.start()]))
            parts.append(f'(?P<{name}>{expression})')
            position = match.end()

        parts.append(escape(pattern[position:]))

        return regexp(f'^{''.join(parts)}$')

    def match(self, text: str) -> dict[str, Any] | None:
        """Return converted arguments if the text matches the pattern."""
        if not (match := self.regex.match(text)):
            return None

        return {
            name: self.converters[name](value)
            for name, value in match.groupdict().items()
        }


class StepRegistry:
    """Registry of step definitions.

    Args:
        strict: Raise on duplicate patterns instead of warning.
    """

    def __init__(self, *, strict: bool = False) -> None:
        self.strict_mode = strict
        self.definitions: list[StepDefinition] = []
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self.definitions)

    def add(self, pattern: str, func: StepFunction) -> StepDefinition:
        """Register a step function for a pattern.

        Raises:
            ConfigurationError: If the pattern is invalid, or duplicated
                in strict mode.
        """
        definition = StepDefinition(pattern.strip(), func)

        with self._lock:
            if any(item.pattern == definition.pattern for item in self.definitions):
                message = f'Step {definition.pattern!r} is shadowing an existing'
                if self.strict_mode:
                    raise ConfigurationError(message)
                warn(message, category=WorldWarning, stacklevel=2)
                self.definitions = [
                    item
                    for item in self.definitions
                    if item.pattern != definition.pattern
                ]

            self.definitions.append(definition)

        return definition

    def step(self, pattern: str) -> Callable[[StepFunction], StepFunction]:
        """Decorator registering a step function.

        Example::

            @registry.step('I wait for {seconds:float} seconds')
            def wait(world, seconds): ...
        """
        def decorator(func: StepFunction) -> StepFunction:
            self.add(pattern, func)
            return func

        return decorator

    def update(self, other: 'StepRegistry') -> None:
        """Register every definition of another registry."""
        for definition in other.definitions:
            self.add(definition.pattern, definition.func)

    def bind(self, text: str) -> StepInvocation:
        """Bind a step text to its definition.

        Args:
            text: Step text without the Gherkin keyword.

        Returns:
            Invocation with converted arguments.

        Raises:
            UndefinedStepError: If no definition matches.
            AmbiguousStepError: If several definitions match.
        """
        text = text.strip()
        matches = [
            (definition, arguments)
            for definition in self.definitions
            if (arguments := definition.match(text)) is not None
        ]

        if not matches:
            raise UndefinedStepError(text)

        if len(matches) > 1:
            raise AmbiguousStepError(text, tuple(item.pattern for item, _ in matches))

        definition, arguments = matches[0]

        return StepInvocation(text=text, func=definition.func, arguments=arguments)

    def bind_or_pending(self, text: str) -> StepInvocation:
        """Bind a step text, returning a pending invocation when undefined.

        Raises:
            AmbiguousStepError: If several definitions match.
        """
        try:
            return self.bind(text)

        except UndefinedStepError:
            return StepInvocation(text=text.strip())
