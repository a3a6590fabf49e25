"""Core exception hierarchy.

This module defines base error and warning types used across the library
to report configuration issues, driver acquisition failures, interaction
failures, polling timeouts and hook failures in a structured way.
"""

from os import linesep
from typing import TYPE_CHECKING, Any, TypedDict

from yaml import dump

if TYPE_CHECKING:
    from typing import Self

SNIPPET_ELLIPSIS = f' ...{linesep}'
SNIPPET_INDENT = 2

FORMAT_REPLACER = '<runtime object>'
FORMAT_SCENARIO = '<anonymous scenario>'
FORMAT_INDENT = 4

SCALARS = (str, bytes, int, float, bool)
MAPPINGS = (dict,)
SEQUENCES = (list, tuple, set, frozenset)


class ErrorContext(TypedDict, total=False):
    """Container describing contextual information for error formatting.

    All fields are optional; the formatter adapts output based on
    provided values.
    """

    #: Identifier of the scenario execution.
    scenario_id: str | None
    #: Human-readable scenario name.
    scenario_name: str | None

    #: Position of the step where the error occurred.
    step_num: int | None
    #: Text of the step where the error occurred.
    step_text: str | None

    #: Name of the hook where the error occurred.
    hook_name: str | None

    #: Underlying exception that triggered formatting.
    error: Exception | None

    #: Arbitrary data associated with the failure.
    data: dict[str, Any] | None


class ErrorFormatter:
    """Utility class for formatting scenario-related errors.

    Produces human-readable messages with optional scenario location
    and a YAML snippet of the data attached to the failure.
    """

    @classmethod
    def format(cls, message: str, context: ErrorContext | None = None) -> str:
        """Format an error message using contextual information.

        Args:
            message: Base human-readable error message.
            context: Optional error context with location and data.

        Returns:
            A fully formatted error message suitable for display.
        """
        if not context:
            return message

        location = cls.get_location_string(context, indent=FORMAT_INDENT)
        snippet = cls.get_snippet_string(context, indent=FORMAT_INDENT * 2)
        if not location and not snippet:
            return message

        return f'{message}{linesep}{location}{snippet}'

    @classmethod
    def get_location_string(cls, context: ErrorContext, *,
                            indent: str | int | None = None) -> str:
        """Format scenario, step and hook location information.

        Args:
            context: Error context containing location metadata.
            indent: Optional indentation (string or number of spaces).

        Returns:
            A formatted location string, or an empty string if the
            context carries no location.
        """
        indent = cls._ensure_indent(indent)

        scenario_name = context.get('scenario_name')
        scenario_id = context.get('scenario_id')
        if not scenario_name and not scenario_id:
            return ''

        message = f'{indent}in scenario "{scenario_name or FORMAT_SCENARIO}"'
        if scenario_id:
            message += f' ({scenario_id})'
        message += linesep

        if (step_num := context.get('step_num')) is not None:
            message += f'{indent}on step {step_num + 1}'
            if step_text := context.get('step_text'):
                message += f': {step_text}'
            message += linesep

        if hook_name := context.get('hook_name'):
            message += f'{indent}in hook {hook_name!r}{linesep}'

        return message

    @classmethod
    def get_snippet_string(cls, context: ErrorContext, *,
                           indent: str | int | None = None) -> str:
        """Generate a YAML snippet of the data attached to the error.

        Args:
            context: Error context containing optional data.
            indent: Optional indentation (string or number of spaces).

        Returns:
            A formatted multi-line snippet string, or an empty string
            if no data is available.
        """
        indent = cls._ensure_indent(indent)

        if not (data := context.get('data')):
            return ''

        snippet = f'{indent}{SNIPPET_ELLIPSIS}'
        snippet += cls._make_yaml(data, indent)
        snippet += linesep

        return snippet

    @classmethod
    def _filter_unsafe(cls, value: Any) -> Any:  # noqa: ANN401
        """Recursively sanitize values for safe YAML serialization.

        Non-scalar and non-container objects are replaced with
        a placeholder to prevent leaking opaque data.

        Args:
            value: Arbitrary value to sanitize.

        Returns:
            A YAML-safe representation of the value.
        """
        if value is None or isinstance(value, SCALARS):
            return value

        if isinstance(value, MAPPINGS):
            return {
                f'{key}': cls._filter_unsafe(item)
                for key, item in value.items()
            }

        if isinstance(value, SEQUENCES):
            return [cls._filter_unsafe(item) for item in value]

        return FORMAT_REPLACER

    @classmethod
    def _make_yaml(cls, value: Any, indent: str = '') -> str:  # noqa: ANN401
        """Serialize a value to an indented YAML string.

        Args:
            value: Arbitrary value to serialize.
            indent: Optional indentation prefix.

        Returns:
            A YAML-formatted string representation of the value.
        """
        data = dump(
            cls._filter_unsafe(value),
            indent=SNIPPET_INDENT,
            sort_keys=False,
        )

        return cls._make_indent(data, indent)

    @staticmethod
    def _make_indent(value: str, indent: str) -> str:
        """Apply indentation to a multi-line string.

        Empty or whitespace-only lines are omitted.
        """
        if not indent:
            return value

        return linesep.join(
            f'{indent}{line}'
            for line in value.splitlines()
            if line.strip()
        )

    @staticmethod
    def _ensure_indent(indent: str | int | None = None) -> str:
        """Normalize indentation input."""
        if isinstance(indent, int) and indent > 0:
            return ' ' * indent

        if isinstance(indent, str):
            return indent

        return ''


class WorldWarning(UserWarning):
    """Warning emitted for non-fatal registration issues.

    Used when a hook or step definition is questionable but does not
    prevent execution (for example, when running in non-strict mode).
    """


class WorldError(Exception, ErrorFormatter):
    """Base exception for all pytest-world errors.

    All custom exceptions raised by the library inherit from this class
    to allow unified error handling by callers.
    """

    #: Whether the error aborts polling immediately instead of being retried.
    fatal: bool = False

    def __init__(self, message: str, *,
                 context: ErrorContext | None = None) -> None:
        """Initialize an error.

        Args:
            message: Human-readable error description.
            context: Error context containing optional runtime values.
        """
        self.message = message
        self.context = context

        super().__init__(message)

    def __str__(self) -> str:
        """String representation."""
        return self.format(self.message, self.context)

    def with_context(self, **context: Any) -> 'Self':  # noqa: ANN401
        """Merge additional location details into the error context.

        Args:
            **context: Fields of `ErrorContext` to set when missing.

        Returns:
            The same error instance.
        """
        merged = ErrorContext(**(self.context or {}))
        for key, value in context.items():
            if merged.get(key) is None:
                merged[key] = value  # type: ignore[literal-required]

        self.context = merged

        return self


class ConfigurationError(WorldError):
    """Error raised for invalid or inconsistent configuration.

    Configuration errors are programming or setup mistakes and
    are never retried.
    """

    fatal = True


class UnknownClientError(ConfigurationError):
    """Error raised when an API client name is not configured."""

    def __init__(self, name: str, known: 'tuple[str, ...]' = ()) -> None:
        """Initialize an unknown client error.

        Args:
            name: Requested client name.
            known: Names of configured clients.
        """
        self.name = name
        self.known = known

        message = f'API client {name!r} is not configured'
        if known:
            message += f' (known: {', '.join(known)})'

        super().__init__(message)


class DriverEnvironmentError(WorldError):
    """Error raised when a UI driver or API client can not be acquired.

    This is fatal for the scenario and is never retried.
    """

    fatal = True


class MissingContextDataError(WorldError, KeyError):
    """Error raised when a step reads a key that was never stored.

    Indicates a step wiring bug (for example, a step relying on data
    produced by a step that has not run), so it is never retried.
    """

    fatal = True

    def __init__(self, key: str, known: 'tuple[str, ...]' = ()) -> None:
        """Initialize a missing data error.

        Args:
            key: Requested key.
            known: Keys currently present in the data bag.
        """
        self.key = key

        message = f'Context data {key!r} is not set'
        context = None
        if known:
            context = ErrorContext(data={'available': sorted(known)})

        super().__init__(message, context=context)

    def __str__(self) -> str:
        """String representation without `KeyError` quoting."""
        return WorldError.__str__(self)


class InteractionError(WorldError):
    """Base error for UI and API interaction failures."""


class ElementNotFoundError(InteractionError):
    """Error raised when a UI element is not found in its wait window."""

    def __init__(self, selector: str, elapsed: float) -> None:
        """Initialize an element lookup error.

        Args:
            selector: Selector used for the lookup.
            elapsed: Seconds spent waiting for the element.
        """
        self.selector = selector
        self.elapsed = elapsed

        super().__init__(
            f'Element {selector!r} not found after {elapsed:.3f}s',
        )


class InvalidSelectorError(InteractionError):
    """Error raised for a syntactically invalid selector.

    Polling aborts immediately on this error.
    """

    fatal = True

    def __init__(self, selector: str, reason: str | None = None) -> None:
        """Initialize an invalid selector error.

        Args:
            selector: Offending selector.
            reason: Optional driver-provided explanation.
        """
        self.selector = selector

        message = f'Selector {selector!r} is invalid'
        if reason:
            message += f': {reason}'

        super().__init__(message)


class TransportError(InteractionError):
    """Error raised when an HTTP request fails below the HTTP layer.

    Only connection-level failures (timeouts, refused connections,
    protocol errors) raise; HTTP error statuses are returned as data.
    """

    def __init__(self, message: str, *,
                 method: str | None = None,
                 url: str | None = None) -> None:
        """Initialize a transport error.

        Args:
            message: Human-readable error description.
            method: HTTP method of the failed request.
            url: Target URL of the failed request.
        """
        self.method = method
        self.url = url

        context = None
        if method or url:
            context = ErrorContext(data={'method': method, 'url': url})

        super().__init__(message, context=context)


class PollTimeoutError(WorldError, TimeoutError):
    """Error raised when a polled condition is not satisfied in time.

    The last observed failure is kept as `last_error` and chained
    as the exception cause.
    """

    def __init__(self, message: str, *,
                 attempts: int,
                 elapsed: float,
                 last_error: BaseException | None = None) -> None:
        """Initialize a polling timeout error.

        Args:
            message: Human-readable error description.
            attempts: Number of condition evaluations performed.
            elapsed: Seconds spent polling.
            last_error: Last exception raised by the condition, if any.
        """
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error

        if last_error is not None:
            message += f' (last error: {last_error!r})'

        super().__init__(message)


class PollCancelledError(WorldError):
    """Error raised when polling is interrupted by its cancel token."""

    fatal = True


class ScenarioTimeoutError(WorldError):
    """Error raised when a scenario exceeds its execution deadline."""

    fatal = True


class HookError(WorldError):
    """Error raised for a failing hook action."""


class StepDefinitionError(WorldError):
    """Base error for step registry lookups."""

    fatal = True


class UndefinedStepError(StepDefinitionError):
    """Error raised when no step definition matches a step text."""

    def __init__(self, text: str) -> None:
        """Initialize an undefined step error.

        Args:
            text: Step text without a matching definition.
        """
        self.text = text

        super().__init__(f'Undefined step: {text!r}')


class AmbiguousStepError(StepDefinitionError):
    """Error raised when several step definitions match a step text."""

    def __init__(self, text: str, patterns: 'tuple[str, ...]') -> None:
        """Initialize an ambiguous step error.

        Args:
            text: Step text.
            patterns: Patterns of all matching definitions.
        """
        self.text = text
        self.patterns = patterns

        super().__init__(
            f'Ambiguous step: {text!r}',
            context=ErrorContext(data={'patterns': list(patterns)}),
        )
