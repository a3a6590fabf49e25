"""Ordered, tag-filtered hook pipeline wrapped around every scenario.

Hooks are described by immutable `HookDescriptor` records built at
configuration time. For a given scenario, the hooks of a phase whose tag
filter matches the scenario tags run in ascending priority order; equal
priorities keep registration order.

Failure semantics:
- the first failing before-hook aborts the remaining before-hooks;
- every matching after-hook runs, whatever happened before it;
- hook failures are recorded as `HookResult` entries and never raised.
"""

from collections.abc import Callable
from functools import cached_property
from inspect import Parameter, signature
from threading import Lock
from time import perf_counter
from typing import TYPE_CHECKING, Any
from warnings import warn

from pydantic import Field

from pytest_world.errors import ConfigurationError, ErrorContext, HookError, WorldWarning
from pytest_world.logs import get_logger
from pytest_world.models import SchemaModel
from pytest_world.results import FailureDetail, HookPhase, HookResult, ScenarioStatus, StepResult, StepStatus
from pytest_world.tags import TagExpression

if TYPE_CHECKING:
    from collections.abc import Iterable

    from pytest_world.world import ScenarioContext

logger = get_logger(__name__)

#: Priority of the built-in failure-capture hook: it runs before any
#: user-defined after-hook may close or reset the interaction targets.
FAILURE_CAPTURE_PRIORITY = -1000

FAILURE_CAPTURE_NAME = 'capture_failure_artifacts'


class ScenarioOutcome(SchemaModel):
    """Outcome of a scenario as known when its after-hooks run."""

    status: ScenarioStatus = ScenarioStatus.PASSED
    steps: list[StepResult] = Field(default_factory=list)
    failure: FailureDetail | None = None

    @property
    def failed(self) -> bool:
        """Whether the scenario failed so far."""
        return self.status == ScenarioStatus.FAILED

    @property
    def failed_step(self) -> StepResult | None:
        """First failed step, if any."""
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None


#: Hook callable: receives the scenario context and the outcome so far.
type HookAction = Callable[..., Any]


class HookDescriptor(SchemaModel):
    """Registered hook."""

    name: str = Field(
        title='Hook name',
        description='Name used in logs and hook result entries.',
    )
    phase: HookPhase = Field(
        title='Phase',
    )
    action: HookAction = Field(
        title='Hook action',
        description='Callable receiving the scenario context and the outcome so far.',
    )
    tags: str | None = Field(
        default=None,
        title='Tag filter',
        description='Boolean tag expression, for example `@ui and not @wip`.',
    )
    priority: int = Field(
        default=0,
        title='Priority',
        description='Lower priorities run first.',
    )

    @cached_property
    def tag_filter(self) -> TagExpression:
        """Compiled tag filter; matches every scenario when unset."""
        return TagExpression.parse(self.tags or '')

    def matches(self, tags: 'Iterable[str]') -> bool:
        """Whether the hook applies to a scenario with the given tags."""
        return self.tag_filter.evaluate(tags)


def _adapt_action(func: 'Callable[..., Any]') -> HookAction:
    """Accept hook functions taking only the scenario context."""
    try:
        parameters = [
            parameter
            for parameter in signature(func).parameters.values()
            if parameter.kind in (Parameter.POSITIONAL_ONLY, Parameter.POSITIONAL_OR_KEYWORD)
        ]

    except (TypeError, ValueError):
        return func

    if len(parameters) == 1:
        return lambda world, outcome: func(world)  # noqa: ARG005

    return func


def capture_failure_artifacts(world: 'ScenarioContext', outcome: ScenarioOutcome) -> None:
    """Attach a diagnostic artifact of every used target of a failed scenario.

    UI targets produce a screenshot and API targets a dump of their last
    exchange. A target failing to produce its artifact does not prevent
    the others from being captured.

    Raises:
        HookError: If any target failed to produce its artifact.
    """
    if not outcome.failed:
        return

    failures: list[str] = []
    for handle in world.interactables():
        if not handle.has_activity:
            continue

        try:
            if artifact := handle.capture_diagnostic():
                world.attach(artifact, source=handle.name)

        except Exception as error:  # noqa: BLE001
            logger.exception('diagnostic_capture_failed', target=handle.name)
            failures.append(f'{handle.name}: {error!r}')

    if failures:
        raise HookError(
            'Diagnostic capture failed',
            context=ErrorContext(data={'targets': failures}),
        )


class HookPipeline:
    """Ordered registry and executor of scenario hooks.

    Args:
        capture_failures: Register the built-in failure-capture hook.
        strict: Raise on duplicate hook names instead of warning.
    """

    def __init__(self, *, capture_failures: bool = True, strict: bool = False) -> None:
        self.strict_mode = strict

        self._lock = Lock()
        self._hooks: list[tuple[int, int, HookDescriptor]] = []
        self._sequence = 0

        if capture_failures:
            self.register(HookDescriptor(
                name=FAILURE_CAPTURE_NAME,
                phase=HookPhase.AFTER,
                action=capture_failure_artifacts,
                priority=FAILURE_CAPTURE_PRIORITY,
            ))

    def __len__(self) -> int:
        return len(self._hooks)

    def register(self, hook: HookDescriptor) -> HookDescriptor:
        """Register a hook.

        Args:
            hook: Hook descriptor.

        Returns:
            The registered descriptor.

        Raises:
            ConfigurationError: If the tag filter is malformed, or if the
                name is already registered for the phase in strict mode.
        """
        hook.tag_filter  # noqa: B018

        with self._lock:
            if any(
                item.name == hook.name and item.phase == hook.phase
                for _, _, item in self._hooks
            ):
                message = f'Hook {hook.name!r} is already registered for {hook.phase} phase'
                if self.strict_mode:
                    raise ConfigurationError(message)
                warn(message, category=WorldWarning, stacklevel=2)

            self._hooks.append((hook.priority, self._sequence, hook))
            self._sequence += 1
            self._hooks.sort(key=lambda item: (item[0], item[1]))

        return hook

    def _decorator(self, phase: HookPhase,
                   tags: str | None, priority: int,
                   name: str | None) -> 'Callable[[Callable[..., Any]], Callable[..., Any]]':
        def decorator(func: 'Callable[..., Any]') -> 'Callable[..., Any]':
            self.register(HookDescriptor(
                name=name or func.__name__,
                phase=phase,
                action=_adapt_action(func),
                tags=tags,
                priority=priority,
            ))
            return func

        return decorator

    def before(self, tags: str | None = None, *,
               priority: int = 0,
               name: str | None = None) -> 'Callable[[Callable[..., Any]], Callable[..., Any]]':
        """Decorator registering a before-hook.

        The decorated function receives the scenario context and,
        optionally, the scenario outcome so far.
        """
        return self._decorator(HookPhase.BEFORE, tags, priority, name)

    def after(self, tags: str | None = None, *,
              priority: int = 0,
              name: str | None = None) -> 'Callable[[Callable[..., Any]], Callable[..., Any]]':
        """Decorator registering an after-hook."""
        return self._decorator(HookPhase.AFTER, tags, priority, name)

    def hooks(self, phase: HookPhase, tags: 'Iterable[str]' = ()) -> list[HookDescriptor]:
        """Hooks of a phase matching a tag set, in execution order."""
        tags = frozenset(tags)
        with self._lock:
            registered = [hook for _, _, hook in self._hooks]

        return [
            hook
            for hook in registered
            if hook.phase == phase and hook.matches(tags)
        ]

    def invoke(self, hook: HookDescriptor, world: 'ScenarioContext',
               outcome: ScenarioOutcome) -> HookResult:
        """Run a single hook, converting its failure into a result entry."""
        logger.debug('hook_started', hook=hook.name, phase=f'{hook.phase}')
        started = perf_counter()

        try:
            hook.action(world, outcome)

        except Exception as error:  # noqa: BLE001
            if isinstance(error, HookError):
                error.with_context(
                    scenario_id=world.scenario_id,
                    scenario_name=world.name,
                    hook_name=hook.name,
                )
            logger.exception('hook_failed', hook=hook.name, phase=f'{hook.phase}')
            return HookResult(
                name=hook.name,
                phase=hook.phase,
                passed=False,
                duration=perf_counter() - started,
                failure=FailureDetail.from_exception(error),
            )

        logger.debug('hook_finished', hook=hook.name, phase=f'{hook.phase}')
        return HookResult(
            name=hook.name,
            phase=hook.phase,
            passed=True,
            duration=perf_counter() - started,
        )

    def run_before(self, world: 'ScenarioContext') -> list[HookResult]:
        """Run the matching before-hooks until the first failure.

        Args:
            world: Context of the scenario.

        Returns:
            Results of the hooks that ran; the last entry is the failing
            hook if any hook failed.
        """
        outcome = ScenarioOutcome()
        results: list[HookResult] = []

        for hook in self.hooks(HookPhase.BEFORE, world.tags):
            result = self.invoke(hook, world, outcome)
            results.append(result)
            if not result.passed:
                break

        return results

    def run_after(self, world: 'ScenarioContext',
                  outcome: ScenarioOutcome) -> list[HookResult]:
        """Run every matching after-hook.

        Args:
            world: Context of the scenario.
            outcome: Outcome of the scenario so far.

        Returns:
            Results of all matching hooks in execution order.
        """
        return [
            self.invoke(hook, world, outcome)
            for hook in self.hooks(HookPhase.AFTER, world.tags)
        ]
