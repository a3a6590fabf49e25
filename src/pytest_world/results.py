"""Step and scenario outcome records and the result aggregator.

Results form the structured stream consumed by external report renderers.
The aggregator is the only structure shared between workers: it serializes
`record` calls and hands the accumulated records over once via `drain`.
"""

from datetime import UTC, datetime
from enum import StrEnum
from json import dumps
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING

from pydantic import Field, TypeAdapter

from pytest_world.artifacts import ArtifactRef  # noqa: TC001
from pytest_world.models import SchemaModel

if TYPE_CHECKING:
    from collections.abc import Iterable
    from typing import Self

MAX_CAUSES = 16

#: Name of the after-hook entries reporting handle release failures.
TEARDOWN_HOOK = 'teardown'


class StepStatus(StrEnum):
    """Outcome of a single step invocation."""

    PASSED = 'passed'
    FAILED = 'failed'
    PENDING = 'pending'
    SKIPPED = 'skipped'


class ScenarioStatus(StrEnum):
    """Outcome of a whole scenario."""

    PASSED = 'passed'
    FAILED = 'failed'


class HookPhase(StrEnum):
    """Phase a hook runs in."""

    BEFORE = 'before'
    AFTER = 'after'


class Cause(SchemaModel):
    """One link of an exception cause chain."""

    error_type: str
    message: str


class FailureDetail(SchemaModel):
    """Human-readable failure message plus its structured cause chain."""

    message: str
    error_type: str
    causes: list[Cause] = Field(
        default_factory=list,
        description='Chained causes, from the direct cause to the root cause.',
    )

    @classmethod
    def from_exception(cls, error: BaseException) -> 'Self':
        """Build a failure detail from an exception and its cause chain.

        Both explicit (`raise ... from`) and implicit exception context
        links are followed.

        Args:
            error: Exception to describe.

        Returns:
            Failure detail describing the exception.
        """
        causes: list[Cause] = []
        seen = {id(error)}
        current = error.__cause__ or error.__context__

        while current is not None and id(current) not in seen and len(causes) < MAX_CAUSES:
            seen.add(id(current))
            causes.append(Cause(
                error_type=_qualname(current),
                message=f'{current}',
            ))
            current = current.__cause__ or current.__context__

        return cls(
            message=f'{error}' or _qualname(error),
            error_type=_qualname(error),
            causes=causes,
        )


def _qualname(error: BaseException) -> str:
    """Return a dotted name of an exception type."""
    error_type = type(error)
    if error_type.__module__ == 'builtins':
        return error_type.__qualname__

    return f'{error_type.__module__}.{error_type.__qualname__}'


class StepResult(SchemaModel):
    """Outcome of one step invocation."""

    text: str = Field(
        title='Step text',
    )
    status: StepStatus
    duration: float = Field(
        default=0.0,
        ge=0,
        title='Duration',
        description='Step execution time in seconds.',
    )
    failure: FailureDetail | None = None
    attachments: list[ArtifactRef] = Field(
        default_factory=list,
    )


class HookResult(SchemaModel):
    """Outcome of one hook invocation."""

    name: str
    phase: HookPhase
    passed: bool
    duration: float = Field(default=0.0, ge=0)
    failure: FailureDetail | None = None

    @classmethod
    def teardown_failure(cls, error: BaseException, duration: float = 0.0) -> 'Self':
        """Report a failure to release scenario handles as an after-hook entry."""
        return cls(
            name=TEARDOWN_HOOK,
            phase=HookPhase.AFTER,
            passed=False,
            duration=duration,
            failure=FailureDetail.from_exception(error),
        )


class ScenarioResult(SchemaModel):
    """Aggregated outcome of a scenario.

    The status is `failed` when any step failed (or was pending in strict
    mode) or a before-hook failed. After-hook failures never change the
    status of the steps; they are reported as separate hook entries.
    """

    scenario_id: str
    name: str
    tags: list[str] = Field(default_factory=list)
    status: ScenarioStatus
    steps: list[StepResult] = Field(default_factory=list)
    hooks: list[HookResult] = Field(default_factory=list)
    artifacts: list[ArtifactRef] = Field(default_factory=list)
    failure: FailureDetail | None = Field(
        default=None,
        description='Scenario-level failure (before-hook or timeout), if any.',
    )
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    duration: float = Field(default=0.0, ge=0)
    worker: str | None = None

    @property
    def passed(self) -> bool:
        """Whether the scenario passed."""
        return self.status == ScenarioStatus.PASSED

    @property
    def hook_failures(self) -> list[HookResult]:
        """Hook invocations that failed, in execution order."""
        return [hook for hook in self.hooks if not hook.passed]

    @staticmethod
    def derive_status(steps: 'Iterable[StepResult]',
                      hooks: 'Iterable[HookResult]', *,
                      strict: bool = True) -> ScenarioStatus:
        """Derive a scenario status from its step and hook outcomes.

        Args:
            steps: Step outcomes in execution order.
            hooks: Hook outcomes in execution order.
            strict: Whether pending steps fail the scenario.

        Returns:
            The derived scenario status.
        """
        failing = {StepStatus.FAILED}
        if strict:
            failing.add(StepStatus.PENDING)

        if any(step.status in failing for step in steps):
            return ScenarioStatus.FAILED

        if any(not hook.passed for hook in hooks if hook.phase == HookPhase.BEFORE):
            return ScenarioStatus.FAILED

        return ScenarioStatus.PASSED


ResultStream = TypeAdapter(list[ScenarioResult])


class ResultAggregator:
    """Thread-safe, append-only collector of scenario results.

    Records keep insertion order per worker; the order across workers
    is the order in which `record` calls acquired the lock.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._results: list[ScenarioResult] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def record(self, result: ScenarioResult) -> None:
        """Append a scenario result."""
        with self._lock:
            self._results.append(result)

    def drain(self) -> tuple[ScenarioResult, ...]:
        """Return all recorded results and empty the aggregator."""
        with self._lock:
            results, self._results = tuple(self._results), []

        return results


def dump_results(results: 'Iterable[ScenarioResult]', indent: int | None = 2) -> str:
    """Serialize results into the JSON result stream."""
    return ResultStream.dump_json(list(results), indent=indent).decode()


def write_report(results: 'Iterable[ScenarioResult]', path: Path | str) -> Path:
    """Write results as a JSON report file.

    Args:
        results: Scenario results to write.
        path: Destination file; parent directories are created.

    Returns:
        Path of the written report.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_results(results), encoding='utf-8')

    return path


def read_report(path: Path | str) -> list[ScenarioResult]:
    """Read a JSON report file written by `write_report`."""
    return ResultStream.validate_json(Path(path).read_bytes())


def result_schema(indent: int | None = 4) -> str:
    """Return the JSON Schema of the result stream."""
    schema = {
        **ResultStream.json_schema(),
        'title': 'pytest-world results',
        'description': 'Stream of scenario results consumed by report renderers',
    }

    return dumps(schema, ensure_ascii=False, sort_keys=True, indent=indent)
