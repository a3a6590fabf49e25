"""Scenario execution: the per-scenario state machine and parallel runs.

For every scenario the runner drives::

    Pending -> Before-hooks running -> Steps running -> After-hooks running -> Done

`Done` is always reached: a failing before-hook skips the steps but not
the after-hooks, a failing step skips the remaining steps, a failing
after-hook does not stop the other after-hooks, and the scenario context
is torn down exactly once with a bounded timeout.

A `Run` schedules scenarios on `parallel_workers` threads; every worker
executes its scenarios sequentially with its own scenario contexts. Each
scenario runs on a thread of its own: browser drivers are bound to the
thread that started them, so handles are created and released there while
the worker only waits for the teardown within its timeout.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from enum import StrEnum
from queue import Empty, SimpleQueue
from threading import Event, Thread, Timer
from time import perf_counter
from typing import TYPE_CHECKING

from pydantic import Field

from pytest_world.artifacts import FileArtifactStore, MemoryArtifactStore
from pytest_world.errors import ScenarioTimeoutError, UndefinedStepError, WorldError
from pytest_world.hooks import HookPipeline, ScenarioOutcome
from pytest_world.logs import bind_scenario, flush_logging, get_logger
from pytest_world.models import SchemaModel
from pytest_world.results import (
    FailureDetail,
    HookResult,
    ResultAggregator,
    ScenarioResult,
    ScenarioStatus,
    StepResult,
    StepStatus,
)
from pytest_world.steps import StepInvocation  # noqa: TC001
from pytest_world.tags import Tag  # noqa: TC001
from pytest_world.waiting import CancelToken, current_token
from pytest_world.world import ScenarioContext

if TYPE_CHECKING:
    from collections.abc import Iterable

    from pytest_world.artifacts import ArtifactStore
    from pytest_world.config import RunConfig
    from pytest_world.world import ApiFactory, UIFactory

logger = get_logger(__name__)


class ScenarioState(StrEnum):
    """Execution state of a scenario."""

    PENDING = 'pending'
    BEFORE_HOOKS = 'before-hooks'
    STEPS = 'steps'
    AFTER_HOOKS = 'after-hooks'
    DONE = 'done'


class Scenario(SchemaModel):
    """Scenario invocation supplied by the external scenario runner."""

    name: str = Field(
        title='Scenario name',
    )
    tags: list[Tag] = Field(
        default_factory=list,
        title='Scenario tags',
    )
    steps: list[StepInvocation] = Field(
        default_factory=list,
        title='Bound steps',
        description='Steps in declared order.',
    )
    scenario_id: str | None = Field(
        default=None,
        title='Scenario identifier',
        description='Unique identifier; generated when omitted.',
    )


class ScenarioRunner:
    """Execute scenarios one at a time and record their results.

    A runner holds no per-scenario state, so several worker threads may
    share one instance.

    Args:
        config: Run configuration.
        hooks: Hook pipeline; a pipeline with failure capture by default.
        results: Aggregator receiving every scenario result.
        ui_factory: Factory of UI handles for scenario contexts.
        api_factory: Factory of API clients for scenario contexts.
        artifact_store: Artifact store; derived from the configuration
            when omitted.
        cancel: Run-level cancel token.
    """

    def __init__(self, config: 'RunConfig',  # noqa: PLR0913
                 hooks: HookPipeline | None = None, *,
                 results: ResultAggregator | None = None,
                 ui_factory: 'UIFactory | None' = None,
                 api_factory: 'ApiFactory | None' = None,
                 artifact_store: 'ArtifactStore | None' = None,
                 cancel: CancelToken | None = None) -> None:
        self.config = config
        self.hooks = hooks if hooks is not None else HookPipeline(strict=config.strict)
        self.results = results if results is not None else ResultAggregator()
        self.cancel = cancel or CancelToken()

        if artifact_store is None:
            if config.artifacts_dir is not None:
                artifact_store = FileArtifactStore(config.artifacts_dir)
            else:
                artifact_store = MemoryArtifactStore()

        self.artifact_store = artifact_store
        self.ui_factory = ui_factory
        self.api_factory = api_factory

    def create_context(self, scenario: Scenario, cancel: CancelToken) -> ScenarioContext:
        """Create the context of a scenario execution."""
        return ScenarioContext(
            self.config,
            name=scenario.name,
            tags=scenario.tags,
            scenario_id=scenario.scenario_id,
            ui_factory=self.ui_factory,
            api_factory=self.api_factory,
            artifact_store=self.artifact_store,
            cancel=cancel,
        )

    def run(self, scenario: Scenario, *,
            worker: str | None = None,
            cancel: CancelToken | None = None) -> ScenarioResult:
        """Execute a scenario and record its result.

        Args:
            scenario: Scenario to execute.
            worker: Name of the executing worker, for reporting.
            cancel: Token of the enclosing run; the runner token by default.

        Returns:
            The recorded scenario result.
        """
        execution = ScenarioExecution(self, scenario, worker=worker, cancel=cancel)
        result = execution.run()
        self.results.record(result)

        return result


class ScenarioExecution:
    """Single pass of a scenario through the execution state machine.

    Hooks, steps and the release of handles run on a dedicated scenario
    thread; `run` waits for it and gives up on a hung teardown after
    `teardown_timeout_ms`.
    """

    def __init__(self, runner: ScenarioRunner, scenario: Scenario, *,
                 worker: str | None = None,
                 cancel: CancelToken | None = None) -> None:
        self.runner = runner
        self.scenario = scenario
        self.worker = worker
        self.state = ScenarioState.PENDING

        self.parent = cancel or runner.cancel
        self.token = self.parent.child()
        self.cleanup_token = self.parent.child()
        self.world: ScenarioContext | None = None

        self.steps: list[StepResult] = []
        self.hooks: list[HookResult] = []
        self.failure: FailureDetail | None = None
        self.teardown_errors: list[Exception] = []

        self._tearing_down = Event()
        self._error: Exception | None = None

    @property
    def config(self) -> 'RunConfig':
        return self.runner.config

    def transition(self, state: ScenarioState) -> None:
        """Move to the next state."""
        logger.debug('scenario_state', state=f'{state}', previous=f'{self.state}')
        self.state = state

    def run(self) -> ScenarioResult:
        """Drive the scenario from `Pending` to `Done`."""
        started_at = datetime.now(UTC)
        started = perf_counter()

        world = self.world = self.runner.create_context(self.scenario, self.token)

        timer = None
        if (timeout_ms := self.config.scenario_timeout_ms) is not None:
            timer = Timer(timeout_ms / 1000, self.token.cancel, args=('scenario timeout',))
            timer.daemon = True
            timer.start()

        thread = Thread(target=self.drive, args=(world,), name=f'scenario-{world.scenario_id}', daemon=True)
        thread.start()

        try:
            self._tearing_down.wait()
            if timer is not None:
                timer.cancel()

            teardown_started = perf_counter()
            thread.join(self.config.teardown_timeout_ms / 1000)

        finally:
            self.token.release()
            self.cleanup_token.release()

        if self._error is not None:
            raise self._error

        with bind_scenario(world.scenario_id):
            errors = list(self.teardown_errors)
            if thread.is_alive():
                logger.error('teardown_timeout', timeout_ms=self.config.teardown_timeout_ms)
                errors.append(ScenarioTimeoutError(
                    f'Teardown did not finish in {self.config.teardown_timeout_ms}ms',
                ))

            duration = perf_counter() - teardown_started
            self.hooks.extend(HookResult.teardown_failure(error, duration) for error in errors)
            self.transition(ScenarioState.DONE)

            result = ScenarioResult(
                scenario_id=world.scenario_id,
                name=world.name,
                tags=sorted(world.tags),
                status=self.status,
                steps=self.steps,
                hooks=self.hooks,
                artifacts=world.artifacts,
                failure=self.failure,
                started_at=started_at,
                duration=perf_counter() - started,
                worker=self.worker,
            )

            logger.info(
                'scenario_finished',
                scenario=world.name,
                status=f'{result.status}',
                duration=round(result.duration, 3),
                hook_failures=len(result.hook_failures),
            )

        return result

    def drive(self, world: ScenarioContext) -> None:
        """Run hooks and steps, then release the handles on the same thread."""
        with bind_scenario(world.scenario_id):
            logger.info('scenario_started', scenario=world.name, tags=sorted(world.tags), worker=self.worker)
            try:
                self.run_before_hooks(world)
                self.run_steps(world)
                self.run_after_hooks(world)

            except Exception as error:
                logger.exception('scenario_crashed', scenario=world.name)
                self._error = error

            finally:
                self._tearing_down.set()
                self.run_teardown(world)

    @property
    def status(self) -> ScenarioStatus:
        """Scenario status derived from the outcomes collected so far."""
        if self.failure is not None:
            return ScenarioStatus.FAILED

        return ScenarioResult.derive_status(self.steps, self.hooks, strict=self.config.strict)

    def run_before_hooks(self, world: ScenarioContext) -> None:
        """Run before-hooks with the scenario token as current token."""
        self.transition(ScenarioState.BEFORE_HOOKS)

        reset = current_token.set(self.token)
        try:
            results = self.runner.hooks.run_before(world)
        finally:
            current_token.reset(reset)

        self.hooks.extend(results)
        if failed := next((item for item in results if not item.passed), None):
            self.failure = failed.failure

    def run_steps(self, world: ScenarioContext) -> None:
        """Run steps in order; the first non-passing step skips the rest."""
        self.transition(ScenarioState.STEPS)

        blocked = self.failure is not None
        reset = current_token.set(self.token)
        try:
            for step_num, step in enumerate(self.scenario.steps):
                if blocked:
                    self.steps.append(StepResult(text=step.text, status=StepStatus.SKIPPED))
                    continue

                if self.token.cancelled:
                    error = ScenarioTimeoutError(f'Scenario aborted: {self.token.reason or 'cancelled'}')
                    self.steps.append(StepResult(
                        text=step.text,
                        status=StepStatus.FAILED,
                        failure=FailureDetail.from_exception(error),
                    ))
                    blocked = True
                    continue

                result = self.run_step(world, step, step_num)
                self.steps.append(result)
                blocked = result.status != StepStatus.PASSED

        finally:
            current_token.reset(reset)

        if self.token.cancelled and blocked and self.failure is None:
            self.failure = FailureDetail.from_exception(
                ScenarioTimeoutError(f'Scenario aborted: {self.token.reason or 'cancelled'}'),
            )

    def run_step(self, world: ScenarioContext, step: StepInvocation, step_num: int) -> StepResult:
        """Invoke one step, converting any failure into a step result."""
        attached = len(world.artifacts)
        started = perf_counter()

        logger.info('step_started', step=step.text, step_num=step_num + 1)

        if step.pending:
            logger.warning('step_pending', step=step.text, step_num=step_num + 1)
            return StepResult(
                text=step.text,
                status=StepStatus.PENDING,
                failure=FailureDetail.from_exception(UndefinedStepError(step.text)),
            )

        try:
            step(world)

        except Exception as error:  # noqa: BLE001
            if isinstance(error, WorldError):
                error.with_context(
                    scenario_id=world.scenario_id,
                    scenario_name=world.name,
                    step_num=step_num,
                    step_text=step.text,
                )
            logger.exception('step_failed', step=step.text, step_num=step_num + 1)
            return StepResult(
                text=step.text,
                status=StepStatus.FAILED,
                duration=perf_counter() - started,
                failure=FailureDetail.from_exception(error),
                attachments=world.artifacts[attached:],
            )

        logger.info('step_passed', step=step.text, step_num=step_num + 1)
        return StepResult(
            text=step.text,
            status=StepStatus.PASSED,
            duration=perf_counter() - started,
            attachments=world.artifacts[attached:],
        )

    def run_after_hooks(self, world: ScenarioContext) -> None:
        """Run after-hooks with the run token as current token.

        A scenario timeout does not cancel cleanup; only an aborted
        run interrupts polling performed by after-hooks.
        """
        self.transition(ScenarioState.AFTER_HOOKS)

        outcome = ScenarioOutcome(
            status=self.status,
            steps=self.steps,
            failure=self.failure,
        )

        reset = current_token.set(self.cleanup_token)
        try:
            self.hooks.extend(self.runner.hooks.run_after(world, outcome))
        finally:
            current_token.reset(reset)

    def run_teardown(self, world: ScenarioContext) -> None:
        """Release the scenario handles on the thread that created them."""
        self.teardown_errors.extend(world.teardown())


class Run:
    """Parallel execution of a collection of scenarios.

    Scenarios are pulled from a shared queue by `parallel_workers`
    threads; each worker runs one scenario at a time. With `fail_fast`
    no new scenario starts after the first failure, and the run timeout
    cancels every running scenario.

    Args:
        runner: Scenario runner shared by all workers.
    """

    def __init__(self, runner: ScenarioRunner) -> None:
        self.runner = runner
        self.cancel = runner.cancel.child()
        self.not_run: list[Scenario] = []
        self._stop = Event()

    @property
    def config(self) -> 'RunConfig':
        return self.runner.config

    def abort(self, reason: str = 'run aborted') -> None:
        """Stop scheduling scenarios and cancel the running ones."""
        self._stop.set()
        self.cancel.cancel(reason)

    def _worker(self, name: str, queue: 'SimpleQueue[Scenario]') -> None:
        while not self._stop.is_set():
            try:
                scenario = queue.get_nowait()
            except Empty:
                return

            result = self.runner.run(scenario, worker=name, cancel=self.cancel)
            if self.config.fail_fast and not result.passed:
                logger.warning('fail_fast_triggered', scenario=scenario.name, worker=name)
                self._stop.set()

    def execute(self, scenarios: 'Iterable[Scenario]') -> tuple[ScenarioResult, ...]:
        """Execute scenarios and drain their results.

        Args:
            scenarios: Scenarios to execute.

        Returns:
            Results of every executed scenario; scenarios not started
            because of fail-fast or the run timeout are listed in `not_run`.
        """
        queue: SimpleQueue[Scenario] = SimpleQueue()
        count = 0
        for scenario in scenarios:
            queue.put(scenario)
            count += 1

        workers = min(self.config.parallel_workers, max(count, 1))
        logger.info('run_started', scenarios=count, workers=workers)

        timer = None
        if (timeout_ms := self.config.run_timeout_ms) is not None:
            timer = Timer(timeout_ms / 1000, self.abort, args=('run timeout',))
            timer.daemon = True
            timer.start()

        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='world-worker') as pool:
                futures = [
                    pool.submit(self._worker, f'worker-{index}', queue)
                    for index in range(workers)
                ]
                for future in futures:
                    future.result()

        finally:
            if timer is not None:
                timer.cancel()
            self.cancel.release()

        while True:
            try:
                self.not_run.append(queue.get_nowait())
            except Empty:
                break

        results = self.runner.results.drain()
        logger.info(
            'run_finished',
            passed=sum(1 for result in results if result.passed),
            failed=sum(1 for result in results if not result.passed),
            not_run=len(self.not_run),
        )
        flush_logging()

        return results
