"""Tests for scenario execution."""

from threading import get_ident
from time import sleep
from typing import TYPE_CHECKING

import pytest

from pytest_world.artifacts import MemoryArtifactStore
from pytest_world.config import RunConfig
from pytest_world.hooks import HookPipeline
from pytest_world.interactions import PageObject
from pytest_world.results import HookPhase, ScenarioStatus, StepStatus
from pytest_world.runner import Run, Scenario, ScenarioRunner
from pytest_world.steps import StepRegistry
from pytest_world.waiting import CancelToken, poll_until

from .conftest import FakePage

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from pytest_mock import MockerFixture

    from pytest_world.world import ApiFactory, ScenarioContext, UIFactory


@pytest.fixture
def steps() -> StepRegistry:
    """Steps of the login and status scenarios."""
    registry = StepRegistry()

    @registry.step('the API is healthy')
    def api_healthy(world: 'ScenarioContext') -> None:
        world.get_api_client()

    @registry.step('I request {path}')
    def request(world: 'ScenarioContext', path: str) -> None:
        world.set('response', world.get_api_client().get(path))

    @registry.step('the response status is {status:int}')
    def status_is(world: 'ScenarioContext', status: int) -> None:
        assert world.get('response').status_code == status

    @registry.step('I open {path}')
    def open_page(world: 'ScenarioContext', path: str) -> None:
        world.ui.open(path)

    @registry.step('I click {selector}')
    def click(world: 'ScenarioContext', selector: str) -> None:
        world.ui.act(selector, 'click')

    @registry.step('I remember {value} as {key:word}')
    def remember(world: 'ScenarioContext', value: str, key: str) -> None:
        world.set(key, value)

    @registry.step('I expect {key:word} to be {value}')
    def expect(world: 'ScenarioContext', key: str, value: str) -> None:
        assert world.get(key) == value

    @registry.step('I wait for the impossible')
    def wait_forever(world: 'ScenarioContext') -> None:
        poll_until(lambda: None, timeout_ms=60_000, interval_ms=10)

    @registry.step('I sleep {seconds:float} seconds')
    def pause(world: 'ScenarioContext', seconds: float) -> None:
        sleep(seconds)

    return registry


@pytest.fixture
def make_runner(config: RunConfig, ui_factory: 'UIFactory',
                api_factory: 'ApiFactory') -> 'Callable[..., ScenarioRunner]':
    """Factory of runners over fake UI and HTTP targets."""
    def make(hooks: HookPipeline | None = None, *,
             pages: 'UIFactory | None' = None, **options: object) -> ScenarioRunner:
        run_config = config.model_copy(update=options)
        return ScenarioRunner(
            run_config,
            hooks,
            ui_factory=pages or ui_factory,
            api_factory=api_factory,
            artifact_store=MemoryArtifactStore(),
        )

    return make


@pytest.fixture
def scenario(steps: StepRegistry) -> 'Callable[..., Scenario]':
    """Build scenarios from step texts."""
    def make(name: str, *texts: str, tags: tuple[str, ...] = ()) -> Scenario:
        return Scenario(
            name=name,
            tags=list(tags),
            steps=[steps.bind_or_pending(text) for text in texts],
        )

    return make


class ThreadBoundPage(FakePage):
    """Fake page refusing to be closed from a thread other than its creator."""

    def close(self) -> None:
        if get_ident() != self.owner:
            raise RuntimeError('cannot switch to a different thread')
        super().close()


@pytest.fixture
def created_pages() -> list[ThreadBoundPage]:
    """Pages created by `page_per_scenario`, in creation order."""
    return []


@pytest.fixture
def page_per_scenario(config: RunConfig, created_pages: list[ThreadBoundPage]) -> 'UIFactory':
    """UI factory creating a thread-bound page for every call."""
    def factory(cancel: CancelToken | None) -> PageObject:
        page = ThreadBoundPage()
        created_pages.append(page)
        return PageObject(page, policy=config.retry_policy, cancel=cancel, base_url=config.base_url)

    return factory


def test_passing_api_scenario(make_runner: 'Callable[..., ScenarioRunner]',
                              scenario: 'Callable[..., Scenario]') -> None:
    """Pass a scenario whose steps all pass, without artifacts."""
    runner = make_runner()

    result = runner.run(scenario(
        'Status',
        'the API is healthy',
        'I request /status',
        'the response status is 200',
        tags=('@api',),
    ))

    assert result.status == ScenarioStatus.PASSED
    assert [step.status for step in result.steps] == [StepStatus.PASSED] * 3
    assert result.artifacts == []
    assert result.tags == ['api']
    assert runner.results.drain() == (result,)


def test_failing_ui_scenario(make_runner: 'Callable[..., ScenarioRunner]',
                             scenario: 'Callable[..., Scenario]', page: 'FakePage') -> None:
    """Fail on a missing element, capture a screenshot and skip the rest."""
    runner = make_runner()

    result = runner.run(scenario(
        'Login',
        'I open /login',
        'I click #submit',
        'I click #next',
        tags=('@ui',),
    ))

    assert result.status == ScenarioStatus.FAILED
    assert [step.status for step in result.steps] == [StepStatus.PASSED, StepStatus.FAILED, StepStatus.SKIPPED]

    failure = result.steps[1].failure
    assert failure is not None
    assert failure.error_type == 'pytest_world.errors.ElementNotFoundError'
    assert "'#submit' not found" in failure.message
    assert 'on step 2: I click #submit' in failure.message

    assert [ref.kind for ref in result.artifacts] == ['screenshot']
    assert page.closed == 1


def test_data_flows_between_steps(make_runner: 'Callable[..., ScenarioRunner]',
                                  scenario: 'Callable[..., Scenario]') -> None:
    """Let later steps read values stored by earlier ones."""
    result = make_runner().run(scenario(
        'Remember',
        'I remember alice as user',
        'I expect user to be alice',
    ))

    assert result.passed


def test_pending_step(make_runner: 'Callable[..., ScenarioRunner]',
                      scenario: 'Callable[..., Scenario]') -> None:
    """Report undefined steps as pending and skip the following ones."""
    strict = make_runner().run(scenario('Pending', 'I do magic', 'I remember a as b'))

    assert strict.status == ScenarioStatus.FAILED
    assert [step.status for step in strict.steps] == [StepStatus.PENDING, StepStatus.SKIPPED]

    relaxed = make_runner(strict=False).run(scenario('Pending', 'I do magic'))

    assert relaxed.status == ScenarioStatus.PASSED
    assert relaxed.steps[0].status == StepStatus.PENDING


def test_before_hook_failure_skips_steps(make_runner: 'Callable[..., ScenarioRunner]',
                                         scenario: 'Callable[..., Scenario]') -> None:
    """Skip every step but still run after-hooks."""
    hooks = HookPipeline()
    calls = []

    @hooks.before()
    def login(world: 'ScenarioContext') -> None:
        raise RuntimeError('no session')

    @hooks.after()
    def cleanup(world: 'ScenarioContext') -> None:
        calls.append('cleanup')

    result = make_runner(hooks).run(scenario('Blocked', 'I remember a as b', 'I expect b to be a'))

    assert result.status == ScenarioStatus.FAILED
    assert [step.status for step in result.steps] == [StepStatus.SKIPPED] * 2
    assert result.failure is not None
    assert result.failure.message == 'no session'
    assert calls == ['cleanup']


def test_after_hook_failure_keeps_status(make_runner: 'Callable[..., ScenarioRunner]',
                                         scenario: 'Callable[..., Scenario]') -> None:
    """Report after-hook failures separately from step outcomes."""
    hooks = HookPipeline()

    @hooks.after()
    def broken(world: 'ScenarioContext') -> None:
        raise RuntimeError('cleanup failed')

    @hooks.after()
    def still_runs(world: 'ScenarioContext') -> None:
        world.set('ran', True)

    result = make_runner(hooks).run(scenario('Passing', 'I remember a as b'))

    assert result.status == ScenarioStatus.PASSED
    assert [hook.name for hook in result.hook_failures] == ['broken']
    assert [hook.name for hook in result.hooks if hook.phase == HookPhase.AFTER] == [
        'capture_failure_artifacts', 'broken', 'still_runs',
    ]


def test_hooks_see_outcome(make_runner: 'Callable[..., ScenarioRunner]',
                           scenario: 'Callable[..., Scenario]') -> None:
    """Give after-hooks the outcome of the steps."""
    hooks = HookPipeline(capture_failures=False)
    outcomes = []
    hooks.after()(lambda world, outcome: outcomes.append(outcome))

    make_runner(hooks).run(scenario('Failing', 'I expect missing to be there'))

    assert outcomes[0].failed
    assert outcomes[0].failed_step is not None
    assert outcomes[0].failed_step.text == 'I expect missing to be there'


def test_teardown_failure_is_recorded(make_runner: 'Callable[..., ScenarioRunner]',
                                      scenario: 'Callable[..., Scenario]', page: 'FakePage',
                                      mocker: 'MockerFixture') -> None:
    """Record handle release failures as a teardown hook entry."""
    mocker.patch.object(page, 'close', side_effect=RuntimeError('browser crashed'))

    result = make_runner().run(scenario('UI', 'I open /'))

    assert result.status == ScenarioStatus.PASSED
    assert [(hook.name, hook.phase) for hook in result.hook_failures] == [('teardown', HookPhase.AFTER)]


def test_teardown_timeout(make_runner: 'Callable[..., ScenarioRunner]',
                          scenario: 'Callable[..., Scenario]', page: 'FakePage',
                          mocker: 'MockerFixture') -> None:
    """Bound the time spent releasing handles."""
    mocker.patch.object(page, 'close', side_effect=lambda: sleep(1))

    result = make_runner(teardown_timeout_ms=50).run(scenario('UI', 'I open /'))

    assert len(result.hook_failures) == 1
    assert result.hook_failures[0].failure is not None
    assert 'Teardown did not finish' in result.hook_failures[0].failure.message


def test_scenario_timeout_cancels_polling(make_runner: 'Callable[..., ScenarioRunner]',
                                          scenario: 'Callable[..., Scenario]') -> None:
    """Interrupt in-flight polling when the scenario deadline passes."""
    result = make_runner(scenario_timeout_ms=100).run(scenario(
        'Slow',
        'I wait for the impossible',
        'I remember a as b',
    ))

    assert result.status == ScenarioStatus.FAILED
    assert result.duration < 5
    assert [step.status for step in result.steps] == [StepStatus.FAILED, StepStatus.SKIPPED]
    assert result.steps[0].failure is not None
    assert 'scenario timeout' in result.steps[0].failure.message
    assert result.failure is not None
    assert result.failure.error_type == 'pytest_world.errors.ScenarioTimeoutError'


def test_scenario_timeout_between_steps(make_runner: 'Callable[..., ScenarioRunner]',
                                        scenario: 'Callable[..., Scenario]') -> None:
    """Stop before the next step once the deadline passed."""
    result = make_runner(scenario_timeout_ms=50).run(scenario(
        'Sleepy',
        'I sleep 0.2 seconds',
        'I remember a as b',
        'I remember c as d',
    ))

    assert [step.status for step in result.steps] == [StepStatus.PASSED, StepStatus.FAILED, StepStatus.SKIPPED]
    assert result.status == ScenarioStatus.FAILED


def test_parallel_run_isolation(make_runner: 'Callable[..., ScenarioRunner]',
                                scenario: 'Callable[..., Scenario]', steps: StepRegistry) -> None:
    """Run scenarios on several workers without sharing contexts."""
    @steps.step('I note the owner')
    def note(world: 'ScenarioContext') -> None:
        world.set('owner', world.name)
        sleep(0.02)
        assert world.get('owner') == world.name

    runner = make_runner(parallel_workers=3)
    scenarios = [scenario(f'scenario-{index}', 'I note the owner') for index in range(9)]

    results = Run(runner).execute(scenarios)

    assert len(results) == 9
    assert all(result.passed for result in results)
    assert len({result.scenario_id for result in results}) == 9
    assert {result.worker for result in results} <= {'worker-0', 'worker-1', 'worker-2'}
    assert len({result.worker for result in results}) > 1


def test_parallel_workers_own_ui_handles(make_runner: 'Callable[..., ScenarioRunner]',
                                         scenario: 'Callable[..., Scenario]', steps: StepRegistry,
                                         page_per_scenario: 'UIFactory',
                                         created_pages: list[ThreadBoundPage]) -> None:
    """Give every concurrently running scenario its own UI handle."""
    handles: dict[str, PageObject] = {}

    @steps.step('I keep the page')
    def keep(world: 'ScenarioContext') -> None:
        handles[world.name] = world.ui
        sleep(0.05)
        assert world.ui is handles[world.name]

    runner = make_runner(pages=page_per_scenario, parallel_workers=2)

    results = Run(runner).execute([
        scenario('left', 'I open /left', 'I keep the page'),
        scenario('right', 'I open /right', 'I keep the page'),
    ])

    assert all(result.passed for result in results)
    assert {result.worker for result in results} == {'worker-0', 'worker-1'}
    assert handles['left'] is not handles['right']
    assert handles['left'].page is not handles['right'].page
    assert len(created_pages) == 2
    assert [page.closed for page in created_pages] == [1, 1]


def test_handles_released_on_creating_thread(make_runner: 'Callable[..., ScenarioRunner]',
                                             scenario: 'Callable[..., Scenario]',
                                             page_per_scenario: 'UIFactory',
                                             created_pages: list[ThreadBoundPage]) -> None:
    """Close the driver on the thread that started it."""
    result = make_runner(pages=page_per_scenario).run(scenario('UI', 'I open /'))

    assert result.passed
    assert result.hook_failures == []

    (page,) = created_pages
    assert page.closed_by == [page.owner]


def test_fail_fast(make_runner: 'Callable[..., ScenarioRunner]',
                   scenario: 'Callable[..., Scenario]') -> None:
    """Stop scheduling scenarios after the first failure."""
    run = Run(make_runner(fail_fast=True))

    results = run.execute([
        scenario('first', 'I remember a as b'),
        scenario('second', 'I expect missing to be there'),
        scenario('third', 'I remember a as b'),
        scenario('fourth', 'I remember a as b'),
    ])

    assert [result.name for result in results] == ['first', 'second']
    assert [item.name for item in run.not_run] == ['third', 'fourth']


def test_run_timeout(make_runner: 'Callable[..., ScenarioRunner]',
                     scenario: 'Callable[..., Scenario]') -> None:
    """Cancel running scenarios and skip the others at the run deadline."""
    run = Run(make_runner(run_timeout_ms=100))

    results = run.execute([
        scenario('stuck', 'I wait for the impossible'),
        scenario('never', 'I remember a as b'),
    ])

    assert [result.name for result in results] == ['stuck']
    assert results[0].status == ScenarioStatus.FAILED
    assert [item.name for item in run.not_run] == ['never']


def test_run_abort(make_runner: 'Callable[..., ScenarioRunner]') -> None:
    """Cancel the token of the run, not the one of the runner."""
    runner = make_runner()
    run = Run(runner)

    run.abort('interrupted')

    assert run.cancel.cancelled
    assert not runner.cancel.cancelled
    assert run.execute([]) == ()


def test_runner_reused_after_run_timeout(make_runner: 'Callable[..., ScenarioRunner]',
                                         scenario: 'Callable[..., Scenario]') -> None:
    """Start the next run with fresh tokens after a timed out run."""
    runner = make_runner(run_timeout_ms=100)

    (stuck,) = Run(runner).execute([scenario('stuck', 'I wait for the impossible')])
    assert stuck.status == ScenarioStatus.FAILED

    (second,) = Run(runner).execute([scenario('second', 'I remember a as b')])
    assert second.passed

    assert runner.run(scenario('third', 'I remember a as b')).passed


def test_scenario_tokens_released(make_runner: 'Callable[..., ScenarioRunner]',
                                  scenario: 'Callable[..., Scenario]') -> None:
    """Leave no scenario or run tokens attached to the runner token."""
    runner = make_runner()

    runner.run(scenario('single', 'I remember a as b'))
    Run(runner).execute([scenario(f'scenario-{index}', 'I remember a as b') for index in range(3)])

    assert runner.cancel._children == []


def test_runner_defaults(config: RunConfig, tmp_path: 'Path') -> None:
    """Derive the hook pipeline and artifact store from the configuration."""
    runner = ScenarioRunner(config.model_copy(update={'artifacts_dir': tmp_path}), cancel=CancelToken())

    assert len(runner.hooks) == 1
    assert runner.artifact_store.base_dir == tmp_path
