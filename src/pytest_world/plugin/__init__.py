"""Pytest plugin exposing scenario contexts to plain pytest tests.

This module integrates `pytest-world` with pytest by:
- registering `--world-*` command-line options;
- resolving a single run configuration and the logging sink;
- providing `world_*` fixtures, with `world` wrapping every test in the
  hook pipeline and recording its outcome as a scenario result.

Tests marked with pytest markers get those marker names as scenario tags::

    @pytest.mark.smoke
    def test_login(world):
        world.ui.open('/login')
"""

from datetime import UTC, datetime
from time import perf_counter
from typing import TYPE_CHECKING

import pytest

from pytest_world.builtins.steps import registry as builtin_steps
from pytest_world.config import load_config
from pytest_world.errors import ConfigurationError
from pytest_world.hooks import HookPipeline, ScenarioOutcome
from pytest_world.logs import bind_scenario, flush_logging, init_logging
from pytest_world.results import (
    FailureDetail,
    HookResult,
    ResultAggregator,
    ScenarioResult,
    ScenarioStatus,
    write_report,
)
from pytest_world.steps import StepRegistry
from pytest_world.world import ScenarioContext

if TYPE_CHECKING:
    from collections.abc import Generator, Iterator

    from _pytest.config import Config
    from _pytest.config.argparsing import Parser
    from _pytest.fixtures import FixtureRequest
    from _pytest.nodes import Item
    from _pytest.reports import TestReport
    from _pytest.runner import CallInfo

    from pytest_world.config import RunConfig

#: Call-phase report of an item, read back by the `world` fixture.
CALL_REPORT = pytest.StashKey['TestReport']()

#: Markers that never become scenario tags.
IGNORED_MARKERS = frozenset({'parametrize', 'usefixtures', 'filterwarnings', 'skip', 'skipif', 'xfail'})


def pytest_addoption(parser: 'Parser') -> None:
    """Register pytest command-line options for pytest-world.

    Args:
        parser: Pytest argument parser.
    """
    group = parser.getgroup('world', 'scenario orchestration')
    group.addoption(
        '--world-config',
        dest='world_config',
        default=None,
        help='YAML run configuration file.',
    )
    group.addoption(
        '--world-browser',
        dest='world_browser',
        choices=('chromium', 'firefox', 'webkit'),
        default=None,
        help='Browser engine of UI scenarios.',
    )
    group.addoption(
        '--world-headed',
        action='store_true',
        dest='world_headed',
        default=False,
        help='Show the browser window instead of running headless.',
    )
    group.addoption(
        '--world-base-url',
        dest='world_base_url',
        default=None,
        help='Base URL of UI pages.',
    )
    group.addoption(
        '--world-api-url',
        dest='world_api_url',
        default=None,
        help='Base URL of the default API client.',
    )
    group.addoption(
        '--world-timeout',
        dest='world_timeout',
        type=int,
        default=None,
        help='Default timeout of blocking interactions, in milliseconds.',
    )
    group.addoption(
        '--world-artifacts',
        dest='world_artifacts',
        default=None,
        help='Directory for diagnostic artifacts.',
    )
    group.addoption(
        '--world-report',
        dest='world_report',
        default=None,
        help='Write scenario results as a JSON report to this file.',
    )
    group.addoption(
        '--world-log-level',
        dest='world_log_level',
        default=None,
        help='Log level of the scenario log sink.',
    )
    group.addoption(
        '--world-relaxed',
        action='store_true',
        dest='world_relaxed',
        default=False,
        help=(
            'Disable strict mode. '
            'Undefined steps and duplicated registrations only emit warnings.'
        ),
    )


def pytest_configure(config: 'Config') -> None:
    """Resolve the run configuration and install the logging sink.

    The configuration and result aggregator are attached to the pytest
    configuration object as `config.world_config` and `config.world_results`.

    Args:
        config: Pytest configuration object.

    Raises:
        pytest.UsageError: If the run configuration is invalid.
    """
    try:
        run_config = load_config(
            config.getoption('world_config', default=None),
            browser=config.getoption('world_browser', default=None),
            headless=False if config.getoption('world_headed', default=False) else None,
            base_url=config.getoption('world_base_url', default=None),
            api_url=config.getoption('world_api_url', default=None),
            default_timeout_ms=config.getoption('world_timeout', default=None),
            artifacts_dir=config.getoption('world_artifacts', default=None),
            log_level=config.getoption('world_log_level', default=None),
            strict=False if config.getoption('world_relaxed', default=False) else None,
        )

    except ConfigurationError as base:
        raise pytest.UsageError(f'{base}') from base

    init_logging(run_config.log_level, json_output=run_config.log_json)

    config.world_config = run_config  # type: ignore[attr-defined]
    config.world_results = ResultAggregator()  # type: ignore[attr-defined]


def pytest_unconfigure(config: 'Config') -> None:
    """Write the JSON report, if requested, and flush the log sink."""
    results = getattr(config, 'world_results', None)
    report = config.getoption('world_report', default=None)

    if results is not None and report:
        write_report(results.drain(), report)

    flush_logging()


@pytest.hookimpl(wrapper=True)
def pytest_runtest_makereport(item: 'Item', call: 'CallInfo[None]') -> 'Generator[None, TestReport, TestReport]':
    """Keep the call-phase report for the `world` fixture teardown."""
    report = yield
    if call.when == 'call':
        item.stash[CALL_REPORT] = report

    return report


@pytest.fixture(scope='session')
def world_config(pytestconfig: 'Config') -> 'RunConfig':
    """Run configuration resolved from options, file and environment."""
    return pytestconfig.world_config  # type: ignore[attr-defined]


@pytest.fixture(scope='session')
def world_results(pytestconfig: 'Config') -> ResultAggregator:
    """Aggregator of the scenario results of the session."""
    return pytestconfig.world_results  # type: ignore[attr-defined]


@pytest.fixture(scope='session')
def world_hooks(world_config: 'RunConfig') -> HookPipeline:
    """Hook pipeline applied around every test using `world`.

    Override this fixture in `conftest.py` to register project hooks.
    """
    return HookPipeline(strict=world_config.strict)


@pytest.fixture(scope='session')
def world_steps(world_config: 'RunConfig') -> StepRegistry:
    """Step registry preloaded with the built-in shared steps."""
    steps = StepRegistry(strict=world_config.strict)
    steps.update(builtin_steps)

    return steps


def _scenario_tags(request: 'FixtureRequest') -> list[str]:
    return sorted({
        marker.name
        for marker in request.node.iter_markers()
        if marker.name not in IGNORED_MARKERS
    })


@pytest.fixture
def world(request: 'FixtureRequest', world_config: 'RunConfig',
          world_hooks: HookPipeline,
          world_results: ResultAggregator) -> 'Iterator[ScenarioContext]':
    """Scenario context of the current test.

    Before-hooks run before the test body; a failing before-hook fails
    the test without running it. After-hooks always receive the outcome,
    then the context is torn down and the outcome is recorded together
    with any failure to release its handles.
    """
    context = ScenarioContext(
        world_config,
        name=request.node.nodeid,
        tags=_scenario_tags(request),
    )
    started_at = datetime.now(UTC)
    started = perf_counter()

    hooks: list[HookResult] = []
    status = ScenarioStatus.PASSED
    failure = None

    with bind_scenario(context.scenario_id):
        try:
            hooks.extend(world_hooks.run_before(context))
            blocked = next((hook for hook in hooks if not hook.passed), None)

            if blocked is not None:
                status = ScenarioStatus.FAILED
                failure = blocked.failure

            else:
                yield context

                report = request.node.stash.get(CALL_REPORT, None)
                if report is not None and report.failed:
                    status = ScenarioStatus.FAILED
                    lines = report.longreprtext.strip().splitlines() or ['Test failed']
                    failure = FailureDetail(message=lines[-1], error_type='Failed')

            hooks.extend(world_hooks.run_after(
                context,
                ScenarioOutcome(status=status, failure=failure),
            ))

        finally:
            released = perf_counter()
            errors = context.teardown()
            hooks.extend(HookResult.teardown_failure(error, perf_counter() - released) for error in errors)

    world_results.record(ScenarioResult(
        scenario_id=context.scenario_id,
        name=context.name,
        tags=sorted(context.tags),
        status=status,
        hooks=hooks,
        artifacts=context.artifacts,
        failure=failure,
        started_at=started_at,
        duration=perf_counter() - started,
    ))

    if blocked is not None:
        pytest.fail(f'Before-hook {blocked.name!r} failed: {blocked.failure.message}')
