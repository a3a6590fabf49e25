"""CLI utilities for pytest-world configuration and reports.

The commands help to inspect the resolved run configuration and the
JSON result stream consumed by report renderers.
"""

from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING

from click import ClickException, argument, echo, group, option
from click import Path as PathParam
from pydantic import ValidationError
from yaml import dump

from pytest_world.config import load_config
from pytest_world.errors import ConfigurationError
from pytest_world.results import StepStatus, read_report, result_schema

if TYPE_CHECKING:
    from pytest_world.results import ScenarioResult

InputFilepath = PathParam(
    exists=True,
    dir_okay=False,
    readable=True,
    path_type=Path,
)


@group(help='Command-line utilities for pytest-world.')
def cli() -> None:
    """Root CLI group for pytest-world tools."""
    return None


@cli.command(
    name='config',
    help='Print the resolved run configuration as YAML.',
)
@argument(
    'filepath',
    type=InputFilepath,
    required=False,
)
def print_config(filepath: Path | None) -> None:
    """Resolve the configuration from a file and the environment.

    Args:
        filepath: Optional YAML configuration file.
    """
    try:
        config = load_config(filepath)

    except ConfigurationError as base:
        raise ClickException(f'{base}') from base

    echo(dump(config.model_dump(mode='json'), sort_keys=True, allow_unicode=True), nl=False)


@cli.command(
    name='report-schema',
    help='Print the JSON Schema of the result stream to standard output.',
)
def print_report_schema() -> None:
    """Generate and print the result stream JSON Schema."""
    echo(result_schema())


def _describe(result: 'ScenarioResult') -> str:
    steps = Counter(f'{step.status}' for step in result.steps)
    counts = ', '.join(f'{steps[status]} {status}' for status in StepStatus if steps[status])

    line = f'{result.status.upper():<6} {result.name}'
    if counts:
        line = f'{line} ({counts})'
    if result.failure is not None:
        line = f'{line}\n       {result.failure.message}'

    return line


@cli.command(
    name='summary',
    help='Summarize a JSON report; exits with status 1 if any scenario failed.',
)
@option(
    '-q', '--quiet',
    is_flag=True,
    default=False,
    help='Only print the totals.',
)
@argument(
    'report',
    type=InputFilepath,
)
def print_summary(report: Path, *, quiet: bool) -> None:
    """Print scenario outcomes and totals of a report.

    Args:
        report: Path to a JSON report.
        quiet: Only print the totals.
    """
    try:
        results = read_report(report)

    except ValidationError as base:
        raise ClickException(f'Invalid report {report.as_posix()!r}') from base

    if not quiet:
        for result in results:
            echo(_describe(result))

    failed = sum(1 for result in results if not result.passed)
    hook_failures = sum(len(result.hook_failures) for result in results)
    echo(f'{len(results)} scenarios: {len(results) - failed} passed, {failed} failed, {hook_failures} hook failures')

    if failed:
        raise SystemExit(1)


if __name__ == '__main__':
    cli()
