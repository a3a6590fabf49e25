"""Run configuration and its loader.

The core consumes a single immutable `RunConfig` for the whole run. The
loader merges, in increasing priority, environment variables prefixed with
`WORLD_`, an optional YAML file and explicit overrides (for example,
command-line options). YAML keys may be written in camelCase
(`defaultTimeoutMs`) or snake_case (`default_timeout_ms`).
"""

from pathlib import Path
from re import sub
from typing import TYPE_CHECKING, Any, Literal

from pydantic import Field, ValidationError
from pydantic_settings import SettingsConfigDict
from yaml import YAMLError, safe_load

from pytest_world.errors import ConfigurationError, ErrorContext
from pytest_world.models import SettingsModel
from pytest_world.waiting import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Mapping

#: Name of the API backend configured through `api_url`.
DEFAULT_CLIENT = 'default'

type Browser = Literal['chromium', 'firefox', 'webkit']


class RunConfig(SettingsModel):
    """Resolved configuration of a test run."""

    model_config = SettingsConfigDict(
        frozen=True,
        extra='ignore',
        env_prefix='WORLD_',
        env_nested_delimiter='__',
    )

    browser: Browser = Field(
        default='chromium',
        title='Browser engine',
        description='Browser used for UI scenarios.',
    )
    headless: bool = Field(
        default=True,
        title='Headless mode',
    )

    base_url: str | None = Field(
        default=None,
        title='UI base URL',
        description='Base URL relative page paths are resolved against.',
    )
    api_url: str | None = Field(
        default=None,
        title='API base URL',
        description=f'Base URL of the {DEFAULT_CLIENT!r} API client.',
    )
    api_urls: dict[str, str] = Field(
        default_factory=dict,
        title='Named API backends',
        description='Additional API clients by name, mapped to their base URL.',
    )

    default_timeout_ms: int = Field(
        default=10_000,
        ge=0,
        title='Default timeout',
        description='Default timeout of blocking interactions, in milliseconds.',
    )
    poll_interval_ms: int = Field(
        default=250,
        gt=0,
        title='Polling interval',
        description='Delay between two polling attempts, in milliseconds.',
    )
    retry_count: int = Field(
        default=0,
        ge=0,
        title='Transport retries',
        description='Number of retries of an API request failing at transport level.',
    )

    parallel_workers: int = Field(
        default=1,
        ge=1,
        title='Parallel workers',
    )
    scenario_timeout_ms: int | None = Field(
        default=None,
        gt=0,
        title='Scenario timeout',
        description='Deadline of a single scenario; cancels in-flight polling.',
    )
    run_timeout_ms: int | None = Field(
        default=None,
        gt=0,
        title='Run timeout',
        description='Deadline of the whole run; cancels every running scenario.',
    )
    teardown_timeout_ms: int = Field(
        default=10_000,
        gt=0,
        title='Teardown timeout',
        description='Upper bound for releasing the handles of one scenario.',
    )
    fail_fast: bool = Field(
        default=False,
        title='Fail fast',
        description='Stop scheduling scenarios after the first failure.',
    )
    strict: bool = Field(
        default=True,
        title='Strict mode',
        description='Treat undefined steps and registration issues as failures.',
    )

    artifacts_dir: Path | None = Field(
        default=None,
        title='Artifacts directory',
        description='Directory for diagnostic artifacts; kept in memory if unset.',
    )

    log_level: str = Field(
        default='INFO',
        title='Log level',
    )
    log_json: bool = Field(
        default=False,
        title='JSON logs',
    )

    @property
    def retry_policy(self) -> RetryPolicy:
        """Global polling policy derived from the configuration."""
        return RetryPolicy(
            timeout_ms=self.default_timeout_ms,
            interval_ms=self.poll_interval_ms,
        )

    @property
    def api_backends(self) -> dict[str, str]:
        """All configured API clients by name."""
        backends = dict(self.api_urls)
        if self.api_url:
            backends.setdefault(DEFAULT_CLIENT, self.api_url)

        return backends


def _snake_case(value: str) -> str:
    """Convert a camelCase key into snake_case."""
    return sub(r'(?<=[a-z0-9])([A-Z])', r'_\1', value).lower()


def _normalize_keys(values: 'Mapping[str, Any]') -> dict[str, Any]:
    """Normalize top-level configuration keys to field names."""
    return {_snake_case(f'{key}'): value for key, value in values.items()}


def read_config_file(path: Path | str) -> dict[str, Any]:
    """Read a YAML configuration file.

    Args:
        path: Path of the YAML file.

    Returns:
        Mapping of normalized option names to values.

    Raises:
        ConfigurationError: If the file can not be read or is not a mapping.
    """
    path = Path(path)
    try:
        content = safe_load(path.read_text(encoding='utf-8'))

    except OSError as base:
        raise ConfigurationError(f'Can not read configuration file {path.as_posix()!r}') from base

    except YAMLError as base:
        raise ConfigurationError(f'Invalid YAML in configuration file {path.as_posix()!r}') from base

    if content is None:
        return {}

    if not isinstance(content, dict):
        raise ConfigurationError(f'Configuration file {path.as_posix()!r} must contain a mapping')

    return _normalize_keys(content)


def load_config(path: Path | str | None = None, **overrides: Any) -> RunConfig:  # noqa: ANN401
    """Resolve the run configuration.

    Args:
        path: Optional YAML configuration file.
        **overrides: Explicit option values; `None` values are ignored.

    Returns:
        Immutable run configuration.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    values: dict[str, Any] = {}
    if path is not None:
        values.update(read_config_file(path))

    values.update(_normalize_keys({
        key: value
        for key, value in overrides.items()
        if value is not None
    }))

    try:
        return RunConfig(**values)

    except ValidationError as base:
        problems = {
            '.'.join(f'{item}' for item in error['loc']) or 'config': error['msg']
            for error in base.errors(include_url=False, include_input=False)
        }
        raise ConfigurationError(
            'Invalid configuration',
            context=ErrorContext(error=base, data=problems),
        ) from base
