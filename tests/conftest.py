"""Tests configurations and fixtures."""

from threading import get_ident
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from pytest_world.artifacts import MemoryArtifactStore
from pytest_world.config import RunConfig
from pytest_world.interactions import ApiClient, PageObject
from pytest_world.logs import init_logging, reset_logging
from pytest_world.waiting import RetryPolicy
from pytest_world.world import ScenarioContext

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from io import StringIO

    from pytest_world.waiting import CancelToken
    from pytest_world.world import ApiFactory, UIFactory

pytest_plugins = ('pytester',)


class FakeElement:
    """Element handle recording the actions performed on it."""

    def __init__(self, text: str = '', *, failures: int = 0) -> None:
        self.text = text
        self.failures = failures
        self.actions: list[tuple[str, Any]] = []

    def _perform(self, action: str, value: Any = None) -> None:
        if self.failures:
            self.failures -= 1
            raise RuntimeError(f'Element is not attached ({action})')
        self.actions.append((action, value))

    def click(self, timeout: float) -> None:  # noqa: ARG002
        self._perform('click')

    def dblclick(self, timeout: float) -> None:  # noqa: ARG002
        self._perform('dblclick')

    def hover(self, timeout: float) -> None:  # noqa: ARG002
        self._perform('hover')

    def check(self, timeout: float) -> None:  # noqa: ARG002
        self._perform('check')

    def uncheck(self, timeout: float) -> None:  # noqa: ARG002
        self._perform('uncheck')

    def fill(self, value: str, timeout: float) -> None:  # noqa: ARG002
        self._perform('fill', value)
        self.text = value

    def press(self, key: str, timeout: float) -> None:  # noqa: ARG002
        self._perform('press', key)

    def select_option(self, value: Any, timeout: float) -> None:  # noqa: ARG002
        self._perform('select', value)

    def inner_text(self) -> str:
        return self.text


class FakePage:
    """Minimal stand-in of a Playwright page.

    Elements become visible after `appear_after` lookups; a selector
    registered in `invalid` makes the lookup raise a driver error. The
    page remembers the thread that created it and the threads closing it.
    """

    def __init__(self) -> None:
        self.elements: dict[str, FakeElement] = {}
        self.appear_after: dict[str, int] = {}
        self.invalid: dict[str, Exception] = {}
        self.queries: list[str] = []
        self.visited: list[str] = []
        self.closed = 0
        self.owner = get_ident()
        self.closed_by: list[int] = []

    def goto(self, url: str, timeout: float) -> None:  # noqa: ARG002
        self.visited.append(url)

    def query_selector(self, selector: str) -> FakeElement | None:
        self.queries.append(selector)
        if error := self.invalid.get(selector):
            raise error

        if self.appear_after.get(selector, 0) > 0:
            self.appear_after[selector] -= 1
            return None

        return self.elements.get(selector)

    def screenshot(self, full_page: bool = False) -> bytes:  # noqa: ARG002, FBT001, FBT002
        return b'\x89PNG fake'

    def close(self) -> None:
        self.closed += 1
        self.closed_by.append(get_ident())


@pytest.fixture
def config() -> RunConfig:
    """Run configuration with short timeouts and two API backends."""
    return RunConfig(
        base_url='http://ui.test',
        api_url='http://api.test',
        api_urls={'billing': 'http://billing.test'},
        default_timeout_ms=200,
        poll_interval_ms=10,
        teardown_timeout_ms=1000,
    )


@pytest.fixture
def page() -> FakePage:
    """Fake browser page."""
    return FakePage()


@pytest.fixture
def page_object(page: FakePage) -> PageObject:
    """Page object over the fake page with a short retry policy."""
    return PageObject(
        page,
        base_url='http://ui.test',
        policy=RetryPolicy(timeout_ms=200, interval_ms=10),
    )


@pytest.fixture
def api_handler() -> 'Callable[[httpx.Request], httpx.Response]':
    """Default API handler echoing the request as JSON."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            'method': request.method,
            'path': request.url.path,
            'headers': dict(request.headers),
        })

    return handler


@pytest.fixture
def ui_factory(config: RunConfig, page: FakePage) -> 'UIFactory':
    """UI factory handing out page objects over the fake page."""
    def factory(cancel: 'CancelToken | None') -> PageObject:
        return PageObject(page, policy=config.retry_policy, cancel=cancel, base_url=config.base_url)

    return factory


@pytest.fixture
def api_factory(api_handler: 'Callable[[httpx.Request], httpx.Response]') -> 'ApiFactory':
    """API factory creating clients over a mock transport."""
    def factory(name: str, base_url: str, world: ScenarioContext) -> ApiClient:
        return ApiClient(
            base_url,
            name=name,
            policy=world.config.retry_policy,
            retry_count=world.config.retry_count,
            credentials=lambda: world.credentials.get(name),
            cancel=world.cancel,
            transport=httpx.MockTransport(api_handler),
        )

    return factory


@pytest.fixture
def make_world(config: RunConfig, ui_factory: 'UIFactory',
               api_factory: 'ApiFactory') -> 'Callable[..., ScenarioContext]':
    """Factory of scenario contexts backed by fake UI and HTTP transports."""
    def make(**kwargs: Any) -> ScenarioContext:
        kwargs.setdefault('ui_factory', ui_factory)
        kwargs.setdefault('api_factory', api_factory)
        kwargs.setdefault('artifact_store', MemoryArtifactStore())
        return ScenarioContext(kwargs.pop('config', config), **kwargs)

    return make


@pytest.fixture
def log_stream() -> 'Iterator[StringIO]':
    """Capture JSON log records emitted by the package."""
    from io import StringIO  # noqa: PLC0415

    stream = StringIO()
    init_logging('DEBUG', json_output=True, stream=stream)

    yield stream

    reset_logging()
