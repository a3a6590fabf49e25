"""Page-object interaction variant backed by a Playwright page.

Element lookups and actions are retried by the wait/retry engine: each
attempt calls the driver with a short per-attempt timeout and transient
driver errors (detached, hidden or not yet rendered elements) count as
"not yet satisfied". Syntactically invalid selectors abort immediately.
"""

from re import IGNORECASE
from re import compile as regexp
from threading import Lock
from time import monotonic
from typing import TYPE_CHECKING, Any

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from pytest_world.artifacts import Artifact
from pytest_world.errors import (
    ConfigurationError,
    DriverEnvironmentError,
    ElementNotFoundError,
    InteractionError,
    InvalidSelectorError,
    PollTimeoutError,
)
from pytest_world.logs import get_logger
from pytest_world.waiting import RetryPolicy, poll_until

if TYPE_CHECKING:
    from collections.abc import Callable

    from playwright.sync_api import ElementHandle, Page

    from pytest_world.config import RunConfig
    from pytest_world.waiting import CancelToken

logger = get_logger(__name__)

#: Driver messages identifying a malformed selector.
INVALID_SELECTOR = regexp(
    r'(is not a valid selector|while parsing (css )?selector|unknown engine|unexpected token)',
    flags=IGNORECASE,
)

#: Supported element actions, mapped to a driver call.
ACTIONS: dict[str, 'Callable[[ElementHandle, Any, float], Any]'] = {
    'click': lambda element, value, timeout: element.click(timeout=timeout),  # noqa: ARG005
    'dblclick': lambda element, value, timeout: element.dblclick(timeout=timeout),  # noqa: ARG005
    'hover': lambda element, value, timeout: element.hover(timeout=timeout),  # noqa: ARG005
    'check': lambda element, value, timeout: element.check(timeout=timeout),  # noqa: ARG005
    'uncheck': lambda element, value, timeout: element.uncheck(timeout=timeout),  # noqa: ARG005
    'clear': lambda element, value, timeout: element.fill('', timeout=timeout),  # noqa: ARG005
    'type': lambda element, value, timeout: element.fill(f'{value}', timeout=timeout),
    'press': lambda element, value, timeout: element.press(f'{value}', timeout=timeout),
    'select': lambda element, value, timeout: element.select_option(value, timeout=timeout),
}

#: Actions that require a value.
VALUE_ACTIONS = frozenset({'type', 'press', 'select'})


class PageObject:
    """UI interaction target wrapping a single browser page.

    Args:
        page: Playwright page (or an object exposing the same methods).
        name: Name used in logs and artifact metadata.
        base_url: Base URL relative paths are resolved against.
        policy: Default retry policy of blocking operations.
        cancel: Cancel token of the owning scenario.
        closer: Callable releasing the browser behind the page.
    """

    def __init__(self, page: 'Page', *,  # noqa: PLR0913
                 name: str = 'ui',
                 base_url: str | None = None,
                 policy: RetryPolicy | None = None,
                 cancel: 'CancelToken | None' = None,
                 closer: 'Callable[[], None] | None' = None) -> None:
        self.page = page
        self.name = name
        self.base_url = base_url
        self.policy = policy or RetryPolicy()
        self.cancel = cancel

        self._closer = closer
        self._closed = False
        self._activity = False
        self._lock = Lock()

    def __repr__(self) -> str:
        return f'PageObject(name={self.name!r}, closed={self._closed})'

    @property
    def has_activity(self) -> bool:
        """Whether the page was navigated or interacted with."""
        return self._activity

    @property
    def closed(self) -> bool:
        """Whether the page has been released."""
        return self._closed

    def resolve_url(self, path: str) -> str:
        """Resolve a page path against the configured base URL."""
        if '://' in path or not self.base_url:
            return path

        return f'{self.base_url.rstrip('/')}/{path.lstrip('/')}'

    def open(self, path: str = '/', *, timeout_ms: int | None = None) -> None:
        """Navigate the page.

        Navigation is attempted once with the whole timeout as driver
        timeout; the engine only adds cancellation and logging.

        Args:
            path: Absolute URL or path relative to the base URL.
            timeout_ms: Optional navigation timeout override.

        Raises:
            InteractionError: If navigation fails.
        """
        policy = self.policy.override(timeout_ms=timeout_ms)
        url = self.resolve_url(path)

        self._activity = True
        logger.info('page_open', target=self.name, url=url)

        try:
            poll_until(
                lambda: self.page.goto(url, timeout=policy.timeout_ms) or True,
                timeout_ms=policy.timeout_ms,
                interval_ms=policy.interval_ms,
                max_attempts=1,
                cancel=self.cancel,
                description=f'open {url}',
            )

        except PollTimeoutError as base:
            raise InteractionError(f'Can not open {url!r}') from base.last_error or base

    def _query(self, selector: str) -> 'ElementHandle | None':
        """Run a single element lookup."""
        try:
            return self.page.query_selector(selector)

        except PlaywrightError as base:
            if INVALID_SELECTOR.search(base.message or ''):
                raise InvalidSelectorError(selector, base.message) from base
            raise

    def locate(self, selector: str, *,
               timeout_ms: int | None = None,
               interval_ms: int | None = None) -> 'ElementHandle':
        """Find an element, waiting for it to appear.

        Args:
            selector: Playwright selector.
            timeout_ms: Optional timeout override.
            interval_ms: Optional polling interval override.

        Returns:
            Handle of the first matching element.

        Raises:
            ElementNotFoundError: If no element appears in the wait window.
            InvalidSelectorError: If the selector is malformed.
        """
        policy = self.policy.override(timeout_ms=timeout_ms, interval_ms=interval_ms)

        self._activity = True
        started = monotonic()
        try:
            return poll_until(
                lambda: self._query(selector),
                timeout_ms=policy.timeout_ms,
                interval_ms=policy.interval_ms,
                cancel=self.cancel,
                description=f'locate {selector}',
            )

        except PollTimeoutError as base:
            raise ElementNotFoundError(selector, monotonic() - started) from base

    def act(self, target: 'ElementHandle | str', action: str,
            value: Any = None, *,  # noqa: ANN401
            timeout_ms: int | None = None,
            interval_ms: int | None = None) -> None:
        """Perform an action on an element.

        Args:
            target: Element handle or selector to locate first.
            action: One of `ACTIONS` (click, type, select, ...).
            value: Action value, required by `type`, `press` and `select`.
            timeout_ms: Optional timeout override.
            interval_ms: Optional polling interval override.

        Raises:
            ConfigurationError: If the action is unknown or lacks a value.
            ElementNotFoundError: If a selector target is not found.
            PollTimeoutError: If the action keeps failing until the timeout.
        """
        if not (performer := ACTIONS.get(action)):
            raise ConfigurationError(f'Unknown action {action!r} (known: {', '.join(sorted(ACTIONS))})')

        if action in VALUE_ACTIONS and value is None:
            raise ConfigurationError(f'Action {action!r} requires a value')

        policy = self.policy.override(timeout_ms=timeout_ms, interval_ms=interval_ms)

        element = target
        if isinstance(target, str):
            element = self.locate(target, timeout_ms=policy.timeout_ms, interval_ms=policy.interval_ms)

        self._activity = True
        logger.debug('element_action', target=self.name, action=action)

        poll_until(
            lambda: performer(element, value, policy.interval_ms) or True,
            timeout_ms=policy.timeout_ms,
            interval_ms=policy.interval_ms,
            cancel=self.cancel,
            description=f'{action} element',
        )

    def text(self, selector: str, *, timeout_ms: int | None = None) -> str:
        """Return the inner text of an element."""
        element = self.locate(selector, timeout_ms=timeout_ms)
        return element.inner_text()

    def wait_until[T](self, condition: 'Callable[[Page], T | None]', *,
                      timeout_ms: int | None = None,
                      interval_ms: int | None = None,
                      description: str | None = None) -> T:
        """Wait for a page condition.

        Args:
            condition: Callable receiving the page; satisfied when it
                returns a value other than `None` or `False`.
            timeout_ms: Optional timeout override.
            interval_ms: Optional polling interval override.
            description: Optional description used in messages.

        Returns:
            The first satisfying value of the condition.
        """
        policy = self.policy.override(timeout_ms=timeout_ms, interval_ms=interval_ms)

        return poll_until(
            lambda: condition(self.page),
            timeout_ms=policy.timeout_ms,
            interval_ms=policy.interval_ms,
            cancel=self.cancel,
            description=description,
        )

    def screenshot(self) -> bytes:
        """Take a full-page PNG screenshot."""
        return self.page.screenshot(full_page=True)

    def capture_diagnostic(self) -> Artifact | None:
        """Return a screenshot if the page was used, otherwise `None`."""
        if self._closed or not self._activity:
            return None

        return Artifact(
            name=f'{self.name}-screenshot.png',
            kind='screenshot',
            content_type='image/png',
            data=self.screenshot(),
        )

    def close(self) -> None:
        """Close the page and release the browser; repeated calls are no-ops."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            self.page.close()
        finally:
            if self._closer is not None:
                self._closer()

        logger.debug('page_closed', target=self.name)


class PlaywrightDriverFactory:
    """Start a browser and open a page for one scenario.

    Every call starts an independent Playwright instance, so handles are
    never shared between scenarios or worker threads.
    """

    def __init__(self, config: 'RunConfig') -> None:
        self.config = config

    def __call__(self, cancel: 'CancelToken | None' = None) -> PageObject:
        """Create a page object.

        Args:
            cancel: Cancel token of the owning scenario.

        Returns:
            A page object owning the browser it runs in.

        Raises:
            DriverEnvironmentError: If the browser can not be started.
        """
        playwright = None
        try:
            playwright = sync_playwright().start()
            browser_type = getattr(playwright, self.config.browser)
            browser = browser_type.launch(headless=self.config.headless)
            context = browser.new_context(base_url=self.config.base_url)
            context.set_default_timeout(self.config.default_timeout_ms)
            page = context.new_page()

        except Exception as base:
            if playwright is not None:
                playwright.stop()
            raise DriverEnvironmentError(
                f'Can not start browser {self.config.browser!r}: {base}',
            ) from base

        def closer() -> None:
            try:
                context.close()
                browser.close()
            finally:
                playwright.stop()

        logger.info('browser_started', browser=self.config.browser, headless=self.config.headless)

        return PageObject(
            page,
            base_url=self.config.base_url,
            policy=self.config.retry_policy,
            cancel=cancel,
            closer=closer,
        )
