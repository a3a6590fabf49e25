"""Wait/retry engine shared by UI and API interactions.

Every blocking operation of the package goes through `poll_until`, so
timeout and retry policy is defined in exactly one place. Polling can be
interrupted through a `CancelToken`; tokens form a tree so that cancelling
a run cancels every scenario of that run.
"""

from contextvars import ContextVar
from threading import Event, Lock
from time import monotonic, sleep
from typing import TYPE_CHECKING

from pydantic import Field

from pytest_world.errors import PollCancelledError, PollTimeoutError, WorldError
from pytest_world.logs import get_logger
from pytest_world.models import SchemaModel

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Self

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_INTERVAL_MS = 250


class CancelToken:
    """Thread-safe cancellation flag with prompt wake-up of waiters.

    A token may have a parent: cancelling the parent cancels all of its
    children, while cancelling a child leaves the parent untouched.
    """

    def __init__(self, parent: 'CancelToken | None' = None) -> None:
        self._event = Event()
        self._lock = Lock()
        self._children: list[CancelToken] = []
        self._parent = parent
        self.reason: str | None = None

        if parent is not None:
            parent._adopt(self)  # noqa: SLF001

    def __repr__(self) -> str:
        return f'CancelToken(cancelled={self.cancelled}, reason={self.reason!r})'

    def _adopt(self, child: 'CancelToken') -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()

        if cancelled:
            child.cancel(self.reason)

    @property
    def cancelled(self) -> bool:
        """Whether the token has been cancelled."""
        return self._event.is_set()

    def child(self) -> 'CancelToken':
        """Create a token cancelled together with this one."""
        return CancelToken(self)

    def release(self) -> None:
        """Detach the token from its parent once its owner is done.

        A released token keeps its own state but is no longer cancelled
        together with the parent.
        """
        if (parent := self._parent) is None:
            return

        with parent._lock:  # noqa: SLF001
            if self in parent._children:  # noqa: SLF001
                parent._children.remove(self)  # noqa: SLF001
        self._parent = None

    def cancel(self, reason: str | None = None) -> None:
        """Cancel the token and all of its children.

        Args:
            reason: Optional human-readable cancellation reason.
        """
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = tuple(self._children)

        for child in children:
            child.cancel(reason)

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`, returning early on cancellation.

        Returns:
            True if the token was cancelled while waiting.
        """
        return self._event.wait(max(seconds, 0))

    def raise_if_cancelled(self) -> None:
        """Raise `PollCancelledError` if the token is cancelled."""
        if self.cancelled:
            raise PollCancelledError(f'Cancelled: {self.reason or 'no reason given'}')


#: Cancel token of the scenario running in the current worker.
current_token: ContextVar[CancelToken | None] = ContextVar('current_token', default=None)


class RetryPolicy(SchemaModel):
    """Timeout and polling interval of a blocking operation.

    A global policy is derived from the run configuration; individual
    calls may override any of its fields.
    """

    timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        ge=0,
        title='Timeout',
        description='Maximum time to wait for a condition, in milliseconds.',
    )

    interval_ms: int = Field(
        default=DEFAULT_INTERVAL_MS,
        gt=0,
        title='Polling interval',
        description='Delay between two condition evaluations, in milliseconds.',
    )

    max_attempts: int | None = Field(
        default=None,
        gt=0,
        title='Attempts limit',
        description='Optional upper bound of condition evaluations.',
    )

    def override(self, *,
                 timeout_ms: int | None = None,
                 interval_ms: int | None = None,
                 max_attempts: int | None = None) -> 'Self':
        """Return a copy with the given fields replaced.

        Fields passed as `None` keep their current value.
        """
        update = {
            key: value
            for key, value in (
                ('timeout_ms', timeout_ms),
                ('interval_ms', interval_ms),
                ('max_attempts', max_attempts),
            )
            if value is not None
        }
        if not update:
            return self

        return type(self).model_validate({**self.model_dump(), **update})


def poll_until[T](condition: 'Callable[[], T | None]', *,  # noqa: C901, PLR0913
                  timeout_ms: int = DEFAULT_TIMEOUT_MS,
                  interval_ms: int = DEFAULT_INTERVAL_MS,
                  max_attempts: int | None = None,
                  fatal: tuple[type[BaseException], ...] = (),
                  cancel: CancelToken | None = None,
                  description: str | None = None) -> T:
    """Evaluate a condition until it is satisfied or the timeout elapses.

    The condition is satisfied when it returns a value other than `None`
    or `False`; that value is returned. An exception raised by the
    condition counts as "not yet satisfied" and is retried, except for:

    - exception types listed in `fatal`;
    - `WorldError` subclasses flagged as fatal (invalid selectors,
      configuration and driver environment errors, missing context data);
    - `AssertionError` is retried like any other failure.

    Between attempts the engine sleeps `interval_ms`. An interval that
    would cross the deadline is slept only up to the deadline and no
    further attempt is made, so the condition runs at most
    `timeout_ms / interval_ms + 1` times.

    Args:
        condition: Callable evaluated on every attempt.
        timeout_ms: Maximum polling time in milliseconds.
        interval_ms: Delay between attempts in milliseconds.
        max_attempts: Optional upper bound of attempts.
        fatal: Additional exception types aborting polling immediately.
        cancel: Cancel token; defaults to the token of the running scenario.
        description: Optional description used in messages and logs.

    Returns:
        The first satisfying value returned by the condition.

    Raises:
        PollTimeoutError: If the deadline or the attempts limit is reached.
        PollCancelledError: If the cancel token is cancelled.
        Any fatal exception raised by the condition.
    """
    if cancel is None:
        cancel = current_token.get()

    interval = interval_ms / 1000
    started = monotonic()
    deadline = started + timeout_ms / 1000

    attempts = 0
    last_error: Exception | None = None

    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()

        attempts += 1
        try:
            result = condition()

        except fatal:
            raise

        except WorldError as error:
            if error.fatal:
                raise
            last_error = error

        except Exception as error:  # noqa: BLE001
            last_error = error

        else:
            if result is not None and result is not False:
                return result
            last_error = None

        if max_attempts is not None and attempts >= max_attempts:
            break

        remaining = deadline - monotonic()
        if remaining <= 0:
            break

        pause = min(interval, remaining)
        if cancel is not None:
            if cancel.wait(pause):
                cancel.raise_if_cancelled()
        else:
            sleep(pause)

        if pause < interval:
            break

    elapsed = monotonic() - started
    subject = description or getattr(condition, '__name__', 'condition')

    logger.warning(
        'poll_timeout',
        condition=subject,
        attempts=attempts,
        elapsed_ms=round(elapsed * 1000, 1),
        last_error=repr(last_error) if last_error else None,
    )

    error = PollTimeoutError(
        f'Condition {subject!r} not satisfied after {attempts} attempt(s) in {elapsed:.3f}s',
        attempts=attempts,
        elapsed=elapsed,
        last_error=last_error,
    )

    raise error from last_error
