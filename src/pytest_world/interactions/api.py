"""API-client interaction variant backed by httpx.

HTTP error statuses are data: `request` returns every response, whatever
its status code, so steps can assert on error responses. Only failures
below the HTTP layer (timeouts, refused connections, protocol errors)
raise `TransportError`, after the configured number of retries.
"""

from base64 import b64encode
from json import dumps
from threading import Lock
from typing import TYPE_CHECKING, Any, Literal, Self

import httpx
from pydantic import Field, SecretStr, model_validator

from pytest_world.artifacts import Artifact
from pytest_world.errors import PollTimeoutError, TransportError
from pytest_world.logs import get_logger
from pytest_world.models import SchemaModel
from pytest_world.waiting import RetryPolicy, poll_until

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from pytest_world.waiting import CancelToken

logger = get_logger(__name__)

#: Headers whose values never appear in diagnostic dumps.
SENSITIVE_HEADERS = frozenset({'authorization', 'proxy-authorization', 'cookie', 'set-cookie', 'x-api-key'})

#: Maximum number of body characters kept in diagnostic dumps.
DUMP_BODY_LIMIT = 4096

REDACTED = '<redacted>'

type Body = bytes | str | dict[str, Any] | list[Any] | None


class Credential(SchemaModel):
    """Stored authentication data injected into API requests."""

    scheme: Literal['bearer', 'basic', 'header'] = Field(
        default='bearer',
        title='Authentication scheme',
    )
    token: SecretStr | None = Field(
        default=None,
        title='Token',
        description='Bearer token or raw header value.',
    )
    username: str | None = None
    password: SecretStr | None = None
    header: str = Field(
        default='Authorization',
        title='Header name',
    )

    @model_validator(mode='after')
    def check_scheme_fields(self) -> Self:
        """Check that the fields required by the scheme are present.

        Raises:
            ValueError: If the scheme lacks its fields.
        """
        if self.scheme == 'basic' and (self.username is None or self.password is None):
            raise ValueError('Basic credentials require a username and a password')

        if self.scheme in ('bearer', 'header') and self.token is None:
            raise ValueError(f'{self.scheme.capitalize()} credentials require a token')

        return self

    def headers(self) -> dict[str, str]:
        """Render the authentication header."""
        if self.scheme == 'basic':
            pair = f'{self.username}:{self.password.get_secret_value()}'  # type: ignore[union-attr]
            return {self.header: f'Basic {b64encode(pair.encode()).decode()}'}

        token = self.token.get_secret_value()  # type: ignore[union-attr]
        if self.scheme == 'bearer':
            return {self.header: f'Bearer {token}'}

        return {self.header: token}


def _redact(headers: 'Mapping[str, str]') -> dict[str, str]:
    """Mask sensitive header values."""
    return {
        key: REDACTED if key.lower() in SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def _truncate(content: bytes) -> str:
    """Decode and shorten a body for diagnostics."""
    text = content.decode('utf-8', errors='replace')
    if len(text) > DUMP_BODY_LIMIT:
        return f'{text[:DUMP_BODY_LIMIT]}... ({len(text)} characters)'
    return text


class ApiClient:
    """API interaction target bound to one backend.

    Args:
        base_url: Base URL request paths are resolved against.
        name: Client name used in logs and artifact metadata.
        policy: Default retry policy of requests.
        retry_count: Retries of a request failing at transport level.
        credentials: Callable returning the stored credential, if any.
        cancel: Cancel token of the owning scenario.
        transport: Optional httpx transport (for example, a mock).
    """

    def __init__(self, base_url: str, *,  # noqa: PLR0913
                 name: str = 'default',
                 policy: RetryPolicy | None = None,
                 retry_count: int = 0,
                 credentials: 'Callable[[], Credential | None] | None' = None,
                 cancel: 'CancelToken | None' = None,
                 transport: httpx.BaseTransport | None = None) -> None:
        self.name = name
        self.base_url = base_url
        self.policy = policy or RetryPolicy()
        self.retry_count = retry_count
        self.cancel = cancel

        self._credentials = credentials
        self._client = httpx.Client(base_url=base_url, transport=transport)
        self._closed = False
        self._lock = Lock()

        self.last_request: httpx.Request | None = None
        self.last_response: httpx.Response | None = None
        self.last_error: BaseException | None = None

    def __repr__(self) -> str:
        return f'ApiClient(name={self.name!r}, base_url={self.base_url!r})'

    @property
    def has_activity(self) -> bool:
        """Whether any request has been attempted."""
        return self.last_request is not None

    @property
    def closed(self) -> bool:
        """Whether the client has been released."""
        return self._closed

    def build_request(self, method: str, path: str, *,  # noqa: PLR0913
                      headers: 'Mapping[str, str] | None' = None,
                      body: Body = None,
                      params: 'Mapping[str, Any] | None' = None,
                      auth: Credential | None = None,
                      timeout_ms: int | None = None) -> httpx.Request:
        """Build a request with authentication injected.

        An explicit `auth` credential wins over the stored one; a header
        already present in `headers` is never overwritten.
        """
        merged = dict(headers or {})

        credential = auth
        if credential is None and self._credentials is not None:
            credential = self._credentials()

        if credential is not None:
            for key, value in credential.headers().items():
                if not any(key.lower() == item.lower() for item in merged):
                    merged[key] = value

        options: dict[str, Any] = {}
        if isinstance(body, (dict, list)):
            options['json'] = body
        elif body is not None:
            options['content'] = body

        if timeout_ms is not None:
            options['timeout'] = timeout_ms / 1000

        return self._client.build_request(
            method.upper(),
            path,
            headers=merged,
            params=params,
            **options,
        )

    def _send(self, request: httpx.Request) -> tuple[httpx.Response]:
        """Send a request once, translating transport failures."""
        self.last_request = request
        try:
            response = self._client.send(request)

        except httpx.TransportError as base:
            self.last_error = base
            logger.warning(
                'api_transport_error',
                client=self.name,
                method=request.method,
                url=f'{request.url}',
                error=repr(base),
            )
            raise TransportError(
                f'{request.method} {request.url} failed: {base!r}',
                method=request.method,
                url=f'{request.url}',
            ) from base

        response.read()
        self.last_error = None
        self.last_response = response

        return (response,)

    def request(self, method: str, path: str, *,  # noqa: PLR0913
                headers: 'Mapping[str, str] | None' = None,
                body: Body = None,
                params: 'Mapping[str, Any] | None' = None,
                auth: Credential | None = None,
                timeout_ms: int | None = None) -> httpx.Response:
        """Send an HTTP request.

        Args:
            method: HTTP method.
            path: Path relative to the base URL, or an absolute URL.
            headers: Extra request headers.
            body: JSON-serializable mapping or list, or raw text or bytes.
            params: Query parameters.
            auth: Explicit credential overriding the stored one.
            timeout_ms: Optional timeout override.

        Returns:
            The response, whatever its status code.

        Raises:
            TransportError: If every attempt failed at transport level.
        """
        policy = self.policy.override(
            timeout_ms=timeout_ms,
            max_attempts=self.retry_count + 1,
        )
        request = self.build_request(
            method, path,
            headers=headers,
            body=body,
            params=params,
            auth=auth,
            timeout_ms=policy.timeout_ms,
        )

        logger.debug('api_request', client=self.name, method=request.method, url=f'{request.url}')

        try:
            (response,) = poll_until(
                lambda: self._send(request),
                timeout_ms=policy.timeout_ms,
                interval_ms=policy.interval_ms,
                max_attempts=policy.max_attempts,
                cancel=self.cancel,
                description=f'{request.method} {request.url}',
            )

        except PollTimeoutError as base:
            if isinstance(base.last_error, TransportError):
                raise base.last_error from base.last_error.__cause__
            raise TransportError(
                f'{request.method} {request.url} did not complete',
                method=request.method,
                url=f'{request.url}',
            ) from base

        logger.info(
            'api_response',
            client=self.name,
            method=request.method,
            url=f'{request.url}',
            status=response.status_code,
        )

        return response

    def get(self, path: str, **kwargs: Any) -> httpx.Response:  # noqa: ANN401
        """Send a GET request."""
        return self.request('GET', path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> httpx.Response:  # noqa: ANN401
        """Send a POST request."""
        return self.request('POST', path, **kwargs)

    def put(self, path: str, **kwargs: Any) -> httpx.Response:  # noqa: ANN401
        """Send a PUT request."""
        return self.request('PUT', path, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> httpx.Response:  # noqa: ANN401
        """Send a DELETE request."""
        return self.request('DELETE', path, **kwargs)

    def dump_exchange(self) -> dict[str, Any]:
        """Describe the last request and its response or error."""
        exchange: dict[str, Any] = {'client': self.name}

        if (request := self.last_request) is not None:
            exchange['request'] = {
                'method': request.method,
                'url': f'{request.url}',
                'headers': _redact(request.headers),
                'body': _truncate(request.content),
            }

        response = self.last_response
        if response is not None and response.request is request:
            exchange['response'] = {
                'status': response.status_code,
                'headers': _redact(response.headers),
                'body': _truncate(response.content),
            }

        if self.last_error is not None:
            exchange['error'] = repr(self.last_error)

        return exchange

    def capture_diagnostic(self) -> Artifact | None:
        """Return a JSON dump of the last exchange, if any."""
        if not self.has_activity:
            return None

        return Artifact(
            name=f'{self.name}-exchange.json',
            kind='http-dump',
            content_type='application/json',
            data=dumps(self.dump_exchange(), ensure_ascii=False, indent=2).encode(),
        )

    def close(self) -> None:
        """Close open connections; repeated calls are no-ops."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        self._client.close()
        logger.debug('api_client_closed', client=self.name)
