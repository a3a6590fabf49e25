"""Per-scenario state container ("world").

A `ScenarioContext` is created for every scenario execution. It gives step
implementations one place to obtain interaction handles and to pass data
between steps, and it exclusively owns every handle it creates: handles
are never shared with another scenario, even under parallel execution.
"""

from threading import Lock
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pytest_world.artifacts import ArtifactMetadata, MemoryArtifactStore
from pytest_world.errors import DriverEnvironmentError, MissingContextDataError, UnknownClientError
from pytest_world.interactions import ApiClient, PlaywrightDriverFactory
from pytest_world.logs import get_logger
from pytest_world.tags import normalize_tags
from pytest_world.waiting import CancelToken

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from pytest_world.artifacts import Artifact, ArtifactRef, ArtifactStore
    from pytest_world.config import RunConfig
    from pytest_world.interactions import Credential, Interactable, PageObject

logger = get_logger(__name__)

#: Creates the UI handle of a scenario.
type UIFactory = Callable[[CancelToken | None], PageObject]

#: Creates a named API client of a scenario from its base URL.
type ApiFactory = Callable[[str, str, ScenarioContext], ApiClient]


def default_api_factory(name: str, base_url: str, world: 'ScenarioContext') -> ApiClient:
    """Create an httpx-backed API client bound to a scenario."""
    return ApiClient(
        base_url,
        name=name,
        policy=world.config.retry_policy,
        retry_count=world.config.retry_count,
        credentials=lambda: world.credentials.get(name),
        cancel=world.cancel,
    )


class ScenarioContext:
    """Mutable state and handle factory of one scenario execution.

    Args:
        config: Immutable run configuration.
        name: Human-readable scenario name.
        tags: Scenario tags, with or without the `@` prefix.
        scenario_id: Unique identifier; generated when omitted.
        ui_factory: Factory of the UI handle; Playwright by default.
        api_factory: Factory of API clients; httpx by default.
        artifact_store: Store for diagnostic artifacts.
        cancel: Cancel token interrupting blocking operations.
    """

    def __init__(self, config: 'RunConfig', *,  # noqa: PLR0913
                 name: str = '',
                 tags: 'Iterable[str]' = (),
                 scenario_id: str | None = None,
                 ui_factory: UIFactory | None = None,
                 api_factory: ApiFactory | None = None,
                 artifact_store: 'ArtifactStore | None' = None,
                 cancel: CancelToken | None = None) -> None:
        self.config = config
        self.name = name
        self.tags = normalize_tags(tags)
        self.scenario_id = scenario_id or f'{uuid4()}'
        self.cancel = cancel or CancelToken()

        self.artifact_store = artifact_store or MemoryArtifactStore()
        self.artifacts: list[ArtifactRef] = []
        self.credentials: dict[str, Credential] = {}

        self._ui_factory = ui_factory or PlaywrightDriverFactory(config)
        self._api_factory = api_factory or default_api_factory

        self._data: dict[str, Any] = {}
        self._ui: PageObject | None = None
        self._api_clients: dict[str, ApiClient] = {}

        self._lock = Lock()
        self._torn_down = False

    def __repr__(self) -> str:
        return f'ScenarioContext(scenario_id={self.scenario_id!r}, name={self.name!r})'

    def __enter__(self) -> 'ScenarioContext':
        return self

    def __exit__(self, *args: object) -> None:
        self.teardown()

    @property
    def torn_down(self) -> bool:
        """Whether the context has released its handles."""
        return self._torn_down

    def _ensure_alive(self) -> None:
        if self._torn_down:
            raise DriverEnvironmentError(
                f'Scenario context {self.scenario_id!r} is already torn down',
            )

    def get_or_create_ui_handle(self) -> 'PageObject':
        """Return the UI handle, starting the driver on first use.

        Returns:
            The page object owned by this scenario; repeated calls
            return the same instance.

        Raises:
            DriverEnvironmentError: If the driver can not be started.
        """
        with self._lock:
            self._ensure_alive()
            if self._ui is not None:
                return self._ui

            try:
                self._ui = self._ui_factory(self.cancel)

            except DriverEnvironmentError:
                raise

            except Exception as base:
                raise DriverEnvironmentError(f'Can not start UI driver: {base}') from base

            logger.info('ui_handle_created', target=self._ui.name)
            return self._ui

    @property
    def ui(self) -> 'PageObject':
        """Shortcut for `get_or_create_ui_handle`."""
        return self.get_or_create_ui_handle()

    def get_api_client(self, name: str = 'default') -> ApiClient:
        """Return a named API client, creating it on first use.

        Args:
            name: Client name configured in `api_url` / `api_urls`.

        Returns:
            The client owned by this scenario for that name.

        Raises:
            UnknownClientError: If the name is not configured.
            DriverEnvironmentError: If the client can not be created.
        """
        with self._lock:
            self._ensure_alive()
            if client := self._api_clients.get(name):
                return client

            backends = self.config.api_backends
            if name not in backends:
                raise UnknownClientError(name, tuple(sorted(backends)))

            try:
                client = self._api_factory(name, backends[name], self)

            except Exception as base:
                raise DriverEnvironmentError(f'Can not create API client {name!r}: {base}') from base

            self._api_clients[name] = client
            logger.info('api_client_created', client=name, base_url=backends[name])
            return client

    def set_credential(self, client: str, credential: 'Credential') -> None:
        """Store a credential injected into requests of a client."""
        self.credentials[client] = credential

    def set(self, key: str, value: Any) -> None:  # noqa: ANN401
        """Store a value in the shared data bag."""
        self._data[key] = value

    def get(self, key: str) -> Any:  # noqa: ANN401
        """Read a value from the shared data bag.

        Raises:
            MissingContextDataError: If the key was never stored.
        """
        try:
            return self._data[key]

        except KeyError:
            raise MissingContextDataError(key, tuple(self._data)) from None

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def pop(self, key: str) -> Any:  # noqa: ANN401
        """Remove and return a value from the shared data bag.

        Raises:
            MissingContextDataError: If the key was never stored.
        """
        value = self.get(key)
        del self._data[key]
        return value

    @property
    def data(self) -> dict[str, Any]:
        """Snapshot of the shared data bag."""
        return dict(self._data)

    def interactables(self) -> list['Interactable']:
        """Handles created so far: the UI handle first, then API clients."""
        with self._lock:
            handles: list[Interactable] = []
            if self._ui is not None:
                handles.append(self._ui)
            handles.extend(self._api_clients.values())
            return handles

    def attach(self, artifact: 'Artifact', source: str | None = None) -> 'ArtifactRef':
        """Store an artifact and attach it to the scenario.

        Args:
            artifact: Artifact payload and description.
            source: Name of the producer of the artifact.

        Returns:
            Reference returned by the artifact store.
        """
        ref = self.artifact_store.store(
            artifact.data,
            ArtifactMetadata(
                scenario_id=self.scenario_id,
                name=artifact.name,
                kind=artifact.kind,
                content_type=artifact.content_type,
                source=source,
            ),
        )
        self.artifacts.append(ref)

        logger.info('artifact_attached', name=ref.name, kind=ref.kind, ref=ref.ref)
        return ref

    def teardown(self) -> tuple[Exception, ...]:
        """Release every handle owned by the scenario.

        Runs at most once; later calls return immediately. A failure to
        close one handle is logged and does not prevent closing the others.

        Returns:
            Errors raised while closing handles.
        """
        with self._lock:
            if self._torn_down:
                return ()
            self._torn_down = True

            handles: list[Interactable] = []
            if self._ui is not None:
                handles.append(self._ui)
            handles.extend(self._api_clients.values())

        errors: list[Exception] = []
        for handle in handles:
            try:
                handle.close()

            except Exception as error:  # noqa: BLE001
                logger.exception('teardown_failed', target=handle.name)
                errors.append(error)

        logger.debug('context_torn_down', handles=len(handles), errors=len(errors))
        return tuple(errors)
