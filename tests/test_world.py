"""Tests for the scenario context."""

from threading import Barrier, Thread
from typing import TYPE_CHECKING

import pytest

from pytest_world.artifacts import Artifact, MemoryArtifactStore
from pytest_world.errors import DriverEnvironmentError, MissingContextDataError, UnknownClientError
from pytest_world.interactions import ApiClient, Credential, PageObject

if TYPE_CHECKING:
    from collections.abc import Callable

    from pytest_mock import MockerFixture

    from pytest_world.world import ScenarioContext

    from .conftest import FakePage


def test_data_bag(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Share values between steps of one scenario."""
    world = make_world()

    world.set('user', 'alice')
    world.set('user', 'bob')

    assert world.get('user') == 'bob'
    assert 'user' in world
    assert world.data == {'user': 'bob'}
    assert world.pop('user') == 'bob'
    assert 'user' not in world


def test_missing_data(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Raise a descriptive error for keys that were never stored."""
    world = make_world()
    world.set('token', 'abc')

    with pytest.raises(MissingContextDataError) as error:
        world.get('user')

    assert isinstance(error.value, KeyError)
    assert error.value.key == 'user'
    assert "'user' is not set" in f'{error.value}'
    assert '- token' in f'{error.value}'


def test_worlds_are_isolated(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Never share data between two scenario contexts."""
    first = make_world(name='first')
    second = make_world(name='second')

    first.set('key', 1)

    assert 'key' not in second
    assert first.scenario_id != second.scenario_id


def test_tags_are_normalized(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Store tags without the `@` prefix."""
    world = make_world(tags=['@smoke', 'ui'])

    assert world.tags == frozenset({'smoke', 'ui'})


def test_ui_handle_is_lazy_and_idempotent(make_world: 'Callable[..., ScenarioContext]',
                                          mocker: 'MockerFixture', page: 'FakePage') -> None:
    """Start the driver on first use and reuse it afterwards."""
    factory = mocker.Mock(side_effect=lambda cancel: PageObject(page, cancel=cancel))
    world = make_world(ui_factory=factory)

    factory.assert_not_called()

    handle = world.get_or_create_ui_handle()

    assert world.get_or_create_ui_handle() is handle
    assert world.ui is handle
    assert handle.cancel is world.cancel
    factory.assert_called_once()


def test_ui_handle_concurrent_creation(make_world: 'Callable[..., ScenarioContext]', page: 'FakePage') -> None:
    """Create a single handle when several threads ask at once."""
    created = []

    def factory(cancel: object) -> PageObject:
        created.append(cancel)
        return PageObject(page)

    world = make_world(ui_factory=factory)
    barrier = Barrier(4)
    handles = []

    def worker() -> None:
        barrier.wait()
        handles.append(world.get_or_create_ui_handle())

    threads = [Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(created) == 1
    assert all(handle is handles[0] for handle in handles)


def test_ui_factory_failure(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Wrap driver start failures into a fatal environment error."""
    def factory(cancel: object) -> PageObject:
        raise RuntimeError('browser binary not found')

    world = make_world(ui_factory=factory)

    with pytest.raises(DriverEnvironmentError, match='browser binary not found') as error:
        world.get_or_create_ui_handle()

    assert error.value.fatal
    assert isinstance(error.value.__cause__, RuntimeError)


def test_api_clients_by_name(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Create one client per configured backend name."""
    world = make_world()

    default = world.get_api_client()
    billing = world.get_api_client('billing')

    assert isinstance(default, ApiClient)
    assert default.base_url == 'http://api.test'
    assert billing.base_url == 'http://billing.test'
    assert world.get_api_client('default') is default
    assert world.interactables() == [default, billing]


def test_unknown_api_client(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Fail fast for client names that are not configured."""
    world = make_world()

    with pytest.raises(UnknownClientError, match="'crm' is not configured") as error:
        world.get_api_client('crm')

    assert error.value.known == ('billing', 'default')


def test_credentials_are_injected(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Send stored credentials with requests of the matching client."""
    world = make_world()
    world.set_credential('default', Credential(token='secret'))

    response = world.get_api_client().get('/me')

    assert response.json()['headers']['authorization'] == 'Bearer secret'


def test_attach_artifact(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Store artifacts and keep their references."""
    store = MemoryArtifactStore()
    world = make_world(artifact_store=store)

    ref = world.attach(Artifact(name='note.txt', kind='log', content_type='text/plain', data=b'hello'), source='test')

    assert world.artifacts == [ref]
    assert ref.source == 'test'
    assert store.load(ref.ref) == b'hello'


def test_teardown_releases_handles_once(make_world: 'Callable[..., ScenarioContext]', page: 'FakePage') -> None:
    """Close every handle exactly once and refuse new handles afterwards."""
    world = make_world()
    world.get_or_create_ui_handle()
    client = world.get_api_client()

    assert world.teardown() == ()
    assert world.teardown() == ()

    assert page.closed == 1
    assert client.closed
    assert world.torn_down

    with pytest.raises(DriverEnvironmentError, match='already torn down'):
        world.get_or_create_ui_handle()


def test_teardown_continues_after_failure(make_world: 'Callable[..., ScenarioContext]',
                                          mocker: 'MockerFixture', page: 'FakePage') -> None:
    """Close the remaining handles when one of them fails to close."""
    mocker.patch.object(page, 'close', side_effect=RuntimeError('already gone'))
    world = make_world()
    world.get_or_create_ui_handle()
    client = world.get_api_client()

    errors = world.teardown()

    assert len(errors) == 1
    assert isinstance(errors[0], RuntimeError)
    assert client.closed


def test_context_manager(make_world: 'Callable[..., ScenarioContext]') -> None:
    """Tear down on exit of a `with` block."""
    with make_world() as world:
        client = world.get_api_client()

    assert client.closed
