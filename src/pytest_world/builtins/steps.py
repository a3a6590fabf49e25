"""Built-in shared steps.

Backend-agnostic steps usable by any scenario: waiting, remembering
values, driving the UI handle and checking API responses. Register them
into a project registry with `StepRegistry.update(registry)`.
"""

# ruff: noqa: S101

from typing import TYPE_CHECKING, Any

from yaml import YAMLError, safe_load

from pytest_world.steps import StepRegistry
from pytest_world.waiting import current_token

if TYPE_CHECKING:
    from httpx import Response

    from pytest_world.world import ScenarioContext

#: Context key of the last API response.
LAST_RESPONSE = 'response'

registry = StepRegistry()


def _literal(value: str) -> Any:  # noqa: ANN401
    """Interpret a step argument as a YAML scalar (`42`, `true`, `null`)."""
    try:
        return safe_load(value)

    except YAMLError:
        return value


def _lookup(document: Any, path: str) -> Any:  # noqa: ANN401
    """Resolve a dotted path (`data.items.0.id`) in a JSON document."""
    current = document
    for part in path.split('.'):
        if isinstance(current, dict):
            assert part in current, f'Field {part!r} of {path!r} is missing'
            current = current[part]
        elif isinstance(current, list):
            assert part.lstrip('-').isdigit(), f'Field {part!r} of {path!r} is not an index'
            assert -len(current) <= int(part) < len(current), f'Index {part} of {path!r} is out of range'
            current = current[int(part)]
        else:
            raise AssertionError(f'Field {part!r} of {path!r} is not a container')

    return current


def _last_response(world: 'ScenarioContext') -> 'Response':
    return world.get(LAST_RESPONSE)


@registry.step('I wait for {seconds:float} seconds')
def wait_for(world: 'ScenarioContext', seconds: float) -> None:
    """Sleep, waking up as soon as the scenario is cancelled."""
    token = current_token.get() or world.cancel
    if token.wait(seconds):
        token.raise_if_cancelled()


@registry.step('I remember {value} as {key:word}')
def remember(world: 'ScenarioContext', value: str, key: str) -> None:
    world.set(key, _literal(value))


@registry.step('I open the page {path}')
def open_page(world: 'ScenarioContext', path: str) -> None:
    world.ui.open(path)


@registry.step('I click {selector}')
def click(world: 'ScenarioContext', selector: str) -> None:
    world.ui.act(selector, 'click')


@registry.step('I type {text} into {selector}')
def type_text(world: 'ScenarioContext', text: str, selector: str) -> None:
    world.ui.act(selector, 'type', text)


@registry.step('I should see {text} in {selector}')
def should_see(world: 'ScenarioContext', text: str, selector: str) -> None:
    """Wait until an element contains the text."""
    world.ui.wait_until(
        lambda page: (element := page.query_selector(selector)) is not None and text in element.inner_text(),
        description=f'{text!r} in {selector}',
    )


@registry.step('I send a {method:word} request to {path}')
def send_request(world: 'ScenarioContext', method: str, path: str) -> None:
    response = world.get_api_client().request(method.upper(), path)
    world.set(LAST_RESPONSE, response)


@registry.step('I send a {method:word} request to {path} using {client:word}')
def send_client_request(world: 'ScenarioContext', method: str, path: str, client: str) -> None:
    response = world.get_api_client(client).request(method.upper(), path)
    world.set(LAST_RESPONSE, response)


@registry.step('the response status should be {status:int}')
def response_status(world: 'ScenarioContext', status: int) -> None:
    response = _last_response(world)
    assert response.status_code == status, f'Expected status {status}, got {response.status_code}'


@registry.step('the response field {field} should be {expected}')
def response_field(world: 'ScenarioContext', field: str, expected: str) -> None:
    actual = _lookup(_last_response(world).json(), field)
    assert actual == _literal(expected), f'Field {field!r} is {actual!r}, expected {expected!r}'


@registry.step('I store the response field {field} as {key:word}')
def store_field(world: 'ScenarioContext', field: str, key: str) -> None:
    world.set(key, _lookup(_last_response(world).json(), field))
