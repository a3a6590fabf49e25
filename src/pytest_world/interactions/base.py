"""Capability contract shared by UI and API interaction targets."""

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from pytest_world.artifacts import Artifact


@runtime_checkable
class Interactable(Protocol):
    """Contract implemented by page objects and API clients.

    Step code and the failure-capture hook depend only on this contract,
    never on a concrete variant.
    """

    #: Name identifying the target in logs and artifact metadata.
    name: str

    @property
    def has_activity(self) -> bool:
        """Whether the target performed any interaction so far."""
        ...  # pragma: no cover

    def capture_diagnostic(self) -> 'Artifact | None':
        """Produce an artifact describing the latest activity, if any."""
        ...  # pragma: no cover

    def close(self) -> None:
        """Release the underlying driver or connection."""
        ...  # pragma: no cover
