"""Interaction targets used by step implementations.

UI page objects and API clients are two independent variants of the same
`Interactable` capability contract: both route blocking work through the
wait/retry engine, both release their resources on `close`, and both can
produce a diagnostic artifact describing their last activity.
"""

from .api import ApiClient, Credential
from .base import Interactable
from .ui import PageObject, PlaywrightDriverFactory

__all__ = (
    'ApiClient',
    'Credential',
    'Interactable',
    'PageObject',
    'PlaywrightDriverFactory',
)
