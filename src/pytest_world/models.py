"""Base Pydantic models for pytest-world records and settings.

Hook descriptors, step invocations, artifact references and results are
immutable records: once a result is handed to the aggregator, neither a
worker nor a report renderer can change it.
"""

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchemaModel(BaseModel):
    """Frozen record rejecting unknown fields.

    Arbitrary types are allowed so that records may carry callables
    (hook actions, step functions) next to plain data.
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        frozen=True,
        extra='forbid',
    )


class SettingsModel(BaseSettings):
    """Frozen settings resolved once per run.

    Unknown keys are ignored, so configuration files and the environment
    may carry options of other tools.
    """

    model_config = SettingsConfigDict(
        frozen=True,
        extra='ignore',
    )
