"""Diagnostic artifacts and artifact storage.

Artifacts are opaque diagnostic byproducts (screenshots, request and
response dumps, logs) attached to scenario results. The core never decides
where they live: it hands bytes and metadata to an `ArtifactStore` and keeps
only the returned `ArtifactRef`.
"""

from pathlib import Path
from re import sub
from threading import Lock
from typing import Literal, Protocol, runtime_checkable
from uuid import uuid4

from pydantic import Field

from pytest_world.logs import get_logger
from pytest_world.models import SchemaModel

logger = get_logger(__name__)

type ArtifactKind = Literal['screenshot', 'http-dump', 'log', 'other']


class Artifact(SchemaModel):
    """Diagnostic payload produced by an interactable, not yet stored."""

    name: str = Field(
        title='Artifact name',
        description='File-like name of the artifact, for example `page.png`.',
    )

    kind: ArtifactKind = Field(
        default='other',
        title='Artifact kind',
    )

    content_type: str = Field(
        default='application/octet-stream',
        title='Media type',
    )

    data: bytes = Field(
        repr=False,
        title='Payload',
    )


class ArtifactMetadata(SchemaModel):
    """Metadata handed to an artifact store together with the payload."""

    scenario_id: str
    name: str
    kind: ArtifactKind = 'other'
    content_type: str = 'application/octet-stream'
    source: str | None = Field(
        default=None,
        description='Name of the interactable that produced the artifact.',
    )


class ArtifactRef(SchemaModel):
    """Reference to a stored artifact, as emitted in the result stream."""

    ref: str = Field(
        title='Location',
        description='Store-specific location of the artifact (path or URI).',
    )
    name: str
    kind: ArtifactKind = 'other'
    content_type: str = 'application/octet-stream'
    size: int = Field(ge=0)
    source: str | None = None


@runtime_checkable
class ArtifactStore(Protocol):
    """Storage contract for diagnostic artifacts."""

    def store(self, data: bytes, metadata: ArtifactMetadata) -> ArtifactRef:
        """Persist an artifact and return a reference to it."""
        ...  # pragma: no cover


def _safe_name(value: str) -> str:
    """Make a value usable as a single path component."""
    return sub(r'[^\w.-]+', '-', value).strip('-.') or 'artifact'


class FileArtifactStore:
    """Store writing artifacts into per-scenario directories.

    Layout: `<base_dir>/<scenario_id>/<name>`. Name collisions within a
    scenario are resolved with a numeric suffix.
    """

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir)
        self._lock = Lock()

    def store(self, data: bytes, metadata: ArtifactMetadata) -> ArtifactRef:
        """Write an artifact file.

        Args:
            data: Artifact payload.
            metadata: Artifact metadata.

        Returns:
            Reference holding the POSIX path of the written file.
        """
        directory = self.base_dir / _safe_name(metadata.scenario_id)
        name = _safe_name(metadata.name)

        with self._lock:
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / name
            counter = 1
            while path.exists():
                path = directory / f'{Path(name).stem}-{counter}{Path(name).suffix}'
                counter += 1
            path.write_bytes(data)

        logger.debug('artifact_stored', path=path.as_posix(), size=len(data))

        return ArtifactRef(
            ref=path.as_posix(),
            name=path.name,
            kind=metadata.kind,
            content_type=metadata.content_type,
            size=len(data),
            source=metadata.source,
        )


class MemoryArtifactStore:
    """Store keeping artifacts in memory, addressed by `memory://` URIs."""

    def __init__(self) -> None:
        self.items: dict[str, tuple[bytes, ArtifactMetadata]] = {}
        self._lock = Lock()

    def store(self, data: bytes, metadata: ArtifactMetadata) -> ArtifactRef:
        """Keep an artifact in memory."""
        ref = f'memory://{metadata.scenario_id}/{uuid4().hex}/{_safe_name(metadata.name)}'
        with self._lock:
            self.items[ref] = (data, metadata)

        return ArtifactRef(
            ref=ref,
            name=metadata.name,
            kind=metadata.kind,
            content_type=metadata.content_type,
            size=len(data),
            source=metadata.source,
        )

    def load(self, ref: str) -> bytes:
        """Return the payload of a stored artifact.

        Raises:
            KeyError: If the reference is unknown.
        """
        with self._lock:
            return self.items[ref][0]
