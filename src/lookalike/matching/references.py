"""Reference set building, persistence, and the swap-on-rebuild store."""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from lookalike.errors import ImageDecodeError, InvalidInput, NoFaceDetected
from lookalike.matching.types import ReferenceCollection, ReferenceRecord

if TYPE_CHECKING:
    from collections.abc import Iterable

    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES: frozenset[str] = frozenset({".jpg", ".jpeg", ".png", ".webp", ".bmp"})


class EmbeddingService(Protocol):
    """Anything that turns image bytes into a single-face embedding."""

    def detect_embedding(self, image_bytes: bytes) -> NDArray[np.float32]:
        """Return the embedding of the most prominent face.

        Raises:
            NoFaceDetected: If the image contains no face.
            ImageDecodeError: If the image cannot be decoded.
        """
        ...


@dataclass(frozen=True)
class ReferenceSource:
    """A named reference image on disk."""

    name: str
    image: str

    def read_bytes(self) -> bytes:
        return Path(self.image).read_bytes()


def discover_reference_sources(directory: str | Path) -> list[ReferenceSource]:
    """List the images in ``directory`` as reference sources.

    The file stem becomes the reference name; order follows the sorted file names.
    """
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Reference directory not found: {root}")
    paths = sorted(p for p in root.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)
    return [ReferenceSource(name=p.stem, image=str(p)) for p in paths]


def build_reference_set(sources: Iterable[ReferenceSource], service: EmbeddingService) -> ReferenceCollection:
    """Embed every reference image, dropping the ones without a detectable face.

    Duplicate names are kept as separate records.

    Raises:
        InvalidInput: If the resulting embeddings differ in dimensionality.
        OSError: If a reference image cannot be read.
    """
    sources = list(sources)
    records: list[ReferenceRecord] = []
    for source in sources:
        try:
            embedding = service.detect_embedding(source.read_bytes())
        except NoFaceDetected:
            logger.warning("No face detected in reference %s (%s), skipping", source.name, source.image)
            continue
        except ImageDecodeError as exc:
            logger.warning("Could not decode reference %s (%s): %s", source.name, source.image, exc)
            continue
        records.append(ReferenceRecord(name=source.name, image=source.image, embedding=embedding))

    duplicates = sorted(name for name, count in Counter(r.name for r in records).items() if count > 1)
    if duplicates:
        logger.warning("Duplicate reference names kept as separate entries: %s", ", ".join(duplicates))

    collection = ReferenceCollection(records)
    logger.info("Built reference set with %d of %d entries (dim=%s)", len(collection), len(sources), collection.dim)
    return collection


def save_references(collection: ReferenceCollection, path: str | Path) -> None:
    """Write the collection as indented JSON: ``[{"name", "image", "embedding"}, ...]``."""
    payload = [
        {"name": record.name, "image": record.image, "embedding": record.embedding.tolist()}
        for record in collection
    ]
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info("Wrote %d reference vectors to %s", len(collection), target)


def load_references(path: str | Path) -> ReferenceCollection:
    """Read a collection previously written by :func:`save_references`.

    Raises:
        InvalidInput: If the file is not a list of well-formed records, or dimensions differ.
    """
    source = Path(path)
    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise InvalidInput(f"Reference file {source} is not valid JSON: {exc}") from None

    if not isinstance(payload, list):
        raise InvalidInput(f"Reference file {source} must contain a JSON list")

    records: list[ReferenceRecord] = []
    for index, entry in enumerate(payload):
        if not isinstance(entry, dict) or "name" not in entry or "embedding" not in entry:
            raise InvalidInput(f"Reference entry {index} in {source} needs 'name' and 'embedding'")
        records.append(
            ReferenceRecord(
                name=str(entry["name"]),
                image=str(entry.get("image", "")),
                embedding=entry["embedding"],
            )
        )
    collection = ReferenceCollection(records)
    logger.info("Loaded %d reference vectors from %s", len(collection), source)
    return collection


class ReferenceStore:
    """Holds the current reference collection and replaces it wholesale on rebuild.

    Readers get whichever collection was current when they called
    :attr:`current`; a rebuild in progress is never visible.
    """

    def __init__(self, collection: ReferenceCollection | None = None) -> None:
        self._collection = collection if collection is not None else ReferenceCollection()
        self._rebuild_lock = threading.Lock()

    @property
    def current(self) -> ReferenceCollection:
        return self._collection

    def replace(self, collection: ReferenceCollection) -> None:
        self._collection = collection

    def rebuild(self, sources: Iterable[ReferenceSource], service: EmbeddingService) -> ReferenceCollection:
        """Build a new collection and swap it in once complete. Concurrent rebuilds are serialized."""
        with self._rebuild_lock:
            collection = build_reference_set(sources, service)
            self._collection = collection
            return collection
