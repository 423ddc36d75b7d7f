"""Resolve the configured reference set (precomputed file or image directory)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from lookalike.matching import (
    ReferenceCollection,
    build_reference_set,
    discover_reference_sources,
    load_references,
)

if TYPE_CHECKING:
    from lookalike.config import Settings
    from lookalike.matching import EmbeddingService, ReferenceStore

logger = logging.getLogger(__name__)


def load_reference_collection(settings: Settings, service: EmbeddingService) -> ReferenceCollection:
    """Load the startup reference set.

    A precomputed ``references_file`` wins when it exists; otherwise the
    images in ``references_dir`` are embedded.
    """
    references_file = _existing_references_file(settings)
    if references_file is not None:
        return load_references(references_file)
    if settings.references_dir:
        return build_reference_set(discover_reference_sources(settings.references_dir), service)
    logger.warning("No reference set configured (set LOOKALIKE_REFERENCES_DIR or LOOKALIKE_REFERENCES_FILE)")
    return ReferenceCollection()


def refresh_references(settings: Settings, store: ReferenceStore, service: EmbeddingService) -> ReferenceCollection:
    """Reload the store's collection with the same precedence as startup and swap it in.

    An existing ``references_file`` is re-read; otherwise the images in
    ``references_dir`` are re-embedded.
    """
    if settings.references_dir and _existing_references_file(settings) is None:
        return store.rebuild(discover_reference_sources(settings.references_dir), service)
    collection = load_reference_collection(settings, service)
    store.replace(collection)
    return collection


def _existing_references_file(settings: Settings) -> Path | None:
    if settings.references_file and Path(settings.references_file).is_file():
        return Path(settings.references_file)
    return None
