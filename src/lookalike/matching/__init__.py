"""Nearest-embedding matching against a small reference set."""

from lookalike.matching.matcher import euclidean_distances, match
from lookalike.matching.references import (
    EmbeddingService,
    ReferenceSource,
    ReferenceStore,
    build_reference_set,
    discover_reference_sources,
    load_references,
    save_references,
)
from lookalike.matching.types import Match, MatchResult, NoMatch, ReferenceCollection, ReferenceRecord

__all__ = [
    "EmbeddingService",
    "Match",
    "MatchResult",
    "NoMatch",
    "ReferenceCollection",
    "ReferenceRecord",
    "ReferenceSource",
    "ReferenceStore",
    "build_reference_set",
    "discover_reference_sources",
    "euclidean_distances",
    "load_references",
    "match",
    "save_references",
]
