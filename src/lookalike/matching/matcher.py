"""Nearest-reference matching with a rejection threshold."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from lookalike.errors import InvalidInput
from lookalike.matching.types import Match, NoMatch, as_embedding

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from lookalike.matching.types import MatchResult, ReferenceCollection


def euclidean_distances(query: ArrayLike, references: ReferenceCollection) -> NDArray[np.float64]:
    """Return the Euclidean distance from ``query`` to every reference, in collection order.

    Raises:
        InvalidInput: If the query is malformed or its length differs from the references'.
    """
    q = as_embedding(query)
    if not references:
        return np.empty(0, dtype=np.float64)
    if q.shape[0] != references.dim:
        raise InvalidInput(f"Query has {q.shape[0]} dimensions, references have {references.dim}")
    diff = references.matrix - q
    return np.sqrt(np.sum(diff * diff, axis=1))


def match(query: ArrayLike, references: ReferenceCollection, threshold: float) -> MatchResult:
    """Find the reference nearest to ``query``.

    The first record in collection order wins exact ties. A nearest distance
    strictly greater than ``threshold`` is reported as ``NoMatch`` without
    revealing which record was nearest.

    Args:
        query: Query embedding, same dimensionality as the references.
        references: Reference collection to scan.
        threshold: Largest accepted distance (inclusive).

    Returns:
        ``Match(record, distance)`` or ``NoMatch``.

    Raises:
        InvalidInput: If the query is empty, not 1-D, non-finite, or of the wrong length.
    """
    distances = euclidean_distances(query, references)
    if distances.size == 0:
        return NoMatch(reason="no_references")

    # argmin returns the first occurrence of the minimum
    best = int(np.argmin(distances))
    distance = float(distances[best])
    if distance > threshold:
        return NoMatch(reason="above_threshold")
    return Match(record=references[best], distance=distance)
