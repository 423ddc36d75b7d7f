"""Reference records, collections and match results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, overload

import numpy as np

from lookalike.errors import InvalidInput

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

    from numpy.typing import ArrayLike, NDArray


def as_embedding(values: ArrayLike) -> NDArray[np.float64]:
    """Convert a vector-like to a read-only 1-D float64 array.

    Raises:
        InvalidInput: If the vector is empty, not 1-D, or contains NaN/inf.
    """
    try:
        arr = np.array(values, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"Embedding is not numeric: {exc}") from None
    if arr.ndim != 1:
        raise InvalidInput(f"Embedding must be 1-D, got shape {arr.shape}")
    if arr.size == 0:
        raise InvalidInput("Embedding is empty")
    if not np.all(np.isfinite(arr)):
        raise InvalidInput("Embedding contains non-finite values")
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True, eq=False)
class ReferenceRecord:
    """A named reference face and its embedding."""

    name: str
    image: str
    embedding: NDArray[np.float64] = field(repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "embedding", as_embedding(self.embedding))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReferenceRecord):
            return NotImplemented
        return (
            self.name == other.name
            and self.image == other.image
            and np.array_equal(self.embedding, other.embedding)
        )

    def __hash__(self) -> int:
        return hash((self.name, self.image, self.embedding.tobytes()))

    @property
    def dim(self) -> int:
        return int(self.embedding.shape[0])


class ReferenceCollection:
    """Ordered, immutable sequence of reference records sharing one dimensionality.

    The stacked embedding matrix is built once so matching is a single
    vectorized distance computation.
    """

    __slots__ = ("_matrix", "_records")

    def __init__(self, records: Iterable[ReferenceRecord] = ()) -> None:
        self._records: tuple[ReferenceRecord, ...] = tuple(records)
        dims = {record.dim for record in self._records}
        if len(dims) > 1:
            raise InvalidInput(f"Reference embeddings have mixed dimensionality: {sorted(dims)}")

        if self._records:
            matrix = np.stack([record.embedding for record in self._records])
        else:
            matrix = np.empty((0, 0), dtype=np.float64)
        matrix.setflags(write=False)
        self._matrix = matrix

    @property
    def dim(self) -> int | None:
        """Embedding dimensionality, or None for an empty collection."""
        if not self._records:
            return None
        return self._records[0].dim

    @property
    def matrix(self) -> NDArray[np.float64]:
        """Read-only (N, dim) matrix of embeddings in collection order."""
        return self._matrix

    @property
    def names(self) -> list[str]:
        return [record.name for record in self._records]

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ReferenceRecord]:
        return iter(self._records)

    @overload
    def __getitem__(self, index: int) -> ReferenceRecord: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[ReferenceRecord]: ...

    def __getitem__(self, index: int | slice) -> ReferenceRecord | Sequence[ReferenceRecord]:
        return self._records[index]

    def __bool__(self) -> bool:
        return bool(self._records)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ReferenceCollection):
            return NotImplemented
        return self._records == other._records

    def __hash__(self) -> int:
        return hash(self._records)

    def __repr__(self) -> str:
        return f"ReferenceCollection(names={self.names!r}, dim={self.dim})"


@dataclass(frozen=True)
class Match:
    """The nearest reference was within the threshold."""

    record: ReferenceRecord
    distance: float


@dataclass(frozen=True)
class NoMatch:
    """No reference was close enough, or there was nothing to compare against."""

    reason: str = "above_threshold"


MatchResult = Match | NoMatch
