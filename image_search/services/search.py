"""
Nearest-neighbor ranking over a loaded index snapshot
"""
import logging
from typing import Optional, Tuple

import numpy as np

from ..core.config import SearchConfig
from ..core.exceptions import ShapeMismatchError
from ..models.schemas import MatchResult, SearchOutcome, SearchStatus
from .index_store import IndexSnapshot
from .vector_index import create_vector_index

logger = logging.getLogger(__name__)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Cosine similarity of two unit vectors (their dot product), clipped to [-1, 1]

    A zero vector scores 0 against everything.
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise ShapeMismatchError(f"Cannot compare vectors of length {a.shape[0]} and {b.shape[0]}")
    return float(np.clip(np.dot(a, b), -1.0, 1.0))


class NearestNeighborSearch:
    """
    Linear scan ranking: similarity >= threshold, sorted descending, top-k

    Ties keep the snapshot's enumeration order.
    """

    def __init__(self, config: SearchConfig):
        self.threshold = float(config.similarity_threshold)
        self.top_k = int(config.top_k)
        self.backend = config.backend

    def resolve_limits(self, threshold: Optional[float] = None,
                       top_k: Optional[int] = None) -> Tuple[float, int]:
        """Apply the configured defaults to per-call overrides and check their range"""
        threshold = self.threshold if threshold is None else float(threshold)
        top_k = self.top_k if top_k is None else int(top_k)
        if not -1.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must lie in [-1, 1], got {threshold}")
        if top_k < 1:
            raise ValueError(f"top_k must be at least 1, got {top_k}")
        return threshold, top_k

    def rank(self, query: np.ndarray, snapshot: Optional[IndexSnapshot],
             threshold: Optional[float] = None, top_k: Optional[int] = None) -> SearchOutcome:
        """
        Rank the snapshot's records against a query unit vector

        Args:
            query: L2-normalized query embedding
            snapshot: Loaded index, or None when no index exists
            threshold: Override of the configured similarity cutoff
            top_k: Override of the configured result limit

        Returns:
            SearchOutcome whose status tells "no index", "empty index",
            "no match" and "matched" apart

        Raises:
            ValueError: threshold outside [-1, 1] or top_k below 1
            ShapeMismatchError: query length differs from the index dimension
        """
        threshold, top_k = self.resolve_limits(threshold, top_k)

        if snapshot is None:
            return SearchOutcome(status=SearchStatus.NO_INDEX)

        if len(snapshot) == 0:
            return SearchOutcome(status=SearchStatus.EMPTY_INDEX, generation=snapshot.generation)

        query = np.asarray(query, dtype=np.float32).ravel()
        if query.shape[0] != snapshot.dimension:
            raise ShapeMismatchError(
                f"Query has length {query.shape[0]}, index dimension is {snapshot.dimension}"
            )

        scores = create_vector_index(snapshot, self.backend).scores(query)
        scores = np.clip(scores, -1.0, 1.0)

        candidates = np.flatnonzero(scores >= threshold)
        order = np.argsort(-scores[candidates], kind='stable')[:top_k]

        matches = [
            MatchResult(path=snapshot.paths[i], similarity=float(scores[i]))
            for i in candidates[order]
        ]

        status = SearchStatus.MATCHED if matches else SearchStatus.NO_MATCH
        logger.debug(f"Query against generation {snapshot.generation}: "
                     f"{len(candidates)} above {threshold}, returning {len(matches)}")

        return SearchOutcome(
            status=status,
            matches=matches,
            generation=snapshot.generation,
            index_size=len(snapshot),
        )
