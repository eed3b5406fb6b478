"""
Flat inner-product backends used to score a query against a snapshot

Both backends are exhaustive scans; they only differ in the engine that
computes the dot products. Scores come back in snapshot order.
"""
import numpy as np

try:
    import faiss
except ImportError:
    faiss = None

from ..core.exceptions import ConfigurationError
from .index_store import IndexSnapshot


class VectorIndex:
    """Base class for similarity backends"""

    def __init__(self, snapshot: IndexSnapshot):
        self.snapshot = snapshot

    def scores(self, query: np.ndarray) -> np.ndarray:
        """Similarity of the query to every stored vector, in snapshot order"""
        raise NotImplementedError


class NumpyFlatIndex(VectorIndex):
    """Dot products computed in float64 with numpy"""

    def scores(self, query: np.ndarray) -> np.ndarray:
        matrix = self.snapshot.matrix.astype(np.float64)
        return matrix @ np.asarray(query, dtype=np.float64)


class FAISSFlatIndex(VectorIndex):
    """FAISS IndexFlatIP (inner product equals cosine for unit vectors)"""

    def __init__(self, snapshot: IndexSnapshot):
        super().__init__(snapshot)

        if faiss is None:
            raise ImportError("FAISS not installed. Run: pip install faiss-cpu")

        self.index = faiss.IndexFlatIP(snapshot.dimension)
        if len(snapshot):
            self.index.add(np.array(snapshot.matrix, dtype=np.float32))

    def scores(self, query: np.ndarray) -> np.ndarray:
        n = self.index.ntotal
        result = np.zeros(n, dtype=np.float64)
        if n == 0:
            return result

        q = np.asarray(query, dtype=np.float32).reshape(1, -1)
        distances, indices = self.index.search(q, n)
        for score, idx in zip(distances[0], indices[0]):
            if idx != -1:
                result[idx] = float(score)
        return result


def create_vector_index(snapshot: IndexSnapshot, backend: str = "numpy") -> VectorIndex:
    """Factory function to create the configured backend"""
    backend = backend.lower()

    if backend == "numpy":
        return NumpyFlatIndex(snapshot)
    elif backend == "faiss":
        return FAISSFlatIndex(snapshot)
    else:
        raise ConfigurationError(f"Unsupported search backend: {backend}")
