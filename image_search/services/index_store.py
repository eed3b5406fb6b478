"""
Persistence of the embedding index as a JSON document

Writes go to a temporary file that is atomically swapped into place, so a
reader always sees either the previous or the new complete index.
"""
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import numpy as np
from pydantic import ValidationError

from ..core.exceptions import ShapeMismatchError
from ..models.schemas import ImageRecord, IndexDocument, IndexStats

logger = logging.getLogger(__name__)


class IndexSnapshot:
    """
    Immutable, internally consistent view of one published index
    """

    def __init__(self, paths: Tuple[str, ...], matrix: np.ndarray,
                 generation: int = 0, created_at: Optional[str] = None):
        if matrix.ndim != 2 or matrix.shape[0] != len(paths):
            raise ShapeMismatchError(
                f"Matrix shape {matrix.shape} does not match {len(paths)} paths"
            )
        matrix = np.ascontiguousarray(matrix, dtype=np.float32)
        matrix.setflags(write=False)
        self._paths = tuple(paths)
        self._matrix = matrix
        self.generation = generation
        self.created_at = created_at

    @classmethod
    def from_document(cls, document: IndexDocument) -> 'IndexSnapshot':
        """Build a snapshot, enforcing one shared dimension and unique paths"""
        paths: List[str] = []
        vectors: List[List[float]] = []
        seen = set()
        dimension = document.dimension

        for item in document.items:
            if item.path in seen:
                logger.warning(f"Duplicate index entry ignored: {item.path}")
                continue
            if dimension is None:
                dimension = len(item.embedding)
            if len(item.embedding) != dimension:
                raise ShapeMismatchError(
                    f"Embedding for {item.path} has length {len(item.embedding)}, expected {dimension}"
                )
            seen.add(item.path)
            paths.append(item.path)
            vectors.append(item.embedding)

        if vectors:
            matrix = np.asarray(vectors, dtype=np.float32)
        else:
            matrix = np.zeros((0, dimension or 0), dtype=np.float32)
        return cls(tuple(paths), matrix, document.generation, document.created_at)

    @property
    def paths(self) -> Tuple[str, ...]:
        return self._paths

    @property
    def matrix(self) -> np.ndarray:
        return self._matrix

    @property
    def dimension(self) -> int:
        return int(self._matrix.shape[1])

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, path: str) -> bool:
        return path in self._paths

    def records(self) -> Iterator[ImageRecord]:
        for path, vector in zip(self._paths, self._matrix):
            yield ImageRecord(path=path, embedding=vector.tolist())

    def get(self, path: str) -> Optional[np.ndarray]:
        try:
            return self._matrix[self._paths.index(path)]
        except ValueError:
            return None


class IndexStore:
    """
    Loads and saves the full set of image records

    A missing or unreadable file is reported as "no index" (None). There is no
    append: every save replaces the whole document.
    """

    def __init__(self, index_path: Path):
        self.index_path = Path(index_path)
        self._write_lock = threading.RLock()

    def exists(self) -> bool:
        return self.index_path.is_file()

    @contextmanager
    def writer(self):
        """Hold the single-writer lock for a whole build"""
        with self._write_lock:
            yield self

    def load(self) -> Optional[IndexSnapshot]:
        """Read the persisted index; None when there is no usable file"""
        document = self._read_document()
        if document is None:
            return None

        try:
            snapshot = IndexSnapshot.from_document(document)
        except ShapeMismatchError as e:
            logger.error(f"Index {self.index_path} is inconsistent: {e}")
            return None

        logger.debug(f"Loaded index generation {snapshot.generation} with {len(snapshot)} images")
        return snapshot

    def save(self, records: List[ImageRecord], dimension: Optional[int] = None) -> int:
        """
        Persist records, replacing any prior index

        Args:
            records: Records in enumeration order
            dimension: Expected embedding length; inferred from the first record if omitted

        Returns:
            Generation number of the published document
        """
        if dimension is None and records:
            dimension = len(records[0].embedding)
        for record in records:
            if len(record.embedding) != dimension:
                raise ShapeMismatchError(
                    f"Embedding for {record.path} has length {len(record.embedding)}, expected {dimension}"
                )

        with self._write_lock:
            previous = self._read_document()
            generation = (previous.generation + 1) if previous is not None else 1

            document = IndexDocument(
                generation=generation,
                dimension=dimension,
                created_at=datetime.now().isoformat(),
                items=records,
            )
            self._write_atomic(document)

        logger.info(f"Index saved: {self.index_path} (generation {generation}, {len(records)} images)")
        return generation

    def stats(self) -> IndexStats:
        document = self._read_document()
        if document is None:
            return IndexStats(exists=False, index_path=str(self.index_path))

        return IndexStats(
            exists=True,
            index_path=str(self.index_path),
            generation=document.generation,
            total_images=len(document.items),
            dimension=document.dimension,
            created_at=document.created_at,
            index_size_mb=self.index_path.stat().st_size / (1024 * 1024),
        )

    def _read_document(self) -> Optional[IndexDocument]:
        if not self.index_path.is_file():
            return None

        try:
            with open(self.index_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return IndexDocument.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Failed to load index {self.index_path}: {e}")
            return None

    def _write_atomic(self, document: IndexDocument):
        self.index_path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.index_path.name}.", suffix=".tmp", dir=str(self.index_path.parent)
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(document.model_dump(), f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.index_path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
