"""
Caller-facing reverse image search service

Wires preprocessing, embedding, the index store, the builder and the ranking
into the two operations callers need: rebuild the index and search it.
"""
import logging
import threading
import time
from typing import Optional

import numpy as np

from ..core.config import AppConfig
from ..core.embedding import EmbeddingExtractor, InferenceEngine
from ..core.exceptions import ConfigurationError
from ..core.inference import OnnxInferenceEngine
from ..core.preprocessing import ImagePreprocessor, ImageSource
from ..models.schemas import BuildReport, IndexStats, SearchOutcome, SearchStatus
from .index_builder import IndexBuilder
from .index_store import IndexStore
from .search import NearestNeighborSearch

logger = logging.getLogger(__name__)


class ImageSearchService:
    """
    Reverse image search over a persisted embedding index
    """

    def __init__(self, config: AppConfig, engine: InferenceEngine,
                 check_model_file: bool = True):
        self.config = config
        self.engine = engine
        self.check_model_file = check_model_file
        self.started_at = time.time()

        self.preprocessor = ImagePreprocessor(config.preprocessing)
        self.extractor = EmbeddingExtractor(engine, config.model)
        self.store = IndexStore(config.paths.index_file_path)
        self.builder = IndexBuilder(config, self.preprocessor, self.extractor, self.store)
        self.searcher = NearestNeighborSearch(config.search)

    @classmethod
    def from_config(cls, config: AppConfig,
                    engine: Optional[InferenceEngine] = None) -> 'ImageSearchService':
        """Create the service, using ONNX Runtime unless an engine is supplied"""
        if engine is None:
            engine = OnnxInferenceEngine(config.paths.model_file_path, config.model.providers)
            return cls(config, engine, check_model_file=True)
        return cls(config, engine, check_model_file=False)

    @property
    def model_available(self) -> bool:
        return not self.check_model_file or self.config.paths.model_file_path.is_file()

    def ensure_model(self):
        """Fail fast when the encoder model is not in place"""
        self.config.paths.model_path.mkdir(parents=True, exist_ok=True)
        if not self.model_available:
            raise ConfigurationError(
                f"Model not found: {self.config.paths.model_file_path}. "
                f"Place a CLIP image-encoder ONNX model at that path and rerun."
            )

    def build_index(self, cancel_event: Optional[threading.Event] = None) -> BuildReport:
        """Rebuild the index from the configured images directory"""
        self.ensure_model()
        return self.builder.build(cancel_event=cancel_event)

    def search(self, image: ImageSource, threshold: Optional[float] = None,
               top_k: Optional[int] = None) -> SearchOutcome:
        """
        Find indexed images visually similar to the query image

        Builds the index first when none is persisted and build_if_missing is
        enabled. Decode and inference errors propagate to the caller.

        Args:
            image: Query image (bytes, stream, path, PIL image or pixel grid)
            threshold: Override of the configured similarity cutoff
            top_k: Override of the configured result limit

        Returns:
            SearchOutcome with the ranked matches

        Raises:
            ValueError: threshold or top_k override out of range
        """
        threshold, top_k = self.searcher.resolve_limits(threshold, top_k)
        self.ensure_model()

        if not self.store.exists() and self.config.build.build_if_missing:
            logger.info("No index found. Building index...")
            self.builder.build()

        snapshot = self.store.load()
        if snapshot is None:
            logger.info("No index available")
            return SearchOutcome(status=SearchStatus.NO_INDEX)
        if len(snapshot) == 0:
            logger.info("Index is empty")
            return SearchOutcome(status=SearchStatus.EMPTY_INDEX, generation=snapshot.generation)

        logger.info("Searching most visually similar images...")
        query = self.embed(image)
        outcome = self.searcher.rank(query, snapshot, threshold, top_k)

        if outcome.status == SearchStatus.NO_MATCH:
            logger.info("No match found above the similarity threshold")
        return outcome

    def search_vector(self, query: np.ndarray, threshold: Optional[float] = None,
                      top_k: Optional[int] = None) -> SearchOutcome:
        """Rank the persisted index against an already normalized vector"""
        return self.searcher.rank(query, self.store.load(), threshold, top_k)

    def embed(self, image: ImageSource,
              cancel_event: Optional[threading.Event] = None) -> np.ndarray:
        """Preprocess and encode one image into a unit vector"""
        tensor = self.preprocessor.preprocess(image)
        return self.extractor.embed(tensor, cancel_event)

    def index_stats(self) -> IndexStats:
        return self.store.stats()

    def close(self):
        self.extractor.close()
