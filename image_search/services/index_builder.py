"""
Index builder: one sweep over the source directory into a fresh index
"""
import logging
import threading
import time
from pathlib import Path
from typing import List, Optional

from ..core.config import AppConfig
from ..core.embedding import EmbeddingExtractor
from ..core.exceptions import (
    ConfigurationError, ImageSearchError, InferenceCancelledError
)
from ..core.preprocessing import ImagePreprocessor
from ..models.schemas import BuildFailure, BuildReport, BuildStatus, ImageRecord
from .index_store import IndexStore

logger = logging.getLogger(__name__)


def is_under(path: Path, folder: Path) -> bool:
    """True when path is folder itself or lies anywhere below it"""
    try:
        path.resolve().relative_to(folder.resolve())
        return True
    except ValueError:
        return False


class IndexBuilder:
    """
    Encodes every supported image directly under the source directory

    Items that fail to decode or encode are logged and left out; the rest of
    the sweep continues and the result always replaces the prior index.
    """

    def __init__(self, config: AppConfig, preprocessor: ImagePreprocessor,
                 extractor: EmbeddingExtractor, store: IndexStore):
        self.paths = config.paths
        self.extensions = {ext.lower() for ext in config.build.supported_extensions}
        self.progress_every = config.build.progress_every
        self.embedding_dim = config.model.embedding_dim
        self.preprocessor = preprocessor
        self.extractor = extractor
        self.store = store

    def find_candidates(self, source_dir: Optional[Path] = None) -> List[Path]:
        """
        List images to index, sorted case-insensitively

        Non-recursive; anything under the model directory or the reserved
        query directory is excluded.
        """
        source = Path(source_dir) if source_dir is not None else self.paths.images_path
        if not source.is_dir():
            return []

        excluded = [self.paths.model_path, source / self.paths.query_dir_name, self.paths.query_path]
        candidates = []
        for entry in source.iterdir():
            if not entry.is_file():
                continue
            if entry.suffix.lower() not in self.extensions:
                continue
            if any(is_under(entry, folder) for folder in excluded):
                continue
            candidates.append(entry)

        return sorted(candidates, key=lambda p: str(p).casefold())

    def build(self, source_dir: Optional[Path] = None,
              cancel_event: Optional[threading.Event] = None) -> BuildReport:
        """
        Rebuild the index from scratch

        Args:
            source_dir: Directory to sweep (defaults to the configured images dir)
            cancel_event: Set to stop the sweep; nothing is written when cancelled

        Returns:
            BuildReport describing what was indexed, dropped or written

        Raises:
            ConfigurationError: model assets are missing
        """
        source = Path(source_dir) if source_dir is not None else self.paths.images_path
        start_time = time.time()
        report = BuildReport(
            status=BuildStatus.WRITTEN,
            source_dir=str(source),
            index_path=str(self.store.index_path),
        )

        with self.store.writer():
            if not source.is_dir():
                logger.warning(f"No image files found in {source} (directory missing)")
                report.status = BuildStatus.SOURCE_MISSING
                return report

            candidates = self.find_candidates(source)
            report.candidates = len(candidates)
            if not candidates:
                logger.warning(f"No image files found in {source}")
                report.status = BuildStatus.NO_CANDIDATES
                return report

            logger.info(f"Found {len(candidates)} images. Encoding with the model...")

            records: List[ImageRecord] = []
            for done, image_path in enumerate(candidates, 1):
                if cancel_event is not None and cancel_event.is_set():
                    return self._cancelled(report, done - 1, start_time)

                try:
                    tensor = self.preprocessor.preprocess(image_path)
                    vector = self.extractor.embed(tensor, cancel_event)
                    records.append(ImageRecord(path=str(image_path), embedding=vector.tolist()))
                except InferenceCancelledError:
                    return self._cancelled(report, done - 1, start_time)
                except ConfigurationError:
                    raise
                except ImageSearchError as e:
                    logger.warning(f"Failed: {image_path} -> {e}")
                    report.failures.append(BuildFailure(
                        path=str(image_path),
                        error_type=type(e).__name__,
                        message=str(e),
                    ))

                if done % self.progress_every == 0:
                    logger.info(f"Encoded {done}/{len(candidates)}...")

            report.generation = self.store.save(records, self.embedding_dim)

        report.indexed = len(records)
        report.duration_seconds = time.time() - start_time
        logger.info(f"Index saved: {self.store.index_path}")
        logger.info(f"Indexed items: {len(records)} ({len(report.failures)} failed)")
        return report

    def _cancelled(self, report: BuildReport, processed: int, start_time: float) -> BuildReport:
        logger.warning(f"Index build cancelled after {processed}/{report.candidates} images; "
                       f"keeping the previous index")
        report.status = BuildStatus.CANCELLED
        report.duration_seconds = time.time() - start_time
        return report
