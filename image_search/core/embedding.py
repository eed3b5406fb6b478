"""
Embedding extraction and L2 normalization
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Mapping, Optional, Protocol

import numpy as np

from .config import ModelConfig
from .exceptions import (
    ImageSearchError, InferenceCancelledError, InferenceError,
    InferenceTimeoutError, ShapeMismatchError
)

logger = logging.getLogger(__name__)


class InferenceEngine(Protocol):
    """Anything that maps an input tensor to named outputs"""

    def run(self, tensor: np.ndarray, input_name: str) -> Mapping[str, np.ndarray]:
        ...


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """
    Scale a vector to unit length

    A zero vector is returned unchanged; it scores 0 against everything.
    """
    vector = np.asarray(vector, dtype=np.float32).ravel()
    norm = float(np.sqrt(np.dot(vector.astype(np.float64), vector.astype(np.float64))))
    if norm <= 0.0:
        return vector.copy()
    return (vector / np.float32(norm)).astype(np.float32)


class EmbeddingExtractor:
    """
    Feeds a preprocessed tensor to the inference engine and reads back one vector

    Each call runs under an optional deadline and checks a cancellation token
    before invoking the engine.
    """

    def __init__(self, engine: InferenceEngine, config: ModelConfig):
        self.engine = engine
        self.input_name = config.input_name
        self.output_name = config.output_name
        self.embedding_dim = int(config.embedding_dim)
        self.strict_output_name = bool(config.strict_output_name)
        self.timeout = config.inference_timeout_seconds
        self._executor = None
        self._executor_lock = threading.Lock()

    def extract(self, tensor: np.ndarray,
                cancel_event: Optional[threading.Event] = None) -> np.ndarray:
        """
        Return the raw (unnormalized) embedding for a tensor

        Raises:
            InferenceCancelledError: cancel_event was set before the call
            InferenceTimeoutError: engine did not answer within the deadline
            InferenceError: engine failed or exposed no usable output
            ShapeMismatchError: output length differs from embedding_dim
        """
        if cancel_event is not None and cancel_event.is_set():
            raise InferenceCancelledError("Inference cancelled")

        outputs = self._run_with_deadline(tensor)
        output = self._select_output(outputs)

        array = np.asarray(output, dtype=np.float32)
        # one image in, so only (D,) or (1, D) is a valid embedding
        if array.shape not in ((self.embedding_dim,), (1, self.embedding_dim)):
            raise ShapeMismatchError(
                f"Expected embedding of shape ({self.embedding_dim},) or (1, {self.embedding_dim}), "
                f"got {array.shape}"
            )
        return array.reshape(-1)

    def embed(self, tensor: np.ndarray,
              cancel_event: Optional[threading.Event] = None) -> np.ndarray:
        """Extract and L2-normalize"""
        return l2_normalize(self.extract(tensor, cancel_event))

    def close(self):
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None

    def _run_with_deadline(self, tensor: np.ndarray) -> Mapping[str, np.ndarray]:
        if self.timeout is None:
            return self._call_engine(tensor)

        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")
            executor = self._executor

        future = executor.submit(self._call_engine, tensor)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            # the stuck worker keeps running; later calls get a fresh one
            with self._executor_lock:
                if self._executor is executor:
                    executor.shutdown(wait=False)
                    self._executor = None
            raise InferenceTimeoutError(f"Inference exceeded {self.timeout:.1f}s deadline")

    def _call_engine(self, tensor: np.ndarray) -> Mapping[str, np.ndarray]:
        try:
            outputs = self.engine.run(tensor, self.input_name)
        except ImageSearchError:
            raise
        except Exception as e:
            raise InferenceError(f"Inference engine failed: {e}") from e

        if not outputs:
            raise InferenceError("Inference engine returned no outputs")
        return outputs

    def _select_output(self, outputs: Mapping[str, np.ndarray]) -> np.ndarray:
        if self.output_name in outputs:
            return outputs[self.output_name]

        names = list(outputs.keys())
        if self.strict_output_name:
            raise InferenceError(f"Output '{self.output_name}' not found among {names}")

        # NOTE: the first output is not guaranteed to be the embedding
        logger.warning(f"Output '{self.output_name}' not found among {names}, using '{names[0]}'")
        return outputs[names[0]]

