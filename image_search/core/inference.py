"""
ONNX Runtime inference capability for the image encoder
"""
import logging
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from .exceptions import ConfigurationError, InferenceError

logger = logging.getLogger(__name__)


class OnnxInferenceEngine:
    """
    Runs an exported image encoder with onnxruntime

    The session is created lazily on first use so that a missing model surfaces
    as a ConfigurationError at the point it is needed.
    """

    def __init__(self, model_path: Path, providers: Optional[List[str]] = None):
        self.model_path = Path(model_path)
        self.providers = list(providers or ["CPUExecutionProvider"])
        self._session = None
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def load(self):
        """Create the inference session"""
        with self._lock:
            if self._session is not None:
                return self._session

            if not self.model_path.is_file():
                raise ConfigurationError(f"Model not found: {self.model_path}")

            import onnxruntime as ort

            available = ort.get_available_providers()
            providers = [p for p in self.providers if p in available]
            if not providers:
                logger.warning(f"None of {self.providers} available, falling back to CPUExecutionProvider")
                providers = ["CPUExecutionProvider"]

            try:
                self._session = ort.InferenceSession(str(self.model_path), providers=providers)
            except Exception as e:
                raise InferenceError(f"Failed to load model {self.model_path}: {e}") from e

            logger.info(f"Loaded ONNX model: {self.model_path} | providers={self._session.get_providers()}")
            return self._session

    def run(self, tensor: np.ndarray, input_name: str) -> Dict[str, np.ndarray]:
        """
        Run the encoder on one tensor

        Args:
            tensor: Model input
            input_name: Name of the graph input to feed

        Returns:
            Outputs keyed by name, in the order the graph declares them
        """
        session = self.load()
        output_names = [o.name for o in session.get_outputs()]

        try:
            values = session.run(None, {input_name: tensor})
        except Exception as e:
            raise InferenceError(f"Inference failed: {e}") from e

        return OrderedDict(zip(output_names, values))

    def get_model_info(self) -> Dict:
        """Describe the loaded graph"""
        info = {
            'model_path': str(self.model_path),
            'providers': self.providers,
            'loaded': self.is_loaded,
        }
        if self._session is not None:
            info['inputs'] = [{'name': i.name, 'shape': i.shape} for i in self._session.get_inputs()]
            info['outputs'] = [{'name': o.name, 'shape': o.shape} for o in self._session.get_outputs()]
        return info
