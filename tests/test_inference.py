import tempfile
import unittest
from pathlib import Path

from image_search.core.exceptions import ConfigurationError
from image_search.core.inference import OnnxInferenceEngine


class TestOnnxInferenceEngine(unittest.TestCase):
    def test_missing_model_is_configuration_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            engine = OnnxInferenceEngine(Path(tmp) / "model.onnx")

            with self.assertRaises(ConfigurationError):
                engine.load()
            self.assertFalse(engine.is_loaded)

    def test_model_info_before_load(self):
        engine = OnnxInferenceEngine("model.onnx", providers=None)

        info = engine.get_model_info()

        self.assertEqual(info["providers"], ["CPUExecutionProvider"])
        self.assertFalse(info["loaded"])
        self.assertNotIn("inputs", info)


if __name__ == "__main__":
    unittest.main()
