"""
Deterministic image-to-tensor preprocessing for the vision encoder
"""
import io
from pathlib import Path
from typing import BinaryIO, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from .config import PreprocessingConfig
from .exceptions import DecodeError

ImageSource = Union[bytes, bytearray, memoryview, BinaryIO, str, Path, Image.Image, np.ndarray]


class ImagePreprocessor:
    """
    Turns raw image bytes into a normalized [1, 3, T, T] float32 tensor

    Pipeline: decode to RGB -> resize so the shorter side equals T -> center-crop
    T x T -> scale to [0, 1] -> standardize per channel -> channel-major layout.
    Identical input bytes always produce a bit-identical tensor.
    """

    def __init__(self, config: PreprocessingConfig):
        self.target_size = int(config.target_size)
        self.mean = np.asarray(config.mean, dtype=np.float32).reshape(1, 1, 3)
        self.std = np.asarray(config.std, dtype=np.float32).reshape(1, 1, 3)

    def preprocess(self, source: ImageSource) -> np.ndarray:
        """
        Run the full pipeline

        Args:
            source: Encoded bytes, a binary stream, a file path, a PIL image
                or an RGB uint8 pixel grid (H, W, 3)

        Returns:
            Tensor of shape (1, 3, T, T), dtype float32
        """
        pixels = self.decode(source)
        square = self.resize_and_center_crop(pixels)
        return self.to_tensor(square)

    def decode(self, source: ImageSource) -> np.ndarray:
        """Decode any supported source to an RGB uint8 pixel grid"""
        if isinstance(source, np.ndarray):
            pixels = self._as_rgb_array(source)
        elif isinstance(source, Image.Image):
            pixels = np.array(source.convert('RGB'))
        else:
            pixels = np.array(self._open(source))

        height, width = pixels.shape[:2]
        if width == 0 or height == 0:
            raise DecodeError("Image has zero width or height")
        return pixels

    def resize_and_center_crop(self, pixels: np.ndarray) -> np.ndarray:
        """Scale the shorter side to T (aspect preserved), then crop the centre T x T"""
        height, width = pixels.shape[:2]
        if width == 0 or height == 0:
            raise DecodeError("Image has zero width or height")

        t = self.target_size
        scale = max(t / width, t / height)
        # round() is half-to-even
        new_w = max(t, int(round(width * scale)))
        new_h = max(t, int(round(height * scale)))

        if (new_w, new_h) != (width, height):
            try:
                pixels = cv2.resize(pixels, (new_w, new_h), interpolation=cv2.INTER_CUBIC)
            except cv2.error as e:
                raise DecodeError(f"Cannot resize {width}x{height} image: {e}") from e

        x = (new_w - t) // 2
        y = (new_h - t) // 2
        return pixels[y:y + t, x:x + t]

    def to_tensor(self, square: np.ndarray) -> np.ndarray:
        """Normalize a T x T RGB grid into an NCHW float32 tensor"""
        t = self.target_size
        if square.shape[:2] != (t, t):
            raise DecodeError(f"Expected a {t}x{t} image, got {square.shape[1]}x{square.shape[0]}")

        values = square.astype(np.float32) / np.float32(255.0)
        values = (values - self.mean) / self.std
        tensor = values.transpose(2, 0, 1)[np.newaxis, ...]
        return np.ascontiguousarray(tensor, dtype=np.float32)

    def _open(self, source) -> Image.Image:
        try:
            if isinstance(source, (str, Path)):
                with open(source, 'rb') as f:
                    data = f.read()
            elif isinstance(source, (bytes, bytearray, memoryview)):
                data = bytes(source)
            else:
                data = source.read()
        except OSError as e:
            raise DecodeError(f"Cannot read image: {e}") from e

        if not data:
            raise DecodeError("Image data is empty")

        try:
            with Image.open(io.BytesIO(data)) as image:
                return image.convert('RGB')
        except (UnidentifiedImageError, Image.DecompressionBombError,
                OSError, ValueError, SyntaxError) as e:
            raise DecodeError(f"Cannot decode image: {e}") from e

    @staticmethod
    def _as_rgb_array(array: np.ndarray) -> np.ndarray:
        if array.dtype != np.uint8:
            raise DecodeError(f"Pixel grid must be uint8, got {array.dtype}")
        if array.size == 0:
            raise DecodeError("Image has zero width or height")
        if array.ndim == 2:
            return cv2.cvtColor(array, cv2.COLOR_GRAY2RGB)
        if array.ndim == 3 and array.shape[2] == 3:
            return np.ascontiguousarray(array)
        if array.ndim == 3 and array.shape[2] == 4:
            return cv2.cvtColor(array, cv2.COLOR_RGBA2RGB)
        raise DecodeError(f"Unsupported pixel grid shape: {array.shape}")
