"""
Error taxonomy for indexing and search
"""


class ImageSearchError(Exception):
    """Base class for all image search errors"""


class ConfigurationError(ImageSearchError):
    """Required model assets or settings are missing or invalid"""


class DecodeError(ImageSearchError):
    """Image bytes could not be read or decoded"""


class InferenceError(ImageSearchError):
    """Inference engine unavailable or failed"""


class InferenceTimeoutError(InferenceError):
    """Inference call exceeded its deadline"""


class InferenceCancelledError(InferenceError):
    """Inference was cancelled before it ran"""


class ShapeMismatchError(ImageSearchError):
    """Tensor or embedding dimensions do not match the expected size"""
