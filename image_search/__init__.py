"""
Reverse image search over CLIP-style image embeddings
"""

__version__ = "1.0.0"
