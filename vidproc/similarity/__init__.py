# perceptual media comparison
from .config import SimilarityConfig
from .engine import SimilarityEngine

__all__ = ['SimilarityConfig', 'SimilarityEngine']
