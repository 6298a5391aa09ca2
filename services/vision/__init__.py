"""Vision capability, detection normalization and frame analysis."""

from services.vision.analyzer import FrameAnalyzer
from services.vision.annotator import GeminiVisionAnnotator, VisionCapability
from services.vision.normalizer import DetectionNormalizer

__all__ = ["DetectionNormalizer", "FrameAnalyzer", "GeminiVisionAnnotator", "VisionCapability"]
