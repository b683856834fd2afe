"""DetectNet detection: engine orchestration and clustered suppression."""

from __future__ import annotations

__all__ = [
    "ClusteredSuppressor",
    "Detection",
    "Detector",
    "DetectorConfig",
    "ImagePreprocessor",
]
from .config import DetectorConfig
from .detector import Detector
from .preprocessing import ImagePreprocessor
from .suppressor import ClusteredSuppressor, Detection
