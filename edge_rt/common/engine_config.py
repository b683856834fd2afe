"""Engine build configuration.

Environment Variables:
- EDGE_RT_MODEL_FORMAT: Model format loader to use (default: "torchscript")
  Options: "torchscript", "onnx"
- EDGE_RT_PRECISION: Default precision mode (default: "fp32")
  Options: "fp32", "fp16", "int8"
- EDGE_RT_MAX_WORKSPACE_SIZE: Maximum builder workspace in bytes (default: 1GB)
- EDGE_RT_CACHE_DIR: Directory for engine cache artifacts (default: "models/engine_cache")
- EDGE_RT_VERBOSE: Enable verbose builder logging (default: "false")
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

# Environment variable configuration
EDGE_RT_MODEL_FORMAT = os.environ.get("EDGE_RT_MODEL_FORMAT", "torchscript")
EDGE_RT_PRECISION = os.environ.get("EDGE_RT_PRECISION", "fp32")
EDGE_RT_MAX_WORKSPACE_SIZE = int(
    os.environ.get("EDGE_RT_MAX_WORKSPACE_SIZE", str(1 << 30))
)  # 1GB default
EDGE_RT_CACHE_DIR = Path(os.environ.get("EDGE_RT_CACHE_DIR", "models/engine_cache"))
EDGE_RT_VERBOSE = os.environ.get("EDGE_RT_VERBOSE", "false").lower() == "true"


class Precision(str, Enum):
    """Numeric precision modes for engine compilation.

    - FP32: Standard 32-bit floating point
    - FP16: Reduced half precision
    - INT8: Reduced 8-bit integer precision, requires calibration data
    """

    FP32 = "fp32"
    FP16 = "fp16"
    INT8 = "int8"


class ModelFormat(str, Enum):
    TORCHSCRIPT = "torchscript"
    ONNX = "onnx"


@dataclass
class EngineConfig:
    """Configuration for building and caching engines.

    Attributes:
        model_format: Which model-format loader builds the engine
        precision: Default precision mode
        max_workspace_size: Maximum builder workspace in bytes
        cache_dir: Default directory for cache artifacts
        verbose: Enable verbose builder logging
        calibration_data: Sample batch used for INT8 calibration
    """

    model_format: ModelFormat | str = EDGE_RT_MODEL_FORMAT
    precision: Precision | str = EDGE_RT_PRECISION
    max_workspace_size: int = EDGE_RT_MAX_WORKSPACE_SIZE
    cache_dir: Path = field(default_factory=lambda: EDGE_RT_CACHE_DIR)
    verbose: bool = EDGE_RT_VERBOSE
    calibration_data: NDArray[np.float32] | None = None

    def __post_init__(self) -> None:
        self.model_format = ModelFormat(self.model_format)
        self.precision = Precision(self.precision)
        self.cache_dir = Path(self.cache_dir)
        if self.max_workspace_size <= 0:
            raise ValueError(f"max_workspace_size must be positive, got {self.max_workspace_size}")

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Create EngineConfig from environment variables.

        Reads:
        - EDGE_RT_MODEL_FORMAT
        - EDGE_RT_PRECISION
        - EDGE_RT_MAX_WORKSPACE_SIZE
        - EDGE_RT_CACHE_DIR
        - EDGE_RT_VERBOSE
        """
        return cls(
            model_format=os.environ.get("EDGE_RT_MODEL_FORMAT", EDGE_RT_MODEL_FORMAT),
            precision=os.environ.get("EDGE_RT_PRECISION", EDGE_RT_PRECISION),
            max_workspace_size=int(
                os.environ.get("EDGE_RT_MAX_WORKSPACE_SIZE", str(EDGE_RT_MAX_WORKSPACE_SIZE))
            ),
            cache_dir=Path(os.environ.get("EDGE_RT_CACHE_DIR", str(EDGE_RT_CACHE_DIR))),
            verbose=os.environ.get("EDGE_RT_VERBOSE", str(EDGE_RT_VERBOSE)).lower() == "true",
        )
