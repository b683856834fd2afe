"""DetectNet runtime configuration.

Environment Variables:
- DETECTNET_MODEL_PATH: Model description file (TorchScript archive or ONNX)
- DETECTNET_WEIGHTS_PATH: Optional weights file
- DETECTNET_CACHE_PATH: Engine cache artifact (default: "models/engine_cache/detectnet.engine")
- DETECTNET_CHANNELS: Input channel depth (default: 3)
- DETECTNET_WIDTH / DETECTNET_HEIGHT: Model input size (default: 640x368)
- DETECTNET_STRIDE: Grid stride in pixels (default: 16)
- DETECTNET_CLASSES: Number of classes (default: 1)
- DETECTNET_THRESHOLD: Coverage threshold in [0, 1] (default: 0.5)
- DETECTNET_MEANS: Comma-separated per-channel means (default: "0,0,0")
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ..common.engine_config import EDGE_RT_CACHE_DIR, ModelFormat, Precision


def _parse_means(raw: str) -> tuple[float, ...]:
    return tuple(float(v) for v in raw.split(",") if v.strip())


@dataclass
class DetectorConfig:
    """Configuration for a DetectNet detector.

    Attributes:
        model_path: Model description file
        weights_path: Optional weights file
        cache_path: Engine cache artifact
        channels: Input channel depth (only 3 is supported)
        width: Model input width
        height: Model input height
        stride: Grid stride in pixels
        nb_classes: Number of coverage classes
        threshold: Coverage threshold in [0, 1]
        means: Per-channel means subtracted during preprocessing
        precision: Engine precision mode
        model_format: Model format loader
        max_workspace_size: Builder workspace in bytes
    """

    model_path: Path
    weights_path: Path | None = None
    cache_path: Path = field(default_factory=lambda: EDGE_RT_CACHE_DIR / "detectnet.engine")
    channels: int = 3
    width: int = 640
    height: int = 368
    stride: int = 16
    nb_classes: int = 1
    threshold: float = 0.5
    means: tuple[float, ...] = (0.0, 0.0, 0.0)
    precision: Precision | str = Precision.FP32
    model_format: ModelFormat | str = ModelFormat.TORCHSCRIPT
    max_workspace_size: int = 1 << 30

    def __post_init__(self) -> None:
        self.model_path = Path(self.model_path)
        self.weights_path = Path(self.weights_path) if self.weights_path else None
        self.cache_path = Path(self.cache_path)
        self.precision = Precision(self.precision)
        self.model_format = ModelFormat(self.model_format)
        self.means = tuple(float(m) for m in self.means)

        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be in [0, 1], got {self.threshold}")
        if self.stride <= 0:
            raise ValueError(f"stride must be positive, got {self.stride}")
        if self.width < self.stride or self.height < self.stride:
            raise ValueError(
                f"Input size {self.width}x{self.height} is smaller than stride {self.stride}"
            )
        if self.nb_classes < 1:
            raise ValueError(f"nb_classes must be >= 1, got {self.nb_classes}")

    @property
    def grid_width(self) -> int:
        return self.width // self.stride

    @property
    def grid_height(self) -> int:
        return self.height // self.stride

    @classmethod
    def from_env(cls) -> DetectorConfig:
        """Create DetectorConfig from DETECTNET_* environment variables."""
        channels = int(os.environ.get("DETECTNET_CHANNELS", "3"))
        weights = os.environ.get("DETECTNET_WEIGHTS_PATH", "")
        return cls(
            model_path=Path(os.environ.get("DETECTNET_MODEL_PATH", "models/detectnet.pt")),
            weights_path=Path(weights) if weights else None,
            cache_path=Path(
                os.environ.get(
                    "DETECTNET_CACHE_PATH", str(EDGE_RT_CACHE_DIR / "detectnet.engine")
                )
            ),
            channels=channels,
            width=int(os.environ.get("DETECTNET_WIDTH", "640")),
            height=int(os.environ.get("DETECTNET_HEIGHT", "368")),
            stride=int(os.environ.get("DETECTNET_STRIDE", "16")),
            nb_classes=int(os.environ.get("DETECTNET_CLASSES", "1")),
            threshold=float(os.environ.get("DETECTNET_THRESHOLD", "0.5")),
            means=_parse_means(os.environ.get("DETECTNET_MEANS", ",".join(["0"] * channels))),
            precision=os.environ.get("EDGE_RT_PRECISION", "fp32"),
            model_format=os.environ.get("EDGE_RT_MODEL_FORMAT", "torchscript"),
        )
