"""DetectNet Detector.

Runs a DetectNet-style network (one BGR input, a coverage output and a bbox
output on a stride-downsampled grid) and clusters its grid into detections.

Usage:
    from edge_rt.detectnet import Detector

    detector = Detector(
        model_path="detectnet.pt",
        cache_path="detectnet.engine",
        width=640,
        height=368,
        stride=16,
        nb_classes=1,
    )
    detections = detector.detect(network_input_chw, threshold=0.5)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .. import metrics
from ..common.engine_config import EngineConfig, ModelFormat, Precision
from ..common.inference_engine import InferenceEngine
from ..exceptions import UnsupportedInputFormatError
from .preprocessing import ImagePreprocessor
from .suppressor import ClusteredSuppressor, Detection

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from .config import DetectorConfig

logger = logging.getLogger(__name__)

CHANNELS_BGR = 3
FLOAT_SIZE = 4


class Detector:
    """One InferenceEngine plus one ClusteredSuppressor.

    Attributes:
        engine: Inference engine with the fixed data/coverage/bboxes layout
        suppressor: Clusters the coverage grid into detections
        width: Model input width
        height: Model input height
        nb_classes: Number of coverage classes
        means: Per-channel means used by detect_image()
    """

    INPUT_NAME = "data"
    OUTPUT_COVERAGE_NAME = "coverage"
    OUTPUT_BBOXES_NAME = "bboxes"

    def __init__(
        self,
        model_path: Path | str,
        weights_path: Path | str | None = None,
        cache_path: Path | str = "detectnet.engine",
        nb_channels: int = CHANNELS_BGR,
        width: int = 640,
        height: int = 368,
        stride: int = 16,
        nb_classes: int = 1,
        precision: Precision | str = Precision.FP32,
        max_workspace_size: int = 1 << 30,
        model_format: ModelFormat | str = ModelFormat.TORCHSCRIPT,
        device: str | None = None,
        means: tuple[float, ...] = (0.0, 0.0, 0.0),
    ):
        """Build or load the engine and calibrate the suppressor.

        Raises:
            UnsupportedInputFormatError: If nb_channels is not 3
        """
        if nb_channels != CHANNELS_BGR:
            raise UnsupportedInputFormatError(
                "Only BGR DetectNets are supported currently",
                details={"nb_channels": nb_channels},
            )

        self.width = width
        self.height = height
        self.depth = nb_channels
        self.stride = stride
        self.nb_classes = nb_classes
        self.means = tuple(means)

        grid_w = width // stride
        grid_h = height // stride

        self.engine = InferenceEngine(
            model_name="detectnet",
            device=device,
            config=EngineConfig(
                model_format=model_format,
                precision=precision,
                max_workspace_size=max_workspace_size,
            ),
        )
        self.engine.add_input(self.INPUT_NAME, (nb_channels, height, width), FLOAT_SIZE)
        self.engine.add_output(self.OUTPUT_COVERAGE_NAME, (nb_classes, grid_h, grid_w), FLOAT_SIZE)
        self.engine.add_output(self.OUTPUT_BBOXES_NAME, (4, grid_h, grid_w), FLOAT_SIZE)

        self.engine.load_or_build(
            cache_path=cache_path,
            model_path=model_path,
            weights_path=weights_path,
            max_batch_size=1,
            precision=precision,
            max_workspace_size=max_workspace_size,
        )

        self.suppressor = ClusteredSuppressor()
        self.suppressor.setup_input(width, height)
        self.suppressor.setup_grid(grid_w, grid_h)

        self._preprocessor: ImagePreprocessor | None = None

        logger.info(
            f"DetectNet ready: input {width}x{height}, grid {grid_w}x{grid_h}, "
            f"{nb_classes} classes"
        )

    @classmethod
    def from_config(cls, config: DetectorConfig, device: str | None = None) -> Detector:
        return cls(
            model_path=config.model_path,
            weights_path=config.weights_path,
            cache_path=config.cache_path,
            nb_channels=config.channels,
            width=config.width,
            height=config.height,
            stride=config.stride,
            nb_classes=config.nb_classes,
            precision=config.precision,
            max_workspace_size=config.max_workspace_size,
            model_format=config.model_format,
            device=device,
            means=config.means,
        )

    def detect(
        self,
        image: NDArray[Any],
        threshold: float,
        image_size: tuple[int, int] | None = None,
    ) -> list[Detection]:
        """Detect objects in one preprocessed network input.

        Args:
            image: Float array shaped (3, height, width)
            threshold: Coverage threshold in [0, 1]
            image_size: (width, height) detections are scaled to; defaults
                to the model input size

        Returns:
            Detections for this image
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Coverage threshold must be in [0, 1], got {threshold}")

        coverage, bboxes = self.engine.predict([[image]])[0]

        target_w, target_h = image_size or (self.width, self.height)
        self.suppressor.setup_image(target_w, target_h)

        detections = self.suppressor.execute(coverage, bboxes, self.nb_classes, threshold)
        metrics.record_detections([d.class_id for d in detections])
        return detections

    def detect_image(
        self,
        image_hwc: NDArray[np.uint8],
        threshold: float,
        image_size: tuple[int, int] | None = None,
    ) -> list[Detection]:
        """Preprocess an 8-bit BGR HWC image, then detect."""
        if self._preprocessor is None:
            self._preprocessor = ImagePreprocessor(device=self.engine.device)
        network_input = self._preprocessor.to_network_input(
            image_hwc, self.width, self.height, self.means
        )
        return self.detect(network_input, threshold, image_size=image_size)
