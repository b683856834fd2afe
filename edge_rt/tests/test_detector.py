"""Tests for the DetectNet Detector.

Uses the TinyDetectNet TorchScript model from conftest on CPU, so the full
build -> cache -> detect path runs without a GPU.
"""

from __future__ import annotations

from unittest.mock import patch

import numpy as np
import pytest

from edge_rt.common.engine_compiler import EngineCompiler
from edge_rt.detectnet import Detection, Detector, DetectorConfig
from edge_rt.exceptions import UnsupportedInputFormatError


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "cache" / "detectnet.engine"


@pytest.fixture
def detector(detectnet_model_path, cache_path, detectnet_geometry):
    return Detector(
        model_path=detectnet_model_path,
        cache_path=cache_path,
        device="cpu",
        **detectnet_geometry,
    )


def zero_input(geometry: dict[str, int]) -> np.ndarray:
    return np.zeros((3, geometry["height"], geometry["width"]), dtype=np.float32)


class TestDetectorConstruction:
    """Tests for Detector.__init__ and engine caching."""

    def test_rejects_non_bgr_channels(self, detectnet_model_path, cache_path, detectnet_geometry):
        with pytest.raises(UnsupportedInputFormatError, match="Only BGR"):
            Detector(
                model_path=detectnet_model_path,
                cache_path=cache_path,
                nb_channels=1,
                device="cpu",
                **detectnet_geometry,
            )

        assert not cache_path.exists()

    def test_bindings_follow_geometry(self, detector, detectnet_geometry):
        inputs = {b.name: b.shape for b in detector.engine.inputs}
        outputs = {b.name: b.shape for b in detector.engine.outputs}

        assert inputs == {"data": (3, 16, 32)}
        assert outputs == {"coverage": (2, 2, 4), "bboxes": (4, 2, 4)}
        assert detector.engine.max_batch_size == 1

    def test_first_construction_writes_cache(self, detector, cache_path):
        assert cache_path.exists()
        assert detector.engine.is_loaded

    def test_second_construction_loads_cache(
        self, detector, detectnet_model_path, cache_path, detectnet_geometry
    ):
        """Test that an existing cache skips compilation entirely."""
        with patch.object(EngineCompiler, "build", side_effect=AssertionError("rebuilt")):
            cached = Detector(
                model_path=detectnet_model_path,
                cache_path=cache_path,
                device="cpu",
                **detectnet_geometry,
            )

        image = zero_input(detectnet_geometry)
        assert cached.detect(image, 0.0) == detector.detect(image, 0.0)

    def test_corrupt_cache_is_rebuilt(self, detectnet_model_path, cache_path, detectnet_geometry):
        cache_path.parent.mkdir(parents=True)
        cache_path.write_bytes(b"not an engine")

        detector = Detector(
            model_path=detectnet_model_path,
            cache_path=cache_path,
            device="cpu",
            **detectnet_geometry,
        )

        assert detector.engine.is_loaded
        assert cache_path.read_bytes().startswith(b"EDGERT01")

    def test_with_weights_file(
        self, detectnet_model_path, detectnet_weights_path, cache_path, detectnet_geometry
    ):
        detector = Detector(
            model_path=detectnet_model_path,
            weights_path=detectnet_weights_path,
            cache_path=cache_path,
            device="cpu",
            **detectnet_geometry,
        )

        assert detector.engine.is_loaded

    def test_suppressor_calibrated_to_model(self, detector, detectnet_geometry):
        """Test that the image slot is only filled, and scales computed, on detect()."""
        suppressor = detector.suppressor
        assert suppressor.input_size == (32, 16)
        assert suppressor.grid_size == (4, 2)
        assert suppressor.is_calibrated is False
        assert suppressor.cell_width == 0

        detector.detect(zero_input(detectnet_geometry), 0.5)

        assert suppressor.is_calibrated is True
        assert suppressor.image_size == (32, 16)
        assert (suppressor.cell_width, suppressor.cell_height) == (8, 8)
        assert (suppressor.image_scale_x, suppressor.image_scale_y) == (1, 1)

    def test_from_config(self, detectnet_model_path, cache_path, detectnet_geometry):
        config = DetectorConfig(
            model_path=detectnet_model_path,
            cache_path=cache_path,
            **detectnet_geometry,
        )

        detector = Detector.from_config(config, device="cpu")

        assert detector.width == 32
        assert detector.nb_classes == 2
        assert cache_path.exists()


class TestDetect:
    """Tests for Detector.detect()."""

    def test_threshold_one_returns_nothing(self, detector, detectnet_geometry):
        assert detector.detect(zero_input(detectnet_geometry), 1.0) == []

    def test_threshold_zero_returns_detections(self, detector, detectnet_geometry):
        detections = detector.detect(zero_input(detectnet_geometry), 0.0)

        assert len(detections) > 0
        assert all(isinstance(d, Detection) for d in detections)
        assert {d.class_id for d in detections} <= {0, 1}
        assert len(detections) <= 4 * 2 * 2

    def test_image_size_sets_scale(self, detector, detectnet_geometry):
        image = zero_input(detectnet_geometry)

        detector.detect(image, 0.5, image_size=(16, 8))
        assert detector.suppressor.image_scale_x == 2
        assert detector.suppressor.image_scale_y == 2

        detector.detect(image, 0.5)
        assert detector.suppressor.image_scale_x == 1
        assert detector.suppressor.image_scale_y == 1

    @pytest.mark.parametrize("threshold", [-0.01, 1.01])
    def test_invalid_threshold(self, detector, detectnet_geometry, threshold):
        with pytest.raises(ValueError, match=r"\[0, 1\]"):
            detector.detect(zero_input(detectnet_geometry), threshold)

    def test_repeated_calls_are_deterministic(self, detector, detectnet_geometry):
        rng = np.random.default_rng(3)
        image = rng.random((3, 16, 32), dtype=np.float32)

        assert detector.detect(image, 0.3) == detector.detect(image, 0.3)


class TestDetectImage:
    """Tests for Detector.detect_image()."""

    def test_matches_detect_on_preprocessed_input(self, detector):
        rng = np.random.default_rng(5)
        image_hwc = rng.integers(0, 256, size=(16, 32, 3), dtype=np.uint8)
        expected_input = image_hwc.transpose(2, 0, 1).astype(np.float32)

        assert detector.detect_image(image_hwc, 0.4) == detector.detect(expected_input, 0.4)

    def test_resizes_other_image_sizes(self, detector):
        image_hwc = np.full((8, 16, 3), 128, dtype=np.uint8)

        detections = detector.detect_image(image_hwc, 0.0, image_size=(16, 8))

        assert len(detections) > 0
