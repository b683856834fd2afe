"""Pytest configuration and shared fixtures for edge_rt tests.

Adds the project root to sys.path so `edge_rt` imports work without an
editable install, and provides tiny TorchScript models that exercise the
full engine lifecycle on CPU.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import torch
from torch import nn

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from edge_rt.common.bindings import BindingRole, NetworkBinding  # noqa: E402

# Small DetectNet geometry: 32x16 input, stride 8 -> 4x2 grid
TEST_WIDTH = 32
TEST_HEIGHT = 16
TEST_STRIDE = 8
TEST_CLASSES = 2


class TinyDetectNet(nn.Module):
    """Minimal DetectNet: pooled features -> coverage and bbox heads."""

    def __init__(self, stride: int, nb_classes: int) -> None:
        super().__init__()
        self.pool = nn.AvgPool2d(stride)
        self.coverage_head = nn.Conv2d(3, nb_classes, kernel_size=1)
        self.bbox_head = nn.Conv2d(3, 4, kernel_size=1)

    def forward(self, x: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor]:
        features = self.pool(x)
        return torch.sigmoid(self.coverage_head(features)), self.bbox_head(features)


class TinyClassifier(nn.Module):
    """Minimal classifier: (3, 8, 8) image -> 10 class probabilities."""

    def __init__(self) -> None:
        super().__init__()
        self.fc = nn.Linear(3 * 8 * 8, 10)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.softmax(self.fc(x.flatten(1)), dim=1)


@pytest.fixture
def device() -> str:
    return "cpu"


@pytest.fixture
def detectnet_geometry() -> dict[str, int]:
    return {
        "width": TEST_WIDTH,
        "height": TEST_HEIGHT,
        "stride": TEST_STRIDE,
        "nb_classes": TEST_CLASSES,
    }


@pytest.fixture
def detectnet_module() -> TinyDetectNet:
    torch.manual_seed(0)
    return TinyDetectNet(TEST_STRIDE, TEST_CLASSES).eval()


@pytest.fixture
def detectnet_model_path(tmp_path: Path, detectnet_module: TinyDetectNet) -> Path:
    """TorchScript archive of TinyDetectNet."""
    path = tmp_path / "detectnet.pt"
    torch.jit.script(detectnet_module).save(str(path))
    return path


@pytest.fixture
def reinitialized_detectnet_model_path(tmp_path: Path) -> Path:
    """TorchScript archive of TinyDetectNet with different initial parameters."""
    torch.manual_seed(99)
    path = tmp_path / "detectnet_init.pt"
    torch.jit.script(TinyDetectNet(TEST_STRIDE, TEST_CLASSES).eval()).save(str(path))
    return path


@pytest.fixture
def detectnet_weights_path(tmp_path: Path, detectnet_module: TinyDetectNet) -> Path:
    path = tmp_path / "detectnet.pth"
    torch.save(detectnet_module.state_dict(), path)
    return path


@pytest.fixture
def classifier_model_path(tmp_path: Path) -> Path:
    torch.manual_seed(1)
    path = tmp_path / "classifier.pt"
    torch.jit.script(TinyClassifier().eval()).save(str(path))
    return path


@pytest.fixture
def detectnet_bindings() -> tuple[tuple[NetworkBinding, ...], tuple[NetworkBinding, ...]]:
    """(inputs, outputs) matching TinyDetectNet."""
    grid_w = TEST_WIDTH // TEST_STRIDE
    grid_h = TEST_HEIGHT // TEST_STRIDE
    inputs = (NetworkBinding("data", (3, TEST_HEIGHT, TEST_WIDTH), 4, BindingRole.INPUT),)
    outputs = (
        NetworkBinding("coverage", (TEST_CLASSES, grid_h, grid_w), 4, BindingRole.OUTPUT),
        NetworkBinding("bboxes", (4, grid_h, grid_w), 4, BindingRole.OUTPUT),
    )
    return inputs, outputs
