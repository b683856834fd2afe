"""Clustered suppression of DetectNet coverage/bbox grids.

DetectNet-style models emit, for each grid cell, a per-class coverage score
and a (left, top, right, bottom) rectangle relative to the cell's top-left
pixel. ClusteredSuppressor turns that dense grid into a sparse list of
detections by thresholding coverage and merging overlapping candidate
rectangles of the same class.

Merge policy is first-match: a candidate is merged into the first existing
rectangle of its class it overlaps, in class-major then row-major cell
order. The result is deterministic but chains of three or more rectangles
that only overlap pairwise can end up as more than one detection.

Scale factors and cell sizes use integer floor division, so an image larger
than the model input yields a scale of zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Detection:
    """A classified image region.

    Attributes:
        class_id: Index of the detected class
        confidence: Coverage of the first cell that seeded the region
        x: Left edge in image pixels
        y: Top edge in image pixels
        w: Width in image pixels
        h: Height in image pixels
    """

    class_id: int
    confidence: float
    x: int
    y: int
    w: int
    h: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "class_id": self.class_id,
            "confidence": self.confidence,
            "bbox": [self.x, self.y, self.w, self.h],
        }


@dataclass
class Rect:
    """Candidate rectangle in image space with its seed coverage and class."""

    x1: float
    y1: float
    x2: float
    y2: float
    coverage: float
    class_id: int


def rects_overlap(r1: Rect, r2: Rect) -> bool:
    """True unless the rectangles are disjoint on either axis (edges touching overlap)."""
    return not (r2.x1 > r1.x2 or r2.x2 < r1.x1 or r2.y1 > r1.y2 or r2.y2 < r1.y1)


def merge_rect(rects: list[Rect], rect: Rect) -> None:
    """Merge a candidate into the first overlapping rectangle, else append it.

    The matched rectangle grows to the union of both; its coverage is kept.
    """
    for existing in rects:
        if rects_overlap(existing, rect):
            existing.x1 = min(existing.x1, rect.x1)
            existing.y1 = min(existing.y1, rect.y1)
            existing.x2 = max(existing.x2, rect.x2)
            existing.y2 = max(existing.y2, rect.y2)
            return
    rects.append(rect)


class ClusteredSuppressor:
    """Converts coverage/bbox grids into merged, image-scaled detections.

    Three calibration slots (image size, model-input size, grid size) are
    set independently. Scale factors are recomputed whenever a slot changes
    once all three are present.
    """

    def __init__(self) -> None:
        self.image_size: tuple[int, int] | None = None
        self.input_size: tuple[int, int] | None = None
        self.grid_size: tuple[int, int] | None = None

        self.image_scale_x = 0
        self.image_scale_y = 0
        self.cell_width = 0
        self.cell_height = 0

    @staticmethod
    def _check_size(kind: str, width: int, height: int) -> tuple[int, int]:
        if int(width) <= 0 or int(height) <= 0:
            raise ValueError(f"{kind} size must be positive, got {width}x{height}")
        return int(width), int(height)

    def setup_image(self, width: int, height: int) -> None:
        """Set the size detections are scaled to."""
        self.image_size = self._check_size("Image", width, height)
        self._maybe_calculate_scale()

    def setup_input(self, width: int, height: int) -> None:
        """Set the model input size."""
        self.input_size = self._check_size("Input", width, height)
        self._maybe_calculate_scale()

    def setup_grid(self, width: int, height: int) -> None:
        """Set the number of grid cells across and down."""
        self.grid_size = self._check_size("Grid", width, height)
        self._maybe_calculate_scale()

    @property
    def is_calibrated(self) -> bool:
        return (
            self.image_size is not None
            and self.input_size is not None
            and self.grid_size is not None
        )

    def _maybe_calculate_scale(self) -> None:
        if self.image_size is None or self.input_size is None or self.grid_size is None:
            return

        input_w, input_h = self.input_size
        image_w, image_h = self.image_size
        grid_w, grid_h = self.grid_size

        self.image_scale_x = input_w // image_w
        self.image_scale_y = input_h // image_h
        self.cell_width = input_w // grid_w
        self.cell_height = input_h // grid_h

        logger.debug(
            f"Suppressor scale=({self.image_scale_x}, {self.image_scale_y}) "
            f"cell=({self.cell_width}, {self.cell_height})"
        )

    def execute(
        self,
        coverage: NDArray[Any],
        bboxes: NDArray[Any],
        nb_classes: int,
        threshold: float,
    ) -> list[Detection]:
        """Cluster grid predictions into detections.

        Args:
            coverage: Coverage map, shape (nb_classes, grid_h, grid_w) or flat
            bboxes: Bbox map, shape (4, grid_h, grid_w) or flat
            nb_classes: Number of classes in the coverage map
            threshold: Minimum coverage, exclusive, in [0, 1]

        Returns:
            Detections in class-major, then first-seen order

        Raises:
            RuntimeError: If the suppressor is not fully calibrated
            ValueError: If threshold or array sizes are invalid
        """
        if self.image_size is None or self.input_size is None or self.grid_size is None:
            raise RuntimeError(
                "Suppressor is not calibrated: image, input and grid sizes must all be set"
            )
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Coverage threshold must be in [0, 1], got {threshold}")

        grid_w, grid_h = self.grid_size
        grid_cells = grid_w * grid_h

        coverage = np.asarray(coverage, dtype=np.float32)
        bboxes = np.asarray(bboxes, dtype=np.float32)
        if coverage.size != nb_classes * grid_cells:
            raise ValueError(
                f"Coverage has {coverage.size} values, expected {nb_classes}x{grid_h}x{grid_w}"
            )
        if bboxes.size != 4 * grid_cells:
            raise ValueError(f"Bboxes have {bboxes.size} values, expected 4x{grid_h}x{grid_w}")
        coverage = coverage.reshape(nb_classes, grid_h, grid_w)
        bboxes = bboxes.reshape(4, grid_h, grid_w)

        scale = np.array(
            [self.image_scale_x, self.image_scale_y, self.image_scale_x, self.image_scale_y],
            dtype=np.float32,
        )

        rects: list[list[Rect]] = [[] for _ in range(nb_classes)]
        for c in range(nb_classes):
            # argwhere yields (y, x) in row-major order
            for y, x in np.argwhere(coverage[c] > threshold):
                origin = np.array(
                    [x * self.cell_width, y * self.cell_height] * 2, dtype=np.float32
                )
                x1, y1, x2, y2 = (bboxes[:, y, x] + origin) * scale
                merge_rect(
                    rects[c],
                    Rect(
                        x1=float(x1),
                        y1=float(y1),
                        x2=float(x2),
                        y2=float(y2),
                        coverage=float(coverage[c, y, x]),
                        class_id=c,
                    ),
                )

        max_boxes = grid_cells * nb_classes
        detections: list[Detection] = []
        for class_rects in rects:
            for r in class_rects:
                if len(detections) >= max_boxes:
                    break
                x1, y1, x2, y2 = int(r.x1), int(r.y1), int(r.x2), int(r.y2)
                detections.append(
                    Detection(
                        class_id=r.class_id,
                        confidence=r.coverage,
                        x=x1,
                        y=y1,
                        w=x2 - x1,
                        h=y2 - y1,
                    )
                )

        return detections
