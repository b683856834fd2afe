"""Device-side image preprocessing for network input.

Converts an 8-bit HWC image into the normalized float CHW layout DetectNet
expects. Each stage reads the pool's "input" buffer and writes its
"output" buffer, then swaps the two roles so the result becomes the next
stage's input without a copy.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np
import torch
import torch.nn.functional as F

from ..device_memory_pool import INPUT_ROLE, OUTPUT_ROLE, DeviceMemoryPool
from ..exceptions import DeviceMemoryError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class ImagePreprocessor:
    """Host-to-device image conversion backed by a DeviceMemoryPool."""

    def __init__(self, pool: DeviceMemoryPool | None = None, device: str | None = None):
        self.pool = pool or DeviceMemoryPool(device=device)

    def input_from_host(self, host: NDArray[Any]) -> None:
        """Copy a host array's bytes into the "input" buffer."""
        arr = np.ascontiguousarray(host)
        buffer = self.pool.acquire(INPUT_ROLE, arr.nbytes)
        try:
            buffer.tensor[: arr.nbytes].copy_(torch.from_numpy(arr.reshape(-1).view(np.uint8)))
        except RuntimeError as e:
            raise DeviceMemoryError(
                f"Unable to copy host memory to device for preprocessing: {e}"
            ) from e

    def swap_io(self) -> None:
        self.pool.swap(INPUT_ROLE, OUTPUT_ROLE)

    def to_network_input(
        self,
        image: NDArray[np.uint8],
        width: int,
        height: int,
        means: tuple[float, ...],
    ) -> NDArray[np.float32]:
        """Convert an (H, W, C) uint8 image to mean-subtracted (C, height, width) float32.

        The image is bilinearly resized when its size differs from the
        model input.

        Args:
            image: Host image in HWC layout
            width: Model input width
            height: Model input height
            means: Per-channel means, one per image channel

        Returns:
            Host float32 array in CHW layout
        """
        if image.ndim != 3:
            raise ValueError(f"Expected an (H, W, C) image, got shape {image.shape}")
        src_h, src_w, channels = image.shape
        if len(means) != channels:
            raise ValueError(f"Expected {channels} channel means, got {len(means)}")

        self.input_from_host(image.astype(np.uint8, copy=False))
        src = self.pool.acquire(INPUT_ROLE, src_h * src_w * channels)
        hwc = src.view(torch.uint8, (src_h, src_w, channels))

        chw = hwc.permute(2, 0, 1).to(torch.float32)
        if (src_h, src_w) != (height, width):
            chw = F.interpolate(
                chw.unsqueeze(0), size=(height, width), mode="bilinear", align_corners=False
            ).squeeze(0)
        mean = torch.tensor(means, dtype=torch.float32, device=chw.device).view(-1, 1, 1)

        nbytes = channels * height * width * 4
        dst = self.pool.acquire(OUTPUT_ROLE, nbytes)
        dst.view(torch.float32, (channels, height, width)).copy_(chw - mean)
        self.swap_io()

        result = self.pool.acquire(INPUT_ROLE, nbytes)
        out = result.tensor[:nbytes].to("cpu", copy=True)
        logger.debug(f"Preprocessed {src_w}x{src_h} image to {width}x{height}")
        return out.numpy().view(np.float32).reshape(channels, height, width)
