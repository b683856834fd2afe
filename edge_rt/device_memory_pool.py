"""Device Memory Pool for Engine Bindings.

This module provides a small device-resident buffer cache keyed by logical
role. Each role holds at most one buffer; a request that fits the current
capacity reuses it, a larger request replaces it. Capacity therefore grows
monotonically to the largest single request seen and never shrinks during a
session, which keeps steady-state inference free of cudaMalloc/cudaFree.

Buffers are flat ``torch.uint8`` tensors so any binding dtype can be viewed
on top of them without reallocation.

The pool is a single-writer resource. It does no locking; callers sharing a
pool across threads must serialize access themselves or use one pool per
thread.

Usage:
    from edge_rt.device_memory_pool import DeviceMemoryPool

    pool = DeviceMemoryPool()
    buf = pool.acquire("input", 3 * 224 * 224 * 4)
    buf.tensor[: arr.nbytes].copy_(torch.from_numpy(arr.view(np.uint8).ravel()))

    # Chain two stages without copying
    pool.swap("input", "output")

Environment Variables:
- EDGE_RT_DEVICE: Device for pooled buffers (default: "cuda:0" if available, else "cpu")
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import torch

from .exceptions import DeviceMemoryError

logger = logging.getLogger(__name__)

EDGE_RT_DEVICE = os.environ.get("EDGE_RT_DEVICE", "")

INPUT_ROLE = "input"
OUTPUT_ROLE = "output"


def get_default_device() -> str:
    """Get the device buffers are placed on when none is requested.

    Returns:
        EDGE_RT_DEVICE if set, otherwise "cuda:0" when CUDA is available,
        otherwise "cpu".
    """
    if EDGE_RT_DEVICE:
        return EDGE_RT_DEVICE
    if torch.cuda.is_available():
        return "cuda:0"
    return "cpu"


@dataclass
class DeviceBuffer:
    """A device-resident byte buffer owned by a DeviceMemoryPool.

    Attributes:
        role: Logical role the buffer is currently registered under.
        tensor: Flat uint8 tensor backing the buffer.
        allocated_at: Timestamp of allocation.
    """

    role: str
    tensor: torch.Tensor
    allocated_at: float = field(default_factory=time.time)

    @property
    def capacity(self) -> int:
        """Get buffer capacity in bytes."""
        return int(self.tensor.numel())

    @property
    def device(self) -> torch.device:
        return self.tensor.device

    def data_ptr(self) -> int:
        return int(self.tensor.data_ptr())

    def view(self, dtype: torch.dtype, shape: tuple[int, ...]) -> torch.Tensor:
        """View the leading bytes of the buffer as a typed tensor.

        Args:
            dtype: Element type of the view.
            shape: Shape of the view.

        Returns:
            Tensor sharing storage with the buffer.

        Raises:
            ValueError: If the view does not fit in the buffer.
        """
        element_size = torch.empty((), dtype=dtype).element_size()
        numel = 1
        for dim in shape:
            numel *= dim
        nbytes = numel * element_size
        if nbytes > self.capacity:
            raise ValueError(
                f"View of {nbytes} bytes does not fit in buffer '{self.role}' "
                f"({self.capacity} bytes)"
            )
        return self.tensor[:nbytes].view(dtype).view(shape)


class DeviceMemoryPool:
    """Role-keyed cache of device buffers that grows on demand.

    Attributes:
        device: Device the buffers live on.
    """

    def __init__(self, device: str | None = None) -> None:
        """Initialize an empty pool.

        Args:
            device: Target device (default: get_default_device()).
        """
        self.device = device or get_default_device()
        self._buffers: dict[str, DeviceBuffer] = {}
        self._allocations = 0
        self._reuses = 0

        logger.info(f"Device memory pool initialized on {self.device}")

    def _allocate(self, role: str, size: int) -> DeviceBuffer:
        try:
            tensor = torch.empty(size, dtype=torch.uint8, device=self.device)
        except (RuntimeError, torch.cuda.OutOfMemoryError) as e:
            raise DeviceMemoryError(
                f"Unable to allocate {size} bytes on {self.device} for '{role}': {e}",
                details={"role": role, "size": size, "device": self.device},
            ) from e
        self._allocations += 1
        return DeviceBuffer(role=role, tensor=tensor)

    def acquire(self, role: str, size: int) -> DeviceBuffer:
        """Get a buffer for a role holding at least ``size`` bytes.

        If the role's current capacity is large enough the existing buffer
        is returned untouched. Otherwise the old buffer is released and a new
        one of exactly ``size`` bytes takes its place.

        Args:
            role: Logical role (e.g. "input", "output", or a binding name).
            size: Required size in bytes.

        Returns:
            The role's DeviceBuffer.

        Raises:
            ValueError: If size is negative.
            DeviceMemoryError: If allocation fails.
        """
        if size < 0:
            raise ValueError(f"Buffer size must be non-negative, got {size}")

        current = self._buffers.get(role)
        if current is not None and current.capacity >= size:
            self._reuses += 1
            return current

        if current is not None:
            logger.debug(f"Growing buffer '{role}': {current.capacity} -> {size} bytes")
            del self._buffers[role]
            del current
        else:
            logger.debug(f"Allocating buffer '{role}': {size} bytes")

        buffer = self._allocate(role, size)
        self._buffers[role] = buffer
        return buffer

    def swap(self, role_a: str, role_b: str) -> None:
        """Exchange the buffers held by two roles without copying.

        Either role may be empty, in which case the other role's buffer
        simply moves over.

        Args:
            role_a: First role.
            role_b: Second role.
        """
        buffer_a = self._buffers.pop(role_a, None)
        buffer_b = self._buffers.pop(role_b, None)

        if buffer_b is not None:
            buffer_b.role = role_a
            self._buffers[role_a] = buffer_b
        if buffer_a is not None:
            buffer_a.role = role_b
            self._buffers[role_b] = buffer_a

        logger.debug(f"Swapped buffers '{role_a}' <-> '{role_b}'")

    def get(self, role: str) -> DeviceBuffer | None:
        return self._buffers.get(role)

    def capacity(self, role: str) -> int:
        """Get the current capacity for a role in bytes (0 if none)."""
        buffer = self._buffers.get(role)
        return buffer.capacity if buffer is not None else 0

    def roles(self) -> list[str]:
        return list(self._buffers.keys())

    @property
    def total_bytes(self) -> int:
        return sum(b.capacity for b in self._buffers.values())

    def release_all(self) -> None:
        """Drop every buffer held by the pool."""
        self._buffers.clear()
        if self.device.startswith("cuda") and torch.cuda.is_available():
            torch.cuda.empty_cache()
        logger.debug("Released all pooled buffers")

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics.

        Returns:
            Dictionary with device, per-role capacities, total bytes and
            allocation/reuse counters.
        """
        return {
            "device": self.device,
            "buffers": {role: b.capacity for role, b in self._buffers.items()},
            "total_bytes": self.total_bytes,
            "allocations": self._allocations,
            "reuses": self._reuses,
        }

    def __len__(self) -> int:
        return len(self._buffers)

    def __contains__(self, role: object) -> bool:
        return role in self._buffers
