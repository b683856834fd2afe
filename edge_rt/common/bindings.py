"""Network binding metadata shared by the compiler, loaders and engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np
import torch

# Element size in bytes -> host/device element type
_NUMPY_DTYPES: dict[int, type[np.generic]] = {
    4: np.float32,
    2: np.float16,
    1: np.int8,
}
_TORCH_DTYPES: dict[int, torch.dtype] = {
    4: torch.float32,
    2: torch.float16,
    1: torch.int8,
}


class BindingRole(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


@dataclass(frozen=True)
class NetworkBinding:
    """A named, shaped input or output slot of a compiled engine.

    Shapes exclude the batch dimension, e.g. (channels, height, width).

    Attributes:
        name: Tensor name in the model graph
        shape: Per-sample tensor shape
        element_size: Size of one element in bytes
        role: Whether the binding is an input or an output
    """

    name: str
    shape: tuple[int, ...]
    element_size: int
    role: BindingRole

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Binding name must not be empty")
        if self.element_size not in _NUMPY_DTYPES:
            raise ValueError(
                f"Unsupported element size {self.element_size} for binding '{self.name}' "
                f"(expected one of {sorted(_NUMPY_DTYPES)})"
            )
        if any(int(d) <= 0 for d in self.shape):
            raise ValueError(f"Binding '{self.name}' has non-positive dimension: {self.shape}")
        # Normalize list/np shapes to a plain int tuple
        object.__setattr__(self, "shape", tuple(int(d) for d in self.shape))
        object.__setattr__(self, "role", BindingRole(self.role))

    @property
    def volume(self) -> int:
        volume = 1
        for dim in self.shape:
            volume *= dim
        return volume

    @property
    def size_bytes(self) -> int:
        """Bytes occupied by one sample of this binding."""
        return self.volume * self.element_size

    @property
    def numpy_dtype(self) -> np.dtype[Any]:
        return np.dtype(_NUMPY_DTYPES[self.element_size])

    @property
    def torch_dtype(self) -> torch.dtype:
        return _TORCH_DTYPES[self.element_size]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "shape": list(self.shape),
            "element_size": self.element_size,
            "role": self.role.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NetworkBinding:
        return cls(
            name=str(data["name"]),
            shape=tuple(int(d) for d in data["shape"]),
            element_size=int(data["element_size"]),
            role=BindingRole(data["role"]),
        )


def describe_bindings(bindings: tuple[NetworkBinding, ...] | list[NetworkBinding]) -> str:
    """Render bindings as ``name(role)[d0xd1x...]`` for log messages."""
    return ", ".join(
        f"{b.name}({b.role.value})[{'x'.join(str(d) for d in b.shape)}]" for b in bindings
    )
