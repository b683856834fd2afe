"""Inference Engine with Explicit Host/Device Memory Movement.

This module provides the single engine interface shared by every model
format. The format only decides which loader adapter compiles the graph;
binding registration, caching, device buffers and batched execution are
identical for all of them.

Lifecycle:
1. Register bindings with add_input()/add_output()
2. Create the compiled engine once with load_model() or load_cache()
   (or load_or_build(), which falls back from cache to a full build)
3. Call predict() any number of times

Ownership:
- The engine owns its compiled graph, execution context and device buffers.
- predict() returns freshly allocated host arrays which belong to the caller.
- The engine is a single-writer resource; it does no internal locking.

Usage:
    from edge_rt.common.inference_engine import InferenceEngine

    engine = InferenceEngine(model_name="googlenet", model_format="torchscript")
    engine.add_input("data", (3, 224, 224), 4)
    engine.add_output("prob", (1000,), 4)
    engine.load_or_build(
        cache_path=Path("googlenet.engine"),
        model_path=Path("googlenet.pt"),
        max_batch_size=1,
    )
    outputs = engine.predict([[image_chw]])
    probs = outputs[0][0]
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
import torch

from .. import metrics
from ..device_memory_pool import DeviceBuffer, DeviceMemoryPool, get_default_device
from ..exceptions import BatchSizeExceededError, CacheLoadError, DeviceMemoryError
from .bindings import BindingRole, NetworkBinding
from .engine_compiler import EngineCompiler, split_bindings
from .engine_config import EngineConfig, ModelFormat, Precision

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .model_loaders import CompiledEngine

logger = logging.getLogger(__name__)


class InferenceEngine:
    """Compiled model plus the device buffers needed to run it.

    Attributes:
        model_name: Human-readable name for logging and metrics
        config: Engine configuration
        device: Device the engine and its buffers live on
        pool: Device memory pool backing the binding buffers
    """

    def __init__(
        self,
        model_name: str = "engine",
        model_format: ModelFormat | str | None = None,
        device: str | None = None,
        config: EngineConfig | None = None,
    ):
        """Initialize an engine with no bindings and no compiled graph.

        Args:
            model_name: Human-readable name for logging and metrics
            model_format: Loader to use (overrides config.model_format)
            device: Target device (default: get_default_device())
            config: Engine configuration (default: EngineConfig())
        """
        config = config or EngineConfig()
        if model_format is not None:
            config = replace(config, model_format=model_format)

        self.model_name = model_name
        self.config = config
        self.device = device or get_default_device()
        self.pool = DeviceMemoryPool(device=self.device)
        self.compiler = EngineCompiler(config=config, device=self.device)

        self._bindings: list[NetworkBinding] = []
        self._engine: CompiledEngine | None = None

        # Statistics
        self._inference_count = 0
        self._total_inference_time_ms = 0.0

    # =========================================================================
    # Binding registration
    # =========================================================================

    def _register(
        self, name: str, shape: tuple[int, ...], element_size: int, role: BindingRole
    ) -> None:
        if self._engine is not None:
            raise RuntimeError(
                f"[{self.model_name}] Bindings must be registered before load_model()/load_cache()"
            )
        if any(b.name == name for b in self._bindings):
            raise ValueError(f"[{self.model_name}] Binding '{name}' is already registered")
        self._bindings.append(
            NetworkBinding(name=name, shape=tuple(shape), element_size=element_size, role=role)
        )

    def add_input(self, name: str, shape: tuple[int, ...], element_size: int) -> None:
        """Register a network input.

        Must be called before load_model()/load_cache().

        Args:
            name: Name of the input tensor (e.g. "data")
            shape: Per-sample shape, typically (channels, height, width)
            element_size: Size of each element in bytes
        """
        self._register(name, shape, element_size, BindingRole.INPUT)

    def add_output(self, name: str, shape: tuple[int, ...], element_size: int) -> None:
        """Register a network output.

        Must be called before load_model()/load_cache().

        Args:
            name: Name of the output tensor (e.g. "prob")
            shape: Per-sample shape
            element_size: Size of each element in bytes
        """
        self._register(name, shape, element_size, BindingRole.OUTPUT)

    @property
    def inputs(self) -> tuple[NetworkBinding, ...]:
        return split_bindings(self._bindings)[0]

    @property
    def outputs(self) -> tuple[NetworkBinding, ...]:
        return split_bindings(self._bindings)[1]

    # =========================================================================
    # Engine creation
    # =========================================================================

    @property
    def is_loaded(self) -> bool:
        return self._engine is not None

    @property
    def max_batch_size(self) -> int:
        return self._require_engine().max_batch_size

    def _require_engine(self) -> CompiledEngine:
        if self._engine is None:
            raise RuntimeError(f"[{self.model_name}] Engine not loaded")
        return self._engine

    def _attach(self, engine: CompiledEngine) -> None:
        """Adopt a compiled engine and size one device buffer per binding."""
        self._engine = engine
        for binding in engine.bindings:
            self.pool.acquire(binding.name, engine.max_batch_size * binding.size_bytes)
        metrics.record_pool_bytes(self.model_name, self.pool.total_bytes)
        logger.debug(f"[{self.model_name}] Device buffers: {self.pool.get_stats()['buffers']}")

    def load_model(
        self,
        model_path: Path | str,
        weights_path: Path | str | None = None,
        max_batch_size: int = 1,
        precision: Precision | str | None = None,
        max_workspace_size: int | None = None,
    ) -> None:
        """Compile a model for the registered bindings.

        Args:
            model_path: Model description file
            weights_path: Weights file (format-specific, optional)
            max_batch_size: Largest batch predict() will accept. For best
                performance this should be the only batch size used.
            precision: Precision mode (config default if None)
            max_workspace_size: Builder workspace in bytes (config default if None)

        Raises:
            ModelParseError, ModelMismatchError, UnsupportedPrecisionError
        """
        inputs, outputs = split_bindings(self._bindings)
        engine = self.compiler.build(
            model_path=model_path,
            weights_path=weights_path,
            inputs=inputs,
            outputs=outputs,
            max_batch_size=max_batch_size,
            precision=precision,
            max_workspace_size=max_workspace_size,
        )
        self._attach(engine)

    def load_cache(
        self,
        path: Path | str,
        max_batch_size: int = 1,
        precision: Precision | str | None = None,
    ) -> None:
        """Load a previously saved engine.

        Raises:
            CacheLoadError: If the cache is missing, corrupt, stale or was
                built with a different precision
        """
        inputs, outputs = split_bindings(self._bindings)
        engine = self.compiler.load_cache(path, inputs, outputs, max_batch_size, precision)
        self._attach(engine)

    def save_cache(self, path: Path | str) -> Path:
        """Persist the compiled engine so later runs can skip compilation."""
        saved = self.compiler.save_cache(self._require_engine(), path)
        metrics.record_cache_event("save")
        return saved

    def load_or_build(
        self,
        cache_path: Path | str,
        model_path: Path | str,
        weights_path: Path | str | None = None,
        max_batch_size: int = 1,
        precision: Precision | str | None = None,
        max_workspace_size: int | None = None,
    ) -> bool:
        """Load the engine cache, rebuilding and re-saving it if unusable.

        Only CacheLoadError triggers the fallback; build errors propagate.

        Returns:
            True if the cache was used, False if the engine was rebuilt
        """
        try:
            self.load_cache(cache_path, max_batch_size, precision)
            metrics.record_cache_event("hit")
            return True
        except CacheLoadError as e:
            logger.warning(f"[{self.model_name}] {e.message}. Rebuilding engine.")
            metrics.record_cache_event("miss")

        self.load_model(
            model_path,
            weights_path,
            max_batch_size=max_batch_size,
            precision=precision,
            max_workspace_size=max_workspace_size,
        )
        self.save_cache(cache_path)
        return False

    # =========================================================================
    # Execution
    # =========================================================================

    def _copy_to_device(
        self,
        buffer: DeviceBuffer,
        binding: NetworkBinding,
        sample: int,
        host: NDArray[Any],
    ) -> None:
        arr = np.ascontiguousarray(host, dtype=binding.numpy_dtype)
        if arr.size != binding.volume:
            raise ValueError(
                f"[{self.model_name}] Input '{binding.name}' has {arr.size} elements, "
                f"expected {binding.volume} for shape {binding.shape}"
            )
        offset = sample * binding.size_bytes
        try:
            src = torch.from_numpy(arr.reshape(-1).view(np.uint8))
            buffer.tensor[offset : offset + binding.size_bytes].copy_(src)
        except RuntimeError as e:
            raise DeviceMemoryError(
                f"Unable to copy host memory to device for '{binding.name}': {e}"
            ) from e

    def _copy_to_host(
        self,
        buffer: DeviceBuffer,
        binding: NetworkBinding,
        sample: int,
    ) -> NDArray[Any]:
        offset = sample * binding.size_bytes
        try:
            data = buffer.tensor[offset : offset + binding.size_bytes].to("cpu", copy=True)
        except RuntimeError as e:
            raise DeviceMemoryError(
                f"Unable to copy device memory to host for '{binding.name}': {e}"
            ) from e
        return data.numpy().view(binding.numpy_dtype).reshape(binding.shape)

    def predict(self, batch: list[list[NDArray[Any]]]) -> list[list[NDArray[Any]]]:
        """Run one synchronous forward pass over a batch.

        Args:
            batch: One entry per sample, each a list of host arrays in input
                registration order

        Returns:
            One entry per sample, each a list of new host arrays in output
            registration order

        Raises:
            BatchSizeExceededError: If the batch exceeds the compiled maximum
            DeviceMemoryError: If a copy or the forward pass fails
            ValueError: If a sample has the wrong number or size of inputs
        """
        engine = self._require_engine()
        batch_size = len(batch)
        if batch_size == 0:
            return []
        if batch_size > engine.max_batch_size:
            raise BatchSizeExceededError(
                batch_size=batch_size, max_batch_size=engine.max_batch_size
            )

        start_time = time.perf_counter()
        inputs, outputs = engine.inputs, engine.outputs

        buffers = {
            b.name: self.pool.acquire(b.name, engine.max_batch_size * b.size_bytes)
            for b in engine.bindings
        }

        for sample, host_inputs in enumerate(batch):
            if len(host_inputs) != len(inputs):
                raise ValueError(
                    f"[{self.model_name}] Sample {sample} has {len(host_inputs)} inputs, "
                    f"expected {len(inputs)}"
                )
            for binding, host in zip(inputs, host_inputs):
                self._copy_to_device(buffers[binding.name], binding, sample, host)

        engine.execute(buffers, batch_size)

        results = [
            [self._copy_to_host(buffers[b.name], b, sample) for b in outputs]
            for sample in range(batch_size)
        ]

        elapsed = time.perf_counter() - start_time
        self._inference_count += 1
        self._total_inference_time_ms += elapsed * 1000
        metrics.record_predict(self.model_name, batch_size, elapsed)
        logger.debug(f"[{self.model_name}] predict batch={batch_size} in {elapsed * 1000:.2f}ms")

        return results

    # =========================================================================
    # Introspection
    # =========================================================================

    def engine_summary(self) -> str:
        """Get a human-readable description of the engine and its bindings."""
        lines = [f"Engine '{self.model_name}' on {self.device}"]
        if self._engine is None:
            lines.append("  (not loaded)")
        else:
            lines.append(
                f"  format={self._engine.model_format.value} "
                f"precision={self._engine.precision.value} "
                f"max_batch_size={self._engine.max_batch_size}"
            )
        for binding in self._bindings:
            dims = "x".join(str(d) for d in binding.shape)
            lines.append(
                f"  {binding.role.value:<6} {binding.name}: {dims} "
                f"({binding.element_size}B/elem, {binding.size_bytes} bytes/sample)"
            )
        return "\n".join(lines)

    def get_statistics(self) -> dict[str, Any]:
        """Get inference statistics.

        Returns:
            Dictionary with inference statistics
        """
        avg_time_ms = (
            self._total_inference_time_ms / self._inference_count
            if self._inference_count > 0
            else 0.0
        )

        return {
            "model_name": self.model_name,
            "model_format": self.compiler.loader.model_format.value,
            "precision": self._engine.precision.value if self._engine else None,
            "device": self.device,
            "inference_count": self._inference_count,
            "total_inference_time_ms": self._total_inference_time_ms,
            "avg_inference_time_ms": avg_time_ms,
            "pool_bytes": self.pool.total_bytes,
        }

    def reset_statistics(self) -> None:
        """Reset inference statistics."""
        self._inference_count = 0
        self._total_inference_time_ms = 0.0
