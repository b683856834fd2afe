"""Model-Format Loaders and Compiled Engines.

Each supported model format has one loader adapter that knows how to parse
the model description and weights, apply a precision mode and produce a
CompiledEngine bound to a maximum batch size. Loaders are selected by
configuration (EngineConfig.model_format), never by subclassing the engine.

Supported formats:
- onnx: ONNX graph compiled with TensorRT (requires the tensorrt package
  and a CUDA device). The weights path, when given, is the directory
  holding the ONNX file's external tensor data (or a file inside it).
- torchscript: TorchScript archive executed with PyTorch. The weights path,
  when given, is a state_dict file loaded on top of the archive. The module
  is frozen for inference.

Usage:
    from edge_rt.common.model_loaders import get_model_loader

    loader = get_model_loader("torchscript", config=EngineConfig(), device="cpu")
    engine = loader.build(
        model_path=Path("detectnet.pt"),
        weights_path=None,
        inputs=inputs,
        outputs=outputs,
        max_batch_size=1,
        precision=Precision.FP32,
        max_workspace_size=1 << 30,
    )
"""

from __future__ import annotations

import io
import logging
import pickle
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
import torch

from ..exceptions import (
    DeviceMemoryError,
    EngineBuildError,
    ModelMismatchError,
    ModelParseError,
    UnsupportedPrecisionError,
)
from .bindings import BindingRole, NetworkBinding
from .engine_config import EngineConfig, ModelFormat, Precision

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from ..device_memory_pool import DeviceBuffer

logger = logging.getLogger(__name__)


def is_tensorrt_available() -> bool:
    """Check if TensorRT is available on the system.

    Returns:
        True if TensorRT is installed and importable, False otherwise.
    """
    try:
        import tensorrt  # noqa: F401

        return True
    except ImportError:
        logger.debug("TensorRT not available: tensorrt package not installed")
        return False


class CompiledEngine(ABC):
    """Optimized graph bound to a maximum batch size and ordered bindings.

    Attributes:
        bindings: Registered bindings, inputs first, in registration order
        max_batch_size: Largest batch the engine accepts
        precision: Precision the engine was compiled with
        device: Device the engine executes on
    """

    model_format: ModelFormat

    def __init__(
        self,
        bindings: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision,
        device: str,
    ):
        self.bindings = bindings
        self.max_batch_size = max_batch_size
        self.precision = precision
        self.device = device

    @property
    def inputs(self) -> tuple[NetworkBinding, ...]:
        return tuple(b for b in self.bindings if b.role is BindingRole.INPUT)

    @property
    def outputs(self) -> tuple[NetworkBinding, ...]:
        return tuple(b for b in self.bindings if b.role is BindingRole.OUTPUT)

    @abstractmethod
    def serialize(self) -> bytes:
        """Serialize the compiled graph to bytes (cache payload)."""
        raise NotImplementedError

    @abstractmethod
    def binding_shapes(self) -> dict[str, tuple[int, ...]]:
        """Get the per-sample shape of every binding as compiled.

        Returns:
            Mapping of binding name to shape without the batch dimension
        """
        raise NotImplementedError

    @abstractmethod
    def execute(self, buffers: dict[str, DeviceBuffer], batch_size: int) -> None:
        """Run one synchronous forward pass over device buffers.

        Inputs are read from and outputs written to the buffers keyed by
        binding name. Returns once all device work has completed.

        Raises:
            DeviceMemoryError: If execution fails
        """
        raise NotImplementedError


# =============================================================================
# TorchScript
# =============================================================================


def _compute_dtype(precision: Precision) -> torch.dtype:
    return torch.float16 if precision is Precision.FP16 else torch.float32


def _collect_outputs(result: Any, outputs: tuple[NetworkBinding, ...]) -> list[torch.Tensor]:
    """Match module results to registered output bindings.

    Dict results are matched by name, tuple/list results by position.
    """
    if isinstance(result, torch.Tensor):
        tensors = [result]
    elif isinstance(result, dict):
        missing = [b.name for b in outputs if b.name not in result]
        if missing:
            raise ModelMismatchError(
                f"Model outputs {sorted(result)} do not include registered outputs {missing}"
            )
        tensors = [result[b.name] for b in outputs]
    elif isinstance(result, (tuple, list)):
        tensors = list(result)
    else:
        raise ModelMismatchError(f"Unsupported model output type: {type(result).__name__}")

    if len(tensors) != len(outputs):
        raise ModelMismatchError(
            f"Model produced {len(tensors)} outputs, {len(outputs)} registered"
        )
    return tensors


class TorchScriptCompiledEngine(CompiledEngine):
    """Frozen TorchScript module executed with PyTorch."""

    model_format = ModelFormat.TORCHSCRIPT

    def __init__(
        self,
        module: torch.jit.ScriptModule,
        bindings: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision,
        device: str,
        shapes: dict[str, tuple[int, ...]],
    ):
        super().__init__(bindings, max_batch_size, precision, device)
        self.module = module
        self._shapes = shapes
        self._dtype = _compute_dtype(precision)

    def serialize(self) -> bytes:
        buffer = io.BytesIO()
        torch.jit.save(self.module, buffer)
        return buffer.getvalue()

    def binding_shapes(self) -> dict[str, tuple[int, ...]]:
        return dict(self._shapes)

    def execute(self, buffers: dict[str, DeviceBuffer], batch_size: int) -> None:
        try:
            with torch.no_grad():
                args = [
                    buffers[b.name].view(b.torch_dtype, (batch_size, *b.shape)).to(self._dtype)
                    for b in self.inputs
                ]
                result = self.module(*args)
                tensors = _collect_outputs(result, self.outputs)
                for binding, tensor in zip(self.outputs, tensors):
                    target = buffers[binding.name].view(
                        binding.torch_dtype, (batch_size, *binding.shape)
                    )
                    target.copy_(tensor.reshape(batch_size, *binding.shape))
        except (RuntimeError, ValueError, ModelMismatchError) as e:
            raise DeviceMemoryError(f"Forward pass failed: {e}") from e


class ModelLoader(ABC):
    """Adapter that turns one model format into CompiledEngines."""

    model_format: ModelFormat

    def __init__(self, config: EngineConfig, device: str):
        self.config = config
        self.device = device

    @abstractmethod
    def build(
        self,
        model_path: Path,
        weights_path: Path | None,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision,
        max_workspace_size: int,
    ) -> CompiledEngine:
        """Parse a model and compile it for the registered bindings.

        Raises:
            ModelParseError: If the model or weights cannot be parsed
            ModelMismatchError: If parsed shapes differ from registered ones
            UnsupportedPrecisionError: If the device lacks the precision mode
            EngineBuildError: If the backend fails to produce an engine
        """
        raise NotImplementedError

    @abstractmethod
    def deserialize(
        self,
        payload: bytes,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision,
    ) -> CompiledEngine:
        """Rebuild a CompiledEngine from a cache payload."""
        raise NotImplementedError


class TorchScriptLoader(ModelLoader):
    """Loads TorchScript archives (plus optional state_dict weights)."""

    model_format = ModelFormat.TORCHSCRIPT

    def _check_precision(self, precision: Precision) -> None:
        if precision is Precision.INT8:
            raise UnsupportedPrecisionError(
                "INT8 is not supported by the TorchScript backend", precision=precision.value
            )
        if precision is Precision.FP16 and not self.device.startswith("cuda"):
            raise UnsupportedPrecisionError(
                f"FP16 requires a CUDA device, engine device is {self.device}",
                precision=precision.value,
            )

    def _probe(
        self,
        module: torch.jit.ScriptModule,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        precision: Precision,
    ) -> dict[str, tuple[int, ...]]:
        """Run one zero sample through the module to discover binding shapes."""
        dtype = _compute_dtype(precision)
        args = [torch.zeros((1, *b.shape), dtype=dtype, device=self.device) for b in inputs]
        try:
            with torch.no_grad():
                result = module(*args)
        except Exception as e:
            raise ModelMismatchError(
                f"Model rejected registered input shapes "
                f"{[b.shape for b in inputs]}: {e}"
            ) from e

        tensors = _collect_outputs(result, outputs)
        shapes = {b.name: b.shape for b in inputs}
        for binding, tensor in zip(outputs, tensors):
            shapes[binding.name] = tuple(int(d) for d in tensor.shape[1:])
        return shapes

    def _freeze(self, module: torch.jit.ScriptModule) -> torch.jit.ScriptModule:
        try:
            return torch.jit.freeze(module)
        except RuntimeError as e:
            raise EngineBuildError(f"Unable to freeze TorchScript module: {e}") from e

    def build(
        self,
        model_path: Path,
        weights_path: Path | None,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision,
        max_workspace_size: int,
    ) -> CompiledEngine:
        self._check_precision(precision)

        if not model_path.exists():
            raise ModelParseError(f"Model description not found: {model_path}")
        try:
            module = torch.jit.load(str(model_path), map_location=self.device)
        except (RuntimeError, ValueError) as e:
            raise ModelParseError(f"Failed to parse TorchScript model {model_path}: {e}") from e

        if weights_path is not None:
            if not weights_path.exists():
                raise ModelParseError(f"Model weights not found: {weights_path}")
            try:
                state = torch.load(str(weights_path), map_location=self.device, weights_only=True)
                module.load_state_dict(state)
            except (RuntimeError, ValueError, EOFError, pickle.UnpicklingError) as e:
                raise ModelParseError(f"Failed to load weights {weights_path}: {e}") from e

        module.eval()
        if precision is Precision.FP16:
            module.half()

        logger.debug(
            f"TorchScript backend ignores max_workspace_size ({max_workspace_size} bytes)"
        )

        shapes = self._probe(module, inputs, outputs, precision)
        frozen = self._freeze(module)

        return TorchScriptCompiledEngine(
            module=frozen,
            bindings=(*inputs, *outputs),
            max_batch_size=max_batch_size,
            precision=precision,
            device=self.device,
            shapes=shapes,
        )

    def deserialize(
        self,
        payload: bytes,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision,
    ) -> CompiledEngine:
        self._check_precision(precision)
        try:
            module = torch.jit.load(io.BytesIO(payload), map_location=self.device)
        except (RuntimeError, ValueError) as e:
            raise ModelParseError(f"Failed to deserialize TorchScript engine: {e}") from e

        module.eval()
        shapes = self._probe(module, inputs, outputs, precision)

        return TorchScriptCompiledEngine(
            module=module,
            bindings=(*inputs, *outputs),
            max_batch_size=max_batch_size,
            precision=precision,
            device=self.device,
            shapes=shapes,
        )


# =============================================================================
# ONNX via TensorRT
# =============================================================================


class TensorRTCompiledEngine(CompiledEngine):
    """TensorRT engine with one execution context."""

    model_format = ModelFormat.ONNX

    def __init__(
        self,
        engine: Any,
        bindings: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision,
        device: str,
    ):
        super().__init__(bindings, max_batch_size, precision, device)
        self.engine = engine
        self.context = engine.create_execution_context()
        if self.context is None:
            raise DeviceMemoryError("Unable to create TensorRT execution context")

    def serialize(self) -> bytes:
        return bytes(self.engine.serialize())

    def binding_shapes(self) -> dict[str, tuple[int, ...]]:
        shapes: dict[str, tuple[int, ...]] = {}
        for i in range(self.engine.num_io_tensors):
            name = self.engine.get_tensor_name(i)
            shape = tuple(self.engine.get_tensor_shape(name))
            # Drop the explicit batch dimension
            shapes[name] = tuple(int(d) for d in shape[1:])
        return shapes

    def execute(self, buffers: dict[str, DeviceBuffer], batch_size: int) -> None:
        try:
            for binding in self.inputs:
                if not self.context.set_input_shape(binding.name, (batch_size, *binding.shape)):
                    raise DeviceMemoryError(
                        f"Unable to set shape of input '{binding.name}' for batch {batch_size}"
                    )
            for binding in self.bindings:
                self.context.set_tensor_address(binding.name, buffers[binding.name].data_ptr())

            stream = torch.cuda.current_stream(device=torch.device(self.device))
            if not self.context.execute_async_v3(stream.cuda_stream):
                raise DeviceMemoryError("TensorRT inference failed")
            stream.synchronize()
        except RuntimeError as e:
            raise DeviceMemoryError(f"TensorRT inference failed: {e}") from e

    def __del__(self) -> None:
        """Clean up TensorRT resources."""
        if hasattr(self, "context") and self.context is not None:
            del self.context
        if hasattr(self, "engine") and self.engine is not None:
            del self.engine


class OnnxTensorRTLoader(ModelLoader):
    """Compiles ONNX graphs into TensorRT engines."""

    model_format = ModelFormat.ONNX

    def _require_tensorrt(self) -> Any:
        if not is_tensorrt_available():
            raise ImportError("TensorRT is not available. Please install tensorrt package.")
        if not self.device.startswith("cuda"):
            raise ValueError(f"TensorRT engines require a CUDA device, got {self.device}")

        import tensorrt as trt

        return trt

    def _trt_logger(self, trt: Any) -> Any:
        log_level = trt.Logger.VERBOSE if self.config.verbose else trt.Logger.WARNING
        return trt.Logger(log_level)

    def _verify_inputs(self, network: Any, inputs: tuple[NetworkBinding, ...]) -> None:
        if network.num_inputs != len(inputs):
            raise ModelMismatchError(
                f"Parsed model has {network.num_inputs} inputs, {len(inputs)} registered"
            )
        for n, binding in enumerate(inputs):
            tensor = network.get_input(n)
            dims = tuple(tensor.shape)[1:]
            if len(dims) != len(binding.shape):
                raise ModelMismatchError(
                    "Engine inputs number of dimensions != registered inputs number of dimensions",
                    details={"input": binding.name, "parsed": dims, "registered": binding.shape},
                )
            if tuple(int(d) for d in dims) != binding.shape:
                raise ModelMismatchError(
                    "Engine inputs dimensions != registered inputs dimensions",
                    details={"input": binding.name, "parsed": dims, "registered": binding.shape},
                )

    def _mark_outputs(self, network: Any, outputs: tuple[NetworkBinding, ...]) -> None:
        """Make the network's outputs exactly the registered output tensors."""
        existing = {
            network.get_output(i).name: network.get_output(i) for i in range(network.num_outputs)
        }
        wanted = {b.name for b in outputs}

        for binding in outputs:
            if binding.name in existing:
                continue
            tensor = self._find_tensor(network, binding.name)
            if tensor is None:
                raise ModelMismatchError(f"Output tensor '{binding.name}' not found in model")
            network.mark_output(tensor)

        for name, tensor in existing.items():
            if name not in wanted:
                network.unmark_output(tensor)

    @staticmethod
    def _find_tensor(network: Any, name: str) -> Any:
        for li in range(network.num_layers):
            layer = network.get_layer(li)
            for oi in range(layer.num_outputs):
                tensor = layer.get_output(oi)
                if tensor.name == name:
                    return tensor
        return None

    def _create_calibrator(self, trt: Any, calibration_data: NDArray[np.float32]) -> Any:
        """Create an entropy calibrator over the configured sample batch."""

        class Int8Calibrator(trt.IInt8EntropyCalibrator2):  # type: ignore[name-defined]
            """INT8 calibrator using entropy calibration."""

            def __init__(self, data: NDArray[np.float32], device: str):
                super().__init__()
                self.data = np.ascontiguousarray(data, dtype=np.float32)
                self.batch_size = 1
                self.current_index = 0
                self.device_input = torch.empty(
                    self.data.shape[1:], dtype=torch.float32, device=device
                )

            def get_batch_size(self) -> int:
                return self.batch_size

            def get_batch(self, _names: list[str]) -> list[int] | None:
                if self.current_index >= len(self.data):
                    return None
                self.device_input.copy_(torch.from_numpy(self.data[self.current_index]))
                self.current_index += self.batch_size
                return [int(self.device_input.data_ptr())]

            def read_calibration_cache(self) -> bytes | None:
                return None

            def write_calibration_cache(self, cache: bytes) -> None:
                return None

        return Int8Calibrator(calibration_data, self.device)

    def _apply_precision(
        self, trt: Any, builder: Any, builder_config: Any, precision: Precision
    ) -> None:
        if precision is Precision.FP16:
            if not builder.platform_has_fast_fp16:
                raise UnsupportedPrecisionError(
                    "GPU does not support fast FP16", precision=precision.value
                )
            builder_config.set_flag(trt.BuilderFlag.FP16)
            logger.info("Enabled FP16 precision")
        elif precision is Precision.INT8:
            if not builder.platform_has_fast_int8:
                raise UnsupportedPrecisionError(
                    "GPU does not support fast INT8", precision=precision.value
                )
            if self.config.calibration_data is None:
                raise ValueError("INT8 precision requires calibration_data for quantization")
            builder_config.set_flag(trt.BuilderFlag.INT8)
            builder_config.int8_calibrator = self._create_calibrator(
                trt, self.config.calibration_data
            )
            logger.info("Enabled INT8 precision with calibration")

    def build(
        self,
        model_path: Path,
        weights_path: Path | None,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision,
        max_workspace_size: int,
    ) -> CompiledEngine:
        trt = self._require_tensorrt()
        trt_logger = self._trt_logger(trt)

        if not model_path.exists():
            raise ModelParseError(f"ONNX model not found: {model_path}")

        builder = trt.Builder(trt_logger)
        network_flags = 1 << int(trt.NetworkDefinitionCreationFlag.EXPLICIT_BATCH)
        network = builder.create_network(network_flags)

        parser = trt.OnnxParser(network, trt_logger)
        # External tensor data is resolved relative to the directory of this path
        parse_path = model_path
        if weights_path is not None:
            if not weights_path.exists():
                raise ModelParseError(f"Model weights not found: {weights_path}")
            parse_path = weights_path / model_path.name if weights_path.is_dir() else weights_path
        with open(model_path, "rb") as f:  # nosemgrep: path-traversal-open
            if not parser.parse(f.read(), path=str(parse_path)):
                errors = [str(parser.get_error(i)) for i in range(parser.num_errors)]
                raise ModelParseError(f"Failed to parse ONNX model: {errors}")

        self._verify_inputs(network, inputs)
        self._mark_outputs(network, outputs)

        builder_config = builder.create_builder_config()
        builder_config.set_memory_pool_limit(trt.MemoryPoolType.WORKSPACE, max_workspace_size)
        self._apply_precision(trt, builder, builder_config, precision)

        profile = builder.create_optimization_profile()
        for binding in inputs:
            profile.set_shape(
                binding.name,
                (1, *binding.shape),
                (max_batch_size, *binding.shape),
                (max_batch_size, *binding.shape),
            )
        builder_config.add_optimization_profile(profile)

        logger.info("Building TensorRT engine (this may take several minutes)...")
        serialized = builder.build_serialized_network(network, builder_config)
        if serialized is None:
            raise EngineBuildError()

        engine = trt.Runtime(trt_logger).deserialize_cuda_engine(serialized)
        if engine is None:
            raise EngineBuildError("Unable to load freshly built TensorRT engine")

        return TensorRTCompiledEngine(
            engine=engine,
            bindings=(*inputs, *outputs),
            max_batch_size=max_batch_size,
            precision=precision,
            device=self.device,
        )

    def deserialize(
        self,
        payload: bytes,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision,
    ) -> CompiledEngine:
        trt = self._require_tensorrt()
        engine = trt.Runtime(self._trt_logger(trt)).deserialize_cuda_engine(payload)
        if engine is None:
            raise ModelParseError("Failed to deserialize TensorRT engine")

        return TensorRTCompiledEngine(
            engine=engine,
            bindings=(*inputs, *outputs),
            max_batch_size=max_batch_size,
            precision=precision,
            device=self.device,
        )


MODEL_LOADERS: dict[ModelFormat, type[ModelLoader]] = {
    ModelFormat.TORCHSCRIPT: TorchScriptLoader,
    ModelFormat.ONNX: OnnxTensorRTLoader,
}


def get_model_loader(
    model_format: ModelFormat | str,
    config: EngineConfig,
    device: str,
) -> ModelLoader:
    """Instantiate the loader adapter for a model format.

    Raises:
        ValueError: If the format is unknown
    """
    return MODEL_LOADERS[ModelFormat(model_format)](config=config, device=device)
