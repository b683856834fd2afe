"""Engine compilation, caching and execution.

Modules:
- bindings: NetworkBinding metadata
- engine_config: Precision, ModelFormat and EngineConfig
- model_loaders: Per-format loader adapters and compiled engines
- engine_compiler: Build, save and load engine cache artifacts
- inference_engine: InferenceEngine, the shared engine interface

Example Usage:
    from edge_rt.common import InferenceEngine

    engine = InferenceEngine(model_format="onnx")
    engine.add_input("data", (3, 224, 224), 4)
    engine.add_output("prob", (1000,), 4)
    engine.load_or_build("googlenet.engine", "googlenet.onnx", max_batch_size=1)
"""

from __future__ import annotations

__all__ = [
    # Sorted alphabetically for RUF022 compliance
    "BindingRole",
    "CompiledEngine",
    "EngineCompiler",
    "EngineConfig",
    "InferenceEngine",
    "ModelFormat",
    "NetworkBinding",
    "Precision",
    "get_model_loader",
    "is_tensorrt_available",
]
from .bindings import BindingRole, NetworkBinding
from .engine_compiler import EngineCompiler
from .engine_config import EngineConfig, ModelFormat, Precision
from .inference_engine import InferenceEngine
from .model_loaders import CompiledEngine, get_model_loader, is_tensorrt_available
