"""Engine Compilation and Cache Artifacts.

This module builds CompiledEngines through the configured model-format
loader and persists them as cache artifacts so that subsequent runs skip
compilation.

Cache artifact layout:
    MAGIC (8 bytes) | header length (4 bytes, big-endian) | JSON header | engine payload

The JSON header records the model format, precision, maximum batch size and
every binding (name, shape, element size, role). An artifact is only
accepted when all of these agree with the bindings currently registered, so
a stale cache can never be silently reused after the network changes.

Usage:
    compiler = EngineCompiler(config=EngineConfig(model_format="torchscript"), device="cpu")
    engine = compiler.build(model_path, None, inputs, outputs, max_batch_size=1)
    compiler.save_cache(engine, Path("detectnet.engine"))

    try:
        engine = compiler.load_cache(Path("detectnet.engine"), inputs, outputs, 1)
    except CacheLoadError:
        engine = compiler.build(...)
"""

from __future__ import annotations

import json
import logging
import struct
import time
from pathlib import Path
from typing import Any

from ..exceptions import (
    CacheLoadError,
    ModelMismatchError,
    ModelParseError,
    UnsupportedPrecisionError,
)
from .bindings import BindingRole, NetworkBinding, describe_bindings
from .engine_config import EngineConfig, Precision
from .model_loaders import CompiledEngine, ModelLoader, get_model_loader

logger = logging.getLogger(__name__)

CACHE_MAGIC = b"EDGERT01"
_HEADER_LENGTH = struct.Struct(">I")


def check_binding_shapes(
    engine: CompiledEngine,
    inputs: tuple[NetworkBinding, ...],
    outputs: tuple[NetworkBinding, ...],
) -> None:
    """Verify a compiled engine reproduces the registered bindings exactly.

    Raises:
        ModelMismatchError: On binding count or per-binding shape mismatch
    """
    compiled = engine.binding_shapes()
    registered = (*inputs, *outputs)

    if len(compiled) != len(registered):
        raise ModelMismatchError(
            f"Engine has {len(compiled)} bindings, {len(registered)} registered",
            details={"compiled": sorted(compiled), "registered": [b.name for b in registered]},
        )

    for binding in registered:
        shape = compiled.get(binding.name)
        if shape is None:
            raise ModelMismatchError(f"Engine has no binding named '{binding.name}'")
        if tuple(shape) != binding.shape:
            raise ModelMismatchError(
                f"Binding '{binding.name}' compiled as {tuple(shape)}, "
                f"registered as {binding.shape}",
                details={"binding": binding.name},
            )


class EngineCompiler:
    """Builds, saves and loads CompiledEngines.

    Attributes:
        config: Engine configuration (model format, defaults)
        device: Device compiled engines execute on
        loader: Model-format adapter selected from config.model_format
    """

    def __init__(self, config: EngineConfig | None = None, device: str = "cpu"):
        self.config = config or EngineConfig()
        self.device = device
        self.loader: ModelLoader = get_model_loader(
            self.config.model_format, config=self.config, device=device
        )

    @staticmethod
    def _require_bindings(
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
    ) -> None:
        if not inputs or not outputs:
            raise ValueError("At least one input and one output binding must be registered")

    def build(
        self,
        model_path: Path | str,
        weights_path: Path | str | None,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision | str | None = None,
        max_workspace_size: int | None = None,
    ) -> CompiledEngine:
        """Compile a model for the registered bindings.

        Args:
            model_path: Model description (ONNX file or TorchScript archive)
            weights_path: Optional weights location (format-specific)
            inputs: Registered input bindings
            outputs: Registered output bindings
            max_batch_size: Largest batch the engine must accept
            precision: Precision mode (config default if None)
            max_workspace_size: Builder workspace in bytes (config default if None)

        Returns:
            The compiled engine

        Raises:
            ModelParseError: If the model or weights cannot be parsed
            ModelMismatchError: If parsed shapes differ from registered ones
            UnsupportedPrecisionError: If the device lacks the precision mode
        """
        self._require_bindings(inputs, outputs)
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {max_batch_size}")

        prec = Precision(precision or self.config.precision)
        workspace = max_workspace_size or self.config.max_workspace_size

        logger.info(
            f"Building {self.loader.model_format.value} engine from {model_path} "
            f"(precision={prec.value}, max_batch_size={max_batch_size}, "
            f"workspace={workspace / (1 << 30):.1f}GB, "
            f"bindings: {describe_bindings((*inputs, *outputs))})"
        )

        start_time = time.perf_counter()
        engine = self.loader.build(
            model_path=Path(model_path),
            weights_path=Path(weights_path) if weights_path else None,
            inputs=inputs,
            outputs=outputs,
            max_batch_size=max_batch_size,
            precision=prec,
            max_workspace_size=workspace,
        )
        check_binding_shapes(engine, inputs, outputs)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info(f"Engine built in {elapsed_ms:.0f}ms")
        return engine

    def _header(self, engine: CompiledEngine) -> dict[str, Any]:
        return {
            "model_format": engine.model_format.value,
            "precision": engine.precision.value,
            "max_batch_size": engine.max_batch_size,
            "bindings": [b.to_dict() for b in engine.bindings],
        }

    def save_cache(self, engine: CompiledEngine, path: Path | str) -> Path:
        """Serialize an engine to a cache artifact.

        Args:
            engine: Engine to persist
            path: Destination file (parent directories are created)

        Returns:
            Path the artifact was written to
        """
        cache_path = Path(path)
        header = json.dumps(self._header(engine), sort_keys=True).encode("utf-8")
        payload = engine.serialize()

        cache_path.parent.mkdir(parents=True, exist_ok=True)
        with open(cache_path, "wb") as f:  # nosemgrep: path-traversal-open
            f.write(CACHE_MAGIC)
            f.write(_HEADER_LENGTH.pack(len(header)))
            f.write(header)
            f.write(payload)

        logger.info(f"Engine cache saved to: {cache_path} ({len(payload)} byte payload)")
        return cache_path

    @staticmethod
    def read_cache_header(path: Path | str) -> tuple[dict[str, Any], bytes]:
        """Split a cache artifact into its decoded header and engine payload.

        Raises:
            CacheLoadError: If the artifact is missing, truncated or corrupt
        """
        cache_path = Path(path)
        try:
            data = cache_path.read_bytes()
        except OSError as e:
            raise CacheLoadError(f"Engine cache not readable: {e}", path=str(cache_path)) from e

        prefix = len(CACHE_MAGIC) + _HEADER_LENGTH.size
        if len(data) < prefix or not data.startswith(CACHE_MAGIC):
            raise CacheLoadError("Not an engine cache artifact", path=str(cache_path))

        (header_length,) = _HEADER_LENGTH.unpack_from(data, len(CACHE_MAGIC))
        if len(data) < prefix + header_length:
            raise CacheLoadError("Engine cache header is truncated", path=str(cache_path))

        try:
            header = json.loads(data[prefix : prefix + header_length].decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CacheLoadError(
                f"Engine cache header is corrupt: {e}", path=str(cache_path)
            ) from e
        if not isinstance(header, dict):
            raise CacheLoadError("Engine cache header is corrupt", path=str(cache_path))

        return header, data[prefix + header_length :]

    def _validate_header(
        self,
        header: dict[str, Any],
        path: Path,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        max_batch_size: int,
        requested: Precision,
    ) -> Precision:
        try:
            model_format = header["model_format"]
            cached_batch = int(header["max_batch_size"])
            precision = Precision(header["precision"])
            cached_bindings = [NetworkBinding.from_dict(b) for b in header["bindings"]]
        except (KeyError, TypeError, ValueError) as e:
            raise CacheLoadError(f"Engine cache header is incomplete: {e}", path=str(path)) from e

        if model_format != self.loader.model_format.value:
            raise CacheLoadError(
                f"Engine cache built for '{model_format}', loader is "
                f"'{self.loader.model_format.value}'",
                path=str(path),
            )
        if cached_batch != max_batch_size:
            raise CacheLoadError(
                f"Engine cache batch size {cached_batch} != requested {max_batch_size}",
                path=str(path),
            )
        if precision != requested:
            raise CacheLoadError(
                f"Engine cache precision {precision.value} != requested {requested.value}",
                path=str(path),
            )
        if cached_bindings != [*inputs, *outputs]:
            raise CacheLoadError(
                f"Engine cache bindings [{describe_bindings(cached_bindings)}] != registered "
                f"[{describe_bindings((*inputs, *outputs))}]",
                path=str(path),
            )
        return precision

    def load_cache(
        self,
        path: Path | str,
        inputs: tuple[NetworkBinding, ...],
        outputs: tuple[NetworkBinding, ...],
        max_batch_size: int,
        precision: Precision | str | None = None,
    ) -> CompiledEngine:
        """Load an engine from a cache artifact.

        Args:
            path: Cache artifact path
            inputs: Registered input bindings
            outputs: Registered output bindings
            max_batch_size: Batch size the engine must have been built for
            precision: Precision the engine must have been built with (config
                default if None)

        Returns:
            The deserialized engine

        Raises:
            CacheLoadError: If the artifact is missing, corrupt, or disagrees
                with the registered bindings, batch size or precision
        """
        self._require_bindings(inputs, outputs)
        cache_path = Path(path)

        requested = Precision(precision or self.config.precision)

        header, payload = self.read_cache_header(cache_path)
        cached = self._validate_header(
            header, cache_path, inputs, outputs, max_batch_size, requested
        )

        try:
            engine = self.loader.deserialize(
                payload,
                inputs=inputs,
                outputs=outputs,
                max_batch_size=max_batch_size,
                precision=cached,
            )
            check_binding_shapes(engine, inputs, outputs)
        except (
            ModelParseError,
            ModelMismatchError,
            UnsupportedPrecisionError,
            ImportError,
            ValueError,
        ) as e:
            raise CacheLoadError(f"Engine cache rejected: {e}", path=str(cache_path)) from e

        logger.info(
            f"Loaded engine cache: {cache_path.name} "
            f"(format={engine.model_format.value}, precision={cached.value}, "
            f"max_batch_size={max_batch_size})"
        )
        return engine


def split_bindings(
    bindings: list[NetworkBinding],
) -> tuple[tuple[NetworkBinding, ...], tuple[NetworkBinding, ...]]:
    """Split a registration list into (inputs, outputs), preserving order."""
    inputs = tuple(b for b in bindings if b.role is BindingRole.INPUT)
    outputs = tuple(b for b in bindings if b.role is BindingRole.OUTPUT)
    return inputs, outputs
