"""Tests for engine compilation, cache artifacts and EngineConfig.

Tests for:
- Build-time validation of registered bindings
- Cache artifact layout and header round trip
- Every way a cache artifact can be rejected
"""

from __future__ import annotations

import json
import struct
from pathlib import Path

import numpy as np
import pytest
import torch

from edge_rt.common.bindings import BindingRole, NetworkBinding
from edge_rt.common.engine_compiler import CACHE_MAGIC, EngineCompiler, split_bindings
from edge_rt.common.engine_config import EngineConfig, ModelFormat, Precision
from edge_rt.exceptions import (
    CacheLoadError,
    ModelMismatchError,
    ModelParseError,
    UnsupportedPrecisionError,
)


@pytest.fixture
def compiler() -> EngineCompiler:
    return EngineCompiler(config=EngineConfig(model_format="torchscript", precision="fp32"))


def classifier_bindings(classes: int = 10, side: int = 8):
    inputs = (NetworkBinding("data", (3, side, side), 4, BindingRole.INPUT),)
    outputs = (NetworkBinding("prob", (classes,), 4, BindingRole.OUTPUT),)
    return inputs, outputs


def write_artifact(path: Path, header: bytes, payload: bytes = b"") -> Path:
    path.write_bytes(CACHE_MAGIC + struct.pack(">I", len(header)) + header + payload)
    return path


def run_module(engine, x: np.ndarray) -> list[np.ndarray]:
    with torch.no_grad():
        result = engine.module(torch.from_numpy(x))
    if isinstance(result, torch.Tensor):
        result = (result,)
    return [t.numpy() for t in result]


class TestBuild:
    """Tests for EngineCompiler.build()."""

    def test_build_detectnet(self, compiler, detectnet_model_path, detectnet_bindings):
        inputs, outputs = detectnet_bindings

        engine = compiler.build(detectnet_model_path, None, inputs, outputs, max_batch_size=2)

        assert engine.max_batch_size == 2
        assert engine.precision is Precision.FP32
        assert engine.model_format is ModelFormat.TORCHSCRIPT
        assert [b.name for b in engine.bindings] == ["data", "coverage", "bboxes"]
        assert engine.binding_shapes() == {
            "data": (3, 16, 32),
            "coverage": (2, 2, 4),
            "bboxes": (4, 2, 4),
        }

    def test_output_shape_mismatch(self, compiler, detectnet_model_path, detectnet_bindings):
        inputs, outputs = detectnet_bindings
        wrong = (NetworkBinding("coverage", (1, 2, 4), 4, BindingRole.OUTPUT), outputs[1])

        with pytest.raises(ModelMismatchError, match="coverage"):
            compiler.build(detectnet_model_path, None, inputs, wrong, max_batch_size=1)

    def test_input_shape_rejected_by_model(self, compiler, classifier_model_path):
        inputs, outputs = classifier_bindings(side=4)

        with pytest.raises(ModelMismatchError, match="rejected"):
            compiler.build(classifier_model_path, None, inputs, outputs, max_batch_size=1)

    def test_output_count_mismatch(self, compiler, classifier_model_path):
        inputs, outputs = classifier_bindings()
        extra = (*outputs, NetworkBinding("extra", (1,), 4, BindingRole.OUTPUT))

        with pytest.raises(ModelMismatchError, match="1 outputs, 2 registered"):
            compiler.build(classifier_model_path, None, inputs, extra, max_batch_size=1)

    def test_missing_model(self, compiler, tmp_path):
        inputs, outputs = classifier_bindings()

        with pytest.raises(ModelParseError, match="not found"):
            compiler.build(tmp_path / "missing.pt", None, inputs, outputs, max_batch_size=1)

    def test_unparseable_model(self, compiler, tmp_path):
        path = tmp_path / "garbage.pt"
        path.write_bytes(b"this is not a torchscript archive")
        inputs, outputs = classifier_bindings()

        with pytest.raises(ModelParseError):
            compiler.build(path, None, inputs, outputs, max_batch_size=1)

    def test_missing_weights(self, compiler, classifier_model_path, tmp_path):
        inputs, outputs = classifier_bindings()

        with pytest.raises(ModelParseError, match="weights not found"):
            compiler.build(
                classifier_model_path, tmp_path / "nope.pth", inputs, outputs, max_batch_size=1
            )

    def test_incompatible_weights(
        self, compiler, classifier_model_path, detectnet_weights_path
    ):
        inputs, outputs = classifier_bindings()

        with pytest.raises(ModelParseError, match="Failed to load weights"):
            compiler.build(
                classifier_model_path, detectnet_weights_path, inputs, outputs, max_batch_size=1
            )

    def test_weights_override_archive(
        self,
        compiler,
        detectnet_module,
        detectnet_bindings,
        reinitialized_detectnet_model_path,
        detectnet_weights_path,
    ):
        """Test that a state_dict replaces the parameters stored in the archive."""
        inputs, outputs = detectnet_bindings

        engine = compiler.build(
            reinitialized_detectnet_model_path,
            detectnet_weights_path,
            inputs,
            outputs,
            max_batch_size=1,
        )

        x = np.random.default_rng(0).random((1, 3, 16, 32), dtype=np.float32)
        with torch.no_grad():
            expected = detectnet_module(torch.from_numpy(x))
        for got, want in zip(run_module(engine, x), expected):
            np.testing.assert_allclose(got, want.numpy(), rtol=1e-5, atol=1e-6)

    def test_int8_unsupported(self, compiler, classifier_model_path):
        inputs, outputs = classifier_bindings()

        with pytest.raises(UnsupportedPrecisionError, match="INT8"):
            compiler.build(
                classifier_model_path, None, inputs, outputs, max_batch_size=1, precision="int8"
            )

    def test_fp16_requires_cuda(self, compiler, classifier_model_path):
        inputs, outputs = classifier_bindings()

        with pytest.raises(UnsupportedPrecisionError) as exc_info:
            compiler.build(
                classifier_model_path, None, inputs, outputs, max_batch_size=1, precision="fp16"
            )
        assert exc_info.value.details == {"precision": "fp16"}

    def test_requires_bindings(self, compiler, classifier_model_path):
        inputs, _ = classifier_bindings()

        with pytest.raises(ValueError, match="At least one input and one output"):
            compiler.build(classifier_model_path, None, inputs, (), max_batch_size=1)

    def test_requires_positive_batch(self, compiler, classifier_model_path):
        inputs, outputs = classifier_bindings()

        with pytest.raises(ValueError, match="max_batch_size"):
            compiler.build(classifier_model_path, None, inputs, outputs, max_batch_size=0)


class TestCacheRoundTrip:
    """Tests for save_cache()/load_cache()."""

    def test_header_records_engine(self, compiler, classifier_model_path, tmp_path):
        inputs, outputs = classifier_bindings()
        engine = compiler.build(classifier_model_path, None, inputs, outputs, max_batch_size=4)

        path = compiler.save_cache(engine, tmp_path / "nested" / "dir" / "c.engine")
        header, payload = EngineCompiler.read_cache_header(path)

        assert path.exists()
        assert header == {
            "model_format": "torchscript",
            "precision": "fp32",
            "max_batch_size": 4,
            "bindings": [
                {"name": "data", "shape": [3, 8, 8], "element_size": 4, "role": "input"},
                {"name": "prob", "shape": [10], "element_size": 4, "role": "output"},
            ],
        }
        assert len(payload) > 0

    def test_loaded_engine_computes_identically(
        self, compiler, detectnet_model_path, detectnet_bindings, tmp_path
    ):
        inputs, outputs = detectnet_bindings
        built = compiler.build(detectnet_model_path, None, inputs, outputs, max_batch_size=1)
        path = compiler.save_cache(built, tmp_path / "d.engine")

        loaded = compiler.load_cache(path, inputs, outputs, max_batch_size=1)

        x = np.random.default_rng(1).random((1, 3, 16, 32), dtype=np.float32)
        for a, b in zip(run_module(built, x), run_module(loaded, x)):
            np.testing.assert_array_equal(a, b)
        assert loaded.precision is Precision.FP32
        assert loaded.max_batch_size == 1


class TestCacheRejection:
    """Tests for every CacheLoadError path."""

    @pytest.fixture
    def saved(self, compiler, classifier_model_path, tmp_path) -> Path:
        inputs, outputs = classifier_bindings()
        engine = compiler.build(classifier_model_path, None, inputs, outputs, max_batch_size=1)
        return compiler.save_cache(engine, tmp_path / "c.engine")

    def test_missing_file(self, compiler, tmp_path):
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="not readable") as exc_info:
            compiler.load_cache(tmp_path / "missing.engine", inputs, outputs, 1)
        assert exc_info.value.details["path"].endswith("missing.engine")

    def test_not_an_artifact(self, compiler, tmp_path):
        path = tmp_path / "junk.engine"
        path.write_bytes(b"\x00" * 64)
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="Not an engine cache"):
            compiler.load_cache(path, inputs, outputs, 1)

    def test_empty_file(self, compiler, tmp_path):
        path = tmp_path / "empty.engine"
        path.write_bytes(b"")
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError):
            compiler.load_cache(path, inputs, outputs, 1)

    def test_truncated_header(self, compiler, tmp_path):
        path = tmp_path / "t.engine"
        path.write_bytes(CACHE_MAGIC + struct.pack(">I", 1000) + b"{}")
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="truncated"):
            compiler.load_cache(path, inputs, outputs, 1)

    @pytest.mark.parametrize("header", [b"{not json", b"\xff\xfe", b"[1, 2]"])
    def test_corrupt_header(self, compiler, tmp_path, header):
        path = write_artifact(tmp_path / "h.engine", header)
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="corrupt"):
            compiler.load_cache(path, inputs, outputs, 1)

    def test_incomplete_header(self, compiler, tmp_path):
        path = write_artifact(tmp_path / "i.engine", b'{"model_format": "torchscript"}')
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="incomplete"):
            compiler.load_cache(path, inputs, outputs, 1)

    def test_batch_size_mismatch(self, compiler, saved):
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="batch size 1 != requested 2"):
            compiler.load_cache(saved, inputs, outputs, 2)

    def test_precision_mismatch(self, compiler, saved):
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="precision fp32 != requested fp16"):
            compiler.load_cache(saved, inputs, outputs, 1, precision="fp16")

    def test_precision_defaults_to_config(self, saved):
        """Test that an unspecified precision is checked against the config default."""
        int8_compiler = EngineCompiler(
            config=EngineConfig(model_format="torchscript", precision="int8"), device="cpu"
        )
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="precision"):
            int8_compiler.load_cache(saved, inputs, outputs, 1)

    def test_binding_shape_mismatch(self, compiler, saved):
        inputs, outputs = classifier_bindings(classes=5)

        with pytest.raises(CacheLoadError, match="bindings"):
            compiler.load_cache(saved, inputs, outputs, 1)

    def test_binding_name_mismatch(self, compiler, saved):
        inputs, _ = classifier_bindings()
        outputs = (NetworkBinding("softmax", (10,), 4, BindingRole.OUTPUT),)

        with pytest.raises(CacheLoadError, match="bindings"):
            compiler.load_cache(saved, inputs, outputs, 1)

    def test_model_format_mismatch(self, saved):
        onnx_compiler = EngineCompiler(config=EngineConfig(model_format="onnx"), device="cpu")
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="built for 'torchscript'"):
            onnx_compiler.load_cache(saved, inputs, outputs, 1)

    def test_corrupt_payload(self, compiler, saved, tmp_path):
        header, _ = EngineCompiler.read_cache_header(saved)
        path = write_artifact(
            tmp_path / "p.engine",
            json.dumps(header).encode("utf-8"),
            payload=b"definitely not a torchscript archive",
        )
        inputs, outputs = classifier_bindings()

        with pytest.raises(CacheLoadError, match="rejected"):
            compiler.load_cache(path, inputs, outputs, 1)


def test_split_bindings_preserves_order():
    a = NetworkBinding("a", (1,), 4, BindingRole.INPUT)
    b = NetworkBinding("b", (1,), 4, BindingRole.OUTPUT)
    c = NetworkBinding("c", (1,), 4, BindingRole.INPUT)

    assert split_bindings([a, b, c]) == ((a, c), (b,))


class TestEngineConfig:
    def test_normalizes_strings(self, tmp_path):
        config = EngineConfig(model_format="onnx", precision="fp16", cache_dir=str(tmp_path))

        assert config.model_format is ModelFormat.ONNX
        assert config.precision is Precision.FP16
        assert config.cache_dir == tmp_path

    def test_rejects_unknown_precision(self):
        with pytest.raises(ValueError):
            EngineConfig(precision="fp8")

    def test_rejects_non_positive_workspace(self):
        with pytest.raises(ValueError, match="max_workspace_size"):
            EngineConfig(max_workspace_size=0)

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("EDGE_RT_MODEL_FORMAT", "onnx")
        monkeypatch.setenv("EDGE_RT_PRECISION", "int8")
        monkeypatch.setenv("EDGE_RT_MAX_WORKSPACE_SIZE", "4096")
        monkeypatch.setenv("EDGE_RT_CACHE_DIR", str(tmp_path))
        monkeypatch.setenv("EDGE_RT_VERBOSE", "true")

        config = EngineConfig.from_env()

        assert config.model_format is ModelFormat.ONNX
        assert config.precision is Precision.INT8
        assert config.max_workspace_size == 4096
        assert config.cache_dir == tmp_path
        assert config.verbose is True
