"""Engine latency benchmark.

Loads (or builds and caches) an engine for the given bindings, then runs
predict on a fixed random batch and reports the mean latency.

Examples:
  # GoogLeNet-style classifier, TorchScript backend
  python -m edge_rt.benchmark \\
      --model googlenet.pt \\
      --cache googlenet.engine \\
      --input-shape 3 224 224 \\
      --output prob:1000

  # ONNX through TensorRT in FP16
  python -m edge_rt.benchmark \\
      --format onnx --precision fp16 \\
      --model detectnet.onnx --cache detectnet.engine \\
      --input-shape 3 368 640 \\
      --output coverage:1,23,40 --output bboxes:4,23,40
"""

from __future__ import annotations

import argparse
import logging
import time
from typing import TYPE_CHECKING

import numpy as np

from .common.engine_config import ModelFormat, Precision
from .common.inference_engine import InferenceEngine

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

FLOAT_SIZE = 4


def parse_output_binding(value: str) -> tuple[str, tuple[int, ...]]:
    """Parse ``name:d0,d1,...`` into a binding name and shape."""
    name, sep, dims = value.partition(":")
    if not sep or not name or not dims:
        raise argparse.ArgumentTypeError(f"Output must look like name:d0,d1,... (got '{value}')")
    try:
        shape = tuple(int(d) for d in dims.split(","))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid output dimensions in '{value}'") from e
    return name, shape


def run_benchmark(
    engine: InferenceEngine,
    batch_size: int,
    samples: int,
    seed: int = 0,
) -> float:
    """Run predict ``samples`` times on one random batch.

    Returns:
        Mean latency per predict call in milliseconds
    """
    rng = np.random.default_rng(seed)
    batch = [
        [rng.random(b.shape, dtype=np.float32) for b in engine.inputs] for _ in range(batch_size)
    ]

    total_ms = 0.0
    for _ in range(samples):
        start_time = time.perf_counter()
        engine.predict(batch)
        total_ms += (time.perf_counter() - start_time) * 1000
    return total_ms / samples


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Benchmark engine predict latency",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--model", required=True, help="Model description file")
    parser.add_argument("--weights", default=None, help="Weights file (format-specific)")
    parser.add_argument("--cache", required=True, help="Engine cache artifact path")
    parser.add_argument(
        "--format",
        choices=[f.value for f in ModelFormat],
        default=ModelFormat.TORCHSCRIPT.value,
        help="Model format (default: torchscript)",
    )
    parser.add_argument(
        "--precision",
        choices=[p.value for p in Precision],
        default=Precision.FP32.value,
        help="Engine precision (default: fp32)",
    )
    parser.add_argument("--input-name", default="data", help="Input binding name (default: data)")
    parser.add_argument(
        "--input-shape",
        type=int,
        nargs="+",
        required=True,
        help="Per-sample input shape, e.g. 3 224 224",
    )
    parser.add_argument(
        "--output",
        type=parse_output_binding,
        action="append",
        required=True,
        help="Output binding as name:d0,d1,... (repeatable)",
    )
    parser.add_argument("--batch-size", type=int, default=1, help="Batch size (default: 1)")
    parser.add_argument(
        "--samples", type=int, default=10, help="predict calls per round (default: 10)"
    )
    parser.add_argument("--rounds", type=int, default=1, help="Benchmark rounds (default: 1)")
    parser.add_argument("--device", default=None, help="Device (default: cuda:0 if available)")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for command-line usage."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args(argv)

    engine = InferenceEngine(model_name="benchmark", model_format=args.format, device=args.device)
    engine.add_input(args.input_name, tuple(args.input_shape), FLOAT_SIZE)
    for name, shape in args.output:
        engine.add_output(name, shape, FLOAT_SIZE)

    engine.load_or_build(
        cache_path=args.cache,
        model_path=args.model,
        weights_path=args.weights,
        max_batch_size=args.batch_size,
        precision=args.precision,
    )
    print(engine.engine_summary())

    for _ in range(args.rounds):
        mean_ms = run_benchmark(engine, args.batch_size, args.samples)
        print(f"Average over {args.samples} runs is {mean_ms:.3f} ms.")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
