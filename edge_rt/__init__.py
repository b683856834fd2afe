"""Edge inference runtime.

Compiles trained networks into cached inference engines, runs batched
forward passes with explicit host/device memory movement, and clusters
DetectNet coverage grids into detections.

- common: Engine compilation, cache artifacts and InferenceEngine
- detectnet: Detector and ClusteredSuppressor
- device_memory_pool: Role-keyed device buffer cache
- exceptions: Error hierarchy
- metrics: Prometheus metrics

    from edge_rt.common import InferenceEngine
    from edge_rt.detectnet import Detector
"""

__version__ = "1.0.0"
