"""Prometheus metrics for engine execution and detection.

Usage:
    from edge_rt.metrics import record_predict, record_cache_event

    record_predict("detectnet", batch_size=1, latency_seconds=0.012)
    record_cache_event("hit")
"""

import os

from prometheus_client import Counter, Gauge, Histogram, generate_latest

# =============================================================================
# Engine Metrics
# =============================================================================

PREDICT_LATENCY = Histogram(
    "edge_rt_predict_latency_seconds",
    "Latency of one batched predict call in seconds",
    ["model"],
    buckets=[0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0],
)

PREDICT_SAMPLES_TOTAL = Counter(
    "edge_rt_predict_samples_total",
    "Total number of samples run through predict",
    ["model"],
)

ENGINE_CACHE_EVENTS_TOTAL = Counter(
    "edge_rt_engine_cache_events_total",
    "Engine cache lookups and saves",
    ["event"],
)

DEVICE_POOL_BYTES = Gauge(
    "edge_rt_device_pool_bytes",
    "Bytes currently held by device memory pools",
    ["model"],
)

# =============================================================================
# Detection Metrics
# =============================================================================

# Class ids at or above this share the "other" label
MAX_CLASS_ID_LABELS = int(os.environ.get("EDGE_RT_MAX_CLASS_ID_LABELS", "64"))

DETECTIONS_TOTAL = Counter(
    "edge_rt_detections_total",
    "Total number of detections emitted",
    ["class_id"],
)


def record_predict(model: str, batch_size: int, latency_seconds: float) -> None:
    PREDICT_LATENCY.labels(model=model).observe(latency_seconds)
    PREDICT_SAMPLES_TOTAL.labels(model=model).inc(batch_size)


def record_cache_event(event: str) -> None:
    """Record a cache event: "hit", "miss" or "save"."""
    ENGINE_CACHE_EVENTS_TOTAL.labels(event=event).inc()


def record_pool_bytes(model: str, total_bytes: int) -> None:
    DEVICE_POOL_BYTES.labels(model=model).set(total_bytes)


def record_detections(class_ids: list[int]) -> None:
    """Count detections per class.

    The class_id label takes one value per model class, so its cardinality is
    nb_classes. Ids of MAX_CLASS_ID_LABELS and above are counted as "other".
    """
    for class_id in class_ids:
        label = str(class_id) if class_id < MAX_CLASS_ID_LABELS else "other"
        DETECTIONS_TOTAL.labels(class_id=label).inc()


def get_metrics() -> bytes:
    """Get all metrics in Prometheus exposition format."""
    return generate_latest()
